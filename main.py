import logging

from fastapi import FastAPI, HTTPException

import custom_exceptions
from models import MonitorRep, SubmitTaskRep, SubmitTaskReq, Task, WorkerStatus
from tamer import Tamer

logger = logging.getLogger(__name__)


def create_app(tamer: Tamer) -> FastAPI:
    """HTTP surface over a client-mode Tamer context.

    Args:
        tamer (Tamer): Connected context the routes submit to and report on
    """
    app = FastAPI()

    @app.post("/tasks", response_model=SubmitTaskRep)
    def submit_task(req: SubmitTaskReq) -> SubmitTaskRep:
        """Submit a task without waiting for its result

        Args:
            req (SubmitTaskReq): Function name, JSON payload and priority

        Raises:
            HTTPException: Raise 400 if the priority is invalid
            HTTPException: Raise 409 if the context is not in client mode
            HTTPException: Raise 503 if the task could not be handed to the transport

        Returns:
            SubmitTaskRep: Object with the id of the submitted task
        """
        try:
            task = Task(req.function_name, req.payload, priority=req.priority)

        except custom_exceptions.InvalidPriority as exp:
            raise HTTPException(status_code=400, detail=str(exp))

        try:
            tamer.do(task)

        except custom_exceptions.InvalidMode as exp:
            raise HTTPException(status_code=409, detail=str(exp))

        except (custom_exceptions.ConnectionFailure, custom_exceptions.ServerFailure) as exp:
            logger.error(f"Failed to submit task {task.id}: {exp}")
            raise HTTPException(status_code=503, detail="Task submission failed")

        return SubmitTaskRep(task_id=task.id)

    @app.get("/workers", response_model=list[WorkerStatus])
    def get_workers() -> list[WorkerStatus]:
        try:
            return tamer.worker_status()

        except custom_exceptions.InvalidMode as exp:
            raise HTTPException(status_code=409, detail=str(exp))

    @app.post("/workers/monitor", response_model=MonitorRep)
    def monitor_workers() -> MonitorRep:
        """Run one supervisor pass, restarting workers that died

        Returns:
            MonitorRep: Object with the ids of the restarted workers
        """
        try:
            return MonitorRep(restarted=tamer.monitor(blocking=False, auto_restart=True))

        except custom_exceptions.InvalidMode as exp:
            raise HTTPException(status_code=409, detail=str(exp))

    return app
