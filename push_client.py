import logging
from typing import Callable, Optional

import constants
import custom_exceptions
from models import JobResult, Job, Task, TaskPriority
from protocol import ClientProtocol
from zmq_broker import BrokerClientConnection

logger = logging.getLogger(__name__)

_TIERS = {
    TaskPriority.HIGH: constants.HIGH_TIER,
    TaskPriority.NORMAL: constants.NORMAL_TIER,
    TaskPriority.LOW: constants.LOW_TIER,
}


def tier_for(priority: TaskPriority) -> str:
    return _TIERS.get(priority, constants.NORMAL_TIER)


class PushClient(ClientProtocol):
    """Client for the push protocol: a job server that pushes results back.

    Results, failures and progress notifications are delivered through
    callbacks the connection invokes while ``run`` is waiting.
    """

    protocol_name = constants.PUSH

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        connection_factory: Callable[..., BrokerClientConnection] = BrokerClientConnection,
    ) -> None:
        super().__init__(username, password)
        self.connection_factory = connection_factory
        self.connection: Optional[BrokerClientConnection] = None
        self._failed = False

    def connect(self) -> None:
        if self.is_connected():
            return

        connection = self.connection_factory(timeout_ms=self.options.get("timeout_ms", constants.CONNECT_TIMEOUT))

        try:
            for host, port in self.server_cache:
                connection.connect(host, port)

        except custom_exceptions.ConnectionFailure:
            connection.disconnect()
            raise

        connection.set_complete_callback(self._on_complete)
        connection.set_fail_callback(self._on_fail)
        connection.set_data_callback(self._on_data)
        connection.set_status_callback(self._on_status)
        self.connection = connection
        self.reconnect_policy.reset()

    def disconnect(self) -> None:
        if not self.is_connected():
            return

        logger.debug("disconnecting from job server(s)")
        self.connection.clear_callbacks()
        self.connection.disconnect()
        self.connection = None

        # results of published tasks were routed to the old socket
        self.unsent = list(self.tasks.values())

    def is_connected(self) -> bool:
        return self.connection is not None

    def do(self, task: Task) -> None:
        """Submit a task in the background.

        A task with a callback needs its result, so it is queued instead.

        Raises:
            ConnectionFailure: if not connected
            ServerFailure: if the job server rejects the submission
        """
        if task.callback is not None:
            self.queue(task)
            return

        self.perform_autoreconf()
        if not self.is_connected():
            raise custom_exceptions.ConnectionFailure("Not connected to a job server")

        job = Job.from_task(task)
        self.connection.publish(tier_for(task.priority), task.function_name, job.encode(), task.id, background=True)

    def run(self) -> bool:
        """Submit every queued task and wait for all of their results.

        Returns:
            bool: False if nothing was queued, the transport failed or any job failed
        """
        if not self.is_connected():
            return False

        self.perform_autoreconf()

        if not self.tasks:
            return False

        self._failed = False

        try:
            for task in self.take_unsent():
                job = Job.from_task(task)
                self.connection.publish(tier_for(task.priority), task.function_name, job.encode(), task.id)

        except custom_exceptions.ServerFailure as exp:
            logger.error(f"Failed to submit queued tasks: {exp}")
            return False

        if not self.connection.run_pending(self.options.get("run_timeout_ms")):
            return False

        return not self._failed

    def _decode(self, correlation_id: str, payload: bytes) -> Optional[JobResult]:
        try:
            return JobResult.decode(payload)

        except ValueError:
            logger.debug(f"undecodable result payload for task {correlation_id}")
            return None

    def _on_complete(self, correlation_id: str, payload: bytes) -> None:
        job_result = self._decode(correlation_id, payload)
        if job_result is None:
            job_result = JobResult.failure(correlation_id, "undecodable result")

        if not job_result.successful:
            self._failed = True

        self.complete(job_result)

    def _on_fail(self, correlation_id: str, payload: bytes) -> None:
        self._failed = True
        job_result = self._decode(correlation_id, payload) if payload else None
        if job_result is None:
            job_result = JobResult.failure(correlation_id)

        self.complete(job_result)

    def _on_data(self, correlation_id: str, payload: bytes) -> None:
        logger.debug(f"data for task {correlation_id} ({len(payload)} bytes)")

    def _on_status(self, correlation_id: str, payload: bytes) -> None:
        logger.debug(f"status for task {correlation_id}: {payload!r}")
