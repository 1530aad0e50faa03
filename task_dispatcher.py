import logging
import sys
import time
from collections import deque

import zmq

import constants
import custom_exceptions
from zmq_broker import frames

logger = logging.getLogger(__name__)


class JobServer:
    """Routing state of the broker-style job server.

    Jobs wait in one queue per function and priority tier. Workers grab jobs
    for the functions they registered, highest tier first; a worker that
    finds nothing is put to sleep and woken with a NOOP when a matching job
    is submitted. Results are routed back to the submitting client unless
    the job was submitted in the background.
    """

    def __init__(self, max_heartbeats_missed: float = constants.MAX_HEARTBEATS_MISSED, clock=time.time) -> None:
        self.max_heartbeats_missed = max_heartbeats_missed
        self.clock = clock

        # function name -> tier -> correlation ids
        self.queues: dict[str, dict[str, deque]] = {}

        # correlation id -> job record
        self.jobs: dict[str, dict] = {}

        self.worker_functions: dict[bytes, set[str]] = {}
        self.sleeping_workers: set[bytes] = set()
        self.worker_last_heartbeat: dict[bytes, float] = {}

        # maintain tasks each worker is assigned
        self.worker_task_map: dict[bytes, set[str]] = {}

    def handle(self, identity: bytes, message: list[bytes]) -> list[list[bytes]]:
        """Process one message and return the messages to send in response.

        Args:
            identity (bytes): zmq identity of the sender
            message (list): frames after the identity

        Returns:
            list: outgoing messages, each starting with the recipient identity
        """
        if not message:
            return []

        msg_type, *args = message
        msg_type = msg_type.decode()

        if msg_type == constants.PING:
            return [frames(identity, constants.PONG)]

        if msg_type == constants.SUB and len(args) == 5:
            tier, background, function_name, correlation_id = (a.decode() for a in args[:4])
            return self.submit(identity, tier, background == "1", function_name, correlation_id, args[4])

        if msg_type == constants.REG:
            self.touch(identity)
            self.worker_functions[identity] = {a.decode() for a in args}
            logger.debug(f"worker {identity!r} can do {sorted(self.worker_functions[identity])}")
            return []

        if msg_type == constants.REQ:
            self.touch(identity)
            return self.reply_to_task_requests(identity)

        if msg_type == constants.RES and len(args) == 3:
            self.touch(identity)
            event, correlation_id = args[0].decode(), args[1].decode()
            return self.update_result(identity, event, correlation_id, args[2])

        if msg_type == constants.HBT:
            self.touch(identity)
            return []

        logger.warning(f"unknown message {msg_type!r} from {identity!r}")
        return []

    def touch(self, identity: bytes) -> None:
        self.worker_last_heartbeat[identity] = self.clock()

    def submit(
        self,
        client: bytes,
        tier: str,
        background: bool,
        function_name: str,
        correlation_id: str,
        payload: bytes,
    ) -> list[list[bytes]]:
        if tier not in constants.TIERS:
            tier = constants.NORMAL_TIER

        if correlation_id in self.jobs:
            logger.warning(f"job {correlation_id} submitted twice, replacing it")

        self.jobs[correlation_id] = {
            "client": client,
            "tier": tier,
            "background": background,
            "function_name": function_name,
            "payload": payload,
            "worker": None,
        }

        tiers = self.queues.setdefault(function_name, {t: deque() for t in constants.TIERS})
        tiers[tier].append(correlation_id)

        return self.wake_workers(function_name)

    def wake_workers(self, function_name: str) -> list[list[bytes]]:
        out = []
        for worker_id in list(self.sleeping_workers):
            if function_name in self.worker_functions.get(worker_id, ()):
                self.sleeping_workers.discard(worker_id)
                out.append(frames(worker_id, constants.NOOP))

        return out

    def next_job(self, worker_id: bytes):
        functions = self.worker_functions.get(worker_id, set())

        for tier in constants.TIERS:
            for function_name in functions:
                queue = self.queues.get(function_name, {}).get(tier)

                while queue:
                    correlation_id = queue.popleft()
                    job = self.jobs.get(correlation_id)

                    if job is not None and job["worker"] is None:
                        return correlation_id, job

        return None

    def reply_to_task_requests(self, worker_id: bytes) -> list[list[bytes]]:
        """Assign the next job to the requesting worker, or put it to sleep.

        Args:
            worker_id (bytes): identity of the worker with the request
        """
        found = self.next_job(worker_id)

        if found is None:
            self.sleeping_workers.add(worker_id)
            return [frames(worker_id, constants.NOJOB)]

        correlation_id, job = found
        job["worker"] = worker_id

        # Add task to worker's work bucket
        self.worker_task_map.setdefault(worker_id, set()).add(correlation_id)
        self.sleeping_workers.discard(worker_id)

        return [frames(worker_id, constants.JOB_ASSIGN, job["function_name"], correlation_id, job["payload"])]

    def update_result(self, worker_id: bytes, event: str, correlation_id: str, payload: bytes) -> list[list[bytes]]:
        """Route a worker's result back to the client that submitted the job.

        Args:
            worker_id (bytes): identity of the reporting worker
            event (str): complete, fail, data or status
            correlation_id (str): id of the job
            payload (bytes): encoded JobResult (may be empty for fail)
        """
        job = self.jobs.get(correlation_id)
        if job is None:
            logger.debug(f"dropping {event} for unknown job {correlation_id}")
            return []

        if event in (constants.COMPLETE, constants.FAIL):
            del self.jobs[correlation_id]
            self.worker_task_map.get(worker_id, set()).discard(correlation_id)

        if job["background"]:
            return []

        return [frames(job["client"], constants.RES, event, correlation_id, payload)]

    def check_heartbeat(self) -> list[list[bytes]]:
        """Requeue the jobs of workers that stopped sending heartbeats.

        A silent worker may only be stuck in a long handler, so its
        registration is kept and it gets work again once it reports back.
        """
        now = self.clock()
        dead_workers = [
            worker_id
            for worker_id, last in self.worker_last_heartbeat.items()
            if now - last > self.max_heartbeats_missed
        ]

        out = []
        for worker_id in dead_workers:
            for correlation_id in self.worker_task_map.pop(worker_id, set()):
                job = self.jobs.get(correlation_id)
                if job is None:
                    continue

                logger.warning(f"worker {worker_id!r} went silent, requeueing job {correlation_id}")
                job["worker"] = None
                self.queues[job["function_name"]][job["tier"]].appendleft(correlation_id)
                out.extend(self.wake_workers(job["function_name"]))

            del self.worker_last_heartbeat[worker_id]
            self.sleeping_workers.discard(worker_id)

        return out


def PushTaskDispatcher(port: int, max_heartbeats_missed: float = constants.MAX_HEARTBEATS_MISSED) -> None:
    """Job server for push protocol clients and workers.

    Args:
        port (int): Port to bind on all interfaces
        max_heartbeats_missed (float): Seconds of silence after which a worker's jobs are requeued
    """
    server = JobServer(max_heartbeats_missed=max_heartbeats_missed)

    with zmq.Context() as context:
        socket = context.socket(zmq.ROUTER)
        socket.bind(f"tcp://*:{port}")
        logger.info(f"job server listening on port {port}")

        while True:
            if socket.poll(1000):
                identity, *message = socket.recv_multipart()

                for reply in server.handle(identity, message):
                    socket.send_multipart(reply)

            # check for dead workers and reassign tasks
            for reply in server.check_heartbeat():
                socket.send_multipart(reply)


if __name__ == "__main__":
    usage = "python3 task_dispatcher.py -p <port> [-t <max_heartbeats_missed>]"

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(name)s - %(message)s")

    port = constants.dport
    max_heartbeats_missed = constants.MAX_HEARTBEATS_MISSED

    for i in range(1, len(sys.argv), 2):
        argv = sys.argv[i]
        if argv == "-p":
            port = int(sys.argv[i + 1])

        elif argv == "-t":
            max_heartbeats_missed = float(sys.argv[i + 1])

        else:
            print(usage)
            raise custom_exceptions.InvalidArguments()

    PushTaskDispatcher(port=port, max_heartbeats_missed=max_heartbeats_missed)
