import logging
import time
from typing import Callable, Optional

import constants
import custom_exceptions
import utils
from models import Job, JobResult
from protocol import WorkerProtocol
from zmq_broker import BrokerWorkerConnection

logger = logging.getLogger(__name__)


class PushWorker(WorkerProtocol):
    """Worker for the push protocol.

    Holds one connection per job server and grabs jobs from them in turn.
    Registered function names are announced to every server on connect and
    whenever the set of functions changes.
    """

    protocol_name = constants.PUSH

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        allow_closures: bool = False,
        worker_id: Optional[str] = None,
        connection_factory: Callable[..., BrokerWorkerConnection] = BrokerWorkerConnection,
    ) -> None:
        super().__init__(username, password, allow_closures)
        self.worker_id = worker_id or utils.generate_id()
        self.connection_factory = connection_factory
        self.connections: list[BrokerWorkerConnection] = []
        self._next = 0

    def connect(self) -> None:
        if self.is_connected():
            return

        logger.debug("connecting to job server(s)")
        connections = []

        try:
            for host, port in self.server_cache:
                connection = self.connection_factory(
                    self.worker_id, timeout_ms=self.options.get("timeout_ms", constants.CONNECT_TIMEOUT)
                )
                connection.connect(host, port)
                connections.append(connection)
                connection.register(self.functions)

        except custom_exceptions.ConnectionFailure:
            for connection in connections:
                connection.disconnect()
            raise

        self.connections = connections
        self.reconnect_policy.reset()

    def disconnect(self) -> None:
        for connection in self.connections:
            connection.disconnect()

        self.connections = []

    def is_connected(self) -> bool:
        return any(connection.is_connected() for connection in self.connections)

    def add_function(self, name: str, handler: Callable, context=None) -> None:
        super().add_function(name, handler, context)
        self._announce()

    def remove_function(self, name: str) -> None:
        super().remove_function(name)
        self._announce()

    def _announce(self) -> None:
        for connection in self.connections:
            connection.register(self.functions)

    def work(self, blocking: bool = True, timeout: int = 500, throw_errors: bool = False) -> None:
        """Serve jobs.

        Args:
            blocking (bool): Loop forever when True, otherwise return after ``timeout`` ms without work
            timeout (int): Milliseconds to wait for a job on each grab
            throw_errors (bool): Raise ServerFailure on transport errors instead of logging them

        Raises:
            ConnectionFailure: if a job server cannot be reached
            ServerFailure: on transport errors when ``throw_errors`` is set
        """
        if not self.connections:
            return

        while True:
            self.perform_autoreconf()

            connection = self.connections[self._next % len(self.connections)]
            self._next += 1

            connection.heartbeat()
            code, assigned = connection.grab(timeout)

            if code == constants.RC_COULD_NOT_CONNECT:
                raise custom_exceptions.ConnectionFailure(
                    connection.last_error or "Could not connect to job server", connection.host, connection.port
                )

            if code == constants.RC_SUCCESS:
                self.serve(connection, *assigned)
                continue

            if code == constants.RC_TIMEOUT and not blocking:
                break

            if code == constants.RC_ERROR:
                if throw_errors:
                    raise custom_exceptions.ServerFailure(f"Job server error: {connection.last_error}", code)

                logger.error(f"Job server error: {connection.last_error}")

                if not blocking:
                    break

                time.sleep(timeout / 1000)

    def serve(self, connection: BrokerWorkerConnection, function_name: str, correlation_id: str, payload: bytes) -> None:
        """Execute one assigned job and report its outcome to the job server."""
        try:
            job = Job.decode(payload)

        except ValueError:
            logger.error(f"received an undecodable job {correlation_id} for {function_name}")
            connection.send_result(constants.FAIL, correlation_id, JobResult.failure(correlation_id).encode())
            return

        if not self.handles(job):
            logger.debug(f"received unknown function: {job.id}")
            connection.send_result(
                constants.FAIL,
                correlation_id,
                JobResult.failure(job.id, f"Function '{job.name}' is not registered").encode(),
            )
            return

        try:
            job_result = self.execute(job)

        except custom_exceptions.WorkerFailure as exp:
            connection.send_result(constants.FAIL, correlation_id, exp.result.encode())
            return

        connection.send_result(constants.COMPLETE, correlation_id, job_result.encode())
