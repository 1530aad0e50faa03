import logging
from functools import partial
from typing import Callable, Optional

import constants
import custom_exceptions
from models import Job, JobResult, decode_message
from protocol import WorkerProtocol
from redis_queue import Message, QueueConnection

logger = logging.getLogger(__name__)


class PullWorker(WorkerProtocol):
    """Worker for the pull protocol.

    Consumes the shared job queue on every server. Messages are acked once
    their result has been published, rejected when the handler raised and
    requeued when this worker has no handler for them.
    """

    protocol_name = constants.PULL

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        allow_closures: bool = False,
        connection_factory: Callable[[], QueueConnection] = QueueConnection,
    ) -> None:
        super().__init__(username, password, allow_closures)
        self.connection_factory = connection_factory
        self.connections: list[QueueConnection] = []
        self._handled = 0

    def connect(self) -> None:
        if self.is_connected():
            return

        connections = []

        try:
            for host, port in self.server_cache:
                connection = self.connection_factory()
                connection.connect(host, port, self.username, self.password)
                connection.declare(constants.JOB_QUEUE)
                connections.append(connection)

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

    def work(self, blocking: bool = True, timeout: int = 500, throw_errors: bool = False) -> None:
        """Serve jobs from the job queue.

        Args:
            blocking (bool): Loop forever when True, otherwise return after ``timeout`` ms without work
            timeout (int): Milliseconds to wait for a message on each server
            throw_errors (bool): Raise ServerFailure on queue errors instead of logging them

        Raises:
            ConnectionFailure: if a queue server cannot be reached
            ServerFailure: on queue errors when ``throw_errors`` is set
        """
        if not self.connections:
            return

        while True:
            self.perform_autoreconf()

            handled = self._handled
            for connection in list(self.connections):
                try:
                    self._wait(connection, timeout)

                except custom_exceptions.ServerFailure as exp:
                    if throw_errors:
                        raise

                    logger.error(f"Queue server error: {exp}")

            if self._handled == handled and not blocking:
                break

    def _wait(self, connection: QueueConnection, timeout: int) -> None:
        consumer_tag = connection.consume(constants.JOB_QUEUE, partial(self.serve, connection))

        try:
            connection.wait_for_messages(max(timeout, 1) / 1000)

        finally:
            connection.cancel(consumer_tag)

    def serve(self, connection: QueueConnection, message: Message) -> None:
        """Execute one delivered job and settle its message."""
        try:
            job = decode_message(message.body)

        except ValueError:
            job = None

        if not isinstance(job, Job):
            logger.error(f"rejecting message {message.delivery_tag}: not a job")
            connection.nack(message.delivery_tag, requeue=False)
            self._handled += 1
            return

        if not self.handles(job):
            logger.debug(f"received unknown function: {job.id}")
            connection.nack(message.delivery_tag, requeue=True)
            return

        self._handled += 1

        try:
            job_result = self.execute(job)

        except custom_exceptions.WorkerFailure as exp:
            self._reply(connection, message, exp.result)
            connection.nack(message.delivery_tag, requeue=False)
            return

        self._reply(connection, message, job_result)
        connection.ack(message.delivery_tag)

    def _reply(self, connection: QueueConnection, message: Message, job_result: JobResult) -> None:
        # background jobs have nowhere to reply to
        if not message.reply_to:
            return

        connection.publish(
            message.reply_to,
            job_result.encode(),
            {"correlation_id": message.correlation_id or job_result.id},
        )
