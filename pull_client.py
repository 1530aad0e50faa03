import logging
import random
import time
from functools import partial
from typing import Callable, Optional

import constants
import custom_exceptions
import utils
from models import Job, JobResult, Task
from protocol import ClientProtocol
from redis_queue import Message, QueueConnection

logger = logging.getLogger(__name__)


class PullClient(ClientProtocol):
    """Client for the pull protocol: plain message queues, results are polled.

    Jobs go to the shared job queue on a randomly chosen server. Queued
    tasks carry a ``reply_to`` naming this client's own reply queue, which
    ``run`` collects from on every server.
    """

    protocol_name = constants.PULL

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        connection_factory: Callable[[], QueueConnection] = QueueConnection,
    ) -> None:
        super().__init__(username, password)
        self.connection_factory = connection_factory
        self.connections: list[QueueConnection] = []
        self.reply_queue = f"{constants.REPLY_QUEUE}:{utils.generate_id()}"
        self._failed = False

    def connect(self) -> None:
        if self.is_connected():
            return

        connections = []

        try:
            for host, port in self.server_cache:
                connection = self.connection_factory()
                connection.connect(host, port, self.username, self.password)
                connection.declare(constants.JOB_QUEUE)
                connection.declare(self.reply_queue)
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

    def _live(self) -> list[QueueConnection]:
        return [connection for connection in self.connections if connection.is_connected()]

    def _publish(self, task: Task, reply: bool) -> None:
        live = self._live()
        if not live:
            raise custom_exceptions.ConnectionFailure("Not connected to a queue server")

        properties = {
            "priority": utils.calculate_priority(task.priority),
            "correlation_id": task.id,
        }
        if reply:
            properties["reply_to"] = self.reply_queue

        random.choice(live).publish(constants.JOB_QUEUE, Job.from_task(task).encode(), properties)

    def do(self, task: Task) -> None:
        """Publish a task without waiting for its result.

        A task with a callback needs its result, so it is queued instead.

        Raises:
            ConnectionFailure: if not connected
            ServerFailure: if publishing fails
        """
        if task.callback is not None:
            self.queue(task)
            return

        self.perform_autoreconf()
        if not self.is_connected():
            raise custom_exceptions.ConnectionFailure("Not connected to a queue server")

        try:
            self._publish(task, reply=False)

        except custom_exceptions.ConnectionFailure as exp:
            raise custom_exceptions.ServerFailure(f"Failed to publish task {task.id}: {exp}") from exp

    def run(self) -> bool:
        """Publish every queued task and poll the reply queues until all results are in.

        Returns:
            bool: False if nothing was queued, the transport failed, the wait
                timed out or any job failed
        """
        if not self.is_connected():
            return False

        self.perform_autoreconf()

        if not self.tasks:
            return False

        self._failed = False

        try:
            for task in self.take_unsent():
                self._publish(task, reply=True)

            if not self._collect():
                return False

        except (custom_exceptions.ConnectionFailure, custom_exceptions.ServerFailure) as exp:
            logger.error(f"Queue transport failed while running tasks: {exp}")
            return False

        return not self._failed

    def _collect(self) -> bool:
        poll_interval = self.options.get("poll_interval", 1.0)
        run_timeout_ms = self.options.get("run_timeout_ms")

        live = self._live()
        consumers = [
            (connection, connection.consume(self.reply_queue, partial(self._on_reply, connection)))
            for connection in live
        ]

        last_progress = time.monotonic()

        try:
            while self.tasks:
                outstanding = len(self.tasks)
                for connection in live:
                    connection.wait_for_messages(poll_interval)

                # dropped late replies do not count as progress
                if len(self.tasks) < outstanding:
                    last_progress = time.monotonic()

                elif run_timeout_ms is not None and (time.monotonic() - last_progress) * 1000 > run_timeout_ms:
                    logger.error(f"Timed out waiting for {len(self.tasks)} result(s)")
                    return False

        finally:
            for connection, consumer_tag in consumers:
                connection.cancel(consumer_tag)

        return True

    def _on_reply(self, connection: QueueConnection, message: Message) -> None:
        try:
            job_result = JobResult.decode(message.body)

        except ValueError:
            logger.error(f"dropping undecodable reply {message.delivery_tag}")
            connection.nack(message.delivery_tag, requeue=False)
            return

        # only this client reads its reply queue, so an unknown id is a late duplicate
        if job_result.id not in self.tasks:
            logger.debug(f"dropping reply for unknown task {job_result.id}")
            connection.nack(message.delivery_tag, requeue=False)
            return

        connection.ack(message.delivery_tag)

        if not job_result.successful:
            self._failed = True

        self.complete(job_result)
