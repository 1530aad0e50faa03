import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import redis

import custom_exceptions
import utils

logger = logging.getLogger(__name__)

# priority 255 sorts first, arrival order breaks ties
_SCORE_SPAN = 10**12


@dataclass
class Message:
    body: bytes
    queue: str
    delivery_tag: str
    properties: dict = field(default_factory=dict)

    @property
    def correlation_id(self) -> Optional[str]:
        return self.properties.get("correlation_id")

    @property
    def reply_to(self) -> Optional[str]:
        return self.properties.get("reply_to")


class QueueConnection:
    """A message queue on one redis server.

    Each queue is a sorted set. Delivered messages are held as unacked
    until ``ack`` drops them or ``nack(requeue=True)`` puts them back at the
    end of their priority band.
    """

    def __init__(self, redis_factory: Callable[..., redis.Redis] = redis.Redis) -> None:
        self.redis_factory = redis_factory
        self.client: Optional[redis.Redis] = None
        self.host = None
        self.port = None
        self.declared: set[str] = set()
        self.consumers: dict[str, tuple[str, Callable[[Message], None]]] = {}
        self.unacked: dict[str, tuple[str, str, int]] = {}

    def connect(
        self,
        host: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        if self.client is not None:
            return

        client = self.redis_factory(
            host=host,
            port=port,
            username=username,
            password=password,
            decode_responses=True,
        )

        try:
            client.ping()

        except redis.RedisError as exp:
            raise custom_exceptions.ConnectionFailure(
                f"Could not connect to queue server {host}:{port}: {exp}", host, port
            ) from exp

        self.client = client
        self.host, self.port = host, port
        logger.debug(f"connected to queue server: {host}:{port}")

    def disconnect(self) -> None:
        if self.client is None:
            return

        # anything still unacked goes back to its queue
        for tag in list(self.unacked):
            try:
                self.nack(tag, requeue=True)

            except (custom_exceptions.ConnectionFailure, custom_exceptions.ServerFailure) as exp:
                logger.error(f"Failed to requeue message {tag} on disconnect: {exp}")

        try:
            self.client.close()

        except redis.RedisError as exp:
            logger.debug(f"error while closing queue connection: {exp}")

        self.client = None
        self.consumers = {}
        self.unacked = {}

    def is_connected(self) -> bool:
        return self.client is not None

    def declare(self, queue_name: str) -> None:
        self.declared.add(queue_name)

    def publish(self, queue_name: str, payload: bytes, properties: Optional[dict] = None) -> None:
        """Add a message to ``queue_name``.

        Args:
            queue_name (str): Queue to publish to
            payload (bytes): Message body
            properties (dict, optional): priority (0-255), correlation_id, reply_to
        """
        properties = dict(properties or {})
        priority = properties["priority"] = min(max(int(properties.get("priority", 0)), 0), 255)

        envelope = utils.serialize({"tag": utils.generate_id(), "body": payload, "properties": properties})

        with self._errors():
            self._client().zadd(queue_name, {envelope: self._score(queue_name, priority)})

    def _score(self, queue_name: str, priority: int) -> int:
        return (255 - priority) * _SCORE_SPAN + self._client().incr(f"{queue_name}:seq")

    def consume(self, queue_name: str, handler: Callable[[Message], None]) -> str:
        consumer_tag = utils.generate_id()
        self.consumers[consumer_tag] = (queue_name, handler)
        return consumer_tag

    def cancel(self, consumer_tag: str) -> None:
        self.consumers.pop(consumer_tag, None)

    def wait_for_messages(self, timeout: Optional[float] = None) -> bool:
        """Deliver at most one message to its consumer.

        Args:
            timeout (float, optional): Seconds to block, None blocks until a message arrives

        Returns:
            bool: True if a message was delivered
        """
        if not self.consumers:
            return False

        handlers = {}
        for queue_name, handler in self.consumers.values():
            handlers.setdefault(queue_name, handler)

        with self._errors():
            popped = self._client().bzpopmin(list(handlers), timeout=timeout or 0)

        if popped is None:
            return False

        queue_name, member, _ = popped
        envelope = utils.deserialize(member)
        delivery_tag = envelope["tag"]
        self.unacked[delivery_tag] = (queue_name, member, envelope["properties"].get("priority", 0))

        handlers[queue_name](
            Message(
                body=envelope["body"],
                queue=queue_name,
                delivery_tag=delivery_tag,
                properties=envelope["properties"],
            )
        )
        return True

    def ack(self, delivery_tag: str) -> None:
        self.unacked.pop(delivery_tag, None)

    def nack(self, delivery_tag: str, requeue: bool = False) -> None:
        delivered = self.unacked.pop(delivery_tag, None)
        if delivered is None:
            return

        queue_name, member, priority = delivered
        if not requeue:
            logger.debug(f"dropping rejected message {delivery_tag} from {queue_name}")
            return

        # back of its priority band so it cannot starve the messages behind it
        with self._errors():
            self._client().zadd(queue_name, {member: self._score(queue_name, priority)})

    def _client(self) -> redis.Redis:
        if self.client is None:
            raise custom_exceptions.ConnectionFailure("Not connected to a queue server", self.host, self.port)

        return self.client

    def _errors(self):
        return _RedisErrors(self.host, self.port)


class _RedisErrors:
    """Translate redis errors into the transport's error taxonomy."""

    def __init__(self, host, port) -> None:
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            return False

        if isinstance(exc, redis.ConnectionError):
            raise custom_exceptions.ConnectionFailure(
                f"Lost connection to queue server {self.host}:{self.port}: {exc}", self.host, self.port
            ) from exc

        if isinstance(exc, redis.RedisError):
            raise custom_exceptions.ServerFailure(f"Queue server error: {exc}") from exc

        return False
