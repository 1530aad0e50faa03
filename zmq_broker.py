import logging
import time
from typing import Callable, Optional

import zmq

import constants
import custom_exceptions

logger = logging.getLogger(__name__)


def endpoint(host: str, port: int) -> str:
    return f"tcp://{host}:{port}"


def frames(*parts) -> list[bytes]:
    return [part if isinstance(part, bytes) else str(part).encode("utf-8") for part in parts]


def probe(context: zmq.Context, host: str, port: int, timeout_ms: int) -> None:
    """Ping a job server and wait for its pong.

    zmq connects lazily, so this is the only way to learn that a server is
    unreachable at connect time.

    Raises:
        ConnectionFailure: if no pong arrives within ``timeout_ms``
    """
    socket = context.socket(zmq.DEALER)
    socket.setsockopt(zmq.LINGER, 0)
    try:
        socket.connect(endpoint(host, port))
        socket.send_string(constants.PING)

        if not socket.poll(timeout_ms):
            raise custom_exceptions.ConnectionFailure(
                f"Failed to connect to job server: {host}:{port}", host, port
            )

        socket.recv_multipart()

    except zmq.ZMQError as exp:
        raise custom_exceptions.ConnectionFailure(
            f"Failed to connect to job server: {host}:{port} ({exp})", host, port
        ) from exp

    finally:
        socket.close()


class BrokerClientConnection:
    """One logical client connection to every configured job server.

    A single DEALER socket is connected to all servers; submissions are
    spread across them and results come back on the same socket.
    Results are handed to the registered callbacks from ``run_pending``.
    """

    def __init__(self, context: Optional[zmq.Context] = None, timeout_ms: int = constants.CONNECT_TIMEOUT) -> None:
        self.context = context or zmq.Context.instance()
        self.timeout_ms = timeout_ms
        self.socket = None
        self.endpoints: list[str] = []
        self.pending: set[str] = set()
        self._callbacks: dict[str, Callable[[str, bytes], None]] = {}

    def connect(self, host: str, port: int) -> None:
        probe(self.context, host, port, self.timeout_ms)

        if self.socket is None:
            self.socket = self.context.socket(zmq.DEALER)
            self.socket.setsockopt(zmq.LINGER, 0)

        self.socket.connect(endpoint(host, port))
        self.endpoints.append(endpoint(host, port))
        logger.debug(f"connected to job server: {host}:{port}")

    def disconnect(self) -> None:
        if self.socket is not None:
            self.socket.close()

        self.socket = None
        self.endpoints = []
        self.pending.clear()

    def is_connected(self) -> bool:
        return self.socket is not None

    def set_complete_callback(self, callback: Callable[[str, bytes], None]) -> None:
        self._callbacks[constants.COMPLETE] = callback

    def set_fail_callback(self, callback: Callable[[str, bytes], None]) -> None:
        self._callbacks[constants.FAIL] = callback

    def set_data_callback(self, callback: Callable[[str, bytes], None]) -> None:
        self._callbacks[constants.DATA] = callback

    def set_status_callback(self, callback: Callable[[str, bytes], None]) -> None:
        self._callbacks[constants.STATUS] = callback

    def clear_callbacks(self) -> None:
        self._callbacks = {}

    def publish(
        self,
        tier: str,
        function_name: str,
        payload: bytes,
        correlation_id: str,
        background: bool = False,
    ) -> None:
        """Submit a job at ``tier``.

        Background jobs are fire-and-forget: the job server does not route
        their results back and ``run_pending`` does not wait for them.

        Raises:
            ConnectionFailure: if not connected
            ServerFailure: if the socket rejects the submission
        """
        if self.socket is None:
            raise custom_exceptions.ConnectionFailure("Not connected to a job server")

        try:
            self.socket.send_multipart(
                frames(constants.SUB, tier, "1" if background else "0", function_name, correlation_id, payload)
            )

        except zmq.ZMQError as exp:
            raise custom_exceptions.ServerFailure(f"Failed to submit job {correlation_id}: {exp}") from exp

        if not background:
            self.pending.add(correlation_id)

    def run_pending(self, timeout_ms: Optional[int] = None) -> bool:
        """Receive results until no foreground job is pending.

        Args:
            timeout_ms (int, optional): Longest wait for a single message, None waits forever

        Returns:
            bool: False if the wait timed out or the socket failed
        """
        if self.socket is None:
            return False

        while self.pending:
            try:
                if not self.socket.poll(timeout_ms):
                    logger.error(f"Timed out waiting for {len(self.pending)} job(s)")
                    return False

                message = self.socket.recv_multipart()

            except zmq.ZMQError as exp:
                logger.error(f"Job server error while waiting for results: {exp}")
                return False

            self._dispatch(message)

        return True

    def _dispatch(self, message: list[bytes]) -> None:
        if len(message) != 4 or message[0].decode() != constants.RES:
            logger.debug(f"ignoring unexpected message from job server: {message[:1]}")
            return

        event, correlation_id, payload = message[1].decode(), message[2].decode(), message[3]

        if event in (constants.COMPLETE, constants.FAIL):
            self.pending.discard(correlation_id)

        callback = self._callbacks.get(event)
        if callback is not None:
            callback(correlation_id, payload)


class BrokerWorkerConnection:
    """A worker's connection to one job server."""

    def __init__(
        self,
        worker_id: str,
        context: Optional[zmq.Context] = None,
        timeout_ms: int = constants.CONNECT_TIMEOUT,
    ) -> None:
        self.worker_id = worker_id
        self.context = context or zmq.Context.instance()
        self.timeout_ms = timeout_ms
        self.socket = None
        self.host = None
        self.port = None
        self.last_error: Optional[str] = None
        self._request_sent_at: Optional[float] = None

    def connect(self, host: str, port: int) -> None:
        if self.socket is not None:
            return

        probe(self.context, host, port, self.timeout_ms)

        self.socket = self.context.socket(zmq.DEALER)
        self.socket.setsockopt(zmq.LINGER, 0)
        self.socket.setsockopt(zmq.IDENTITY, bytes(self.worker_id, "utf-8"))
        self.socket.connect(endpoint(host, port))
        self.host, self.port = host, port
        logger.debug(f"connected to job server: {host}:{port}")

    def disconnect(self) -> None:
        if self.socket is not None:
            self.socket.close()

        self.socket = None
        self._request_sent_at = None

    def is_connected(self) -> bool:
        return self.socket is not None

    def register(self, function_names: list[str]) -> None:
        self._send(constants.REG, *function_names)

    def heartbeat(self) -> None:
        self._send(constants.HBT)

    def send_result(self, event: str, correlation_id: str, payload: bytes = b"") -> None:
        self._send(constants.RES, event, correlation_id, payload)

    def grab(self, timeout_ms: int) -> tuple[int, Optional[tuple[str, str, bytes]]]:
        """Ask the job server for a job and wait up to ``timeout_ms`` for one.

        A NOJOB answer puts the worker to sleep until the server sends a
        NOOP wake-up, after which the request is repeated.

        Returns:
            tuple(return_code, job): job is (function_name, correlation_id, payload)
                when return_code is RC_SUCCESS, otherwise None
        """
        if self.socket is None:
            return constants.RC_COULD_NOT_CONNECT, None

        deadline = time.monotonic() + timeout_ms / 1000

        try:
            if self._request_sent_at is None:
                self._request()

            while True:
                remaining = max(0, int((deadline - time.monotonic()) * 1000))

                if not self.socket.poll(remaining):
                    if (
                        self._request_sent_at is not None
                        and time.monotonic() - self._request_sent_at > self.timeout_ms / 1000
                    ):
                        self.last_error = f"No answer from job server {self.host}:{self.port}"
                        return constants.RC_COULD_NOT_CONNECT, None

                    return constants.RC_TIMEOUT, None

                message = self.socket.recv_multipart()
                kind = message[0].decode()

                if kind == constants.JOB_ASSIGN and len(message) == 4:
                    self._request_sent_at = None
                    return constants.RC_SUCCESS, (message[1].decode(), message[2].decode(), message[3])

                if kind == constants.NOJOB:
                    self._request_sent_at = None

                elif kind == constants.NOOP and self._request_sent_at is None:
                    self._request()

        except zmq.ZMQError as exp:
            self.last_error = str(exp)
            return constants.RC_ERROR, None

    def _request(self) -> None:
        self.socket.send_string(constants.REQ)
        self._request_sent_at = time.monotonic()

    def _send(self, *parts) -> None:
        if self.socket is None:
            raise custom_exceptions.ConnectionFailure("Not connected to a job server", self.host, self.port)

        try:
            self.socket.send_multipart(frames(*parts))

        except zmq.ZMQError as exp:
            raise custom_exceptions.ServerFailure(f"Failed to send to job server: {exp}") from exp
