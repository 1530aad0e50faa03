import logging
from enum import Enum
from typing import Callable, Mapping, Optional

import constants
import custom_exceptions
from config import Configuration, WorkerVariables
from models import Task, WorkerStatus
from protocol import ClientProtocol, WorkerProtocol
from pull_client import PullClient
from pull_worker import PullWorker
from push_client import PushClient
from push_worker import PushWorker
from supervisor import Supervisor, WorkerInstance

logger = logging.getLogger(__name__)


class ProtocolType(str, Enum):
    PUSH = constants.PUSH
    PULL = constants.PULL

    @classmethod
    def parse(cls, protocol) -> "ProtocolType":
        """Raises InvalidProtocol for anything but push or pull (case-insensitive)."""
        try:
            return cls(str(getattr(protocol, "value", protocol)).lower())

        except ValueError:
            raise custom_exceptions.InvalidProtocol(protocol)


_CLIENTS = {ProtocolType.PUSH: PushClient, ProtocolType.PULL: PullClient}
_WORKERS = {ProtocolType.PUSH: PushWorker, ProtocolType.PULL: PullWorker}


def create_client(protocol, username: Optional[str] = None, password: Optional[str] = None) -> ClientProtocol:
    return _CLIENTS[ProtocolType.parse(protocol)](username, password)


def create_worker(
    protocol,
    username: Optional[str] = None,
    password: Optional[str] = None,
    allow_closures: bool = False,
) -> WorkerProtocol:
    return _WORKERS[ProtocolType.parse(protocol)](username, password, allow_closures)


class Tamer:
    """A dispatch context in either client or worker mode.

    Client mode owns a client protocol and a supervisor for local worker
    processes; worker mode owns a worker protocol configured from the
    TAMER_* environment. Calling an operation of the other mode raises
    InvalidMode.
    """

    def __init__(
        self,
        mode: str,
        protocol: ProtocolType,
        client: Optional[ClientProtocol] = None,
        worker: Optional[WorkerProtocol] = None,
        supervisor: Optional[Supervisor] = None,
    ) -> None:
        self.mode = mode
        self.protocol = protocol
        self.client = client
        self.worker = worker
        self.supervisor = supervisor

    @classmethod
    def init(cls, configuration: Optional[Configuration] = None, **settings) -> "Tamer":
        """Connect a client-mode context.

        Args:
            configuration (Configuration, optional): Defaults to Configuration(**settings)

        Raises:
            InvalidProtocol: if the configured protocol is unknown
            ConnectionFailure: if a server cannot be reached
        """
        if configuration is None:
            configuration = Configuration(**settings)

        protocol = ProtocolType.parse(configuration.protocol)
        client = create_client(protocol, configuration.username, configuration.password)
        client.add_servers(configuration.servers)
        client.connect()

        supervisor = Supervisor(
            protocol.value,
            configuration.servers,
            configuration.username,
            configuration.password,
        )

        logger.debug(f"tamer initialized in client mode over {protocol.value}")
        return cls(constants.CLIENT, protocol, client=client, supervisor=supervisor)

    @classmethod
    def init_worker(cls, environ: Optional[Mapping[str, str]] = None, allow_closures: bool = False) -> "Tamer":
        """Connect a worker-mode context from the TAMER_* environment.

        Raises:
            UnsupervisedWorker: if TAMER_ENABLED is not "true"
            InvalidProtocol: if TAMER_PROTOCOL is unknown
            ConnectionFailure: if a server cannot be reached
        """
        variables = WorkerVariables.from_environment(environ)

        protocol = ProtocolType.parse(variables.protocol)
        worker = create_worker(protocol, variables.username, variables.password, allow_closures)
        worker.add_servers(variables.servers)
        worker.connect()

        logger.debug(f"tamer worker {variables.instance_id} initialized over {protocol.value}")
        return cls(constants.WORKER, protocol, worker=worker)

    def _client(self) -> ClientProtocol:
        if self.mode != constants.CLIENT:
            raise custom_exceptions.InvalidMode(constants.CLIENT)

        return self.client

    def _worker(self) -> WorkerProtocol:
        if self.mode != constants.WORKER:
            raise custom_exceptions.InvalidMode(constants.WORKER)

        return self.worker

    def _supervisor(self) -> Supervisor:
        if self.mode != constants.CLIENT:
            raise custom_exceptions.InvalidMode(constants.CLIENT)

        return self.supervisor

    def is_connected(self) -> bool:
        protocol = self.client if self.mode == constants.CLIENT else self.worker
        return protocol is not None and protocol.is_connected()

    def disconnect(self) -> None:
        if self.mode == constants.CLIENT:
            self.client.disconnect()

        else:
            self.worker.disconnect()

    def reconnect(self) -> None:
        if self.mode == constants.CLIENT:
            self.client.reconnect()

        else:
            self.worker.reconnect()

    def close(self) -> None:
        """Disconnect and stop every supervised worker."""
        self.disconnect()
        if self.supervisor is not None:
            self.supervisor.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # client mode

    def do(self, task: Task) -> None:
        self._client().do(task)

    def do_closure(self, closure: Callable) -> None:
        self._client().do_closure(closure)

    def queue(self, task: Task) -> None:
        self._client().queue(task)

    def queue_closure(self, closure: Callable, callback: Optional[Callable] = None) -> None:
        self._client().queue_closure(closure, callback)

    def run(self) -> bool:
        return self._client().run()

    def add_worker(self, target: str, instances: int = 1) -> list[WorkerInstance]:
        return self._supervisor().add_worker(target, instances)

    def start_workers(self) -> None:
        self._supervisor().start()

    def stop_workers(self) -> None:
        self._supervisor().stop()

    def restart_workers(self) -> None:
        self._supervisor().restart()

    def monitor(self, blocking: bool = False, auto_restart: bool = True) -> list[str]:
        return self._supervisor().monitor(blocking, auto_restart)

    def worker_status(self) -> list[WorkerStatus]:
        return self._supervisor().status()

    # worker mode

    def add_function(self, name: str, handler: Callable, context=None) -> None:
        self._worker().add_function(name, handler, context)

    def remove_function(self, name: str) -> None:
        self._worker().remove_function(name)

    def work(self, blocking: bool = True, timeout: int = 500, throw_errors: bool = False) -> None:
        self._worker().work(blocking, timeout, throw_errors)
