import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterator, Optional

import constants
import custom_exceptions
import utils
from models import Completion, Job, JobResult, Task
from reconnect import ReconnectPolicy

logger = logging.getLogger(__name__)


class ServerCache:
    """Servers grouped by host, each host holding an ordered set of ports."""

    def __init__(self) -> None:
        self._hosts: dict[str, list[int]] = {}

    def add(self, host: str, port: int) -> bool:
        ports = self._hosts.setdefault(host, [])
        if port in ports:
            return False

        ports.append(port)
        return True

    def __iter__(self) -> Iterator[tuple[str, int]]:
        for host, ports in self._hosts.items():
            for port in ports:
                yield host, port

    def __len__(self) -> int:
        return sum(len(ports) for ports in self._hosts.values())

    def __contains__(self, server) -> bool:
        host, port = server
        return port in self._hosts.get(host, [])

    def as_strings(self) -> list[str]:
        return [f"{host}:{port}" for host, port in self]


class _ServerMixin:
    server_cache: ServerCache

    def add_server(self, host: str, port: int) -> None:
        """Add a server; adding the same host:port twice is a no-op.

        If the protocol is already connected it reconnects so the new
        server is picked up.

        Raises:
            ConnectionFailure: if the reconnect fails
        """
        if not self.server_cache.add(host, int(port)):
            return

        if self.is_connected():
            self.reconnect()

    def add_servers(self, servers) -> None:
        for host, port in utils.parse_servers(servers):
            self.add_server(host, port)

    @property
    def servers(self) -> list[str]:
        return self.server_cache.as_strings()

    def reconnect(self) -> None:
        self.disconnect()
        self.connect()

    @property
    def automatic_reconnect(self) -> bool:
        return self.reconnect_policy.enabled

    def enable_automatic_reconnect(self, enable: bool) -> None:
        self.reconnect_policy.enabled = enable
        self.reconnect_policy.reset()

    def set_options(self, options: dict) -> None:
        self.options = dict(options)

    def get_options(self) -> dict:
        return dict(self.options)

    def clear_options(self) -> None:
        self.options = {}

    def perform_autoreconf(self) -> bool:
        if not self.is_connected():
            return False

        return self.reconnect_policy.perform(self.reconnect)

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()


class ClientProtocol(_ServerMixin, ABC):
    """Client side of a transport.

    Tasks are tracked by id in ``tasks`` from the moment they are queued
    until their JobResult is delivered. Queued tasks are only published
    when ``run`` is called.
    """

    protocol_name: str = ""

    def __init__(self, username: Optional[str] = None, password: Optional[str] = None) -> None:
        self.username = username
        self.password = password
        self.server_cache = ServerCache()
        self.options: dict = {}
        self.reconnect_policy = ReconnectPolicy()
        self.tasks: dict[str, Task] = {}
        self.unsent: list[Task] = []

    @abstractmethod
    def connect(self) -> None: ...

    @abstractmethod
    def disconnect(self) -> None: ...

    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    def do(self, task: Task) -> None: ...

    @abstractmethod
    def run(self) -> bool: ...

    def queue(self, task: Task) -> None:
        self.perform_autoreconf()
        self.track(task)
        self.unsent.append(task)

    def do_closure(self, closure: Callable) -> None:
        self.do(Task(constants.CLOSURE_FUNCTION, closure, closure=True))

    def queue_closure(self, closure: Callable, callback: Optional[Callable] = None) -> None:
        self.queue(Task(constants.CLOSURE_FUNCTION, closure, callback, closure=True))

    def track(self, task: Task) -> None:
        if task.id in self.tasks:
            raise custom_exceptions.DuplicateTask(task.id)

        self.tasks[task.id] = task

    def complete(self, job_result: JobResult) -> Completion:
        """Deliver a result to the task it belongs to.

        Results for ids that are not in flight are discarded; duplicates and
        late deliveries are expected under retries.
        """
        task = self.tasks.get(job_result.id)
        if task is None:
            logger.debug(f"discarding result for unknown task {job_result.id}")
            return Completion(id=job_result.id, delivered=False, reason="unknown correlation id")

        logger.debug(f"callback for task {task.id} with status {job_result.status}")
        reason = None
        try:
            if task.closure:
                task.run_callback(job_result.get_data())

            else:
                task.run_callback(job_result)

        except Exception as exp:
            logger.exception(f"Failed to run callback for task {task.id}")
            reason = f"callback raised: {exp}"

        finally:
            del self.tasks[task.id]

        return Completion(id=task.id, delivered=True, reason=reason)

    @property
    def pending(self) -> set[str]:
        return set(self.tasks)

    def take_unsent(self) -> list[Task]:
        unsent, self.unsent = self.unsent, []
        return unsent


class WorkerProtocol(_ServerMixin, ABC):
    """Worker side of a transport.

    The reserved closure function is always announced. Closure jobs are
    answered with an EXCEPTION result unless ``allow_closures`` is set.
    """

    protocol_name: str = ""

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        allow_closures: bool = False,
    ) -> None:
        self.username = username
        self.password = password
        self.allow_closures = allow_closures
        self.server_cache = ServerCache()
        self.options: dict = {}
        self.reconnect_policy = ReconnectPolicy()
        self._functions: dict[str, tuple[Callable, Any]] = {}

    @abstractmethod
    def connect(self) -> None: ...

    @abstractmethod
    def disconnect(self) -> None: ...

    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    def work(self, blocking: bool = True, timeout: int = 500, throw_errors: bool = False) -> None: ...

    def add_function(self, name: str, handler: Callable, context: Any = None) -> None:
        self._functions[name] = (handler, context)

    def remove_function(self, name: str) -> None:
        self._functions.pop(name, None)

    @property
    def functions(self) -> list[str]:
        names = [constants.CLOSURE_FUNCTION]
        for name in self._functions:
            if name != constants.CLOSURE_FUNCTION:
                names.append(name)

        return names

    def handles(self, job: Job) -> bool:
        return job.closure or job.name in self._functions

    def execute(self, job: Job) -> JobResult:
        """Run the handler for ``job`` and wrap its return value.

        Raises:
            WorkerFailure: if the handler raised; ``result`` carries the
                EXCEPTION JobResult to report back
            KeyError: if no handler is registered for the job's function
        """
        if not self.handles(job):
            raise KeyError(job.name)

        try:
            if job.closure:
                logger.debug(f"received closure: {job.id}")
                result = self._run_closure(job.get_data())

            else:
                handler, context = self._functions[job.name]
                logger.debug(f"received function: {job.id}")
                result = handler(job.get_data(), context)

        except Exception as exp:
            logger.error(f"Job {job.id} ({job.name}) raised: {exp}")
            failure = custom_exceptions.WorkerFailure(job.id)
            failure.result = JobResult.from_job(
                job,
                constants.EXCEPTION,
                f"Exception occurred while executing the function. ERROR: {exp}",
            )
            raise failure from exp

        logger.debug(f"completed job: {job.id}")
        return JobResult.from_job(job, constants.SUCCESS, result)

    def _run_closure(self, closure: Callable):
        if not self.allow_closures:
            raise PermissionError("closure jobs are not accepted by this worker")

        return closure()
