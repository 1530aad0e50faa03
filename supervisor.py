import logging
import os
import subprocess
import sys
import time
import uuid
import weakref
from typing import Optional

import constants
import custom_exceptions
import utils
from models import WorkerStatus

logger = logging.getLogger(__name__)

CLOSURE_WORKER = os.path.join(os.path.dirname(os.path.abspath(__file__)), "closure_worker.py")


def _terminate_process(process: subprocess.Popen, timeout: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=timeout)


class WorkerInstance:
    """One supervised worker process.

    The process inherits the parent's environment plus the TAMER_* variables
    that tell the worker which transport and servers to use.
    """

    def __init__(
        self,
        target: str,
        protocol: str,
        servers: list[str],
        username: Optional[str] = None,
        password: Optional[str] = None,
        args: Optional[list[str]] = None,
        python: str = sys.executable,
        stop_timeout: float = constants.STOP_TIMEOUT,
    ) -> None:
        if target != constants.CLOSURE_TARGET and not os.path.isfile(target):
            raise custom_exceptions.InvalidTarget(target)

        self.id = uuid.uuid4().hex[:13]
        self.target = target
        self.protocol = protocol
        self.servers = list(servers)
        self.username = username
        self.password = password
        self.args = list(args or [])
        self.python = python
        self.stop_timeout = stop_timeout
        self.process: Optional[subprocess.Popen] = None
        self._stopped = False

    def command(self) -> list[str]:
        target = CLOSURE_WORKER if self.target == constants.CLOSURE_TARGET else self.target
        return [self.python, target, *self.args]

    def environment(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                constants.TAMER_ENABLED: constants.TRUE_MARKER,
                constants.TAMER_PROTOCOL: self.protocol,
                constants.TAMER_SERVERS: ",".join(self.servers),
                constants.TAMER_USERNAME: self.username or "",
                constants.TAMER_PASSWORD: self.password or "",
                constants.TAMER_INSTANCE_ID: self.id,
            }
        )
        return env

    def start(self) -> None:
        if self.is_running():
            return

        logger.debug(f"starting worker {self.id}")
        self.process = subprocess.Popen(self.command(), env=self.environment())
        self._stopped = False

    def stop(self) -> None:
        if self.process is None or self._stopped:
            return

        logger.debug(f"Stopping worker {self.id}")
        if self.process.poll() is None:
            _terminate_process(self.process, self.stop_timeout)

        self._stopped = True

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def exit_code(self) -> Optional[int]:
        return self.process.poll() if self.process is not None else None

    @property
    def state(self) -> str:
        if self.process is None:
            return constants.UNSTARTED

        if self.is_running():
            return constants.RUNNING

        return constants.STOPPED if self._stopped else constants.CRASHED

    def status(self) -> WorkerStatus:
        return WorkerStatus(id=self.id, target=self.target, state=self.state, pid=self.pid)


def _stop_all(workers: list[WorkerInstance]) -> None:
    for worker in workers:
        worker.stop()


class Supervisor:
    """Starts, watches and restarts a pool of worker processes.

    Every worker is stopped when the supervisor is closed, garbage collected
    or the interpreter exits.
    """

    def __init__(
        self,
        protocol: str,
        servers,
        username: Optional[str] = None,
        password: Optional[str] = None,
        args: Optional[list[str]] = None,
        startup_grace: float = constants.STARTUP_GRACE,
        stop_timeout: float = constants.STOP_TIMEOUT,
        python: str = sys.executable,
    ) -> None:
        self.protocol = protocol
        self.servers = [f"{host}:{port}" for host, port in utils.parse_servers(servers)]
        self.username = username
        self.password = password
        self.args = list(sys.argv[1:]) if args is None else list(args)
        self.startup_grace = startup_grace
        self.stop_timeout = stop_timeout
        self.python = python
        self.workers: list[WorkerInstance] = []
        self._finalizer = weakref.finalize(self, _stop_all, self.workers)

    def add_worker(self, target: str, instances: int = 1) -> list[WorkerInstance]:
        """Add ``instances`` workers running ``target``.

        Args:
            target (str): Path of the worker script, or "closure" for the closure worker
            instances (int): Number of processes to add

        Raises:
            InvalidTarget: if ``target`` is not an existing file
        """
        added = [
            WorkerInstance(
                target,
                self.protocol,
                self.servers,
                self.username,
                self.password,
                args=self.args,
                python=self.python,
                stop_timeout=self.stop_timeout,
            )
            for _ in range(instances)
        ]
        self.workers.extend(added)
        return added

    def get_worker(self, worker_id: str) -> Optional[WorkerInstance]:
        for worker in self.workers:
            if worker.id == worker_id:
                return worker

        return None

    def start(self) -> None:
        """Start every worker and make sure each survives its startup grace.

        Raises:
            WorkerTerminated: if a worker exited during startup
        """
        for worker in self.workers:
            worker.start()

        if self.startup_grace:
            time.sleep(self.startup_grace)

        for worker in self.workers:
            if not worker.is_running():
                raise custom_exceptions.WorkerTerminated(
                    worker.id, f"Worker {worker.id} has terminated with exit code {worker.exit_code}"
                )

            logger.debug(f"worker {worker.id} is running")

    def stop(self) -> None:
        _stop_all(self.workers)

    def restart(self) -> None:
        for worker in self.workers:
            worker.stop()
            worker.start()

    def monitor(
        self,
        blocking: bool = False,
        auto_restart: bool = True,
        interval: float = constants.MONITOR_INTERVAL,
    ) -> list[str]:
        """Check every worker and restart the ones that are not running.

        Args:
            blocking (bool): Keep checking every ``interval`` seconds instead of returning after one pass
            auto_restart (bool): Restart dead workers, otherwise raise on the first one
            interval (float): Seconds between passes when blocking

        Returns:
            list: ids of the workers restarted in the last pass

        Raises:
            WorkerTerminated: if a worker is not running and ``auto_restart`` is off
        """
        while True:
            restarted = []
            for worker in self.workers:
                if worker.is_running():
                    continue

                if not auto_restart:
                    raise custom_exceptions.WorkerTerminated(worker.id)

                logger.warning(f"worker {worker.id} is not running, restarting")
                worker.start()
                restarted.append(worker.id)

            if not blocking:
                return restarted

            time.sleep(interval)

    def status(self) -> list[WorkerStatus]:
        return [worker.status() for worker in self.workers]

    def close(self) -> None:
        self._finalizer()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
