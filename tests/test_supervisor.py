import gc
import json
import time

import pytest

import constants
import custom_exceptions
from supervisor import Supervisor, WorkerInstance

SLEEPER = "import time\nwhile True:\n    time.sleep(0.1)\n"

ENV_DUMP = """import json, os, sys, time
keys = [k for k in os.environ if k.startswith("TAMER_")]
with open(sys.argv[1], "w") as f:
    json.dump({k: os.environ[k] for k in keys}, f)
while True:
    time.sleep(0.1)
"""


def write_script(tmp_path, name, source):
    path = tmp_path / name
    path.write_text(source)
    return str(path)


def supervisor(**kwargs):
    kwargs.setdefault("args", [])
    kwargs.setdefault("startup_grace", 0.3)
    kwargs.setdefault("stop_timeout", 2.0)
    return Supervisor(constants.PUSH, ["127.0.0.1:4730"], **kwargs)


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)

    return False


def test_missing_target_is_rejected():
    with pytest.raises(custom_exceptions.InvalidTarget):
        supervisor().add_worker("/no/such/worker.py", 1)


def test_closure_target_needs_no_file():
    [worker] = supervisor().add_worker(constants.CLOSURE_TARGET, 1)

    assert worker.command()[1].endswith("closure_worker.py")
    assert worker.state == constants.UNSTARTED


def test_only_the_killed_worker_is_restarted(tmp_path):
    target = write_script(tmp_path, "worker.py", SLEEPER)

    with supervisor() as sup:
        workers = sup.add_worker(target, 3)
        sup.start()
        assert all(worker.is_running() for worker in workers)

        pids = [worker.pid for worker in workers]
        workers[1].process.kill()
        workers[1].process.wait()

        assert sup.monitor() == [workers[1].id]
        assert all(worker.is_running() for worker in workers)
        assert workers[0].pid == pids[0]
        assert workers[2].pid == pids[2]
        assert workers[1].pid != pids[1]

        assert sup.monitor() == []

    assert all(worker.state == constants.STOPPED for worker in workers)


def test_worker_that_exits_during_startup_raises(tmp_path):
    target = write_script(tmp_path, "broken.py", "import sys\nsys.exit(3)\n")

    with supervisor(startup_grace=1.0) as sup:
        [worker] = sup.add_worker(target, 1)

        with pytest.raises(custom_exceptions.WorkerTerminated) as exc_info:
            sup.start()

        assert exc_info.value.workerId == worker.id
        assert worker.state == constants.CRASHED
        assert worker.exit_code == 3


def test_monitor_without_auto_restart_raises(tmp_path):
    target = write_script(tmp_path, "worker.py", SLEEPER)

    with supervisor() as sup:
        [worker] = sup.add_worker(target, 1)
        sup.start()
        worker.process.kill()
        worker.process.wait()

        with pytest.raises(custom_exceptions.WorkerTerminated):
            sup.monitor(auto_restart=False)


def test_workers_receive_tamer_environment(tmp_path):
    target = write_script(tmp_path, "env_worker.py", ENV_DUMP)
    out = tmp_path / "env.json"

    sup = Supervisor(
        constants.PULL,
        "10.0.0.1:6379,10.0.0.2:6379",
        username="guest",
        args=[str(out)],
        startup_grace=0.3,
        stop_timeout=2.0,
    )
    with sup:
        [worker] = sup.add_worker(target, 1)
        sup.start()

        assert wait_until(lambda: out.exists() and out.read_text())

    env = json.loads(out.read_text())
    assert env == {
        constants.TAMER_ENABLED: "true",
        constants.TAMER_PROTOCOL: constants.PULL,
        constants.TAMER_SERVERS: "10.0.0.1:6379,10.0.0.2:6379",
        constants.TAMER_USERNAME: "guest",
        constants.TAMER_PASSWORD: "",
        constants.TAMER_INSTANCE_ID: worker.id,
    }


def test_status_reports_every_worker(tmp_path):
    target = write_script(tmp_path, "worker.py", SLEEPER)

    with supervisor() as sup:
        sup.add_worker(target, 2)
        assert [status.state for status in sup.status()] == [constants.UNSTARTED] * 2

        sup.start()
        statuses = sup.status()
        assert [status.state for status in statuses] == [constants.RUNNING] * 2
        assert all(status.pid for status in statuses)
        assert all(status.target == target for status in statuses)

        sup.stop()
        sup.stop()
        assert [status.state for status in sup.status()] == [constants.STOPPED] * 2


def test_restart_replaces_every_process(tmp_path):
    target = write_script(tmp_path, "worker.py", SLEEPER)

    with supervisor() as sup:
        workers = sup.add_worker(target, 2)
        sup.start()
        pids = [worker.pid for worker in workers]

        sup.restart()

        assert all(worker.is_running() for worker in workers)
        assert [worker.pid for worker in workers] != pids


def test_instance_ids_are_unique(tmp_path):
    target = write_script(tmp_path, "worker.py", SLEEPER)
    workers = [WorkerInstance(target, constants.PUSH, ["127.0.0.1:4730"]) for _ in range(20)]

    assert len({worker.id for worker in workers}) == 20


def test_collected_supervisor_stops_its_workers(tmp_path):
    target = write_script(tmp_path, "worker.py", SLEEPER)
    sup = supervisor()
    workers = sup.add_worker(target, 2)
    sup.start()
    processes = [worker.process for worker in workers]

    del sup
    gc.collect()

    assert all(process.poll() is not None for process in processes)
    assert [worker.state for worker in workers] == [constants.STOPPED] * 2
