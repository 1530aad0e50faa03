import pydantic
import pytest

import constants
import custom_exceptions
import utils
from config import Configuration, WorkerVariables
from models import Job, JobResult, Task, TaskPriority, decode_message


def test_priority_scaling_bounds():
    assert utils.calculate_priority(TaskPriority.LOW) == 0
    assert utils.calculate_priority(TaskPriority.HIGH) == 255
    assert utils.calculate_priority(TaskPriority.NORMAL) == 128
    assert utils.calculate_priority(-4) == 0
    assert utils.calculate_priority(9) == 255


def test_priority_scaling_is_monotonic():
    scaled = [utils.calculate_priority(p) for p in range(-2, 5)]
    assert scaled == sorted(scaled)
    assert all(0 <= p <= 255 for p in scaled)


def test_task_rejects_invalid_priority():
    with pytest.raises(custom_exceptions.InvalidPriority):
        Task("add", (1, 2), priority=7)

    task = Task("add", (1, 2))
    with pytest.raises(custom_exceptions.InvalidPriority):
        task.priority = -1

    assert task.priority == TaskPriority.NORMAL


def test_task_ids_are_unique_and_read_only():
    tasks = [Task.create("add", i) for i in range(50)]
    assert len({task.id for task in tasks}) == 50

    with pytest.raises(AttributeError):
        tasks[0].id = "other"


def test_job_round_trip():
    task = Task("add", ((1, 2), {"z": 3}), priority=TaskPriority.HIGH)
    job = Job.from_task(task)

    decoded = Job.decode(job.encode())

    assert decoded == job
    assert decoded.id == task.id
    assert decoded.name == "add"
    assert decoded.get_data() == ((1, 2), {"z": 3})
    assert decoded.closure is False


def test_closure_round_trip():
    base = 40
    job = Job.from_task(Task(constants.CLOSURE_FUNCTION, lambda: base + 2, closure=True))

    decoded = Job.decode(job.encode())

    assert decoded.closure is True
    assert decoded.get_data()() == 42


def test_job_result_round_trip():
    job = Job.from_task(Task("add", (1, 2)))
    job_result = JobResult.from_job(job, constants.SUCCESS, 3)

    decoded = JobResult.decode(job_result.encode())

    assert decoded == job_result
    assert decoded.id == job.id
    assert decoded.successful
    assert decoded.get_data() == 3


def test_decode_message_picks_the_wire_type():
    job = Job.from_task(Task("add", (1, 2)))
    job_result = JobResult.failure(job.id, "nope")

    assert isinstance(decode_message(job.encode()), Job)
    assert isinstance(decode_message(job_result.encode()), JobResult)
    assert not decode_message(job_result.encode()).successful

    with pytest.raises(ValueError):
        decode_message(b'{"type": "something_else", "id": "x"}')


def test_job_result_rejects_unknown_status():
    with pytest.raises(pydantic.ValidationError):
        JobResult(id="x", status="MAYBE", data="")


def test_parse_servers():
    assert utils.parse_servers("a:1, b:2") == [("a", 1), ("b", 2)]
    assert utils.parse_servers(["::1:4730"]) == [("::1", 4730)]

    with pytest.raises(custom_exceptions.InvalidArguments):
        utils.parse_servers("localhost")

    with pytest.raises(custom_exceptions.InvalidArguments):
        utils.parse_servers("localhost:port")


def test_configuration_defaults_and_validation():
    configuration = Configuration()
    assert configuration.protocol == constants.PUSH
    assert configuration.servers == ["127.0.0.1:4730"]

    configuration = Configuration(protocol="PULL", servers="10.0.0.1:6379,10.0.0.2:6379")
    assert configuration.protocol == constants.PULL
    assert configuration.servers == ["10.0.0.1:6379", "10.0.0.2:6379"]

    with pytest.raises(pydantic.ValidationError):
        Configuration(protocol="gearman")

    with pytest.raises(pydantic.ValidationError):
        Configuration(servers=["no-port"])


def test_worker_variables_require_the_enabled_marker():
    with pytest.raises(custom_exceptions.UnsupervisedWorker):
        WorkerVariables.from_environment({})

    with pytest.raises(custom_exceptions.UnsupervisedWorker):
        WorkerVariables.from_environment({constants.TAMER_ENABLED: "1"})


def test_worker_variables_from_environment():
    variables = WorkerVariables.from_environment(
        {
            constants.TAMER_ENABLED: "true",
            constants.TAMER_PROTOCOL: "pull",
            constants.TAMER_SERVERS: "h1:6379,h2:6379",
            constants.TAMER_USERNAME: "",
            constants.TAMER_PASSWORD: "secret",
            constants.TAMER_INSTANCE_ID: "abc",
        }
    )

    assert variables.enabled
    assert variables.protocol == "pull"
    assert variables.servers == ["h1:6379", "h2:6379"]
    assert variables.username is None
    assert variables.password == "secret"
    assert variables.instance_id == "abc"
