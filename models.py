from enum import IntEnum
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

import constants
import custom_exceptions
import utils


class TaskPriority(IntEnum):
    LOW = constants.LOW
    NORMAL = constants.NORMAL
    HIGH = constants.HIGH


class Task:
    """A unit of work requested by a caller.

    The callback is local to the submitting process and never leaves it;
    only the Job projection of a task is sent over the wire.
    """

    def __init__(
        self,
        function_name: str,
        data: Any = None,
        callback: Optional[Callable] = None,
        priority: int = TaskPriority.NORMAL,
        closure: bool = False,
    ) -> None:
        self._id = utils.generate_id()
        self.function_name = function_name
        self.data = data
        self.callback = callback
        self.priority = priority
        self.closure = closure

    @classmethod
    def create(cls, function_name: str, data: Any = None, callback: Optional[Callable] = None) -> "Task":
        return cls(function_name, data, callback)

    @property
    def id(self) -> str:
        return self._id

    @property
    def priority(self) -> TaskPriority:
        return self._priority

    @priority.setter
    def priority(self, value: int) -> None:
        try:
            self._priority = TaskPriority(value)

        except ValueError:
            raise custom_exceptions.InvalidPriority(value)

    def run_callback(self, result) -> None:
        if self.callback is not None:
            self.callback(result)

    def __repr__(self) -> str:
        return (
            f"Task(id={self._id!r}, function_name={self.function_name!r}, "
            f"priority={self._priority.name}, closure={self.closure})"
        )


class Job(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tamer_job"] = constants.JOB
    id: str
    name: str
    data: str
    closure: bool = False

    @classmethod
    def from_task(cls, task: Task) -> "Job":
        return cls(
            id=task.id,
            name=task.function_name,
            data=utils.serialize(task.data),
            closure=task.closure,
        )

    def get_data(self):
        return utils.deserialize(self.data)

    def encode(self) -> bytes:
        return self.model_dump_json().encode()

    @classmethod
    def decode(cls, raw) -> "Job":
        return cls.model_validate_json(raw)


class JobResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tamer_job_result"] = constants.JOB_RESULT
    id: str
    status: Literal["SUCCESS", "FAILURE", "EXCEPTION"]
    data: str

    @classmethod
    def from_job(cls, job: Job, status: str, result: Any = None) -> "JobResult":
        return cls(id=job.id, status=status, data=utils.serialize(result))

    @classmethod
    def failure(cls, job_id: str, detail: Any = None) -> "JobResult":
        return cls(id=job_id, status=constants.FAILURE, data=utils.serialize(detail))

    @property
    def successful(self) -> bool:
        return self.status == constants.SUCCESS

    def get_data(self):
        return utils.deserialize(self.data)

    def encode(self) -> bytes:
        return self.model_dump_json().encode()

    @classmethod
    def decode(cls, raw) -> "JobResult":
        return cls.model_validate_json(raw)


_message_adapter = TypeAdapter(Annotated[Union[Job, JobResult], Field(discriminator="type")])


def decode_message(raw) -> Union[Job, JobResult]:
    """Decode either wire object, picked by its ``type`` field.

    Raises:
        pydantic.ValidationError: if the payload is neither a Job nor a JobResult
    """
    return _message_adapter.validate_json(raw)


class Completion(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    delivered: bool
    reason: Optional[str] = None


class WorkerStatus(BaseModel):
    id: str
    target: str
    state: str
    pid: Optional[int] = None


class SubmitTaskReq(BaseModel):
    function_name: str
    payload: Any = None
    priority: int = constants.NORMAL


class SubmitTaskRep(BaseModel):
    task_id: str


class MonitorRep(BaseModel):
    restarted: list[str]
