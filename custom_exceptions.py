class InvalidArguments(Exception):
    def __init__(self, message="Invalid arguments", *args) -> None:
        super().__init__(message)
        self.args = (message, *args)


class InvalidPriority(InvalidArguments):
    def __init__(self, priority, message="Invalid priority value") -> None:
        super().__init__(f"{message}: {priority!r}")
        self.priority = priority


class InvalidProtocol(InvalidArguments):
    def __init__(self, protocol, message="Invalid protocol type") -> None:
        super().__init__(f"{message}: {protocol!r}")
        self.protocol = protocol


class InvalidTarget(InvalidArguments):
    def __init__(self, target, message="The target file does not exist") -> None:
        super().__init__(f"{message}: {target}")
        self.target = target


class InvalidMode(Exception):
    def __init__(self, expected, message=None) -> None:
        super().__init__(message or f"Tamer is not running in {expected} mode")
        self.expected = expected


class ConnectionFailure(Exception):
    def __init__(self, message="Could not connect to the server", host=None, port=None) -> None:
        super().__init__(message)
        self.host = host
        self.port = port


class ServerFailure(Exception):
    def __init__(self, message="The server reported an error", code=None) -> None:
        super().__init__(message)
        self.code = code


class WorkerFailure(Exception):
    def __init__(self, jobId, message="Worker failed to execute the job") -> None:
        super().__init__(message)
        self.jobId = jobId


class UnsupervisedWorker(Exception):
    def __init__(self, message="Tamer is not enabled for this worker") -> None:
        super().__init__(message)


class DuplicateTask(Exception):
    def __init__(self, taskId, message="Task is already in flight") -> None:
        super().__init__(f"{message}: {taskId}")
        self.taskId = taskId


class WorkerTerminated(Exception):
    def __init__(self, workerId, message=None) -> None:
        super().__init__(message or f"Worker {workerId} is not running")
        self.workerId = workerId
