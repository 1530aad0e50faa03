localhost = "127.0.0.1"
dport = 4730
rport = 6379

# TaskPriority
LOW = 0
NORMAL = 1
HIGH = 2

# JobStatus
SUCCESS = "SUCCESS"
FAILURE = "FAILURE"
EXCEPTION = "EXCEPTION"

# ObjectType
JOB = "tamer_job"
JOB_RESULT = "tamer_job_result"

# RequestType
SUB = "sub"
REQ = "req"
RES = "res"
REG = "reg"
HBT = "hbt"
JOB_ASSIGN = "job"
NOJOB = "nojob"
NOOP = "noop"
PING = "ping"
PONG = "pong"

# ResultEvent
COMPLETE = "complete"
FAIL = "fail"
DATA = "data"
STATUS = "status"

# PriorityTier
HIGH_TIER = "high"
NORMAL_TIER = "normal"
LOW_TIER = "low"
TIERS = (HIGH_TIER, NORMAL_TIER, LOW_TIER)

# ProtocolType
PUSH = "push"
PULL = "pull"

# Mode
CLIENT = "client"
WORKER = "worker"

# WorkerState
UNSTARTED = "unstarted"
RUNNING = "running"
STOPPED = "stopped"
CRASHED = "crashed"

# ReturnCode
RC_SUCCESS = 0
RC_TIMEOUT = 2
RC_COULD_NOT_CONNECT = 3
RC_ERROR = 4

# WorkerExitCodes
EXIT_GRACEFUL_SHUTDOWN = 0
EXIT_EXCEPTION = 1
EXIT_UNSUPERVISED_WORKER = 2
EXIT_PROTOCOL_UNAVAILABLE = 3
EXIT_SERVER_CONNECTION_FAILED = 4

# Reserved names
CLOSURE_FUNCTION = "tamer_closure"
CLOSURE_TARGET = "closure"
JOB_QUEUE = "tamer_queue"
REPLY_QUEUE = "tamer_results"

# Environment
TAMER_ENABLED = "TAMER_ENABLED"
TAMER_PROTOCOL = "TAMER_PROTOCOL"
TAMER_SERVERS = "TAMER_SERVERS"
TAMER_USERNAME = "TAMER_USERNAME"
TAMER_PASSWORD = "TAMER_PASSWORD"
TAMER_INSTANCE_ID = "TAMER_INSTANCE_ID"
TRUE_MARKER = "true"

# seconds between automatic reconnects
RECONNECT_INTERVAL = 1800

# milliseconds to wait for a server to answer a ping
CONNECT_TIMEOUT = 5000

# seconds a worker may go without a heartbeat before its jobs are requeued
MAX_HEARTBEATS_MISSED = 60

# seconds between supervisor liveness passes
MONITOR_INTERVAL = 1.0

# seconds a freshly spawned worker gets before it must be running
STARTUP_GRACE = 0.5

# seconds to wait for a terminated worker before killing it
STOP_TIMEOUT = 5.0
