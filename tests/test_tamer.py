import pytest

import closure_worker
import constants
import custom_exceptions
from fakes import LocalBroker, client_factory, worker_factory
from models import Task
from pull_client import PullClient
from pull_worker import PullWorker
from push_client import PushClient
from push_worker import PushWorker
from supervisor import Supervisor
from tamer import ProtocolType, Tamer, create_client, create_worker


def push_context(broker):
    client = PushClient(connection_factory=client_factory(broker))
    client.add_server(constants.localhost, constants.dport)
    client.connect()
    supervisor = Supervisor(constants.PUSH, client.servers, args=[])
    return Tamer(constants.CLIENT, ProtocolType.PUSH, client=client, supervisor=supervisor)


def worker_context(broker):
    worker = PushWorker(connection_factory=worker_factory(broker), allow_closures=True)
    worker.add_server(constants.localhost, constants.dport)
    worker.connect()
    return Tamer(constants.WORKER, ProtocolType.PUSH, worker=worker)


def test_protocol_type_parsing():
    assert ProtocolType.parse("push") is ProtocolType.PUSH
    assert ProtocolType.parse("PULL") is ProtocolType.PULL
    assert ProtocolType.parse(ProtocolType.PUSH) is ProtocolType.PUSH

    with pytest.raises(custom_exceptions.InvalidProtocol):
        ProtocolType.parse("gearman")


def test_factories_pick_the_variant():
    assert isinstance(create_client("push"), PushClient)
    assert isinstance(create_client(ProtocolType.PULL, "user", "pass"), PullClient)
    assert isinstance(create_worker("push"), PushWorker)

    assert create_worker("push").allow_closures is False

    worker = create_worker("pull", allow_closures=True)
    assert isinstance(worker, PullWorker)
    assert worker.allow_closures is True

    with pytest.raises(custom_exceptions.InvalidProtocol):
        create_worker("rabbitmq")


def test_client_and_worker_contexts_run_tasks_together():
    broker = LocalBroker()
    client = push_context(broker)
    worker = worker_context(broker)
    broker.on_idle = lambda: worker.work(blocking=False, timeout=10)

    worker.add_function("add", lambda data, context: sum(data))
    results = []

    client.queue(Task("add", (1, 2, 3), lambda r: results.append(r.get_data())))
    client.queue_closure(lambda: "closure", results.append)

    assert client.run() is True
    assert sorted(results, key=str) == [6, "closure"]

    client.close()
    assert not client.is_connected()


def test_client_mode_rejects_worker_operations():
    tamer = push_context(LocalBroker())

    with pytest.raises(custom_exceptions.InvalidMode):
        tamer.add_function("add", lambda data, context: data)

    with pytest.raises(custom_exceptions.InvalidMode):
        tamer.work(blocking=False)


def test_worker_mode_rejects_client_operations():
    tamer = worker_context(LocalBroker())

    with pytest.raises(custom_exceptions.InvalidMode):
        tamer.do(Task("add", 1))

    with pytest.raises(custom_exceptions.InvalidMode):
        tamer.run()

    with pytest.raises(custom_exceptions.InvalidMode):
        tamer.monitor()


def test_init_worker_requires_supervision():
    with pytest.raises(custom_exceptions.UnsupervisedWorker):
        Tamer.init_worker({})


def test_closure_worker_exit_codes():
    assert closure_worker.main({}) == constants.EXIT_UNSUPERVISED_WORKER

    environ = {constants.TAMER_ENABLED: "true", constants.TAMER_PROTOCOL: "gearman"}
    assert closure_worker.main(environ) == constants.EXIT_PROTOCOL_UNAVAILABLE
