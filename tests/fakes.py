import itertools
from collections import deque

import redis
import zmq

import constants
from task_dispatcher import JobServer
from zmq_broker import BrokerClientConnection, BrokerWorkerConnection

_socket_ids = itertools.count()


class LocalBroker:
    """Routes frames through a JobServer without any network."""

    def __init__(self):
        self.server = JobServer()
        self.inboxes = {}
        self.down = False
        self.on_idle = None
        self._idling = False

    def deliver(self, identity, parts):
        if self.down:
            return

        for recipient, *message in self.server.handle(identity, parts):
            self.inboxes.setdefault(recipient, deque()).append(message)

    def idle(self):
        if self.on_idle is None or self._idling:
            return

        self._idling = True
        try:
            self.on_idle()
        finally:
            self._idling = False


class FakeSocket:
    def __init__(self, broker):
        self.broker = broker
        self.identity = f"socket-{next(_socket_ids)}".encode()
        self.closed = False

    @property
    def inbox(self):
        return self.broker.inboxes.setdefault(self.identity, deque())

    def setsockopt(self, option, value):
        if option == zmq.IDENTITY:
            self.identity = value

    def connect(self, endpoint):
        pass

    def send_multipart(self, parts):
        self.broker.deliver(self.identity, [p if isinstance(p, bytes) else p.encode() for p in parts])

    def send_string(self, message):
        self.send_multipart([message.encode()])

    def poll(self, timeout=None):
        if not self.inbox:
            self.broker.idle()

        return bool(self.inbox)

    def recv_multipart(self):
        return self.inbox.popleft()

    def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, broker):
        self.broker = broker

    def socket(self, socket_type):
        return FakeSocket(self.broker)


def client_factory(broker):
    context = FakeContext(broker)
    return lambda timeout_ms=constants.CONNECT_TIMEOUT: BrokerClientConnection(context, timeout_ms=timeout_ms)


def worker_factory(broker):
    context = FakeContext(broker)
    return lambda worker_id, timeout_ms=constants.CONNECT_TIMEOUT: BrokerWorkerConnection(
        worker_id, context, timeout_ms=timeout_ms
    )


class FakeRedisStore:
    """Sorted sets and counters shared by every FakeRedis built from it."""

    def __init__(self):
        self.sets = {}
        self.counters = {}
        self.pops = 0
        self.down = False
        self.on_idle = None
        self._idling = False

    def factory(self, **kwargs):
        return FakeRedis(self, **kwargs)

    def size(self, name):
        return len(self.sets.get(name, {}))


class FakeRedis:
    def __init__(self, store, **kwargs):
        self.store = store
        self.kwargs = kwargs

    def ping(self):
        if self.store.down:
            raise redis.ConnectionError("Connection refused")

        return True

    def incr(self, key):
        self.store.counters[key] = self.store.counters.get(key, 0) + 1
        return self.store.counters[key]

    def zadd(self, name, mapping):
        if self.store.down:
            raise redis.ConnectionError("Connection reset")

        self.store.sets.setdefault(name, {}).update(mapping)
        return len(mapping)

    def bzpopmin(self, keys, timeout=0):
        if self.store.down:
            raise redis.ConnectionError("Connection reset")

        popped = self._pop(keys)
        waiting_for_replies = any(key.startswith(constants.REPLY_QUEUE) for key in keys)
        if popped is None and waiting_for_replies and self.store.on_idle and not self.store._idling:
            self.store._idling = True
            try:
                self.store.on_idle()
            finally:
                self.store._idling = False

            popped = self._pop(keys)

        return popped

    def _pop(self, keys):
        for key in keys:
            members = self.store.sets.get(key)
            if members:
                member = min(members, key=members.get)
                self.store.pops += 1
                return key, member, float(members.pop(member))

        return None

    def close(self):
        pass
