import threading

import pytest

from comlink.transport import (
    Channel,
    ClosedError,
    Inbound,
    Network,
    TransportError,
    UnknownPeerError,
)


def test_offer_and_get_fifo():
    ch = Channel(4)
    for i in range(3):
        assert ch.offer(i) is True
    assert len(ch) == 3
    assert [ch.get(timeout=0) for _ in range(3)] == [0, 1, 2]
    assert len(ch) == 0


def test_offer_rejects_when_full():
    ch = Channel(2)
    assert ch.offer("a")
    assert ch.offer("b")
    assert ch.offer("c") is False
    assert len(ch) == 2


def test_unbounded_channel_accepts_many():
    ch = Channel()
    for i in range(5000):
        assert ch.offer(i)
    assert len(ch) == 5000


def test_get_times_out_when_empty():
    ch = Channel(1)
    with pytest.raises(TimeoutError):
        ch.get(timeout=0)
    with pytest.raises(TimeoutError):
        ch.get(timeout=0.01)


def test_put_times_out_when_full():
    ch = Channel(1)
    ch.put("x")
    with pytest.raises(TimeoutError):
        ch.put("y", timeout=0.01)
    assert ch.get(timeout=0) == "x"


def test_close_drains_then_raises():
    ch = Channel(4)
    ch.offer(1)
    ch.offer(2)
    ch.close()
    assert ch.closed() is True
    assert ch.get(timeout=0) == 1
    assert ch.get(timeout=0) == 2
    with pytest.raises(ClosedError):
        ch.get(timeout=0)


def test_closed_channel_rejects_writes():
    ch = Channel(4)
    ch.close()
    ch.close()  # idempotent
    assert ch.offer(1) is False
    with pytest.raises(ClosedError):
        ch.put(1)


def test_iteration_stops_on_close():
    ch = Channel(10)
    for i in range(4):
        ch.offer(i)
    ch.close()
    assert list(ch) == [0, 1, 2, 3]


def test_blocking_get_wakes_on_put_from_other_thread():
    ch = Channel(1)
    writer = threading.Timer(0.05, lambda: ch.put("hello", timeout=5))
    writer.start()
    try:
        received = ch.get(timeout=5)
    finally:
        writer.join(5)
    assert received == "hello"
    assert len(ch) == 0


def test_blocking_get_wakes_on_close():
    ch = Channel(1)
    closer = threading.Timer(0.05, ch.close)
    closer.start()
    try:
        with pytest.raises(ClosedError):
            ch.get(timeout=5)
    finally:
        closer.join(5)
    assert ch.closed() is True


def test_error_hierarchy_and_messages():
    assert issubclass(UnknownPeerError, TransportError)
    assert issubclass(ClosedError, TransportError)
    assert str(UnknownPeerError()) == "transport: unknown peer"
    assert str(ClosedError()) == "transport: closed"


def test_inbound_is_value_like():
    a = Inbound(sender=b"alice", payload=b"x")
    assert a == Inbound(b"alice", b"x")
    with pytest.raises(AttributeError):
        a.payload = b"y"


def test_network_is_abstract():
    with pytest.raises(TypeError):
        Network()


class _Loopback(Network):
    def __init__(self):
        self._ch = Channel(8)

    def local(self):
        return b"self"

    def send(self, peer, payload, timeout=None):
        if peer != b"self":
            raise UnknownPeerError()
        self._ch.offer(Inbound(b"self", bytes(payload)))

    def recv(self):
        return self._ch

    def close(self):
        self._ch.close()


def test_network_context_manager_closes():
    with _Loopback() as net:
        net.send(b"self", b"ping")
        assert net.recv().get(timeout=0) == Inbound(b"self", b"ping")
    assert net.recv().closed() is True