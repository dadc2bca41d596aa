import pytest

from comlink.memory import Scheduler
from comlink.multiplex import Multiplex
from comlink.transport import ClosedError
from comlink.wire import encode_multiplex_frame


def conv_id(tag: str) -> bytes:
    return tag.encode().ljust(16, b"\0")


def mx_replica(tag: str) -> bytes:
    return tag.encode().ljust(16, b"\0")


@pytest.fixture
def sched():
    s = Scheduler(1)
    yield s
    s.close()


def test_dispatches_by_conversation_id(sched):
    alice_und = sched.connect(mx_replica("alice"))
    bob_und = sched.connect(mx_replica("bob"))
    with Multiplex(alice_und, 256) as alice_mx, Multiplex(bob_und, 256) as bob_mx:
        alice_a = alice_mx.for_conversation(conv_id("conv-A"))
        alice_b = alice_mx.for_conversation(conv_id("conv-B"))
        bob_a = bob_mx.for_conversation(conv_id("conv-A"))
        bob_b = bob_mx.for_conversation(conv_id("conv-B"))

        alice_a.send(mx_replica("bob"), b"for A")
        alice_b.send(mx_replica("bob"), b"for B")
        sched.run_all()

        got_a = bob_a.recv().get(timeout=1.0)
        assert got_a.payload == b"for A"
        assert got_a.sender == mx_replica("alice")
        got_b = bob_b.recv().get(timeout=1.0)
        assert got_b.payload == b"for B"

        with pytest.raises(TimeoutError):
            bob_a.recv().get(timeout=0.05)


def test_unknown_conversation_dropped_silently(sched):
    alice_und = sched.connect(mx_replica("alice"))
    bob_und = sched.connect(mx_replica("bob"))
    with Multiplex(alice_und, 256) as alice_mx, Multiplex(bob_und, 256) as bob_mx:
        alice_mx.for_conversation(conv_id("A"))
        bob_a = bob_mx.for_conversation(conv_id("A"))
        bob_mx.for_conversation(conv_id("B"))
        alice_c = alice_mx.for_conversation(conv_id("C"))

        alice_c.send(mx_replica("bob"), b"orphan")
        sched.run_all()

        with pytest.raises(TimeoutError):
            bob_a.recv().get(timeout=0.05)


def test_close_closes_all_views(sched):
    und = sched.connect(mx_replica("alice"))
    mx = Multiplex(und, 256)
    v1 = mx.for_conversation(conv_id("A"))
    v2 = mx.for_conversation(conv_id("B"))
    mx.close()
    with pytest.raises(ClosedError):
        v1.recv().get(timeout=1.0)
    with pytest.raises(ClosedError):
        v2.recv().get(timeout=1.0)


def test_close_is_idempotent(sched):
    und = sched.connect(mx_replica("alice"))
    mx = Multiplex(und)
    view = mx.for_conversation(conv_id("A"))
    mx.close()
    mx.close()
    assert view.recv().closed() is True


def test_for_conversation_idempotent(sched):
    und = sched.connect(mx_replica("alice"))
    with Multiplex(und, 256) as mx:
        v1 = mx.for_conversation(conv_id("A"))
        v2 = mx.for_conversation(conv_id("A"))
        assert v1 is v2


def test_view_send_after_close_fails(sched):
    und = sched.connect(mx_replica("alice"))
    sched.connect(mx_replica("bob"))
    with Multiplex(und, 256) as mx:
        view = mx.for_conversation(conv_id("A"))
        view.close()
        with pytest.raises(ClosedError):
            view.send(mx_replica("bob"), b"x")


def test_closed_view_is_detached(sched):
    und = sched.connect(mx_replica("alice"))
    with Multiplex(und, 256) as mx:
        first = mx.for_conversation(conv_id("A"))
        first.close()
        second = mx.for_conversation(conv_id("A"))
        assert second is not first
        assert second.recv().closed() is False


def test_for_conversation_after_close_raises(sched):
    und = sched.connect(mx_replica("alice"))
    mx = Multiplex(und, 256)
    mx.close()
    with pytest.raises(ClosedError):
        mx.for_conversation(conv_id("A"))


def test_local_is_underlying_replica(sched):
    und = sched.connect(mx_replica("alice"))
    with Multiplex(und) as mx:
        view = mx.for_conversation(conv_id("A"))
        assert mx.local() == mx_replica("alice")
        assert view.local() == mx_replica("alice")


def test_send_wraps_payload_in_multiplex_frame(sched):
    alice_und = sched.connect(mx_replica("alice"))
    bob_und = sched.connect(mx_replica("bob"))
    with Multiplex(alice_und) as alice_mx:
        view = alice_mx.for_conversation(conv_id("A"))
        view.send(mx_replica("bob"), b"payload")
        sched.run_all()
        raw = bob_und.recv().get(timeout=0)
        assert raw.payload == encode_multiplex_frame(conv_id("A"), b"payload")


def test_malformed_frame_is_dropped(sched):
    alice_und = sched.connect(mx_replica("alice"))
    bob_und = sched.connect(mx_replica("bob"))
    with Multiplex(bob_und) as bob_mx:
        bob_a = bob_mx.for_conversation(conv_id("A"))
        alice_und.send(mx_replica("bob"), b"\xff")
        alice_und.send(mx_replica("bob"), encode_multiplex_frame(conv_id("A"), b"good"))
        sched.run_all()
        assert bob_a.recv().get(timeout=1.0).payload == b"good"
        with pytest.raises(TimeoutError):
            bob_a.recv().get(timeout=0.05)