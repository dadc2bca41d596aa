# comlink

Network building blocks for replicated conversations between a set of
replicas. Every replica is named by an identifier given as `bytes`, and each
transport carries opaque byte payloads addressed to those identifiers.

What the package provides:

- `comlink.transport`: the abstract `Network` interface (`local()`,
  `send(peer, payload, timeout)`, `recv()`, `close()`, usable as a context
  manager), the `Inbound` record (`sender`, `payload`), a thread-safe
  closable `Channel`, and the errors `TransportError`, `UnknownPeerError`
  and `ClosedError`.
- `comlink.memory`: a deterministic in-process transport for tests.
  `Scheduler` routes messages between the `MemoryNetwork` handles it hands
  out. Tests drive delivery with `step()` and `run_all()`. Messages can be
  dropped at random (`set_drop_prob`), delivered in random order
  (`set_reorder`) or blocked by partition rules (`add_partition`,
  `clear_partitions`). Two schedulers built with the same seed and driven by
  the same calls produce the same interleaving.
- `comlink.multiplex`: `Multiplex` puts many conversations on one
  underlying network. `for_conversation(conversation_id)` returns a
  `MultiplexView`, which is itself a network bound to that conversation.
- `comlink.wire`: `encode_multiplex_frame` / `decode_multiplex_frame` and
  `encode_frame` / `decode_frame`, in the protocol-buffer wire format.
  Undecodable input raises `WireError`.
- `comlink.trim`: `Tracker` records the newest log watermark from each
  replica and computes the safe trim frontier over the active members.
- `comlink.grpc_transport`: a network over gRPC, one per replica.
  `listen()` builds it, `start()` begins serving, and an optional cluster
  identifier given to `set_cluster_id()` keeps separate clusters from
  talking to each other.

## Installation

```
pip install comlink
```

## Channels

Every network's `recv()` returns a `Channel` of `Inbound` messages.
`get(timeout)` waits up to `timeout` seconds (`None` waits forever, `0` does
not wait) and raises `TimeoutError` when nothing arrives. Once the channel
is closed, items already buffered can still be read; after that `get`
raises `ClosedError`. Iterating a channel yields items until it is closed
and drained. `offer(item)` enqueues without blocking and returns `False`
if the channel is full or closed.

## In-memory transport

```python
from comlink.memory import Scheduler

alice_id = b"alice".ljust(16, b"\0")
bob_id = b"bob".ljust(16, b"\0")

with Scheduler(seed=1) as sched:
    alice = sched.connect(alice_id)
    bob = sched.connect(bob_id)

    alice.send(bob_id, b"hello")
    assert sched.pending() == 1
    sched.run_all()

    inbound = bob.recv().get(timeout=1)
    assert inbound.payload == b"hello"
    assert inbound.sender == alice_id
```

Delivery is first-in first-out unless `set_reorder(True)` is called. Drop
probability and partition rules are applied when a message is delivered,
not when it is sent. A receiver whose buffer (1024 messages) is full loses
the message. Connecting the same replica twice raises `TransportError`.
Sending to a replica that is not connected raises `UnknownPeerError`, and
sending after `close()` raises `ClosedError`. Closing the scheduler closes
every connected network's receive channel.

## Multiplexing conversations

```python
from comlink.memory import Scheduler
from comlink.multiplex import Multiplex

alice_id = b"alice".ljust(16, b"\0")
bob_id = b"bob".ljust(16, b"\0")
conv = b"conv-A".ljust(16, b"\0")

with Scheduler(seed=1) as sched:
    a_net = sched.connect(alice_id)
    b_net = sched.connect(bob_id)
    with Multiplex(a_net, 256) as a_mx, Multiplex(b_net, 256) as b_mx:
        b_view = b_mx.for_conversation(conv)
        a_mx.for_conversation(conv).send(bob_id, b"for A")
        sched.run_all()
        print(b_view.recv().get(timeout=1).payload)
```

`for_conversation` returns the same view for the same identifier. A buffer
size of zero or less means 256 messages per view. A frame for a
conversation the receiver has no view for, or one that cannot be decoded,
is dropped without an error. Closing a view detaches it, and later sends
on it raise `ClosedError`. Closing the `Multiplex` closes every view's
receive channel but leaves the underlying network open.

## Trim coordination

```python
from comlink.trim import Tracker

alice_id = b"alice".ljust(16, b"\0")
bob_id = b"bob".ljust(16, b"\0")

tracker = Tracker()
tracker.update(alice_id, 100)
tracker.update(bob_id, 50)
tracker.safe_frontier([alice_id, bob_id])  # 50
tracker.forget(bob_id)
tracker.safe_frontier([alice_id])          # 100
```

A watermark only moves forward: `update` returns `False` when the new
offset is not higher than the stored one. `get` returns `None` for a
replica never seen. `safe_frontier` returns `None` when the active list is
empty or when any active member has not yet reported a watermark.
`snapshot()` returns a copy of all stored watermarks.

## gRPC transport

```python
from comlink.grpc_transport import listen

alice_id = b"alice".ljust(16, b"\0")
bob_id = b"bob".ljust(16, b"\0")

a = listen(alice_id, "127.0.0.1:0", [])
b = listen(bob_id, "127.0.0.1:0", [])
for net in (a, b):
    net.set_cluster_id(bytes(16))
    net.start()
a.add_peer(bob_id, b.addr())
b.add_peer(alice_id, a.addr())

a.send(bob_id, b"hello b", timeout=5)
print(b.recv().get(timeout=5).payload)
a.close()
b.close()
```

`addr()` gives the address actually bound, including a port chosen by the
system for port 0. Peers may also be given to `listen` as `Peer(id, addr)`
entries; `add_peer` re-points a route (dropping a cached connection when
the address changes) and `remove_peer` drops it. Extra gRPC services can be
added with `register_handlers` before `start()`.

The cluster identifier is sent in hex under the metadata key
`x-comlink-cluster-id`. A server that has one installed rejects calls that
carry none or a different one; the sender sees a `TransportError` whose
message contains "cluster id mismatch". Calls to `/comlink.v1.Cluster/Join`
are exempt from the check. Sending to a peer with no route raises
`UnknownPeerError`, and sending after `close()` raises `ClosedError`.
Connections are unencrypted and failed sends are not retried.

## What the package does not do

These are transports and bookkeeping only. There is no replicated state
machine, no message ordering or causal delivery, no durable message log and
no cluster membership protocol on top of them. `Tracker` computes where it
is safe to trim but does not trim anything itself. The package has no
command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```