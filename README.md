# gossipmesh

Building blocks for a gossip-based cluster membership layer: ordering events
with Lamport clocks, the msgpack wire format of gossip messages, the events
handed to applications, cluster-wide queries with filters and relayed
responses, keyring changes across the cluster, and push/pull state exchange.

The only dependency is `msgpack`.

## Install

```
pip install gossipmesh
```

To run the test suite:

```
pip install "gossipmesh[test]"
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `gossipmesh.lamport` | `LamportClock` with `time()`, `increment()` and `witness(v)`; thread-safe |
| `gossipmesh.messages` | `MessageType`, `QueryFlag`, `FilterType`, the message dataclasses (`MessageJoin`, `MessageLeave`, `UserEventRecord`, `UserEvents`, `MessagePushPull`, `MessageUserEvent`, `MessageQuery`, `FilterTag`, `MessageQueryResponse`, `RelayHeader`), `MessageError`, and `encode_message`, `decode_message`, `encode_relay_message`, `decode_relay_message`, `encode_filter` |
| `gossipmesh.event` | `EventType`, `MemberEvent`, `UserEvent` and `Query`, a received query that can be answered once with `respond()` |
| `gossipmesh.query` | `QueryParam`, `QueryResponse`, `NodeResponse`, `new_query_response`, `default_query_timeout`, `default_query_params`, `should_process_query`, `relay_response`, `k_random_members` |
| `gossipmesh.merge_delegate` | `NodeInfo`, `MergeDelegate` and `validate_member_info` |
| `gossipmesh.internal_query` | `SerfQueries`, which answers internal queries (ping, name conflict, install/use/remove/list keys) and forwards all other events; `NodeKeyResponse`; `internal_query_name` |
| `gossipmesh.keymanager` | `KeyManager`, `KeyResponse`, `KeyRequestOptions`, `KeyRequestError` |
| `gossipmesh.delegate` | `Delegate`: node metadata, incoming gossip, outgoing broadcasts, and local/remote push/pull state |

## Examples

### Lamport clock

```python
from gossipmesh.lamport import LamportClock

clock = LamportClock()
clock.increment()        # 1
clock.witness(41)        # saw a remote time of 41
clock.time()             # 42
```

### Encoding a message

Every message is one type byte followed by a msgpack body.

```python
from gossipmesh.messages import MessageLeave, MessageType, decode_message, encode_message

raw = encode_message(MessageType.LEAVE, MessageLeave(node="foo"), False)
assert raw[0] == MessageType.LEAVE
leave = decode_message(raw[1:], MessageLeave)
assert leave.node == "foo"
```

A relay message wraps another message together with its final destination:

```python
from gossipmesh.messages import decode_relay_message, encode_relay_message

raw = encode_relay_message(MessageType.LEAVE, ("127.0.0.1", 1234), "test", MessageLeave(node="foo"))
header, inner = decode_relay_message(raw)
header.dest_addr    # ("127.0.0.1", 1234)
inner[0]            # MessageType.LEAVE
```

### Query filters

```python
from gossipmesh.query import QueryParam, should_process_query

param = QueryParam(filter_nodes=["foo", "zip"], filter_tags={"role": "^web"})
filters = param.encode_filters()
should_process_query(filters, "zip", {"role": "webserver"})   # True
should_process_query(filters, "bar", {"role": "webserver"})   # False
```

Tag filters are regular expressions searched in the tag's value; a missing
tag is matched as an empty string.

### Collecting responses

```python
from gossipmesh.messages import MessageQuery
from gossipmesh.query import NodeResponse, new_query_response

collector = new_query_response(3, MessageQuery(id=1, timeout=2.0))
collector.send_response(NodeResponse("node-a", b"ok"))
collector.close()
[r.from_node for r in collector.responses(timeout=0.1)]   # ["node-a"]
```

`send_response` raises `RuntimeError` once the collector already holds as
many responses as its capacity, and is ignored after `close()`.

### Events

```python
from gossipmesh.event import EventType, UserEvent

event = UserEvent(name="deploy", payload=b"v2")
event.event_type() is EventType.USER   # True
str(event)                             # "user-event: deploy"
```

### Validating a peer

```python
from gossipmesh.merge_delegate import NodeInfo, validate_member_info

validate_member_info(NodeInfo(name="web-1", addr=bytes([10, 0, 0, 1])))
```

An address that is not 4 or 16 bytes long, or tag metadata longer than 512
bytes, raises `ValueError`. Pass a name validator as the second argument to
have it check the node name as well.

## Plugging in a cluster member

`Query`, `SerfQueries`, `KeyManager`, `Delegate` and `relay_response` do not
own membership state or a network; each takes a host or transport object
supplying what it needs:

- `Query`: `node_name`, `query_response_size_limit`, `use_new_time_format`,
  `send_to_address(address, name, raw)` and
  `relay_response(relay_factor, addr, node_name, resp)`.
- `SerfQueries`: `node_name`, `query_response_size_limit`,
  `use_new_time_format`, `keyring` (with `add_key`, `use_key`, `remove_key`,
  `get_keys`, `get_primary_key`), `keyring_file`, `encryption_enabled()`,
  `lookup_member(name)` and `write_keyring_file()`. It runs in a background
  thread between `start()` and `shutdown()`, or as a context manager.
- `KeyManager`: `use_new_time_format`, `default_query_params()`,
  `query(name, payload, params)` returning a `QueryResponse`, and
  `num_members()`. Keys are passed base64-encoded.
- `Delegate`: the local tags and clocks, three broadcast queues, tag
  encoding, the join/leave/user-event/query handlers, and accessors for the
  member status times, left members and recent events.

## What this package does not do

It has no network transport, no failure detector, no member table or
join/leave state machine, no broadcast queue, no keyring storage and no
command-line tool. Those are supplied by the host objects described above.

## Errors

Failures raise exceptions:

- `MessageError` (a `ValueError`) for messages that cannot be encoded or decoded.
- `ValueError` from `Query.check_response_size` when a response is over the
  size limit; `Query.respond` raises `RuntimeError` when a response is too
  large, already sent or past its deadline.
- `KeyRequestError` (a `RuntimeError`, carrying the `KeyResponse`) when some
  nodes report failure or not all nodes answer; `ValueError` for a key that
  is not valid base64.
- `ValueError` from `Delegate.node_meta` when the encoded tags exceed the limit,
  and from `str()` of a `MemberEvent` whose type is not a member event.