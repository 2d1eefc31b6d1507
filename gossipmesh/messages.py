"""Gossip message types and their msgpack wire encoding."""

from __future__ import annotations

import ipaddress
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime
from enum import IntEnum, IntFlag
from typing import Any, Callable

import msgpack


class MessageError(ValueError):
    """Raised when a message cannot be encoded or decoded."""


class MessageType(IntEnum):
    LEAVE = 0
    JOIN = 1
    PUSH_PULL = 2
    USER_EVENT = 3
    QUERY = 4
    QUERY_RESPONSE = 5
    CONFLICT_RESPONSE = 6
    KEY_REQUEST = 7
    KEY_RESPONSE = 8
    RELAY = 9


class QueryFlag(IntFlag):
    ACK = 1
    NO_BROADCAST = 2


class FilterType(IntEnum):
    NODE = 0
    TAG = 1


def _wire(
    name: str,
    *,
    default: Any = MISSING,
    default_factory: Any = MISSING,
    encode: Callable[[Any], Any] | None = None,
    decode: Callable[[Any], Any] | None = None,
) -> Any:
    return field(
        default=default,
        default_factory=default_factory,
        metadata={"wire": name, "encode": encode, "decode": decode},
    )


def _as_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def _bytes_list(value: Any) -> list[bytes]:
    return [_as_bytes(item) for item in value or ()]


class _WireMessage:
    """Maps dataclass fields to the wire field names."""

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            encode = f.metadata.get("encode")
            out[f.metadata["wire"]] = encode(value) if encode else value
        return out

    @classmethod
    def from_wire(cls, data: Any):
        if not isinstance(data, dict):
            raise MessageError(
                f"expected a map for {cls.__name__}, got {type(data).__name__}"
            )
        kwargs: dict[str, Any] = {}
        for f in fields(cls):  # type: ignore[arg-type]
            wire_name = f.metadata["wire"]
            if wire_name not in data:
                continue
            decode = f.metadata.get("decode")
            value = data[wire_name]
            kwargs[f.name] = decode(value) if decode else value
        return cls(**kwargs)


def _to_wire_value(msg: Any) -> Any:
    return msg.to_wire() if isinstance(msg, _WireMessage) else msg


def _ip_text(packed: Any) -> str:
    if not packed:
        return ""
    ip = ipaddress.ip_address(bytes(packed))
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def _encode_udp_addr(addr: tuple[str, int]) -> dict[str, Any]:
    host, port = addr
    packed = ipaddress.ip_address(host).packed if host else None
    return {"IP": packed, "Port": int(port), "Zone": ""}


def _decode_udp_addr(raw: Any) -> tuple[str, int]:
    if not isinstance(raw, dict):
        raise MessageError("relay destination address is not a map")
    return _ip_text(raw.get("IP")), int(raw.get("Port") or 0)


@dataclass
class MessageJoin(_WireMessage):
    """Broadcast after joining, to associate a node with a Lamport time."""

    ltime: int = _wire("LTime", default=0)
    node: str = _wire("Node", default="")


@dataclass
class MessageLeave(_WireMessage):
    """Broadcast to signal the intent to leave."""

    ltime: int = _wire("LTime", default=0)
    node: str = _wire("Node", default="")
    prune: bool = _wire("Prune", default=False)


@dataclass
class UserEventRecord(_WireMessage):
    """A single buffered user event."""

    name: str = _wire("Name", default="")
    payload: bytes = _wire("Payload", default=b"", decode=_as_bytes)


@dataclass
class UserEvents(_WireMessage):
    """All buffered user events that share one Lamport time."""

    ltime: int = _wire("LTime", default=0)
    events: list[UserEventRecord] = _wire(
        "Events",
        default_factory=list,
        encode=lambda events: [e.to_wire() for e in events],
        decode=lambda raw: [UserEventRecord.from_wire(r) for r in raw or ()],
    )


@dataclass
class MessagePushPull(_WireMessage):
    """Full state exchanged during a push/pull sync."""

    ltime: int = _wire("LTime", default=0)
    status_ltimes: dict[str, int] = _wire(
        "StatusLTimes", default_factory=dict, decode=lambda raw: dict(raw or {})
    )
    left_members: list[str] = _wire(
        "LeftMembers", default_factory=list, decode=lambda raw: list(raw or ())
    )
    event_ltime: int = _wire("EventLTime", default=0)
    events: list[UserEvents | None] = _wire(
        "Events",
        default_factory=list,
        encode=lambda events: [None if e is None else e.to_wire() for e in events],
        decode=lambda raw: [
            None if r is None else UserEvents.from_wire(r) for r in raw or ()
        ],
    )
    query_ltime: int = _wire("QueryLTime", default=0)


@dataclass
class MessageUserEvent(_WireMessage):
    """A user-generated event."""

    ltime: int = _wire("LTime", default=0)
    name: str = _wire("Name", default="")
    payload: bytes = _wire("Payload", default=b"", decode=_as_bytes)
    cc: bool = _wire("CC", default=False)


@dataclass
class MessageQuery(_WireMessage):
    """A query sent to the cluster; the timeout is in seconds."""

    ltime: int = _wire("LTime", default=0)
    id: int = _wire("ID", default=0)
    addr: bytes = _wire("Addr", default=b"", decode=_as_bytes)
    port: int = _wire("Port", default=0)
    source_node: str = _wire("SourceNode", default="")
    filters: list[bytes] = _wire(
        "Filters", default_factory=list, encode=list, decode=_bytes_list
    )
    flags: int = _wire("Flags", default=0)
    relay_factor: int = _wire("RelayFactor", default=0)
    timeout: float = _wire(
        "Timeout",
        default=0.0,
        encode=lambda seconds: int(round(seconds * 1e9)),
        decode=lambda nanos: (nanos or 0) / 1e9,
    )
    name: str = _wire("Name", default="")
    payload: bytes = _wire("Payload", default=b"", decode=_as_bytes)

    def ack(self) -> bool:
        """Whether the sender asked for delivery acknowledgements."""
        return bool(self.flags & QueryFlag.ACK)

    def no_broadcast(self) -> bool:
        """Whether the query must not be re-broadcast."""
        return bool(self.flags & QueryFlag.NO_BROADCAST)


@dataclass
class FilterTag(_WireMessage):
    """A regular expression to apply to one tag."""

    tag: str = _wire("Tag", default="")
    expr: str = _wire("Expr", default="")


@dataclass
class MessageQueryResponse(_WireMessage):
    """A response or acknowledgement to a query."""

    ltime: int = _wire("LTime", default=0)
    id: int = _wire("ID", default=0)
    from_node: str = _wire("From", default="")
    flags: int = _wire("Flags", default=0)
    payload: bytes = _wire("Payload", default=b"", decode=_as_bytes)

    def ack(self) -> bool:
        """Whether this is an acknowledgement rather than a response."""
        return bool(self.flags & QueryFlag.ACK)


@dataclass
class RelayHeader(_WireMessage):
    """The final destination of a relayed message."""

    dest_addr: tuple[str, int] = _wire(
        "DestAddr",
        default=("", 0),
        encode=_encode_udp_addr,
        decode=_decode_udp_addr,
    )
    dest_name: str = _wire("DestName", default="")


def _legacy_time(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"cannot serialize {type(obj).__name__}")


def _pack(value: Any, use_new_time_format: bool = True) -> bytes:
    try:
        if use_new_time_format:
            return msgpack.packb(value, use_bin_type=True, datetime=True)
        return msgpack.packb(value, use_bin_type=True, default=_legacy_time)
    except (TypeError, ValueError, OverflowError) as exc:
        raise MessageError(f"failed to encode message: {exc}") from exc


def _unpack_one(buf: bytes) -> tuple[Any, int]:
    unpacker = msgpack.Unpacker(raw=False, strict_map_key=False)
    unpacker.feed(bytes(buf))
    try:
        value = unpacker.unpack()
    except (msgpack.UnpackException, ValueError) as exc:
        raise MessageError(f"malformed message: {exc}") from exc
    return value, unpacker.tell()


def _convert(value: Any, kind: Any) -> Any:
    if kind is None:
        return value
    try:
        if isinstance(kind, type) and issubclass(kind, _WireMessage):
            return kind.from_wire(value)
        return kind(value)
    except MessageError:
        raise
    except (TypeError, ValueError, KeyError, AttributeError) as exc:
        raise MessageError(f"cannot decode message: {exc}") from exc


def encode_message(t: MessageType, msg: Any, use_new_time_format: bool) -> bytes:
    """Encode a message body prefixed with its one-byte type."""
    return bytes([int(t)]) + _pack(_to_wire_value(msg), use_new_time_format)


def decode_message(buf: bytes, kind: Any = None) -> Any:
    """Decode one msgpack value, converting it with ``kind`` if given."""
    value, _ = _unpack_one(buf)
    return _convert(value, kind)


def encode_relay_message(
    t: MessageType, addr: tuple[str, int], node_name: str, msg: Any
) -> bytes:
    """Wrap a message so that another member forwards it to ``addr``."""
    header = RelayHeader(dest_addr=addr, dest_name=node_name)
    return (
        bytes([int(MessageType.RELAY)])
        + _pack(header.to_wire())
        + bytes([int(t)])
        + _pack(_to_wire_value(msg))
    )


def decode_relay_message(buf: bytes) -> tuple[RelayHeader, bytes]:
    """Split a relay message into its header and the wrapped message."""
    if not buf or buf[0] != MessageType.RELAY:
        raise MessageError("not a relay message")
    value, consumed = _unpack_one(buf[1:])
    header = _convert(value, RelayHeader)
    return header, bytes(buf[1 + consumed:])


def encode_filter(f: FilterType, filt: Any) -> bytes:
    """Encode a query filter prefixed with its one-byte type."""
    return bytes([int(f)]) + _pack(_to_wire_value(filt))