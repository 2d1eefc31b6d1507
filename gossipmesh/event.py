"""Events delivered to clients of a cluster member."""

from __future__ import annotations

import ipaddress
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Protocol

from .messages import MessageError, MessageQueryResponse, MessageType, encode_message


class EventType(IntEnum):
    MEMBER_JOIN = 0
    MEMBER_LEAVE = 1
    MEMBER_FAILED = 2
    MEMBER_UPDATE = 3
    MEMBER_REAP = 4
    USER = 5
    QUERY = 6

    def __str__(self) -> str:
        return _EVENT_NAMES[self]


_EVENT_NAMES = {
    EventType.MEMBER_JOIN: "member-join",
    EventType.MEMBER_LEAVE: "member-leave",
    EventType.MEMBER_FAILED: "member-failed",
    EventType.MEMBER_UPDATE: "member-update",
    EventType.MEMBER_REAP: "member-reap",
    EventType.USER: "user",
    EventType.QUERY: "query",
}

_MEMBER_EVENT_TYPES = frozenset(
    {
        EventType.MEMBER_JOIN,
        EventType.MEMBER_LEAVE,
        EventType.MEMBER_FAILED,
        EventType.MEMBER_UPDATE,
        EventType.MEMBER_REAP,
    }
)


@dataclass
class MemberEvent:
    """A membership change; coalesced events may carry several members."""

    type: EventType
    members: list[Any] = field(default_factory=list)

    def event_type(self) -> EventType:
        return self.type

    def __str__(self) -> str:
        if self.type not in _MEMBER_EVENT_TYPES:
            raise ValueError(f"unknown event type: {int(self.type)}")
        return str(self.type)


@dataclass
class UserEvent:
    """An event triggered by a user rather than by membership."""

    ltime: int = 0
    name: str = ""
    payload: bytes = b""
    coalesce: bool = False

    def event_type(self) -> EventType:
        return EventType.USER

    def __str__(self) -> str:
        return f"user-event: {self.name}"


class _QueryHost(Protocol):
    node_name: str
    query_response_size_limit: int
    use_new_time_format: bool

    def send_to_address(self, address: str, name: str, raw: bytes) -> None: ...

    def relay_response(
        self,
        relay_factor: int,
        addr: tuple[str, int],
        node_name: str,
        resp: MessageQueryResponse,
    ) -> None: ...


def _ip_text(packed: bytes) -> str:
    if not packed:
        return ""
    ip = ipaddress.ip_address(bytes(packed))
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


class Query:
    """A query received from the cluster that may be answered once."""

    def __init__(
        self,
        ltime: int = 0,
        name: str = "",
        payload: bytes = b"",
        *,
        host: _QueryHost | None = None,
        query_id: int = 0,
        addr: bytes = b"",
        port: int = 0,
        source_node: str = "",
        deadline: float | None = None,
        relay_factor: int = 0,
    ) -> None:
        self.ltime = ltime
        self.name = name
        self.payload = payload
        self._host = host
        self._id = query_id
        self._addr = addr
        self._port = port
        self._source_node = source_node
        self._deadline = deadline
        self._relay_factor = relay_factor
        self._resp_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Query(ltime={self.ltime!r}, name={self.name!r}, payload={self.payload!r})"

    def __str__(self) -> str:
        return f"query: {self.name}"

    def event_type(self) -> EventType:
        return EventType.QUERY

    def source_node(self) -> str:
        """Name of the node that started the query."""
        return self._source_node

    def deadline(self) -> float | None:
        """Epoch seconds by which to respond; None once responded."""
        return self._deadline

    def _require_host(self) -> _QueryHost:
        if self._host is None:
            raise RuntimeError("query is not attached to a cluster member")
        return self._host

    def create_response(self, buf: bytes) -> MessageQueryResponse:
        """Build the response message carrying ``buf``."""
        return MessageQueryResponse(
            ltime=self.ltime,
            id=self._id,
            from_node=self._require_host().node_name,
            payload=buf,
        )

    def check_response_size(self, resp: bytes) -> None:
        """Raise ValueError if an encoded response is over the size limit."""
        limit = self._require_host().query_response_size_limit
        if len(resp) > limit:
            raise ValueError(f"response exceeds limit of {limit} bytes")

    def respond_with_message_and_response(
        self, raw: bytes, resp: MessageQueryResponse
    ) -> None:
        """Send an encoded response to the originator and relay copies."""
        self.check_response_size(raw)
        host = self._require_host()
        with self._resp_lock:
            if self._deadline is None:
                raise RuntimeError("response already sent")
            if time.time() > self._deadline:
                raise RuntimeError("response is past the deadline")

            ip = _ip_text(self._addr)
            host.send_to_address(
                _join_host_port(ip, self._port), self._source_node, raw
            )
            host.relay_response(
                self._relay_factor, (ip, self._port), self._source_node, resp
            )
            self._deadline = None

    def respond(self, buf: bytes) -> None:
        """Send ``buf`` as this member's response to the query."""
        resp = self.create_response(buf)
        try:
            raw = encode_message(
                MessageType.QUERY_RESPONSE, resp, self._require_host().use_new_time_format
            )
        except MessageError as exc:
            raise RuntimeError(f"failed to format response: {exc}") from exc
        try:
            self.respond_with_message_and_response(raw, resp)
        except (ValueError, RuntimeError, OSError) as exc:
            raise RuntimeError(f"failed to respond to key query: {exc}") from exc