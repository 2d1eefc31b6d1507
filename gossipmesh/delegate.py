"""Hooks the membership layer calls to exchange cluster state."""

from __future__ import annotations

import logging
from typing import Any, Protocol, TypeVar

from .lamport import LamportClock
from .messages import (
    MessageError,
    MessageJoin,
    MessageLeave,
    MessagePushPull,
    MessageQuery,
    MessageQueryResponse,
    MessageType,
    MessageUserEvent,
    UserEvents,
    decode_message,
    decode_relay_message,
    encode_message,
)

_T = TypeVar("_T")


class _BroadcastQueue(Protocol):
    def queue_broadcast(self, msg: bytes) -> None: ...

    def get_broadcasts(self, overhead: int, limit: int) -> list[bytes]: ...


class _DelegateHost(Protocol):
    tags: dict[str, str]
    use_new_time_format: bool
    event_join_ignore: bool
    clock: LamportClock
    event_clock: LamportClock
    query_clock: LamportClock
    broadcasts: _BroadcastQueue
    event_broadcasts: _BroadcastQueue
    query_broadcasts: _BroadcastQueue

    def encode_tags(self, tags: dict[str, str]) -> bytes: ...

    def drop_message(self, t: Any) -> bool: ...

    def handle_node_leave_intent(self, msg: MessageLeave) -> bool: ...

    def handle_node_join_intent(self, msg: MessageJoin) -> bool: ...

    def handle_user_event(self, msg: MessageUserEvent) -> bool: ...

    def handle_query(self, msg: MessageQuery) -> bool: ...

    def handle_query_response(self, msg: MessageQueryResponse) -> None: ...

    def send_to_address(self, address: str, name: str, raw: bytes) -> None: ...

    def member_status_ltimes(self) -> dict[str, int]: ...

    def left_member_names(self) -> list[str]: ...

    def recent_events(self) -> list[UserEvents | None]: ...

    def raise_event_min_time(self, ltime: int) -> None: ...


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


class Delegate:
    """Routes gossip messages and state exchanges to a cluster member."""

    def __init__(self, host: _DelegateHost, logger: logging.Logger | None = None) -> None:
        self._host = host
        self._log = logger or logging.getLogger(__name__)

    def node_meta(self, limit: int) -> bytes:
        """Encoded tags of the local node; raises if longer than ``limit``."""
        encoded = self._host.encode_tags(self._host.tags)
        if len(encoded) > limit:
            raise ValueError(
                f"Node tags '{self._host.tags}' exceeds length limit of {limit} bytes"
            )
        return encoded

    def _decode(self, body: bytes, kind: type[_T], what: str) -> _T | None:
        try:
            return decode_message(body, kind)
        except MessageError as exc:
            self._log.error("Error decoding %s: %s", what, exc)
            return None

    def notify_msg(self, buf: bytes) -> None:
        """Handle one gossip message, re-broadcasting it when it is new."""
        if not buf:
            return
        host = self._host
        code = buf[0]
        try:
            kind: MessageType | None = MessageType(code)
        except ValueError:
            kind = None
        if host.drop_message(kind if kind is not None else code):
            return

        rebroadcast = False
        queue = host.broadcasts
        body = bytes(buf[1:])

        if kind is MessageType.LEAVE:
            leave = self._decode(body, MessageLeave, "leave message")
            if leave is not None:
                self._log.debug("messageLeaveType: %s", leave.node)
                rebroadcast = host.handle_node_leave_intent(leave)
        elif kind is MessageType.JOIN:
            join = self._decode(body, MessageJoin, "join message")
            if join is not None:
                self._log.debug("messageJoinType: %s", join.node)
                rebroadcast = host.handle_node_join_intent(join)
        elif kind is MessageType.USER_EVENT:
            event = self._decode(body, MessageUserEvent, "user event message")
            if event is not None:
                self._log.debug("messageUserEventType: %s", event.name)
                rebroadcast = host.handle_user_event(event)
                queue = host.event_broadcasts
        elif kind is MessageType.QUERY:
            query = self._decode(body, MessageQuery, "query message")
            if query is not None:
                self._log.debug("messageQueryType: %s", query.name)
                rebroadcast = host.handle_query(query)
                queue = host.query_broadcasts
        elif kind is MessageType.QUERY_RESPONSE:
            resp = self._decode(body, MessageQueryResponse, "query response message")
            if resp is not None:
                self._log.debug("messageQueryResponseType: %s", resp.from_node)
                host.handle_query_response(resp)
        elif kind is MessageType.RELAY:
            self._relay(bytes(buf))
        else:
            self._log.warning("Received message of unknown type: %d", code)

        if rebroadcast:
            queue.queue_broadcast(bytes(buf))

    def _relay(self, buf: bytes) -> None:
        try:
            header, raw = decode_relay_message(buf)
        except MessageError as exc:
            self._log.error("Error decoding relay header: %s", exc)
            return
        ip, port = header.dest_addr
        address = _join_host_port(ip, port)
        self._log.debug("Relaying response to addr: %s", address)
        try:
            self._host.send_to_address(address, header.dest_name, raw)
        except OSError as exc:
            self._log.error("Error forwarding message to %s: %s", address, exc)

    def get_broadcasts(self, overhead: int, limit: int) -> list[bytes]:
        """Pending broadcasts: membership first, then queries, then user events."""
        host = self._host
        msgs = list(host.broadcasts.get_broadcasts(overhead, limit))
        used = sum(len(m) + overhead for m in msgs)

        query_msgs = host.query_broadcasts.get_broadcasts(overhead, limit - used) or []
        used += sum(len(m) + overhead for m in query_msgs)
        msgs.extend(query_msgs)

        event_msgs = host.event_broadcasts.get_broadcasts(overhead, limit - used) or []
        msgs.extend(event_msgs)
        return msgs

    def local_state(self, join: bool) -> bytes:
        """Encode the local state for a push/pull exchange; empty on failure."""
        host = self._host
        pp = MessagePushPull(
            ltime=host.clock.time(),
            status_ltimes=dict(host.member_status_ltimes()),
            left_members=list(host.left_member_names()),
            event_ltime=host.event_clock.time(),
            events=list(host.recent_events()),
            query_ltime=host.query_clock.time(),
        )
        try:
            return encode_message(MessageType.PUSH_PULL, pp, host.use_new_time_format)
        except MessageError as exc:
            self._log.error("Failed to encode local state: %s", exc)
            return b""

    def merge_remote_state(self, buf: bytes, is_join: bool) -> None:
        """Merge a remote node's push/pull state into the local state."""
        host = self._host
        if not buf:
            self._log.error("Remote state is zero bytes")
            return
        if buf[0] != MessageType.PUSH_PULL:
            self._log.error("Remote state has bad type prefix: %d", buf[0])
            return
        if host.drop_message(MessageType.PUSH_PULL):
            return

        try:
            pp = decode_message(bytes(buf[1:]), MessagePushPull)
        except MessageError as exc:
            self._log.error("Failed to decode remote state: %s", exc)
            return

        # No message with these times has been sent yet, hence the minus one.
        if pp.ltime > 0:
            host.clock.witness(pp.ltime - 1)
        if pp.event_ltime > 0:
            host.event_clock.witness(pp.event_ltime - 1)
        if pp.query_ltime > 0:
            host.query_clock.witness(pp.query_ltime - 1)

        # Leaves go first and one past the join time, since the leave must
        # have been accepted after the join to be on the left list.
        left = set()
        for name in pp.left_members:
            left.add(name)
            host.handle_node_leave_intent(
                MessageLeave(ltime=pp.status_ltimes.get(name, 0) + 1, node=name)
            )

        for name, status_ltime in pp.status_ltimes.items():
            if name in left:
                continue
            host.handle_node_join_intent(MessageJoin(ltime=status_ltime, node=name))

        if is_join and host.event_join_ignore:
            host.raise_event_min_time(pp.event_ltime)

        for events in pp.events:
            if events is None:
                continue
            for e in events.events:
                host.handle_user_event(
                    MessageUserEvent(ltime=events.ltime, name=e.name, payload=e.payload)
                )