"""Handling of internal queries: ping, name conflicts and keyring changes."""

from __future__ import annotations

import base64
import ipaddress
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .event import Query
from .messages import (
    MessageError,
    MessageQueryResponse,
    MessageType,
    decode_message,
    encode_message,
)

INTERNAL_QUERY_PREFIX = "_serf_"

PING_QUERY = "ping"
CONFLICT_QUERY = "conflict"
INSTALL_KEY_QUERY = "install-key"
USE_KEY_QUERY = "use-key"
REMOVE_KEY_QUERY = "remove-key"
LIST_KEYS_QUERY = "list-keys"

# Smallest number of bytes one key takes in an encoded list-keys response;
# bounds how many keys a response of a given size can hold.
MIN_ENCODED_KEY_LENGTH = 25

_KEYRING_ERRORS = (ValueError, LookupError, RuntimeError, OSError)

_STATUS_CODES = {"none": 0, "alive": 1, "leaving": 2, "left": 3, "failed": 4}

_STOP = object()


def internal_query_name(name: str) -> str:
    """Return the full name of an internal query."""
    return INTERNAL_QUERY_PREFIX + name


class _Keyring(Protocol):
    def add_key(self, key: bytes) -> None: ...

    def use_key(self, key: bytes) -> None: ...

    def remove_key(self, key: bytes) -> None: ...

    def get_keys(self) -> list[bytes]: ...

    def get_primary_key(self) -> bytes: ...


class _SerfHost(Protocol):
    node_name: str
    query_response_size_limit: int
    use_new_time_format: bool
    keyring: _Keyring | None
    keyring_file: str

    def encryption_enabled(self) -> bool: ...

    def lookup_member(self, name: str) -> Any: ...

    def write_keyring_file(self) -> None: ...


@dataclass
class NodeKeyResponse:
    """One node's answer to a key query."""

    result: bool = False
    message: str = ""
    keys: list[str] = field(default_factory=list)
    primary_key: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "Result": self.result,
            "Message": self.message,
            "Keys": list(self.keys),
            "PrimaryKey": self.primary_key,
        }

    @classmethod
    def from_wire(cls, data: Any) -> "NodeKeyResponse":
        if not isinstance(data, dict):
            raise MessageError("key response is not a map")
        return cls(
            result=bool(data.get("Result", False)),
            message=data.get("Message") or "",
            keys=list(data.get("Keys") or ()),
            primary_key=data.get("PrimaryKey") or "",
        )


def _decode_key_request(payload: bytes) -> bytes:
    data = decode_message(payload[1:])
    if not isinstance(data, dict):
        raise MessageError("key request is not a map")
    key = data.get("Key")
    if key is None:
        return b""
    if isinstance(key, str):
        return key.encode("utf-8")
    return bytes(key)


def _packed_addr(addr: Any) -> bytes | None:
    if addr is None or addr == b"" or addr == "":
        return None
    if isinstance(addr, (bytes, bytearray)):
        return bytes(addr)
    if isinstance(addr, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return addr.packed
    return ipaddress.ip_address(str(addr)).packed


def _status_code(status: Any) -> int:
    if isinstance(status, int):
        return int(status)
    label = str(getattr(status, "name", status)).lower()
    return _STATUS_CODES.get(label, 0)


def _member_to_wire(member: Any) -> dict[str, Any] | None:
    if member is None:
        return None
    if isinstance(member, dict):
        return member
    return {
        "Name": getattr(member, "name", ""),
        "Addr": _packed_addr(getattr(member, "addr", None)),
        "Port": int(getattr(member, "port", 0)),
        "Tags": dict(getattr(member, "tags", None) or {}),
        "Status": _status_code(getattr(member, "status", "none")),
        "ProtocolMin": int(getattr(member, "protocol_min", 0)),
        "ProtocolMax": int(getattr(member, "protocol_max", 0)),
        "ProtocolCur": int(getattr(member, "protocol_cur", 0)),
        "DelegateMin": int(getattr(member, "delegate_min", 0)),
        "DelegateMax": int(getattr(member, "delegate_max", 0)),
        "DelegateCur": int(getattr(member, "delegate_cur", 0)),
    }


class SerfQueries:
    """Answers internal queries and forwards every other event."""

    def __init__(
        self,
        host: _SerfHost,
        forward: Callable[[Any], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._host = host
        self._forward = forward
        self._log = logger or logging.getLogger(__name__)
        self._inbox: queue.Queue[Any] = queue.Queue(maxsize=1024)
        self._thread: threading.Thread | None = None

    def __enter__(self) -> "SerfQueries":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    def start(self) -> None:
        """Start consuming submitted events in the background."""
        if self._thread is not None:
            raise RuntimeError("already started")
        self._thread = threading.Thread(target=self._stream, daemon=True)
        self._thread.start()

    def submit(self, event: Any) -> None:
        """Hand an event to the stream."""
        self._inbox.put(event)

    def shutdown(self) -> None:
        """Stop the stream and wait for it to end."""
        if self._thread is None:
            return
        self._inbox.put(_STOP)
        self._thread.join()
        self._thread = None

    def _stream(self) -> None:
        while True:
            event = self._inbox.get()
            if event is _STOP:
                return
            if isinstance(event, Query) and event.name.startswith(INTERNAL_QUERY_PREFIX):
                threading.Thread(
                    target=self.handle_query, args=(event,), daemon=True
                ).start()
            elif self._forward is not None:
                self._forward(event)

    def handle_query(self, query: Query) -> None:
        """Dispatch an internal query by its name."""
        query_name = query.name.removeprefix(INTERNAL_QUERY_PREFIX)
        if query_name == PING_QUERY:
            return
        if query_name == CONFLICT_QUERY:
            self._handle_conflict(query)
        elif query_name == INSTALL_KEY_QUERY:
            self._modify_keyring(
                query, "install-key", "install key",
                lambda ring, key: ring.add_key(key), write_always=False,
            )
        elif query_name == USE_KEY_QUERY:
            self._modify_keyring(
                query, "use-key", "change primary key",
                lambda ring, key: ring.use_key(key), write_always=True,
            )
        elif query_name == REMOVE_KEY_QUERY:
            self._modify_keyring(
                query, "remove-key", "remove key",
                lambda ring, key: ring.remove_key(key), write_always=True,
            )
        elif query_name == LIST_KEYS_QUERY:
            self._handle_list_keys(query)
        else:
            self._log.warning("Unhandled internal query '%s'", query_name)

    def _handle_conflict(self, query: Query) -> None:
        node = bytes(query.payload).decode("utf-8", errors="replace")
        if node == self._host.node_name:
            return
        self._log.debug("Got conflict resolution query for '%s'", node)

        member = self._host.lookup_member(node)
        try:
            buf = encode_message(
                MessageType.CONFLICT_RESPONSE,
                _member_to_wire(member),
                self._host.use_new_time_format,
            )
        except MessageError as exc:
            self._log.error("Failed to encode conflict query response: %s", exc)
            return
        try:
            query.respond(buf)
        except RuntimeError as exc:
            self._log.error("Failed to respond to conflict query: %s", exc)

    def key_list_response_with_correct_size(
        self, query: Query, resp: NodeKeyResponse
    ) -> tuple[bytes, MessageQueryResponse]:
        """Encode a list-keys response, truncating ``resp.keys`` in place to fit."""
        limit = self._host.query_response_size_limit
        use_new = self._host.use_new_time_format
        actual = len(resp.keys)
        max_list_keys = min(limit // MIN_ENCODED_KEY_LENGTH, actual)

        for i in range(max_list_keys, -1, -1):
            buf = encode_message(MessageType.KEY_RESPONSE, resp.to_wire(), use_new)
            qresp = query.create_response(buf)
            raw = encode_message(MessageType.QUERY_RESPONSE, qresp, use_new)
            try:
                query.check_response_size(raw)
            except ValueError:
                resp.keys = resp.keys[:i]
                resp.message = (
                    f"truncated key list response, showing first {i} of {actual} keys"
                )
                continue
            if actual > i:
                self._log.warning("%s", resp.message)
            return raw, qresp
        raise ValueError("Failed to truncate response so that it fits into message")

    def send_key_response(self, query: Query, resp: NodeKeyResponse) -> None:
        """Send a key query response, logging any failure."""
        if query.name == internal_query_name(LIST_KEYS_QUERY):
            try:
                raw, qresp = self.key_list_response_with_correct_size(query, resp)
            except ValueError as exc:
                self._log.error("%s", exc)
                return
            try:
                query.respond_with_message_and_response(raw, qresp)
            except (ValueError, RuntimeError, OSError) as exc:
                self._log.error("Failed to respond to key query: %s", exc)
            return

        try:
            buf = encode_message(
                MessageType.KEY_RESPONSE, resp.to_wire(), self._host.use_new_time_format
            )
        except MessageError as exc:
            self._log.error("Failed to encode key response: %s", exc)
            return
        try:
            query.respond(buf)
        except RuntimeError as exc:
            self._log.error("Failed to respond to key query: %s", exc)

    def _modify_keyring(
        self,
        query: Query,
        label: str,
        failure: str,
        operation: Callable[[_Keyring, bytes], None],
        write_always: bool,
    ) -> None:
        response = NodeKeyResponse()
        try:
            key = _decode_key_request(query.payload)
        except MessageError as exc:
            self._log.error("Failed to decode key request: %s", exc)
            self.send_key_response(query, response)
            return

        if not self._host.encryption_enabled():
            response.message = "No keyring to modify (encryption not enabled)"
            self._log.error("No keyring to modify (encryption not enabled)")
        else:
            response.result, response.message = self._apply_key_change(
                label, failure, operation, key, write_always
            )
        self.send_key_response(query, response)

    def _apply_key_change(
        self,
        label: str,
        failure: str,
        operation: Callable[[_Keyring, bytes], None],
        key: bytes,
        write_always: bool,
    ) -> tuple[bool, str]:
        self._log.info("Received %s query", label)
        try:
            operation(self._host.keyring, key)
        except _KEYRING_ERRORS as exc:
            self._log.error("Failed to %s: %s", failure, exc)
            return False, str(exc)

        if write_always or self._host.keyring_file:
            try:
                self._host.write_keyring_file()
            except (OSError, ValueError, RuntimeError) as exc:
                self._log.error("Failed to write keyring file: %s", exc)
                return False, str(exc)
        return True, ""

    def _handle_list_keys(self, query: Query) -> None:
        response = NodeKeyResponse()
        if not self._host.encryption_enabled():
            response.message = "Keyring is empty (encryption not enabled)"
            self._log.error("Keyring is empty (encryption not enabled)")
        else:
            self._log.info("Received list-keys query")
            keyring = self._host.keyring
            response.keys = [
                base64.b64encode(k).decode("ascii") for k in keyring.get_keys()
            ]
            response.primary_key = base64.b64encode(
                keyring.get_primary_key()
            ).decode("ascii")
            response.result = True
        self.send_key_response(query, response)