"""Cluster-wide management of the gossip encryption keyring."""

from __future__ import annotations

import base64
import binascii
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Protocol

from .internal_query import (
    INSTALL_KEY_QUERY,
    LIST_KEYS_QUERY,
    REMOVE_KEY_QUERY,
    USE_KEY_QUERY,
    NodeKeyResponse,
    internal_query_name,
)
from .messages import MessageError, MessageType, decode_message, encode_message
from .query import NodeResponse, QueryParam, QueryResponse


class _KeyHost(Protocol):
    use_new_time_format: bool

    def default_query_params(self) -> QueryParam: ...

    def query(self, name: str, payload: bytes, params: QueryParam) -> QueryResponse: ...

    def num_members(self) -> int: ...


@dataclass
class KeyResponse:
    """Aggregated answers of all members to a key query."""

    messages: dict[str, str] = field(default_factory=dict)
    num_nodes: int = 0
    num_resp: int = 0
    num_err: int = 0
    keys: dict[str, int] = field(default_factory=dict)
    primary_keys: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class KeyRequestOptions:
    """Optional settings of a keyring operation."""

    relay_factor: int = 0


class KeyRequestError(RuntimeError):
    """Raised when members report failure or do not all respond."""

    def __init__(self, message: str, response: KeyResponse) -> None:
        super().__init__(message)
        self.response = response


class _ReadWriteLock:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class KeyManager:
    """Broadcasts keyring changes and gathers the members' answers."""

    def __init__(self, host: _KeyHost, logger: logging.Logger | None = None) -> None:
        self._host = host
        self._log = logger or logging.getLogger(__name__)
        self._lock = _ReadWriteLock()

    def stream_key_resp(
        self, resp: KeyResponse, responses: Iterable[NodeResponse]
    ) -> None:
        """Fold node responses into ``resp`` until every node has answered."""
        for r in responses:
            resp.num_resp += 1
            payload = bytes(r.payload or b"")
            node_resp: NodeKeyResponse | None = None

            if not payload or payload[0] != MessageType.KEY_RESPONSE:
                resp.messages[r.from_node] = (
                    f"Invalid key query response type: {payload!r}"
                )
                resp.num_err += 1
            else:
                try:
                    node_resp = NodeKeyResponse.from_wire(decode_message(payload[1:]))
                except MessageError:
                    resp.messages[r.from_node] = (
                        f"Failed to decode key query response: {payload!r}"
                    )
                    resp.num_err += 1

            if node_resp is not None:
                if not node_resp.result:
                    resp.messages[r.from_node] = node_resp.message
                    resp.num_err += 1
                elif node_resp.message:
                    resp.messages[r.from_node] = node_resp.message
                    self._log.warning("%s", node_resp.message)
                for key in node_resp.keys:
                    resp.keys[key] = resp.keys.get(key, 0) + 1
                resp.primary_keys[node_resp.primary_key] = (
                    resp.primary_keys.get(node_resp.primary_key, 0) + 1
                )

            if resp.num_resp == resp.num_nodes:
                return

    def _handle_key_request(
        self, key: str, query: str, opts: KeyRequestOptions | None
    ) -> KeyResponse:
        resp = KeyResponse()
        try:
            raw_key = base64.b64decode(key, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"invalid key encoding: {exc}") from exc

        req = encode_message(
            MessageType.KEY_REQUEST, {"Key": raw_key}, self._host.use_new_time_format
        )
        params = self._host.default_query_params()
        if opts is not None:
            params.relay_factor = opts.relay_factor
        query_resp = self._host.query(internal_query_name(query), req, params)

        resp.num_nodes = self._host.num_members()
        remaining = max(0.0, query_resp.deadline() - time.time())
        self.stream_key_resp(resp, query_resp.responses(timeout=remaining))

        if resp.num_err:
            raise KeyRequestError(
                f"{resp.num_err}/{resp.num_nodes} nodes reported failure", resp
            )
        if resp.num_resp != resp.num_nodes:
            raise KeyRequestError(
                f"{resp.num_resp}/{resp.num_nodes} nodes reported success", resp
            )
        return resp

    def install_key(self, key: str, opts: KeyRequestOptions | None = None) -> KeyResponse:
        """Install a base64-encoded key on every member."""
        with self._lock.write():
            return self._handle_key_request(key, INSTALL_KEY_QUERY, opts)

    def use_key(self, key: str, opts: KeyRequestOptions | None = None) -> KeyResponse:
        """Make a base64-encoded key the primary key on every member."""
        with self._lock.write():
            return self._handle_key_request(key, USE_KEY_QUERY, opts)

    def remove_key(self, key: str, opts: KeyRequestOptions | None = None) -> KeyResponse:
        """Remove a base64-encoded key from every member."""
        with self._lock.write():
            return self._handle_key_request(key, REMOVE_KEY_QUERY, opts)

    def list_keys(self, opts: KeyRequestOptions | None = None) -> KeyResponse:
        """Collect the keys installed across the cluster."""
        with self._lock.read():
            return self._handle_key_request("", LIST_KEYS_QUERY, opts)