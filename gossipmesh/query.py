"""Query parameters, response collection, filtering and response relaying."""

from __future__ import annotations

import ipaddress
import logging
import math
import random
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Protocol, Sequence

from .messages import (
    FilterTag,
    FilterType,
    MessageError,
    MessageQuery,
    MessageQueryResponse,
    MessageType,
    decode_message,
    encode_filter,
    encode_relay_message,
)

logger = logging.getLogger(__name__)


class _Transport(Protocol):
    def send_to_address(self, address: str, name: str, raw: bytes) -> None: ...


def default_query_timeout(
    gossip_interval: float, query_timeout_mult: int, num_members: int
) -> float:
    """Default query timeout in seconds: interval * mult * ceil(log10(N+1))."""
    scale = math.ceil(math.log10(num_members + 1))
    return gossip_interval * query_timeout_mult * scale


@dataclass
class QueryParam:
    """Parameters of a query; the timeout is in seconds."""

    filter_nodes: list[str] | None = None
    filter_tags: dict[str, str] | None = None
    request_ack: bool = False
    relay_factor: int = 0
    timeout: float = 0.0

    def encode_filters(self) -> list[bytes]:
        """Convert the node and tag filters into their wire format."""
        filters: list[bytes] = []
        if self.filter_nodes:
            filters.append(encode_filter(FilterType.NODE, list(self.filter_nodes)))
        for tag, expr in (self.filter_tags or {}).items():
            filters.append(encode_filter(FilterType.TAG, FilterTag(tag=tag, expr=expr)))
        return filters


def default_query_params(
    gossip_interval: float, query_timeout_mult: int, num_members: int
) -> QueryParam:
    """Query parameters with no filters and the default timeout."""
    return QueryParam(
        timeout=default_query_timeout(gossip_interval, query_timeout_mult, num_members)
    )


@dataclass(frozen=True)
class NodeResponse:
    """A single response from a node."""

    from_node: str
    payload: bytes = b""


class QueryResponse:
    """Collects acknowledgements and responses for one outgoing query."""

    def __init__(
        self,
        query_id: int,
        ltime: int,
        deadline: float,
        capacity: int,
        request_ack: bool = False,
    ) -> None:
        self.id = query_id
        self.ltime = ltime
        self._deadline = deadline
        self._capacity = capacity
        self._cond = threading.Condition()
        self._closed = False
        self._responses: deque[NodeResponse] = deque()
        self._acks: deque[str] | None = deque() if request_ack else None
        self._responded: set[str] = set()
        self._acked: set[str] = set()

    def close(self) -> None:
        """Stop further deliveries; pending items can still be read."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def deadline(self) -> float:
        """Epoch seconds at which the query ends."""
        return self._deadline

    def finished(self) -> bool:
        """Whether the query is closed or past its deadline."""
        with self._cond:
            return self._closed or time.time() > self._deadline

    def _drain(self, items: deque, timeout: float | None) -> Iterator[Any]:
        end = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._cond:
                while not items and not self._closed:
                    if end is None:
                        self._cond.wait()
                        continue
                    remaining = end - time.monotonic()
                    if remaining <= 0:
                        return
                    self._cond.wait(remaining)
                if not items:
                    return
                item = items.popleft()
            yield item

    def acks(self, timeout: float | None = None) -> Iterator[str]:
        """Yield names of acknowledging nodes until closed or the timeout ends."""
        if self._acks is None:
            return
        yield from self._drain(self._acks, timeout)

    def responses(self, timeout: float | None = None) -> Iterator[NodeResponse]:
        """Yield node responses until closed or the timeout ends."""
        yield from self._drain(self._responses, timeout)

    def send_response(self, nr: NodeResponse) -> None:
        """Deliver a response; silently ignored once the query is closed."""
        with self._cond:
            if self._closed:
                return
            if len(self._responses) >= self._capacity:
                raise RuntimeError("Failed to deliver query response, dropping")
            self._responses.append(nr)
            self._responded.add(nr.from_node)
            self._cond.notify_all()

    def send_ack(self, resp: MessageQueryResponse) -> None:
        """Deliver an acknowledgement; silently ignored once closed."""
        with self._cond:
            if self._closed:
                return
            if self._acks is None or len(self._acks) >= self._capacity:
                raise RuntimeError("Failed to deliver query response, dropping")
            self._acks.append(resp.from_node)
            self._acked.add(resp.from_node)
            self._cond.notify_all()

    def has_responded(self, node: str) -> bool:
        """Whether a response from ``node`` has been delivered."""
        with self._cond:
            return node in self._responded

    def has_acked(self, node: str) -> bool:
        """Whether an acknowledgement from ``node`` has been delivered."""
        with self._cond:
            return node in self._acked


def new_query_response(n: int, query: MessageQuery) -> QueryResponse:
    """Create the collector for a query sent to ``n`` members."""
    return QueryResponse(
        query_id=query.id,
        ltime=query.ltime,
        deadline=time.time() + query.timeout,
        capacity=n,
        request_ack=query.ack(),
    )


def should_process_query(
    filters: Sequence[bytes], node_name: str, tags: dict[str, str]
) -> bool:
    """Whether a node with this name and these tags passes every filter."""
    for filt in filters:
        if not filt:
            logger.warning("query has an empty filter")
            return False
        kind = filt[0]
        if kind == FilterType.NODE:
            try:
                nodes = decode_message(filt[1:])
            except MessageError as exc:
                logger.warning("failed to decode node filter: %s", exc)
                return False
            if not isinstance(nodes, list) or node_name not in nodes:
                return False
        elif kind == FilterType.TAG:
            try:
                tag_filter = decode_message(filt[1:], FilterTag)
            except MessageError as exc:
                logger.warning("failed to decode tag filter: %s", exc)
                return False
            try:
                matched = re.search(tag_filter.expr, tags.get(tag_filter.tag, ""))
            except re.error as exc:
                logger.warning(
                    "failed to compile filter regex (%s): %s", tag_filter.expr, exc
                )
                return False
            if matched is None:
                return False
        else:
            logger.warning("query has unrecognized filter type: %d", kind)
            return False
    return True


def k_random_members(
    k: int, members: Sequence[Any], filter_func: Callable[[Any], bool] | None = None
) -> list[Any]:
    """Pick up to ``k`` distinct members at random, skipping those the filter rejects."""
    chosen: list[Any] = []
    if not members:
        return chosen
    for _ in range(3 * len(members)):
        if len(chosen) >= k:
            break
        member = random.choice(members)
        if filter_func is not None and filter_func(member):
            continue
        if any(member.name == c.name for c in chosen):
            continue
        chosen.append(member)
    return chosen


def _is_alive(member: Any) -> bool:
    status = member.status
    return str(getattr(status, "name", status)).lower() == "alive"


def _host_text(addr: Any) -> str:
    if isinstance(addr, (bytes, bytearray)):
        if not addr:
            return ""
        ip = ipaddress.ip_address(bytes(addr))
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            return str(ip.ipv4_mapped)
        return str(ip)
    return str(addr)


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def relay_response(
    transport: _Transport,
    relay_factor: int,
    addr: tuple[str, int],
    node_name: str,
    resp: MessageQueryResponse,
    members: Sequence[Any],
    local_name: str,
    size_limit: int,
) -> None:
    """Send copies of a response to the originator through other live members."""
    if relay_factor == 0:
        return
    if len(members) < relay_factor + 1:
        return

    try:
        raw = encode_relay_message(MessageType.QUERY_RESPONSE, addr, node_name, resp)
    except MessageError as exc:
        raise RuntimeError(f"failed to format relayed response: {exc}") from exc
    if len(raw) > size_limit:
        raise ValueError(f"relayed response exceeds limit of {size_limit} bytes")

    relays = k_random_members(
        relay_factor,
        members,
        lambda m: not _is_alive(m) or m.protocol_max < 5 or m.name == local_name,
    )
    for member in relays:
        address = _join_host_port(_host_text(member.addr), int(member.port))
        try:
            transport.send_to_address(address, member.name, raw)
        except OSError as exc:
            raise RuntimeError(f"failed to send relay response: {exc}") from exc