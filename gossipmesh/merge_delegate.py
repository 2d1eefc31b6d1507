"""Validation and conversion of nodes offered for a cluster merge."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Callable, Sequence

_META_MAX_SIZE = 512


@dataclass
class NodeInfo:
    """A node as reported by the membership layer."""

    name: str
    addr: bytes = b""
    port: int = 0
    meta: bytes = b""
    state: str = "alive"
    pmin: int = 0
    pmax: int = 0
    pcur: int = 0
    dmin: int = 0
    dmax: int = 0
    dcur: int = 0


def validate_member_info(
    node: NodeInfo, validate_node_name: Callable[[str], None] | None = None
) -> None:
    """Raise ValueError if the node's name, address or tags are invalid."""
    if validate_node_name is not None:
        validate_node_name(node.name)

    addr_len = len(node.addr or b"")
    if addr_len not in (4, 16):
        raise ValueError(
            f"IP byte length is invalid: {addr_len} bytes is not either 4 or 16"
        )

    if len(node.meta or b"") > _META_MAX_SIZE:
        raise ValueError(
            f"Encoded length of tags exceeds limit of {_META_MAX_SIZE} bytes"
        )


class MergeDelegate:
    """Checks nodes offered by a merge and hands them on as members."""

    def __init__(
        self,
        on_merge: Callable[[list[Any]], None],
        decode_tags: Callable[[bytes], dict[str, str]],
        validate_node_name: Callable[[str], None] | None = None,
        member_factory: Callable[..., Any] = SimpleNamespace,
    ) -> None:
        self._on_merge = on_merge
        self._decode_tags = decode_tags
        self._validate_node_name = validate_node_name
        self._member_factory = member_factory

    def notify_merge(self, nodes: Sequence[NodeInfo]) -> None:
        """Convert all nodes and pass them on; raises to reject the merge."""
        members = [self.node_to_member(n) for n in nodes]
        self._on_merge(members)

    def notify_alive(self, peer: NodeInfo) -> None:
        """Pass a single live peer on; raises to reject it."""
        self._on_merge([self.node_to_member(peer)])

    def node_to_member(self, node: NodeInfo) -> Any:
        """Validate a node and build a member from it."""
        validate_member_info(node, self._validate_node_name)
        status = "left" if node.state == "left" else "none"
        return self._member_factory(
            name=node.name,
            addr=ipaddress.ip_address(bytes(node.addr)),
            port=node.port,
            tags=self._decode_tags(node.meta),
            status=status,
            protocol_min=node.pmin,
            protocol_max=node.pmax,
            protocol_cur=node.pcur,
            delegate_min=node.dmin,
            delegate_max=node.dmax,
            delegate_cur=node.dcur,
        )