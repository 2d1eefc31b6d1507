"""Gossip-cluster building blocks: Lamport clocks, wire messages, events, queries, keyring management and state exchange."""

__version__ = "0.1.0"

__all__ = [
    "delegate",
    "event",
    "internal_query",
    "keymanager",
    "lamport",
    "merge_delegate",
    "messages",
    "query",
]