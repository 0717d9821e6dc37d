"""Conversation history: store protocol, Redis and Mokky backends, request assembly."""

from relay.memory.assembler import HistoryAssembler, build_contents
from relay.memory.history import HistoryStore, HistoryStoreError, RedisHistoryStore

__all__ = [
    "HistoryAssembler",
    "HistoryStore",
    "HistoryStoreError",
    "RedisHistoryStore",
    "build_contents",
]
