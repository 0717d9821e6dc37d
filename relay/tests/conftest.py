"""Pytest fixtures and fakes shared by the relay tests."""

from __future__ import annotations

import json

import pytest

from relay.core.events import ConversationTurn
from relay.memory.history import HistoryStoreError
from relay.models.streaming import DeliveryError


@pytest.fixture(autouse=True)
def env_cleanup(monkeypatch):
    """Avoid picking up real tokens or backends from the environment."""
    for name in ("TELEGRAM_TOKEN", "GEMINI_TOKEN", "MOKKY_URL", "HISTORY_BACKEND", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/1")
    yield


def sse(text: str | None = None, **extra) -> str:
    """One ``data:`` line carrying a single-candidate response with ``text``."""
    if text is None:
        body = extra or {"candidates": []}
    else:
        body = {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}
    return "data: " + json.dumps(body)


async def lines_from(*items, error: Exception | None = None):
    """Async line source; raises ``error`` after the last item when given."""
    for item in items:
        yield item
    if error is not None:
        raise error


class FakeClock:
    def __init__(self, *ticks: float) -> None:
        self._ticks = list(ticks)
        self.now = 0.0

    def __call__(self) -> float:
        if self._ticks:
            self.now = self._ticks.pop(0)
        return self.now


class FakeOutbound:
    """Records emits/edits; optional failures by call index."""

    def __init__(self, fail_emit: bool = False, fail_edits: set[int] | None = None) -> None:
        self.calls: list[tuple[str, int, str]] = []
        self._fail_emit = fail_emit
        self._fail_edits = fail_edits or set()
        self._edits = 0
        self._next_id = 100

    async def emit(self, chat_id: int, text: str) -> int:
        self.calls.append(("emit", chat_id, text))
        if self._fail_emit:
            raise DeliveryError("sendMessage 500")
        self._next_id += 1
        return self._next_id

    async def edit(self, chat_id: int, handle: int, text: str) -> None:
        self._edits += 1
        self.calls.append(("edit", handle, text))
        if self._edits in self._fail_edits:
            raise DeliveryError("editMessageText 429")


class MemoryStore:
    """In-process HistoryStore for tests."""

    def __init__(self, turns: dict[str, list[ConversationTurn]] | None = None, fail: bool = False) -> None:
        self.turns = turns or {}
        self.fail = fail
        self.deleted: list[str] = []
        self.appended: list[tuple[str, list[ConversationTurn]]] = []
        self.usernames: list[str] = []

    async def read_history(self, user_key: str) -> list[ConversationTurn]:
        if self.fail:
            raise HistoryStoreError("read down")
        return list(self.turns.get(user_key, []))

    async def append_turns(self, user_key: str, turns, *, username: str = "") -> None:
        if self.fail:
            raise HistoryStoreError("append down")
        self.usernames.append(username)
        self.appended.append((user_key, list(turns)))
        self.turns.setdefault(user_key, []).extend(turns)

    async def delete_history(self, user_key: str) -> None:
        if self.fail:
            raise HistoryStoreError("delete down")
        self.deleted.append(user_key)
        self.turns.pop(user_key, None)


@pytest.fixture
def outbound():
    return FakeOutbound()


@pytest.fixture
def store():
    return MemoryStore()
