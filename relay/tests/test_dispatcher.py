"""Tests for update routing and per-update task isolation."""

import asyncio

import pytest

from relay.core.dispatcher import Dispatcher
from relay.core.events import IncomingMessage, MessageKind


def _msg(kind=MessageKind.TEXT, **kwargs) -> IncomingMessage:
    return IncomingMessage(chat_id=1, user_id=2, kind=kind, **kwargs)


def test_resolve_routes_by_kind_and_command():
    async def text(m): ...
    async def photo(m): ...
    async def history(m): ...

    d = Dispatcher()
    d.on_text(text)
    d.on_photo(photo)
    d.on_command("/History", history)
    assert d.resolve(_msg()) is text
    assert d.resolve(_msg(MessageKind.PHOTO)) is photo
    assert d.resolve(_msg(MessageKind.COMMAND, command="history")) is history
    assert d.resolve(_msg(MessageKind.COMMAND, command="start", text="/start")) is text


def test_resolve_without_handlers():
    assert Dispatcher().resolve(_msg()) is None


@pytest.mark.asyncio
async def test_dispatch_without_handler_creates_no_task():
    assert Dispatcher().dispatch(_msg()) is None


@pytest.mark.asyncio
async def test_each_update_runs_concurrently():
    gate = asyncio.Event()
    finished = []

    async def slow(m):
        await gate.wait()
        finished.append(m.text)

    async def fast(m):
        finished.append(m.text)
        gate.set()

    d = Dispatcher()
    d.on_text(slow)
    d.on_photo(fast)
    d.dispatch(_msg(text="slow"))
    d.dispatch(_msg(MessageKind.PHOTO, text="fast"))
    assert d.pending == 2
    await d.drain()
    assert finished == ["fast", "slow"]
    assert d.pending == 0


@pytest.mark.asyncio
async def test_handler_failure_is_logged_and_isolated(caplog):
    handled = []

    async def boom(m):
        raise RuntimeError("kaput")

    async def ok(m):
        handled.append(m.update_id)

    d = Dispatcher()
    d.on_text(boom)
    d.on_photo(ok)
    d.dispatch(_msg(update_id=1))
    d.dispatch(_msg(MessageKind.PHOTO, update_id=2))
    await d.drain()
    assert handled == [2]
    assert "handler failed for update 1" in caplog.text
