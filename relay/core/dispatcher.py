"""Dispatcher: routes each incoming update to its handler as an independent asyncio task."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from relay.core.events import IncomingMessage, MessageKind

logger = logging.getLogger(__name__)

Handler = Callable[[IncomingMessage], Awaitable[None]]


class Dispatcher:
    """No coordination between tasks, even for the same user."""

    def __init__(self) -> None:
        self._text: Optional[Handler] = None
        self._photo: Optional[Handler] = None
        self._commands: dict[str, Handler] = {}
        self._tasks: set[asyncio.Task] = set()

    def on_text(self, handler: Handler) -> None:
        self._text = handler

    def on_photo(self, handler: Handler) -> None:
        self._photo = handler

    def on_command(self, name: str, handler: Handler) -> None:
        self._commands[name.lower().lstrip("/")] = handler

    def resolve(self, msg: IncomingMessage) -> Optional[Handler]:
        if msg.kind is MessageKind.PHOTO:
            return self._photo
        if msg.kind is MessageKind.COMMAND:
            # Unregistered commands are answered like plain text.
            return self._commands.get(msg.command) or self._text
        return self._text

    def dispatch(self, msg: IncomingMessage) -> Optional[asyncio.Task]:
        handler = self.resolve(msg)
        if handler is None:
            logger.debug("no handler for %s update %s", msg.kind.value, msg.update_id)
            return None
        task = asyncio.create_task(self._run(handler, msg))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, handler: Handler, msg: IncomingMessage) -> None:
        try:
            await handler(msg)
        except Exception as e:
            logger.exception("handler failed for update %s: %s", msg.update_id, e)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight handler tasks (used on shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
