"""Conversation history per user: protocol plus the Redis-backed store.

The durable copy lives outside the process. No lock guards read-modify-write:
two concurrent requests of one user may race and the last writer wins.
"""

from __future__ import annotations

import logging
from typing import Protocol, Sequence, runtime_checkable

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from relay.core.events import ConversationTurn

logger = logging.getLogger(__name__)

KEY_PREFIX = "relay:history:"
DEFAULT_TTL_DAYS = 30


class HistoryStoreError(RuntimeError):
    """Remote history store failed. Callers log it; it never aborts an answer."""


@runtime_checkable
class HistoryStore(Protocol):
    async def read_history(self, user_key: str) -> list[ConversationTurn]:
        ...

    async def append_turns(
        self, user_key: str, turns: Sequence[ConversationTurn], *, username: str = ""
    ) -> None:
        """``username`` is a display name; stores without a user record ignore it."""
        ...

    async def delete_history(self, user_key: str) -> None:
        ...


class RedisHistoryStore:
    """Ordered turns in one Redis list per user. Whole-list delete is the only removal."""

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = KEY_PREFIX,
        ttl_days: int = DEFAULT_TTL_DAYS,
    ) -> None:
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._ttl_seconds = 86400 * ttl_days
        self._client: aioredis.Redis | None = None

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
            try:
                await self._client.ping()
            except RedisError as e:
                self._client = None
                raise HistoryStoreError(f"redis unavailable: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _key(self, user_key: str) -> str:
        return f"{self._key_prefix}{user_key}"

    async def read_history(self, user_key: str) -> list[ConversationTurn]:
        await self.connect()
        try:
            raw = await self._client.lrange(self._key(user_key), 0, -1)
        except RedisError as e:
            raise HistoryStoreError(f"read failed: {e}") from e
        out = []
        for r in raw:
            try:
                out.append(ConversationTurn.model_validate_json(r))
            except ValidationError:
                logger.warning("skipping unreadable history entry for %s", user_key)
                continue
        return out

    async def append_turns(
        self, user_key: str, turns: Sequence[ConversationTurn], *, username: str = ""
    ) -> None:
        if not turns:
            return
        await self.connect()
        key = self._key(user_key)
        pipe = self._client.pipeline()
        for turn in turns:
            pipe.rpush(key, turn.model_dump_json(exclude_none=True))
        if self._ttl_seconds > 0:
            pipe.expire(key, self._ttl_seconds)
        try:
            await pipe.execute()
        except RedisError as e:
            raise HistoryStoreError(f"append failed: {e}") from e

    async def delete_history(self, user_key: str) -> None:
        await self.connect()
        try:
            await self._client.delete(self._key(user_key))
        except RedisError as e:
            raise HistoryStoreError(f"delete failed: {e}") from e
