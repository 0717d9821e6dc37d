"""Mokky REST history store: one ``users`` record per Telegram user holding the whole message list.

Record shape: ``{"id", "telegramId", "username", "messages": [{"role", "message", "image"?}]}``.
Every write re-sends the full list (GET then PATCH/POST), so it is not transactional.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx

from relay.core.events import ConversationTurn
from relay.memory.history import HistoryStoreError
from relay.models.schema import FileData

logger = logging.getLogger(__name__)


def _turn_to_record(turn: ConversationTurn) -> dict[str, Any]:
    rec: dict[str, Any] = {"role": turn.role, "message": turn.text}
    if turn.attachment is not None:
        rec["image"] = turn.attachment.model_dump()
    return rec


def _record_to_turn(rec: dict[str, Any]) -> ConversationTurn:
    image = rec.get("image")
    return ConversationTurn(
        role=rec.get("role") or "user",
        text=rec.get("message") or "",
        attachment=FileData.model_validate(image) if image else None,
    )


class MokkyHistoryStore:
    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("MOKKY_URL is required for the mokky history backend")
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport
        )

    async def _find_user(self, client: httpx.AsyncClient, user_key: str) -> dict[str, Any] | None:
        r = await client.get("users", params={"telegramId": user_key})
        if not r.is_success:
            raise HistoryStoreError(f"lookup returned {r.status_code}")
        users = r.json()
        if isinstance(users, list) and users:
            return users[0]
        return None

    async def read_history(self, user_key: str) -> list[ConversationTurn]:
        try:
            async with self._client() as client:
                user = await self._find_user(client, user_key)
        except (httpx.HTTPError, ValueError) as e:
            raise HistoryStoreError(f"read failed: {e}") from e
        if user is None:
            return []
        out = []
        for rec in user.get("messages") or []:
            try:
                out.append(_record_to_turn(rec))
            except ValueError:
                logger.warning("skipping unreadable history entry for %s", user_key)
        return out

    async def append_turns(
        self, user_key: str, turns: Sequence[ConversationTurn], *, username: str = ""
    ) -> None:
        if not turns:
            return
        new_records = [_turn_to_record(t) for t in turns]
        try:
            async with self._client() as client:
                user = await self._find_user(client, user_key)
                if user is not None:
                    body = {
                        "telegramId": user.get("telegramId", user_key),
                        "username": username or user.get("username", ""),
                        "messages": list(user.get("messages") or []) + new_records,
                    }
                    r = await client.patch(f"users/{user['id']}", json=body)
                else:
                    body = {
                        "telegramId": _numeric(user_key),
                        "username": username or f"no username {user_key}",
                        "messages": new_records,
                    }
                    r = await client.post("users", json=body)
        except (httpx.HTTPError, ValueError) as e:
            raise HistoryStoreError(f"append failed: {e}") from e
        if not r.is_success:
            raise HistoryStoreError(f"append returned {r.status_code}")

    async def delete_history(self, user_key: str) -> None:
        """Empty the message list of the user's record. Missing record is an error."""
        try:
            async with self._client() as client:
                user = await self._find_user(client, user_key)
                if user is None:
                    raise HistoryStoreError("no history found for this user")
                body = {
                    "id": user["id"],
                    "telegramId": user.get("telegramId", user_key),
                    "username": user.get("username", ""),
                    "messages": [],
                }
                r = await client.patch(f"users/{user['id']}", json=body)
        except (httpx.HTTPError, ValueError) as e:
            raise HistoryStoreError(f"delete failed: {e}") from e
        if not r.is_success:
            raise HistoryStoreError(f"delete returned {r.status_code}")


def _numeric(user_key: str) -> int | str:
    return int(user_key) if user_key.lstrip("-").isdigit() else user_key
