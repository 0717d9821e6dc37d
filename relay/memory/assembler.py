"""History assembler: prior turns + new user text -> ordered Gemini ``contents``."""

from __future__ import annotations

import logging
from typing import Sequence

from relay.core.events import ConversationTurn
from relay.memory.history import HistoryStore, HistoryStoreError
from relay.models.schema import Content, Part

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 100


def build_contents(prior_turns: Sequence[ConversationTurn], new_user_text: str) -> list[Content]:
    """Roles map 1:1 (user->user, model->model); order kept; the new user turn is always last.

    Stored attachments are not replayed, only their turn text.
    """
    contents = [Content(role=t.role, parts=[Part(text=t.text)]) for t in prior_turns]
    contents.append(Content(role="user", parts=[Part(text=new_user_text)]))
    return contents


class HistoryAssembler:
    """Reads a user's history and enforces the size bound before a request goes upstream.

    Past ``max_turns`` the whole remote history is deleted (full reset, not a
    sliding window) and the request is sent with no prior context.
    """

    def __init__(self, store: HistoryStore, max_turns: int = DEFAULT_MAX_TURNS) -> None:
        self._store = store
        self._max_turns = max_turns

    async def load(self, user_key: str) -> list[ConversationTurn]:
        try:
            prior = await self._store.read_history(user_key)
        except HistoryStoreError as e:
            logger.error("getting previous messages failed: %s", e)
            return []
        if len(prior) > self._max_turns:
            logger.info(
                "history for user %s exceeds %d messages, cleaning up", user_key, self._max_turns
            )
            try:
                await self._store.delete_history(user_key)
            except HistoryStoreError as e:
                logger.error("history cleanup failed: %s", e)
            else:
                logger.info("cleaned up history for user %s", user_key)
            return []
        return prior

    async def prepare(self, user_key: str, new_user_text: str) -> list[Content]:
        prior = await self.load(user_key)
        return build_contents(prior, new_user_text)
