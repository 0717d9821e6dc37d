"""Stream aggregator: consumes one Gemini SSE response and types the answer out into one chat message.

Lifecycle: idle -> streaming -> finalizing | aborted. One instance per request;
its AggregationState is never shared, not even between two requests of the
same user.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import AsyncIterator, Callable, Optional

import httpx
from pydantic import BaseModel

from relay.core.events import AggregationState, ConversationTurn, DeliveryAction, Fragment, StreamEventKind
from relay.core.throttle import DeliveryThrottle
from relay.memory.history import HistoryStore, HistoryStoreError
from relay.models.gemini import UpstreamStatusError
from relay.models.sse import decode_line, extract_fragment
from relay.models.streaming import DeliveryError, OutboundChannel

logger = logging.getLogger(__name__)

FINAL_MARKER = "\u200b"
NO_CONTENT_TEXT = "Sorry, I couldn't generate a response"
CONNECTION_ERROR_TEXT = "Error connecting to AI service"
UPSTREAM_ERROR_TEXT = "Error: API returned non-200 status code"


class AggregatorPhase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    ABORTED = "aborted"


class Outcome(str, Enum):
    COMPLETED = "completed"
    EMPTY = "empty"
    ABORTED = "aborted"
    UPSTREAM_ERROR = "upstream_error"


class AggregationResult(BaseModel):
    outcome: Outcome
    text: str = ""
    handle: Optional[int] = None
    persisted: bool = False
    malformed_lines: int = 0


class StreamAggregator:
    """Drives decode -> extract -> throttle for every line, then finalizes and persists."""

    def __init__(
        self,
        outbound: OutboundChannel,
        store: HistoryStore,
        throttle: DeliveryThrottle | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        final_marker: str = FINAL_MARKER,
    ) -> None:
        self._outbound = outbound
        self._store = store
        self._throttle = throttle or DeliveryThrottle()
        self._clock = clock
        self._final_marker = final_marker
        self.phase = AggregatorPhase.IDLE

    async def run(
        self,
        chat_id: int,
        user_key: str,
        user_turn: ConversationTurn,
        lines: AsyncIterator[str],
        *,
        username: str = "",
    ) -> AggregationResult:
        """``username`` is a display name handed to the history store with the exchange."""
        if self.phase is not AggregatorPhase.IDLE:
            raise RuntimeError("StreamAggregator is single-use")
        state = AggregationState()
        malformed = 0
        self.phase = AggregatorPhase.STREAMING
        try:
            async for line in lines:
                event = decode_line(line)
                if event.kind is StreamEventKind.BLANK:
                    continue
                if event.kind is StreamEventKind.SENTINEL:
                    break
                if event.kind is StreamEventKind.MALFORMED:
                    malformed += 1
                    logger.warning("skipping malformed stream line: %r", (event.payload or b"")[:500])
                    continue
                fragment = extract_fragment(event)
                if fragment is None or not fragment.text:
                    continue
                state.accumulated += fragment.text
                await self._deliver(chat_id, state, fragment)
        except UpstreamStatusError as e:
            self.phase = AggregatorPhase.ABORTED
            logger.warning("upstream status %s for chat %s", e.status_code, chat_id)
            if not state.accumulated:
                await self._notify(chat_id, UPSTREAM_ERROR_TEXT)
            return AggregationResult(
                outcome=Outcome.UPSTREAM_ERROR,
                handle=state.delivered_handle,
                malformed_lines=malformed,
            )
        except (httpx.RequestError, httpx.StreamError) as e:
            self.phase = AggregatorPhase.ABORTED
            # Accumulated text is dropped here: not delivered, not persisted.
            logger.warning(
                "stream aborted for chat %s after %d chars: %s",
                chat_id,
                len(state.accumulated),
                e,
            )
            if state.delivered_handle is None:
                await self._notify(chat_id, CONNECTION_ERROR_TEXT)
            return AggregationResult(
                outcome=Outcome.ABORTED,
                handle=state.delivered_handle,
                malformed_lines=malformed,
            )
        finally:
            await self._close_source(lines)
        self.phase = AggregatorPhase.FINALIZING
        return await self._finalize(chat_id, user_key, user_turn, state, malformed, username)

    async def _deliver(self, chat_id: int, state: AggregationState, fragment: Fragment) -> None:
        now = self._clock()
        decision = self._throttle.decide(state, now, fragment)
        if decision.action is DeliveryAction.EMIT:
            handle = None
            try:
                handle = await self._outbound.emit(chat_id, decision.text)
            except DeliveryError as e:
                logger.warning("emit failed for chat %s: %s", chat_id, e)
            self._throttle.record_delivery(state, now, handle)
        elif decision.action is DeliveryAction.EDIT:
            try:
                await self._outbound.edit(chat_id, state.delivered_handle, decision.text)
            except DeliveryError as e:
                logger.warning("edit failed for chat %s: %s", chat_id, e)
            self._throttle.record_delivery(state, now)

    async def _finalize(
        self,
        chat_id: int,
        user_key: str,
        user_turn: ConversationTurn,
        state: AggregationState,
        malformed: int,
        username: str = "",
    ) -> AggregationResult:
        text = state.accumulated
        if not text:
            logger.info("stream produced no content for chat %s", chat_id)
            await self._notify(chat_id, NO_CONTENT_TEXT)
            return AggregationResult(outcome=Outcome.EMPTY, malformed_lines=malformed)
        if state.delivered_handle is not None:
            # Marker forces a re-render when the text equals the last periodic edit.
            try:
                await self._outbound.edit(chat_id, state.delivered_handle, text + self._final_marker)
            except DeliveryError as e:
                logger.warning("final edit failed for chat %s: %s", chat_id, e)
        else:
            logger.warning("no message to finalize for chat %s; answer not shown", chat_id)
        persisted = await self._persist(user_key, user_turn, text, username)
        return AggregationResult(
            outcome=Outcome.COMPLETED,
            text=text,
            handle=state.delivered_handle,
            persisted=persisted,
            malformed_lines=malformed,
        )

    async def _persist(
        self, user_key: str, user_turn: ConversationTurn, text: str, username: str = ""
    ) -> bool:
        turns = [user_turn, ConversationTurn(role="model", text=text)]
        try:
            await self._store.append_turns(user_key, turns, username=username)
        except HistoryStoreError as e:
            logger.error("saving history failed: %s", e)
            return False
        return True

    async def _close_source(self, lines: AsyncIterator[str]) -> None:
        aclose = getattr(lines, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning("closing stream source failed: %s", e)

    async def _notify(self, chat_id: int, text: str) -> None:
        try:
            await self._outbound.emit(chat_id, text)
        except DeliveryError as e:
            logger.warning("notify failed for chat %s: %s", chat_id, e)
