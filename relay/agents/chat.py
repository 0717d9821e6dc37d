"""ChatAgent: per-update handlers. Text and photos stream through the aggregator; /generate is one-shot."""

from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Callable

import httpx

from relay.channels.telegram import TelegramClient
from relay.core.aggregator import (
    CONNECTION_ERROR_TEXT,
    FINAL_MARKER,
    AggregationResult,
    StreamAggregator,
)
from relay.core.dispatcher import Dispatcher
from relay.core.events import ConversationTurn, IncomingMessage
from relay.core.throttle import DEFAULT_MIN_INTERVAL, DeliveryThrottle
from relay.memory.assembler import HistoryAssembler
from relay.memory.history import HistoryStore, HistoryStoreError
from relay.models.gemini import GeminiClient, UpstreamStatusError
from relay.models.schema import Content, FileData, GenerateContentResponse, Part
from relay.models.streaming import DeliveryError

logger = logging.getLogger(__name__)

DEFAULT_PHOTO_CAPTION = "Image sent without caption"
DEFAULT_IMAGE_CAPTION = "Generated image based on your prompt."
NO_PHOTO_TEXT = "No photo found in message"
PHOTO_ERROR_TEXT = "Error processing image"
HISTORY_CLEARED_TEXT = "Your message history has been cleared!"
HISTORY_ERROR_TEXT = "Error deleting user history"
GENERATE_USAGE_TEXT = (
    "Please provide a prompt for image generation. "
    "Example: /generate a futuristic cityscape with flying cars"
)
NO_IMAGE_TEXT = "Sorry, couldn't generate an image. Please try with a different prompt."
IMAGE_DECODE_ERROR_TEXT = "Error processing the generated image"
IMAGE_SEND_ERROR_TEXT = "Generated an image but couldn't send it. Please try again."


def _format_error_for_user(exc: Exception) -> str:
    """Short user-facing text for a failed one-shot Gemini call."""
    if isinstance(exc, UpstreamStatusError):
        return f"Error: API returned status code {exc.status_code}"
    if isinstance(exc, httpx.HTTPError):
        return CONNECTION_ERROR_TEXT
    if isinstance(exc, ValueError):
        return "Error reading API response"
    return "Error processing your request"


def _first_image(response: GenerateContentResponse) -> FileData | None:
    for part in response.iter_parts():
        if part.inline_data is not None and part.inline_data.data:
            return part.inline_data
    return None


def _first_text(response: GenerateContentResponse) -> str:
    for part in response.iter_parts():
        if part.text:
            return part.text
    return ""


class ChatAgent:
    """Wires Gemini, Telegram and the history store. Configuration comes in through the constructor."""

    def __init__(
        self,
        gemini: GeminiClient,
        telegram: TelegramClient,
        store: HistoryStore,
        *,
        max_turns: int = 100,
        edit_interval: float = DEFAULT_MIN_INTERVAL,
        final_marker: str = FINAL_MARKER,
        system_prompt: str | None = None,
        photo_system_prompt: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gemini = gemini
        self._telegram = telegram
        self._store = store
        self._assembler = HistoryAssembler(store, max_turns=max_turns)
        self._edit_interval = edit_interval
        self._final_marker = final_marker
        self._system_prompt = system_prompt
        self._photo_system_prompt = photo_system_prompt
        self._clock = clock

    def register(self, dispatcher: Dispatcher) -> None:
        dispatcher.on_text(self.handle_text)
        dispatcher.on_photo(self.handle_photo)
        dispatcher.on_command("history", self.handle_clear_history)
        dispatcher.on_command("generate", self.handle_generate)

    def _aggregator(self) -> StreamAggregator:
        # Fresh instance per request: aggregation state is never shared.
        return StreamAggregator(
            self._telegram,
            self._store,
            DeliveryThrottle(self._edit_interval),
            clock=self._clock,
            final_marker=self._final_marker,
        )

    async def _reply(self, chat_id: int, text: str) -> None:
        try:
            await self._telegram.emit(chat_id, text)
        except DeliveryError as e:
            logger.warning("reply failed for chat %s: %s", chat_id, e)

    async def handle_text(self, msg: IncomingMessage) -> AggregationResult:
        await self._telegram.send_typing(msg.chat_id)
        user_key = str(msg.user_id)
        contents = await self._assembler.prepare(user_key, msg.text)
        lines = self._gemini.stream_lines(contents, system=self._system_prompt)
        result = await self._aggregator().run(
            msg.chat_id,
            user_key,
            ConversationTurn(role="user", text=msg.text),
            lines,
            username=msg.username,
        )
        logger.info(
            "text answered",
            extra={"chat_id": msg.chat_id, "outcome": result.outcome.value, "chars": len(result.text)},
        )
        return result

    async def handle_photo(self, msg: IncomingMessage) -> AggregationResult | None:
        if not msg.photo_file_id:
            await self._reply(msg.chat_id, NO_PHOTO_TEXT)
            return None
        await self._telegram.send_typing(msg.chat_id)
        try:
            raw = await self._telegram.download_file(msg.photo_file_id)
        except DeliveryError as e:
            logger.error("getting photo failed: %s", e)
            await self._reply(msg.chat_id, PHOTO_ERROR_TEXT)
            return None
        image = FileData(mime_type="image/jpeg", data=base64.b64encode(raw).decode("ascii"))
        caption = msg.text or DEFAULT_PHOTO_CAPTION
        contents = [Content(role="user", parts=[Part(text=caption), Part(inline_data=image)])]
        lines = self._gemini.stream_lines(contents, system=self._photo_system_prompt)
        result = await self._aggregator().run(
            msg.chat_id,
            str(msg.user_id),
            ConversationTurn(role="user", text=caption, attachment=image),
            lines,
            username=msg.username,
        )
        logger.info("photo answered", extra={"chat_id": msg.chat_id, "outcome": result.outcome.value})
        return result

    async def handle_clear_history(self, msg: IncomingMessage) -> None:
        await self._telegram.send_typing(msg.chat_id)
        try:
            await self._store.delete_history(str(msg.user_id))
        except HistoryStoreError as e:
            logger.error("deleting user history failed: %s", e)
            await self._reply(msg.chat_id, HISTORY_ERROR_TEXT)
            return
        await self._reply(msg.chat_id, HISTORY_CLEARED_TEXT)

    async def handle_generate(self, msg: IncomingMessage) -> None:
        prompt = msg.command_args.strip()
        if not prompt:
            await self._reply(msg.chat_id, GENERATE_USAGE_TEXT)
            return
        await self._telegram.send_typing(msg.chat_id)
        logger.info("image generation requested", extra={"chat_id": msg.chat_id})
        try:
            response = await self._gemini.generate_image(prompt)
        except (UpstreamStatusError, httpx.HTTPError, ValueError) as e:
            logger.error("image generation failed: %s", e)
            await self._reply(msg.chat_id, _format_error_for_user(e))
            return
        image = _first_image(response)
        if image is None:
            logger.info("no image data in response")
            await self._reply(msg.chat_id, NO_IMAGE_TEXT)
            return
        caption = _first_text(response) or DEFAULT_IMAGE_CAPTION
        try:
            await self._store.append_turns(
                str(msg.user_id),
                [
                    ConversationTurn(role="user", text=prompt),
                    ConversationTurn(role="model", text=caption, attachment=image),
                ],
                username=msg.username,
            )
        except HistoryStoreError as e:
            logger.error("saving generated image failed: %s", e)
        try:
            decoded = base64.b64decode(image.data, validate=True)
        except binascii.Error as e:
            logger.error("decoding image data failed: %s", e)
            await self._reply(msg.chat_id, IMAGE_DECODE_ERROR_TEXT)
            return
        try:
            await self._telegram.send_photo(
                msg.chat_id, decoded, caption=caption, mime_type=image.mime_type or "image/png"
            )
        except DeliveryError as e:
            logger.error("sending photo failed: %s", e)
            await self._reply(msg.chat_id, IMAGE_SEND_ERROR_TEXT)
