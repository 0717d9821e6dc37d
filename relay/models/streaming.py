"""Streaming contract between the Gemini stream and the chat channel.

- Upstream: GeminiClient.stream_lines() yields raw SSE lines as they arrive
  (blank keep-alives included). A non-2xx status raises UpstreamStatusError
  before the first line; a dropped connection raises an httpx transport error
  mid-iteration.
- Decoding: relay.models.sse (decode_line, extract_fragment).
- Outbound: an OutboundChannel creates one message per answer and then replaces
  its whole text on every edit (Telegram editMessageText). Edits never carry deltas.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


class DeliveryError(RuntimeError):
    """Outbound send/edit failed. Logged by callers, never fatal."""


@runtime_checkable
class OutboundChannel(Protocol):
    """Protocol for chat transports that can show a progressively edited answer."""

    async def emit(self, chat_id: int, text: str) -> int:
        """Send a new message and return its handle (message id). Raises DeliveryError."""
        ...

    async def edit(self, chat_id: int, handle: int, text: str) -> None:
        """Replace the text of a previously emitted message. Raises DeliveryError."""
        ...
