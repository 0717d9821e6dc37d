"""Gemini SSE line decoding (streamGenerateContent?alt=sse).

Relevant lines look like ``data: {"candidates": [...]}``. Everything else
(blank keep-alives, ``event:`` lines, ``:`` comments) is ignored. Transport
framing (chunk boundaries, line splitting) is the caller's concern.
"""

from __future__ import annotations

from relay.core.events import Fragment, StreamEvent, StreamEventKind
from relay.models.schema import GenerateContentResponse

DATA_PREFIX = b"data:"
DONE_SENTINEL = b"[DONE]"

# Whitespace plus C0 control bytes and DEL.
_LEADING_JUNK = bytes(range(0x21)) + b"\x7f"


def decode_line(line: str | bytes) -> StreamEvent:
    """Turn one transport line into a StreamEvent. Never raises."""
    raw = line.encode("utf-8") if isinstance(line, str) else bytes(line)
    if not raw.startswith(DATA_PREFIX):
        return StreamEvent(kind=StreamEventKind.BLANK)
    payload = raw[len(DATA_PREFIX):].lstrip(_LEADING_JUNK).rstrip()
    if payload == DONE_SENTINEL:
        return StreamEvent(kind=StreamEventKind.SENTINEL)
    try:
        response = GenerateContentResponse.model_validate_json(payload)
    except ValueError:  # pydantic ValidationError included
        return StreamEvent(kind=StreamEventKind.MALFORMED, payload=payload)
    return StreamEvent(kind=StreamEventKind.DATA, payload=payload, response=response)


def extract_fragment(event: StreamEvent) -> Fragment | None:
    """First candidate, first part. Other candidates and parts are not read.

    No candidate or no part is not an error (safety-only events carry neither).
    A part without text (inline image) yields an empty fragment.
    """
    if event.kind is not StreamEventKind.DATA or event.response is None:
        return None
    part = event.response.first_part()
    if part is None:
        return None
    return Fragment(text=part.text or "")
