"""Domain payloads: incoming updates, stream events, delivery decisions, history turns. All are Pydantic models."""

from __future__ import annotations

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

from relay.models.schema import FileData, GenerateContentResponse


class MessageKind(str, Enum):
    TEXT = "text"
    PHOTO = "photo"
    COMMAND = "command"


class IncomingMessage(BaseModel):
    """Normalized Telegram update routed by the dispatcher."""

    update_id: int = 0
    message_id: int = 0
    chat_id: int
    user_id: int
    username: str = ""
    kind: MessageKind = MessageKind.TEXT
    text: str = Field(default="", description="Message text or photo caption")
    command: str = Field(default="", description="Command name without slash, e.g. 'generate'")
    command_args: str = ""
    photo_file_id: Optional[str] = None


class ConversationTurn(BaseModel):
    """One stored turn. History is an ordered, append-only list of these per user."""

    role: Literal["user", "model"]
    text: str = ""
    attachment: Optional[FileData] = None


class StreamEventKind(str, Enum):
    DATA = "data"
    SENTINEL = "sentinel"
    BLANK = "blank"
    MALFORMED = "malformed"


class StreamEvent(BaseModel):
    """One decoded transport line. payload holds the raw bytes after the prefix (data/malformed)."""

    kind: StreamEventKind
    payload: Optional[bytes] = None
    response: Optional[GenerateContentResponse] = None


class Fragment(BaseModel):
    text: str = ""


class DeliveryAction(str, Enum):
    EMIT = "emit"
    EDIT = "edit"
    DEFER = "defer"
    NOOP = "noop"


class DeliveryDecision(BaseModel):
    action: DeliveryAction
    text: str = ""


class AggregationState(BaseModel):
    """Owned by one in-flight stream; never shared across requests."""

    accumulated: str = ""
    delivered_handle: Optional[int] = Field(default=None, description="Telegram message_id")
    last_delivery_time: Optional[float] = None
    has_delivered: bool = False
