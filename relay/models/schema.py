"""Gemini REST wire types (generateContent / streamGenerateContent).

Only the fields the relay reads or writes are modelled; everything else in a
response (usageMetadata, safetyRatings, modelVersion, ...) is ignored.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class FileData(BaseModel):
    """Base64 payload with mime type. Used for uploads and for stored attachments."""

    model_config = ConfigDict(populate_by_name=True)

    mime_type: str = Field(validation_alias=AliasChoices("mime_type", "mimeType"))
    data: str


class Part(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    text: Optional[str] = None
    inline_data: Optional[FileData] = Field(
        default=None, validation_alias=AliasChoices("inline_data", "inlineData")
    )


class Content(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Optional[str] = None
    parts: list[Part] = Field(default_factory=list)


class Candidate(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    content: Optional[Content] = None
    finish_reason: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("finish_reason", "finishReason")
    )


class GenerateContentResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    candidates: list[Candidate] = Field(default_factory=list)

    def first_part(self) -> Part | None:
        if not self.candidates:
            return None
        content = self.candidates[0].content
        if content is None or not content.parts:
            return None
        return content.parts[0]

    def iter_parts(self):
        for candidate in self.candidates:
            if candidate.content is None:
                continue
            yield from candidate.content.parts


def safety_settings(threshold: str) -> list[dict[str, str]]:
    return [{"category": c, "threshold": threshold} for c in HARM_CATEGORIES]


def build_request(
    contents: list[Content],
    *,
    system: str | None = None,
    threshold: str = "BLOCK_NONE",
    response_modalities: list[str] | None = None,
) -> dict[str, Any]:
    """Request body for generateContent/streamGenerateContent."""
    body: dict[str, Any] = {
        "contents": [c.model_dump(exclude_none=True) for c in contents],
        "safety_settings": safety_settings(threshold),
    }
    if system:
        body["system_instruction"] = {"parts": [{"text": system}]}
    if response_modalities:
        body["generationConfig"] = {"responseModalities": response_modalities}
    return body
