"""Gemini REST API: streamGenerateContent (SSE) for chat, generateContent for photos and images."""

from __future__ import annotations

import logging
from typing import AsyncIterator

import httpx

from relay.models.schema import Content, GenerateContentResponse, build_request

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
IMAGE_MODALITIES = ["Text", "Image"]


class UpstreamStatusError(RuntimeError):
    """Gemini answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"Gemini API returned status {status_code}")
        self.status_code = status_code
        self.body = body


class GeminiClient:
    """Thin async client. Credentials and endpoints are passed in, never read from env."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        model: str = "gemini-2.0-flash",
        image_model: str = "gemini-2.0-flash-exp-image-generation",
        timeout: float = 60.0,
        safety_threshold: str = "BLOCK_NONE",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._image_model = image_model
        self._timeout = timeout
        self._threshold = safety_threshold
        self._transport = transport

    def _url(self, model: str, method: str) -> str:
        return f"{self._base_url}/models/{model}:{method}"

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self._api_key}

    def stream_lines(
        self,
        contents: list[Content],
        *,
        system: str | None = None,
    ) -> AsyncIterator[str]:
        """Raw SSE lines of streamGenerateContent. No read timeout: a hung stream blocks its task."""

        async def _stream() -> AsyncIterator[str]:
            body = build_request(contents, system=system, threshold=self._threshold)
            timeout = httpx.Timeout(self._timeout, read=None)
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                async with client.stream(
                    "POST",
                    self._url(self._model, "streamGenerateContent"),
                    params={"alt": "sse"},
                    json=body,
                    headers=self._headers(),
                ) as resp:
                    if not resp.is_success:
                        raw = await resp.aread()
                        text = raw.decode("utf-8", errors="replace")
                        logger.warning("Gemini stream status %s: %s", resp.status_code, text[:500])
                        raise UpstreamStatusError(resp.status_code, text)
                    async for line in resp.aiter_lines():
                        yield line

        return _stream()

    async def generate(
        self,
        contents: list[Content],
        *,
        system: str | None = None,
        model: str | None = None,
        response_modalities: list[str] | None = None,
    ) -> GenerateContentResponse:
        """Non-streaming generateContent."""
        body = build_request(
            contents,
            system=system,
            threshold=self._threshold,
            response_modalities=response_modalities,
        )
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            r = await client.post(
                self._url(model or self._model, "generateContent"),
                json=body,
                headers=self._headers(),
            )
        if not r.is_success:
            logger.warning("Gemini status %s: %s", r.status_code, r.text[:500])
            raise UpstreamStatusError(r.status_code, r.text)
        return GenerateContentResponse.model_validate_json(r.content)

    async def generate_image(self, prompt: str) -> GenerateContentResponse:
        contents = [Content(parts=[{"text": prompt}])]
        return await self.generate(
            contents,
            model=self._image_model,
            response_modalities=IMAGE_MODALITIES,
        )
