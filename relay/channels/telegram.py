"""Telegram channel: Bot API client (send, edit, typing, photos, files) and long polling."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

import httpx

from relay.core.events import IncomingMessage, MessageKind
from relay.models.streaming import DeliveryError

if TYPE_CHECKING:
    from relay.core.dispatcher import Dispatcher

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096
MAX_CAPTION_LENGTH = 1024
POLL_RETRY_DELAY = 5.0

BOT_COMMANDS = [
    {"command": "history", "description": "Clear your message history"},
    {"command": "generate", "description": "Generate an image from a prompt"},
]


_ZERO_WIDTH = "\u200b\u200c\u200d\u2060\ufeff"


def _utf16_len(text: str) -> int:
    return len(text.encode("utf-16-le")) // 2


def fit_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Cut ``text`` to ``limit`` UTF-16 code units, the unit Telegram measures in.

    A trailing run of zero-width characters (the final-edit marker) survives the
    cut, so a truncated final edit still differs from the periodic ones.
    """
    if _utf16_len(text) <= limit:
        return text
    body = text.rstrip(_ZERO_WIDTH)
    tail = text[len(body):]
    if _utf16_len(tail) > limit - 3:
        tail = ""
    budget = limit - 3 - _utf16_len(tail)
    # A surrogate pair split by the cut leaves a lone half; drop it.
    head = body.encode("utf-16-le")[: budget * 2].decode("utf-16-le", errors="ignore")
    return head + "..." + tail


class TelegramClient:
    """Bot API over one shared httpx client. Every failed call raises DeliveryError."""

    def __init__(
        self,
        token: str,
        api_url: str = TELEGRAM_API,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        root = api_url.rstrip("/")
        self._base_url = f"{root}/bot{token}"
        self._file_url = f"{root}/file/bot{token}"
        self._client = httpx.AsyncClient(timeout=15.0, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, timeout: float = 15.0, **kwargs: Any) -> Any:
        try:
            r = await self._client.post(f"{self._base_url}/{method}", timeout=timeout, **kwargs)
        except httpx.HTTPError as e:
            raise DeliveryError(f"{method}: {e}") from e
        try:
            body = r.json()
        except ValueError:
            body = {}
        if r.status_code != 200 or not body.get("ok"):
            raise DeliveryError(f"{method} {r.status_code}: {body.get('description', r.text)}")
        return body.get("result")

    async def emit(self, chat_id: int, text: str) -> int:
        result = await self._call("sendMessage", json={"chat_id": chat_id, "text": fit_message(text)})
        return int(result["message_id"])

    async def edit(self, chat_id: int, handle: int, text: str) -> None:
        await self._call(
            "editMessageText",
            json={"chat_id": chat_id, "message_id": handle, "text": fit_message(text)},
        )

    async def send_typing(self, chat_id: int) -> None:
        try:
            await self._call("sendChatAction", timeout=5.0, json={"chat_id": chat_id, "action": "typing"})
        except DeliveryError as e:
            logger.debug("sendChatAction failed: %s", e)

    async def send_photo(
        self,
        chat_id: int,
        photo: bytes,
        caption: str = "",
        filename: str = "image.png",
        mime_type: str = "image/png",
    ) -> int:
        data = {"chat_id": str(chat_id)}
        if caption:
            data["caption"] = fit_message(caption, MAX_CAPTION_LENGTH)
        result = await self._call(
            "sendPhoto",
            timeout=60.0,
            data=data,
            files={"photo": (filename, photo, mime_type)},
        )
        return int(result["message_id"])

    async def download_file(self, file_id: str) -> bytes:
        info = await self._call("getFile", json={"file_id": file_id})
        path = (info or {}).get("file_path")
        if not path:
            raise DeliveryError(f"getFile returned no file_path for {file_id}")
        try:
            r = await self._client.get(f"{self._file_url}/{path}", timeout=60.0)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(f"file download: {e}") from e
        return r.content

    async def set_my_commands(self, commands: list[dict[str, str]]) -> None:
        await self._call("setMyCommands", json={"commands": commands})

    async def get_updates(self, offset: int, timeout: int) -> list[dict[str, Any]]:
        r = await self._client.get(
            f"{self._base_url}/getUpdates",
            params={"timeout": timeout, "offset": offset},
            timeout=float(timeout + 15),
        )
        data = r.json()
        if not data.get("ok"):
            raise DeliveryError(f"getUpdates not ok: {data.get('description', data)}")
        return data.get("result", [])


def parse_update(upd: dict[str, Any]) -> Optional[IncomingMessage]:
    """Normalize a Bot API update. Returns None for updates the bot does not handle."""
    msg = upd.get("message")
    if not msg or "from" not in msg:
        return None
    sender = msg["from"]
    username = sender.get("username") or sender.get("first_name") or f"no username {sender['id']}"
    base = {
        "update_id": upd.get("update_id", 0),
        "message_id": msg.get("message_id", 0),
        "chat_id": msg["chat"]["id"],
        "user_id": sender["id"],
        "username": username,
    }
    photos = msg.get("photo")
    if photos:
        # Telegram lists sizes ascending; the last one is the original resolution.
        return IncomingMessage(
            **base,
            kind=MessageKind.PHOTO,
            text=msg.get("caption") or "",
            photo_file_id=photos[-1]["file_id"],
        )
    text = msg.get("text")
    if text is None:
        return None
    if text.startswith("/"):
        head, _, args = text.partition(" ")
        command = head[1:].split("@", 1)[0].lower()
        return IncomingMessage(
            **base,
            kind=MessageKind.COMMAND,
            text=text,
            command=command,
            command_args=args.strip(),
        )
    return IncomingMessage(**base, kind=MessageKind.TEXT, text=text)


async def run_polling(
    telegram: TelegramClient,
    dispatcher: "Dispatcher",
    poll_timeout: int = 10,
) -> None:
    """Long-poll getUpdates forever; each update becomes its own task in the dispatcher."""
    offset = 0
    while True:
        try:
            updates = await telegram.get_updates(offset, poll_timeout)
            for upd in updates:
                offset = upd["update_id"] + 1
                incoming = parse_update(upd)
                if incoming is None:
                    continue
                dispatcher.dispatch(incoming)
        except asyncio.CancelledError:
            break
        except (httpx.ConnectTimeout, httpx.ReadTimeout) as e:
            logger.warning("Telegram API timeout, retry in %ss: %s", POLL_RETRY_DELAY, e)
            await asyncio.sleep(POLL_RETRY_DELAY)
        except Exception as e:
            logger.exception("poll error: %s", e)
            await asyncio.sleep(POLL_RETRY_DELAY)
