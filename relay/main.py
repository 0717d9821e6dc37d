"""Entry point for gemini-relay: load .env and config, then long-poll Telegram and dispatch updates."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from relay.config import get_config
from relay.core.logging_config import setup_logging

if TYPE_CHECKING:
    from relay.config.loader import Config
    from relay.memory.history import HistoryStore

logger = logging.getLogger(__name__)


def build_history_store(config: Config) -> HistoryStore:
    if config.history.backend == "mokky":
        from relay.memory.mokky import MokkyHistoryStore

        return MokkyHistoryStore(config.history.mokky_url)
    from relay.memory.history import RedisHistoryStore

    return RedisHistoryStore(
        config.redis.url,
        key_prefix=config.history.key_prefix,
        ttl_days=config.history.ttl_days,
    )


def main() -> None:
    load_dotenv(".env")
    config = get_config()
    setup_logging(level=config.logging.level, use_json=config.logging.use_json)
    if not config.telegram.bot_token or not config.gemini.api_key:
        logger.error("Please set TELEGRAM_TOKEN and GEMINI_TOKEN environment variables")
        sys.exit(1)
    asyncio.run(run_bot(config))


async def run_bot(config: Config) -> None:
    from relay.agents.chat import ChatAgent
    from relay.channels.telegram import BOT_COMMANDS, TelegramClient, run_polling
    from relay.core.dispatcher import Dispatcher
    from relay.models.gemini import GeminiClient
    from relay.models.streaming import DeliveryError

    telegram = TelegramClient(config.telegram.bot_token, api_url=config.telegram.api_url)
    gemini = GeminiClient(
        config.gemini.api_key,
        base_url=config.gemini.base_url,
        model=config.gemini.model,
        image_model=config.gemini.image_model,
        timeout=config.gemini.timeout,
        safety_threshold=config.gemini.safety_threshold,
    )
    store = build_history_store(config)
    agent = ChatAgent(
        gemini,
        telegram,
        store,
        max_turns=config.history.max_turns,
        edit_interval=config.stream.edit_interval,
        final_marker=config.stream.final_marker,
        system_prompt=config.gemini.system_prompt,
        photo_system_prompt=config.gemini.photo_system_prompt,
    )
    dispatcher = Dispatcher()
    agent.register(dispatcher)

    try:
        await telegram.set_my_commands(BOT_COMMANDS)
    except DeliveryError as e:
        logger.warning("setMyCommands failed: %s", e)

    logger.info("Bot is running...")
    try:
        await run_polling(telegram, dispatcher, poll_timeout=config.telegram.long_poll_timeout)
    finally:
        await dispatcher.drain()
        close = getattr(store, "close", None)
        if close is not None:
            await close()
        await telegram.aclose()


if __name__ == "__main__":
    main()
