"""gemini-relay: Telegram bot that streams Gemini answers into progressively edited messages."""
