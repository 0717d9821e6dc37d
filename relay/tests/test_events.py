"""Tests for event payloads and wire types."""

from relay.core.events import ConversationTurn, IncomingMessage, MessageKind
from relay.models.schema import FileData, GenerateContentResponse, Part


def test_incoming_message_defaults():
    msg = IncomingMessage(chat_id=1, user_id=2, text="hi")
    assert msg.kind is MessageKind.TEXT
    assert msg.command == ""
    assert msg.photo_file_id is None


def test_conversation_turn_json_roundtrip_with_attachment():
    turn = ConversationTurn(role="user", text="pic", attachment=FileData(mime_type="image/jpeg", data="AA=="))
    back = ConversationTurn.model_validate_json(turn.model_dump_json())
    assert back == turn


def test_file_data_accepts_camel_case():
    part = Part.model_validate({"inlineData": {"mimeType": "image/png", "data": "x"}})
    assert part.inline_data.mime_type == "image/png"


def test_first_part_handles_missing_content():
    assert GenerateContentResponse().first_part() is None
    resp = GenerateContentResponse.model_validate({"candidates": [{"finishReason": "SAFETY"}]})
    assert resp.first_part() is None
    assert list(resp.iter_parts()) == []
