"""Tests for the stream aggregator: end-to-end scenarios with fake outbound and store."""

from __future__ import annotations

import httpx
import pytest

from relay.core.aggregator import (
    CONNECTION_ERROR_TEXT,
    FINAL_MARKER,
    NO_CONTENT_TEXT,
    UPSTREAM_ERROR_TEXT,
    AggregatorPhase,
    Outcome,
    StreamAggregator,
)
from relay.core.events import ConversationTurn
from relay.core.throttle import DeliveryThrottle
from relay.models.gemini import UpstreamStatusError
from relay.tests.conftest import FakeClock, FakeOutbound, MemoryStore, lines_from, sse

CHAT = 555
USER = "42"


def _turn(text: str = "hi") -> ConversationTurn:
    return ConversationTurn(role="user", text=text)


def _aggregator(outbound, store, *ticks, interval=0.5):
    return StreamAggregator(outbound, store, DeliveryThrottle(interval), clock=FakeClock(*ticks))


@pytest.mark.asyncio
async def test_scenario_a_emit_defer_edit_then_final(outbound, store):
    agg = _aggregator(outbound, store, 0.0, 0.2, 0.7)
    result = await agg.run(
        CHAT,
        USER,
        _turn(),
        lines_from(sse("Hel"), "", sse("lo "), "", sse("world"), "data: [DONE]"),
    )
    assert result.outcome is Outcome.COMPLETED
    assert result.text == "Hello world"
    assert outbound.calls == [
        ("emit", CHAT, "Hel"),
        ("edit", 101, "Hello world"),
        ("edit", 101, "Hello world" + FINAL_MARKER),
    ]
    assert store.appended == [
        (USER, [_turn(), ConversationTurn(role="model", text="Hello world")])
    ]
    assert result.persisted is True
    assert agg.phase is AggregatorPhase.FINALIZING


@pytest.mark.asyncio
async def test_scenario_b_no_content_reports_apology_without_persisting(outbound, store):
    agg = _aggregator(outbound, store, 0.0)
    result = await agg.run(
        CHAT,
        USER,
        _turn(),
        lines_from("", sse(), sse(""), ": ping", "data: [DONE]"),
    )
    assert result.outcome is Outcome.EMPTY
    assert outbound.calls == [("emit", CHAT, NO_CONTENT_TEXT)]
    assert store.appended == []


@pytest.mark.asyncio
async def test_scenario_c_drop_after_first_fragment_keeps_message_unedited(outbound, store):
    agg = _aggregator(outbound, store, 0.0, 1.0)
    result = await agg.run(
        CHAT,
        USER,
        _turn(),
        lines_from(sse("Hel"), error=httpx.ReadError("connection reset")),
    )
    assert result.outcome is Outcome.ABORTED
    assert outbound.calls == [("emit", CHAT, "Hel")]
    assert store.appended == []
    assert agg.phase is AggregatorPhase.ABORTED


@pytest.mark.asyncio
async def test_connect_failure_before_any_text_reports_connectivity(outbound, store):
    agg = _aggregator(outbound, store)
    result = await agg.run(CHAT, USER, _turn(), lines_from(error=httpx.ConnectError("refused")))
    assert result.outcome is Outcome.ABORTED
    assert outbound.calls == [("emit", CHAT, CONNECTION_ERROR_TEXT)]
    assert store.appended == []


@pytest.mark.asyncio
async def test_body_decoding_error_before_any_text_aborts(outbound, store):
    agg = _aggregator(outbound, store)
    result = await agg.run(CHAT, USER, _turn(), lines_from(error=httpx.DecodingError("bad gzip")))
    assert result.outcome is Outcome.ABORTED
    assert agg.phase is AggregatorPhase.ABORTED
    assert outbound.calls == [("emit", CHAT, CONNECTION_ERROR_TEXT)]
    assert store.appended == []


@pytest.mark.asyncio
async def test_body_decoding_error_mid_stream_keeps_partial(outbound, store):
    agg = _aggregator(outbound, store, 0.0)
    result = await agg.run(
        CHAT, USER, _turn(), lines_from(sse("Hel"), error=httpx.DecodingError("bad gzip"))
    )
    assert result.outcome is Outcome.ABORTED
    assert outbound.calls == [("emit", CHAT, "Hel")]


@pytest.mark.asyncio
async def test_source_close_failure_does_not_replace_result(outbound, store):
    class Source:
        def __init__(self):
            self.items = iter([sse("a")])

        def __aiter__(self):
            return self

        async def __anext__(self):
            try:
                return next(self.items)
            except StopIteration:
                raise httpx.ReadError("reset")

        async def aclose(self):
            raise httpx.ReadError("already broken")

    result = await _aggregator(outbound, store, 0.0).run(CHAT, USER, _turn(), Source())
    assert result.outcome is Outcome.ABORTED
    assert result.handle == 101


@pytest.mark.asyncio
async def test_username_is_handed_to_store(outbound, store):
    await _aggregator(outbound, store, 0.0).run(
        CHAT, USER, _turn(), lines_from(sse("ok")), username="ann"
    )
    assert store.usernames == ["ann"]


@pytest.mark.asyncio
async def test_upstream_status_without_content_reports_error(outbound, store):
    agg = _aggregator(outbound, store)
    result = await agg.run(CHAT, USER, _turn(), lines_from(error=UpstreamStatusError(429, "quota")))
    assert result.outcome is Outcome.UPSTREAM_ERROR
    assert outbound.calls == [("emit", CHAT, UPSTREAM_ERROR_TEXT)]
    assert store.appended == []


@pytest.mark.asyncio
async def test_upstream_status_after_partial_leaves_partial_alone(outbound, store):
    agg = _aggregator(outbound, store, 0.0)
    result = await agg.run(
        CHAT, USER, _turn(), lines_from(sse("part"), error=UpstreamStatusError(500))
    )
    assert result.outcome is Outcome.UPSTREAM_ERROR
    assert outbound.calls == [("emit", CHAT, "part")]


@pytest.mark.asyncio
async def test_malformed_line_is_skipped_and_aggregation_continues(outbound, store):
    agg = _aggregator(outbound, store, 0.0, 1.0)
    result = await agg.run(
        CHAT,
        USER,
        _turn(),
        lines_from(sse("A"), "data: {broken", sse("B"), "data: [DONE]"),
    )
    assert result.outcome is Outcome.COMPLETED
    assert result.text == "AB"
    assert result.malformed_lines == 1


@pytest.mark.asyncio
async def test_end_of_lines_without_sentinel_finalizes(outbound, store):
    agg = _aggregator(outbound, store, 0.0)
    result = await agg.run(CHAT, USER, _turn(), lines_from(sse("done")))
    assert result.outcome is Outcome.COMPLETED
    assert outbound.calls[-1] == ("edit", 101, "done" + FINAL_MARKER)


@pytest.mark.asyncio
async def test_lines_after_sentinel_are_ignored(outbound, store):
    agg = _aggregator(outbound, store, 0.0)
    result = await agg.run(
        CHAT, USER, _turn(), lines_from(sse("a"), "data: [DONE]", sse("ignored"))
    )
    assert result.text == "a"


@pytest.mark.parametrize(
    "ticks",
    [
        (0.0, 0.0, 0.0, 0.0, 0.0),
        (0.0, 0.6, 1.2, 1.8, 2.4),
        (0.0, 0.1, 0.9, 0.95, 5.0),
    ],
)
@pytest.mark.asyncio
async def test_accumulated_text_independent_of_timing(ticks):
    outbound, store = FakeOutbound(), MemoryStore()
    pieces = ["Th", "e ", "", "quick ", "fox", "."]
    lines = [sse(p) for p in pieces] + ["data: [DONE]"]
    result = await _aggregator(outbound, store, *ticks).run(CHAT, USER, _turn(), lines_from(*lines))
    assert result.text == "The quick fox."
    assert store.turns[USER][-1].text == "The quick fox."
    assert outbound.calls[-1][2] == "The quick fox." + FINAL_MARKER


@pytest.mark.asyncio
async def test_edit_failure_is_not_fatal_and_still_resets_clock(store):
    outbound = FakeOutbound(fail_edits={1})
    agg = _aggregator(outbound, store, 0.0, 0.6, 0.8, 1.2)
    result = await agg.run(
        CHAT,
        USER,
        _turn(),
        lines_from(sse("a"), sse("b"), sse("c"), sse("d"), "data: [DONE]"),
    )
    assert result.outcome is Outcome.COMPLETED
    # edit at 0.6 fails, 0.8 is deferred (clock was reset), 1.2 edits again
    assert outbound.calls == [
        ("emit", CHAT, "a"),
        ("edit", 101, "ab"),
        ("edit", 101, "abcd"),
        ("edit", 101, "abcd" + FINAL_MARKER),
    ]


@pytest.mark.asyncio
async def test_emit_failure_means_nothing_shown_but_answer_persisted(store):
    outbound = FakeOutbound(fail_emit=True)
    agg = _aggregator(outbound, store, 0.0, 0.1)
    result = await agg.run(CHAT, USER, _turn(), lines_from(sse("x"), sse("y"), "data: [DONE]"))
    assert result.outcome is Outcome.COMPLETED
    assert result.handle is None
    assert outbound.calls == [("emit", CHAT, "x")]
    assert store.turns[USER][-1].text == "xy"


@pytest.mark.asyncio
async def test_persistence_failure_is_logged_only(outbound):
    store = MemoryStore(fail=True)
    result = await _aggregator(outbound, store, 0.0).run(
        CHAT, USER, _turn(), lines_from(sse("ok"), "data: [DONE]")
    )
    assert result.outcome is Outcome.COMPLETED
    assert result.persisted is False
    assert outbound.calls[-1] == ("edit", 101, "ok" + FINAL_MARKER)


@pytest.mark.asyncio
async def test_user_turn_attachment_is_persisted(outbound, store):
    from relay.models.schema import FileData

    turn = ConversationTurn(role="user", text="look", attachment=FileData(mime_type="image/jpeg", data="AA=="))
    await _aggregator(outbound, store, 0.0).run(CHAT, USER, turn, lines_from(sse("a cat")))
    assert store.turns[USER][0].attachment.mime_type == "image/jpeg"
    assert store.turns[USER][1].role == "model"


@pytest.mark.asyncio
async def test_source_closed_after_sentinel(outbound, store):
    class Source:
        def __init__(self):
            self.items = iter([sse("a"), "data: [DONE]", sse("b")])
            self.closed = False

        def __aiter__(self):
            return self

        async def __anext__(self):
            try:
                return next(self.items)
            except StopIteration:
                raise StopAsyncIteration

        async def aclose(self):
            self.closed = True

    source = Source()
    await _aggregator(outbound, store, 0.0).run(CHAT, USER, _turn(), source)
    assert source.closed is True


@pytest.mark.asyncio
async def test_aggregator_is_single_use(outbound, store):
    agg = _aggregator(outbound, store, 0.0)
    await agg.run(CHAT, USER, _turn(), lines_from(sse("a")))
    with pytest.raises(RuntimeError, match="single-use"):
        await agg.run(CHAT, USER, _turn(), lines_from(sse("b")))
