"""Tests for switchboard.chat: history views, serialized sends, streaming, compression."""

import asyncio
from contextlib import aclosing

import pytest

from switchboard.chat import (
    COMPRESSION_ACK,
    ChatSession,
    extract_curated_history,
    find_index_after_fraction,
    is_valid_content,
)
from switchboard.models import (
    MODEL,
    USER,
    EventType,
    Part,
    Response,
    ToolResponse,
    Turn,
    model_turn,
    user_turn,
)
from switchboard.report import FatalSessionError, ProviderError, ReportCollector

from helpers import StubAdapter, call, make_config, reply, text_stream


def _chat(adapter, history=None, **config):
    return ChatSession(
        make_config(**config),
        history=history,
        adapter_factory=lambda model: adapter,
    )


def _texts(turns):
    return [(t.role, t.text()) for t in turns]


# ---------------------------------------------------------------------------
# Curated history
# ---------------------------------------------------------------------------


class TestCuratedHistory:
    def test_valid_history_is_unchanged(self):
        history = [user_turn("a"), model_turn("b"), user_turn("c"), model_turn("d")]
        assert _texts(extract_curated_history(history)) == _texts(history)

    def test_invalid_model_output_drops_triggering_user_turn(self):
        history = [
            user_turn("a"),
            model_turn("b"),
            user_turn("c"),
            Turn(MODEL, []),
            user_turn("e"),
            model_turn("f"),
        ]
        curated = extract_curated_history(history)
        assert _texts(curated) == [(USER, "a"), (MODEL, "b"), (USER, "e"), (MODEL, "f")]

    def test_empty_text_part_is_invalid(self):
        assert not is_valid_content(Turn(MODEL, [Part(text="")]))
        assert not is_valid_content(Turn(MODEL, []))
        assert is_valid_content(model_turn("ok"))

    def test_tool_call_turn_is_valid(self):
        assert is_valid_content(Turn(MODEL, [Part(tool_call=call("echo", value="x"))]))

    def test_alternation_never_leaves_orphan_model_turn(self):
        history = [
            user_turn("q1"),
            Turn(MODEL, [Part(text="")]),
            model_turn("trailing"),
            user_turn("q2"),
            model_turn("a2"),
        ]
        curated = extract_curated_history(history)
        # The whole invalid model run goes, together with q1.
        assert _texts(curated) == [(USER, "q2"), (MODEL, "a2")]

    def test_constructor_rejects_unknown_role(self):
        with pytest.raises(FatalSessionError):
            _chat(StubAdapter(), history=[Turn("system", [Part(text="x")])])

    def test_add_history_rejects_unknown_role(self):
        chat = _chat(StubAdapter())
        with pytest.raises(FatalSessionError):
            chat.add_history(Turn("tool", []))

    def test_get_history_returns_copies(self):
        chat = _chat(StubAdapter(), history=[user_turn("a"), model_turn("b")])
        copy = chat.get_history()
        copy[0].parts[0].text = "changed"
        assert chat.get_history()[0].text() == "a"

    def test_clear_and_set_history(self):
        chat = _chat(StubAdapter(), history=[user_turn("a"), model_turn("b")])
        chat.clear_history()
        assert chat.get_history() == []
        chat.set_history([user_turn("x")])
        assert _texts(chat.get_history()) == [(USER, "x")]


# ---------------------------------------------------------------------------
# send_message
# ---------------------------------------------------------------------------


class TestSendMessage:
    def test_records_user_and_model_turns(self):
        stub = StubAdapter(replies=[reply("hello back")])
        chat = _chat(stub)
        response = asyncio.run(chat.send_message("hello"))
        assert response.text() == "hello back"
        assert _texts(chat.get_history()) == [(USER, "hello"), (MODEL, "hello back")]

    def test_request_uses_curated_history(self):
        stub = StubAdapter(replies=[reply("ok")])
        history = [user_turn("bad"), Turn(MODEL, []), user_turn("good"), model_turn("fine")]
        chat = _chat(stub, history=history)
        asyncio.run(chat.send_message("next"))
        sent = stub.requests[0].contents
        assert _texts(sent) == [(USER, "good"), (MODEL, "fine"), (USER, "next")]

    def test_sends_are_serialized(self):
        stub = StubAdapter(replies=[reply("one"), reply("two")], delay=0.01)
        chat = _chat(stub)

        async def both():
            await asyncio.gather(chat.send_message("first"), chat.send_message("second"))

        asyncio.run(both())
        assert len(stub.requests[0].contents) == 1
        # The second request already sees the first exchange.
        assert len(stub.requests[1].contents) == 3
        assert [t.text() for t in chat.get_history()] == ["first", "one", "second", "two"]

    def test_empty_reply_keeps_alternation(self):
        stub = StubAdapter(replies=[Response(Turn(MODEL, []))])
        chat = _chat(stub)
        asyncio.run(chat.send_message("hi"))
        history = chat.get_history()
        assert [t.role for t in history] == [USER, MODEL]
        assert history[1].parts == []
        assert chat.get_history(curated=True) == []

    def test_afc_history_is_spliced_without_duplicates(self):
        fn_call = call("lookup", q="x")
        afc = [
            user_turn("a"),
            model_turn("b"),
            user_turn("c"),
            Turn(MODEL, [Part(tool_call=fn_call)]),
            Turn(USER, [Part(tool_result=ToolResponse(fn_call.id, "lookup", "42"))]),
        ]
        stub = StubAdapter(replies=[Response(model_turn("done"), afc_history=afc)])
        chat = _chat(stub, history=[user_turn("a"), model_turn("b")])
        asyncio.run(chat.send_message("c"))
        history = chat.get_history()
        assert len(history) == 6
        assert history[2].text() == "c"
        assert history[3].tool_calls()[0].name == "lookup"
        assert history[4].is_function_response()
        assert history[5].text() == "done"

    def test_provider_error_propagates_and_history_unchanged(self):
        stub = StubAdapter(replies=[ProviderError("bad request", status_code=400)])
        chat = _chat(stub)
        with pytest.raises(ProviderError):
            asyncio.run(chat.send_message("hi"))
        assert chat.get_history() == []

    def test_report_records_api_response(self):
        stub = StubAdapter(replies=[reply("ok")])
        report = ReportCollector()
        chat = ChatSession(make_config(), adapter_factory=lambda m: stub, report=report)
        asyncio.run(chat.send_message("hi"))
        assert report.api_requests == 1


# ---------------------------------------------------------------------------
# send_message_stream
# ---------------------------------------------------------------------------


async def _consume(chat, message, signal=None, stop_after=None):
    events = []
    async with aclosing(chat.send_message_stream(message, signal)) as stream:
        async for event in stream:
            events.append(event)
            if stop_after is not None and stop_after(event):
                if signal is not None:
                    signal.set()
                else:
                    break
    return events


class TestSendMessageStream:
    def test_chunks_are_merged_into_one_model_turn(self):
        stub = StubAdapter(streams=[text_stream("Hel", "lo", " there")])
        chat = _chat(stub)
        events = asyncio.run(_consume(chat, "hi"))
        assert [e.type for e in events][-1] == EventType.DONE
        assert _texts(chat.get_history()) == [(USER, "hi"), (MODEL, "Hello there")]

    def test_thoughts_are_yielded_but_not_recorded(self):
        stub = StubAdapter(streams=[text_stream("answer", thoughts=("pondering",))])
        chat = _chat(stub)
        events = asyncio.run(_consume(chat, "q"))
        assert any(e.type == EventType.THOUGHT for e in events)
        model = chat.get_history()[-1]
        assert all(not p.thought for p in model.parts)
        assert model.text() == "answer"

    def test_thought_only_reply_records_user_turn_only(self):
        stub = StubAdapter(streams=[text_stream(thoughts=("just thinking",))])
        chat = _chat(stub)
        asyncio.run(_consume(chat, "q"))
        assert _texts(chat.get_history()) == [(USER, "q")]

    def test_tool_calls_are_recorded(self):
        stub = StubAdapter(streams=[text_stream("checking", calls=[call("echo", value="v")])])
        chat = _chat(stub)
        asyncio.run(_consume(chat, "q"))
        model = chat.get_history()[-1]
        assert model.text() == "checking"
        assert model.tool_calls()[0].arguments == {"value": "v"}

    def test_abort_records_exactly_one_turn_and_session_recovers(self):
        stub = StubAdapter(
            streams=[text_stream("partial ", "never", "seen")],
            replies=[reply("after abort")],
        )
        chat = _chat(stub)

        async def go():
            signal = asyncio.Event()
            await _consume(
                chat, "hi", signal, stop_after=lambda e: e.type == EventType.CONTENT
            )
            return await chat.send_message("again")

        response = asyncio.run(go())
        assert response.text() == "after abort"
        history = chat.get_history()
        assert _texts(history) == [
            (USER, "hi"),
            (MODEL, "partial "),
            (USER, "again"),
            (MODEL, "after abort"),
        ]

    def test_consumer_stopping_early_still_records(self):
        stub = StubAdapter(streams=[text_stream("a", "b", "c")])
        chat = _chat(stub)
        asyncio.run(_consume(chat, "hi", stop_after=lambda e: e.type == EventType.CONTENT))
        assert _texts(chat.get_history()) == [(USER, "hi"), (MODEL, "a")]

    def test_empty_stream_records_placeholder_model_turn(self):
        stub = StubAdapter(streams=[text_stream()])
        chat = _chat(stub)
        asyncio.run(_consume(chat, "hi"))
        assert [t.role for t in chat.get_history()] == [USER, MODEL]
        assert chat.get_history(curated=True) == []

    def test_stream_open_is_retried(self):
        stub = StubAdapter(
            streams=[ProviderError("overloaded", status_code=503), text_stream("ok")]
        )
        chat = _chat(stub)
        asyncio.run(_consume(chat, "hi"))
        assert len(stub.stream_requests) == 2
        assert chat.get_history()[-1].text() == "ok"

    def test_adjacent_text_turns_are_consolidated(self):
        stub = StubAdapter(streams=[text_stream("more")])
        chat = _chat(stub)
        chat._record_history(user_turn("q"), [model_turn("one "), model_turn("two")])
        assert _texts(chat.get_history()) == [(USER, "q"), (MODEL, "one two")]


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------


def _long_history(n_turns: int, chars: int = 400) -> list[Turn]:
    turns = []
    for i in range(n_turns):
        text = f"{i:03d}" + "x" * (chars - 3)
        turns.append(user_turn(text) if i % 2 == 0 else model_turn(text))
    return turns


class TestFindIndexAfterFraction:
    def test_rejects_out_of_range(self):
        with pytest.raises(ValueError):
            find_index_after_fraction([user_turn("a")], 0)
        with pytest.raises(ValueError):
            find_index_after_fraction([user_turn("a")], 1)

    def test_half_of_equal_turns(self):
        turns = [user_turn("aaaa"), user_turn("bbbb"), user_turn("cccc"), user_turn("dddd")]
        assert find_index_after_fraction(turns, 0.5) == 1


class TestCompression:
    def test_empty_history_is_skipped(self):
        chat = _chat(StubAdapter())
        assert asyncio.run(chat.try_compress()) is None

    def test_under_threshold_is_noop(self):
        stub = StubAdapter()
        chat = _chat(stub, history=_long_history(4), max_context_tokens=100_000)
        assert asyncio.run(chat.try_compress()) is None
        assert stub.requests == []

    def test_unknown_token_count_disables_compression(self):
        stub = StubAdapter(token_count=lambda contents: None)
        chat = _chat(stub, history=_long_history(10))
        assert asyncio.run(chat.try_compress(force=True)) is None

    def test_forced_compression_runs_under_threshold(self):
        stub = StubAdapter(replies=[reply("<state_snapshot>s</state_snapshot>")])
        chat = _chat(stub, history=_long_history(10), max_context_tokens=100_000)
        info = asyncio.run(chat.try_compress(force=True))
        assert info is not None
        history = chat.get_history()
        assert history[0].text() == "<state_snapshot>s</state_snapshot>"
        assert history[1].text() == COMPRESSION_ACK

    def test_hundred_turn_history(self):
        stub = StubAdapter(replies=[reply("<state_snapshot>summary</state_snapshot>")])
        chat = _chat(stub, history=_long_history(100), max_context_tokens=10_000)
        info = asyncio.run(chat.try_compress())
        assert info is not None
        assert info.new_token_count < info.original_token_count

        history = chat.get_history()
        assert history[0].role == USER
        assert history[1].role == MODEL
        # The retained suffix starts on a user turn.
        assert history[2].role == USER
        assert history[-1].text() == _long_history(100)[-1].text()

        # The summary request goes out with the compression system prompt.
        request = stub.requests[0]
        assert "<state_snapshot>" in request.system_instruction
        assert request.tools == []

        # A second pass with nothing new is a no-op.
        assert asyncio.run(chat.try_compress()) is None
        assert len(stub.requests) == 1

    def test_cut_skips_tool_result_turns(self):
        fn_call = call("echo", value="x")
        history = _long_history(6) + [
            Turn(MODEL, [Part(tool_call=fn_call)]),
            Turn(USER, [Part(tool_result=ToolResponse(fn_call.id, "echo", "x" * 400))]),
            model_turn("y" * 400),
            user_turn("z" * 400),
            model_turn("w" * 400),
        ]
        stub = StubAdapter(replies=[reply("summary")])
        chat = _chat(stub, history=history)
        asyncio.run(chat.try_compress(force=True))
        kept = chat.get_history()[2:]
        assert kept[0].role == USER
        assert not kept[0].is_function_response()

    def test_report_records_compression(self):
        stub = StubAdapter(replies=[reply("summary")])
        report = ReportCollector()
        chat = ChatSession(
            make_config(max_context_tokens=10_000),
            history=_long_history(100),
            adapter_factory=lambda m: stub,
            report=report,
        )
        asyncio.run(chat.try_compress())
        assert report.compressions == 1

    def test_send_in_flight_is_kept_by_compression(self):
        stub = StubAdapter(replies=[reply("answer"), reply("SUMMARY")], delay=0.01)
        chat = _chat(stub, history=_long_history(20))

        async def both():
            await asyncio.gather(chat.send_message("NEW"), chat.try_compress(force=True))

        asyncio.run(both())
        history = chat.get_history()
        assert history[0].text() == "SUMMARY"
        assert _texts(history[-2:]) == [(USER, "NEW"), (MODEL, "answer")]
        assert stub.requests[0].contents[-1].text() == "NEW"
        assert stub.requests[1].tools == []

    def test_send_waits_for_compression(self):
        stub = StubAdapter(replies=[reply("SUMMARY"), reply("answer")], delay=0.01)
        chat = _chat(stub, history=_long_history(20))

        async def both():
            await asyncio.gather(chat.try_compress(force=True), chat.send_message("NEW"))

        asyncio.run(both())
        sent = stub.requests[1].contents
        assert _texts(sent[:2]) == [(USER, "SUMMARY"), (MODEL, COMPRESSION_ACK)]
        assert sent[-1].text() == "NEW"
        assert _texts(chat.get_history()[-2:]) == [(USER, "NEW"), (MODEL, "answer")]


# ---------------------------------------------------------------------------
# Model fallback
# ---------------------------------------------------------------------------


class TestFallback:
    def _factory(self, adapters):
        def factory(model):
            return adapters[model]

        return factory

    def test_accepted_fallback_rebinds_adapter(self):
        decisions = []

        async def handler(current, fallback, error):
            decisions.append((current, fallback))
            return True

        rate_limited = ProviderError("quota", status_code=429)
        adapters = {
            "gemini-2.5-pro": StubAdapter(replies=[rate_limited, rate_limited]),
            "gemini-2.5-flash": StubAdapter(replies=[reply("from flash")]),
        }
        config = make_config(
            max_attempts=2, auth_type="oauth-personal", fallback_handler=handler
        )
        chat = ChatSession(config, adapter_factory=self._factory(adapters))
        response = asyncio.run(chat.send_message("hi"))
        assert response.text() == "from flash"
        assert config.model == "gemini-2.5-flash"
        assert decisions == [("gemini-2.5-pro", "gemini-2.5-flash")]

        asyncio.run(chat.aclose())
        assert adapters["gemini-2.5-pro"].closed
        assert adapters["gemini-2.5-flash"].closed

    def test_declined_fallback_raises_original_error(self):
        async def handler(current, fallback, error):
            return False

        rate_limited = ProviderError("quota", status_code=429)
        stub = StubAdapter(replies=[rate_limited, rate_limited])
        config = make_config(
            max_attempts=2, auth_type="oauth-personal", fallback_handler=handler
        )
        chat = ChatSession(config, adapter_factory=lambda m: stub)
        with pytest.raises(ProviderError) as exc:
            asyncio.run(chat.send_message("hi"))
        assert exc.value is rate_limited
        assert config.model == "gemini-2.5-pro"

    def test_no_fallback_when_already_on_fallback_model(self):
        called = []

        async def handler(current, fallback, error):
            called.append(True)
            return True

        config = make_config(model="gemini-2.5-flash", fallback_handler=handler)
        chat = ChatSession(config, adapter_factory=lambda m: StubAdapter())
        assert asyncio.run(chat.handle_fallback("oauth-personal", Exception("429"))) is None
        assert called == []

    def test_report_records_fallback_decision(self):
        async def handler(current, fallback, error):
            return True

        report = ReportCollector()
        config = make_config(fallback_handler=handler)
        chat = ChatSession(config, adapter_factory=lambda m: StubAdapter(), report=report)
        asyncio.run(chat.handle_fallback("oauth-personal", Exception("429")))
        assert report.fallbacks == 1
