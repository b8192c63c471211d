"""Tests for pull-based stream consumption and fail-fast cancellation."""

from __future__ import annotations

import json

import pytest

from watsonx_stream.errors import BackendStreamError, ChunkDecodeError, SSEProtocolError
from watsonx_stream.streaming.aggregator import AggregatorState, ChatAggregator
from watsonx_stream.streaming.handlers import ChatHandler, TextGenerationHandler
from watsonx_stream.streaming.orchestrator import CallbackOrchestrator
from watsonx_stream.streaming.subscriber import (
    ChatStreamSubscriber,
    LineSubscription,
    TextGenerationStreamSubscriber,
)


class FakeLines:
    """Async line source that records how far it was read."""

    def __init__(self, lines: list[str]) -> None:
        self._lines = list(lines)
        self.served = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        if self.closed or self.served >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self.served]
        self.served += 1
        return line

    async def close(self) -> None:
        self.closed = True

    def subscription(self) -> LineSubscription:
        return LineSubscription(self, on_cancel=self.close)


def _gen(text: str, stop_reason: str = "not_finished") -> str:
    return "data: " + json.dumps({
        "model_id": "m",
        "results": [{"generated_text": text, "generated_token_count": 1, "stop_reason": stop_reason}],
    })


def _chat(delta: dict, finish_reason: str | None = None) -> str:
    return "data: " + json.dumps({
        "id": "chat-1",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    })


class TextRecorder(TextGenerationHandler):
    def __init__(self, fail_fast: bool = False) -> None:
        self.fail_on_first_error = fail_fast
        self.events: list[tuple] = []

    async def on_partial_response(self, text, chunk):
        self.events.append(("partial", text))

    async def on_complete_response(self, response):
        self.events.append(("complete", response.text, response.stop_reason))

    async def on_error(self, error):
        self.events.append(("error", error))


class ChatRecorder(ChatHandler):
    def __init__(self, fail_fast: bool = False) -> None:
        self.fail_on_first_error = fail_fast
        self.events: list[tuple] = []

    async def on_partial_response(self, text, chunk):
        self.events.append(("partial", text))

    async def on_partial_thinking(self, text, chunk):
        self.events.append(("thinking", text))

    async def on_partial_tool_call(self, tool_call):
        self.events.append(("partial_tool", tool_call.index, tool_call.arguments))

    async def on_complete_tool_call(self, tool_call):
        self.events.append(("tool", tool_call.tool_call.name))

    async def on_complete_response(self, response):
        self.events.append(("complete", response))

    async def on_error(self, error):
        self.events.append(("error", error))


class TestLineSubscription:
    @pytest.mark.asyncio
    async def test_request_one_at_a_time(self):
        src = FakeLines(["a", "b"])
        sub = src.subscription()
        assert await sub.request() == "a"
        assert src.served == 1
        assert await sub.request() == "b"
        assert await sub.request() is None
        assert await sub.request() is None

    @pytest.mark.asyncio
    async def test_cancel_stops_reads(self):
        src = FakeLines(["a", "b"])
        sub = src.subscription()
        await sub.cancel()
        await sub.cancel()
        assert sub.cancelled
        assert src.closed
        assert await sub.request() is None
        assert src.served == 0


class TestTextGenerationSubscriber:
    @pytest.mark.asyncio
    async def test_hello_scenario(self):
        handler = TextRecorder()
        sub = TextGenerationStreamSubscriber(CallbackOrchestrator(handler))
        src = FakeLines([
            _gen("Hel"), "", _gen("lo"), "", _gen(""), "", _gen("", "eos_token"), "",
        ])
        response = await sub.consume(src.subscription())

        assert handler.events == [
            ("partial", "Hel"),
            ("partial", "lo"),
            ("complete", "Hello", "eos_token"),
        ]
        assert response.text == "Hello"

    @pytest.mark.asyncio
    async def test_error_frame_reported_once_and_stream_continues(self):
        handler = TextRecorder()
        sub = TextGenerationStreamSubscriber(CallbackOrchestrator(handler))
        src = FakeLines([
            _gen("a"),
            "event: error",
            'data: {"errors": [{"code": "rate_limited"}]}',
            _gen("b", "eos_token"),
        ])
        response = await sub.consume(src.subscription())

        kinds = [e[0] for e in handler.events]
        assert kinds == ["partial", "error", "partial", "complete"]
        error = handler.events[1][1]
        assert isinstance(error, BackendStreamError)
        assert str(error) == '{"errors": [{"code": "rate_limited"}]}'
        assert response.text == "ab"

    @pytest.mark.asyncio
    async def test_fail_fast_cancels_subscription(self):
        handler = TextRecorder(fail_fast=True)
        sub = TextGenerationStreamSubscriber(CallbackOrchestrator(handler))
        src = FakeLines([_gen("a"), "data: {broken", _gen("never"), _gen("", "eos_token")])

        with pytest.raises(ChunkDecodeError):
            await sub.consume(src.subscription())

        assert src.closed
        assert src.served == 2
        assert [e[0] for e in handler.events] == ["partial", "error"]
        assert sub.aggregator.state is AggregatorState.FAILED

    @pytest.mark.asyncio
    async def test_decode_error_without_fail_fast(self):
        handler = TextRecorder()
        sub = TextGenerationStreamSubscriber(CallbackOrchestrator(handler))
        src = FakeLines([_gen("a"), "data: {broken", _gen("b", "eos_token")])
        response = await sub.consume(src.subscription())

        assert [e[0] for e in handler.events] == ["partial", "error", "partial", "complete"]
        assert not src.closed
        assert response.text == "ab"

    @pytest.mark.asyncio
    async def test_mistyped_field_reported_and_stream_continues(self):
        handler = TextRecorder()
        sub = TextGenerationStreamSubscriber(CallbackOrchestrator(handler))
        bad = "data: " + json.dumps({
            "model_id": "m",
            "results": [{"generated_text": "", "input_token_count": "3"}],
        })
        src = FakeLines([_gen("Hel"), bad, _gen("lo", "eos_token")])
        response = await sub.consume(src.subscription())

        assert [e[0] for e in handler.events] == ["partial", "error", "partial", "complete"]
        error = handler.events[1][1]
        assert isinstance(error, ChunkDecodeError)
        assert isinstance(error.__cause__, TypeError)
        assert error.payload == bad[len("data: "):]
        assert response.text == "Hello"

    @pytest.mark.asyncio
    async def test_mistyped_field_fail_fast(self):
        handler = TextRecorder(fail_fast=True)
        sub = TextGenerationStreamSubscriber(CallbackOrchestrator(handler))
        bad = "data: " + json.dumps({"results": [{"generated_token_count": [1]}]})
        src = FakeLines([_gen("a"), bad, _gen("never")])

        with pytest.raises(ChunkDecodeError):
            await sub.consume(src.subscription())
        assert [e[0] for e in handler.events] == ["partial", "error"]
        assert src.closed

    @pytest.mark.asyncio
    async def test_dangling_error_marker(self):
        handler = TextRecorder(fail_fast=True)
        sub = TextGenerationStreamSubscriber(CallbackOrchestrator(handler))
        src = FakeLines([_gen("a"), "event: error"])
        with pytest.raises(SSEProtocolError):
            await sub.consume(src.subscription())
        assert [e[0] for e in handler.events] == ["partial", "error"]

    @pytest.mark.asyncio
    async def test_fail_is_idempotent(self):
        handler = TextRecorder()
        sub = TextGenerationStreamSubscriber(CallbackOrchestrator(handler))
        await sub.fail(RuntimeError("first"))
        await sub.fail(RuntimeError("second"))
        assert [str(e[1]) for e in handler.events] == ["first"]


class TestChatSubscriber:
    @pytest.mark.asyncio
    async def test_tool_calls_delivered_before_complete(self):
        handler = ChatRecorder()
        orch = CallbackOrchestrator(handler)
        sub = ChatStreamSubscriber(orch, ChatAggregator())
        src = FakeLines([
            _chat({"role": "assistant", "reasoning_content": "think"}),
            _chat({"content": "Calling"}),
            _chat({"tool_calls": [{"index": 0, "id": "c0", "function": {"name": "a", "arguments": "{}"}}]}),
            _chat({"tool_calls": [{"index": 1, "id": "c1", "function": {"name": "b", "arguments": '{"x"'}}]}),
            _chat({"tool_calls": [{"index": 1, "function": {"arguments": ": 1}"}}]}),
            _chat({}, finish_reason="tool_calls"),
            "data: [DONE]",
        ])
        response = await sub.consume(src.subscription())

        kinds = [e[0] for e in handler.events]
        assert kinds[-1] == "complete"
        assert sorted(e[1] for e in handler.events if e[0] == "tool") == ["a", "b"]
        assert kinds.index("thinking") < kinds.index("partial")
        partial_tools = [e for e in handler.events if e[0] == "partial_tool"]
        assert partial_tools == [
            ("partial_tool", 0, "{}"),
            ("partial_tool", 1, '{"x"'),
            ("partial_tool", 1, ": 1}"),
        ]

        assert response.finish_reason == "tool_calls"
        assert [t.name for t in response.tool_calls] == ["a", "b"]
        assert response.tool_calls[1].parsed_arguments() == {"x": 1}
        assert response.content == "Calling"
        assert response.thinking == "think"

    @pytest.mark.asyncio
    async def test_intercepted_tool_calls_in_final_response(self):
        handler = ChatRecorder()

        async def rename(ctx, call):
            return call.with_tool_call(call.tool_call.with_arguments('{"safe": true}'))

        orch = CallbackOrchestrator(handler, tool_interceptor=rename)
        sub = ChatStreamSubscriber(orch, ChatAggregator())
        src = FakeLines([
            _chat({"tool_calls": [{"index": 0, "id": "c0", "function": {"name": "rm", "arguments": '{"path": "/"}'}}]}),
            _chat({}, finish_reason="tool_calls"),
        ])
        response = await sub.consume(src.subscription())
        assert response.tool_calls[0].arguments == '{"safe": true}'

    @pytest.mark.asyncio
    async def test_backend_error_fail_fast(self):
        handler = ChatRecorder(fail_fast=True)
        sub = ChatStreamSubscriber(CallbackOrchestrator(handler), ChatAggregator())
        src = FakeLines([
            _chat({"content": "partial"}),
            "event: error",
            'data: {"errors": [{"message": "model overloaded"}]}',
            _chat({"content": "never"}),
        ])
        with pytest.raises(BackendStreamError) as exc_info:
            await sub.consume(src.subscription())

        assert exc_info.value.details["errors"][0]["message"] == "model overloaded"
        assert handler.events[0] == ("partial", "partial")
        assert [e[0] for e in handler.events] == ["partial", "error"]
        assert src.closed

    @pytest.mark.asyncio
    @pytest.mark.parametrize("choice", [
        {"index": 0, "delta": "not an object"},
        {"index": 0, "delta": {"tool_calls": [{"index": 0, "function": "not an object"}]}},
    ])
    async def test_non_object_fields_reported(self, choice):
        handler = ChatRecorder()
        sub = ChatStreamSubscriber(CallbackOrchestrator(handler), ChatAggregator())
        src = FakeLines([
            _chat({"content": "before"}),
            "data: " + json.dumps({"id": "chat-1", "choices": [choice]}),
            _chat({"content": " after"}, finish_reason="stop"),
        ])
        response = await sub.consume(src.subscription())

        kinds = [e[0] for e in handler.events]
        assert kinds[:2] == ["partial", "error"]
        assert kinds[-1] == "complete"
        assert isinstance(handler.events[1][1], ChunkDecodeError)
        assert isinstance(handler.events[1][1].__cause__, AttributeError)
        assert response.content == "before after"
        assert response.tool_calls == []
