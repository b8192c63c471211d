"""Stateful chunk aggregators for text-generation and chat streams.

An aggregator owns the running state of exactly one stream.  ``process()``
takes one ``StreamEvent`` and returns the events the handler should see
for it (possibly none); ``finish()`` closes the stream.  Aggregators never
call the handler themselves, which keeps them synchronous and easy to test.

Backend error frames raise ``BackendStreamError`` and undecodable payloads
raise ``ChunkDecodeError``; whether the stream continues after either is the
subscriber's decision.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Union

from watsonx_stream.errors import BackendStreamError, ChunkDecodeError
from watsonx_stream.types import (
    ChatResponse,
    ChatUsage,
    CompletedToolCall,
    FinishReason,
    PartialToolCall,
    ResultChoice,
    ResultMessage,
    TextGenerationResponse,
    TextGenerationResult,
    ToolCall,
)

from .sse import StreamEvent
from .tags import ExtractionTags, TagState, TagTracker
from .tool_calls import (
    ToolCallFragment,
    compensate_required_tool_choice,
    tool_has_parameters,
)

_logger = logging.getLogger(__name__)


class AggregatorState(enum.Enum):
    AWAITING_FIRST_CHUNK = "awaiting_first_chunk"
    ACCUMULATING = "accumulating"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Events handed to the orchestrator
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PartialResponseEvent:
    text: str
    chunk: dict[str, Any]


@dataclass(frozen=True)
class PartialThinkingEvent:
    text: str
    chunk: dict[str, Any]


@dataclass(frozen=True)
class PartialToolCallEvent:
    tool_call: PartialToolCall


@dataclass(frozen=True)
class CompleteToolCallEvent:
    tool_call: CompletedToolCall


AggregatorEvent = Union[
    PartialResponseEvent,
    PartialThinkingEvent,
    PartialToolCallEvent,
    CompleteToolCallEvent,
]


def _decode_chunk(event: StreamEvent) -> dict[str, Any]:
    if event.is_error:
        raise BackendStreamError(event.payload)
    try:
        chunk = json.loads(event.payload)
    except json.JSONDecodeError as exc:
        raise ChunkDecodeError(f"Invalid JSON in stream chunk: {exc}", event.payload) from exc
    if not isinstance(chunk, dict):
        raise ChunkDecodeError("Stream chunk is not a JSON object", event.payload)
    return chunk


def _entries(chunk: dict[str, Any], key: str, payload: str) -> list[dict[str, Any]]:
    """Return ``chunk[key]`` as a list of objects (missing means empty)."""
    value = chunk.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise ChunkDecodeError(f"Stream chunk field {key!r} is not a list of objects", payload)
    return value


def _clean(text: str) -> str | None:
    text = text.strip()
    return text or None


class _Aggregator:
    def __init__(self) -> None:
        self.state = AggregatorState.AWAITING_FIRST_CHUNK

    @property
    def is_done(self) -> bool:
        return self.state in (AggregatorState.COMPLETED, AggregatorState.FAILED)

    def fail(self, error: BaseException) -> None:
        """Mark the stream as terminated abnormally."""
        _logger.debug("%s failed: %s", type(self).__name__, error)
        self.state = AggregatorState.FAILED

    def _accept(self) -> None:
        if self.is_done:
            raise RuntimeError(f"{type(self).__name__} already {self.state.value}")
        self.state = AggregatorState.ACCUMULATING


# ---------------------------------------------------------------------------
# Text generation
# ---------------------------------------------------------------------------

class TextGenerationAggregator(_Aggregator):
    """Accumulates ``/text/generation_stream`` chunks."""

    def __init__(self) -> None:
        super().__init__()
        self._buffer: list[str] = []
        self.model_id: str | None = None
        self.stop_reason: str | None = None
        self.input_token_count = 0
        self.generated_token_count = 0

    @property
    def text(self) -> str:
        return "".join(self._buffer)

    def process(self, event: StreamEvent) -> list[AggregatorEvent]:
        chunk = _decode_chunk(event)
        results = _entries(chunk, "results", event.payload)
        if self.model_id is None:
            self.model_id = chunk.get("model_id")
        if not results:
            return []

        self._accept()

        result = results[0]
        self.input_token_count += result.get("input_token_count") or 0
        self.generated_token_count += result.get("generated_token_count") or 0
        if result.get("stop_reason"):
            self.stop_reason = result["stop_reason"]

        text = result.get("generated_text") or ""
        if not text:
            return []
        self._buffer.append(text)
        return [PartialResponseEvent(text, chunk)]

    def finish(self) -> TextGenerationResponse:
        self.state = AggregatorState.COMPLETED
        return TextGenerationResponse(
            model_id=self.model_id,
            results=[
                TextGenerationResult(
                    generated_text=self.text,
                    stop_reason=self.stop_reason,
                    generated_token_count=self.generated_token_count,
                    input_token_count=self.input_token_count,
                )
            ],
        )


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

_META_FIELDS = ("id", "model_id", "model", "model_version", "object", "created", "created_at")


class ChatAggregator(_Aggregator):
    """Accumulates ``/text/chat_stream`` chunks, including tool calls.

    A tool call is completed (and reported exactly once) when a higher index
    starts streaming, when a chunk finishes with ``tool_calls``, or at
    ``finish()`` for anything still in flight.
    """

    def __init__(
        self,
        *,
        tools: list[dict[str, Any]] | None = None,
        tool_choice_option: str | None = None,
        tool_choice: dict[str, Any] | None = None,
        extraction_tags: ExtractionTags | None = None,
    ) -> None:
        super().__init__()
        self._tool_params = tool_has_parameters(tools)
        self._tool_choice_option = tool_choice_option
        self._tool_choice = tool_choice
        self._tracker = TagTracker(extraction_tags) if extraction_tags else None

        self._content: list[str] = []
        self._thinking: list[str] = []
        self._refusal: list[str] = []
        self._meta: dict[str, Any] = {}
        self._last_chunk: dict[str, Any] = {}
        self._role: str | None = None
        self._usage: dict[str, Any] | None = None
        self._finish_reason: str | None = None
        self._fragments: dict[int, ToolCallFragment] = {}
        self._completed: dict[int, ToolCall] = {}

    @classmethod
    def from_request(
        cls,
        request: dict[str, Any],
        extraction_tags: ExtractionTags | None = None,
    ) -> ChatAggregator:
        return cls(
            tools=request.get("tools"),
            tool_choice_option=request.get("tool_choice_option"),
            tool_choice=request.get("tool_choice"),
            extraction_tags=extraction_tags,
        )

    # -- accessors -----------------------------------------------------------

    @property
    def completion_id(self) -> str | None:
        return self._meta.get("id")

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def thinking(self) -> str:
        return "".join(self._thinking)

    @property
    def finish_reason(self) -> str | None:
        return self._finish_reason

    @property
    def in_flight(self) -> list[int]:
        return sorted(self._fragments)

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [self._completed[i] for i in sorted(self._completed)]

    # -- processing ----------------------------------------------------------

    def process(self, event: StreamEvent) -> list[AggregatorEvent]:
        chunk = _decode_chunk(event)
        self._last_chunk = chunk
        choices = _entries(chunk, "choices", event.payload)
        for key in _META_FIELDS:
            if key not in self._meta and chunk.get(key) is not None:
                self._meta[key] = chunk[key]
        if chunk.get("usage"):
            self._usage = chunk["usage"]
        if not choices:
            return []

        self._accept()
        choice = choices[0]
        delta = choice.get("delta") or {}
        out: list[AggregatorEvent] = []

        if self._role is None and delta.get("role"):
            self._role = delta["role"]
        if delta.get("refusal"):
            self._refusal.append(delta["refusal"])

        reasoning = delta.get("reasoning_content") or ""
        if reasoning:
            self._thinking.append(reasoning)
            out.append(PartialThinkingEvent(reasoning, chunk))

        content = delta.get("content") or ""
        if content:
            out.extend(self._on_content(content, chunk))

        for tc in delta.get("tool_calls") or []:
            out.extend(self._on_tool_call_delta(tc))

        finish = choice.get("finish_reason")
        if finish:
            self._finish_reason = finish
            if finish == FinishReason.TOOL_CALLS.value:
                out.extend(self._complete_up_to(None))
        return out

    def finish(self) -> list[AggregatorEvent]:
        """Close the stream.

        Releases content held back by the tag tracker, then completes any
        fragments still in flight.
        """
        out: list[AggregatorEvent] = []
        if self._tracker is not None:
            out.extend(self._on_segments(self._tracker.finish(), self._last_chunk))
        out.extend(self._complete_up_to(None))
        self.state = AggregatorState.COMPLETED
        return out

    def build_response(self, tool_calls: list[ToolCall] | None = None) -> ChatResponse:
        """Assemble the final response.

        *tool_calls* replaces the aggregated calls, e.g. with intercepted ones.
        """
        calls = self.tool_calls if tool_calls is None else list(tool_calls)
        finish_reason = compensate_required_tool_choice(
            self._finish_reason,
            tool_choice_option=self._tool_choice_option,
            tool_choice=self._tool_choice,
            tool_calls=calls,
        )
        message = ResultMessage(
            role=self._role or "assistant",
            content=_clean(self.content),
            reasoning_content=_clean(self.thinking),
            refusal=_clean("".join(self._refusal)),
            tool_calls=calls or None,
        )
        return ChatResponse(
            usage=ChatUsage.from_dict(self._usage) if self._usage else None,
            choices=[ResultChoice(index=0, message=message, finish_reason=finish_reason)],
            **self._meta,
        )

    # -- internals -----------------------------------------------------------

    def _on_content(self, content: str, chunk: dict[str, Any]) -> list[AggregatorEvent]:
        if self._tracker is None:
            self._content.append(content)
            return [PartialResponseEvent(content, chunk)]
        return self._on_segments(self._tracker.update(content), chunk)

    def _on_segments(
        self, segments: list[tuple[TagState, str]], chunk: dict[str, Any]
    ) -> list[AggregatorEvent]:
        out: list[AggregatorEvent] = []
        for state, text in segments:
            if state is TagState.THINKING:
                self._thinking.append(text)
                out.append(PartialThinkingEvent(text, chunk))
            elif state in (TagState.RESPONSE, TagState.NO_THINKING):
                self._content.append(text)
                out.append(PartialResponseEvent(text, chunk))
        return out

    def _on_tool_call_delta(self, delta: dict[str, Any]) -> list[AggregatorEvent]:
        index = delta.get("index", 0)
        if index in self._completed:
            _logger.warning("Ignoring delta for already completed tool call %d", index)
            return []

        out = self._complete_up_to(index)
        fragment = self._fragments.get(index) or ToolCallFragment(index)
        args = fragment.update(delta)
        self._fragments[index] = fragment
        if args:
            out.append(
                PartialToolCallEvent(
                    PartialToolCall(self.completion_id, index, fragment.id, fragment.name, args)
                )
            )
        return out

    def _complete_up_to(self, index: int | None) -> list[AggregatorEvent]:
        """Complete in-flight fragments below *index* (all when ``None``)."""
        out: list[AggregatorEvent] = []
        for i in sorted(self._fragments):
            if index is not None and i >= index:
                break
            fragment = self._fragments.pop(i)
            tool_call = fragment.build(has_parameters=self._tool_params.get(fragment.name or "", True))
            self._completed[i] = tool_call
            out.append(CompleteToolCallEvent(CompletedToolCall(self.completion_id, tool_call)))
        return out
