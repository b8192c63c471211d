"""Shared data types for watsonx-stream."""

from __future__ import annotations

import dataclasses
import enum
import json
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Finish reasons
# ---------------------------------------------------------------------------

class FinishReason(enum.Enum):
    """Finish reasons reported by the chat endpoints."""

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    TIME_LIMIT = "time_limit"
    CANCELLED = "cancelled"
    ERROR = "error"
    INCOMPLETE = None


# ---------------------------------------------------------------------------
# Tool call types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolCall:
    """A fully assembled tool invocation."""

    index: int
    id: str
    name: str
    arguments: str = "{}"  # raw JSON text, as sent by the model
    type: str = "function"

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode ``arguments``; malformed JSON yields an empty dict."""
        try:
            data = json.loads(self.arguments) if self.arguments else {}
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    def with_arguments(self, arguments: str) -> ToolCall:
        return dataclasses.replace(self, arguments=arguments)


@dataclass(frozen=True)
class PartialToolCall:
    """A fragment of a tool call as it streams in."""

    completion_id: str | None
    index: int
    id: str | None
    name: str | None
    arguments: str


@dataclass(frozen=True)
class CompletedToolCall:
    """A tool call whose fragments have all arrived."""

    completion_id: str | None
    tool_call: ToolCall

    def with_tool_call(self, tool_call: ToolCall) -> CompletedToolCall:
        return CompletedToolCall(self.completion_id, tool_call)


@dataclass
class InterceptorContext:
    """What a tool interceptor gets to see besides the tool call itself."""

    request: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_names(self) -> list[str]:
        names = []
        for tool in self.request.get("tools") or []:
            name = (tool.get("function") or {}).get("name")
            if name:
                names.append(name)
        return names


# ---------------------------------------------------------------------------
# Chat response types
# ---------------------------------------------------------------------------

@dataclass
class ChatUsage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ChatUsage:
        return cls(
            prompt_tokens=raw.get("prompt_tokens"),
            completion_tokens=raw.get("completion_tokens"),
            total_tokens=raw.get("total_tokens"),
        )


@dataclass
class ResultMessage:
    role: str | None = None
    content: str | None = None
    reasoning_content: str | None = None
    refusal: str | None = None
    tool_calls: list[ToolCall] | None = None


@dataclass
class ResultChoice:
    index: int
    message: ResultMessage
    finish_reason: str | None = None


@dataclass
class ChatResponse:
    """Final chat result assembled from a stream."""

    id: str | None = None
    model_id: str | None = None
    model: str | None = None
    model_version: str | None = None
    object: str | None = None
    created: int | None = None
    created_at: str | None = None
    usage: ChatUsage | None = None
    choices: list[ResultChoice] = field(default_factory=list)

    @property
    def message(self) -> ResultMessage:
        if not self.choices:
            return ResultMessage()
        return self.choices[0].message

    @property
    def finish_reason(self) -> str | None:
        return self.choices[0].finish_reason if self.choices else None

    @property
    def content(self) -> str | None:
        return self.message.content

    @property
    def thinking(self) -> str | None:
        return self.message.reasoning_content

    @property
    def tool_calls(self) -> list[ToolCall]:
        return list(self.message.tool_calls or [])

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


# ---------------------------------------------------------------------------
# Text generation types
# ---------------------------------------------------------------------------

@dataclass
class TextGenerationResult:
    generated_text: str = ""
    stop_reason: str | None = None
    generated_token_count: int = 0
    input_token_count: int = 0


@dataclass
class TextGenerationResponse:
    model_id: str | None = None
    results: list[TextGenerationResult] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.results[0].generated_text if self.results else ""

    @property
    def stop_reason(self) -> str | None:
        return self.results[0].stop_reason if self.results else None
