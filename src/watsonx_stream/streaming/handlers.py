"""Handler interfaces implemented by stream consumers.

Every method may be a plain function or a coroutine function.  Plain
functions are run in a worker thread, so they may block.

Ordered callbacks (everything except ``on_complete_tool_call``) are never
invoked concurrently for one stream and arrive in stream order.
``on_complete_tool_call`` may run concurrently with other callbacks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from watsonx_stream.types import (
    ChatResponse,
    CompletedToolCall,
    PartialToolCall,
    TextGenerationResponse,
)


class TextGenerationHandler(ABC):
    """Receives events from a text-generation stream."""

    #: Stop reading the stream on the first error instead of reporting it
    #: and continuing.
    fail_on_first_error: bool = False

    @abstractmethod
    def on_partial_response(self, text: str, chunk: dict[str, Any]) -> Any:
        """A non-empty piece of generated text."""

    @abstractmethod
    def on_complete_response(self, response: TextGenerationResponse) -> Any:
        """The stream finished; *response* holds the full text."""

    @abstractmethod
    def on_error(self, error: BaseException) -> Any:
        """Something went wrong while streaming or in a callback."""


class ChatHandler(ABC):
    """Receives events from a chat stream."""

    fail_on_first_error: bool = False

    @abstractmethod
    def on_partial_response(self, text: str, chunk: dict[str, Any]) -> Any:
        """A non-empty piece of assistant content."""

    def on_partial_thinking(self, text: str, chunk: dict[str, Any]) -> Any:
        """A non-empty piece of reasoning text."""

    def on_partial_tool_call(self, tool_call: PartialToolCall) -> Any:
        """An arguments fragment for a tool call still being streamed."""

    def on_complete_tool_call(self, tool_call: CompletedToolCall) -> Any:
        """A tool call has been fully received (and intercepted, if configured)."""

    @abstractmethod
    def on_complete_response(self, response: ChatResponse) -> Any:
        """The stream finished and every tool call has been delivered."""

    @abstractmethod
    def on_error(self, error: BaseException) -> Any:
        """Something went wrong while streaming or in a callback."""
