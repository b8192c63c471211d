"""Pull-based stream consumption.

``LineSubscription`` hands out one line per ``request()``.  The subscriber
asks for the next line only after the previous one went through the parser
and the aggregator, so the aggregator is never entered concurrently and a
slow consumer slows down transport reads instead of buffering them.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from watsonx_stream.errors import ChunkDecodeError, SSEProtocolError, WatsonxStreamError
from watsonx_stream.types import ChatResponse, TextGenerationResponse

from .aggregator import (
    AggregatorEvent,
    ChatAggregator,
    CompleteToolCallEvent,
    PartialResponseEvent,
    PartialThinkingEvent,
    PartialToolCallEvent,
    TextGenerationAggregator,
)
from .orchestrator import CallbackOrchestrator
from .sse import SSELineParser, StreamEvent

_logger = logging.getLogger(__name__)

# Errors reported to the handler without necessarily ending the stream
_RECOVERABLE = (SSEProtocolError, ChunkDecodeError)


class LineSubscription:
    """One-line-at-a-time view over an async line iterator."""

    def __init__(
        self,
        lines: AsyncIterator[str],
        on_cancel: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self._lines = lines
        self._on_cancel = on_cancel
        self._cancelled = False
        self._exhausted = False

    @classmethod
    def from_response(cls, response: httpx.Response) -> LineSubscription:
        return cls(response.aiter_lines(), on_cancel=response.aclose)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def request(self) -> str | None:
        """Return the next line, or ``None`` once exhausted or cancelled."""
        if self._cancelled or self._exhausted:
            return None
        try:
            return await self._lines.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
            return None

    async def cancel(self) -> None:
        """Stop reading; closes the underlying response if there is one."""
        if self._cancelled:
            return
        self._cancelled = True
        _logger.debug("Cancelling stream subscription")
        if self._on_cancel is not None:
            await self._on_cancel()


class StreamSubscriber:
    def __init__(self, orchestrator: CallbackOrchestrator, *, log_events: bool = False) -> None:
        self.orchestrator = orchestrator
        self._log_events = log_events
        self._parser = SSELineParser()
        self._failed = False

    @property
    def handler(self) -> Any:
        return self.orchestrator.handler

    @property
    def aggregator(self) -> ChatAggregator | TextGenerationAggregator:
        raise NotImplementedError

    async def consume(self, subscription: LineSubscription) -> Any:
        """Drain *subscription* and return the final response.

        With ``fail_on_first_error`` the first stream error cancels the
        subscription and is re-raised after the handler has been told.
        """
        while True:
            line = await subscription.request()
            if line is None:
                break
            if self._log_events:
                _logger.info("SSE <- %s", line)
            try:
                event = self._parser.feed(line)
                if event is None:
                    continue
                for out in self._process(event):
                    self._dispatch(out)
            except _RECOVERABLE as exc:
                await self._report(exc, subscription)

        try:
            self._parser.finish()
        except SSEProtocolError as exc:
            await self._report(exc, subscription)
        return await self._complete()

    async def fail(self, error: BaseException, subscription: LineSubscription | None = None) -> None:
        """Terminate the stream with *error*; only the first call has effect."""
        if self._failed:
            return
        self._failed = True
        self.aggregator.fail(error)
        self.orchestrator.on_error(error)
        if subscription is not None:
            await subscription.cancel()
        await self.orchestrator.await_all()

    async def _report(self, error: Exception, subscription: LineSubscription) -> None:
        if self.handler.fail_on_first_error:
            await self.fail(error, subscription)
            raise error
        _logger.warning("Stream error, continuing: %s", error)
        self.orchestrator.on_error(error)

    def _process(self, event: StreamEvent) -> list[AggregatorEvent]:
        try:
            return self.aggregator.process(event)
        except WatsonxStreamError:
            raise
        except Exception as exc:
            # Well-formed JSON with fields of the wrong type
            raise ChunkDecodeError(f"Malformed stream chunk: {exc!r}", event.payload) from exc

    def _dispatch(self, event: AggregatorEvent) -> None:
        if isinstance(event, PartialResponseEvent):
            self.orchestrator.on_partial_response(event.text, event.chunk)
        elif isinstance(event, PartialThinkingEvent):
            self.orchestrator.on_partial_thinking(event.text, event.chunk)
        elif isinstance(event, PartialToolCallEvent):
            self.orchestrator.on_partial_tool_call(event.tool_call)
        elif isinstance(event, CompleteToolCallEvent):
            self.orchestrator.schedule_tool_call(event.tool_call)

    async def _complete(self) -> Any:
        raise NotImplementedError


class TextGenerationStreamSubscriber(StreamSubscriber):
    def __init__(
        self,
        orchestrator: CallbackOrchestrator,
        aggregator: TextGenerationAggregator | None = None,
        *,
        log_events: bool = False,
    ) -> None:
        super().__init__(orchestrator, log_events=log_events)
        self._aggregator = aggregator or TextGenerationAggregator()

    @property
    def aggregator(self) -> TextGenerationAggregator:
        return self._aggregator

    async def _complete(self) -> TextGenerationResponse:
        response = self._aggregator.finish()
        self.orchestrator.on_complete_response(response)
        await self.orchestrator.await_all()
        return response


class ChatStreamSubscriber(StreamSubscriber):
    def __init__(
        self,
        orchestrator: CallbackOrchestrator,
        aggregator: ChatAggregator | None = None,
        *,
        log_events: bool = False,
    ) -> None:
        super().__init__(orchestrator, log_events=log_events)
        self._aggregator = aggregator or ChatAggregator()

    @property
    def aggregator(self) -> ChatAggregator:
        return self._aggregator

    async def _complete(self) -> ChatResponse:
        for event in self._aggregator.finish():
            self._dispatch(event)
        # Tool calls must all be delivered before the final response
        processed = await self.orchestrator.await_all()
        response = self._aggregator.build_response(
            [p.tool_call.tool_call for p in processed]
        )
        self.orchestrator.on_complete_response(response)
        await self.orchestrator.await_all()
        return response
