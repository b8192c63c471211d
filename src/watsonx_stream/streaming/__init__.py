"""SSE parsing, chunk aggregation and callback orchestration."""

from watsonx_stream.streaming.aggregator import (
    AggregatorState,
    ChatAggregator,
    TextGenerationAggregator,
)
from watsonx_stream.streaming.handlers import ChatHandler, TextGenerationHandler
from watsonx_stream.streaming.orchestrator import (
    CallbackOrchestrator,
    ProcessedToolCall,
    TaskKind,
    ToolInterceptor,
)
from watsonx_stream.streaming.sse import EventKind, SSELineParser, StreamEvent
from watsonx_stream.streaming.subscriber import (
    ChatStreamSubscriber,
    LineSubscription,
    TextGenerationStreamSubscriber,
)
from watsonx_stream.streaming.tags import ExtractionTags, TagState, TagTracker

__all__ = [
    "AggregatorState",
    "CallbackOrchestrator",
    "ChatAggregator",
    "ChatHandler",
    "ChatStreamSubscriber",
    "EventKind",
    "ExtractionTags",
    "LineSubscription",
    "ProcessedToolCall",
    "SSELineParser",
    "StreamEvent",
    "TagState",
    "TagTracker",
    "TaskKind",
    "TextGenerationAggregator",
    "TextGenerationHandler",
    "TextGenerationStreamSubscriber",
    "ToolInterceptor",
]
