"""watsonx-stream: streaming response engine and job polling for watsonx.ai."""

from watsonx_stream.client import AsyncWatsonxClient
from watsonx_stream.config import ClientSpec, PollingSpec, StreamConfig, load_config
from watsonx_stream.errors import (
    BackendStreamError,
    ChunkDecodeError,
    PollError,
    PollTimeoutError,
    RemoteJobError,
    SSEProtocolError,
    StreamRequestError,
    ToolInterceptionError,
    WatsonxStreamError,
)
from watsonx_stream.polling import BackoffPoller, JobState
from watsonx_stream.streaming import ChatHandler, ExtractionTags, TextGenerationHandler
from watsonx_stream.types import (
    ChatResponse,
    CompletedToolCall,
    FinishReason,
    InterceptorContext,
    PartialToolCall,
    TextGenerationResponse,
    ToolCall,
)

__version__ = "0.1.0"

__all__ = [
    "AsyncWatsonxClient",
    "BackendStreamError",
    "BackoffPoller",
    "ChatHandler",
    "ChatResponse",
    "ChunkDecodeError",
    "ClientSpec",
    "CompletedToolCall",
    "ExtractionTags",
    "FinishReason",
    "InterceptorContext",
    "JobState",
    "PartialToolCall",
    "PollError",
    "PollTimeoutError",
    "PollingSpec",
    "RemoteJobError",
    "SSEProtocolError",
    "StreamConfig",
    "StreamRequestError",
    "TextGenerationHandler",
    "TextGenerationResponse",
    "ToolCall",
    "ToolInterceptionError",
    "WatsonxStreamError",
    "load_config",
]
