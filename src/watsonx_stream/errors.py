"""Exception hierarchy for streaming and job polling."""

from __future__ import annotations

import json
from typing import Any


class WatsonxStreamError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Stream errors
# ---------------------------------------------------------------------------

class SSEProtocolError(WatsonxStreamError):
    """The event stream violated SSE framing."""


class BackendStreamError(SSEProtocolError):
    """The backend sent an ``event: error`` frame.

    The message is the raw text of the data line that followed the marker.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.body = message

    @property
    def details(self) -> dict[str, Any]:
        """The error body decoded as JSON, or an empty dict."""
        try:
            data = json.loads(self.body)
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}


class ChunkDecodeError(WatsonxStreamError):
    """A data frame could not be decoded into the expected chunk shape."""

    def __init__(self, message: str, payload: str = "") -> None:
        super().__init__(message)
        self.payload = payload


class StreamRequestError(WatsonxStreamError):
    """The streaming endpoint answered with a non-success status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"Stream request failed with status {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class ToolInterceptionError(WatsonxStreamError):
    """A tool interceptor raised while handling a completed tool call."""

    def __init__(self, tool_call: Any, cause: BaseException) -> None:
        super().__init__(f"Tool interceptor failed: {cause}")
        self.tool_call = tool_call
        self.__cause__ = cause


# ---------------------------------------------------------------------------
# Polling errors
# ---------------------------------------------------------------------------

class PollError(WatsonxStreamError):
    """Base class for poll-until-done failures."""


class PollTimeoutError(PollError):
    """The deadline passed before the job reached a terminal state."""

    def __init__(self, description: str, timeout: float, last_resource: Any = None) -> None:
        super().__init__(
            f"{description} took longer than the timeout of {timeout:g} seconds"
        )
        self.description = description
        self.timeout = timeout
        self.last_resource = last_resource


class RemoteJobError(PollError):
    """The polled resource reported a failure."""

    def __init__(
        self,
        description: str,
        code: str | None = None,
        message: str | None = None,
        resource: Any = None,
    ) -> None:
        detail = message or "no details supplied"
        if code:
            detail = f"[{code}] {detail}"
        super().__init__(f"{description} failed: {detail}")
        self.description = description
        self.code = code
        self.message = message
        self.resource = resource
