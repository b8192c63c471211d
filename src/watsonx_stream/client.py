"""Async watsonx.ai client for streaming chat / text generation and job waits.

Uses ``httpx.AsyncClient``.  Streams are consumed line by line through a
``LineSubscription``; handler callbacks are dispatched by a per-stream
``CallbackOrchestrator``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from watsonx_stream.config import ClientSpec, PollingSpec
from watsonx_stream.errors import StreamRequestError
from watsonx_stream.jobs import (
    classify_batch,
    classify_extraction,
    describe_batch_failure,
    describe_extraction_failure,
    extraction_id,
)
from watsonx_stream.polling import BackoffPoller
from watsonx_stream.streaming.aggregator import ChatAggregator, TextGenerationAggregator
from watsonx_stream.streaming.handlers import ChatHandler, TextGenerationHandler
from watsonx_stream.streaming.orchestrator import CallbackOrchestrator, ToolInterceptor
from watsonx_stream.streaming.subscriber import (
    ChatStreamSubscriber,
    LineSubscription,
    StreamSubscriber,
    TextGenerationStreamSubscriber,
)
from watsonx_stream.streaming.tags import ExtractionTags
from watsonx_stream.types import ChatResponse, InterceptorContext, TextGenerationResponse

_logger = logging.getLogger(__name__)

TRANSACTION_ID_HEADER = "X-Global-Transaction-Id"

CHAT_STREAM_PATH = "/ml/v1/text/chat_stream"
GENERATION_STREAM_PATH = "/ml/v1/text/generation_stream"
BATCH_PATH = "/ml/v1/batches/{id}"
EXTRACTION_PATH = "/ml/v1/text/extractions/{id}"


class AsyncWatsonxClient:
    """Async client for the watsonx.ai streaming and job endpoints."""

    def __init__(
        self,
        spec: ClientSpec,
        *,
        polling: PollingSpec | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.spec = spec
        self.polling = polling or PollingSpec()

        headers = {
            "Authorization": f"Bearer {spec.api_key}",
            "Content-Type": "application/json",
        }
        base_url = spec.url.rstrip("/")

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(spec.timeout, connect=30),
            transport=transport,
        )
        self._stream_client = httpx.AsyncClient(
            base_url=base_url,
            headers={**headers, "Accept": "text/event-stream"},
            timeout=httpx.Timeout(spec.timeout, connect=30, read=spec.read_timeout),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def chat_stream(
        self,
        payload: dict[str, Any],
        handler: ChatHandler,
        *,
        tool_interceptor: ToolInterceptor | None = None,
        extraction_tags: ExtractionTags | None = None,
        transaction_id: str | None = None,
    ) -> ChatResponse:
        """Stream a chat request into *handler* and return the final response.

        Raises the terminating error (transport error, non-2xx status, or
        the first stream error under ``fail_on_first_error``) after it has
        been delivered to ``handler.on_error``.
        """
        body = self._with_scope(payload)
        orchestrator = CallbackOrchestrator(
            handler,
            tool_interceptor=tool_interceptor,
            context=InterceptorContext(request=body),
        )
        subscriber = ChatStreamSubscriber(
            orchestrator,
            ChatAggregator.from_request(body, extraction_tags=extraction_tags),
            log_events=self.spec.log_responses,
        )
        return await self._stream(CHAT_STREAM_PATH, body, subscriber, transaction_id)

    async def generate_stream(
        self,
        payload: dict[str, Any],
        handler: TextGenerationHandler,
        *,
        transaction_id: str | None = None,
    ) -> TextGenerationResponse:
        """Stream a text-generation request into *handler*."""
        body = self._with_scope(payload)
        subscriber = TextGenerationStreamSubscriber(
            CallbackOrchestrator(handler),
            TextGenerationAggregator(),
            log_events=self.spec.log_responses,
        )
        return await self._stream(GENERATION_STREAM_PATH, body, subscriber, transaction_id)

    async def _stream(
        self,
        path: str,
        body: dict[str, Any],
        subscriber: StreamSubscriber,
        transaction_id: str | None,
    ) -> Any:
        headers = self._headers(transaction_id)
        if self.spec.log_requests:
            _logger.info("POST %s body=%s", path, body)

        try:
            async with self._stream_client.stream(
                "POST", path, json=body, params=self._params(), headers=headers,
            ) as resp:
                if self.spec.log_responses:
                    _logger.info("Stream response %d headers=%s", resp.status_code, dict(resp.headers))
                if not resp.is_success:
                    text = (await resp.aread()).decode(errors="replace")
                    raise StreamRequestError(resp.status_code, text)
                return await subscriber.consume(LineSubscription.from_response(resp))
        except Exception as exc:
            # The handler always hears about a stream that did not complete
            _logger.debug("Stream %s terminated: %s", path, exc)
            await subscriber.fail(exc)
            raise

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------

    async def retrieve_batch(self, batch_id: str, *, transaction_id: str | None = None) -> dict[str, Any]:
        return await self._get(BATCH_PATH.format(id=batch_id), transaction_id)

    async def wait_for_batch(
        self, batch: dict[str, Any], *, timeout: float | None = None
    ) -> dict[str, Any]:
        """Poll the batch returned by a submission until it completes."""
        batch_id = batch["id"]
        return await self._poller(timeout).poll(
            lambda: self.retrieve_batch(batch_id),
            classify_batch,
            initial=batch,
            describe_failure=describe_batch_failure,
            description=f"batch {batch_id}",
        )

    # ------------------------------------------------------------------
    # Text extraction
    # ------------------------------------------------------------------

    async def retrieve_extraction(
        self, extraction: str, *, transaction_id: str | None = None
    ) -> dict[str, Any]:
        return await self._get(
            EXTRACTION_PATH.format(id=extraction), transaction_id, scoped=True,
        )

    async def wait_for_extraction(
        self, extraction: dict[str, Any], *, timeout: float | None = None
    ) -> dict[str, Any]:
        """Poll the extraction returned by a submission until it completes."""
        job_id = extraction_id(extraction)
        if not job_id:
            raise ValueError("extraction resource has no metadata.id")
        return await self._poller(timeout).poll(
            lambda: self.retrieve_extraction(job_id),
            classify_extraction,
            initial=extraction,
            describe_failure=describe_extraction_failure,
            description=f"text extraction {job_id}",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _poller(self, timeout: float | None) -> BackoffPoller:
        return BackoffPoller.from_spec(self.polling, timeout=timeout)

    async def _get(
        self, path: str, transaction_id: str | None, *, scoped: bool = False
    ) -> dict[str, Any]:
        params = self._params()
        if scoped:
            params.update(self._scope())
        if self.spec.log_requests:
            _logger.info("GET %s params=%s", path, params)
        resp = await self._client.get(path, params=params, headers=self._headers(transaction_id))
        if self.spec.log_responses:
            _logger.info("GET %s -> %d %s", path, resp.status_code, resp.text)
        resp.raise_for_status()
        return resp.json()

    def _params(self) -> dict[str, str]:
        return {"version": self.spec.version}

    def _scope(self) -> dict[str, str]:
        scope: dict[str, str] = {}
        if self.spec.project_id:
            scope["project_id"] = self.spec.project_id
        if self.spec.space_id:
            scope["space_id"] = self.spec.space_id
        return scope

    def _with_scope(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Copy *payload*, filling in project/space ids the caller left out."""
        body = dict(payload)
        if "project_id" not in body and "space_id" not in body:
            body.update(self._scope())
        return body

    @staticmethod
    def _headers(transaction_id: str | None) -> dict[str, str]:
        return {TRANSACTION_ID_HEADER: transaction_id} if transaction_id else {}

    async def close(self) -> None:
        """Close underlying HTTP clients."""
        await self._client.aclose()
        await self._stream_client.aclose()

    async def __aenter__(self) -> AsyncWatsonxClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
