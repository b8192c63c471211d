"""Callback orchestration between an aggregator and a user handler.

Two kinds of work reach the handler:

* **Ordered tasks** (partial text, partial thinking, partial tool call,
  complete response, error) go onto a single queue drained by one worker
  task, so they run one at a time in submission order.
* **Tool-call jobs** run concurrently: optional interception, then
  ``on_complete_tool_call``, then a record in the job list that
  ``await_all()`` joins on.

Failures in either path are routed to ``handler.on_error``; they never
stop the chain or leave ``await_all()`` hanging.
"""

from __future__ import annotations

import asyncio
import collections
import concurrent.futures
import enum
import functools
import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from watsonx_stream.errors import ToolInterceptionError
from watsonx_stream.types import (
    ChatResponse,
    CompletedToolCall,
    InterceptorContext,
    PartialToolCall,
    TextGenerationResponse,
)

from .handlers import ChatHandler, TextGenerationHandler

_logger = logging.getLogger(__name__)

# (context, completed tool call) -> replacement, or None to keep the original
ToolInterceptor = Callable[
    [InterceptorContext, CompletedToolCall],
    Union[CompletedToolCall, None, Awaitable[Union[CompletedToolCall, None]]],
]


class TaskKind(enum.Enum):
    PARTIAL_RESPONSE = "partial_response"
    PARTIAL_THINKING = "partial_thinking"
    PARTIAL_TOOL_CALL = "partial_tool_call"
    COMPLETE_RESPONSE = "complete_response"
    ERROR = "error"


@dataclass(frozen=True)
class _OrderedTask:
    kind: TaskKind
    callback: Callable[..., Any]
    args: tuple[Any, ...]


@dataclass(frozen=True)
class ProcessedToolCall:
    """Outcome of one tool-call job.

    ``tool_call`` is the intercepted call on success, the original one when
    ``error`` is set.
    """

    tool_call: CompletedToolCall
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# Tool-call jobs started off the loop thread are concurrent.futures.Future
_Job = Union["asyncio.Future[ProcessedToolCall]", "concurrent.futures.Future[ProcessedToolCall]"]


class CallbackOrchestrator:
    """Serializes handler callbacks for one stream.

    Must be created on the event loop that consumes the stream.  ``schedule``
    and ``schedule_tool_call`` may be called from other threads.

    Parameters
    ----------
    handler:
        A ``ChatHandler`` or ``TextGenerationHandler``.
    tool_interceptor:
        Optional callable applied to each completed tool call before
        delivery.  Returning ``None`` keeps the call unchanged.
    context:
        Passed to the interceptor; defaults to an empty context.
    executor:
        Where plain-function callbacks run; ``None`` means the loop's
        default executor.
    """

    def __init__(
        self,
        handler: ChatHandler | TextGenerationHandler,
        *,
        tool_interceptor: ToolInterceptor | None = None,
        context: InterceptorContext | None = None,
        executor: concurrent.futures.Executor | None = None,
    ) -> None:
        self.handler = handler
        self._interceptor = tool_interceptor
        self._context = context or InterceptorContext()
        self._executor = executor
        self._loop = asyncio.get_running_loop()

        self._queue_lock = threading.Lock()
        self._queue: collections.deque[_OrderedTask] = collections.deque()
        self._worker: asyncio.Task[None] | None = None

        self._jobs_lock = threading.Lock()
        self._jobs: list[_Job] = []

    # ------------------------------------------------------------------
    # Handler-shaped entry points
    # ------------------------------------------------------------------

    def on_partial_response(self, text: str, chunk: dict[str, Any]) -> None:
        self.schedule(TaskKind.PARTIAL_RESPONSE, self.handler.on_partial_response, text, chunk)

    def on_partial_thinking(self, text: str, chunk: dict[str, Any]) -> None:
        self.schedule(TaskKind.PARTIAL_THINKING, self.handler.on_partial_thinking, text, chunk)

    def on_partial_tool_call(self, tool_call: PartialToolCall) -> None:
        self.schedule(TaskKind.PARTIAL_TOOL_CALL, self.handler.on_partial_tool_call, tool_call)

    def on_complete_response(self, response: ChatResponse | TextGenerationResponse) -> None:
        self.schedule(TaskKind.COMPLETE_RESPONSE, self.handler.on_complete_response, response)

    def on_error(self, error: BaseException) -> None:
        self.schedule(TaskKind.ERROR, self.handler.on_error, error)

    # ------------------------------------------------------------------
    # Ordered chain
    # ------------------------------------------------------------------

    def schedule(self, kind: TaskKind, callback: Callable[..., Any], *args: Any) -> None:
        """Append *callback* to the ordered chain.

        The task is queued before this returns, on any thread, so a
        following ``await_all()`` waits for it.
        """
        with self._queue_lock:
            self._queue.append(_OrderedTask(kind, callback, args))
        if self._on_loop_thread():
            self._start_worker()
        else:
            self._loop.call_soon_threadsafe(self._start_worker)

    @property
    def pending_tasks(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    def _start_worker(self) -> None:
        if self._worker is None and self.pending_tasks:
            self._worker = self._loop.create_task(self._drain())

    def _next_task(self) -> _OrderedTask | None:
        with self._queue_lock:
            return self._queue.popleft() if self._queue else None

    async def _drain(self) -> None:
        try:
            while True:
                task = self._next_task()
                if task is None:
                    break
                try:
                    await self._invoke(task.callback, *task.args)
                except Exception as exc:
                    await self._route_failure(task, exc)
        finally:
            self._worker = None

    async def _route_failure(self, task: _OrderedTask, exc: Exception) -> None:
        if task.kind is TaskKind.ERROR:
            _logger.exception("Handler on_error raised while reporting %r", task.args[0])
            return
        _logger.warning("Handler %s callback raised: %s", task.kind.value, exc)
        try:
            await self._invoke(self.handler.on_error, exc)
        except Exception:
            _logger.exception("Handler on_error raised while reporting %r", exc)

    # ------------------------------------------------------------------
    # Tool-call jobs
    # ------------------------------------------------------------------

    def schedule_tool_call(self, tool_call: CompletedToolCall) -> None:
        """Start a concurrent intercept-then-deliver job for *tool_call*."""
        job: _Job
        if self._on_loop_thread():
            job = self._loop.create_task(self._run_tool_job(tool_call))
        else:
            job = asyncio.run_coroutine_threadsafe(self._run_tool_job(tool_call), self._loop)
        with self._jobs_lock:
            self._jobs.append(job)

    async def _run_tool_job(self, tool_call: CompletedToolCall) -> ProcessedToolCall:
        try:
            processed = await self._intercept(tool_call)
            await self._invoke(self.handler.on_complete_tool_call, processed)
        except Exception as exc:
            _logger.warning("Tool call %s failed: %s", tool_call.tool_call.name, exc)
            self.on_error(exc)
            return ProcessedToolCall(tool_call, exc)
        return ProcessedToolCall(processed)

    async def _intercept(self, tool_call: CompletedToolCall) -> CompletedToolCall:
        if self._interceptor is None:
            return tool_call
        try:
            result = await self._invoke(self._interceptor, self._context, tool_call)
        except Exception as exc:
            raise ToolInterceptionError(tool_call, exc) from exc
        return tool_call if result is None else result

    # ------------------------------------------------------------------
    # Join
    # ------------------------------------------------------------------

    async def await_all(self) -> list[ProcessedToolCall]:
        """Wait for the ordered chain and every tool-call job.

        Loops until no new work appears, since jobs schedule ordered error
        callbacks and callbacks may start new jobs.  Returns one entry per
        job, ordered by tool-call index.
        """
        while True:
            with self._jobs_lock:
                jobs = list(self._jobs)
            pending = [job for job in jobs if not job.done()]
            if self.pending_tasks:
                # Queued from another thread; its worker start may not have run yet
                self._start_worker()
            worker = self._worker
            if worker is None and not pending:
                break
            if pending:
                await asyncio.gather(*(asyncio.wrap_future(job) for job in pending))
            if worker is not None:
                await asyncio.shield(worker)

        return sorted(
            (job.result() for job in jobs),
            key=lambda p: p.tool_call.tool_call.index,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    async def _invoke(self, callback: Callable[..., Any], *args: Any) -> Any:
        if inspect.iscoroutinefunction(callback):
            return await callback(*args)
        result = await self._loop.run_in_executor(
            self._executor, functools.partial(callback, *args)
        )
        if inspect.isawaitable(result):
            result = await result
        return result
