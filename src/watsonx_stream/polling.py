"""Poll-until-done loop with exponential backoff and a deadline.

Used after a job-submission call returns a resource that is still in
progress (batch jobs, text extractions).  The loop is the same for every
job type; only the fetch function and the state classifier differ::

    poller = BackoffPoller(timeout=120)
    batch = await poller.poll(
        lambda: client.retrieve_batch(batch_id),
        classify_batch,
        initial=submitted,
        description=f"batch {batch_id}",
    )
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from watsonx_stream.config import PollingSpec
from watsonx_stream.errors import PollTimeoutError, RemoteJobError

_logger = logging.getLogger(__name__)

_UNSET: Any = object()


class JobState(enum.Enum):
    """How the poller sees a remote resource."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobState.PENDING


@dataclass(frozen=True)
class PollAttempt:
    """One fetch and what it means for the loop."""

    number: int
    state: JobState
    resource: Any
    elapsed: float


FetchFn = Callable[[], Awaitable[Any]]
ClassifyFn = Callable[[Any], JobState]
# Returns (code, message) describing a failed resource
DescribeFailureFn = Callable[[Any], "tuple[str | None, str | None]"]


def _describe_generic(resource: Any) -> tuple[str | None, str | None]:
    return None, repr(resource)


@dataclass
class BackoffPoller:
    """Re-fetch a resource with doubling delays until it is terminal.

    Parameters
    ----------
    initial_delay:
        First sleep, in seconds.
    factor:
        Delay growth factor applied after each sleep.
    max_delay:
        Upper bound for a single sleep.
    timeout:
        Overall deadline in seconds, measured from the start of ``poll()``.
    clock, sleep:
        Time source and sleep coroutine; injectable for tests.  ``sleep``
        must be cancellable so that cancelling the polling task aborts a
        long wait promptly.
    """

    initial_delay: float = 0.1
    factor: float = 2.0
    max_delay: float = 3.0
    timeout: float = 60.0
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    @classmethod
    def from_spec(cls, spec: PollingSpec, timeout: float | None = None) -> BackoffPoller:
        return cls(
            initial_delay=spec.initial_delay,
            factor=spec.factor,
            max_delay=spec.max_delay,
            timeout=spec.timeout if timeout is None else timeout,
        )

    async def poll(
        self,
        fetch: FetchFn,
        classify: ClassifyFn,
        *,
        initial: Any = _UNSET,
        describe_failure: DescribeFailureFn | None = None,
        description: str = "job",
    ) -> Any:
        """Run the loop and return the resource once it succeeded.

        If *initial* is given (the resource returned by the submission call)
        and is already terminal, no fetch happens.

        Raises
        ------
        PollTimeoutError
            The deadline passed while the resource was still pending.
        RemoteJobError
            The resource reached its failure state.
        """
        describe = describe_failure or _describe_generic
        start = self.clock()
        delay = self.initial_delay
        resource = None if initial is _UNSET else initial
        state = JobState.PENDING if initial is _UNSET else classify(initial)
        attempt = 0

        while not state.is_terminal:
            if self.clock() - start > self.timeout:
                _logger.debug("%s timed out after %d attempts", description, attempt)
                raise PollTimeoutError(description, self.timeout, resource)

            await self.sleep(delay)
            delay = min(delay * self.factor, self.max_delay)

            resource = await fetch()
            attempt += 1
            state = classify(resource)
            last = PollAttempt(attempt, state, resource, self.clock() - start)
            _logger.debug(
                "%s poll #%d: %s (%.2fs elapsed, next delay %.2fs)",
                description, last.number, last.state.value, last.elapsed, delay,
            )

        if state is JobState.FAILED:
            code, message = describe(resource)
            raise RemoteJobError(description, code, message, resource)

        return resource
