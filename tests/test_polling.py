"""Tests for the backoff poller."""

from __future__ import annotations

import asyncio

import pytest

from watsonx_stream.config import PollingSpec
from watsonx_stream.errors import PollError, PollTimeoutError, RemoteJobError
from watsonx_stream.polling import BackoffPoller, JobState


class FakeClock:
    """Manual clock whose sleep advances time instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


def _poller(clock: FakeClock, **kwargs) -> BackoffPoller:
    return BackoffPoller(clock=clock, sleep=clock.sleep, **kwargs)


def _fetcher(states: list[str]):
    calls = []

    async def fetch():
        state = states[min(len(calls), len(states) - 1)]
        calls.append(state)
        return {"status": state}

    return fetch, calls


def _classify(resource: dict) -> JobState:
    return {
        "done": JobState.SUCCEEDED,
        "failed": JobState.FAILED,
    }.get(resource["status"], JobState.PENDING)


class TestBackoffPoller:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("k", [0, 1, 4])
    async def test_k_pending_then_success(self, k):
        clock = FakeClock()
        fetch, calls = _fetcher(["running"] * k + ["done"])
        result = await _poller(clock, timeout=100).poll(fetch, _classify)

        assert result == {"status": "done"}
        assert len(calls) == k + 1

    @pytest.mark.asyncio
    async def test_delays_double_up_to_cap(self):
        clock = FakeClock()
        fetch, _ = _fetcher(["running"] * 7 + ["done"])
        await _poller(clock, timeout=100).poll(fetch, _classify)
        assert clock.sleeps == [0.1, 0.2, 0.4, 0.8, 1.6, 3.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_timeout_once_deadline_passed(self):
        clock = FakeClock()
        fetch, calls = _fetcher(["running"])
        with pytest.raises(PollTimeoutError) as exc_info:
            await _poller(clock, timeout=5).poll(fetch, _classify, description="batch b-1")

        # 0.1 + 0.2 + 0.4 + 0.8 + 1.6 = 3.1, + 3.0 = 6.1 > 5
        assert clock.sleeps == [0.1, 0.2, 0.4, 0.8, 1.6, 3.0]
        assert len(calls) == 6
        err = exc_info.value
        assert err.timeout == 5
        assert err.last_resource == {"status": "running"}
        assert "batch b-1 took longer than the timeout of 5 seconds" in str(err)
        assert isinstance(err, PollError)
        assert not isinstance(err, RemoteJobError)

    @pytest.mark.asyncio
    async def test_deadline_checked_before_first_sleep(self):
        clock = FakeClock()
        fetch, calls = _fetcher(["done"])
        clock.now = 0.0
        poller = _poller(clock, timeout=-1)
        with pytest.raises(PollTimeoutError):
            await poller.poll(fetch, _classify)
        assert calls == []

    @pytest.mark.asyncio
    async def test_remote_failure(self):
        clock = FakeClock()
        fetch, _ = _fetcher(["running", "failed"])
        with pytest.raises(RemoteJobError) as exc_info:
            await _poller(clock, timeout=100).poll(
                fetch,
                _classify,
                describe_failure=lambda r: ("quota", "out of capacity"),
                description="extraction e-1",
            )
        err = exc_info.value
        assert err.code == "quota"
        assert err.message == "out of capacity"
        assert err.resource == {"status": "failed"}
        assert str(err) == "extraction e-1 failed: [quota] out of capacity"
        assert not isinstance(err, PollTimeoutError)

    @pytest.mark.asyncio
    async def test_initial_terminal_resource_not_fetched(self):
        clock = FakeClock()
        fetch, calls = _fetcher(["done"])
        result = await _poller(clock).poll(fetch, _classify, initial={"status": "done"})
        assert result == {"status": "done"}
        assert calls == []
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_initial_failed_resource(self):
        clock = FakeClock()
        fetch, calls = _fetcher(["done"])
        with pytest.raises(RemoteJobError):
            await _poller(clock).poll(fetch, _classify, initial={"status": "failed"})
        assert calls == []

    @pytest.mark.asyncio
    async def test_initial_pending_resource_polled(self):
        clock = FakeClock()
        fetch, calls = _fetcher(["done"])
        result = await _poller(clock).poll(fetch, _classify, initial={"status": "submitted"})
        assert result == {"status": "done"}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cancellation_interrupts_sleep(self):
        fetch, calls = _fetcher(["running"])
        poller = BackoffPoller(initial_delay=10, max_delay=10, timeout=100)
        task = asyncio.ensure_future(poller.poll(fetch, _classify))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert calls == []

    def test_from_spec(self):
        spec = PollingSpec(initial_delay=0.5, factor=3, max_delay=9, timeout=30)
        poller = BackoffPoller.from_spec(spec)
        assert (poller.initial_delay, poller.factor, poller.max_delay, poller.timeout) == (0.5, 3, 9, 30)
        assert BackoffPoller.from_spec(spec, timeout=5).timeout == 5
