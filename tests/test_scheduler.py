"""
Tests for RequestScheduler.

Ensures per-provider calls run one at a time in FIFO order, are paced,
respect the usage ledger, and that a provider-side rate-limit rejection
clears everything queued behind it.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from folio_enrich.exceptions import (
    ProviderRejectedError,
    QuotaExhaustedError,
    TransientProviderError,
)
from folio_enrich.scheduler import QueueState, RequestScheduler, is_rate_limit_error


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


def job(value, calls=None):
    async def run():
        if calls is not None:
            calls.append(value)
        return value

    return run


def failing(error):
    async def run():
        raise error

    return run


class TestOrdering:
    @pytest.mark.asyncio
    async def test_jobs_run_in_fifo_order(self, ledger):
        scheduler = RequestScheduler("tiingo", ledger)
        calls = []

        results = await asyncio.gather(
            *(scheduler.submit(job(i, calls), label=str(i)) for i in range(4))
        )

        assert results == [0, 1, 2, 3]
        assert calls == [0, 1, 2, 3]
        assert scheduler.state is QueueState.IDLE
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_each_call_is_recorded_in_ledger(self, ledger):
        scheduler = RequestScheduler("tiingo", ledger)

        await scheduler.submit(job("ok"))
        await scheduler.submit(job("ok"))

        assert ledger.used_today("tiingo") == 2


class TestSpacing:
    @pytest.mark.asyncio
    async def test_waits_spacing_between_call_starts(self, ledger):
        sleep = AsyncMock()
        scheduler = RequestScheduler(
            "alphavantage", ledger, spacing=12.0, sleep=sleep, monotonic=lambda: 100.0
        )

        await asyncio.gather(*(scheduler.submit(job(i)) for i in range(3)))

        assert sleep.await_count == 2
        sleep.assert_awaited_with(12.0)

    @pytest.mark.asyncio
    async def test_no_wait_once_spacing_has_elapsed(self, ledger):
        sleep = AsyncMock()
        now = [100.0]
        scheduler = RequestScheduler(
            "alphavantage", ledger, spacing=12.0, sleep=sleep, monotonic=lambda: now[0]
        )

        await scheduler.submit(job(1))
        now[0] += 20
        await scheduler.submit(job(2))

        sleep.assert_not_awaited()


class TestLedgerGating:
    @pytest.mark.asyncio
    async def test_queue_pauses_when_quota_exhausted_and_resumes_on_drain(self, ledger):
        for _ in range(5):
            ledger.record_call("alphavantage")
        scheduler = RequestScheduler("alphavantage", ledger)

        task = asyncio.ensure_future(scheduler.submit(job("late")))
        await settle()

        assert not task.done()
        assert scheduler.pending == 1
        assert scheduler.state is QueueState.IDLE

        ledger.reset("alphavantage")
        scheduler.drain()

        assert await task == "late"

    @pytest.mark.asyncio
    async def test_cancelled_caller_withdraws_job(self, ledger):
        for _ in range(5):
            ledger.record_call("alphavantage")
        scheduler = RequestScheduler("alphavantage", ledger)

        task = asyncio.ensure_future(scheduler.submit(job("never")))
        await settle()
        task.cancel()
        await settle()

        assert scheduler.pending == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_queue(self, ledger):
        scheduler = RequestScheduler("tiingo", ledger)

        results = await asyncio.gather(
            scheduler.submit(failing(ValueError("bad payload"))),
            scheduler.submit(job("next")),
            return_exceptions=True,
        )

        assert isinstance(results[0], ValueError)
        assert results[1] == "next"
        assert ledger.get_provider("tiingo").last_error is None  # cleared by success

    @pytest.mark.asyncio
    async def test_rate_limit_rejection_clears_queue(self, ledger):
        scheduler = RequestScheduler("alphavantage", ledger)
        calls = []

        results = await asyncio.gather(
            scheduler.submit(failing(ProviderRejectedError("alphavantage"))),
            scheduler.submit(job("second", calls)),
            scheduler.submit(job("third", calls)),
            return_exceptions=True,
        )

        assert isinstance(results[0], ProviderRejectedError)
        assert isinstance(results[1], QuotaExhaustedError)
        assert isinstance(results[2], QuotaExhaustedError)
        assert calls == []
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_rate_limit_text_is_promoted_to_rejection(self, ledger):
        scheduler = RequestScheduler("tiingo", ledger)

        with pytest.raises(ProviderRejectedError):
            await scheduler.submit(failing(RuntimeError("HTTP 429: Too Many Requests")))

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, ledger):
        scheduler = RequestScheduler("tiingo", ledger, call_timeout=0.01)

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(TransientProviderError):
            await scheduler.submit(slow)

        assert "timed out" in ledger.get_provider("tiingo").last_error

    @pytest.mark.asyncio
    async def test_clear_fails_pending_callers(self, ledger):
        for _ in range(5):
            ledger.record_call("alphavantage")
        scheduler = RequestScheduler("alphavantage", ledger)

        task = asyncio.ensure_future(scheduler.submit(job("x")))
        await settle()

        assert scheduler.clear("test") == 1
        with pytest.raises(QuotaExhaustedError):
            await task


class TestRateLimitDetection:
    @pytest.mark.parametrize(
        "message",
        [
            "HTTP 429",
            "Rate limit exceeded",
            "Too Many Requests",
            "Thank you for using Alpha Vantage! Our standard API call frequency is 5 calls per minute",
        ],
    )
    def test_detects_rate_limit_text(self, message):
        assert is_rate_limit_error(Exception(message)) is True

    def test_ignores_other_errors(self):
        assert is_rate_limit_error(ValueError("Invalid symbol")) is False
