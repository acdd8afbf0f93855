"""
Per-provider serialized request queue.

Every outbound call to a provider goes through that provider's scheduler,
which runs jobs one at a time in FIFO order, keeps at least `spacing`
seconds between call starts, and asks the UsageLedger before releasing each
job. The queue moves IDLE -> DRAINING on submit and back to IDLE when it
empties or the ledger refuses.

A job that the provider rejects for rate limiting clears everything still
queued behind it: those callers get QuotaExhaustedError immediately instead
of hammering an API that has already said no.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from folio_enrich.exceptions import (
    ProviderRejectedError,
    QuotaExhaustedError,
    TransientProviderError,
)
from folio_enrich.ledger import UsageLedger

logger = structlog.get_logger(__name__)

RATE_LIMIT_MARKERS = (
    "429",
    "rate limit",
    "too many requests",
    "api call frequency",
)


def is_rate_limit_error(error: BaseException) -> bool:
    """Provider-side throttling, either typed or recognisable from the text."""
    if isinstance(error, ProviderRejectedError):
        return True
    text = str(error).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


class QueueState(Enum):
    IDLE = "idle"
    DRAINING = "draining"


@dataclass
class _Job:
    fn: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    label: str


class RequestScheduler:
    """Single logical queue for one provider."""

    def __init__(
        self,
        provider: str,
        ledger: UsageLedger,
        spacing: float = 0.0,
        call_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.spacing = spacing
        self.call_timeout = call_timeout
        self._ledger = ledger
        self._sleep = sleep
        self._monotonic = monotonic
        self._queue: deque[_Job] = deque()
        self._state = QueueState.IDLE
        self._task: asyncio.Task | None = None
        self._last_call_started: float | None = None

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def pending(self) -> int:
        return sum(1 for job in self._queue if not job.future.done())

    async def submit(self, fn: Callable[[], Awaitable[Any]], label: str = "") -> Any:
        """
        Queue a zero-argument coroutine function and wait for its result.

        Raises whatever the job raised, TransientProviderError on timeout, or
        QuotaExhaustedError if the queue was cleared before the job ran.
        Cancelling the awaiting task withdraws the job.
        """
        loop = asyncio.get_running_loop()
        job = _Job(fn=fn, future=loop.create_future(), label=label)
        self._queue.append(job)
        logger.debug(
            "job_enqueued", provider=self.provider, label=label, pending=self.pending
        )
        self.drain()
        return await job.future

    def drain(self) -> None:
        """Start draining if idle. Jobs left behind by a quota stop resume here."""
        if self._state is QueueState.DRAINING or not self._queue:
            return
        self._state = QueueState.DRAINING
        self._task = asyncio.get_running_loop().create_task(self._drain())

    def clear(self, reason: str = "queue cleared") -> int:
        """Fail every pending job with QuotaExhaustedError."""
        cleared = 0
        while self._queue:
            job = self._queue.popleft()
            if not job.future.done():
                job.future.set_exception(QuotaExhaustedError(self.provider, reason))
                cleared += 1
        if cleared:
            logger.warning(
                "queue_cleared", provider=self.provider, cleared=cleared, reason=reason
            )
        return cleared

    async def _wait_for_spacing(self) -> None:
        if self._last_call_started is None or self.spacing <= 0:
            return
        elapsed = self._monotonic() - self._last_call_started
        if elapsed < self.spacing:
            wait = self.spacing - elapsed
            logger.debug("queue_spacing_wait", provider=self.provider, wait=round(wait, 3))
            await self._sleep(wait)

    def _drop_withdrawn(self) -> None:
        while self._queue and self._queue[0].future.done():
            self._queue.popleft()

    async def _drain(self) -> None:
        try:
            while True:
                self._drop_withdrawn()
                if not self._queue:
                    break

                await self._wait_for_spacing()

                self._drop_withdrawn()
                if not self._queue:
                    break

                if not self._ledger.can_make_request(self.provider):
                    logger.warning(
                        "queue_paused_quota",
                        provider=self.provider,
                        pending=self.pending,
                        usage=self._ledger.format_usage(self.provider),
                    )
                    break

                job = self._queue.popleft()
                await self._execute(job)
        finally:
            self._state = QueueState.IDLE
            self._task = None

    async def _execute(self, job: _Job) -> None:
        self._last_call_started = self._monotonic()
        try:
            if self.call_timeout is not None:
                result = await asyncio.wait_for(job.fn(), timeout=self.call_timeout)
            else:
                result = await job.fn()
        except asyncio.TimeoutError:
            error = TransientProviderError(
                self.provider, f"{self.provider} call timed out after {self.call_timeout}s"
            )
            self._ledger.record_call(self.provider, success=False, error=str(error))
            self._settle(job, error=error)
        except Exception as e:
            self._ledger.record_call(self.provider, success=False, error=str(e))
            if is_rate_limit_error(e):
                logger.warning(
                    "provider_rejected_rate_limit",
                    provider=self.provider,
                    label=job.label,
                    error=str(e),
                )
                if not isinstance(e, ProviderRejectedError):
                    rejected = ProviderRejectedError(self.provider, str(e))
                    rejected.__cause__ = e
                    e = rejected
                self._settle(job, error=e)
                self.clear(reason=f"{self.provider} rejected a request for rate limiting")
            else:
                logger.debug(
                    "job_failed", provider=self.provider, label=job.label, error=str(e)
                )
                self._settle(job, error=e)
        else:
            self._ledger.record_call(self.provider, success=True)
            self._settle(job, result=result)

    @staticmethod
    def _settle(job: _Job, result: Any = None, error: BaseException | None = None) -> None:
        # Caller may have withdrawn while the job was running
        if job.future.done():
            return
        if error is not None:
            job.future.set_exception(error)
        else:
            job.future.set_result(result)
