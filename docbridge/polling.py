"""Polling state machine for native-document translation jobs.

A job moves ``submitted -> polling -> {done, error, timed_out}``, or to
``cancelled`` when the caller gives up. The first status check happens right
after submission; between checks the poller sleeps for the poll interval,
never past the deadline. Clock and sleep are injected so the loop can be
driven by a virtual clock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from .errors import ProviderError, ProviderJobFailed, RunCancelled, TranslationTimeout
from .retry import RetryPolicy, retry_with_backoff
from .structures import JobStatus, JobStatusReport, TranslationJob

if TYPE_CHECKING:
    from .providers import DocumentTranslationProvider

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_POLL_TIMEOUT = 300.0

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]
StatusListener = Callable[[TranslationJob, JobStatusReport], None]


class CancellationToken:
    """Lets a caller stop a run from outside the pipeline coroutine."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "Translation cancelled by the caller.") -> None:
        self._cancelled = True
        self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RunCancelled(self.reason or "Translation cancelled by the caller.")


class JobPoller:
    """Waits for a submitted job to finish, fail, time out, or be cancelled."""

    def __init__(
        self,
        provider: "DocumentTranslationProvider",
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_POLL_TIMEOUT,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
        cancel_token: Optional[CancellationToken] = None,
        on_status: Optional[StatusListener] = None,
    ) -> None:
        self.provider = provider
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self.sleep = sleep
        self.cancel_token = cancel_token
        self.on_status = on_status
        self.polls = 0

    async def wait(self, job: TranslationJob) -> TranslationJob:
        deadline = self.clock() + self.timeout
        job.status = JobStatus.POLLING
        try:
            while True:
                await self._stop_if_cancelled(job)
                report = await retry_with_backoff(
                    lambda: self.provider.poll_status(job),
                    self.retry_policy,
                    sleep=self.sleep,
                    description=f"Status check for job {job.job_id}",
                )
                self.polls += 1
                status = report.status.strip().lower()
                job.seconds_remaining = report.seconds_remaining
                if self.on_status is not None:
                    self.on_status(job, report)

                if status == JobStatus.DONE.value:
                    job.status = JobStatus.DONE
                    job.completed_at = datetime.now()
                    logger.info("Job %s finished after %d status checks.", job.job_id, self.polls)
                    return job

                if status == JobStatus.ERROR.value:
                    job.status = JobStatus.ERROR
                    job.completed_at = datetime.now()
                    job.error_detail = report.error_detail or "Unknown error"
                    raise ProviderJobFailed(
                        f"Document translation failed: {job.error_detail}"
                    )

                remaining = deadline - self.clock()
                if remaining <= 0:
                    job.status = JobStatus.TIMED_OUT
                    raise TranslationTimeout(
                        f"Job {job.job_id} did not finish within {self.timeout:g}s "
                        f"(last status: {status})."
                    )

                logger.info(
                    "Job %s status: %s%s",
                    job.job_id,
                    status,
                    f" (~{report.seconds_remaining}s remaining)"
                    if report.seconds_remaining is not None
                    else "",
                )
                await self.sleep(min(self.poll_interval, remaining))
        except asyncio.CancelledError:
            job.status = JobStatus.CANCELLED
            await self._release(job)
            raise

    async def _stop_if_cancelled(self, job: TranslationJob) -> None:
        if self.cancel_token is None or not self.cancel_token.cancelled:
            return
        job.status = JobStatus.CANCELLED
        await self._release(job)
        self.cancel_token.raise_if_cancelled()

    async def _release(self, job: TranslationJob) -> None:
        try:
            released = await self.provider.cancel(job)
        except ProviderError as exc:
            logger.warning("Could not cancel job %s: %s", job.job_id, exc)
            return
        if released:
            logger.info("Cancelled remote job %s.", job.job_id)
        else:
            logger.info(
                "Provider cannot cancel jobs; job %s will expire on its own.", job.job_id
            )
