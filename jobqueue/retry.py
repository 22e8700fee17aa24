"""
Retry and backoff policy.

Decides, after a failed attempt, whether a job backs off and retries or is
dead-lettered, and when the retry becomes eligible.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from jobqueue.clock import utcnow
from jobqueue.config import Settings, get_settings
from jobqueue.constants import ErrorKind, JobStatus, OutcomeKind
from jobqueue.types.job import JobOutcome


@dataclass(frozen=True)
class RetryDecision:
    """Target status of a failed job and, for retries, when it may run again."""

    status: JobStatus
    available_at: datetime | None = None
    delay_seconds: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status == JobStatus.DEAD


class RetryPolicy:
    """
    Exponential backoff with bounded jitter.

    delay = min(max_delay, base * 2 ** (attempts - 1)), plus a uniform jitter
    in [0, delay * jitter_ratio]. The base delay is configurable per job type.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ):
        self._settings = settings or get_settings()
        self._rng = rng or random.Random()

    @property
    def max_delay(self) -> float:
        return self._settings.retry_max_delay_seconds

    @property
    def jitter_ratio(self) -> float:
        return self._settings.retry_jitter_ratio

    def backoff_delay(self, attempts: int, job_type: str) -> float:
        """
        Delay before the next attempt, jitter excluded.

        Args:
            attempts: Attempts made so far (at least 1 after a failure).
            job_type: Selects the per-type base delay.
        """
        base = self._settings.base_delay_for(job_type)
        exponent = max(attempts, 1) - 1
        # Cap the exponent; 2 ** 64 seconds is past any sane max delay
        return min(self.max_delay, base * (2 ** min(exponent, 64)))

    def jittered_delay(self, attempts: int, job_type: str) -> float:
        """Backoff delay with jitter applied."""
        delay = self.backoff_delay(attempts, job_type)
        return delay + self._rng.uniform(0.0, delay * self.jitter_ratio)

    def decide(
        self,
        attempts: int,
        max_attempts: int,
        job_type: str,
        outcome: JobOutcome,
        now: datetime | None = None,
    ) -> RetryDecision:
        """
        Decide what happens to a job after a failed attempt.

        Permanent failures and failures on the final attempt are terminal.
        Shutdown interruptions retry immediately; the job did nothing wrong.
        """
        if outcome.kind == OutcomeKind.SUCCESS:
            raise ValueError("decide() is only defined for failures")

        if outcome.kind == OutcomeKind.PERMANENT_FAILURE or attempts >= max_attempts:
            return RetryDecision(status=JobStatus.DEAD)

        now = now or utcnow()
        if outcome.error is not None and outcome.error.kind == ErrorKind.SHUTDOWN_INTERRUPTED:
            delay = 0.0
        else:
            delay = self.jittered_delay(attempts, job_type)

        return RetryDecision(
            status=JobStatus.FAILED_RETRYABLE,
            available_at=now + timedelta(seconds=delay),
            delay_seconds=delay,
        )
