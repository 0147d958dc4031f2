"""
Retry / backoff controller.
Decides whether a failed job is rescheduled (after an exponential delay) or
terminally failed.  Owns the job's retry count.
"""

import time
import logging
from typing import Callable, Optional

from ultransc.core.constants import (
    JobStage, MAX_RETRIES, RETRY_BASE_DELAY_SEC, RETRY_MULTIPLIER,
)
from ultransc.core.error_codes import JobError
from ultransc.core.models import Job
from ultransc.core.state_store import save_job

logger = logging.getLogger(__name__)


class RetryController:

    def __init__(self,
                 max_retries: int = MAX_RETRIES,
                 base_delay_sec: float = RETRY_BASE_DELAY_SEC,
                 multiplier: float = RETRY_MULTIPLIER,
                 sleep: Callable[[float], None] = time.sleep):
        self.max_retries = max_retries
        self.base_delay_sec = base_delay_sec
        self.multiplier = multiplier
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: dict, **kwargs) -> "RetryController":
        return cls(
            max_retries=config.get('max_retries', MAX_RETRIES),
            base_delay_sec=config.get('retry_base_delay_sec', RETRY_BASE_DELAY_SEC),
            multiplier=config.get('retry_multiplier', RETRY_MULTIPLIER),
            **kwargs,
        )

    def delay_for(self, attempt_index: int) -> float:
        """Backoff before retry number attempt_index + 1: base × multiplier^attempt_index."""
        return self.base_delay_sec * (self.multiplier ** attempt_index)

    def handle_failure(self, job: Job, error: JobError,
                       log: Optional[logging.Logger] = None) -> bool:
        """
        Record a stage failure.  Returns True after sleeping out the backoff
        when the job should run again, False when the job is now terminally
        failed.
        """
        log = log or logger

        if not error.retryable:
            log.error("Job %s failed with non-retryable %s — giving up", job.job_id, error.code)
            self.mark_terminal(job, error)
            return False

        attempt = job.retry_count + 1
        if attempt > self.max_retries:
            log.error("Job %s exhausted %d retries (last error %s) — marking failed",
                      job.job_id, self.max_retries, error.code)
            self.mark_terminal(job, error)
            return False

        delay = self.delay_for(attempt - 1)
        job.retry_count = attempt
        save_job(job, next_retry_delay_sec=delay, retry_count_at_failure=attempt)
        log.warning("Retrying job %s in %.1fs (attempt %d/%d) after %s",
                    job.job_id, delay, attempt, self.max_retries, error.code)
        self._sleep(delay)
        return True

    def mark_terminal(self, job: Job, error: JobError):
        """Persist the terminal failure; the retry count is left as consumed."""
        if job.stage != JobStage.FAILED:
            job.metadata['resume_stage'] = job.stage
        save_job(job, stage=JobStage.FAILED,
                 terminal=True,
                 error_code=error.code,
                 error_message=error.message[:2000],
                 retry_count_at_failure=job.retry_count)
