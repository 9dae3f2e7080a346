"""Named work queue: priority/delay scheduling, worker threads, retries."""

import threading
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..errors import JobTimeoutError, PermanentJobError
from ..storage.models import Job, JobStatus, utcnow
from .job_store import JobStore

logger = structlog.get_logger()

Handler = Callable[[Job], Optional[Dict]]

DEFAULT_PRIORITY = 5


@dataclass(frozen=True)
class QueueConfig:
    """Per-queue policy."""

    name: str
    concurrency: int = 1
    timeout_seconds: float = 60.0
    max_attempts: int = 3
    backoff_seconds: float = 5.0
    backoff_cap_seconds: float = 3600.0
    keep_completed: int = 100
    keep_failed: int = 500
    poll_interval_seconds: float = 1.0

    @classmethod
    def from_config(cls, name: str, config: Optional[Dict]) -> "QueueConfig":
        config = config or {}
        return cls(
            name=name,
            concurrency=int(config.get("concurrency", cls.concurrency)),
            timeout_seconds=float(config.get("timeout_seconds", cls.timeout_seconds)),
            max_attempts=int(config.get("max_attempts", cls.max_attempts)),
            backoff_seconds=float(config.get("backoff_seconds", cls.backoff_seconds)),
            backoff_cap_seconds=float(config.get("backoff_cap_seconds", cls.backoff_cap_seconds)),
            keep_completed=int(config.get("keep_completed", cls.keep_completed)),
            keep_failed=int(config.get("keep_failed", cls.keep_failed)),
            poll_interval_seconds=float(config.get("poll_interval_seconds", cls.poll_interval_seconds)),
        )

    def backoff_delay(self, attempts: int) -> float:
        """Retry delay after the ``attempts``-th failed attempt: base, 2*base, 4*base... capped."""
        return min(self.backoff_seconds * (2 ** max(attempts - 1, 0)), self.backoff_cap_seconds)


@dataclass
class JobOutcome:
    """What happened to one claimed job."""

    job_id: int
    status: JobStatus
    attempts: int
    error: Optional[str] = None
    retry_at: Optional[datetime] = None
    result: Optional[Dict] = None


def run_with_timeout(func: Callable[[], Any], timeout: Optional[float]) -> Any:
    """
    Run ``func`` in a daemon thread and wait at most ``timeout`` seconds.

    A timed-out call keeps running in the background; its result is discarded.

    Raises:
        JobTimeoutError: The call did not finish in time
    """
    outcome: Dict[str, Any] = {}

    def target():
        try:
            outcome["result"] = func()
        except BaseException as e:  # re-raised in the caller's thread
            outcome["error"] = e

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    thread.join(timeout)
    if thread.is_alive():
        raise JobTimeoutError(f"Job exceeded timeout of {timeout}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


class WorkQueue:
    """
    One named queue backed by the ``jobs`` table.

    ``process_one`` claims and runs a single eligible job synchronously;
    ``start`` launches ``concurrency`` worker threads that call it in a loop.
    """

    def __init__(
        self,
        config: QueueConfig,
        job_store: JobStore,
        handlers: Dict[str, Handler],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.name = config.name
        self.job_store = job_store
        self.handlers = handlers
        self.clock = clock
        self.log = logger.bind(component="queue", queue=self.name)
        self._stop = threading.Event()
        self._workers: List[threading.Thread] = []

    def enqueue(
        self,
        job_type: str,
        payload: Optional[Dict] = None,
        priority: Optional[int] = None,
        delay_seconds: float = 0,
        group_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> Job:
        """
        Add a job.

        Args:
            job_type: Handler key
            payload: JSON-serializable job data
            priority: Lower runs sooner (default 5)
            delay_seconds: Job is not eligible before now + delay
            group_key: Lead id for lead-scoped jobs, used for bulk cancellation
            max_attempts: Override the queue's retry budget

        Returns:
            The persisted Job
        """
        now = self.clock()
        job = self.job_store.add(
            queue_name=self.name,
            job_type=job_type,
            payload=payload or {},
            run_at=now + timedelta(seconds=delay_seconds),
            now=now,
            priority=DEFAULT_PRIORITY if priority is None else priority,
            max_attempts=max_attempts or self.config.max_attempts,
            group_key=group_key,
        )
        self.log.info("Job added", job_id=job.id, job_type=job_type, priority=job.priority, delay_seconds=delay_seconds)
        return job

    def process_one(self) -> Optional[JobOutcome]:
        """Claim and run the next eligible job. Returns None when nothing is eligible."""
        job = self.job_store.claim_next(self.name, self.clock())
        if job is None:
            return None

        log = self.log.bind(job_id=job.id, job_type=job.job_type, attempt=job.attempts)
        log.info("Job started")
        started = time.monotonic()

        try:
            handler = self.handlers.get(job.job_type)
            if handler is None:
                raise PermanentJobError(f"No handler registered for job type {job.job_type!r}")
            result = run_with_timeout(lambda: handler(job), self.config.timeout_seconds)
        except PermanentJobError as e:
            return self._fail(job, str(e), log, terminal=True)
        except Exception as e:
            log.debug("Job traceback", traceback=traceback.format_exc())
            return self._fail(job, f"{type(e).__name__}: {e}", log, terminal=False)

        duration = round(time.monotonic() - started, 3)
        self.job_store.mark_completed(job.id, result, self.clock())
        log.info("Job completed", duration=duration)
        self._trim(JobStatus.COMPLETED, self.config.keep_completed)
        return JobOutcome(job_id=job.id, status=JobStatus.COMPLETED, attempts=job.attempts, result=result)

    def _fail(self, job: Job, error: str, log, terminal: bool) -> JobOutcome:
        now = self.clock()
        if not terminal and job.attempts < job.max_attempts:
            delay = self.config.backoff_delay(job.attempts)
            retry_at = now + timedelta(seconds=delay)
            self.job_store.mark_retry(job.id, error, retry_at)
            log.warning("Job failed, retrying", error=error, max_attempts=job.max_attempts, retry_in=delay)
            return JobOutcome(job_id=job.id, status=JobStatus.DELAYED, attempts=job.attempts, error=error, retry_at=retry_at)

        self.job_store.mark_failed(job.id, error, now)
        log.error("Job failed permanently", error=error, max_attempts=job.max_attempts, terminal=terminal)
        self._trim(JobStatus.FAILED, self.config.keep_failed)
        return JobOutcome(job_id=job.id, status=JobStatus.FAILED, attempts=job.attempts, error=error)

    def _trim(self, status: JobStatus, keep: int):
        removed = self.job_store.trim_history(self.name, status, keep)
        if removed:
            self.log.debug("Trimmed job history", status=status.value, removed=removed)

    def drain(self, max_jobs: Optional[int] = None) -> List[JobOutcome]:
        """Run eligible jobs until none remain (or ``max_jobs`` ran)."""
        outcomes = []
        while max_jobs is None or len(outcomes) < max_jobs:
            outcome = self.process_one()
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    def cancel(self, job_id: int) -> bool:
        cancelled = self.job_store.cancel(job_id, self.clock())
        self.log.info("Job cancel requested", job_id=job_id, cancelled=cancelled)
        return cancelled

    def counts(self) -> Dict[str, int]:
        return self.job_store.counts(self.name, self.clock())

    def recover_stalled(self, stalled_after_seconds: Optional[float] = None) -> int:
        """
        Fail (or retry) jobs left ACTIVE by a worker that died.

        A job counts as stalled once it has been active for longer than
        ``stalled_after_seconds`` (default: twice the queue timeout).
        """
        threshold = stalled_after_seconds or self.config.timeout_seconds * 2
        now = self.clock()
        stalled = self.job_store.stalled(self.name, now - timedelta(seconds=threshold))
        for job in stalled:
            self.log.warning("Job stalled", job_id=job.id, job_type=job.job_type, started_at=job.started_at.isoformat())
            self._fail(job, "Job stalled (worker lost)", self.log.bind(job_id=job.id), terminal=False)
        return len(stalled)

    def clean(self, grace_seconds: float) -> Dict[str, int]:
        """Delete completed and failed jobs that finished more than ``grace_seconds`` ago."""
        before = self.clock() - timedelta(seconds=grace_seconds)
        removed = {
            "completed": self.job_store.delete_finished_before(self.name, JobStatus.COMPLETED, before),
            "failed": self.job_store.delete_finished_before(self.name, JobStatus.FAILED, before),
            "cancelled": self.job_store.delete_finished_before(self.name, JobStatus.CANCELLED, before),
        }
        self.log.info("Queue cleaned", grace_seconds=grace_seconds, **removed)
        return removed

    # Worker threads
    def _worker_loop(self, index: int):
        log = self.log.bind(worker=index)
        log.debug("Worker started")
        while not self._stop.is_set():
            try:
                outcome = self.process_one()
            except Exception as e:
                # Database hiccup while claiming; back off and poll again
                log.error("Worker error", error=str(e))
                outcome = None
            if outcome is None:
                self._stop.wait(self.config.poll_interval_seconds)
        log.debug("Worker stopped")

    def start(self):
        if self._workers:
            return
        self._stop.clear()
        for index in range(self.config.concurrency):
            worker = threading.Thread(target=self._worker_loop, args=(index,), name=f"{self.name}-worker-{index}", daemon=True)
            worker.start()
            self._workers.append(worker)
        self.log.info("Queue workers started", concurrency=self.config.concurrency)

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        for worker in self._workers:
            worker.join(timeout)
        self._workers = []
        self.log.info("Queue workers stopped")
