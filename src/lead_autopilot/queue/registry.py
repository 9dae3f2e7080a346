"""The set of named queues the pipeline runs."""

from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from ..errors import QueueNotFoundError
from ..storage.models import Job, utcnow
from .job_store import JobStore
from .work_queue import Handler, JobOutcome, QueueConfig, WorkQueue

logger = structlog.get_logger()

SCRAPING = "scraping"
SCORING = "scoring"
EMAIL = "email"
CAMPAIGN = "campaign"
FOLLOWUP = "followup"
ENRICHMENT = "enrichment"
MAINTENANCE = "maintenance"

DEFAULT_QUEUES = {
    SCRAPING: {"concurrency": 1, "timeout_seconds": 600, "max_attempts": 2},
    SCORING: {"concurrency": 4, "timeout_seconds": 60},
    EMAIL: {"concurrency": 2, "timeout_seconds": 30, "max_attempts": 5},
    CAMPAIGN: {"concurrency": 1, "timeout_seconds": 300},
    FOLLOWUP: {"concurrency": 2, "timeout_seconds": 120},
    ENRICHMENT: {"concurrency": 2, "timeout_seconds": 90},
    MAINTENANCE: {"concurrency": 1, "timeout_seconds": 300},
}


class QueueManager:
    """Builds every configured queue over one job store and routes calls by queue name."""

    def __init__(
        self,
        job_store: JobStore,
        config: Optional[Dict] = None,
        handlers: Optional[Dict[str, Handler]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            job_store: Shared job persistence
            config: ``queues`` section; entries override the defaults per queue
            handlers: job type -> handler, shared by all queues
            clock: Source of "now" (naive UTC)
        """
        self.job_store = job_store
        self.clock = clock
        self.handlers: Dict[str, Handler] = dict(handlers or {})
        self.log = logger.bind(component="queue_manager")

        config = config or {}
        self.queues: Dict[str, WorkQueue] = {}
        for name in list(DEFAULT_QUEUES) + [n for n in config if n not in DEFAULT_QUEUES]:
            settings = {**DEFAULT_QUEUES.get(name, {}), **(config.get(name) or {})}
            self.queues[name] = WorkQueue(QueueConfig.from_config(name, settings), job_store, self.handlers, clock=clock)

    def register_all(self, handlers: Dict[str, Handler]):
        self.handlers.update(handlers)

    def get(self, queue_name: str) -> WorkQueue:
        queue = self.queues.get(queue_name)
        if queue is None:
            raise QueueNotFoundError(f"Queue {queue_name} not found")
        return queue

    def enqueue(self, queue_name: str, job_type: str, payload: Optional[Dict] = None, **options) -> Job:
        """Add a job to a named queue (options as for ``WorkQueue.enqueue``)."""
        return self.get(queue_name).enqueue(job_type, payload, **options)

    def get_job(self, job_id: int) -> Optional[Job]:
        return self.job_store.get(job_id)

    def cancel(self, job_id: int) -> bool:
        """Cancel a pending job by id. Returns False if it already started or finished."""
        job = self.job_store.get(job_id)
        if job is None:
            self.log.warning("Cancel requested for unknown job", job_id=job_id)
            return False
        return self.get(job.queue_name).cancel(job_id)

    def cancel_group(self, group_key: str, queue_name: Optional[str] = None, job_types: Optional[Iterable[str]] = None) -> int:
        """Cancel all pending jobs for a group key (lead id)."""
        cancelled = self.job_store.cancel_pending(str(group_key), self.clock(), queue_name=queue_name, job_types=job_types)
        self.log.info("Pending jobs cancelled", group_key=group_key, queue=queue_name, cancelled=cancelled)
        return cancelled

    def pending_for_group(self, group_key: str, queue_name: Optional[str] = None):
        return self.job_store.pending_for_group(str(group_key), queue_name=queue_name)

    def stats(self) -> Dict[str, Dict[str, int]]:
        """Per-queue counts (waiting/active/completed/failed/delayed/cancelled)."""
        return {name: queue.counts() for name, queue in self.queues.items()}

    def run_pending(self, queue_names: Optional[Iterable[str]] = None, max_jobs: Optional[int] = None) -> Dict[str, List[JobOutcome]]:
        """Drain eligible jobs synchronously, queue by queue."""
        outcomes: Dict[str, List[JobOutcome]] = {}
        for name in queue_names or self.queues:
            outcomes[name] = self.get(name).drain(max_jobs)
        return outcomes

    def clean(self, grace_seconds: float) -> Dict[str, Dict[str, int]]:
        return {name: queue.clean(grace_seconds) for name, queue in self.queues.items()}

    def recover_stalled(self) -> int:
        return sum(queue.recover_stalled() for queue in self.queues.values())

    def start(self):
        self.recover_stalled()
        for queue in self.queues.values():
            queue.start()
        self.log.info("All queues started", queues=list(self.queues))

    def stop(self, timeout: Optional[float] = None):
        for queue in self.queues.values():
            queue.stop(timeout)
