"""Health summary: database, queue failure rates, recent scrape success, triggers."""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from ..queue.registry import SCRAPING, QueueManager
from ..storage.lead_store import LeadStore
from ..storage.models import JobStatus, utcnow

logger = structlog.get_logger()

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"

FAILURE_RATE_THRESHOLD = 0.5
MIN_FINISHED_FOR_RATE = 5
MAX_FAILED_JOBS = 100
MAX_ACTIVE_JOBS = 50


class HealthMonitor:
    """Aggregates component checks into one status."""

    def __init__(
        self,
        store: LeadStore,
        queues: QueueManager,
        scheduler=None,
        window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.queues = queues
        self.scheduler = scheduler
        self.window = window
        self.clock = clock
        self.log = logger.bind(component="health")

    def check_database(self) -> Dict:
        try:
            return {"status": HEALTHY, "lead_count": self.store.count_leads()}
        except SQLAlchemyError as e:
            return {"status": CRITICAL, "message": f"Database connection failed: {e}"}

    def check_queues(self, now: datetime) -> Dict:
        since = now - self.window
        issues: List[str] = []
        queues = {}
        for name, queue in self.queues.queues.items():
            counts = queue.counts()
            recent = self.queues.job_store.recent_finished(name, since)
            finished = recent["completed"] + recent["failed"]
            failure_rate = round(recent["failed"] / finished, 3) if finished else 0.0
            queues[name] = {**counts, "recent_completed": recent["completed"], "recent_failed": recent["failed"], "failure_rate": failure_rate}

            if finished >= MIN_FINISHED_FOR_RATE and failure_rate > FAILURE_RATE_THRESHOLD:
                issues.append(f"{name} queue failure rate {failure_rate:.0%}")
            if counts["failed"] > MAX_FAILED_JOBS:
                issues.append(f"{name} queue has {counts['failed']} failed jobs")
            if counts["active"] > MAX_ACTIVE_JOBS:
                issues.append(f"{name} queue has {counts['active']} active jobs (possible stall)")

        result = {"status": DEGRADED if issues else HEALTHY, "queues": queues}
        if issues:
            result["message"] = "; ".join(issues)
        return result

    def check_scraping(self, now: datetime) -> Dict:
        recent = self.queues.job_store.recent_finished(SCRAPING, now - self.window)
        job_store = self.queues.job_store
        finished = job_store.list_jobs(SCRAPING, JobStatus.COMPLETED, limit=1) + job_store.list_jobs(SCRAPING, JobStatus.FAILED, limit=1)
        if not finished:
            return {"status": DEGRADED, "message": "No scraping jobs found", **recent}

        last = max(finished, key=lambda job: job.finished_at or datetime.min)
        result = {
            "status": HEALTHY,
            "last_job_id": last.id,
            "last_job_status": last.status.value,
            "last_finished_at": last.finished_at.isoformat() if last.finished_at else None,
            **recent,
        }
        if last.status == JobStatus.FAILED:
            result["status"] = DEGRADED
            result["message"] = f"Last scraping job failed: {last.last_error}"
        return result

    def check_triggers(self) -> Dict:
        if self.scheduler is None:
            return {"status": HEALTHY, "enabled": False, "last_fired": {}}
        return {
            "status": HEALTHY,
            "enabled": self.scheduler.enabled,
            "last_fired": {
                name: value.isoformat() if value else None
                for name, value in self.scheduler.last_fired().items()
            },
        }

    def summary(self, now: Optional[datetime] = None) -> Dict:
        """
        Overall health.

        Returns:
            Dict with ``status`` (healthy / degraded / critical), per-component
            results and an ``alerts`` list for every non-healthy component
        """
        now = now or self.clock()
        components = {"database": self.check_database()}
        if components["database"]["status"] != CRITICAL:
            components["queues"] = self.check_queues(now)
            components["scraping"] = self.check_scraping(now)
            components["triggers"] = self.check_triggers()

        statuses = [component["status"] for component in components.values()]
        if CRITICAL in statuses:
            status = CRITICAL
        elif DEGRADED in statuses:
            status = DEGRADED
        else:
            status = HEALTHY

        alerts = [
            {"component": name, "severity": data["status"], "message": data.get("message")}
            for name, data in components.items()
            if data["status"] != HEALTHY
        ]
        health = {"status": status, "checked_at": now.isoformat(), "components": components, "alerts": alerts}
        if status == HEALTHY:
            self.log.info("Health check passed")
        else:
            self.log.warning("Health check found issues", status=status, alerts=[a["message"] for a in alerts])
        return health
