"""Recurring triggers that enqueue jobs at cron boundaries.

Each trigger's last fired boundary lives in the ``trigger_state`` table. A
boundary is claimed with a conditional update before the job is enqueued, so
restarts and concurrent schedulers never enqueue the same boundary twice.
Missed boundaries (process down) are coalesced into one run.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from ..queue.registry import QueueManager
from ..storage.models import TriggerState, utcnow

logger = structlog.get_logger()

# Oldest boundary considered when catching up after downtime
MAX_CATCH_UP = timedelta(days=35)


@dataclass
class TriggerSpec:
    """One recurring job."""

    name: str
    schedule: str  # crontab expression, e.g. "0 2 * * *"
    queue: str
    job_type: str
    payload: Dict = field(default_factory=dict)
    priority: Optional[int] = None
    enabled: bool = True

    @classmethod
    def from_config(cls, config: Dict) -> "TriggerSpec":
        return cls(
            name=config["name"],
            schedule=config["schedule"],
            queue=config["queue"],
            job_type=config["job_type"],
            payload=dict(config.get("payload") or {}),
            priority=config.get("priority"),
            enabled=config.get("enabled", True),
        )


def _aware(value: datetime) -> datetime:
    return value.replace(tzinfo=dt_timezone.utc)


def _naive(value: datetime) -> datetime:
    return value.astimezone(dt_timezone.utc).replace(tzinfo=None)


class TriggerStateStore:
    """``trigger_state`` rows."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get(self, name: str) -> Optional[TriggerState]:
        with self.session_factory() as session:
            return session.get(TriggerState, name)

    def all(self) -> Dict[str, TriggerState]:
        with self.session_factory() as session:
            return {row.name: row for row in session.query(TriggerState).all()}

    def seed(self, name: str, now: datetime) -> bool:
        """Create the row for a new trigger. Returns False if it already exists."""
        with self.session_factory() as session:
            session.add(TriggerState(name=name, last_fired_at=now, updated_at=now))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def claim(self, name: str, boundary: datetime, now: datetime) -> bool:
        """Advance ``last_fired_at`` to ``boundary`` unless someone already did."""
        with self.session_factory() as session:
            result = session.execute(
                update(TriggerState)
                .where(TriggerState.name == name)
                .where(or_(TriggerState.last_fired_at.is_(None), TriggerState.last_fired_at < boundary))
                .values(last_fired_at=boundary, updated_at=now)
            )
            session.commit()
            return result.rowcount == 1

    def set_last_job(self, name: str, job_id: int):
        with self.session_factory() as session:
            session.execute(update(TriggerState).where(TriggerState.name == name).values(last_job_id=job_id))
            session.commit()


class Scheduler:
    """Evaluates triggers on each tick and enqueues due jobs."""

    def __init__(
        self,
        queues: QueueManager,
        state: TriggerStateStore,
        triggers: List[TriggerSpec],
        timezone: str = "UTC",
        enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
        poll_interval_seconds: float = 30.0,
    ):
        self.queues = queues
        self.state = state
        self.triggers = {spec.name: spec for spec in triggers}
        self.timezone = timezone
        self.enabled = enabled
        self.clock = clock
        self.poll_interval_seconds = poll_interval_seconds
        self.log = logger.bind(component="scheduler")
        self._crons = {spec.name: CronTrigger.from_crontab(spec.schedule, timezone=timezone) for spec in triggers}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def latest_boundary(self, name: str, last_fired_at: datetime, now: datetime) -> Optional[datetime]:
        """Most recent fire time in ``(last_fired_at, now]``, or None."""
        cron = self._crons[name]
        now_aware = _aware(now)
        cursor = _aware(max(last_fired_at, now - MAX_CATCH_UP))
        boundary = None
        while True:
            next_fire = cron.get_next_fire_time(cursor, now_aware)
            if next_fire is None or next_fire > now_aware:
                break
            boundary = next_fire
            cursor = next_fire
        return _naive(boundary) if boundary is not None else None

    def next_fire_time(self, name: str, now: Optional[datetime] = None) -> Optional[datetime]:
        now = now or self.clock()
        next_fire = self._crons[name].get_next_fire_time(None, _aware(now))
        return _naive(next_fire) if next_fire is not None else None

    def tick(self, now: Optional[datetime] = None) -> List[Tuple[str, int]]:
        """
        Fire every trigger whose boundary passed since it last fired.

        A trigger seen for the first time is seeded with ``now`` and does not
        fire until its next boundary.

        Returns:
            [(trigger name, job id)] for triggers fired on this tick
        """
        if not self.enabled:
            return []
        now = now or self.clock()
        fired = []
        for name, spec in self.triggers.items():
            if not spec.enabled:
                continue
            row = self.state.get(name)
            if row is None:
                if self.state.seed(name, now):
                    self.log.info("Trigger registered", trigger=name, schedule=spec.schedule, next_fire=str(self.next_fire_time(name, now)))
                continue

            boundary = self.latest_boundary(name, row.last_fired_at or now - MAX_CATCH_UP, now)
            if boundary is None:
                continue
            if not self.state.claim(name, boundary, now):
                self.log.debug("Trigger boundary already claimed", trigger=name, boundary=boundary.isoformat())
                continue

            job = self.queues.enqueue(spec.queue, spec.job_type, dict(spec.payload), priority=spec.priority)
            self.state.set_last_job(name, job.id)
            self.log.info("Trigger fired", trigger=name, boundary=boundary.isoformat(), queue=spec.queue, job_id=job.id)
            fired.append((name, job.id))
        return fired

    def fire_now(self, name: str) -> int:
        """Enqueue a trigger's job immediately, outside its schedule."""
        spec = self.triggers[name]
        job = self.queues.enqueue(spec.queue, spec.job_type, dict(spec.payload), priority=spec.priority)
        self.log.info("Trigger fired manually", trigger=name, job_id=job.id)
        return job.id

    def last_fired(self) -> Dict[str, Optional[datetime]]:
        rows = self.state.all()
        return {name: rows[name].last_fired_at if name in rows else None for name in self.triggers}

    def _run(self):
        self.log.info("Scheduler started", triggers=list(self.triggers), timezone=self.timezone)
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                self.log.error("Scheduler tick failed", error=str(e))
            self._stop.wait(self.poll_interval_seconds)
        self.log.info("Scheduler stopped")

    def start(self):
        if self._thread is not None or not self.enabled:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
