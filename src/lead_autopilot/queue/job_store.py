"""Durable job persistence for the work queues."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func, update

from ..storage.models import PENDING_JOB_STATUSES, Job, JobStatus

logger = structlog.get_logger()

# Candidates read per claim attempt; others may win the race for the first ones
CLAIM_BATCH = 5


class JobStore:
    """Job rows in the ``jobs`` table. Each method runs in its own session."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def add(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict,
        run_at: datetime,
        now: datetime,
        priority: int = 5,
        max_attempts: int = 3,
        group_key: Optional[str] = None,
    ) -> Job:
        job = Job(
            queue_name=queue_name,
            job_type=job_type,
            payload=payload or {},
            priority=priority,
            status=JobStatus.DELAYED if run_at > now else JobStatus.WAITING,
            run_at=run_at,
            max_attempts=max_attempts,
            group_key=group_key,
            created_at=now,
        )
        with self.session_factory() as session:
            session.add(job)
            session.commit()
            return job

    def get(self, job_id: int) -> Optional[Job]:
        with self.session_factory() as session:
            return session.get(Job, job_id)

    def claim_next(self, queue_name: str, now: datetime) -> Optional[Job]:
        """
        Move the next eligible job to ACTIVE and return it.

        Eligible means pending with ``run_at <= now``; the pick order is
        priority, then insertion order. The conditional update makes the
        claim safe against other workers polling the same queue.
        """
        with self.session_factory() as session:
            while True:
                candidate_ids = [
                    row.id
                    for row in session.query(Job.id)
                    .filter(Job.queue_name == queue_name)
                    .filter(Job.status.in_(PENDING_JOB_STATUSES))
                    .filter(Job.run_at <= now)
                    .order_by(Job.priority, Job.id)
                    .limit(CLAIM_BATCH)
                ]
                if not candidate_ids:
                    return None

                for job_id in candidate_ids:
                    result = session.execute(
                        update(Job)
                        .where(Job.id == job_id, Job.status.in_(PENDING_JOB_STATUSES))
                        .values(status=JobStatus.ACTIVE, started_at=now, attempts=Job.attempts + 1)
                    )
                    session.commit()
                    if result.rowcount == 1:
                        return session.get(Job, job_id, populate_existing=True)

    def _finish(self, job_id: int, **values) -> bool:
        with self.session_factory() as session:
            result = session.execute(
                update(Job).where(Job.id == job_id, Job.status == JobStatus.ACTIVE).values(**values)
            )
            session.commit()
            return result.rowcount == 1

    def mark_completed(self, job_id: int, result: Optional[Dict], now: datetime) -> bool:
        return self._finish(job_id, status=JobStatus.COMPLETED, result=result, finished_at=now)

    def mark_failed(self, job_id: int, error: str, now: datetime) -> bool:
        return self._finish(job_id, status=JobStatus.FAILED, last_error=error, finished_at=now)

    def mark_retry(self, job_id: int, error: str, run_at: datetime) -> bool:
        return self._finish(job_id, status=JobStatus.DELAYED, last_error=error, run_at=run_at, started_at=None)

    def cancel(self, job_id: int, now: datetime) -> bool:
        """Cancel a job that has not started. Active and finished jobs are left alone."""
        with self.session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status.in_(PENDING_JOB_STATUSES))
                .values(status=JobStatus.CANCELLED, finished_at=now)
            )
            session.commit()
            return result.rowcount == 1

    def cancel_pending(
        self,
        group_key: str,
        now: datetime,
        queue_name: Optional[str] = None,
        job_types: Optional[Iterable[str]] = None,
    ) -> int:
        """Cancel every pending job of a group. Returns the number cancelled."""
        with self.session_factory() as session:
            statement = update(Job).where(Job.group_key == group_key, Job.status.in_(PENDING_JOB_STATUSES))
            if queue_name:
                statement = statement.where(Job.queue_name == queue_name)
            if job_types:
                statement = statement.where(Job.job_type.in_(list(job_types)))
            result = session.execute(
                statement.values(status=JobStatus.CANCELLED, finished_at=now).execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount

    def pending_for_group(self, group_key: str, queue_name: Optional[str] = None) -> List[Job]:
        with self.session_factory() as session:
            query = session.query(Job).filter(Job.group_key == group_key, Job.status.in_(PENDING_JOB_STATUSES))
            if queue_name:
                query = query.filter(Job.queue_name == queue_name)
            return query.order_by(Job.run_at, Job.id).all()

    def counts(self, queue_name: str, now: datetime) -> Dict[str, int]:
        """Job counts by state. Pending jobs split into waiting/delayed by ``run_at``."""
        counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0, "cancelled": 0}
        with self.session_factory() as session:
            rows = (
                session.query(Job.status, func.count(Job.id))
                .filter(Job.queue_name == queue_name)
                .filter(Job.status.notin_(PENDING_JOB_STATUSES))
                .group_by(Job.status)
                .all()
            )
            pending = session.query(Job).filter(Job.queue_name == queue_name, Job.status.in_(PENDING_JOB_STATUSES))
            counts["waiting"] = pending.filter(Job.run_at <= now).count()
            counts["delayed"] = pending.filter(Job.run_at > now).count()
        for status, count in rows:
            counts[status.value] = count
        return counts

    def recent_finished(self, queue_name: str, since: datetime) -> Dict[str, int]:
        """Completed/failed counts for jobs finished since ``since``."""
        with self.session_factory() as session:
            rows = (
                session.query(Job.status, func.count(Job.id))
                .filter(Job.queue_name == queue_name)
                .filter(Job.finished_at >= since)
                .filter(Job.status.in_((JobStatus.COMPLETED, JobStatus.FAILED)))
                .group_by(Job.status)
                .all()
            )
        result = {"completed": 0, "failed": 0}
        for status, count in rows:
            result[status.value] = count
        return result

    def list_jobs(self, queue_name: str, status: JobStatus, limit: int = 50) -> List[Job]:
        with self.session_factory() as session:
            return (
                session.query(Job)
                .filter(Job.queue_name == queue_name, Job.status == status)
                .order_by(Job.id.desc())
                .limit(limit)
                .all()
            )

    def trim_history(self, queue_name: str, status: JobStatus, keep: int) -> int:
        """Delete the oldest finished jobs beyond the newest ``keep``."""
        with self.session_factory() as session:
            keep_ids = [
                row.id
                for row in session.query(Job.id)
                .filter(Job.queue_name == queue_name, Job.status == status)
                .order_by(Job.finished_at.desc(), Job.id.desc())
                .limit(keep)
            ]
            query = session.query(Job).filter(Job.queue_name == queue_name, Job.status == status)
            if keep_ids:
                query = query.filter(Job.id.notin_(keep_ids))
            deleted = query.delete(synchronize_session=False)
            session.commit()
            return deleted

    def delete_finished_before(self, queue_name: str, status: JobStatus, before: datetime) -> int:
        with self.session_factory() as session:
            deleted = (
                session.query(Job)
                .filter(Job.queue_name == queue_name, Job.status == status, Job.finished_at < before)
                .delete(synchronize_session=False)
            )
            session.commit()
            return deleted

    def stalled(self, queue_name: str, started_before: datetime) -> List[Job]:
        with self.session_factory() as session:
            return (
                session.query(Job)
                .filter(Job.queue_name == queue_name, Job.status == JobStatus.ACTIVE)
                .filter(Job.started_at < started_before)
                .all()
            )
