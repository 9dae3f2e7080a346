import threading
from datetime import timedelta

import pytest

from lead_autopilot.errors import JobTimeoutError, PermanentJobError, QueueNotFoundError
from lead_autopilot.queue.registry import DEFAULT_QUEUES, EMAIL, FOLLOWUP
from lead_autopilot.queue.work_queue import QueueConfig, WorkQueue, run_with_timeout
from lead_autopilot.storage.models import JobStatus


def make_queue(job_store, clock, handlers, **config):
    config.setdefault("name", "test")
    return WorkQueue(QueueConfig(**config), job_store, handlers, clock=clock)


def test_backoff_doubles_and_caps():
    config = QueueConfig(name="q", backoff_seconds=5, backoff_cap_seconds=30)

    assert [config.backoff_delay(n) for n in (1, 2, 3, 4, 5)] == [5, 10, 20, 30, 30]


def test_from_config_uses_defaults_for_missing_keys():
    config = QueueConfig.from_config("scraping", {"timeout_seconds": 600, "max_attempts": 2})

    assert config.timeout_seconds == 600
    assert config.max_attempts == 2
    assert config.backoff_seconds == 5
    assert config.keep_completed == 100
    assert config.keep_failed == 500


def test_runs_by_priority_then_insertion_order(job_store, clock):
    ran = []
    queue = make_queue(job_store, clock, {"work": lambda job: ran.append(job.payload["n"])})
    queue.enqueue("work", {"n": 1}, priority=5)
    queue.enqueue("work", {"n": 2}, priority=1)
    queue.enqueue("work", {"n": 3}, priority=5)
    queue.enqueue("work", {"n": 4}, priority=1)

    queue.drain()

    assert ran == [2, 4, 1, 3]


def test_delayed_job_waits_for_its_delay(job_store, clock):
    queue = make_queue(job_store, clock, {"work": lambda job: {"done": True}})
    job = queue.enqueue("work", delay_seconds=30)

    assert job.status == JobStatus.DELAYED
    assert queue.process_one() is None
    assert queue.counts()["delayed"] == 1

    clock.advance(seconds=30)
    assert queue.counts()["waiting"] == 1
    outcome = queue.process_one()

    assert outcome.status == JobStatus.COMPLETED
    assert job_store.get(job.id).result == {"done": True}


def test_failure_retries_with_exponential_backoff(job_store, clock):
    calls = []

    def flaky(job):
        calls.append(job.attempts)
        if len(calls) < 3:
            raise ConnectionError("boom")
        return {"ok": True}

    queue = make_queue(job_store, clock, {"flaky": flaky}, max_attempts=3, backoff_seconds=5)
    job = queue.enqueue("flaky")

    first = queue.process_one()
    assert first.status == JobStatus.DELAYED
    assert first.retry_at == clock() + timedelta(seconds=5)
    assert queue.process_one() is None

    clock.advance(seconds=5)
    second = queue.process_one()
    assert second.retry_at == clock() + timedelta(seconds=10)

    clock.advance(seconds=10)
    third = queue.process_one()
    assert third.status == JobStatus.COMPLETED
    assert calls == [1, 2, 3]
    assert job_store.get(job.id).attempts == 3


def test_exhausted_job_fails_terminally_exactly_once(job_store, clock):
    def always_fails(job):
        raise ValueError("bad data")

    queue = make_queue(job_store, clock, {"broken": always_fails}, max_attempts=3, backoff_seconds=5)
    job = queue.enqueue("broken")

    outcomes = []
    for _ in range(10):
        outcome = queue.process_one()
        if outcome is not None:
            outcomes.append(outcome)
        clock.advance(hours=1)

    assert [o.status for o in outcomes] == [JobStatus.DELAYED, JobStatus.DELAYED, JobStatus.FAILED]
    stored = job_store.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.attempts == 3
    assert "ValueError: bad data" in stored.last_error
    assert queue.counts()["failed"] == 1


def test_failed_job_does_not_block_others(job_store, clock):
    def fails(job):
        raise RuntimeError("nope")

    queue = make_queue(job_store, clock, {"fails": fails, "ok": lambda job: {"ok": True}}, max_attempts=1)
    queue.enqueue("fails", priority=1)
    good = queue.enqueue("ok", priority=5)

    outcomes = queue.drain()

    assert [o.status for o in outcomes] == [JobStatus.FAILED, JobStatus.COMPLETED]
    assert job_store.get(good.id).status == JobStatus.COMPLETED


def test_permanent_error_skips_retries(job_store, clock):
    def invalid(job):
        raise PermanentJobError("lead missing")

    queue = make_queue(job_store, clock, {"invalid": invalid}, max_attempts=5)
    job = queue.enqueue("invalid")

    outcome = queue.process_one()

    assert outcome.status == JobStatus.FAILED
    assert job_store.get(job.id).attempts == 1


def test_unknown_job_type_fails_terminally(job_store, clock):
    queue = make_queue(job_store, clock, {}, max_attempts=5)
    queue.enqueue("mystery")

    outcome = queue.process_one()

    assert outcome.status == JobStatus.FAILED
    assert "mystery" in outcome.error


def test_timed_out_job_is_retried_after_base_backoff(job_store, clock):
    release = threading.Event()

    def hangs(job):
        release.wait(5)

    queue = make_queue(
        job_store, clock,
        {"hangs": hangs, "quick": lambda job: {"ok": True}},
        name="scraping", timeout_seconds=0.2, max_attempts=2, backoff_seconds=60,
    )
    slow = queue.enqueue("hangs", priority=1)
    quick = queue.enqueue("quick", priority=5)

    try:
        outcome = queue.process_one()
    finally:
        release.set()

    assert outcome.job_id == slow.id
    assert outcome.status == JobStatus.DELAYED
    assert outcome.attempts == 1
    assert "JobTimeoutError" in outcome.error
    assert outcome.retry_at == clock() + timedelta(seconds=60)

    stored = job_store.get(slow.id)
    assert stored.status == JobStatus.DELAYED
    assert stored.attempts == 1

    assert queue.process_one().job_id == quick.id
    assert job_store.get(quick.id).status == JobStatus.COMPLETED


def test_run_with_timeout():
    assert run_with_timeout(lambda: 42, 1) == 42
    with pytest.raises(KeyError):
        run_with_timeout(lambda: {}["x"], 1)

    release = threading.Event()
    with pytest.raises(JobTimeoutError):
        run_with_timeout(lambda: release.wait(5), 0.05)
    release.set()


def test_cancel_pending_job(job_store, clock):
    queue = make_queue(job_store, clock, {"work": lambda job: None})
    job = queue.enqueue("work", delay_seconds=60)

    assert queue.cancel(job.id) is True
    assert queue.cancel(job.id) is False
    clock.advance(seconds=120)
    assert queue.process_one() is None
    assert job_store.get(job.id).status == JobStatus.CANCELLED


def test_completed_history_is_bounded(job_store, clock):
    queue = make_queue(job_store, clock, {"work": lambda job: None}, keep_completed=2)
    jobs = [queue.enqueue("work") for _ in range(4)]

    queue.drain()

    kept = job_store.list_jobs("test", JobStatus.COMPLETED)
    assert sorted(job.id for job in kept) == [jobs[2].id, jobs[3].id]


def test_failed_history_is_retained_for_inspection(job_store, clock):
    def fails(job):
        raise RuntimeError("x")

    queue = make_queue(job_store, clock, {"fails": fails}, max_attempts=1, keep_failed=500)
    for _ in range(3):
        queue.enqueue("fails")

    queue.drain()

    assert len(job_store.list_jobs("test", JobStatus.FAILED)) == 3


def test_recover_stalled_job(job_store, clock):
    queue = make_queue(job_store, clock, {"work": lambda job: None}, timeout_seconds=10, max_attempts=3)
    job = queue.enqueue("work")
    job_store.claim_next("test", clock())  # worker died after claiming

    clock.advance(seconds=15)
    assert queue.recover_stalled() == 0
    clock.advance(seconds=10)
    assert queue.recover_stalled() == 1

    stored = job_store.get(job.id)
    assert stored.status == JobStatus.DELAYED
    assert "stalled" in stored.last_error


def test_clean_removes_old_finished_jobs(job_store, clock):
    queue = make_queue(job_store, clock, {"work": lambda job: None})
    queue.enqueue("work")
    queue.drain()

    clock.advance(days=8)
    removed = queue.clean(7 * 86400)

    assert removed["completed"] == 1
    assert queue.counts()["completed"] == 0


def test_worker_threads_process_jobs(job_store, clock):
    done = threading.Event()
    queue = make_queue(job_store, clock, {"work": lambda job: done.set()}, concurrency=2, poll_interval_seconds=0.05)
    queue.enqueue("work")

    queue.start()
    try:
        assert done.wait(5)
    finally:
        queue.stop(timeout=5)


class TestQueueManager:
    def test_builds_default_queues(self, queues):
        assert set(queues.queues) == set(DEFAULT_QUEUES)
        assert queues.get("scraping").config.max_attempts == 2
        assert queues.get(EMAIL).config.timeout_seconds == 30

    def test_unknown_queue(self, queues):
        with pytest.raises(QueueNotFoundError):
            queues.get("nope")
        with pytest.raises(KeyError):
            queues.enqueue("nope", "work")

    def test_cancel_by_id_routes_to_owning_queue(self, queues):
        job = queues.enqueue(EMAIL, "send-email", {"lead_id": 1}, delay_seconds=60)

        assert queues.cancel(job.id) is True
        assert queues.cancel(999) is False

    def test_cancel_group_limited_to_queue(self, queues):
        queues.enqueue(FOLLOWUP, "send-followup", {"lead_id": 7}, delay_seconds=60, group_key="7")
        queues.enqueue(FOLLOWUP, "send-followup", {"lead_id": 7}, delay_seconds=120, group_key="7")
        queues.enqueue(EMAIL, "send-email", {"lead_id": 7}, delay_seconds=60, group_key="7")
        queues.enqueue(FOLLOWUP, "send-followup", {"lead_id": 8}, delay_seconds=60, group_key="8")

        assert queues.cancel_group("7", queue_name=FOLLOWUP) == 2
        assert queues.pending_for_group("7", queue_name=FOLLOWUP) == []
        assert len(queues.pending_for_group("7")) == 1
        assert len(queues.pending_for_group("8")) == 1

    def test_stats_and_run_pending(self, queues, clock):
        queues.register_all({"work": lambda job: {"ok": True}})
        queues.enqueue("scoring", "work")
        queues.enqueue("scoring", "work", delay_seconds=60)

        outcomes = queues.run_pending(["scoring"])

        assert len(outcomes["scoring"]) == 1
        stats = queues.stats()["scoring"]
        assert stats["completed"] == 1
        assert stats["delayed"] == 1
        assert stats["waiting"] == 0
