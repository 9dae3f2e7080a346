import time
from datetime import datetime, timedelta
from pathlib import Path

import httpx
import pytest

from lead_autopilot.crawl.fetcher import Fetcher
from lead_autopilot.lifecycle.state_machine import LifecycleStateMachine
from lead_autopilot.normalize.identity import identity_key
from lead_autopilot.queue.job_store import JobStore
from lead_autopilot.queue.registry import QueueManager
from lead_autopilot.sources.base import LeadCandidate
from lead_autopilot.storage.lead_store import LeadStore
from lead_autopilot.storage.models import create_database_session

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, start=datetime(2024, 3, 4, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeAdapter:
    """In-memory listing source."""

    def __init__(self, source_id, candidates=None, error=None, delay=0.0):
        self.source_id = source_id
        self.candidates = list(candidates or [])
        self.error = error
        self.delay = delay
        self.calls = []

    def search(self, term, location, max_results):
        self.calls.append((term, location, max_results))
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        for candidate in self.candidates[:max_results]:
            yield candidate


def candidate(name, address="", source="yellow_pages", **fields):
    return LeadCandidate(name=name, address=address, source=source, **fields)


def make_lead(store, name="ABC Plumbing", address="1 Main St", **fields):
    name_key, address_key = identity_key(name, address)
    values = {
        "company_name": name,
        "name_key": name_key,
        "address_key": address_key,
        "address": address,
        "data_source": "yellow_pages",
    }
    values.update(fields)
    lead, _ = store.create_lead(**values)
    return lead


def make_fetcher(handler):
    """Fetcher over an httpx.MockTransport, without retries or rate-limit waits."""
    config = {
        "http": {"max_retries": 0},
        "rate_limits": {"default": {"max_requests": 1000, "window_seconds": 1, "min_interval_seconds": 0}},
    }
    return Fetcher(config, transport=httpx.MockTransport(handler))


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    # Keep real credentials out of tests
    for key in ("DATABASE_URL", "SENDGRID_API_KEY", "YELP_API_KEY", "MAILGUN_SIGNING_KEY",
                "AUTO_EMAIL_THRESHOLD", "ENABLE_CRON", "TARGET_INDUSTRIES", "TARGET_LOCATIONS"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory(tmp_path):
    return create_database_session(f"sqlite:///{tmp_path / 'test.db'}")


@pytest.fixture
def store(session_factory):
    return LeadStore(session_factory)


@pytest.fixture
def job_store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def queues(job_store, clock):
    return QueueManager(job_store, clock=clock)


@pytest.fixture
def state_machine(store, queues, clock):
    return LifecycleStateMachine(store, queues, {"safety_delay_seconds": 300}, clock=clock)
