"""Builds the pipeline components from settings."""

import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog

from .config import Settings
from .crawl.fetcher import Fetcher
from .crawl.rate_limiter import RateLimiterRegistry
from .enrich.probe import EnrichmentProbe
from .lifecycle.state_machine import LifecycleStateMachine
from .monitoring.health import HealthMonitor
from .orchestrator import ScrapeOrchestrator
from .outreach.transport import Transport, create_transport
from .queue.job_store import JobStore
from .queue.registry import QueueManager
from .scheduler.triggers import Scheduler, TriggerSpec, TriggerStateStore
from .score.scoring import ScoringEngine
from .sources.base import SourceAdapter
from .sources.google_maps import GoogleMapsAdapter
from .sources.yellow_pages import YellowPagesAdapter
from .sources.yelp import YelpAdapter
from .storage.lead_store import LeadStore
from .storage.models import create_database_session, utcnow
from .webhooks import WebhookProcessor
from .workers.handlers import JobHandlers

logger = structlog.get_logger()

ADAPTERS = {
    YellowPagesAdapter.source_id: YellowPagesAdapter,
    YelpAdapter.source_id: YelpAdapter,
    GoogleMapsAdapter.source_id: GoogleMapsAdapter,
}
DEFAULT_SOURCES = [YellowPagesAdapter.source_id, YelpAdapter.source_id, GoogleMapsAdapter.source_id]


def build_adapters(fetcher: Fetcher, orchestrator_config: Dict, secrets: Dict) -> List[SourceAdapter]:
    """Adapters in the configured declaration order."""
    settings = orchestrator_config.get("source_settings") or {}
    adapters = []
    for source_id in orchestrator_config.get("sources") or DEFAULT_SOURCES:
        adapter_cls = ADAPTERS.get(source_id)
        if adapter_cls is None:
            raise ValueError(f"Unknown source: {source_id}")
        if adapter_cls is YelpAdapter:
            adapters.append(YelpAdapter(fetcher, settings.get(source_id), api_key=secrets.get("YELP_API_KEY") or ""))
        else:
            adapters.append(adapter_cls(fetcher, settings.get(source_id)))
    return adapters


class Pipeline:
    """Every long-lived component, wired together."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[Transport] = None,
        adapters: Optional[List[SourceAdapter]] = None,
        fetcher: Optional[Fetcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.correlation_id = str(uuid.uuid4())
        self.log = logger.bind(correlation_id=self.correlation_id)
        runtime = settings.runtime

        database_url = settings.database_url
        if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
            Path(database_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        self.session_factory = create_database_session(database_url)
        self.store = LeadStore(self.session_factory)

        self.job_store = JobStore(self.session_factory)
        self.queues = QueueManager(self.job_store, runtime.get("queues"), clock=clock)

        self.rate_limiters = RateLimiterRegistry(runtime.get("rate_limits"))
        self.fetcher = fetcher or Fetcher(runtime, rate_limiters=self.rate_limiters)
        orchestrator_config = runtime.get("orchestrator") or {}
        self.probe = EnrichmentProbe(self.fetcher, runtime.get("probe"))
        self.adapters = adapters if adapters is not None else build_adapters(self.fetcher, orchestrator_config, settings.secrets)
        self.orchestrator = ScrapeOrchestrator(self.adapters, self.store, self.probe, self.queues, orchestrator_config)

        self.scoring = ScoringEngine(settings.scoring)
        self.state_machine = LifecycleStateMachine(self.store, self.queues, settings.lifecycle, clock=clock)
        self.transport = transport or create_transport(runtime.get("transport"), settings.secrets)
        self.webhooks = WebhookProcessor(self.store, self.state_machine, settings.secrets.get("MAILGUN_SIGNING_KEY"))

        schedule = settings.schedule
        self.scheduler = Scheduler(
            self.queues,
            TriggerStateStore(self.session_factory),
            [TriggerSpec.from_config(trigger) for trigger in schedule.get("triggers") or []],
            timezone=schedule.get("timezone", "UTC"),
            enabled=schedule.get("enabled", True),
            clock=clock,
            poll_interval_seconds=float(schedule.get("poll_interval_seconds", 30)),
        )
        self.health = HealthMonitor(self.store, self.queues, self.scheduler, clock=clock)

        self.handlers = JobHandlers(
            store=self.store,
            queues=self.queues,
            state_machine=self.state_machine,
            scoring=self.scoring,
            transport=self.transport,
            orchestrator=self.orchestrator,
            probe=self.probe,
            health=self.health,
            targets=settings.targets,
            sender_name=settings.secrets.get("FROM_NAME"),
        )
        self.queues.register_all(self.handlers.registry())
        self.log.info("Pipeline initialized", database=database_url.split("://")[0], sources=[a.source_id for a in self.adapters])

    def start(self):
        """Start queue workers and the trigger scheduler."""
        self.queues.start()
        self.scheduler.start()
        self.log.info("Pipeline started", cron_enabled=self.scheduler.enabled)

    def stop(self, timeout: Optional[float] = None):
        self.scheduler.stop(timeout)
        self.queues.stop(timeout)
        self.log.info("Pipeline stopped")

    def close(self):
        self.fetcher.close()
        self.transport.close()
