import httpx
import pytest

from lead_autopilot import job_types
from lead_autopilot.config import load_settings
from lead_autopilot.outreach.transport import LoggingTransport
from lead_autopilot.pipeline import Pipeline, build_adapters
from lead_autopilot.queue.registry import SCORING, SCRAPING
from lead_autopilot.sources.google_maps import GoogleMapsAdapter
from lead_autopilot.sources.yellow_pages import YellowPagesAdapter
from lead_autopilot.sources.yelp import YelpAdapter
from tests.conftest import CONFIG_DIR, FakeAdapter, candidate, make_fetcher


def offline(request):
    return httpx.Response(503)


@pytest.fixture
def pipeline(tmp_path, clock):
    settings = load_settings(CONFIG_DIR, env={"DATABASE_URL": f"sqlite:///{tmp_path / 'pipeline.db'}"})
    adapters = [
        FakeAdapter("yellow_pages", [candidate("ABC Plumbing", "1 Main St", phone="(512) 555-0100")]),
        FakeAdapter("yelp", [candidate("ABC Plumbing", "1 Main St", source="yelp")]),
    ]
    pipeline = Pipeline(settings, transport=LoggingTransport(), adapters=adapters, fetcher=make_fetcher(offline), clock=clock)
    yield pipeline
    pipeline.close()


def test_build_adapters_in_declaration_order():
    adapters = build_adapters(make_fetcher(offline), {"sources": ["yelp", "yellow_pages"]}, {})

    assert [type(a) for a in adapters] == [YelpAdapter, YellowPagesAdapter]
    assert [type(a) for a in build_adapters(make_fetcher(offline), {}, {})] == [
        YellowPagesAdapter, YelpAdapter, GoogleMapsAdapter,
    ]
    with pytest.raises(ValueError):
        build_adapters(make_fetcher(offline), {"sources": ["craigslist"]}, {})


def test_scrape_and_score_flow(pipeline):
    pipeline.queues.enqueue(SCRAPING, job_types.SCRAPE, {"industries": ["PLUMBING"], "locations": ["Austin, TX"]})

    [scrape] = pipeline.queues.run_pending([SCRAPING])[SCRAPING]
    assert scrape.result["leads_created"] == 1
    assert scrape.result["candidates_found"] == 2

    [score] = pipeline.queues.run_pending([SCORING])[SCORING]
    lead = pipeline.store.get_lead(score.result["lead_id"])
    assert lead.lead_score == score.result["lead_score"]
    assert lead.tier == score.result["tier"]
    assert lead.phone == "(512) 555-0100"


def test_scheduler_seeded_from_config(pipeline, clock):
    assert pipeline.scheduler.tick() == []

    last_fired = pipeline.scheduler.last_fired()
    assert len(last_fired) == 6
    assert set(last_fired.values()) == {clock()}


def test_health_after_successful_scrape(pipeline):
    pipeline.queues.enqueue(SCRAPING, job_types.SCRAPE, {})
    pipeline.queues.run_pending([SCRAPING])

    assert pipeline.health.summary()["status"] == "healthy"


def test_start_and_stop(pipeline):
    pipeline.start()
    pipeline.stop(timeout=5)

    assert pipeline.scheduler._thread is None
