"""CLI interface for Lead Autopilot."""

import json
import logging
import signal
import sys
import threading
from datetime import datetime

import click
import structlog
from dotenv import load_dotenv

from . import job_types
from .config import load_settings
from .lifecycle.events import EngagementEvent
from .pipeline import Pipeline
from .queue.registry import SCORING, SCRAPING
from .storage.models import EngagementKind, create_database_session, utcnow

# Load environment variables
load_dotenv()

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def _pipeline(ctx) -> Pipeline:
    return Pipeline(load_settings(ctx.obj["config_dir"]))


@click.group()
@click.version_option(version="0.1.0")
@click.option("--config-dir", type=click.Path(exists=True, file_okay=False), default="config", help="Config directory path")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False), default="INFO")
@click.pass_context
def main(ctx, config_dir: str, log_level: str):
    """Lead Autopilot - lead acquisition, scoring and engagement-aware outreach."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, log_level.upper()))
    ctx.ensure_object(dict)
    ctx.obj["config_dir"] = config_dir


@main.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create database tables."""
    settings = load_settings(ctx.obj["config_dir"])
    create_database_session(settings.database_url)
    click.echo(f"Database ready: {settings.database_url}")


@main.command()
@click.option("--no-cron", is_flag=True, help="Run queue workers without the trigger scheduler")
@click.pass_context
def worker(ctx, no_cron: bool):
    """Run queue workers and recurring triggers until interrupted."""
    log = logger.bind(correlation_id="worker")
    pipeline = _pipeline(ctx)
    if no_cron:
        pipeline.scheduler.enabled = False

    stop = threading.Event()

    def _shutdown(signum, frame):
        log.info("Shutdown signal received", signal=signum)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    pipeline.start()
    log.info("Worker running", queues=list(pipeline.queues.queues), cron_enabled=pipeline.scheduler.enabled)
    try:
        stop.wait()
    finally:
        pipeline.stop(timeout=30)
        pipeline.close()


@main.command()
@click.option("--industry", "industries", multiple=True, help="Industry to scrape (repeatable)")
@click.option("--location", "locations", multiple=True, help="Location to scrape (repeatable)")
@click.option("--max-leads", type=int, default=None, help="Maximum leads per industry and location")
@click.option("--priority", type=int, default=1, help="Job priority (lower runs sooner)")
@click.pass_context
def scrape(ctx, industries, locations, max_leads, priority):
    """Enqueue a one-off scrape job."""
    log = logger.bind(correlation_id="scrape")
    pipeline = _pipeline(ctx)
    targets = pipeline.settings.targets
    payload = {
        "industries": list(industries) or targets.get("industries", []),
        "locations": list(locations) or targets.get("locations", []),
        "max_leads_per_industry": max_leads or targets.get("max_leads_per_industry", 50),
    }
    if not payload["industries"] or not payload["locations"]:
        click.echo("Error: no industries or locations given and none configured")
        sys.exit(1)

    job = pipeline.queues.enqueue(SCRAPING, job_types.SCRAPE, payload, priority=priority)
    log.info("Scrape job enqueued", job_id=job.id, **payload)
    click.echo(f"Scrape job {job.id} enqueued")


@main.command("score-unscored")
@click.option("--limit", type=int, default=None, help="Maximum leads to score")
@click.pass_context
def score_unscored(ctx, limit):
    """Enqueue a scoring sweep for never-scored leads."""
    pipeline = _pipeline(ctx)
    job = pipeline.queues.enqueue(SCORING, job_types.SCORE_UNSCORED, {"limit": limit})
    click.echo(f"Scoring sweep job {job.id} enqueued")


@main.command("cancel-job")
@click.argument("job_id", type=int)
@click.pass_context
def cancel_job(ctx, job_id: int):
    """Cancel a pending job by id."""
    pipeline = _pipeline(ctx)
    if pipeline.queues.cancel(job_id):
        click.echo(f"Job {job_id} cancelled")
    else:
        click.echo(f"Job {job_id} not cancelled (unknown, running or finished)")
        sys.exit(1)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def status(ctx, as_json: bool):
    """Show queue counts, last trigger times and health."""
    pipeline = _pipeline(ctx)
    report = {
        "queues": pipeline.queues.stats(),
        "triggers": {
            name: value.isoformat() if value else None
            for name, value in pipeline.scheduler.last_fired().items()
        },
        "health": pipeline.health.summary(),
    }
    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
        return

    click.echo(f"Health: {report['health']['status']}")
    for alert in report["health"]["alerts"]:
        click.echo(f"  ! {alert['component']}: {alert['message']}")
    click.echo("\nQueues:")
    for name, counts in report["queues"].items():
        click.echo(
            f"  {name:<12} waiting={counts['waiting']} active={counts['active']} delayed={counts['delayed']} "
            f"completed={counts['completed']} failed={counts['failed']}"
        )
    click.echo("\nTriggers (last fired):")
    for name, fired in report["triggers"].items():
        click.echo(f"  {name:<20} {fired or 'never'}")


@main.command("apply-event")
@click.argument("lead_id", type=int)
@click.argument("kind", type=click.Choice([kind.value for kind in EngagementKind]))
@click.option("--at", "occurred_at", type=click.DateTime(), default=None, help="Event time (UTC), default now")
@click.option("--url", default=None, help="Clicked URL")
@click.option("--event-id", default=None, help="Transport event id")
@click.pass_context
def apply_event(ctx, lead_id: int, kind: str, occurred_at: datetime, url: str, event_id: str):
    """Apply an engagement event to a lead (replays, manual testing)."""
    pipeline = _pipeline(ctx)
    event = EngagementEvent(
        lead_id=lead_id,
        kind=EngagementKind(kind),
        occurred_at=occurred_at or utcnow().replace(microsecond=0),
        url=url,
        event_id=event_id,
    )
    outcome = pipeline.state_machine.apply_engagement_event(event)
    click.echo(f"{kind} event for lead {lead_id}: {outcome.value}")


@main.command("ingest-events")
@click.argument("events_file", type=click.File("r"))
@click.pass_context
def ingest_events(ctx, events_file):
    """Apply a SendGrid event webhook payload (JSON array) from a file or '-'."""
    pipeline = _pipeline(ctx)
    try:
        events = json.load(events_file)
    except ValueError as e:
        click.echo(f"Error: invalid JSON: {e}")
        sys.exit(1)
    if not isinstance(events, list):
        events = [events]
    summary = pipeline.webhooks.handle_sendgrid(events)
    click.echo(json.dumps(summary))


@main.command("run-pending")
@click.option("--queue", "queue_names", multiple=True, help="Queue to drain (repeatable, default all)")
@click.option("--max-jobs", type=int, default=None, help="Maximum jobs per queue")
@click.pass_context
def run_pending(ctx, queue_names, max_jobs):
    """Run every currently eligible job in the foreground, then exit."""
    log = logger.bind(correlation_id="run-pending")
    pipeline = _pipeline(ctx)
    try:
        outcomes = pipeline.queues.run_pending(list(queue_names) or None, max_jobs)
    except KeyError as e:
        log.error("Unknown queue", error=str(e))
        click.echo(f"Error: {e}")
        sys.exit(1)
    finally:
        pipeline.close()

    for name, results in outcomes.items():
        if not results:
            continue
        by_status = {}
        for outcome in results:
            by_status[outcome.status.value] = by_status.get(outcome.status.value, 0) + 1
        click.echo(f"{name}: " + ", ".join(f"{status}={count}" for status, count in sorted(by_status.items())))


if __name__ == "__main__":
    main()
