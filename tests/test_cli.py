import json

import pytest
from click.testing import CliRunner

from lead_autopilot.cli import main
from tests.conftest import CONFIG_DIR


@pytest.fixture
def invoke(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(main, ["--config-dir", str(CONFIG_DIR), *args])
    return _invoke


def json_block(output):
    """Pretty-printed JSON report, skipping any log lines around it."""
    report, _ = json.JSONDecoder().raw_decode(output, output.index("{\n"))
    return report


def test_init_db(invoke, tmp_path):
    result = invoke("init-db")

    assert result.exit_code == 0
    assert "Database ready: sqlite:///" in result.output
    assert (tmp_path / "cli.db").exists()


def test_scrape_then_cancel(invoke):
    result = invoke("scrape", "--industry", "HVAC", "--location", "Austin, TX", "--max-leads", "5")
    assert result.exit_code == 0
    assert "Scrape job 1 enqueued" in result.output

    result = invoke("cancel-job", "1")
    assert result.exit_code == 0
    assert "Job 1 cancelled" in result.output

    result = invoke("cancel-job", "1")
    assert result.exit_code == 1
    assert "not cancelled" in result.output


def test_scrape_without_targets(invoke, tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    for name in ("runtime.yaml", "schedule.yaml", "scoring.yaml"):
        text = (CONFIG_DIR / name).read_text()
        if name == "runtime.yaml":
            text = text.split("\ntargets:")[0] + "\n"
        (config_dir / name).write_text(text)

    result = CliRunner().invoke(main, ["--config-dir", str(config_dir), "scrape"])

    assert result.exit_code == 1
    assert "no industries or locations" in result.output


def test_status_json(invoke):
    invoke("scrape")

    result = invoke("status", "--json")

    assert result.exit_code == 0
    report = json_block(result.output)
    assert report["queues"]["scraping"]["waiting"] == 1
    assert report["triggers"]["daily-scrape"] is None
    assert report["health"]["status"] == "degraded"


def test_status_text(invoke):
    result = invoke("status")

    assert result.exit_code == 0
    assert "Health: degraded" in result.output
    assert "No scraping jobs found" in result.output
    assert "daily-scrape" in result.output


def test_apply_event_unknown_lead(invoke):
    result = invoke("apply-event", "999", "opened", "--at", "2024-03-05 10:00:00")

    assert result.exit_code == 0
    assert "opened event for lead 999: unknown_lead" in result.output


def test_apply_event_rejects_unknown_kind(invoke):
    result = invoke("apply-event", "1", "forwarded")

    assert result.exit_code == 2


def test_ingest_events(invoke, tmp_path):
    events_file = tmp_path / "events.json"
    events_file.write_text(json.dumps([
        {"event": "open", "timestamp": 1709632800, "sg_message_id": "nope.filter"},
        {"event": "processed", "timestamp": 1709632800},
    ]))

    result = invoke("ingest-events", str(events_file))

    assert result.exit_code == 0
    assert '"received": 2' in result.output
    assert '"unresolved": 1' in result.output


def test_run_pending(invoke):
    invoke("score-unscored", "--limit", "10")

    result = invoke("run-pending", "--queue", "scoring")

    assert result.exit_code == 0
    assert "scoring: completed=1" in result.output


def test_run_pending_unknown_queue(invoke):
    result = invoke("run-pending", "--queue", "nope")

    assert result.exit_code == 1
    assert "Error" in result.output
