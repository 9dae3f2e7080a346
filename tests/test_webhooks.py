import hashlib
import hmac
from datetime import datetime

import pytest

from lead_autopilot.lifecycle.events import EventOutcome
from lead_autopilot.storage.models import EngagementKind, LeadStatus
from lead_autopilot.webhooks import (
    WebhookAuthError,
    WebhookProcessor,
    parse_mailgun,
    parse_sendgrid,
    verify_mailgun_signature,
)
from tests.conftest import make_lead

# 2024-03-05 10:00:00 UTC
TIMESTAMP = 1709632800
SIGNING_KEY = "key-test"


def sign(timestamp, token, key=SIGNING_KEY):
    return hmac.new(key.encode(), f"{timestamp}{token}".encode(), hashlib.sha256).hexdigest()


def mailgun_form(event, message_id="msg-1", **fields):
    form = {
        "event": event,
        "timestamp": str(TIMESTAMP),
        "token": "tok",
        "signature": sign(TIMESTAMP, "tok"),
        "message-id": f"<{message_id}>",
    }
    form.update(fields)
    return form


@pytest.fixture
def sent_lead(store, state_machine):
    lead = make_lead(store, email="owner@abcplumbing.com", lead_score=92)
    state_machine.on_sent(lead.id, "msg-1", "intro", "owner@abcplumbing.com", "Hello")
    return lead


@pytest.fixture
def processor(store, state_machine):
    return WebhookProcessor(store, state_machine, mailgun_signing_key=SIGNING_KEY)


class TestParseSendgrid:
    def test_maps_event_types(self):
        events = parse_sendgrid([
            {"event": "delivered", "timestamp": TIMESTAMP, "sg_message_id": "msg-1.filter0001.123", "sg_event_id": "e1"},
            {"event": "click", "timestamp": TIMESTAMP, "sg_message_id": "msg-1.filter0001.123", "url": "https://x.com"},
            {"event": "spamreport", "timestamp": TIMESTAMP, "sg_message_id": "msg-1"},
        ])

        assert [e.kind for e in events] == [EngagementKind.DELIVERED, EngagementKind.CLICKED, EngagementKind.COMPLAINED]
        assert events[0].message_id == "msg-1"
        assert events[0].event_id == "e1"
        assert events[0].occurred_at == datetime(2024, 3, 5, 10, 0)
        assert events[1].url == "https://x.com"

    def test_skips_unhandled_and_incomplete_events(self):
        events = parse_sendgrid([
            {"event": "processed", "timestamp": TIMESTAMP, "sg_message_id": "msg-1"},
            {"event": "open", "sg_message_id": "msg-1"},
        ])

        assert events == []

    def test_lead_hint(self):
        events = parse_sendgrid([{"event": "open", "timestamp": TIMESTAMP, "lead_id": "42"}])

        assert events[0].lead_hint == 42
        assert events[0].message_id is None


class TestMailgun:
    def test_verify_signature(self):
        assert verify_mailgun_signature(SIGNING_KEY, str(TIMESTAMP), "tok", sign(TIMESTAMP, "tok")) is True
        assert verify_mailgun_signature(SIGNING_KEY, str(TIMESTAMP), "tok", "bad") is False
        assert verify_mailgun_signature(SIGNING_KEY, None, "tok", "bad") is False

    def test_parse(self):
        event = parse_mailgun(mailgun_form("opened"), SIGNING_KEY)

        assert event.kind == EngagementKind.OPENED
        assert event.message_id == "msg-1"
        assert event.occurred_at == datetime(2024, 3, 5, 10, 0)

    def test_bad_signature_rejected(self):
        with pytest.raises(WebhookAuthError):
            parse_mailgun(mailgun_form("opened", signature="0" * 64), SIGNING_KEY)

    def test_unsigned_without_key(self):
        form = mailgun_form("bounced")
        del form["signature"]

        assert parse_mailgun(form).kind == EngagementKind.BOUNCED

    def test_unhandled_event(self):
        assert parse_mailgun(mailgun_form("unsubscribed"), SIGNING_KEY) is None


class TestWebhookProcessor:
    def test_sendgrid_batch(self, store, processor, sent_lead):
        summary = processor.handle_sendgrid([
            {"event": "processed", "timestamp": TIMESTAMP, "sg_message_id": "msg-1.f"},
            {"event": "open", "timestamp": TIMESTAMP, "sg_message_id": "msg-1.f", "sg_event_id": "e1"},
            {"event": "open", "timestamp": TIMESTAMP, "sg_message_id": "msg-1.f", "sg_event_id": "e1"},
            {"event": "open", "timestamp": TIMESTAMP, "sg_message_id": "unknown.f"},
        ])

        assert summary == {"received": 4, "unresolved": 1, "applied": 1, "duplicate": 1}
        lead = store.get_lead(sent_lead.id)
        assert lead.status == LeadStatus.QUALIFIED
        assert lead.engagement_score == 5

    def test_sendgrid_requires_list(self, processor):
        with pytest.raises(ValueError):
            processor.handle_sendgrid({"event": "open"})

    def test_lead_hint_used_when_message_unknown(self, store, processor):
        lead = make_lead(store, email="owner@abcplumbing.com")

        summary = processor.handle_sendgrid([
            {"event": "delivered", "timestamp": TIMESTAMP, "lead_id": lead.id},
        ])

        assert summary["applied"] == 1
        assert store.get_lead(lead.id).status == LeadStatus.CONTACTED

    def test_hint_for_missing_lead(self, processor):
        summary = processor.handle_sendgrid([{"event": "open", "timestamp": TIMESTAMP, "lead_id": 999}])

        assert summary == {"received": 1, "unresolved": 0, "unknown_lead": 1}

    def test_mailgun_bounce(self, store, processor, sent_lead):
        outcome = processor.handle_mailgun(mailgun_form("bounced"))

        assert outcome == EventOutcome.APPLIED
        assert store.get_lead(sent_lead.id).status == LeadStatus.LOST

    def test_mailgun_bad_signature(self, processor, sent_lead):
        with pytest.raises(WebhookAuthError):
            processor.handle_mailgun(mailgun_form("clicked", token="other"))
