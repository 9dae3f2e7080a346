"""Inbound transport webhooks: authenticate, parse, resolve to a lead.

Everything after resolution goes through
``LifecycleStateMachine.apply_engagement_event``.
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import structlog

from .lifecycle.events import EngagementEvent, EventOutcome
from .lifecycle.state_machine import LifecycleStateMachine
from .storage.lead_store import LeadStore
from .storage.models import EngagementKind

logger = structlog.get_logger()

SENDGRID_KINDS = {
    "delivered": EngagementKind.DELIVERED,
    "open": EngagementKind.OPENED,
    "click": EngagementKind.CLICKED,
    "bounce": EngagementKind.BOUNCED,
    "dropped": EngagementKind.BOUNCED,
    "spamreport": EngagementKind.COMPLAINED,
    "spam_report": EngagementKind.COMPLAINED,
}

MAILGUN_KINDS = {
    "delivered": EngagementKind.DELIVERED,
    "opened": EngagementKind.OPENED,
    "clicked": EngagementKind.CLICKED,
    "bounced": EngagementKind.BOUNCED,
    "failed": EngagementKind.BOUNCED,
    "complained": EngagementKind.COMPLAINED,
}


class WebhookAuthError(Exception):
    """Webhook signature missing or invalid."""
    pass


@dataclass
class TransportEvent:
    """Parsed webhook event, not yet resolved to a lead."""

    kind: EngagementKind
    message_id: Optional[str]
    occurred_at: datetime
    url: Optional[str] = None
    event_id: Optional[str] = None
    lead_hint: Optional[int] = None  # lead_id custom arg, when the transport echoes it


def _from_unix(value) -> datetime:
    return datetime.fromtimestamp(int(float(value)), tz=timezone.utc).replace(tzinfo=None)


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_sendgrid(events: Iterable[Dict]) -> List[TransportEvent]:
    """
    Parse a SendGrid event webhook batch.

    SendGrid's ``sg_message_id`` is the send-time ``X-Message-Id`` plus a
    ``.filter...`` suffix; only the prefix identifies the message.
    """
    parsed = []
    for raw in events:
        kind = SENDGRID_KINDS.get(raw.get("event"))
        if kind is None:
            logger.debug("Unhandled SendGrid event type", event_type=raw.get("event"))
            continue
        if raw.get("timestamp") is None:
            logger.warning("SendGrid event without timestamp skipped", event_type=raw.get("event"))
            continue
        sg_message_id = raw.get("sg_message_id")
        parsed.append(TransportEvent(
            kind=kind,
            message_id=sg_message_id.split(".")[0] if sg_message_id else None,
            occurred_at=_from_unix(raw["timestamp"]),
            url=raw.get("url"),
            event_id=raw.get("sg_event_id"),
            lead_hint=_int_or_none(raw.get("lead_id")),
        ))
    return parsed


def verify_mailgun_signature(signing_key: str, timestamp: str, token: str, signature: str) -> bool:
    """HMAC-SHA256 of ``timestamp + token`` with the webhook signing key."""
    if not (signing_key and timestamp and token and signature):
        return False
    digest = hmac.new(signing_key.encode("utf-8"), f"{timestamp}{token}".encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature)


def parse_mailgun(form: Dict, signing_key: Optional[str] = None) -> Optional[TransportEvent]:
    """
    Parse a legacy (form-encoded) Mailgun webhook.

    Raises:
        WebhookAuthError: A signing key is configured and the signature does not match
    """
    if signing_key and not verify_mailgun_signature(
        signing_key, form.get("timestamp"), form.get("token"), form.get("signature")
    ):
        raise WebhookAuthError("Invalid Mailgun webhook signature")

    kind = MAILGUN_KINDS.get(form.get("event"))
    if kind is None:
        logger.debug("Unhandled Mailgun event type", event_type=form.get("event"))
        return None
    if form.get("timestamp") is None:
        logger.warning("Mailgun event without timestamp skipped", event_type=form.get("event"))
        return None

    message_id = (form.get("message-id") or form.get("Message-Id") or "").strip("<> ") or None
    return TransportEvent(
        kind=kind,
        message_id=message_id,
        occurred_at=_from_unix(form["timestamp"]),
        url=form.get("url"),
        lead_hint=_int_or_none(form.get("lead_id")),
    )


class WebhookProcessor:
    """Resolves parsed transport events to leads and applies them."""

    def __init__(self, store: LeadStore, state_machine: LifecycleStateMachine, mailgun_signing_key: Optional[str] = None):
        self.store = store
        self.state_machine = state_machine
        self.mailgun_signing_key = mailgun_signing_key
        self.log = logger.bind(component="webhooks")

    def resolve(self, event: TransportEvent) -> Optional[EngagementEvent]:
        lead_id = None
        if event.message_id:
            message = self.store.find_message(event.message_id)
            if message is not None:
                lead_id = message.lead_id
        if lead_id is None:
            lead_id = event.lead_hint
        if lead_id is None:
            self.log.warning("Message not found for transport event", message_id=event.message_id, kind=event.kind.value)
            return None
        return EngagementEvent(
            lead_id=lead_id,
            kind=event.kind,
            occurred_at=event.occurred_at,
            url=event.url,
            message_id=event.message_id,
            event_id=event.event_id,
        )

    def apply(self, event: TransportEvent) -> Optional[EventOutcome]:
        resolved = self.resolve(event)
        if resolved is None:
            return None
        return self.state_machine.apply_engagement_event(resolved)

    def handle_sendgrid(self, events: List[Dict]) -> Dict[str, int]:
        """
        Process a SendGrid batch.

        Returns:
            Counts per outcome (applied / duplicate / unknown_lead / unresolved)
        """
        if not isinstance(events, list):
            raise ValueError("SendGrid webhook payload must be a JSON array")
        summary = {"received": len(events), "unresolved": 0}
        for event in parse_sendgrid(events):
            outcome = self.apply(event)
            key = outcome.value if outcome else "unresolved"
            summary[key] = summary.get(key, 0) + 1
        self.log.info("SendGrid webhook processed", **summary)
        return summary

    def handle_mailgun(self, form: Dict) -> Optional[EventOutcome]:
        event = parse_mailgun(form, self.mailgun_signing_key)
        if event is None:
            return None
        outcome = self.apply(event)
        self.log.info("Mailgun webhook processed", kind=event.kind.value, outcome=outcome.value if outcome else "unresolved")
        return outcome
