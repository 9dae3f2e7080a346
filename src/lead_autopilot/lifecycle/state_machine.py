"""Lead lifecycle: auto-contact, engagement transitions, follow-up sequence.

Status moves forward only:

    new -> contacted -> qualified -> converted | lost

``qualified`` is reachable straight from ``new`` or ``contacted`` on strong
engagement, and ``lost`` from any non-terminal status on bounce/complaint.
Every status or engagement change goes through ``LeadStore.apply_update``
(version check) while holding the lead's in-process lock.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from .. import job_types
from ..queue.registry import EMAIL, ENRICHMENT, FOLLOWUP, QueueManager
from ..storage.lead_store import LeadStore, UpdateOutcome
from ..storage.models import EngagementKind, Lead, LeadStatus, utcnow
from .events import EngagementEvent, EventOutcome

logger = structlog.get_logger()

TERMINAL_STATUSES = (LeadStatus.CONVERTED, LeadStatus.LOST)
# Statuses at which automated follow-ups stop
FOLLOWUP_STOP_STATUSES = (LeadStatus.QUALIFIED, LeadStatus.CONVERTED, LeadStatus.LOST)

INTRO_TEMPLATE = "intro"
DEFAULT_FOLLOWUPS = [(3, "followup-1"), (7, "followup-2"), (14, "case-study")]

MAX_UPDATE_ATTEMPTS = 5


@dataclass
class LifecycleConfig:
    auto_contact_threshold: int = 80
    safety_delay_seconds: int = 300
    followups: List[Tuple[int, str]] = field(default_factory=lambda: list(DEFAULT_FOLLOWUPS))
    open_increment: int = 5
    click_increment: int = 10
    intro_priority: int = 2
    followup_priority: int = 6
    enrichment_priority: int = 7

    @classmethod
    def from_config(cls, config: Optional[Dict]) -> "LifecycleConfig":
        config = config or {}
        defaults = cls()
        followups = defaults.followups
        if config.get("followup_days"):
            templates = config.get("followup_templates") or [t for _, t in DEFAULT_FOLLOWUPS]
            followups = list(zip(config["followup_days"], templates))
        return cls(
            auto_contact_threshold=int(config.get("auto_contact_threshold", defaults.auto_contact_threshold)),
            safety_delay_seconds=int(config.get("safety_delay_seconds", defaults.safety_delay_seconds)),
            followups=followups,
            open_increment=int(config.get("open_increment", defaults.open_increment)),
            click_increment=int(config.get("click_increment", defaults.click_increment)),
            intro_priority=int(config.get("intro_priority", defaults.intro_priority)),
            followup_priority=int(config.get("followup_priority", defaults.followup_priority)),
            enrichment_priority=int(config.get("enrichment_priority", defaults.enrichment_priority)),
        )


@dataclass
class Transition:
    """Changes one engagement event makes to a lead, plus follow-on work."""

    changes: Dict = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)
    cancel_followups: bool = False
    cancel_outreach: bool = False
    refresh_enrichment: bool = False


def plan_transition(lead: Lead, event: EngagementEvent, config: LifecycleConfig) -> Transition:
    """Pure transition function for an engagement event."""
    plan = Transition()
    status = lead.status
    kind = event.kind

    if kind == EngagementKind.DELIVERED:
        if status == LeadStatus.NEW:
            plan.changes["status"] = LeadStatus.CONTACTED
            plan.notes.append("Email delivered")
        if lead.contacted_at is None:
            plan.changes["contacted_at"] = event.occurred_at

    elif kind in (EngagementKind.OPENED, EngagementKind.CLICKED):
        increment = config.open_increment if kind == EngagementKind.OPENED else config.click_increment
        plan.changes["engagement_score"] = min((lead.engagement_score or 0) + increment, 100)
        plan.changes["last_engaged_at"] = event.occurred_at

        if kind == EngagementKind.OPENED:
            plan.notes.append("Email opened")
            if lead.first_opened_at is None:
                plan.changes["first_opened_at"] = event.occurred_at
                plan.refresh_enrichment = True
                if status in (LeadStatus.NEW, LeadStatus.CONTACTED):
                    plan.changes["status"] = LeadStatus.QUALIFIED
                    plan.notes.append("Opened first email")
        else:
            plan.notes.append(f"Clicked link: {event.url}" if event.url else "Clicked email link")
            if status in (LeadStatus.NEW, LeadStatus.CONTACTED):
                plan.changes["status"] = LeadStatus.QUALIFIED
            plan.cancel_followups = True

    elif kind in (EngagementKind.BOUNCED, EngagementKind.COMPLAINED):
        if status not in TERMINAL_STATUSES:
            plan.changes["status"] = LeadStatus.LOST
            plan.notes.append("Email bounced" if kind == EngagementKind.BOUNCED else "Spam complaint")
        plan.cancel_followups = True
        plan.cancel_outreach = True

    return plan


class LifecycleStateMachine:
    """Owns lead status, engagement score and the follow-up sequence."""

    def __init__(
        self,
        store: LeadStore,
        queues: QueueManager,
        config: Optional[Dict] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.queues = queues
        self.config = LifecycleConfig.from_config(config)
        self.clock = clock
        self.log = logger.bind(component="lifecycle")
        self._locks: Dict[int, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock(self, lead_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks[lead_id]

    # Scoring -> outreach
    def on_scored(self, lead_id: int) -> bool:
        """
        Start outreach for a freshly scored lead when it qualifies.

        A lead qualifies when its score reaches the auto-contact threshold and it
        is ``new``, never contacted and has no outreach scheduled yet.

        Returns:
            True if the intro email and follow-up sequence were scheduled
        """
        log = self.log.bind(lead_id=lead_id)
        with self._lock(lead_id):
            for _ in range(MAX_UPDATE_ATTEMPTS):
                lead = self.store.get_lead(lead_id)
                if lead is None:
                    log.warning("Scored lead not found")
                    return False
                if not self._auto_contact_eligible(lead):
                    return False

                outcome = self.store.apply_update(
                    lead_id,
                    lead.version,
                    {"outreach_scheduled_at": self.clock()},
                    note=f"Auto-contact scheduled (score {lead.lead_score})",
                )
                if outcome == UpdateOutcome.APPLIED:
                    break
                log.debug("Lead changed concurrently, retrying", outcome=outcome.value)
            else:
                log.warning("Auto-contact gave up after repeated conflicts")
                return False

            # Engagement events for this lead wait until the jobs exist
            self._schedule_outreach(lead)
        return True

    def _auto_contact_eligible(self, lead: Lead) -> bool:
        return (
            lead.lead_score is not None
            and lead.lead_score >= self.config.auto_contact_threshold
            and lead.status == LeadStatus.NEW
            and lead.contacted_at is None
            and lead.outreach_scheduled_at is None
        )

    def _schedule_outreach(self, lead: Lead):
        group = str(lead.id)
        email_job = self.queues.enqueue(
            EMAIL,
            job_types.SEND_EMAIL,
            {"lead_id": lead.id, "template_type": INTRO_TEMPLATE},
            priority=self.config.intro_priority,
            delay_seconds=self.config.safety_delay_seconds,
            group_key=group,
        )
        followup_ids = []
        for days, template in self.config.followups:
            job = self.queues.enqueue(
                FOLLOWUP,
                job_types.FOLLOWUP,
                {"lead_id": lead.id, "template_type": template, "sequence": template},
                priority=self.config.followup_priority,
                delay_seconds=self.config.safety_delay_seconds + days * 86400,
                group_key=group,
            )
            followup_ids.append(job.id)
        self.log.info(
            "Auto-contact scheduled",
            lead_id=lead.id,
            score=lead.lead_score,
            email_job_id=email_job.id,
            followup_job_ids=followup_ids,
        )

    # Engagement events
    def apply_engagement_event(self, event: EngagementEvent) -> EventOutcome:
        """
        Apply one engagement event exactly once.

        The event is logged in the same transaction as the lead change, so a
        replay finds its dedupe key and changes nothing.
        """
        log = self.log.bind(lead_id=event.lead_id, kind=event.kind.value)
        with self._lock(event.lead_id):
            for _ in range(MAX_UPDATE_ATTEMPTS):
                lead = self.store.get_lead(event.lead_id)
                if lead is None:
                    # Retrying cannot fix an unknown lead
                    log.warning("Engagement event for unknown lead dropped", dedupe_key=event.dedupe_key)
                    return EventOutcome.UNKNOWN_LEAD

                plan = plan_transition(lead, event, self.config)
                outcome = self.store.apply_update(
                    lead.id,
                    lead.version,
                    plan.changes,
                    event=event.to_record(),
                    note="; ".join(plan.notes) or None,
                )
                if outcome == UpdateOutcome.DUPLICATE:
                    log.info("Duplicate engagement event ignored", dedupe_key=event.dedupe_key)
                    return EventOutcome.DUPLICATE
                if outcome == UpdateOutcome.APPLIED:
                    break
                log.debug("Lead changed concurrently, retrying")
            else:
                raise RuntimeError(f"Could not apply {event.kind.value} event to lead {event.lead_id}")

            if plan.cancel_followups:
                self.cancel_followups(lead.id)
            if plan.cancel_outreach:
                self.queues.cancel_group(str(lead.id), queue_name=EMAIL)

        new_status = plan.changes.get("status", lead.status)
        log.info(
            "Engagement event applied",
            status_from=lead.status.value,
            status_to=new_status.value,
            engagement_score=plan.changes.get("engagement_score", lead.engagement_score),
        )
        if event.kind == EngagementKind.CLICKED:
            log.info("Hot lead alert: lead is highly engaged", url=event.url)

        if plan.refresh_enrichment:
            self.queues.enqueue(
                ENRICHMENT,
                job_types.ENRICH_LEAD,
                {"lead_id": lead.id, "reason": "first_open"},
                priority=self.config.enrichment_priority,
                group_key=str(lead.id),
            )
        return EventOutcome.APPLIED

    def cancel_followups(self, lead_id: int) -> int:
        """Cancel pending follow-ups; already-dequeued ones are stopped by ``followup_allowed``."""
        return self.queues.cancel_group(str(lead_id), queue_name=FOLLOWUP)

    # Sending
    def intro_allowed(self, lead: Optional[Lead]) -> Tuple[bool, Optional[str]]:
        if lead is None:
            return False, "lead_not_found"
        if lead.status in TERMINAL_STATUSES:
            return False, f"lead_{lead.status.value}"
        if lead.contacted_at is not None:
            return False, "already_contacted"
        if not lead.email:
            return False, "no_email"
        return True, None

    def followup_allowed(self, lead: Optional[Lead]) -> Tuple[bool, Optional[str]]:
        """Status re-check run by every follow-up job before sending."""
        if lead is None:
            return False, "lead_not_found"
        if lead.status in FOLLOWUP_STOP_STATUSES:
            return False, f"lead_{lead.status.value}"
        if lead.contacted_at is None:
            return False, "never_contacted"
        if not lead.email:
            return False, "no_email"
        return True, None

    def on_sent(self, lead_id: int, message_id: str, template_type: str, recipient: str, subject: Optional[str] = None) -> bool:
        """Record a sent message (unless already recorded) and move a ``new`` lead to ``contacted``."""
        if self.store.find_message(message_id) is None:
            self.store.record_message(lead_id, message_id, template_type, recipient, subject)
        note = (
            f"Automated follow-up {template_type} sent"
            if template_type != INTRO_TEMPLATE
            else "Intro email sent"
        )

        with self._lock(lead_id):
            for _ in range(MAX_UPDATE_ATTEMPTS):
                lead = self.store.get_lead(lead_id)
                if lead is None:
                    self.log.warning("Sent message for unknown lead", lead_id=lead_id)
                    return False
                changes = {}
                if lead.status == LeadStatus.NEW:
                    changes["status"] = LeadStatus.CONTACTED
                if lead.contacted_at is None:
                    changes["contacted_at"] = self.clock()
                outcome = self.store.apply_update(lead_id, lead.version, changes, note=note)
                if outcome == UpdateOutcome.APPLIED:
                    self.log.info("Message sent", lead_id=lead_id, template_type=template_type, message_id=message_id)
                    return True
        self.log.warning("Could not record send after repeated conflicts", lead_id=lead_id)
        return False
