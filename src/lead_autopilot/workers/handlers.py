"""Job handlers, one per job type.

Transient failures (network, transport) propagate so the queue retries them;
jobs that can never succeed raise ``PermanentJobError``.
"""

from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .. import job_types
from ..enrich.probe import EnrichmentProbe, estimate_company_size
from ..errors import PermanentJobError
from ..lifecycle.state_machine import INTRO_TEMPLATE, LifecycleStateMachine
from ..monitoring.health import HealthMonitor
from ..orchestrator import ScrapeOrchestrator
from ..outreach.messages import compose
from ..outreach.transport import Transport
from ..queue.registry import QueueManager
from ..score.scoring import ScoringEngine, ScoringInput, scoring_report
from ..sources.base import SourceError
from ..storage.lead_store import LeadStore
from ..storage.models import Job, Lead, to_dict

logger = structlog.get_logger()

DEFAULT_CLEANUP_GRACE_SECONDS = 7 * 86400


class JobHandlers:
    """Binds the pipeline components to job types."""

    def __init__(
        self,
        store: LeadStore,
        queues: QueueManager,
        state_machine: LifecycleStateMachine,
        scoring: ScoringEngine,
        transport: Transport,
        orchestrator: Optional[ScrapeOrchestrator] = None,
        probe: Optional[EnrichmentProbe] = None,
        health: Optional[HealthMonitor] = None,
        targets: Optional[Dict] = None,
        sender_name: Optional[str] = None,
    ):
        self.store = store
        self.queues = queues
        self.state_machine = state_machine
        self.scoring = scoring
        self.transport = transport
        self.orchestrator = orchestrator
        self.probe = probe
        self.health = health
        self.targets = targets or {}
        self.sender_name = sender_name
        self.log = logger.bind(component="handlers")

    def registry(self) -> Dict[str, Callable[[Job], Optional[Dict]]]:
        return {
            job_types.SCRAPE: self.scrape,
            job_types.SCORE_LEAD: self.score_lead,
            job_types.SCORE_UNSCORED: self.score_unscored,
            job_types.SEND_EMAIL: self.send_email,
            job_types.FOLLOWUP: self.send_followup,
            job_types.CAMPAIGN_SWEEP: self.campaign_sweep,
            job_types.ENRICH_LEAD: self.enrich_lead,
            job_types.CLEANUP: self.cleanup,
            job_types.HEALTH_CHECK: self.health_check,
        }

    def _require_lead(self, job: Job) -> Lead:
        lead_id = (job.payload or {}).get("lead_id")
        if lead_id is None:
            raise PermanentJobError(f"Job {job.id} has no lead_id")
        lead = self.store.get_lead(int(lead_id))
        if lead is None:
            raise PermanentJobError(f"Lead {lead_id} not found")
        return lead

    # Scraping
    def scrape(self, job: Job) -> Dict:
        """
        Scrape every (industry, location) pair.

        Payload keys (all optional, defaulting to the configured targets):
            industries, locations, max_leads_per_industry
        """
        if self.orchestrator is None:
            raise PermanentJobError("No scrape orchestrator configured")
        payload = job.payload or {}
        industries: List[str] = payload.get("industries") or self.targets.get("industries") or []
        locations: List[str] = payload.get("locations") or self.targets.get("locations") or []
        max_leads = int(payload.get("max_leads_per_industry") or self.targets.get("max_leads_per_industry", 50))
        if not industries or not locations:
            raise PermanentJobError("Scrape job needs at least one industry and one location")

        runs = []
        for location in locations:
            for industry in industries:
                runs.append(self.orchestrator.run(industry, location, max_leads).to_dict())

        summary = {
            "runs": len(runs),
            "candidates_found": sum(run["candidates_found"] for run in runs),
            "leads_created": sum(run["created"] for run in runs),
            "failed_sources": sorted({source for run in runs for source in run["failed_sources"]}),
        }
        self.log.info("Scrape job finished", job_id=job.id, **summary)
        return summary

    # Scoring
    def _score(self, lead: Lead) -> Dict:
        result = self.scoring.score(ScoringInput.from_record(lead))
        self.store.update_fields(lead.id, **result.to_lead_fields())
        contacted = self.state_machine.on_scored(lead.id)
        self.log.info("Lead scored", lead_id=lead.id, score=result.total_score, tier=result.tier.value, auto_contact=contacted)
        return {
            "lead_id": lead.id,
            "company_name": lead.company_name,
            "lead_score": result.total_score,
            "tier": result.tier.value,
            "recommendations": [r.to_dict() for r in result.recommendations],
            "auto_contact": contacted,
        }

    def score_lead(self, job: Job) -> Dict:
        scored = self._score(self._require_lead(job))
        return {key: scored[key] for key in ("lead_id", "lead_score", "tier", "auto_contact")}

    def score_unscored(self, job: Job) -> Dict:
        """Rescoring sweep for every never-scored lead."""
        limit = (job.payload or {}).get("limit")
        leads = self.store.get_unscored(limit)
        scored = [self._score(lead) for lead in leads]
        report = scoring_report(scored)
        report["auto_contacted"] = sum(1 for item in scored if item["auto_contact"])
        return report

    # Outreach
    def _deliver(self, lead: Lead, template_type: str) -> Dict:
        """
        Send one template to a lead, at most once.

        The transport receipt is recorded before the lifecycle update, so a retry
        after a failed update finds the recorded message and does not resend.
        """
        sent = self.store.find_sent(lead.id, template_type)
        if sent is not None:
            self.log.info("Message already sent, finishing lifecycle update", lead_id=lead.id, template_type=template_type, message_id=sent.message_id)
            message_id, recipient, subject = sent.message_id, sent.recipient, sent.subject
        else:
            message = compose(template_type, to_dict(lead), sender_name=self.sender_name)
            receipt = self.transport.send(lead.email, message.subject, message.body, {"lead_id": str(lead.id)})
            message_id, recipient, subject = receipt.message_id, lead.email, message.subject
            try:
                self.store.record_message(lead.id, message_id, template_type, recipient, subject)
            except SQLAlchemyError as e:
                self.log.error("Sent message could not be recorded", lead_id=lead.id, message_id=message_id, error=str(e))
                raise PermanentJobError(f"Message {message_id} sent to lead {lead.id} but not recorded: {e}") from e

        self.state_machine.on_sent(lead.id, message_id, template_type, recipient, subject)
        return {"lead_id": lead.id, "template_type": template_type, "message_id": message_id, "recipient": recipient}

    def send_email(self, job: Job) -> Dict:
        lead = self._require_lead(job)
        template_type = (job.payload or {}).get("template_type", INTRO_TEMPLATE)
        if template_type == INTRO_TEMPLATE:
            allowed, reason = self.state_machine.intro_allowed(lead)
        else:
            allowed, reason = self.state_machine.followup_allowed(lead)
        if not allowed:
            self.log.info("Email skipped", lead_id=lead.id, template_type=template_type, reason=reason)
            return {"skipped": True, "reason": reason, "lead_id": lead.id}
        return self._deliver(lead, template_type)

    def send_followup(self, job: Job) -> Dict:
        """Follow-up step: re-check the lead's status, then send."""
        lead = self._require_lead(job)
        template_type = (job.payload or {}).get("template_type", "followup-1")
        allowed, reason = self.state_machine.followup_allowed(lead)
        if not allowed:
            self.log.info("Follow-up skipped", lead_id=lead.id, sequence=template_type, reason=reason)
            return {"skipped": True, "reason": reason, "lead_id": lead.id}
        return self._deliver(lead, template_type)

    def campaign_sweep(self, job: Job) -> Dict:
        """Start outreach for scored leads above the threshold that slipped through."""
        payload = job.payload or {}
        threshold = int(payload.get("min_score", self.state_machine.config.auto_contact_threshold))
        candidates = self.store.get_auto_contact_candidates(threshold, payload.get("limit"))
        scheduled = [lead.id for lead in candidates if self.state_machine.on_scored(lead.id)]
        self.log.info("Hot lead campaign sweep", candidates=len(candidates), scheduled=len(scheduled))
        return {"candidates": len(candidates), "scheduled": len(scheduled), "lead_ids": scheduled}

    # Enrichment
    def enrich_lead(self, job: Job) -> Dict:
        lead = self._require_lead(job)
        if self.probe is None:
            raise PermanentJobError("No enrichment probe configured")
        if not lead.website:
            return {"skipped": True, "reason": "no_website", "lead_id": lead.id}

        signals = self.probe.probe(lead.website, industry=lead.industry)
        if signals is None:
            raise SourceError(f"Website unreachable: {lead.website}")

        fields = signals.to_lead_fields()
        if lead.email:
            fields.pop("email", None)
        fields["estimated_size"] = estimate_company_size(lead.review_count, lead.rating, signals.website_quality)
        self.store.update_fields(lead.id, **fields)
        self.log.info("Lead enriched", lead_id=lead.id, reason=(job.payload or {}).get("reason"))
        return {"lead_id": lead.id, "enriched_fields": sorted(fields)}

    # Maintenance
    def cleanup(self, job: Job) -> Dict:
        grace = float((job.payload or {}).get("grace_seconds", DEFAULT_CLEANUP_GRACE_SECONDS))
        removed = self.queues.clean(grace)
        recovered = self.queues.recover_stalled()
        return {"removed": removed, "recovered_stalled": recovered}

    def health_check(self, job: Job) -> Dict:
        if self.health is None:
            raise PermanentJobError("No health monitor configured")
        summary = self.health.summary()
        return {"status": summary["status"], "alerts": summary["alerts"]}
