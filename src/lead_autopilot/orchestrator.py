"""Scrape orchestrator: concurrent source fan-out, dedup, enrichment, persistence."""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from itertools import islice
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from . import job_types
from .enrich.probe import EnrichmentProbe, estimate_company_size
from .enrich.signals import EnrichmentSignals
from .industries import search_term
from .normalize.identity import normalize_website
from .queue.registry import SCORING, QueueManager
from .sources.base import LeadCandidate, SourceAdapter
from .storage.lead_store import LeadStore

logger = structlog.get_logger()


@dataclass
class ScrapeReport:
    """Outcome of one (industry, location) run."""

    industry: str
    location: str
    per_source: Dict[str, int] = field(default_factory=dict)
    failed_sources: List[str] = field(default_factory=list)
    candidates_found: int = 0
    unique_candidates: int = 0
    created_lead_ids: List[int] = field(default_factory=list)
    existing_leads: int = 0
    skipped: int = 0
    probed: int = 0
    scoring_jobs: int = 0

    def to_dict(self) -> Dict:
        return {
            "industry": self.industry,
            "location": self.location,
            "per_source": self.per_source,
            "failed_sources": self.failed_sources,
            "candidates_found": self.candidates_found,
            "unique_candidates": self.unique_candidates,
            "created": len(self.created_lead_ids),
            "created_lead_ids": self.created_lead_ids,
            "existing_leads": self.existing_leads,
            "skipped": self.skipped,
            "probed": self.probed,
            "scoring_jobs": self.scoring_jobs,
        }


def merge_candidates(results: Sequence[Tuple[str, List[LeadCandidate]]], max_results: Optional[int] = None) -> List[LeadCandidate]:
    """
    Merge per-source results in declaration order.

    The first candidate seen for an identity key wins; later duplicates are
    dropped whole. Truncation to ``max_results`` happens after the merge, so
    which leads survive depends only on source order, never on which source
    answered first.
    """
    seen = set()
    merged = []
    for _, candidates in results:
        for candidate in candidates:
            key = candidate.identity_key
            if not key[0] or key in seen:
                continue
            seen.add(key)
            merged.append(candidate)
    if max_results is not None:
        merged = merged[:max_results]
    return merged


class ScrapeOrchestrator:
    """Runs every configured source for one search and persists the new leads."""

    def __init__(
        self,
        adapters: List[SourceAdapter],
        store: LeadStore,
        probe: Optional[EnrichmentProbe] = None,
        queues: Optional[QueueManager] = None,
        config: Optional[Dict] = None,
    ):
        """
        Args:
            adapters: Source adapters in declaration order (earlier wins on duplicates)
            store: Lead persistence
            probe: Website enrichment probe (None disables enrichment)
            queues: Queue manager for follow-on scoring jobs
            config: ``orchestrator`` config section
        """
        config = config or {}
        self.adapters = adapters
        self.store = store
        self.probe = probe if config.get("probe_enabled", True) else None
        self.queues = queues
        self.adapter_timeout = float(config.get("adapter_timeout_seconds", 120))
        self.log = logger.bind(component="orchestrator")

    def _run_adapter(self, adapter: SourceAdapter, term: str, location: str, max_results: int) -> List[LeadCandidate]:
        return list(islice(adapter.search(term, location, max_results), max_results))

    def search_all(self, term: str, location: str, max_results: int) -> Tuple[List[Tuple[str, List[LeadCandidate]]], List[str]]:
        """
        Query every adapter concurrently.

        Returns:
            ([(source_id, candidates)] in declaration order, [failed source ids])
        """
        executor = ThreadPoolExecutor(max_workers=max(len(self.adapters), 1), thread_name_prefix="source")
        futures = [
            (adapter, executor.submit(self._run_adapter, adapter, term, location, max_results))
            for adapter in self.adapters
        ]
        deadline = time.monotonic() + self.adapter_timeout

        results = []
        failed = []
        try:
            for adapter, future in futures:
                remaining = max(deadline - time.monotonic(), 0)
                try:
                    candidates = future.result(timeout=remaining)
                except FutureTimeoutError:
                    self.log.warning("Source timed out", source=adapter.source_id, timeout=self.adapter_timeout)
                    future.cancel()
                    candidates = []
                    failed.append(adapter.source_id)
                except Exception as e:
                    self.log.error("Source failed", source=adapter.source_id, error=str(e), error_type=type(e).__name__)
                    candidates = []
                    failed.append(adapter.source_id)
                else:
                    self.log.info("Source returned results", source=adapter.source_id, count=len(candidates))
                results.append((adapter.source_id, candidates))
        finally:
            # Do not wait on a hung adapter; its thread finishes in the background
            executor.shutdown(wait=False, cancel_futures=True)

        return results, failed

    def enrich(self, candidate: LeadCandidate, industry: str) -> Optional[EnrichmentSignals]:
        if self.probe is None or not candidate.website:
            return None
        website = normalize_website(candidate.website)
        if not website:
            return None
        return self.probe.probe(website, industry=industry)

    def run(self, industry: str, location: str, max_results: int) -> ScrapeReport:
        """
        Scrape one industry in one location.

        Args:
            industry: Industry key (e.g. "PLUMBING") or free-text search term
            location: Location text (e.g. "Phoenix, AZ")
            max_results: Maximum leads kept after deduplication

        Returns:
            ScrapeReport
        """
        term = search_term(industry)
        log = self.log.bind(industry=industry, location=location)
        log.info("Scrape started", term=term, max_results=max_results, sources=[a.source_id for a in self.adapters])

        report = ScrapeReport(industry=industry, location=location)
        results, report.failed_sources = self.search_all(term, location, max_results)
        report.per_source = {source_id: len(candidates) for source_id, candidates in results}
        report.candidates_found = sum(report.per_source.values())

        merged = merge_candidates(results, max_results)
        report.unique_candidates = len(merged)

        for candidate in merged:
            lead_id = self._persist(candidate, industry, location, len(merged), report, log)
            if lead_id is None:
                continue
            report.created_lead_ids.append(lead_id)
            if self.queues is not None:
                self.queues.enqueue(SCORING, job_types.SCORE_LEAD, {"lead_id": lead_id}, group_key=str(lead_id))
                report.scoring_jobs += 1

        log.info("Scrape completed", **{k: v for k, v in report.to_dict().items() if k != "created_lead_ids"})
        return report

    def _persist(self, candidate: LeadCandidate, industry: str, location: str, competitor_count: int, report: ScrapeReport, log) -> Optional[int]:
        name_key, address_key = candidate.identity_key
        if not candidate.name or not name_key:
            report.skipped += 1
            log.warning("Candidate missing name, skipped", source=candidate.source)
            return None

        existing = self.store.find_by_identity(name_key, address_key)
        if existing is not None:
            report.existing_leads += 1
            log.debug("Lead already known", lead_id=existing.id, company=candidate.name)
            return None

        signals = self.enrich(candidate, industry)
        if signals is not None:
            report.probed += 1

        fields = {
            "company_name": candidate.name.strip(),
            "name_key": name_key,
            "address_key": address_key,
            "address": candidate.address or None,
            "phone": candidate.phone,
            "website": normalize_website(candidate.website) if candidate.website else None,
            "industry": industry,
            "location": location,
            "rating": candidate.rating,
            "review_count": candidate.review_count,
            "data_source": candidate.source,
            "source_url": candidate.source_url,
            "estimated_size": estimate_company_size(
                candidate.review_count,
                candidate.rating,
                signals.website_quality if signals else None,
            ),
            "local_competitor_count": competitor_count,
        }
        if signals is not None:
            fields.update(signals.to_lead_fields())

        lead, created = self.store.create_lead(**fields)
        if not created:
            report.existing_leads += 1
            log.debug("Lead already known", lead_id=lead.id, company=candidate.name)
            return None
        log.debug("Lead created", lead_id=lead.id, company=candidate.name, source=candidate.source)
        return lead.id
