"""Lead scoring: inverse-opportunity components, weighted total, tier, recommendations.

Weaker digital presence scores higher (more to sell). Every component is a
pure function of the ScoringInput and lies in [0, 100]; unknown signals are
treated as absent.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog

from ..enrich.signals import SOCIAL_PLATFORMS, EnrichmentSignals
from ..errors import ScoringConfigError
from ..industries import industry_keywords
from ..storage.models import LeadTier, utcnow

logger = structlog.get_logger()

DEFAULT_WEIGHTS = {
    "website_quality": 25,
    "seo_ranking": 20,
    "ad_presence": 15,
    "review_score": 15,
    "social_presence": 10,
    "company_size": 10,
    "market_competitiveness": 5,
}

DEFAULT_TIERS = {"hot": 80, "warm": 60, "cold": 40}

METRO_AREAS = [
    "new york", "los angeles", "chicago", "houston", "phoenix",
    "philadelphia", "san antonio", "san diego", "dallas", "miami",
]

PRIORITY_ORDER = {"High": 1, "Medium": 2, "Low": 3}

# component -> (threshold, priority, category, recommendation, services)
RECOMMENDATION_RULES = {
    "website_quality": (70, "High", "Website", "Website redesign and optimization needed",
                        ["Website Development", "Mobile Optimization", "Speed Optimization"]),
    "seo_ranking": (60, "High", "SEO", "SEO optimization required to improve rankings",
                    ["Local SEO", "On-Page SEO", "Content Marketing", "Link Building"]),
    "ad_presence": (60, "High", "Paid Advertising", "PPC campaigns needed to increase visibility",
                    ["Google Ads", "Local Service Ads", "Facebook Ads"]),
    "review_score": (60, "Medium", "Reputation Management", "Review generation and management needed",
                     ["Review Management", "Reputation Monitoring", "Review Response"]),
    "social_presence": (60, "Medium", "Social Media", "Social media presence needs development",
                        ["Social Media Marketing", "Content Creation", "Community Management"]),
    "market_competitiveness": (80, "Low", "Local Competition", "Competitive local market, visibility campaigns pay off",
                               ["Local Service Ads", "Google Business Profile Optimization"]),
}


@dataclass
class ScoringInput:
    """Fields of a lead record the engine reads."""

    company_name: str = ""
    website: Optional[str] = None
    industry: Optional[str] = None
    address: Optional[str] = None
    location: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    review_response_rate: Optional[float] = None
    estimated_size: Optional[str] = None
    local_competitor_count: Optional[int] = None
    signals: EnrichmentSignals = field(default_factory=EnrichmentSignals)

    @classmethod
    def from_record(cls, record) -> "ScoringInput":
        """Build from a Lead row or a column dict."""
        if not isinstance(record, dict):
            record = {column.name: getattr(record, column.name) for column in record.__table__.columns}
        return cls(
            company_name=record.get("company_name") or "",
            website=record.get("website"),
            industry=record.get("industry"),
            address=record.get("address"),
            location=record.get("location"),
            rating=record.get("rating"),
            review_count=record.get("review_count"),
            estimated_size=record.get("estimated_size"),
            local_competitor_count=record.get("local_competitor_count"),
            signals=EnrichmentSignals.from_lead_fields(record),
        )


@dataclass
class Recommendation:
    priority: str
    category: str
    recommendation: str
    services: List[str]

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ScoreResult:
    total_score: int
    tier: LeadTier
    component_scores: Dict[str, int]
    recommendations: List[Recommendation]
    calculated_at: datetime

    def to_lead_fields(self) -> Dict:
        """Column values written back to the lead record."""
        return {
            "lead_score": self.total_score,
            "tier": self.tier.value,
            "component_scores": dict(self.component_scores),
            "recommendations": [r.to_dict() for r in self.recommendations],
            "scored_at": self.calculated_at,
        }


# Components

def score_website_quality(lead: ScoringInput) -> int:
    quality = lead.signals.website_quality
    if not lead.website and (quality is None or not quality.has_website):
        return 100
    if quality is None:
        return 100

    indicators = [
        (not quality.has_mobile_viewport, 20),
        (not quality.has_ssl, 15),
        (quality.load_time_ms is None or quality.load_time_ms > 3000, 15),
        (not quality.has_meta_description, 10),
        (quality.title_length is None or quality.title_length < 30, 10),
        (not quality.has_google_analytics, 10),
        (not quality.has_live_chat, 10),
        (not quality.has_facebook_pixel, 10),
    ]
    return min(sum(points for failed, points in indicators if failed), 100)


def score_seo_ranking(lead: ScoringInput) -> int:
    seo = lead.signals.seo
    if seo is None or not seo.indexed:
        return 100

    score = 0
    ranking = seo.estimated_ranking
    if ranking is None or ranking > 50:
        score += 40
    elif ranking > 20:
        score += 25
    else:
        score += 10

    keywords = seo.organic_keywords
    if keywords is None or keywords < 50:
        score += 30
    elif keywords < 200:
        score += 20
    else:
        score += 10

    # Not ranking for its own industry's phrases
    if industry_keywords(lead.industry) and not seo.industry_keywords:
        score += 30
    else:
        score += 15

    return min(score, 100)


def score_ad_presence(lead: ScoringInput) -> int:
    ads = lead.signals.ads
    if ads is None:
        return 100

    spend = (ads.estimated_ad_spend or "").lower()
    if not ads.has_google_ads or spend in ("", "none"):
        score = 80
    elif spend in ("low", "medium", "active"):
        score = 40
    else:
        score = 20

    if not ads.has_facebook_ads:
        score += 10
    if not ads.has_yelp_ads:
        score += 10
    return min(score, 100)


def score_reviews(lead: ScoringInput) -> int:
    count = lead.review_count or 0
    rating = lead.rating or 0
    score = 0

    if count < 10:
        score += 40
    elif count < 50:
        score += 25
    elif count < 100:
        score += 15
    else:
        score += 5

    if rating < 3.0:
        score += 40
    elif rating < 4.0:
        score += 30
    elif rating < 4.5:
        score += 20
    else:
        score += 10

    response_rate = lead.review_response_rate or 0
    if response_rate < 30:
        score += 20
    elif response_rate < 60:
        score += 10

    return min(score, 100)


def score_social_presence(lead: ScoringInput) -> int:
    social = lead.signals.social
    if social is None:
        return 100

    score = 0
    missing = 0
    for platform in SOCIAL_PLATFORMS:
        profile = getattr(social, platform)
        if profile is None or not profile.has_profile:
            missing += 1
            score += 15
        elif profile.engagement == "low" or (profile.followers_count is not None and profile.followers_count < 100):
            score += 10
        else:
            score += 5

    if missing == len(SOCIAL_PLATFORMS):
        return 100
    return min(score, 100)


def score_company_size(lead: ScoringInput) -> int:
    # Larger companies have more budget; not an inverse signal
    sizes = {"large": 90, "medium": 75, "small": 50, "startup": 30}
    return sizes.get((lead.estimated_size or "").lower(), 40)


def score_market_competitiveness(lead: ScoringInput) -> int:
    place = " ".join(part for part in (lead.address, lead.location) if part).lower()
    score = 80 if any(city in place for city in METRO_AREAS) else 60

    competitors = lead.local_competitor_count or 0
    if competitors > 50:
        score += 15
    elif competitors > 20:
        score += 10
    return min(score, 100)


COMPONENTS: Dict[str, Callable[[ScoringInput], int]] = {
    "website_quality": score_website_quality,
    "seo_ranking": score_seo_ranking,
    "ad_presence": score_ad_presence,
    "review_score": score_reviews,
    "social_presence": score_social_presence,
    "company_size": score_company_size,
    "market_competitiveness": score_market_competitiveness,
}


class ScoringEngine:
    """Configured scoring: weights, tier thresholds, recommendation thresholds."""

    def __init__(self, config: Optional[Dict] = None):
        """
        Args:
            config: scoring.yaml contents (``weights``, ``tiers``, ``recommendation_thresholds``)

        Raises:
            ScoringConfigError: Weights are unknown, negative or do not sum to 100
        """
        config = config or {}
        self.weights = {**DEFAULT_WEIGHTS, **(config.get("weights") or {})}
        unknown = set(self.weights) - set(COMPONENTS)
        if unknown:
            raise ScoringConfigError(f"Unknown scoring components: {sorted(unknown)}")
        if any(weight < 0 for weight in self.weights.values()):
            raise ScoringConfigError("Scoring weights must not be negative")
        if sum(self.weights.values()) != 100:
            raise ScoringConfigError(f"Scoring weights must sum to 100, got {sum(self.weights.values())}")

        self.tiers = {**DEFAULT_TIERS, **(config.get("tiers") or {})}
        if not self.tiers["hot"] >= self.tiers["warm"] >= self.tiers["cold"]:
            raise ScoringConfigError("Tier thresholds must be ordered hot >= warm >= cold")

        overrides = config.get("recommendation_thresholds") or {}
        self.rules = {
            component: (overrides.get(component, rule[0]),) + rule[1:]
            for component, rule in RECOMMENDATION_RULES.items()
        }

    def component_scores(self, lead: ScoringInput) -> Dict[str, int]:
        return {name: max(0, min(int(func(lead)), 100)) for name, func in COMPONENTS.items()}

    def determine_tier(self, score: int) -> LeadTier:
        if score >= self.tiers["hot"]:
            return LeadTier.HOT
        if score >= self.tiers["warm"]:
            return LeadTier.WARM
        if score >= self.tiers["cold"]:
            return LeadTier.COLD
        return LeadTier.LOW_PRIORITY

    def recommendations(self, scores: Dict[str, int]) -> List[Recommendation]:
        found = []
        for component, (threshold, priority, category, text, services) in self.rules.items():
            if scores.get(component, 0) >= threshold:
                found.append(Recommendation(priority, category, text, list(services)))
        # Stable sort keeps rule order within a priority
        return sorted(found, key=lambda r: PRIORITY_ORDER[r.priority])

    def score(self, lead: ScoringInput, now: Optional[datetime] = None) -> ScoreResult:
        """
        Score one lead.

        Args:
            lead: Scoring input
            now: Timestamp recorded as ``calculated_at`` (defaults to current UTC)

        Returns:
            ScoreResult
        """
        scores = self.component_scores(lead)
        weighted = sum(scores[name] / 100 * self.weights[name] for name in scores)
        # Round half up
        total = min(max(int(math.floor(weighted + 0.5)), 0), 100)
        return ScoreResult(
            total_score=total,
            tier=self.determine_tier(total),
            component_scores=scores,
            recommendations=self.recommendations(scores),
            calculated_at=now or utcnow(),
        )

    def score_leads(self, leads: List[ScoringInput], now: Optional[datetime] = None) -> List[ScoreResult]:
        """Score a batch; results are sorted by total score, highest first."""
        results = [self.score(lead, now=now) for lead in leads]
        logger.info("Batch scored", count=len(results), average_score=average_score(results))
        return sorted(results, key=lambda r: r.total_score, reverse=True)


def average_score(results: List[ScoreResult]) -> int:
    if not results:
        return 0
    return int(math.floor(sum(r.total_score for r in results) / len(results) + 0.5))


def scoring_report(scored: List[Dict], now: Optional[datetime] = None) -> Dict:
    """
    Summary of scored leads.

    Args:
        scored: Lead dicts with ``company_name``, ``lead_score``, ``tier`` and ``recommendations``

    Returns:
        Dict with total, average score, tier distribution and the top 10 opportunities
    """
    ranked = sorted(scored, key=lambda lead: lead.get("lead_score") or 0, reverse=True)
    scores = [lead.get("lead_score") or 0 for lead in ranked]
    distribution = {tier.value: 0 for tier in LeadTier}
    for lead in ranked:
        if lead.get("tier") in distribution:
            distribution[lead["tier"]] += 1

    return {
        "total_leads": len(ranked),
        "average_score": int(math.floor(sum(scores) / len(scores) + 0.5)) if scores else 0,
        "tier_distribution": distribution,
        "top_opportunities": [
            {
                "name": lead.get("company_name"),
                "score": lead.get("lead_score"),
                "tier": lead.get("tier"),
                "top_recommendations": (lead.get("recommendations") or [])[:3],
            }
            for lead in ranked[:10]
        ],
        "generated_at": (now or utcnow()).isoformat(),
    }
