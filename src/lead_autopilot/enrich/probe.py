"""Homepage probe: website quality, on-page SEO, ad tags, social links."""

import re
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog
from bs4 import BeautifulSoup

from ..crawl.fetcher import Fetcher
from ..industries import industry_keywords
from .signals import (
    SOCIAL_PLATFORMS,
    AdPresence,
    EnrichmentSignals,
    SeoSignals,
    SocialPresence,
    SocialProfile,
    WebsiteQuality,
)

logger = structlog.get_logger()

PROBE_RATE_KEY = "probe"

SOCIAL_DOMAINS = {
    "facebook": ("facebook.com", "fb.com"),
    "instagram": ("instagram.com",),
    "linkedin": ("linkedin.com",),
    "twitter": ("twitter.com", "x.com"),
    "youtube": ("youtube.com", "youtu.be"),
}

LIVE_CHAT_MARKERS = ("livechat", "intercom", "drift.com", "tawk.to", "zopim", "crisp.chat", "hubspot-messages")
ANALYTICS_MARKERS = ("google-analytics.com", "gtag(", "googletagmanager.com/gtag")
PIXEL_MARKERS = ("connect.facebook.net", "fbevents.js", "fbq(")
GOOGLE_ADS_MARKERS = ("googleadservices.com", "gtag('config', 'aw-", 'gtag("config", "aw-', "google_conversion_id")

_EMAIL = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")


def _social_platform(href: str) -> Optional[str]:
    host = urlparse(href).netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    for platform, domains in SOCIAL_DOMAINS.items():
        if any(host == domain or host.endswith("." + domain) for domain in domains):
            return platform
    return None


def _find_email(soup: BeautifulSoup) -> Optional[str]:
    for link in soup.select('a[href^="mailto:"]'):
        address = link["href"][len("mailto:"):].split("?")[0].strip()
        if _EMAIL.match(address):
            return address.lower()
    return None


def estimate_ad_spend(has_google_ads: bool, has_facebook_ads: bool) -> str:
    if has_google_ads and has_facebook_ads:
        return "high"
    if has_google_ads or has_facebook_ads:
        return "medium"
    return "none"


def analyze_html(html: str, url: str, industry: Optional[str] = None, load_time_ms: Optional[int] = None) -> EnrichmentSignals:
    """
    Derive enrichment signals from a fetched homepage.

    Args:
        html: Page HTML
        url: Final URL the page was served from
        industry: Lead industry, for industry keyword matching
        load_time_ms: Measured fetch time

    Returns:
        EnrichmentSignals
    """
    soup = BeautifulSoup(html, "html.parser")
    lowered = html.lower()

    title = soup.title.get_text(strip=True) if soup.title else ""
    description = soup.find("meta", attrs={"name": "description"})
    robots = soup.find("meta", attrs={"name": "robots"})
    noindex = robots is not None and "noindex" in (robots.get("content") or "").lower()

    has_pixel = any(marker in lowered for marker in PIXEL_MARKERS)
    quality = WebsiteQuality(
        has_website=True,
        has_ssl=url.lower().startswith("https://"),
        has_mobile_viewport=soup.find("meta", attrs={"name": "viewport"}) is not None,
        load_time_ms=load_time_ms,
        has_title=bool(title),
        title_length=len(title),
        has_meta_description=description is not None and bool((description.get("content") or "").strip()),
        h1_count=len(soup.find_all("h1")),
        has_schema="schema.org" in lowered or "application/ld+json" in lowered,
        has_google_analytics=any(marker in lowered for marker in ANALYTICS_MARKERS),
        has_facebook_pixel=has_pixel,
        has_live_chat=any(marker in lowered for marker in LIVE_CHAT_MARKERS),
    )

    text = " ".join(soup.get_text(" ").lower().split())
    seo = SeoSignals(
        indexed=not noindex,
        # Ranking data needs a search API; left unknown
        estimated_ranking=None,
        organic_keywords=None,
        industry_keywords=[kw for kw in industry_keywords(industry) if kw in text],
    )

    has_google_ads = any(marker in lowered for marker in GOOGLE_ADS_MARKERS)
    ads = AdPresence(
        has_google_ads=has_google_ads,
        has_facebook_ads=has_pixel,
        has_yelp_ads=None,
        estimated_ad_spend=estimate_ad_spend(has_google_ads, has_pixel),
    )

    profiles: Dict[str, SocialProfile] = {}
    for link in soup.find_all("a", href=True):
        platform = _social_platform(link["href"])
        if platform and platform not in profiles:
            profiles[platform] = SocialProfile(has_profile=True, url=link["href"])
    social = SocialPresence(**{
        platform: profiles.get(platform, SocialProfile(has_profile=False))
        for platform in SOCIAL_PLATFORMS
    })

    return EnrichmentSignals(
        website_quality=quality,
        seo=seo,
        ads=ads,
        social=social,
        email=_find_email(soup),
    )


def estimate_company_size(review_count: Optional[int], rating: Optional[float], website_quality: Optional[WebsiteQuality]) -> str:
    """Large / Medium / Small from review volume and site tooling."""
    reviews = review_count or 0
    indicators = 0

    if reviews > 200:
        indicators += 3
    elif reviews > 100:
        indicators += 2
    elif reviews > 50:
        indicators += 1

    if website_quality is not None:
        if website_quality.has_live_chat:
            indicators += 2
        if website_quality.has_facebook_pixel:
            indicators += 1
        if website_quality.has_google_analytics:
            indicators += 1

    if rating is not None and rating >= 4.5 and reviews > 100:
        indicators += 1

    if indicators >= 5:
        return "Large"
    if indicators >= 3:
        return "Medium"
    return "Small"


class EnrichmentProbe:
    """Fetches a business homepage and derives enrichment signals."""

    def __init__(self, fetcher: Fetcher, config: Optional[Dict] = None):
        self.fetcher = fetcher
        self.config = config or {}
        self.log = logger.bind(component="probe")

    def probe(self, url: str, industry: Optional[str] = None) -> Optional[EnrichmentSignals]:
        """
        Probe a website.

        Returns:
            EnrichmentSignals, or None when the site is unreachable
        """
        try:
            page = self.fetcher.fetch(url, rate_key=PROBE_RATE_KEY)
        except httpx.HTTPError as e:
            self.log.info("Website unreachable", url=url, error=str(e))
            return None

        try:
            signals = analyze_html(page.text, page.url, industry=industry, load_time_ms=page.elapsed_ms)
        except (ValueError, TypeError) as e:
            self.log.warning("Website analysis failed", url=url, error=str(e))
            return None

        self.log.debug("Website probed", url=url, indexed=signals.seo.indexed, email_found=bool(signals.email))
        return signals
