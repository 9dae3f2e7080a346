"""Yelp listing adapter (Fusion API when a key is configured, HTML otherwise)."""

import json
import os
from typing import Dict, Iterator, Optional
from urllib.parse import parse_qs, quote_plus, urljoin, urlparse

import httpx
import structlog

from ..crawl.fetcher import Fetcher
from .base import LeadCandidate, SourceAdapter, SourceError, clean_text, parse_count, parse_rating

logger = structlog.get_logger()

BASE_URL = "https://www.yelp.com"
API_URL = "https://api.yelp.com/v3/businesses/search"
PAGE_SIZE = 10
API_PAGE_LIMIT = 50


def _decode_redirect(href: Optional[str]) -> Optional[str]:
    """Yelp wraps outbound links as ``/biz_redir?url=...``."""
    if not href:
        return None
    parsed = urlparse(href)
    if parsed.path.startswith("/biz_redir"):
        target = parse_qs(parsed.query).get("url")
        return target[0] if target else None
    if parsed.netloc and "yelp." not in parsed.netloc:
        return href
    return None


class YelpAdapter(SourceAdapter):
    """Yelp search, through the Fusion API or the public result page."""

    source_id = "yelp"

    def __init__(self, fetcher: Fetcher, config: Optional[Dict] = None, api_key: Optional[str] = None):
        super().__init__(fetcher, config)
        self.api_key = api_key if api_key is not None else os.getenv("YELP_API_KEY")

    def build_search_url(self, term: str, location: str, page: int) -> str:
        url = f"{BASE_URL}/search?find_desc={quote_plus(term)}&find_loc={quote_plus(location)}"
        if page > 1:
            url += f"&start={(page - 1) * PAGE_SIZE}"
        return url

    def search(self, term: str, location: str, max_results: int) -> Iterator[LeadCandidate]:
        if not self.api_key:
            yield from super().search(term, location, max_results)
            return

        params = {
            "term": term,
            "location": location,
            "limit": min(max_results, API_PAGE_LIMIT),
            "sort_by": "rating",
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        self.log.info("Searching Yelp API", term=term, location=location)
        try:
            body = self.fetcher.fetch(API_URL, rate_key=self.source_id, headers=headers, params=params).text
            payload = json.loads(body)
        except (httpx.HTTPError, ValueError) as e:
            raise SourceError(f"yelp API request failed: {e}") from e

        for business in payload.get("businesses", [])[:max_results]:
            candidate = self.parse_api_result(business)
            if candidate:
                yield candidate

    def parse_api_result(self, business: Dict) -> Optional[LeadCandidate]:
        name = (business.get("name") or "").strip()
        if not name:
            return None
        location = business.get("location") or {}
        parts = location.get("display_address") or [
            location.get("address1"),
            location.get("city"),
            location.get("state"),
        ]
        return LeadCandidate(
            name=name,
            address=", ".join(part for part in parts if part),
            phone=business.get("display_phone") or business.get("phone") or None,
            # Fusion only exposes the Yelp listing, not the business homepage
            website=None,
            rating=business.get("rating"),
            review_count=business.get("review_count"),
            source=self.source_id,
            source_url=business.get("url"),
        )

    def parse_results(self, html: str, page_url: str) -> Iterator[LeadCandidate]:
        soup = self.soup(html)
        for card in soup.select('[data-testid="serp-ia-card"]'):
            heading = card.select_one("h3")
            name = clean_text(heading)
            if not name:
                continue

            rating_el = card.select_one('[aria-label*="star rating"]')
            review_el = card.select_one('[aria-label*="review"]')
            review_text = clean_text(review_el) or (review_el.get("aria-label", "") if review_el is not None else "")

            link = heading.select_one("a[href]") if heading is not None else None
            website_el = card.select_one('a[href*="biz_redir"]')

            yield LeadCandidate(
                name=name,
                address=clean_text(card.select_one('[data-testid="address"]')),
                phone=clean_text(card.select_one('[data-testid="phone"]')) or None,
                website=_decode_redirect(website_el["href"] if website_el is not None else None),
                rating=parse_rating(rating_el.get("aria-label") if rating_el is not None else None),
                review_count=parse_count(review_text),
                source=self.source_id,
                source_url=urljoin(BASE_URL, link["href"]) if link is not None else page_url,
            )
