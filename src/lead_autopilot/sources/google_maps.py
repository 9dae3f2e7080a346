"""Google Maps listing adapter (static result markup)."""

import re
from typing import Iterator
from urllib.parse import quote_plus

import structlog

from .base import LeadCandidate, SourceAdapter, clean_text, parse_rating

logger = structlog.get_logger()

SEARCH_URL = "https://www.google.com/maps/search/"

_REVIEWS = re.compile(r"([\d,]+)\s+review")


class GoogleMapsAdapter(SourceAdapter):
    """Parses the article cards of a Maps search page."""

    source_id = "google_maps"

    def build_search_url(self, term: str, location: str, page: int) -> str:
        # Maps returns one scrollable page per query
        return f"{SEARCH_URL}{quote_plus(f'{term} in {location}')}"

    def search(self, term: str, location: str, max_results: int) -> Iterator[LeadCandidate]:
        self.max_pages = 1
        return super().search(term, location, max_results)

    def parse_results(self, html: str, page_url: str) -> Iterator[LeadCandidate]:
        soup = self.soup(html)
        for article in soup.select('[role="article"]'):
            name = clean_text(article.select_one('[role="heading"]')) or article.get("aria-label", "").strip()
            if not name:
                continue

            rating_el = article.select_one('[role="img"][aria-label*="star"]')
            rating_text = rating_el.get("aria-label", "") if rating_el is not None else ""
            reviews = _REVIEWS.search(rating_text)

            website_el = article.select_one('[data-item-id*="authority"]')
            website = None
            if website_el is not None:
                website = website_el.get("href") or clean_text(website_el) or None

            link = article.select_one('a[href*="/maps/place/"]')

            yield LeadCandidate(
                name=name,
                address=clean_text(article.select_one('[data-item-id*="address"]')),
                phone=clean_text(article.select_one('[data-item-id*="phone"]')) or None,
                website=website,
                rating=parse_rating(rating_text),
                review_count=int(reviews.group(1).replace(",", "")) if reviews else None,
                source=self.source_id,
                source_url=link["href"] if link is not None else page_url,
            )
