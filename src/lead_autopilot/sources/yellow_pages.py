"""Yellow Pages listing adapter."""

import re
from typing import Iterator, Optional
from urllib.parse import parse_qs, quote_plus, urljoin, urlparse

import structlog

from .base import LeadCandidate, SourceAdapter, clean_text, parse_count

logger = structlog.get_logger()

BASE_URL = "https://www.yellowpages.com"

_RATING_WORDS = {"one": 1.0, "two": 2.0, "three": 3.0, "four": 4.0, "five": 5.0}


def _parse_rating_class(classes) -> Optional[float]:
    """Rating from CSS classes like ``result-rating four half``."""
    if not classes:
        return None
    if isinstance(classes, str):
        classes = classes.split()

    rating = None
    for cls in classes:
        match = re.match(r"result-rating-(\d+)$", cls)
        if match:
            return int(match.group(1)) / 10
        if cls in _RATING_WORDS:
            rating = _RATING_WORDS[cls]
    if rating is not None and "half" in classes:
        rating += 0.5
    return rating


def _clean_website(href: Optional[str]) -> Optional[str]:
    """Unwrap Yellow Pages redirect links (``...?url=https://site``)."""
    if not href:
        return None
    query = parse_qs(urlparse(href).query)
    if query.get("url"):
        return query["url"][0]
    return href


class YellowPagesAdapter(SourceAdapter):
    """Parses the Yellow Pages search result listing."""

    source_id = "yellow_pages"

    def build_search_url(self, term: str, location: str, page: int) -> str:
        url = f"{BASE_URL}/search?search_terms={quote_plus(term)}&geo_location_terms={quote_plus(location)}"
        if page > 1:
            url += f"&page={page}"
        return url

    def parse_results(self, html: str, page_url: str) -> Iterator[LeadCandidate]:
        soup = self.soup(html)
        for element in soup.select(".result"):
            name = clean_text(element.select_one(".business-name span") or element.select_one(".business-name"))
            if not name:
                continue

            street = clean_text(element.select_one(".street-address"))
            locality = clean_text(element.select_one(".locality"))
            address = ", ".join(part for part in (street, locality) if part)

            rating_el = element.select_one(".result-rating")
            link = element.select_one(".business-name")
            detail_url = urljoin(BASE_URL, link["href"]) if link is not None and link.get("href") else page_url
            website_el = element.select_one(".track-visit-website")

            yield LeadCandidate(
                name=name,
                address=address,
                phone=clean_text(element.select_one(".phones")) or None,
                website=_clean_website(website_el.get("href") if website_el is not None else None),
                rating=_parse_rating_class(rating_el.get("class") if rating_el is not None else None),
                review_count=parse_count(clean_text(element.select_one(".count"))),
                source=self.source_id,
                source_url=detail_url,
            )
