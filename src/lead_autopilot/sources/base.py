"""Source adapter contract and shared HTML helpers."""

import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Dict, Iterator, Optional, Tuple

import httpx
import structlog
from bs4 import BeautifulSoup

from ..crawl.fetcher import Fetcher
from ..normalize.identity import identity_key

logger = structlog.get_logger()


class SourceError(Exception):
    """Listing source failure (blocked, malformed response, timeout)."""
    pass


@dataclass
class LeadCandidate:
    """Raw listing record produced by one adapter."""

    name: str
    address: str = ""
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    source: str = ""
    source_url: Optional[str] = None

    @property
    def identity_key(self) -> Tuple[str, str]:
        return identity_key(self.name, self.address)

    def to_dict(self) -> Dict:
        return asdict(self)


_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_INTEGER = re.compile(r"\d[\d,]*")


def parse_rating(text: Optional[str]) -> Optional[float]:
    """First decimal in text ("4.5 star rating" -> 4.5), None when absent or out of range."""
    if not text:
        return None
    match = _NUMBER.search(text)
    if not match:
        return None
    value = float(match.group(0))
    if 0 <= value <= 5:
        return value
    return None


def parse_count(text: Optional[str]) -> Optional[int]:
    """First integer in text ("(1,204 reviews)" -> 1204)."""
    if not text:
        return None
    match = _INTEGER.search(text)
    if not match:
        return None
    return int(match.group(0).replace(",", ""))


def clean_text(element) -> str:
    """Whitespace-collapsed text of a BeautifulSoup element (empty when missing)."""
    if element is None:
        return ""
    return " ".join(element.get_text(" ", strip=True).split())


class SourceAdapter(ABC):
    """
    One external listing source.

    ``search`` is a generator: pages are fetched lazily as results are consumed,
    it stops after ``max_results`` candidates, and it cannot be restarted.
    """

    source_id = "unknown"

    def __init__(self, fetcher: Fetcher, config: Optional[Dict] = None):
        self.fetcher = fetcher
        self.config = config or {}
        self.max_pages = self.config.get("max_pages", 1)
        self.log = logger.bind(source=self.source_id)

    @abstractmethod
    def build_search_url(self, term: str, location: str, page: int) -> str:
        """URL of result page ``page`` (1-based)."""

    @abstractmethod
    def parse_results(self, html: str, page_url: str) -> Iterator[LeadCandidate]:
        """Yield candidates found on one result page."""

    def fetch_page(self, url: str) -> str:
        try:
            return self.fetcher.fetch(url, rate_key=self.source_id).text
        except httpx.HTTPError as e:
            raise SourceError(f"{self.source_id} request failed: {e}") from e

    def search(self, term: str, location: str, max_results: int) -> Iterator[LeadCandidate]:
        """
        Search the source for businesses.

        Args:
            term: Search term (e.g. "plumber")
            location: Location text (e.g. "Phoenix, AZ")
            max_results: Stop after this many candidates

        Yields:
            LeadCandidate

        Raises:
            SourceError: The source could not be queried
        """
        yielded = 0
        for page in range(1, self.max_pages + 1):
            url = self.build_search_url(term, location, page)
            self.log.info("Searching source", term=term, location=location, page=page)
            html = self.fetch_page(url)

            found_on_page = 0
            for candidate in self.parse_results(html, url):
                found_on_page += 1
                yield candidate
                yielded += 1
                if yielded >= max_results:
                    return

            if not found_on_page:
                break

        self.log.info("Source search completed", term=term, location=location, results_count=yielded)

    def soup(self, html: str) -> BeautifulSoup:
        return BeautifulSoup(html, "html.parser")

    def close(self):
        pass
