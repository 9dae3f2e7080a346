"""Identity-key and website normalization."""

import re
import unicodedata
from typing import Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import structlog

logger = structlog.get_logger()

# Query parameters to remove during normalization
DENYLIST_PARAMS = {
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "ref",
    "fbclid",
    "gclid",
    "source",
}

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
# Dropped outright so "O'Reilly" and "OReilly", "A.B.C." and "ABC" collide
_JOINERS = re.compile(r"['.]")

_LEGAL_SUFFIXES = {"inc", "llc", "ltd", "co", "corp", "corporation", "company", "incorporated", "lp", "llp", "pllc"}

# Address abbreviations folded so "1 Main Street" and "1 Main St." collide
_ADDRESS_TOKENS = {
    "street": "st",
    "avenue": "ave",
    "road": "rd",
    "boulevard": "blvd",
    "drive": "dr",
    "suite": "ste",
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
}


def _fold(text: str) -> str:
    text = unicodedata.normalize("NFKD", text or "")
    text = text.encode("ascii", "ignore").decode("ascii").lower()
    text = text.replace("&", " and ")
    text = _JOINERS.sub("", text)
    return _NON_ALNUM.sub(" ", text).strip()


def normalize_name(name: Optional[str]) -> str:
    """
    Normalize a business name for deduplication.

    Lower-cases, strips accents, punctuation and trailing legal suffixes, and
    collapses whitespace, so "ABC Plumbing, Inc." and "abc  plumbing" produce
    the same key. A name made only of a suffix keeps it.
    """
    tokens = _fold(name).split()
    while len(tokens) > 1 and tokens[-1] in _LEGAL_SUFFIXES:
        tokens.pop()
    return " ".join(tokens)


def normalize_address(address: Optional[str]) -> str:
    """Normalize a street address for deduplication."""
    tokens = _fold(address).split()
    return " ".join(_ADDRESS_TOKENS.get(token, token) for token in tokens)


def identity_key(name: Optional[str], address: Optional[str]) -> Tuple[str, str]:
    """Return the ``(normalized_name, normalized_address)`` dedup key."""
    return normalize_name(name), normalize_address(address)


def normalize_website(url: Optional[str]) -> Optional[str]:
    """
    Normalize a website URL before probing.

    Steps:
        1. Add https:// when no scheme is present
        2. Lowercase scheme+host, drop default ports
        3. Remove tracking query params
        4. Strip fragment and trailing slash

    Returns:
        Normalized URL, or None for empty / non-http values
    """
    if not url or not url.strip():
        return None

    url = url.strip()
    if "://" not in url:
        url = f"https://{url}"

    try:
        parsed = urlparse(url)
        scheme = parsed.scheme.lower()
        if scheme not in ("http", "https") or not parsed.netloc:
            return None

        netloc = parsed.netloc.lower()
        if ":" in netloc:
            host, port = netloc.rsplit(":", 1)
            if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
                netloc = host

        query_params = parse_qs(parsed.query, keep_blank_values=True)
        filtered_params = {k: v for k, v in query_params.items() if k.lower() not in DENYLIST_PARAMS}
        query_string = urlencode(filtered_params, doseq=True) if filtered_params else ""

        path = parsed.path.rstrip("/")
        return urlunparse((scheme, netloc, path, parsed.params, query_string, ""))
    except ValueError as e:
        logger.warning("Error normalizing website URL", url=url, error=str(e))
        return None

