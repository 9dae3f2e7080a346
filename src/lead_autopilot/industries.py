"""Home-service industry vocabulary shared by scraping, enrichment and scoring."""

from typing import List

HOME_SERVICE_INDUSTRIES = {
    "HVAC": ["hvac", "heating cooling", "air conditioning", "furnace repair"],
    "PLUMBING": ["plumbing", "plumber", "drain cleaning", "water heater"],
    "ROOFING": ["roofing", "roofer", "roof repair", "roof replacement"],
    "ELECTRICAL": ["electrician", "electrical contractor", "electrical repair"],
}

# Phrases a business should rank for in its own industry
INDUSTRY_KEYWORDS = {
    "HVAC": ["hvac repair", "air conditioning", "heating service", "ac repair"],
    "PLUMBING": ["plumber", "plumbing service", "emergency plumber", "drain cleaning"],
    "ROOFING": ["roofing contractor", "roof repair", "roof replacement"],
    "ELECTRICAL": ["electrician", "electrical service", "electrical repair"],
}


def search_term(industry: str) -> str:
    """Primary search term for an industry; unknown industries search as-is."""
    terms = HOME_SERVICE_INDUSTRIES.get((industry or "").upper())
    if terms:
        return terms[0]
    return (industry or "").strip().lower()


def industry_keywords(industry: str) -> List[str]:
    return INDUSTRY_KEYWORDS.get((industry or "").upper(), [])
