"""Outbound message composition (subject lines and a plain-text body)."""

from dataclasses import dataclass
from typing import Dict, List, Optional

DEFAULT_SENDER_NAME = "ServiceLine Team"

SUBJECTS = {
    "intro": "Boost {company}'s Online Visibility",
    "followup-1": "Following up: Digital Marketing for {company}",
    "followup-2": "Quick question about {company}'s marketing",
    "case-study": "How we helped similar {industry} businesses grow",
    "hot-lead": "Exclusive offer for {company}",
}
DEFAULT_SUBJECT = "ServiceLine - Digital Marketing Solutions"

OPENERS = {
    "intro": "I took a look at how {company} shows up online and found a few quick wins.",
    "followup-1": "Following up on my note from a few days ago about {company}.",
    "followup-2": "One quick question: is growing {company}'s online presence a priority this quarter?",
    "case-study": "We recently helped another {industry} business in your area grow their inbound calls.",
}


@dataclass
class ComposedMessage:
    subject: str
    body: str


def _industry_label(industry: Optional[str]) -> str:
    return (industry or "home service").replace("_", " ").lower()


def compose(template_type: str, lead: Dict, sender_name: Optional[str] = None) -> ComposedMessage:
    """
    Build subject and plain-text body for a lead.

    Args:
        template_type: intro, followup-1, followup-2, case-study, ...
        lead: Lead column dict (company_name, industry, recommendations, ...)
        sender_name: Signature name

    Returns:
        ComposedMessage
    """
    company = lead.get("company_name") or "your business"
    values = {"company": company, "industry": _industry_label(lead.get("industry"))}

    subject = SUBJECTS.get(template_type, DEFAULT_SUBJECT).format(**values)

    lines = [f"Hi {company} team,", ""]
    lines.append(OPENERS.get(template_type, OPENERS["intro"]).format(**values))

    recommendations: List[Dict] = lead.get("recommendations") or []
    if recommendations and template_type in ("intro", "followup-1"):
        lines.append("")
        for rec in recommendations[:3]:
            lines.append(f"- {rec.get('recommendation')}")

    lines += ["", "Would a 15-minute call next week work?", "", sender_name or DEFAULT_SENDER_NAME]
    return ComposedMessage(subject=subject, body="\n".join(lines))
