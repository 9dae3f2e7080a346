"""Engagement events reported by the mail transport."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from ..storage.models import EngagementKind


@dataclass(frozen=True)
class EngagementEvent:
    """One delivery/engagement signal, already resolved to a lead."""

    lead_id: int
    kind: EngagementKind
    occurred_at: datetime  # naive UTC
    url: Optional[str] = None
    message_id: Optional[str] = None
    event_id: Optional[str] = None  # transport-assigned, when the transport has one

    @property
    def dedupe_key(self) -> str:
        """Replays of the same event map to the same key."""
        if self.event_id:
            return f"evt:{self.event_id}"
        return f"{self.lead_id}:{self.kind.value}:{self.occurred_at.isoformat()}"

    def to_record(self) -> Dict:
        """Row values for the engagement log."""
        return {
            "dedupe_key": self.dedupe_key,
            "kind": self.kind,
            "occurred_at": self.occurred_at,
            "url": self.url,
            "message_id": self.message_id,
        }


class EventOutcome(str, Enum):
    """What ``apply_engagement_event`` did with an event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN_LEAD = "unknown_lead"
