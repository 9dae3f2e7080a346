"""Lead persistence layer (SQLAlchemy)."""

from enum import Enum
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from .models import (
    EngagementEventRecord,
    Lead,
    LeadActivity,
    LeadStatus,
    OutboundMessage,
    utcnow,
)

logger = structlog.get_logger()


class UpdateOutcome(str, Enum):
    """Result of a version-checked lead update."""

    APPLIED = "applied"
    CONFLICT = "conflict"
    DUPLICATE = "duplicate"


class LeadStore:
    """Database store for lead records, messages and the engagement log."""

    def __init__(self, session_factory):
        """Initialize store with a session factory (one session per operation)."""
        self.session_factory = session_factory

    # Lead methods
    def create_lead(self, **fields) -> Tuple[Lead, bool]:
        """Get existing lead by identity key or create a new one."""
        name_key = fields["name_key"]
        address_key = fields.get("address_key") or ""
        fields["address_key"] = address_key

        with self.session_factory() as session:
            existing = (
                session.query(Lead)
                .filter(Lead.name_key == name_key, Lead.address_key == address_key)
                .first()
            )
            if existing:
                return existing, False

            lead = Lead(**fields)
            session.add(lead)
            try:
                session.commit()
            except IntegrityError:
                # Lost a race against another writer on the same identity key
                session.rollback()
                existing = (
                    session.query(Lead)
                    .filter(Lead.name_key == name_key, Lead.address_key == address_key)
                    .first()
                )
                return existing, False
            return lead, True

    def get_lead(self, lead_id: int) -> Optional[Lead]:
        """Get lead by id."""
        with self.session_factory() as session:
            return session.get(Lead, lead_id)

    def find_by_identity(self, name_key: str, address_key: str) -> Optional[Lead]:
        """Get lead by normalized identity key."""
        with self.session_factory() as session:
            return (
                session.query(Lead)
                .filter(Lead.name_key == name_key, Lead.address_key == (address_key or ""))
                .first()
            )

    def get_unscored(self, limit: Optional[int] = None) -> List[Lead]:
        """Get leads that have never been scored, oldest first."""
        with self.session_factory() as session:
            query = session.query(Lead).filter(Lead.lead_score.is_(None)).order_by(Lead.id)
            if limit:
                query = query.limit(limit)
            return query.all()

    def get_auto_contact_candidates(self, min_score: int, limit: Optional[int] = None) -> List[Lead]:
        """Get scored leads at or above the threshold that were never contacted."""
        with self.session_factory() as session:
            query = (
                session.query(Lead)
                .filter(Lead.lead_score >= min_score)
                .filter(Lead.status == LeadStatus.NEW)
                .filter(Lead.contacted_at.is_(None))
                .filter(Lead.outreach_scheduled_at.is_(None))
                .order_by(Lead.lead_score.desc(), Lead.id)
            )
            if limit:
                query = query.limit(limit)
            return query.all()

    def update_fields(self, lead_id: int, **fields) -> bool:
        """Unconditionally update lead fields. Returns False when the lead is gone."""
        values = dict(fields)
        values["version"] = Lead.version + 1
        values["updated_at"] = utcnow()
        with self.session_factory() as session:
            result = session.execute(update(Lead).where(Lead.id == lead_id).values(**values))
            session.commit()
            return result.rowcount == 1

    def apply_update(
        self,
        lead_id: int,
        expected_version: int,
        changes: Dict,
        event: Optional[Dict] = None,
        note: Optional[str] = None,
    ) -> UpdateOutcome:
        """
        Atomically update a lead if its version still matches.

        When ``event`` is given it is appended to the engagement log in the same
        transaction; an already-recorded event makes the whole update a no-op.

        Args:
            lead_id: Lead id
            expected_version: Version the caller read
            changes: Column values to write
            event: Optional engagement event row (dedupe_key, kind, occurred_at, ...)
            note: Optional activity note

        Returns:
            UpdateOutcome
        """
        with self.session_factory() as session:
            if event is not None:
                session.add(EngagementEventRecord(lead_id=lead_id, **event))
                try:
                    session.flush()
                except IntegrityError:
                    session.rollback()
                    return UpdateOutcome.DUPLICATE

            values = dict(changes)
            values["version"] = expected_version + 1
            values["updated_at"] = utcnow()
            result = session.execute(
                update(Lead)
                .where(Lead.id == lead_id, Lead.version == expected_version)
                .values(**values)
            )
            if result.rowcount != 1:
                session.rollback()
                return UpdateOutcome.CONFLICT

            if note:
                session.add(LeadActivity(lead_id=lead_id, note=note))
            session.commit()
            return UpdateOutcome.APPLIED

    def count_leads(self) -> int:
        """Total number of lead records."""
        with self.session_factory() as session:
            return session.query(Lead).count()

    # Message methods
    def record_message(self, lead_id: int, message_id: str, template_type: str, recipient: str, subject: str = None) -> OutboundMessage:
        """Record a message handed to the transport."""
        with self.session_factory() as session:
            message = OutboundMessage(
                lead_id=lead_id,
                message_id=message_id,
                template_type=template_type,
                recipient=recipient,
                subject=subject,
            )
            session.add(message)
            session.commit()
            return message

    def find_message(self, message_id: str) -> Optional[OutboundMessage]:
        """Resolve a transport message id."""
        with self.session_factory() as session:
            return session.query(OutboundMessage).filter(OutboundMessage.message_id == message_id).first()

    def find_sent(self, lead_id: int, template_type: str) -> Optional[OutboundMessage]:
        """Message of this template already handed to the transport for a lead."""
        with self.session_factory() as session:
            return (
                session.query(OutboundMessage)
                .filter(OutboundMessage.lead_id == lead_id, OutboundMessage.template_type == template_type)
                .order_by(OutboundMessage.id)
                .first()
            )

    def get_messages(self, lead_id: int) -> List[OutboundMessage]:
        """Messages sent to a lead, oldest first."""
        with self.session_factory() as session:
            return (
                session.query(OutboundMessage)
                .filter(OutboundMessage.lead_id == lead_id)
                .order_by(OutboundMessage.id)
                .all()
            )

    # Activity / engagement log
    def add_activity(self, lead_id: int, note: str) -> None:
        """Append an activity note."""
        with self.session_factory() as session:
            session.add(LeadActivity(lead_id=lead_id, note=note))
            session.commit()

    def get_activity(self, lead_id: int) -> List[str]:
        """Activity notes for a lead, oldest first."""
        with self.session_factory() as session:
            rows = session.query(LeadActivity).filter(LeadActivity.lead_id == lead_id).order_by(LeadActivity.id).all()
            return [row.note for row in rows]

    def get_engagement_events(self, lead_id: int) -> List[EngagementEventRecord]:
        """Applied engagement events for a lead, oldest first."""
        with self.session_factory() as session:
            return (
                session.query(EngagementEventRecord)
                .filter(EngagementEventRecord.lead_id == lead_id)
                .order_by(EngagementEventRecord.id)
                .all()
            )
