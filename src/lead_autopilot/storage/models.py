"""Database models for Lead Autopilot."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LeadStatus(str, Enum):
    """Lead lifecycle status."""

    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    CONVERTED = "converted"
    LOST = "lost"


class LeadTier(str, Enum):
    """Coarse bucket derived from the total score."""

    HOT = "Hot Lead"
    WARM = "Warm Lead"
    COLD = "Cold Lead"
    LOW_PRIORITY = "Low Priority"


class JobStatus(str, Enum):
    """Job state inside a work queue."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PENDING_JOB_STATUSES = (JobStatus.WAITING, JobStatus.DELAYED)


class EngagementKind(str, Enum):
    """Engagement event kind reported by the transport."""

    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    COMPLAINED = "complained"


class Lead(Base):
    """Durable lead record."""

    __tablename__ = "leads"
    __table_args__ = (UniqueConstraint("name_key", "address_key", name="uq_leads_identity"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_name = Column(String(255), nullable=False)
    name_key = Column(String(255), nullable=False, index=True)
    address_key = Column(String(500), nullable=False, default="")
    address = Column(Text, nullable=True)
    phone = Column(String(64), nullable=True)
    email = Column(String(255), nullable=True)
    website = Column(String(500), nullable=True)
    industry = Column(String(100), nullable=True, index=True)
    location = Column(String(255), nullable=True)
    rating = Column(Float, nullable=True)
    review_count = Column(Integer, nullable=True)
    data_source = Column(String(50), nullable=False)
    source_url = Column(Text, nullable=True)
    estimated_size = Column(String(32), nullable=True)
    local_competitor_count = Column(Integer, nullable=True)

    # Enrichment blocks, each independently nullable
    website_quality = Column(JSON, nullable=True)
    seo_data = Column(JSON, nullable=True)
    ad_presence = Column(JSON, nullable=True)
    social_presence = Column(JSON, nullable=True)

    lead_score = Column(Integer, nullable=True, index=True)
    tier = Column(String(32), nullable=True, index=True)
    component_scores = Column(JSON, nullable=True)
    recommendations = Column(JSON, nullable=True)

    status = Column(SQLEnum(LeadStatus), nullable=False, default=LeadStatus.NEW, index=True)
    engagement_score = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)

    scraped_at = Column(DateTime, nullable=False, default=utcnow)
    scored_at = Column(DateTime, nullable=True)
    outreach_scheduled_at = Column(DateTime, nullable=True)
    contacted_at = Column(DateTime, nullable=True)
    first_opened_at = Column(DateTime, nullable=True)
    last_engaged_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Lead(id={self.id}, name={self.company_name}, status={self.status}, score={self.lead_score})>"


class Job(Base):
    """Unit of work owned by a named queue."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_name = Column(String(50), nullable=False, index=True)
    job_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    group_key = Column(String(100), nullable=True, index=True)  # lead id for lead-scoped jobs
    priority = Column(Integer, nullable=False, default=5)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.WAITING, index=True)
    run_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True, index=True)

    def __repr__(self):
        return f"<Job(id={self.id}, queue={self.queue_name}, type={self.job_type}, status={self.status})>"


class TriggerState(Base):
    """Last boundary a recurring trigger fired for."""

    __tablename__ = "trigger_state"

    name = Column(String(100), primary_key=True)
    last_fired_at = Column(DateTime, nullable=True)
    last_job_id = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class EngagementEventRecord(Base):
    """Append-only log of applied engagement events."""

    __tablename__ = "engagement_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dedupe_key = Column(String(255), nullable=False, unique=True)
    lead_id = Column(Integer, nullable=False, index=True)
    kind = Column(SQLEnum(EngagementKind), nullable=False)
    occurred_at = Column(DateTime, nullable=False)
    url = Column(Text, nullable=True)
    message_id = Column(String(255), nullable=True)
    recorded_at = Column(DateTime, nullable=False, default=utcnow)


class OutboundMessage(Base):
    """Message handed to the transport, keyed by its transport message id."""

    __tablename__ = "outbound_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, nullable=False, index=True)
    message_id = Column(String(255), nullable=False, unique=True)
    template_type = Column(String(50), nullable=False)
    subject = Column(Text, nullable=True)
    recipient = Column(String(255), nullable=False)
    sent_at = Column(DateTime, nullable=False, default=utcnow)


class LeadActivity(Base):
    """System-generated activity notes for a lead."""

    __tablename__ = "lead_activity"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, nullable=False, index=True)
    note = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


def create_database_session(database_url: str):
    """
    Create database engine and session factory.

    Args:
        database_url: SQLAlchemy connection string (PostgreSQL or SQLite)

    Returns:
        SessionLocal: SQLAlchemy session factory
    """
    engine_kwargs = {"echo": False}
    if database_url.startswith("sqlite"):
        # Worker threads share the engine
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url:
            engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **engine_kwargs)

    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    return SessionLocal


def to_dict(row) -> Optional[dict]:
    """Detached column snapshot of an ORM row."""
    if row is None:
        return None
    return {column.name: getattr(row, column.name) for column in row.__table__.columns}
