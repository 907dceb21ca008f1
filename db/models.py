"""SQLAlchemy 2.0 ORM models.

Tables:
  - leads: one row per (email, lead_source), optimistic-locked by ``version``
  - status_history: append-only audit of status transitions
  - sales_team: roster keyed by chat-platform user id
  - campaign_events: delivered/opened/click events, one row per (event_id, event)
"""
import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from utils.lead_id import generate_lead_uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class LeadStatus(str, enum.Enum):
    NEW = "new"
    CONTACTED = "contacted"
    CLOSED = "closed"
    LOST = "lost"
    UNREACHABLE = "unreachable"


TERMINAL_STATUSES = frozenset({LeadStatus.CLOSED, LeadStatus.LOST, LeadStatus.UNREACHABLE})

# Allowed status moves. Terminal statuses have no outgoing edges.
TRANSITIONS = {
    LeadStatus.NEW: frozenset({LeadStatus.CONTACTED}),
    LeadStatus.CONTACTED: TERMINAL_STATUSES,
}

_STATUS_CHECK = "status IN (" + ", ".join(f"'{s.value}'" for s in LeadStatus) + ")"


class Lead(Base):
    __tablename__ = "leads"
    __table_args__ = (
        UniqueConstraint("email", "lead_source", name="uq_leads_email_source"),
        CheckConstraint(_STATUS_CHECK, name="ck_leads_status"),
        CheckConstraint("version >= 1", name="ck_leads_version"),
    )

    id: Mapped[str] = mapped_column(String(41), primary_key=True, default=generate_lead_uuid)
    row_number: Mapped[Optional[int]] = mapped_column(Integer, unique=True)

    email: Mapped[str] = mapped_column(String(320), nullable=False)
    lead_source: Mapped[str] = mapped_column(String(120), nullable=False, default="unknown")
    customer_name: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(32))
    company: Mapped[Optional[str]] = mapped_column(String(255))
    job_title: Mapped[Optional[str]] = mapped_column(String(255))
    city: Mapped[Optional[str]] = mapped_column(String(120))
    website: Mapped[Optional[str]] = mapped_column(String(512))
    source: Mapped[Optional[str]] = mapped_column(String(64))
    campaign_id: Mapped[Optional[str]] = mapped_column(String(64))
    campaign_name: Mapped[Optional[str]] = mapped_column(String(255))
    email_subject: Mapped[Optional[str]] = mapped_column(String(512))
    contact_id: Mapped[Optional[str]] = mapped_column(String(64))
    event_id: Mapped[Optional[str]] = mapped_column(String(255))

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=LeadStatus.NEW.value)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64))
    owner_name: Mapped[Optional[str]] = mapped_column(String(255))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # AI enrichment; every field is optional
    industry: Mapped[Optional[str]] = mapped_column(String(120))
    company_type: Mapped[Optional[str]] = mapped_column(String(120))
    talking_point: Mapped[Optional[str]] = mapped_column(Text)
    registered_capital: Mapped[Optional[str]] = mapped_column(String(120))
    keywords: Mapped[Optional[list]] = mapped_column(JSON)
    confidence: Mapped[Optional[int]] = mapped_column(Integer)
    juristic_id: Mapped[Optional[str]] = mapped_column(String(32))
    sector_code: Mapped[Optional[str]] = mapped_column(String(32))
    province: Mapped[Optional[str]] = mapped_column(String(120))
    full_address: Mapped[Optional[str]] = mapped_column(Text)

    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    contacted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    lost_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    unreachable_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        data = {c.name: getattr(self, c.name) for c in self.__table__.columns}
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


class StatusHistory(Base):
    __tablename__ = "status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[str] = mapped_column(String(41), ForeignKey("leads.id"), nullable=False, index=True)
    from_status: Mapped[str] = mapped_column(String(16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    changed_by_id: Mapped[Optional[str]] = mapped_column(String(64))
    changed_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "changed_by_id": self.changed_by_id,
            "changed_by_name": self.changed_by_name,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class SalesTeamMember(Base):
    __tablename__ = "sales_team"
    __table_args__ = (
        CheckConstraint("role IN ('admin', 'sales')", name="ck_sales_team_role"),
        CheckConstraint("status IN ('active', 'inactive')", name="ck_sales_team_status"),
    )

    chat_user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(320), unique=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="sales")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin" and self.status == "active"

    def to_dict(self) -> dict:
        return {
            "chat_user_id": self.chat_user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class CampaignEventRecord(Base):
    """One delivered/opened/click event from the campaign provider."""

    __tablename__ = "campaign_events"
    __table_args__ = (UniqueConstraint("event_id", "event", name="uq_campaign_events_event"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[Optional[str]] = mapped_column(String(255))
    event: Mapped[str] = mapped_column(String(32), nullable=False)
    campaign_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    campaign_name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    url: Mapped[Optional[str]] = mapped_column(String(2048))
    tag: Mapped[Optional[str]] = mapped_column(String(255))
    event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "event": self.event,
            "campaign_id": self.campaign_id,
            "campaign_name": self.campaign_name,
            "email": self.email,
            "url": self.url,
            "tag": self.tag,
            "event_at": self.event_at.isoformat() if self.event_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
