"""Ticket model"""
import enum
from typing import Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, ForeignKey, Index, Integer, String

from supportcache.models.base import Base, utcnow


class TicketStatus(str, enum.Enum):
    """Ticket lifecycle status"""
    NEW = "new"
    OPEN = "open"
    PENDING = "pending"
    HOLD = "hold"
    SOLVED = "solved"
    CLOSED = "closed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "TicketStatus":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


ACTIVE_STATUSES = (TicketStatus.NEW, TicketStatus.OPEN, TicketStatus.PENDING, TicketStatus.HOLD)
TERMINAL_STATUSES = (TicketStatus.SOLVED, TicketStatus.CLOSED)


class TicketPriority(str, enum.Enum):
    """Ticket priority"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "TicketPriority":
        # Zendesk leaves priority empty on tickets nobody triaged; those count as normal.
        if not value:
            return cls.NORMAL
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


class TicketType(str, enum.Enum):
    """Coarse ticket classification"""
    BUG = "bug"
    FEATURE = "feature"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "TicketType":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.OTHER


class Ticket(Base):
    """Cached ticket; every sync replaces the whole row"""

    __tablename__ = "tickets"
    __table_args__ = (
        Index("ix_tickets_org_status", "organization_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=False)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True, index=True)

    subject = Column(String, nullable=False, default="")
    status = Column(Enum(TicketStatus), nullable=False, index=True)
    priority = Column(Enum(TicketPriority), nullable=False, default=TicketPriority.NORMAL)
    requester_id = Column(Integer, nullable=True)
    assignee_id = Column(Integer, nullable=True)
    tags = Column(JSON, nullable=False, default=list)

    # Classification derived from custom fields (with tag/subject fallbacks)
    product = Column(String, nullable=True)
    module = Column(String, nullable=True)
    ticket_type = Column(Enum(TicketType), nullable=True)
    workflow_status = Column(String, nullable=True)
    issue_subtype = Column(String, nullable=True)
    is_escalated = Column(Boolean, nullable=False, default=False)

    # Source timestamps
    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True, index=True)

    cached_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Ticket(id={self.id}, status={self.status})>"
