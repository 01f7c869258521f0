"""Database models"""

from supportcache.models.assignment import Assignment, AssignmentRole
from supportcache.models.base import Base
from supportcache.models.issue_link import IssueLink
from supportcache.models.organization import Organization
from supportcache.models.sync_status import PhaseState, PhaseStatus, SyncMetadata
from supportcache.models.ticket import Ticket, TicketPriority, TicketStatus, TicketType

__all__ = [
    "Base",
    "Organization",
    "Ticket",
    "TicketStatus",
    "TicketPriority",
    "TicketType",
    "Assignment",
    "AssignmentRole",
    "IssueLink",
    "PhaseStatus",
    "PhaseState",
    "SyncMetadata",
]
