"""CRM account owner assignment model"""
import enum
from typing import Optional

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String

from supportcache.models.base import Base, utcnow


class AssignmentRole(str, enum.Enum):
    """Owner role on a CRM account"""
    CUSTOMER_SUCCESS = "customer_success"
    PROJECT_MANAGER = "project_manager"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AssignmentRole":
        normalized = (value or "").strip().lower().replace("-", "_").replace(" ", "_")
        aliases = {"csm": cls.CUSTOMER_SUCCESS, "pm": cls.PROJECT_MANAGER}
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)

    @property
    def phase(self) -> str:
        """Name of the sync phase that owns this role's rows."""
        return "csm_assignments" if self is AssignmentRole.CUSTOMER_SUCCESS else "pm_assignments"


class Assignment(Base):
    """CRM account -> owner, resolved to at most one cached organization"""

    __tablename__ = "assignments"

    role = Column(Enum(AssignmentRole), primary_key=True)
    account_id = Column(String, primary_key=True)
    account_name = Column(String, nullable=False)

    owner_id = Column(String, nullable=False, default="")
    owner_name = Column(String, nullable=False, default="")
    owner_email = Column(String, nullable=False, default="", index=True)

    # NULL when no organization matched; that is an expected outcome.
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True, index=True)

    cached_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<Assignment(role={self.role}, account='{self.account_name}', org={self.organization_id})>"
