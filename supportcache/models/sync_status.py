"""Sync status ledger and sync metadata models"""
from sqlalchemy import Column, DateTime, Integer, String, Text, Enum
import enum
from supportcache.models.base import Base, utcnow


class PhaseState(str, enum.Enum):
    """Terminal (or running) state of a sync phase"""
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    ERROR = "error"


class PhaseStatus(Base):
    """One row per sync phase; written at phase start and phase end"""

    __tablename__ = "sync_status"

    phase = Column(String, primary_key=True)
    last_run_at = Column(DateTime, nullable=False, default=utcnow)
    state = Column(Enum(PhaseState), nullable=False)
    record_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    def __repr__(self):
        return f"<PhaseStatus(phase={self.phase}, state={self.state}, count={self.record_count})>"


class SyncMetadata(Base):
    """Key/value checkpoints (e.g. the last ticket sync end time)"""

    __tablename__ = "sync_metadata"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SyncMetadata({self.key}={self.value})>"
