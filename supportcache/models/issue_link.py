"""Ticket <-> issue tracker link model"""
from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from supportcache.models.base import Base, utcnow


class IssueLink(Base):
    """A ticket reference discovered in an issue tracker item"""

    __tablename__ = "issue_links"
    __table_args__ = (
        UniqueConstraint("ticket_id", "repo", "issue_number", name="uq_issue_links_ticket_repo_issue"),
    )

    id = Column(Integer, primary_key=True, index=True)

    ticket_id = Column(Integer, nullable=False, index=True)
    repo = Column(String, nullable=False)
    issue_number = Column(Integer, nullable=False)

    # Tracker state as of the most recent crawl (free text)
    board = Column(String, nullable=True)
    status = Column(String, nullable=True)
    sprint = Column(String, nullable=True)
    milestone = Column(String, nullable=True)
    release_version = Column(String, nullable=True)
    url = Column(String, nullable=True)
    tracker_updated_at = Column(DateTime, nullable=True)

    last_seen_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<IssueLink(ticket={self.ticket_id}, issue={self.repo}#{self.issue_number})>"
