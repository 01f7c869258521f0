"""Organization model"""

from sqlalchemy import JSON, Column, DateTime, Integer, String

from supportcache.models.base import Base, utcnow


class Organization(Base):
    """A customer organization as recorded in the ticketing system"""

    __tablename__ = "organizations"

    # Ticketing system id
    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String, nullable=False, index=True)
    domain_names = Column(JSON, nullable=False, default=list)

    # CRM account id read from the organization's own custom fields; authoritative for identity.
    crm_account_id = Column(String, nullable=True, index=True)
    # Display name derived during assignment matching; never used for identity.
    crm_account_name = Column(String, nullable=True)

    # Source timestamps
    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)

    cached_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Organization(id={self.id}, name='{self.name}')>"
