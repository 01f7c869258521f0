"""Cache store: transactional reads and writes over the local database"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from supportcache.models import (
    Assignment,
    AssignmentRole,
    IssueLink,
    Organization,
    PhaseState,
    PhaseStatus,
    SyncMetadata,
    Ticket,
    TicketPriority,
    TicketStatus,
)
from supportcache.models.base import SessionLocal, utcnow

logger = logging.getLogger(__name__)

# Columns an organization sync owns. crm_account_name is reconciliation output and is
# deliberately absent so an organization refresh never wipes it.
ORGANIZATION_FIELDS = ("id", "name", "domain_names", "crm_account_id", "created_at", "updated_at")

TICKET_FIELDS = (
    "id",
    "organization_id",
    "subject",
    "status",
    "priority",
    "requester_id",
    "assignee_id",
    "tags",
    "product",
    "module",
    "ticket_type",
    "workflow_status",
    "issue_subtype",
    "is_escalated",
    "created_at",
    "updated_at",
)

ASSIGNMENT_FIELDS = ("account_id", "account_name", "owner_id", "owner_name", "owner_email", "organization_id")

ISSUE_LINK_FIELDS = (
    "ticket_id",
    "repo",
    "issue_number",
    "board",
    "status",
    "sprint",
    "milestone",
    "release_version",
    "url",
    "tracker_updated_at",
)

_IN_CHUNK = 500


def _chunks(values: List[Any], size: int = _IN_CHUNK) -> Iterable[List[Any]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _project(row: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
    """Full snapshot of `fields`; absent keys become None rather than keeping old values."""
    return {field: row.get(field) for field in fields}


class CacheStore:
    """Store operations shared by the sync engine and the read API.

    Every write runs in its own transaction. Readers never take locks; a reader
    hitting the store mid-sync sees whatever phases have committed so far.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    # ------------------------------------------------------------------ helpers

    def _replace_by_id(self, db, model, rows: List[Dict[str, Any]]) -> int:
        """Insert new rows and overwrite every given column of existing ones."""
        by_id: Dict[int, Dict[str, Any]] = {}
        for row in rows:
            by_id[row["id"]] = row

        existing: Dict[int, Any] = {}
        for chunk in _chunks(list(by_id)):
            for obj in db.query(model).filter(model.id.in_(chunk)):
                existing[obj.id] = obj

        for row_id, row in by_id.items():
            obj = existing.get(row_id)
            if obj is None:
                db.add(model(**row))
                continue
            for key, value in row.items():
                setattr(obj, key, value)
        return len(by_id)

    # ------------------------------------------------------------ organizations

    def upsert_organizations(self, rows: List[Dict[str, Any]]) -> int:
        """Upsert organizations in one transaction; returns the number of distinct rows."""
        snapshots = [_project(row, ORGANIZATION_FIELDS) for row in rows]
        for snap in snapshots:
            if snap["domain_names"] is None:
                snap["domain_names"] = []
        with self._session_factory.begin() as db:
            return self._replace_by_id(db, Organization, snapshots)

    def update_organization_crm_names(self, names: Dict[int, str]) -> int:
        """Set the derived CRM display name on each organization id in `names`."""
        if not names:
            return 0
        updated = 0
        with self._session_factory.begin() as db:
            for chunk in _chunks(list(names)):
                for org in db.query(Organization).filter(Organization.id.in_(chunk)):
                    org.crm_account_name = names[org.id]
                    updated += 1
        return updated

    def get_organizations(self) -> List[Organization]:
        with self._session_factory() as db:
            return db.query(Organization).order_by(Organization.name, Organization.id).all()

    def get_organization(self, org_id: int) -> Optional[Organization]:
        with self._session_factory() as db:
            return db.query(Organization).filter(Organization.id == org_id).first()

    def is_empty(self) -> bool:
        with self._session_factory() as db:
            return db.query(Organization.id).first() is None

    # ------------------------------------------------------------------ tickets

    def upsert_tickets(self, rows: List[Dict[str, Any]]) -> int:
        """Replace each ticket row wholesale (batch, one transaction)."""
        if not rows:
            return 0
        snapshots = []
        for row in rows:
            snap = _project(row, TICKET_FIELDS)
            snap["subject"] = snap["subject"] or ""
            snap["status"] = snap["status"] or TicketStatus.UNKNOWN
            snap["priority"] = snap["priority"] or TicketPriority.NORMAL
            snap["tags"] = list(snap["tags"] or [])
            snap["is_escalated"] = bool(snap["is_escalated"])
            snapshots.append(snap)
        with self._session_factory.begin() as db:
            return self._replace_by_id(db, Ticket, snapshots)

    def get_tickets_by_organization(
        self, org_id: int, status: Optional[TicketStatus] = None
    ) -> List[Ticket]:
        with self._session_factory() as db:
            query = db.query(Ticket).filter(Ticket.organization_id == org_id)
            if status is not None:
                query = query.filter(Ticket.status == status)
            return query.order_by(Ticket.updated_at.desc(), Ticket.id.desc()).all()

    def get_ticket_ids(self) -> Set[int]:
        with self._session_factory() as db:
            return {row[0] for row in db.query(Ticket.id).all()}

    def get_ticket_stats(self, org_id: int) -> Dict[str, int]:
        """Ticket counts per lifecycle status for one organization, plus `total`."""
        stats = {status.value: 0 for status in TicketStatus if status is not TicketStatus.UNKNOWN}
        with self._session_factory() as db:
            rows = (
                db.query(Ticket.status, func.count(Ticket.id))
                .filter(Ticket.organization_id == org_id)
                .group_by(Ticket.status)
                .all()
            )
        total = 0
        for status, count in rows:
            stats[status.value] = count
            total += count
        stats["total"] = total
        return stats

    # -------------------------------------------------------------- assignments

    def replace_assignments(self, role: AssignmentRole, rows: List[Dict[str, Any]]) -> int:
        """Drop every row for `role` and insert `rows` (stale owners must not survive)."""
        by_account: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            by_account[row["account_id"]] = _project(row, ASSIGNMENT_FIELDS)

        with self._session_factory.begin() as db:
            db.query(Assignment).filter(Assignment.role == role).delete(synchronize_session=False)
            now = utcnow()
            for snap in by_account.values():
                snap["owner_id"] = snap["owner_id"] or ""
                snap["owner_name"] = snap["owner_name"] or ""
                snap["owner_email"] = snap["owner_email"] or ""
                db.add(Assignment(role=role, cached_at=now, **snap))
        return len(by_account)

    def get_assignments(self, role: Optional[AssignmentRole] = None) -> List[Assignment]:
        with self._session_factory() as db:
            query = db.query(Assignment)
            if role is not None:
                query = query.filter(Assignment.role == role)
            return query.order_by(Assignment.owner_name, Assignment.account_name).all()

    def get_portfolios(self, role: AssignmentRole) -> List[Dict[str, Any]]:
        """Owners with the organizations resolved to their accounts."""
        portfolios: Dict[str, Dict[str, Any]] = {}
        for row in self.get_assignments(role):
            if row.organization_id is None:
                continue
            key = row.owner_email.lower() or row.owner_id
            entry = portfolios.setdefault(
                key,
                {"owner_email": row.owner_email, "owner_name": row.owner_name, "organization_ids": []},
            )
            if row.organization_id not in entry["organization_ids"]:
                entry["organization_ids"].append(row.organization_id)
        return sorted(portfolios.values(), key=lambda p: p["owner_name"])

    # -------------------------------------------------------------- issue links

    def replace_issue_links(self, rows: List[Dict[str, Any]]) -> int:
        """Clear all links and insert `rows` in one transaction; first of each triple wins."""
        seen = set()
        snapshots = []
        for row in rows:
            key = (row["ticket_id"], row["repo"], row["issue_number"])
            if key in seen:
                continue
            seen.add(key)
            snapshots.append(_project(row, ISSUE_LINK_FIELDS))

        with self._session_factory.begin() as db:
            db.query(IssueLink).delete(synchronize_session=False)
            now = utcnow()
            for snap in snapshots:
                db.add(IssueLink(last_seen_at=now, **snap))
        return len(snapshots)

    def get_issue_links(self, ticket_id: Optional[int] = None) -> List[IssueLink]:
        with self._session_factory() as db:
            query = db.query(IssueLink)
            if ticket_id is not None:
                query = query.filter(IssueLink.ticket_id == ticket_id)
            return query.order_by(IssueLink.ticket_id, IssueLink.repo, IssueLink.issue_number).all()

    # ----------------------------------------------------------- status ledger

    def record_phase_status(
        self,
        phase: str,
        state: PhaseState,
        record_count: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        with self._session_factory.begin() as db:
            row = db.query(PhaseStatus).filter(PhaseStatus.phase == phase).first()
            if row is None:
                row = PhaseStatus(phase=phase)
                db.add(row)
            row.state = state
            row.record_count = record_count
            row.error_message = error_message
            row.last_run_at = utcnow()

    def get_phase_statuses(self) -> List[PhaseStatus]:
        with self._session_factory() as db:
            return db.query(PhaseStatus).order_by(PhaseStatus.phase).all()

    def get_phase_status(self, phase: str) -> Optional[PhaseStatus]:
        with self._session_factory() as db:
            return db.query(PhaseStatus).filter(PhaseStatus.phase == phase).first()

    def get_metadata(self, key: str) -> Optional[str]:
        with self._session_factory() as db:
            row = db.query(SyncMetadata).filter(SyncMetadata.key == key).first()
            return row.value if row else None

    def set_metadata(self, key: str, value: str) -> None:
        with self._session_factory.begin() as db:
            row = db.query(SyncMetadata).filter(SyncMetadata.key == key).first()
            if row is None:
                db.add(SyncMetadata(key=key, value=value))
            else:
                row.value = value

    # ------------------------------------------------------------------ utility

    def clear_all(self) -> None:
        with self._session_factory.begin() as db:
            for model in (IssueLink, Assignment, Ticket, Organization, PhaseStatus, SyncMetadata):
                db.query(model).delete(synchronize_session=False)
        logger.info("Cleared all cached data")
