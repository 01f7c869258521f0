"""Sync phases: fetch from the sources, reconcile, and write back to the cache store"""

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from supportcache.config import Settings, split_csv
from supportcache.models import AssignmentRole, PhaseState, TicketPriority, TicketStatus
from supportcache.models.ticket import ACTIVE_STATUSES, TERMINAL_STATUSES
from supportcache.services.reconciliation import OrganizationRef, match_assignments, qbr_cutoff_date
from supportcache.services.store import CacheStore
from supportcache.services.ticket_fields import FieldMapping
from supportcache.services.ticket_refs import DEFAULT_MAX_TICKET_ID, extract_ticket_ids

logger = logging.getLogger(__name__)

PHASE_ORGANIZATIONS = "organizations"
PHASE_TICKETS = "tickets"
PHASE_ISSUE_LINKS = "issue_links"

TICKETS_END_TIME_KEY = "tickets_end_time"

# Organization custom-field keys that may hold the CRM account id, in priority order.
CRM_ID_FIELD_KEYS = ("salesforce_id", "salesforce_account_id", "sf_id", "sfid")

BASE_SEARCH_TERMS = ("ZD#", "ZD-", "zendesk.com/agent/tickets")


@dataclass
class SyncOptions:
    """Tuning knobs for the sync phases"""

    fetch_concurrency: int = 4
    open_ticket_max_pages: int = 50
    closed_ticket_max_pages: int = 30
    field_overrides: Dict[str, int] = field(default_factory=dict)
    board_specs: List[str] = field(default_factory=list)
    search_group: Optional[str] = None
    search_projects: List[str] = field(default_factory=list)
    ticket_url_host: Optional[str] = None
    max_ticket_id: int = DEFAULT_MAX_TICKET_ID

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncOptions":
        return cls(
            fetch_concurrency=max(1, settings.fetch_concurrency),
            open_ticket_max_pages=settings.open_ticket_max_pages,
            closed_ticket_max_pages=settings.closed_ticket_max_pages,
            field_overrides=settings.zendesk_field_overrides,
            board_specs=split_csv(settings.gitlab_boards),
            search_group=settings.gitlab_search_group,
            search_projects=split_csv(settings.gitlab_search_projects),
            ticket_url_host=settings.ticket_url_host,
            max_ticket_id=settings.max_ticket_id,
        )

    @property
    def search_terms(self) -> Tuple[str, ...]:
        if self.ticket_url_host:
            return BASE_SEARCH_TERMS + (self.ticket_url_host,)
        return BASE_SEARCH_TERMS


@dataclass
class RunCache:
    """Lookups shared by the phases of one run; discarded when the run ends."""

    organizations: Optional[List[OrganizationRef]] = None
    field_mapping: Optional[FieldMapping] = None
    ticket_ids: Optional[Set[int]] = None

    def invalidate_organizations(self):
        self.organizations = None

    def invalidate_tickets(self):
        self.ticket_ids = None


class SyncService:
    """Runs individual sync phases against the cache store"""

    def __init__(
        self,
        store: CacheStore,
        zendesk,
        salesforce=None,
        gitlab=None,
        options: Optional[SyncOptions] = None,
        today: Callable[[], date] = lambda: datetime.now(timezone.utc).date(),
    ):
        self.store = store
        self.zendesk = zendesk
        self.salesforce = salesforce
        # A client, or a zero-argument callable that builds one when the phase runs.
        self._gitlab = gitlab
        self.options = options or SyncOptions()
        self._today = today

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
        """Parse ISO8601 source timestamps into UTC tz-naive datetimes."""
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable timestamp {value!r}")
            return None
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
        return dt

    @staticmethod
    def _crm_account_id(organization: Dict[str, Any]) -> Optional[str]:
        fields = organization.get("organization_fields") or {}
        for key in CRM_ID_FIELD_KEYS:
            value = fields.get(key)
            if value:
                return str(value).strip()
        return None

    def _organizations(self, cache: RunCache) -> List[OrganizationRef]:
        if cache.organizations is None:
            cache.organizations = [
                OrganizationRef(id=o.id, name=o.name, crm_account_id=o.crm_account_id)
                for o in self.store.get_organizations()
            ]
        return cache.organizations

    def _field_mapping(self, cache: RunCache) -> FieldMapping:
        if cache.field_mapping is None:
            cache.field_mapping = self.zendesk.get_ticket_field_mapping(self.options.field_overrides)
        return cache.field_mapping

    def _ticket_ids(self, cache: RunCache) -> Set[int]:
        if cache.ticket_ids is None:
            cache.ticket_ids = self.store.get_ticket_ids()
        return cache.ticket_ids

    def _issue_tracker(self):
        if self._gitlab is not None and not hasattr(self._gitlab, "list_board_items"):
            self._gitlab = self._gitlab()
        return self._gitlab

    def _fetch_bounded(self, fn: Callable[[Any], Any], keys: Sequence[Any]) -> List[Any]:
        """Call fn(key) for every key with at most `fetch_concurrency` calls in flight.

        Results come back in key order.
        """
        if not keys:
            return []
        workers = min(self.options.fetch_concurrency, len(keys))
        if workers <= 1:
            return [fn(key) for key in keys]
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync-fetch") as pool:
            return list(pool.map(fn, keys))

    def _ticket_row(self, ticket: Dict[str, Any], mapping: FieldMapping) -> Dict[str, Any]:
        fields = self.zendesk.extract_custom_fields(ticket, mapping)
        return {
            "id": ticket["id"],
            "organization_id": ticket.get("organization_id"),
            "subject": ticket.get("subject") or "",
            "status": TicketStatus.parse(ticket.get("status")),
            "priority": TicketPriority.parse(ticket.get("priority")),
            "requester_id": ticket.get("requester_id"),
            "assignee_id": ticket.get("assignee_id"),
            "tags": list(ticket.get("tags") or []),
            "product": fields.product,
            "module": fields.module,
            "ticket_type": fields.ticket_type,
            "workflow_status": fields.workflow_status,
            "issue_subtype": fields.issue_subtype,
            "is_escalated": fields.is_escalated,
            "created_at": self._parse_timestamp(ticket.get("created_at")),
            "updated_at": self._parse_timestamp(ticket.get("updated_at")),
        }

    # ------------------------------------------------------------ organizations

    def sync_organizations(self, cache: Optional[RunCache] = None) -> int:
        """Fetch every organization and upsert it. Failures are recorded and re-raised."""
        cache = cache or RunCache()
        logger.info("Syncing organizations...")
        self.store.record_phase_status(PHASE_ORGANIZATIONS, PhaseState.IN_PROGRESS, 0)
        try:
            organizations = self.zendesk.list_organizations()
            rows = []
            for org in organizations:
                crm_id = self._crm_account_id(org)
                if crm_id:
                    logger.debug(f"  - {org.get('name')}: CRM ID = {crm_id}")
                rows.append(
                    {
                        "id": org["id"],
                        "name": org.get("name") or "",
                        "domain_names": list(org.get("domain_names") or []),
                        "crm_account_id": crm_id,
                        "created_at": self._parse_timestamp(org.get("created_at")),
                        "updated_at": self._parse_timestamp(org.get("updated_at")),
                    }
                )
            count = self.store.upsert_organizations(rows)
            cache.invalidate_organizations()
            self.store.record_phase_status(PHASE_ORGANIZATIONS, PhaseState.SUCCESS, count)
            with_crm_id = sum(1 for r in rows if r["crm_account_id"])
            logger.info(f"Synced {count} organizations ({with_crm_id} with CRM ID)")
            return count
        except Exception as e:
            self.store.record_phase_status(PHASE_ORGANIZATIONS, PhaseState.ERROR, 0, str(e))
            raise

    # ------------------------------------------------------------------ tickets

    def _delta_since(self) -> Optional[date]:
        raw = self.store.get_metadata(TICKETS_END_TIME_KEY)
        if not raw:
            return None
        try:
            return datetime.fromtimestamp(int(raw), tz=timezone.utc).date()
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid {TICKETS_END_TIME_KEY} metadata {raw!r}")
            return None

    def ticket_queries(self, delta: bool = False) -> List[Tuple[str, int]]:
        """(search query, max pages) for the open pass followed by the closed pass."""
        cutoff = qbr_cutoff_date(self._today())
        since = self._delta_since() if delta else None
        queries = []
        for status in ACTIVE_STATUSES:
            query = f"type:ticket status:{status.value}"
            if since:
                query += f" updated>={since.isoformat()}"
            queries.append((query, self.options.open_ticket_max_pages))
        closed_since = max(cutoff, since) if since else cutoff
        for status in TERMINAL_STATUSES:
            query = f"type:ticket status:{status.value} updated>={closed_since.isoformat()}"
            queries.append((query, self.options.closed_ticket_max_pages))
        return queries

    def sync_tickets(self, cache: Optional[RunCache] = None, delta: bool = False) -> int:
        """Open tickets in full plus solved/closed tickets inside the QBR window.

        Tickets of unknown organizations are dropped; a ticket seen by both passes is
        stored once, from its last-seen instance. Older cached tickets are left alone.
        """
        cache = cache or RunCache()
        logger.info(f"Syncing tickets ({'delta' if delta else 'full'} mode)...")
        self.store.record_phase_status(PHASE_TICKETS, PhaseState.IN_PROGRESS, 0)
        try:
            mapping = self._field_mapping(cache)
            org_ids = {org.id for org in self._organizations(cache)}
            queries = self.ticket_queries(delta)
            logger.info(f"  QBR cutoff date: {qbr_cutoff_date(self._today()).isoformat()}")

            results = self._fetch_bounded(
                lambda q: self.zendesk.search_tickets(q[0], max_pages=q[1]), queries
            )

            deduped: Dict[int, Dict[str, Any]] = {}
            fetched = 0
            for (query, _), tickets in zip(queries, results):
                relevant = [t for t in tickets if t.get("organization_id") in org_ids]
                fetched += len(tickets)
                logger.info(f"    {query}: {len(relevant)} relevant ({len(tickets)} total)")
                for ticket in relevant:
                    # Later passes win: a ticket that changed state mid-sync keeps its newest snapshot.
                    deduped.pop(ticket["id"], None)
                    deduped[ticket["id"]] = self._ticket_row(ticket, mapping)

            rows = list(deduped.values())
            self.store.upsert_tickets(rows)
            cache.invalidate_tickets()
            self.store.set_metadata(TICKETS_END_TIME_KEY, str(int(datetime.now(timezone.utc).timestamp())))

            statuses = Counter(row["status"].value for row in rows)
            orgs_touched = len({row["organization_id"] for row in rows})
            logger.info(f"  Tickets distributed across {orgs_touched} organizations")
            logger.info(f"  Status breakdown: {dict(statuses)}")
            logger.info(f"Synced {len(rows)} tickets ({fetched} fetched, {fetched - len(rows)} filtered or duplicate)")

            self.store.record_phase_status(PHASE_TICKETS, PhaseState.SUCCESS, len(rows))
            return len(rows)
        except Exception as e:
            self.store.record_phase_status(PHASE_TICKETS, PhaseState.ERROR, 0, str(e))
            raise

    def refresh_organization_tickets(
        self, org_ids: Iterable[int], cache: Optional[RunCache] = None
    ) -> Dict[int, int]:
        """Refetch all tickets of specific organizations (bounded parallel fan-out).

        An organization whose fetch fails contributes no tickets; the others are still stored.
        """
        cache = cache or RunCache()
        org_ids = list(org_ids)
        mapping = self._field_mapping(cache)
        known = {org.id for org in self._organizations(cache)}
        targets = [org_id for org_id in dict.fromkeys(org_ids) if org_id in known]
        for org_id in set(org_ids) - known:
            logger.warning(f"Organization {org_id} is not cached; skipping ticket refresh")

        def fetch(org_id: int) -> List[Dict[str, Any]]:
            try:
                return self.zendesk.get_tickets_by_organization(org_id)
            except Exception as e:
                logger.error(f"Failed to fetch tickets for organization {org_id}: {e}")
                return []

        counts: Dict[int, int] = {}
        rows: Dict[int, Dict[str, Any]] = {}
        for org_id, tickets in zip(targets, self._fetch_bounded(fetch, targets)):
            owned = [t for t in tickets if t.get("organization_id") == org_id]
            counts[org_id] = len(owned)
            for ticket in owned:
                rows[ticket["id"]] = self._ticket_row(ticket, mapping)
        self.store.upsert_tickets(list(rows.values()))
        cache.invalidate_tickets()
        logger.info(f"Refreshed tickets for {len(targets)} organizations: {counts}")
        return counts

    # -------------------------------------------------------------- assignments

    def sync_assignments(self, role: AssignmentRole, cache: Optional[RunCache] = None) -> int:
        """Match CRM owner assignments for `role` to organizations and replace the role's rows."""
        if self.salesforce is None:
            logger.info(f"CRM not configured, skipping {role.phase}")
            return 0

        cache = cache or RunCache()
        logger.info(f"Syncing {role.value} assignments from CRM...")
        self.store.record_phase_status(role.phase, PhaseState.IN_PROGRESS, 0)
        try:
            assignments = self.salesforce.list_account_owner_assignments(role)
            organizations = self._organizations(cache)
            with_crm_id = sum(1 for org in organizations if org.crm_account_id)
            logger.info(f"Matching using {with_crm_id} orgs with CRM ID, {len(organizations)} total orgs")

            result = match_assignments(assignments, organizations)
            self.store.update_organization_crm_names(result.crm_names)
            count = self.store.replace_assignments(role, result.rows)

            logger.info(f"Synced {count} {role.value} assignments:")
            logger.info(f"  - {result.matched_by_id} matched by CRM ID")
            logger.info(f"  - {result.matched_by_name} matched by name (fallback)")
            logger.info(f"  - {result.additional_orgs_mapped} additional orgs mapped to CRM accounts")
            logger.info(f"  - {result.unmatched} unmatched")

            self.store.record_phase_status(role.phase, PhaseState.SUCCESS, count)
            return count
        except Exception as e:
            self.store.record_phase_status(role.phase, PhaseState.ERROR, 0, str(e))
            raise

    # -------------------------------------------------------------- issue links

    def _links_from_items(self, items: Iterable[Any]) -> List[Dict[str, Any]]:
        """One link per (ticket, repo, issue); the first occurrence wins."""
        links: List[Dict[str, Any]] = []
        seen = set()
        for item in items:
            ticket_ids = extract_ticket_ids(
                item.text,
                ticket_url_host=self.options.ticket_url_host,
                max_ticket_id=self.options.max_ticket_id,
            )
            for ticket_id in ticket_ids:
                key = (ticket_id, item.repo, item.issue_number)
                if key in seen:
                    continue
                seen.add(key)
                links.append(
                    {
                        "ticket_id": ticket_id,
                        "repo": item.repo,
                        "issue_number": item.issue_number,
                        "board": item.board,
                        "status": item.status,
                        "sprint": item.sprint,
                        "milestone": item.milestone,
                        "release_version": item.release,
                        "url": item.url,
                        "tracker_updated_at": self._parse_timestamp(item.updated_at),
                    }
                )
        return links

    def sync_issue_links(self, cache: Optional[RunCache] = None) -> int:
        """Rebuild ticket <-> issue links from board items and issue search."""
        if self._gitlab is None:
            logger.info("Issue tracker not configured, skipping issue link sync")
            return 0

        cache = cache or RunCache()
        logger.info("Syncing issue links (boards + issue search)...")
        self.store.record_phase_status(PHASE_ISSUE_LINKS, PhaseState.IN_PROGRESS, 0)
        try:
            tracker = self._issue_tracker()
            board_items = tracker.list_board_items(self.options.board_specs)
            search_items = tracker.search_issues(
                self.options.search_terms,
                group=self.options.search_group,
                projects=self.options.search_projects or None,
            )
            links = self._links_from_items(list(board_items) + list(search_items))

            known = self._ticket_ids(cache)
            valid = [link for link in links if link["ticket_id"] in known]
            count = self.store.replace_issue_links(valid)

            logger.info(
                f"Synced {count} issue links ({len(links) - len(valid)} referencing uncached tickets filtered)"
            )
            self.store.record_phase_status(PHASE_ISSUE_LINKS, PhaseState.SUCCESS, count)
            return count
        except Exception as e:
            self.store.record_phase_status(PHASE_ISSUE_LINKS, PhaseState.ERROR, 0, str(e))
            raise

    def close(self):
        # An unresolved tracker factory never opened a session.
        tracker = self._gitlab if hasattr(self._gitlab, "list_board_items") else None
        for client in (self.zendesk, self.salesforce, tracker):
            close = getattr(client, "close", None)
            if close is not None:
                close()
