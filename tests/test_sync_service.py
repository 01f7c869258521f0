import threading
import time
import unittest
from datetime import date, datetime, timezone

from store_support import make_store
from supportcache.exceptions import SourceUnavailableError
from supportcache.models import AssignmentRole, PhaseState, Ticket, TicketStatus
from supportcache.services.gitlab_client import TrackerItem
from supportcache.services.salesforce_client import AccountOwnerAssignment
from supportcache.services.sync_service import RunCache, SyncOptions, SyncService
from supportcache.services.ticket_fields import FieldMapping, extract_custom_fields


def _ticket(ticket_id, org_id, status="open", subject="Login broken", updated_at="2026-02-01T10:00:00Z"):
    return {
        "id": ticket_id,
        "organization_id": org_id,
        "subject": subject,
        "status": status,
        "priority": "high",
        "tags": ["payroll"],
        "created_at": "2026-01-01T00:00:00Z",
        "updated_at": updated_at,
    }


class _FakeZendesk:
    def __init__(self, organizations=None, searches=None, org_tickets=None):
        self.organizations = organizations or []
        self.searches = searches or {}
        self.org_tickets = org_tickets or {}
        self.queries = []
        self.field_mapping_calls = 0
        self._lock = threading.Lock()

    def list_organizations(self):
        return self.organizations

    def search_tickets(self, query, max_pages=10):
        with self._lock:
            self.queries.append((query, max_pages))
        result = self.searches.get(query, [])
        if isinstance(result, Exception):
            raise result
        return result

    def get_tickets_by_organization(self, org_id):
        result = self.org_tickets.get(org_id, [])
        if isinstance(result, Exception):
            raise result
        return result

    def get_ticket_field_mapping(self, overrides=None):
        self.field_mapping_calls += 1
        return FieldMapping()

    extract_custom_fields = staticmethod(extract_custom_fields)


class _FakeSalesforce:
    def __init__(self, assignments):
        self.assignments = assignments

    def list_account_owner_assignments(self, role):
        if isinstance(self.assignments, Exception):
            raise self.assignments
        return self.assignments.get(role, [])


class _FakeTracker:
    def __init__(self, board_items=None, search_items=None):
        self.board_items = board_items or []
        self.search_items = search_items or []
        self.search_calls = []

    def list_board_items(self, board_specs):
        return self.board_items

    def search_issues(self, terms, group=None, projects=None):
        self.search_calls.append((tuple(terms), group, projects))
        return self.search_items


def _item(number, text, status="Open", board="(No Board)"):
    return TrackerItem(
        repo="acme/app",
        issue_number=number,
        title=text,
        body="",
        status=status,
        sprint="Sprint 4",
        milestone="2026.1",
        release="5.2",
        url=f"https://gitlab.example.com/acme/app/-/issues/{number}",
        updated_at="2026-02-03T04:05:06.000Z",
        board=board,
    )


class _InFlightZendesk(_FakeZendesk):
    """Counts how many source calls overlap."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.in_flight = 0
        self.max_in_flight = 0

    def _track(self, fn):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(0.05)
            return fn()
        finally:
            with self._lock:
                self.in_flight -= 1

    def search_tickets(self, query, max_pages=10):
        fetch = super().search_tickets
        return self._track(lambda: fetch(query, max_pages))

    def get_tickets_by_organization(self, org_id):
        fetch = super().get_tickets_by_organization
        return self._track(lambda: fetch(org_id))


ORGS = [
    {"id": 1, "name": "Acme", "organization_fields": {"salesforce_id": "001A"}},
    {"id": 2, "name": "Globex", "organization_fields": {}},
]


class SyncServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.store = make_store()

    def make_service(self, zendesk, salesforce=None, gitlab=None, **options):
        return SyncService(
            self.store,
            zendesk,
            salesforce=salesforce,
            gitlab=gitlab,
            options=SyncOptions(**options),
            today=lambda: date(2026, 2, 10),
        )


class OrganizationPhaseTests(SyncServiceTestCase):
    def test_crm_id_keys_in_priority_order(self):
        zendesk = _FakeZendesk(
            organizations=[
                {"id": 1, "name": "Acme", "organization_fields": {"sf_id": "SF", "salesforce_account_id": "SFA"}},
                {"id": 2, "name": "Globex", "organization_fields": {"salesforce_id": None, "sfid": " 001G "}},
                {"id": 3, "name": "Initech", "organization_fields": None},
            ]
        )
        count = self.make_service(zendesk).sync_organizations()

        self.assertEqual(count, 3)
        self.assertEqual(self.store.get_organization(1).crm_account_id, "SFA")
        self.assertEqual(self.store.get_organization(2).crm_account_id, "001G")
        self.assertIsNone(self.store.get_organization(3).crm_account_id)
        status = self.store.get_phase_status("organizations")
        self.assertEqual((status.state, status.record_count), (PhaseState.SUCCESS, 3))

    def test_failure_is_recorded_and_raised(self):
        zendesk = _FakeZendesk()
        zendesk.list_organizations = lambda: (_ for _ in ()).throw(SourceUnavailableError("zendesk", "down"))

        with self.assertRaises(SourceUnavailableError):
            self.make_service(zendesk).sync_organizations()
        status = self.store.get_phase_status("organizations")
        self.assertEqual(status.state, PhaseState.ERROR)
        self.assertIn("down", status.error_message)


class TicketPhaseTests(SyncServiceTestCase):
    def setUp(self):
        super().setUp()
        self.make_service(_FakeZendesk(organizations=ORGS)).sync_organizations()

    def test_queries_cover_open_statuses_and_closed_window(self):
        zendesk = _FakeZendesk()
        self.make_service(zendesk, open_ticket_max_pages=50, closed_ticket_max_pages=30).sync_tickets()

        self.assertEqual(
            sorted(zendesk.queries),
            sorted(
                [
                    ("type:ticket status:new", 50),
                    ("type:ticket status:open", 50),
                    ("type:ticket status:pending", 50),
                    ("type:ticket status:hold", 50),
                    ("type:ticket status:solved updated>=2025-07-01", 30),
                    ("type:ticket status:closed updated>=2025-07-01", 30),
                ]
            ),
        )

    def test_filters_unknown_organizations_and_keeps_last_seen_duplicate(self):
        zendesk = _FakeZendesk(
            searches={
                "type:ticket status:open": [
                    _ticket(10, 1, subject="before"),
                    _ticket(20, 999),
                    _ticket(30, None),
                ],
                "type:ticket status:solved updated>=2025-07-01": [
                    _ticket(10, 1, status="solved", subject="after"),
                    _ticket(11, 2, status="solved"),
                ],
            }
        )
        count = self.make_service(zendesk).sync_tickets()

        self.assertEqual(count, 2)
        self.assertEqual(self.store.get_ticket_ids(), {10, 11})
        [ticket] = self.store.get_tickets_by_organization(1)
        self.assertEqual(ticket.status, TicketStatus.SOLVED)
        self.assertEqual(ticket.subject, "after")
        self.assertEqual(ticket.updated_at, datetime(2026, 2, 1, 10, 0, 0))
        self.assertEqual(ticket.product, "payroll")
        self.assertIsNotNone(self.store.get_metadata("tickets_end_time"))
        status = self.store.get_phase_status("tickets")
        self.assertEqual((status.state, status.record_count), (PhaseState.SUCCESS, 2))

    def _ticket_snapshot(self):
        columns = [c.name for c in Ticket.__table__.columns if c.name != "cached_at"]
        with self.store._session_factory() as db:
            return {t.id: {name: getattr(t, name) for name in columns} for t in db.query(Ticket).all()}

    def test_rerun_is_idempotent(self):
        escalated = dict(_ticket(11, 2, status="hold"), tags=["escalated", "payroll"], assignee_id=7)
        zendesk = _FakeZendesk(
            searches={
                "type:ticket status:open": [_ticket(10, 1)],
                "type:ticket status:hold": [escalated],
                "type:ticket status:solved updated>=2025-07-01": [_ticket(12, 1, status="solved")],
            }
        )
        service = self.make_service(zendesk)
        service.sync_tickets()
        first = self._ticket_snapshot()
        service.sync_tickets()
        second = self._ticket_snapshot()

        self.assertEqual(set(first), {10, 11, 12})
        self.assertEqual(first, second)

    def test_ticket_searches_respect_fetch_concurrency(self):
        zendesk = _InFlightZendesk()
        self.make_service(zendesk, fetch_concurrency=2).sync_tickets()

        self.assertEqual(len(zendesk.queries), 6)
        self.assertEqual(zendesk.max_in_flight, 2)

    def test_single_worker_fetches_serially(self):
        zendesk = _InFlightZendesk()
        self.make_service(zendesk, fetch_concurrency=1).sync_tickets()
        self.assertEqual(zendesk.max_in_flight, 1)

    def test_organization_refresh_respects_fetch_concurrency(self):
        organizations = [{"id": i, "name": f"Org {i}", "organization_fields": {}} for i in range(1, 7)]
        self.make_service(_FakeZendesk(organizations=organizations)).sync_organizations()
        zendesk = _InFlightZendesk(org_tickets={i: [_ticket(100 + i, i)] for i in range(1, 7)})

        counts = self.make_service(zendesk, fetch_concurrency=3).refresh_organization_tickets(range(1, 7))

        self.assertEqual(counts, {i: 1 for i in range(1, 7)})
        self.assertEqual(zendesk.max_in_flight, 3)

    def test_delta_mode_narrows_queries(self):
        since = datetime(2025, 12, 1, 8, 0, tzinfo=timezone.utc)
        self.store.set_metadata("tickets_end_time", str(int(since.timestamp())))
        zendesk = _FakeZendesk()
        self.make_service(zendesk).sync_tickets(delta=True)

        queries = {q for q, _ in zendesk.queries}
        self.assertIn("type:ticket status:open updated>=2025-12-01", queries)
        self.assertIn("type:ticket status:closed updated>=2025-12-01", queries)

    def test_source_failure_marks_phase_error(self):
        zendesk = _FakeZendesk(
            searches={"type:ticket status:pending": SourceUnavailableError("zendesk", "boom", status_code=500)}
        )
        with self.assertRaises(SourceUnavailableError):
            self.make_service(zendesk).sync_tickets()
        self.assertEqual(self.store.get_phase_status("tickets").state, PhaseState.ERROR)

    def test_field_mapping_is_detected_once_per_run(self):
        zendesk = _FakeZendesk(org_tickets={1: [_ticket(10, 1)]})
        service = self.make_service(zendesk)
        cache = RunCache()
        service.sync_tickets(cache)
        service.refresh_organization_tickets([1], cache)
        self.assertEqual(zendesk.field_mapping_calls, 1)

    def test_refresh_tolerates_failing_organization(self):
        zendesk = _FakeZendesk(
            org_tickets={
                1: [_ticket(10, 1), _ticket(12, 1, status="pending")],
                2: SourceUnavailableError("zendesk", "timeout"),
            }
        )
        counts = self.make_service(zendesk).refresh_organization_tickets([1, 2, 3])

        self.assertEqual(counts, {1: 2, 2: 0})
        self.assertEqual(self.store.get_ticket_ids(), {10, 12})


class AssignmentPhaseTests(SyncServiceTestCase):
    def setUp(self):
        super().setUp()
        self.make_service(_FakeZendesk(organizations=ORGS)).sync_organizations()

    def test_assignments_are_matched_and_names_written_back(self):
        salesforce = _FakeSalesforce(
            {
                AssignmentRole.CUSTOMER_SUCCESS: [
                    AccountOwnerAssignment("001A", "Acme, Inc.", "005A", "Ann", "ann@example.com"),
                    AccountOwnerAssignment("001G", "Globex", "005B", "Bob", "bob@example.com"),
                    AccountOwnerAssignment("001Z", "Zyxwv", "005B", "Bob", "bob@example.com"),
                ]
            }
        )
        count = self.make_service(_FakeZendesk(), salesforce=salesforce).sync_assignments(
            AssignmentRole.CUSTOMER_SUCCESS
        )

        self.assertEqual(count, 3)
        rows = {a.account_id: a.organization_id for a in self.store.get_assignments(AssignmentRole.CUSTOMER_SUCCESS)}
        self.assertEqual(rows, {"001A": 1, "001G": 2, "001Z": None})
        self.assertEqual(self.store.get_organization(1).crm_account_name, "Acme, Inc.")
        self.assertEqual(self.store.get_organization(2).crm_account_name, "Globex")
        self.assertEqual(self.store.get_phase_status("csm_assignments").state, PhaseState.SUCCESS)

    def test_without_crm_phase_is_skipped(self):
        count = self.make_service(_FakeZendesk()).sync_assignments(AssignmentRole.PROJECT_MANAGER)
        self.assertEqual(count, 0)
        self.assertIsNone(self.store.get_phase_status("pm_assignments"))

    def test_crm_failure_marks_phase_error(self):
        salesforce = _FakeSalesforce(SourceUnavailableError("salesforce", "auth failed", status_code=401))
        with self.assertRaises(SourceUnavailableError):
            self.make_service(_FakeZendesk(), salesforce=salesforce).sync_assignments(AssignmentRole.PROJECT_MANAGER)
        self.assertEqual(self.store.get_phase_status("pm_assignments").state, PhaseState.ERROR)


class IssueLinkPhaseTests(SyncServiceTestCase):
    def setUp(self):
        super().setUp()
        self.make_service(_FakeZendesk(organizations=ORGS)).sync_organizations()
        self.store.upsert_tickets([{"id": 10, "organization_id": 1, "status": TicketStatus.OPEN}])

    def test_links_are_filtered_to_cached_tickets_and_board_wins(self):
        tracker = _FakeTracker(
            board_items=[_item(1, "Crash on save ZD#10 ZD#77", status="In Review", board="acme/app: Dev")],
            search_items=[_item(1, "Crash on save ZD#10 ZD#77"), _item(2, "See Zendesk #10")],
        )
        count = self.make_service(_FakeZendesk(), gitlab=tracker, ticket_url_host="support.acme.com").sync_issue_links()

        self.assertEqual(count, 2)
        links = self.store.get_issue_links(ticket_id=10)
        self.assertEqual([(link.issue_number, link.status) for link in links], [(1, "In Review"), (2, "Open")])
        self.assertEqual(links[0].board, "acme/app: Dev")
        self.assertEqual(links[0].release_version, "5.2")
        self.assertEqual(links[0].tracker_updated_at, datetime(2026, 2, 3, 4, 5, 6))
        self.assertIn("support.acme.com", tracker.search_calls[0][0])

    def test_tracker_factory_is_resolved_when_phase_runs(self):
        tracker = _FakeTracker(search_items=[_item(3, "ZD-10")])
        count = self.make_service(_FakeZendesk(), gitlab=lambda: tracker).sync_issue_links()
        self.assertEqual(count, 1)

    def test_close_releases_resolved_tracker(self):
        tracker = _FakeTracker()
        tracker.closed = False
        tracker.close = lambda: setattr(tracker, "closed", True)
        service = self.make_service(_FakeZendesk(), gitlab=lambda: tracker)
        service.sync_issue_links()

        service.close()
        self.assertTrue(tracker.closed)

    def test_close_leaves_unresolved_tracker_factory_alone(self):
        built = []
        service = self.make_service(_FakeZendesk(), gitlab=lambda: built.append(True))

        service.close()
        self.assertEqual(built, [])

    def test_without_tracker_phase_is_skipped(self):
        self.assertEqual(self.make_service(_FakeZendesk()).sync_issue_links(), 0)
        self.assertIsNone(self.store.get_phase_status("issue_links"))


if __name__ == "__main__":
    unittest.main()
