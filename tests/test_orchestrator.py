import threading
import unittest

from supportcache.exceptions import SourceUnavailableError, SyncInProgressError
from supportcache.models import AssignmentRole
from supportcache.services.orchestrator import SyncOrchestrator


class _FakeService:
    def __init__(self, failures=None, gate=None):
        self.failures = failures or {}
        self.gate = gate
        self.calls = []
        self.closed = False
        self.entered = threading.Event()

    def _phase(self, name, count):
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]
        return count

    def sync_organizations(self, cache):
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return self._phase("organizations", 3)

    def sync_tickets(self, cache, delta=False):
        return self._phase("tickets", 10)

    def sync_assignments(self, role, cache):
        return self._phase(role.phase, 2 if role is AssignmentRole.CUSTOMER_SUCCESS else 1)

    def sync_issue_links(self, cache):
        return self._phase("issue_links", 4)

    def refresh_organization_tickets(self, org_ids):
        self.calls.append(("refresh", tuple(org_ids)))
        return {org_id: 1 for org_id in org_ids}

    def close(self):
        self.closed = True


class SyncOrchestratorTests(unittest.TestCase):
    def test_full_sync_runs_phases_in_order(self):
        service = _FakeService()
        result = SyncOrchestrator(lambda: service).sync_all()

        self.assertEqual(
            result,
            {"organizations": 3, "tickets": 10, "csm_assignments": 2, "pm_assignments": 1, "issue_links": 4},
        )
        self.assertEqual(
            service.calls,
            ["organizations", "tickets", "csm_assignments", "pm_assignments", "issue_links"],
        )
        self.assertTrue(service.closed)

    def test_assignment_and_link_failures_are_not_fatal(self):
        service = _FakeService(
            failures={
                "csm_assignments": SourceUnavailableError("salesforce", "auth failed", status_code=401),
                "issue_links": RuntimeError("gitlab down"),
            }
        )
        result = SyncOrchestrator(lambda: service).sync_all()

        self.assertEqual(result["csm_assignments"], 0)
        self.assertEqual(result["pm_assignments"], 1)
        self.assertEqual(result["issue_links"], 0)
        self.assertIn("issue_links", service.calls)

    def test_ticket_failure_aborts_run_and_releases_token(self):
        service = _FakeService(failures={"tickets": SourceUnavailableError("zendesk", "boom")})
        orchestrator = SyncOrchestrator(lambda: service)

        with self.assertRaises(SourceUnavailableError):
            orchestrator.sync_all()
        self.assertNotIn("csm_assignments", service.calls)
        self.assertFalse(orchestrator.is_running())
        self.assertTrue(service.closed)

    def test_concurrent_request_is_rejected(self):
        gate = threading.Event()
        service = _FakeService(gate=gate)
        orchestrator = SyncOrchestrator(lambda: service)

        results = []
        worker = threading.Thread(target=lambda: results.append(orchestrator.sync_all()))
        worker.start()
        self.assertTrue(service.entered.wait(timeout=5))

        self.assertTrue(orchestrator.is_running())
        with self.assertRaises(SyncInProgressError):
            orchestrator.sync_all()
        with self.assertRaises(SyncInProgressError):
            orchestrator.run_phase("tickets")
        with self.assertRaises(SyncInProgressError):
            orchestrator.start_background()

        gate.set()
        worker.join(timeout=5)
        self.assertEqual(len(results), 1)
        self.assertFalse(orchestrator.is_running())

    def test_start_background_holds_token_until_done(self):
        gate = threading.Event()
        service = _FakeService(gate=gate)
        orchestrator = SyncOrchestrator(lambda: service)

        thread = orchestrator.start_background()
        self.assertTrue(orchestrator.is_running())
        gate.set()
        thread.join(timeout=5)

        self.assertFalse(orchestrator.is_running())
        self.assertEqual(service.calls[-1], "issue_links")

    def test_background_failure_releases_token(self):
        service = _FakeService(failures={"organizations": SourceUnavailableError("zendesk", "down")})
        orchestrator = SyncOrchestrator(lambda: service)

        orchestrator.start_background().join(timeout=5)
        self.assertFalse(orchestrator.is_running())

    def test_run_single_phase(self):
        service = _FakeService()
        orchestrator = SyncOrchestrator(lambda: service)

        self.assertEqual(orchestrator.run_phase("pm_assignments"), 1)
        self.assertEqual(service.calls, ["pm_assignments"])
        with self.assertRaises(ValueError):
            orchestrator.run_phase("everything")

    def test_refresh_organization_tickets(self):
        service = _FakeService()
        counts = SyncOrchestrator(lambda: service).refresh_organization_tickets(iter([5, 6]))
        self.assertEqual(counts, {5: 1, 6: 1})


if __name__ == "__main__":
    unittest.main()
