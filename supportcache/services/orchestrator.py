"""Run orchestration: one sync at a time, phases in dependency order"""

import logging
import threading
from functools import partial
from typing import Callable, Dict, Iterable, Optional

from supportcache.config import Settings, settings
from supportcache.exceptions import SyncInProgressError
from supportcache.models import AssignmentRole
from supportcache.services.gitlab_client import GitLabClient
from supportcache.services.salesforce_client import SalesforceClient
from supportcache.services.store import CacheStore
from supportcache.services.sync_service import (
    PHASE_ISSUE_LINKS,
    PHASE_ORGANIZATIONS,
    PHASE_TICKETS,
    RunCache,
    SyncOptions,
    SyncService,
)
from supportcache.services.zendesk_client import ZendeskClient

logger = logging.getLogger(__name__)

PHASES = (
    PHASE_ORGANIZATIONS,
    PHASE_TICKETS,
    AssignmentRole.CUSTOMER_SUCCESS.phase,
    AssignmentRole.PROJECT_MANAGER.phase,
    PHASE_ISSUE_LINKS,
)


class RunToken:
    """Process-wide token; whoever holds it is the only sync running."""

    def __init__(self):
        self._lock = threading.Lock()

    def acquire(self):
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError()

    def release(self):
        self._lock.release()

    @property
    def held(self) -> bool:
        return self._lock.locked()


class SyncOrchestrator:
    """Runs full syncs, single phases and organization refreshes under the run token.

    A fresh SyncService (and with it fresh source clients) is built for every run.
    """

    def __init__(self, service_factory: Callable[[], SyncService], token: Optional[RunToken] = None):
        self._service_factory = service_factory
        self._token = token or RunToken()

    def is_running(self) -> bool:
        return self._token.held

    def _run(self, fn: Callable[[SyncService], object]):
        self._token.acquire()
        try:
            return self._run_held(fn)
        finally:
            self._token.release()

    def _run_held(self, fn: Callable[[SyncService], object]):
        service = self._service_factory()
        try:
            return fn(service)
        finally:
            service.close()

    @staticmethod
    def _non_fatal(phase: str, fn: Callable[[], int]) -> int:
        try:
            return fn()
        except Exception as e:
            # The phase already recorded its error status; the run carries on.
            logger.error(f"Phase {phase} failed, continuing: {e}")
            return 0

    def _sync_all(self, service: SyncService, delta: bool = False) -> Dict[str, int]:
        logger.info(f"Starting {'delta' if delta else 'full'} sync")
        cache = RunCache()
        results = {phase: 0 for phase in PHASES}

        # Tickets depend on organizations; neither failure is recoverable within the run.
        results[PHASE_ORGANIZATIONS] = service.sync_organizations(cache)
        results[PHASE_TICKETS] = service.sync_tickets(cache, delta=delta)

        for role in (AssignmentRole.CUSTOMER_SUCCESS, AssignmentRole.PROJECT_MANAGER):
            results[role.phase] = self._non_fatal(
                role.phase, lambda role=role: service.sync_assignments(role, cache)
            )
        results[PHASE_ISSUE_LINKS] = self._non_fatal(
            PHASE_ISSUE_LINKS, lambda: service.sync_issue_links(cache)
        )

        logger.info(f"Sync completed: {results}")
        return results

    def sync_all(self, delta: bool = False) -> Dict[str, int]:
        """Run every phase in order; raises SyncInProgressError if a run is active."""
        return self._run(lambda service: self._sync_all(service, delta=delta))

    def start_background(self, delta: bool = False) -> threading.Thread:
        """Take the run token now, then run the full sync on a background thread."""
        self._token.acquire()

        def target():
            try:
                self._run_held(lambda service: self._sync_all(service, delta=delta))
            except Exception as e:
                logger.error(f"Background sync failed: {e}")
            finally:
                self._token.release()

        thread = threading.Thread(target=target, name="supportcache-sync", daemon=True)
        try:
            thread.start()
        except RuntimeError:
            self._token.release()
            raise
        return thread

    def run_phase(self, phase: str) -> int:
        """Run one phase by name with a fresh run cache."""
        if phase not in PHASES:
            raise ValueError(f"Unknown sync phase: {phase}")

        def run(service: SyncService) -> int:
            cache = RunCache()
            if phase == PHASE_ORGANIZATIONS:
                return service.sync_organizations(cache)
            if phase == PHASE_TICKETS:
                return service.sync_tickets(cache)
            if phase == PHASE_ISSUE_LINKS:
                return service.sync_issue_links(cache)
            return service.sync_assignments(AssignmentRole.parse(phase.split("_", 1)[0]), cache)

        return self._run(run)

    def refresh_organization_tickets(self, org_ids: Iterable[int]) -> Dict[int, int]:
        org_ids = list(org_ids)
        return self._run(lambda service: service.refresh_organization_tickets(org_ids))


def build_sync_service(config: Settings, store: Optional[CacheStore] = None) -> SyncService:
    """Wire source clients from configuration; unconfigured optional sources are skipped."""
    if not config.zendesk_configured:
        raise ValueError("Zendesk is not configured (ZENDESK_SUBDOMAIN, ZENDESK_EMAIL, ZENDESK_API_TOKEN)")

    zendesk = ZendeskClient(
        config.zendesk_subdomain,
        config.zendesk_email,
        config.zendesk_api_token,
        max_attempts=config.source_max_attempts,
    )

    salesforce = None
    if config.salesforce_configured:
        salesforce = SalesforceClient(
            config.salesforce_login_url,
            config.salesforce_client_id,
            auth_type=config.salesforce_auth_type,
            client_secret=config.salesforce_client_secret,
            username=config.salesforce_username,
            private_key=config.salesforce_private_key,
            private_key_path=config.salesforce_private_key_path,
            api_version=config.salesforce_api_version,
            max_attempts=config.source_max_attempts,
        )

    gitlab = None
    if config.gitlab_configured:
        # GitLabClient authenticates on construction, so defer it to the issue link phase.
        gitlab = partial(
            GitLabClient, config.gitlab_url, config.gitlab_token, max_attempts=config.source_max_attempts
        )

    return SyncService(
        store or CacheStore(),
        zendesk,
        salesforce=salesforce,
        gitlab=gitlab,
        options=SyncOptions.from_settings(config),
    )


_orchestrator: Optional[SyncOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> SyncOrchestrator:
    """The process-wide orchestrator built from settings."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = SyncOrchestrator(lambda: build_sync_service(settings))
        return _orchestrator
