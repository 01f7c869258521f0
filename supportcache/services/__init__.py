"""Services"""

from supportcache.services.gitlab_client import GitLabClient
from supportcache.services.orchestrator import SyncOrchestrator, get_orchestrator
from supportcache.services.salesforce_client import SalesforceClient
from supportcache.services.store import CacheStore
from supportcache.services.sync_service import RunCache, SyncService
from supportcache.services.zendesk_client import ZendeskClient

__all__ = [
    "CacheStore",
    "GitLabClient",
    "RunCache",
    "SalesforceClient",
    "SyncOrchestrator",
    "SyncService",
    "ZendeskClient",
    "get_orchestrator",
]
