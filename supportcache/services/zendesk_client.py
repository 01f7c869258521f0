"""Zendesk API client wrapper"""
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from supportcache.exceptions import RateLimitedError, SourceUnavailableError
from supportcache.services.retry import parse_retry_after, with_retries
from supportcache.services.ticket_fields import (
    FieldMapping,
    TicketClassification,
    detect_field_mapping,
    extract_custom_fields,
)

logger = logging.getLogger(__name__)

SOURCE = "zendesk"
# Zendesk refuses to page a search past its result window with 422.
SEARCH_LIMIT_STATUS = 422


class ZendeskClient:
    """Wrapper for Zendesk Support API operations"""

    def __init__(
        self,
        subdomain: str,
        email: str,
        api_token: str,
        *,
        max_attempts: int = 3,
        request_delay_s: float = 0.1,
        http_client: Optional[httpx.Client] = None,
    ):
        """Initialize Zendesk client (API-token basic auth)"""
        self.base_url = f"https://{subdomain}.zendesk.com"
        self.max_attempts = max_attempts
        self.request_delay_s = request_delay_s
        self._sleep = time.sleep
        self.http = http_client or httpx.Client(
            base_url=self.base_url,
            auth=(f"{email}/token", api_token),
            headers={"Content-Type": "application/json"},
            timeout=30.0,
        )

    def close(self):
        self.http.close()

    def _send(self, url: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if self.request_delay_s:
            self._sleep(self.request_delay_s)
        try:
            response = self.http.get(url, params=params)
        except httpx.TransportError as e:
            raise SourceUnavailableError(SOURCE, f"request to {url} failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(SOURCE, retry_after=parse_retry_after(response.headers.get("retry-after")))
        if response.status_code >= 400:
            raise SourceUnavailableError(
                SOURCE,
                f"GET {url} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json()

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET with rate-limit aware retries."""
        return with_retries(
            lambda: self._send(url, params),
            source=SOURCE,
            max_attempts=self.max_attempts,
            sleep=self._sleep,
        )

    def list_organizations(self) -> List[Dict[str, Any]]:
        """Get all organizations (paged)"""
        organizations: List[Dict[str, Any]] = []
        page = 1
        logger.info("Fetching all Zendesk organizations...")
        while True:
            data = self._get("/api/v2/organizations.json", {"page": page, "per_page": 100})
            organizations.extend(data.get("organizations") or [])
            if page % 5 == 0:
                logger.info(f"  Fetched {len(organizations)} organizations (page {page})...")
            if not data.get("next_page"):
                break
            page += 1
        logger.info(f"Fetched {len(organizations)} total organizations")
        return organizations

    def get_organization(self, org_id: int) -> Dict[str, Any]:
        return self._get(f"/api/v2/organizations/{int(org_id)}.json")["organization"]

    def search_tickets(self, query: str, max_pages: int = 10) -> List[Dict[str, Any]]:
        """Run a search query and return ticket results, newest update first.

        Stops after `max_pages` pages, or early (keeping what was collected) when
        Zendesk reports its search window is exhausted.
        """
        tickets: List[Dict[str, Any]] = []
        url = "/api/v2/search.json"
        params: Optional[Dict[str, Any]] = {
            "query": query,
            "per_page": 100,
            "sort_by": "updated_at",
            "sort_order": "desc",
        }
        pages = 0
        while url and pages < max_pages:
            try:
                data = self._get(url, params)
            except SourceUnavailableError as e:
                if e.status_code == SEARCH_LIMIT_STATUS:
                    logger.info(
                        f"Search hit Zendesk limits at page {pages}. Returning {len(tickets)} tickets."
                    )
                    break
                raise
            results = data.get("results") or []
            tickets.extend(r for r in results if r.get("result_type", "ticket") == "ticket")
            pages += 1
            # next_page is an absolute URL with the query already encoded
            url = data.get("next_page")
            params = None
        return tickets

    def get_tickets_by_organization(self, org_id: int, max_pages: int = 10) -> List[Dict[str, Any]]:
        return self.search_tickets(f"type:ticket organization_id:{int(org_id)}", max_pages=max_pages)

    def get_ticket_fields(self) -> List[Dict[str, Any]]:
        return self._get("/api/v2/ticket_fields.json").get("ticket_fields") or []

    def get_ticket_field_mapping(self, overrides: Optional[Dict[str, int]] = None) -> FieldMapping:
        """Detect the custom-field mapping from ticket field titles (overrides win)."""
        return detect_field_mapping(self.get_ticket_fields(), overrides)

    @staticmethod
    def extract_custom_fields(ticket: Dict[str, Any], mapping: FieldMapping) -> TicketClassification:
        return extract_custom_fields(ticket, mapping)
