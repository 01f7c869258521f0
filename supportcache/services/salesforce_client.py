"""Salesforce API client wrapper"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
import jwt

from supportcache.exceptions import RateLimitedError, SourceUnavailableError
from supportcache.models.assignment import AssignmentRole
from supportcache.services.retry import parse_retry_after, with_retries

logger = logging.getLogger(__name__)

SOURCE = "salesforce"
# Access tokens live ~2h; refresh well before that.
TOKEN_TTL = timedelta(minutes=90)
JWT_ASSERTION_TTL_S = 300

CSM_QUERY = """
SELECT Id, Name, Customer_Success_Manager_csm__c, Customer_Success_Manager_csm__r.Id,
       Customer_Success_Manager_csm__r.Name, Customer_Success_Manager_csm__r.Email
FROM Account
WHERE Customer_Success_Manager_csm__c != null
"""

OWNER_QUERY = """
SELECT Id, Name, OwnerId, Owner.Id, Owner.Name, Owner.Email
FROM Account
WHERE Owner.IsActive = true
"""

PM_QUERY = """
SELECT Id, Name, Project_Manager__c, Project_Manager__r.Id,
       Project_Manager__r.Name, Project_Manager__r.Email
FROM Account
WHERE Project_Manager__c != null
"""


@dataclass(frozen=True)
class AccountOwnerAssignment:
    account_id: str
    account_name: str
    owner_id: str
    owner_name: str
    owner_email: str


def _owner_assignment(record: Dict[str, Any], lookup: str, relation: str) -> AccountOwnerAssignment:
    owner = record.get(relation) or {}
    return AccountOwnerAssignment(
        account_id=record["Id"],
        account_name=record.get("Name") or "",
        owner_id=owner.get("Id") or record.get(lookup) or "",
        owner_name=owner.get("Name") or "",
        owner_email=owner.get("Email") or "",
    )


class SalesforceClient:
    """Wrapper for Salesforce REST API operations"""

    def __init__(
        self,
        login_url: str,
        client_id: str,
        *,
        auth_type: str = "client_credentials",
        client_secret: Optional[str] = None,
        username: Optional[str] = None,
        private_key: Optional[str] = None,
        private_key_path: Optional[str] = None,
        api_version: str = "v59.0",
        max_attempts: int = 3,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if auth_type not in ("client_credentials", "jwt"):
            raise ValueError(f"Unsupported Salesforce auth type: {auth_type}")
        self.login_url = login_url.rstrip("/")
        self.client_id = client_id
        self.auth_type = auth_type
        self.client_secret = client_secret
        self.username = username
        self.private_key = private_key
        self.private_key_path = private_key_path
        self.api_version = api_version
        self.max_attempts = max_attempts
        self.http = http_client or httpx.Client(timeout=30.0)
        self._clock = clock
        self._sleep = time.sleep

        self.access_token: Optional[str] = None
        self.instance_url: Optional[str] = None
        self.token_expiry: Optional[datetime] = None

    def close(self):
        self.http.close()

    def _load_private_key(self) -> str:
        if self.private_key:
            return self.private_key
        if self.private_key_path:
            path = Path(self.private_key_path).expanduser().resolve()
            if not path.exists():
                raise ValueError(f"Private key file not found: {path}")
            return path.read_text(encoding="utf-8")
        raise ValueError("JWT auth requires a private key or a private key path")

    def _jwt_assertion(self) -> str:
        now = int(self._clock().timestamp())
        claims = {
            "iss": self.client_id,
            "sub": self.username,
            "aud": self.login_url,
            "exp": now + JWT_ASSERTION_TTL_S,
        }
        return jwt.encode(claims, self._load_private_key(), algorithm="RS256")

    def authenticate(self):
        """Fetch an access token unless the cached one is still valid."""
        if self.access_token and self.token_expiry and self._clock() < self.token_expiry:
            return

        logger.info(f"Authenticating with Salesforce ({self.auth_type})...")
        if self.auth_type == "jwt":
            form = {
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "assertion": self._jwt_assertion(),
            }
        else:
            form = {
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret or "",
            }

        try:
            response = self.http.post(f"{self.login_url}/services/oauth2/token", data=form)
        except httpx.TransportError as e:
            raise SourceUnavailableError(SOURCE, f"authentication request failed: {e}") from e
        if response.status_code >= 400:
            detail = None
            try:
                detail = response.json().get("error_description")
            except ValueError:
                detail = response.text
            raise SourceUnavailableError(
                SOURCE,
                f"authentication failed: {detail or response.status_code}",
                status_code=response.status_code,
            )

        payload = response.json()
        self.access_token = payload["access_token"]
        self.instance_url = payload["instance_url"].rstrip("/")
        self.token_expiry = self._clock() + TOKEN_TTL
        logger.info(f"Authenticated with Salesforce: {self.instance_url}")

    def _send(self, path: str, reauthenticate: bool = True) -> Dict[str, Any]:
        self.authenticate()
        url = path if path.startswith("http") else f"{self.instance_url}{path}"
        try:
            response = self.http.get(url, headers={"Authorization": f"Bearer {self.access_token}"})
        except httpx.TransportError as e:
            raise SourceUnavailableError(SOURCE, f"request to {path} failed: {e}") from e

        if response.status_code == 401 and reauthenticate:
            # Session expired or was revoked before the cached expiry.
            logger.warning("Salesforce session rejected; re-authenticating")
            self.access_token = None
            self.token_expiry = None
            return self._send(path, reauthenticate=False)
        if response.status_code == 429:
            raise RateLimitedError(SOURCE, retry_after=parse_retry_after(response.headers.get("retry-after")))
        if response.status_code >= 400:
            detail = None
            try:
                body = response.json()
                if isinstance(body, list) and body:
                    detail = body[0].get("message")
            except ValueError:
                detail = response.text
            raise SourceUnavailableError(
                SOURCE,
                f"API call {path} failed: {detail or response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    def _get(self, path: str) -> Dict[str, Any]:
        return with_retries(
            lambda: self._send(path),
            source=SOURCE,
            max_attempts=self.max_attempts,
            sleep=self._sleep,
        )

    def query(self, soql: str) -> List[Dict[str, Any]]:
        """Run a SOQL query, following nextRecordsUrl until all records are read."""
        soql = " ".join(soql.split())
        data = self._get(f"/services/data/{self.api_version}/query?q={quote(soql)}")
        records = list(data.get("records") or [])
        while not data.get("done", True) and data.get("nextRecordsUrl"):
            data = self._get(data["nextRecordsUrl"])
            records.extend(data.get("records") or [])
        return records

    def _customer_success_assignments(self) -> List[AccountOwnerAssignment]:
        try:
            accounts = self.query(CSM_QUERY)
            logger.info(f"Found {len(accounts)} accounts with CSM assignments")
            return [
                _owner_assignment(a, "Customer_Success_Manager_csm__c", "Customer_Success_Manager_csm__r")
                for a in accounts
            ]
        except SourceUnavailableError as e:
            if e.status_code != 400:
                raise
            logger.warning(f"CSM field query failed ({e}); falling back to account owners")

        # Account Owner is the CSM in orgs without a dedicated CSM field.
        accounts = self.query(OWNER_QUERY)
        logger.info(f"Found {len(accounts)} accounts (using Owner as CSM)")
        return [_owner_assignment(a, "OwnerId", "Owner") for a in accounts]

    def _project_manager_assignments(self) -> List[AccountOwnerAssignment]:
        try:
            accounts = self.query(PM_QUERY)
        except SourceUnavailableError as e:
            if e.status_code != 400:
                raise
            logger.info("No Project Manager assignments found (Project_Manager__c field may not exist)")
            return []
        logger.info(f"Found {len(accounts)} accounts with Project Manager assignments")
        return [_owner_assignment(a, "Project_Manager__c", "Project_Manager__r") for a in accounts]

    def list_account_owner_assignments(self, role: AssignmentRole) -> List[AccountOwnerAssignment]:
        """(account, owner) pairs for the given owner role."""
        if role is AssignmentRole.CUSTOMER_SUCCESS:
            return self._customer_success_assignments()
        return self._project_manager_assignments()
