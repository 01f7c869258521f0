"""Organization <-> CRM account reconciliation.

The CRM identifier stored on an organization is the only authoritative link. When it
is missing, organizations are matched to accounts by normalized name, deliberately
permissively: one account may touch several organizations (regional subsidiaries,
"ADP -Corp" / "ADP Enterprise" / "ADP, Inc."), and every organization it touches
receives the account's display name.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

_LEGAL_SUFFIX_RE = re.compile(r",?\s*\b(inc\.?|llc|ltd\.?|corp\.?|corporation)$", re.IGNORECASE)
_DASH_SUFFIX_RE = re.compile(r"\s*-\s*(corp|enterprise|wfn|llc|inc)$", re.IGNORECASE)

PREFIX_MIN_LEN = 3
WORD_BOUNDARY_MIN_LEN = 4


def strip_accents(text: str) -> str:
    """'Nestlé' -> 'Nestle'"""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_name(name: Optional[str]) -> str:
    """Lower-case, accent-free, trimmed name (no suffix stripping)."""
    return strip_accents((name or "").lower().strip())


def normalize_account_name(name: Optional[str]) -> str:
    """Normalized CRM account name with a trailing legal suffix removed."""
    return _LEGAL_SUFFIX_RE.sub("", normalize_name(name)).strip()


def normalize_organization_name(name: Optional[str]) -> str:
    """Normalized organization name with legal and dash-style suffixes removed."""
    stripped = _DASH_SUFFIX_RE.sub("", normalize_name(name))
    return _LEGAL_SUFFIX_RE.sub("", stripped).strip()


def names_match(account_name: str, organization_name: str) -> bool:
    """True when the organization plausibly belongs to the CRM account."""
    account_lower = normalize_name(account_name)
    account = normalize_account_name(account_name)
    org_lower = normalize_name(organization_name)
    org = normalize_organization_name(organization_name)
    if not account:
        return False
    if org == account or org_lower == account_lower:
        return True
    if len(account) >= PREFIX_MIN_LEN and org.startswith(account):
        return True
    if len(account) >= WORD_BOUNDARY_MIN_LEN:
        return re.search(rf"\b{re.escape(account)}\b", org_lower) is not None
    return False


@dataclass(frozen=True)
class OrganizationRef:
    id: int
    name: str
    crm_account_id: Optional[str] = None


@dataclass
class MatchResult:
    """Resolved assignment rows plus display names to write back to organizations."""

    rows: List[Dict] = field(default_factory=list)
    crm_names: Dict[int, str] = field(default_factory=dict)
    matched_by_id: int = 0
    matched_by_name: int = 0
    additional_orgs_mapped: int = 0
    unmatched: int = 0


def match_assignments(assignments: Sequence, organizations: Sequence[OrganizationRef]) -> MatchResult:
    """Resolve each (account, owner) assignment to zero or one organization.

    Precedence per assignment: an organization whose stored CRM id equals the
    account id is the primary match. Independently, every other organization whose
    name matches the account name gets the account's display name, and the first
    of them becomes primary when no identifier match exists. Later assignments
    overwrite earlier display names for the same organization.
    """
    by_crm_id: Dict[str, OrganizationRef] = {}
    for org in organizations:
        if org.crm_account_id:
            by_crm_id.setdefault(org.crm_account_id, org)

    result = MatchResult()
    for assignment in assignments:
        primary = by_crm_id.get(assignment.account_id)
        if primary is not None:
            result.matched_by_id += 1
            result.crm_names[primary.id] = assignment.account_name

        for org in organizations:
            if org.crm_account_id == assignment.account_id:
                continue
            if primary is not None and org.id == primary.id:
                continue
            if not names_match(assignment.account_name, org.name):
                continue
            result.crm_names[org.id] = assignment.account_name
            result.additional_orgs_mapped += 1
            if primary is None:
                primary = org
                result.matched_by_name += 1

        if primary is None:
            result.unmatched += 1
        result.rows.append(
            {
                "account_id": assignment.account_id,
                "account_name": assignment.account_name,
                "owner_id": assignment.owner_id,
                "owner_name": assignment.owner_name,
                "owner_email": assignment.owner_email,
                "organization_id": primary.id if primary is not None else None,
            }
        )
    return result


def qbr_cutoff_date(today: date) -> date:
    """First day of the quarter two quarters before `today`'s quarter.

    The window [cutoff, today] always spans the current quarter plus the two before it.
    """
    target_quarter = (today.month - 1) // 3 - 2
    year = today.year
    if target_quarter < 0:
        target_quarter += 4
        year -= 1
    return date(year, target_quarter * 3 + 1, 1)
