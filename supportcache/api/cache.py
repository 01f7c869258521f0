"""Read-only endpoints over the cached data"""
from fastapi import APIRouter, Depends, HTTPException
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from datetime import datetime

from supportcache.models import AssignmentRole, TicketPriority, TicketStatus, TicketType
from supportcache.services.store import CacheStore

router = APIRouter(prefix="/api/cache", tags=["cache"])


def get_store() -> CacheStore:
    return CacheStore()


class OrganizationResponse(BaseModel):
    id: int
    name: str
    domain_names: List[str] = []
    crm_account_id: Optional[str] = None
    crm_account_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cached_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TicketResponse(BaseModel):
    id: int
    organization_id: Optional[int] = None
    subject: str
    status: TicketStatus
    priority: TicketPriority
    requester_id: Optional[int] = None
    assignee_id: Optional[int] = None
    tags: List[str] = []
    product: Optional[str] = None
    module: Optional[str] = None
    ticket_type: Optional[TicketType] = None
    workflow_status: Optional[str] = None
    issue_subtype: Optional[str] = None
    is_escalated: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AssignmentResponse(BaseModel):
    role: AssignmentRole
    account_id: str
    account_name: str
    owner_id: str
    owner_name: str
    owner_email: str
    organization_id: Optional[int] = None

    class Config:
        from_attributes = True


class IssueLinkResponse(BaseModel):
    ticket_id: int
    repo: str
    issue_number: int
    board: Optional[str] = None
    status: Optional[str] = None
    sprint: Optional[str] = None
    milestone: Optional[str] = None
    release_version: Optional[str] = None
    url: Optional[str] = None
    tracker_updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


def _parse_role(role: str) -> AssignmentRole:
    try:
        return AssignmentRole.parse(role)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown assignment role: {role}")


@router.get("/organizations", response_model=List[OrganizationResponse])
def list_organizations(store: CacheStore = Depends(get_store)):
    """List cached organizations"""
    return store.get_organizations()


@router.get("/organizations/{org_id}", response_model=OrganizationResponse)
def get_organization(org_id: int, store: CacheStore = Depends(get_store)):
    """Get a cached organization"""
    org = store.get_organization(org_id)
    if not org:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org


@router.get("/organizations/{org_id}/tickets", response_model=List[TicketResponse])
def list_organization_tickets(
    org_id: int,
    status: Optional[str] = None,
    store: CacheStore = Depends(get_store),
):
    """Cached tickets of an organization, most recently updated first"""
    if store.get_organization(org_id) is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return store.get_tickets_by_organization(org_id, TicketStatus.parse(status) if status else None)


@router.get("/organizations/{org_id}/stats")
def get_organization_stats(org_id: int, store: CacheStore = Depends(get_store)) -> Dict[str, Any]:
    """Ticket counts per status for an organization"""
    if store.get_organization(org_id) is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return {"organization_id": org_id, "tickets": store.get_ticket_stats(org_id)}


@router.get("/assignments/{role}", response_model=List[AssignmentResponse])
def list_assignments(role: str, store: CacheStore = Depends(get_store)):
    """Account owner assignments for a role (csm / pm)"""
    return store.get_assignments(_parse_role(role))


@router.get("/portfolios/{role}")
def list_portfolios(role: str, store: CacheStore = Depends(get_store)) -> List[Dict[str, Any]]:
    """Owners of a role with the organizations resolved to their accounts"""
    return store.get_portfolios(_parse_role(role))


@router.get("/issue-links", response_model=List[IssueLinkResponse])
def list_issue_links(ticket_id: Optional[int] = None, store: CacheStore = Depends(get_store)):
    """Ticket <-> tracker issue links, optionally for one ticket"""
    return store.get_issue_links(ticket_id)
