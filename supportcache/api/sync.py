"""Sync management endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from typing import Dict, List, Optional
from pydantic import BaseModel
from datetime import datetime

from supportcache.api.cache import get_store
from supportcache.exceptions import SyncInProgressError
from supportcache.models import PhaseState
from supportcache.services.orchestrator import PHASES, SyncOrchestrator, get_orchestrator
from supportcache.services.store import CacheStore

router = APIRouter(prefix="/api/sync", tags=["sync"])


class PhaseStatusResponse(BaseModel):
    phase: str
    last_run_at: Optional[datetime] = None
    state: PhaseState
    record_count: int
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class SyncStatusResponse(BaseModel):
    in_progress: bool
    phases: List[PhaseStatusResponse]


@router.post("", status_code=202)
def trigger_sync(
    delta: bool = False,
    wait: bool = False,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Trigger a full sync (in the background unless `wait` is set)"""
    try:
        if wait:
            return {"status": "completed", "results": orchestrator.sync_all(delta=delta)}
        orchestrator.start_background(delta=delta)
        return {"status": "started"}
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{phase}")
def trigger_phase(phase: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Run a single sync phase synchronously"""
    if phase not in PHASES:
        raise HTTPException(status_code=404, detail=f"Unknown sync phase: {phase}")
    try:
        return {"phase": phase, "record_count": orchestrator.run_phase(phase)}
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/organizations/{org_id}/tickets")
def refresh_organization_tickets(
    org_id: int,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    store: CacheStore = Depends(get_store),
) -> Dict[str, int]:
    """Refetch every ticket of one cached organization"""
    if store.get_organization(org_id) is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    try:
        counts = orchestrator.refresh_organization_tickets([org_id])
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"organization_id": org_id, "ticket_count": counts.get(org_id, 0)}


@router.get("/status", response_model=SyncStatusResponse)
def get_sync_status(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    store: CacheStore = Depends(get_store),
):
    """Per-phase status ledger plus whether a run is active"""
    return {
        "in_progress": orchestrator.is_running(),
        "phases": store.get_phase_statuses(),
    }
