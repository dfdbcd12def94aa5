from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from contact_coordinator.api.schemas import ClearCacheResponse, StatsResponse, UnlockRequest, UnlockResponse
from contact_coordinator.core.engine import get_coordinator
from contact_coordinator.core.security import verify_admin
from contact_coordinator.services.coordinator import MessageCoordinator


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["admin"], dependencies=[Depends(verify_admin)])


@router.get("/coordinator/stats", response_model=StatsResponse)
def coordinator_stats(coordinator: MessageCoordinator = Depends(get_coordinator)):
    return {"status": "ok", "coordinator": coordinator.get_stats()}


@router.post("/admin/clear-cache", response_model=ClearCacheResponse)
def clear_cache(coordinator: MessageCoordinator = Depends(get_coordinator)):
    details = coordinator.emergency_cleanup()
    return {"success": True, "message": "Coordinator state cleared", "details": details}


@router.post("/admin/unlock", response_model=UnlockResponse)
async def unlock(
    payload: Optional[UnlockRequest] = None,
    coordinator: MessageCoordinator = Depends(get_coordinator),
):
    # async so a released contact's queue drains on the running loop
    contact_id = payload.contact_id if payload else None
    released = coordinator.emergency_unlock(contact_id)
    logger.warning("Admin unlock (%s): %d locks released", contact_id or "all", released)
    return {"success": True, "released": released}
