from __future__ import annotations

from fastapi import HTTPException, Request, status

from contact_coordinator.services.coordinator import MessageCoordinator


def get_coordinator(request: Request) -> MessageCoordinator:
    """FastAPI dependency: the coordinator built at startup and kept on app.state."""
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Coordinator not running")
    return coordinator
