from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from contact_coordinator.core.config import settings


logger = logging.getLogger(__name__)
security = HTTPBasic()


def verify_admin(credentials: HTTPBasicCredentials = Depends(security)) -> HTTPBasicCredentials:
    """Guard for operator endpoints (stats, emergency cleanup, unlock)."""
    user_ok = secrets.compare_digest(credentials.username.encode(), settings.ADMIN_USERNAME.encode())
    pass_ok = secrets.compare_digest(credentials.password.encode(), settings.ADMIN_PASSWORD.encode())
    if not (user_ok and pass_ok):
        logger.warning("Rejected admin credentials for user %r", credentials.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials
