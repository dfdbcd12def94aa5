from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class UnlockRequest(BaseModel):
    contact_id: Optional[str] = None


class UnlockResponse(BaseModel):
    success: bool = True
    released: int


class ClearCacheResponse(BaseModel):
    success: bool = True
    message: str
    details: Dict[str, int]


class StatsResponse(BaseModel):
    status: str = Field(default="ok")
    coordinator: Dict[str, Any]


class ErrorResponse(BaseModel):
    status: str = Field(default="error")
    error_type: str
    message: str
