from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional


ProcessStatus = Literal["duplicate", "queued", "processed", "error"]


@dataclass
class ProcessResult:
    status: ProcessStatus
    contact_id: str
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    message_hash: Optional[str] = None
    queue_position: Optional[int] = None
    queue_id: Optional[str] = None
    duration_ms: Optional[int] = None
    timestamp: float = field(default_factory=time.time)
    # only set for queued results in tracked drain mode
    completion: Optional["asyncio.Future[ProcessResult]"] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status, "contact_id": self.contact_id, "timestamp": self.timestamp}
        for key in ("result", "error", "error_type", "message_hash", "queue_position", "queue_id", "duration_ms"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class SendOutcome:
    """What a transport reports for one delivery attempt."""

    ok: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SendResult:
    sent: bool
    contact_id: str
    attempt: Optional[int] = None
    attempts: Optional[int] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    provider_message_id: Optional[str] = None
    original_time: Optional[float] = None
    hash: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}
