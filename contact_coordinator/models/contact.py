from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Mapping, Optional

from contact_coordinator.core.errors import ValidationError


@dataclass
class InboundMessage:
    text: str
    kind: str = "text"
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def coerce(cls, message: Any) -> "InboundMessage":
        """Accept an InboundMessage or a mapping with ``text``/``content``."""
        if isinstance(message, InboundMessage):
            return message
        if not isinstance(message, Mapping):
            raise ValidationError("message must be a mapping or InboundMessage")
        text = message.get("text")
        if text is None:
            text = message.get("content")
        if not isinstance(text, str):
            raise ValidationError("message must carry a text or content string")
        kind = message.get("kind") or message.get("message_type") or "text"
        metadata = message.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise ValidationError("message metadata must be a mapping")
        ts = message.get("timestamp")
        try:
            timestamp = float(ts) if ts is not None else time.time()
        except (TypeError, ValueError):
            raise ValidationError(f"invalid message timestamp: {ts!r}")
        return cls(
            text=text,
            kind=str(kind),
            metadata=dict(metadata),
            timestamp=timestamp,
        )


@dataclass
class HandlerContext:
    contact_id: str
    timestamp: float
    queued: bool = False


Handler = Callable[[InboundMessage, HandlerContext], Awaitable[Any]]


@dataclass
class QueueItem:
    id: str
    message: InboundMessage
    handler: Handler
    enqueued_at: float
    attempts: int = 0
    # resolved with the drained ProcessResult when drain_mode == "tracked"
    completion: Optional["asyncio.Future[Any]"] = None


@dataclass
class ContactState:
    contact_id: str
    last_activity: float
    locked: bool = False
    lock_acquired_at: Optional[float] = None
    # identifies the current holder so a superseded owner cannot release it
    lock_token: Optional[str] = None
    queue: Deque[QueueItem] = field(default_factory=deque)
    in_flight: Optional["asyncio.Task[Any]"] = None

    def is_idle(self, now: float, threshold: float) -> bool:
        return not self.locked and not self.queue and now - self.last_activity > threshold


@dataclass
class DedupRecord:
    hash: str
    timestamp: float
    contact_id: str
    occurrences: int = 1


@dataclass
class SentRecord:
    hash: str
    timestamp: float
    contact_id: str
    text_preview: str
