from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, DefaultDict, Dict, List


logger = logging.getLogger(__name__)

DUPLICATE_DETECTED = "duplicateDetected"
MESSAGE_PROCESSED = "messageProcessed"
PROCESSING_ERROR = "processingError"
CLEANUP_COMPLETED = "cleanupCompleted"
EMERGENCY_CLEANUP = "emergencyCleanup"

Listener = Callable[[Dict[str, Any]], Any]


class EventBus:
    """Synchronous observer registry. Listener failures are logged, never raised."""

    def __init__(self) -> None:
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def emit(self, event: str, **payload: Any) -> None:
        payload.setdefault("timestamp", time.time())
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(payload)
            except Exception:
                logger.error("Listener for %s failed", event, exc_info=True)

    def clear(self) -> None:
        self._listeners.clear()


@dataclass
class CoordinatorStats:
    messages_received: int = 0
    messages_processed: int = 0
    messages_failed: int = 0
    duplicates_detected: int = 0
    responses_sent: int = 0
    response_duplicates_blocked: int = 0
    deadlocks_recovered: int = 0
    timeouts_handled: int = 0
    average_processing_time_ms: float = 0.0
    start_time: float = field(default_factory=time.time)

    def record_success(self, duration_ms: float) -> None:
        self.messages_processed += 1
        n = self.messages_processed
        self.average_processing_time_ms = (self.average_processing_time_ms * (n - 1) + duration_ms) / n

    def record_failure(self) -> None:
        self.messages_failed += 1

    def duplicate_rate(self) -> float:
        if not self.messages_received:
            return 0.0
        return self.duplicates_detected / self.messages_received

    def success_rate(self) -> float:
        total = self.messages_processed + self.messages_failed
        if not total:
            return 1.0
        return self.messages_processed / total

    def snapshot(self) -> Dict[str, Any]:
        return asdict(self)


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"
