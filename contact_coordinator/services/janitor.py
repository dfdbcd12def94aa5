from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from contact_coordinator.models import DedupRecord, SentRecord
from contact_coordinator.services.contact_registry import ContactStateRegistry
from contact_coordinator.services.events import CLEANUP_COMPLETED, CoordinatorStats, EventBus
from contact_coordinator.utils.ttl_cache import TTLCache


logger = logging.getLogger(__name__)


class Janitor:
    """Periodic sweep over coordinator state.

    Order per run: expire dedup and sent records, evict idle contacts, recover
    stale locks, then re-enforce both cache ceilings. A sweep never raises.
    """

    def __init__(
        self,
        inbound_cache: TTLCache[DedupRecord],
        sent_cache: TTLCache[SentRecord],
        registry: ContactStateRegistry,
        stats: CoordinatorStats,
        events: EventBus,
        interval: float = 30.0,
        inactivity_threshold: float = 300.0,
        lock_timeout: float = 30.0,
        on_lock_recovered: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.interval = interval
        self.inactivity_threshold = inactivity_threshold
        self.lock_timeout = lock_timeout
        self._inbound = inbound_cache
        self._sent = sent_cache
        self._registry = registry
        self._stats = stats
        self._events = events
        self._on_lock_recovered = on_lock_recovered
        self._clock = clock
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Janitor scheduled every %.1fs", self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.sweep()

    def sweep(self) -> Dict[str, int]:
        now = self._clock()
        cleaned = {"message_hashes": 0, "sent_responses": 0, "inactive_contacts": 0, "stale_locks": 0}

        cleaned["message_hashes"] += self._step("inbound expiry", lambda: self._inbound.evict_expired(now))
        cleaned["sent_responses"] += self._step("outbound expiry", lambda: self._sent.evict_expired(now))
        cleaned["inactive_contacts"] += self._step(
            "idle eviction", lambda: self._registry.evict_idle(self.inactivity_threshold, now)
        )
        cleaned["stale_locks"] += self._step("stale lock recovery", lambda: self._recover_stale_locks(now))
        cleaned["message_hashes"] += self._step("inbound ceiling", self._inbound.enforce_ceiling)
        cleaned["sent_responses"] += self._step("outbound ceiling", self._sent.enforce_ceiling)

        total = sum(cleaned.values())
        if total:
            logger.info(
                "Cleanup: %d hashes, %d sent, %d inactive contacts, %d stale locks",
                cleaned["message_hashes"],
                cleaned["sent_responses"],
                cleaned["inactive_contacts"],
                cleaned["stale_locks"],
            )
        self._events.emit(CLEANUP_COMPLETED, cleaned=dict(cleaned), total=total)
        return cleaned

    def _recover_stale_locks(self, now: float) -> int:
        recovered = 0
        for contact_id, age in self._registry.find_stale_locks(self.lock_timeout, now):
            if not self._registry.force_release(contact_id, self.lock_timeout):
                continue
            recovered += 1
            self._stats.deadlocks_recovered += 1
            logger.warning("Stale lock on %s released after %.1fs", contact_id, age)
            if self._on_lock_recovered is not None:
                self._on_lock_recovered(contact_id)
        return recovered

    def _step(self, name: str, fn: Callable[[], int]) -> int:
        try:
            return fn()
        except Exception:
            logger.error("Janitor step %r failed", name, exc_info=True)
            return 0
