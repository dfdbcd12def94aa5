from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from contact_coordinator.core.errors import OverloadError, QueueFullError
from contact_coordinator.models import ContactState, QueueItem


logger = logging.getLogger(__name__)


class ContactStateRegistry:
    """Per-contact lock flag, FIFO queue and activity clock.

    Every mutation happens under one registry mutex and never spans an await,
    so ``try_acquire`` is a real check-and-set even if callers come from
    worker threads.
    """

    def __init__(
        self,
        max_contacts: int = 100,
        max_queue_size: int = 20,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_contacts = max_contacts
        self.max_queue_size = max_queue_size
        self._clock = clock
        self._contacts: Dict[str, ContactState] = {}
        self._lock = threading.Lock()

    def __contains__(self, contact_id: object) -> bool:
        return contact_id in self._contacts

    def get(self, contact_id: str) -> Optional[ContactState]:
        return self._contacts.get(contact_id)

    def get_or_create(self, contact_id: str) -> ContactState:
        with self._lock:
            return self._get_or_create_locked(contact_id)

    def try_acquire(self, contact_id: str) -> bool:
        with self._lock:
            state = self._get_or_create_locked(contact_id)
            if state.locked:
                return False
            self._lock_locked(state)
        logger.debug("Lock acquired for %s", contact_id)
        return True

    def release(self, contact_id: str, token: Optional[str] = None) -> bool:
        """Unlock ``contact_id``.

        Returns False if it was not locked, or if ``token`` is given and no
        longer matches the current holder.
        """
        with self._lock:
            state = self._contacts.get(contact_id)
            if state is None or not state.locked:
                return False
            if token is not None and state.lock_token != token:
                return False
            self._release_locked(state)
        logger.debug("Lock released for %s", contact_id)
        return True

    def lock_token(self, contact_id: str) -> Optional[str]:
        state = self._contacts.get(contact_id)
        return state.lock_token if state is not None else None

    def set_in_flight(self, contact_id: str, task: Optional["asyncio.Task[Any]"]) -> None:
        with self._lock:
            state = self._contacts.get(contact_id)
            if state is not None:
                state.in_flight = task

    def enqueue(self, contact_id: str, item: QueueItem) -> int:
        """Append ``item`` and return its 1-based position."""
        with self._lock:
            state = self._get_or_create_locked(contact_id)
            if len(state.queue) >= self.max_queue_size:
                raise QueueFullError(
                    f"Queue full for {contact_id}: {len(state.queue)} messages (max: {self.max_queue_size})"
                )
            state.queue.append(item)
            state.last_activity = self._clock()
            return len(state.queue)

    def dequeue_next(self, contact_id: str) -> Optional[QueueItem]:
        with self._lock:
            state = self._contacts.get(contact_id)
            if state is None or not state.queue:
                return None
            item = state.queue.popleft()
            item.attempts += 1
            return item

    def claim_next(self, contact_id: str) -> Optional[Tuple[QueueItem, str]]:
        """Pop the oldest queued item and lock the contact for it, atomically.

        Returns the item with the lock token it now holds, or None if the
        contact is locked or has nothing queued.
        """
        with self._lock:
            state = self._contacts.get(contact_id)
            if state is None or state.locked or not state.queue:
                return None
            item = state.queue.popleft()
            item.attempts += 1
            self._lock_locked(state)
            return item, state.lock_token

    def count_active(self) -> int:
        return len(self._contacts)

    def count_locked(self) -> int:
        with self._lock:
            return sum(1 for s in self._contacts.values() if s.locked)

    def count_queued(self) -> int:
        with self._lock:
            return sum(len(s.queue) for s in self._contacts.values())

    def locked_contacts(self) -> List[str]:
        with self._lock:
            return [cid for cid, s in self._contacts.items() if s.locked]

    def in_flight_tasks(self) -> List["asyncio.Task[Any]"]:
        with self._lock:
            return [s.in_flight for s in self._contacts.values() if s.in_flight is not None]

    def evict_idle(self, threshold: float, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        with self._lock:
            idle = [cid for cid, s in self._contacts.items() if s.is_idle(now, threshold)]
            for cid in idle:
                del self._contacts[cid]
        return len(idle)

    def find_stale_locks(self, lock_timeout: float, now: Optional[float] = None) -> List[Tuple[str, float]]:
        """Return ``(contact_id, lock_age)`` for locks held longer than ``lock_timeout``."""
        now = self._clock() if now is None else now
        with self._lock:
            return [
                (cid, now - s.lock_acquired_at)
                for cid, s in self._contacts.items()
                if s.locked and s.lock_acquired_at is not None and now - s.lock_acquired_at > lock_timeout
            ]

    def force_release(self, contact_id: str, lock_timeout: Optional[float] = None) -> bool:
        """Release a lock this caller does not hold.

        With ``lock_timeout`` set, only a lock that is still stale is released,
        so a lock re-acquired since it was found stale is left alone.
        """
        with self._lock:
            state = self._contacts.get(contact_id)
            if state is None or not state.locked:
                return False
            if lock_timeout is not None:
                acquired = state.lock_acquired_at
                if acquired is None or self._clock() - acquired <= lock_timeout:
                    return False
            self._release_locked(state)
        return True

    def clear(self) -> Tuple[int, List[QueueItem]]:
        """Drop all contact state. Returns the contact count and the queued items dropped."""
        with self._lock:
            contacts = len(self._contacts)
            dropped = [item for s in self._contacts.values() for item in s.queue]
            self._contacts.clear()
        return contacts, dropped

    def queue_details(self, now: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
        now = self._clock() if now is None else now
        with self._lock:
            return {
                cid: {
                    "queue_size": len(s.queue),
                    "oldest_age_seconds": now - s.queue[0].enqueued_at,
                    "total_attempts": sum(i.attempts for i in s.queue),
                }
                for cid, s in self._contacts.items()
                if s.queue
            }

    def _get_or_create_locked(self, contact_id: str) -> ContactState:
        state = self._contacts.get(contact_id)
        if state is not None:
            state.last_activity = self._clock()
            return state
        if len(self._contacts) >= self.max_contacts:
            raise OverloadError(
                f"System overloaded: {len(self._contacts)} active contacts (max: {self.max_contacts})"
            )
        state = ContactState(contact_id=contact_id, last_activity=self._clock())
        self._contacts[contact_id] = state
        return state

    def _lock_locked(self, state: ContactState) -> None:
        now = self._clock()
        state.locked = True
        state.lock_acquired_at = now
        state.lock_token = uuid.uuid4().hex
        state.last_activity = now

    def _release_locked(self, state: ContactState) -> None:
        state.locked = False
        state.lock_acquired_at = None
        state.lock_token = None
        state.in_flight = None
        state.last_activity = self._clock()
