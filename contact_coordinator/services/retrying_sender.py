from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Protocol, Set

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from contact_coordinator.core.errors import TransportError
from contact_coordinator.models import SendOutcome, SendResult, SentRecord
from contact_coordinator.services.events import CoordinatorStats
from contact_coordinator.utils.digests import response_hash
from contact_coordinator.utils.ttl_cache import TTLCache


logger = logging.getLogger(__name__)

PREVIEW_CHARS = 100

OutboundNotifier = Callable[[str, float], Any]
Sleep = Callable[[float], Awaitable[Any]]


class Transport(Protocol):
    async def send(self, contact_id: str, text: str) -> SendOutcome: ...


def _as_outcome(raw: Any) -> SendOutcome:
    if isinstance(raw, SendOutcome):
        return raw
    if isinstance(raw, Mapping):
        return SendOutcome(
            ok=bool(raw.get("ok")),
            provider_message_id=raw.get("provider_message_id"),
            error=raw.get("error"),
        )
    # transports that return nothing on success
    return SendOutcome(ok=raw is None or bool(raw))


class RetryingSender:
    """Outbound delivery with duplicate suppression and exponential backoff.

    A reply identical to one delivered to the same contact within the response
    window is blocked. Failed attempts are retried up to ``max_retries`` times,
    sleeping ``2**attempt * backoff_base`` seconds between attempts. Only the
    final outcome reaches the caller; nothing is raised.
    """

    def __init__(
        self,
        transport: Transport,
        sent_cache: TTLCache[SentRecord],
        max_retries: int = 3,
        backoff_base: float = 1.0,
        send_timeout: float = 30.0,
        notifier: Optional[OutboundNotifier] = None,
        stats: Optional[CoordinatorStats] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.transport = transport
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.send_timeout = send_timeout
        self._cache = sent_cache
        self._notifier = notifier
        self._stats = stats if stats is not None else CoordinatorStats()
        self._sleep = sleep
        self._clock = clock
        self._in_flight: Dict[str, "asyncio.Task[SendResult]"] = {}
        self._notify_tasks: Set["asyncio.Task[Any]"] = set()

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def _retrying(self, contact_id: str) -> AsyncRetrying:
        # waits 2, 4, 8, ... x backoff_base between attempts
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=2 * self.backoff_base, exp_base=2, min=0),
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
            before_sleep=lambda state: self._log_failed_attempt(contact_id, state),
            reraise=False,
        )

    def _log_failed_attempt(self, contact_id: str, retry_state: RetryCallState) -> None:
        logger.warning(
            "Send attempt %d to %s failed: %s",
            retry_state.attempt_number,
            contact_id,
            retry_state.outcome.exception() if retry_state.outcome else None,
        )

    async def send_response(
        self, contact_id: str, text: str, options: Optional[Mapping[str, Any]] = None
    ) -> SendResult:
        try:
            if not isinstance(contact_id, str) or not contact_id.strip():
                return SendResult(sent=False, contact_id=str(contact_id), reason="validation_error", error="invalid contact_id")
            if not isinstance(text, str) or not text:
                return SendResult(sent=False, contact_id=contact_id, reason="validation_error", error="text must be a non-empty string")

            digest = response_hash(contact_id, text)

            if self._was_sent(digest):
                self._stats.response_duplicates_blocked += 1
                record = self._cache.get(digest)
                logger.warning("Duplicate response blocked for %s (hash %s)", contact_id, digest[:8])
                return SendResult(
                    sent=False,
                    contact_id=contact_id,
                    reason="duplicate_blocked",
                    original_time=record.timestamp if record else None,
                    hash=digest[:8],
                )

            pending = self._in_flight.get(digest)
            if pending is not None:
                logger.info("Response to %s already being delivered, joining (hash %s)", contact_id, digest[:8])
                return await asyncio.shield(pending)

            task = asyncio.ensure_future(self._send_with_retry(contact_id, text, digest))
            self._in_flight[digest] = task
            task.add_done_callback(lambda _t, d=digest: self._in_flight.pop(d, None))
            return await asyncio.shield(task)
        except Exception as e:
            logger.error("Failed to send response to %s: %s", contact_id, e, exc_info=True)
            return SendResult(sent=False, contact_id=str(contact_id), error=str(e))

    async def send_batch(self, responses: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
        items = list(responses)
        if not items:
            return {"sent": 0, "failed": 0, "results": []}
        results = await asyncio.gather(
            *(self.send_response(r.get("contact_id", ""), r.get("text", ""), r.get("options")) for r in items)
        )
        sent = sum(1 for r in results if r.sent)
        logger.info("Batch delivered: %d sent, %d failed", sent, len(results) - sent)
        return {"sent": sent, "failed": len(results) - sent, "results": results}

    def clear(self) -> int:
        return self._cache.clear()

    def _was_sent(self, digest: str) -> bool:
        try:
            return self._cache.is_fresh_within(digest)
        except Exception:
            # fail open: a broken cache must not stop replies
            logger.error("Sent-response cache lookup failed", exc_info=True)
            return False

    async def _send_with_retry(self, contact_id: str, text: str, digest: str) -> SendResult:
        number = 0
        try:
            async for attempt in self._retrying(contact_id):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    logger.info("Sending response to %s (attempt %d/%d)", contact_id, number, self.max_retries)
                    outcome = await self._attempt(contact_id, text)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error("Giving up on %s after %d attempts: %s", contact_id, self.max_retries, last_error)
            return SendResult(
                sent=False,
                contact_id=contact_id,
                reason=TransportError.error_type,
                error=str(last_error) if last_error else "Unknown error",
                attempts=self.max_retries,
            )

        now = self._clock()
        self._record_sent(digest, contact_id, text, now)
        self._stats.responses_sent += 1
        self._notify(contact_id, now)
        logger.info("Response sent to %s on attempt %d", contact_id, number)
        return SendResult(
            sent=True,
            contact_id=contact_id,
            attempt=number,
            provider_message_id=outcome.provider_message_id,
            hash=digest[:8],
            timestamp=now,
        )

    async def _attempt(self, contact_id: str, text: str) -> SendOutcome:
        try:
            raw = await asyncio.wait_for(self.transport.send(contact_id, text), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"Send to {contact_id} timed out after {self.send_timeout}s")
        outcome = _as_outcome(raw)
        if not outcome.ok:
            raise TransportError(outcome.error or "transport reported failure")
        return outcome

    def _record_sent(self, digest: str, contact_id: str, text: str, now: float) -> None:
        try:
            self._cache.put(
                digest,
                SentRecord(hash=digest, timestamp=now, contact_id=contact_id, text_preview=text[:PREVIEW_CHARS]),
            )
        except Exception:
            logger.error("Failed to record sent response for %s", contact_id, exc_info=True)

    def _notify(self, contact_id: str, timestamp: float) -> None:
        if self._notifier is None:
            return
        try:
            ret = self._notifier(contact_id, timestamp)
        except Exception:
            logger.warning("Outbound notifier failed for %s", contact_id, exc_info=True)
            return
        if inspect.isawaitable(ret):
            task = asyncio.ensure_future(ret)
            self._notify_tasks.add(task)
            task.add_done_callback(self._notify_done)

    def _notify_done(self, task: "asyncio.Task[Any]") -> None:
        self._notify_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Outbound notifier failed: %s", task.exception())
