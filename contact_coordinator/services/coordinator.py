from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from contact_coordinator.core.config import CoordinatorConfig
from contact_coordinator.core.errors import (
    CoordinatorError,
    OverloadError,
    ProcessingTimeoutError,
    QueueFullError,
    ValidationError,
    error_type_of,
)
from contact_coordinator.models import (
    DedupRecord,
    Handler,
    HandlerContext,
    InboundMessage,
    ProcessResult,
    QueueItem,
    SendResult,
    SentRecord,
)
from contact_coordinator.services.contact_registry import ContactStateRegistry
from contact_coordinator.services.events import (
    DUPLICATE_DETECTED,
    EMERGENCY_CLEANUP,
    MESSAGE_PROCESSED,
    PROCESSING_ERROR,
    CoordinatorStats,
    EventBus,
    format_uptime,
)
from contact_coordinator.services.janitor import Janitor
from contact_coordinator.services.retrying_sender import OutboundNotifier, RetryingSender, Transport
from contact_coordinator.utils.digests import inbound_hash
from contact_coordinator.utils.ttl_cache import TTLCache


logger = logging.getLogger(__name__)


class MessageCoordinator:
    """Single entry point for inbound messages and outbound replies.

    Guarantees per contact: one handler invocation at a time, FIFO for the
    rest, duplicate inbound events absorbed before they reach the handler, and
    identical replies suppressed within the response window.

    ``process_message`` and ``send_response`` never raise; they return
    ``ProcessResult`` / ``SendResult``.
    """

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        transport: Optional[Transport] = None,
        notifier: Optional[OutboundNotifier] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or CoordinatorConfig()
        self.events = events or EventBus()
        self._clock = clock
        self.stats = CoordinatorStats(start_time=clock())

        cfg = self.config
        self.inbound_cache: TTLCache[DedupRecord] = TTLCache(
            cfg.inbound_window, cfg.max_message_hashes, clock=clock, name="inbound"
        )
        self.sent_cache: TTLCache[SentRecord] = TTLCache(
            cfg.response_window, cfg.max_sent_responses, clock=clock, name="outbound"
        )
        self.registry = ContactStateRegistry(cfg.max_contacts, cfg.max_queue_size, clock=clock)
        self.sender: Optional[RetryingSender] = None
        if transport is not None:
            self.sender = RetryingSender(
                transport,
                self.sent_cache,
                max_retries=cfg.max_retries,
                backoff_base=cfg.backoff_base,
                send_timeout=cfg.send_timeout,
                notifier=notifier,
                stats=self.stats,
                sleep=sleep,
                clock=clock,
            )
        self.janitor = Janitor(
            self.inbound_cache,
            self.sent_cache,
            self.registry,
            self.stats,
            self.events,
            interval=cfg.cleanup_interval,
            inactivity_threshold=cfg.inactivity_threshold,
            lock_timeout=cfg.lock_timeout,
            on_lock_recovered=self._drain_next,
            clock=clock,
        )
        # handler tasks, including ones that outlived their timeout
        self._handler_tasks: Set["asyncio.Task[Any]"] = set()
        self._drain_tasks: Set["asyncio.Task[Any]"] = set()

    # --- Lifecycle ---
    def start(self) -> None:
        self.janitor.start()
        logger.info(
            "Coordinator started (dedup window %.0fs, response window %.0fs, processing timeout %.0fs)",
            self.config.inbound_window,
            self.config.response_window,
            self.config.processing_timeout,
        )

    async def shutdown(self, timeout: Optional[float] = None) -> Dict[str, int]:
        """Stop the janitor and wait for in-flight handlers, bounded by ``timeout``."""
        await self.janitor.stop()
        timeout = self.config.shutdown_timeout if timeout is None else timeout
        tasks = self._handler_tasks | self._drain_tasks | set(self.registry.in_flight_tasks())
        pending = {t for t in tasks if not t.done()}
        if not pending:
            logger.info("Shutdown complete")
            return {"awaited": 0, "unfinished": 0}
        logger.info("Waiting for %d in-flight invocations", len(pending))
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning("Shutdown timed out with %d invocations still running", len(not_done))
        else:
            logger.info("Shutdown complete")
        return {"awaited": len(done), "unfinished": len(not_done)}

    # --- Inbound ---
    async def process_message(self, contact_id: str, message: Any, handler: Handler) -> ProcessResult:
        started = self._clock()
        self.stats.messages_received += 1
        digest: Optional[str] = None
        try:
            msg = self._validate(contact_id, message, handler)
            digest = inbound_hash(contact_id, msg.text, msg.kind)

            if self._is_duplicate(digest):
                self.stats.duplicates_detected += 1
                self.events.emit(DUPLICATE_DETECTED, contact_id=contact_id, hash_prefix=digest[:8])
                logger.warning("Duplicate message from %s (hash %s)", contact_id, digest[:8])
                return ProcessResult(status="duplicate", contact_id=contact_id, message_hash=digest[:8])

            self._record_hash(digest, contact_id)
            self.registry.get_or_create(contact_id)

            if not self.registry.try_acquire(contact_id):
                return self._enqueue(contact_id, msg, handler, digest)
            token = self.registry.lock_token(contact_id)
        except Exception as e:
            if digest is not None and isinstance(e, (OverloadError, QueueFullError)):
                # rejected, not seen: let the caller's retry through
                self.inbound_cache.pop(digest)
            return self._failure(contact_id, e, started)

        return await self._run_locked(contact_id, token, msg, handler, started, digest)

    # --- Outbound ---
    async def send_response(
        self, contact_id: str, text: str, options: Optional[Dict[str, Any]] = None
    ) -> SendResult:
        if self.sender is None:
            logger.error("No transport configured, cannot send to %s", contact_id)
            return SendResult(sent=False, contact_id=str(contact_id), error="no transport configured")
        return await self.sender.send_response(contact_id, text, options)

    async def send_batch(self, responses) -> Dict[str, Any]:
        if self.sender is None:
            return {"sent": 0, "failed": 0, "results": [], "error": "no transport configured"}
        return await self.sender.send_batch(responses)

    # --- Admin ---
    def emergency_cleanup(self) -> Dict[str, int]:
        """Drop all contact state and inbound hashes. Sent records are kept."""
        cleared_contacts, dropped = self.registry.clear()
        cleared_hashes = self.inbound_cache.clear()
        for item in dropped:
            if item.completion is not None and not item.completion.done():
                item.completion.cancel()
        logger.warning(
            "Emergency cleanup: %d contacts, %d queued messages, %d hashes cleared",
            cleared_contacts,
            len(dropped),
            cleared_hashes,
        )
        self.events.emit(EMERGENCY_CLEANUP, cleared_contacts=cleared_contacts, cleared_queued=len(dropped))
        return {"cleared_contacts": cleared_contacts, "cleared_queued": len(dropped), "cleared_hashes": cleared_hashes}

    def emergency_unlock(self, contact_id: Optional[str] = None) -> int:
        """Force-release one contact's lock, or every lock when no contact is given."""
        targets = [contact_id] if contact_id else self.registry.locked_contacts()
        released = 0
        for cid in targets:
            if self.registry.force_release(cid):
                released += 1
                logger.warning("Emergency unlock for %s", cid)
                self._drain_next(cid)
        return released

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        uptime = now - self.stats.start_time
        data = self.stats.snapshot()
        data.update(
            {
                "uptime_seconds": uptime,
                "uptime_formatted": format_uptime(uptime),
                "active_contacts": self.registry.count_active(),
                "locked_contacts": self.registry.count_locked(),
                "queued_messages": self.registry.count_queued(),
                "message_hashes_tracked": len(self.inbound_cache),
                "sent_responses_tracked": len(self.sent_cache),
                "sends_in_flight": self.sender.in_flight_count if self.sender else 0,
                "duplicate_rate": round(self.stats.duplicate_rate(), 4),
                "success_rate": round(self.stats.success_rate(), 4),
                "janitor_running": self.janitor.running,
                "queue_details": self.registry.queue_details(now),
            }
        )
        return data

    # --- Internals ---
    def _validate(self, contact_id: Any, message: Any, handler: Any) -> InboundMessage:
        if not isinstance(contact_id, str) or not contact_id.strip():
            raise ValidationError(f"invalid contact_id: {contact_id!r}")
        if not callable(handler):
            raise ValidationError("handler must be callable")
        return InboundMessage.coerce(message)

    def _is_duplicate(self, digest: str) -> bool:
        try:
            return self.inbound_cache.is_fresh_within(digest)
        except Exception:
            logger.error("Inbound dedup lookup failed, letting message through", exc_info=True)
            return False

    def _record_hash(self, digest: str, contact_id: str) -> None:
        try:
            previous = self.inbound_cache.get(digest)
            self.inbound_cache.put(
                digest,
                DedupRecord(
                    hash=digest,
                    timestamp=self._clock(),
                    contact_id=contact_id,
                    occurrences=(previous.occurrences + 1) if previous else 1,
                ),
            )
        except Exception:
            logger.error("Failed to record inbound hash for %s", contact_id, exc_info=True)

    def _enqueue(self, contact_id: str, msg: InboundMessage, handler: Handler, digest: str) -> ProcessResult:
        completion = None
        if self.config.drain_mode == "tracked":
            completion = asyncio.get_running_loop().create_future()
        item = QueueItem(
            id=uuid.uuid4().hex,
            message=msg,
            handler=handler,
            enqueued_at=self._clock(),
            completion=completion,
        )
        position = self.registry.enqueue(contact_id, item)
        logger.info("Contact %s busy, queued message at position %d", contact_id, position)
        return ProcessResult(
            status="queued",
            contact_id=contact_id,
            message_hash=digest[:8],
            queue_position=position,
            queue_id=item.id,
            completion=completion,
        )

    async def _run_locked(
        self,
        contact_id: str,
        token: Optional[str],
        msg: InboundMessage,
        handler: Handler,
        started: float,
        digest: Optional[str] = None,
        queued: bool = False,
    ) -> ProcessResult:
        """Run ``handler`` for a contact whose lock the caller holds under ``token``."""
        try:
            result = await self._process_with_timeout(contact_id, msg, handler, queued)
            duration_ms = int((self._clock() - started) * 1000)
            self.stats.record_success(duration_ms)
            self.events.emit(MESSAGE_PROCESSED, contact_id=contact_id, duration_ms=duration_ms)
            logger.info("Message for %s processed in %dms", contact_id, duration_ms)
            return ProcessResult(
                status="processed",
                contact_id=contact_id,
                result=result,
                message_hash=digest[:8] if digest else None,
                duration_ms=duration_ms,
            )
        except Exception as e:
            return self._failure(contact_id, e, started)
        finally:
            # a lock taken over by the janitor or an admin unlock belongs to someone else now
            if token is not None and self.registry.release(contact_id, token):
                self._drain_next(contact_id)

    async def _process_with_timeout(
        self, contact_id: str, msg: InboundMessage, handler: Handler, queued: bool
    ) -> Any:
        ctx = HandlerContext(contact_id=contact_id, timestamp=self._clock(), queued=queued)
        ret = handler(msg, ctx)
        if not inspect.isawaitable(ret):
            return ret

        task = asyncio.ensure_future(ret)
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_done)
        self.registry.set_in_flight(contact_id, task)

        timeout = self.config.processing_timeout
        try:
            # shield: a timeout abandons the wait, not the handler
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            self.stats.timeouts_handled += 1
            if self.config.cancel_on_timeout:
                task.cancel()
            raise ProcessingTimeoutError(f"Processing for {contact_id} exceeded {timeout}s")

    def _handler_done(self, task: "asyncio.Task[Any]") -> None:
        self._handler_tasks.discard(task)
        # surfaces failures of handlers nobody is waiting on anymore
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Handler task finished with error: %s", task.exception())

    def _drain_next(self, contact_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop to run on; the next arrival for this contact will drain it
            return
        claimed = self.registry.claim_next(contact_id)
        if claimed is None:
            return
        item, token = claimed
        logger.info("Draining queued message %s for %s (attempt %d)", item.id, contact_id, item.attempts)
        task = loop.create_task(self._process_queued(contact_id, item, token))
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)

    async def _process_queued(self, contact_id: str, item: QueueItem, token: str) -> ProcessResult:
        result = await self._run_locked(
            contact_id, token, item.message, item.handler, self._clock(), queued=True
        )
        if result.status == "error":
            logger.warning("Queued message %s for %s failed: %s", item.id, contact_id, result.error)
        if item.completion is not None and not item.completion.done():
            item.completion.set_result(result)
        return result

    def _failure(self, contact_id: Any, exc: Exception, started: float) -> ProcessResult:
        duration_ms = int((self._clock() - started) * 1000)
        self.stats.record_failure()
        error_type = error_type_of(exc)
        self.events.emit(
            PROCESSING_ERROR,
            contact_id=contact_id,
            error=str(exc),
            error_type=error_type,
            duration_ms=duration_ms,
        )
        if isinstance(exc, CoordinatorError):
            logger.warning("Message for %s rejected (%s): %s", contact_id, error_type, exc)
        else:
            logger.error("Handler failed for %s: %s", contact_id, exc, exc_info=exc)
        return ProcessResult(
            status="error",
            contact_id=str(contact_id),
            error=str(exc),
            error_type=error_type,
            duration_ms=duration_ms,
        )


def build_coordinator(
    config: CoordinatorConfig,
    transport: Optional[Transport] = None,
    notifier: Optional[OutboundNotifier] = None,
) -> MessageCoordinator:
    """Construct the process-wide coordinator. Call once at startup and pass it around."""
    return MessageCoordinator(config, transport=transport, notifier=notifier)
