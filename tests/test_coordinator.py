from __future__ import annotations

import asyncio

from contact_coordinator.core.config import CoordinatorConfig
from contact_coordinator.services import events
from contact_coordinator.services.coordinator import MessageCoordinator


async def settle(coord: MessageCoordinator, timeout: float = 2.0) -> None:
    """Wait until every drained queue item and handler task has finished."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while coord._drain_tasks or coord._handler_tasks:
        assert loop.time() < deadline, "coordinator did not settle"
        await asyncio.sleep(0.005)


def test_single_message_is_processed():
    coord = MessageCoordinator()
    seen = []

    async def handler(message, ctx):
        seen.append((message.text, message.kind, ctx.contact_id, ctx.queued))
        return {"response": "hello back"}

    result = asyncio.run(coord.process_message("A", {"text": "hello"}, handler))

    assert result.status == "processed"
    assert result.result == {"response": "hello back"}
    assert result.duration_ms is not None
    assert seen == [("hello", "text", "A", False)]
    assert coord.stats.messages_processed == 1
    assert not coord.registry.get("A").locked


def test_concurrent_messages_for_one_contact_never_overlap():
    coord = MessageCoordinator()
    active = 0
    peak = 0
    done = []

    async def handler(message, ctx):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        done.append(message.text)
        active -= 1

    async def run():
        results = await asyncio.gather(
            *(coord.process_message("A", {"text": f"m{i}"}, handler) for i in range(6))
        )
        await settle(coord)
        return results

    results = asyncio.run(run())

    statuses = [r.status for r in results]
    assert statuses.count("processed") == 1
    assert statuses.count("queued") == 5
    assert [r.queue_position for r in results[1:]] == [1, 2, 3, 4, 5]
    assert peak == 1
    assert done == [f"m{i}" for i in range(6)]


def test_different_contacts_run_concurrently():
    coord = MessageCoordinator()
    active = 0
    peak = 0

    async def handler(message, ctx):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    async def run():
        return await asyncio.gather(*(coord.process_message(c, {"text": "hi"}, handler) for c in "ABC"))

    results = asyncio.run(run())
    assert all(r.status == "processed" for r in results)
    assert peak == 3


def test_tracked_drain_resolves_queued_results_in_order():
    coord = MessageCoordinator(CoordinatorConfig(drain_mode="tracked"))

    async def handler(message, ctx):
        await asyncio.sleep(0.005)
        return message.text.upper()

    async def run():
        first, *queued = await asyncio.gather(
            *(coord.process_message("A", {"text": t}, handler) for t in ("a", "b", "c"))
        )
        drained = [await q.completion for q in queued]
        return first, queued, drained

    first, queued, drained = asyncio.run(run())
    assert first.result == "A"
    assert all(q.status == "queued" and q.completion is not None for q in queued)
    assert [d.status for d in drained] == ["processed", "processed"]
    assert [d.result for d in drained] == ["B", "C"]


def test_fire_and_forget_queued_result_has_no_completion():
    coord = MessageCoordinator()

    async def handler(message, ctx):
        await asyncio.sleep(0.005)

    async def run():
        results = await asyncio.gather(*(coord.process_message("A", {"text": t}, handler) for t in ("a", "b")))
        await settle(coord)
        return results

    _, queued = asyncio.run(run())
    assert queued.status == "queued"
    assert queued.completion is None


def test_repeated_hi_is_deduplicated_until_window_passes(clock):
    coord = MessageCoordinator(CoordinatorConfig(inbound_window=300), clock=clock)
    calls = []

    async def handler(message, ctx):
        calls.append(message.text)
        return "ok"

    async def run():
        out = []
        for _ in range(3):
            out.append(await coord.process_message("A", {"text": "hi"}, handler))
            clock.advance(0.3)
        clock.advance(360)
        out.append(await coord.process_message("A", {"text": "hi"}, handler))
        return out

    results = asyncio.run(run())
    assert [r.status for r in results] == ["processed", "duplicate", "duplicate", "processed"]
    assert calls == ["hi", "hi"]
    assert coord.stats.duplicates_detected == 2


def test_duplicate_detection_normalizes_whitespace_and_respects_kind():
    coord = MessageCoordinator()
    calls = []

    async def handler(message, ctx):
        calls.append(message.kind)

    async def run():
        return [
            await coord.process_message("A", {"text": "see  you"}, handler),
            await coord.process_message("A", {"text": " see you "}, handler),
            await coord.process_message("A", {"text": "see you", "kind": "image"}, handler),
            await coord.process_message("B", {"text": "see you"}, handler),
        ]

    results = asyncio.run(run())
    assert [r.status for r in results] == ["processed", "duplicate", "processed", "processed"]
    assert calls == ["text", "image", "text"]


def test_field_boundaries_are_part_of_the_hash():
    coord = MessageCoordinator()
    calls = []

    async def handler(message, ctx):
        calls.append((ctx.contact_id, message.text))

    async def run():
        return [
            await coord.process_message("A:x", {"text": "y"}, handler),
            await coord.process_message("A", {"text": "x:y"}, handler),
        ]

    results = asyncio.run(run())
    assert [r.status for r in results] == ["processed", "processed"]
    assert calls == [("A:x", "y"), ("A", "x:y")]


def test_duplicate_never_touches_registry():
    coord = MessageCoordinator()

    async def handler(message, ctx):
        return None

    async def run():
        await coord.process_message("A", {"text": "x"}, handler)
        coord.registry.clear()
        return await coord.process_message("A", {"text": "x"}, handler)

    result = asyncio.run(run())
    assert result.status == "duplicate"
    assert coord.registry.count_active() == 0


def test_duplicate_event_is_emitted():
    coord = MessageCoordinator()
    seen = []
    coord.events.on(events.DUPLICATE_DETECTED, seen.append)

    async def handler(message, ctx):
        return None

    async def run():
        await coord.process_message("A", {"text": "x"}, handler)
        await coord.process_message("A", {"text": "x"}, handler)

    asyncio.run(run())
    assert len(seen) == 1
    assert seen[0]["contact_id"] == "A"
    assert len(seen[0]["hash_prefix"]) == 8


def test_handler_exception_becomes_error_result():
    coord = MessageCoordinator()
    errors = []
    coord.events.on(events.PROCESSING_ERROR, errors.append)

    async def handler(message, ctx):
        raise RuntimeError("llm unavailable")

    result = asyncio.run(coord.process_message("A", {"text": "x"}, handler))
    assert result.status == "error"
    assert result.error == "llm unavailable"
    assert result.error_type == "handler_error"
    assert errors and errors[0]["error"] == "llm unavailable"
    assert coord.stats.messages_failed == 1
    assert not coord.registry.get("A").locked


def test_timeout_reports_error_but_does_not_cancel_handler():
    coord = MessageCoordinator(CoordinatorConfig(processing_timeout=0.02))
    finished = []

    async def handler(message, ctx):
        await asyncio.sleep(0.1)
        finished.append(message.text)

    async def run():
        result = await coord.process_message("A", {"text": "slow"}, handler)
        locked_after = coord.registry.get("A").locked
        await coord.shutdown(timeout=1)
        return result, locked_after

    result, locked_after = asyncio.run(run())
    assert result.status == "error"
    assert result.error_type == "timeout"
    assert coord.stats.timeouts_handled == 1
    assert locked_after is False
    assert finished == ["slow"]


def test_timeout_cancels_handler_when_configured():
    coord = MessageCoordinator(CoordinatorConfig(processing_timeout=0.02, cancel_on_timeout=True))
    cancelled = []

    async def handler(message, ctx):
        try:
            await asyncio.sleep(1)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    async def run():
        result = await coord.process_message("A", {"text": "slow"}, handler)
        await asyncio.sleep(0.01)
        return result

    result = asyncio.run(run())
    assert result.error_type == "timeout"
    assert cancelled == [True]


def test_invalid_inputs_are_rejected_without_raising():
    coord = MessageCoordinator()

    async def handler(message, ctx):
        return None

    async def run():
        return [
            await coord.process_message("", {"text": "x"}, handler),
            await coord.process_message("A", {"body": "x"}, handler),
            await coord.process_message("A", "plain string", handler),
            await coord.process_message("A", {"text": "x"}, None),
            await coord.process_message("A", {"text": "x", "timestamp": "abc"}, handler),
        ]

    results = asyncio.run(run())
    assert all(r.status == "error" and r.error_type == "validation_error" for r in results)
    assert coord.registry.count_active() == 0


def test_overload_rejects_new_contact_and_forgets_its_hash():
    coord = MessageCoordinator(CoordinatorConfig(max_contacts=1))

    async def handler(message, ctx):
        return None

    async def run():
        a = await coord.process_message("A", {"text": "x"}, handler)
        b = await coord.process_message("B", {"text": "x"}, handler)
        return a, b

    a, b = asyncio.run(run())
    assert a.status == "processed"
    assert b.status == "error" and b.error_type == "overload"
    assert len(coord.inbound_cache) == 1


def test_full_queue_is_a_hard_error():
    coord = MessageCoordinator(CoordinatorConfig(max_queue_size=1))

    async def handler(message, ctx):
        await asyncio.sleep(0.01)

    async def run():
        results = await asyncio.gather(*(coord.process_message("A", {"text": t}, handler) for t in "abc"))
        await settle(coord)
        return results

    results = asyncio.run(run())
    assert [r.status for r in results] == ["processed", "queued", "error"]
    assert results[2].error_type == "queue_full"


def test_queued_failure_does_not_block_the_rest_of_the_queue():
    coord = MessageCoordinator(CoordinatorConfig(drain_mode="tracked"))

    async def handler(message, ctx):
        await asyncio.sleep(0.005)
        if message.text == "bad":
            raise ValueError("boom")
        return message.text

    async def run():
        _, bad, good = await asyncio.gather(
            *(coord.process_message("A", {"text": t}, handler) for t in ("first", "bad", "good"))
        )
        return await bad.completion, await good.completion

    bad, good = asyncio.run(run())
    assert bad.status == "error" and bad.error == "boom"
    assert good.status == "processed" and good.result == "good"


def test_emergency_cleanup_keeps_sent_records():
    coord = MessageCoordinator()
    cleanups = []
    coord.events.on(events.EMERGENCY_CLEANUP, cleanups.append)

    async def handler(message, ctx):
        await asyncio.sleep(0.01)

    async def run():
        first = asyncio.ensure_future(coord.process_message("A", {"text": "a"}, handler))
        await asyncio.sleep(0)
        await coord.process_message("A", {"text": "b"}, handler)
        coord.sent_cache.put("h", _sent_record(coord))
        details = coord.emergency_cleanup()
        await first
        await settle(coord)
        return details

    details = asyncio.run(run())
    assert details["cleared_contacts"] == 1
    assert details["cleared_queued"] == 1
    assert len(coord.inbound_cache) == 0
    assert len(coord.sent_cache) == 1
    assert cleanups[0]["cleared_queued"] == 1


def test_emergency_unlock_releases_and_drains():
    coord = MessageCoordinator(CoordinatorConfig(drain_mode="tracked"))

    async def handler(message, ctx):
        return message.text

    async def run():
        coord.registry.try_acquire("A")
        queued = await coord.process_message("A", {"text": "waiting"}, handler)
        released = coord.emergency_unlock("A")
        drained = await asyncio.wait_for(queued.completion, 1)
        return queued, released, drained

    queued, released, drained = asyncio.run(run())
    assert queued.status == "queued"
    assert released == 1
    assert drained.status == "processed" and drained.result == "waiting"
    assert coord.emergency_unlock("nobody") == 0


def test_stats_snapshot():
    coord = MessageCoordinator()

    async def handler(message, ctx):
        return None

    async def run():
        await coord.process_message("A", {"text": "x"}, handler)
        await coord.process_message("A", {"text": "x"}, handler)

    asyncio.run(run())
    stats = coord.get_stats()
    assert stats["messages_received"] == 2
    assert stats["messages_processed"] == 1
    assert stats["duplicates_detected"] == 1
    assert stats["duplicate_rate"] == 0.5
    assert stats["success_rate"] == 1.0
    assert stats["active_contacts"] == 1
    assert stats["message_hashes_tracked"] == 1
    assert stats["queue_details"] == {}
    assert stats["uptime_formatted"].endswith("s")


def test_shutdown_waits_for_in_flight_handlers():
    coord = MessageCoordinator()
    finished = []

    async def handler(message, ctx):
        await asyncio.sleep(0.02)
        finished.append(message.text)

    async def run():
        coord.start()
        pending = asyncio.ensure_future(coord.process_message("A", {"text": "x"}, handler))
        await asyncio.sleep(0)
        summary = await coord.shutdown(timeout=1)
        await pending
        return summary

    summary = asyncio.run(run())
    assert finished == ["x"]
    assert summary["unfinished"] == 0
    assert not coord.janitor.running


def _sent_record(coord):
    from contact_coordinator.models import SentRecord

    return SentRecord(hash="h", timestamp=coord._clock(), contact_id="A", text_preview="hi")


def test_drained_item_releases_only_its_own_lock():
    coord = MessageCoordinator()

    async def handler(message, ctx):
        return None

    async def run():
        coord.registry.try_acquire("A")
        await coord.process_message("A", {"text": "waiting"}, handler)
        # unlock schedules the drain; state is replaced before it runs
        coord.emergency_unlock("A")
        coord.registry.clear()
        coord.registry.try_acquire("A")
        holder = coord.registry.lock_token("A")
        await settle(coord)
        return holder

    holder = asyncio.run(run())
    assert coord.registry.get("A").locked
    assert coord.registry.lock_token("A") == holder
