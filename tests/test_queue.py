from __future__ import annotations

import asyncio

import pytest

from offline_sync.domain.outcomes import Outcome
from offline_sync.engine import OfflineSyncEngine
from offline_sync.errors import ConflictDetected, ExhaustedRetries, NotFoundError
from offline_sync.models import ConflictRecord, SyncAction, SyncPriority
from offline_sync.services.queue import EnqueueOptions, default_priority
from tests.support import FakeClock

DAY_MS = 24 * 60 * 60 * 1000
FAR_FUTURE_MS = 10 * 365 * DAY_MS


def test_default_priority_by_action() -> None:
    assert default_priority(SyncAction.DELETE) == SyncPriority.CRITICAL
    assert default_priority("create") == SyncPriority.HIGH
    assert default_priority(SyncAction.UPDATE) == SyncPriority.NORMAL


@pytest.mark.anyio
async def test_enqueue_sets_initial_state(engine: OfflineSyncEngine, clock: FakeClock) -> None:
    op = await engine.queue.enqueue(SyncAction.CREATE, "price", "temp-1", {"amount": 3})
    assert op.attempts == 0
    assert op.max_attempts == 3
    assert op.priority == SyncPriority.HIGH
    assert op.next_retry_at_ms == clock.now
    assert op.created_at_ms == clock.now

    delayed = await engine.queue.enqueue(
        "update", "price", "p1", {}, EnqueueOptions(max_attempts=5, delay_ms=1_000, priority=4)
    )
    assert delayed.max_attempts == 5
    assert delayed.priority == SyncPriority.LOW
    assert delayed.next_retry_at_ms == clock.now + 1_000

    meta = await engine.metadata.get()
    assert meta.total_offline_actions == 2


@pytest.mark.anyio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"action": "upsert", "entity_type": "price", "entity_id": "p1"},
        {"action": "create", "entity_type": " ", "entity_id": "p1"},
        {"action": "create", "entity_type": "price", "entity_id": ""},
        {"action": "create", "entity_type": "price", "entity_id": "p1", "options": EnqueueOptions(max_attempts=0)},
        {"action": "create", "entity_type": "price", "entity_id": "p1", "options": EnqueueOptions(priority=9)},
        {"action": "create", "entity_type": "price", "entity_id": "p1", "options": EnqueueOptions(delay_ms=-1)},
    ],
)
async def test_enqueue_rejects_bad_input(engine: OfflineSyncEngine, kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        await engine.queue.enqueue(payload={}, **kwargs)  # type: ignore[arg-type]
    assert await engine.queue.count_pending() == 0


@pytest.mark.anyio
async def test_ready_items_sorted_by_priority_then_age(
    engine: OfflineSyncEngine, clock: FakeClock
) -> None:
    order = [
        ("low-1", SyncPriority.LOW),
        ("normal-1", SyncPriority.NORMAL),
        ("critical-1", SyncPriority.CRITICAL),
        ("high-1", SyncPriority.HIGH),
        ("normal-2", SyncPriority.NORMAL),
        ("critical-2", SyncPriority.CRITICAL),
    ]
    for entity_id, priority in order:
        await engine.queue.enqueue("update", "price", entity_id, {}, EnqueueOptions(priority=priority))
        clock.advance(1)

    ready = await engine.queue.get_ready()
    assert [op.entity_id for op in ready] == [
        "critical-1",
        "critical-2",
        "high-1",
        "normal-1",
        "normal-2",
        "low-1",
    ]
    # Same contents, same answer.
    again = await engine.queue.get_ready()
    assert [op.id for op in again] == [op.id for op in ready]


@pytest.mark.anyio
async def test_same_millisecond_keeps_enqueue_order(engine: OfflineSyncEngine) -> None:
    for i in range(5):
        await engine.queue.enqueue("update", "price", f"p{i}", {})
    ready = await engine.queue.get_ready()
    assert [op.entity_id for op in ready] == ["p0", "p1", "p2", "p3", "p4"]


@pytest.mark.anyio
async def test_concurrent_enqueues_get_distinct_seq(engine: OfflineSyncEngine) -> None:
    ops = await asyncio.gather(
        *(engine.queue.enqueue("update", "price", f"p{i}", {}) for i in range(8))
    )
    seqs = [op.seq for op in ops]
    assert len(set(seqs)) == 8
    stored = await engine.queue.get_items_by_status()
    assert sorted(op.seq for op in stored) == sorted(seqs)


@pytest.mark.anyio
async def test_delete_enqueued_after_low_priority_runs_first(
    engine: OfflineSyncEngine, clock: FakeClock
) -> None:
    await engine.queue.enqueue(
        "update", "region", "north", {"name": "North"}, EnqueueOptions(priority=SyncPriority.LOW)
    )
    clock.advance(5_000)
    await engine.queue.enqueue("delete", "price", "p9")

    ready = await engine.queue.get_ready()
    assert [(op.action, op.entity_id) for op in ready] == [("delete", "p9"), ("update", "north")]


@pytest.mark.anyio
async def test_ready_filters(engine: OfflineSyncEngine, clock: FakeClock) -> None:
    await engine.queue.enqueue("delete", "price", "p1")
    await engine.queue.enqueue("update", "region", "r1", {})
    await engine.queue.enqueue("update", "price", "p2", {}, EnqueueOptions(delay_ms=60_000))

    assert [op.entity_id for op in await engine.queue.get_ready(entity_types=["region"])] == ["r1"]
    assert [op.entity_id for op in await engine.queue.get_ready(max_priority=1)] == ["p1"]
    assert len(await engine.queue.get_ready()) == 2
    assert len(await engine.queue.get_ready(clock.now + 60_000)) == 3


@pytest.mark.anyio
async def test_retryable_failure_backs_off(engine: OfflineSyncEngine, clock: FakeClock) -> None:
    op = await engine.queue.enqueue("update", "price", "p1", {})

    result = await engine.queue.record_attempt(op.id, Outcome.retryable("HTTP 500", status_code=500))
    assert result.removed is False
    updated = result.operation
    assert updated.attempts == 1
    assert updated.last_error == "HTTP 500"
    assert updated.last_attempt_at_ms == clock.now
    assert updated.next_retry_at_ms == clock.now + 1_000
    assert await engine.queue.get_ready() == []

    clock.advance(1_000)
    assert [o.id for o in await engine.queue.get_ready()] == [op.id]

    second = await engine.queue.record_attempt(op.id, Outcome.retryable("HTTP 500"))
    assert second.operation.attempts == 2
    assert second.operation.next_retry_at_ms == clock.now + 2_000


@pytest.mark.anyio
async def test_success_removes_item(engine: OfflineSyncEngine) -> None:
    op = await engine.queue.enqueue("create", "price", "temp-1", {"a": 1})
    result = await engine.queue.record_attempt(op.id, Outcome.success(server_id="9"))
    assert result.removed is True
    assert await engine.queue.get(op.id) is None
    with pytest.raises(NotFoundError):
        await engine.queue.record_attempt(op.id, Outcome.success())


@pytest.mark.anyio
async def test_exhaustion_is_terminal(engine: OfflineSyncEngine, clock: FakeClock) -> None:
    op = await engine.queue.enqueue(
        "create", "price", "temp-1", {}, EnqueueOptions(priority=SyncPriority.HIGH, max_attempts=3)
    )
    for _ in range(3):
        clock.advance(DAY_MS)
        assert [o.id for o in await engine.queue.get_ready()] == [op.id]
        await engine.queue.record_attempt(op.id, Outcome.retryable("connection refused"))

    stored = await engine.queue.get(op.id)
    assert stored is not None
    assert stored.attempts == 3
    assert stored.exhausted
    assert stored.next_retry_at_ms == clock.now + DAY_MS

    assert await engine.queue.get_ready(clock.now + FAR_FUTURE_MS) == []
    stats = await engine.queue.stats()
    assert stats.failed_items == 1
    assert stats.pending_items == 0
    assert [o.id for o in await engine.queue.get_items_by_status("failed")] == [op.id]


@pytest.mark.anyio
async def test_terminal_outcome_exhausts_immediately(engine: OfflineSyncEngine) -> None:
    op = await engine.queue.enqueue("create", "price", "temp-1", {}, EnqueueOptions(max_attempts=5))
    result = await engine.queue.record_attempt(op.id, Outcome.terminal("bad payload", status_code=422))
    assert result.operation.attempts == 5
    assert result.operation.exhausted


@pytest.mark.anyio
async def test_blocked_items_refuse_further_failures(engine: OfflineSyncEngine) -> None:
    spent = await engine.queue.enqueue("update", "price", "a", {}, EnqueueOptions(max_attempts=1))
    await engine.queue.record_attempt(spent.id, Outcome.retryable("boom"))
    with pytest.raises(ExhaustedRetries):
        await engine.queue.record_attempt(spent.id, Outcome.retryable("boom"))

    blocked = await engine.queue.enqueue("update", "price", "b", {"amount": 1})
    await engine.queue.record_attempt(blocked.id, Outcome.conflict(server_data={"amount": 4}))
    with pytest.raises(ConflictDetected):
        await engine.queue.record_attempt(blocked.id, Outcome.retryable("boom"))

    # A late success still settles the item.
    result = await engine.queue.record_attempt(blocked.id, Outcome.success())
    assert result.removed


@pytest.mark.anyio
async def test_conflict_blocks_without_consuming_attempts(
    engine: OfflineSyncEngine, clock: FakeClock
) -> None:
    op = await engine.queue.enqueue("update", "price", "p1", {"amount": 2})
    result = await engine.queue.record_attempt(
        op.id, Outcome.conflict(server_data={"amount": 5})
    )
    assert result.conflict is not None
    assert result.operation.attempts == 0
    assert result.operation.conflict_id == result.conflict.conflict_id

    stored_conflict = await engine.store.get(ConflictRecord, result.conflict.conflict_id)
    assert stored_conflict is not None
    assert stored_conflict.local_data == {"amount": 2}
    assert stored_conflict.server_data == {"amount": 5}
    assert stored_conflict.operation_id == op.id

    assert await engine.queue.get_ready(clock.now + FAR_FUTURE_MS) == []
    stats = await engine.queue.stats()
    assert stats.conflict_items == 1
    assert [o.id for o in await engine.queue.get_items_by_status("conflict")] == [op.id]

    cleared = await engine.queue.clear_conflict(op.id, payload={"amount": 3})
    assert cleared.conflict_id is None
    assert cleared.attempts == 0
    ready = await engine.queue.get_ready()
    assert [o.payload for o in ready] == [{"amount": 3}]


@pytest.mark.anyio
async def test_stats_full_scan(engine: OfflineSyncEngine, clock: FakeClock) -> None:
    empty = await engine.queue.stats()
    assert empty.total_items == 0
    assert empty.average_wait_time_ms == 0.0
    assert empty.oldest_item_ms is None

    first = clock.now
    await engine.queue.enqueue("update", "price", "p1", {})
    clock.advance(1_000)
    await engine.queue.enqueue("update", "price", "p2", {})
    clock.advance(1_000)

    stats = await engine.queue.stats()
    assert stats.total_items == 2
    assert stats.pending_items == 2
    assert stats.oldest_item_ms == first
    assert stats.newest_item_ms == first + 1_000
    assert stats.average_wait_time_ms == 1_500.0


@pytest.mark.anyio
async def test_cleanup_removes_only_old_failed_items(
    engine: OfflineSyncEngine, clock: FakeClock
) -> None:
    old_failed = await engine.queue.enqueue("update", "price", "old", {}, EnqueueOptions(max_attempts=1))
    old_pending = await engine.queue.enqueue("update", "price", "old-pending", {})
    await engine.queue.record_attempt(old_failed.id, Outcome.retryable("boom"))

    clock.advance(10 * DAY_MS)
    new_failed = await engine.queue.enqueue("update", "price", "new", {}, EnqueueOptions(max_attempts=1))
    await engine.queue.record_attempt(new_failed.id, Outcome.retryable("boom"))

    assert await engine.queue.cleanup(7) == 1
    assert await engine.queue.get(old_failed.id) is None
    assert await engine.queue.get(old_pending.id) is not None
    assert await engine.queue.get(new_failed.id) is not None

    meta = await engine.metadata.get()
    assert meta.error_count == 1
    assert meta.pending_count == 1


@pytest.mark.anyio
async def test_retry_failed_resets_budget(engine: OfflineSyncEngine, clock: FakeClock) -> None:
    a = await engine.queue.enqueue("update", "price", "a", {}, EnqueueOptions(max_attempts=1))
    b = await engine.queue.enqueue("update", "price", "b", {}, EnqueueOptions(max_attempts=1))
    for op in (a, b):
        await engine.queue.record_attempt(op.id, Outcome.retryable("boom"))
    assert await engine.queue.get_ready() == []

    assert await engine.queue.retry_failed([a.id]) == 1
    assert [op.id for op in await engine.queue.get_ready()] == [a.id]
    assert await engine.queue.retry_failed() == 1
    assert len(await engine.queue.get_ready()) == 2


@pytest.mark.anyio
async def test_rebind_entity_id(engine: OfflineSyncEngine) -> None:
    await engine.queue.enqueue("update", "price", "temp-1", {"a": 2})
    await engine.queue.enqueue("delete", "price", "temp-1")
    await engine.queue.enqueue("update", "region", "temp-1", {})

    assert await engine.queue.rebind_entity_id("price", "temp-1", "srv-7") == 2
    ids = sorted((op.entity_type, op.entity_id) for op in await engine.queue.get_ready())
    assert ids == [("price", "srv-7"), ("price", "srv-7"), ("region", "temp-1")]
    assert await engine.queue.rebind_entity_id("price", "srv-7", "srv-7") == 0


@pytest.mark.anyio
async def test_clear_and_remove(engine: OfflineSyncEngine) -> None:
    op = await engine.queue.enqueue("update", "price", "p1", {})
    await engine.queue.enqueue("update", "price", "p2", {})
    assert await engine.queue.remove(op.id) is True
    assert await engine.queue.remove(op.id) is False
    assert await engine.queue.clear() == 1
    assert (await engine.metadata.get()).pending_count == 0
