"""Tests for the per-process session manager against the SQL ledger."""

import pytest

from avanti.timer.breadcrumbs import Breadcrumb
from avanti.timer.lifecycle import HIDDEN, VISIBLE
from avanti.timer.session_manager import ENDED, STARTED, SessionManager


@pytest.fixture
def manager(ledger, breadcrumbs, lifecycle, clock):
    return SessionManager(ledger, breadcrumbs, lifecycle, clock=clock)


@pytest.fixture
def events(manager):
    seen = []
    manager.add_listener(lambda event: seen.append((event.kind, event.session.task_id, event.reason)))
    return seen


async def open_sessions(ledger):
    return await ledger.query(status="open")


@pytest.mark.asyncio
async def test_start_session_records_breadcrumb(manager, ledger, breadcrumbs, seed, events):
    session_id = await manager.start_session(seed.task_id, seed.agent_id)

    assert session_id is not None
    assert manager.is_session_active(seed.task_id)
    assert not manager.is_session_active(seed.second_task_id)
    assert breadcrumbs.load().session_id == session_id
    assert [s.id for s in await open_sessions(ledger)] == [session_id]
    assert events == [(STARTED, seed.task_id, "start")]


@pytest.mark.asyncio
async def test_switching_tasks_closes_previous_first(manager, ledger, clock, seed, events):
    first = await manager.start_session(seed.task_id, seed.agent_id)
    clock.advance(300)
    second = await manager.start_session(seed.second_task_id, seed.agent_id)

    assert [s.id for s in await open_sessions(ledger)] == [second]
    closed = await ledger.get(first)
    assert closed.duration_seconds == 300
    assert events == [
        (STARTED, seed.task_id, "start"),
        (ENDED, seed.task_id, "end"),
        (STARTED, seed.second_task_id, "start"),
    ]


@pytest.mark.asyncio
async def test_failed_close_aborts_new_start(manager, ledger, clock, seed):
    first = await manager.start_session(seed.task_id, seed.agent_id)
    clock.advance(60)
    ledger.failing.add("update")

    assert await manager.start_session(seed.second_task_id, seed.agent_id) is None
    assert manager.current_session.session_id == first
    assert [s.id for s in await open_sessions(ledger)] == [first]


@pytest.mark.asyncio
async def test_failed_insert_leaves_nothing_open(manager, ledger, breadcrumbs, seed):
    ledger.failing.add("insert")
    assert await manager.start_session(seed.task_id, seed.agent_id) is None
    assert manager.current_session is None
    assert breadcrumbs.load() is None


@pytest.mark.asyncio
async def test_sub_second_session_is_deleted(manager, ledger, clock, seed):
    session_id = await manager.start_session(seed.task_id, seed.agent_id)
    clock.advance(0.4)

    assert await manager.end_current_session()
    assert await ledger.get(session_id) is None
    assert await ledger.total_duration(seed.task_id) == 0


@pytest.mark.asyncio
async def test_end_without_session(manager):
    assert await manager.end_current_session() is False


@pytest.mark.asyncio
async def test_end_session_closed_elsewhere_is_forgotten(manager, ledger, breadcrumbs, clock, seed):
    session_id = await manager.start_session(seed.task_id, seed.agent_id)
    await ledger.update(session_id, clock.advance(10), 10)

    assert await manager.end_current_session() is False
    assert manager.current_session is None
    assert breadcrumbs.load() is None
    assert (await ledger.get(session_id)).duration_seconds == 10


@pytest.mark.asyncio
async def test_orphan_closed_on_initialize(ledger, breadcrumbs, lifecycle, clock, seed):
    orphan = await ledger.insert(seed.task_id, seed.agent_id, clock())
    breadcrumbs.save(Breadcrumb(session_id=orphan.id, task_id=seed.task_id, user_id=seed.agent_id, start_time=clock()))
    clock.advance(120)

    async with SessionManager(ledger, breadcrumbs, lifecycle, clock=clock) as manager:
        assert manager.current_session is None
        assert breadcrumbs.load() is None

    assert (await ledger.get(orphan.id)).duration_seconds == 120


@pytest.mark.asyncio
async def test_orphan_missing_from_ledger(manager, breadcrumbs, seed):
    breadcrumbs.save(Breadcrumb(session_id="gone", task_id=seed.task_id))
    assert await manager.close_orphaned_sessions() is False
    assert breadcrumbs.load() is None


@pytest.mark.asyncio
async def test_orphan_already_closed(manager, ledger, breadcrumbs, clock, seed):
    orphan = await ledger.insert(seed.task_id, seed.agent_id, clock())
    await ledger.update(orphan.id, clock.advance(30), 30)
    breadcrumbs.save(Breadcrumb(session_id=orphan.id, task_id=seed.task_id))

    assert await manager.close_orphaned_sessions() is False
    assert breadcrumbs.load() is None
    assert (await ledger.get(orphan.id)).duration_seconds == 30


@pytest.mark.asyncio
async def test_orphan_recovery_failure_still_clears_breadcrumb(manager, ledger, breadcrumbs, clock, seed):
    orphan = await ledger.insert(seed.task_id, seed.agent_id, clock())
    breadcrumbs.save(Breadcrumb(session_id=orphan.id, task_id=seed.task_id))
    ledger.failing.add("get")

    assert await manager.close_orphaned_sessions() is False
    assert breadcrumbs.load() is None


@pytest.mark.asyncio
async def test_sync_end(manager, ledger, breadcrumbs, clock, seed, events):
    session_id = await manager.start_session(seed.task_id, seed.agent_id)
    clock.advance(75)

    assert await manager.end_current_session(use_sync=True)
    assert (await ledger.get(session_id)).duration_seconds == 75
    assert breadcrumbs.load() is None
    assert events[-1] == (ENDED, seed.task_id, "unload")


@pytest.mark.asyncio
async def test_failed_sync_end_keeps_breadcrumb_for_next_start(manager, ledger, breadcrumbs, clock, seed):
    first = await manager.start_session(seed.task_id, seed.agent_id)
    clock.advance(40)
    ledger.failing.add("flush_sync")

    assert manager.end_current_session_sync() is False
    assert manager.current_session is None
    assert breadcrumbs.load().session_id == first

    ledger.failing.clear()
    clock.advance(20)
    second = await manager.start_session(seed.second_task_id, seed.agent_id)

    assert (await ledger.get(first)).duration_seconds == 60
    assert [s.id for s in await open_sessions(ledger)] == [second]


@pytest.mark.asyncio
async def test_hidden_flushes_and_visible_resumes(manager, ledger, lifecycle, clock, seed, events):
    first = await manager.start_session(seed.task_id, seed.agent_id)
    clock.advance(30)

    await lifecycle.set_visibility(HIDDEN)
    assert manager.current_session is None
    assert (await ledger.get(first)).duration_seconds == 30

    clock.advance(600)
    await lifecycle.set_visibility(VISIBLE)
    resumed = manager.current_session
    assert resumed is not None
    assert resumed.task_id == seed.task_id
    assert resumed.session_id != first
    assert resumed.start_time == clock()
    assert [e[2] for e in events] == ["start", "hidden", "resume"]


@pytest.mark.asyncio
async def test_unload_flushes_and_unregisters(manager, ledger, lifecycle, clock, seed):
    session_id = await manager.start_session(seed.task_id, seed.agent_id)
    assert lifecycle.handler_count == 2
    clock.advance(15)

    lifecycle.unload()

    assert (await ledger.get(session_id)).duration_seconds == 15
    assert lifecycle.handler_count == 0
    assert manager.current_session is None


@pytest.mark.asyncio
async def test_handlers_registered_once_across_sessions(manager, lifecycle, clock, seed):
    await manager.start_session(seed.task_id, seed.agent_id)
    clock.advance(5)
    await manager.start_session(seed.second_task_id, seed.agent_id)
    assert lifecycle.handler_count == 2

    await manager.dispose()
    assert lifecycle.handler_count == 0


@pytest.mark.asyncio
async def test_adopt_existing_open_session(manager, ledger, breadcrumbs, clock, seed, events):
    existing = await ledger.insert(seed.task_id, seed.agent_id, clock())
    clock.advance(90)

    assert await manager.adopt_session(existing) == existing.id
    assert manager.current_session.session_id == existing.id
    assert breadcrumbs.load().session_id == existing.id
    assert events == [(STARTED, seed.task_id, "adopt")]

    assert await manager.adopt_session(existing) == existing.id
    assert len(events) == 1

    await manager.end_current_session()
    assert (await ledger.get(existing.id)).duration_seconds == 90


@pytest.mark.asyncio
async def test_orphan_recovery_runs_once(manager, ledger, breadcrumbs, clock, seed):
    orphan = await ledger.insert(seed.task_id, seed.agent_id, clock())
    breadcrumbs.save(Breadcrumb(session_id=orphan.id, task_id=seed.task_id, user_id=seed.agent_id, start_time=clock()))
    clock.advance(70)

    assert await manager.close_orphaned_sessions() is True
    clock.advance(500)
    assert await manager.close_orphaned_sessions() is False

    assert (await ledger.get(orphan.id)).duration_seconds == 70
    assert breadcrumbs.load() is None


@pytest.mark.asyncio
async def test_unmounted_view_cancels_pending_resume(manager, ledger, lifecycle, clock, seed):
    await manager.start_session(seed.task_id, seed.agent_id)
    clock.advance(30)
    await lifecycle.set_visibility(HIDDEN)

    manager.cancel_resume(seed.second_task_id)
    manager.cancel_resume(seed.task_id)
    await lifecycle.set_visibility(VISIBLE)

    assert manager.current_session is None
    assert await open_sessions(ledger) == []
