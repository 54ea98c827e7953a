import asyncio
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from catalog_pipeline.db import Database
from catalog_pipeline.events import MutationBus
from catalog_pipeline.models import MutationEvent, Release, ReleaseTrack
from catalog_pipeline.pipeline import RefreshScheduler
from catalog_pipeline.telemetry import TelemetryEmitter
from catalog_pipeline.watcher import MutationWatcher, extract_actor, extract_release_ids

NOW = datetime(2025, 2, 20, tzinfo=timezone.utc)


@pytest.fixture
def temp_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(str(Path(tmpdir) / "test.db"), bus=MutationBus())
        yield db
        db.close()


@pytest.fixture
def scheduler():
    return RefreshScheduler(Mock(spec=TelemetryEmitter))


@pytest.fixture
def watcher(temp_db, scheduler):
    watcher = MutationWatcher(temp_db.bus, scheduler, temp_db)
    watcher.install()
    return watcher


def make_release(release_id: str) -> Release:
    return Release(id=release_id, title=f"Release {release_id}", creator_id="creator-a", created_at=NOW, updated_at=NOW)


class TestExtractReleaseIds:
    def test_release_prefers_where(self):
        event = MutationEvent(
            model="Release",
            action="update",
            args={"where": {"id": "from-where"}, "data": {"id": "from-data"}},
            result={"id": "from-result"},
        )
        assert extract_release_ids(event) == ["from-where"]

    def test_release_falls_back_to_data_then_result(self):
        from_data = MutationEvent(model="Release", action="create", args={"data": {"id": "rel-1"}})
        from_result = MutationEvent(model="Release", action="create", args={"data": {}}, result={"id": "rel-2"})

        assert extract_release_ids(from_data) == ["rel-1"]
        assert extract_release_ids(from_result) == ["rel-2"]

    def test_release_result_object(self):
        event = MutationEvent(model="Release", action="create", result=make_release("rel-3"))
        assert extract_release_ids(event) == ["rel-3"]

    def test_track_uses_release_id(self):
        event = MutationEvent(
            model="ReleaseTrack",
            action="update",
            args={"where": {"id": "t1"}, "data": {"title": "x"}},
            result={"id": "t1", "release_id": "rel-1"},
        )
        assert extract_release_ids(event) == ["rel-1"]

    def test_track_bulk_result_collects_distinct_ids(self):
        event = MutationEvent(
            model="ReleaseTrack",
            action="create_many",
            args={"data": [{"release_id": "rel-1"}]},
            result=[
                {"id": "t1", "release_id": "rel-1"},
                {"id": "t2", "release_id": "rel-2"},
                {"id": "t3", "release_id": "rel-1"},
                {"id": "t4"},
            ],
        )
        assert extract_release_ids(event) == ["rel-1", "rel-2"]

    def test_unwatched_model(self):
        event = MutationEvent(model="Wallet", action="update", args={"where": {"id": "w1"}})
        assert extract_release_ids(event) == []

    def test_nothing_to_extract(self):
        assert extract_release_ids(MutationEvent(model="Release", action="delete")) == []


class TestExtractActor:
    def test_user_id_from_context(self):
        event = MutationEvent(model="Release", action="create", args={"context": {"user_id": "u1"}})
        assert extract_actor(event) == "u1"

    def test_camel_case_user_id(self):
        event = MutationEvent(model="Release", action="create", args={"context": {"userId": "u2"}})
        assert extract_actor(event) == "u2"

    def test_non_string_actor_ignored(self):
        event = MutationEvent(model="Release", action="create", args={"context": {"user_id": 42}})
        assert extract_actor(event) is None

    def test_missing_context(self):
        assert extract_actor(MutationEvent(model="Release", action="create")) is None


def test_release_write_schedules_refresh(temp_db, watcher, scheduler):
    temp_db.create_release(make_release("rel-1"), context={"user_id": "u1"})

    tasks = scheduler.drain_scheduled_refreshes()

    assert len(tasks) == 1
    assert tasks[0].release_id == "rel-1"
    assert tasks[0].reason == "release-mutated"
    assert tasks[0].regions == ["global"]
    assert tasks[0].triggered_by == "u1"


def test_track_writes_schedule_track_mutated(temp_db, watcher, scheduler):
    temp_db.create_release(make_release("rel-1"))
    temp_db.create_release(make_release("rel-2"))
    scheduler.drain_scheduled_refreshes()

    temp_db.create_tracks([
        ReleaseTrack(id="t1", title="One", release_id="rel-1"),
        ReleaseTrack(id="t2", title="Two", release_id="rel-2"),
    ])
    temp_db.update_track("t1", {"title": "One (Edit)"})

    tasks = scheduler.drain_scheduled_refreshes()

    assert sorted(task.release_id for task in tasks) == ["rel-1", "rel-2"]
    assert {task.reason for task in tasks} == {"track-mutated"}


def test_repeated_writes_collapse_to_one_task(temp_db, watcher, scheduler):
    temp_db.create_release(make_release("rel-1"))
    temp_db.update_release("rel-1", {"title": "Renamed"}, context={"user_id": "u9"})

    tasks = scheduler.drain_scheduled_refreshes()

    assert len(tasks) == 1
    assert tasks[0].triggered_by == "u9"


def test_slow_telemetry_does_not_slow_sync_writes(temp_db):
    recorded = []

    async def slow_record(event):
        await asyncio.sleep(0.3)
        recorded.append(event.event)

    async def slow_track(event, metadata=None, context=None):
        await asyncio.sleep(0.3)
        recorded.append(f"analytics.{event}")

    telemetry = TelemetryEmitter(Mock(record_event=slow_record), Mock(track=slow_track))
    scheduler = RefreshScheduler(telemetry)
    MutationWatcher(temp_db.bus, scheduler, temp_db).install()

    start = time.perf_counter()
    temp_db.create_release(make_release("rel-1"))
    elapsed = time.perf_counter() - start

    assert elapsed < 0.1
    assert scheduler.pending_count == 1

    telemetry.join(timeout=5)
    telemetry.close()
    assert sorted(recorded) == [
        "analytics.catalog.pipeline.refresh.scheduled",
        "catalog.pipeline.refresh.scheduled",
    ]


def test_install_is_idempotent(temp_db, scheduler):
    watcher = MutationWatcher(temp_db.bus, scheduler, temp_db)
    watcher.install()
    watcher.install()

    temp_db.create_release(make_release("rel-1"))

    assert scheduler.pending_count == 1
    assert scheduler.telemetry.audit.call_count == 1


def test_uninstall_stops_scheduling(temp_db, watcher, scheduler):
    watcher.uninstall()
    temp_db.create_release(make_release("rel-1"))
    assert scheduler.pending_count == 0


def test_trigger_full_rebuild(temp_db, watcher, scheduler):
    for release_id in ("rel-1", "rel-2", "rel-3"):
        temp_db.create_release(make_release(release_id))
    scheduler.drain_scheduled_refreshes()

    scheduled = watcher.trigger_full_rebuild(["us", "ng", "us"])

    tasks = scheduler.drain_scheduled_refreshes()
    assert scheduled == 3
    assert sorted(task.release_id for task in tasks) == ["rel-1", "rel-2", "rel-3"]
    assert all(task.reason == "manual-rebuild" and task.regions == ["ng", "us"] for task in tasks)


def test_trigger_full_rebuild_empty_catalog(watcher, scheduler):
    assert watcher.trigger_full_rebuild() == 0
    assert scheduler.pending_count == 0


@pytest.mark.asyncio
async def test_run_once_dispatches_drained_tasks(temp_db, scheduler):
    dispatcher = AsyncMock()
    watcher = MutationWatcher(temp_db.bus, scheduler, temp_db, dispatcher=dispatcher)
    watcher.install()
    temp_db.create_release(make_release("rel-1"))

    tasks = await watcher.run_once()

    assert [task.release_id for task in tasks] == ["rel-1"]
    dispatcher.assert_awaited_once_with(tasks)
    assert scheduler.pending_count == 0


@pytest.mark.asyncio
async def test_run_once_skips_dispatch_when_empty(temp_db, scheduler):
    dispatcher = AsyncMock()
    watcher = MutationWatcher(temp_db.bus, scheduler, temp_db, dispatcher=dispatcher)

    assert await watcher.run_once() == []
    dispatcher.assert_not_awaited()


@pytest.mark.asyncio
async def test_dispatch_failure_is_contained(temp_db, scheduler, caplog):
    dispatcher = AsyncMock(side_effect=RuntimeError("reindex service down"))
    watcher = MutationWatcher(temp_db.bus, scheduler, temp_db, dispatcher=dispatcher)
    watcher.install()
    temp_db.create_release(make_release("rel-1"))

    tasks = await watcher.run_once()

    assert len(tasks) == 1
    assert "reindex service down" in caplog.text


@pytest.mark.asyncio
async def test_refresh_loop_drains_periodically(temp_db, scheduler):
    dispatched = []

    async def dispatcher(tasks):
        dispatched.extend(tasks)

    watcher = MutationWatcher(temp_db.bus, scheduler, temp_db, dispatcher=dispatcher, interval_seconds=0.01)
    watcher.install()
    temp_db.create_release(make_release("rel-1"))

    watcher.start()
    for _ in range(100):
        if dispatched:
            break
        await asyncio.sleep(0.01)
    await watcher.stop()

    assert [task.release_id for task in dispatched] == ["rel-1"]


@pytest.mark.asyncio
async def test_refresh_loop_survives_iteration_errors(temp_db, scheduler, monkeypatch):
    watcher = MutationWatcher(temp_db.bus, scheduler, temp_db, interval_seconds=0.01)
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first drain fails")
        return []

    monkeypatch.setattr(scheduler, "process_scheduled_refreshes", flaky)

    watcher.start()
    for _ in range(100):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)
    await watcher.stop()

    assert len(calls) >= 2


@pytest.mark.asyncio
async def test_stop_without_start_is_noop(watcher):
    await watcher.stop()
