from pathlib import Path

import pytest

from obs_agent.retention import RetentionSweeper
from obs_agent.runlog import RunLog
from obs_agent.store import Artifact, CaptureTarget, MemoryStore, SqliteStore

from obs_fakes import wait_until


def _fill(store, target_id: int, count: int, start_ts: int = 1000) -> list[int]:
    return [
        store.save_artifact(
            Artifact(
                target_id=target_id,
                payload=f"payload-{idx}",
                mime_type="image/png",
                size_bytes=9,
                captured_at_ns=start_ts + idx,
            )
        )
        for idx in range(count)
    ]


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        yield MemoryStore()
        return
    sqlite_store = SqliteStore(tmp_path / "obs_agent.sqlite")
    yield sqlite_store
    sqlite_store.close()


def test_sweep_keeps_exactly_the_ten_newest(store):
    target = store.create_target(CaptureTarget(name="cam", source_name="Camera"))
    ids = _fill(store, target.id, 15)
    sweeper = RetentionSweeper(store, max_history=10, runlog=RunLog())
    deleted = sweeper.sweep_once()
    assert deleted == {target.id: 5}
    remaining = sorted(item.id for item in store.list_artifacts(target.id))
    assert remaining == sorted(ids[5:])


def test_sweep_bounds_every_target(store):
    small = store.create_target(CaptureTarget(name="small", source_name="A"))
    large = store.create_target(CaptureTarget(name="large", source_name="B"))
    _fill(store, small.id, 2)
    _fill(store, large.id, 7)
    runlog = RunLog()
    sweeper = RetentionSweeper(store, max_history=3, runlog=runlog)
    deleted = sweeper.sweep_once()
    assert deleted == {small.id: 0, large.id: 4}
    assert store.count_artifacts(small.id) == 2
    assert store.count_artifacts(large.id) == 3
    assert runlog.tail("retention_sweep")[0]["deleted_total"] == 4


class BrokenForFirstTarget(MemoryStore):
    def delete_oldest(self, target_id: int, keep: int) -> int:
        if target_id == 1:
            raise RuntimeError("locked")
        return super().delete_oldest(target_id, keep)


def test_sweep_continues_after_a_target_fails():
    store = BrokenForFirstTarget()
    first = store.create_target(CaptureTarget(name="one", source_name="A"))
    second = store.create_target(CaptureTarget(name="two", source_name="B"))
    _fill(store, first.id, 5)
    _fill(store, second.id, 5)
    runlog = RunLog()
    sweeper = RetentionSweeper(store, max_history=2, runlog=runlog)
    deleted = sweeper.sweep_once()
    assert deleted == {second.id: 3}
    assert store.count_artifacts(first.id) == 5
    assert store.count_artifacts(second.id) == 2
    failures = runlog.tail("sweep_failed")
    assert len(failures) == 1
    assert failures[0]["target_id"] == first.id
    assert failures[0]["level"] == "warn"


@pytest.mark.asyncio
async def test_sweeper_loop_runs_on_its_period_and_stops():
    store = MemoryStore()
    target = store.create_target(CaptureTarget(name="cam", source_name="Camera"))
    _fill(store, target.id, 6)
    sweeper = RetentionSweeper(store, max_history=2, interval_seconds=0.05, runlog=RunLog())
    sweeper.start()
    try:
        assert await wait_until(lambda: store.count_artifacts(target.id) == 2)
    finally:
        sweeper.stop()
        await sweeper.wait()
    assert sweeper.sweeps >= 1


def test_max_history_must_be_positive():
    with pytest.raises(ValueError):
        RetentionSweeper(MemoryStore(), max_history=0, runlog=RunLog())
