from dataclasses import replace
from pathlib import Path

import pytest

from obs_agent.errors import PersistFailed, TargetExists, TargetNotFound
from obs_agent.store import (
    STATE_LAST_CONNECTION,
    Artifact,
    CaptureTarget,
    MemoryStore,
    SqliteStore,
    record_successful_connection,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        yield MemoryStore()
        return
    sqlite_store = SqliteStore(tmp_path / "db" / "obs_agent.sqlite")
    yield sqlite_store
    sqlite_store.close()


def _artifact(target_id: int, ts: int, payload: str = "QUJD") -> Artifact:
    return Artifact(
        target_id=target_id,
        payload=payload,
        mime_type="image/png",
        size_bytes=len(payload) * 3 // 4,
        captured_at_ns=ts,
    )


def test_create_target_applies_defaults(store):
    target = store.create_target(
        CaptureTarget(name="cam", source_name="Camera", cadence_ms=0, image_format="", quality=0)
    )
    assert target.id > 0
    assert target.cadence_ms == 5000
    assert target.image_format == "png"
    assert target.quality == 80
    assert target.enabled is True
    assert store.get_target(target.id).name == "cam"
    assert store.get_target_by_name("cam").id == target.id


def test_duplicate_name_rejected(store):
    store.create_target(CaptureTarget(name="cam", source_name="Camera"))
    with pytest.raises(TargetExists):
        store.create_target(CaptureTarget(name="cam", source_name="Other"))


def test_missing_targets_raise(store):
    with pytest.raises(TargetNotFound):
        store.get_target(99)
    with pytest.raises(TargetNotFound):
        store.get_target_by_name("nope")
    with pytest.raises(TargetNotFound):
        store.delete_target(99)
    with pytest.raises(TargetNotFound):
        store.update_target(CaptureTarget(name="x", source_name="y", id=99))


def test_update_target_changes_settings(store):
    target = store.create_target(CaptureTarget(name="cam", source_name="Camera"))
    target.cadence_ms = 250
    target.enabled = False
    target.image_format = "jpg"
    updated = store.update_target(target)
    assert updated.cadence_ms == 250
    assert updated.enabled is False
    assert updated.image_format == "jpg"
    assert [item.id for item in store.list_targets()] == [target.id]


@pytest.mark.parametrize("changes", [{"cadence_ms": 0}, {"cadence_ms": -5}, {"quality": 101}])
def test_update_target_rejects_invalid_settings(store, changes):
    target = store.create_target(CaptureTarget(name="cam", source_name="Camera", cadence_ms=1000))
    with pytest.raises(ValueError):
        store.update_target(replace(target, **changes))
    stored = store.get_target(target.id)
    assert stored.cadence_ms == 1000
    assert stored.quality == 80


def test_delete_target_cascades_artifacts(store):
    target = store.create_target(CaptureTarget(name="cam", source_name="Camera"))
    store.save_artifact(_artifact(target.id, 1))
    store.save_artifact(_artifact(target.id, 2))
    assert store.count_artifacts(target.id) == 2
    store.delete_target(target.id)
    assert store.count_artifacts(target.id) == 0
    assert store.list_targets() == []


def test_save_artifact_for_unknown_target_fails(store):
    with pytest.raises(PersistFailed):
        store.save_artifact(_artifact(42, 1))


def test_delete_oldest_keeps_newest_by_time_then_id(store):
    target = store.create_target(CaptureTarget(name="cam", source_name="Camera"))
    ids = [store.save_artifact(_artifact(target.id, ts)) for ts in (30, 10, 20, 20)]
    deleted = store.delete_oldest(target.id, 2)
    assert deleted == 2
    remaining = [item.id for item in store.list_artifacts(target.id)]
    # ts=30 first, then the later-inserted of the two ts=20 rows.
    assert remaining == [ids[0], ids[3]]
    assert store.delete_oldest(target.id, 5) == 0
    assert store.latest_artifact(target.id).id == ids[0]


def test_delete_oldest_rejects_negative_keep(store):
    with pytest.raises(ValueError):
        store.delete_oldest(1, -1)


def test_latest_artifact_none_when_empty(store):
    target = store.create_target(CaptureTarget(name="cam", source_name="Camera"))
    assert store.latest_artifact(target.id) is None


def test_state_roundtrip_and_successful_connection(store):
    assert store.get_state("k") is None
    store.set_state("k", "v1")
    store.set_state("k", "v2")
    assert store.get_state("k") == "v2"
    record_successful_connection(store)
    assert int(store.get_state(STATE_LAST_CONNECTION)) > 0


def test_sqlite_store_persists_across_reopen(tmp_path: Path):
    path = tmp_path / "obs_agent.sqlite"
    first = SqliteStore(path)
    target = first.create_target(CaptureTarget(name="cam", source_name="Camera", cadence_ms=750))
    first.save_artifact(_artifact(target.id, 5))
    first.close()

    second = SqliteStore(path)
    try:
        reloaded = second.get_target_by_name("cam")
        assert reloaded.cadence_ms == 750
        assert second.count_artifacts(reloaded.id) == 1
    finally:
        second.close()
