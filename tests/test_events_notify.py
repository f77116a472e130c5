import asyncio

import pytest

from obs_agent.events import (
    CompositeObserver,
    EventCounter,
    EventKind,
    SceneEvent,
    describe_event,
    dispatch,
    parse_event,
    run_event_bridge,
)
from obs_agent.notify import (
    ListChanged,
    NotifyingObserver,
    QueueSink,
    ResourceUpdated,
    RunlogSink,
    classify,
    resource_uri,
)
from obs_agent.runlog import RunLog

from obs_fakes import RecordingObserver, RecordingSink


def _payload(event_type: str, name: str) -> dict:
    return {"eventType": event_type, "eventData": {"sceneName": name}}


def test_parse_event_maps_scene_events_and_ignores_others():
    assert parse_event(_payload("SceneCreated", "A")) == SceneEvent(EventKind.CREATED, "A")
    assert parse_event(_payload("SceneRemoved", "A")) == SceneEvent(EventKind.REMOVED, "A")
    assert parse_event(_payload("CurrentProgramSceneChanged", "B")) == SceneEvent(
        EventKind.CURRENT_CHANGED, "B"
    )
    assert parse_event(_payload("StreamStateChanged", "x")) is None
    assert parse_event({"eventType": "SceneCreated", "eventData": {}}) is None


def test_dispatch_calls_matching_callback():
    observer = RecordingObserver()
    dispatch(SceneEvent(EventKind.REMOVED, "Old"), observer)
    dispatch(SceneEvent(EventKind.CURRENT_CHANGED, "Live"), observer)
    assert observer.calls == [("removed", "Old"), ("current_changed", "Live")]


@pytest.mark.parametrize("kind", [EventKind.CREATED, EventKind.REMOVED])
def test_created_and_removed_yield_one_list_changed(kind):
    sink = RecordingSink()
    observer = NotifyingObserver(sink)
    dispatch(SceneEvent(kind, "Scene 1"), observer)
    assert sink.list_changed == 1
    assert sink.updated == []


def test_current_changed_yields_one_resource_update():
    sink = RecordingSink()
    observer = NotifyingObserver(sink)
    dispatch(SceneEvent(EventKind.CURRENT_CHANGED, "Main Stage"), observer)
    assert sink.list_changed == 0
    assert sink.updated == ["obs://scene/Main Stage"]


def test_classify_and_resource_uri_scheme():
    assert classify(SceneEvent(EventKind.CREATED, "x")) == ListChanged()
    assert classify(SceneEvent(EventKind.CURRENT_CHANGED, "x"), scheme="studio") == ResourceUpdated(
        uri="studio://scene/x"
    )
    assert resource_uri("a/b?c") == "obs://scene/a/b?c"


def test_describe_event_messages():
    assert "created" in describe_event(SceneEvent(EventKind.CREATED, "A"))
    assert "removed" in describe_event(SceneEvent(EventKind.REMOVED, "A"))
    assert "'A'" in describe_event(SceneEvent(EventKind.CURRENT_CHANGED, "A"))


def test_composite_observer_and_counter():
    runlog = RunLog()
    counter = EventCounter(runlog)
    recorder = RecordingObserver()
    composite = CompositeObserver(recorder)
    composite.add(counter)
    composite.on_created("A")
    composite.on_created("B")
    composite.on_removed("A")
    composite.on_current_changed("B")
    snapshot = counter.snapshot()
    assert (snapshot.created, snapshot.removed, snapshot.current_changed) == (2, 1, 1)
    assert len(recorder.calls) == 4
    assert len(runlog.tail("scene_event")) == 4
    counter.reset()
    assert counter.snapshot().created == 0


async def _stream(payloads):
    for payload in payloads:
        yield payload


class ExplodingObserver(RecordingObserver):
    def on_created(self, name: str) -> None:
        raise RuntimeError("observer bug")


@pytest.mark.asyncio
async def test_bridge_logs_observer_errors_and_continues():
    runlog = RunLog()
    observer = ExplodingObserver()
    await run_event_bridge(
        _stream(
            [
                _payload("SceneCreated", "A"),
                _payload("VendorEvent", "ignored"),
                _payload("SceneRemoved", "A"),
            ]
        ),
        lambda: observer,
        runlog,
    )
    assert observer.calls == [("removed", "A")]
    errors = runlog.tail("observer_error")
    assert len(errors) == 1
    assert errors[0]["level"] == "warn"
    assert errors[0]["error_type"] == "RuntimeError"


@pytest.mark.asyncio
async def test_bridge_drops_events_without_observer():
    runlog = RunLog()
    await run_event_bridge(_stream([_payload("SceneCreated", "A")]), lambda: None, runlog)
    assert runlog.tail() == []


@pytest.mark.asyncio
async def test_queue_sink_delivers_and_counts_drops():
    sink = QueueSink(max_queue=1)
    observer = NotifyingObserver(sink)
    observer.on_current_changed("Main")
    observer.on_created("Other")
    assert sink.dropped == 1
    item = await asyncio.wait_for(sink.queue.get(), 1.0)
    assert item == ResourceUpdated(uri="obs://scene/Main")


def test_runlog_sink_records_notifications():
    runlog = RunLog()
    observer = NotifyingObserver(RunlogSink(runlog), scheme="obs")
    observer.on_removed("A")
    observer.on_current_changed("B")
    assert len(runlog.tail("notify_list_changed")) == 1
    assert runlog.tail("notify_resource_updated")[0]["uri"] == "obs://scene/B"
