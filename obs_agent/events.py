from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, AsyncIterable, Callable, Protocol

from .errors import error_payload
from .protocol import (
    EVENT_CURRENT_PROGRAM_SCENE_CHANGED,
    EVENT_SCENE_CREATED,
    EVENT_SCENE_REMOVED,
)
from .runlog import RunLog


class EventKind(enum.Enum):
    CREATED = "scene_created"
    REMOVED = "scene_removed"
    CURRENT_CHANGED = "scene_changed"


_KIND_BY_EVENT_TYPE = {
    EVENT_SCENE_CREATED: EventKind.CREATED,
    EVENT_SCENE_REMOVED: EventKind.REMOVED,
    EVENT_CURRENT_PROGRAM_SCENE_CHANGED: EventKind.CURRENT_CHANGED,
}


@dataclass(frozen=True, slots=True)
class SceneEvent:
    kind: EventKind
    target_name: str


class SceneObserver(Protocol):
    def on_created(self, name: str) -> None: ...

    def on_removed(self, name: str) -> None: ...

    def on_current_changed(self, name: str) -> None: ...


def parse_event(payload: dict[str, Any]) -> SceneEvent | None:
    kind = _KIND_BY_EVENT_TYPE.get(str(payload.get("eventType")))
    if kind is None:
        return None
    data = payload.get("eventData") or {}
    name = data.get("sceneName")
    if not isinstance(name, str):
        return None
    return SceneEvent(kind=kind, target_name=name)


def dispatch(event: SceneEvent, observer: SceneObserver) -> None:
    if event.kind is EventKind.CREATED:
        observer.on_created(event.target_name)
    elif event.kind is EventKind.REMOVED:
        observer.on_removed(event.target_name)
    elif event.kind is EventKind.CURRENT_CHANGED:
        observer.on_current_changed(event.target_name)
    else:
        raise ValueError(f"unhandled event kind: {event.kind}")


def describe_event(event: SceneEvent) -> str:
    if event.kind is EventKind.CREATED:
        return f"Scene '{event.target_name}' was created in OBS"
    if event.kind is EventKind.REMOVED:
        return f"Scene '{event.target_name}' was removed from OBS"
    return f"OBS switched to scene '{event.target_name}'"


async def run_event_bridge(
    events: AsyncIterable[dict[str, Any]],
    get_observer: Callable[[], SceneObserver | None],
    runlog: RunLog,
) -> None:
    """Feed session events to the current observer until the stream ends."""
    async for payload in events:
        event = parse_event(payload)
        if event is None:
            continue
        observer = get_observer()
        if observer is None:
            continue
        try:
            dispatch(event, observer)
        except Exception as exc:
            runlog.warn(
                "observer_error",
                event_kind=event.kind,
                target_name=event.target_name,
                **error_payload(exc),
            )


class CompositeObserver:
    def __init__(self, *observers: SceneObserver) -> None:
        self._observers: list[SceneObserver] = list(observers)

    def add(self, observer: SceneObserver) -> None:
        self._observers.append(observer)

    def on_created(self, name: str) -> None:
        for observer in self._observers:
            observer.on_created(name)

    def on_removed(self, name: str) -> None:
        for observer in self._observers:
            observer.on_removed(name)

    def on_current_changed(self, name: str) -> None:
        for observer in self._observers:
            observer.on_current_changed(name)


@dataclass
class EventCounts:
    created: int = 0
    removed: int = 0
    current_changed: int = 0


class EventCounter:
    def __init__(self, runlog: RunLog | None = None) -> None:
        self._counts = EventCounts()
        self._runlog = runlog

    def _record(self, kind: EventKind, name: str, total: int) -> None:
        if self._runlog is not None:
            self._runlog.info("scene_event", event_kind=kind, target_name=name, total=total)

    def on_created(self, name: str) -> None:
        self._counts.created += 1
        self._record(EventKind.CREATED, name, self._counts.created)

    def on_removed(self, name: str) -> None:
        self._counts.removed += 1
        self._record(EventKind.REMOVED, name, self._counts.removed)

    def on_current_changed(self, name: str) -> None:
        self._counts.current_changed += 1
        self._record(EventKind.CURRENT_CHANGED, name, self._counts.current_changed)

    def snapshot(self) -> EventCounts:
        return EventCounts(
            created=self._counts.created,
            removed=self._counts.removed,
            current_changed=self._counts.current_changed,
        )

    def reset(self) -> None:
        self._counts = EventCounts()
