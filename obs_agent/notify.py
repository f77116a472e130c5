from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol, Union

from .events import EventKind, SceneEvent
from .runlog import RunLog

DEFAULT_URI_SCHEME = "obs"
SCENE_RESOURCE_TYPE = "scene"


@dataclass(frozen=True, slots=True)
class ListChanged:
    pass


@dataclass(frozen=True, slots=True)
class ResourceUpdated:
    uri: str


Notification = Union[ListChanged, ResourceUpdated]


class NotificationSink(Protocol):
    def notify_list_changed(self) -> None: ...

    def notify_updated(self, uri: str) -> None: ...


def resource_uri(
    name: str,
    *,
    scheme: str = DEFAULT_URI_SCHEME,
    resource_type: str = SCENE_RESOURCE_TYPE,
) -> str:
    # Names are passed through verbatim; escaping is up to the consumer.
    return f"{scheme}://{resource_type}/{name}"


def classify(event: SceneEvent, *, scheme: str = DEFAULT_URI_SCHEME) -> Notification:
    if event.kind in (EventKind.CREATED, EventKind.REMOVED):
        return ListChanged()
    if event.kind is EventKind.CURRENT_CHANGED:
        return ResourceUpdated(uri=resource_uri(event.target_name, scheme=scheme))
    raise ValueError(f"unhandled event kind: {event.kind}")


def emit(notification: Notification, sink: NotificationSink) -> None:
    if isinstance(notification, ResourceUpdated):
        sink.notify_updated(notification.uri)
    else:
        sink.notify_list_changed()


class NotifyingObserver:
    def __init__(self, sink: NotificationSink, *, scheme: str = DEFAULT_URI_SCHEME) -> None:
        self._sink = sink
        self._scheme = scheme

    def _route(self, kind: EventKind, name: str) -> None:
        emit(classify(SceneEvent(kind=kind, target_name=name), scheme=self._scheme), self._sink)

    def on_created(self, name: str) -> None:
        self._route(EventKind.CREATED, name)

    def on_removed(self, name: str) -> None:
        self._route(EventKind.REMOVED, name)

    def on_current_changed(self, name: str) -> None:
        self._route(EventKind.CURRENT_CHANGED, name)


class QueueSink:
    """Hands notifications to the host application through an asyncio queue."""

    def __init__(self, max_queue: int = 0) -> None:
        self.queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=max_queue)
        self.dropped = 0

    def _put(self, notification: Notification) -> None:
        try:
            self.queue.put_nowait(notification)
        except asyncio.QueueFull:
            self.dropped += 1

    def notify_list_changed(self) -> None:
        self._put(ListChanged())

    def notify_updated(self, uri: str) -> None:
        self._put(ResourceUpdated(uri=uri))


class RunlogSink:
    def __init__(self, runlog: RunLog) -> None:
        self._runlog = runlog

    def notify_list_changed(self) -> None:
        self._runlog.info("notify_list_changed")

    def notify_updated(self, uri: str) -> None:
        self._runlog.info("notify_resource_updated", uri=uri)
