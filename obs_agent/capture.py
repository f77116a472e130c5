from __future__ import annotations

import asyncio
import time
from typing import Protocol

from .commands import ScreenshotOptions
from .errors import CaptureFailed, PersistFailed, error_payload
from .runlog import RunLog
from .scheduling import Ticker, any_set
from .store import Artifact, ArtifactStore, CaptureTarget

MIME_JPEG = "image/jpeg"
MIME_PNG = "image/png"


class Screenshotter(Protocol):
    async def take_source_screenshot(self, options: ScreenshotOptions) -> str: ...


class ConnectivityCheck(Protocol):
    def is_connected(self) -> bool: ...


def mime_type_for(image_format: str) -> str:
    if image_format.lower() in ("jpg", "jpeg"):
        return MIME_JPEG
    return MIME_PNG


def decoded_size(payload_b64: str) -> int:
    # Approximate decoded length; padding is not subtracted.
    return len(payload_b64) * 3 // 4


def screenshot_options(target: CaptureTarget) -> ScreenshotOptions:
    return ScreenshotOptions(
        source_name=target.source_name,
        image_format=target.image_format,
        image_width=target.image_width,
        image_height=target.image_height,
        quality=target.quality,
    )


class CaptureWorker:
    """Periodic screenshot loop for one capture target.

    Captures once on start, then on a fixed-period ticker. A cadence change
    takes effect after the capture of the tick that observes it. Stopping
    sets an event rather than cancelling the task, so a fetch already in
    flight runs to completion and its result is dropped.
    """

    def __init__(
        self,
        target: CaptureTarget,
        *,
        connection: ConnectivityCheck,
        screenshotter: Screenshotter,
        store: ArtifactStore,
        runlog: RunLog,
        parent_stop: asyncio.Event | None = None,
    ) -> None:
        if target.cadence_ms <= 0:
            raise ValueError(f"cadence must be > 0 for target {target.name!r}")
        self.target = target
        self._connection = connection
        self._screenshotter = screenshotter
        self._store = store
        self._runlog = runlog
        self._parent_stop = parent_stop
        self._stop = asyncio.Event()
        self._cadence_seconds = target.cadence_seconds
        self._task: asyncio.Task[None] | None = None
        self.captures = 0
        self.failures = 0
        self.skipped = 0

    @property
    def target_id(self) -> int:
        return self.target.id

    @property
    def cadence_seconds(self) -> float:
        return self._cadence_seconds

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def stopped(self) -> bool:
        return any_set(self._stop, self._parent_stop)

    def update_cadence(self, seconds: float) -> None:
        if seconds <= 0:
            raise ValueError(f"cadence must be > 0, got {seconds}")
        self._cadence_seconds = seconds

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"capture-{self.target.id}")
        return self._task

    def stop(self) -> None:
        self._stop.set()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        self._runlog.info(
            "capture_worker_started",
            target_id=self.target.id,
            target_name=self.target.name,
            cadence_seconds=self._cadence_seconds,
        )
        await self.capture_once()
        ticker = Ticker(self._cadence_seconds)
        while not self.stopped():
            if await ticker.wait(self._stop, self._parent_stop):
                break
            await self.capture_once()
            cadence = self._cadence_seconds
            if cadence != ticker.period_seconds:
                ticker.arm(cadence)
                self._runlog.info(
                    "capture_cadence_applied",
                    target_id=self.target.id,
                    cadence_seconds=cadence,
                )
        self._runlog.info(
            "capture_worker_stopped",
            target_id=self.target.id,
            captures=self.captures,
            failures=self.failures,
        )

    async def capture_once(self) -> int | None:
        """Run one capture cycle; return the saved artifact id, or None if skipped."""
        if self.stopped():
            return None
        if not self._connection.is_connected():
            self.skipped += 1
            return None
        try:
            payload = await self._fetch()
        except CaptureFailed as exc:
            self.failures += 1
            self._runlog.warn(
                "capture_failed",
                target_id=self.target.id,
                source_name=self.target.source_name,
                **error_payload(exc),
            )
            return None
        if self.stopped():
            return None
        artifact = Artifact(
            target_id=self.target.id,
            payload=payload,
            mime_type=mime_type_for(self.target.image_format),
            size_bytes=decoded_size(payload),
            captured_at_ns=time.time_ns(),
        )
        try:
            artifact_id = await asyncio.to_thread(self._store.save_artifact, artifact)
        except PersistFailed as exc:
            self.failures += 1
            self._runlog.warn("persist_failed", target_id=self.target.id, **error_payload(exc))
            return None
        except Exception as exc:
            self.failures += 1
            self._runlog.warn(
                "persist_failed",
                target_id=self.target.id,
                error_reason=PersistFailed.reason,
                error_type=type(exc).__name__,
                error_message=str(exc),
            )
            return None
        self.captures += 1
        return artifact_id

    async def _fetch(self) -> str:
        options = screenshot_options(self.target)
        try:
            return await self._screenshotter.take_source_screenshot(options)
        except Exception as exc:
            raise CaptureFailed(
                f"screenshot of {self.target.source_name!r} failed: {exc}"
            ) from exc
