from __future__ import annotations

import asyncio

from .errors import error_payload
from .runlog import RunLog
from .scheduling import Ticker
from .store import ArtifactStore


class RetentionSweeper:
    """Trims every target's artifact history to the newest ``max_history``."""

    def __init__(
        self,
        store: ArtifactStore,
        *,
        max_history: int,
        interval_seconds: float = 60.0,
        runlog: RunLog,
        parent_stop: asyncio.Event | None = None,
    ) -> None:
        if max_history < 1:
            raise ValueError(f"max_history must be >= 1, got {max_history}")
        self._store = store
        self._max_history = max_history
        self._interval = interval_seconds
        self._runlog = runlog
        self._parent_stop = parent_stop
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.sweeps = 0

    @property
    def max_history(self) -> int:
        return self._max_history

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="retention-sweeper")
        return self._task

    def stop(self) -> None:
        self._stop.set()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        ticker = Ticker(self._interval)
        while True:
            if await ticker.wait(self._stop, self._parent_stop):
                return
            await asyncio.to_thread(self.sweep_once)

    def sweep_once(self) -> dict[int, int]:
        """Sweep all targets once and return deleted counts keyed by target id."""
        try:
            targets = self._store.list_targets()
        except Exception as exc:
            self._runlog.warn("sweep_failed", stage="list_targets", **error_payload(exc))
            return {}
        deleted: dict[int, int] = {}
        for target in targets:
            try:
                deleted[target.id] = self._store.delete_oldest(target.id, self._max_history)
            except Exception as exc:
                self._runlog.warn(
                    "sweep_failed",
                    stage="delete_oldest",
                    target_id=target.id,
                    **error_payload(exc),
                )
        self.sweeps += 1
        total = sum(deleted.values())
        if total:
            self._runlog.info(
                "retention_sweep",
                targets=len(targets),
                deleted_total=total,
                max_history=self._max_history,
            )
        return deleted
