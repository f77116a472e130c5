from __future__ import annotations

import asyncio

from .capture import CaptureWorker, ConnectivityCheck, Screenshotter
from .errors import RegistryStateError, TargetExists, TargetNotFound
from .retention import RetentionSweeper
from .runlog import RunLog
from .store import ArtifactStore, CaptureTarget


class CaptureRegistry:
    """Active capture workers keyed by target id, plus the retention sweeper.

    Map mutations serialize on one lock. Workers run on their own tasks and
    never take the lock, so a slow capture does not block registry calls.
    """

    def __init__(
        self,
        *,
        connection: ConnectivityCheck,
        screenshotter: Screenshotter,
        store: ArtifactStore,
        runlog: RunLog,
        max_history: int = 10,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._connection = connection
        self._screenshotter = screenshotter
        self._store = store
        self._runlog = runlog
        self._max_history = max_history
        self._sweep_interval = sweep_interval_seconds
        self._lock = asyncio.Lock()
        self._workers: dict[int, CaptureWorker] = {}
        # Signalled workers that may still be finishing an in-flight fetch.
        self._retired: set[CaptureWorker] = set()
        self._running = False
        self._root_stop = asyncio.Event()
        self._sweeper: RetentionSweeper | None = None

    @property
    def sweeper(self) -> RetentionSweeper | None:
        return self._sweeper

    def is_running(self) -> bool:
        return self._running

    def worker_count(self) -> int:
        return len(self._workers)

    def worker(self, target_id: int) -> CaptureWorker | None:
        return self._workers.get(target_id)

    def _retire(self, worker: CaptureWorker) -> None:
        worker.stop()
        self._retired = {item for item in self._retired if item.running}
        if worker.running:
            self._retired.add(worker)

    def _build(self, target: CaptureTarget) -> CaptureWorker:
        return CaptureWorker(
            target,
            connection=self._connection,
            screenshotter=self._screenshotter,
            store=self._store,
            runlog=self._runlog,
            parent_stop=self._root_stop,
        )

    def _spawn(self, worker: CaptureWorker) -> CaptureWorker:
        self._workers[worker.target.id] = worker
        worker.start()
        return worker

    async def start(self) -> None:
        async with self._lock:
            if self._running:
                raise RegistryStateError("capture registry is already running")
            try:
                targets = await asyncio.to_thread(self._store.list_targets)
            except Exception as exc:
                raise RegistryStateError(f"failed to load capture targets: {exc}") from exc
            self._root_stop = asyncio.Event()
            self._running = True
            rejected = 0
            for target in targets:
                if not target.enabled:
                    continue
                try:
                    worker = self._build(target)
                except ValueError as exc:
                    rejected += 1
                    self._runlog.warn(
                        "capture_worker_rejected",
                        target_id=target.id,
                        target_name=target.name,
                        error=str(exc),
                    )
                    continue
                self._spawn(worker)
            self._sweeper = RetentionSweeper(
                self._store,
                max_history=self._max_history,
                interval_seconds=self._sweep_interval,
                runlog=self._runlog,
                parent_stop=self._root_stop,
            )
            self._sweeper.start()
            self._runlog.info(
                "registry_started",
                targets=len(targets),
                workers=len(self._workers),
                rejected=rejected,
                max_history=self._max_history,
            )

    async def stop(self) -> None:
        async with self._lock:
            if not self._running:
                return
            self._running = False
            self._root_stop.set()
            workers = list(self._workers.values()) + list(self._retired)
            self._workers.clear()
            self._retired.clear()
            sweeper, self._sweeper = self._sweeper, None
        waits = [worker.wait() for worker in workers]
        if sweeper is not None:
            waits.append(sweeper.wait())
        await asyncio.gather(*waits)
        self._runlog.info("registry_stopped", workers=len(workers))

    def _require_running(self, operation: str) -> None:
        if not self._running:
            raise RegistryStateError(f"capture registry is not running; cannot {operation}")

    async def add_target(self, target: CaptureTarget) -> None:
        async with self._lock:
            self._require_running("add target")
            if target.id in self._workers:
                raise TargetExists(f"capture worker for target {target.id} already exists")
            if target.enabled:
                self._spawn(self._build(target))
                self._runlog.info("capture_target_added", target_id=target.id, target_name=target.name)

    async def update_target(self, target: CaptureTarget) -> None:
        async with self._lock:
            self._require_running("update target")
            replacement = self._build(target) if target.enabled else None
            previous = self._workers.pop(target.id, None)
            if previous is not None:
                self._retire(previous)
            if replacement is not None:
                self._spawn(replacement)
            self._runlog.info(
                "capture_target_updated",
                target_id=target.id,
                enabled=target.enabled,
                cadence_ms=target.cadence_ms,
            )

    async def remove_target(self, target_id: int) -> None:
        async with self._lock:
            worker = self._workers.pop(target_id, None)
            if worker is not None:
                self._retire(worker)
        if worker is not None:
            self._runlog.info("capture_target_removed", target_id=target_id)

    async def update_cadence(self, target_id: int, cadence_ms: int) -> None:
        if cadence_ms <= 0:
            raise ValueError(f"cadence_ms must be > 0, got {cadence_ms}")
        async with self._lock:
            self._require_running("update cadence")
            worker = self._workers.get(target_id)
            if worker is None:
                raise TargetNotFound(f"no capture worker for target {target_id}")
            worker.update_cadence(cadence_ms / 1000.0)
        self._runlog.info("capture_cadence_updated", target_id=target_id, cadence_ms=cadence_ms)
