from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

from .commands import ObsCommands
from .config import Config
from .connection import Connection, ConnectionStatus, HealthState, SessionFactory
from .errors import ConnectionFailed, StatusProbeFailed, error_payload
from .events import CompositeObserver, EventCounter, EventCounts
from .notify import NotificationSink, NotifyingObserver, RunlogSink
from .registry import CaptureRegistry
from .runlog import RunLog
from .store import ArtifactStore, CaptureTarget, record_successful_connection, validate_target

ExhaustedHandler = Callable[[ConnectionFailed], Any]


async def connect_with_retry(
    connect: Callable[[], Awaitable[None]],
    *,
    attempts: int,
    delay_seconds: float,
    runlog: RunLog,
    on_exhausted: ExhaustedHandler | None = None,
) -> int:
    """Bounded foreground connect; returns the attempt number that succeeded.

    After ``attempts`` failures ``on_exhausted`` decides: a truthy result
    buys one more attempt (typically after the address was changed), a
    falsy one re-raises the last ``ConnectionFailed``.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")
    attempt = 0
    budget = attempts
    while True:
        attempt += 1
        try:
            await connect()
        except ConnectionFailed as exc:
            runlog.warn("startup_connect_failed", attempt=attempt, **error_payload(exc))
            if attempt < budget:
                await asyncio.sleep(delay_seconds)
                continue
            runlog.error("startup_connect_exhausted", attempts=attempt, **error_payload(exc))
            if on_exhausted is None:
                raise
            decision = on_exhausted(exc)
            if inspect.isawaitable(decision):
                decision = await decision
            if not decision:
                raise
            budget = attempt + 1
            continue
        runlog.info("startup_connected", attempt=attempt)
        return attempt


@dataclass(frozen=True)
class AgentStatus:
    connection: ConnectionStatus
    health: HealthState
    auto_reconnect: bool
    registry_running: bool
    worker_count: int
    events: EventCounts
    probe_error: str | None = None


class ObsAgent:
    def __init__(
        self,
        config: Config,
        *,
        store: ArtifactStore,
        sink: NotificationSink | None = None,
        runlog: RunLog | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.runlog = runlog if runlog is not None else RunLog(config.runlog_path())
        self.sink = sink if sink is not None else RunlogSink(self.runlog)
        self.connection = Connection(
            config.connection_config(),
            runlog=self.runlog,
            health_interval_seconds=config.health_interval_seconds,
            request_timeout_seconds=config.obs_request_timeout_seconds,
            connect_timeout_seconds=config.obs_connect_timeout_seconds,
            close_timeout_seconds=config.ws_close_timeout_seconds,
            auto_reconnect=config.obs_auto_reconnect,
            session_factory=session_factory,
        )
        self.commands = ObsCommands(self.connection, timeout=config.obs_request_timeout_seconds)
        self.event_counter = EventCounter(self.runlog)
        self.connection.set_observer(
            CompositeObserver(
                NotifyingObserver(self.sink, scheme=config.resource_uri_scheme),
                self.event_counter,
            )
        )
        self.registry = CaptureRegistry(
            connection=self.connection,
            screenshotter=self.commands,
            store=self.store,
            runlog=self.runlog,
            max_history=config.capture_max_history_per_target,
            sweep_interval_seconds=config.capture_sweep_interval_seconds,
        )

    async def start(self, *, on_exhausted: ExhaustedHandler | None = None) -> None:
        self.runlog.info("agent_starting", config=repr(self.config))
        await connect_with_retry(
            self.connection.connect,
            attempts=self.config.startup_connect_attempts,
            delay_seconds=self.config.startup_retry_delay_seconds,
            runlog=self.runlog,
            on_exhausted=on_exhausted,
        )
        await asyncio.to_thread(record_successful_connection, self.store)
        await self.registry.start()
        self.runlog.info("agent_started", workers=self.registry.worker_count())

    async def stop(self) -> None:
        await self.registry.stop()
        await self.connection.close()
        self.runlog.info("agent_stopped")

    async def status(self) -> AgentStatus:
        probe_error = None
        try:
            connection_status = await self.connection.get_status()
        except StatusProbeFailed as exc:
            connection_status = exc.status
            probe_error = str(exc)
        return AgentStatus(
            connection=connection_status,
            health=self.connection.health,
            auto_reconnect=self.connection.auto_reconnect,
            registry_running=self.registry.is_running(),
            worker_count=self.registry.worker_count(),
            events=self.event_counter.snapshot(),
            probe_error=probe_error,
        )

    async def add_target(self, target: CaptureTarget) -> CaptureTarget:
        created = await asyncio.to_thread(self.store.create_target, target)
        if self.registry.is_running():
            await self.registry.add_target(created)
        return created

    async def remove_target(self, target_id: int) -> None:
        await self.registry.remove_target(target_id)
        await asyncio.to_thread(self.store.delete_target, target_id)

    async def update_target(self, target_id: int, **changes: Any) -> CaptureTarget:
        current = await asyncio.to_thread(self.store.get_target, target_id)
        candidate = replace(current, **changes)
        validate_target(candidate)
        updated = await asyncio.to_thread(self.store.update_target, candidate)
        if self.registry.is_running():
            if set(changes) == {"cadence_ms"} and self.registry.worker(target_id) is not None:
                await self.registry.update_cadence(target_id, updated.cadence_ms)
            else:
                await self.registry.update_target(updated)
        return updated
