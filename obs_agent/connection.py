from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from .config import ConnectionConfig
from .errors import (
    ConnectionFailed,
    NotConnected,
    ProbeFailed,
    StatusProbeFailed,
    error_payload,
)
from .events import SceneObserver, run_event_bridge
from .runlog import RunLog
from .scheduling import wait_for_stop
from .session import DEFAULT_WS_CLOSE_TIMEOUT_SECONDS, ObsSession

PROBE_REQUEST = "GetVersion"


class HealthState(enum.Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class ConnectionStatus:
    connected: bool
    host: str
    port: int
    obs_version: str | None = None
    websocket_version: str | None = None
    platform: str | None = None


class Session(Protocol):
    @property
    def closed(self) -> bool: ...

    async def request(
        self,
        request_type: str,
        request_data: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]: ...

    def events(self) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


SessionFactory = Callable[[ConnectionConfig], Awaitable[Session]]


class Connection:
    """Owns the OBS session and the loops that keep it alive.

    ``connected`` and ``session`` change together under ``_lock``; a connect
    attempt holds the lock for its whole duration, so two attempts never
    overlap. The monitor loop alternates between probing a live session and
    reconnecting a dead one on a single period.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        runlog: RunLog,
        health_interval_seconds: float = 5.0,
        request_timeout_seconds: float = 10.0,
        connect_timeout_seconds: float = 10.0,
        close_timeout_seconds: float = DEFAULT_WS_CLOSE_TIMEOUT_SECONDS,
        auto_reconnect: bool = True,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._config = config
        self._runlog = runlog
        self._health_interval = health_interval_seconds
        self._request_timeout = request_timeout_seconds
        self._connect_timeout = connect_timeout_seconds
        self._close_timeout = close_timeout_seconds
        self._session_factory = session_factory
        self._lock = asyncio.Lock()
        self._connected = False
        self._auto_reconnect = auto_reconnect
        self._session: Session | None = None
        self._observer: SceneObserver | None = None
        self._bridge_task: asyncio.Task[None] | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()
        self._health = HealthState.UNHEALTHY
        self._consecutive_failures = 0

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def auto_reconnect(self) -> bool:
        return self._auto_reconnect

    @property
    def health(self) -> HealthState:
        return self._health

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def session(self) -> Session | None:
        return self._session

    def is_connected(self) -> bool:
        return self._connected

    def require_session(self) -> Session:
        session = self._session
        if not self._connected or session is None:
            raise NotConnected()
        return session

    def set_observer(self, observer: SceneObserver | None) -> None:
        self._observer = observer

    def set_auto_reconnect(self, enabled: bool) -> None:
        self._auto_reconnect = bool(enabled)

    async def reconfigure(self, config: ConnectionConfig) -> None:
        async with self._lock:
            if self._connected:
                raise ConnectionFailed("cannot change OBS address while connected")
            self._config = config

    async def _open_session(self) -> Session:
        if self._session_factory is not None:
            return await self._session_factory(self._config)
        return await ObsSession.open(
            self._config,
            timeout=self._connect_timeout,
            request_timeout=self._request_timeout,
            close_timeout=self._close_timeout,
        )

    async def connect(self) -> None:
        async with self._lock:
            if self._connected:
                return
            try:
                session = await self._open_session()
            except Exception as exc:
                raise ConnectionFailed(
                    f"failed to connect to OBS at {self._config.address}: {exc}"
                ) from exc
            self._session = session
            self._connected = True
            self._health = HealthState.HEALTHY
            self._bridge_task = asyncio.create_task(
                run_event_bridge(session.events(), lambda: self._observer, self._runlog),
                name="obs-event-bridge",
            )
            self._ensure_monitor()
        self._runlog.info("connected", address=self._config.address)

    def _ensure_monitor(self) -> None:
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._stop = asyncio.Event()
        self._monitor_task = asyncio.create_task(self._monitor_loop(), name="obs-monitor")

    async def _teardown_locked(self, expected: Session | None = None) -> bool:
        session = self._session
        if session is None or (expected is not None and session is not expected):
            return False
        self._session = None
        self._connected = False
        self._health = HealthState.UNHEALTHY
        bridge, self._bridge_task = self._bridge_task, None
        if bridge is not None and not bridge.done():
            bridge.cancel()
        if bridge is not None:
            await asyncio.gather(bridge, return_exceptions=True)
        await session.close()
        return True

    async def disconnect(self) -> None:
        async with self._lock:
            self._auto_reconnect = False
            dropped = await self._teardown_locked()
        if dropped:
            self._runlog.info("disconnected", address=self._config.address)

    async def close(self) -> None:
        self._stop.set()
        monitor, self._monitor_task = self._monitor_task, None
        if monitor is not None and not monitor.done():
            monitor.cancel()
        if monitor is not None:
            await asyncio.gather(monitor, return_exceptions=True)
        await self.disconnect()

    async def _probe(self, session: Session) -> dict[str, Any]:
        try:
            return await session.request(PROBE_REQUEST, timeout=self._request_timeout)
        except Exception as exc:
            raise ProbeFailed(f"health probe failed: {exc}") from exc

    async def health_check(self) -> None:
        await self._probe(self.require_session())

    async def get_status(self) -> ConnectionStatus:
        status = ConnectionStatus(
            connected=self._connected,
            host=self._config.host,
            port=self._config.port,
        )
        session = self._session
        if not self._connected or session is None:
            return status
        try:
            data = await session.request(PROBE_REQUEST, timeout=self._request_timeout)
        except Exception as exc:
            raise StatusProbeFailed(
                "status probe failed; connection may be broken", status
            ) from exc
        return replace(
            status,
            obs_version=data.get("obsVersion"),
            websocket_version=data.get("obsWebSocketVersion"),
            platform=data.get("platformDescription") or data.get("platform"),
        )

    async def _monitor_loop(self) -> None:
        stop = self._stop
        while not stop.is_set():
            if await wait_for_stop(self._health_interval, stop):
                return
            await self.monitor_tick()

    async def monitor_tick(self) -> None:
        """One health/reconnect cycle; failures are logged, never raised."""
        session = self._session
        if not self._connected or session is None:
            if not self._auto_reconnect:
                return
            try:
                await self.connect()
            except ConnectionFailed as exc:
                self._runlog.warn(
                    "reconnect_failed", address=self._config.address, **error_payload(exc)
                )
            return
        try:
            await self._probe(session)
        except ProbeFailed as exc:
            self._consecutive_failures += 1
            self._runlog.warn(
                "probe_failed",
                address=self._config.address,
                consecutive_failures=self._consecutive_failures,
                **error_payload(exc),
            )
            async with self._lock:
                dropped = await self._teardown_locked(expected=session)
            if dropped:
                self._runlog.error(
                    "connection_lost",
                    address=self._config.address,
                    consecutive_failures=self._consecutive_failures,
                )
            return
        self._consecutive_failures = 0
        self._health = HealthState.HEALTHY
