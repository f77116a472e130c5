from __future__ import annotations

import asyncio
import contextlib
import inspect
import uuid
from typing import Any, AsyncIterator

import orjson
import websockets

from .config import ConnectionConfig
from .errors import NotConnected, RequestFailed
from .protocol import (
    EVENT_SUB_SCENES,
    OP_EVENT,
    OP_HELLO,
    OP_IDENTIFIED,
    OP_REQUEST_RESPONSE,
    build_identify_payload,
    build_request_payload,
    response_ok,
)

CONNECT_SUPPORTS_CLOSE_TIMEOUT = (
    "close_timeout" in inspect.signature(websockets.connect).parameters
)
DEFAULT_WS_CLOSE_TIMEOUT_SECONDS = 5.0
# Source screenshots arrive base64-encoded in a single text frame.
DEFAULT_WS_MAX_MESSAGE_BYTES = 64 * 1024 * 1024

_EVENTS_END = object()


class HandshakeError(ConnectionError):
    pass


def _decode(raw: Any) -> dict[str, Any]:
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    message = orjson.loads(raw)
    if not isinstance(message, dict):
        raise ValueError("unexpected message shape")
    return message


class ObsSession:
    """One identified obs-websocket session.

    Responses are matched to requests by id on a background reader; events
    are queued without bound and consumed through :meth:`events`.
    """

    def __init__(
        self,
        ws: Any,
        *,
        hello: dict[str, Any],
        request_timeout: float = 10.0,
    ) -> None:
        self._ws = ws
        self._hello = hello
        self._request_timeout = request_timeout
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._events: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self._decode_errors = 0
        self._reader = asyncio.create_task(self._read_loop())

    @classmethod
    async def open(
        cls,
        config: ConnectionConfig,
        *,
        timeout: float = 10.0,
        request_timeout: float = 10.0,
        event_subscriptions: int = EVENT_SUB_SCENES,
        close_timeout: float = DEFAULT_WS_CLOSE_TIMEOUT_SECONDS,
    ) -> "ObsSession":
        connect_kwargs: dict[str, Any] = {"max_size": DEFAULT_WS_MAX_MESSAGE_BYTES}
        if CONNECT_SUPPORTS_CLOSE_TIMEOUT:
            connect_kwargs["close_timeout"] = close_timeout

        async def _open_ws() -> Any:
            return await websockets.connect(config.url, **connect_kwargs)

        ws = await asyncio.wait_for(_open_ws(), timeout)
        try:
            hello = _decode(await asyncio.wait_for(ws.recv(), timeout))
            if hello.get("op") != OP_HELLO:
                raise HandshakeError(f"expected Hello, got op={hello.get('op')}")
            hello_data = hello.get("d") or {}
            # Subscription scope is fixed at identify time, so it rides along here.
            identify = build_identify_payload(hello_data, config.password, event_subscriptions)
            await ws.send(orjson.dumps(identify).decode("utf-8"))
            identified = _decode(await asyncio.wait_for(ws.recv(), timeout))
            if identified.get("op") != OP_IDENTIFIED:
                raise HandshakeError(f"expected Identified, got op={identified.get('op')}")
        except BaseException:
            with contextlib.suppress(Exception):
                await ws.close()
            raise
        info = dict(hello_data)
        info.update(identified.get("d") or {})
        return cls(ws, hello=info, request_timeout=request_timeout)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def obs_websocket_version(self) -> str | None:
        return self._hello.get("obsWebSocketVersion")

    @property
    def rpc_version(self) -> int | None:
        return self._hello.get("negotiatedRpcVersion", self._hello.get("rpcVersion"))

    @property
    def decode_errors(self) -> int:
        return self._decode_errors

    async def request(
        self,
        request_type: str,
        request_data: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        if self._closed:
            raise NotConnected(f"OBS session closed; cannot send {request_type}")
        request_id = uuid.uuid4().hex
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload = build_request_payload(request_type, request_id, request_data)
        try:
            await self._ws.send(orjson.dumps(payload).decode("utf-8"))
            data = await asyncio.wait_for(
                future, self._request_timeout if timeout is None else timeout
            )
        except websockets.exceptions.ConnectionClosed as exc:
            raise NotConnected(f"OBS session closed during {request_type}") from exc
        finally:
            self._pending.pop(request_id, None)
        ok, code, comment = response_ok(data)
        if not ok:
            raise RequestFailed(request_type, code, comment)
        return dict(data.get("responseData") or {})

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._events.get()
            if item is _EVENTS_END:
                return
            yield item  # type: ignore[misc]

    async def close(self) -> None:
        self._closed = True
        with contextlib.suppress(Exception):
            await self._ws.close()
        if not self._reader.done():
            self._reader.cancel()
        await asyncio.gather(self._reader, return_exceptions=True)

    async def _read_loop(self) -> None:
        try:
            while True:
                raw = await self._ws.recv()
                try:
                    message = _decode(raw)
                except (orjson.JSONDecodeError, ValueError):
                    self._decode_errors += 1
                    continue
                op = message.get("op")
                data = message.get("d") or {}
                if op == OP_REQUEST_RESPONSE:
                    future = self._pending.get(str(data.get("requestId")))
                    if future is not None and not future.done():
                        future.set_result(data)
                elif op == OP_EVENT:
                    self._events.put_nowait(data)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self._closed = True
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(NotConnected("OBS session closed"))
            self._events.put_nowait(_EVENTS_END)
