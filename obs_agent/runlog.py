from __future__ import annotations

import sys
import threading
import time
from collections import deque
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import orjson

LEVEL_INFO = "info"
LEVEL_WARN = "warn"
LEVEL_ERROR = "error"

_ORJSON_NDJSON_OPTIONS = orjson.OPT_APPEND_NEWLINE
if hasattr(orjson, "OPT_ESCAPE_NON_ASCII"):
    _ORJSON_NDJSON_OPTIONS |= orjson.OPT_ESCAPE_NON_ASCII


def monotonic_ns() -> int:
    # perf_counter_ns is higher resolution than monotonic_ns on some platforms.
    return time.perf_counter_ns()


def _normalize_orjson(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return _normalize_orjson(value.value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, bytearray):
        return bytes(value).hex()
    if isinstance(value, memoryview):
        return value.tobytes().hex()
    if is_dataclass(value) and not isinstance(value, type):
        return _normalize_orjson(asdict(value))
    if isinstance(value, dict):
        return {str(key): _normalize_orjson(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset, deque)):
        return [_normalize_orjson(item) for item in value]
    return str(value)


class RunLog:
    def __init__(
        self,
        path: str | Path | None = None,
        *,
        tail_size: int = 500,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._tail: deque[dict[str, Any]] = deque(maxlen=max(1, tail_size))
        self._lock = threading.Lock()
        self._failed = False

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def failed(self) -> bool:
        return self._failed

    def write(self, record_type: str, *, level: str = LEVEL_INFO, **fields: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "record_type": record_type,
            "level": level,
            "ts_wall_ns_utc": time.time_ns(),
            "ts_mono_ns": monotonic_ns(),
        }
        record.update(fields)
        normalized = _normalize_orjson(record)
        with self._lock:
            self._tail.append(normalized)
            if self._path is not None and not self._failed:
                self._append(self._path, normalized)
        return normalized

    def info(self, record_type: str, **fields: Any) -> dict[str, Any]:
        return self.write(record_type, level=LEVEL_INFO, **fields)

    def warn(self, record_type: str, **fields: Any) -> dict[str, Any]:
        return self.write(record_type, level=LEVEL_WARN, **fields)

    def error(self, record_type: str, **fields: Any) -> dict[str, Any]:
        return self.write(record_type, level=LEVEL_ERROR, **fields)

    def tail(self, record_type: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            records = list(self._tail)
        if record_type is None:
            return records
        return [record for record in records if record.get("record_type") == record_type]

    def _append(self, path: Path, record: dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            line = orjson.dumps(record, option=_ORJSON_NDJSON_OPTIONS)
            with path.open("ab") as handle:
                handle.write(line)
        except (OSError, TypeError) as exc:
            self._failed = True
            print(f"runlog failure: {type(exc).__name__}: {exc}", file=sys.stderr)
