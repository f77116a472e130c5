from __future__ import annotations

import itertools
import sqlite3
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Protocol

from .errors import PersistFailed, TargetExists, TargetNotFound

DEFAULT_CADENCE_MS = 5000
DEFAULT_IMAGE_FORMAT = "png"
DEFAULT_QUALITY = 80
STATE_LAST_CONNECTION = "last_successful_connection_ns"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS capture_targets (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT UNIQUE NOT NULL,
  source_name TEXT NOT NULL,
  cadence_ms INTEGER NOT NULL,
  image_format TEXT NOT NULL,
  image_width INTEGER NOT NULL DEFAULT 0,
  image_height INTEGER NOT NULL DEFAULT 0,
  quality INTEGER NOT NULL,
  enabled INTEGER NOT NULL,
  created_at_ns INTEGER NOT NULL,
  updated_at_ns INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS artifacts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  target_id INTEGER NOT NULL,
  payload TEXT NOT NULL,
  mime_type TEXT NOT NULL,
  size_bytes INTEGER NOT NULL,
  captured_at_ns INTEGER NOT NULL,
  FOREIGN KEY(target_id) REFERENCES capture_targets(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS state (
  key TEXT PRIMARY KEY,
  value TEXT,
  updated_at_ns INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_artifacts_target_time ON artifacts(target_id, captured_at_ns);
"""


@dataclass
class CaptureTarget:
    name: str
    source_name: str
    cadence_ms: int = DEFAULT_CADENCE_MS
    image_format: str = DEFAULT_IMAGE_FORMAT
    image_width: int = 0
    image_height: int = 0
    quality: int = DEFAULT_QUALITY
    enabled: bool = True
    id: int = 0
    created_at_ns: int = 0
    updated_at_ns: int = 0

    @property
    def cadence_seconds(self) -> float:
        return self.cadence_ms / 1000.0


@dataclass(frozen=True)
class Artifact:
    target_id: int
    payload: str
    mime_type: str
    size_bytes: int
    captured_at_ns: int = 0
    id: int = 0


class ArtifactStore(Protocol):
    def list_targets(self) -> list[CaptureTarget]: ...

    def get_target(self, target_id: int) -> CaptureTarget: ...

    def get_target_by_name(self, name: str) -> CaptureTarget: ...

    def create_target(self, target: CaptureTarget) -> CaptureTarget: ...

    def update_target(self, target: CaptureTarget) -> CaptureTarget: ...

    def delete_target(self, target_id: int) -> None: ...

    def save_artifact(self, artifact: Artifact) -> int: ...

    def delete_oldest(self, target_id: int, keep: int) -> int: ...

    def latest_artifact(self, target_id: int) -> Artifact | None: ...

    def list_artifacts(self, target_id: int) -> list[Artifact]: ...

    def count_artifacts(self, target_id: int) -> int: ...

    def get_state(self, key: str) -> str | None: ...

    def set_state(self, key: str, value: str) -> None: ...


def _apply_target_defaults(target: CaptureTarget, default_cadence_ms: int) -> CaptureTarget:
    return replace(
        target,
        cadence_ms=target.cadence_ms if target.cadence_ms > 0 else default_cadence_ms,
        image_format=target.image_format or DEFAULT_IMAGE_FORMAT,
        quality=target.quality if target.quality > 0 else DEFAULT_QUALITY,
    )


def validate_target(target: CaptureTarget) -> None:
    if target.cadence_ms <= 0:
        raise ValueError(f"cadence_ms must be > 0, got {target.cadence_ms}")
    if not 0 <= target.quality <= 100:
        raise ValueError(f"quality must be within 0..100, got {target.quality}")


def _check_keep(keep: int) -> None:
    if keep < 0:
        raise ValueError(f"keep must be >= 0, got {keep}")


def record_successful_connection(store: ArtifactStore) -> None:
    store.set_state(STATE_LAST_CONNECTION, str(time.time_ns()))


class MemoryStore:
    def __init__(self, *, default_cadence_ms: int = DEFAULT_CADENCE_MS) -> None:
        self._default_cadence_ms = default_cadence_ms
        self._targets: dict[int, CaptureTarget] = {}
        self._artifacts: dict[int, list[Artifact]] = {}
        self._state: dict[str, str] = {}
        self._target_ids = itertools.count(1)
        self._artifact_ids = itertools.count(1)
        self._lock = threading.Lock()

    def list_targets(self) -> list[CaptureTarget]:
        with self._lock:
            return [replace(target) for target in self._targets.values()]

    def get_target(self, target_id: int) -> CaptureTarget:
        with self._lock:
            target = self._targets.get(target_id)
            if target is None:
                raise TargetNotFound(f"capture target with id {target_id} not found")
            return replace(target)

    def get_target_by_name(self, name: str) -> CaptureTarget:
        with self._lock:
            for target in self._targets.values():
                if target.name == name:
                    return replace(target)
        raise TargetNotFound(f"capture target '{name}' not found")

    def create_target(self, target: CaptureTarget) -> CaptureTarget:
        with self._lock:
            if any(existing.name == target.name for existing in self._targets.values()):
                raise TargetExists(f"capture target with name '{target.name}' already exists")
            now_ns = time.time_ns()
            created = replace(
                _apply_target_defaults(target, self._default_cadence_ms),
                id=next(self._target_ids),
                created_at_ns=now_ns,
                updated_at_ns=now_ns,
            )
            self._targets[created.id] = created
            self._artifacts[created.id] = []
            return replace(created)

    def update_target(self, target: CaptureTarget) -> CaptureTarget:
        validate_target(target)
        with self._lock:
            current = self._targets.get(target.id)
            if current is None:
                raise TargetNotFound(f"capture target with id {target.id} not found")
            updated = replace(
                target,
                name=current.name,
                created_at_ns=current.created_at_ns,
                updated_at_ns=time.time_ns(),
            )
            self._targets[target.id] = updated
            return replace(updated)

    def delete_target(self, target_id: int) -> None:
        with self._lock:
            if self._targets.pop(target_id, None) is None:
                raise TargetNotFound(f"capture target with id {target_id} not found")
            self._artifacts.pop(target_id, None)

    def save_artifact(self, artifact: Artifact) -> int:
        with self._lock:
            history = self._artifacts.get(artifact.target_id)
            if history is None:
                raise PersistFailed(f"capture target with id {artifact.target_id} not found")
            stored = replace(
                artifact,
                id=next(self._artifact_ids),
                captured_at_ns=artifact.captured_at_ns or time.time_ns(),
            )
            history.append(stored)
            return stored.id

    def _newest_first(self, target_id: int) -> list[Artifact]:
        history = self._artifacts.get(target_id, [])
        return sorted(history, key=lambda item: (item.captured_at_ns, item.id), reverse=True)

    def delete_oldest(self, target_id: int, keep: int) -> int:
        _check_keep(keep)
        with self._lock:
            ordered = self._newest_first(target_id)
            if len(ordered) <= keep:
                return 0
            self._artifacts[target_id] = list(reversed(ordered[:keep]))
            return len(ordered) - keep

    def latest_artifact(self, target_id: int) -> Artifact | None:
        with self._lock:
            ordered = self._newest_first(target_id)
            return ordered[0] if ordered else None

    def list_artifacts(self, target_id: int) -> list[Artifact]:
        with self._lock:
            return self._newest_first(target_id)

    def count_artifacts(self, target_id: int) -> int:
        with self._lock:
            return len(self._artifacts.get(target_id, []))

    def get_state(self, key: str) -> str | None:
        with self._lock:
            return self._state.get(key)

    def set_state(self, key: str, value: str) -> None:
        with self._lock:
            self._state[key] = value


_TARGET_COLUMNS = (
    "id, name, source_name, cadence_ms, image_format, image_width, image_height, "
    "quality, enabled, created_at_ns, updated_at_ns"
)
_ARTIFACT_COLUMNS = "id, target_id, payload, mime_type, size_bytes, captured_at_ns"


def _target_from_row(row: tuple) -> CaptureTarget:
    return CaptureTarget(
        id=int(row[0]),
        name=row[1],
        source_name=row[2],
        cadence_ms=int(row[3]),
        image_format=row[4],
        image_width=int(row[5] or 0),
        image_height=int(row[6] or 0),
        quality=int(row[7]),
        enabled=bool(row[8]),
        created_at_ns=int(row[9]),
        updated_at_ns=int(row[10]),
    )


def _artifact_from_row(row: tuple) -> Artifact:
    return Artifact(
        id=int(row[0]),
        target_id=int(row[1]),
        payload=row[2],
        mime_type=row[3],
        size_bytes=int(row[4]),
        captured_at_ns=int(row[5]),
    )


class SqliteStore:
    def __init__(
        self,
        db_path: str | Path,
        *,
        default_cadence_ms: int = DEFAULT_CADENCE_MS,
    ) -> None:
        self._path = Path(db_path)
        self._default_cadence_ms = default_cadence_ms
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    def _ensure(self) -> sqlite3.Connection:
        if self._conn is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._path), check_same_thread=False)
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)
            conn.commit()
            self._conn = conn
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def list_targets(self) -> list[CaptureTarget]:
        with self._lock:
            rows = self._ensure().execute(
                f"SELECT {_TARGET_COLUMNS} FROM capture_targets ORDER BY id"
            ).fetchall()
        return [_target_from_row(row) for row in rows]

    def get_target(self, target_id: int) -> CaptureTarget:
        with self._lock:
            row = self._ensure().execute(
                f"SELECT {_TARGET_COLUMNS} FROM capture_targets WHERE id = ?", (target_id,)
            ).fetchone()
        if row is None:
            raise TargetNotFound(f"capture target with id {target_id} not found")
        return _target_from_row(row)

    def get_target_by_name(self, name: str) -> CaptureTarget:
        with self._lock:
            row = self._ensure().execute(
                f"SELECT {_TARGET_COLUMNS} FROM capture_targets WHERE name = ?", (name,)
            ).fetchone()
        if row is None:
            raise TargetNotFound(f"capture target '{name}' not found")
        return _target_from_row(row)

    def create_target(self, target: CaptureTarget) -> CaptureTarget:
        target = _apply_target_defaults(target, self._default_cadence_ms)
        now_ns = time.time_ns()
        with self._lock:
            conn = self._ensure()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO capture_targets (name, source_name, cadence_ms, image_format,
                        image_width, image_height, quality, enabled, created_at_ns, updated_at_ns)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        target.name,
                        target.source_name,
                        target.cadence_ms,
                        target.image_format,
                        target.image_width,
                        target.image_height,
                        target.quality,
                        int(target.enabled),
                        now_ns,
                        now_ns,
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise TargetExists(
                    f"capture target with name '{target.name}' already exists"
                ) from exc
        return replace(
            target, id=int(cursor.lastrowid), created_at_ns=now_ns, updated_at_ns=now_ns
        )

    def update_target(self, target: CaptureTarget) -> CaptureTarget:
        validate_target(target)
        now_ns = time.time_ns()
        with self._lock:
            conn = self._ensure()
            cursor = conn.execute(
                """
                UPDATE capture_targets
                SET source_name = ?, cadence_ms = ?, image_format = ?, image_width = ?,
                    image_height = ?, quality = ?, enabled = ?, updated_at_ns = ?
                WHERE id = ?
                """,
                (
                    target.source_name,
                    target.cadence_ms,
                    target.image_format,
                    target.image_width,
                    target.image_height,
                    target.quality,
                    int(target.enabled),
                    now_ns,
                    target.id,
                ),
            )
            conn.commit()
        if cursor.rowcount == 0:
            raise TargetNotFound(f"capture target with id {target.id} not found")
        return self.get_target(target.id)

    def delete_target(self, target_id: int) -> None:
        with self._lock:
            conn = self._ensure()
            cursor = conn.execute("DELETE FROM capture_targets WHERE id = ?", (target_id,))
            conn.commit()
        if cursor.rowcount == 0:
            raise TargetNotFound(f"capture target with id {target_id} not found")

    def save_artifact(self, artifact: Artifact) -> int:
        captured_at_ns = artifact.captured_at_ns or time.time_ns()
        with self._lock:
            conn = self._ensure()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO artifacts (target_id, payload, mime_type, size_bytes, captured_at_ns)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        artifact.target_id,
                        artifact.payload,
                        artifact.mime_type,
                        artifact.size_bytes,
                        captured_at_ns,
                    ),
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise PersistFailed(
                    f"failed to save artifact for target {artifact.target_id}"
                ) from exc
        return int(cursor.lastrowid)

    def delete_oldest(self, target_id: int, keep: int) -> int:
        _check_keep(keep)
        with self._lock:
            conn = self._ensure()
            cursor = conn.execute(
                """
                DELETE FROM artifacts
                WHERE target_id = ? AND id NOT IN (
                    SELECT id FROM artifacts
                    WHERE target_id = ?
                    ORDER BY captured_at_ns DESC, id DESC
                    LIMIT ?
                )
                """,
                (target_id, target_id, keep),
            )
            conn.commit()
        return int(cursor.rowcount)

    def latest_artifact(self, target_id: int) -> Artifact | None:
        with self._lock:
            row = self._ensure().execute(
                f"""
                SELECT {_ARTIFACT_COLUMNS} FROM artifacts
                WHERE target_id = ?
                ORDER BY captured_at_ns DESC, id DESC
                LIMIT 1
                """,
                (target_id,),
            ).fetchone()
        return _artifact_from_row(row) if row is not None else None

    def list_artifacts(self, target_id: int) -> list[Artifact]:
        with self._lock:
            rows = self._ensure().execute(
                f"""
                SELECT {_ARTIFACT_COLUMNS} FROM artifacts
                WHERE target_id = ?
                ORDER BY captured_at_ns DESC, id DESC
                """,
                (target_id,),
            ).fetchall()
        return [_artifact_from_row(row) for row in rows]

    def count_artifacts(self, target_id: int) -> int:
        with self._lock:
            row = self._ensure().execute(
                "SELECT COUNT(*) FROM artifacts WHERE target_id = ?", (target_id,)
            ).fetchone()
        return int(row[0])

    def get_state(self, key: str) -> str | None:
        with self._lock:
            row = self._ensure().execute(
                "SELECT value FROM state WHERE key = ?", (key,)
            ).fetchone()
        return None if row is None else row[0]

    def set_state(self, key: str, value: str) -> None:
        with self._lock:
            conn = self._ensure()
            conn.execute(
                """
                INSERT INTO state (key, value, updated_at_ns) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                    updated_at_ns = excluded.updated_at_ns
                """,
                (key, value, time.time_ns()),
            )
            conn.commit()
