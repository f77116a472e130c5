from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
import types
import typing
from typing import Any, get_args, get_origin

ENV_PREFIX = "OBS_AGENT_"
# Short names accepted for the connection settings; prefixed keys win.
ENV_ALIASES = {
    "OBS_HOST": "obs_host",
    "OBS_PORT": "obs_port",
    "OBS_PASSWORD": "obs_password",
}
DB_FILENAME = "obs_agent.sqlite"


def _parse_bool(value: str) -> bool:
    val = str(value).strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"invalid bool: {value}")


def _parse_number(value: str, target_type: type) -> Any:
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _unwrap_optional(field_type: Any) -> tuple[Any, bool]:
    origin = get_origin(field_type)
    union_type = getattr(types, "UnionType", None)
    if origin not in (typing.Union, union_type):
        if isinstance(field_type, str) and field_type.endswith("| None"):
            return field_type[: -len("| None")].strip(), True
        return field_type, False
    args = get_args(field_type)
    if args and type(None) in args and len(args) == 2:
        base = args[0] if args[1] is type(None) else args[1]
        return base, True
    return field_type, False


def _is_field_type(field_type: Any, expected: type, expected_name: str) -> bool:
    base_type, _is_optional = _unwrap_optional(field_type)
    if base_type is expected:
        return True
    if isinstance(base_type, str) and base_type == expected_name:
        return True
    return False


def _parse_optional(raw: str, target_type: Any) -> Any:
    text = str(raw).strip()
    if text == "":
        return None
    lower = text.lower()
    if lower in {"none", "null"}:
        return None
    if target_type in (bool, "bool"):
        return _parse_bool(text)
    if target_type in (int, "int"):
        return _parse_number(text, int)
    if target_type in (float, "float"):
        return _parse_number(text, float)
    return text


def _parse_field(field_type: Any, raw: str) -> Any:
    base_type, is_optional = _unwrap_optional(field_type)
    if is_optional:
        return _parse_optional(raw, base_type)
    if _is_field_type(field_type, bool, "bool"):
        return _parse_bool(raw)
    if _is_field_type(field_type, int, "int"):
        return _parse_number(raw, int)
    if _is_field_type(field_type, float, "float"):
        return _parse_number(raw, float)
    return raw


@dataclass(frozen=True)
class ConnectionConfig:
    host: str
    port: int
    password: str = ""

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    def __repr__(self) -> str:
        masked = "***" if self.password else ""
        return f"ConnectionConfig(host={self.host!r}, port={self.port}, password={masked!r})"


@dataclass
class Config:
    obs_host: str = "localhost"
    obs_port: int = 4455
    obs_password: str = ""
    obs_auto_reconnect: bool = True
    obs_connect_timeout_seconds: float = 10.0
    obs_request_timeout_seconds: float = 10.0
    ws_close_timeout_seconds: float = 5.0
    health_interval_seconds: float = 5.0
    startup_connect_attempts: int = 3
    startup_retry_delay_seconds: float = 2.0
    capture_default_cadence_ms: int = 5000
    capture_max_history_per_target: int = 10
    capture_sweep_interval_seconds: float = 60.0
    resource_uri_scheme: str = "obs"
    data_dir: str = "./data"
    db_path: str | None = None
    runlog_enable: bool = True

    def apply_overrides(self, overrides: dict[str, Any]) -> "Config":
        for field in fields(self):
            name = field.name
            if name in overrides:
                value = overrides[name]
                if value is None:
                    _base_type, is_optional = _unwrap_optional(field.type)
                    if is_optional:
                        setattr(self, name, None)
                    continue
                setattr(self, name, value)
        return self

    @classmethod
    def from_env_and_cli(cls, cli_overrides: dict[str, Any], env: dict[str, str]) -> "Config":
        cfg = cls().apply_overrides(cli_overrides)
        by_name = {field.name: field for field in fields(cfg)}
        for alias, name in ENV_ALIASES.items():
            if alias not in env or ENV_PREFIX + name.upper() in env:
                continue
            setattr(cfg, name, _parse_field(by_name[name].type, env[alias]))
        for field in fields(cfg):
            env_key = ENV_PREFIX + field.name.upper()
            if env_key not in env:
                continue
            setattr(cfg, field.name, _parse_field(field.type, env[env_key]))
        return cfg

    def validate(self) -> None:
        if not str(self.obs_host).strip():
            raise ValueError("obs_host must not be empty")
        if not 1 <= int(self.obs_port) <= 65535:
            raise ValueError(f"obs_port out of range: {self.obs_port}")
        if self.capture_default_cadence_ms <= 0:
            raise ValueError("capture_default_cadence_ms must be > 0")
        if self.capture_max_history_per_target < 1:
            raise ValueError("capture_max_history_per_target must be >= 1")
        for name in (
            "health_interval_seconds",
            "capture_sweep_interval_seconds",
            "obs_connect_timeout_seconds",
            "obs_request_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.startup_connect_attempts < 1:
            raise ValueError("startup_connect_attempts must be >= 1")

    def connection_config(self) -> ConnectionConfig:
        return ConnectionConfig(
            host=str(self.obs_host),
            port=int(self.obs_port),
            password=str(self.obs_password or ""),
        )

    def resolved_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path)
        return Path(self.data_dir) / DB_FILENAME

    def runlog_path(self) -> Path | None:
        if not self.runlog_enable:
            return None
        return Path(self.data_dir) / "runlog.ndjson"

    def __repr__(self) -> str:
        masked = "***" if self.obs_password else ""
        return (
            f"Config(obs={self.obs_host}:{self.obs_port}, password={masked!r}, "
            f"auto_reconnect={self.obs_auto_reconnect}, "
            f"max_history={self.capture_max_history_per_target}, "
            f"db={self.resolved_db_path()})"
        )
