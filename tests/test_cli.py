import asyncio
import json
from pathlib import Path

import pytest

from obs_agent import cli
from obs_agent.cli import _cli_overrides, main
from obs_agent.config import Config
from obs_agent.errors import RegistryStateError
from obs_agent.store import SqliteStore


def _args(tmp_path: Path, *extra: str) -> list[str]:
    return [*extra, "--data-dir", str(tmp_path), "--no-runlog-enable"]


def test_cli_target_lifecycle(tmp_path: Path, capsys):
    rc = main(_args(tmp_path, "add-target") + ["--name", "cam", "--source", "Camera", "--cadence-ms", "750"])
    assert rc == 0
    created = json.loads(capsys.readouterr().out.strip())
    assert created["name"] == "cam"
    assert created["cadence_ms"] == 750
    assert created["image_format"] == "png"

    rc = main(_args(tmp_path, "add-target") + ["--name", "cam", "--source", "Other"])
    assert rc == 1
    assert "TARGET_EXISTS" in capsys.readouterr().err

    assert main(_args(tmp_path, "list-targets")) == 0
    listing = capsys.readouterr().out.strip().splitlines()
    assert len(listing) == 1
    assert listing[0].split("\t")[1:4] == ["cam", "Camera", "750ms"]

    assert main(_args(tmp_path, "remove-target") + ["--name", "cam"]) == 0
    removed = json.loads(capsys.readouterr().out.strip())
    assert removed["name"] == "cam"

    assert main(_args(tmp_path, "remove-target") + ["--name", "cam"]) == 1
    assert (tmp_path / "obs_agent.sqlite").exists()


def test_cli_rejects_invalid_config(tmp_path: Path, capsys):
    rc = main(_args(tmp_path, "list-targets") + ["--obs-port", "0"])
    assert rc == 2
    assert "invalid configuration" in capsys.readouterr().err


def test_cli_overrides_parse_typed_flags():
    import argparse

    from obs_agent.cli import _add_config_args

    parser = argparse.ArgumentParser()
    _add_config_args(parser)
    ns = parser.parse_args(
        ["--obs-port", "4456", "--health-interval-seconds", "2.5", "--no-obs-auto-reconnect"]
    )
    overrides = _cli_overrides(ns)
    assert overrides == {
        "obs_port": 4456,
        "health_interval_seconds": 2.5,
        "obs_auto_reconnect": False,
    }
    cfg = Config.from_env_and_cli(overrides, {})
    assert cfg.obs_port == 4456


class FailingStartAgent:
    instances: list["FailingStartAgent"] = []

    def __init__(self, config, *, store) -> None:
        self.store = store
        self.stopped = False
        FailingStartAgent.instances.append(self)

    async def start(self, *, on_exhausted=None) -> None:
        raise RegistryStateError("failed to load capture targets: database is locked")

    async def stop(self) -> None:
        self.stopped = True


class ClosingStore(SqliteStore):
    closed = 0

    def close(self) -> None:
        ClosingStore.closed += 1
        super().close()


def test_run_releases_agent_and_store_when_start_fails(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(cli, "ObsAgent", FailingStartAgent)
    monkeypatch.setattr(cli, "SqliteStore", ClosingStore)
    monkeypatch.setattr(cli, "_install_signal_handlers", lambda stop_event: None)
    config = Config(data_dir=str(tmp_path), runlog_enable=False)
    with pytest.raises(RegistryStateError):
        asyncio.run(cli._run(config))
    assert FailingStartAgent.instances[-1].stopped is True
    assert ClosingStore.closed == 1
