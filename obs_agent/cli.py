from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import os
import signal
import sys
from dataclasses import asdict, fields
from typing import Any

from .agent import ObsAgent
from .config import Config, _is_field_type
from .errors import AgentError, ConnectionFailed, TargetNotFound
from .store import CaptureTarget, SqliteStore


def _str2bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off"}:
        return False
    raise argparse.ArgumentTypeError(f"invalid bool: {value}")


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    for field in fields(Config):
        name = field.name.replace("_", "-")
        if _is_field_type(field.type, bool, "bool"):
            group = parser.add_mutually_exclusive_group()
            group.add_argument(f"--{name}", dest=field.name, action="store_true")
            group.add_argument(f"--no-{name}", dest=field.name, action="store_false")
            parser.set_defaults(**{field.name: None})
        else:
            parser.add_argument(f"--{name}", dest=field.name, default=None)


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field in fields(Config):
        value = getattr(ns, field.name, None)
        if value is None:
            continue
        if _is_field_type(field.type, bool, "bool"):
            overrides[field.name] = _str2bool(value)
        elif _is_field_type(field.type, int, "int"):
            overrides[field.name] = int(value)
        elif _is_field_type(field.type, float, "float"):
            overrides[field.name] = float(value)
        else:
            overrides[field.name] = value
    return overrides


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_stop(sig: signal.Signals) -> None:
        if stop_event.is_set():
            return
        print(f"received {sig.name}, shutting down", file=sys.stderr)
        loop.call_soon_threadsafe(stop_event.set)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig)
        except (NotImplementedError, RuntimeError):
            try:
                signal.signal(sig, lambda *_args, _sig=sig: _request_stop(_sig))
            except (ValueError, AttributeError):
                continue


def _prompt_reconfigure(agent: ObsAgent):
    async def _on_exhausted(error: ConnectionFailed) -> bool:
        print(f"could not connect to OBS: {error}", file=sys.stderr)
        answer = await asyncio.to_thread(input, "Reconfigure OBS connection? [y/N] ")
        if answer.strip().lower() not in {"y", "yes"}:
            return False
        current = agent.config
        host = await asyncio.to_thread(input, f"host [{current.obs_host}]: ")
        port = await asyncio.to_thread(input, f"port [{current.obs_port}]: ")
        password = await asyncio.to_thread(getpass.getpass, "password (blank keeps current): ")
        try:
            current.apply_overrides(
                {
                    "obs_host": host.strip() or current.obs_host,
                    "obs_port": int(port) if port.strip() else current.obs_port,
                    "obs_password": password or current.obs_password,
                }
            )
            current.validate()
        except ValueError as exc:
            print(f"invalid connection settings: {exc}", file=sys.stderr)
            return False
        await agent.connection.reconfigure(current.connection_config())
        return True

    return _on_exhausted


def _status_record(status: Any) -> dict[str, Any]:
    record = asdict(status)
    record["health"] = status.health.value
    return record


async def _run(config: Config) -> int:
    store = SqliteStore(config.resolved_db_path(), default_cadence_ms=config.capture_default_cadence_ms)
    agent = ObsAgent(config, store=store)
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    on_exhausted = _prompt_reconfigure(agent) if sys.stdin.isatty() else None
    try:
        try:
            await agent.start(on_exhausted=on_exhausted)
        except ConnectionFailed as exc:
            print(f"giving up: {exc}", file=sys.stderr)
            return 2
        print(json.dumps(_status_record(await agent.status())))
        await stop_event.wait()
    finally:
        await agent.stop()
        store.close()
    return 0


async def _status(config: Config) -> int:
    store = SqliteStore(config.resolved_db_path(), default_cadence_ms=config.capture_default_cadence_ms)
    agent = ObsAgent(config, store=store)
    code = 0
    try:
        try:
            await agent.connection.connect()
        except ConnectionFailed as exc:
            print(f"connect failed: {exc}", file=sys.stderr)
            code = 1
        print(json.dumps(_status_record(await agent.status())))
    finally:
        await agent.connection.close()
        store.close()
    return code


def _target_record(target: CaptureTarget) -> dict[str, Any]:
    return asdict(target)


def _find_target(store: SqliteStore, args: argparse.Namespace) -> CaptureTarget:
    if args.id is not None:
        return store.get_target(int(args.id))
    return store.get_target_by_name(args.name)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="obs-agent")
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    _add_config_args(common)

    subparsers.add_parser("run", parents=[common])
    subparsers.add_parser("status", parents=[common])

    add_target = subparsers.add_parser("add-target", parents=[common])
    add_target.add_argument("--name", required=True)
    add_target.add_argument("--source", required=True, dest="source_name")
    add_target.add_argument("--cadence-ms", type=int, default=None)
    add_target.add_argument("--format", dest="image_format", default="png")
    add_target.add_argument("--width", dest="image_width", type=int, default=0)
    add_target.add_argument("--height", dest="image_height", type=int, default=0)
    add_target.add_argument("--quality", type=int, default=80)
    add_target.add_argument("--disabled", action="store_true")

    subparsers.add_parser("list-targets", parents=[common])

    remove_target = subparsers.add_parser("remove-target", parents=[common])
    selector = remove_target.add_mutually_exclusive_group(required=True)
    selector.add_argument("--id", type=int, default=None)
    selector.add_argument("--name", default=None)

    args = parser.parse_args(argv)
    overrides = _cli_overrides(args)
    config = Config.from_env_and_cli(overrides, os.environ)
    try:
        config.validate()
    except ValueError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2

    if args.command == "run":
        return asyncio.run(_run(config))
    if args.command == "status":
        return asyncio.run(_status(config))

    store = SqliteStore(config.resolved_db_path(), default_cadence_ms=config.capture_default_cadence_ms)
    try:
        if args.command == "add-target":
            target = store.create_target(
                CaptureTarget(
                    name=args.name,
                    source_name=args.source_name,
                    cadence_ms=args.cadence_ms or config.capture_default_cadence_ms,
                    image_format=args.image_format,
                    image_width=args.image_width,
                    image_height=args.image_height,
                    quality=args.quality,
                    enabled=not args.disabled,
                )
            )
            print(json.dumps(_target_record(target)))
            return 0
        if args.command == "list-targets":
            for target in store.list_targets():
                state = "enabled" if target.enabled else "disabled"
                count = store.count_artifacts(target.id)
                print(
                    f"{target.id}\t{target.name}\t{target.source_name}\t"
                    f"{target.cadence_ms}ms\t{state}\t{count}"
                )
            return 0
        if args.command == "remove-target":
            try:
                target = _find_target(store, args)
            except TargetNotFound as exc:
                print(str(exc), file=sys.stderr)
                return 1
            store.delete_target(target.id)
            print(json.dumps({"removed": target.id, "name": target.name}))
            return 0
    except AgentError as exc:
        print(f"{exc.reason}: {exc}", file=sys.stderr)
        return 1
    finally:
        store.close()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
