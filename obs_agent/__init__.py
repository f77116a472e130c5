"""Resilient OBS websocket agent: scene notifications and periodic source captures."""

__all__ = [
    "agent",
    "capture",
    "cli",
    "commands",
    "config",
    "connection",
    "errors",
    "events",
    "notify",
    "protocol",
    "registry",
    "retention",
    "runlog",
    "scheduling",
    "session",
    "store",
]
