from __future__ import annotations

from typing import Any

CONNECTION_FAILED = "CONNECTION_FAILED"
NOT_CONNECTED = "NOT_CONNECTED"
PROBE_FAILED = "PROBE_FAILED"
CAPTURE_FAILED = "CAPTURE_FAILED"
PERSIST_FAILED = "PERSIST_FAILED"
TARGET_NOT_FOUND = "TARGET_NOT_FOUND"
TARGET_EXISTS = "TARGET_EXISTS"
REQUEST_FAILED = "REQUEST_FAILED"
REGISTRY_STATE = "REGISTRY_STATE"


class AgentError(Exception):
    reason = "AGENT_ERROR"


class ConnectionFailed(AgentError):
    reason = CONNECTION_FAILED


class NotConnected(AgentError):
    reason = NOT_CONNECTED

    def __init__(self, message: str = "not connected to OBS; call connect() first") -> None:
        super().__init__(message)


class ProbeFailed(AgentError):
    reason = PROBE_FAILED


class StatusProbeFailed(ProbeFailed):
    """Status round-trip failed; ``status`` holds what is known locally."""

    def __init__(self, message: str, status: Any) -> None:
        super().__init__(message)
        self.status = status


class CaptureFailed(AgentError):
    reason = CAPTURE_FAILED


class PersistFailed(AgentError):
    reason = PERSIST_FAILED


class TargetNotFound(AgentError):
    reason = TARGET_NOT_FOUND


class TargetExists(AgentError):
    reason = TARGET_EXISTS


class RequestFailed(AgentError):
    reason = REQUEST_FAILED

    def __init__(self, request_type: str, code: int | None, comment: str | None) -> None:
        detail = f"{request_type} failed"
        if code is not None:
            detail += f" code={code}"
        if comment:
            detail += f": {comment}"
        super().__init__(detail)
        self.request_type = request_type
        self.code = code
        self.comment = comment


class RegistryStateError(AgentError):
    reason = REGISTRY_STATE


def error_payload(exc: BaseException | None) -> dict[str, Any]:
    if exc is None:
        return {}
    payload: dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
    }
    reason = getattr(exc, "reason", None)
    if reason:
        payload["error_reason"] = reason
    cause = exc.__cause__
    if cause is not None:
        payload["cause_type"] = type(cause).__name__
        payload["cause_message"] = str(cause)
    return payload
