from __future__ import annotations

import base64
import hashlib
from typing import Any

RPC_VERSION = 1

OP_HELLO = 0
OP_IDENTIFY = 1
OP_IDENTIFIED = 2
OP_EVENT = 5
OP_REQUEST = 6
OP_REQUEST_RESPONSE = 7

EVENT_SUB_NONE = 0
EVENT_SUB_GENERAL = 1 << 0
EVENT_SUB_CONFIG = 1 << 1
EVENT_SUB_SCENES = 1 << 2

REQUEST_STATUS_SUCCESS = 100

EVENT_SCENE_CREATED = "SceneCreated"
EVENT_SCENE_REMOVED = "SceneRemoved"
EVENT_CURRENT_PROGRAM_SCENE_CHANGED = "CurrentProgramSceneChanged"


def _sha256_b64(text: str) -> str:
    return base64.b64encode(hashlib.sha256(text.encode("utf-8")).digest()).decode("ascii")


def build_auth_string(password: str, salt: str, challenge: str) -> str:
    secret = _sha256_b64(password + salt)
    return _sha256_b64(secret + challenge)


def build_identify_payload(
    hello: dict[str, Any],
    password: str,
    event_subscriptions: int,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "rpcVersion": min(int(hello.get("rpcVersion", RPC_VERSION)), RPC_VERSION),
        "eventSubscriptions": int(event_subscriptions),
    }
    auth = hello.get("authentication")
    if auth:
        if not password:
            raise ValueError("OBS requires a password but none is configured")
        data["authentication"] = build_auth_string(
            password, str(auth["salt"]), str(auth["challenge"])
        )
    return {"op": OP_IDENTIFY, "d": data}


def build_request_payload(
    request_type: str,
    request_id: str,
    request_data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    data: dict[str, Any] = {"requestType": request_type, "requestId": request_id}
    if request_data:
        data["requestData"] = request_data
    return {"op": OP_REQUEST, "d": data}


def response_ok(data: dict[str, Any]) -> tuple[bool, int | None, str | None]:
    status = data.get("requestStatus") or {}
    code = status.get("code")
    return bool(status.get("result")), code, status.get("comment")


def strip_data_uri(image_data: str) -> str:
    idx = image_data.find(",")
    if idx != -1 and image_data.startswith("data:"):
        return image_data[idx + 1 :]
    return image_data
