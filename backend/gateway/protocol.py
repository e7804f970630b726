"""
Gateway wire protocol: line-delimited JSON envelopes.

Envelope shape:
    {type: "req"|"res"|"event", id?, method?, params?, ok?, payload?, error?, event?}

Inbound messages are decoded into small frozen dataclasses so the client
dispatches on type, never on raw dict poking:

    msg = decode_inbound(raw)
    if isinstance(msg, Response): ...
    elif isinstance(msg, ChatFinal): ...
    elif isinstance(msg, RunLifecycle): ...

Anything malformed raises ProtocolError. Events the bridge does not care
about decode to IgnoredEvent.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from constants import (
    CONNECT_METHOD,
    GATEWAY_CLIENT_DISPLAY_NAME,
    GATEWAY_CLIENT_ID,
    GATEWAY_CLIENT_MODE,
    GATEWAY_CLIENT_PLATFORM,
    GATEWAY_CLIENT_VERSION,
    GATEWAY_PROTOCOL_VERSION,
)
from gateway.errors import ProtocolError


# -------------------------
# Inbound message types
# -------------------------

class LifecyclePhase(str, Enum):
    START = "start"
    END = "end"


@dataclass(frozen=True)
class Response:
    """Answer to a request we sent."""
    request_id: str
    ok: bool
    payload: Any = None
    error: Any = None


@dataclass(frozen=True)
class ChatFinal:
    """Terminal assistant message for one run. `text` may be empty."""
    run_id: str
    text: str


@dataclass(frozen=True)
class RunLifecycle:
    """Backend announcement that a run started or ended."""
    run_id: str
    phase: LifecyclePhase


@dataclass(frozen=True)
class IgnoredEvent:
    """Well-formed event that carries nothing the bridge consumes."""
    event: str


InboundMessage = Response | ChatFinal | RunLifecycle | IgnoredEvent


# -------------------------
# Outbound
# -------------------------

def encode_request(request_id: str, method: str, params: dict[str, Any]) -> str:
    return json.dumps(
        {"type": "req", "id": request_id, "method": method, "params": params},
        ensure_ascii=False,
        separators=(",", ":"),
    )


def build_connect_params(token: str) -> dict[str, Any]:
    """Versioned handshake parameters sent as the first request."""
    return {
        "minProtocol": GATEWAY_PROTOCOL_VERSION,
        "maxProtocol": GATEWAY_PROTOCOL_VERSION,
        "client": {
            "id": GATEWAY_CLIENT_ID,
            "displayName": GATEWAY_CLIENT_DISPLAY_NAME,
            "version": GATEWAY_CLIENT_VERSION,
            "platform": GATEWAY_CLIENT_PLATFORM,
            "mode": GATEWAY_CLIENT_MODE,
        },
        "auth": {"token": token},
    }


def build_chat_send_params(
    *,
    message: str,
    session_key: str,
    idempotency_key: str,
) -> dict[str, Any]:
    return {
        "message": message,
        "sessionKey": session_key,
        "idempotencyKey": idempotency_key,
    }


# -------------------------
# Inbound
# -------------------------

def decode_inbound(raw: str | bytes) -> InboundMessage:
    """
    Decode one inbound line.

    Raises:
        ProtocolError on invalid JSON, non-object payloads, unknown
        envelope types or missing correlation fields.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"invalid json: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"envelope must be an object, got {type(data).__name__}")

    kind = data.get("type")

    if kind == "res":
        request_id = data.get("id")
        if not isinstance(request_id, str):
            raise ProtocolError("response without string id")
        return Response(
            request_id=request_id,
            ok=bool(data.get("ok")),
            payload=data.get("payload"),
            error=data.get("error"),
        )

    if kind == "event":
        return _decode_event(data)

    if kind == "req":
        # Server-initiated requests are not part of this client's contract
        raise ProtocolError(f"unexpected request from gateway: {data.get('method')!r}")

    raise ProtocolError(f"unknown envelope type: {kind!r}")


def _decode_event(data: dict[str, Any]) -> InboundMessage:
    event = data.get("event")
    if not isinstance(event, str):
        raise ProtocolError("event envelope without event name")

    payload = data.get("payload")
    if not isinstance(payload, dict):
        return IgnoredEvent(event=event)

    if event == "chat":
        if payload.get("state") != "final":
            return IgnoredEvent(event=event)
        message = payload.get("message")
        # user echoes and role-less messages are not replies
        if not isinstance(message, dict) or message.get("role") != "assistant":
            return IgnoredEvent(event=event)
        run_id = payload.get("runId")
        if not isinstance(run_id, str) or not run_id:
            raise ProtocolError("chat final without runId")
        return ChatFinal(run_id=run_id, text=extract_text(message.get("content")))

    if event == "agent":
        if payload.get("stream") != "lifecycle":
            return IgnoredEvent(event=event)
        phase_raw = (payload.get("data") or {}).get("phase")
        try:
            phase = LifecyclePhase(phase_raw)
        except ValueError:
            return IgnoredEvent(event=event)
        run_id = payload.get("runId")
        if not isinstance(run_id, str) or not run_id:
            raise ProtocolError(f"lifecycle {phase.value} without runId")
        return RunLifecycle(run_id=run_id, phase=phase)

    return IgnoredEvent(event=event)


def extract_text(content: Any) -> str:
    """
    Flatten assistant content.

    - str: returned as-is
    - list of blocks: `text` of every {"type": "text"} block, concatenated in order
    - anything else: ""
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        )
    return ""
