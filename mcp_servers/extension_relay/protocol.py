"""Wire envelope and token types shared by the relay and the extension adapter.

Every frame on both legs is a JSON text object shaped like
``{id?, method?, params?, result?, error?, sessionId?}``. The relay never looks
inside frames; only the adapter decodes them, at the boundary, into one of three
variants discriminated by field presence:

- ``CdpCommand``: ``id`` and ``method``
- ``CdpEvent``: ``method`` without ``id``
- ``CdpResponse``: ``id`` with ``result`` or ``error``, no ``method``
"""

from __future__ import annotations

import hmac
import json
import uuid
from dataclasses import dataclass
from typing import Any, Union

EXTENSION_PATH = "/extension"
CLIENT_PATH = "/client"
CONNECT_PATH = "/connect"
STATUS_PATH = "/.well-known/extension-relay"
TOKEN_PARAM = "token"
RELAY_URL_PARAM = "mcpRelayUrl"

AUTH_FAILURE_CLOSE_CODE = 4001

PINNED_PROTOCOL_VERSION = "1.3"
# Single logical target per bridge, so one constant id covers every
# session-scoped message the adapter synthesizes.
PLACEHOLDER_SESSION_ID = "bridge-session-1"


class ProtocolDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class ConnectionToken:
    """Per-process secret that authorizes exactly one relay role."""

    value: str

    @classmethod
    def generate(cls) -> ConnectionToken:
        return cls(str(uuid.uuid4()))

    def matches(self, candidate: str | None) -> bool:
        if not isinstance(candidate, str) or not candidate:
            return False
        return hmac.compare_digest(self.value.encode("utf-8"), candidate.encode("utf-8"))

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return "ConnectionToken(<redacted>)"


@dataclass(frozen=True)
class CdpCommand:
    id: int | str
    method: str
    params: dict[str, Any] | None = None
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "method": self.method}
        if self.params is not None:
            out["params"] = self.params
        if self.session_id is not None:
            out["sessionId"] = self.session_id
        return out


@dataclass(frozen=True)
class CdpResponse:
    id: int | str
    result: Any = None
    error: dict[str, Any] | None = None
    session_id: str | None = None

    @classmethod
    def success(cls, req_id: int | str, result: Any, *, session_id: str | None = None) -> CdpResponse:
        return cls(id=req_id, result=result if result is not None else {}, session_id=session_id)

    @classmethod
    def failure(cls, req_id: int | str, message: str, *, session_id: str | None = None) -> CdpResponse:
        return cls(id=req_id, error={"message": str(message)}, session_id=session_id)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id}
        if self.error is not None:
            out["error"] = self.error
        else:
            out["result"] = self.result if self.result is not None else {}
        if self.session_id is not None:
            out["sessionId"] = self.session_id
        return out


@dataclass(frozen=True)
class CdpEvent:
    method: str
    params: dict[str, Any] | None = None
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"method": self.method, "params": self.params if self.params is not None else {}}
        if self.session_id is not None:
            out["sessionId"] = self.session_id
        return out


CdpMessage = Union[CdpCommand, CdpResponse, CdpEvent]


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    val = data.get(key)
    if val is None:
        return None
    if not isinstance(val, str):
        raise ProtocolDecodeError(f"{key} must be a string")
    return val


def _optional_params(data: dict[str, Any]) -> dict[str, Any] | None:
    val = data.get("params")
    if val is None:
        return None
    if not isinstance(val, dict):
        raise ProtocolDecodeError("params must be an object")
    return val


def _message_id(data: dict[str, Any]) -> int | str | None:
    if "id" not in data or data["id"] is None:
        return None
    val = data["id"]
    # bool is an int subclass; a boolean id is never valid.
    if isinstance(val, bool) or not isinstance(val, (int, str)):
        raise ProtocolDecodeError("id must be an integer or string")
    return val


def decode_message(raw: str | bytes) -> CdpMessage:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolDecodeError(f"frame is not utf-8: {exc}") from exc
    try:
        data = json.loads(raw)
    except (TypeError, ValueError, RecursionError) as exc:
        raise ProtocolDecodeError(f"frame is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolDecodeError("frame is not a JSON object")

    msg_id = _message_id(data)
    method = data.get("method")
    session_id = _optional_str(data, "sessionId")

    if method is not None:
        if not isinstance(method, str) or not method:
            raise ProtocolDecodeError("method must be a non-empty string")
        params = _optional_params(data)
        if msg_id is None:
            return CdpEvent(method=method, params=params, session_id=session_id)
        return CdpCommand(id=msg_id, method=method, params=params, session_id=session_id)

    if msg_id is not None and ("result" in data or "error" in data):
        error = data.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"message": str(error)}
        return CdpResponse(id=msg_id, result=data.get("result"), error=error, session_id=session_id)

    raise ProtocolDecodeError("frame is neither a command, a response nor an event")


def encode_message(msg: CdpMessage) -> str:
    return json.dumps(msg.to_dict(), ensure_ascii=False, separators=(",", ":"))


__all__ = [
    "AUTH_FAILURE_CLOSE_CODE",
    "CLIENT_PATH",
    "CONNECT_PATH",
    "EXTENSION_PATH",
    "PINNED_PROTOCOL_VERSION",
    "PLACEHOLDER_SESSION_ID",
    "RELAY_URL_PARAM",
    "STATUS_PATH",
    "TOKEN_PARAM",
    "CdpCommand",
    "CdpEvent",
    "CdpMessage",
    "CdpResponse",
    "ConnectionToken",
    "ProtocolDecodeError",
    "decode_message",
    "encode_message",
]
