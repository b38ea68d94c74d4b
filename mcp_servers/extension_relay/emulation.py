"""Local answers for the few top-level commands a CDP client sends on connect.

A client that believes it launched the browser asks for the browser version,
turns on target auto-attach and configures downloads before touching the page.
The extension only owns one tab's debugger, so those commands are answered here
and never reach it.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from .config import AdapterConfig
from .protocol import PLACEHOLDER_SESSION_ID, CdpCommand, CdpEvent, CdpMessage, CdpResponse

GET_VERSION = "Browser.getVersion"
SET_AUTO_ATTACH = "Target.setAutoAttach"
SET_DOWNLOAD_BEHAVIOR = "Browser.setDownloadBehavior"
ATTACHED_TO_TARGET = "Target.attachedToTarget"


@dataclass(frozen=True)
class TargetDescriptor:
    """Identity of the bridged tab, captured once at attach time."""

    target_id: str
    browser_context_id: str | None = None
    target_info: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_target_info(cls, result: dict[str, Any] | None) -> TargetDescriptor:
        info = (result or {}).get("targetInfo")
        info = dict(info) if isinstance(info, dict) else {}
        return cls(
            target_id=str(info.get("targetId") or ""),
            browser_context_id=str(info["browserContextId"]) if info.get("browserContextId") else None,
            target_info=info,
        )

    def attached_target_info(self) -> dict[str, Any]:
        info = copy.deepcopy(self.target_info)
        info.setdefault("type", "page")
        info.setdefault("title", "")
        info.setdefault("url", "")
        info["targetId"] = self.target_id
        if self.browser_context_id is not None:
            info["browserContextId"] = self.browser_context_id
        info["attached"] = True
        return info


class ProtocolEmulator:
    """Per-bridge emulation state. One instance lives exactly as long as one bridge."""

    def __init__(self, target: TargetDescriptor, *, config: AdapterConfig | None = None) -> None:
        self.target = target
        self.config = config or AdapterConfig()
        self.attached_event_sent = False

    def handle(self, command: CdpCommand) -> list[CdpMessage] | None:
        """Return the frames to send back locally, or None when the command must be forwarded."""
        if command.method == GET_VERSION:
            return [CdpResponse.success(command.id, self.version_info(), session_id=command.session_id)]

        if command.method == SET_AUTO_ATTACH and command.session_id is None:
            out: list[CdpMessage] = []
            if not self.attached_event_sent:
                out.append(self.attached_to_target_event())
                self.attached_event_sent = True
            out.append(CdpResponse.success(command.id, {}))
            return out

        if command.method == SET_DOWNLOAD_BEHAVIOR:
            return [CdpResponse.success(command.id, {}, session_id=command.session_id)]

        return None

    def version_info(self) -> dict[str, Any]:
        return {
            "protocolVersion": self.config.protocol_version,
            "product": self.config.product,
            "revision": "",
            "userAgent": self.config.user_agent,
            "jsVersion": "",
        }

    def attached_to_target_event(self) -> CdpEvent:
        return CdpEvent(
            method=ATTACHED_TO_TARGET,
            params={
                "sessionId": PLACEHOLDER_SESSION_ID,
                "targetInfo": self.target.attached_target_info(),
                "waitingForDebugger": False,
            },
        )


__all__ = [
    "ATTACHED_TO_TARGET",
    "GET_VERSION",
    "SET_AUTO_ATTACH",
    "SET_DOWNLOAD_BEHAVIOR",
    "ProtocolEmulator",
    "TargetDescriptor",
]
