from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from mcp_servers.extension_relay.adapter import NativeDebuggerError
from mcp_servers.extension_relay.config import RelayConfig
from mcp_servers.extension_relay.relay import CdpRelayServer

TARGET_INFO = {
    "targetInfo": {
        "targetId": "TARGET-1",
        "browserContextId": "CONTEXT-1",
        "type": "page",
        "title": "Example",
        "url": "https://example.test/",
        "attached": True,
    }
}


class FakeNativeDebugger:
    """In-memory stand-in for chrome.debugger scoped to tabs."""

    def __init__(self) -> None:
        self.attached: set[int] = set()
        self.attach_calls: list[tuple[int, str]] = []
        self.detach_calls: list[int] = []
        self.commands: list[tuple[int, str, dict[str, Any] | None]] = []
        self.results: dict[str, Any] = {"Target.getTargetInfo": TARGET_INFO}
        self.errors: dict[str, str] = {}
        self.fail_attach: str | None = None
        self.event_listeners: list[Callable[[int, str, dict[str, Any]], None]] = []
        self.detach_listeners: list[Callable[[int, str], None]] = []
        self.unregister_calls = 0

    async def attach(self, tab_id: int, protocol_version: str) -> None:
        self.attach_calls.append((tab_id, protocol_version))
        if self.fail_attach:
            raise NativeDebuggerError(self.fail_attach)
        if tab_id in self.attached:
            raise NativeDebuggerError("Another debugger is already attached to the tab")
        self.attached.add(tab_id)

    async def detach(self, tab_id: int) -> None:
        self.detach_calls.append(tab_id)
        if tab_id not in self.attached:
            raise NativeDebuggerError("Debugger is not attached to the tab")
        self.attached.discard(tab_id)

    async def send_command(self, tab_id: int, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self.commands.append((tab_id, method, params))
        await asyncio.sleep(0)
        if method in self.errors:
            raise NativeDebuggerError(self.errors[method])
        return copy.deepcopy(self.results.get(method, {}))

    def _subscribe(self, bucket: list[Any], listener: Any) -> Callable[[], None]:
        bucket.append(listener)

        def _unregister() -> None:
            self.unregister_calls += 1
            bucket.remove(listener)

        return _unregister

    def on_event(self, listener: Callable[[int, str, dict[str, Any]], None]) -> Callable[[], None]:
        return self._subscribe(self.event_listeners, listener)

    def on_detach(self, listener: Callable[[int, str], None]) -> Callable[[], None]:
        return self._subscribe(self.detach_listeners, listener)

    def emit(self, tab_id: int, method: str, params: dict[str, Any] | None = None) -> None:
        for listener in list(self.event_listeners):
            listener(tab_id, method, params or {})

    def fire_detach(self, tab_id: int, reason: str = "target_closed") -> None:
        self.attached.discard(tab_id)
        for listener in list(self.detach_listeners):
            listener(tab_id, reason)

    def methods(self) -> list[str]:
        return [method for _tab, method, _params in self.commands]


class FakeTabs:
    def __init__(self) -> None:
        self.navigations: list[tuple[int, str]] = []
        self.statuses: list[tuple[int, str, str | None]] = []

    async def navigate(self, tab_id: int, url: str) -> None:
        self.navigations.append((tab_id, url))

    def set_status(self, tab_id: int, status: str, detail: str | None = None) -> None:
        self.statuses.append((tab_id, status, detail))

    def last_status(self, tab_id: int) -> tuple[str, str | None] | None:
        for tid, status, detail in reversed(self.statuses):
            if tid == tab_id:
                return status, detail
        return None


@pytest.fixture
def native() -> FakeNativeDebugger:
    return FakeNativeDebugger()


@pytest.fixture
def tabs() -> FakeTabs:
    return FakeTabs()


@pytest.fixture
def relay() -> Iterator[CdpRelayServer]:
    server = CdpRelayServer(config=RelayConfig())
    server.start()
    try:
        yield server
    finally:
        server.close()
