"""Extension-side adapter: bridges one tab's native debugger to the relay.

The adapter runs inside the browser-extension host's event loop. The host feeds it
tab navigations and the consent page's approval signal; the adapter drives each
tab through ``idle -> awaiting_consent -> attaching -> bridged -> closed`` and
pumps CDP frames between the native debugger and the relay's extension endpoint.

All registry mutations happen on the adapter's own loop. Native callbacks coming
from another thread are marshalled onto that loop before they touch any state.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol
from urllib.parse import parse_qs, urlencode, urlsplit

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .config import LOOPBACK_HOSTS, AdapterConfig
from .emulation import ProtocolEmulator, TargetDescriptor
from .protocol import (
    CONNECT_PATH,
    PLACEHOLDER_SESSION_ID,
    RELAY_URL_PARAM,
    CdpCommand,
    CdpEvent,
    CdpMessage,
    CdpResponse,
    ProtocolDecodeError,
    decode_message,
    encode_message,
)

_LOGGER = logging.getLogger("mcp.extension_relay.adapter")

STATUS_WAITING = "waiting"
STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"
STATUS_ERROR = "error"

EventListener = Callable[[int, str, dict[str, Any]], None]
DetachListener = Callable[[int, str], None]
Unregister = Callable[[], None]


class NativeDebuggerError(Exception):
    pass


class NativeDebugger(Protocol):
    async def attach(self, tab_id: int, protocol_version: str) -> None: ...

    async def detach(self, tab_id: int) -> None: ...

    async def send_command(self, tab_id: int, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def on_event(self, listener: EventListener) -> Unregister: ...

    def on_detach(self, listener: DetachListener) -> Unregister: ...


class TabController(Protocol):
    async def navigate(self, tab_id: int, url: str) -> None: ...

    def set_status(self, tab_id: int, status: str, detail: str | None = None) -> None: ...


class TabState(str, Enum):
    IDLE = "idle"
    AWAITING_CONSENT = "awaiting_consent"
    ATTACHING = "attaching"
    BRIDGED = "bridged"
    CLOSED = "closed"


def parse_trigger_url(url: str | None) -> str | None:
    """Return the relay address carried by a connect-page URL, or None."""
    try:
        parts = urlsplit(url or "")
        hostname = parts.hostname or ""
    except ValueError:
        return None
    if parts.scheme not in {"http", "https"}:
        return None
    if hostname not in LOOPBACK_HOSTS or parts.path != CONNECT_PATH:
        return None
    values = parse_qs(parts.query).get(RELAY_URL_PARAM) or []
    relay_url = values[0].strip() if values else ""
    if urlsplit(relay_url).scheme not in {"ws", "wss"}:
        return None
    return relay_url


@dataclass(eq=False)
class PendingConsent:
    tab_id: int
    relay_url: str
    # Resolves True on approval, False when superseded; abandoned waits never resolve.
    approved: asyncio.Future[bool]
    state: TabState = TabState.AWAITING_CONSENT
    task: asyncio.Task | None = None

    @property
    def granted(self) -> bool:
        fut = self.approved
        return fut.done() and not fut.cancelled() and fut.result() is True


@dataclass(eq=False)
class TabBridge:
    """Live association of one tab's debugger attachment with one uplink socket."""

    tab_id: int
    relay_url: str
    ws: Any
    target: TargetDescriptor
    emulator: ProtocolEmulator
    loop: asyncio.AbstractEventLoop
    outbox: asyncio.Queue[str] = field(default_factory=asyncio.Queue)
    unregister: list[Unregister] = field(default_factory=list)
    tasks: set[asyncio.Task] = field(default_factory=set)
    state: TabState = TabState.BRIDGED

    @property
    def closed(self) -> bool:
        return self.state is TabState.CLOSED

    def socket_open(self) -> bool:
        return self.ws.state is State.OPEN

    def enqueue(self, msg: CdpMessage) -> bool:
        if self.closed or not self.socket_open():
            return False
        self.outbox.put_nowait(encode_message(msg))
        return True


class SessionRegistry:
    """tab id -> TabBridge. At most one bridge per tab."""

    def __init__(self) -> None:
        self._sessions: dict[int, TabBridge] = {}

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, tab_id: int) -> TabBridge | None:
        return self._sessions.get(tab_id)

    def insert(self, bridge: TabBridge) -> None:
        if bridge.tab_id in self._sessions:
            raise ValueError(f"tab {bridge.tab_id} already has an active session")
        self._sessions[bridge.tab_id] = bridge

    def discard(self, bridge: TabBridge) -> bool:
        if self._sessions.get(bridge.tab_id) is not bridge:
            return False
        del self._sessions[bridge.tab_id]
        return True

    def tab_ids(self) -> list[int]:
        return list(self._sessions)


class ExtensionAdapter:
    def __init__(
        self,
        native: NativeDebugger,
        tabs: TabController,
        *,
        config: AdapterConfig | None = None,
    ) -> None:
        self._native = native
        self._tabs = tabs
        self.config = config or AdapterConfig.from_env()
        self.registry = SessionRegistry()
        self._pending: dict[int, PendingConsent] = {}
        self._tasks: set[asyncio.Task] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # Host-facing API
    # ─────────────────────────────────────────────────────────────────────────

    def state_of(self, tab_id: int) -> TabState:
        if tab_id in self.registry:
            return TabState.BRIDGED
        pending = self._pending.get(tab_id)
        return pending.state if pending is not None else TabState.IDLE

    def active_tabs(self) -> list[int]:
        return self.registry.tab_ids()

    def session(self, tab_id: int) -> TabBridge | None:
        return self.registry.get(tab_id)

    def on_navigation_completed(self, tab_id: int, url: str) -> asyncio.Task | None:
        """Start the connect flow when a tab lands on a relay connect URL.

        Returns the connect task so callers can await it; never blocks.
        """
        relay_url = parse_trigger_url(url)
        if relay_url is None:
            return None

        state = self.state_of(tab_id)
        if state in {TabState.BRIDGED, TabState.ATTACHING}:
            _LOGGER.info("tab %s is already %s; ignoring connect request", tab_id, state.value)
            return None

        previous = self._pending.get(tab_id)
        if previous is not None and previous.granted:
            _LOGGER.info("tab %s: already approved; ignoring connect request", tab_id)
            return None
        if previous is not None:
            del self._pending[tab_id]
            if not previous.approved.done():
                _LOGGER.info("tab %s: replacing pending consent", tab_id)
                previous.approved.set_result(False)

        pending = PendingConsent(
            tab_id=tab_id,
            relay_url=relay_url,
            approved=asyncio.get_running_loop().create_future(),
        )
        self._pending[tab_id] = pending
        pending.task = self._spawn(self._connect(pending), name=f"relay-connect-{tab_id}")
        return pending.task

    def approve(self, tab_id: int) -> bool:
        """Consent page approval for `tab_id`. Returns False if nothing was waiting."""
        pending = self._pending.get(tab_id)
        if pending is None or pending.state is not TabState.AWAITING_CONSENT or pending.approved.done():
            _LOGGER.info("tab %s: approval without a pending connect request", tab_id)
            return False
        # Flip the state together with the future so a trigger arriving before the
        # connect task resumes sees the tab as attaching.
        pending.state = TabState.ATTACHING
        pending.approved.set_result(True)
        return True

    async def disconnect(self, tab_id: int) -> bool:
        return await self.teardown(tab_id, reason="disconnected by user")

    async def on_tab_removed(self, tab_id: int) -> None:
        pending = self._pending.pop(tab_id, None)
        if pending is not None and not pending.approved.done():
            pending.approved.set_result(False)
        await self.teardown(tab_id, reason="tab closed")

    async def teardown(self, tab_id: int, *, reason: str = "teardown") -> bool:
        bridge = self.registry.get(tab_id)
        if bridge is None:
            return False
        return await self._close_bridge(bridge, reason)

    async def close(self) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for p in pending:
            if p.task is not None:
                p.task.cancel()
        for tab_id in self.registry.tab_ids():
            await self.teardown(tab_id, reason="adapter closed")

    # ─────────────────────────────────────────────────────────────────────────
    # Connect flow
    # ─────────────────────────────────────────────────────────────────────────

    def _consent_url(self, tab_id: int) -> str:
        base = self.config.consent_page_url
        sep = "&" if "?" in base else "?"
        return f"{base}{sep}{urlencode({'tabId': tab_id})}"

    async def _connect(self, pending: PendingConsent) -> None:
        tab_id = pending.tab_id
        try:
            await self._tabs.navigate(tab_id, self._consent_url(tab_id))
            self._set_status(tab_id, STATUS_WAITING, "Waiting for approval")
            if not await pending.approved:
                return
            if self._pending.get(tab_id) is not pending:
                _LOGGER.info("tab %s: approval withdrawn before attach", tab_id)
                return
            pending.state = TabState.ATTACHING
            await self._attach(pending)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("tab %s: connect flow failed: %s", tab_id, exc)
            self._set_status(tab_id, STATUS_ERROR, f"Connection failed: {exc}")
        finally:
            if self._pending.get(tab_id) is pending:
                del self._pending[tab_id]

    async def _attach(self, pending: PendingConsent) -> TabBridge | None:
        tab_id = pending.tab_id
        try:
            await self._native.attach(tab_id, self.config.protocol_version)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("tab %s: debugger attach failed: %s", tab_id, exc)
            self._set_status(tab_id, STATUS_ERROR, f"Attach failed: {exc}")
            return None

        try:
            info = await self._native.send_command(tab_id, "Target.getTargetInfo", {})
            target = TargetDescriptor.from_target_info(info)
            ws = await websockets.connect(
                pending.relay_url,
                open_timeout=self.config.uplink_timeout,
                max_size=self.config.max_frame_bytes,
                ping_interval=None,
            )
        except asyncio.CancelledError:
            await self._safe_detach(tab_id)
            raise
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("tab %s: relay uplink failed: %s", tab_id, exc)
            await self._safe_detach(tab_id)
            self._set_status(tab_id, STATUS_ERROR, f"Connection failed: {exc}")
            return None

        bridge = TabBridge(
            tab_id=tab_id,
            relay_url=pending.relay_url,
            ws=ws,
            target=target,
            emulator=ProtocolEmulator(target, config=self.config),
            loop=asyncio.get_running_loop(),
        )
        self.registry.insert(bridge)
        # Listeners are scoped to this bridge and removed exactly once in _close_bridge.
        bridge.unregister.append(
            self._native.on_event(
                lambda src, method, params: self._from_native(bridge, self._on_native_event, src, method, params)
            )
        )
        bridge.unregister.append(
            self._native.on_detach(
                lambda src, reason: self._from_native(bridge, self._on_native_detach, src, reason)
            )
        )
        bridge.tasks.add(self._spawn(self._write_uplink(bridge), name=f"relay-writer-{tab_id}"))
        bridge.tasks.add(self._spawn(self._read_uplink(bridge), name=f"relay-reader-{tab_id}"))
        _LOGGER.info("tab %s bridged (target=%s)", tab_id, target.target_id)
        self._set_status(tab_id, STATUS_CONNECTED, None)

        try:
            await self._tabs.navigate(tab_id, self.config.success_page_url)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("tab %s: could not open success page: %s", tab_id, exc)
        return bridge

    # ─────────────────────────────────────────────────────────────────────────
    # Pumps
    # ─────────────────────────────────────────────────────────────────────────

    async def _read_uplink(self, bridge: TabBridge) -> None:
        reason = "socket closed"
        try:
            async for frame in bridge.ws:
                self._dispatch_frame(bridge, frame)
        except ConnectionClosed as exc:
            reason = f"socket error: {exc}"
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("tab %s: uplink read failed: %s", bridge.tab_id, exc)
            reason = f"socket error: {exc}"
        await self._close_bridge(bridge, reason)

    async def _write_uplink(self, bridge: TabBridge) -> None:
        while True:
            frame = await bridge.outbox.get()
            try:
                await bridge.ws.send(frame)
            except ConnectionClosed:
                return
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("tab %s: uplink write failed: %s", bridge.tab_id, exc)
                await self._close_bridge(bridge, f"socket error: {exc}")
                return

    def _dispatch_frame(self, bridge: TabBridge, frame: str | bytes) -> None:
        try:
            msg = decode_message(frame)
        except ProtocolDecodeError as exc:
            _LOGGER.warning("tab %s: dropping malformed frame: %s", bridge.tab_id, exc)
            return
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("tab %s: dropping undecodable frame: %s", bridge.tab_id, exc)
            return
        if isinstance(msg, CdpEvent):
            # Only commands carry an id to answer; an event-shaped frame has nowhere to go.
            _LOGGER.debug("tab %s: dropping client frame without id (method=%s)", bridge.tab_id, msg.method)
            return
        if not isinstance(msg, CdpCommand):
            _LOGGER.debug("tab %s: dropping %s frame from client", bridge.tab_id, type(msg).__name__)
            return

        local = bridge.emulator.handle(msg)
        if local is not None:
            for out in local:
                bridge.enqueue(out)
            return
        self._spawn(self._forward_command(bridge, msg), name=f"relay-cmd-{bridge.tab_id}-{msg.id}")

    async def _forward_command(self, bridge: TabBridge, cmd: CdpCommand) -> None:
        try:
            result = await self._native.send_command(bridge.tab_id, cmd.method, cmd.params or {})
            response = CdpResponse.success(cmd.id, result, session_id=cmd.session_id)
        except Exception as exc:  # noqa: BLE001
            response = CdpResponse.failure(cmd.id, str(exc) or type(exc).__name__, session_id=cmd.session_id)
        if not bridge.enqueue(response):
            _LOGGER.debug("tab %s: discarding response id=%s (socket closed)", bridge.tab_id, cmd.id)

    def _from_native(self, bridge: TabBridge, handler: Callable[..., None], *args: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is bridge.loop:
            handler(bridge, *args)
            return
        with contextlib.suppress(RuntimeError):
            bridge.loop.call_soon_threadsafe(handler, bridge, *args)

    def _on_native_event(self, bridge: TabBridge, tab_id: int, method: str, params: dict[str, Any] | None) -> None:
        if tab_id != bridge.tab_id:
            return
        bridge.enqueue(CdpEvent(method=method, params=params or {}, session_id=PLACEHOLDER_SESSION_ID))

    def _on_native_detach(self, bridge: TabBridge, tab_id: int, reason: str) -> None:
        if tab_id != bridge.tab_id or bridge.closed:
            return
        _LOGGER.info("tab %s: debugger detached (%s)", tab_id, reason)
        self._spawn(self._close_bridge(bridge, f"debugger detached: {reason}"), name=f"relay-detach-{tab_id}")

    # ─────────────────────────────────────────────────────────────────────────
    # Teardown
    # ─────────────────────────────────────────────────────────────────────────

    async def _close_bridge(self, bridge: TabBridge, reason: str) -> bool:
        # Everything before the first await runs atomically on the loop, so a second
        # trigger for the same bridge always sees it closed.
        if bridge.closed:
            return False
        bridge.state = TabState.CLOSED
        self.registry.discard(bridge)

        handles = list(bridge.unregister)
        bridge.unregister.clear()
        for unregister in handles:
            try:
                unregister()
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("tab %s: listener removal failed: %s", bridge.tab_id, exc)

        current = asyncio.current_task()
        for task in bridge.tasks:
            if task is not current:
                task.cancel()

        if bridge.ws.state is not State.CLOSED:
            with contextlib.suppress(Exception):
                await bridge.ws.close()
        await self._safe_detach(bridge.tab_id)

        _LOGGER.info("tab %s disconnected: %s", bridge.tab_id, reason)
        self._set_status(bridge.tab_id, STATUS_DISCONNECTED, reason)
        return True

    async def _safe_detach(self, tab_id: int) -> None:
        try:
            await self._native.detach(tab_id)
        except Exception as exc:  # noqa: BLE001
            # Usually already detached (the detach event may be what brought us here).
            _LOGGER.debug("tab %s: debugger detach failed: %s", tab_id, exc)

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _set_status(self, tab_id: int, status: str, detail: str | None) -> None:
        try:
            self._tabs.set_status(tab_id, status, detail)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("tab %s: status update failed: %s", tab_id, exc)

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


__all__ = [
    "STATUS_CONNECTED",
    "STATUS_DISCONNECTED",
    "STATUS_ERROR",
    "STATUS_WAITING",
    "ExtensionAdapter",
    "NativeDebugger",
    "NativeDebuggerError",
    "PendingConsent",
    "SessionRegistry",
    "TabBridge",
    "TabController",
    "TabState",
    "parse_trigger_url",
]
