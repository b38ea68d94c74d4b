from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import threading
import time
from typing import Any
from urllib.parse import parse_qs, quote, urlsplit

import websockets
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Response
from websockets.protocol import State

from .config import RelayConfig
from .protocol import (
    AUTH_FAILURE_CLOSE_CODE,
    CLIENT_PATH,
    CONNECT_PATH,
    EXTENSION_PATH,
    RELAY_URL_PARAM,
    STATUS_PATH,
    TOKEN_PARAM,
    ConnectionToken,
)

_LOGGER = logging.getLogger("mcp.extension_relay.relay")

INVALID_PATH_REASON = "Invalid path"
INVALID_TOKEN_REASON = "Invalid token"
NO_EXTENSION_REASON = "No extension client connected"
EXTENSION_SUPERSEDED_REASON = "Superseded by a new extension connection"
CLIENT_SUPERSEDED_REASON = "Superseded by a new client connection"
SHUTDOWN_REASON = "Relay shutting down"

_CONNECT_PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Connect browser tab</title></head>
<body>
<h1>Waiting for the browser extension</h1>
<p>The relay extension picks up this page and asks for permission to share the tab.</p>
</body>
</html>
"""


class RelayError(Exception):
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


def _split_request_target(target: str) -> tuple[str, str | None]:
    parts = urlsplit(target or "/")
    values = parse_qs(parts.query, keep_blank_values=True).get(TOKEN_PARAM) or []
    return parts.path or "/", (values[0] if values else None)


def _is_open(ws: Any) -> bool:
    return ws is not None and ws.state is State.OPEN


class CdpRelayServer:
    """Local WebSocket relay pairing one extension socket with one CDP client socket.

    - Sync lifecycle for the hosting process; the server itself runs on a dedicated
      asyncio loop in a daemon thread.
    - Two roles on two paths, each gated by its own token. Tokens live as long as the
      instance, so either leg can reconnect with the URL it was given.
    - Frames are opaque: text stays text, binary stays binary, nothing is parsed.
    """

    def __init__(self, *, config: RelayConfig | None = None) -> None:
        self.config = config or RelayConfig.from_env()
        self.host = self.config.host
        self.port: int | None = None

        self._extension_token = ConnectionToken.generate()
        self._client_token = ConnectionToken.generate()

        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._extension_seen = threading.Event()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._shutdown: asyncio.Event | None = None
        self._server: Any | None = None
        self._bind_error: str | None = None
        self._started_at_ms = 0

        self._extension_ws: Any | None = None
        self._client_ws: Any | None = None
        self._rejected = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float | None = None) -> None:
        if self.is_listening():
            return

        t = self._thread
        if t is None or not t.is_alive():
            self._ready.clear()
            with self._lock:
                self._bind_error = None
            t = threading.Thread(target=self._run_thread, name="mcp-extension-relay", daemon=True)
            self._thread = t
            t.start()

        timeout = self.config.start_timeout if wait_timeout is None else float(wait_timeout)
        if not self._ready.wait(timeout=max(0.05, timeout)):
            raise RelayError(f"Relay server did not start on {self.host} within {timeout:.1f}s")

        with self._lock:
            listening = self._server is not None
            bind_error = self._bind_error
        if not listening:
            raise RelayError(f"Relay server bind failed on {self.host}: {bind_error or 'unknown error'}")

    def close(self, *, timeout: float = 2.0) -> None:
        with self._lock:
            loop = self._loop
            shutdown = self._shutdown
        t = self._thread
        if loop is not None and shutdown is not None:
            # The loop may already be gone when close() races with thread exit.
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(shutdown.set)
        if t is not None and t is not threading.current_thread():
            t.join(timeout=timeout)

    def is_listening(self) -> bool:
        with self._lock:
            return self._server is not None

    def is_extension_connected(self) -> bool:
        with self._lock:
            return _is_open(self._extension_ws)

    def is_client_connected(self) -> bool:
        with self._lock:
            return _is_open(self._client_ws)

    def wait_for_connection(self, *, timeout: float = 5.0) -> bool:
        """Block until the first extension handshake completes (one-shot) or timeout."""
        return bool(self._extension_seen.wait(timeout=max(0.0, float(timeout))))

    def status(self) -> dict[str, Any]:
        with self._lock:
            listening = self._server is not None
            ext = self._extension_ws
            client = self._client_ws
            rejected = self._rejected
            bind_error = self._bind_error
            started_at = self._started_at_ms
        return {
            "listening": listening,
            "host": self.host,
            "port": self.port,
            "extensionConnected": _is_open(ext),
            "clientConnected": _is_open(client),
            "connectionsRejected": rejected,
            **({"bindError": bind_error} if bind_error else {}),
            **({"startedAtMs": started_at} if started_at else {}),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Connection URLs
    # ─────────────────────────────────────────────────────────────────────────

    def _base_url(self, scheme: str) -> str:
        with self._lock:
            listening = self._server is not None
            port = self.port
        if not listening or port is None:
            raise RelayError("Relay server is not listening")
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{scheme}://{host}:{port}"

    def extension_connection_url(self) -> str:
        return f"{self._base_url('ws')}{EXTENSION_PATH}?{TOKEN_PARAM}={self._extension_token}"

    def client_connection_url(self) -> str:
        return f"{self._base_url('ws')}{CLIENT_PATH}?{TOKEN_PARAM}={self._client_token}"

    def connect_page_url(self) -> str:
        relay_url = quote(self.extension_connection_url(), safe="")
        return f"{self._base_url('http')}{CONNECT_PATH}?{RELAY_URL_PARAM}={relay_url}"

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (async)
    # ─────────────────────────────────────────────────────────────────────────

    def _bind_host(self) -> str:
        # "localhost" may resolve to both stacks; with port 0 that would yield two ports.
        return "127.0.0.1" if self.host == "localhost" else self.host

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        loop = asyncio.get_running_loop()
        shutdown = asyncio.Event()
        try:
            server = await websockets.serve(
                self._handler,
                self._bind_host(),
                0,
                process_request=self._process_request,
                max_size=self.config.max_frame_bytes,
                ping_interval=None,
            )
        except OSError as exc:
            with self._lock:
                self._bind_error = str(exc)
            _LOGGER.error("relay bind failed on %s: %s", self.host, exc)
            self._ready.set()
            return

        port = int(server.sockets[0].getsockname()[1])
        with self._lock:
            self._loop = loop
            self._shutdown = shutdown
            self._server = server
            self.port = port
            self._started_at_ms = _now_ms()
        _LOGGER.info("relay listening on %s:%s", self.host, port)
        self._ready.set()

        try:
            await shutdown.wait()
        finally:
            await self._shutdown_async()

    async def _shutdown_async(self) -> None:
        with self._lock:
            server = self._server
            sockets = [ws for ws in (self._extension_ws, self._client_ws) if ws is not None]
            self._server = None
            self._extension_ws = None
            self._client_ws = None
            self._loop = None
            self._shutdown = None

        for ws in sockets:
            with contextlib.suppress(Exception):
                await ws.close(code=1001, reason=SHUTDOWN_REASON)
        if server is not None:
            server.close()
            with contextlib.suppress(Exception):
                await server.wait_closed()
        _LOGGER.info("relay closed")

    async def _handler(self, ws: Any) -> None:
        path, token = _split_request_target(ws.request.path)
        if path == EXTENSION_PATH:
            expected = self._extension_token
        elif path == CLIENT_PATH:
            expected = self._client_token
        else:
            await self._reject(ws, INVALID_PATH_REASON, path=path)
            return

        if not expected.matches(token):
            await self._reject(ws, INVALID_TOKEN_REASON, path=path)
            return

        if path == EXTENSION_PATH:
            await self._serve_extension(ws)
        else:
            await self._serve_client(ws)

    async def _reject(self, ws: Any, reason: str, *, path: str) -> None:
        with self._lock:
            self._rejected += 1
        _LOGGER.warning("relay connection rejected: %s (path=%s)", reason, path)
        with contextlib.suppress(Exception):
            await ws.close(code=AUTH_FAILURE_CLOSE_CODE, reason=reason)

    async def _claim(self, role: str, ws: Any, reason: str) -> None:
        """Make `ws` the sole socket for its role, closing whoever held the slot first."""
        slot = f"_{role}_ws"
        while True:
            with self._lock:
                previous = getattr(self, slot)
                if previous is None or previous is ws or previous.state is State.CLOSED:
                    setattr(self, slot, ws)
                    return
            _LOGGER.info("closing previous %s connection", role)
            with contextlib.suppress(Exception):
                await previous.close(code=1000, reason=reason)
            if previous.state is not State.CLOSED:
                with self._lock:
                    if getattr(self, slot) is previous:
                        setattr(self, slot, ws)
                        return

    def _release(self, slot: str, ws: Any) -> None:
        with self._lock:
            if getattr(self, slot) is ws:
                setattr(self, slot, None)

    async def _serve_extension(self, ws: Any) -> None:
        await self._claim("extension", ws, EXTENSION_SUPERSEDED_REASON)
        self._extension_seen.set()
        _LOGGER.info("extension connected")
        try:
            async for frame in ws:
                with self._lock:
                    client = self._client_ws
                if not _is_open(client):
                    _LOGGER.debug("dropping extension frame: no client connected")
                    continue
                try:
                    await client.send(frame)
                except ConnectionClosed:
                    _LOGGER.debug("dropping extension frame: client closed mid-send")
        except ConnectionClosed as exc:
            _LOGGER.info("extension connection lost: %s", exc)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("extension socket error: %s", exc)
        finally:
            self._release("_extension_ws", ws)
            _LOGGER.info("extension disconnected")

    async def _serve_client(self, ws: Any) -> None:
        await self._claim("client", ws, CLIENT_SUPERSEDED_REASON)
        _LOGGER.info("client connected")
        try:
            async for frame in ws:
                with self._lock:
                    ext = self._extension_ws
                delivered = False
                if _is_open(ext):
                    try:
                        await ext.send(frame)
                        delivered = True
                    except ConnectionClosed:
                        delivered = False
                if not delivered:
                    _LOGGER.warning("client frame with no extension connected; closing client")
                    with contextlib.suppress(Exception):
                        await ws.close(code=AUTH_FAILURE_CLOSE_CODE, reason=NO_EXTENSION_REASON)
                    break
        except ConnectionClosed as exc:
            _LOGGER.info("client connection lost: %s", exc)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("client socket error: %s", exc)
        finally:
            self._release("_client_ws", ws)
            _LOGGER.info("client disconnected")

    # ─────────────────────────────────────────────────────────────────────────
    # Plain HTTP on the relay port
    # ─────────────────────────────────────────────────────────────────────────

    def _http_response(self, status: int, reason: str, content_type: str, body: bytes) -> Response:
        headers = Headers()
        headers["Content-Type"] = content_type
        headers["Content-Length"] = str(len(body))
        headers["Cache-Control"] = "no-store"
        return Response(status, reason, headers, body)

    def _process_request(self, _conn: Any, request: Any) -> Response | None:
        """Answer plain HTTP probes; let WebSocket upgrades through untouched."""
        try:
            upgrade = str(request.headers.get("Upgrade") or "").lower()
        except Exception:  # noqa: BLE001
            upgrade = ""
        if upgrade == "websocket":
            return None

        path = urlsplit(str(getattr(request, "path", "") or "/")).path
        if path == CONNECT_PATH:
            return self._http_response(200, "OK", "text/html; charset=utf-8", _CONNECT_PAGE.encode("utf-8"))
        if path == STATUS_PATH:
            payload = {
                "type": "extensionRelay",
                "pid": int(os.getpid()),
                **self.status(),
            }
            body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
            return self._http_response(200, "OK", "application/json", body)
        return self._http_response(404, "Not Found", "text/plain", b"not found")


__all__ = [
    "CLIENT_SUPERSEDED_REASON",
    "EXTENSION_SUPERSEDED_REASON",
    "INVALID_PATH_REASON",
    "INVALID_TOKEN_REASON",
    "NO_EXTENSION_REASON",
    "CdpRelayServer",
    "RelayError",
]
