from __future__ import annotations

import json
import socket
import time
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websocket


class CdpClientError(Exception):
    pass


def _is_timeout(exc: Exception) -> bool:
    return isinstance(exc, (TimeoutError, websocket.WebSocketTimeoutException)) or "timed out" in str(exc).lower()


class RelayCdpClient:
    """Synchronous CDP connection to the relay's client endpoint.

    Commands carry an optional session id so callers can address the session the
    extension announced in Target.attachedToTarget.
    """

    def __init__(self, ws_url: str, timeout: float = 5.0) -> None:
        try:
            self.ws = websocket.create_connection(ws_url, timeout=timeout)
        except Exception as exc:  # noqa: BLE001
            raise CdpClientError(f"connect failed: {exc}") from exc
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1
        # Events that arrive while waiting for a response are kept for later waits.
        self._event_queue: list[dict[str, Any]] = []
        self._max_event_queue = 2000
        self._event_sink: Callable[[dict[str, Any]], None] | None = None

    def set_event_sink(self, sink: Callable[[dict[str, Any]], None] | None) -> None:
        self._event_sink = sink

    def _push_event(self, event: dict[str, Any]) -> None:
        sink = self._event_sink
        if sink is not None:
            with suppress(Exception):
                sink(event)

        self._event_queue.append(event)
        if len(self._event_queue) > self._max_event_queue:
            del self._event_queue[: len(self._event_queue) - self._max_event_queue]

    def events(self) -> list[dict[str, Any]]:
        return list(self._event_queue)

    def pop_event(self, event_name: str) -> dict[str, Any] | None:
        """Pop the oldest queued event (full message) with the given method."""
        if not event_name:
            return None
        for i, ev in enumerate(self._event_queue):
            if ev.get("method") == event_name:
                return self._event_queue.pop(i)
        return None

    def send_raw(self, payload: dict[str, Any]) -> None:
        try:
            self.ws.send(json.dumps(payload))
        except Exception as exc:  # noqa: BLE001
            raise CdpClientError(str(exc)) from exc

    def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        """Send a CDP command and wait for its response."""
        msg_id = self._next_id
        self._next_id += 1

        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params is not None:
            msg["params"] = params
        if session_id is not None:
            msg["sessionId"] = session_id
        self.send_raw(msg)

        data = self.recv_response(msg_id)
        if "error" in data:
            raise CdpClientError(str(data["error"]))
        result = data.get("result")
        return result if isinstance(result, dict) else {}

    def recv_response(self, expected_id: int | str) -> dict[str, Any]:
        """Wait for the full response message with the given id, queueing events."""
        deadline = time.time() + self.timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise CdpClientError("CDP response timed out")

            data = self._recv_json(remaining)
            if data is None:
                continue

            if isinstance(data.get("method"), str) and "id" not in data:
                self._push_event(data)
                continue

            if data.get("id") == expected_id:
                return data

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None:
        """Wait for an event with the given method; returns the full message."""
        queued = self.pop_event(event_name)
        if queued is not None:
            return queued

        deadline = time.time() + timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            data = self._recv_json(remaining)
            if data is None:
                continue
            if isinstance(data.get("method"), str) and "id" not in data:
                if data.get("method") == event_name:
                    sink = self._event_sink
                    if sink is not None:
                        with suppress(Exception):
                            sink(data)
                    return data
                self._push_event(data)

    def _recv_json(self, remaining: float) -> dict[str, Any] | None:
        # Keep the socket timeout short so the caller's deadline is enforced reliably.
        try:
            self.ws.settimeout(min(0.5, remaining))
            raw = self.ws.recv()
        except Exception as exc:  # noqa: BLE001
            if _is_timeout(exc):
                return None
            raise CdpClientError(str(exc)) from exc

        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def close(self) -> None:
        with suppress(Exception):
            self.ws.close()

    def abort(self) -> None:
        """Hard break of the underlying socket, for callers that cannot wait on a close handshake."""
        sock = getattr(self.ws, "sock", None)
        if sock is not None:
            with suppress(Exception):
                sock.shutdown(socket.SHUT_RDWR)
            with suppress(Exception):
                sock.close()


__all__ = ["CdpClientError", "RelayCdpClient"]
