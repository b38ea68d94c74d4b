"""
Extension CDP relay service.

Runs the relay as a long-lived background process and prints the connection
URLs as one JSON line on stdout. With MCP_RELAY_OPEN_BROWSER=1 it also opens the
connect page in the user's browser and reports when the extension has attached.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
import threading
from typing import Any

from .config import RelayConfig
from .connector import connect_to_extension
from .relay import CdpRelayServer, RelayError

logging.basicConfig(
    level=getattr(logging, (os.environ.get("MCP_RELAY_LOG_LEVEL") or "INFO").strip().upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("mcp.extension_relay")


def _bool_env(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", ""}


def _write_line(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def main() -> None:
    relay = CdpRelayServer(config=RelayConfig.from_env())
    try:
        relay.start()
    except RelayError as exc:
        logger.error("relay_start_failed: %s", exc)
        sys.exit(1)

    _write_line(
        {
            "type": "relayReady",
            "clientUrl": relay.client_connection_url(),
            "connectUrl": relay.connect_page_url(),
            "port": relay.port,
        }
    )

    stop = threading.Event()

    def _on_signal(signum: int, _frame: Any) -> None:
        logger.info("signal %s received, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    if _bool_env("MCP_RELAY_OPEN_BROWSER", default=False):
        try:
            client_url = connect_to_extension(relay)
            _write_line({"type": "extensionConnected", "clientUrl": client_url})
        except RelayError as exc:
            # The relay keeps serving; the extension may still connect later.
            logger.error("extension_connect_failed: %s", exc)

    try:
        while not stop.wait(timeout=1.0):
            pass
    finally:
        relay.close()


if __name__ == "__main__":
    main()
