"""Connect an automation client to a tab in the user's running browser.

The relay is started on demand, the connect page (carrying the relay's extension
URL) is opened in the user's browser, and the call blocks until the extension has
completed consent and attached. The returned URL is what the CDP client dials.
"""

from __future__ import annotations

import logging
import webbrowser
from collections.abc import Callable

from .relay import CdpRelayServer, RelayError

_LOGGER = logging.getLogger("mcp.extension_relay.connector")


def _open_in_browser(url: str) -> None:
    if not webbrowser.open(url):
        raise RelayError(f"Could not open a browser for {url}")


def connect_to_extension(
    relay: CdpRelayServer,
    open_url: Callable[[str], None] | None = None,
    *,
    timeout: float | None = None,
) -> str:
    relay.start()
    url = relay.connect_page_url()
    opener = open_url or _open_in_browser
    _LOGGER.info("opening relay connect page on port %s", relay.port)
    opener(url)

    wait = relay.config.connect_timeout if timeout is None else float(timeout)
    if not relay.wait_for_connection(timeout=wait):
        raise RelayError(
            f"Browser extension did not connect within {wait:.0f}s. "
            "Make sure the extension is installed and approve the connection in the opened tab."
        )
    _LOGGER.info("extension connected to relay")
    return relay.client_connection_url()


__all__ = ["connect_to_extension"]
