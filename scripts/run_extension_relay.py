#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[relay] host={os.environ.get('MCP_RELAY_HOST', '127.0.0.1')} | "
    f"open_browser={os.environ.get('MCP_RELAY_OPEN_BROWSER', '0')} | "
    f"log_level={os.environ.get('MCP_RELAY_LOG_LEVEL', 'INFO')}",
    file=sys.stderr,
)

from mcp_servers.extension_relay.main import main  # noqa: E402

if __name__ == "__main__":
    main()
