from __future__ import annotations

import os
from dataclasses import dataclass

from .protocol import PINNED_PROTOCOL_VERSION

LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})

DEFAULT_CONSENT_PAGE_URL = "chrome-extension://extension-relay/connect.html"
DEFAULT_SUCCESS_PAGE_URL = "chrome-extension://extension-relay/connected.html"
DEFAULT_PRODUCT = "Chrome/Extension-Bridge"
DEFAULT_USER_AGENT = "CDP-Bridge-Server/1.0.0"


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    try:
        val = int(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def normalize_host(raw: str | None) -> str:
    host = (raw or "").strip().lower()
    if host in LOOPBACK_HOSTS:
        return host
    return "127.0.0.1"


@dataclass
class RelayConfig:
    host: str = "127.0.0.1"
    start_timeout: float = 5.0
    connect_timeout: float = 120.0
    max_frame_bytes: int = 64 * 1024 * 1024

    @classmethod
    def from_env(cls) -> RelayConfig:
        return cls(
            host=normalize_host(os.environ.get("MCP_RELAY_HOST")),
            start_timeout=_float_env("MCP_RELAY_START_TIMEOUT", default=5.0, lo=0.1, hi=60.0),
            connect_timeout=_float_env("MCP_RELAY_CONNECT_TIMEOUT", default=120.0, lo=1.0, hi=3600.0),
            max_frame_bytes=_int_env(
                "MCP_RELAY_MAX_FRAME_BYTES", default=64 * 1024 * 1024, lo=1024 * 1024, hi=512 * 1024 * 1024
            ),
        )


@dataclass
class AdapterConfig:
    consent_page_url: str = DEFAULT_CONSENT_PAGE_URL
    success_page_url: str = DEFAULT_SUCCESS_PAGE_URL
    uplink_timeout: float = 5.0
    protocol_version: str = PINNED_PROTOCOL_VERSION
    product: str = DEFAULT_PRODUCT
    user_agent: str = DEFAULT_USER_AGENT
    max_frame_bytes: int = 64 * 1024 * 1024

    @classmethod
    def from_env(cls) -> AdapterConfig:
        return cls(
            consent_page_url=(os.environ.get("MCP_RELAY_CONSENT_PAGE") or "").strip() or DEFAULT_CONSENT_PAGE_URL,
            success_page_url=(os.environ.get("MCP_RELAY_SUCCESS_PAGE") or "").strip() or DEFAULT_SUCCESS_PAGE_URL,
            uplink_timeout=_float_env("MCP_RELAY_UPLINK_TIMEOUT", default=5.0, lo=0.1, hi=120.0),
            product=(os.environ.get("MCP_RELAY_PRODUCT") or "").strip() or DEFAULT_PRODUCT,
            user_agent=(os.environ.get("MCP_RELAY_USER_AGENT") or "").strip() or DEFAULT_USER_AGENT,
            max_frame_bytes=_int_env(
                "MCP_RELAY_MAX_FRAME_BYTES", default=64 * 1024 * 1024, lo=1024 * 1024, hi=512 * 1024 * 1024
            ),
        )


__all__ = ["AdapterConfig", "LOOPBACK_HOSTS", "RelayConfig", "normalize_host"]
