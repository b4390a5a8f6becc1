"""
core/base_url.py -- Work out the externally reachable base URL.

The cookie policy and the redirect check both need to know which origin the
browser sees. Strategies are tried in order; the first one that produces a
valid http(s) URL wins:

  1. from_config             APP_BASE_URL, PUBLIC_APP_URL, VERCEL_URL,
                             RAILWAY_PUBLIC_DOMAIN
  2. from_proxy_headers      X-Forwarded-Proto + X-Forwarded-Host (or Host)
  3. from_network_interface  first non-internal IPv4 of this machine;
                             https in production
  4. localhost_default       http://localhost:<PORT>

Every strategy returns str | None and never raises. Trailing slashes are
stripped so callers can append paths.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from collections.abc import Callable, Mapping
from urllib.parse import urlsplit

from core.config import Settings

logger = logging.getLogger("gatehouse.config")

Strategy = Callable[[Settings, Mapping[str, str] | None], "str | None"]

# Target for the interface probe. connect() on a UDP socket only selects a
# route; nothing is sent.
_PROBE_ADDRESS = ("192.0.2.1", 80)


def _normalize(candidate: str | None, default_scheme: str = "https") -> str | None:
    if not candidate:
        return None
    candidate = candidate.strip().rstrip("/")
    if "://" not in candidate:
        candidate = f"{default_scheme}://{candidate}"
    try:
        parts = urlsplit(candidate)
        parts.port  # noqa: B018 -- raises ValueError on a bad port
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    return candidate


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def from_config(settings: Settings, headers: Mapping[str, str] | None = None) -> str | None:
    for value in (settings.app_base_url, settings.public_app_url):
        url = _normalize(value)
        if url:
            return url
    # Platform-provided hostnames come without a scheme.
    for value in (settings.vercel_url, settings.railway_public_domain):
        url = _normalize(value, default_scheme="https")
        if url:
            return url
    return None


def from_proxy_headers(settings: Settings, headers: Mapping[str, str] | None = None) -> str | None:
    if not headers:
        return None
    host = headers.get("x-forwarded-host") or headers.get("host")
    if not host:
        return None
    # Proxies may append their own values: "a.example.com, internal:8080".
    host = host.split(",")[0].strip()
    proto = (headers.get("x-forwarded-proto") or "http").split(",")[0].strip().lower()
    return _normalize(f"{proto}://{host}")


def _local_ipv4() -> str | None:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(_PROBE_ADDRESS)
            address = sock.getsockname()[0]
    except OSError:
        return None
    ip = ipaddress.ip_address(address)
    if ip.is_loopback or ip.is_link_local or ip.is_unspecified:
        return None
    return address


def from_network_interface(settings: Settings, headers: Mapping[str, str] | None = None) -> str | None:
    address = _local_ipv4()
    if address is None:
        return None
    scheme = "https" if settings.is_production else "http"
    return f"{scheme}://{address}:{settings.port}"


def localhost_default(settings: Settings, headers: Mapping[str, str] | None = None) -> str | None:
    return f"http://localhost:{settings.port}"


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    from_config,
    from_proxy_headers,
    from_network_interface,
    localhost_default,
)


def resolve_base_url(
    settings: Settings,
    headers: Mapping[str, str] | None = None,
    strategies: tuple[Strategy, ...] = DEFAULT_STRATEGIES,
) -> str:
    for strategy in strategies:
        url = strategy(settings, headers)
        if url:
            logger.debug("Base URL %s (via %s)", url, strategy.__name__)
            return url
    return f"http://localhost:{settings.port}"
