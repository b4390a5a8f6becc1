"""
auth/redirects.py -- Post-login redirect target validation.

Rules, in order:
  - Empty target            -> the default landing path.
  - Server-local path "/x"  -> unchanged.
  - Absolute URL            -> compared by origin (scheme, host, port) with
                               the base URL. Same origin collapses to
                               path?query#fragment. A different origin,
                               including non-http schemes such as
                               "myapp://callback", is returned verbatim
                               (see DESIGN.md).
  - No scheme at all        -> treated as a relative path and given a
                               leading "/", e.g. "dashboard".

"//host" and "/\\host" look like paths but browsers follow them off-site,
so they go through the origin comparison instead of the path shortcut.
"""

from __future__ import annotations

import logging
from urllib.parse import SplitResult, urljoin, urlsplit

logger = logging.getLogger("gatehouse.auth")

FALLBACK_BASE_URL = "http://localhost:3000"
DEFAULT_LANDING = "/dashboard"

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _origin(parts: SplitResult) -> tuple[str, str, int | None]:
    scheme = parts.scheme.lower()
    return scheme, (parts.hostname or "").lower(), parts.port or _DEFAULT_PORTS.get(scheme)


def _is_absolute_http(parts: SplitResult) -> bool:
    return parts.scheme.lower() in _DEFAULT_PORTS and bool(parts.hostname)


def _validated_base(base_url: str | None) -> SplitResult:
    if base_url:
        try:
            parts = urlsplit(base_url.strip())
            # _origin() reads .port, which raises ValueError on a bad port.
            if _is_absolute_http(parts) and _origin(parts):
                return parts
        except ValueError:
            pass
        logger.warning("Invalid base URL %r; using %s for redirect checks", base_url, FALLBACK_BASE_URL)
    return urlsplit(FALLBACK_BASE_URL)


def _local_path(parts: SplitResult) -> str:
    result = parts.path or "/"
    if parts.query:
        result += f"?{parts.query}"
    if parts.fragment:
        result += f"#{parts.fragment}"
    return result


def sanitize_redirect(target: str | None, base_url: str | None, default: str = DEFAULT_LANDING) -> str:
    """Return a redirect target that is safe to hand back after login."""
    if not target or not target.strip():
        return default
    target = target.strip()
    if target.startswith("/") and not target.startswith(("//", "/\\")):
        return target

    base = _validated_base(base_url)
    try:
        if target.startswith(("//", "/\\")):
            parts = urlsplit(urljoin(base.geturl(), target.replace("\\", "/")))
        else:
            parts = urlsplit(target)
        if not parts.scheme:
            return f"/{target}"
        if not _is_absolute_http(parts):
            # Custom and non-http schemes are never same-origin.
            return target
        if _origin(parts) == _origin(base):
            return _local_path(parts)
    except ValueError:
        logger.warning("Unparseable redirect target; using default")
        return default
    return target
