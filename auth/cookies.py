"""
auth/cookies.py -- Session cookie attributes derived from the base URL.

  secure:      only when the base URL is https. A plain-http deployment that
               asks for Secure cookies gets sessions the browser silently
               drops.
  domain:      omitted (host-only cookie) for localhost, loopback and IP
               literals; otherwise the base URL's hostname.
  name prefix: "__Host-" requires Secure, Path=/ and no Domain, so it is only
               used in exactly that combination. "__Secure-" otherwise when
               secure.

The cookie itself is always httpOnly, SameSite=Lax, Path=/.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from urllib.parse import urlsplit

SESSION_COOKIE = "gatehouse.session-token"

HOST_PREFIX = "__Host-"
SECURE_PREFIX = "__Secure-"

_LOCAL_HOSTNAMES = {"localhost", "localhost.localdomain"}


@dataclass(frozen=True)
class CookiePolicy:
    domain: str | None
    secure: bool
    name_prefix: str = ""

    def cookie_name(self, base: str = SESSION_COOKIE) -> str:
        return f"{self.name_prefix}{base}"


def _is_host_only(hostname: str) -> bool:
    if hostname in _LOCAL_HOSTNAMES or hostname.endswith(".localhost"):
        return True
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    # Any IP literal, loopback or not, cannot carry a Domain attribute.
    return True


def resolve_cookie_policy(base_url: str) -> CookiePolicy:
    parts = urlsplit(base_url)
    secure = parts.scheme.lower() == "https"
    hostname = (parts.hostname or "").lower()
    domain = None if not hostname or _is_host_only(hostname) else hostname

    if secure and domain is None:
        prefix = HOST_PREFIX
    elif secure:
        prefix = SECURE_PREFIX
    else:
        prefix = ""
    return CookiePolicy(domain=domain, secure=secure, name_prefix=prefix)


def set_session_cookie(response, token: str, policy: CookiePolicy, max_age: int) -> None:
    """Write the session token cookie. max_age should match the token expiry."""
    response.set_cookie(
        policy.cookie_name(),
        value=token,
        max_age=max_age,
        path="/",
        domain=policy.domain,
        secure=policy.secure,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response, policy: CookiePolicy) -> None:
    response.delete_cookie(
        policy.cookie_name(),
        path="/",
        domain=policy.domain,
        secure=policy.secure,
        httponly=True,
        samesite="lax",
    )
