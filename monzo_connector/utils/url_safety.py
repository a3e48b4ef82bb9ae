"""
Callback URL checks - syntax, SSRF protection, and log redaction.

A callback host must be globally routable. Literal IPs are checked directly;
hostnames are resolved and every returned address must pass. Loopback,
private, link-local, reserved, CGNAT and multicast ranges are all refused.

DNS rebinding between this check and the actual request remains possible;
egress controls blocking internal ranges cover that case.
"""
import asyncio
import ipaddress
import logging
import re
import socket
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = frozenset({"http", "https"})
_BLOCKED_HOSTNAMES = frozenset({
    "localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback",
})

LOCAL_ADDRESS_REASON = "Callback URL targets a local or private address"
UNRESOLVED_REASON = "Callback URL host could not be resolved"

SENSITIVE_QUERY_PARAMS = frozenset({
    "token", "access_token", "refresh_token", "key", "api_key", "apikey",
    "secret", "client_secret", "auth", "password", "pwd", "signature", "sig",
})
REDACTED = "***"

_FALLBACK_REDACT = re.compile(
    r"([?&](?:" + "|".join(sorted(SENSITIVE_QUERY_PARAMS)) + r")=)[^&#]*",
    re.IGNORECASE,
)
_FALLBACK_USERINFO = re.compile(r"(//[^/?#@:]*:)[^/?#@]*@")


def is_valid_url(url: Optional[str]) -> bool:
    """Syntax check only: absolute http(s) URL with a host."""
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url.strip())
        # Accessing .port validates it
        parsed.port
    except ValueError:
        return False
    return parsed.scheme in _ALLOWED_SCHEMES and bool(parsed.hostname)


def _parse_ip(host: str):
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return ip


def is_public_ip(address: str) -> bool:
    """True only for globally routable unicast addresses. Unparseable is not public."""
    ip = _parse_ip(address)
    if ip is None:
        return False
    return ip.is_global and not ip.is_multicast


def is_local_address(hostname: str) -> bool:
    """True for local hostnames and for literal IPs that are not publicly routable."""
    host = hostname.strip("[]").lower().rstrip(".")
    if host in _BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return True
    if _parse_ip(host) is None:
        return False
    return not is_public_ip(host)


async def resolve_host(hostname: str) -> list[str]:
    """All addresses hostname resolves to. Raises OSError when resolution fails."""
    loop = asyncio.get_running_loop()
    addr_infos = await loop.run_in_executor(None, socket.getaddrinfo, hostname, None)
    return [addr_info[4][0] for addr_info in addr_infos]


async def validate_callback_url(url: str) -> Optional[str]:
    """
    Check a callback URL before any request is sent to it.
    Returns None when the URL is acceptable, otherwise a short reason.
    """
    if not is_valid_url(url):
        return "Invalid callback URL format"

    hostname = urlparse(url.strip()).hostname or ""
    if is_local_address(hostname):
        logger.warning("Rejected local callback URL host=%s", hostname)
        return LOCAL_ADDRESS_REASON
    if _parse_ip(hostname.strip("[]")) is not None:
        return None

    try:
        addresses = await resolve_host(hostname)
    except (OSError, UnicodeError) as e:
        logger.warning("Callback host did not resolve host=%s: %s", hostname, str(e))
        return UNRESOLVED_REASON
    if not addresses:
        return UNRESOLVED_REASON

    for address in addresses:
        if not is_public_ip(address):
            logger.warning("Rejected callback URL host=%s resolving to %s", hostname, address)
            return LOCAL_ADDRESS_REASON
    return None


def sanitize_url(url: str) -> str:
    """Mask a userinfo password and sensitive query parameters so the URL is safe to log."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.query and not parsed.password:
            return url
        if parsed.password:
            userinfo, _, hostport = parsed.netloc.rpartition("@")
            username = userinfo.partition(":")[0]
            parsed = parsed._replace(netloc=f"{username}:{REDACTED}@{hostport}")
        if parsed.query:
            pairs = parse_qsl(parsed.query, keep_blank_values=True)
            masked = [
                (k, REDACTED if k.lower() in SENSITIVE_QUERY_PARAMS else v)
                for k, v in pairs
            ]
            parsed = parsed._replace(query=urlencode(masked, safe="*"))
        return urlunparse(parsed)
    except ValueError:
        url = _FALLBACK_USERINFO.sub(r"\1" + REDACTED + "@", url)
        return _FALLBACK_REDACT.sub(r"\1" + REDACTED, url)
