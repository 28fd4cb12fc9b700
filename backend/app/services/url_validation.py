"""
URL validation and fetching with SSRF protection.

Product file URLs come from stored product rows, which sellers influence, so
every outbound fetch goes through ``validate_safe_url`` first:

  1. malformed URL                         -> InvalidFormat
  2. scheme other than http/https          -> UnsupportedScheme
  3. literal loopback host                 -> BlockedHost
  4. private / link-local IP literal       -> PrivateAddress
  5. host outside a non-empty allow-list   -> HostNotAllowlisted

Validation never touches the network. ``safe_fetch`` only issues a request
once validation has passed, does not let httpx follow redirects on its own,
and re-validates every redirect target before following it.
"""

import asyncio
import ipaddress
import logging
import re
from enum import Enum
from typing import Iterable, Optional, Union
from urllib.parse import urljoin, urlparse, urlunparse

import httpx

from app.config import get_fetch_timeout

logger = logging.getLogger(__name__)

DEFAULT_MAX_REDIRECTS = 5

_ALLOWED_SCHEMES = ("http", "https")

# Literal loopback spellings; bracketed and zero-expanded IPv6 forms are
# caught by the ip_address comparison in _is_loopback_literal.
_BLOCKED_HOSTNAMES = {"localhost", "127.0.0.1", "0.0.0.0", "::1", "::"}

_LOOPBACK_ADDRESSES = {
    ipaddress.ip_address("127.0.0.1"),
    ipaddress.ip_address("0.0.0.0"),
    ipaddress.ip_address("::1"),
    ipaddress.ip_address("::"),
}

_PRIVATE_V4_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
]

_PRIVATE_V6_NETWORKS = [
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_IPV4_PART = re.compile(r"0x[0-9a-f]*|[0-9]+")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class UrlValidationReason(str, Enum):
    INVALID_FORMAT = "InvalidFormat"
    UNSUPPORTED_SCHEME = "UnsupportedScheme"
    BLOCKED_HOST = "BlockedHost"
    PRIVATE_ADDRESS = "PrivateAddress"
    HOST_NOT_ALLOWLISTED = "HostNotAllowlisted"


_REASON_MESSAGES = {
    UrlValidationReason.INVALID_FORMAT: "Invalid URL format",
    UrlValidationReason.UNSUPPORTED_SCHEME: "Only HTTP and HTTPS protocols are allowed",
    UrlValidationReason.BLOCKED_HOST: "Localhost and local IP addresses are not allowed",
    UrlValidationReason.PRIVATE_ADDRESS: "Private IP addresses are not allowed",
    UrlValidationReason.HOST_NOT_ALLOWLISTED: "URL hostname is not in the allow-list",
}


class UrlValidationError(ValueError):
    """Raised when a URL fails SSRF validation. No request has been made."""

    def __init__(self, url: str, reason: UrlValidationReason, detail: Optional[str] = None):
        self.url = url
        self.reason = reason
        message = detail or _REASON_MESSAGES[reason]
        super().__init__(f"URL validation failed [{reason.value}]: {message}")


class FetchError(Exception):
    """Network failure, non-2xx status, oversize body or timeout."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def redact_url(url: str) -> str:
    """Drop query string and fragment so signed-URL tokens stay out of logs."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "<unparsable url>"
    return urlunparse((parsed.scheme, parsed.netloc, parsed.path, "", "", ""))


def _parse_ip_literal(host: str) -> Optional[IPAddress]:
    """
    Return the IP address a hostname spells, or None for a DNS name.

    Besides canonical dotted-quad and IPv6, accepts the legacy IPv4 spellings
    that browsers and inet_aton resolve: shortened (``127.1``), decimal
    integer (``2130706433``), hex (``0x7f000001``) and octal (``0177.0.0.1``).
    """
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    return _parse_legacy_ipv4(host)


def _parse_legacy_ipv4(host: str) -> Optional[ipaddress.IPv4Address]:
    parts = host.split(".")
    if not 1 <= len(parts) <= 4 or not all(_IPV4_PART.fullmatch(p) for p in parts):
        return None

    numbers = []
    for part in parts:
        if part.startswith("0x"):
            numbers.append(int(part[2:] or "0", 16))
        elif len(part) > 1 and part.startswith("0"):
            try:
                numbers.append(int(part, 8))
            except ValueError:
                return None
        else:
            numbers.append(int(part))

    # The last part fills all remaining low-order bytes
    *leading, last = numbers
    if any(n > 0xFF for n in leading) or last >= 1 << (8 * (4 - len(leading))):
        return None
    value = last
    for index, number in enumerate(leading):
        value |= number << (8 * (3 - index))
    return ipaddress.IPv4Address(value)


def _is_loopback_literal(host: str, address: Optional[IPAddress]) -> bool:
    if host in _BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return True
    if address is None:
        return False
    if address in _LOOPBACK_ADDRESSES:
        return True
    mapped = getattr(address, "ipv4_mapped", None)
    return mapped is not None and mapped in _LOOPBACK_ADDRESSES


def _is_private_address(address: Optional[IPAddress]) -> bool:
    if address is None:
        return False
    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        else:
            return any(address in net for net in _PRIVATE_V6_NETWORKS)
    return any(address in net for net in _PRIVATE_V4_NETWORKS)


def host_matches_allowlist(hostname: str, allowed_hosts: Iterable[str]) -> bool:
    """
    Return True if hostname equals an entry or matches a ``*.base`` entry.

    ``*.supabase.co`` matches ``supabase.co`` and ``abc123.supabase.co`` but
    not ``evilsupabase.co``.
    """
    hostname = hostname.lower().rstrip(".")
    for pattern in allowed_hosts:
        pattern = pattern.strip().lower().rstrip(".")
        if not pattern:
            continue
        if hostname == pattern:
            return True
        if pattern.startswith("*."):
            base = pattern[2:]
            if hostname == base or hostname.endswith("." + base):
                return True
    return False


def validate_safe_url(url: str, allowed_hosts: Optional[Iterable[str]] = None) -> None:
    """
    Validate that a URL is safe to fetch from.

    Args:
        url: The URL to validate.
        allowed_hosts: Optional host patterns (exact or ``*.base``). When
            empty or None any public host passes.

    Raises:
        UrlValidationError: on the first rule the URL violates.
    """
    if not url or not isinstance(url, str):
        raise UrlValidationError(
            str(url), UrlValidationReason.INVALID_FORMAT, "URL is required and must be a string"
        )

    try:
        parsed = urlparse(url.strip())
        hostname = parsed.hostname
        # Accessing .port validates it (raises ValueError when out of range)
        parsed.port
    except ValueError:
        raise UrlValidationError(url, UrlValidationReason.INVALID_FORMAT)

    if not parsed.scheme:
        raise UrlValidationError(url, UrlValidationReason.INVALID_FORMAT)

    if parsed.scheme.lower() not in _ALLOWED_SCHEMES:
        raise UrlValidationError(url, UrlValidationReason.UNSUPPORTED_SCHEME)

    if not hostname:
        raise UrlValidationError(url, UrlValidationReason.INVALID_FORMAT, "URL must include a hostname")

    host = hostname.lower().rstrip(".")
    address = _parse_ip_literal(host)

    if _is_loopback_literal(host, address):
        raise UrlValidationError(url, UrlValidationReason.BLOCKED_HOST)

    if _is_private_address(address):
        raise UrlValidationError(url, UrlValidationReason.PRIVATE_ADDRESS)

    allowed = [h for h in (allowed_hosts or []) if h and h.strip()]
    if allowed and not host_matches_allowlist(host, allowed):
        raise UrlValidationError(
            url,
            UrlValidationReason.HOST_NOT_ALLOWLISTED,
            f"URL hostname must be one of: {', '.join(allowed)}",
        )


def is_safe_url(url: str, allowed_hosts: Optional[Iterable[str]] = None) -> bool:
    try:
        validate_safe_url(url, allowed_hosts)
    except UrlValidationError:
        return False
    return True


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------

async def _get_with_validated_redirects(
    client: httpx.AsyncClient,
    url: str,
    allowed_hosts: Optional[list[str]],
    max_redirects: int,
    max_bytes: Optional[int],
) -> httpx.Response:
    current = url
    for _ in range(max_redirects + 1):
        request = client.build_request("GET", current)
        response = await client.send(request, stream=True, follow_redirects=False)
        try:
            if response.is_redirect:
                location = response.headers.get("location", "")
                target = urljoin(current, location)
                # Raises UrlValidationError before the next hop is requested
                validate_safe_url(target, allowed_hosts)
                logger.debug(f"Following redirect {redact_url(current)} -> {redact_url(target)}")
                current = target
                continue

            declared = response.headers.get("content-length")
            if max_bytes is not None and declared and declared.isdigit() and int(declared) > max_bytes:
                raise FetchError(
                    current,
                    f"Response too large: {declared} bytes (limit {max_bytes})",
                    response.status_code,
                )
            await response.aread()
            if max_bytes is not None and len(response.content) > max_bytes:
                raise FetchError(
                    current,
                    f"Response too large: {len(response.content)} bytes (limit {max_bytes})",
                    response.status_code,
                )
            return response
        finally:
            await response.aclose()

    raise FetchError(url, f"Too many redirects (limit {max_redirects})")


async def safe_fetch(
    url: str,
    allowed_hosts: Optional[Iterable[str]] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: Optional[float] = None,
    max_redirects: int = DEFAULT_MAX_REDIRECTS,
    max_bytes: Optional[int] = None,
) -> httpx.Response:
    """
    Validate and GET a URL with SSRF protection.

    The whole exchange, redirects included, is bounded by ``timeout``
    seconds (FETCH_TIMEOUT_SECONDS by default). The returned response has
    its body already read; its status is NOT checked here.

    Raises:
        UrlValidationError: the URL (or a redirect target) is unsafe.
        FetchError: network failure, timeout, oversize body or redirect loop.
    """
    allowed = list(allowed_hosts) if allowed_hosts else None
    validate_safe_url(url, allowed)

    if timeout is None:
        timeout = get_fetch_timeout()

    async def _run(active_client: httpx.AsyncClient) -> httpx.Response:
        return await _get_with_validated_redirects(
            active_client, url, allowed, max_redirects, max_bytes
        )

    try:
        if client is not None:
            return await asyncio.wait_for(_run(client), timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as owned:
            return await asyncio.wait_for(_run(owned), timeout=timeout)
    except asyncio.TimeoutError:
        raise FetchError(url, f"Timed out after {timeout:g}s")
    except httpx.TimeoutException as exc:
        raise FetchError(url, f"Timed out: {exc}") from exc
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise FetchError(url, f"Request failed: {exc}") from exc


async def fetch_bytes(
    url: str,
    allowed_hosts: Optional[Iterable[str]] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: Optional[float] = None,
    max_bytes: Optional[int] = None,
) -> bytes:
    """
    Fetch a URL through ``safe_fetch`` and return the body.

    Raises:
        UrlValidationError: the URL is unsafe.
        FetchError: anything else, including a non-2xx status.
    """
    response = await safe_fetch(
        url, allowed_hosts, client=client, timeout=timeout, max_bytes=max_bytes
    )
    if not response.is_success:
        raise FetchError(
            url,
            f"HTTP {response.status_code} {response.reason_phrase}".strip(),
            response.status_code,
        )
    return response.content
