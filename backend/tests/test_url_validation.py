"""
Unit tests for SSRF-safe URL validation and fetching.

No real network access: fetches go through httpx.MockTransport and every
test counts the requests that actually reached the transport.
"""

import asyncio
import os

import httpx
import pytest

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")

from app.services.url_validation import (
    FetchError,
    UrlValidationError,
    UrlValidationReason,
    fetch_bytes,
    host_matches_allowlist,
    is_safe_url,
    redact_url,
    safe_fetch,
    validate_safe_url,
)

STORAGE_HOSTS = ["*.supabase.co"]


def _reason(url, allowed_hosts=None) -> UrlValidationReason:
    with pytest.raises(UrlValidationError) as exc_info:
        validate_safe_url(url, allowed_hosts)
    return exc_info.value.reason


class _CountingTransport(httpx.MockTransport):
    """MockTransport that records every request it receives."""

    def __init__(self, handler):
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request):
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)


def _client(handler) -> tuple[httpx.AsyncClient, _CountingTransport]:
    transport = _CountingTransport(handler)
    return httpx.AsyncClient(transport=transport), transport


# ---------------------------------------------------------------------------
# validate_safe_url
# ---------------------------------------------------------------------------

class TestInvalidFormat:

    @pytest.mark.parametrize("url", ["", "not a url", "//no-scheme.example.com/a.pdf", "http://[::1"])
    def test_malformed_urls(self, url):
        assert _reason(url) == UrlValidationReason.INVALID_FORMAT

    def test_none_is_invalid_format(self):
        assert _reason(None) == UrlValidationReason.INVALID_FORMAT

    def test_missing_hostname(self):
        assert _reason("https:///pattern.pdf") == UrlValidationReason.INVALID_FORMAT

    def test_out_of_range_port(self):
        assert _reason("https://x.supabase.co:99999/a.pdf") == UrlValidationReason.INVALID_FORMAT


class TestUnsupportedScheme:

    @pytest.mark.parametrize("url", [
        "ftp://x.supabase.co/pattern.pdf",
        "file:///etc/passwd",
        "gopher://example.com/",
        "javascript:alert(1)",
    ])
    def test_non_http_schemes(self, url):
        assert _reason(url) == UrlValidationReason.UNSUPPORTED_SCHEME

    def test_uppercase_https_is_accepted(self):
        validate_safe_url("HTTPS://example.com/pattern.pdf")


class TestBlockedHost:

    @pytest.mark.parametrize("url", [
        "http://localhost/",
        "http://LOCALHOST:8080/admin",
        "http://api.localhost/",
        "http://127.0.0.1/",
        "http://0.0.0.0/",
        "http://[::1]/",
        "http://[0:0:0:0:0:0:0:1]/",
        "http://[::]/",
        "http://[::ffff:127.0.0.1]/",
        "http://2130706433/",
        "http://127.1/",
        "http://0x7f000001/",
        "http://0X7F000001/",
        "http://0177.0.0.1/",
        "http://0x7f.0.0.1/",
        "http://0/",
    ])
    def test_loopback_spellings(self, url):
        assert _reason(url) == UrlValidationReason.BLOCKED_HOST

    def test_loopback_checked_before_allowlist(self):
        assert _reason("http://localhost/", ["localhost"]) == UrlValidationReason.BLOCKED_HOST


class TestPrivateAddress:

    @pytest.mark.parametrize("url", [
        "http://10.0.0.5/file.pdf",
        "http://172.16.0.1/",
        "http://172.31.255.255/",
        "http://192.168.1.10/",
        "http://169.254.169.254/latest/meta-data/",
        "http://127.0.0.2/",
        "http://[fd00::1]/",
        "http://[fe80::1]/",
        "http://[::ffff:192.168.1.1]/",
        "http://10.1/",
        "http://0xa9fea9fe/latest/meta-data/",
        "http://0251.0376.0251.0376/",
        "http://192.168.257/",
        "http://0x7f.1.2/",
    ])
    def test_private_ranges(self, url):
        assert _reason(url) == UrlValidationReason.PRIVATE_ADDRESS

    @pytest.mark.parametrize("url", [
        "http://172.15.0.1/",
        "http://172.32.0.1/",
        "http://8.8.8.8/",
        "http://[2001:4860:4860::8888]/",
    ])
    def test_public_addresses_pass_without_allowlist(self, url):
        validate_safe_url(url)


class TestAllowlist:

    def test_subdomain_matches_wildcard(self):
        validate_safe_url("https://abc123.supabase.co/storage/v1/object/a.pdf", STORAGE_HOSTS)

    def test_base_domain_matches_wildcard(self):
        validate_safe_url("https://supabase.co/a.pdf", STORAGE_HOSTS)

    @pytest.mark.parametrize("url", [
        "https://evilsupabase.co/a.pdf",
        "https://supabase.co.evil.com/a.pdf",
        "https://example.com/a.pdf",
    ])
    def test_other_hosts_rejected(self, url):
        assert _reason(url, STORAGE_HOSTS) == UrlValidationReason.HOST_NOT_ALLOWLISTED

    def test_exact_entry(self):
        assert host_matches_allowlist("cdn.example.com", ["cdn.example.com"])
        assert not host_matches_allowlist("img.cdn.example.com", ["cdn.example.com"])

    def test_matching_is_case_insensitive(self):
        assert host_matches_allowlist("ABC.Supabase.CO", ["*.SUPABASE.co"])

    def test_empty_allowlist_allows_any_public_host(self):
        validate_safe_url("https://example.com/a.pdf", [])
        validate_safe_url("https://example.com/a.pdf", None)


class TestHelpers:

    def test_is_safe_url(self):
        assert is_safe_url("https://x.supabase.co/a.pdf", STORAGE_HOSTS) is True
        assert is_safe_url("http://127.0.0.1/", STORAGE_HOSTS) is False

    def test_error_message_carries_reason_code(self):
        with pytest.raises(UrlValidationError) as exc_info:
            validate_safe_url("http://10.1.2.3/")
        assert "[PrivateAddress]" in str(exc_info.value)
        assert exc_info.value.url == "http://10.1.2.3/"

    def test_redact_url_drops_query_and_fragment(self):
        url = "https://x.supabase.co/storage/v1/object/sign/a.pdf?token=secret#frag"
        assert redact_url(url) == "https://x.supabase.co/storage/v1/object/sign/a.pdf"


# ---------------------------------------------------------------------------
# safe_fetch / fetch_bytes
# ---------------------------------------------------------------------------

class TestFetch:

    @pytest.mark.asyncio
    async def test_fetch_bytes_returns_body(self):
        client, transport = _client(lambda request: httpx.Response(200, content=b"%PDF-1.4 data"))
        async with client:
            body = await fetch_bytes("https://abc.supabase.co/a.pdf", STORAGE_HOSTS, client=client)

        assert body == b"%PDF-1.4 data"
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", [
        "http://127.0.0.1/a.pdf",
        "http://10.0.0.1/a.pdf",
        "ftp://abc.supabase.co/a.pdf",
        "https://example.com/a.pdf",
    ])
    async def test_rejected_url_makes_no_request(self, url):
        client, transport = _client(lambda request: httpx.Response(200, content=b"x"))
        async with client:
            with pytest.raises(UrlValidationError):
                await fetch_bytes(url, STORAGE_HOSTS, client=client)

        assert transport.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["http://127.1/a.pdf", "http://0xa9fea9fe/a.pdf", "http://10.1/a.pdf"])
    async def test_shorthand_ip_makes_no_request_without_allowlist(self, url):
        client, transport = _client(lambda request: httpx.Response(200, content=b"x"))
        async with client:
            with pytest.raises(UrlValidationError):
                await fetch_bytes(url, None, client=client)

        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_non_2xx_raises_fetch_error(self):
        client, _ = _client(lambda request: httpx.Response(404, content=b"not found"))
        async with client:
            with pytest.raises(FetchError) as exc_info:
                await fetch_bytes("https://abc.supabase.co/missing.pdf", STORAGE_HOSTS, client=client)

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_safe_fetch_does_not_check_status(self):
        client, _ = _client(lambda request: httpx.Response(500))
        async with client:
            response = await safe_fetch("https://abc.supabase.co/a.pdf", STORAGE_HOSTS, client=client)

        assert response.status_code == 500

    @pytest.mark.asyncio
    async def test_redirect_to_blocked_host_is_not_followed(self):
        def handler(request):
            return httpx.Response(302, headers={"location": "http://127.0.0.1/internal"})

        client, transport = _client(handler)
        async with client:
            with pytest.raises(UrlValidationError) as exc_info:
                await fetch_bytes("https://abc.supabase.co/a.pdf", STORAGE_HOSTS, client=client)

        assert exc_info.value.reason == UrlValidationReason.BLOCKED_HOST
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_redirect_outside_allowlist_is_not_followed(self):
        def handler(request):
            return httpx.Response(301, headers={"location": "https://evil.example.com/a.pdf"})

        client, transport = _client(handler)
        async with client:
            with pytest.raises(UrlValidationError) as exc_info:
                await fetch_bytes("https://abc.supabase.co/a.pdf", STORAGE_HOSTS, client=client)

        assert exc_info.value.reason == UrlValidationReason.HOST_NOT_ALLOWLISTED
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_valid_relative_redirect_is_followed(self):
        def handler(request):
            if request.url.path == "/old.pdf":
                return httpx.Response(302, headers={"location": "/new.pdf"})
            return httpx.Response(200, content=b"moved")

        client, transport = _client(handler)
        async with client:
            body = await fetch_bytes("https://abc.supabase.co/old.pdf", STORAGE_HOSTS, client=client)

        assert body == b"moved"
        assert [r.url.path for r in transport.requests] == ["/old.pdf", "/new.pdf"]

    @pytest.mark.asyncio
    async def test_redirect_loop_raises_fetch_error(self):
        def handler(request):
            return httpx.Response(302, headers={"location": str(request.url)})

        client, transport = _client(handler)
        async with client:
            with pytest.raises(FetchError, match="Too many redirects"):
                await safe_fetch(
                    "https://abc.supabase.co/a.pdf", STORAGE_HOSTS, client=client, max_redirects=3
                )

        assert len(transport.requests) == 4

    @pytest.mark.asyncio
    async def test_declared_oversize_body_raises_fetch_error(self):
        client, _ = _client(lambda request: httpx.Response(200, content=b"x" * 100))
        async with client:
            with pytest.raises(FetchError, match="too large"):
                await fetch_bytes(
                    "https://abc.supabase.co/big.pdf", STORAGE_HOSTS, client=client, max_bytes=10
                )

    @pytest.mark.asyncio
    async def test_transport_error_becomes_fetch_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = _client(handler)
        async with client:
            with pytest.raises(FetchError, match="Request failed"):
                await fetch_bytes("https://abc.supabase.co/a.pdf", STORAGE_HOSTS, client=client)

    @pytest.mark.asyncio
    async def test_timeout_becomes_fetch_error(self):
        async def slow_handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, content=b"late")

        client = httpx.AsyncClient(transport=httpx.MockTransport(slow_handler))
        async with client:
            with pytest.raises(FetchError, match="Timed out"):
                await fetch_bytes(
                    "https://abc.supabase.co/a.pdf", STORAGE_HOSTS, client=client, timeout=0.05
                )
