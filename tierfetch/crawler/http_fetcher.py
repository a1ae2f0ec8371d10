"""
HTTP transports for the first two tiers.

- DirectHTTPTransport: plain httpx GET with a rotating user agent
- EnhancedHTTPTransport: httpx with a full browser header set
  (Sec-Fetch-*, Sec-CH-UA*, Upgrade-Insecure-Requests) from a browser profile
- SpoofedHTTPTransport: curl_cffi client with a spoofed TLS fingerprint,
  obtained from TLSClientManager; falls back to EnhancedHTTPTransport
  when the native client is unavailable

All transports return HTTPResponse and raise TransportError on failure.
"""

import time
from abc import ABC, abstractmethod
from urllib.parse import urlparse

import httpx

from tierfetch.crawler.errors import TransportError
from tierfetch.crawler.fetch_result import HTTPResponse
from tierfetch.crawler.fingerprint import FingerprintPool, get_fingerprint_pool
from tierfetch.crawler.tls_client import TLSClientConfig, TLSClientManager
from tierfetch.utils.logging import get_logger

logger = get_logger(__name__)

# httpx only decodes brotli when the optional brotli package is installed
_HTTPX_ACCEPT_ENCODING = "gzip, deflate"

_DIRECT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

# Bodies above this are still returned, but with a warning
_LARGE_BODY_BYTES = 10_000_000


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def _raise_for_status(response: HTTPResponse) -> HTTPResponse:
    if response.status >= 400:
        raise TransportError(
            f"HTTP {response.status}",
            url=response.url,
            status=response.status,
            body=response.text,
        )
    return response


class HTTPTransport(ABC):
    """A raw HTTP GET primitive."""

    name: str = "http"

    @abstractmethod
    async def get(self, url: str, *, timeout: float, attempt: int = 1) -> HTTPResponse:
        """GET url.

        Args:
            url: Target URL.
            timeout: Seconds for the whole request.
            attempt: 1 for the first try, 2+ for retries.

        Raises:
            TransportError: connection failure, timeout, or HTTP error status.
        """

    async def close(self) -> None:  # noqa: B027
        """Release pooled connections."""


class _HttpxTransport(HTTPTransport):
    """Shared httpx plumbing: lazy client, redirects, error mapping."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    @abstractmethod
    def _headers(self, url: str, attempt: int) -> dict[str, str]: ...

    async def get(self, url: str, *, timeout: float, attempt: int = 1) -> HTTPResponse:
        headers = self._headers(url, attempt)
        started = time.monotonic()
        try:
            response = await self._get_client().get(url, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timeout after {timeout}s", url=url) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}", url=url) from e

        text = response.text
        if len(text) > _LARGE_BODY_BYTES:
            logger.warning("Very large response body", url=url[:80], length=len(text))

        chain = tuple(str(r.url) for r in response.history) + (str(response.url),)
        result = HTTPResponse(
            status=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            text=text,
            url=str(response.url),
            redirect_chain=chain,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        logger.debug(
            "HTTP response",
            transport=self.name,
            url=url[:80],
            status=result.status,
            length=len(text),
            redirects=len(response.history),
        )
        return _raise_for_status(result)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class DirectHTTPTransport(_HttpxTransport):
    """Minimal-header GET."""

    name = "direct"

    def __init__(
        self,
        fingerprints: FingerprintPool | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(client)
        self._fingerprints = fingerprints or get_fingerprint_pool()

    def _headers(self, url: str, attempt: int) -> dict[str, str]:
        return {
            "User-Agent": self._fingerprints.random_user_agent(),
            "Accept": _DIRECT_ACCEPT,
            "Accept-Encoding": _HTTPX_ACCEPT_ENCODING,
        }


class EnhancedHTTPTransport(_HttpxTransport):
    """GET with a complete, self-consistent browser header set.

    Retries carry the site origin as Referer, like a user clicking through.
    """

    name = "enhanced"

    def __init__(
        self,
        fingerprints: FingerprintPool | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(client)
        self._fingerprints = fingerprints or get_fingerprint_pool()

    def _headers(self, url: str, attempt: int) -> dict[str, str]:
        profile = self._fingerprints.random_profile(desktop_only=True)
        referer = _origin(url) if attempt > 1 else None
        headers = self._fingerprints.enhanced_headers(profile, referer=referer)
        headers.update(self._fingerprints.session_headers())
        headers["Accept-Encoding"] = _HTTPX_ACCEPT_ENCODING
        return headers


class SpoofedHTTPTransport(HTTPTransport):
    """GET through a TLS-fingerprint spoofing client.

    The TLS signature, user agent and headers all come from the same browser
    profile. When the manager reports the native client unavailable, the
    request goes through the fallback transport instead.
    """

    name = "spoofed"

    def __init__(
        self,
        manager: TLSClientManager,
        fallback: HTTPTransport | None = None,
        fingerprints: FingerprintPool | None = None,
    ):
        self._manager = manager
        self._fingerprints = fingerprints or get_fingerprint_pool()
        self._fallback = fallback or EnhancedHTTPTransport(self._fingerprints)
        self.last_transport: str | None = None

    async def get(self, url: str, *, timeout: float, attempt: int = 1) -> HTTPResponse:
        profile = self._fingerprints.random_profile(desktop_only=True)
        config = TLSClientConfig(
            user_agent=profile.user_agent,
            ja3=profile.ja3,
            timeout=timeout,
            impersonate=profile.impersonate,
        )
        handle = await self._manager.get_client(config)
        if handle is None:
            logger.debug("TLS client unavailable, using fallback", url=url[:80])
            self.last_transport = self._fallback.name
            return await self._fallback.get(url, timeout=timeout, attempt=attempt)

        self.last_transport = self.name
        referer = _origin(url) if attempt > 1 else None
        headers = self._fingerprints.enhanced_headers(profile, referer=referer)
        response = await handle.get(url, headers=headers)
        logger.debug(
            "HTTP response",
            transport=self.name,
            url=url[:80],
            status=response.status,
            length=len(response.text),
            profile=profile.name,
        )
        return _raise_for_status(response)

    async def close(self) -> None:
        await self._fallback.close()
        await self._manager.cleanup_all()
