"""Outbound HTTP fetch for URL ingestion, guarded against request forgery.

Every URL (the initial one and every redirect target) is checked twice:
once as a string (scheme, hostname, blocklist, literal addresses) and once
after DNS resolution. The connector resolves through the same policy, so the
address actually connected to is checked too.
"""
import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import AsyncIterator

import aiohttp
from aiohttp.abc import AbstractResolver
from aiohttp.resolver import DefaultResolver
from yarl import URL

from gleaming.config import FetchConfig

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
LOCAL_HOSTNAMES = frozenset({"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"})


class FetchError(Exception):
    """Base class for outbound fetch failures."""

    def __init__(self, message: str, url: str | None = None):
        self.message = message
        self.url = url
        super().__init__(message)


class UrlPolicyError(FetchError):
    """The URL (or a redirect target) is not allowed to be fetched."""


class FetchTimeoutError(FetchError):
    """The fetch did not complete within its time budget."""


class TooManyRedirectsError(FetchError):
    pass


class FetchConnectionError(FetchError):
    """DNS, connection or transport failure before a usable response."""


class RemoteResponseError(FetchError):
    """The remote server answered with a non-2xx status."""

    def __init__(self, status: int, reason: str | None, url: str):
        self.status = status
        self.reason = reason
        super().__init__(f"HTTP {status} from {url}: {reason or 'error'}", url)


class UrlPolicy:
    """Decides whether a URL or resolved address may be fetched."""

    def __init__(self, config: FetchConfig, resolver: AbstractResolver | None = None):
        self.config = config
        self._resolver = resolver

    @property
    def resolver(self) -> AbstractResolver:
        # DefaultResolver binds the running loop, so it is created on first use
        if self._resolver is None:
            self._resolver = DefaultResolver()
        return self._resolver

    async def close(self) -> None:
        if self._resolver is not None:
            await self._resolver.close()
            self._resolver = None

    def verify(self, url: str | URL) -> URL:
        """String-level checks. Returns the parsed URL."""
        try:
            parsed = url if isinstance(url, URL) else URL(url)
        except (ValueError, TypeError) as exc:
            raise UrlPolicyError("Invalid URL format", str(url)) from exc

        if parsed.scheme not in ("http", "https"):
            raise UrlPolicyError(f"Unsupported URL protocol: {parsed.scheme or '(none)'}", str(url))
        host = (parsed.host or "").rstrip(".").lower()
        if not host:
            raise UrlPolicyError("Invalid URL format: missing host", str(url))

        if self.config.service_hostname and host == self.config.service_hostname:
            raise self._reject("Cannot fetch from our own service", parsed)
        if host in LOCAL_HOSTNAMES or host.endswith(".localhost"):
            raise self._reject("Internal/private URLs are not allowed", parsed)
        if any(blocked in host for blocked in self.config.blocked_domains):
            raise self._reject("URL domain is not allowed", parsed)

        if _is_ip_literal(host):
            self.check_address(host, parsed)
        return parsed

    def check_address(self, address: str, url: URL | None = None) -> None:
        """Reject loopback, private, link-local and other non-routable addresses."""
        try:
            ip = ipaddress.ip_address(address.split("%", 1)[0])
        except ValueError:
            raise self._reject("Unrecognised host address", url, address) from None
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        if any(ip in network for network in self.config.allowed_networks):
            return
        if (
            ip.is_loopback
            or ip.is_private
            or ip.is_link_local
            or ip.is_multicast
            or ip.is_reserved
            or ip.is_unspecified
        ):
            raise self._reject("Internal/private URLs are not allowed", url, address)

    async def verify_resolved(self, url: URL) -> None:
        """Resolve the host and check every address it maps to."""
        host = (url.host or "").rstrip(".")
        if _is_ip_literal(host):
            return
        try:
            infos = await self.resolver.resolve(host, url.port or 0, family=socket.AF_UNSPEC)
        except OSError as exc:
            raise FetchConnectionError(f"Could not resolve host: {host}", str(url)) from exc
        if not infos:
            raise FetchConnectionError(f"Could not resolve host: {host}", str(url))
        for info in infos:
            self.check_address(info["host"], url)

    def _reject(self, message: str, url: URL | None, address: str | None = None) -> UrlPolicyError:
        logger.warning(
            "Rejected outbound URL %s%s: %s",
            url, f" ({address})" if address else "", message,
        )
        return UrlPolicyError(message, str(url) if url is not None else None)


class GuardedResolver(AbstractResolver):
    """Resolver for the connector; applies the address policy at connect time."""

    def __init__(self, policy: UrlPolicy):
        self._policy = policy

    async def resolve(self, host: str, port: int = 0, family: socket.AddressFamily = socket.AF_INET):
        infos = await self._policy.resolver.resolve(host, port, family)
        for info in infos:
            self._policy.check_address(info["host"])
        return infos

    async def close(self) -> None:
        # The policy owns the inner resolver
        pass


@dataclass(frozen=True)
class FetchInfo:
    url: str
    status: int
    content_type: str | None
    content_length: int | None
    content_disposition: str | None
    elapsed_ms: float


class FetchedResource:
    """An open remote response. Read it with iter_chunks(), then aclose()."""

    def __init__(self, response: aiohttp.ClientResponse, url: URL, elapsed_ms: float, chunk_size: int):
        self._response = response
        self._chunk_size = chunk_size
        self._closed = False
        self.info = FetchInfo(
            url=str(url),
            status=response.status,
            content_type=_media_type(response.headers.get("Content-Type")),
            content_length=_reliable_length(response.headers),
            content_disposition=response.headers.get("Content-Disposition"),
            elapsed_ms=elapsed_ms,
        )

    @property
    def url(self) -> str:
        return self.info.url

    @property
    def content_type(self) -> str | None:
        return self.info.content_type

    @property
    def content_length(self) -> int | None:
        return self.info.content_length

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.content.iter_chunked(self._chunk_size):
                yield chunk
        except asyncio.TimeoutError as exc:
            raise FetchTimeoutError("Timed out while reading the response body", self.url) from exc
        except aiohttp.ClientError as exc:
            raise FetchConnectionError(f"Connection failed while reading body: {exc}", self.url) from exc

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._response.content.at_eof():
            self._response.release()
        else:
            # Abort: drop the connection instead of draining the rest of the body
            self._response.close()

    async def __aenter__(self) -> "FetchedResource":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


class UrlFetcher:
    """Async HTTP client for remote ingestion.

    Owns one aiohttp session; use ``async with`` or open()/close() around its
    lifetime (the application opens it in the lifespan handler).
    """

    def __init__(self, config: FetchConfig, resolver: AbstractResolver | None = None):
        self.config = config
        self.policy = UrlPolicy(config, resolver)
        self._session: aiohttp.ClientSession | None = None

    async def open(self) -> None:
        if not self._session:
            connector = aiohttp.TCPConnector(resolver=GuardedResolver(self.policy))
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={"User-Agent": self.config.user_agent},
            )

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        await self.policy.close()

    async def __aenter__(self) -> "UrlFetcher":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def fetch(self, url: str) -> FetchedResource:
        """GET the URL following up to max_redirects verified redirects.

        The returned resource must be closed by the caller. The whole fetch,
        body included, is bounded by config.timeout.
        """
        return await self._request("GET", url, self.config.timeout)

    async def probe(self, url: str) -> FetchInfo:
        """HEAD the URL under the shorter existence-check timeout."""
        resource = await self._request("HEAD", url, self.config.check_timeout)
        await resource.aclose()
        return resource.info

    async def _request(self, method: str, url: str, timeout: float) -> FetchedResource:
        await self.open()
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout

        current = self.policy.verify(url)
        redirects = 0
        while True:
            response = await self._send(method, current, deadline, timeout)
            if response.status in REDIRECT_STATUSES and "Location" in response.headers:
                location = response.headers["Location"]
                response.release()
                redirects += 1
                if redirects > self.config.max_redirects:
                    raise TooManyRedirectsError(
                        f"Too many redirects (max {self.config.max_redirects})", str(current)
                    )
                try:
                    target = current.join(URL(location))
                except ValueError as exc:
                    raise UrlPolicyError("Invalid redirect location", location) from exc
                logger.debug("Following redirect %s -> %s", current, target)
                current = self.policy.verify(target)
                continue

            elapsed_ms = (loop.time() - started) * 1000
            if not 200 <= response.status < 300:
                status, reason = response.status, response.reason
                response.release()
                raise RemoteResponseError(status, reason, str(current))

            logger.info("fetch:%s %s -> %d (%.0fms)", method, current, response.status, elapsed_ms)
            return FetchedResource(response, current, elapsed_ms, self.config.chunk_size)

    async def _send(self, method: str, url: URL, deadline: float, timeout: float) -> aiohttp.ClientResponse:
        loop = asyncio.get_running_loop()
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise FetchTimeoutError(f"Request timeout after {timeout:g}s", str(url))
        try:
            await asyncio.wait_for(self.policy.verify_resolved(url), remaining)
            remaining = max(deadline - loop.time(), 0.001)
            return await self._session.request(
                method, url,
                allow_redirects=False,
                timeout=aiohttp.ClientTimeout(total=remaining),
            )
        except FetchError:
            raise
        except asyncio.TimeoutError as exc:
            raise FetchTimeoutError(f"Request timeout after {timeout:g}s for {url}", str(url)) from exc
        except aiohttp.ClientError as exc:
            raise FetchConnectionError(f"Connection failed: {exc}", str(url)) from exc


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.split("%", 1)[0])
    except ValueError:
        return False
    return True


def _media_type(header: str | None) -> str | None:
    if not header:
        return None
    media = header.split(";", 1)[0].strip().lower()
    return media or None


def _reliable_length(headers) -> int | None:
    """Content-Length only when it describes the bytes we will read."""
    if headers.get("Content-Encoding"):
        return None
    raw = headers.get("Content-Length")
    if raw is None:
        return None
    try:
        length = int(raw)
    except ValueError:
        return None
    return length if length >= 0 else None
