import asyncio
import ipaddress
import socket

import pytest
from aiohttp import web
from aiohttp.abc import AbstractResolver
from yarl import URL

from gleaming.config import FetchConfig
from gleaming.services.url_fetcher import (
    FetchConnectionError,
    FetchTimeoutError,
    RemoteResponseError,
    TooManyRedirectsError,
    UrlFetcher,
    UrlPolicy,
    UrlPolicyError,
)

LOOPBACK_ONLY = (ipaddress.ip_network("127.0.0.1/32"),)


class StaticResolver(AbstractResolver):
    """Maps hostnames to fixed addresses and records every lookup."""

    def __init__(self, mapping: dict[str, str]):
        self.mapping = mapping
        self.lookups: list[str] = []

    async def resolve(self, host, port=0, family=socket.AF_INET):
        self.lookups.append(host)
        if host not in self.mapping:
            raise OSError(f"unknown host {host}")
        return [{
            "hostname": host,
            "host": self.mapping[host],
            "port": port,
            "family": socket.AF_INET6 if ":" in self.mapping[host] else socket.AF_INET,
            "proto": 0,
            "flags": socket.AI_NUMERICHOST,
        }]

    async def close(self):
        pass


@pytest.fixture
def policy(fetch_config):
    return UrlPolicy(fetch_config, StaticResolver({
        "public.example": "93.184.216.34",
        "intranet.example": "10.1.2.3",
        "mapped.example": "::ffff:127.0.0.2",
    }))


# ── URL policy ───────────────────────────────────────────────


@pytest.mark.parametrize("url", [
    "ftp://public.example/file.png",
    "file:///etc/passwd",
    "javascript:alert(1)",
    "not a url",
])
def test_policy_rejects_bad_schemes(policy, url):
    with pytest.raises(UrlPolicyError):
        policy.verify(url)


@pytest.mark.parametrize("url", [
    "http://localhost/x.png",
    "http://api.localhost/x.png",
    "http://127.0.0.2/x.png",
    "http://10.0.0.1/x.png",
    "http://172.16.5.4/x.png",
    "http://192.168.1.1/x.png",
    "http://169.254.169.254/secret",
    "http://[::1]/x.png",
    "http://[fd00::1]/x.png",
    "http://[::ffff:10.0.0.1]/x.png",
    "http://0.0.0.0/x.png",
])
def test_policy_rejects_internal_addresses(policy, url):
    with pytest.raises(UrlPolicyError, match="Internal/private"):
        policy.verify(url)


def test_policy_rejects_blocklisted_and_own_host(policy):
    with pytest.raises(UrlPolicyError, match="domain is not allowed"):
        policy.verify("https://cdn.BLOCKED.example/a.png")
    with pytest.raises(UrlPolicyError, match="own service"):
        policy.verify("https://files.example.com/api/files/abc/content")


def test_policy_allows_public_and_exempt_networks(policy):
    assert policy.verify("https://public.example/a.png").host == "public.example"
    # 127.0.0.1 is explicitly exempted in the test configuration
    policy.verify("http://127.0.0.1:8080/a.png")


async def test_policy_checks_resolved_addresses(policy):
    await policy.verify_resolved(URL("https://public.example/a.png"))
    with pytest.raises(UrlPolicyError):
        await policy.verify_resolved(URL("https://intranet.example/a.png"))
    with pytest.raises(UrlPolicyError):
        await policy.verify_resolved(URL("https://mapped.example/a.png"))
    with pytest.raises(FetchConnectionError, match="Could not resolve"):
        await policy.verify_resolved(URL("https://nowhere.example/a.png"))


# ── Fetching ─────────────────────────────────────────────────


async def test_metadata_endpoint_rejected_before_any_request(fetch_config):
    resolver = StaticResolver({})
    async with UrlFetcher(fetch_config, resolver=resolver) as fetcher:
        with pytest.raises(UrlPolicyError, match="Internal/private"):
            await fetcher.fetch("http://169.254.169.254/secret")
    assert resolver.lookups == []


async def test_private_hostname_rejected_after_resolution(fetch_config):
    resolver = StaticResolver({"intranet.example": "10.1.2.3"})
    async with UrlFetcher(fetch_config, resolver=resolver) as fetcher:
        with pytest.raises(UrlPolicyError):
            await fetcher.fetch("http://intranet.example/a.png")
    assert resolver.lookups == ["intranet.example"]


async def test_fetch_streams_body_and_metadata(fetcher, serve):
    async def image(request):
        return web.Response(
            body=b"0123456789",
            content_type="image/png",
            headers={"Content-Disposition": 'inline; filename="pic.png"'},
        )

    server = await serve(web.get("/pic", image))
    async with await fetcher.fetch(str(server.make_url("/pic"))) as resource:
        body = b"".join([c async for c in resource.iter_chunks()])
        assert resource.content_type == "image/png"
        assert resource.content_length == 10
        assert resource.info.content_disposition == 'inline; filename="pic.png"'
        assert resource.info.status == 200
    assert body == b"0123456789"


async def test_missing_content_length_is_reported_as_unknown(fetcher, serve):
    async def chunked(request):
        response = web.StreamResponse(headers={"Content-Type": "image/svg+xml"})
        response.enable_chunked_encoding()
        await response.prepare(request)
        await response.write(b"<svg ")
        await response.write(b"xmlns='http://www.w3.org/2000/svg'/>")
        await response.write_eof()
        return response

    server = await serve(web.get("/vector", chunked))
    async with await fetcher.fetch(str(server.make_url("/vector"))) as resource:
        body = b"".join([c async for c in resource.iter_chunks()])
    assert resource.content_length is None
    assert body.startswith(b"<svg")


async def test_redirects_are_followed_and_final_url_reported(fetcher, serve):
    async def start(request):
        raise web.HTTPFound("/middle")

    async def middle(request):
        raise web.HTTPMovedPermanently("/final.png")

    async def final(request):
        return web.Response(body=b"ok", content_type="image/png")

    server = await serve(web.get("/start", start), web.get("/middle", middle), web.get("/final.png", final))
    async with await fetcher.fetch(str(server.make_url("/start"))) as resource:
        assert resource.url.endswith("/final.png")


@pytest.mark.parametrize("target", [
    "http://169.254.169.254/latest/meta-data",
    "http://cdn.blocked.example/a.png",
    "http://localhost:9/a.png",
])
async def test_redirect_to_forbidden_host_is_rejected(fetcher, serve, target):
    async def bounce(request):
        raise web.HTTPFound(target)

    server = await serve(web.get("/bounce", bounce))
    with pytest.raises(UrlPolicyError):
        await fetcher.fetch(str(server.make_url("/bounce")))


async def test_redirect_to_host_resolving_privately_is_rejected(fetch_config, serve):
    async def bounce(request):
        raise web.HTTPFound("http://intranet.example/a.png")

    server = await serve(web.get("/bounce", bounce))
    resolver = StaticResolver({"intranet.example": "10.1.2.3"})
    async with UrlFetcher(fetch_config, resolver=resolver) as fetcher:
        with pytest.raises(UrlPolicyError):
            await fetcher.fetch(str(server.make_url("/bounce")))


async def test_redirect_loop_is_bounded(fetcher, serve):
    hits = []

    async def loop(request):
        hits.append(request.path)
        raise web.HTTPFound("/loop")

    server = await serve(web.get("/loop", loop))
    with pytest.raises(TooManyRedirectsError):
        await fetcher.fetch(str(server.make_url("/loop")))
    assert len(hits) == fetcher.config.max_redirects + 1


async def test_remote_error_status(fetcher, serve):
    async def missing(request):
        raise web.HTTPNotFound()

    server = await serve(web.get("/missing", missing))
    with pytest.raises(RemoteResponseError) as excinfo:
        await fetcher.fetch(str(server.make_url("/missing")))
    assert excinfo.value.status == 404


async def test_slow_response_times_out_distinctly(serve):
    async def slow(request):
        await asyncio.sleep(2)
        return web.Response(body=b"late", content_type="image/png")

    server = await serve(web.get("/slow", slow))
    config = FetchConfig(allowed_networks=LOOPBACK_ONLY, timeout=0.2)
    async with UrlFetcher(config) as fetcher:
        with pytest.raises(FetchTimeoutError):
            await fetcher.fetch(str(server.make_url("/slow")))


async def test_slow_body_times_out_while_reading(serve):
    async def trickle(request):
        response = web.StreamResponse(headers={"Content-Type": "image/png"})
        await response.prepare(request)
        await response.write(b"\x89PNG")
        await asyncio.sleep(2)
        await response.write(b"rest")
        return response

    server = await serve(web.get("/trickle", trickle))
    config = FetchConfig(allowed_networks=LOOPBACK_ONLY, timeout=0.3)
    async with UrlFetcher(config) as fetcher:
        resource = await fetcher.fetch(str(server.make_url("/trickle")))
        with pytest.raises(FetchTimeoutError):
            async for _ in resource.iter_chunks():
                pass
        await resource.aclose()


async def test_probe_uses_head(fetcher, serve):
    methods = []

    async def image(request):
        methods.append(request.method)
        return web.Response(body=b"x" * 20, content_type="image/gif")

    server = await serve(web.get("/img", image))
    info = await fetcher.probe(str(server.make_url("/img")))
    assert methods == ["HEAD"]
    assert info.content_type == "image/gif"


async def test_head_check_timeout_reports_its_budget(serve):
    async def slow(request):
        await asyncio.sleep(2)
        return web.Response(body=b"late", content_type="image/png")

    server = await serve(web.get("/slow", slow))
    config = FetchConfig(allowed_networks=LOOPBACK_ONLY, timeout=15.0, check_timeout=0.2)
    async with UrlFetcher(config) as fetcher:
        with pytest.raises(FetchTimeoutError, match=r"after 0\.2s"):
            await fetcher.probe(str(server.make_url("/slow")))
