import io
import ipaddress
import os
import struct
import zlib
from typing import AsyncGenerator, Callable

# Settings are read at import time; keep the module-level engine off postgres
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from gleaming.config import FetchConfig, IngestConfig
from gleaming.models import Base
from gleaming.services.file_storage import ContentStore, LocalByteStore
from gleaming.services.image_service import ImageService
from gleaming.services.ingestion import IngestionOrchestrator
from gleaming.services.metadata_repository import MetadataRepository
from gleaming.services.url_fetcher import UrlFetcher
from gleaming.services.validator import PayloadValidator

LOOPBACK_ONLY = (ipaddress.ip_network("127.0.0.1/32"),)


def make_image(fmt: str = "PNG", size: tuple[int, int] = (4, 3), color=(200, 30, 30)) -> bytes:
    """Encode a small solid-color image with Pillow."""
    mode = "RGB" if fmt in ("JPEG", "MPO", "PNG", "GIF", "WEBP") else "RGBA"
    buf = io.BytesIO()
    img = Image.new(mode, size, color)
    if fmt == "MPO":
        # Pillow only reads a file back as MPO when it has more than one frame
        img.save(buf, format=fmt, save_all=True, append_images=[Image.new(mode, size)])
    else:
        img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def image_bytes() -> Callable[..., bytes]:
    return make_image


@pytest.fixture
def png_bytes() -> bytes:
    return make_image("PNG")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image("JPEG", size=(16, 8))


@pytest.fixture
def svg_bytes() -> bytes:
    return (
        b'<?xml version="1.0" encoding="UTF-8"?>\n'
        b'<svg xmlns="http://www.w3.org/2000/svg" width="10" height="10">'
        b'<rect width="10" height="10" fill="red"/></svg>'
    )


@pytest.fixture
def oversized_png() -> bytes:
    """A tiny PNG whose header claims 70000x70000 pixels."""
    def chunk(kind: bytes, data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))

    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", struct.pack(">IIBBBBB", 70000, 70000, 8, 2, 0, 0, 0))
        + chunk(b"IDAT", zlib.compress(b"\0"))
        + chunk(b"IEND", b"")
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def repository(db) -> MetadataRepository:
    return MetadataRepository(db)


@pytest.fixture
def byte_store(tmp_path) -> LocalByteStore:
    return LocalByteStore(tmp_path / "storage", chunk_size=1024)


@pytest.fixture
def content_store(byte_store) -> ContentStore:
    return ContentStore(byte_store)


@pytest.fixture
def ingest_config() -> IngestConfig:
    return IngestConfig(max_file_size=256 * 1024, chunk_size=4096, introspection_window=64 * 1024)


@pytest.fixture
def image_service() -> ImageService:
    return ImageService()


@pytest.fixture
def validator(ingest_config, image_service) -> PayloadValidator:
    return PayloadValidator(ingest_config, image_service)


@pytest.fixture
def fetch_config() -> FetchConfig:
    return FetchConfig(
        service_hostname="files.example.com",
        blocked_domains=("blocked.example",),
        allowed_networks=LOOPBACK_ONLY,
        timeout=2.0,
        check_timeout=1.0,
        chunk_size=4096,
    )


@pytest_asyncio.fixture
async def fetcher(fetch_config) -> AsyncGenerator[UrlFetcher, None]:
    async with UrlFetcher(fetch_config) as client:
        yield client


@pytest.fixture
def orchestrator(ingest_config, content_store, repository, validator, fetcher) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        ingest_config,
        content_store=content_store,
        repository=repository,
        validator=validator,
        fetcher=fetcher,
    )


@pytest_asyncio.fixture
async def serve() -> AsyncGenerator[Callable, None]:
    """Start a loopback aiohttp server with the given routes; returns the TestServer."""
    servers: list[TestServer] = []

    async def start(*routes: web.RouteDef) -> TestServer:
        app = web.Application()
        app.add_routes(routes)
        server = TestServer(app, host="127.0.0.1")
        await server.start_server()
        servers.append(server)
        return server

    yield start
    for server in servers:
        await server.close()
