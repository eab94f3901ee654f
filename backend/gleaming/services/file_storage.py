"""Blob storage. Local filesystem byte store plus the content-addressed layer on top.

Blobs live under ``blobs/ab/cd/<digest>``. Writes always land in a hidden
``.part`` file first and are renamed into place, so a key is either absent or
holds complete bytes.
"""
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import AsyncIterable, AsyncIterator

import aiofiles
import aiofiles.os

from gleaming.config import Settings
from gleaming.errors import internal_error, not_found
from gleaming.services.hashing import ContentHasher
from gleaming.services.identifiers import generate_compact_time_id, generate_external_id
from gleaming.services.tee import aiter_bytes

logger = logging.getLogger(__name__)

BLOB_PREFIX = "blobs"
STAGING_PREFIX = "staging"
MIN_DIGEST_LENGTH = 4


@dataclass(frozen=True)
class BlobInfo:
    key: str
    size: int
    digest: str


class LocalByteStore:
    """Byte store on local disk. ``content_type_hint`` is accepted but not persisted."""

    def __init__(self, base_path: str | Path, chunk_size: int = 64 * 1024):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.chunk_size = chunk_size
        self._hasher = ContentHasher()

    def _path(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or key.startswith("/") or any(p in ("..", ".") for p in parts):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.base_path.joinpath(*parts)

    async def put(
        self,
        key: str,
        data: bytes | AsyncIterable[bytes],
        content_type_hint: str | None = None,
    ) -> BlobInfo:
        """Write bytes under key. Returns size and digest of exactly what was written."""
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{secrets.token_hex(4)}.part")
        stream = aiter_bytes(data, self.chunk_size) if isinstance(data, bytes) else data

        hasher = self._hasher.new()
        size = 0
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                async for chunk in stream:
                    await f.write(chunk)
                    hasher.update(chunk)
                    size += len(chunk)
            await aiofiles.os.replace(tmp_path, path)
        except BaseException:
            # Also on cancellation: never leave a partial file behind
            if tmp_path.exists():
                os.remove(tmp_path)
            raise
        return BlobInfo(key=key, size=size, digest=hasher.hexdigest())

    async def get(self, key: str) -> AsyncIterator[bytes] | None:
        path = self._path(key)
        if not await aiofiles.os.path.isfile(path):
            return None
        return self._read_chunks(path)

    async def _read_chunks(self, path: Path) -> AsyncIterator[bytes]:
        async with aiofiles.open(path, "rb") as f:
            while True:
                chunk = await f.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk

    async def head(self, key: str) -> bool:
        return await aiofiles.os.path.isfile(self._path(key))

    async def move(self, src_key: str, dst_key: str) -> None:
        """Atomically replace dst with src."""
        dst = self._path(dst_key)
        dst.parent.mkdir(parents=True, exist_ok=True)
        await aiofiles.os.replace(self._path(src_key), dst)

    async def delete(self, key: str) -> bool:
        path = self._path(key)
        if not await aiofiles.os.path.exists(path):
            return False
        await aiofiles.os.remove(path)
        return True


def create_byte_store(settings: Settings) -> LocalByteStore:
    if settings.FILE_STORAGE_TYPE == "local":
        return LocalByteStore(settings.FILE_STORAGE_PATH, chunk_size=settings.STREAM_CHUNK_SIZE)
    raise ValueError(f"Unknown storage type: {settings.FILE_STORAGE_TYPE}")


def blob_key(digest: str) -> str:
    """Sharded key for a content digest, e.g. blobs/ab/cd/abcd1234..."""
    if len(digest) < MIN_DIGEST_LENGTH or not all(c in "0123456789abcdef" for c in digest):
        raise ValueError(f"Invalid content digest: {digest!r}")
    return f"{BLOB_PREFIX}/{digest[:2]}/{digest[2:4]}/{digest}"


@dataclass(frozen=True)
class StagedBlob:
    key: str
    size: int
    digest: str
    content_type: str | None = None


@dataclass(frozen=True)
class PutResult:
    digest: str
    size: int | None
    stored: bool  # False when the content already existed


class ContentStore:
    """Content-addressed blobs keyed by digest, written at most once per digest.

    No locking: two concurrent writers of the same content both promote the
    same bytes to the same key, which is harmless.
    """

    def __init__(self, byte_store: LocalByteStore):
        self.byte_store = byte_store

    async def exists(self, digest: str) -> bool:
        try:
            return await self.byte_store.head(blob_key(digest))
        except ValueError:
            return False
        except OSError as exc:
            logger.exception("Failed to check blob %s", digest)
            raise internal_error("Failed to check stored file") from exc

    async def get(self, digest: str) -> AsyncIterator[bytes]:
        try:
            stream = await self.byte_store.get(blob_key(digest))
        except ValueError:
            stream = None
        except OSError as exc:
            logger.exception("Failed to read blob %s", digest)
            raise internal_error("Failed to retrieve file") from exc
        if stream is None:
            raise not_found("File content")
        return stream

    async def stage(self, stream: AsyncIterable[bytes], content_type: str | None = None) -> StagedBlob:
        """Write a stream to a private staging key while its digest is still unknown."""
        key = f"{STAGING_PREFIX}/{generate_compact_time_id()}-{generate_external_id(8)}"
        try:
            info = await self.byte_store.put(key, stream, content_type)
        except OSError as exc:
            logger.exception("Failed to stage upload")
            raise internal_error("Failed to store file") from exc
        return StagedBlob(key=info.key, size=info.size, digest=info.digest, content_type=content_type)

    async def commit_if_absent(self, staged: StagedBlob, digest: str) -> PutResult:
        """Promote a staged blob to its content key unless that key already exists."""
        if staged.digest != digest:
            logger.warning(
                "Stored digest %s does not match computed digest %s; discarding %s",
                staged.digest, digest, staged.key,
            )
            await self.discard(staged)
            raise internal_error("Stored content does not match computed hash")
        try:
            if await self.byte_store.head(blob_key(digest)):
                await self.discard(staged)
                logger.info("storage:exists %s", digest)
                return PutResult(digest=digest, size=staged.size, stored=False)
        except OSError as exc:
            await self.discard(staged)
            raise internal_error("Failed to check stored file") from exc
        return await self._promote(staged, digest)

    async def put_if_absent(
        self,
        digest: str,
        stream: AsyncIterable[bytes],
        content_type: str | None = None,
    ) -> PutResult:
        """Store a stream whose digest is already known. The stream is not read if the blob exists."""
        if await self.exists(digest):
            return PutResult(digest=digest, size=None, stored=False)
        staged = await self.stage(stream, content_type)
        if staged.digest != digest:
            await self.discard(staged)
            raise internal_error("Stored content does not match computed hash")
        return await self._promote(staged, digest)

    async def discard(self, staged: StagedBlob) -> None:
        try:
            await self.byte_store.delete(staged.key)
        except OSError:
            logger.warning("Failed to remove staging blob %s", staged.key, exc_info=True)

    async def _promote(self, staged: StagedBlob, digest: str) -> PutResult:
        key = blob_key(digest)
        try:
            await self.byte_store.move(staged.key, key)
        except OSError as exc:
            logger.exception("Failed to commit blob %s", key)
            await self.discard(staged)
            raise internal_error("Failed to store file") from exc
        logger.info("storage:put %s (%d bytes)", key, staged.size)
        return PutResult(digest=digest, size=staged.size, stored=True)

