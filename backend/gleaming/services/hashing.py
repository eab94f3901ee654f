"""Content hashing for content-addressed storage.

BLAKE3 is used purely as a content fingerprint, never for secrets.
"""
from dataclasses import dataclass
from typing import AsyncIterable

import blake3


@dataclass(frozen=True)
class Digest:
    hex: str
    size: int


class ContentHasher:
    """Computes hex digests over buffers or chunked async streams."""

    def new(self) -> blake3.blake3:
        return blake3.blake3()

    def hash_bytes(self, data: bytes) -> str:
        return blake3.blake3(data).hexdigest()

    async def hash_stream(self, stream: AsyncIterable[bytes]) -> Digest:
        """Consume the stream chunk by chunk; nothing is retained beyond one chunk."""
        hasher = blake3.blake3()
        size = 0
        async for chunk in stream:
            hasher.update(chunk)
            size += len(chunk)
        return Digest(hex=hasher.hexdigest(), size=size)
