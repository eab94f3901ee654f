"""Payload validation: content-type allow-list, size limit and format check."""
import logging
from dataclasses import dataclass
from typing import AsyncIterable

from gleaming.config import IngestConfig
from gleaming.errors import bad_request, internal_error, unsupported_media_type
from gleaming.services.image_service import ImageInfo, ImageService, ImageTooLargeError, InvalidImageError

logger = logging.getLogger(__name__)

_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
}


def normalize_content_type(content_type: str | None) -> str | None:
    """Lowercase media type without parameters, e.g. 'image/svg+xml'."""
    if not content_type:
        return None
    media = content_type.split(";", 1)[0].strip().lower()
    return _ALIASES.get(media, media) or None


@dataclass(frozen=True)
class ValidationResult:
    content_type: str
    size: int
    info: ImageInfo


class PayloadValidator:
    """Checks declared type and size up front, then inspects the actual bytes.

    Only the first ``introspection_window`` bytes are retained for format
    detection; the rest of the stream is counted and dropped.
    """

    def __init__(self, config: IngestConfig, image_service: ImageService):
        self.config = config
        self.image_service = image_service

    def check_declared(self, content_type: str | None, declared_size: int | None = None) -> str:
        """Fail fast on what is known before reading any bytes."""
        media = normalize_content_type(content_type)
        if media is None:
            raise bad_request("Missing content type")
        if media not in self.config.allowed_content_types:
            raise unsupported_media_type(
                f"Unsupported content type: {media}. "
                f"Allowed types: {', '.join(sorted(self.config.allowed_content_types))}"
            )
        if declared_size is not None:
            if declared_size > self.config.max_file_size:
                raise self._too_large()
            if declared_size == 0:
                raise bad_request("Empty payload")
        return media

    async def validate(
        self,
        content_type: str | None,
        stream: AsyncIterable[bytes],
        declared_size: int | None = None,
    ) -> ValidationResult:
        media = self.check_declared(content_type, declared_size)

        window = self.config.introspection_window
        head = bytearray()
        size = 0
        async for chunk in stream:
            size += len(chunk)
            if size > self.config.max_file_size:
                raise self._too_large()
            if len(head) < window:
                head.extend(chunk[: window - len(head)])
        if size == 0:
            raise bad_request("Empty payload")

        try:
            info = await self.image_service.info(bytes(head), size)
        except ImageTooLargeError as exc:
            raise bad_request("Image dimensions are too large") from exc
        except InvalidImageError as exc:
            raise unsupported_media_type("Not a valid image format") from exc
        except Exception as exc:
            logger.exception("Image introspection failed")
            raise internal_error("Failed to inspect image") from exc

        if info.mime_type != media:
            raise unsupported_media_type(
                f"Content does not match declared type {media} (detected {info.mime_type})"
            )
        return ValidationResult(content_type=media, size=size, info=info)

    def _too_large(self):
        limit_mb = self.config.max_file_size / (1024 * 1024)
        return bad_request(f"File is too large. Maximum size is {limit_mb:g}MB")
