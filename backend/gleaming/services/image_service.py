"""Image introspection and transformation backed by Pillow.

Pillow work is CPU bound, so the async entry points run it in a thread.
"""
import asyncio
import io
import logging
import re
from dataclasses import dataclass, asdict

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

SVG_MIME = "image/svg+xml"

FIT_MODES = ("scale-down", "contain", "cover", "crop", "pad")

OUTPUT_FORMATS = {
    "webp": ("WEBP", "image/webp"),
    "jpeg": ("JPEG", "image/jpeg"),
    "png": ("PNG", "image/png"),
    "avif": ("AVIF", "image/avif"),
}

# Pillow reports JPEGs carrying an MPF segment (most camera files) as MPO
_FORMAT_ALIASES = {"MPO": "JPEG"}

# XML prolog, doctype and comments may precede the root element
_SVG_ROOT = re.compile(
    rb"^\s*(?:<\?xml[^>]*\?>\s*)?(?:<!--.*?-->\s*|<!DOCTYPE[^>]*>\s*)*<svg[\s>/]",
    re.IGNORECASE | re.DOTALL,
)


class InvalidImageError(ValueError):
    """Bytes are not a recognised image format."""


class ImageTooLargeError(InvalidImageError):
    """Declared pixel dimensions exceed the decompression bomb limit."""


@dataclass(frozen=True)
class ImageInfo:
    format: str
    mime_type: str
    width: int | None = None
    height: int | None = None
    file_size: int | None = None

    def to_metadata(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class TransformParams:
    width: int | None = None
    height: int | None = None
    fit: str | None = None
    quality: int | None = None
    format: str | None = None

    @property
    def requested(self) -> bool:
        return any(v is not None for v in (self.width, self.height, self.fit, self.quality, self.format))


def sniff_svg(head: bytes) -> bool:
    return bool(_SVG_ROOT.match(head.lstrip(b"\xef\xbb\xbf")))


def read_info(data: bytes, file_size: int | None = None) -> ImageInfo:
    """Identify the format and dimensions of an image.

    ``data`` may be only the leading part of the payload; format headers are
    all that is read. ``file_size`` is the full payload size when known.
    """
    size = file_size if file_size is not None else len(data)
    if sniff_svg(data[:4096]):
        # Vector images carry no intrinsic pixel size
        return ImageInfo(format="svg", mime_type=SVG_MIME, file_size=size)
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = _FORMAT_ALIASES.get(img.format, img.format) or ""
            width, height = img.size
    except Image.DecompressionBombError as exc:
        raise ImageTooLargeError(str(exc)) from exc
    except (UnidentifiedImageError, SyntaxError) as exc:
        raise InvalidImageError("Not a valid image format") from exc
    mime = Image.MIME.get(fmt) or f"image/{fmt.lower()}"
    return ImageInfo(format=fmt.lower(), mime_type=mime, width=width, height=height, file_size=size)


def _resize(img: Image.Image, params: TransformParams) -> Image.Image:
    if params.width is None and params.height is None:
        return img
    src_w, src_h = img.size
    width = params.width or round(src_w * params.height / src_h)
    height = params.height or round(src_h * params.width / src_w)
    size = (max(width, 1), max(height, 1))
    fit = params.fit or "scale-down"

    if fit == "scale-down":
        if src_w <= size[0] and src_h <= size[1]:
            return img
        return ImageOps.contain(img, size)
    if fit == "contain":
        return ImageOps.contain(img, size)
    if fit in ("cover", "crop"):
        return ImageOps.fit(img, size)
    if fit == "pad":
        return ImageOps.pad(img, size)
    raise ValueError(f"Unsupported fit: {fit}")


def transform_image(data: bytes, params: TransformParams) -> tuple[bytes, str]:
    """Resize/re-encode an image. Returns (bytes, content_type)."""
    pil_format, content_type = OUTPUT_FORMATS.get(params.format or "webp", OUTPUT_FORMATS["webp"])
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            img = _resize(img, params)
            if pil_format == "JPEG" and img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            out = io.BytesIO()
            save_args = {"quality": params.quality} if params.quality is not None else {}
            img.save(out, format=pil_format, **save_args)
    except Image.DecompressionBombError as exc:
        raise ImageTooLargeError(str(exc)) from exc
    except (UnidentifiedImageError, SyntaxError) as exc:
        raise InvalidImageError("Not a valid image format") from exc
    return out.getvalue(), content_type


class ImageService:
    """Async facade over the Pillow helpers."""

    async def info(self, data: bytes, file_size: int | None = None) -> ImageInfo:
        return await asyncio.to_thread(read_info, data, file_size)

    async def transform(self, data: bytes, params: TransformParams) -> tuple[bytes, str]:
        return await asyncio.to_thread(transform_image, data, params)
