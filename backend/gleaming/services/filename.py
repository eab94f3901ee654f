"""Filename resolution and sanitising for stored files."""
import re
from urllib.parse import unquote, urlsplit

MAX_FILENAME_LENGTH = 64
MAX_EXTENSION_LENGTH = 16
FALLBACK_NAME = "untitled"

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/svg+xml": "svg",
}

_UNSAFE = re.compile(r"[^\w\-.]", re.ASCII)
_DISPOSITION_EXT = re.compile(r"filename\*\s*=\s*([^;]+)", re.IGNORECASE)
_DISPOSITION = re.compile(r'filename\s*=\s*(?:"([^"]*)"|([^;]*))', re.IGNORECASE)


def extension_for(content_type: str | None) -> str:
    if not content_type:
        return ""
    media = content_type.split(";", 1)[0].strip().lower()
    if media in _EXTENSIONS:
        return _EXTENSIONS[media]
    subtype = media.partition("/")[2]
    return re.sub(r"[^a-z0-9]", "", subtype)


def normalize_filename(filename: str, content_type: str | None = None) -> str:
    """Make a name safe for storage, URLs and Content-Disposition headers."""
    # Drop any directory part, including Windows separators
    name = re.split(r"[\\/]", filename)[-1]
    name = _UNSAFE.sub("-", name)
    name = re.sub(r"-+", "-", name)
    name = re.sub(r"\.+", ".", name)
    name = name.strip("-.")

    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        stem, ext = name, ""
    if not ext:
        ext = extension_for(content_type)
    ext = ext[:MAX_EXTENSION_LENGTH]

    max_stem = MAX_FILENAME_LENGTH - len(ext) - 1 if ext else MAX_FILENAME_LENGTH
    stem = stem[:max(max_stem, 1)].rstrip("-.") or FALLBACK_NAME
    return f"{stem}.{ext}" if ext else stem


def filename_from_content_disposition(disposition: str | None) -> str | None:
    if not disposition:
        return None
    match = _DISPOSITION_EXT.search(disposition)
    if match:
        value = match.group(1).strip().strip('"')
        # RFC 5987: charset'lang'percent-encoded
        _, _, encoded = value.rpartition("'")
        name = unquote(encoded, errors="replace")
        if name:
            return name
    match = _DISPOSITION.search(disposition)
    if not match:
        return None
    name = (match.group(1) if match.group(1) is not None else match.group(2) or "").strip()
    return name.strip("'\"") or None


def filename_from_url(url: str | None) -> str | None:
    if not url:
        return None
    segment = urlsplit(url).path.rsplit("/", 1)[-1]
    return unquote(segment) or None


def resolve_filename(
    custom: str | None = None,
    *,
    content_disposition: str | None = None,
    url: str | None = None,
    content_type: str | None = None,
) -> str:
    """Pick a filename: explicit > transport hint > URL path > content type > fallback."""
    candidate = (
        (custom or "").strip()
        or filename_from_content_disposition(content_disposition)
        or filename_from_url(url)
    )
    if candidate:
        return normalize_filename(candidate, content_type)
    if content_type:
        return normalize_filename(FALLBACK_NAME, content_type)
    return FALLBACK_NAME
