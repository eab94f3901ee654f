import pytest

from gleaming.errors import ErrorKind, AppError
from gleaming.services.tee import aiter_bytes
from gleaming.services.validator import normalize_content_type


def test_normalize_content_type():
    assert normalize_content_type("Image/PNG; charset=binary") == "image/png"
    assert normalize_content_type("image/jpg") == "image/jpeg"
    assert normalize_content_type("") is None
    assert normalize_content_type(None) is None


def test_declared_checks_fail_fast(validator):
    with pytest.raises(AppError) as excinfo:
        validator.check_declared("application/pdf", 10)
    assert excinfo.value.kind is ErrorKind.UNSUPPORTED_MEDIA_TYPE

    with pytest.raises(AppError) as excinfo:
        validator.check_declared(None)
    assert excinfo.value.kind is ErrorKind.BAD_REQUEST

    with pytest.raises(AppError, match="too large") as excinfo:
        validator.check_declared("image/png", validator.config.max_file_size + 1)
    assert excinfo.value.kind is ErrorKind.BAD_REQUEST

    assert validator.check_declared("image/PNG", 100) == "image/png"


async def test_unsupported_type_does_not_read_stream(validator):
    consumed = []

    async def source():
        consumed.append(True)
        yield b"data"

    with pytest.raises(AppError) as excinfo:
        await validator.validate("text/html", source())
    assert excinfo.value.status == 415
    assert consumed == []


@pytest.mark.parametrize("fmt,mime", [
    ("PNG", "image/png"),
    ("JPEG", "image/jpeg"),
    ("GIF", "image/gif"),
    ("WEBP", "image/webp"),
    ("AVIF", "image/avif"),
])
async def test_valid_images_report_structure(validator, image_bytes, fmt, mime):
    data = image_bytes(fmt, size=(12, 7))

    result = await validator.validate(mime, aiter_bytes(data, 16), len(data))

    assert result.content_type == mime
    assert result.size == len(data)
    assert (result.info.width, result.info.height) == (12, 7)


async def test_svg_has_no_dimensions(validator, svg_bytes):
    result = await validator.validate("image/svg+xml", aiter_bytes(svg_bytes))
    assert result.info.format == "svg"
    assert result.info.width is None
    assert result.info.to_metadata() == {"format": "svg", "mime_type": "image/svg+xml", "file_size": len(svg_bytes)}


async def test_bytes_that_are_not_an_image(validator):
    with pytest.raises(AppError) as excinfo:
        await validator.validate("image/png", aiter_bytes(b"hello-world!"))
    assert excinfo.value.kind is ErrorKind.UNSUPPORTED_MEDIA_TYPE


async def test_declared_type_must_match_content(validator, jpeg_bytes):
    with pytest.raises(AppError, match="does not match") as excinfo:
        await validator.validate("image/png", aiter_bytes(jpeg_bytes))
    assert excinfo.value.kind is ErrorKind.UNSUPPORTED_MEDIA_TYPE


async def test_size_enforced_while_streaming(validator):
    limit = validator.config.max_file_size
    # No declared size: the limit trips only once the stream runs past it
    with pytest.raises(AppError, match="too large") as excinfo:
        await validator.validate("image/png", aiter_bytes(b"\0" * (limit + 1), 4096))
    assert excinfo.value.kind is ErrorKind.BAD_REQUEST


async def test_empty_payload(validator):
    with pytest.raises(AppError, match="Empty"):
        await validator.validate("image/png", aiter_bytes(b""))


async def test_camera_jpeg_with_mpf_segment_is_jpeg(validator, image_bytes):
    data = image_bytes("MPO", size=(8, 8))
    assert data.startswith(b"\xff\xd8")

    result = await validator.validate("image/jpeg", aiter_bytes(data, 16), len(data))

    assert result.content_type == "image/jpeg"
    assert result.info.format == "jpeg"
    assert (result.info.width, result.info.height) == (8, 8)


async def test_huge_declared_dimensions_are_a_bad_request(validator, oversized_png):
    with pytest.raises(AppError, match="dimensions") as excinfo:
        await validator.validate("image/png", aiter_bytes(oversized_png), len(oversized_png))
    assert excinfo.value.kind is ErrorKind.BAD_REQUEST
    assert excinfo.value.status == 400
