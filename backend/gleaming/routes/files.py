"""Files API routes."""
import json
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, File as FastAPIFile, Form, Query, UploadFile
from fastapi.responses import Response, StreamingResponse

from gleaming.dependencies import (
    get_content_store,
    get_file_record,
    get_image_service,
    get_orchestrator,
    get_repository,
    request_context,
)
from gleaming.errors import bad_request, unsupported_media_type
from gleaming.models import FileRecord
from gleaming.schemas.common import DeleteResponse
from gleaming.schemas.file import FileResponse, IngestRequest, split_tags
from gleaming.services.file_storage import ContentStore
from gleaming.services.image_service import (
    FIT_MODES,
    OUTPUT_FORMATS,
    SVG_MIME,
    ImageService,
    ImageTooLargeError,
    InvalidImageError,
    TransformParams,
)
from gleaming.services.ingestion import IngestionOrchestrator, IngestResult, RequestContext
from gleaming.services.metadata_repository import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, MetadataRepository

router = APIRouter(prefix="/api/files", tags=["files"])

UPLOAD_CHUNK_SIZE = 64 * 1024
CACHE_CONTROL = "public, max-age=31536000, immutable"


def _to_response(
    record: FileRecord,
    properties: dict[str, str] | None = None,
    tags: list[str] | None = None,
) -> FileResponse:
    return FileResponse(
        id=record.external_id,
        content_hash=record.content_hash,
        content_type=record.content_type,
        size=record.size,
        filename=record.filename,
        metadata=record.file_metadata or {},
        source_url=record.source_url,
        project_id=record.project_id,
        created_at=record.created_at,
        properties=properties or {},
        tags=tags or [],
    )


def _result_response(result: IngestResult) -> FileResponse:
    return _to_response(result.record, result.properties, result.tags)


def _parse_properties(raw: Optional[str]) -> dict[str, str]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise bad_request("properties must be a JSON object") from exc
    if not isinstance(parsed, dict):
        raise bad_request("properties must be a JSON object")
    return {str(k): str(v) for k, v in parsed.items()}


async def _read_upload(file: UploadFile) -> AsyncIterator[bytes]:
    while chunk := await file.read(UPLOAD_CHUNK_SIZE):
        yield chunk


@router.post("/upload", response_model=FileResponse, status_code=201)
async def upload_file(
    file: UploadFile = FastAPIFile(...),
    filename: Optional[str] = Form(None),
    project_id: Optional[str] = Form(None, alias="projectId"),
    properties: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
    context: RequestContext = Depends(request_context),
):
    """Upload a file. Identical bytes are stored once; every upload gets its own record."""
    result = await orchestrator.ingest_upload(
        _read_upload(file),
        file.content_type,
        filename=filename or file.filename,
        declared_size=file.size,
        properties=_parse_properties(properties),
        tags=split_tags(tags),
        project_id=project_id,
        context=context,
    )
    return _result_response(result)


@router.post("/ingest", response_model=FileResponse, status_code=201)
async def ingest_file(
    body: IngestRequest,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
    context: RequestContext = Depends(request_context),
):
    """Fetch a remote URL and store its content."""
    result = await orchestrator.ingest_url(
        body.url,
        filename=body.filename,
        properties=body.properties,
        tags=body.tags,
        project_id=body.project_id,
        context=context,
    )
    return _result_response(result)


@router.get("", response_model=list[FileResponse])
async def list_files(
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    repository: MetadataRepository = Depends(get_repository),
):
    """Most recent files, newest first. Properties are not included."""
    records = await repository.list_recent(limit)
    return [_to_response(r) for r in records]


@router.get("/search", response_model=list[FileResponse])
async def search_files(
    key: str = Query(...),
    value: str = Query(...),
    project_id: Optional[str] = Query(None, alias="projectId"),
    repository: MetadataRepository = Depends(get_repository),
):
    """Files whose property ``key`` equals ``value``, optionally within one project."""
    records = await repository.find_by_property(key, value, project_id=project_id)
    return [_to_response(r) for r in records]


@router.get("/by-hash/{content_hash}", response_model=list[FileResponse])
async def get_files_by_hash(
    content_hash: str,
    repository: MetadataRepository = Depends(get_repository),
):
    """All live records sharing one content hash."""
    records = await repository.get_by_content_hash(content_hash.lower())
    return [_to_response(r) for r in records]


@router.get("/{external_id}", response_model=FileResponse)
async def get_file(
    record: FileRecord = Depends(get_file_record),
    repository: MetadataRepository = Depends(get_repository),
):
    """Get file metadata with its properties and tags."""
    properties = await repository.get_properties(record.object_key)
    tags = await repository.get_tags(record.object_key)
    return _to_response(record, properties, tags)


@router.get("/{external_id}/content")
async def get_file_content(
    width: Optional[int] = Query(None, ge=1, le=8192),
    height: Optional[int] = Query(None, ge=1, le=8192),
    fit: Optional[str] = Query(None),
    format: Optional[str] = Query(None),
    quality: Optional[int] = Query(None, ge=1, le=100),
    record: FileRecord = Depends(get_file_record),
    content_store: ContentStore = Depends(get_content_store),
    image_service: ImageService = Depends(get_image_service),
):
    """Serve stored bytes, optionally resized or re-encoded."""
    if fit is not None and fit not in FIT_MODES:
        raise bad_request(f"Unsupported fit: {fit}. Allowed: {', '.join(FIT_MODES)}")
    if format is not None and format not in OUTPUT_FORMATS:
        raise bad_request(f"Unsupported format: {format}. Allowed: {', '.join(OUTPUT_FORMATS)}")
    params = TransformParams(width=width, height=height, fit=fit, quality=quality, format=format)

    headers = {
        "Content-Disposition": f'inline; filename="{record.filename}"',
        "ETag": f'"{record.content_hash}"',
        "Cache-Control": CACHE_CONTROL,
    }
    stream = await content_store.get(record.content_hash)

    # Vector images are served as-is
    if not params.requested or record.content_type == SVG_MIME:
        headers["Content-Length"] = str(record.size)
        return StreamingResponse(stream, media_type=record.content_type, headers=headers)

    data = b"".join([chunk async for chunk in stream])
    try:
        body, content_type = await image_service.transform(data, params)
    except ImageTooLargeError as exc:
        raise bad_request("Image dimensions are too large") from exc
    except InvalidImageError as exc:
        raise unsupported_media_type("Stored file cannot be transformed") from exc
    return Response(content=body, media_type=content_type, headers=headers)


@router.delete("/{external_id}", response_model=DeleteResponse)
async def delete_file(
    record: FileRecord = Depends(get_file_record),
    repository: MetadataRepository = Depends(get_repository),
):
    """Soft-delete a file record. The stored bytes may be shared and are kept."""
    await repository.soft_delete(record)
    return DeleteResponse(deleted=True, id=record.external_id)
