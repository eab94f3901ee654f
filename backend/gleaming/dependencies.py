"""FastAPI dependencies wiring request-scoped services to app-wide resources.

Long-lived pieces (content store, fetcher, validator) are created once in the
application lifespan and kept on ``app.state``; the repository and the
orchestrator are cheap and built per request around the request's session.
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from gleaming.database import get_db
from gleaming.errors import not_found
from gleaming.models import FileRecord
from gleaming.services.file_storage import ContentStore
from gleaming.services.image_service import ImageService
from gleaming.services.ingestion import IngestionOrchestrator, RequestContext
from gleaming.services.metadata_repository import MetadataRepository


def request_context(request: Request) -> RequestContext:
    """Client IP (first X-Forwarded-For hop, else the peer) and user agent."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        client_ip = forwarded.split(",", 1)[0].strip() or None
    else:
        client_ip = request.client.host if request.client else None
    return RequestContext(client_ip=client_ip, user_agent=request.headers.get("user-agent"))


def get_repository(db: AsyncSession = Depends(get_db)) -> MetadataRepository:
    return MetadataRepository(db)


def get_content_store(request: Request) -> ContentStore:
    return request.app.state.content_store


def get_image_service(request: Request) -> ImageService:
    return request.app.state.image_service


def get_orchestrator(
    request: Request,
    repository: MetadataRepository = Depends(get_repository),
) -> IngestionOrchestrator:
    state = request.app.state
    return IngestionOrchestrator(
        state.ingest_config,
        content_store=state.content_store,
        repository=repository,
        validator=state.validator,
        fetcher=state.fetcher,
    )


async def get_file_record(
    external_id: str,
    repository: MetadataRepository = Depends(get_repository),
) -> FileRecord:
    """Resolve the ``external_id`` path parameter to a live record or 404."""
    record = await repository.get_by_external_id(external_id)
    if record is None:
        raise not_found("File")
    return record
