"""Property and tag routes, scoped to one file record."""
from fastapi import APIRouter, Depends

from gleaming.dependencies import get_file_record, get_repository
from gleaming.errors import not_found
from gleaming.models import FileRecord, TAG_PREFIX
from gleaming.schemas.common import DeleteResponse
from gleaming.schemas.property import PropertyResponse, PropertyValue, TagsResponse
from gleaming.services.metadata_repository import MetadataRepository

router = APIRouter(prefix="/api/files/{external_id}", tags=["properties"])


@router.get("/properties", response_model=dict[str, str])
async def list_properties(
    record: FileRecord = Depends(get_file_record),
    repository: MetadataRepository = Depends(get_repository),
):
    return await repository.get_properties(record.object_key)


@router.get("/properties/{key}", response_model=PropertyResponse)
async def get_property(
    key: str,
    record: FileRecord = Depends(get_file_record),
    repository: MetadataRepository = Depends(get_repository),
):
    prop = await repository.get_property(record.object_key, key)
    if prop is None or key.startswith(TAG_PREFIX):
        raise not_found("Property")
    return PropertyResponse(key=prop.key, value=prop.value)


@router.put("/properties/{key}", response_model=PropertyResponse)
async def put_property(
    key: str,
    body: PropertyValue,
    record: FileRecord = Depends(get_file_record),
    repository: MetadataRepository = Depends(get_repository),
):
    """Create or overwrite a property value."""
    prop = await repository.upsert_property(record, key, body.value)
    return PropertyResponse(key=prop.key, value=prop.value)


@router.delete("/properties/{key}", response_model=DeleteResponse)
async def delete_property(
    key: str,
    record: FileRecord = Depends(get_file_record),
    repository: MetadataRepository = Depends(get_repository),
):
    if key.startswith(TAG_PREFIX) or not await repository.delete_property(record.object_key, key):
        raise not_found("Property")
    return DeleteResponse(deleted=True, id=key)


@router.get("/tags", response_model=TagsResponse)
async def list_tags(
    record: FileRecord = Depends(get_file_record),
    repository: MetadataRepository = Depends(get_repository),
):
    return TagsResponse(tags=await repository.get_tags(record.object_key))


@router.put("/tags/{tag}", response_model=TagsResponse)
async def add_tag(
    tag: str,
    record: FileRecord = Depends(get_file_record),
    repository: MetadataRepository = Depends(get_repository),
):
    return TagsResponse(tags=await repository.add_tag(record, tag))


@router.delete("/tags/{tag}", response_model=TagsResponse)
async def remove_tag(
    tag: str,
    record: FileRecord = Depends(get_file_record),
    repository: MetadataRepository = Depends(get_repository),
):
    if not await repository.remove_tag(record.object_key, tag):
        raise not_found("Tag")
    return TagsResponse(tags=await repository.get_tags(record.object_key))
