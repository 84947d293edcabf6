import json
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import FileResponse, Response

from filevault.api.deps import get_current_identity, get_file_service
from filevault.core.security import decode_download_token
from filevault.models.file import FileStatus
from filevault.schemas.common import StandardResponse
from filevault.schemas.file import (
    BatchDeleteRequest,
    BatchDeleteResult,
    BatchTagRequest,
    BatchTagResult,
    CategoryUpdate,
    FileOut,
    FileSearchFilter,
    FileStatsOut,
    FileSummaryOut,
    FileUrlOut,
    FileVersionOut,
    TagsUpdate,
)
from filevault.schemas.identity import Identity
from filevault.services.file_service import FileService
from filevault.storage.blob_store import LocalBlobStore

router = APIRouter()


def _summaries(files) -> List[FileSummaryOut]:
    return [FileSummaryOut.model_validate(f) for f in files]


# ============================================================================
# UPLOAD + VERSIONS
# ============================================================================

@router.post("/upload", response_model=StandardResponse[FileOut], status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: UploadFile = File(...),
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    """
    Upload a file (multipart field ``file``).

    - MIME type must be on the allow-list, size under MAX_FILE_SIZE
    - Payload is scanned before the file becomes usable
    - An infected upload returns 422; its quarantine record is kept
    """
    data = await file.read()
    mime_type = file.content_type or "application/octet-stream"
    record = service.upload_file(data, file.filename or "", mime_type, len(data), identity.id)
    return StandardResponse(
        success=True,
        message=f"File {record.name} uploaded",
        data=FileOut.model_validate(record),
    )


@router.post("/{file_id}/versions", response_model=StandardResponse[FileOut], status_code=status.HTTP_201_CREATED)
async def create_version(
    file_id: str,
    file: UploadFile = File(...),
    change_description: Optional[str] = Form(None),
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    data = await file.read()
    record = service.create_new_version(file_id, data, identity.id, change_description)
    return StandardResponse(
        success=True,
        message=f"Version {record.current_version} created",
        data=FileOut.model_validate(record),
    )


@router.get("/{file_id}/versions", response_model=StandardResponse[List[FileVersionOut]])
def list_versions(
    file_id: str,
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    versions = service.list_versions(file_id, identity.id)
    return StandardResponse(
        success=True,
        message=f"{len(versions)} versions",
        data=[FileVersionOut.model_validate(v) for v in versions],
    )


@router.get("/{file_id}/versions/{version_number}/url", response_model=StandardResponse[FileUrlOut])
def get_version_url(
    file_id: str,
    version_number: int,
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    url = service.get_version_url(file_id, version_number, identity.id)
    return StandardResponse(data=FileUrlOut(url=url, expires_in=service.config.URL_EXPIRATION_SECONDS))


# ============================================================================
# SEARCH / LIST / STATS
# ============================================================================

@router.get("/search", response_model=StandardResponse[List[FileSummaryOut]])
def search_files(
    name: Optional[str] = Query(None, description="Case-insensitive substring of the file name"),
    mime_type: Optional[str] = Query(None),
    tags: Optional[str] = Query(None, description='JSON object, e.g. {"project": "alpha"}'),
    status_filter: Optional[FileStatus] = Query(None, alias="status"),
    shared_with_me: bool = Query(False),
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    parsed_tags = None
    if tags:
        try:
            parsed_tags = json.loads(tags)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tags must be valid JSON")
        parsed_tags = service.validate_tags(parsed_tags)

    query = FileSearchFilter(
        name=name,
        mime_type=mime_type,
        tags=parsed_tags,
        status=status_filter,
        shared_with_me=shared_with_me,
    )
    files = service.search_files(identity.id, query)
    return StandardResponse(success=True, message=f"Found {len(files)} files", data=_summaries(files))


@router.get("/", response_model=StandardResponse[List[FileSummaryOut]])
def list_files(
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    files = service.list_files(identity.id)
    return StandardResponse(success=True, message=f"Found {len(files)} files", data=_summaries(files))


@router.delete("/", response_model=StandardResponse)
def delete_file_by_key(
    key: str = Query(..., description="Storage key of the file"),
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    record = service.delete_file(key, identity.id)
    return StandardResponse(success=True, message=f"Deleted '{record.name}'", data=None)


@router.get("/stats/me",response_model=StandardResponse[FileStatsOut])
def get_my_statistics(
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    """
    Storage statistics for the caller: file count, bytes, breakdown by
    MIME type and status. Deleted files are not counted.
    """
    return StandardResponse(data=FileStatsOut(**service.get_storage_stats(identity.id)))


# ============================================================================
# DOWNLOAD
# ============================================================================

@router.get("/url", response_model=StandardResponse[FileUrlOut])
def get_file_url(
    key: str = Query(..., description="Storage key of the file"),
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    url = service.get_file_url(key, identity.id)
    return StandardResponse(data=FileUrlOut(url=url, expires_in=service.config.URL_EXPIRATION_SECONDS))


@router.get("/blob")
def download_blob(request: Request, token: str = Query(...)):
    """Serve a local-backend blob for a signed download URL."""
    blob_store = request.app.state.blob_store
    key = decode_download_token(token)
    if key is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Download link invalid or expired")
    if not isinstance(blob_store, LocalBlobStore) or not blob_store.exists(key):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return FileResponse(path=blob_store.path_for(key), filename=key.rsplit("/", 1)[-1])


@router.get("/{file_id}/preview")
def get_file_preview(
    file_id: str,
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    thumbnail = service.render_preview(file_id, identity.id)
    return Response(content=thumbnail, media_type="image/png")


# ============================================================================
# BATCH
# ============================================================================

@router.post("/batch-delete", response_model=StandardResponse[BatchDeleteResult])
def batch_delete(
    payload: BatchDeleteRequest,
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    result = service.batch_delete_files(payload.file_ids, identity.id)
    return StandardResponse(
        success=True,
        message=f"Deleted {len(result['deleted'])}, failed {len(result['failed'])}",
        data=BatchDeleteResult(**result),
    )


@router.post("/batch-tag", response_model=StandardResponse[BatchTagResult])
def batch_tag(
    payload: BatchTagRequest,
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    result = service.batch_update_tags(payload.file_ids, identity.id, payload.tags)
    return StandardResponse(
        success=True,
        message=f"Updated {len(result['updated'])}, failed {len(result['failed'])}",
        data=BatchTagResult(**result),
    )


# ============================================================================
# SINGLE FILE
# ============================================================================

@router.get("/{file_id}", response_model=StandardResponse[FileOut])
def get_file_info(
    file_id: str,
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    record = service.get_file(file_id, identity.id)
    return StandardResponse(data=FileOut.model_validate(record))


@router.patch("/{file_id}/tags", response_model=StandardResponse[FileOut])
def update_tags(
    file_id: str,
    payload: TagsUpdate,
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    """Replace the file's tags; keys not in the payload are dropped."""
    record = service.update_file_tags(file_id, identity.id, payload.tags)
    return StandardResponse(message="Tags updated", data=FileOut.model_validate(record))


@router.patch("/{file_id}/category", response_model=StandardResponse[FileOut])
def update_category(
    file_id: str,
    payload: CategoryUpdate,
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    record = service.update_file_category(file_id, identity.id, payload.category)
    return StandardResponse(message="Category updated", data=FileOut.model_validate(record))


@router.delete("/{file_id}", response_model=StandardResponse)
def delete_file(
    file_id: str,
    identity: Identity = Depends(get_current_identity),
    service: FileService = Depends(get_file_service),
):
    """
    Soft delete: the record stays as DELETED, the blob and all shares go.
    Only the owner may delete; repeating the call is harmless.
    """
    record = service.get_file(file_id, identity.id)
    service.delete_file(record.key, identity.id)
    return StandardResponse(success=True, message=f"Deleted '{record.name}'", data=None)
