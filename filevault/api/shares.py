from typing import List

from fastapi import APIRouter, Depends, status

from filevault.api.deps import get_current_identity, get_share_service
from filevault.schemas.common import StandardResponse
from filevault.schemas.file import FileShareOut
from filevault.schemas.identity import Identity
from filevault.schemas.share import ShareCreate, ShareUpdate
from filevault.services.share_service import UNSET, ShareService

router = APIRouter()


@router.post("/{file_id}/share", response_model=StandardResponse[FileShareOut], status_code=status.HTTP_201_CREATED)
def share_file(
    file_id: str,
    payload: ShareCreate,
    identity: Identity = Depends(get_current_identity),
    service: ShareService = Depends(get_share_service),
):
    """
    Share a file with another user.

    - Only the owner can share
    - Sharing again with the same user replaces the earlier grant
    """
    share = service.share_file(file_id, identity.id, payload.user_id, payload.permission, payload.expires_at)
    return StandardResponse(
        success=True,
        message=f"Shared with {share.user_id}",
        data=FileShareOut.model_validate(share),
    )


@router.get("/{file_id}/shares", response_model=StandardResponse[List[FileShareOut]])
def list_shares(
    file_id: str,
    identity: Identity = Depends(get_current_identity),
    service: ShareService = Depends(get_share_service),
):
    shares = service.list_shares(file_id, identity.id)
    return StandardResponse(data=[FileShareOut.model_validate(s) for s in shares])


@router.patch("/shares/{share_id}", response_model=StandardResponse[FileShareOut])
def update_share(
    share_id: str,
    payload: ShareUpdate,
    identity: Identity = Depends(get_current_identity),
    service: ShareService = Depends(get_share_service),
):
    provided = payload.model_fields_set
    share = service.update_file_share(
        share_id,
        identity.id,
        permission=payload.permission if "permission" in provided else UNSET,
        expires_at=payload.expires_at if "expires_at" in provided else UNSET,
    )
    return StandardResponse(message="Share updated", data=FileShareOut.model_validate(share))


@router.delete("/shares/{share_id}", response_model=StandardResponse)
def remove_share(
    share_id: str,
    identity: Identity = Depends(get_current_identity),
    service: ShareService = Depends(get_share_service),
):
    service.remove_file_share(share_id, identity.id)
    return StandardResponse(success=True, message="Share removed", data=None)
