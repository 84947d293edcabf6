from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from filevault.models.file_share import SharePermission


class ShareCreate(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    permission: SharePermission = SharePermission.VIEW
    expires_at: Optional[datetime] = None


class ShareUpdate(BaseModel):
    """Partial update: only fields present in the request body change.

    Sending ``"expires_at": null`` clears the expiry.
    """
    permission: Optional[SharePermission] = None
    expires_at: Optional[datetime] = None
