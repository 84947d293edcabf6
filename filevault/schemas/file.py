from pydantic import BaseModel, Field
from typing import Dict, Optional, List
from datetime import datetime

from filevault.models.file import FileStatus, ScanStatus
from filevault.models.file_share import SharePermission
from filevault.services.scanner import ScanResult

# =================================================================
# 1. Output Schemas
# =================================================================


class FileShareOut(BaseModel):
    id: str
    file_id: str
    user_id: str
    shared_by_id: str
    permission: SharePermission
    shared_at: datetime
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class FileVersionOut(BaseModel):
    id: str
    file_id: str
    key: str
    size: int
    uploaded_by: str
    uploaded_at: datetime
    version_number: int
    change_description: Optional[str] = None
    scan_status: ScanStatus
    scan_result: Optional[ScanResult] = None

    class Config:
        from_attributes = True


class FileOut(BaseModel):
    id: str
    key: str                # Blob store key (owner-namespaced)
    name: str               # Tên gốc user upload
    size: int               # Kích thước (bytes)
    mime_type: str
    owner_id: str
    uploaded_at: datetime
    updated_at: datetime
    last_accessed: Optional[datetime] = None
    tags: Dict[str, str] = {}
    category: Optional[str] = None
    status: FileStatus
    scan_status: ScanStatus
    scan_result: Optional[ScanResult] = None
    current_version: int
    versions: List[FileVersionOut] = []
    shared_with: List[FileShareOut] = Field(default=[], validation_alias="shares")

    class Config:
        from_attributes = True
        populate_by_name = True


class FileSummaryOut(BaseModel):
    """List/search row without version and share detail."""
    id: str
    key: str
    name: str
    size: int
    mime_type: str
    owner_id: str
    uploaded_at: datetime
    updated_at: datetime
    tags: Dict[str, str] = {}
    category: Optional[str] = None
    status: FileStatus
    scan_status: ScanStatus
    current_version: int

    class Config:
        from_attributes = True


class FileUrlOut(BaseModel):
    url: str
    expires_in: int


class FileStatsOut(BaseModel):
    total_files: int
    total_size_bytes: int
    total_size_mb: float
    files_by_mime_type: Dict[str, int]
    files_by_status: Dict[str, int]


class BatchDeleteResult(BaseModel):
    deleted: List[str]
    failed: List[str]


class BatchTagResult(BaseModel):
    updated: List[str]
    failed: List[str]


# =================================================================
# 2. Input Schemas
# =================================================================

class FileSearchFilter(BaseModel):
    name: Optional[str] = None
    mime_type: Optional[str] = None
    tags: Optional[Dict[str, str]] = None
    status: Optional[FileStatus] = None
    shared_with_me: bool = False


class TagsUpdate(BaseModel):
    tags: Dict[str, str]


class CategoryUpdate(BaseModel):
    # null clears the category
    category: Optional[str] = Field(..., min_length=1, max_length=100)


class BatchDeleteRequest(BaseModel):
    file_ids: List[str] = Field(..., min_length=1)


class BatchTagRequest(BaseModel):
    file_ids: List[str] = Field(..., min_length=1)
    tags: Dict[str, str]
