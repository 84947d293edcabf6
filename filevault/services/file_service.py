"""File lifecycle: upload, versioning, retrieval, search, tagging, deletion.

Every state change follows a fixed order so the blob store and the
metadata store never disagree in a way a caller can observe:

* upload / new version: blob put -> scan -> metadata commit. An unclean
  verdict still commits a QUARANTINED/INFECTED audit row, then purges the
  blob and raises ``ScanFailure``.
* delete: metadata commit (status=DELETED, shares dropped) -> blob delete.

Ownership checks and the mutation they guard run in one transaction, with
the file row locked where the database supports it.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from filevault.core.config import Settings, settings as default_settings
from filevault.core.exceptions import (
    FileUnavailableError,
    FileVaultError,
    NotFoundError,
    PayloadTooLargeError,
    PermissionDeniedError,
    ScanFailure,
    StorageError,
    UnsupportedMediaError,
    ValidationError,
)
from filevault.models.file import File, FileStatus, ScanStatus, utcnow
from filevault.models.file_share import FileShare, SharePermission
from filevault.models.file_version import FileVersion
from filevault.schemas.file import FileSearchFilter
from filevault.services.preview import make_thumbnail
from filevault.services.scanner import ContentScanner, ScanResult
from filevault.services.share_service import ShareService, active_share_filter
from filevault.storage.blob_store import BlobStore
from filevault.storage.keys import derive_file_key, derive_version_key

logger = logging.getLogger(__name__)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class FileService:
    def __init__(
        self,
        db: Session,
        blob_store: BlobStore,
        scanner: ContentScanner,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.blob_store = blob_store
        self.scanner = scanner
        self.config = config or default_settings
        self.clock = clock
        self.shares = ShareService(db, clock)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_size(self, size: int) -> None:
        if size < 0:
            raise ValidationError("File size cannot be negative")
        if size > self.config.MAX_FILE_SIZE:
            raise PayloadTooLargeError(
                f"File size exceeds maximum allowed size of {self.config.MAX_FILE_SIZE} bytes"
            )

    def _validate_upload(self, mime_type: str, size: int, data: bytes) -> None:
        if mime_type not in self.config.get_allowed_mime_types_list():
            raise ValidationError(f"File type {mime_type} is not allowed")
        self._validate_size(size)
        self._validate_size(len(data))

    def validate_tags(self, tags) -> Dict[str, str]:
        if not isinstance(tags, dict):
            raise ValidationError("Tags must be an object of string values")
        if len(tags) > self.config.MAX_TAGS:
            raise ValidationError(f"At most {self.config.MAX_TAGS} tags are allowed")
        limit = self.config.MAX_TAG_LENGTH
        for name, value in tags.items():
            if not isinstance(name, str) or not isinstance(value, str):
                raise ValidationError("Tag names and values must be strings")
            if not name.strip():
                raise ValidationError("Tag names cannot be empty")
            # Names become JSON path segments in tag search
            if '"' in name or "\\" in name:
                raise ValidationError('Tag names cannot contain \'"\' or \'\\\'')
            if len(name) > limit or len(value) > limit:
                raise ValidationError(f"Tag names and values are limited to {limit} characters")
        return dict(tags)

    def _validate_batch(self, file_ids: Sequence[str]) -> List[str]:
        if not file_ids:
            raise ValidationError("file_ids must be a non-empty list")
        if len(file_ids) > self.config.MAX_BATCH_SIZE:
            raise ValidationError(f"At most {self.config.MAX_BATCH_SIZE} files per batch")
        return list(file_ids)

    # ------------------------------------------------------------------
    # Lookups and authorization
    # ------------------------------------------------------------------

    def _get(self, file_id: str, lock: bool = False) -> File:
        stmt = select(File).where(File.id == file_id)
        if lock:
            stmt = stmt.with_for_update()
        file_record = self.db.execute(stmt).scalar_one_or_none()
        if file_record is None:
            raise NotFoundError(f"File {file_id} not found")
        return file_record

    def _get_by_key(self, key: str, lock: bool = False) -> File:
        stmt = select(File).where(File.key == key)
        if lock:
            stmt = stmt.with_for_update()
        file_record = self.db.execute(stmt).scalar_one_or_none()
        if file_record is None:
            raise NotFoundError("File not found")
        return file_record

    def _get_owned(self, file_id: str, owner_id: str) -> File:
        file_record = self._get(file_id, lock=True)
        if file_record.owner_id != owner_id:
            raise PermissionDeniedError("Only the file owner can modify this file")
        return file_record

    def authorize(self, file_record: File, requester_id: Optional[str], needed: SharePermission) -> None:
        """Owner always passes; anyone else needs an unexpired share covering ``needed``."""
        if requester_id is None or file_record.owner_id == requester_id:
            return
        share = self.shares.active_share_for(file_record.id, requester_id)
        if share is None or not share.permission.includes(needed):
            raise PermissionDeniedError("You do not have access to this file")

    @staticmethod
    def _ensure_readable(file_record: File) -> None:
        if file_record.status == FileStatus.DELETED:
            raise FileUnavailableError("File has been deleted")
        if file_record.scan_status == ScanStatus.INFECTED or file_record.status == FileStatus.QUARANTINED:
            raise FileUnavailableError("File is infected and cannot be downloaded")

    def _current_blob_key(self, file_record: File) -> str:
        """Key holding the file's current content (latest clean version)."""
        if file_record.current_version <= 1:
            return file_record.key
        version = self.db.execute(
            select(FileVersion).where(
                FileVersion.file_id == file_record.id,
                FileVersion.version_number == file_record.current_version,
            )
        ).scalar_one_or_none()
        return version.key if version is not None else file_record.key

    def get_file(self, file_id: str, requester_id: Optional[str] = None) -> File:
        file_record = self._get(file_id)
        self.authorize(file_record, requester_id, SharePermission.VIEW)
        return file_record

    # ------------------------------------------------------------------
    # Blob helpers
    # ------------------------------------------------------------------

    def _purge_blob(self, key: str, reason: str) -> None:
        """Best-effort delete; failures leave an orphan that is logged for reconciliation."""
        try:
            self.blob_store.delete(key)
        except StorageError as exc:
            logger.error("Orphaned blob %s (%s): delete failed: %s", key, reason, exc)

    def _scan_or_compensate(self, key: str, data: bytes, filename: str) -> ScanResult:
        try:
            return self.scanner.scan(data, filename)
        except Exception:
            self._purge_blob(key, "scan crashed")
            raise

    # ------------------------------------------------------------------
    # Upload and versioning
    # ------------------------------------------------------------------

    def upload_file(self, data: bytes, filename: str, mime_type: str, size: int, owner_id: str) -> File:
        """Store, scan and register a new file owned by ``owner_id``.

        Returns the ACTIVE file on a clean verdict. Any other verdict commits
        a QUARANTINED audit row, purges the blob and raises ``ScanFailure``.
        """
        self._validate_upload(mime_type, size, data)
        if not filename or not filename.strip():
            raise ValidationError("Filename is required")

        now = self.clock()
        key = derive_file_key(filename, owner_id, now)
        self.blob_store.put(
            key,
            data,
            mime_type,
            encrypt=self.config.STORAGE_ENCRYPTION_ENABLED,
            metadata={"uploadedBy": owner_id, "originalName": filename},
        )
        logger.info("Stored blob %s for %s (%d bytes)", key, owner_id, len(data))

        scan = self._scan_or_compensate(key, data, filename)
        clean = scan.is_clean

        file_record = File(
            key=key,
            name=filename,
            size=size,
            mime_type=mime_type,
            owner_id=owner_id,
            tags=scan.as_tags(),
            status=FileStatus.ACTIVE if clean else FileStatus.QUARANTINED,
            scan_status=ScanStatus.CLEAN if clean else ScanStatus.INFECTED,
            scan_result=scan.model_dump(mode="json"),
            current_version=1,
            version_counter=1,
            uploaded_at=now,
            updated_at=now,
        )
        # The upload itself is version 1 and shares the parent's blob
        file_record.versions.append(
            FileVersion(
                key=key,
                size=size,
                uploaded_by=owner_id,
                uploaded_at=now,
                version_number=1,
                change_description="Initial upload",
                scan_status=file_record.scan_status,
                scan_result=file_record.scan_result,
            )
        )
        try:
            self.db.add(file_record)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            self._purge_blob(key, "metadata insert failed")
            raise

        if not clean:
            logger.warning("Quarantined upload %s from %s: %s", file_record.id, owner_id, scan.describe())
            self._purge_blob(key, "quarantine")
            raise ScanFailure(f"File scan failed: {scan.describe()}", scan_result=scan, file_id=file_record.id)

        logger.info("Upload %s accepted as %s", filename, file_record.id)
        return file_record

    def _allocate_version_number(self, file_id: str) -> int:
        """Bump the file's version counter; the row stays locked until commit."""
        result = self.db.execute(
            update(File)
            .where(File.id == file_id, File.status == FileStatus.ACTIVE)
            .values(version_counter=File.version_counter + 1, updated_at=File.updated_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise FileUnavailableError("File is no longer active")
        return self.db.execute(select(File.version_counter).where(File.id == file_id)).scalar_one()

    def create_new_version(
        self,
        file_id: str,
        data: bytes,
        uploader_id: str,
        change_description: Optional[str] = None,
    ) -> File:
        """Upload a new revision of an existing file.

        The uploader must own the file or hold an EDIT share. Version numbers
        are handed out by an atomic counter on the file row, so concurrent
        uploads get distinct, increasing numbers.
        """
        parent = self._get(file_id)
        self.authorize(parent, uploader_id, SharePermission.EDIT)
        if parent.status != FileStatus.ACTIVE:
            raise FileUnavailableError(f"Cannot version a file in status {parent.status.value}")
        self._validate_size(len(data))
        if change_description is not None and len(change_description) > 500:
            raise ValidationError("Change description is limited to 500 characters")
        # End the read transaction before slow I/O so the counter bump starts clean
        self.db.commit()

        now = self.clock()
        key = derive_version_key(parent.key, now)
        self.blob_store.put(
            key,
            data,
            parent.mime_type,
            encrypt=self.config.STORAGE_ENCRYPTION_ENABLED,
            metadata={"uploadedBy": uploader_id, "originalName": parent.name, "parentFileId": parent.id},
        )
        scan = self._scan_or_compensate(key, data, parent.name)
        clean = scan.is_clean

        try:
            number = self._allocate_version_number(file_id)
            version = FileVersion(
                file_id=file_id,
                key=key,
                size=len(data),
                uploaded_by=uploader_id,
                uploaded_at=now,
                version_number=number,
                change_description=change_description,
                scan_status=ScanStatus.CLEAN if clean else ScanStatus.INFECTED,
                scan_result=scan.model_dump(mode="json"),
            )
            self.db.add(version)
            if clean:
                self.db.execute(
                    update(File)
                    .where(File.id == file_id)
                    .values(current_version=number, size=len(data), updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            self.db.commit()
        except (SQLAlchemyError, FileVaultError):
            self.db.rollback()
            self._purge_blob(key, "version insert failed")
            raise

        if not clean:
            logger.warning("Quarantined version %d of %s: %s", number, file_id, scan.describe())
            self._purge_blob(key, "quarantine")
            raise ScanFailure(f"File scan failed: {scan.describe()}", scan_result=scan, file_id=file_id)

        logger.info("Created version %d of %s by %s", number, file_id, uploader_id)
        # Reload columns and the version list written behind the ORM's back
        self.db.expire(parent)
        return parent

    def list_versions(self, file_id: str, requester_id: Optional[str] = None) -> List[FileVersion]:
        parent = self.get_file(file_id, requester_id)
        return list(
            self.db.execute(
                select(FileVersion)
                .where(FileVersion.file_id == parent.id)
                .order_by(FileVersion.version_number)
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _touch_last_accessed(self, file_record: File) -> None:
        now = self.clock()
        # Reads must not bump updated_at, which drives search ordering
        self.db.execute(
            update(File)
            .where(File.id == file_record.id)
            .values(last_accessed=now, updated_at=File.updated_at)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        file_record.last_accessed = now

    def get_file_url(self, key: str, requester_id: Optional[str] = None) -> str:
        file_record = self._get_by_key(key)
        # Strangers learn nothing about a file's state
        self.authorize(file_record, requester_id, SharePermission.VIEW)
        self._ensure_readable(file_record)
        self._touch_last_accessed(file_record)
        return self.blob_store.signed_url(self._current_blob_key(file_record), self.config.URL_EXPIRATION_SECONDS)

    def get_version_url(self, file_id: str, version_number: int, requester_id: Optional[str] = None) -> str:
        parent = self._get(file_id)
        self.authorize(parent, requester_id, SharePermission.VIEW)
        if parent.status == FileStatus.DELETED:
            raise FileUnavailableError("File has been deleted")
        version = self.db.execute(
            select(FileVersion).where(
                FileVersion.file_id == file_id,
                FileVersion.version_number == version_number,
            )
        ).scalar_one_or_none()
        if version is None:
            raise NotFoundError(f"Version {version_number} of file {file_id} not found")
        if version.scan_status != ScanStatus.CLEAN:
            raise FileUnavailableError("Version is infected and cannot be downloaded")
        self._touch_last_accessed(parent)
        return self.blob_store.signed_url(version.key, self.config.URL_EXPIRATION_SECONDS)

    def get_file_buffer(self, file_id: str, requester_id: Optional[str] = None) -> bytes:
        file_record = self.get_file(file_id, requester_id)
        self._ensure_readable(file_record)
        return self.blob_store.get(self._current_blob_key(file_record))

    def render_preview(self, file_id: str, requester_id: Optional[str] = None, max_size=(200, 200)) -> bytes:
        file_record = self.get_file(file_id, requester_id)
        if not file_record.mime_type.startswith("image/"):
            raise UnsupportedMediaError(f"Preview not supported for {file_record.mime_type}")
        return make_thumbnail(self.get_file_buffer(file_id, requester_id), max_size)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_files(self, requester_id: str, query: Optional[FileSearchFilter] = None) -> List[File]:
        query = query or FileSearchFilter()
        stmt = select(File)
        if query.shared_with_me:
            stmt = stmt.join(FileShare, FileShare.file_id == File.id).where(
                FileShare.user_id == requester_id,
                active_share_filter(self.clock()),
            )
        else:
            stmt = stmt.where(File.owner_id == requester_id)

        if query.name:
            pattern = f"%{_escape_like(query.name)}%"
            stmt = stmt.where(File.name.ilike(pattern, escape="\\"))
        if query.mime_type:
            stmt = stmt.where(File.mime_type == query.mime_type)
        if query.status:
            stmt = stmt.where(File.status == query.status)
        for tag_name, tag_value in (query.tags or {}).items():
            stmt = stmt.where(File.tags[tag_name].as_string() == tag_value)

        stmt = stmt.order_by(File.updated_at.desc(), File.id)
        return list(self.db.execute(stmt).scalars().unique())

    def list_files(self, owner_id: str) -> List[File]:
        return self.search_files(owner_id)

    def get_storage_stats(self, owner_id: str) -> dict:
        rows = self.db.execute(
            select(File.mime_type, File.status, func.count(File.id), func.coalesce(func.sum(File.size), 0))
            .where(File.owner_id == owner_id, File.status != FileStatus.DELETED)
            .group_by(File.mime_type, File.status)
        ).all()
        by_mime: Dict[str, int] = {}
        by_status: Dict[str, int] = {}
        total_files = 0
        total_size = 0
        for mime_type, status, count, size in rows:
            by_mime[mime_type] = by_mime.get(mime_type, 0) + count
            by_status[status.value] = by_status.get(status.value, 0) + count
            total_files += count
            total_size += int(size)
        return {
            "total_files": total_files,
            "total_size_bytes": total_size,
            "total_size_mb": round(total_size / 1024 / 1024, 2),
            "files_by_mime_type": by_mime,
            "files_by_status": by_status,
        }

    # ------------------------------------------------------------------
    # Tags and category
    # ------------------------------------------------------------------

    def _apply_tags(self, file_id: str, owner_id: str, tags: Dict[str, str]) -> File:
        file_record = self._get_owned(file_id, owner_id)
        if file_record.status == FileStatus.DELETED:
            raise FileUnavailableError("File has been deleted")
        # Full replace, never a merge
        file_record.tags = dict(tags)
        return file_record

    def update_file_tags(self, file_id: str, owner_id: str, tags: Dict[str, str]) -> File:
        tags = self.validate_tags(tags)
        try:
            file_record = self._apply_tags(file_id, owner_id, tags)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return file_record

    def update_file_category(self, file_id: str, owner_id: str, category: Optional[str]) -> File:
        """Set the file's category; ``None`` clears it."""
        if category is not None:
            if not isinstance(category, str) or not category.strip():
                raise ValidationError("Category must be a non-empty string or null")
            if len(category) > 100:
                raise ValidationError("Category is limited to 100 characters")
            category = category.strip()
        try:
            file_record = self._get_owned(file_id, owner_id)
            if file_record.status == FileStatus.DELETED:
                raise FileUnavailableError("File has been deleted")
            file_record.category = category
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return file_record

    def batch_update_tags(self, file_ids: Sequence[str], owner_id: str, tags: Dict[str, str]) -> dict:
        file_ids = self._validate_batch(file_ids)
        tags = self.validate_tags(tags)
        updated: List[str] = []
        failed: List[str] = []
        for file_id in file_ids:
            try:
                self._apply_tags(file_id, owner_id, tags)
                self.db.commit()
                updated.append(file_id)
            except (FileVaultError, SQLAlchemyError) as exc:
                self.db.rollback()
                logger.info("Batch tag skipped %s: %s", file_id, exc)
                failed.append(file_id)
        return {"updated": updated, "failed": failed}

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def _soft_delete(self, file_record: File) -> None:
        version_keys = self.db.execute(
            select(FileVersion.key).where(
                FileVersion.file_id == file_record.id,
                FileVersion.scan_status == ScanStatus.CLEAN,
            )
        ).scalars()
        # Version 1 points at the parent blob; dedupe keeps one delete per key
        blob_keys = list(dict.fromkeys([file_record.key, *version_keys]))
        file_record.status = FileStatus.DELETED
        self.db.execute(delete(FileShare).where(FileShare.file_id == file_record.id))
        self.db.commit()
        self.db.expire(file_record, ["shares"])
        logger.info("File %s marked deleted", file_record.id)
        # Metadata is already terminal; a failed blob delete only leaves an orphan
        for blob_key in blob_keys:
            self._purge_blob(blob_key, "file deleted")

    def delete_file(self, key: str, owner_id: Optional[str] = None) -> File:
        """Soft-delete the file stored under ``key``.

        Deleting an already deleted file is a no-op.
        """
        try:
            file_record = self._get_by_key(key, lock=True)
            if owner_id is not None and file_record.owner_id != owner_id:
                raise PermissionDeniedError("Only the file owner can delete this file")
            if file_record.status == FileStatus.DELETED:
                self.db.commit()
                return file_record
            self._soft_delete(file_record)
        except Exception:
            self.db.rollback()
            raise
        return file_record

    def batch_delete_files(self, file_ids: Sequence[str], owner_id: str) -> dict:
        file_ids = self._validate_batch(file_ids)
        deleted: List[str] = []
        failed: List[str] = []
        for file_id in file_ids:
            try:
                file_record = self._get_owned(file_id, owner_id)
                if file_record.status != FileStatus.DELETED:
                    self._soft_delete(file_record)
                else:
                    self.db.commit()
                deleted.append(file_id)
            except (FileVaultError, SQLAlchemyError) as exc:
                self.db.rollback()
                logger.info("Batch delete skipped %s: %s", file_id, exc)
                failed.append(file_id)
        return {"deleted": deleted, "failed": failed}
