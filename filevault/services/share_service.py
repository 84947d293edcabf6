"""Share grants: owner-issued VIEW/EDIT access to a file.

Only the file's current owner may create, change or revoke a grant. Expiry
is never enforced by a background job; readers go through
``active_share_for`` (or ``active_share_filter`` in queries) to decide
whether a grant still counts.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from filevault.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from filevault.models.file import File, FileStatus, to_naive_utc, utcnow
from filevault.models.file_share import FileShare, SharePermission

logger = logging.getLogger(__name__)

# Marks an update field the caller did not supply
UNSET = object()


def is_share_active(share: FileShare, now: datetime) -> bool:
    return share.expires_at is None or share.expires_at > now


def active_share_filter(now: datetime):
    """SQL form of ``is_share_active``."""
    return or_(FileShare.expires_at.is_(None), FileShare.expires_at > now)


class ShareService:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _load_owned_file(self, file_id: str, owner_id: str) -> File:
        file_record = self.db.execute(
            select(File).where(File.id == file_id).with_for_update()
        ).scalar_one_or_none()
        if file_record is None:
            raise NotFoundError(f"File {file_id} not found")
        if file_record.owner_id != owner_id:
            raise PermissionDeniedError("Only the file owner can manage its shares")
        return file_record

    def _load_share_for_owner(self, share_id: str, owner_id: str) -> FileShare:
        share = self.db.execute(
            select(FileShare).where(FileShare.id == share_id).with_for_update()
        ).scalar_one_or_none()
        if share is None:
            raise NotFoundError(f"Share {share_id} not found")
        # Ownership is judged on the file, not on who issued the grant
        if share.file is None or share.file.owner_id != owner_id:
            raise PermissionDeniedError("Only the file owner can manage its shares")
        return share

    def active_share_for(self, file_id: str, user_id: str) -> Optional[FileShare]:
        """The grantee's share on a file, or None when absent or expired."""
        share = self.db.execute(
            select(FileShare).where(FileShare.file_id == file_id, FileShare.user_id == user_id)
        ).scalar_one_or_none()
        if share is None or not is_share_active(share, self.clock()):
            return None
        return share

    def list_shares(self, file_id: str, owner_id: str) -> List[FileShare]:
        file_record = self.db.get(File, file_id)
        if file_record is None:
            raise NotFoundError(f"File {file_id} not found")
        if file_record.owner_id != owner_id:
            raise PermissionDeniedError("Only the file owner can list its shares")
        return list(
            self.db.execute(
                select(FileShare).where(FileShare.file_id == file_id).order_by(FileShare.shared_at)
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def share_file(
        self,
        file_id: str,
        owner_id: str,
        grantee_id: str,
        permission: SharePermission = SharePermission.VIEW,
        expires_at: Optional[datetime] = None,
    ) -> FileShare:
        """Grant ``grantee_id`` access to a file.

        A second grant to the same grantee replaces the first one's
        permission and expiry instead of creating a duplicate row.
        """
        try:
            file_record = self._load_owned_file(file_id, owner_id)
            if grantee_id == owner_id:
                raise ValidationError("Cannot share a file with its owner")
            if file_record.status != FileStatus.ACTIVE:
                raise ValidationError(f"Cannot share a file in status {file_record.status.value}")

            expires_at = to_naive_utc(expires_at)
            if expires_at is not None and expires_at <= self.clock():
                raise ValidationError("Share expiry must be in the future")

            share = self.db.execute(
                select(FileShare).where(FileShare.file_id == file_id, FileShare.user_id == grantee_id)
            ).scalar_one_or_none()
            if share is None:
                share = FileShare(
                    file_id=file_id,
                    user_id=grantee_id,
                    shared_by_id=owner_id,
                    permission=permission,
                    expires_at=expires_at,
                    shared_at=self.clock(),
                )
                self.db.add(share)
            else:
                share.permission = permission
                share.expires_at = expires_at
                share.shared_by_id = owner_id
                share.shared_at = self.clock()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(share)
        logger.info("File %s shared with %s (%s)", file_id, grantee_id, permission.value)
        return share

    def update_file_share(
        self,
        share_id: str,
        owner_id: str,
        permission=UNSET,
        expires_at=UNSET,
    ) -> FileShare:
        try:
            share = self._load_share_for_owner(share_id, owner_id)
            if permission is not UNSET:
                if permission is None:
                    raise ValidationError("permission cannot be null")
                share.permission = SharePermission(permission)
            if expires_at is not UNSET:
                share.expires_at = to_naive_utc(expires_at)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(share)
        logger.info("Share %s updated by %s", share_id, owner_id)
        return share

    def remove_file_share(self, share_id: str, owner_id: str) -> None:
        try:
            share = self._load_share_for_owner(share_id, owner_id)
            self.db.delete(share)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Share %s revoked by %s", share_id, owner_id)
