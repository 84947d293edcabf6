"""Tests for share grants."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from filevault.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from filevault.models.file import utcnow
from filevault.models.file_share import FileShare, SharePermission
from filevault.services.share_service import ShareService, is_share_active


@pytest.fixture
def shares(db):
    return ShareService(db)


def _share_count(db):
    return db.execute(select(func.count()).select_from(FileShare)).scalar_one()


def test_permission_hierarchy():
    assert SharePermission.EDIT.includes(SharePermission.VIEW)
    assert SharePermission.EDIT.includes(SharePermission.EDIT)
    assert SharePermission.VIEW.includes(SharePermission.VIEW)
    assert not SharePermission.VIEW.includes(SharePermission.EDIT)


def test_owner_can_share_update_and_revoke(upload, shares, db):
    record = upload("A")

    share = shares.share_file(record.id, "A", "B", SharePermission.VIEW)
    assert share.user_id == "B"
    assert share.shared_by_id == "A"
    assert share.permission == SharePermission.VIEW
    assert share.expires_at is None

    updated = shares.update_file_share(share.id, "A", permission=SharePermission.EDIT)
    assert updated.permission == SharePermission.EDIT

    assert [s.id for s in shares.list_shares(record.id, "A")] == [share.id]

    shares.remove_file_share(share.id, "A")
    assert _share_count(db) == 0
    assert shares.active_share_for(record.id, "B") is None


def test_second_grant_replaces_first(upload, shares, db):
    record = upload("A")

    first = shares.share_file(record.id, "A", "B", SharePermission.VIEW)
    second = shares.share_file(record.id, "A", "B", SharePermission.EDIT)

    assert first.id == second.id
    assert second.permission == SharePermission.EDIT
    assert _share_count(db) == 1


def test_non_owner_cannot_manage_shares(upload, shares, db):
    record = upload("A")
    share = shares.share_file(record.id, "A", "B")

    with pytest.raises(PermissionDeniedError):
        shares.share_file(record.id, "B", "C")
    with pytest.raises(PermissionDeniedError):
        shares.update_file_share(share.id, "B", permission=SharePermission.EDIT)
    with pytest.raises(PermissionDeniedError):
        shares.remove_file_share(share.id, "C")
    with pytest.raises(PermissionDeniedError):
        shares.list_shares(record.id, "B")

    db.expire_all()
    stored = db.get(FileShare, share.id)
    assert stored.permission == SharePermission.VIEW
    assert _share_count(db) == 1


def test_cannot_share_with_owner(upload, shares, db):
    record = upload("A")
    with pytest.raises(ValidationError):
        shares.share_file(record.id, "A", "A")
    assert _share_count(db) == 0


def test_expiry_must_be_in_future(upload, shares):
    record = upload("A")
    with pytest.raises(ValidationError):
        shares.share_file(record.id, "A", "B", expires_at=utcnow() - timedelta(minutes=5))


def test_aware_expiry_is_stored_as_utc(upload, shares):
    record = upload("A")
    expiry = datetime.now(timezone(timedelta(hours=2))) + timedelta(days=1)

    share = shares.share_file(record.id, "A", "B", expires_at=expiry)

    assert share.expires_at.tzinfo is None
    assert abs(share.expires_at - expiry.astimezone(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=1)


def test_unknown_targets_are_not_found(upload, shares):
    with pytest.raises(NotFoundError):
        shares.share_file("missing", "A", "B")
    with pytest.raises(NotFoundError):
        shares.update_file_share("missing", "A", permission=SharePermission.VIEW)
    with pytest.raises(NotFoundError):
        shares.remove_file_share("missing", "A")


def test_partial_update_keeps_other_fields(upload, shares):
    record = upload("A")
    expiry = utcnow() + timedelta(days=2)
    share = shares.share_file(record.id, "A", "B", SharePermission.EDIT, expires_at=expiry)

    updated = shares.update_file_share(share.id, "A", expires_at=None)
    assert updated.permission == SharePermission.EDIT
    assert updated.expires_at is None

    updated = shares.update_file_share(share.id, "A", permission=SharePermission.VIEW)
    assert updated.permission == SharePermission.VIEW
    assert updated.expires_at is None

    with pytest.raises(ValidationError):
        shares.update_file_share(share.id, "A", permission=None)


def test_expired_grant_is_inactive(upload, shares, db):
    record = upload("A")
    share = shares.share_file(record.id, "A", "B", expires_at=utcnow() + timedelta(hours=1))
    assert shares.active_share_for(record.id, "B") is not None

    later = utcnow() + timedelta(hours=2)
    assert not is_share_active(share, later)
    assert ShareService(db, clock=lambda: later).active_share_for(record.id, "B") is None


def test_cannot_share_deleted_file(upload, service, shares):
    record = upload("A")
    service.delete_file(record.key, "A")

    with pytest.raises(ValidationError):
        shares.share_file(record.id, "A", "B")
