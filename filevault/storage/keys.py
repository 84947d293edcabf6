import hashlib
import secrets
from datetime import datetime, timezone
from typing import Optional


def _millis(now: Optional[datetime]) -> int:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return int(now.timestamp() * 1000)


def safe_filename(filename: str) -> str:
    """Last path component of a client-supplied name, never empty or a dot segment."""
    name = filename.replace("\\", "/").rsplit("/", 1)[-1].strip()
    if name in ("", ".", ".."):
        return "file"
    return name


def derive_file_key(filename: str, owner_id: str, now: Optional[datetime] = None) -> str:
    """``{owner}/{md5(name + millis + owner + nonce)}-{name}``.

    Namespacing by owner keeps keys from colliding across tenants; the nonce
    separates same-name uploads landing in the same millisecond.
    """
    filename = safe_filename(filename)
    seed = f"{filename}{_millis(now)}{owner_id}{secrets.token_hex(4)}"
    digest = hashlib.md5(seed.encode("utf-8")).hexdigest()
    return f"{owner_id}/{digest}-{filename}"


def derive_version_key(parent_key: str, now: Optional[datetime] = None) -> str:
    """Versions live next to the parent blob: ``{parent}_v{millis}-{nonce}``.

    The nonce keeps two versions written in the same millisecond apart.
    """
    return f"{parent_key}_v{_millis(now)}-{secrets.token_hex(3)}"
