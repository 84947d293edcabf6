import enum
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Column, Integer, String, BigInteger, DateTime, JSON, Enum
from sqlalchemy.orm import relationship
from filevault.db.session import Base


def utcnow() -> datetime:
    # Naive UTC so values compare cleanly with what SQLite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class FileStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    QUARANTINED = "QUARANTINED"
    DELETED = "DELETED"


class ScanStatus(str, enum.Enum):
    PENDING = "PENDING"
    CLEAN = "CLEAN"
    INFECTED = "INFECTED"


class File(Base):
    __tablename__ = "files"

    id = Column(String(36), primary_key=True, default=new_id)
    key = Column(String(1024), nullable=False, unique=True)  # Blob store key, never rewritten
    name = Column(String(255), nullable=False, index=True)
    size = Column(BigInteger, nullable=False)  # Size in bytes
    mime_type = Column(String(100), nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)

    # Metadata
    tags = Column(JSON, nullable=False, default=dict)
    category = Column(String(100), nullable=True, index=True)
    status = Column(Enum(FileStatus, name="file_status"), nullable=False, default=FileStatus.ACTIVE, index=True)
    scan_status = Column(Enum(ScanStatus, name="scan_status"), nullable=False, default=ScanStatus.PENDING)
    scan_result = Column(JSON, nullable=True)
    # Latest clean version; the original upload is version 1
    current_version = Column(Integer, nullable=False, default=1)
    # Highest version number handed out, clean or not; bumped atomically
    version_counter = Column(Integer, nullable=False, default=1)

    # Timestamps
    uploaded_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False, index=True)
    last_accessed = Column(DateTime, nullable=True)

    versions = relationship(
        "FileVersion",
        back_populates="file",
        order_by="FileVersion.version_number",
    )
    shares = relationship(
        "FileShare",
        back_populates="file",
        cascade="all, delete-orphan",
    )
