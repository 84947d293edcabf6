from sqlalchemy import Column, Integer, String, BigInteger, DateTime, JSON, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from filevault.db.session import Base
from filevault.models.file import ScanStatus, new_id, utcnow


class FileVersion(Base):
    __tablename__ = "file_versions"

    id = Column(String(36), primary_key=True, default=new_id)
    file_id = Column(String(36), ForeignKey("files.id"), nullable=False, index=True)
    key = Column(String(1024), nullable=False, unique=True)
    size = Column(BigInteger, nullable=False)
    uploaded_by = Column(String(64), nullable=False)
    uploaded_at = Column(DateTime, default=utcnow, nullable=False)
    version_number = Column(Integer, nullable=False)
    change_description = Column(String(500), nullable=True)
    scan_status = Column(Enum(ScanStatus, name="scan_status"), nullable=False, default=ScanStatus.PENDING)
    scan_result = Column(JSON, nullable=True)

    file = relationship("File", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("file_id", "version_number", name="uq_file_version_number"),
    )
