import enum
from sqlalchemy import Column, String, ForeignKey, DateTime, Enum, UniqueConstraint
from sqlalchemy.orm import relationship
from filevault.db.session import Base
from filevault.models.file import new_id, utcnow


class SharePermission(str, enum.Enum):
    VIEW = "VIEW"
    EDIT = "EDIT"

    def includes(self, other: "SharePermission") -> bool:
        """EDIT grants everything VIEW does."""
        return self == other or self == SharePermission.EDIT


class FileShare(Base):
    __tablename__ = "file_shares"

    id = Column(String(36), primary_key=True, default=new_id)
    file_id = Column(String(36), ForeignKey("files.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)  # grantee
    shared_by_id = Column(String(64), nullable=False)
    permission = Column(Enum(SharePermission, name="share_permission"), nullable=False, default=SharePermission.VIEW)
    shared_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True)

    file = relationship("File", back_populates="shares")

    __table_args__ = (
        UniqueConstraint("file_id", "user_id", name="uq_file_share"),
    )