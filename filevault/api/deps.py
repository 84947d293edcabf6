from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from filevault.core.config import settings
from filevault.core.security import decode_token
from filevault.db.session import get_db
from filevault.schemas.identity import Identity
from filevault.services.file_service import FileService
from filevault.services.scanner import ContentScanner
from filevault.services.share_service import ShareService
from filevault.storage.blob_store import BlobStore

# Tokens are issued by the external auth service
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_PREFIX.lstrip('/')}/auth/login")


def get_current_identity(token: str = Depends(oauth2_scheme)) -> Identity:
    """
    Dependency để lấy identity hiện tại từ JWT token.
    The token is already verified upstream; we only need `sub` and `role`.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(token)
    if payload is None:
        raise credentials_exception

    subject = payload.get("sub")
    if not subject:
        raise credentials_exception

    return Identity(id=str(subject), role=payload.get("role"), email=payload.get("email"))


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_scanner(request: Request) -> ContentScanner:
    return request.app.state.scanner


def get_file_service(
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
    scanner: ContentScanner = Depends(get_scanner),
) -> FileService:
    return FileService(db, blob_store, scanner, settings)


def get_share_service(db: Session = Depends(get_db)) -> ShareService:
    return ShareService(db)
