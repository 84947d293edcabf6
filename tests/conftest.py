import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from filevault.api.deps import get_file_service
from filevault.core.config import Settings
from filevault.core.security import create_access_token
from filevault.db import base
from filevault.db.session import get_db
from filevault.main import create_app
from filevault.services.file_service import FileService
from filevault.services.scanner import ContentScanner, ScanResult
from filevault.storage.blob_store import InMemoryBlobStore

EICAR_MARKER = b"EICAR-STANDARD-ANTIVIRUS-TEST-FILE"
PDF_BYTES = b"%PDF-1.7\n" + b"0" * 2048


class StubScanEngine:
    """Flags payloads containing the EICAR marker; records every path it saw."""

    name = "stub"

    def __init__(self):
        self.paths = []

    def scan_path(self, path):
        self.paths.append(path)
        with open(path, "rb") as handle:
            data = handle.read()
        if EICAR_MARKER in data:
            return ScanResult.infected("Eicar-Test-Signature", signature="stub: Eicar-Test-Signature FOUND", engine=self.name)
        return ScanResult.clean(signature="stub scan passed", engine=self.name)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    base.Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def config():
    cfg = Settings()
    cfg.MAX_FILE_SIZE = 5 * 1024 * 1024
    cfg.STORAGE_ENCRYPTION_ENABLED = True
    cfg.SCAN_FAIL_OPEN = False
    cfg.URL_EXPIRATION_SECONDS = 600
    return cfg


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def scan_engine():
    return StubScanEngine()


@pytest.fixture
def scanner(scan_engine, config):
    return ContentScanner(engine=scan_engine, config=config)


@pytest.fixture
def service(db, blob_store, scanner, config):
    return FileService(db, blob_store, scanner, config)


@pytest.fixture
def upload(service):
    """Upload helper returning the ACTIVE file."""

    def _upload(owner_id="A", filename="report.pdf", data=PDF_BYTES, mime_type="application/pdf"):
        return service.upload_file(data, filename, mime_type, len(data), owner_id)

    return _upload


def auth_headers(user_id: str, role: str = "USER") -> dict:
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def app(session_factory, blob_store, scanner, config):
    application = create_app(blob_store=blob_store, scanner=scanner)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_get_file_service(db=Depends(get_db)):
        return FileService(db, blob_store, scanner, config)

    application.dependency_overrides[get_db] = override_get_db
    application.dependency_overrides[get_file_service] = override_get_file_service
    return application


@pytest.fixture
def client(app):
    return TestClient(app)
