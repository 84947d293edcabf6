import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from filevault.core.config import settings
from filevault.core.exceptions import FileVaultError, ScanFailure, StorageError
from filevault.core.log_config import configure_logging
from filevault.db import base
from filevault.db.session import engine, ensure_sqlite_indexes
from filevault.schemas.common import error_response
from filevault.services.scanner import ContentScanner
from filevault.storage.blob_store import build_blob_store

# Import routers
from filevault.api import file_manager, shares

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def _error_json(status_code: int, message: str, data=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_response(message, data).model_dump(mode="json"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(FileVaultError)
    async def file_vault_error_handler(request: Request, exc: FileVaultError):
        if isinstance(exc, StorageError):
            logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc.message)
            return _error_json(exc.status_code, exc.public_message)
        data = None
        if isinstance(exc, ScanFailure):
            data = {
                "file_id": exc.file_id,
                "scan_result": exc.scan_result.model_dump(mode="json") if exc.scan_result else None,
            }
        return _error_json(exc.status_code, exc.message, data)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_json(500, "Internal server error")


def create_app(blob_store=None, scanner=None) -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="File storage and sharing: scanned uploads, versions, share grants",
        version="1.0.0"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.blob_store = blob_store
    app.state.scanner = scanner

    # Share routes first so /shares/{id} never falls through to /{file_id}
    app.include_router(shares.router, prefix=f"{settings.API_PREFIX}/files", tags=["Sharing"])
    app.include_router(file_manager.router, prefix=f"{settings.API_PREFIX}/files", tags=["File Management"])
    register_exception_handlers(app)

    @app.get("/")
    def root():
        """Root endpoint"""
        return {
            "message": f"Welcome to {settings.PROJECT_NAME}",
            "version": "1.0.0",
            "storage_backend": settings.STORAGE_BACKEND,
            "docs": "/docs",
        }

    @app.on_event("startup")
    def startup_event():
        base.Base.metadata.create_all(bind=engine)
        ensure_sqlite_indexes()
        if app.state.blob_store is None:
            app.state.blob_store = build_blob_store(settings)
        if app.state.scanner is None:
            app.state.scanner = ContentScanner(config=settings)
        logger.info(
            "%s started (storage=%s, scan fail-open=%s)",
            settings.PROJECT_NAME,
            settings.STORAGE_BACKEND,
            settings.SCAN_FAIL_OPEN,
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "filevault.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info"
    )
