import os
from pathlib import Path
from dotenv import load_dotenv

# Ensure .env is loaded from project root even if server is started elsewhere
BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes")


def _as_list(value: str):
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    # Application
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "FileVault")
    API_PREFIX: str = os.getenv("API_PREFIX", "/api/v1")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    # Security
    # Strip values to avoid accidental whitespace or surrounding quotes from .env
    SECRET_KEY: str = os.getenv("SECRET_KEY", "change-me").strip()
    ALGORITHM: str = os.getenv("ALGORITHM", "HS256").strip()
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./filevault.db")
    DB_ECHO: bool = _as_bool(os.getenv("DB_ECHO", "false"))

    # Blob storage
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "local").strip().lower()  # local | s3 | memory
    UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", "storage/blobs")
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
    AWS_BUCKET_NAME: str = os.getenv("AWS_BUCKET_NAME", "filevault-files")
    AWS_ENDPOINT_URL: str = os.getenv("AWS_ENDPOINT_URL", "")
    AWS_KMS_KEY_ID: str = os.getenv("AWS_KMS_KEY_ID", "")
    STORAGE_ENCRYPTION_ENABLED: bool = _as_bool(os.getenv("STORAGE_ENCRYPTION_ENABLED", "true"))
    URL_EXPIRATION_SECONDS: int = int(os.getenv("URL_EXPIRATION_SECONDS", "3600"))

    # Upload validation
    MAX_FILE_SIZE: int = int(os.getenv("MAX_FILE_SIZE", str(100 * 1024 * 1024)))
    ALLOWED_MIME_TYPES: str = os.getenv(
        "ALLOWED_MIME_TYPES",
        "application/pdf,image/jpeg,image/png,image/gif,video/mp4,"
        "model/gltf-binary,model/gltf+json,application/octet-stream",
    )
    MAX_TAGS: int = int(os.getenv("MAX_TAGS", "50"))
    MAX_TAG_LENGTH: int = int(os.getenv("MAX_TAG_LENGTH", "256"))
    MAX_BATCH_SIZE: int = int(os.getenv("MAX_BATCH_SIZE", "100"))

    # Content scanning
    HIGH_RISK_EXTENSIONS: str = os.getenv(
        "HIGH_RISK_EXTENSIONS",
        ".exe,.dll,.bat,.cmd,.ps1,.vbs,.js,.jar,.sh,.app,.com,.scr,.msi",
    )
    CLAMSCAN_PATH: str = os.getenv("CLAMSCAN_PATH", "clamscan")
    SCAN_TIMEOUT_SECONDS: int = int(os.getenv("SCAN_TIMEOUT_SECONDS", "120"))
    # Treat a missing scan engine as clean (heuristic only). Off by default.
    SCAN_FAIL_OPEN: bool = _as_bool(os.getenv("SCAN_FAIL_OPEN", "false"))

    def get_allowed_mime_types_list(self):
        return _as_list(self.ALLOWED_MIME_TYPES)

    def get_high_risk_extensions_list(self):
        return [ext.lower() for ext in _as_list(self.HIGH_RISK_EXTENSIONS)]


settings = Settings()
