"""Error taxonomy for the file lifecycle.

Each error carries the HTTP status the API layer maps it to. Validation,
not-found and permission errors are raised before any side effect.
"""
from typing import Optional


class FileVaultError(Exception):
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FileVaultError):
    status_code = 400


class PayloadTooLargeError(ValidationError):
    status_code = 413


class NotFoundError(FileVaultError):
    status_code = 404


class PermissionDeniedError(FileVaultError):
    status_code = 403


class FileUnavailableError(FileVaultError):
    """File exists but is deleted or infected."""

    status_code = 410


class ScanFailure(FileVaultError):
    """Payload judged unclean, or the scan itself errored.

    The quarantine row has already been committed when this is raised.
    """

    status_code = 422

    def __init__(self, message: str, scan_result=None, file_id: Optional[str] = None):
        super().__init__(message)
        self.scan_result = scan_result
        self.file_id = file_id


class StorageError(FileVaultError):
    status_code = 502
    public_message = "Storage backend unavailable"


class UnsupportedMediaError(ValidationError):
    status_code = 415
