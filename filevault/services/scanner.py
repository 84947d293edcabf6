"""Content scanning for uploaded payloads.

Two stages, fail-fast:

1. Extension heuristic: high-risk extensions are rejected without touching
   the engine.
2. Deep scan: the payload is written to a temporary file and handed to a
   signature-based engine (ClamAV's ``clamscan`` by default).

The engine's raw exit codes and text never leave this module; callers only
see a ``ScanResult``.
"""
import enum
import logging
import mimetypes
import os
import re
import subprocess
import tempfile
import time
from contextlib import contextmanager
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from filevault.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

SCAN_SCHEMA_VERSION = 1
THREAT_PATTERN = re.compile(r": (.+) FOUND")


class ScanVerdict(str, enum.Enum):
    CLEAN = "CLEAN"
    INFECTED = "INFECTED"
    ERROR = "ERROR"


class ScanDetails(BaseModel):
    file_type: Optional[str] = None
    signature: Optional[str] = None
    scan_duration_ms: int = 0
    engine: Optional[str] = None
    # True when only the extension heuristic ran (engine unavailable, fail-open)
    heuristic_only: bool = False


class ScanResult(BaseModel):
    schema_version: int = SCAN_SCHEMA_VERSION
    verdict: ScanVerdict
    threat: Optional[str] = None
    error: Optional[str] = None
    details: ScanDetails = Field(default_factory=ScanDetails)

    @property
    def is_clean(self) -> bool:
        return self.verdict == ScanVerdict.CLEAN

    def describe(self) -> str:
        return self.threat or self.error or "Unknown threat detected"

    def as_tags(self) -> dict:
        """Initial tag mapping recorded on a freshly uploaded file."""
        return {
            "fileType": self.details.file_type or "unknown",
            "scanSignature": self.details.signature or "Unknown",
            "scanDuration": str(self.details.scan_duration_ms),
        }

    @classmethod
    def clean(cls, **details) -> "ScanResult":
        return cls(verdict=ScanVerdict.CLEAN, details=ScanDetails(**details))

    @classmethod
    def infected(cls, threat: str, **details) -> "ScanResult":
        return cls(verdict=ScanVerdict.INFECTED, threat=threat, details=ScanDetails(**details))

    @classmethod
    def failed(cls, error: str, **details) -> "ScanResult":
        return cls(verdict=ScanVerdict.ERROR, error=error, details=ScanDetails(**details))


class EngineUnavailable(Exception):
    """The scan engine could not be invoked at all."""


class ScanEngine(Protocol):
    name: str

    def scan_path(self, path: str) -> ScanResult:
        ...


class ClamScanEngine:
    """Runs ``clamscan`` against a file on disk.

    Exit status 0 means clean, 1 means a signature matched; anything else is
    an engine error.
    """

    name = "clamav"

    def __init__(self, executable: str = "clamscan", timeout: int = 120):
        self.executable = executable
        self.timeout = timeout

    def scan_path(self, path: str) -> ScanResult:
        try:
            proc = subprocess.run(
                [self.executable, "--no-summary", path],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return ScanResult.failed(
                f"{self.executable} timed out after {self.timeout}s",
                signature="Scan error",
                engine=self.name,
            )
        except OSError as exc:
            raise EngineUnavailable(f"{self.executable}: {exc}") from exc

        if proc.returncode == 0:
            return ScanResult.clean(signature="ClamAV scan passed", engine=self.name)
        if proc.returncode == 1:
            match = THREAT_PATTERN.search(proc.stdout)
            return ScanResult.infected(
                match.group(1) if match else "Unknown threat",
                signature=proc.stdout.strip(),
                engine=self.name,
            )
        return ScanResult.failed(
            proc.stderr.strip() or "ClamAV scan failed",
            signature="Scan error",
            engine=self.name,
        )


@contextmanager
def scoped_temp_file(data: bytes):
    """Write ``data`` to a temp file that is removed on every exit path."""
    fd, path = tempfile.mkstemp(prefix="scan-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


class ContentScanner:
    def __init__(
        self,
        engine: Optional[ScanEngine] = None,
        high_risk_extensions=None,
        fail_open: Optional[bool] = None,
        config: Optional[Settings] = None,
    ):
        config = config or default_settings
        self.engine = engine or ClamScanEngine(config.CLAMSCAN_PATH, config.SCAN_TIMEOUT_SECONDS)
        if high_risk_extensions is None:
            high_risk_extensions = config.get_high_risk_extensions_list()
        self.high_risk_extensions = {ext.lower() for ext in high_risk_extensions}
        self.fail_open = config.SCAN_FAIL_OPEN if fail_open is None else fail_open

    def is_high_risk(self, filename: str) -> bool:
        ext = os.path.splitext(filename or "")[1].lower()
        return ext in self.high_risk_extensions

    def scan(self, data: bytes, original_filename: str) -> ScanResult:
        file_type = mimetypes.guess_type(original_filename or "")[0] or "application/octet-stream"
        if self.is_high_risk(original_filename):
            result = ScanResult.infected(
                "High-risk file type detected",
                file_type=file_type,
                signature="High-risk extension",
            )
        else:
            try:
                with scoped_temp_file(data) as path:
                    result = self._deep_scan(path, file_type)
            except OSError as exc:
                # Could not stage the payload for scanning
                logger.error("Scan of %s failed before engine ran: %s", original_filename, exc)
                result = ScanResult.failed(str(exc), file_type=file_type, signature="Scan error")

        self._log_verdict(original_filename, result)
        return result

    def _deep_scan(self, path: str, file_type: str) -> ScanResult:
        started = time.monotonic()
        try:
            result = self.engine.scan_path(path)
        except EngineUnavailable as exc:
            elapsed = int((time.monotonic() - started) * 1000)
            if self.fail_open:
                logger.warning("Scan engine unavailable (%s); accepting on heuristic only", exc)
                return ScanResult.clean(
                    file_type=file_type,
                    signature="Basic validation (engine unavailable)",
                    scan_duration_ms=elapsed,
                    heuristic_only=True,
                )
            logger.error("Scan engine unavailable (%s); rejecting upload", exc)
            return ScanResult.failed(
                f"Scan engine unavailable: {exc}",
                file_type=file_type,
                signature="Scan error",
                scan_duration_ms=elapsed,
            )

        result.details.file_type = result.details.file_type or file_type
        result.details.scan_duration_ms = int((time.monotonic() - started) * 1000)
        return result

    @staticmethod
    def _log_verdict(filename: str, result: ScanResult) -> None:
        if result.verdict == ScanVerdict.CLEAN and result.details.heuristic_only:
            logger.warning("Scan verdict for %s: CLEAN (heuristic only)", filename)
        elif result.verdict == ScanVerdict.CLEAN:
            logger.info("Scan verdict for %s: CLEAN", filename)
        else:
            logger.warning("Scan verdict for %s: %s (%s)", filename, result.verdict.value, result.describe())
