"""Blob store adapters.

A blob store knows nothing about files: it puts, gets and deletes opaque
payloads by key and can hand out time-limited download URLs.
"""
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol
from urllib.parse import quote, urlencode

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from filevault.core.config import Settings, settings as default_settings
from filevault.core.exceptions import StorageError
from filevault.core.security import create_download_token

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        encrypt: bool = False,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        ...

    def get(self, key: str) -> bytes:
        ...

    def delete(self, key: str) -> None:
        ...

    def exists(self, key: str) -> bool:
        ...

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        ...


class S3BlobStore:
    """S3-backed blob store with optional SSE-KMS."""

    def __init__(
        self,
        bucket_name: str,
        region: str = "us-east-1",
        kms_key_id: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client=None,
    ):
        if not bucket_name:
            raise ValueError("AWS_BUCKET_NAME must be set for the s3 storage backend")
        self.bucket_name = bucket_name
        self.kms_key_id = kms_key_id or None
        self._client = client or boto3.client("s3", region_name=region, endpoint_url=endpoint_url or None)

    def put(self, key, data, content_type, encrypt=False, metadata=None):
        params = {
            "Bucket": self.bucket_name,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
            "ACL": "private",
            # S3 user metadata must be ASCII
            "Metadata": {name: quote(str(value)) for name, value in (metadata or {}).items()},
        }
        if encrypt:
            params["ServerSideEncryption"] = "aws:kms"
            if self.kms_key_id:
                params["SSEKMSKeyId"] = self.kms_key_id
        try:
            self._client.put_object(**params)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"S3 put failed for {key}: {exc}") from exc

    def get(self, key):
        try:
            response = self._client.get_object(Bucket=self.bucket_name, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"S3 get failed for {key}: {exc}") from exc

    def delete(self, key):
        try:
            self._client.delete_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"S3 delete failed for {key}: {exc}") from exc

    def exists(self, key):
        try:
            self._client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"S3 head failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"S3 head failed for {key}: {exc}") from exc

    def signed_url(self, key, ttl_seconds):
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"S3 presign failed for {key}: {exc}") from exc


class LocalBlobStore:
    """Blobs on the local filesystem, for development.

    Signed URLs point at the API's ``/files/blob`` route with a jose-signed
    token; at-rest encryption is not available here.
    """

    def __init__(self, root: str, public_base_url: str, api_prefix: str = "/api/v1"):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.download_endpoint = f"{public_base_url.rstrip('/')}{api_prefix}/files/blob"

    def path_for(self, key: str) -> Path:
        if ".." in key.replace("\\", "/").split("/"):
            raise StorageError(f"Key contains a parent segment: {key}")
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def put(self, key, data, content_type, encrypt=False, metadata=None):
        if encrypt:
            logger.debug("Local blob store ignores encryption request for %s", key)
        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as buffer:
                buffer.write(data)
        except OSError as exc:
            raise StorageError(f"Local put failed for {key}: {exc}") from exc

    def get(self, key):
        try:
            with open(self.path_for(key), "rb") as handle:
                return handle.read()
        except OSError as exc:
            raise StorageError(f"Local get failed for {key}: {exc}") from exc

    def delete(self, key):
        try:
            os.remove(self.path_for(key))
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StorageError(f"Local delete failed for {key}: {exc}") from exc

    def exists(self, key):
        return self.path_for(key).is_file()

    def signed_url(self, key, ttl_seconds):
        token = create_download_token(key, ttl_seconds)
        return f"{self.download_endpoint}?{urlencode({'token': token})}"


class InMemoryBlobStore:
    """Dict-backed store for tests."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.object_info: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def put(self, key, data, content_type, encrypt=False, metadata=None):
        with self._lock:
            self.objects[key] = bytes(data)
            self.object_info[key] = {
                "content_type": content_type,
                "encrypted": encrypt,
                "metadata": dict(metadata or {}),
            }

    def get(self, key):
        with self._lock:
            if key not in self.objects:
                raise StorageError(f"No such blob: {key}")
            return self.objects[key]

    def delete(self, key):
        with self._lock:
            self.objects.pop(key, None)
            self.object_info.pop(key, None)

    def exists(self, key):
        with self._lock:
            return key in self.objects

    def signed_url(self, key, ttl_seconds):
        return f"memory://{quote(key)}?{urlencode({'expires_in': ttl_seconds})}"


def build_blob_store(config: Optional[Settings] = None) -> BlobStore:
    config = config or default_settings
    backend = config.STORAGE_BACKEND
    if backend == "s3":
        return S3BlobStore(
            bucket_name=config.AWS_BUCKET_NAME,
            region=config.AWS_REGION,
            kms_key_id=config.AWS_KMS_KEY_ID,
            endpoint_url=config.AWS_ENDPOINT_URL,
        )
    if backend == "local":
        return LocalBlobStore(config.UPLOAD_DIR, config.PUBLIC_BASE_URL, config.API_PREFIX)
    if backend == "memory":
        return InMemoryBlobStore()
    raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")
