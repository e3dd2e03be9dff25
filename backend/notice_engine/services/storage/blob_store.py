"""
Blob Store

Object storage for rendered notices, evidence files, receipt scans and
export archives. S3 in production; the in-memory store backs local runs
and tests.
"""
import logging
from typing import Any, Dict, Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from ...errors import ExternalProviderUnavailable

logger = logging.getLogger(__name__)


class BlobNotFound(Exception):
    """No object stored under the key."""

    def __init__(self, key: str):
        super().__init__(f"Blob not found: {key}")
        self.key = key


class BlobStore(Protocol):
    """Subset of object-storage operations used by the engine."""

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str: ...

    def get(self, key: str) -> bytes: ...

    def exists(self, key: str) -> bool: ...


class S3BlobStore:
    """boto3-backed store. Transport failures map to ExternalProviderUnavailable."""

    def __init__(self, s3_client: Any, bucket: str):
        self.s3 = s3_client
        self.bucket = bucket

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            raise ExternalProviderUnavailable("blob_store", f"Upload of {key} failed: {e}")
        return key

    def get(self, key: str) -> bytes:
        try:
            obj = self.s3.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in ("NoSuchKey", "404", "NotFound"):
                raise BlobNotFound(key)
            raise ExternalProviderUnavailable("blob_store", f"Download of {key} failed: {e}")
        except BotoCoreError as e:
            raise ExternalProviderUnavailable("blob_store", f"Download of {key} failed: {e}")
        return obj["Body"].read()

    def exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False
        except BotoCoreError as e:
            raise ExternalProviderUnavailable("blob_store", f"Lookup of {key} failed: {e}")


class InMemoryBlobStore:
    """Process-local store."""

    def __init__(self, objects: Optional[Dict[str, bytes]] = None):
        self.objects: Dict[str, bytes] = dict(objects or {})
        self.content_types: Dict[str, str] = {}

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        self.objects[key] = bytes(data)
        self.content_types[key] = content_type
        return key

    def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise BlobNotFound(key)
        return self.objects[key]

    def exists(self, key: str) -> bool:
        return key in self.objects
