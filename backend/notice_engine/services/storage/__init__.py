"""Object storage adapters."""
from .blob_store import BlobStore, BlobNotFound, S3BlobStore, InMemoryBlobStore

__all__ = ["BlobStore", "BlobNotFound", "S3BlobStore", "InMemoryBlobStore"]
