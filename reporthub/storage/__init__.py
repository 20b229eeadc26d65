"""Object storage backends for screenshots and step trees."""

from .blob_store import BlobStore, BlobUploadError, HttpBlobStore, LocalBlobStore, create_blob_store

__all__ = ["BlobStore", "BlobUploadError", "HttpBlobStore", "LocalBlobStore", "create_blob_store"]
