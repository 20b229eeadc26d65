"""Object storage for screenshots and offloaded step trees.

Provides a small provider abstraction in the same shape as the rest of the
service's pluggable backends: an abstract ``BlobStore`` with concrete
implementations selected by configuration.

Backends:
    - LocalBlobStore: files under ``BLOB_LOCAL_DIR``, one directory per
      bucket, served from ``BLOB_PUBLIC_BASE_URL``
    - HttpBlobStore: ``PUT {BLOB_HTTP_URL}/{path}`` against any
      S3-compatible gateway or storage REST API, with bearer auth

Paths are ``<bucket>/<key>``; the bucket is the first path segment.

Key Features:
    - Keys validated before they reach the filesystem
    - Automatic retry with exponential backoff for transient HTTP failures
      (tenacity, 3 attempts)
    - No overwrite: writing an existing key is an error
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import IngestSettings
from ..security.path_validator import PathValidationError, SecurePathValidator

logger = structlog.get_logger()


class BlobUploadError(Exception):
    """Raised when an object cannot be stored."""

    pass


class _RetryableStatusError(Exception):
    pass


class BlobStore(ABC):
    """Abstract object store addressed by slash-separated paths."""

    @abstractmethod
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store an object and return the URL it can be fetched from.

        Raises:
            BlobUploadError: If the object could not be stored
        """
        pass

    @abstractmethod
    def public_url(self, path: str) -> str:
        pass

    async def close(self) -> None:
        pass


class LocalBlobStore(BlobStore):
    """Filesystem-backed store used for development and tests."""

    def __init__(self, base_dir: str, public_base_url: str):
        self.validator = SecurePathValidator(base_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path}"

    def _write(self, path: str, data: bytes) -> None:
        target = self.validator.validate_key(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "xb") as f:
            f.write(data)

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        try:
            await asyncio.to_thread(self._write, path, data)
        except (PathValidationError, OSError) as e:
            logger.error("Local blob write failed", path=path, error=str(e))
            raise BlobUploadError(f"Failed to store {path}: {e}") from e
        return self.public_url(path)


class HttpBlobStore(BlobStore):
    """Store objects through an HTTP object-storage API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.public_base_url = (public_base_url or self.base_url).rstrip("/")
        self.auth_headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = client or httpx.AsyncClient(timeout=30.0)

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path}"

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        url = f"{self.base_url}/{path}"
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(3),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type((httpx.TransportError, _RetryableStatusError)),
                reraise=True,
            ):
                with attempt:
                    response = await self.client.put(
                        url,
                        content=data,
                        headers={
                            "Content-Type": content_type,
                            "Cache-Control": "max-age=3600",
                            "x-upsert": "false",
                            **self.auth_headers,
                        },
                    )
                    if response.status_code >= 500:
                        raise _RetryableStatusError(f"HTTP {response.status_code}")
                    response.raise_for_status()
        except (httpx.HTTPError, _RetryableStatusError) as e:
            logger.error("Blob upload failed", path=path, error=str(e))
            raise BlobUploadError(f"Failed to store {path}: {e}") from e

        return self.public_url(path)

    async def close(self) -> None:
        await self.client.aclose()


def create_blob_store(settings: IngestSettings) -> BlobStore:
    """Build the configured blob store backend.

    Raises:
        ValueError: If the HTTP backend is selected without ``BLOB_HTTP_URL``
    """
    if settings.blob_backend == "http":
        if not settings.blob_http_url:
            raise ValueError("BLOB_HTTP_URL is required when BLOB_BACKEND=http")
        return HttpBlobStore(
            settings.blob_http_url,
            token=settings.blob_http_token,
            public_base_url=settings.blob_public_base_url,
        )
    return LocalBlobStore(settings.blob_local_dir, settings.blob_public_base_url)
