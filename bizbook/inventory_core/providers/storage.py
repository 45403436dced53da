"""
File storage providers.

Items and assets store only the public URL of an uploaded image. The core
needs two abilities from storage: turn bytes into a public URL, and delete
the object behind a URL when its owner is deleted.

- S3StorageProvider: aiobotocore S3 client
- LocalStorageProvider: files under a local directory

Invariants:
    - delete_file() never raises for a missing object; it returns False
    - URLs produced by upload_file() round-trip through key_from_url()

How to change safely:
    - Test S3 changes against LocalStack before AWS
    - Keep URL layout stable; stored records reference it
"""

from __future__ import annotations

import logging
import uuid
from abc import abstractmethod
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable
from urllib.parse import urlparse

from aiobotocore.session import get_session
from botocore.exceptions import ClientError, EndpointConnectionError

from ..config import StorageConfig, StorageProviderKind
from ..errors import BackendUnavailableError, ConfigurationError

logger = logging.getLogger(__name__)


@runtime_checkable
class StorageProvider(Protocol):
    """Protocol for file storage backends."""

    @abstractmethod
    async def connect(self) -> None:
        """Prepare the provider for use."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release any held client."""
        ...

    @abstractmethod
    async def upload_file(
        self, data: bytes, filename: str, content_type: str = "application/octet-stream"
    ) -> str:
        """Store bytes and return the public URL."""
        ...

    @abstractmethod
    async def delete_file(self, url: str) -> bool:
        """Delete the object behind a URL; False if it did not exist."""
        ...

    @abstractmethod
    def key_from_url(self, url: str) -> Optional[str]:
        """Object key for a URL this provider produced, else None."""
        ...


def _object_key(filename: str) -> str:
    suffix = Path(filename).suffix.lower()
    return f"uploads/{uuid.uuid4().hex}{suffix}"


class S3StorageProvider:
    """S3 implementation of StorageProvider.

    Example:
        >>> storage = S3StorageProvider(StorageConfig(provider=StorageProviderKind.S3,
        ...                                           bucket="bizbook-images"))
        >>> await storage.connect()
        >>> url = await storage.upload_file(b"...", "photo.png", "image/png")
    """

    def __init__(self, config: StorageConfig) -> None:
        self.config = config
        self._client = None
        self._client_ctx = None

    @property
    def base_url(self) -> str:
        if self.config.public_base_url:
            return self.config.public_base_url.rstrip("/")
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.config.bucket}"
        return f"https://{self.config.bucket}.s3.{self.config.region}.amazonaws.com"

    async def connect(self) -> None:
        if self._client is not None:
            return
        client_config = {"region_name": self.config.region}
        if self.config.endpoint_url:
            client_config["endpoint_url"] = self.config.endpoint_url
        try:
            self._client_ctx = get_session().create_client("s3", **client_config)
            self._client = await self._client_ctx.__aenter__()
        except EndpointConnectionError as e:
            raise BackendUnavailableError(f"Failed to reach S3 endpoint: {e}", "s3") from e
        logger.info(
            "Connected to S3",
            extra={"bucket": self.config.bucket, "region": self.config.region},
        )

    async def close(self) -> None:
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing S3 client: {e}")
        self._client = None
        self._client_ctx = None

    async def upload_file(
        self, data: bytes, filename: str, content_type: str = "application/octet-stream"
    ) -> str:
        await self.connect()
        key = _object_key(filename)
        try:
            await self._client.put_object(
                Bucket=self.config.bucket, Key=key, Body=data, ContentType=content_type
            )
        except (ClientError, EndpointConnectionError) as e:
            raise BackendUnavailableError(f"S3 upload failed: {e}", "s3") from e
        return f"{self.base_url}/{key}"

    async def delete_file(self, url: str) -> bool:
        key = self.key_from_url(url)
        if key is None:
            return False
        await self.connect()
        try:
            await self._client.head_object(Bucket=self.config.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code", "") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise BackendUnavailableError(f"S3 lookup failed: {e}", "s3") from e
        try:
            await self._client.delete_object(Bucket=self.config.bucket, Key=key)
        except (ClientError, EndpointConnectionError) as e:
            raise BackendUnavailableError(f"S3 delete failed: {e}", "s3") from e
        return True

    def key_from_url(self, url: str) -> Optional[str]:
        base = self.base_url + "/"
        if url.startswith(base):
            return url[len(base):]
        return None


class LocalStorageProvider:
    """Disk implementation of StorageProvider; STORAGE_BUCKET is the directory."""

    def __init__(self, config: StorageConfig) -> None:
        self.config = config
        self.root = Path(config.bucket)

    @property
    def base_url(self) -> str:
        if self.config.public_base_url:
            return self.config.public_base_url.rstrip("/")
        return self.root.resolve().as_uri()

    async def connect(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    async def close(self) -> None:
        pass

    async def upload_file(
        self, data: bytes, filename: str, content_type: str = "application/octet-stream"
    ) -> str:
        key = _object_key(filename)
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return f"{self.base_url}/{key}"

    async def delete_file(self, url: str) -> bool:
        key = self.key_from_url(url)
        if key is None:
            return False
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents or not path.exists():
            return False
        path.unlink()
        return True

    def key_from_url(self, url: str) -> Optional[str]:
        base = self.base_url + "/"
        if url.startswith(base):
            return url[len(base):]
        if urlparse(url).scheme in ("", "file"):
            path = Path(urlparse(url).path)
            try:
                return str(path.resolve().relative_to(self.root.resolve()))
            except ValueError:
                return None
        return None


def create_storage_provider(config: StorageConfig) -> StorageProvider:
    """Factory function to create a storage provider from configuration.

    Raises:
        ConfigurationError: If the provider kind is not supported
    """
    if config.provider == StorageProviderKind.S3:
        return S3StorageProvider(config)
    elif config.provider == StorageProviderKind.LOCAL:
        return LocalStorageProvider(config)
    raise ConfigurationError(f"Unsupported storage provider: {config.provider}")
