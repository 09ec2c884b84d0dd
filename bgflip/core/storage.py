"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for object storage with GCSStorage (production,
Google Cloud Storage) and LocalStorage (development and tests).
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import requests
from google.api_core import exceptions as gcs_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import storage as gcs

from bgflip.core.config import Settings, settings as default_settings
from bgflip.core.credentials import CredentialProvider, select_credential_provider
from bgflip.core.exceptions import ImageNotFoundError, StorageError
from bgflip.core.logging import get_logger
from bgflip.core.metrics import record_storage_operation

logger = get_logger(__name__)

GCS_PUBLIC_URL = "https://storage.googleapis.com/{bucket}/{path}"

# API errors, credential refresh failures and transport errors from the SDK
GCS_FAILURES = (
    gcs_exceptions.GoogleAPIError,
    auth_exceptions.GoogleAuthError,
    requests.RequestException,
)


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        path: str,
        content_type: str = "image/png"
    ) -> str:
        """
        Write a blob at ``path``, overwriting any existing one.

        Args:
            file_data: Raw bytes of the file
            path: Storage path inside the bucket, e.g. processed/{id}.png
            content_type: MIME type of the file

        Returns:
            Public URL of the stored blob
        """
        pass

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a blob. A missing blob is not an error."""
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check if a blob exists in storage."""
        pass

    @abstractmethod
    async def download(self, path: str) -> bytes:
        """Read a blob. Raises ImageNotFoundError if it does not exist."""
        pass

    @abstractmethod
    def public_url(self, path: str) -> str:
        """Public URL for ``path``. Does not check existence."""
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    def __init__(self, base_path: str = "./data/storage", url_prefix: str = "/static/storage"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.url_prefix = url_prefix.rstrip("/")

    def _resolve(self, path: str) -> Path:
        file_path = (self.base_path / path).resolve()
        if self.base_path.resolve() not in file_path.parents:
            raise StorageError(f"Invalid storage path: {path}")
        return file_path

    async def upload(
        self,
        file_data: bytes,
        path: str,
        content_type: str = "image/png"
    ) -> str:
        file_path = self._resolve(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(file_path.write_bytes, file_data)
        record_storage_operation("upload", "success")
        return self.public_url(path)

    async def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)
        record_storage_operation("delete", "success")

    async def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    async def download(self, path: str) -> bytes:
        file_path = self._resolve(path)
        if not file_path.is_file():
            raise ImageNotFoundError()
        return await asyncio.to_thread(file_path.read_bytes)

    def public_url(self, path: str) -> str:
        return f"{self.url_prefix}/{path}"


class GCSStorage(IStorage):
    """
    Google Cloud Storage implementation for production.

    Credentials are resolved on every operation so a cached federated token
    is never used past its refresh margin. The SDK is blocking; calls run in
    a worker thread with a bounded timeout.
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        credential_provider: Optional[CredentialProvider] = None,
        client_factory=gcs.Client
    ):
        self._settings = settings
        self._credential_provider = credential_provider
        self._client_factory = client_factory
        self.timeout = settings.STORAGE_TIMEOUT_SECONDS

    @property
    def bucket_name(self) -> str:
        return self._settings.require("GCS_BUCKET_NAME")

    async def _bucket(self):
        project_id = self._settings.require("GCS_PROJECT_ID")
        bucket_name = self.bucket_name

        if self._credential_provider is None:
            self._credential_provider = select_credential_provider(self._settings)
        credential = await self._credential_provider.resolve()

        client = self._client_factory(project=project_id, credentials=credential.credentials)
        return client.bucket(bucket_name)

    def _failure(self, operation: str, path: str, error: Exception) -> StorageError:
        record_storage_operation(operation, "error")
        logger.error(
            "storage_operation_failed",
            operation=operation,
            path=path,
            error=str(error),
            error_type=type(error).__name__
        )
        if isinstance(error, gcs_exceptions.Unauthorized) and self._credential_provider is not None:
            # Rejected token: drop it so the next request exchanges again
            self._credential_provider.invalidate()
        return StorageError(f"Storage {operation} failed for {path}: {error}")

    async def _run(self, operation: str, path: str, func, *args, **kwargs):
        try:
            result = await asyncio.to_thread(func, *args, timeout=self.timeout, **kwargs)
        except GCS_FAILURES as e:
            raise self._failure(operation, path, e) from e
        record_storage_operation(operation, "success")
        return result

    async def upload(
        self,
        file_data: bytes,
        path: str,
        content_type: str = "image/png"
    ) -> str:
        blob = (await self._bucket()).blob(path)
        await self._run("upload", path, blob.upload_from_string, file_data, content_type=content_type)
        logger.info("blob_uploaded", path=path, size=len(file_data))
        return self.public_url(path)

    async def delete(self, path: str) -> None:
        blob = (await self._bucket()).blob(path)
        try:
            await asyncio.to_thread(blob.delete, timeout=self.timeout)
        except gcs_exceptions.NotFound:
            logger.info("blob_already_absent", path=path)
        except GCS_FAILURES as e:
            raise self._failure("delete", path, e) from e
        record_storage_operation("delete", "success")

    async def exists(self, path: str) -> bool:
        blob = (await self._bucket()).blob(path)
        return await self._run("exists", path, blob.exists)

    async def download(self, path: str) -> bytes:
        blob = (await self._bucket()).blob(path)
        try:
            data = await asyncio.to_thread(blob.download_as_bytes, timeout=self.timeout)
        except gcs_exceptions.NotFound:
            record_storage_operation("download", "not_found")
            raise ImageNotFoundError()
        except GCS_FAILURES as e:
            raise self._failure("download", path, e) from e
        record_storage_operation("download", "success")
        return data

    def public_url(self, path: str) -> str:
        return GCS_PUBLIC_URL.format(bucket=self.bucket_name, path=path)


class StorageFactory:
    """
    Factory for creating storage instances.

    STORAGE_BACKEND=gcs (default) talks to Google Cloud Storage;
    STORAGE_BACKEND=local writes under LOCAL_STORAGE_PATH.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls, settings: Settings = default_settings) -> IStorage:
        """Get the appropriate storage implementation based on configuration."""
        if cls._instance is None:
            backend = settings.STORAGE_BACKEND.lower()
            if backend == "local":
                cls._instance = LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)
            elif backend == "gcs":
                cls._instance = GCSStorage(settings)
            else:
                raise StorageError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")
            logger.info("storage_backend_selected", backend=backend)

        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


# Convenience function for dependency injection
def get_storage() -> IStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
