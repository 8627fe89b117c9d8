"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for object storage with LocalStorage (development)
and S3Storage (S3-compatible buckets such as MinIO or AWS).

Keys are deterministic ({owner}/{batch}/{image}_{stage}.jpg) and uploads
overwrite, so re-running a pipeline replaces earlier artifacts.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from src.core.config import settings
from src.core.exceptions import StorageError
from src.core.logging import get_logger

logger = get_logger(__name__)


def image_storage_key(owner_id: str, batch_id: str, image_id: str, stage: str, ext: str = "jpg") -> str:
    """Build the object key for one artifact of an image."""
    return f"{owner_id}/{batch_id}/{image_id}_{stage}.{ext.lstrip('.')}"


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        storage_key: str,
        content_type: str = "image/jpeg"
    ) -> str:
        """
        Write bytes under storage_key, replacing any existing object.

        Returns:
            The storage key
        """

    @abstractmethod
    async def download(self, storage_key: str) -> bytes:
        """Read the bytes stored under storage_key."""

    @abstractmethod
    async def get_signed_url(self, storage_key: str, expires_in: int = 3600) -> str:
        """Get a time-bounded URL for the object."""

    @abstractmethod
    async def get_public_url(self, storage_key: str) -> str:
        """Get the permanent public URL for the object."""

    @abstractmethod
    async def delete(self, storage_key: str) -> bool:
        """Delete an object. Returns False when nothing was deleted."""

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        """Check if a file exists in storage."""

    async def get_access_url(self, storage_key: str, expires_in: int = 3600) -> str:
        """Signed URL when the backend can sign, public URL otherwise."""
        try:
            return await self.get_signed_url(storage_key, expires_in=expires_in)
        except StorageError as e:
            logger.warning(
                "signed_url_failed_using_public",
                storage_key=storage_key,
                error=str(e)
            )
            return await self.get_public_url(storage_key)


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    def __init__(self, base_path: str = "./data/storage", public_prefix: str = "/static/storage"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_prefix = public_prefix.rstrip("/")

    def _path(self, storage_key: str) -> Path:
        path = (self.base_path / storage_key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {storage_key}")
        return path

    async def upload(
        self,
        file_data: bytes,
        storage_key: str,
        content_type: str = "image/jpeg"
    ) -> str:
        file_path = self._path(storage_key)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a sibling temp file so readers never see a partial object
        tmp_path = file_path.with_name(file_path.name + ".part")
        with open(tmp_path, "wb") as f:
            f.write(file_data)
        tmp_path.replace(file_path)

        return storage_key

    async def download(self, storage_key: str) -> bytes:
        file_path = self._path(storage_key)
        try:
            with open(file_path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise StorageError(f"File not found: {storage_key}")

    async def get_signed_url(self, storage_key: str, expires_in: int = 3600) -> str:
        raise StorageError("Local storage cannot issue signed URLs")

    async def get_public_url(self, storage_key: str) -> str:
        """For local storage, return a relative path that can be served."""
        return f"{self.public_prefix}/{storage_key}"

    async def delete(self, storage_key: str) -> bool:
        file_path = self._path(storage_key)
        if file_path.exists():
            file_path.unlink()
            return True
        return False

    async def exists(self, storage_key: str) -> bool:
        return self._path(storage_key).exists()


class S3Storage(IStorage):
    """S3-compatible bucket storage for production."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = "us-east-1",
        public_url: Optional[str] = None,
        client=None
    ):
        self.bucket = bucket
        self.public_url = public_url
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=BotoConfig(signature_version="s3v4"),
        )

    async def upload(
        self,
        file_data: bytes,
        storage_key: str,
        content_type: str = "image/jpeg"
    ) -> str:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=storage_key,
                Body=file_data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload failed for {storage_key}: {e}")
        return storage_key

    def _sync_download(self, storage_key: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket, Key=storage_key)
        return response["Body"].read()

    async def download(self, storage_key: str) -> bytes:
        try:
            return await asyncio.to_thread(self._sync_download, storage_key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Download failed for {storage_key}: {e}")

    async def get_signed_url(self, storage_key: str, expires_in: int = 3600) -> str:
        try:
            return await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": storage_key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not sign URL for {storage_key}: {e}")

    async def get_public_url(self, storage_key: str) -> str:
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{storage_key}"
        endpoint = self.client.meta.endpoint_url.rstrip("/")
        return f"{endpoint}/{self.bucket}/{storage_key}"

    async def delete(self, storage_key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=storage_key)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning("storage_delete_failed", storage_key=storage_key, error=str(e))
            return False

    async def exists(self, storage_key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=storage_key)
            return True
        except (BotoCoreError, ClientError):
            return False


class StorageFactory:
    """
    Factory for creating storage instances.

    STORAGE_BACKEND=s3 with a bucket configured switches every caller to
    S3Storage. No code changes required.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        """Get the appropriate storage implementation based on environment."""
        if cls._instance is None:
            if settings.STORAGE_BACKEND.lower() == "s3":
                cls._instance = S3Storage(
                    bucket=settings.S3_BUCKET_NAME,
                    endpoint_url=settings.S3_ENDPOINT_URL,
                    access_key=settings.S3_ACCESS_KEY,
                    secret_key=settings.S3_SECRET_KEY,
                    region=settings.S3_REGION,
                    public_url=settings.S3_PUBLIC_URL,
                )
            else:
                cls._instance = LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)

        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


# Convenience function for dependency injection
def get_storage() -> IStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
