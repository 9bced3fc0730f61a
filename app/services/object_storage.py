"""S3-compatible public bucket for materialized WhatsApp media."""

import asyncio
from functools import lru_cache
from typing import Any, Optional

import boto3

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("object_storage")

MEDIA_CACHE_CONTROL = "max-age=31536000"


class ObjectStorageError(Exception):
    """Upload or configuration failure in the storage layer."""


class S3MediaStorage:
    """Uploads media objects and returns their public URL."""

    def __init__(
        self,
        bucket_name: str,
        public_base_url: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = "us-east-1",
        client: Any = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.endpoint_url = endpoint_url
        self.region = region
        self.public_base_url = public_base_url
        if client is not None:
            self.client = client
            return
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket_name}/{key}"
        return f"https://{self.bucket_name}.s3.{self.region}.amazonaws.com/{key}"

    def upload(self, key: str, data: bytes, content_type: Optional[str]) -> str:
        kwargs: dict = {
            "Bucket": self.bucket_name,
            "Key": key,
            "Body": data,
            "CacheControl": MEDIA_CACHE_CONTROL,
        }
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self.client.put_object(**kwargs)
        except Exception as exc:
            raise ObjectStorageError(f"Failed to upload object: {exc}") from exc
        logger.debug(f"Uploaded media object: bucket={self.bucket_name}, key={key}")
        return self.public_url(key)

    async def upload_async(self, key: str, data: bytes, content_type: Optional[str]) -> str:
        """Run the blocking boto3 upload off the event loop."""
        return await asyncio.to_thread(self.upload, key, data, content_type)


@lru_cache
def get_media_storage() -> S3MediaStorage:
    return S3MediaStorage(
        bucket_name=settings.storage_bucket,
        public_base_url=settings.storage_public_base_url,
        endpoint_url=settings.storage_endpoint_url,
        access_key=settings.storage_access_key,
        secret_key=settings.storage_secret_key,
        region=settings.storage_region,
    )
