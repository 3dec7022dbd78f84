"""AWS S3 object store for generated and uploaded images."""

import asyncio
from typing import Any, Optional
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pixcraft.services.exceptions import StorageError


class S3ObjectStore:
    """Public-read object storage in a single S3 bucket."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        access_key_id: str = "",
        secret_access_key: str = "",
        public_base_url: str = "",
        client: Optional[Any] = None,
    ):
        """Initialize S3 store.

        Args:
            bucket: Target bucket name
            region: AWS region of the bucket
            access_key_id: AWS access key (falls back to the default credential chain)
            secret_access_key: AWS secret key
            public_base_url: CDN/base URL for public links (default: virtual-hosted S3 URL)
            client: Preconfigured boto3 S3 client
        """
        self.bucket = bucket
        self.region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self.public_base_url = (
            public_base_url.rstrip("/") or f"https://{bucket}.s3.{region}.amazonaws.com"
        )
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self.bucket:
                raise StorageError("AWS S3 not configured: AWS_S3_BUCKET is empty")
            self._client = boto3.client(
                "s3",
                region_name=self.region,
                aws_access_key_id=self._access_key_id or None,
                aws_secret_access_key=self._secret_access_key or None,
            )
        return self._client

    def public_url(self, key: str) -> str:
        """Public URL of an object key."""
        return f"{self.public_base_url}/{key}"

    def key_from_url(self, url: str) -> Optional[str]:
        """Object key for a URL this store produced, None for foreign URLs."""
        prefix = f"{self.public_base_url}/"
        if url.startswith(prefix):
            return url[len(prefix) :] or None
        parsed = urlparse(url)
        if parsed.scheme == "https" and parsed.hostname in self._bucket_hosts():
            return parsed.path.lstrip("/") or None
        return None

    def _bucket_hosts(self) -> set[str]:
        """Virtual-hosted S3 hostnames of this bucket."""
        if not self.bucket:
            return set()
        return {
            f"{self.bucket}.s3.{self.region}.amazonaws.com",
            f"{self.bucket}.s3.amazonaws.com",
        }

    async def put_object(self, key: str, body: bytes, content_type: str) -> str:
        """Upload bytes and return the object's public URL.

        Raises:
            StorageError: S3 rejected the upload or could not be reached
        """
        try:
            # boto3 is synchronous, run in thread pool
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                ACL="public-read",
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload to S3: {e}") from e
        return self.public_url(key)

    async def delete_object(self, key: str) -> None:
        """Delete an object by key.

        Raises:
            StorageError: S3 rejected the delete or could not be reached
        """
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to delete from S3: {e}") from e
