"""Artifact store: fetch, normalize and persist generated images.

``materialize`` never raises for an individual artifact. It returns the
stored URL, the original remote URL when only the store write failed, or
None when the artifact cannot be obtained at all.
"""

import asyncio
import io
import time
import uuid
from typing import Optional

import httpx
import structlog
from PIL import Image, UnidentifiedImageError

from pixcraft.services.exceptions import ImageProcessingError, StorageError
from pixcraft.services.storage.s3_client import S3ObjectStore

logger = structlog.get_logger(__name__)

LOCAL_FILE_SCHEME = "file://"
OUTPUT_FORMAT = "jpeg"
OUTPUT_CONTENT_TYPE = "image/jpeg"


def normalize_image(data: bytes, max_width: int, max_height: int, quality: int) -> bytes:
    """Fit an image inside max_width x max_height (never enlarging) and re-encode as JPEG.

    Raises:
        ImageProcessingError: If the bytes are not a decodable image
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            img.thumbnail((max_width, max_height))
            if img.mode != "RGB":
                img = img.convert("RGB")
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=quality)
            return out.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise ImageProcessingError(f"Failed to process image: {e}") from e


class ArtifactStore:
    """Materializes remote images into the owned object store."""

    def __init__(
        self,
        object_store: S3ObjectStore,
        max_width: int = 1024,
        max_height: int = 1024,
        quality: int = 90,
        fetch_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize artifact store.

        Args:
            object_store: Destination store
            max_width: Bounding box width for normalized images
            max_height: Bounding box height for normalized images
            quality: JPEG quality of normalized images
            fetch_timeout: Timeout in seconds for downloading a remote image
            transport: httpx transport override for downloads
        """
        self.object_store = object_store
        self.max_width = max_width
        self.max_height = max_height
        self.quality = quality
        self.fetch_timeout = fetch_timeout
        self._transport = transport

    @staticmethod
    def _object_key(filename: str) -> str:
        stem = filename.rsplit(".", 1)[0] or "image"
        return f"uploads/{int(time.time() * 1000)}-{stem}-{uuid.uuid4().hex}.{OUTPUT_FORMAT}"

    async def _fetch(self, url: str) -> bytes:
        async with httpx.AsyncClient(
            timeout=self.fetch_timeout, follow_redirects=True, transport=self._transport
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content

    async def _normalize(self, data: bytes) -> bytes:
        return await asyncio.to_thread(
            normalize_image, data, self.max_width, self.max_height, self.quality
        )

    async def store_bytes(self, data: bytes, filename: str) -> str:
        """Normalize raw image bytes and persist them.

        Returns:
            Public URL of the stored image

        Raises:
            ImageProcessingError: If the bytes are not a decodable image
            StorageError: If the store write failed
        """
        normalized = await self._normalize(data)
        return await self.object_store.put_object(
            self._object_key(filename), normalized, OUTPUT_CONTENT_TYPE
        )

    async def materialize(self, remote_url: str, filename: str) -> Optional[str]:
        """Fetch a remote image, normalize it and persist it.

        Args:
            remote_url: Provider-issued (or client-supplied) image URL
            filename: Semantic name used in the object key

        Returns:
            Stored URL on success; ``remote_url`` itself if only the store
            write failed; None if the reference uses a local file scheme or
            the image could not be fetched or decoded
        """
        if not remote_url:
            return None

        if remote_url.startswith(LOCAL_FILE_SCHEME):
            logger.warning("artifact.local_file_rejected", url=remote_url, filename=filename)
            return None

        try:
            data = await self._fetch(remote_url)
        except httpx.HTTPError as e:
            logger.error(
                "artifact.fetch_failed",
                url=remote_url,
                filename=filename,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return None

        try:
            stored_url = await self.store_bytes(data, filename)
        except ImageProcessingError as e:
            logger.error("artifact.normalize_failed", url=remote_url, error_message=str(e))
            return None
        except StorageError as e:
            logger.warning(
                "artifact.store_failed_using_remote",
                url=remote_url,
                filename=filename,
                error_message=str(e),
            )
            return remote_url

        logger.info("artifact.stored", filename=filename, stored_url=stored_url)
        return stored_url

    async def delete(self, url: str) -> bool:
        """Best-effort removal of an image this store owns.

        Returns:
            True if an owned object was deleted, False for foreign URLs or failures
        """
        key = self.object_store.key_from_url(url)
        if key is None:
            return False
        try:
            await self.object_store.delete_object(key)
        except StorageError as e:
            logger.warning("artifact.delete_failed", url=url, error_message=str(e))
            return False
        logger.info("artifact.deleted", key=key)
        return True
