"""Cloudflare R2 (S3-compatible) object storage client."""

import asyncio
from typing import Any

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from idforge.services.exceptions import StorageError

logger = structlog.get_logger()

PRIVATE_HOST_MARKER = "r2.cloudflarestorage.com"


class R2Client:
    """Upload, read and delete blobs in an R2 bucket.

    boto3 is synchronous, so every call runs in a worker thread. The client is
    constructed once by the application lifespan and injected where needed.
    """

    def __init__(
        self,
        account_id: str,
        access_key_id: str,
        secret_access_key: str,
        bucket_name: str,
        public_url: str,
        s3_client: Any = None,
    ):
        """Initialize R2 client.

        Args:
            account_id: Cloudflare account id (forms the S3 endpoint host)
            access_key_id: R2 access key id
            secret_access_key: R2 secret access key
            bucket_name: Target bucket
            public_url: Public base URL of the bucket (no trailing slash needed)
            s3_client: Preconfigured boto3 S3 client (tests)
        """
        self.account_id = account_id
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.bucket_name = bucket_name
        self.public_base = public_url.rstrip("/")
        self._s3 = s3_client

    @property
    def s3(self) -> Any:
        if self._s3 is None:
            if not self.account_id:
                raise StorageError("CLOUDFLARE_R2_ACCOUNT_ID not configured")
            session = boto3.session.Session(
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
                region_name="auto",
            )
            self._s3 = session.client(
                "s3", endpoint_url=f"https://{self.account_id}.{PRIVATE_HOST_MARKER}"
            )
        return self._s3

    def public_url(self, key: str) -> str:
        return f"{self.public_base}/{key}"

    def is_public_url(self, url: str) -> bool:
        return bool(self.public_base) and url.startswith(self.public_base + "/")

    def is_private_url(self, url: str) -> bool:
        """True for direct bucket URLs that need credentials to read."""
        return PRIVATE_HOST_MARKER in url

    def key_from_url(self, url: str) -> str | None:
        """Extract the object key from a public or direct bucket URL.

        Returns:
            Object key, or None if the URL does not point into this bucket
        """
        if self.is_public_url(url):
            return url[len(self.public_base) + 1 :].split("?", 1)[0]
        if self.is_private_url(url):
            path = url.split(PRIVATE_HOST_MARKER, 1)[1].split("?", 1)[0].lstrip("/")
            prefix = f"{self.bucket_name}/"
            return path[len(prefix) :] if path.startswith(prefix) else path
        return None

    async def upload_bytes(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        """Upload a blob and return its public URL.

        Args:
            key: Object key (e.g. "anc_<id>_angle-left_1.jpg")
            data: Blob content
            content_type: MIME type stored with the object

        Returns:
            Public URL of the uploaded object

        Raises:
            StorageError: If the upload fails
        """
        try:
            await asyncio.to_thread(
                self.s3.put_object,
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e

        logger.info("storage.uploaded", key=key, size_bytes=len(data))
        return self.public_url(key)

    async def download(self, key: str) -> tuple[bytes, str]:
        """Read an object.

        Returns:
            Tuple of (content, content type)

        Raises:
            StorageError: If the object cannot be read
        """

        def _read() -> tuple[bytes, str]:
            obj = self.s3.get_object(Bucket=self.bucket_name, Key=key)
            return obj["Body"].read(), obj.get("ContentType") or "application/octet-stream"

        try:
            return await asyncio.to_thread(_read)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Read of {key} failed: {e}") from e

    async def download_by_url(self, url: str) -> tuple[bytes, str]:
        """Read an object addressed by public or direct bucket URL.

        Raises:
            StorageError: If the URL is outside this bucket or the read fails
        """
        key = self.key_from_url(url)
        if not key:
            raise StorageError(f"URL is not in bucket {self.bucket_name}: {url}")
        return await self.download(key)

    async def delete_by_url(self, url: str) -> bool:
        """Delete the object behind a public URL.

        URLs outside the public prefix (e.g. Instagram CDN links) are ignored.

        Returns:
            True if a delete was issued

        Raises:
            StorageError: If the delete call fails
        """
        if not self.is_public_url(url):
            return False
        key = self.key_from_url(url)
        try:
            await asyncio.to_thread(self.s3.delete_object, Bucket=self.bucket_name, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Delete of {key} failed: {e}") from e

        logger.info("storage.deleted", key=key)
        return True
