# app/services/media_store.py
"""
Media store backed by Supabase Storage.

Images go to the public bucket and are referenced by their public URL; any
other attachment goes to the private bucket and is referenced by a signed URL.
The supabase client is synchronous, so calls run in a worker thread.
"""

import asyncio
import mimetypes
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import uuid4

import httpx
from supabase import Client, create_client

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w\-.]")


class MediaStoreError(Exception):
    """Raised when an upload or URL lookup fails."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@dataclass(slots=True)
class StoredMedia:
    path: str
    bucket: str
    url: str
    content_type: str
    is_public: bool
    size: int


def is_image(content_type: str | None) -> bool:
    return (content_type or "").lower().startswith("image/")


def build_storage_path(file_name: str, prefix: str = "inbound") -> str:
    """Date-partitioned, collision-free storage path for an upload."""
    sanitized = _UNSAFE_FILENAME_CHARS.sub("_", file_name or "attachment") or "attachment"
    now = datetime.now(UTC)
    return f"{prefix}/{now:%Y/%m}/{uuid4().hex}-{sanitized}"


class MediaStore:
    """Public/private blob storage for inbound attachments."""

    def __init__(self, client: Client | None = None):
        self.client = client
        if self.client is None and settings.SUPABASE_URL and settings.SUPABASE_SERVICE_ROLE_KEY:
            self.client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)

        self.public_bucket = settings.MEDIA_PUBLIC_BUCKET
        self.private_bucket = settings.MEDIA_PRIVATE_BUCKET
        self.signed_url_ttl = settings.MEDIA_SIGNED_URL_TTL_SECONDS

    @property
    def configured(self) -> bool:
        return self.client is not None

    def _require_client(self, operation: str) -> Client:
        if self.client is None:
            raise MediaStoreError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for media storage",
                operation=operation,
                recoverable=False,
            )
        return self.client

    async def upload(
        self,
        data: bytes,
        file_name: str,
        content_type: str,
        *,
        prefix: str = "inbound",
    ) -> StoredMedia:
        """Store ``data`` and return where it lives. Images are public."""
        client = self._require_client("upload")
        public = is_image(content_type)
        bucket = self.public_bucket if public else self.private_bucket
        path = build_storage_path(file_name, prefix=prefix)

        try:
            await asyncio.to_thread(
                client.storage.from_(bucket).upload,
                path,
                data,
                {"content-type": content_type or "application/octet-stream", "upsert": "false"},
            )
        except Exception as e:
            logger.error("Media upload failed", bucket=bucket, path=path, error=str(e))
            raise MediaStoreError(f"Failed to upload {file_name}: {e}", operation="upload") from e

        if public:
            url = await self.public_url(path)
        else:
            url = await self.signed_url(path)

        logger.info(
            "Media stored",
            bucket=bucket,
            path=path,
            content_type=content_type,
            size=len(data),
        )
        return StoredMedia(
            path=path,
            bucket=bucket,
            url=url,
            content_type=content_type,
            is_public=public,
            size=len(data),
        )

    async def public_url(self, path: str) -> str:
        client = self._require_client("public_url")
        try:
            url = await asyncio.to_thread(client.storage.from_(self.public_bucket).get_public_url, path)
        except Exception as e:
            raise MediaStoreError(f"Failed to resolve public URL: {e}", operation="public_url") from e
        return url.rstrip("?")

    async def signed_url(self, path: str, expiry_seconds: int | None = None) -> str:
        client = self._require_client("signed_url")
        ttl = expiry_seconds or self.signed_url_ttl
        try:
            result = await asyncio.to_thread(
                client.storage.from_(self.private_bucket).create_signed_url, path, ttl
            )
        except Exception as e:
            raise MediaStoreError(f"Failed to sign URL: {e}", operation="signed_url") from e

        signed = (result or {}).get("signedURL") or (result or {}).get("signedUrl")
        if not signed:
            raise MediaStoreError("No signed URL returned from storage", operation="signed_url")
        return signed

    async def delete(self, path: str, *, public: bool) -> None:
        client = self._require_client("delete")
        bucket = self.public_bucket if public else self.private_bucket
        try:
            await asyncio.to_thread(client.storage.from_(bucket).remove, [path])
        except Exception as e:
            raise MediaStoreError(f"Failed to delete {path}: {e}", operation="delete") from e


@dataclass(slots=True)
class DownloadedMedia:
    data: bytes
    content_type: str
    file_name: str


class TwilioMediaDownloader:
    """Fetches inbound WhatsApp attachments from Twilio's media URLs."""

    def __init__(
        self,
        *,
        account_sid: str | None = None,
        auth_token: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def download(self, url: str, index: int, content_type: str | None = None) -> DownloadedMedia:
        auth = (self.account_sid, self.auth_token) if self.account_sid and self.auth_token else None
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url, auth=auth)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise MediaStoreError(f"Failed to download media {index + 1}: {e}", operation="download") from e

        resolved_type = (
            response.headers.get("content-type", "").split(";", 1)[0].strip()
            or content_type
            or "application/octet-stream"
        )
        extension = mimetypes.guess_extension(resolved_type) or ".bin"
        return DownloadedMedia(
            data=response.content,
            content_type=resolved_type,
            file_name=f"whatsapp-media-{index + 1}{extension}",
        )
