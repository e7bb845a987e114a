"""
S3 Storage Service — knowledge-base document staging

Used by the extraction chain when a remote OCR service needs to fetch the
document itself: the bytes are uploaded under

    s3://<BUCKET>/<s3_key_prefix>/<epoch_ms>-<rand8>-<safe filename>

and a short-lived presigned GET URL is handed to the OCR call. Keys are
always built server-side from a sanitised filename.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import time
import uuid
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from knowledge_ingest.core.config import Settings
from knowledge_ingest.core.errors import ConfigurationError, TransientExternalError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class S3Object:
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str


def safe_filename(filename: str) -> str:
    """Collapse anything outside [A-Za-z0-9._-] to '_'."""
    cleaned = _UNSAFE_CHARS.sub("_", filename.rsplit("/", 1)[-1]).strip("._")
    return cleaned or "document"


class S3StorageService:
    """Async S3 operations for the knowledge-base bucket."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._session = aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        s = self._settings
        kwargs: dict = {"region_name": s.aws_region}
        if s.aws_access_key_id and s.aws_secret_access_key:
            kwargs.update(
                aws_access_key_id=s.aws_access_key_id,
                aws_secret_access_key=s.aws_secret_access_key,
            )
        return self._session.client("s3", **kwargs)

    def build_key(self, filename: str) -> str:
        suffix = uuid.uuid4().hex[:8]
        return f"{self._settings.s3_key_prefix}/{int(time.time() * 1000)}-{suffix}-{safe_filename(filename)}"

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upload_file(self, content: bytes, filename: str, mime_type: str | None = None) -> S3Object:
        """Upload raw bytes; returns the stored object's key and metadata."""
        if not self._settings.s3_bucket:
            raise ConfigurationError("S3 bucket is not configured")

        key = self.build_key(filename)
        ct = mime_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"

        try:
            async with self._client() as s3:
                resp = await s3.put_object(
                    Bucket=self._settings.s3_bucket,
                    Key=key,
                    Body=content,
                    ContentType=ct,
                    Metadata={"original_filename": safe_filename(filename)},
                )
        except (ClientError, BotoCoreError) as exc:
            raise TransientExternalError(f"S3 upload failed: {exc}") from exc

        logger.info("S3 upload ok | key=%s size=%d", key, len(content))
        return S3Object(
            key=key,
            bucket=self._settings.s3_bucket,
            size_bytes=len(content),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def get_presigned_url(self, key: str, expires_in: int | None = None) -> str:
        """Short-lived presigned GET URL scoped to exactly `key`."""
        ttl = expires_in or self._settings.presigned_url_ttl
        try:
            async with self._client() as s3:
                url = await s3.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self._settings.s3_bucket, "Key": key},
                    ExpiresIn=ttl,
                )
        except (ClientError, BotoCoreError) as exc:
            raise TransientExternalError(f"S3 presign failed: {exc}") from exc
        logger.debug("S3 presigned | key=%s ttl=%ds", key, ttl)
        return url
