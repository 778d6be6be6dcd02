"""Attachment storage on an S3-compatible bucket."""

from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import dataclass

import boto3
from botocore.client import BaseClient

from repairdesk.core.config import settings

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}


@dataclass(frozen=True)
class StoredFile:
    url: str
    key: str


class StorageValidationError(ValueError):
    """File rejected before upload (type or size)."""
    pass


def _normalize_endpoint(endpoint_url: str | None) -> str | None:
    if endpoint_url:
        return endpoint_url.rstrip("/")
    return None


def get_s3_client() -> BaseClient:
    """Return a configured S3 client (supports S3-compatible endpoints)."""
    return boto3.client(
        "s3",
        region_name=settings.S3_REGION or None,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
        endpoint_url=_normalize_endpoint(settings.S3_ENDPOINT_URL),
    )


def sanitize_filename(filename: str | None) -> str:
    """Strip directories and anything outside ``[A-Za-z0-9._-]``."""
    base = os.path.basename(filename or "").strip()
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", base).strip("._")
    return cleaned[:120] or "file"


def validate_image(content: bytes, content_type: str | None) -> None:
    if (content_type or "").lower() not in ALLOWED_IMAGE_TYPES:
        raise StorageValidationError(
            f"Unsupported file type {content_type!r}; allowed: jpeg, png, gif, webp"
        )
    if len(content) > settings.ATTACHMENT_MAX_BYTES:
        limit_mb = settings.ATTACHMENT_MAX_BYTES / (1024 * 1024)
        raise StorageValidationError(f"File exceeds the {limit_mb:g} MB limit")


def public_url(key: str) -> str:
    if settings.S3_PUBLIC_BASE_URL:
        return f"{settings.S3_PUBLIC_BASE_URL.rstrip('/')}/{key}"
    endpoint = _normalize_endpoint(settings.S3_ENDPOINT_URL)
    if endpoint:
        return f"{endpoint}/{settings.S3_BUCKET}/{key}"
    return f"https://{settings.S3_BUCKET}.s3.amazonaws.com/{key}"


class BlobStorage:
    """Uploads bytes and returns a public URL plus the storage key."""

    def __init__(self, client: BaseClient | None = None, bucket: str | None = None):
        self._client = client
        self.bucket = bucket or settings.S3_BUCKET

    @property
    def client(self) -> BaseClient:
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def upload_file(
        self, content: bytes, filename: str, folder: str, content_type: str
    ) -> StoredFile:
        key = f"{folder.strip('/')}/{uuid.uuid4().hex}-{sanitize_filename(filename)}"
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=content,
            ContentType=content_type,
        )
        logger.info("Uploaded attachment to %s", key)
        return StoredFile(url=public_url(key), key=key)

    def delete_file(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)
