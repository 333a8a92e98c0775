"""Optional upload of finished conversions to S3-compatible storage."""

from __future__ import annotations

import logging
import os

import boto3
from botocore.config import Config

logger = logging.getLogger(__name__)


class S3Uploader:
    """Upload a file privately and hand back a time-limited GET URL."""

    def __init__(self, bucket: str, *, region: str, expires: int = 300, client=None) -> None:
        if not bucket:
            raise ValueError("bucket is required")
        self.bucket = bucket
        self.region = region
        self.expires = expires
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> S3Uploader | None:
        if not settings.upload_enabled:
            return None
        return cls(settings.s3_bucket, region=settings.s3_region, expires=settings.upload_url_ttl_seconds)

    @property
    def client(self):
        if self._client is None:
            endpoint = os.environ.get("S3_ENDPOINT") or None
            self._client = boto3.client(
                "s3",
                region_name=self.region,
                endpoint_url=endpoint,
                config=Config(signature_version="s3v4"),
            )
        return self._client

    def upload(self, path: str, key: str | None = None) -> str:
        key = key or os.path.basename(path)
        self.client.upload_file(
            path,
            self.bucket,
            key,
            ExtraArgs={"ACL": "private", "ContentType": "audio/mpeg"},
        )
        url = self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.expires,
        )
        logger.info("Uploaded conversion bucket=%s key=%s", self.bucket, key)
        return url
