"""Cloudflare R2 (S3-compatible) upload and link generation for generated media."""

import logging
import os
import re
import time
from datetime import timedelta

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

R2_ACCOUNT_ID: str = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID: str = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY: str = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME: str = os.getenv("R2_BUCKET_NAME", "")
R2_PUBLIC_URL: str = os.getenv("R2_PUBLIC_URL", "")

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


class StorageUploadError(Exception):
    """Upload or link generation failed. Fatal for the job."""


def build_key(filename: str, now_ms: int | None = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"media/{stamp}-{_UNSAFE_CHARS.sub('_', filename)}"


class R2Storage:
    """
    Thin wrapper over boto3's S3 client pointed at the R2 endpoint.

    boto3 is blocking, so calls go through Starlette's threadpool to keep the
    event loop (Telegram polling, HTTP API) responsive during large uploads.
    """

    def __init__(
        self,
        bucket: str = R2_BUCKET_NAME,
        public_base_url: str = R2_PUBLIC_URL,
        client=None,
    ):
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        if client is None:
            session = boto3.session.Session()
            client = session.client(
                "s3",
                region_name="auto",
                endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
                aws_access_key_id=R2_ACCESS_KEY_ID,
                aws_secret_access_key=R2_SECRET_ACCESS_KEY,
                config=Config(signature_version="s3v4", retries={"max_attempts": 3}),
            )
        self._client = client

        logger.info(
            "R2 client initialized",
            extra={"bucket": self.bucket, "has_credentials": bool(R2_ACCESS_KEY_ID)},
        )

    async def upload(self, data: bytes, filename: str, content_type: str) -> str:
        """Store *data* and return its object key."""
        key = build_key(filename)
        logger.info("Uploading to R2", extra={"key": key, "size": len(data), "content_type": content_type})
        try:
            await run_in_threadpool(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageUploadError(f"Upload of {filename} failed: {exc}") from exc
        logger.info("Upload successful", extra={"key": key})
        return key

    async def public_reference(self, key: str, ttl: timedelta) -> str:
        """
        Public link for *key*. A configured public bucket URL wins; otherwise
        a presigned GET valid for *ttl*.
        """
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        try:
            return await run_in_threadpool(
                self._client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=int(ttl.total_seconds()),
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageUploadError(f"Could not sign URL for {key}: {exc}") from exc
