from __future__ import annotations

import logging
from functools import partial
from pathlib import Path
from typing import Any, Callable, TypeVar

import anyio
import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
import httpx

from assetflow.core.config import Settings
from assetflow.core.errors import StorageUnavailable, UploadFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def _error_code(exc: Exception) -> str:
    response = getattr(exc, "response", None) or {}
    return str((response.get("Error") or {}).get("Code") or "")


def build_s3_client(settings: Settings) -> Any:
    session = boto3.session.Session(
        aws_access_key_id=settings.s3_access_key,
        aws_secret_access_key=settings.s3_secret_key,
        region_name=settings.s3_region,
    )
    return session.client(
        "s3",
        endpoint_url=settings.s3_endpoint_url or None,
        config=Config(signature_version="s3v4", s3={"addressing_style": settings.s3_addressing_style}),
    )


class BlobStore:
    """S3-compatible object store client.

    Every operation raises ``StorageUnavailable`` on network or credential errors and
    does not retry; absence is reported by ``exists`` as ``False``, never raised.
    """

    def __init__(self, client: Any, bucket: str, *, upload_ttl: int = 3600, download_ttl: int = 3600) -> None:
        if not bucket:
            raise RuntimeError("S3_BUCKET is not configured")
        self._client = client
        self.bucket = bucket
        self.upload_ttl = upload_ttl
        self.download_ttl = download_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "BlobStore":
        return cls(
            build_s3_client(settings),
            settings.s3_bucket,
            upload_ttl=settings.presign_upload_ttl_seconds,
            download_ttl=settings.presign_download_ttl_seconds,
        )

    async def _call(self, op: str, key: str, fn: Callable[[], T]) -> T:
        try:
            return await anyio.to_thread.run_sync(fn)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("blob_store_call_failed", extra={"op": op, "key": key, "error": str(exc)})
            raise StorageUnavailable(f"{op} failed for {key}: {exc}", key=key) from exc

    async def presign_upload(self, key: str, ttl: int | None = None) -> str:
        return await self._call(
            "presign_upload",
            key,
            partial(
                self._client.generate_presigned_url,
                ClientMethod="put_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=int(ttl or self.upload_ttl),
            ),
        )

    async def presign_download(self, key: str, ttl: int | None = None) -> str:
        return await self._call(
            "presign_download",
            key,
            partial(
                self._client.generate_presigned_url,
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=int(ttl or self.download_ttl),
            ),
        )

    async def exists(self, key: str) -> bool:

        def _head() -> bool:
            self._client.head_object(Bucket=self.bucket, Key=key)
            return True

        try:
            return await anyio.to_thread.run_sync(_head)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return False
            raise StorageUnavailable(f"exists failed for {key}: {exc}", key=key) from exc
        except BotoCoreError as exc:
            raise StorageUnavailable(f"exists failed for {key}: {exc}", key=key) from exc

    async def get_object(self, key: str) -> bytes:
        def _get() -> bytes:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        return await self._call("get_object", key, _get)

    async def put_object(self, key: str, data: bytes, content_type: str) -> None:
        await self._call(
            "put_object",
            key,
            partial(self._client.put_object, Bucket=self.bucket, Key=key, Body=data, ContentType=content_type),
        )

    async def download_to_file(self, key: str, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        await self._call(
            "download_to_file",
            key,
            partial(self._client.download_file, self.bucket, key, str(destination)),
        )
        return destination


async def put_file_to_presigned_url(
    client: httpx.AsyncClient,
    url: str,
    path: Path,
    *,
    content_type: str,
) -> int:
    """PUT a local file to a presigned URL and return the number of bytes sent."""
    content = await anyio.Path(path).read_bytes()
    try:
        resp = await client.put(url, content=content, headers={"Content-Type": content_type})
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        raise UploadFailure(f"PUT to presigned URL failed for {path.name}: {exc}", path=str(path)) from exc
    return len(content)
