"""
S3 blob storage (AWS S3 or MinIO).

Blobs are stored under ``<prefix>/<sha256>``. The aiobotocore client is
opened on first use and kept until close().
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import BackendUnavailableError
from .base import blob_id, parse_blob_id

if TYPE_CHECKING:
    from ..config import S3Config

logger = logging.getLogger(__name__)

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


class S3BlobStorage:
    """S3 implementation of BlobStorage."""

    backend = "s3"

    def __init__(self, config: S3Config) -> None:
        self._config = config
        self._s3_ctx: Any = None
        self._s3_client: Any = None

    async def _client(self) -> Any:
        if self._s3_client is None:
            client_kwargs: dict[str, Any] = {"region_name": self._config.region}
            if self._config.endpoint_url:
                client_kwargs["endpoint_url"] = self._config.endpoint_url
            if self._config.access_key_id:
                client_kwargs["aws_access_key_id"] = self._config.access_key_id
                client_kwargs["aws_secret_access_key"] = self._config.secret_access_key
            self._s3_ctx = get_session().create_client("s3", **client_kwargs)
            self._s3_client = await self._s3_ctx.__aenter__()
        return self._s3_client

    def _key(self, digest: str) -> str:
        return f"{self._config.prefix}/{digest}" if self._config.prefix else digest

    def _unavailable(self, operation: str, err: Exception) -> BackendUnavailableError:
        return BackendUnavailableError(
            f"S3 {operation} failed", operation=operation, container=self._config.bucket, inner=err
        )

    async def set(self, data: bytes) -> str:
        id = blob_id(self.backend, data)
        try:
            client = await self._client()
            await client.put_object(
                Bucket=self._config.bucket,
                Key=self._key(parse_blob_id(id)),
                Body=bytes(data),
                ContentType="application/octet-stream",
            )
        except (ClientError, BotoCoreError) as err:
            raise self._unavailable("blobSet", err) from err
        logger.debug("Blob uploaded", extra={"blob_id": id, "bucket": self._config.bucket})
        return id

    async def get(self, id: str) -> bytes | None:
        digest = parse_blob_id(id, self.backend)
        try:
            client = await self._client()
            response = await client.get_object(Bucket=self._config.bucket, Key=self._key(digest))
            async with response["Body"] as stream:
                return await stream.read()
        except ClientError as err:
            if err.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise self._unavailable("blobGet", err) from err
        except BotoCoreError as err:
            raise self._unavailable("blobGet", err) from err

    async def remove(self, id: str) -> bool:
        digest = parse_blob_id(id, self.backend)
        key = self._key(digest)
        try:
            client = await self._client()
            try:
                await client.head_object(Bucket=self._config.bucket, Key=key)
            except ClientError as err:
                if err.response.get("Error", {}).get("Code") in _MISSING_CODES:
                    return False
                raise
            await client.delete_object(Bucket=self._config.bucket, Key=key)
            return True
        except (ClientError, BotoCoreError) as err:
            raise self._unavailable("blobRemove", err) from err

    async def close(self) -> None:
        """Close the S3 client."""
        if self._s3_client is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None
            self._s3_ctx = None
