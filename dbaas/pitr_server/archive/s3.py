"""
S3-compatible object storage archive backend.

Works with AWS S3, MinIO and any S3 API-compatible store. Uses
aiobotocore for async access.

Object layout:
    s3://<bucket>/<prefix>/<key>

Invariants:
    - if_absent writes use conditional PUT (If-None-Match: *), so two
      writers can never both commit the same key
    - Backend errors surface as OSError / KeyError, never botocore types

How to change safely:
    - Test against MinIO before deploying (conditional writes support varies)
    - Keep pagination for list operations, buckets grow unbounded
"""

from __future__ import annotations

import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
_PRECONDITION_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict"}


class S3ArchiveBackend:
    """S3 implementation of ArchiveBackend.

    Attributes:
        s3_config: S3 configuration (bucket, region, endpoint, prefix, keys)

    Example:
        >>> backend = S3ArchiveBackend(S3Config(bucket="pg-pitr"))
        >>> await backend.connect()
        >>> await backend.put_object("wal/000000010000000000000001.json", b"{}")
    """

    def __init__(self, s3_config: Any) -> None:
        self.s3_config = s3_config
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    @property
    def is_connected(self) -> bool:
        return self._s3_client is not None

    async def connect(self) -> None:
        """Initialize S3 client."""
        if self._s3_client:
            return

        self._session = get_session()

        client_kwargs = {
            "region_name": self.s3_config.region,
        }

        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()
        logger.info(
            "S3 archive connected",
            extra={"bucket": self.s3_config.bucket, "prefix": self.s3_config.prefix},
        )

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    async def put_object(self, key: str, data: bytes, if_absent: bool = False) -> bool:
        kwargs: dict[str, Any] = {
            "Bucket": self.s3_config.bucket,
            "Key": self._full_key(key),
            "Body": data,
            "ContentType": "application/octet-stream",
        }
        if if_absent:
            kwargs["IfNoneMatch"] = "*"

        try:
            await self._client.put_object(**kwargs)
        except ClientError as e:
            if if_absent and _error_code(e) in _PRECONDITION_CODES:
                return False
            raise OSError(f"S3 put_object {key}: {e}") from e
        except BotoCoreError as e:
            raise OSError(f"S3 put_object {key}: {e}") from e
        return True

    async def get_object(self, key: str) -> bytes:
        try:
            response = await self._client.get_object(
                Bucket=self.s3_config.bucket,
                Key=self._full_key(key),
            )
            async with response["Body"] as stream:
                return await stream.read()
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise KeyError(key) from None
            raise OSError(f"S3 get_object {key}: {e}") from e
        except BotoCoreError as e:
            raise OSError(f"S3 get_object {key}: {e}") from e

    async def list_keys(self, prefix: str) -> list[str]:
        full_prefix = self._full_key(prefix)
        strip = len(self._full_key(""))
        keys = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.s3_config.bucket, Prefix=full_prefix):
                for obj in page.get("Contents", []):
                    keys.append(obj["Key"][strip:])
        except (ClientError, BotoCoreError) as e:
            raise OSError(f"S3 list_objects_v2 {prefix}: {e}") from e
        return sorted(keys)

    async def delete_object(self, key: str) -> None:
        try:
            await self._client.delete_object(
                Bucket=self.s3_config.bucket,
                Key=self._full_key(key),
            )
        except (ClientError, BotoCoreError) as e:
            raise OSError(f"S3 delete_object {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        try:
            await self._client.head_object(
                Bucket=self.s3_config.bucket,
                Key=self._full_key(key),
            )
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            raise OSError(f"S3 head_object {key}: {e}") from e
        except BotoCoreError as e:
            raise OSError(f"S3 head_object {key}: {e}") from e
        return True

    @property
    def _client(self) -> Any:
        if self._s3_client is None:
            raise OSError("S3 archive backend is not connected")
        return self._s3_client

    def _full_key(self, key: str) -> str:
        prefix = self.s3_config.prefix.strip("/")
        return f"{prefix}/{key}" if prefix else key


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))
