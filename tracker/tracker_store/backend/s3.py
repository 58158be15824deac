"""
S3-compatible blob backend.

This module provides the production blob backend. It works with:
- Amazon S3
- MinIO
- Google Cloud Storage through its S3 interoperability endpoint

Invariants:
    - A missing key is reported as None, never as an error
    - Throttling, timeouts, connection resets and 5xx responses surface as
      TransientStorageError so the retry layer can back off
    - Every other client error surfaces as a non-retryable StorageError

How to change safely:
    - Keep error classification in _classify_client_error
    - Test against MinIO before changing list pagination
"""

from __future__ import annotations

import logging
from typing import Any

from aiobotocore.config import AioConfig
from aiobotocore.session import get_session
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .base import (
    ObjectInfo,
    StorageConnectionError,
    StorageError,
    TransientStorageError,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})

RETRYABLE_CODES = frozenset(
    {
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "TooManyRequests",
        "RequestLimitExceeded",
        "RequestTimeout",
        "RequestTimeoutException",
        "ServiceUnavailable",
        "InternalError",
        "429",
        "500",
        "502",
        "503",
        "504",
    }
)

NETWORK_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _status_code(error: ClientError) -> int:
    return int(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)


def _classify_client_error(error: ClientError, operation: str, path: str) -> StorageError:
    """Map a botocore ClientError onto the storage error taxonomy."""
    code = _error_code(error)
    status = _status_code(error)
    message = f"S3 {operation} failed for {path}: {code or status}"
    if code in RETRYABLE_CODES or status == 429 or status >= 500:
        return TransientStorageError(message)
    return StorageError(message)


class S3Backend:
    """S3 implementation of the DocumentBackend protocol.

    Uses aiobotocore for async operations. One client is opened on
    connect() and reused for every call.

    Example:
        >>> backend = S3Backend(S3Config(bucket="tracker-storage"))
        >>> await backend.connect()
        >>> await backend.put("data/config.json", b"{}")
    """

    def __init__(self, config: Any) -> None:
        """Initialize the backend.

        Args:
            config: S3Config instance
        """
        self.config = config
        self._session = None
        self._client_ctx = None
        self._client = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connected to the bucket."""
        return self._connected and self._client is not None

    async def connect(self) -> None:
        """Open the client and verify the bucket is reachable.

        Raises:
            StorageConnectionError: If the bucket is missing or unreachable
        """
        if self._connected:
            return

        self._session = get_session()

        client_kwargs: dict[str, Any] = {
            "region_name": self.config.region,
            # Retries are owned by the BlobStore retry policy.
            "config": AioConfig(
                connect_timeout=self.config.connect_timeout,
                read_timeout=self.config.read_timeout,
                retries={"max_attempts": 0},
            ),
        }

        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url

        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        try:
            self._client_ctx = self._session.create_client("s3", **client_kwargs)
            self._client = await self._client_ctx.__aenter__()
            await self._client.head_bucket(Bucket=self.config.bucket)
        except ClientError as e:
            await self.close()
            if _error_code(e) in NOT_FOUND_CODES:
                raise StorageConnectionError(
                    f"Bucket '{self.config.bucket}' not found"
                ) from e
            raise StorageConnectionError(f"S3 error: {e}") from e
        except Exception as e:
            await self.close()
            raise StorageConnectionError(f"Failed to connect to S3: {e}") from e

        self._connected = True
        logger.info(
            "Connected to S3",
            extra={
                "bucket": self.config.bucket,
                "region": self.config.region,
                "endpoint": self.config.endpoint_url or "AWS",
            },
        )

    async def close(self) -> None:
        """Close the S3 client."""
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing S3 client: {e}")
        self._client_ctx = None
        self._client = None
        self._connected = False

    def _require_client(self) -> Any:
        if self._client is None:
            raise StorageConnectionError("Not connected to S3")
        return self._client

    async def get(self, path: str) -> bytes | None:
        client = self._require_client()
        try:
            response = await client.get_object(Bucket=self.config.bucket, Key=path)
            async with response["Body"] as stream:
                return await stream.read()
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return None
            raise _classify_client_error(e, "get", path) from e
        except NETWORK_ERRORS as e:
            raise TransientStorageError(f"S3 get failed for {path}: {e}") from e

    async def put(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/json",
        cache_control: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        client = self._require_client()
        kwargs: dict[str, Any] = {
            "Bucket": self.config.bucket,
            "Key": path,
            "Body": data,
            "ContentType": content_type,
        }
        if cache_control:
            kwargs["CacheControl"] = cache_control
        if metadata:
            kwargs["Metadata"] = {k: str(v) for k, v in metadata.items()}

        try:
            await client.put_object(**kwargs)
        except ClientError as e:
            raise _classify_client_error(e, "put", path) from e
        except NETWORK_ERRORS as e:
            raise TransientStorageError(f"S3 put failed for {path}: {e}") from e

        logger.debug(
            "Document written to S3",
            extra={"bucket": self.config.bucket, "path": path, "size": len(data)},
        )

    async def exists(self, path: str) -> bool:
        return await self._head(path) is not None

    async def _head(self, path: str) -> dict[str, Any] | None:
        client = self._require_client()
        try:
            return await client.head_object(Bucket=self.config.bucket, Key=path)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return None
            raise _classify_client_error(e, "head", path) from e
        except NETWORK_ERRORS as e:
            raise TransientStorageError(f"S3 head failed for {path}: {e}") from e

    async def list(self, prefix: str, include_metadata: bool = False) -> list[ObjectInfo]:
        client = self._require_client()
        objects: list[ObjectInfo] = []
        try:
            paginator = client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    objects.append(
                        ObjectInfo(
                            path=obj["Key"],
                            size=obj.get("Size", 0),
                            updated=obj.get("LastModified"),
                        )
                    )
        except ClientError as e:
            raise _classify_client_error(e, "list", prefix) from e
        except NETWORK_ERRORS as e:
            raise TransientStorageError(f"S3 list failed for {prefix}: {e}") from e

        if not include_metadata:
            return objects

        # list_objects_v2 does not return user metadata
        detailed = []
        for info in objects:
            head = await self._head(info.path)
            if head is None:
                # Deleted between list and head
                continue
            detailed.append(
                ObjectInfo(
                    path=info.path,
                    size=info.size,
                    updated=info.updated,
                    metadata=dict(head.get("Metadata", {})),
                )
            )
        return detailed

    async def delete(self, path: str) -> bool:
        client = self._require_client()
        if not await self.exists(path):
            return False
        try:
            await client.delete_object(Bucket=self.config.bucket, Key=path)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return False
            raise _classify_client_error(e, "delete", path) from e
        except NETWORK_ERRORS as e:
            raise TransientStorageError(f"S3 delete failed for {path}: {e}") from e
        return True
