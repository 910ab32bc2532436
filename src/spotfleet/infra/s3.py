"""S3 blob store for checkpoints and result files."""

import logging
from types import TracebackType

import aioboto3
from botocore.exceptions import ClientError
from types_aiobotocore_s3 import S3Client

from spotfleet.core.interfaces.storage import BlobStore
from spotfleet.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


class S3ClientContext:
    """Context manager for S3 client."""

    def __init__(self, session: aioboto3.Session, region: str, endpoint_url: str | None) -> None:
        self._session = session
        self._region = region
        self._endpoint_url = endpoint_url
        self._context: object | None = None

    async def __aenter__(self) -> S3Client:
        self._context = self._session.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
        )
        return await self._context.__aenter__()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._context:
            await self._context.__aexit__(exc_type, exc_val, exc_tb)


class S3BlobStore(BlobStore):
    """BlobStore over a single bucket."""

    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        session: aioboto3.Session | None = None,
    ) -> None:
        self.bucket = bucket
        self._region = region
        self._endpoint_url = endpoint_url
        self._session = session or aioboto3.Session()

    def _client(self) -> S3ClientContext:
        return S3ClientContext(self._session, self._region, self._endpoint_url)

    async def get_text(self, key: str) -> str:
        try:
            async with self._client() as s3:
                response = await s3.get_object(Bucket=self.bucket, Key=key)
                body = await response["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in _MISSING_CODES:
                return ""
            logger.warning(
                "S3 read failed",
                extra={"event": LogEvent.S3_ERROR, "bucket": self.bucket, "key": key, "error": str(e)},
            )
            raise
        return body.decode(errors="replace").strip()

    async def put_text(self, key: str, body: str) -> None:
        async with self._client() as s3:
            await s3.put_object(Bucket=self.bucket, Key=key, Body=body.encode())

    async def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return keys
