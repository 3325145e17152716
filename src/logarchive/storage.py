"""
S3-compatible object storage access.

One ObjectStore per credential set: the source log buckets, the archive
writer and the independent archive reader are separate instances. All
calls are blocking boto3 calls wrapped in with_retry; the async_* variants
run them through asyncio.to_thread.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from config.config import S3Settings
from core.errors.exceptions import PipelineError, TransientError, wrap_exception
from core.resilience.retry import S3_RETRY, with_retry

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _error_status(exc: ClientError) -> Optional[int]:
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def translate_client_error(exc: Exception, operation: str, bucket: str, key: str = "") -> PipelineError:
    """Map a botocore exception to the pipeline error hierarchy.

    HTTP status decides the category (404/403 permanent, 5xx and 429 transient);
    connection-level BotoCoreErrors classify as transient.
    """
    context = {"operation": operation, "bucket": bucket, "object_key": key}
    if isinstance(exc, BotoCoreError):
        return TransientError(
            f"S3 {operation} failed for s3://{bucket}/{key}: {exc}", cause=exc, context=context
        )
    return wrap_exception(exc, context=context)


class ObjectStore:
    """
    Thin boto3 wrapper with retry and error classification.

    Example:
        store = ObjectStore(config.source)
        prefixes = store.list_prefixes("cdn-logs-main")
        store.download_file("cdn-logs-main", "20240101/a.log.gz", Path("/tmp/a.log.gz"))
    """

    def __init__(self, settings: S3Settings, name: str = "s3", client: Any = None):
        self.settings = settings
        self.name = name
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = self._create_client()
        return self._client

    def _create_client(self):
        s = self.settings
        session = boto3.session.Session(profile_name=s.profile_name or None)
        boto_config = BotoConfig(
            max_pool_connections=s.max_pool_connections,
            connect_timeout=s.connect_timeout_seconds,
            read_timeout=s.read_timeout_seconds,
            s3={"addressing_style": s.addressing_style},
            retries={"max_attempts": 0, "mode": "standard"},
        )
        kwargs: Dict[str, Any] = {"config": boto_config}
        if s.endpoint_url:
            kwargs["endpoint_url"] = s.endpoint_url
        if s.region_name:
            kwargs["region_name"] = s.region_name
        if s.aws_access_key_id and s.aws_secret_access_key:
            kwargs["aws_access_key_id"] = s.aws_access_key_id
            kwargs["aws_secret_access_key"] = s.aws_secret_access_key

        logger.debug(
            "Creating S3 client %s (endpoint=%s)",
            self.name,
            s.endpoint_url or "default",
            extra={"operation": self.name},
        )
        return session.client("s3", **kwargs)

    # =========================================================================
    # Blocking operations
    # =========================================================================

    @with_retry(config=S3_RETRY)
    def list_prefixes(self, bucket: str, prefix: str = "", delimiter: str = "/") -> List[str]:
        """Common prefixes directly under prefix, paginated."""
        prefixes: List[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix, Delimiter=delimiter):
                for entry in page.get("CommonPrefixes") or []:
                    if entry.get("Prefix"):
                        prefixes.append(entry["Prefix"])
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "list_prefixes", bucket, prefix) from e
        return prefixes

    @with_retry(config=S3_RETRY)
    def list_keys(self, bucket: str, prefix: str = "", limit: Optional[int] = None) -> List[str]:
        """All object keys under prefix (at most limit when given), paginated."""
        keys: List[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for entry in page.get("Contents") or []:
                    keys.append(entry["Key"])
                    if limit is not None and len(keys) >= limit:
                        return keys
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "list_keys", bucket, prefix) from e
        return keys

    @with_retry(config=S3_RETRY)
    def download_file(self, bucket: str, key: str, dest: Path) -> Path:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(bucket, key, str(dest))
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "download_file", bucket, key) from e
        return dest

    @with_retry(config=S3_RETRY)
    def upload_file(self, path: Path, bucket: str, key: str) -> None:
        try:
            self.client.upload_file(str(path), bucket, key)
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            raise translate_client_error(e, "upload_file", bucket, key) from e

    @with_retry(config=S3_RETRY)
    def head(self, bucket: str, key: str) -> Optional[Dict[str, Any]]:
        """Object metadata, or None when the object does not exist."""
        try:
            return self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES or _error_status(e) == 404:
                return None
            raise translate_client_error(e, "head", bucket, key) from e
        except BotoCoreError as e:
            raise translate_client_error(e, "head", bucket, key) from e

    # =========================================================================
    # Async wrappers
    # =========================================================================

    async def async_list_prefixes(self, bucket: str, prefix: str = "", delimiter: str = "/") -> List[str]:
        return await asyncio.to_thread(self.list_prefixes, bucket, prefix, delimiter)

    async def async_list_keys(self, bucket: str, prefix: str = "", limit: Optional[int] = None) -> List[str]:
        return await asyncio.to_thread(self.list_keys, bucket, prefix, limit)

    async def async_download_file(self, bucket: str, key: str, dest: Path) -> Path:
        return await asyncio.to_thread(self.download_file, bucket, key, dest)

    async def async_upload_file(self, path: Path, bucket: str, key: str) -> None:
        await asyncio.to_thread(self.upload_file, path, bucket, key)

    async def async_head(self, bucket: str, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.head, bucket, key)
