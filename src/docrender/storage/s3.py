# src/docrender/storage/s3.py
from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Any, List, Optional, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import AwsStorageConfig, validate_storage_config
from ..exceptions import StorageBackendError, StorageKeyExistsError
from ..retrying_io import RetryingIO
from .base import RemoteStorageProvider

logger = logging.getLogger("docrender")

_KEY_TAKEN_CODES = ("PreconditionFailed", "412", "ConditionalRequestConflict", "409")


class S3StorageProvider(RemoteStorageProvider):
    """Amazon S3 or any S3-compatible endpoint (MinIO, Ceph RGW)."""

    name = "AWS"

    def __init__(
        self,
        config: AwsStorageConfig,
        io: Optional[RetryingIO] = None,
        client: Any = None,
        download_dir: Optional[Path] = None,
    ):
        super().__init__(io, download_dir)
        self.config = validate_storage_config(config)
        self.bucket = config.bucket_name
        self.region = config.region
        self._client = client or boto3.client("s3", **self._client_kwargs())
        logger.info("S3 storage initialised for bucket %s (%s)", self.bucket, config.endpoint_url or self.region)

    def _client_kwargs(self) -> dict:
        kw = {"region_name": self.config.region}
        if self.config.endpoint_url:
            kw["endpoint_url"] = self.config.endpoint_url
        if self.config.access_key_id and self.config.secret_access_key:
            kw["aws_access_key_id"] = self.config.access_key_id
            kw["aws_secret_access_key"] = self.config.secret_access_key
            if self.config.session_token:
                kw["aws_session_token"] = self.config.session_token
        return kw

    @property
    def namespace(self) -> str:
        return f"s3://{self.config.endpoint_url or self.region}/{self.bucket}"

    def put(self, source_path: Union[str, Path], destination_key: str, overwrite: bool = True) -> str:
        key = self.normalize_key(destination_key)
        content_type = mimetypes.guess_type(str(source_path))[0] or "application/octet-stream"
        try:
            if overwrite:
                self._client.upload_file(
                    str(source_path), self.bucket, key, ExtraArgs={"ContentType": content_type}
                )
            else:
                # conditional write, S3 answers 412 when the key is already present
                with open(source_path, "rb") as body:
                    self._client.put_object(
                        Bucket=self.bucket, Key=key, Body=body, ContentType=content_type, IfNoneMatch="*"
                    )
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if not overwrite and code in _KEY_TAKEN_CODES:
                raise StorageKeyExistsError(f"s3://{self.bucket}/{key} already exists", key) from e
            raise StorageBackendError(f"S3 upload of {key} to {self.bucket} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageBackendError(f"S3 upload of {key} to {self.bucket} failed: {e}") from e
        logger.debug("Uploaded %s to s3://%s/%s", Path(source_path).name, self.bucket, key)
        return self.url_for(key)

    def get(self, key: str) -> Path:
        key = self.normalize_key(key)
        local = self._temp_path_for(key)
        try:
            self._client.download_file(self.bucket, key, str(local))
        except (BotoCoreError, ClientError) as e:
            self.release(local)
            raise StorageBackendError(f"S3 download of {key} from {self.bucket} failed: {e}") from e
        return local

    def delete(self, key: str) -> bool:
        key = self.normalize_key(key)
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning("S3 delete of %s failed, %s", key, e)
            return False

    def exists(self, key: str) -> bool:
        key = self.normalize_key(key)
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageBackendError(f"S3 head of {key} failed: {e}") from e

    def url_for(self, key: str) -> str:
        key = self.normalize_key(key)
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def list_files(self, prefix: str = "") -> List[str]:
        keys: List[str] = []
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix.lstrip("/")):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (BotoCoreError, ClientError) as e:
            raise StorageBackendError(f"S3 listing of {self.bucket}/{prefix} failed: {e}") from e
        return sorted(keys)
