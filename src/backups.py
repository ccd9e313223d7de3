# Copyright (c) 2025 Stephen Clau
#
# This file is part of Factorio Panel.
#
# Factorio Panel is dual-licensed:
#
# 1. GNU Affero General Public License v3.0 (AGPL-3.0)
#    See LICENSE file for full terms
#
# 2. Commercial License
#    For proprietary use without AGPL requirements
#    Contact: licensing@laudiversified.com
#
# SPDX-License-Identifier: AGPL-3.0-only OR Commercial


"""
S3 backup storage for save archives.

Keys are laid out as <type>/<filename>, where type is "auto" (written by the
scheduled backup job) or "manual" (uploaded from the panel as
manual/<timestamp>_<save>.zip). Any S3-compatible endpoint works; path-style
addressing is forced so MinIO and similar stores need no DNS setup.

boto3 is blocking, so every call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

try:
    from .exceptions import BackupStorageError, NotFoundError
    from .saves import SaveStore, sanitize_save_name
except ImportError:
    from exceptions import BackupStorageError, NotFoundError
    from saves import SaveStore, sanitize_save_name

logger = structlog.get_logger()

DEFAULT_BUCKET = "factorio-backups"

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}
_BUCKET_EXISTS_CODES = {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}

# auto/20260211T120000_world.zip or manual/2026-02-11T12-00-00_world.zip
_TIMESTAMP_PREFIX = re.compile(r"^(\d{8}T\d{6}|\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2})_")


@dataclass
class BackupObject:
    """One backup archive in the bucket."""

    key: str
    size: int
    last_modified: datetime
    type: str
    filename: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "size": self.size,
            "lastModified": self.last_modified.isoformat(),
            "type": self.type,
            "filename": self.filename,
        }


def parse_backup_key(key: str) -> Tuple[str, str]:
    """Split a key into (type, filename). Unknown prefixes count as manual."""
    prefix, _, filename = key.partition("/")
    return ("auto" if prefix == "auto" else "manual"), filename


def restored_save_name(key: str) -> str:
    """
    Save name a backup is restored under: restored_<original save>.

    Raises:
        ValueError: Nothing usable left of the key
    """
    filename = key.rsplit("/", 1)[-1]
    if filename.endswith(".zip"):
        filename = filename[: -len(".zip")]
    original = sanitize_save_name(_TIMESTAMP_PREFIX.sub("", filename))
    if not original:
        raise ValueError(f"Cannot derive a save name from backup key: {key}")
    return f"restored_{original}"


class BackupStore:
    """Backup archives in an S3 bucket."""

    def __init__(
        self,
        bucket: str = DEFAULT_BUCKET,
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = "us-east-1",
        client: Any = None,
    ) -> None:
        """
        Initialize store (the S3 client is created on first use).

        Args:
            bucket: Bucket holding the backups
            endpoint_url: S3 endpoint (None for AWS)
            access_key: Access key id (None uses the default credential chain)
            secret_key: Secret access key
            region: Signing region
            client: Prebuilt boto3 S3 client
        """
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region = region
        self._access_key = access_key
        self._secret_key = secret_key
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                region_name=self.region,
                aws_access_key_id=self._access_key,
                aws_secret_access_key=self._secret_key,
                config=BotoConfig(s3={"addressing_style": "path"}),
            )
        return self._client

    async def _call(self, op: str, key: Optional[str], func: Callable[..., Any], /, **kwargs: Any) -> Any:
        """Run a blocking S3 call in a thread, translating botocore errors."""
        try:
            return await asyncio.to_thread(func, **kwargs)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if key is not None and code in _MISSING_CODES:
                raise NotFoundError(f"Backup not found: {key}") from e
            logger.error("s3_request_failed", op=op, key=key, code=code, error=str(e))
            raise BackupStorageError(f"S3 {op} failed: {code or e}") from e
        except BotoCoreError as e:
            logger.error("s3_request_failed", op=op, key=key, error=str(e))
            raise BackupStorageError(f"S3 {op} failed: {e}") from e

    async def list_backups(self, prefix: Optional[str] = None) -> List[BackupObject]:
        """List non-empty backups, newest first."""
        kwargs: Dict[str, Any] = {"Bucket": self.bucket}
        if prefix:
            kwargs["Prefix"] = prefix
        objects = await self._call("list", None, self._list_objects, **kwargs)

        backups: List[BackupObject] = []
        for obj in objects:
            key, size = obj.get("Key"), obj.get("Size")
            if not key or not size:
                continue
            backup_type, filename = parse_backup_key(key)
            backups.append(
                BackupObject(
                    key=key,
                    size=size,
                    last_modified=obj.get("LastModified") or datetime.now(timezone.utc),
                    type=backup_type,
                    filename=filename,
                )
            )

        backups.sort(key=lambda b: b.last_modified, reverse=True)
        return backups

    def _list_objects(self, **kwargs: Any) -> List[Dict[str, Any]]:
        paginator = self.client.get_paginator("list_objects_v2")
        objects: List[Dict[str, Any]] = []
        for page in paginator.paginate(**kwargs):
            objects.extend(page.get("Contents") or [])
        return objects

    async def ensure_bucket(self) -> None:
        """Create the bucket unless it already exists."""
        try:
            await asyncio.to_thread(self.client.create_bucket, Bucket=self.bucket)
            logger.info("s3_bucket_created", bucket=self.bucket)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code not in _BUCKET_EXISTS_CODES:
                logger.error("s3_create_bucket_failed", bucket=self.bucket, code=code)
                raise BackupStorageError(f"S3 create bucket failed: {code or e}") from e
        except BotoCoreError as e:
            raise BackupStorageError(f"S3 create bucket failed: {e}") from e

    async def upload(self, key: str, data: bytes) -> None:
        await self.ensure_bucket()
        await self._call(
            "upload",
            None,
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType="application/zip",
        )
        logger.info("backup_uploaded", key=key, size=len(data))

    async def download(self, key: str) -> bytes:
        """Fetch a backup archive (NotFoundError if the key is absent)."""
        return await self._call("download", key, self._get_bytes, key=key)

    def _get_bytes(self, key: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    async def delete(self, key: str) -> None:
        await self._call("delete", key, self.client.delete_object, Bucket=self.bucket, Key=key)
        logger.info("backup_deleted", key=key)


async def backup_save(store: SaveStore, backups: BackupStore, name: str) -> Tuple[str, int]:
    """
    Upload a save as manual/<timestamp>_<name>.zip.

    Returns:
        (key, size in bytes)

    Raises:
        ValueError: Invalid save name
        NotFoundError: Save does not exist
        BackupStorageError: Upload failed
    """
    safe = sanitize_save_name(name)
    data = await store.read(safe)

    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    key = f"manual/{timestamp}_{safe}.zip"
    await backups.upload(key, data)
    return key, len(data)


async def restore_backup(store: SaveStore, backups: BackupStore, key: str) -> Tuple[str, int]:
    """
    Copy a backup into the saves directory as restored_<save>.zip.

    Returns:
        (restored save name, size in bytes)

    Raises:
        ValueError: Key does not name a save archive
        NotFoundError: Backup does not exist
        BackupStorageError: Download failed
    """
    name = restored_save_name(key)
    data = await backups.download(key)
    await store.write(name, data)
    logger.info("backup_restored", key=key, save=name, size=len(data))
    return name, len(data)
