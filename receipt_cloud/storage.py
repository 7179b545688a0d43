"""
Bucket storage abstraction for S3-compatible object storage and in-memory testing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from receipt_cloud.errors import GatewayError


class BucketGateway(Protocol):
    """Defines the operations the services need from object storage."""

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        cache_control: str = "3600",
        upsert: bool = False,
    ) -> str:
        ...

    def download(self, bucket: str, path: str) -> bytes:
        ...

    def remove(self, bucket: str, paths: Sequence[str]) -> None:
        ...

    def list(
        self, bucket: str, folder: str = "", *, limit: int = 100, offset: int = 0
    ) -> list[dict]:
        ...

    def public_url(self, bucket: str, path: str) -> str:
        ...


def _join_public_url(base_url: str, bucket: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{bucket}/{quote(path)}"


def _folder_prefix(folder: str) -> str:
    folder = folder.strip("/")
    return f"{folder}/" if folder else ""


@dataclass
class StoredObject:
    data: bytes
    content_type: str
    cache_control: str
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


@dataclass
class InMemoryBucketGateway:
    """Test double for bucket interactions."""

    base_url: str = "https://example.test/storage/v1/object/public"
    buckets: dict = None

    def __post_init__(self):
        if self.buckets is None:
            self.buckets = {}

    def _bucket(self, bucket: str) -> dict:
        return self.buckets.setdefault(bucket, {})

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        cache_control: str = "3600",
        upsert: bool = False,
    ) -> str:
        objects = self._bucket(bucket)
        if path in objects and not upsert:
            raise GatewayError("The resource already exists", code="Duplicate", status_code=409)
        objects[path] = StoredObject(
            data=bytes(data), content_type=content_type, cache_control=cache_control
        )
        return path

    def download(self, bucket: str, path: str) -> bytes:
        stored = self._bucket(bucket).get(path)
        if stored is None:
            raise GatewayError("Object not found", code="NoSuchKey", status_code=404)
        return stored.data

    def remove(self, bucket: str, paths: Sequence[str]) -> None:
        objects = self._bucket(bucket)
        for path in paths:
            objects.pop(path, None)

    def list(
        self, bucket: str, folder: str = "", *, limit: int = 100, offset: int = 0
    ) -> list[dict]:
        prefix = _folder_prefix(folder)
        entries = []
        for path, stored in self._bucket(bucket).items():
            if not path.startswith(prefix):
                continue
            name = path[len(prefix):]
            if "/" in name:
                continue
            entries.append(
                {
                    "name": name,
                    "size": len(stored.data),
                    "content_type": stored.content_type,
                    "created_at": stored.created_at,
                }
            )
        entries.sort(key=lambda entry: entry["created_at"], reverse=True)
        return entries[offset : offset + limit]

    def public_url(self, bucket: str, path: str) -> str:
        return _join_public_url(self.base_url, bucket, path)


def _client_error(exc: ClientError) -> GatewayError:
    error = exc.response.get("Error", {})
    status_code = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return GatewayError(
        error.get("Message") or str(exc),
        code=error.get("Code"),
        status_code=status_code,
    )


@dataclass
class S3BucketGateway:
    """
    S3-compatible bucket storage (the managed backend exposes an S3 endpoint).

    ``upsert=False`` uploads probe the key with ``head_object`` first. Stores
    that answer 403 instead of 404 for a missing key when the credentials
    lack list permission need ``check_existing=False``; uploads then rely on
    the generated object names being unique.
    """

    endpoint: str
    region: Optional[str]
    access_key_id: str
    secret_access_key: str
    public_base_url: str
    check_existing: bool = True

    def __post_init__(self):
        # Path-style addressing: the managed endpoint serves every bucket under one host.
        config = Config(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def _exists(self, bucket: str, path: str) -> bool:
        try:
            self._client.head_object(Bucket=bucket, Key=path)
        except ClientError as exc:
            status_code = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if status_code == 404:
                return False
            if status_code == 403:
                raise GatewayError(
                    f"Access denied checking {path}; disable check_existing for stores "
                    "that hide missing keys behind 403",
                    code="AccessDenied",
                    status_code=403,
                ) from exc
            raise
        return True

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        cache_control: str = "3600",
        upsert: bool = False,
    ) -> str:
        try:
            if not upsert and self.check_existing and self._exists(bucket, path):
                raise GatewayError(
                    "The resource already exists", code="Duplicate", status_code=409
                )
            self._client.put_object(
                Bucket=bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                CacheControl=f"max-age={cache_control}",
            )
        except ClientError as exc:
            raise _client_error(exc) from exc
        except BotoCoreError as exc:
            raise GatewayError(str(exc)) from exc
        return path

    def download(self, bucket: str, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=bucket, Key=path)
            return response["Body"].read()
        except ClientError as exc:
            raise _client_error(exc) from exc
        except BotoCoreError as exc:
            raise GatewayError(str(exc)) from exc

    def remove(self, bucket: str, paths: Sequence[str]) -> None:
        if not paths:
            return
        try:
            response = self._client.delete_objects(
                Bucket=bucket,
                Delete={"Objects": [{"Key": path} for path in paths], "Quiet": True},
            )
        except ClientError as exc:
            raise _client_error(exc) from exc
        except BotoCoreError as exc:
            raise GatewayError(str(exc)) from exc
        errors = response.get("Errors") or []
        if errors:
            first = errors[0]
            raise GatewayError(
                first.get("Message") or "delete failed",
                code=first.get("Code"),
            )

    def list(
        self, bucket: str, folder: str = "", *, limit: int = 100, offset: int = 0
    ) -> list[dict]:
        prefix = _folder_prefix(folder)
        entries = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix, Delimiter="/"):
                for item in page.get("Contents", []):
                    entries.append(
                        {
                            "name": item["Key"][len(prefix):],
                            "size": item.get("Size", 0),
                            "created_at": item["LastModified"].isoformat(),
                        }
                    )
        except ClientError as exc:
            raise _client_error(exc) from exc
        except BotoCoreError as exc:
            raise GatewayError(str(exc)) from exc
        entries.sort(key=lambda entry: entry["created_at"], reverse=True)
        return entries[offset : offset + limit]

    def public_url(self, bucket: str, path: str) -> str:
        return _join_public_url(self.public_base_url, bucket, path)
