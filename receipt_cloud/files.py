"""
Upload and download of generated receipt artifacts (PDFs, PNG images).
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import random
import re
import string
import time
from typing import Callable, Optional, Sequence

from pydantic import ValidationError

from receipt_cloud.errors import GatewayError
from receipt_cloud.schemas import FileEntry, UploadResult
from receipt_cloud.storage import BucketGateway

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "receipts"
PDF_FOLDER = "pdfs"
IMAGE_FOLDER = "images"
CACHE_CONTROL = "3600"
LIST_LIMIT = 100

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_SAFE_EXTENSION = re.compile(r"^\.[A-Za-z0-9]{1,10}$")
_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,;]+)*;base64,(?P<payload>.*)$", re.DOTALL)


def safe_extension(filename: str) -> str:
    _, ext = os.path.splitext(filename or "")
    return ext.lower() if _SAFE_EXTENSION.match(ext) else ""


def generate_storage_name(
    filename: str, *, clock: Callable[[], float] = time.time
) -> str:
    """Storage key for an upload: ``{ms timestamp}_{6 random chars}{ext}``.

    The caller-supplied name is never used directly; only a short ASCII
    extension survives.
    """
    millis = int(clock() * 1000)
    suffix = "".join(random.choices(_SUFFIX_ALPHABET, k=6))
    return f"{millis}_{suffix}{safe_extension(filename)}"


def decode_data_url(data_url: str) -> tuple[bytes, Optional[str]]:
    match = _DATA_URL.match(data_url.strip())
    if not match:
        raise ValueError("not a base64 data URL")
    try:
        data = base64.b64decode(match.group("payload"), validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc
    return data, match.group("mime")


class FileTransfer:
    def __init__(
        self,
        storage: BucketGateway,
        *,
        default_bucket: str = DEFAULT_BUCKET,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.default_bucket = default_bucket
        self.clock = clock

    def upload(
        self,
        data: bytes,
        filename: str,
        *,
        bucket: Optional[str] = None,
        folder: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Optional[UploadResult]:
        """Upload under a generated name. Returns None when the upload is unavailable."""
        bucket = bucket or self.default_bucket
        storage_name = generate_storage_name(filename, clock=self.clock)
        folder = (folder or "").strip("/")
        path = f"{folder}/{storage_name}" if folder else storage_name
        logger.info(
            "Uploading %s (%.2f KB) to %s as %s",
            filename,
            len(data) / 1024,
            bucket,
            path,
        )
        try:
            stored_path = self.storage.upload(
                bucket,
                path,
                data,
                content_type=content_type or "application/octet-stream",
                cache_control=CACHE_CONTROL,
                upsert=False,
            )
            public_url = self.storage.public_url(bucket, stored_path)
        except GatewayError as exc:
            logger.error(
                "Upload failed: %s",
                {
                    "message": exc.message,
                    "status_code": exc.status_code,
                    "code": exc.code,
                    "bucket": bucket,
                    "path": path,
                },
            )
            return None
        logger.info("Uploaded %s -> %s", stored_path, public_url)
        return UploadResult(path=stored_path, public_url=public_url)

    def upload_pdf(
        self, data: bytes, filename: str, *, bucket: Optional[str] = None
    ) -> Optional[UploadResult]:
        return self.upload(
            data,
            filename,
            bucket=bucket,
            folder=PDF_FOLDER,
            content_type="application/pdf",
        )

    def upload_image(
        self, data: bytes, filename: str, *, bucket: Optional[str] = None
    ) -> Optional[UploadResult]:
        return self.upload(
            data,
            filename,
            bucket=bucket,
            folder=IMAGE_FOLDER,
            content_type="image/png",
        )

    def upload_data_url(
        self,
        data_url: str,
        filename: str,
        *,
        folder: Optional[str] = None,
        bucket: Optional[str] = None,
    ) -> Optional[UploadResult]:
        """Upload a ``data:<mime>;base64,...`` payload as produced by canvas/PDF export."""
        try:
            data, mime = decode_data_url(data_url)
        except ValueError as exc:
            logger.error("Rejecting data URL upload %s: %s", filename, exc)
            return None
        if folder is None:
            folder = PDF_FOLDER if mime == "application/pdf" else IMAGE_FOLDER
        return self.upload(
            data, filename, bucket=bucket, folder=folder, content_type=mime
        )

    def download(self, path: str, bucket: Optional[str] = None) -> Optional[bytes]:
        bucket = bucket or self.default_bucket
        try:
            return self.storage.download(bucket, path)
        except GatewayError as exc:
            logger.error("Download of %s/%s failed: %s", bucket, path, exc.as_dict())
            return None

    def remove(self, paths: Sequence[str], bucket: Optional[str] = None) -> bool:
        bucket = bucket or self.default_bucket
        try:
            self.storage.remove(bucket, list(paths))
        except GatewayError as exc:
            logger.error("Deleting %s from %s failed: %s", list(paths), bucket, exc.as_dict())
            return False
        return True

    def list_files(
        self, folder: str = "", bucket: Optional[str] = None
    ) -> Optional[list[FileEntry]]:
        bucket = bucket or self.default_bucket
        try:
            entries = self.storage.list(bucket, folder, limit=LIST_LIMIT, offset=0)
            return [FileEntry.model_validate(entry) for entry in entries]
        except GatewayError as exc:
            logger.error("Listing %s/%s failed: %s", bucket, folder, exc.as_dict())
            return None
        except ValidationError as exc:
            logger.error("Listing %s/%s returned malformed entries: %s", bucket, folder, exc)
            return None

    def public_url(self, path: str, bucket: Optional[str] = None) -> str:
        return self.storage.public_url(bucket or self.default_bucket, path)
