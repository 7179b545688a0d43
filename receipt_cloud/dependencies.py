"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header

from receipt_cloud.auth import SessionManager, new_session_token, session_slot
from receipt_cloud.config import get_settings
from receipt_cloud.config_store import ConfigStore
from receipt_cloud.db import InMemoryTableGateway, SqlTableGateway, TableGateway
from receipt_cloud.files import FileTransfer
from receipt_cloud.receipts import ReceiptStore
from receipt_cloud.serials import SerialIssuer
from receipt_cloud.sessions import (
    FileSessionStore,
    InMemorySessionStore,
    RedisSessionStore,
    SessionStore,
)
from receipt_cloud.storage import BucketGateway, InMemoryBucketGateway, S3BucketGateway

_table_gateway: TableGateway | None = None
_bucket_gateway: BucketGateway | None = None
_session_store: SessionStore | None = None


def get_table_gateway() -> TableGateway:
    """
    Return a singleton table gateway so in-memory state persists across requests.
    """
    global _table_gateway
    if _table_gateway:
        return _table_gateway

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _table_gateway = InMemoryTableGateway()
    else:
        _table_gateway = SqlTableGateway(settings.database_url)
    return _table_gateway


def get_bucket_gateway() -> BucketGateway:
    global _bucket_gateway
    if _bucket_gateway:
        return _bucket_gateway

    settings = get_settings()
    endpoint = settings.resolved_storage_endpoint()
    if settings.use_in_memory_backends or not endpoint:
        _bucket_gateway = InMemoryBucketGateway(
            base_url=settings.resolved_public_base_url()
        )
    else:
        _bucket_gateway = S3BucketGateway(
            endpoint=endpoint,
            region=settings.storage_region,
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.resolved_public_base_url(),
            check_existing=settings.storage_check_existing,
        )
    return _bucket_gateway


def get_session_store() -> SessionStore:
    """
    Return a singleton session store: Redis if configured, else a JSON file, else memory.
    """
    global _session_store
    if _session_store:
        return _session_store

    settings = get_settings()
    if settings.redis_url:
        _session_store = RedisSessionStore(url=settings.redis_url)
    elif settings.session_file:
        _session_store = FileSessionStore(path=settings.session_file)
    else:
        _session_store = InMemorySessionStore()
    return _session_store


def reset_dependencies() -> None:
    """Drop cached gateways so the next request rebuilds them (tests)."""
    global _table_gateway, _bucket_gateway, _session_store
    _table_gateway = None
    _bucket_gateway = None
    _session_store = None


def get_config_store() -> ConfigStore:
    return ConfigStore(get_table_gateway())


def get_serial_issuer() -> SerialIssuer:
    settings = get_settings()
    return SerialIssuer(
        get_table_gateway(),
        conflict_policy=settings.serial_conflict_policy,
        max_attempts=settings.serial_max_attempts,
    )


def get_receipt_store() -> ReceiptStore:
    settings = get_settings()
    return ReceiptStore(
        get_table_gateway(),
        strict_transitions=settings.strict_status_transitions,
    )


def get_file_transfer() -> FileTransfer:
    settings = get_settings()
    return FileTransfer(get_bucket_gateway(), default_bucket=settings.storage_bucket)


def get_session_manager(
    x_session_token: Optional[str] = Header(default=None, max_length=128),
) -> SessionManager:
    """
    Session bound to the caller's token. A request without a token is anonymous.
    """
    settings = get_settings()
    session_key = (
        session_slot(settings.session_key, x_session_token) if x_session_token else None
    )
    return SessionManager(
        get_table_gateway(), get_session_store(), session_key=session_key
    )


def get_new_session() -> tuple[str, SessionManager]:
    """Fresh random token and the slot a login attempt would fill."""
    settings = get_settings()
    token = new_session_token()
    session = SessionManager(
        get_table_gateway(),
        get_session_store(),
        session_key=session_slot(settings.session_key, token),
    )
    return token, session
