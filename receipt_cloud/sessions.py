"""
Persistence slots for the login session.

Supports an in-memory store for tests/local runs, a JSON file store for a
single-machine deployment and a Redis-backed store for production.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    """Minimal key-value interface holding serialized session users."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


@dataclass
class InMemorySessionStore:
    """Simple dict-backed store for testing/dev."""

    items: dict[str, str] = field(default_factory=dict)

    def get(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def set(self, key: str, value: str) -> None:
        self.items[key] = value

    def delete(self, key: str) -> None:
        self.items.pop(key, None)


@dataclass
class FileSessionStore:
    """All slots in one JSON object on disk, rewritten atomically."""

    path: str

    def _read_all(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.error("Session file %s unreadable: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.error("Writing session file %s failed: %s", self.path, exc)

    def get(self, key: str) -> Optional[str]:
        value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def delete(self, key: str) -> None:
        data = self._read_all()
        if data.pop(key, None) is not None:
            self._write_all(data)


@dataclass
class RedisSessionStore:
    """Redis-backed store using plain string keys under a prefix."""

    url: str
    prefix: str = "receipt_cloud:session:"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[str]:
        try:
            value = self.client.get(self._key(key))
        except redis_exceptions.ConnectionError:
            # Connection resets can happen on managed Redis. Treat as an empty
            # slot and reconnect for the next call.
            logger.warning("Redis connection lost while reading a session")
            self.client = redis.Redis.from_url(self.url)
            return None
        except redis_exceptions.RedisError as exc:
            logger.error("Reading session failed: %s", exc)
            return None
        if value is None:
            return None
        return value.decode("utf-8")

    def set(self, key: str, value: str) -> None:
        try:
            self.client.set(self._key(key), value)
        except redis_exceptions.RedisError as exc:
            logger.error("Saving session failed: %s", exc)

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except redis_exceptions.RedisError as exc:
            logger.error("Clearing session failed: %s", exc)
