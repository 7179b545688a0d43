"""
Errors raised by the backend gateways.
"""

from __future__ import annotations

from typing import Optional

# PostgREST / Postgres codes the services branch on.
NO_ROWS = "PGRST116"
UNIQUE_VIOLATION = "23505"
UNDEFINED_TABLE = "42P01"


class GatewayError(Exception):
    """A failed table or bucket operation."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    @property
    def is_conflict(self) -> bool:
        return self.code == UNIQUE_VIOLATION or self.status_code == 409

    def as_dict(self) -> dict:
        return {
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
        }

    def __repr__(self) -> str:
        return f"GatewayError({self.message!r}, code={self.code!r}, status_code={self.status_code!r})"
