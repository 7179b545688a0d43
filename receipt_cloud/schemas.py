"""
Pydantic schemas for stored records and the HTTP surface.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def parse_amount(value) -> float:
    """Numeric value of a stored amount; anything unparseable counts as 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(amount) else amount


class ReceiptStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class MembershipOption(BaseModel):
    label: str
    price: float


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    app_title: str = ""
    brand_name: str = ""
    brand_sub: str = ""
    logo_url: str = ""
    seal_url: str = ""
    seal_text: str = ""
    title: str = ""
    sub_title: str = ""
    intro_text: str = ""
    confirm_text: str = ""
    footer_slogan: str = ""
    membership_options: list[MembershipOption] = Field(default_factory=list)
    handlers: list[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SerialRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    serial_number: str
    customer_name: str = ""
    amount: float = 0
    created_at: Optional[str] = None


class ReceiptRecord(BaseModel):
    """Full confirmation-letter record, keyed by serial number."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    serial_number: str = Field(..., min_length=1, max_length=64)

    customer_name: str = ""
    customer_phone: Optional[str] = None

    membership_type: str = ""
    membership_label: Optional[str] = None
    amount: float = 0

    # YYYY-MM-DD
    contract_date: Optional[str] = None

    handler_name: Optional[str] = None

    pdf_url: Optional[str] = None
    pdf_path: Optional[str] = None
    pdf_size: Optional[int] = None
    pdf_generated_at: Optional[str] = None

    status: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[dict] = None

    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ReceiptStatistics(BaseModel):
    total: int
    total_amount: float
    active: int
    cancelled: int
    average_amount: float


class SessionUser(BaseModel):
    """Projection of a users row held in the session slot. Never carries the password hash."""

    model_config = ConfigDict(extra="ignore")

    id: Union[int, str]
    username: str
    role: str = "user"
    display_name: Optional[str] = None
    is_active: bool = True
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None


class LoginRequest(BaseModel):
    username: str = Field(..., max_length=128)
    password: str = Field(..., max_length=256)


class LoginResult(BaseModel):
    success: bool
    user: Optional[SessionUser] = None
    error: Optional[str] = None
    # Set on success; sent back as X-Session-Token on later requests.
    session_token: Optional[str] = None


class PermissionsResponse(BaseModel):
    is_authenticated: bool
    is_admin: bool
    can_access_settings: bool


class UploadResult(BaseModel):
    path: str
    public_url: str


class FileEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    size: int = 0
    content_type: Optional[str] = None
    created_at: Optional[str] = None


class DataUrlUploadRequest(BaseModel):
    data_url: str
    filename: str = Field(..., max_length=255)
    folder: Optional[str] = None
    bucket: Optional[str] = None


class DeleteFilesRequest(BaseModel):
    paths: list[str] = Field(..., min_length=1)
    bucket: Optional[str] = None


class PublicUrlResponse(BaseModel):
    url: str


class IssueSerialRequest(BaseModel):
    customer_name: str = ""
    amount: float = 0


class IssueSerialResponse(BaseModel):
    serial_number: str


class SerialExistsResponse(BaseModel):
    serial_number: str
    exists: bool


class StatusUpdateRequest(BaseModel):
    status: ReceiptStatus
    notes: Optional[str] = None


class OkResponse(BaseModel):
    ok: bool
