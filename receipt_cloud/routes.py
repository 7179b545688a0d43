"""
HTTP routes exposing the named operations the generator UI calls.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile

from receipt_cloud.auth import SessionManager
from receipt_cloud.config_store import ConfigStore
from receipt_cloud.dependencies import (
    get_config_store,
    get_file_transfer,
    get_new_session,
    get_receipt_store,
    get_serial_issuer,
    get_session_manager,
)
from receipt_cloud.files import FileTransfer
from receipt_cloud.receipts import LookupStatus, ReceiptStore
from receipt_cloud.schemas import (
    AppConfig,
    DataUrlUploadRequest,
    DeleteFilesRequest,
    FileEntry,
    IssueSerialRequest,
    IssueSerialResponse,
    LoginRequest,
    LoginResult,
    OkResponse,
    PermissionsResponse,
    PublicUrlResponse,
    ReceiptRecord,
    ReceiptStatistics,
    SerialExistsResponse,
    SerialRecord,
    SessionUser,
    StatusUpdateRequest,
    UploadResult,
)
from receipt_cloud.serials import SerialIssuer


router = APIRouter()


# ---- config ----


@router.get("/config", response_model=Optional[AppConfig])
def load_config(store: ConfigStore = Depends(get_config_store)):
    """Stored config, or null when none was saved yet."""
    return store.load_config()


@router.put("/config", response_model=OkResponse)
def save_config(
    payload: AppConfig,
    response: Response,
    store: ConfigStore = Depends(get_config_store),
):
    saved = store.save_config(payload)
    if not saved:
        response.status_code = 502
    return OkResponse(ok=saved)


# ---- serials ----


@router.post("/serials", response_model=IssueSerialResponse, status_code=201)
def issue_serial(
    payload: IssueSerialRequest, issuer: SerialIssuer = Depends(get_serial_issuer)
):
    serial_number = issuer.issue_serial(payload.customer_name, payload.amount)
    return IssueSerialResponse(serial_number=serial_number)


@router.get("/serials", response_model=list[SerialRecord])
def recent_serials(
    limit: int = Query(10, ge=1, le=500),
    issuer: SerialIssuer = Depends(get_serial_issuer),
):
    return issuer.get_recent_serials(limit)


@router.get("/serials/{serial_number}/exists", response_model=SerialExistsResponse)
def serial_exists(serial_number: str, issuer: SerialIssuer = Depends(get_serial_issuer)):
    return SerialExistsResponse(
        serial_number=serial_number,
        exists=issuer.check_serial_exists(serial_number),
    )


# ---- receipts ----


@router.put("/receipts", response_model=OkResponse)
def save_receipt(
    payload: ReceiptRecord,
    response: Response,
    store: ReceiptStore = Depends(get_receipt_store),
):
    saved = store.save_receipt(payload)
    if not saved:
        response.status_code = 502
    return OkResponse(ok=saved)


@router.get("/receipts", response_model=list[ReceiptRecord])
def recent_receipts(
    limit: int = Query(20, ge=1, le=500),
    store: ReceiptStore = Depends(get_receipt_store),
):
    return store.get_recent(limit)


@router.get("/receipts/search", response_model=list[ReceiptRecord])
def search_receipts(
    q: str = Query(..., min_length=1, max_length=128),
    limit: int = Query(50, ge=1, le=500),
    store: ReceiptStore = Depends(get_receipt_store),
):
    return store.search(q, limit)


@router.get("/receipts/statistics", response_model=ReceiptStatistics)
def receipt_statistics(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    store: ReceiptStore = Depends(get_receipt_store),
):
    stats = store.get_statistics(start_date, end_date)
    if stats is None:
        raise HTTPException(status_code=502, detail="Statistics unavailable")
    return stats


@router.get("/receipts/{serial_number}", response_model=ReceiptRecord)
def get_receipt(serial_number: str, store: ReceiptStore = Depends(get_receipt_store)):
    result = store.lookup(serial_number)
    if result.status == LookupStatus.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Receipt not found")
    if result.status == LookupStatus.ERROR:
        raise HTTPException(status_code=502, detail="Receipt lookup failed")
    return result.record


@router.patch("/receipts/{serial_number}/status", response_model=OkResponse)
def update_receipt_status(
    serial_number: str,
    payload: StatusUpdateRequest,
    response: Response,
    store: ReceiptStore = Depends(get_receipt_store),
):
    updated = store.update_status(serial_number, payload.status, payload.notes)
    if not updated:
        response.status_code = 409
    return OkResponse(ok=updated)


# ---- files ----


@router.post("/files", response_model=UploadResult, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    folder: str | None = Form(None),
    bucket: str | None = Form(None),
    transfer: FileTransfer = Depends(get_file_transfer),
):
    data = await file.read()
    result = transfer.upload(
        data,
        file.filename or "upload",
        bucket=bucket,
        folder=folder,
        content_type=file.content_type,
    )
    if result is None:
        raise HTTPException(status_code=502, detail="Upload unavailable")
    return result


@router.post("/files/data-url", response_model=UploadResult, status_code=201)
def upload_data_url(
    payload: DataUrlUploadRequest, transfer: FileTransfer = Depends(get_file_transfer)
):
    result = transfer.upload_data_url(
        payload.data_url, payload.filename, folder=payload.folder, bucket=payload.bucket
    )
    if result is None:
        raise HTTPException(status_code=502, detail="Upload unavailable")
    return result


@router.get("/files", response_model=list[FileEntry])
def list_files(
    folder: str = Query(""),
    bucket: str | None = Query(None),
    transfer: FileTransfer = Depends(get_file_transfer),
):
    entries = transfer.list_files(folder, bucket)
    if entries is None:
        raise HTTPException(status_code=502, detail="Listing unavailable")
    return entries


@router.get("/files/download")
def download_file(
    path: str = Query(..., description="Object path in the bucket"),
    bucket: str | None = Query(None),
    transfer: FileTransfer = Depends(get_file_transfer),
):
    data = transfer.download(path, bucket)
    if data is None:
        raise HTTPException(status_code=404, detail="File unavailable")
    return Response(content=data, media_type="application/octet-stream")


@router.post("/files/delete", response_model=OkResponse)
def delete_files(
    payload: DeleteFilesRequest,
    response: Response,
    transfer: FileTransfer = Depends(get_file_transfer),
):
    removed = transfer.remove(payload.paths, payload.bucket)
    if not removed:
        response.status_code = 502
    return OkResponse(ok=removed)


@router.get("/files/public-url", response_model=PublicUrlResponse)
def public_url(
    path: str = Query(..., description="Object path in the bucket"),
    bucket: str | None = Query(None),
    transfer: FileTransfer = Depends(get_file_transfer),
):
    return PublicUrlResponse(url=transfer.public_url(path, bucket))


# ---- auth ----


@router.post("/auth/login", response_model=LoginResult)
def login(
    payload: LoginRequest,
    response: Response,
    new_session: tuple[str, SessionManager] = Depends(get_new_session),
    previous: SessionManager = Depends(get_session_manager),
):
    """Log in under a fresh token; the caller's previous session, if any, ends."""
    token, session = new_session
    result = session.login(payload.username, payload.password)
    if not result.success:
        response.status_code = 401
        return result
    previous.logout()
    return result.model_copy(update={"session_token": token})


@router.post("/auth/logout", response_model=OkResponse)
def logout(session: SessionManager = Depends(get_session_manager)):
    session.logout()
    return OkResponse(ok=True)


@router.get("/auth/me", response_model=Optional[SessionUser])
def current_user(session: SessionManager = Depends(get_session_manager)):
    return session.get_current_user()


@router.get("/auth/permissions", response_model=PermissionsResponse)
def permissions(session: SessionManager = Depends(get_session_manager)):
    return PermissionsResponse(
        is_authenticated=session.is_authenticated(),
        is_admin=session.is_admin(),
        can_access_settings=session.can_access_settings(),
    )
