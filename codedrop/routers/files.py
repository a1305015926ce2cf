import logging
from io import BytesIO
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from codedrop.config import MAX_UPLOAD_BYTES
from codedrop.dependencies import (
    client_ip,
    get_current_user,
    get_lifecycle,
    get_optional_user,
    get_throttler,
)
from codedrop.exceptions import NotFoundError, RateLimitedError, ValidationError
from codedrop.services.attempt_throttler import AttemptThrottler
from codedrop.services.file_lifecycle import FileLifecycleManager
from codedrop.storage.base import UserRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["files"])


class CodeRequest(BaseModel):
    code: str = ""


@router.post("/upload", status_code=201)
async def upload_file(
    file: UploadFile | None = File(default=None),
    expiry_minutes: int | None = Form(default=None),
    user: UserRecord = Depends(get_current_user),
    lifecycle: FileLifecycleManager = Depends(get_lifecycle),
):
    if file is None:
        raise HTTPException(status_code=400, detail="No file uploaded")

    raw_bytes = await file.read()
    if len(raw_bytes) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum allowed size is {MAX_UPLOAD_BYTES} bytes.",
        )

    record = lifecycle.create_file(
        owner_id=user.id,
        name=file.filename or "unnamed",
        size=len(raw_bytes),
        content_type=file.content_type or "application/octet-stream",
        data=raw_bytes,
        expiry_minutes=expiry_minutes,
    )
    return {"message": "File uploaded successfully", "code": record.connection_code}


def _guard_lockout(throttler, ip):
    lockout = throttler.check_lockout(ip)
    if lockout.locked:
        raise RateLimitedError(lockout.timeout_seconds)


def _code_miss(throttler, ip):
    result = throttler.record_failure(ip)
    if result.locked:
        raise RateLimitedError(result.timeout_seconds)
    return JSONResponse(
        status_code=404,
        content={"message": "Invalid connection code. Please try again.", **result.as_dict()},
    )


@router.post("/verify")
def verify_code(
    body: CodeRequest,
    request: Request,
    user: UserRecord | None = Depends(get_optional_user),
    lifecycle: FileLifecycleManager = Depends(get_lifecycle),
    throttler: AttemptThrottler = Depends(get_throttler),
):
    code = body.code.strip()
    if not code:
        raise ValidationError("Invalid code format")

    ip = client_ip(request)
    _guard_lockout(throttler, ip)

    try:
        record = lifecycle.resolve_code(code, user.id if user else None)
    except NotFoundError:
        return _code_miss(throttler, ip)

    throttler.reset(ip)
    grant = lifecycle.issue_download_token(record.id)
    return {
        "name": record.name,
        "size": record.size,
        "contentType": record.content_type,
        "downloadUrl": grant.url,
        "expiresAt": grant.expires_at.isoformat(),
    }


@router.get("/download/{token}")
def download_file_by_token(
    token: str,
    user: UserRecord | None = Depends(get_optional_user),
    lifecycle: FileLifecycleManager = Depends(get_lifecycle),
):
    record, content = lifecycle.redeem_token(token, user.id if user else None)

    return StreamingResponse(
        BytesIO(content),
        media_type=record.content_type,
        headers={"Content-Disposition": f'attachment; filename="{quote(record.name)}"'},
    )


@router.post("/downloaded")
def mark_file_downloaded(
    body: CodeRequest,
    request: Request,
    user: UserRecord | None = Depends(get_optional_user),
    lifecycle: FileLifecycleManager = Depends(get_lifecycle),
    throttler: AttemptThrottler = Depends(get_throttler),
):
    code = body.code.strip()
    if not code:
        raise ValidationError("Connection code is required")

    # Guessing codes here is throttled like verification
    ip = client_ip(request)
    _guard_lockout(throttler, ip)

    try:
        lifecycle.mark_downloaded_by_code(code, user.id if user else None)
    except NotFoundError:
        return _code_miss(throttler, ip)
    return {"message": "File marked as downloaded"}
