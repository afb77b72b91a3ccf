import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from app.config import (
    CLEANUP_ADMIN_TOKEN,
    DEFAULT_EXPIRATION_HOURS,
    DEFAULT_MAX_DOWNLOADS,
    PUBLIC_BASE_URL,
)
from app.schemas.transfer import (
    CreatedTransfer,
    TransferAccessRequest,
    TransferInfo,
    TransferStatistics,
)
from app.services.errors import (
    CorruptedPayload,
    StorageFailure,
    TransferError,
    TransferExpired,
    TransferNotFound,
    TransferUnauthorized,
    ValidationError,
)
from app.services.transfer_service import TransferService, build_transfer_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/transfers", tags=["transfers"])

# Fixed outward messages; internal causes stay in the logs
ERROR_RESPONSES: dict[type[TransferError], tuple[int, str | None]] = {
    ValidationError: (400, None),
    TransferNotFound: (404, "Transfer not found or invalid token"),
    TransferUnauthorized: (401, None),
    TransferExpired: (410, "This transfer has expired"),
    CorruptedPayload: (500, "Stored file is corrupted"),
    StorageFailure: (503, "Storage unavailable, please retry later"),
}


def get_transfer_service() -> TransferService:
    return build_transfer_service()


def to_http_error(exc: TransferError) -> HTTPException:
    for kind, (status_code, detail) in ERROR_RESPONSES.items():
        if isinstance(exc, kind):
            return HTTPException(status_code=status_code, detail=detail or str(exc))
    return HTTPException(status_code=500, detail="Internal error")


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@router.post("", response_model=CreatedTransfer)
def create_transfer(
    request: Request,
    file: UploadFile | None = File(default=None),
    sender_email: str | None = Form(default=None),
    sender_name: str | None = Form(default=None),
    recipient_email: str | None = Form(default=None),
    message: str | None = Form(default=None),
    expiration_hours: int = Form(default=DEFAULT_EXPIRATION_HOURS),
    max_downloads: int = Form(default=DEFAULT_MAX_DOWNLOADS),
    password: str | None = Form(default=None),
    service: TransferService = Depends(get_transfer_service),
):
    if file is None:
        raise HTTPException(status_code=400, detail="No file provided")
    try:
        created = service.create_transfer(
            file.file,
            file.filename or "",
            file.content_type,
            sender_email or "",
            sender_name=sender_name,
            recipient_email=recipient_email,
            message=message,
            expiration_hours=expiration_hours,
            max_downloads=max_downloads,
            password=password or None,
        )
    except TransferError as e:
        raise to_http_error(e)

    base_url = PUBLIC_BASE_URL or str(request.base_url)
    created.share_url = base_url.rstrip("/") + created.share_url
    return created


@router.post("/validate")
def validate_transfer(
    body: TransferAccessRequest,
    service: TransferService = Depends(get_transfer_service),
):
    try:
        valid = service.validate_transfer(body.transfer_id, body.access_token, body.password)
    except TransferError as e:
        raise to_http_error(e)
    return {"valid": valid, "message": "Access granted" if valid else "Access denied"}


@router.post("/download")
def download_transfer(
    body: TransferAccessRequest,
    request: Request,
    user_agent: str = Header(default=""),
    service: TransferService = Depends(get_transfer_service),
):
    try:
        result = service.download_transfer(
            body.transfer_id,
            body.access_token,
            body.password,
            _client_address(request),
            user_agent,
        )
    except TransferError as e:
        raise to_http_error(e)

    safe_name = result.file_name.encode("ascii", "replace").decode("ascii").replace('"', "")
    return StreamingResponse(
        result.stream,
        media_type=result.content_type,
        headers={
            "Content-Disposition": f"attachment; filename=\"{safe_name}\"; filename*=UTF-8''{quote(result.file_name)}",
            "Content-Length": str(result.size_bytes),
        },
    )


@router.post("/cleanup")
def cleanup_expired_transfers(
    x_admin_token: str | None = Header(default=None),
    service: TransferService = Depends(get_transfer_service),
):
    if CLEANUP_ADMIN_TOKEN and x_admin_token != CLEANUP_ADMIN_TOKEN:
        raise HTTPException(status_code=403, detail="Forbidden")
    deleted = service.cleanup_expired_transfers()
    logger.info("Cleanup endpoint removed %d expired transfers", deleted)
    return {"deleted": deleted}


@router.get("/{transfer_id}", response_model=TransferInfo)
def get_transfer_info(
    transfer_id: str,
    token: str = "",
    service: TransferService = Depends(get_transfer_service),
):
    try:
        return service.get_transfer_info(transfer_id, token)
    except TransferError as e:
        raise to_http_error(e)


@router.get("/{transfer_id}/stats", response_model=TransferStatistics)
def get_statistics(
    transfer_id: str,
    token: str = "",
    service: TransferService = Depends(get_transfer_service),
):
    try:
        return service.get_statistics(transfer_id, token)
    except TransferError as e:
        raise to_http_error(e)


@router.delete("/{transfer_id}")
def delete_transfer(
    transfer_id: str,
    token: str = "",
    service: TransferService = Depends(get_transfer_service),
):
    try:
        deleted = service.delete_transfer(transfer_id, token)
    except TransferError as e:
        raise to_http_error(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Transfer not found or invalid token")
    return {"status": "deleted"}
