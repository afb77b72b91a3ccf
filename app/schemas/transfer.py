from datetime import datetime

from pydantic import BaseModel


class CreatedTransfer(BaseModel):
    transfer_id: str
    access_token: str
    share_url: str
    expires_at: datetime


class TransferInfo(BaseModel):
    """Metadata safe to show to a token holder (no key, no password hash)."""

    transfer_id: str
    file_name: str
    size_bytes: int
    size_formatted: str
    content_type: str
    created_at: datetime
    expires_at: datetime
    max_downloads: int
    current_downloads: int
    is_expired: bool
    requires_password: bool
    status: str
    sender_name: str
    message: str | None = None


class TransferStatistics(BaseModel):
    transfer_id: str
    total_downloads: int
    successful_downloads: int
    failed_downloads: int
    last_download_at: datetime | None = None
    is_expired: bool
    remaining_downloads: int


class TransferAccessRequest(BaseModel):
    transfer_id: str
    access_token: str
    password: str | None = None
