import enum
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from app.database import Base

# Stored when the creator asks for no download cap
UNLIMITED_DOWNLOADS = 2**31 - 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TransferStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    DELETED = "deleted"
    SUSPENDED = "suspended"


class Transfer(Base):
    __tablename__ = "transfers"

    id = Column(String(32), primary_key=True)
    original_file_name = Column(String(255), nullable=False)
    stored_file_name = Column(String(300), nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    content_type = Column(String(255), nullable=False)

    payload_locator = Column(String(255), nullable=False)
    payload_hash = Column(String(64), nullable=False)
    encryption_key = Column(LargeBinary, nullable=False)
    access_token_digest = Column(String(64), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), index=True, nullable=False)
    max_downloads = Column(Integer, nullable=False)
    current_downloads = Column(Integer, default=0, nullable=False)
    status = Column(String(16), default=TransferStatus.ACTIVE.value, nullable=False)

    sender_email = Column(String(320), nullable=False)
    sender_name = Column(String(255), nullable=False)
    recipient_email = Column(String(320), nullable=True)
    message = Column(Text, nullable=True)

    download_log = relationship(
        "DownloadAttempt",
        back_populates="transfer",
        order_by="DownloadAttempt.id",
        cascade="all, delete-orphan",
    )

    @property
    def requires_password(self) -> bool:
        return bool(self.password_hash)

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return now > as_utc(self.expires_at) or self.current_downloads >= self.max_downloads


class DownloadAttempt(Base):
    __tablename__ = "download_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transfer_id = Column(
        String(32),
        ForeignKey("transfers.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    source_address = Column(String(64), nullable=False)
    user_agent = Column(String(512), nullable=False, default="")
    success = Column(Boolean, nullable=False)
    failure_reason = Column(String(255), nullable=True)

    transfer = relationship("Transfer", back_populates="download_log")
