import hashlib
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import BinaryIO, Callable, Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.config import (
    CLEANUP_BATCH_SIZE,
    DEFAULT_EXPIRATION_HOURS,
    DEFAULT_MAX_DOWNLOADS,
    MAX_PAYLOAD_BYTES,
    TRANSFER_STORAGE_DIR,
)
from app.models.transfer import (
    UNLIMITED_DOWNLOADS,
    DownloadAttempt,
    Transfer,
    TransferStatus,
    as_utc,
    utcnow,
)
from app.schemas.transfer import CreatedTransfer, TransferInfo, TransferStatistics
from app.services.blob_store import LocalBlobStore
from app.services.envelope import SEGMENT_SIZE, TAG_SIZE, Envelope, iter_chunks
from app.services.errors import (
    CorruptedPayload,
    StorageFailure,
    TransferError,
    TransferExpired,
    TransferNotFound,
    TransferUnauthorized,
    ValidationError,
)
from app.services.gate import (
    generate_access_token,
    hash_password,
    token_digest,
    verify_access_token,
    verify_password,
)
from app.services.transfer_registry import TransferRegistry

logger = logging.getLogger(__name__)

MIN_EXPIRATION_HOURS = 1
MAX_EXPIRATION_HOURS = 168
TOKEN_ATTEMPTS = 5
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def sanitize_file_name(name: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("_", name).strip("._")
    return cleaned[:200] or "file"


def format_file_size(size: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    order = 0
    while value >= 1024 and order < len(units) - 1:
        order += 1
        value /= 1024
    return f"{value:.2f}".rstrip("0").rstrip(".") + f" {units[order]}"


@dataclass
class DownloadResult:
    stream: Iterator[bytes]
    file_name: str
    content_type: str
    size_bytes: int


class TransferService:
    def __init__(
        self,
        registry: TransferRegistry,
        store: LocalBlobStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_payload_bytes: int = MAX_PAYLOAD_BYTES,
        cleanup_batch_size: int = CLEANUP_BATCH_SIZE,
    ):
        self.registry = registry
        self.store = store
        self.clock = clock
        self.max_payload_bytes = max_payload_bytes
        self.cleanup_batch_size = cleanup_batch_size

    def create_transfer(
        self,
        source: BinaryIO,
        file_name: str,
        content_type: str | None,
        sender_email: str,
        sender_name: str | None = None,
        recipient_email: str | None = None,
        message: str | None = None,
        expiration_hours: int = DEFAULT_EXPIRATION_HOURS,
        max_downloads: int | None = DEFAULT_MAX_DOWNLOADS,
        password: str | None = None,
    ) -> CreatedTransfer:
        if source is None:
            raise ValidationError("No file provided")
        if not file_name or not file_name.strip():
            raise ValidationError("File name is required")
        if not sender_email or not sender_email.strip():
            raise ValidationError("Sender email is required")
        if not MIN_EXPIRATION_HOURS <= expiration_hours <= MAX_EXPIRATION_HOURS:
            raise ValidationError(
                f"Expiration must be between {MIN_EXPIRATION_HOURS} and {MAX_EXPIRATION_HOURS} hours"
            )

        original_name = _CONTROL_CHARS.sub("", file_name.replace("\\", "/").rsplit("/", 1)[-1]).strip() or "file"
        transfer_id = uuid.uuid4().hex
        locator = f"{transfer_id}.enc"
        envelope = Envelope()
        password_hash = hash_password(password) if password else None

        size, payload_hash = self._store_payload(source, locator, envelope)

        now = self.clock()
        fields = dict(
            id=transfer_id,
            original_file_name=original_name,
            stored_file_name=f"{uuid.uuid4().hex}_{sanitize_file_name(original_name)}",
            size_bytes=size,
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            payload_locator=locator,
            payload_hash=payload_hash,
            encryption_key=envelope.get_key(),
            password_hash=password_hash,
            created_at=now,
            expires_at=now + timedelta(hours=expiration_hours),
            max_downloads=max_downloads if max_downloads and max_downloads > 0 else UNLIMITED_DOWNLOADS,
            current_downloads=0,
            status=TransferStatus.ACTIVE.value,
            sender_email=sender_email.strip(),
            sender_name=(sender_name or "").strip() or sender_email.strip(),
            recipient_email=recipient_email or None,
            message=message or None,
        )
        try:
            record, token = self._insert_with_token(fields)
        except Exception:
            self._discard_blob(locator)
            raise

        logger.info(
            "Transfer created: %s, file=%s, size=%d bytes, expires=%s",
            record.id, original_name, size, record.expires_at.isoformat(),
        )
        return CreatedTransfer(
            transfer_id=record.id,
            access_token=token,
            share_url=f"/transfer?transferId={record.id}&token={token}",
            expires_at=as_utc(record.expires_at),
        )

    def _store_payload(self, source: BinaryIO, locator: str, envelope: Envelope) -> tuple[int, str]:
        hasher = hashlib.sha256()
        size = 0

        def plaintext() -> Iterator[bytes]:
            nonlocal size
            for chunk in iter_chunks(source):
                size += len(chunk)
                if size > self.max_payload_bytes:
                    raise ValidationError(
                        f"File too large. Maximum allowed size is {self.max_payload_bytes} bytes"
                    )
                hasher.update(chunk)
                yield chunk

        try:
            with self.store.open_write(locator) as sink:
                for sealed in envelope.encrypt(plaintext()):
                    sink.write(sealed)
                if size == 0:
                    raise ValidationError("Empty file")
        except TransferError:
            raise
        except Exception as e:
            logger.exception("Failed to store payload %s", locator)
            raise StorageFailure("Could not store the uploaded file") from e
        return size, hasher.hexdigest()

    def _insert_with_token(self, fields: dict) -> tuple[Transfer, str]:
        for _ in range(TOKEN_ATTEMPTS):  # retry on rare token collisions
            token = generate_access_token()
            rec = Transfer(access_token_digest=token_digest(token), **fields)
            try:
                return self.registry.insert(rec), token
            except IntegrityError:
                logger.warning("Access token collision for transfer %s, retrying", fields["id"])
            except SQLAlchemyError as e:
                logger.exception("Failed to persist transfer %s", fields["id"])
                raise StorageFailure("Could not save the transfer") from e
        raise StorageFailure("Failed to generate unique access token")

    def _load(self, transfer_id: str) -> Transfer | None:
        try:
            return self.registry.get(transfer_id)
        except SQLAlchemyError as e:
            logger.exception("Failed to load transfer %s", transfer_id)
            raise StorageFailure("Transfer store unavailable") from e

    def _authorized(self, transfer_id: str, access_token: str) -> Transfer:
        transfer = self._load(transfer_id)
        if transfer is None:
            logger.warning("Unknown transfer %s", transfer_id)
            raise TransferNotFound("Transfer not found")
        if not verify_access_token(access_token, transfer.access_token_digest):
            logger.warning("Invalid access token for transfer %s", transfer_id)
            raise TransferNotFound("Transfer not found")
        return transfer

    def get_transfer_info(self, transfer_id: str, access_token: str) -> TransferInfo:
        transfer = self._authorized(transfer_id, access_token)
        return TransferInfo(
            transfer_id=transfer.id,
            file_name=transfer.original_file_name,
            size_bytes=transfer.size_bytes,
            size_formatted=format_file_size(transfer.size_bytes),
            content_type=transfer.content_type,
            created_at=as_utc(transfer.created_at),
            expires_at=as_utc(transfer.expires_at),
            max_downloads=transfer.max_downloads,
            current_downloads=transfer.current_downloads,
            is_expired=transfer.is_expired(self.clock()),
            requires_password=transfer.requires_password,
            status=transfer.status,
            sender_name=transfer.sender_name,
            message=transfer.message,
        )

    def validate_transfer(self, transfer_id: str, access_token: str, password: str | None = None) -> bool:
        transfer = self._load(transfer_id)
        if transfer is None or not verify_access_token(access_token, transfer.access_token_digest):
            return False
        if transfer.is_expired(self.clock()):
            return False
        if transfer.requires_password:
            return verify_password(password, transfer.password_hash)
        return True

    def get_statistics(self, transfer_id: str, access_token: str) -> TransferStatistics:
        transfer = self._authorized(transfer_id, access_token)
        log = transfer.download_log
        successful = sum(1 for entry in log if entry.success)
        return TransferStatistics(
            transfer_id=transfer.id,
            total_downloads=len(log),
            successful_downloads=successful,
            failed_downloads=len(log) - successful,
            last_download_at=max((as_utc(entry.timestamp) for entry in log), default=None),
            is_expired=transfer.is_expired(self.clock()),
            remaining_downloads=max(transfer.max_downloads - transfer.current_downloads, 0),
        )

    def download_transfer(
        self,
        transfer_id: str,
        access_token: str,
        password: str | None,
        source_address: str,
        user_agent: str,
    ) -> DownloadResult:
        transfer = self._load(transfer_id)
        if transfer is None:
            logger.warning("Download requested for unknown transfer %s", transfer_id)
            raise TransferNotFound("Transfer not found")

        def reject(reason: str, error: TransferError) -> TransferError:
            self.registry.record_attempt(
                transfer_id, self._attempt(source_address, user_agent, False, reason)
            )
            logger.warning("Download denied for transfer %s from %s: %s", transfer_id, source_address, reason)
            return error

        try:
            if not verify_access_token(access_token, transfer.access_token_digest):
                raise reject("Unauthorized: bad token", TransferNotFound("Transfer not found"))
            now = self.clock()
            if transfer.is_expired(now):
                raise reject("Forbidden: expired", TransferExpired("This transfer has expired"))
            if transfer.requires_password:
                if not password:
                    raise reject("Unauthorized: password required", TransferUnauthorized("Password required"))
                if not verify_password(password, transfer.password_hash):
                    raise reject("Unauthorized: bad password", TransferUnauthorized("Incorrect password"))

            try:
                fh, first, rest = self._open_payload(transfer)
            except CorruptedPayload as e:
                logger.error("Payload of transfer %s failed authentication: %s", transfer_id, e)
                raise reject("Error: corrupted payload", e)
            except StorageFailure as e:
                logger.error("Payload of transfer %s unreadable: %s", transfer_id, e)
                raise reject("Error: storage failure", e)

            try:
                attempt_id = self.registry.claim_download(
                    transfer_id, now, self._attempt(source_address, user_agent, True, None)
                )
            except TransferNotFound:
                fh.close()
                logger.warning("Transfer %s was removed before the download was claimed", transfer_id)
                raise
            except BaseException:
                fh.close()
                raise
            if attempt_id is None:
                fh.close()
                raise reject("Forbidden: quota exhausted", TransferExpired("This transfer has expired"))
        except TransferError:
            raise
        except Exception as e:
            logger.exception("Download of transfer %s failed", transfer_id)
            self.registry.record_attempt(
                transfer_id, self._attempt(source_address, user_agent, False, "Error: internal")
            )
            raise StorageFailure("Download failed") from e

        logger.info(
            "Download authorized: %s (%d/%d)",
            transfer_id, transfer.current_downloads + 1, transfer.max_downloads,
        )
        return DownloadResult(
            stream=self._serve(transfer_id, attempt_id, fh, first, rest),
            file_name=transfer.original_file_name,
            content_type=transfer.content_type,
            size_bytes=transfer.size_bytes,
        )

    def _attempt(self, source_address: str, user_agent: str, success: bool, reason: str | None) -> DownloadAttempt:
        return DownloadAttempt(
            timestamp=self.clock(),
            source_address=(source_address or "unknown")[:64],
            user_agent=(user_agent or "")[:512],
            success=success,
            failure_reason=reason,
        )

    def _open_payload(self, transfer: Transfer):
        # First segment is authenticated before anything is counted
        envelope = Envelope(transfer.encryption_key)
        fh = self.store.open_read(transfer.payload_locator)
        try:
            rest = envelope.decrypt(iter_chunks(fh, SEGMENT_SIZE + TAG_SIZE))
            first = next(rest)
        except StopIteration:
            fh.close()
            raise CorruptedPayload("empty ciphertext") from None
        except BaseException:
            fh.close()
            raise
        return fh, first, rest

    def _serve(self, transfer_id: str, attempt_id: int, fh, first: bytes, rest: Iterator[bytes]) -> Iterator[bytes]:
        # The download is already counted; an interrupted stream only leaves a note
        note = "Partial: stream interrupted"
        try:
            with fh:
                yield first
                yield from rest
            note = None
        except CorruptedPayload:
            note = "Partial: corrupted payload"
            logger.error("Payload of transfer %s failed authentication mid-stream", transfer_id)
            raise
        finally:
            if note:
                logger.warning("Download of transfer %s incomplete: %s", transfer_id, note)
                self.registry.annotate_attempt(attempt_id, note)

    def delete_transfer(self, transfer_id: str, access_token: str) -> bool:
        transfer = self._load(transfer_id)
        if transfer is None or not verify_access_token(access_token, transfer.access_token_digest):
            logger.warning("Delete refused for transfer %s", transfer_id)
            return False
        locator = self.registry.remove(transfer_id)
        if locator is None:
            return False
        self._discard_blob(locator)
        logger.info("Transfer deleted: %s", transfer_id)
        return True

    def cleanup_expired_transfers(self) -> int:
        now = self.clock()
        removed = 0
        after = None
        while True:
            batch = self.registry.list_expired(now, limit=self.cleanup_batch_size, after=after)
            for transfer_id in batch:
                try:
                    locator = self.registry.remove_if_expired(transfer_id, now)
                except SQLAlchemyError:
                    logger.exception("Error cleaning up transfer %s", transfer_id)
                    continue
                if locator is None:
                    continue
                self._discard_blob(locator)
                removed += 1
                logger.info("Expired transfer cleaned up: %s", transfer_id)
            if len(batch) < self.cleanup_batch_size:
                return removed
            after = batch[-1]

    def _discard_blob(self, locator: str) -> None:
        try:
            self.store.remove(locator)
        except StorageFailure:
            logger.exception("Error removing payload %s", locator)


@lru_cache
def build_transfer_service() -> TransferService:
    from app.database import SessionLocal

    return TransferService(TransferRegistry(SessionLocal), LocalBlobStore(TRANSFER_STORAGE_DIR))
