import logging
from datetime import datetime

from sqlalchemy import case, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, sessionmaker

from app.models.transfer import DownloadAttempt, Transfer, TransferStatus
from app.services.errors import TransferNotFound

logger = logging.getLogger(__name__)


def _expired_clause(now: datetime):
    return or_(Transfer.expires_at < now, Transfer.current_downloads >= Transfer.max_downloads)


class TransferRegistry:
    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def insert(self, transfer: Transfer) -> Transfer:
        with self.session_factory() as session:
            session.add(transfer)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise
            session.refresh(transfer)
            return transfer

    def get(self, transfer_id: str) -> Transfer | None:
        # Single joined SELECT: the counter and the log are read from one snapshot
        with self.session_factory() as session:
            stmt = (
                select(Transfer)
                .options(joinedload(Transfer.download_log))
                .where(Transfer.id == transfer_id)
            )
            return session.scalars(stmt).unique().first()

    def list_expired(self, now: datetime, limit: int | None = None, after: str | None = None) -> list[str]:
        """Ids of expired transfers in id order, starting past ``after``."""
        stmt = select(Transfer.id).where(_expired_clause(now)).order_by(Transfer.id)
        if after is not None:
            stmt = stmt.where(Transfer.id > after)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.session_factory() as session:
            return list(session.scalars(stmt))

    def remove(self, transfer_id: str) -> str | None:
        """Delete the record and its audit log; return the payload locator it held."""
        return self._delete_where(transfer_id, Transfer.id == transfer_id)

    def remove_if_expired(self, transfer_id: str, now: datetime) -> str | None:
        return self._delete_where(transfer_id, Transfer.id == transfer_id, _expired_clause(now))

    def _delete_where(self, transfer_id: str, *criteria) -> str | None:
        with self.session_factory() as session:
            with session.begin():
                locator = session.execute(
                    delete(Transfer)
                    .where(*criteria)
                    .returning(Transfer.payload_locator)
                    .execution_options(synchronize_session=False)
                ).scalar_one_or_none()
                if locator is None:
                    return None
                session.execute(
                    delete(DownloadAttempt)
                    .where(DownloadAttempt.transfer_id == transfer_id)
                    .execution_options(synchronize_session=False)
                )
            return locator

    def claim_download(self, transfer_id: str, now: datetime, attempt: DownloadAttempt) -> int | None:
        """Consume one download and log ``attempt`` in the same transaction.

        Returns the attempt id, or None when the cap or expiry was reached.
        Raises TransferNotFound if the record is gone.
        """
        next_count = Transfer.current_downloads + 1
        stmt = (
            update(Transfer)
            .where(
                Transfer.id == transfer_id,
                Transfer.current_downloads < Transfer.max_downloads,
                Transfer.expires_at >= now,
            )
            .values(
                current_downloads=next_count,
                status=case(
                    (next_count >= Transfer.max_downloads, TransferStatus.EXPIRED.value),
                    else_=Transfer.status,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as session:
            with session.begin():
                if session.execute(stmt).rowcount != 1:
                    if session.scalar(select(Transfer.id).where(Transfer.id == transfer_id)) is None:
                        raise TransferNotFound("Transfer not found")
                    return None
                attempt.transfer_id = transfer_id
                session.add(attempt)
                session.flush()
                return attempt.id

    def record_attempt(self, transfer_id: str, attempt: DownloadAttempt) -> bool:
        """Append a failed attempt. Never raises; a lost audit row is only logged."""
        attempt.transfer_id = transfer_id
        try:
            with self.session_factory() as session:
                with session.begin():
                    session.add(attempt)
        except SQLAlchemyError:
            logger.exception("Could not record download attempt for transfer %s", transfer_id)
            return False
        return True

    def annotate_attempt(self, attempt_id: int, note: str) -> None:
        try:
            with self.session_factory() as session:
                with session.begin():
                    session.execute(
                        update(DownloadAttempt)
                        .where(DownloadAttempt.id == attempt_id)
                        .values(failure_reason=note)
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError:
            logger.exception("Could not annotate download attempt %s", attempt_id)
