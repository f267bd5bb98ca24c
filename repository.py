"""
repository.py — Persistence contract the core consumes.

Every call opens and closes its own session, so request threads and the
background scheduler never share one. Rows are returned detached.
"""
import logging
from datetime import date
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from errors import StorageFailure
from models import File, FileHistoryLog, HistoryEvent, ShareToken
from secure_share import PUBLIC_ID_LENGTH

logger = logging.getLogger(__name__)


class Repository:

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _session(self):
        return self._session_factory()

    # ─── Files ──────────────────────────────────────────────

    def find_file_by_external_id(self, external_id: str) -> Optional[File]:
        with self._session() as db:
            return db.execute(select(File).where(File.external_id == external_id)).scalar_one_or_none()

    def save_file(self, file: File) -> File:
        try:
            with self._session() as db:
                merged = db.merge(file)
                db.commit()
                return merged
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not save file {file.external_id}: {e}") from e

    def list_files(self, include_hidden: bool = True) -> list[File]:
        with self._session() as db:
            query = select(File).order_by(File.uploaded_at.desc(), File.id.desc())
            if not include_hidden:
                query = query.where(File.hidden.is_(False))
            return list(db.execute(query).scalars().all())

    def list_expired_files(self, threshold_date: date) -> list[File]:
        with self._session() as db:
            return list(db.execute(
                select(File).where(
                    File.uploaded_at < threshold_date,
                    File.keep_indefinitely.is_(False),
                )
            ).scalars().all())

    def list_orphan_candidates(self) -> list[File]:
        """Every file row. The caller checks each against the blob store."""
        with self._session() as db:
            return list(db.execute(select(File)).scalars().all())

    def delete_file_cascade(self, file_id: int) -> bool:
        """Remove tokens, history and the file row in one transaction."""
        try:
            with self._session() as db:
                db.execute(delete(ShareToken).where(ShareToken.file_id == file_id))
                db.execute(delete(FileHistoryLog).where(FileHistoryLog.file_id == file_id))
                removed = db.execute(delete(File).where(File.id == file_id)).rowcount
                db.commit()
                return removed > 0
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not delete file row {file_id}: {e}") from e

    def total_size_bytes(self) -> int:
        with self._session() as db:
            return int(db.execute(select(func.coalesce(func.sum(File.size_bytes), 0))).scalar_one())

    def count_files(self) -> int:
        with self._session() as db:
            return int(db.execute(select(func.count(File.id))).scalar_one())

    # ─── Share tokens ───────────────────────────────────────

    def find_token_by_public_id(self, public_id: str) -> Optional[ShareToken]:
        with self._session() as db:
            return db.execute(select(ShareToken).where(ShareToken.public_id == public_id)).scalar_one_or_none()

    def find_token_by_raw_token(self, raw_token: str) -> Optional[ShareToken]:
        with self._session() as db:
            return db.execute(select(ShareToken).where(ShareToken.raw_token == raw_token)).scalar_one_or_none()

    def find_token(self, token_id: int) -> Optional[ShareToken]:
        with self._session() as db:
            return db.get(ShareToken, token_id)

    def token_taken(self, raw_token: str) -> bool:
        """A minted token collides with a stored raw token or with a v2 row's public id."""
        with self._session() as db:
            return db.execute(
                select(ShareToken.id).where(
                    or_(
                        ShareToken.raw_token == raw_token,
                        ShareToken.public_id == raw_token[:PUBLIC_ID_LENGTH],
                    )
                )
            ).first() is not None

    def public_id_taken(self, public_id: str) -> bool:
        """A new v2 public id must not shadow a stored public id or the prefix of a legacy token."""
        with self._session() as db:
            return db.execute(
                select(ShareToken.id).where(
                    or_(
                        ShareToken.public_id == public_id,
                        func.substr(ShareToken.raw_token, 1, PUBLIC_ID_LENGTH) == public_id,
                    )
                )
            ).first() is not None

    def save_token(self, token: ShareToken) -> ShareToken:
        try:
            with self._session() as db:
                merged = db.merge(token)
                db.commit()
                db.refresh(merged)
                return merged
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not save share token: {e}") from e

    def claim_download(
        self,
        token_id: int,
        today: date,
        ip_address: str = None,
        user_agent: str = None,
    ) -> Optional[ShareToken]:
        """
        Atomically spend one download of a live token and log the DOWNLOAD.

        The conditional UPDATE only matches while the token is still live, so
        two concurrent claims on a token with one download left cannot both
        match. The history row commits with the claim or not at all. Returns
        the row as it stands after the claim (deleted from the table if that
        was the last download), or None if the claim lost.
        """
        live = or_(ShareToken.expiration_date.is_(None), ShareToken.expiration_date >= today)
        try:
            with self._session() as db:
                with db.begin():
                    bounded = db.execute(
                        update(ShareToken)
                        .where(
                            ShareToken.id == token_id,
                            ShareToken.remaining_downloads.is_not(None),
                            ShareToken.remaining_downloads > 0,
                            live,
                        )
                        .values(remaining_downloads=ShareToken.remaining_downloads - 1)
                        .execution_options(synchronize_session=False)
                    ).rowcount

                    token = db.execute(select(ShareToken).where(ShareToken.id == token_id)).scalar_one_or_none()
                    if token is None:
                        return None
                    if not bounded:
                        # unbounded tokens are only gated by expiry
                        if token.remaining_downloads is not None or not token.is_live(today):
                            return None
                    db.add(FileHistoryLog(
                        file_id=token.file_id,
                        event_type=HistoryEvent.DOWNLOAD.value,
                        ip_address=ip_address,
                        user_agent=user_agent,
                    ))
                    if not token.is_live(today):
                        db.delete(token)
                        logger.info(f"Share token {token_id} spent its last download and was removed")
                return token
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not claim a download on share token {token_id}: {e}") from e

    def list_dead_tokens(self, today: date) -> list[ShareToken]:
        with self._session() as db:
            return list(db.execute(
                select(ShareToken).where(
                    or_(
                        ShareToken.expiration_date < today,
                        ShareToken.remaining_downloads <= 0,
                    )
                )
            ).scalars().all())

    def delete_tokens(self, token_ids: list[int]) -> int:
        if not token_ids:
            return 0
        with self._session() as db:
            removed = db.execute(delete(ShareToken).where(ShareToken.id.in_(token_ids))).rowcount
            db.commit()
            return removed

    # ─── History ────────────────────────────────────────────

    def append_history(self, file_id: int, event: HistoryEvent, ip_address: str = None, user_agent: str = None) -> None:
        try:
            with self._session() as db:
                db.add(FileHistoryLog(
                    file_id=file_id,
                    event_type=event.value,
                    ip_address=ip_address,
                    user_agent=user_agent,
                ))
                db.commit()
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not record {event.value} for file {file_id}: {e}") from e

    def history_for_file(self, file_id: int) -> list[FileHistoryLog]:
        with self._session() as db:
            return list(db.execute(
                select(FileHistoryLog)
                .where(FileHistoryLog.file_id == file_id)
                .order_by(FileHistoryLog.event_at.desc(), FileHistoryLog.id.desc())
            ).scalars().all())

    def count_events(self, event: HistoryEvent) -> int:
        with self._session() as db:
            return int(db.execute(
                select(func.count(FileHistoryLog.id)).where(FileHistoryLog.event_type == event.value)
            ).scalar_one())

    def download_counts(self) -> dict[int, int]:
        with self._session() as db:
            rows = db.execute(
                select(FileHistoryLog.file_id, func.count(FileHistoryLog.id))
                .where(FileHistoryLog.event_type == HistoryEvent.DOWNLOAD.value)
                .group_by(FileHistoryLog.file_id)
            ).all()
            return {file_id: count for file_id, count in rows}
