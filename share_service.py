"""
share_service.py — Share token lifecycle: mint, resolve, validate, consume.

A token is ACTIVE until it expires or runs out of downloads; either way the
row is deleted (here on the consuming request, or later by the scheduler's
dead-token sweep). Consumption claims the download with a conditional
UPDATE before any bytes are streamed, under a per-token lock, so a token
with one download left is redeemed at most once however many requests race.
"""

import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Iterator, Optional

from audit import RequesterInfo
from cache import ADMIN_FILE_LIST, ANALYTICS_SUMMARY
from config import AppSettings
from errors import (
    AuthenticationFailed,
    Exhausted,
    Expired,
    Forbidden,
    InvalidShareRequest,
    NotFound,
    StorageFailure,
)
from file_service import FileService
from models import (
    ENCRYPTION_CLIENT_WRAPPED,
    TOKEN_MODE_LEGACY,
    TOKEN_MODE_V2,
    File,
    HistoryEvent,
    ShareToken,
)
from repository import Repository
from secure_share import (
    PUBLIC_ID_LENGTH,
    LegacyToken,
    SplitToken,
    constant_time_equals,
    hash_secret,
    mint_unique_token,
    secret_matches,
    split_token,
    unwrap_from_share,
    wrap_for_share,
)
from security import verify_password

logger = logging.getLogger(__name__)

_TOKEN_CHARS = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class ShareGrant:
    token: str
    share: ShareToken


@dataclass
class Redemption:
    file: File
    share: ShareToken
    chunks: Iterable[bytes]

    @property
    def remaining_downloads(self) -> Optional[int]:
        return self.share.remaining_downloads


class _PrimedStream:
    """
    Pulls the first chunk eagerly so a wrong password or a missing blob
    fails before the download is claimed, then streams the rest lazily.
    """

    def __init__(self, chunks: Iterable[bytes]):
        self._it = iter(chunks)
        try:
            self._head = [next(self._it)]
        except StopIteration:
            self._head = []

    def __iter__(self) -> Iterator[bytes]:
        try:
            yield from self._head
            yield from self._it
        finally:
            self.close()

    def close(self) -> None:
        close = getattr(self._it, "close", None)
        if close is not None:
            close()


class _KeyedLocks:
    """One lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        return len(self._locks)


def _label(row: ShareToken) -> str:
    # never log raw tokens or secrets
    return f"public id {row.public_id}" if row.public_id else f"legacy token #{row.id}"


class ShareManager:

    def __init__(self, repo: Repository, files: FileService, notifier, cache, settings: AppSettings):
        self.repo = repo
        self.files = files
        self.notifier = notifier
        self.cache = cache
        self.settings = settings
        self._locks = _KeyedLocks()

    # ─── Create ──────────────────────────────────────────────

    def mint_share_token(
        self,
        external_id: str,
        expiration_date: Optional[date] = None,
        max_downloads: Optional[int] = None,
        mode: str = TOKEN_MODE_LEGACY,
        token: Optional[str] = None,
        public_id: Optional[str] = None,
        secret_hash: Optional[str] = None,
        wrapped_key: Optional[str] = None,
        wrap_nonce: Optional[str] = None,
        password: Optional[str] = None,
        today: Optional[date] = None,
    ) -> ShareGrant:
        """
        Create a share token for a file.

        Password-protected files need their password here. It is stored
        encrypted under the token, so recipients only ever need the link.
        """
        today = today or date.today()
        if max_downloads is not None and max_downloads < 1:
            raise InvalidShareRequest("max_downloads must be at least 1")
        if expiration_date is not None and expiration_date < today:
            raise InvalidShareRequest("expiration_date is in the past")

        file = self.files.get_file(external_id)
        if file.password_hash and not verify_password(password, file.password_hash):
            raise AuthenticationFailed(f"Wrong password for file {file.external_id}")

        if mode == TOKEN_MODE_LEGACY:
            raw = mint_unique_token(file.external_id, file.size_bytes, file.uploaded_at, self.repo.token_taken)
            row = ShareToken(
                file_id=file.id,
                raw_token=raw,
                token_mode=TOKEN_MODE_LEGACY,
                encryption_version=file.encryption_version,
                expiration_date=expiration_date,
                remaining_downloads=max_downloads,
            )
            if file.password_hash:
                row.wrapped_password = wrap_for_share(password, raw)
        elif mode == TOKEN_MODE_V2:
            raw = token
            row = self._v2_row(file, token, public_id, secret_hash, wrapped_key, wrap_nonce)
            row.expiration_date = expiration_date
            row.remaining_downloads = max_downloads
        else:
            raise InvalidShareRequest(f"Unknown token mode: {mode}")

        row = self.repo.save_token(row)
        logger.info(
            f"Share created for {file.external_id}: {_label(row)} mode={mode} "
            f"expires={expiration_date} downloads={max_downloads}"
        )
        return ShareGrant(token=raw, share=row)

    def _v2_row(self, file: File, token, public_id, secret_hash, wrapped_key, wrap_nonce) -> ShareToken:
        if not token or len(token) <= PUBLIC_ID_LENGTH:
            raise InvalidShareRequest("Encrypted shares need the full token including its secret part")
        if not _TOKEN_CHARS.match(token):
            raise InvalidShareRequest("Token contains unsupported characters")

        token_public_id, secret = split_token(token)
        computed = hash_secret(secret)
        if public_id and public_id != token_public_id:
            raise InvalidShareRequest("public_id does not match the token")
        if secret_hash and not constant_time_equals(secret_hash.lower(), computed):
            raise InvalidShareRequest("secret_hash does not match the token")
        if not wrapped_key or not wrap_nonce:
            raise InvalidShareRequest("Encrypted shares need wrapped_key and wrap_nonce")
        if (file.encryption_version or 0) < ENCRYPTION_CLIENT_WRAPPED:
            raise InvalidShareRequest("Encrypted shares need a client-encrypted file")
        if self.repo.public_id_taken(token_public_id):
            raise InvalidShareRequest("Token is already in use")

        return ShareToken(
            file_id=file.id,
            raw_token=None,
            public_id=token_public_id,
            secret_hash=computed,
            token_mode=TOKEN_MODE_V2,
            wrapped_key=wrapped_key,
            wrap_nonce=wrap_nonce,
            encryption_version=file.encryption_version,
        )

    # ─── Resolve / Validate ──────────────────────────────────────

    def resolve(self, token: str) -> ShareToken:
        if not token:
            raise NotFound("Empty share token")
        row = None
        if len(token) >= PUBLIC_ID_LENGTH:
            row = self.repo.find_token_by_public_id(split_token(token)[0])
        if row is None:
            row = self.repo.find_token_by_raw_token(token)
        if row is None:
            raise NotFound("No share token matches")
        return row

    def validate(self, row: ShareToken, token: str, presented_secret: Optional[str] = None, today: Optional[date] = None) -> None:
        today = today or date.today()
        if row.expiration_date is not None and today > row.expiration_date:
            logger.info(f"Share rejected, expired on {row.expiration_date}: {_label(row)}")
            raise Expired("Share token has expired")
        if row.remaining_downloads is not None and row.remaining_downloads <= 0:
            logger.info(f"Share rejected, no downloads left: {_label(row)}")
            raise Exhausted("Share token has no downloads left")

        ref = row.ref
        if isinstance(ref, SplitToken):
            secret = presented_secret if presented_secret is not None else split_token(token)[1]
            if not secret:
                # client verifies the secret itself against the wrapped key
                if self.settings.allow_public_id_only_v2 and constant_time_equals(token, ref.public_id):
                    return
                logger.info(f"Share rejected, secret missing: {_label(row)}")
                raise Forbidden("Share secret required")
            if not secret_matches(secret, ref.secret_hash):
                logger.info(f"Share rejected, secret mismatch: {_label(row)}")
                raise Forbidden("Share secret does not match")
        elif isinstance(ref, LegacyToken):
            # the raw token was the lookup key, nothing more to check
            return

    def describe_share(self, token: str, presented_secret: Optional[str] = None, today: Optional[date] = None) -> dict:
        """Validate without consuming and return what a downloader needs to know up front."""
        row = self.resolve(token)
        self.validate(row, token, presented_secret, today)
        file = row.file
        return {
            "name": file.display_name,
            "size_bytes": file.effective_size,
            "token_mode": row.token_mode,
            "encryption_version": file.encryption_version,
            "password_protected": file.password_hash is not None,
            "wrapped_key": row.wrapped_key,
            "wrap_nonce": row.wrap_nonce,
            "expiration_date": row.expiration_date.isoformat() if row.expiration_date else None,
            "remaining_downloads": row.remaining_downloads,
        }

    # ─── Consume ──────────────────────────────────────────────

    def redeem_share_token(
        self,
        token: str,
        presented_secret: Optional[str] = None,
        requester: RequesterInfo = None,
        today: Optional[date] = None,
    ) -> Redemption:
        """
        Spend one download and return the file's byte stream.

        The DOWNLOAD history row is written in the same transaction as the
        claim, so a failed write leaves the download unspent.

        Raises NotFound, Expired, Exhausted, Forbidden, AuthenticationFailed
        or StorageFailure.
        """
        today = today or date.today()
        requester = requester or RequesterInfo()
        row = self.resolve(token)

        with self._locks.hold(row.id):
            self.validate(row, token, presented_secret, today)
            file = row.file
            password = unwrap_from_share(row.wrapped_password, token) if row.wrapped_password else None
            stream = _PrimedStream(self.files.open_content(file, password))
            try:
                claimed = self.repo.claim_download(row.id, today, requester.ip_address, requester.user_agent)
            except StorageFailure:
                stream.close()
                logger.error(f"Share claim failed, download not spent: {_label(row)}")
                raise
            if claimed is None:
                stream.close()
                logger.info(f"Share claim lost, already consumed: {_label(row)}")
                raise Exhausted("Share token has no downloads left")

        logger.info(f"Share redeemed for {file.external_id}: {_label(row)} left={claimed.remaining_downloads}")
        self.notifier.notify(HistoryEvent.DOWNLOAD, file, requester)
        self.cache.invalidate(ADMIN_FILE_LIST, ANALYTICS_SUMMARY)
        return Redemption(file=file, share=claimed, chunks=stream)
