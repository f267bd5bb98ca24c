"""
file_service.py — File lifecycle used by the share core.

Stores uploads (sealing them with the file password when server-side
encryption applies), opens them again for download, and handles renew,
hide, keep-indefinitely and delete. Every write records history, fires a
notification and drops the cache entries it makes stale.
"""
import logging
import uuid
from datetime import date
from typing import Iterable, Iterator, Optional

from audit import RequesterInfo, analytics_summary, format_file_size, record_event
from cache import ADMIN_FILE_LIST, ALL_KEYS, ANALYTICS_SUMMARY, FILE_LIST, InvalidatingCache
from config import AppSettings
from encryption import CryptoEngine
from errors import AuthenticationFailed, NotFound, StorageFailure
from models import (
    ENCRYPTION_CLIENT_WRAPPED,
    ENCRYPTION_NONE,
    ENCRYPTION_SERVER_PASSWORD,
    File,
    HistoryEvent,
)
from repository import Repository
from security import hash_password, verify_password
from storage import BlobStore

logger = logging.getLogger(__name__)

# Extension → MIME type map (avoids python-magic cross-platform issues)
MIME_MAP = {
    "pdf":  "application/pdf",
    "png":  "image/png",
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
    "gif":  "image/gif",
    "webp": "image/webp",
    "txt":  "text/plain",
    "md":   "text/markdown",
    "csv":  "text/csv",
    "json": "application/json",
    "zip":  "application/zip",
    "gz":   "application/gzip",
    "mp4":  "video/mp4",
    "mp3":  "audio/mpeg",
}


def detect_mime(filename: str) -> str:
    """Detect MIME type from file extension."""
    if "." in filename:
        ext = filename.rsplit(".", 1)[-1].lower()
        return MIME_MAP.get(ext, "application/octet-stream")
    return "application/octet-stream"


def file_summary(file: File, downloads: Optional[int] = None) -> dict:
    out = {
        "external_id": file.external_id,
        "name": file.display_name,
        "size_bytes": file.effective_size,
        "size": format_file_size(file.effective_size),
        "uploaded_at": file.uploaded_at.isoformat(),
        "keep_indefinitely": file.keep_indefinitely,
        "hidden": file.hidden,
        "password_protected": file.password_hash is not None,
        "encryption_version": file.encryption_version,
    }
    if downloads is not None:
        out["downloads"] = downloads
    return out


class _Counter:
    """Passes chunks through while counting their bytes."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = chunks
        self.total = 0

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._chunks:
            self.total += len(chunk)
            yield chunk


class FileService:

    def __init__(
        self,
        repo: Repository,
        blobs: BlobStore,
        crypto: CryptoEngine,
        cache: InvalidatingCache,
        notifier,
        settings: AppSettings,
    ):
        self.repo = repo
        self.blobs = blobs
        self.crypto = crypto
        self.cache = cache
        self.notifier = notifier
        self.settings = settings

    # ─── Lookup ──────────────────────────────────────────────

    def get_file(self, external_id: str) -> File:
        file = self.repo.find_file_by_external_id(external_id)
        if file is None:
            raise NotFound(f"File {external_id} not found")
        return file

    # ─── Upload ──────────────────────────────────────────────

    def store_file(
        self,
        display_name: str,
        chunks: Iterable[bytes],
        password: Optional[str] = None,
        keep_indefinitely: bool = False,
        hidden: bool = False,
        client_encrypted: bool = False,
        original_size: Optional[int] = None,
        requester: RequesterInfo = None,
    ) -> File:
        external_id = str(uuid.uuid4())
        plaintext = _Counter(chunks)
        password_hash = None

        if client_encrypted:
            # opaque ciphertext from the browser, stored as-is
            version = ENCRYPTION_CLIENT_WRAPPED
            body = plaintext
        elif password and self.settings.encryption_enabled:
            version = ENCRYPTION_SERVER_PASSWORD
            password_hash = hash_password(password)
            body = self.crypto.seal(plaintext, password)
        else:
            version = ENCRYPTION_NONE
            password_hash = hash_password(password) if password else None
            body = plaintext

        written = self.blobs.write_blob(external_id, body)

        file = File(
            external_id=external_id,
            display_name=display_name,
            size_bytes=written,
            original_size_bytes=original_size if client_encrypted else plaintext.total,
            uploaded_at=date.today(),
            keep_indefinitely=keep_indefinitely,
            hidden=hidden,
            password_hash=password_hash,
            encrypted=version != ENCRYPTION_NONE,
            encryption_version=version,
        )
        try:
            file = self.repo.save_file(file)
        except StorageFailure:
            self.blobs.delete_blob(external_id)
            raise

        logger.info(f"File stored: {external_id} ({written} bytes, encryption v{version})")
        record_event(self.repo, file, HistoryEvent.UPLOAD, requester)
        self.notifier.notify(HistoryEvent.UPLOAD, file, requester)
        self.cache.invalidate(*ALL_KEYS)
        return file

    # ─── Download ──────────────────────────────────────────────

    def open_content(self, file: File, password: Optional[str] = None) -> Iterator[bytes]:
        """
        Stream the bytes a downloader receives.

        Version 1 files are decrypted with the file password. Version 2 files
        are opaque ciphertext and stream raw; so do unencrypted files once any
        password on them has been checked.
        """
        if file.password_hash and not verify_password(password, file.password_hash):
            raise AuthenticationFailed(f"Wrong password for file {file.external_id}")
        chunks = self.blobs.read_blob(file.external_id)
        if file.server_decrypts:
            return self.crypto.open(chunks, password)
        return chunks

    # ─── Mutations ──────────────────────────────────────────────

    def renew_file(self, external_id: str, requester: RequesterInfo = None) -> File:
        file = self.get_file(external_id)
        file.uploaded_at = date.today()
        file = self.repo.save_file(file)
        logger.info(f"File renewed: {external_id}")
        record_event(self.repo, file, HistoryEvent.RENEWAL, requester)
        self.notifier.notify(HistoryEvent.RENEWAL, file, requester)
        self.cache.invalidate(FILE_LIST, ADMIN_FILE_LIST)
        return file

    def toggle_hidden(self, external_id: str) -> File:
        file = self.get_file(external_id)
        file.hidden = not file.hidden
        file = self.repo.save_file(file)
        self.cache.invalidate(FILE_LIST, ADMIN_FILE_LIST)
        return file

    def set_keep_indefinitely(self, external_id: str, keep: bool, requester: RequesterInfo = None) -> File:
        file = self.get_file(external_id)
        file.keep_indefinitely = keep
        file = self.repo.save_file(file)
        self.cache.invalidate(FILE_LIST, ADMIN_FILE_LIST)
        if not keep:
            # the retention clock restarts when a file stops being pinned
            file = self.renew_file(external_id, requester)
        return file

    def delete_file(self, external_id: str, requester: RequesterInfo = None) -> bool:
        """Delete the blob, then the rows. A failed blob delete keeps the rows."""
        file = self.get_file(external_id)
        if self.blobs.exists(external_id) and not self.blobs.delete_blob(external_id):
            raise StorageFailure(f"Could not delete blob for {external_id}; database rows kept")
        self.repo.delete_file_cascade(file.id)
        logger.info(f"File deleted: {external_id}")
        self.notifier.notify(HistoryEvent.DELETION, file, requester)
        self.cache.invalidate(*ALL_KEYS)
        return True

    # ─── Listings ──────────────────────────────────────────────

    def list_files(self) -> list[dict]:
        return self.cache.remember(
            FILE_LIST,
            lambda: [file_summary(f) for f in self.repo.list_files(include_hidden=False)],
        )

    def list_admin_files(self) -> list[dict]:
        def build():
            counts = self.repo.download_counts()
            return [file_summary(f, counts.get(f.id, 0)) for f in self.repo.list_files(include_hidden=True)]
        return self.cache.remember(ADMIN_FILE_LIST, build)

    def analytics(self) -> dict:
        return self.cache.remember(ANALYTICS_SUMMARY, lambda: analytics_summary(self.repo))
