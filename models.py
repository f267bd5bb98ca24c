import enum
from datetime import date, datetime

from sqlalchemy import Column, Integer, String, Date, DateTime, BigInteger, Text, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base
from secure_share import LegacyToken, SplitToken, TokenRef

TOKEN_MODE_LEGACY = "legacy"
TOKEN_MODE_V2 = "encrypted-v2-share"

ENCRYPTION_NONE = 0
ENCRYPTION_SERVER_PASSWORD = 1
ENCRYPTION_CLIENT_WRAPPED = 2


class HistoryEvent(str, enum.Enum):
    UPLOAD = "UPLOAD"
    DOWNLOAD = "DOWNLOAD"
    RENEWAL = "RENEWAL"
    DELETION = "DELETION"


# ─────────────────────────────────────────────────────────────
# Stored Files
# ─────────────────────────────────────────────────────────────
class File(Base):
    __tablename__ = "files"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String(64), unique=True, index=True, nullable=False)
    display_name = Column(String, nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    original_size_bytes = Column(BigInteger, nullable=True)
    uploaded_at = Column(Date, nullable=False, default=date.today)
    keep_indefinitely = Column(Boolean, default=False, nullable=False)
    hidden = Column(Boolean, default=False, nullable=False)
    password_hash = Column(String, nullable=True)
    encrypted = Column(Boolean, default=False, nullable=False)
    encryption_version = Column(Integer, default=ENCRYPTION_NONE, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def server_decrypts(self) -> bool:
        """True when the blob is a v1 envelope the server opens with the file password."""
        return bool(self.encrypted) and (self.encryption_version or 0) < ENCRYPTION_CLIENT_WRAPPED

    @property
    def effective_size(self) -> int:
        return self.original_size_bytes if self.original_size_bytes is not None else self.size_bytes

    def __repr__(self) -> str:
        return f"<File {self.external_id} name={self.display_name!r} v={self.encryption_version}>"


# ─────────────────────────────────────────────────────────────
# Share Links
# ─────────────────────────────────────────────────────────────
class ShareToken(Base):
    __tablename__ = "share_tokens"

    id = Column(Integer, primary_key=True)
    file_id = Column(Integer, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True)
    raw_token = Column(String(64), unique=True, nullable=True)      # legacy lookup key
    public_id = Column(String(16), unique=True, index=True, nullable=True)
    secret_hash = Column(String(128), nullable=True)
    token_mode = Column(String(32), nullable=False, default=TOKEN_MODE_LEGACY)
    wrapped_key = Column(Text, nullable=True)
    wrap_nonce = Column(String(128), nullable=True)
    wrapped_password = Column(Text, nullable=True)     # file password under a key derived from the token
    encryption_version = Column(Integer, nullable=True)
    expiration_date = Column(Date, nullable=True)
    remaining_downloads = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    file = relationship("File", lazy="joined")

    @property
    def ref(self) -> TokenRef:
        if self.token_mode == TOKEN_MODE_V2 and self.public_id and self.secret_hash:
            return SplitToken(public_id=self.public_id, secret_hash=self.secret_hash)
        return LegacyToken(raw=self.raw_token or "")

    def is_live(self, today: date = None) -> bool:
        today = today or date.today()
        not_expired = self.expiration_date is None or today <= self.expiration_date
        has_downloads = self.remaining_downloads is None or self.remaining_downloads > 0
        return not_expired and has_downloads

    def __repr__(self) -> str:
        key = self.public_id or "legacy"
        return f"<ShareToken {self.id} {key} exp={self.expiration_date} left={self.remaining_downloads}>"


# ─────────────────────────────────────────────────────────────
# Per-file Event Log
# ─────────────────────────────────────────────────────────────
class FileHistoryLog(Base):
    __tablename__ = "file_history"

    id = Column(Integer, primary_key=True)
    file_id = Column(Integer, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(16), nullable=False, index=True)
    event_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
