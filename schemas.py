from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from models import TOKEN_MODE_LEGACY


class CreateShareRequest(BaseModel):
    expiration_date: Optional[date] = None
    max_downloads: Optional[int] = Field(None, ge=1)
    mode: str = TOKEN_MODE_LEGACY
    # encrypted-v2-share only
    token: Optional[str] = None
    public_id: Optional[str] = None
    secret_hash: Optional[str] = None
    wrapped_key: Optional[str] = None
    wrap_nonce: Optional[str] = None


class CreateShareResponse(BaseModel):
    token: str
    token_mode: str
    public_id: Optional[str]
    download_url: str
    expiration_date: Optional[date]
    remaining_downloads: Optional[int]


class ShareMetaOut(BaseModel):
    name: str
    size_bytes: int
    token_mode: str
    encryption_version: int
    password_protected: bool
    wrapped_key: Optional[str]
    wrap_nonce: Optional[str]
    expiration_date: Optional[str]
    remaining_downloads: Optional[int]


class ScheduleUpdate(BaseModel):
    file_deletion_cron: Optional[str] = None
    max_file_lifetime_days: Optional[int] = Field(None, ge=0)


class ScheduleOut(BaseModel):
    file_deletion_cron: str
    max_file_lifetime_days: int
    next_run: Optional[str]


class SweepOut(BaseModel):
    expired_files_removed: int
