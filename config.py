"""
config.py — Settings snapshot for DropVault.

Values come from the environment (and a local .env file). The snapshot is
immutable: a runtime change builds a new one with `model_copy(update=...)`
and hands it to `DropVaultCore.apply_settings`.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class NotificationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    discord_webhook_enabled: bool = False
    discord_webhook_url: str = ""
    email_enabled: bool = False
    email_from: str = ""
    email_to: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    batch_enabled: bool = False
    batch_minutes: Optional[int] = 5
    poll_seconds: float = 10.0

    @property
    def email_recipients(self) -> list[str]:
        return [r.strip() for r in (self.email_to or "").split(",") if r.strip()]

    @property
    def webhook_configured(self) -> bool:
        return self.discord_webhook_enabled and bool(self.discord_webhook_url.strip())

    @property
    def email_configured(self) -> bool:
        return self.email_enabled and bool(self.email_recipients)


class AppSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str = "sqlite:///./dropvault.db"
    file_storage_path: str = "files"
    max_file_lifetime_days: int = 30
    file_deletion_cron: str = "0 0 2 * * *"
    encryption_enabled: bool = True
    kdf_iterations: int = 310_000
    allow_public_id_only_v2: bool = True
    admin_token: str = ""

    use_minio: bool = False
    minio_endpoint: str = "http://localhost:9000"
    minio_access_key: str = "admin"
    minio_secret_key: str = ""
    minio_bucket: str = "dropvault"

    notifications: NotificationSettings = NotificationSettings()


def load_settings() -> AppSettings:
    """Build a snapshot from the current environment."""
    notifications = NotificationSettings(
        discord_webhook_enabled=_env_bool("DISCORD_WEBHOOK_ENABLED", False),
        discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL", ""),
        email_enabled=_env_bool("EMAIL_NOTIFICATIONS_ENABLED", False),
        email_from=os.getenv("EMAIL_FROM", ""),
        email_to=os.getenv("EMAIL_TO", ""),
        smtp_host=os.getenv("SMTP_HOST", ""),
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_username=os.getenv("SMTP_USERNAME", ""),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        smtp_use_tls=_env_bool("SMTP_USE_TLS", True),
        batch_enabled=_env_bool("NOTIFICATION_BATCH_ENABLED", False),
        batch_minutes=_env_int("NOTIFICATION_BATCH_MINUTES", 5),
        poll_seconds=float(os.getenv("NOTIFICATION_POLL_SECONDS", "10")),
    )
    return AppSettings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./dropvault.db"),
        file_storage_path=os.getenv("FILE_STORAGE_PATH", "files"),
        max_file_lifetime_days=_env_int("MAX_FILE_LIFETIME_DAYS", 30),
        file_deletion_cron=os.getenv("FILE_DELETION_CRON", "0 0 2 * * *"),
        encryption_enabled=_env_bool("ENCRYPTION_ENABLED", True),
        kdf_iterations=_env_int("KDF_ITERATIONS", 310_000),
        allow_public_id_only_v2=_env_bool("ALLOW_PUBLIC_ID_ONLY_V2", True),
        admin_token=os.getenv("ADMIN_TOKEN", ""),
        use_minio=_env_bool("USE_MINIO", False),
        minio_endpoint=os.getenv("MINIO_ENDPOINT", "http://localhost:9000"),
        minio_access_key=os.getenv("MINIO_ROOT_USER", "admin"),
        minio_secret_key=os.getenv("MINIO_ROOT_PASSWORD", ""),
        minio_bucket=os.getenv("MINIO_BUCKET", "dropvault"),
        notifications=notifications,
    )
