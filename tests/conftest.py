"""Shared fixtures: a DropVault core on a temporary SQLite file and local disk."""

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from config import AppSettings, NotificationSettings
from core import DropVaultCore
from database import init_db, make_engine, make_session_factory
from encryption import CryptoEngine
from notifications import NotificationBatcher
from storage import LocalDiskBlobStore

TEST_ITERATIONS = 1000
TEST_CHUNK_SIZE = 1024


class RecordingSink:
    """Collects messages instead of sending them. Optionally fails every send."""

    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.fail = fail
        self.messages = []

    def send(self, message):
        if self.fail:
            raise RuntimeError(f"{self.name} is down")
        self.messages.append(message)


class FakeClock:

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def notification_settings():
    return NotificationSettings(
        discord_webhook_enabled=True,
        discord_webhook_url="http://hooks.invalid/dropvault",
        poll_seconds=60,
    )


@pytest.fixture
def settings(tmp_path, notification_settings):
    return AppSettings(
        database_url=f"sqlite:///{tmp_path / 'dropvault.db'}",
        file_storage_path=str(tmp_path / "files"),
        kdf_iterations=TEST_ITERATIONS,
        admin_token="admin-secret",
        notifications=notification_settings,
    )


@pytest.fixture
def session_factory(settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def sinks():
    return [RecordingSink("webhook"), RecordingSink("email")]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink_factory(sinks):
    def build(notification_settings):
        if not (notification_settings.webhook_configured or notification_settings.email_configured):
            return []
        return list(sinks)
    return build


@pytest.fixture
def core(settings, session_factory, sink_factory, clock):
    batcher = NotificationBatcher(
        settings.notifications,
        sink_factory=sink_factory,
        clock=clock,
        autostart=False,
    )
    instance = DropVaultCore(
        settings,
        session_factory=session_factory,
        blobs=LocalDiskBlobStore(settings.file_storage_path),
        crypto=CryptoEngine(iterations=TEST_ITERATIONS, chunk_size=TEST_CHUNK_SIZE),
        notifications=batcher,
        scheduler=BackgroundScheduler(daemon=True),
    )
    yield instance
    instance.scheduler.shutdown()
    instance.notifications.stop()


@pytest.fixture
def store(core):
    """Store a file through the core and return the File row."""
    def _store(content: bytes = b"hello dropvault", name: str = "hello.txt", **kwargs):
        return core.files.store_file(name, [content], **kwargs)
    return _store
