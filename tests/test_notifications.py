"""Tests for the notification batcher, its sinks and its supervisor thread."""

import time
from types import SimpleNamespace

import httpx
import pytest

import notifications
from config import NotificationSettings
from models import HistoryEvent
from notifications import (
    NotificationBatcher,
    NotificationMessage,
    WebhookSink,
    build_sinks,
    format_digest,
    format_file_event,
)
from tests.conftest import FakeClock, RecordingSink


def _file(name="report.pdf", external_id="f-1", size=2048):
    return SimpleNamespace(display_name=name, external_id=external_id, size_bytes=size)


def _settings(**overrides):
    values = dict(discord_webhook_enabled=True, discord_webhook_url="http://hooks.invalid/x", poll_seconds=60)
    values.update(overrides)
    return NotificationSettings(**values)


class TestMessageFormat:

    def test_upload_includes_size(self):
        message = format_file_event(_file(), HistoryEvent.UPLOAD)
        assert message.text == "File 'report.pdf' (f-1) was uploaded.\n---\nSize: 2048 bytes"
        assert message.subject == "DropVault file uploaded"
        assert message.email_body == "File 'report.pdf' (f-1) was uploaded.\n\nSize: 2048 bytes"

    def test_download_has_no_details(self):
        message = format_file_event(_file(), HistoryEvent.DOWNLOAD)
        assert message.text == "File 'report.pdf' (f-1) was downloaded."

    def test_digest_joins_entries(self):
        digest = format_digest(
            [NotificationMessage("deleted", "one"), NotificationMessage("renewed", "two")], 5
        )
        assert digest.subject == "DropVault file batch"
        assert digest.text == "Batched notifications (last 5 minutes):\n\none\n\ntwo"


class TestBuildSinks:

    def test_nothing_configured(self):
        assert build_sinks(NotificationSettings()) == []

    def test_webhook_needs_url(self):
        assert build_sinks(NotificationSettings(discord_webhook_enabled=True, discord_webhook_url="  ")) == []

    def test_both_sinks(self):
        sinks = build_sinks(_settings(
            email_enabled=True,
            email_to="a@example.com, b@example.com",
            email_from="dropvault@example.com",
            smtp_host="smtp.example.com",
        ))
        assert [s.name for s in sinks] == ["webhook", "email"]
        assert sinks[1].settings.email_recipients == ["a@example.com", "b@example.com"]


class TestBatching:

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def sinks(self):
        return [RecordingSink("webhook"), RecordingSink("email")]

    def _batcher(self, sinks, clock, **overrides):
        return NotificationBatcher(
            _settings(**overrides),
            sink_factory=lambda s: list(sinks) if s.webhook_configured else [],
            clock=clock,
            autostart=False,
        )

    def test_three_events_in_window_make_one_digest(self, sinks, clock):
        batcher = self._batcher(sinks, clock, batch_enabled=True, batch_minutes=5)
        for i in range(3):
            batcher.notify(HistoryEvent.DOWNLOAD, _file(name=f"file-{i}.txt", external_id=f"id-{i}"))

        clock.advance(60)
        assert batcher.poll() == 0
        assert all(sink.messages == [] for sink in sinks)

        clock.advance(240)
        assert batcher.poll() == 1

        for sink in sinks:
            assert len(sink.messages) == 1
            digest = sink.messages[0].text
            assert digest.startswith("Batched notifications (last 5 minutes):")
            for i in range(3):
                assert f"File 'file-{i}.txt' (id-{i}) was downloaded." in digest
        assert batcher.pending == 0

    def test_events_after_drain_go_to_next_batch(self, sinks, clock):
        batcher = self._batcher(sinks, clock, batch_enabled=True, batch_minutes=5)
        batcher.notify(HistoryEvent.UPLOAD, _file())
        assert batcher.flush() == 1

        batcher.notify(HistoryEvent.DELETION, _file())
        assert batcher.pending == 1
        assert batcher.poll() == 0

        clock.advance(300)
        assert batcher.poll() == 1
        assert "was deleted." in sinks[0].messages[1].text

    def test_empty_window_sends_nothing(self, sinks, clock):
        batcher = self._batcher(sinks, clock, batch_enabled=True, batch_minutes=5)
        clock.advance(600)
        assert batcher.poll() == 0
        assert sinks[0].messages == []

    def test_unbatched_dispatches_each_event(self, sinks, clock):
        batcher = self._batcher(sinks, clock)
        batcher.notify(HistoryEvent.UPLOAD, _file())
        batcher.notify(HistoryEvent.RENEWAL, _file())

        assert batcher.poll() == 2
        assert [m.event for m in sinks[0].messages] == ["uploaded", "renewed"]
        assert [m.event for m in sinks[1].messages] == ["uploaded", "renewed"]

    def test_zero_minute_window_means_unbatched(self, sinks, clock):
        batcher = self._batcher(sinks, clock, batch_enabled=True, batch_minutes=0)
        batcher.notify(HistoryEvent.UPLOAD, _file())
        assert batcher.poll() == 1

    def test_failing_sink_does_not_block_the_other(self, clock):
        broken, healthy = RecordingSink("webhook", fail=True), RecordingSink("email")
        batcher = self._batcher([broken, healthy], clock)
        batcher.notify(HistoryEvent.UPLOAD, _file())

        assert batcher.poll() == 1
        assert len(healthy.messages) == 1
        # at most once: nothing is re-queued for the failed sink
        assert batcher.pending == 0

    def test_no_sink_drops_events(self, sinks, clock):
        batcher = self._batcher(sinks, clock, discord_webhook_enabled=False)
        batcher.notify(HistoryEvent.UPLOAD, _file())
        assert batcher.pending == 0

    def test_reconfigure_to_no_sinks_discards_queue(self, sinks, clock):
        batcher = self._batcher(sinks, clock, batch_enabled=True, batch_minutes=5)
        batcher.notify(HistoryEvent.UPLOAD, _file())

        batcher.reconfigure(_settings(discord_webhook_enabled=False))
        assert batcher.poll() == 0
        assert batcher.pending == 0


class TestSupervisor:

    def _wait_for(self, predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.02)
        return predicate()

    def test_notify_starts_supervisor_which_delivers(self):
        sink = RecordingSink("webhook")
        batcher = NotificationBatcher(_settings(poll_seconds=0.05), sink_factory=lambda s: [sink] if s.webhook_configured else [])
        try:
            assert not batcher.is_running
            batcher.notify(HistoryEvent.UPLOAD, _file())
            assert batcher.is_running
            assert self._wait_for(lambda: len(sink.messages) == 1)
        finally:
            batcher.stop()
        assert not batcher.is_running

    def test_supervisor_stops_when_sinks_go_away(self):
        sink = RecordingSink("webhook")
        batcher = NotificationBatcher(_settings(poll_seconds=0.05), sink_factory=lambda s: [sink] if s.webhook_configured else [])
        batcher.notify(HistoryEvent.UPLOAD, _file())
        assert batcher.is_running

        batcher.reconfigure(_settings(discord_webhook_enabled=False, poll_seconds=0.05))
        assert self._wait_for(lambda: not batcher.is_running)

    def test_restart_wakes_promptly(self):
        sink = RecordingSink("webhook")
        batcher = NotificationBatcher(_settings(poll_seconds=60), sink_factory=lambda s: [sink])
        try:
            for _ in range(5):
                batcher.start()
                batcher.stop()
            batcher.notify(HistoryEvent.UPLOAD, _file())
            assert self._wait_for(lambda: len(sink.messages) == 1)
        finally:
            batcher.stop()

    def test_start_and_stop_are_idempotent(self):
        batcher = NotificationBatcher(_settings(poll_seconds=0.05), sink_factory=lambda s: [RecordingSink("webhook")])
        batcher.start()
        batcher.start()
        assert batcher.is_running
        batcher.stop()
        batcher.stop()
        assert not batcher.is_running

    def test_start_without_sinks_is_a_no_op(self):
        batcher = NotificationBatcher(NotificationSettings(), sink_factory=lambda s: [])
        batcher.start()
        assert not batcher.is_running


class TestWebhookAndTestSends:

    def test_webhook_posts_content(self, monkeypatch):
        sent = {}

        def fake_post(url, json, timeout):
            sent.update(url=url, json=json)
            return httpx.Response(204, request=httpx.Request("POST", url))

        monkeypatch.setattr(notifications.httpx, "post", fake_post)
        WebhookSink("http://hooks.invalid/x").send(NotificationMessage("uploaded", "x" * 3000))

        assert sent["url"] == "http://hooks.invalid/x"
        assert len(sent["json"]["content"]) == notifications.WEBHOOK_CONTENT_LIMIT

    def test_webhook_http_error_raises(self, monkeypatch):
        def fake_post(url, json, timeout):
            return httpx.Response(500, request=httpx.Request("POST", url))

        monkeypatch.setattr(notifications.httpx, "post", fake_post)
        with pytest.raises(httpx.HTTPStatusError):
            WebhookSink("http://hooks.invalid/x").send(NotificationMessage("uploaded", "hi"))

    def test_test_webhook_without_url(self):
        result = NotificationBatcher(NotificationSettings(), autostart=False).send_test_webhook()
        assert result.success is False

    def test_test_webhook_reports_failure(self, monkeypatch):
        def fake_post(url, json, timeout):
            raise httpx.ConnectError("refused")

        monkeypatch.setattr(notifications.httpx, "post", fake_post)
        result = NotificationBatcher(_settings(), autostart=False).send_test_webhook()
        assert result.success is False
        assert "refused" in result.message

    def test_test_webhook_success(self, monkeypatch):
        monkeypatch.setattr(
            notifications.httpx,
            "post",
            lambda url, json, timeout: httpx.Response(200, request=httpx.Request("POST", url)),
        )
        assert NotificationBatcher(_settings(), autostart=False).send_test_webhook().success

    def test_test_email_incomplete_settings(self):
        result = NotificationBatcher(NotificationSettings(email_enabled=True), autostart=False).send_test_email()
        assert result.success is False
        assert "incomplete" in result.message
