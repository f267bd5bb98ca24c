"""
notifications.py — Non-blocking notification batcher for file events.

Request threads call `notify()`, which only formats and enqueues. A single
supervisor thread polls the queue and dispatches to the configured sinks
(Discord-style webhook, SMTP email), either one message per event or one
digest per batch window. Delivery is best effort: a failing sink is logged
and skipped, and nothing is retried or re-queued.
"""

import logging
import smtplib
import threading
import time
from collections import deque
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Callable, NamedTuple, Optional

import httpx

from config import NotificationSettings
from models import HistoryEvent

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 5.0
SMTP_TIMEOUT = 10
WEBHOOK_CONTENT_LIMIT = 2000

EVENT_VERBS = {
    HistoryEvent.UPLOAD: "uploaded",
    HistoryEvent.DOWNLOAD: "downloaded",
    HistoryEvent.RENEWAL: "renewed",
    HistoryEvent.DELETION: "deleted",
}


# ─── MESSAGES ─────────────────────────────────────

@dataclass(frozen=True)
class NotificationMessage:
    event: str
    summary: str
    details: str = ""

    @property
    def text(self) -> str:
        return f"{self.summary}\n---\n{self.details}" if self.details else self.summary

    @property
    def subject(self) -> str:
        return f"DropVault file {self.event}"

    @property
    def email_body(self) -> str:
        return f"{self.summary}\n\n{self.details}" if self.details else self.summary


def format_file_event(file, event: HistoryEvent) -> NotificationMessage:
    verb = EVENT_VERBS[event]
    summary = f"File '{file.display_name}' ({file.external_id}) was {verb}."
    details = f"Size: {file.size_bytes} bytes" if event == HistoryEvent.UPLOAD else ""
    return NotificationMessage(event=verb, summary=summary, details=details)


def format_digest(messages: list[NotificationMessage], batch_minutes: Optional[int]) -> NotificationMessage:
    label = batch_minutes if batch_minutes is not None else "?"
    header = f"Batched notifications (last {label} minutes):"
    body = "\n\n".join(m.text for m in messages)
    return NotificationMessage(event="batch", summary=f"{header}\n\n{body}")


class NotificationTestResult(NamedTuple):
    success: bool
    message: str


# ─── SINKS ─────────────────────────────────────

class WebhookSink:
    name = "webhook"

    def __init__(self, url: str, timeout: float = WEBHOOK_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def send(self, message: NotificationMessage) -> None:
        content = message.text
        if len(content) > WEBHOOK_CONTENT_LIMIT:
            content = content[:WEBHOOK_CONTENT_LIMIT - 3] + "..."
        response = httpx.post(self.url, json={"content": content}, timeout=self.timeout)
        response.raise_for_status()


class EmailSink:
    name = "email"

    def __init__(self, settings: NotificationSettings, timeout: int = SMTP_TIMEOUT):
        self.settings = settings
        self.timeout = timeout

    def _build(self, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.settings.email_from
        msg["To"] = ", ".join(self.settings.email_recipients)
        msg["Subject"] = subject
        msg.set_content(body)
        return msg

    def deliver(self, subject: str, body: str) -> None:
        s = self.settings
        with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=self.timeout) as smtp:
            if s.smtp_use_tls:
                smtp.starttls()
            if s.smtp_username:
                smtp.login(s.smtp_username, s.smtp_password)
            smtp.send_message(self._build(subject, body))

    def send(self, message: NotificationMessage) -> None:
        self.deliver(message.subject, message.email_body)


def build_sinks(settings: NotificationSettings) -> list:
    sinks = []
    if settings.webhook_configured:
        sinks.append(WebhookSink(settings.discord_webhook_url.strip()))
    if settings.email_configured and settings.smtp_host.strip() and settings.email_from.strip():
        sinks.append(EmailSink(settings))
    return sinks


# ─── BATCHER ─────────────────────────────────────

class NotificationBatcher:

    def __init__(
        self,
        settings: NotificationSettings,
        sink_factory: Callable[[NotificationSettings], list] = build_sinks,
        clock: Callable[[], float] = time.monotonic,
        autostart: bool = True,
    ):
        self._sink_factory = sink_factory
        self._clock = clock
        self._autostart = autostart
        self._settings = settings
        self._sinks = sink_factory(settings)

        # producers append without a lock; only drains are serialized
        self._queue: deque = deque()
        self._drain_lock = threading.Lock()
        self._last_flush = clock()

        self._lifecycle_lock = threading.Lock()
        self._wake: Optional[threading.Event] = None
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def settings(self) -> NotificationSettings:
        return self._settings

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def pending(self) -> int:
        return len(self._queue)

    def _batching(self, settings: NotificationSettings) -> bool:
        return settings.batch_enabled and settings.batch_minutes is not None and settings.batch_minutes >= 1

    def reconfigure(self, settings: NotificationSettings) -> None:
        """Swap in a new settings snapshot and rebuild the sinks."""
        with self._lifecycle_lock:
            self._settings = settings
            self._sinks = self._sink_factory(settings)
            has_sinks = bool(self._sinks)
        logger.info(f"Notifications reconfigured: sinks={[s.name for s in self._sinks]} batching={self._batching(settings)}")
        if not has_sinks:
            self.stop()
        elif self._queue and self._autostart:
            self.start()

    def notify(self, event: HistoryEvent, file, requester=None) -> None:
        """Enqueue a file event. Never blocks on delivery and never raises for it."""
        if not self._sinks:
            logger.debug(f"No notification sink configured, dropping {event.value} for {file.external_id}")
            return
        self._queue.append(format_file_event(file, event))
        if requester is not None:
            logger.debug(f"Queued {event.value} notification for {file.external_id} from {requester.ip_address}")
        if self._autostart:
            self.start()
        wake = self._wake
        if wake is not None and not self._batching(self._settings):
            wake.set()

    # ─── Draining ──────────────────────────────────────────

    def _drain(self) -> list[NotificationMessage]:
        # take exactly what is present now; later appends wait for the next drain
        with self._drain_lock:
            count = len(self._queue)
            return [self._queue.popleft() for _ in range(count)]

    def _dispatch(self, sinks: list, message: NotificationMessage) -> int:
        delivered = 0
        for sink in sinks:
            try:
                sink.send(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"{sink.name} notification failed: {e}")
        return delivered

    def flush(self) -> int:
        """Drain everything queued into one digest. Returns the number of digests sent (0 or 1)."""
        settings, sinks = self._settings, self._sinks
        messages = self._drain()
        self._last_flush = self._clock()
        if not messages:
            return 0
        self._dispatch(sinks, format_digest(messages, settings.batch_minutes))
        logger.info(f"Flushed {len(messages)} batched notification(s)")
        return 1

    def poll(self) -> int:
        """One supervisor tick. Returns the number of messages dispatched."""
        settings, sinks = self._settings, self._sinks
        if not sinks:
            dropped = self._drain()
            if dropped:
                logger.info(f"Discarded {len(dropped)} queued notification(s): no sink configured")
            self.stop()
            return 0

        if not self._batching(settings):
            messages = self._drain()
            self._last_flush = self._clock()
            for message in messages:
                self._dispatch(sinks, message)
            return len(messages)

        if self._clock() - self._last_flush >= settings.batch_minutes * 60:
            return self.flush()
        return 0

    # ─── Supervisor ──────────────────────────────────────────

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            if not self._sinks:
                return
            # events are per supervisor; a stopping thread only ever clears its own
            stop_event, wake = threading.Event(), threading.Event()
            self._stop_event, self._wake = stop_event, wake
            self._thread = threading.Thread(
                target=self._run,
                args=(stop_event, wake),
                name="notification-batcher",
                daemon=True,
            )
            self._thread.start()
        logger.debug("Notification supervisor started")

    def stop(self, timeout: float = 5.0) -> None:
        with self._lifecycle_lock:
            thread, stop_event, wake = self._thread, self._stop_event, self._wake
            self._thread = None
            self._stop_event = None
            self._wake = None
        if thread is None:
            return
        stop_event.set()
        wake.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
        logger.debug("Notification supervisor stopped")

    def _run(self, stop_event: threading.Event, wake: threading.Event) -> None:
        while not stop_event.is_set():
            wake.wait(self._settings.poll_seconds)
            wake.clear()
            if stop_event.is_set():
                break
            try:
                self.poll()
            except Exception:
                logger.exception("Notification poll failed")

    # ─── Test sends ──────────────────────────────────────────

    def send_test_webhook(self) -> NotificationTestResult:
        url = (self._settings.discord_webhook_url or "").strip()
        if not url:
            return NotificationTestResult(False, "Webhook URL is not configured.")
        try:
            WebhookSink(url).send(NotificationMessage(event="test", summary="DropVault notification test (webhook)"))
            return NotificationTestResult(True, "Webhook test notification sent.")
        except httpx.HTTPError as e:
            logger.warning(f"Webhook test notification failed: {e}")
            return NotificationTestResult(False, f"Webhook test failed: {e}")

    def send_test_email(self) -> NotificationTestResult:
        s = self._settings
        if not s.smtp_host.strip() or not s.email_from.strip() or not s.email_recipients:
            return NotificationTestResult(False, "Email settings incomplete (host/from/recipients).")
        try:
            EmailSink(s).deliver(
                "DropVault test email",
                "This is a DropVault notification test email. If you see this, SMTP settings are working.",
            )
            return NotificationTestResult(True, "Email test notification sent.")
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Email test notification failed: {e}")
            return NotificationTestResult(False, f"Email test failed: {e}")
