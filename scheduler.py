"""
scheduler.py — Background sweeps that expire files and tokens.

Three independent jobs on one APScheduler BackgroundScheduler:

  expire_old_files    configurable cron; deletes files past the retention window
  reconcile_orphans   daily 03:00; drops rows whose blob is gone
  sweep_dead_tokens   daily 03:30; drops expired or exhausted share tokens

Each job catches and logs its own failures, so one sweep going wrong never
stops the others from running on their own schedule.
"""

import logging
import threading
from datetime import date, timedelta
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from cache import ALL_KEYS, InvalidatingCache
from errors import DropVaultError, InvalidSchedule
from repository import Repository
from storage import BlobStore

logger = logging.getLogger(__name__)

EXPIRY_JOB_ID = "expire_old_files"
ORPHAN_JOB_ID = "reconcile_orphans"
TOKEN_JOB_ID = "sweep_dead_tokens"

DEFAULT_DELETION_CRON = "0 0 2 * * *"


WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _day_ordinal(value: str) -> int:
    # cron numbering: 1 is Monday, both 0 and 7 are Sunday
    if value.isdigit():
        number = int(value)
        if not 0 <= number <= 7:
            raise ValueError(f"day of week {number} is out of range 0-7")
        return number
    if value in WEEKDAYS:
        return WEEKDAYS.index(value) + 1
    raise ValueError(f"unknown day of week {value!r}")


def cron_day_of_week(field: str) -> str:
    """
    Translate a cron day-of-week field into APScheduler day names.

    APScheduler counts 0 as Monday, so numbers are expanded into names
    before they reach the trigger. Ranges, lists and steps are supported.
    """
    if field == "*":
        return field
    days = []
    for part in field.lower().split(","):
        span, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"step must be positive in {part!r}")
        if span == "*":
            first, last = 1, 7
        elif "-" in span:
            start, end = span.split("-", 1)
            first, last = _day_ordinal(start), _day_ordinal(end)
        else:
            first = _day_ordinal(span)
            last = 7 if step_text else first
        if first > last:
            raise ValueError(f"range {span!r} runs backwards")
        for number in range(first, last + 1, step):
            name = WEEKDAYS[(number - 1) % 7]
            if name not in days:
                days.append(name)
    return ",".join(days)


def parse_cron(expression: str, timezone=None) -> CronTrigger:
    """
    Parse a 6-field (seconds first) or 5-field crontab expression.

    `?` is accepted as `*`. Day-of-week numbers use cron numbering
    (0 or 7 is Sunday, 1 is Monday).
    """
    if not expression or not expression.strip():
        raise InvalidSchedule("Cron expression is empty")
    fields = ["*" if f == "?" else f for f in expression.split()]
    try:
        if len(fields) == 5:
            fields = ["0"] + fields
        if len(fields) == 6:
            second, minute, hour, day, month, day_of_week = fields
            return CronTrigger(
                second=second,
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=cron_day_of_week(day_of_week),
                timezone=timezone,
            )
    except ValueError as e:
        raise InvalidSchedule(f"Invalid cron expression {expression!r}: {e}") from e
    raise InvalidSchedule(f"Cron expression needs 5 or 6 fields, got {len(fields)}: {expression!r}")


class LifecycleScheduler:

    def __init__(
        self,
        repo: Repository,
        blobs: BlobStore,
        cache: InvalidatingCache,
        cron: str = DEFAULT_DELETION_CRON,
        max_file_lifetime_days: int = 30,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.repo = repo
        self.blobs = blobs
        self.cache = cache
        self._scheduler = scheduler or BackgroundScheduler(daemon=True)
        self._cron = cron
        self._max_days = max_file_lifetime_days
        self._config_lock = threading.Lock()
        self._expiry_lock = threading.Lock()
        self._jobs_added = False

    @property
    def cron(self) -> str:
        return self._cron

    @property
    def max_file_lifetime_days(self) -> int:
        return self._max_days

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def next_expiry_run(self):
        job = self._scheduler.get_job(EXPIRY_JOB_ID)
        return job.next_run_time if job is not None else None

    # ─── Lifecycle ──────────────────────────────────────────────

    def _add_jobs(self) -> None:
        try:
            trigger = parse_cron(self._cron)
        except InvalidSchedule as e:
            logger.error(f"{e}. Falling back to {DEFAULT_DELETION_CRON!r}")
            self._cron = DEFAULT_DELETION_CRON
            trigger = parse_cron(self._cron)

        self._scheduler.add_job(
            func=self._run_expiry,
            trigger=trigger,
            id=EXPIRY_JOB_ID,
            name="Delete files past the retention window",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            func=self._run_orphans,
            trigger=CronTrigger(hour=3, minute=0),
            id=ORPHAN_JOB_ID,
            name="Remove file rows whose blob is missing",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            func=self._run_tokens,
            trigger=CronTrigger(hour=3, minute=30),
            id=TOKEN_JOB_ID,
            name="Remove expired or exhausted share tokens",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._jobs_added = True

    def start(self) -> None:
        with self._config_lock:
            if not self._jobs_added:
                self._add_jobs()
            if not self._scheduler.running:
                self._scheduler.start()
        logger.info(f"Lifecycle scheduler started: expiry cron {self._cron!r}, retention {self._max_days} days")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Lifecycle scheduler stopped")

    def update_schedule(self, cron: str, max_file_lifetime_days: int) -> bool:
        """
        Re-arm the expiry job for a new cron string and retention window.

        Returns False when nothing changed. Raises InvalidSchedule for a bad
        cron string, in which case the running schedule is left untouched.
        An expiry sweep already in progress finishes on its own.
        """
        if max_file_lifetime_days is None or max_file_lifetime_days < 0:
            raise InvalidSchedule(f"Retention must be a non-negative number of days, got {max_file_lifetime_days}")
        with self._config_lock:
            if cron == self._cron and max_file_lifetime_days == self._max_days:
                return False
            trigger = parse_cron(cron)

            if cron != self._cron and self._jobs_added:
                try:
                    self._scheduler.reschedule_job(EXPIRY_JOB_ID, trigger=trigger)
                except JobLookupError:
                    self._scheduler.add_job(
                        func=self._run_expiry,
                        trigger=trigger,
                        id=EXPIRY_JOB_ID,
                        name="Delete files past the retention window",
                        replace_existing=True,
                        max_instances=1,
                        coalesce=True,
                    )
            self._cron = cron
            self._max_days = max_file_lifetime_days
        logger.info(f"Expiry schedule updated: cron {cron!r}, retention {max_file_lifetime_days} days")
        return True

    # ─── Sweeps ──────────────────────────────────────────────

    def run_expiry_sweep_now(self, today: Optional[date] = None) -> int:
        """Delete every file past the retention window. Returns the number removed."""
        return self.expire_old_files(self._max_days, today)

    def expire_old_files(self, max_file_lifetime_days: int, today: Optional[date] = None) -> int:
        today = today or date.today()
        threshold = today - timedelta(days=max_file_lifetime_days)
        removed = 0
        with self._expiry_lock:
            for file in self.repo.list_expired_files(threshold):
                # the blob goes first; its rows stay if that fails
                if not self.blobs.delete_blob(file.external_id):
                    logger.warning(f"Could not delete blob for expired file {file.external_id}; keeping its rows")
                    continue
                try:
                    self.repo.delete_file_cascade(file.id)
                    removed += 1
                except DropVaultError as e:
                    logger.error(f"Blob for {file.external_id} deleted but its rows remain: {e}")
        if removed:
            self.cache.invalidate(*ALL_KEYS)
        logger.info(f"Expiry sweep removed {removed} file(s) uploaded before {threshold}")
        return removed

    def reconcile_orphans(self) -> int:
        removed = 0
        for file in self.repo.list_orphan_candidates():
            try:
                if self.blobs.exists(file.external_id):
                    continue
                self.repo.delete_file_cascade(file.id)
                removed += 1
                logger.info(f"Removed orphaned file row {file.external_id}")
            except DropVaultError as e:
                logger.warning(f"Orphan check failed for {file.external_id}: {e}")
        if removed:
            self.cache.invalidate(*ALL_KEYS)
        return removed

    def sweep_dead_tokens(self, today: Optional[date] = None) -> int:
        today = today or date.today()
        dead = [t.id for t in self.repo.list_dead_tokens(today)]
        removed = self.repo.delete_tokens(dead)
        if removed:
            logger.info(f"Removed {removed} expired or exhausted share token(s)")
        return removed

    # ─── Job wrappers ──────────────────────────────────────────────

    def _run_expiry(self) -> None:
        try:
            self.run_expiry_sweep_now()
        except Exception:
            logger.exception("Scheduled expiry sweep failed")

    def _run_orphans(self) -> None:
        try:
            self.reconcile_orphans()
        except Exception:
            logger.exception("Scheduled orphan reconciliation failed")

    def _run_tokens(self) -> None:
        try:
            self.sweep_dead_tokens()
        except Exception:
            logger.exception("Scheduled token sweep failed")
