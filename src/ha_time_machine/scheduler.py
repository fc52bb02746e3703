import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any

from loguru import logger

from .config import resolve_timezone
from .errors import InvalidInput, InvalidSchedule
from .models import ScheduleJob
from .schedule_store import ScheduleStore


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class CronField:
    """
    One field of a cron expression.

    Supports: *, specific values, ranges (1-5), lists (1,3,5), steps (*/15, 1-30/5).
    Values outside [min_val, max_val] are rejected with ValueError.
    """

    def __init__(self, expression: str, min_val: int, max_val: int, name: str = "field") -> None:
        self.expression = expression
        self.min_val = min_val
        self.max_val = max_val
        self.name = name
        self.values: set[int] = self._parse(expression)

    def _check(self, value: int) -> int:
        if not self.min_val <= value <= self.max_val:
            raise ValueError(f"{self.name} value {value} outside {self.min_val}-{self.max_val}")
        return value

    def _parse(self, expr: str) -> set[int]:
        values: set[int] = set()

        for part in expr.split(","):
            part = part.strip()
            if not part:
                raise ValueError(f"empty list item in {self.name} {expr!r}")

            step = 1
            if "/" in part:
                part, step_str = part.split("/", 1)
                step = int(step_str)
                if step < 1:
                    raise ValueError(f"{self.name} step must be positive")

            if part == "*":
                values.update(range(self.min_val, self.max_val + 1, step))
            elif "-" in part:
                start_str, end_str = part.split("-", 1)
                start = self._check(int(start_str))
                end = self._check(int(end_str))
                if start > end:
                    raise ValueError(f"{self.name} range {start}-{end} is reversed")
                values.update(range(start, end + 1, step))
            elif step != 1:
                # "5/15" means every 15 starting at 5
                values.update(range(self._check(int(part)), self.max_val + 1, step))
            else:
                values.add(self._check(int(part)))

        return values

    def matches(self, value: int) -> bool:
        return value in self.values

    def __repr__(self) -> str:
        return f"CronField({self.expression!r}, values={sorted(self.values)})"


class CronExpression:
    """
    Five-field cron expression: minute hour day-of-month month day-of-week.

    Examples:
        "0 2 * * *"      -> 02:00 every day
        "*/15 * * * *"   -> every 15 minutes
        "30 3 * * 1-5"   -> 03:30 on weekdays
    """

    def __init__(self, expression: str) -> None:
        self.expression = (expression or "").strip()
        parts = self.expression.split()
        if len(parts) != 5:
            raise ValueError(
                f"cron expression must have exactly 5 fields "
                f"(minute hour dom month dow), got {len(parts)}"
            )

        self.minute = CronField(parts[0], 0, 59, "minute")
        self.hour = CronField(parts[1], 0, 23, "hour")
        self.day_of_month = CronField(parts[2], 1, 31, "day-of-month")
        self.month = CronField(parts[3], 1, 12, "month")
        # 0 and 7 are both Sunday
        dow = CronField(parts[4], 0, 7, "day-of-week")
        if 7 in dow.values:
            dow.values = (dow.values - {7}) | {0}
        self.day_of_week = dow

    def matches(self, dt: datetime) -> bool:
        # Python: Mon=0 .. Sun=6, cron: Sun=0 .. Sat=6
        cron_weekday = (dt.weekday() + 1) % 7
        return (
            self.minute.matches(dt.minute)
            and self.hour.matches(dt.hour)
            and self.day_of_month.matches(dt.day)
            and self.month.matches(dt.month)
            and self.day_of_week.matches(cron_weekday)
        )

    def next_run(self, after: datetime | None = None, tz: tzinfo | None = None) -> datetime:
        """
        First matching minute strictly after `after`, evaluated on the wall
        clock of `tz` (the server's local time when None). Searches up to
        366 days.
        """
        if after is None:
            after = _now_utc()

        # Step in UTC so DST transitions neither skip nor repeat minutes
        candidate = after.astimezone(timezone.utc).replace(second=0, microsecond=0) + timedelta(minutes=1)
        for _ in range(366 * 24 * 60):
            local = candidate.astimezone(tz)
            if self.matches(local):
                return local
            candidate += timedelta(minutes=1)

        raise ValueError(f"no matching time within 366 days after {after.isoformat()}")

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"


def parse_cron(expression: str) -> CronExpression:
    try:
        return CronExpression(expression)
    except ValueError as e:
        raise InvalidSchedule(expression, str(e))


@dataclass
class LiveTrigger:
    job: ScheduleJob
    cron: CronExpression
    tz: tzinfo | None
    next_run: datetime


class ScheduleEngine:
    """Keeps at most one live trigger per job id and fires the due ones."""

    def __init__(
        self,
        store: ScheduleStore,
        trigger: Callable[[ScheduleJob], Any],
        clock: Callable[[], datetime] = _now_utc,
        poll_interval: float = 30.0,
    ):
        self.store = store
        self.trigger = trigger
        self.clock = clock
        self.poll_interval = poll_interval

        self._triggers: dict[str, LiveTrigger] = {}
        self._lock = threading.RLock()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._signature: str | None = None

    def _build(self, job: ScheduleJob) -> LiveTrigger:
        cron = parse_cron(job.cron_expression)
        try:
            tz = resolve_timezone(job.timezone)
        except InvalidInput:
            raise InvalidSchedule(job.cron_expression, f"unknown timezone {job.timezone!r}")

        try:
            next_run = cron.next_run(self.clock(), tz)
        except ValueError as e:
            raise InvalidSchedule(job.cron_expression, str(e))
        return LiveTrigger(job=job, cron=cron, tz=tz, next_run=next_run)

    def upsert(self, job: ScheduleJob) -> ScheduleJob:
        live = self._build(job)
        self.store.save_job(job)

        with self._lock:
            replaced = self._triggers.pop(job.id, None)
            if replaced:
                logger.info(f"Cancelled existing trigger for job {job.id}")
            if job.enabled:
                self._triggers[job.id] = live
                logger.info(f"Scheduled job {job.id} ({job.cron_expression}, next run {live.next_run.isoformat()})")
            else:
                logger.info(f"Job {job.id} is disabled, no trigger installed")

        return job

    def remove(self, job_id: str) -> bool:
        removed = self.store.delete_job(job_id)
        with self._lock:
            cancelled = self._triggers.pop(job_id, None) is not None
        if cancelled or removed:
            logger.info(f"Removed scheduled job {job_id}")
        return removed or cancelled

    def load_all(self) -> int:
        """
        Install a trigger for every enabled job in the store. Triggers whose
        job is unchanged keep their pending next run.
        """
        signature = self.store.signature()
        jobs = self.store.load()
        with self._lock:
            previous = self._triggers
            self._triggers = {}
            for job_id, job in jobs.items():
                if not job.enabled:
                    continue
                live = previous.get(job_id)
                if live is not None and live.job.model_dump() == job.model_dump():
                    self._triggers[job_id] = live
                    continue
                try:
                    self._triggers[job_id] = self._build(job)
                except InvalidSchedule as e:
                    logger.error(f"Skipping job {job_id}: {e}")

            installed = len(self._triggers)
            self._signature = signature
        logger.info(f"Loaded {len(jobs)} scheduled jobs, {installed} active")
        return installed

    def reload_if_changed(self) -> bool:
        """Reload the jobs when the schedule file was rewritten by someone else."""
        if self.store.signature() == self._signature:
            return False
        logger.info(f"Schedule file {self.store.store_path} changed, reloading jobs")
        self.load_all()
        return True

    def jobs(self) -> dict[str, ScheduleJob]:
        return self.store.load()

    def active_jobs(self) -> dict[str, datetime]:
        """Job id to next run time for every live trigger."""
        with self._lock:
            return {job_id: live.next_run for job_id, live in self._triggers.items()}

    def tick(self, now: datetime | None = None) -> list[str]:
        self.reload_if_changed()
        now = now or self.clock()

        with self._lock:
            due = [live for live in self._triggers.values() if now >= live.next_run]
            for live in due:
                live.next_run = live.cron.next_run(now, live.tz)

        fired = []
        for live in due:
            with self._lock:
                # Replaced or removed while earlier jobs were running
                if self._triggers.get(live.job.id) is not live:
                    continue

            logger.info(f"Running scheduled job {live.job.id}")
            try:
                self.trigger(live.job)
            except Exception as e:
                logger.error(f"Scheduled job {live.job.id} failed: {e}")
            fired.append(live.job.id)

        return fired

    def start(self):
        if self._thread and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="schedule-engine", daemon=True)
        self._thread.start()
        logger.info("Schedule engine started")

    def stop(self):
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._thread = None
        logger.info("Schedule engine stopped")

    def _loop(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in schedule loop: {e}")
            self._stop_event.wait(self.poll_interval)
