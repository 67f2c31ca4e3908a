"""Recurring reindex trigger running in a background thread."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from croniter import croniter

from .events import emit_task_event


LOGGER = logging.getLogger(__name__)


class ScheduleError(RuntimeError):
    """Raised when a schedule expression cannot be understood."""


_DURATION_PATTERN = re.compile(
    r"^(?:(?P<hours>\d+(?:\.\d+)?)h)?(?:(?P<minutes>\d+(?:\.\d+)?)m)?(?:(?P<seconds>\d+(?:\.\d+)?)s)?$"
)


def parse_duration(value: str) -> float:
    """Return the number of seconds in ``"1h30m"``, ``"15m"``, ``"90s"``..."""

    text = value.strip().lower()
    match = _DURATION_PATTERN.match(text)
    if not text or match is None:
        raise ScheduleError(f"Invalid duration '{value}'")
    hours = float(match.group("hours") or 0)
    minutes = float(match.group("minutes") or 0)
    seconds = float(match.group("seconds") or 0)
    total = hours * 3600 + minutes * 60 + seconds
    if total <= 0:
        raise ScheduleError(f"Duration '{value}' must be positive")
    return total


@dataclass(frozen=True)
class Schedule:
    """A fixed interval, an hour/day/week alignment or a five-field cron expression."""

    expression: str
    interval: Optional[float] = None
    align: Optional[str] = None
    cron: Optional[str] = None

    def next_delay(self, now: datetime) -> float:
        """Seconds from *now* until the next tick."""

        if self.interval is not None:
            return self.interval
        if self.cron is not None:
            target = croniter(self.cron, now).get_next(datetime)
        elif self.align == "hour":
            target = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        elif self.align == "day":
            target = now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
        else:
            midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
            days_until_sunday = (6 - now.weekday()) % 7 or 7
            target = midnight + timedelta(days=days_until_sunday)
        return max((target - now).total_seconds(), 0.0)


_ALIASES = {
    "@hourly": "hour",
    "@daily": "day",
    "@midnight": "day",
    "@weekly": "week",
}

_CRON_ALIASES = {
    "@monthly": "0 0 1 * *",
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
}

CRON_FIELD_COUNT = 5


def _parse_cron(expression: str, cron: str) -> Schedule:
    if not croniter.is_valid(cron):
        raise ScheduleError(f"Invalid cron expression '{expression}'")
    return Schedule(expression=expression, cron=cron)


def parse_schedule(expression: str) -> Schedule:
    """Parse a schedule expression.

    Accepted forms are ``@every <duration>``, the ``@hourly``/``@daily``/
    ``@weekly``/``@monthly``/``@yearly`` aliases, a standard five-field cron
    expression such as ``"0 3 * * *"`` and a bare duration.
    """

    text = (expression or "").strip()
    if not text:
        raise ScheduleError("Schedule expression is empty")
    lowered = text.lower()
    if lowered in _ALIASES:
        return Schedule(expression=text, align=_ALIASES[lowered])
    if lowered in _CRON_ALIASES:
        return _parse_cron(text, _CRON_ALIASES[lowered])
    if lowered.startswith("@every"):
        remainder = text[len("@every"):].strip()
        if not remainder:
            raise ScheduleError("'@every' requires a duration such as '@every 6h'")
        return Schedule(expression=text, interval=parse_duration(remainder))
    if lowered.startswith("@"):
        raise ScheduleError(f"Unknown schedule alias '{text}'")
    fields = text.split()
    if len(fields) == CRON_FIELD_COUNT:
        return _parse_cron(text, " ".join(fields))
    if len(fields) > 1:
        raise ScheduleError(
            f"Cron expression '{text}' must have {CRON_FIELD_COUNT} fields, not {len(fields)}"
        )
    return Schedule(expression=text, interval=parse_duration(text))


class ReindexScheduler:
    """Invoke *job* on *schedule* from a daemon thread.

    A tick that raises is logged and the scheduler waits for the next one;
    overlapping runs are left to the job's own locking.
    """

    def __init__(
        self,
        job: Callable[[], Any],
        schedule: Schedule | str,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._job = job
        self._schedule = parse_schedule(schedule) if isinstance(schedule, str) else schedule
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.ticks = 0

    @property
    def schedule(self) -> Schedule:
        return self._schedule

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._loop, name="reindex-scheduler", daemon=True
            )
            self._thread.start()
        LOGGER.info("Starting scheduled reindex with schedule: %s", self._schedule.expression)
        emit_task_event(
            "scheduled", "Reindex schedule started", payload={"schedule": self._schedule.expression}
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._stop_event.set()
        if thread is not None:
            thread.join(timeout)
        self._thread = None

    def run_once(self) -> None:
        """Run a single tick in the calling thread."""

        self.ticks += 1
        LOGGER.info("Running scheduled reindex...")
        try:
            self._job()
        except Exception:
            LOGGER.exception("Scheduled reindex failed; waiting for the next tick")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            delay = self._schedule.next_delay(self._clock())
            if self._stop_event.wait(delay):
                break
            self.run_once()


__all__ = [
    "ReindexScheduler",
    "Schedule",
    "ScheduleError",
    "parse_duration",
    "parse_schedule",
]
