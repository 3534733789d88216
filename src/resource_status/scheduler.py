"""
Timezone-aware cron scheduler for collection requests.

This module implements the CollectionScheduler class that:
- Runs a background asyncio task that sleeps until the next cron match
- Invokes a trigger callback (normally CollectionProducer.enqueue_scheduled)
  once per matching wall-clock instant in the configured timezone
- Logs and counts callback failures without affecting later fires

Fires missed while the process was down are not replayed.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from resource_status.errors import (
    ErrorRecord,
    FailedPreconditionError,
    InvalidArgumentError,
)
from resource_status.logging import get_logger

logger = get_logger(__name__)

# Upper bound on a single sleep, so wall-clock jumps are noticed.
DEFAULT_MAX_SLEEP_SECONDS = 60.0
STOP_TIMEOUT_SECONDS = 10.0

TriggerCallback = Callable[[datetime], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def resolve_timezone(name: str) -> ZoneInfo:
    """
    Resolve an IANA timezone name.

    Raises:
        InvalidArgumentError: If the timezone is unknown.
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidArgumentError(
            f"Unknown timezone: {name}", details={"timezone": name}
        ) from e


def next_fire_time(trigger: str, tz: ZoneInfo, after: datetime) -> datetime:
    """
    Return the first instant strictly after ``after`` matching ``trigger``.

    The cron expression is evaluated against wall-clock time in ``tz``.

    Raises:
        InvalidArgumentError: If the cron expression is invalid.
    """
    if not croniter.is_valid(trigger):
        raise InvalidArgumentError(
            f"Invalid cron expression: {trigger}", details={"trigger": trigger}
        )
    if after.tzinfo is None:
        after = after.replace(tzinfo=UTC)
    return croniter(trigger, after.astimezone(tz)).get_next(datetime)


class SchedulerStatus(str, Enum):
    """Status of the collection scheduler."""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SchedulerState:
    """
    Current state of the collection scheduler.

    Attributes:
        status: Current scheduler status.
        job_id: Identifier of the running schedule.
        trigger: Cron expression.
        timezone: IANA timezone the expression is evaluated in.
        next_fire_at: Next planned fire time.
        last_fire_at: When the trigger last fired.
        fire_count: Number of fires since start.
        error_count: Number of failed trigger callbacks.
        last_error: Last callback error message if any.
    """

    status: SchedulerStatus = SchedulerStatus.STOPPED
    job_id: str | None = None
    trigger: str | None = None
    timezone: str | None = None
    next_fire_at: datetime | None = None
    last_fire_at: datetime | None = None
    fire_count: int = 0
    error_count: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "job_id": self.job_id,
            "trigger": self.trigger,
            "timezone": self.timezone,
            "next_fire_at": self.next_fire_at.isoformat() if self.next_fire_at else None,
            "last_fire_at": self.last_fire_at.isoformat() if self.last_fire_at else None,
            "fire_count": self.fire_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


class CollectionScheduler:
    """
    Background cron timer.

    Example:
        >>> scheduler = CollectionScheduler()
        >>> await scheduler.start("0 6 * * *", "Asia/Jakarta", producer.enqueue_scheduled)
        >>> scheduler.status().next_fire_at
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        max_sleep: float = DEFAULT_MAX_SLEEP_SECONDS,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            clock: Returns the current aware datetime.
            max_sleep: Longest single wait between clock checks, in seconds.
        """
        self._clock = clock
        self._max_sleep = max_sleep
        self._state = SchedulerState()
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._lock = asyncio.Lock()
        self._tz: ZoneInfo | None = None
        self._on_trigger: TriggerCallback | None = None

    @property
    def is_running(self) -> bool:
        return self._state.status == SchedulerStatus.RUNNING

    def status(self) -> SchedulerState:
        """Return a copy of the current scheduler state."""
        return SchedulerState(**vars(self._state))

    async def start(
        self, trigger: str, timezone: str, on_trigger: TriggerCallback
    ) -> SchedulerState:
        """
        Register the recurring timer.

        Args:
            trigger: 5-field cron expression.
            timezone: IANA timezone name.
            on_trigger: Awaited with the fire time on every match.

        Returns:
            Current SchedulerState after starting.

        Raises:
            InvalidArgumentError: If the cron expression or timezone is invalid.
            FailedPreconditionError: If the scheduler is already running.
        """
        async with self._lock:
            if self._state.status != SchedulerStatus.STOPPED:
                raise FailedPreconditionError(
                    "Scheduler is already running",
                    details={"job_id": self._state.job_id},
                )

            tz = resolve_timezone(timezone)
            first_fire = next_fire_time(trigger, tz, self._clock())

            self._tz = tz
            self._on_trigger = on_trigger
            self._state = SchedulerState(
                status=SchedulerStatus.RUNNING,
                job_id=uuid.uuid4().hex[:8],
                trigger=trigger,
                timezone=timezone,
                next_fire_at=first_fire,
            )
            self._stop_event.clear()
            self._task = asyncio.create_task(self._run_loop())

            logger.info(
                "Scheduler started",
                extra={
                    "job_id": self._state.job_id,
                    "trigger": trigger,
                    "timezone": timezone,
                    "next_fire_at": first_fire.isoformat(),
                },
            )
            return self.status()

    async def stop(self) -> SchedulerState:
        """
        Stop the timer. Idempotent.

        Waits for an in-progress trigger callback before returning.
        """
        async with self._lock:
            if self._state.status != SchedulerStatus.RUNNING:
                return self.status()

            self._state.status = SchedulerStatus.STOPPING
            self._stop_event.set()

            if self._task:
                try:
                    await asyncio.wait_for(self._task, timeout=STOP_TIMEOUT_SECONDS)
                except TimeoutError:
                    logger.warning("Scheduler task did not stop gracefully, cancelling")
                    self._task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await self._task
                self._task = None

            self._state.status = SchedulerStatus.STOPPED
            self._state.next_fire_at = None
            logger.info(
                "Scheduler stopped",
                extra={
                    "job_id": self._state.job_id,
                    "fire_count": self._state.fire_count,
                },
            )
            return self.status()

    async def _sleep_until(self, target: datetime) -> bool:
        """Wait until ``target``; return False if stop was requested first."""
        while not self._stop_event.is_set():
            remaining = (target - self._clock()).total_seconds()
            if remaining <= 0:
                return True
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=min(remaining, self._max_sleep),
                )
            except TimeoutError:
                continue
        return False

    async def _run_loop(self) -> None:
        assert self._tz is not None
        fire_at = self._state.next_fire_at
        while fire_at is not None and await self._sleep_until(fire_at):
            await self._fire(fire_at)
            # Computed from now, so fires missed during a stall are skipped;
            # never from before the last fire, so no instant fires twice.
            after = max(self._clock(), fire_at)
            fire_at = next_fire_time(self._state.trigger or "", self._tz, after)
            self._state.next_fire_at = fire_at
            await asyncio.sleep(0)

    async def _fire(self, fire_at: datetime) -> None:
        self._state.fire_count += 1
        self._state.last_fire_at = fire_at
        logger.info(
            "Scheduler fired",
            extra={
                "job_id": self._state.job_id,
                "fire_at": fire_at.isoformat(),
                "fire_count": self._state.fire_count,
            },
        )
        assert self._on_trigger is not None
        try:
            await self._on_trigger(fire_at)
        except Exception as e:
            record = ErrorRecord.from_exception(e)
            self._state.error_count += 1
            self._state.last_error = record.message
            logger.error(
                "Scheduled trigger failed",
                extra={
                    "job_id": self._state.job_id,
                    "fire_at": fire_at.isoformat(),
                    "error": record.to_dict(),
                },
            )
