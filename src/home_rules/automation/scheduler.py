"""
Scheduler for timers and weekly schedules.

The scheduler polls at a fixed interval. Each tick fires due timers and
matching schedules through callbacks supplied by the engine, which applies
its own in-flight and conflict gates. Occurrences that fall into a gap
between ticks are reported as missed and never run retroactively.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .adapter import Clock
from .errors import ConfigurationError, UnknownEntityError
from .evaluators import TriggerEvaluator
from .models import Schedule, SolarTrigger, SubjectType, Timer, day_name

logger = logging.getLogger(__name__)

TimerCallback = Callable[[Timer], Awaitable[Any]]
# Returns False when the engine declined to run the schedule
ScheduleCallback = Callable[[Schedule, datetime], Awaitable[bool]]

# How far back a tick gap is searched for missed occurrences
MAX_CATCHUP_DAYS = 7


@dataclass
class MissedWindow:
    """An occurrence the scheduler did not run."""

    subject_id: str
    subject_type: SubjectType
    due: datetime
    detected_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "subject_type": self.subject_type.value,
            "due": self.due.isoformat(),
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class TickResult:
    """What one scheduler tick did."""

    now: datetime
    fired_timers: List[str] = field(default_factory=list)
    fired_schedules: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    missed: List[MissedWindow] = field(default_factory=list)


class Scheduler:
    """
    In-memory set of timers and schedules driven by periodic ticks.

    Persistence is the engine's job; the scheduler only holds live entries.
    """

    def __init__(
        self,
        clock: Clock,
        trigger_evaluator: TriggerEvaluator,
        poll_interval: timedelta = timedelta(seconds=60),
        on_timer: Optional[TimerCallback] = None,
        on_schedule: Optional[ScheduleCallback] = None,
    ) -> None:
        self._clock = clock
        self._triggers = trigger_evaluator
        self._poll_interval = poll_interval
        self._on_timer = on_timer
        self._on_schedule = on_schedule

        self._timers: Dict[str, Timer] = {}
        self._schedules: Dict[str, Schedule] = {}

        # Last occurrence fired per schedule (once-per-occurrence)
        self._fired: Dict[str, datetime] = {}
        self._last_tick: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    def set_callbacks(
        self,
        on_timer: Optional[TimerCallback] = None,
        on_schedule: Optional[ScheduleCallback] = None,
    ) -> None:
        """Install the callbacks that run fired entries."""
        if on_timer is not None:
            self._on_timer = on_timer
        if on_schedule is not None:
            self._on_schedule = on_schedule

    @property
    def poll_interval(self) -> timedelta:
        return self._poll_interval

    # =========================================================================
    # Timers
    # =========================================================================

    def set_timer(self, timer: Timer, now: Optional[datetime] = None) -> Timer:
        """
        Arm a timer.

        Raises:
            ConfigurationError: scheduled_time is not in the future
        """
        now = now or self._clock.now()
        if timer.scheduled_time <= now:
            raise ConfigurationError("Scheduled time must be in the future")
        self._timers[timer.id] = timer
        logger.info(f"Timer {timer.id} set for {timer.device_id} at {timer.scheduled_time.isoformat()}")
        return timer

    def restore_timer(self, timer: Timer) -> None:
        """Re-arm a persisted timer without the future-time check."""
        self._timers[timer.id] = timer

    def cancel_timer(self, timer_id: str) -> bool:
        """Remove a timer. A dispatch already running finishes."""
        timer = self._timers.pop(timer_id, None)
        if timer is None:
            return False
        logger.info(f"Timer {timer_id} cancelled")
        return True

    def get_timer(self, timer_id: str) -> Timer:
        timer = self._timers.get(timer_id)
        if timer is None:
            raise UnknownEntityError("timer", timer_id)
        return timer

    def list_timers(self) -> List[Timer]:
        return list(self._timers.values())

    def next_occurrence(self, timer: Timer, after: datetime) -> datetime:
        """Next recurring-day date after `after`, at the timer's time of day."""
        at = timer.scheduled_time.timetz()
        for offset in range(0, 8):
            day = after.date() + timedelta(days=offset)
            candidate = datetime.combine(day, at)
            if candidate > after and day_name(candidate) in timer.recurring_days:
                return candidate
        raise ConfigurationError(f"Timer {timer.id} has no recurring days")

    # =========================================================================
    # Schedules
    # =========================================================================

    def add_schedule(self, schedule: Schedule) -> Schedule:
        self._schedules[schedule.id] = schedule
        logger.debug(f"Schedule {schedule.id} added")
        return schedule

    def remove_schedule(self, schedule_id: str) -> bool:
        self._fired.pop(schedule_id, None)
        return self._schedules.pop(schedule_id, None) is not None

    def get_schedule(self, schedule_id: str) -> Schedule:
        schedule = self._schedules.get(schedule_id)
        if schedule is None:
            raise UnknownEntityError("schedule", schedule_id)
        return schedule

    def list_schedules(self) -> List[Schedule]:
        return list(self._schedules.values())

    def _occurrence(self, schedule: Schedule, now: datetime) -> datetime:
        """The schedule's occurrence on now's date."""
        trigger = schedule.effective_trigger
        if isinstance(trigger, SolarTrigger):
            return self._triggers.solar_instant(trigger, schedule.location, now.date())
        return datetime.combine(now.date(), trigger.at, tzinfo=now.tzinfo)

    def _occurrences_between(
        self, schedule: Schedule, start: datetime, end: datetime
    ) -> List[datetime]:
        """Occurrences on scheduled days with start < occurrence <= end."""
        first_day = max(start.date(), end.date() - timedelta(days=MAX_CATCHUP_DAYS))
        result = []
        day = first_day
        while day <= end.date():
            day_end = datetime.combine(day, end.timetz())
            occurrence = self._occurrence(schedule, day_end)
            if day_name(occurrence) in schedule.days and start < occurrence <= end:
                result.append(occurrence)
            day += timedelta(days=1)
        return result

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        """
        Run one polling step.

        Args:
            now: Tick time (defaults to the clock)

        Returns:
            TickResult listing fired, blocked and missed entries
        """
        now = now or self._clock.now()
        result = TickResult(now=now)

        await self._tick_timers(now, result)
        await self._tick_schedules(now, result)

        self._last_tick = now
        return result

    async def _tick_timers(self, now: datetime, result: TickResult) -> None:
        for timer in list(self._timers.values()):
            if not timer.is_active or timer.scheduled_time > now:
                continue

            due = timer.scheduled_time
            if now - due > self._poll_interval:
                logger.warning(f"Timer {timer.id} missed its window (due {due.isoformat()})")
                result.missed.append(MissedWindow(timer.id, SubjectType.TIMER, due, now))
            else:
                result.fired_timers.append(timer.id)
                if self._on_timer is not None:
                    try:
                        await self._on_timer(timer)
                    except Exception as e:
                        logger.error(f"Timer {timer.id} callback failed: {e}", exc_info=True)

            if not timer.is_recurring:
                self._timers.pop(timer.id, None)
            elif timer.id in self._timers:
                # Not cancelled while dispatching
                timer.scheduled_time = self.next_occurrence(timer, now)
                logger.debug(f"Timer {timer.id} re-armed for {timer.scheduled_time.isoformat()}")

    async def _tick_schedules(self, now: datetime, result: TickResult) -> None:
        for schedule in list(self._schedules.values()):
            if not schedule.is_active:
                continue

            occurrence = self._occurrence(schedule, now)
            if self._triggers.matches(schedule.effective_trigger, now, schedule.location):
                if self._fired.get(schedule.id) == occurrence:
                    continue
                self._fired[schedule.id] = occurrence
                await self._fire_schedule(schedule, now, result)
                continue

            if self._last_tick is None or now - self._last_tick <= self._poll_interval:
                continue
            for missed in self._occurrences_between(schedule, self._last_tick, now):
                if self._fired.get(schedule.id) == missed:
                    continue
                logger.warning(
                    f"Schedule {schedule.id} missed its window (due {missed.isoformat()})"
                )
                result.missed.append(MissedWindow(schedule.id, SubjectType.SCHEDULE, missed, now))

    async def _fire_schedule(self, schedule: Schedule, now: datetime, result: TickResult) -> None:
        if self._on_schedule is None:
            result.fired_schedules.append(schedule.id)
            return
        try:
            ran = await self._on_schedule(schedule, now)
        except Exception as e:
            logger.error(f"Schedule {schedule.id} callback failed: {e}", exc_info=True)
            ran = False
        if ran:
            result.fired_schedules.append(schedule.id)
        else:
            result.blocked.append(schedule.id)

    # =========================================================================
    # Loop
    # =========================================================================

    async def run_forever(
        self, tick: Optional[Callable[[], Awaitable[Any]]] = None
    ) -> None:
        """Tick every poll interval until cancelled."""
        tick = tick or self.tick
        logger.info(f"Scheduler started (interval {self._poll_interval.total_seconds()}s)")
        while True:
            try:
                await tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            await asyncio.sleep(self._poll_interval.total_seconds())

    def start(self, tick: Optional[Callable[[], Awaitable[Any]]] = None) -> asyncio.Task:
        """Start ticking on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run_forever(tick))
        return self._task

    async def stop(self) -> None:
        """Stop the tick loop."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Scheduler stopped")
