"""
Collaborator interfaces for the automation engine.

The engine never talks to devices, clocks or storage directly. The host
provides concrete implementations of these interfaces; in-memory versions
for testing live beside each interface.

Design Principle:
    The adapters are intentionally minimal. Sun position maths, database
    schemas and device protocols belong to the host. The engine only needs
    "what time is it", "when is sunset", "send this command", "what do the
    devices look like" and "store this".
"""

import asyncio
import copy
import time as _time
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, UTC, tzinfo
from typing import Any, Dict, List, Optional, Tuple

from .errors import AuditWriteError, DeviceDispatchError
from .models import ActionType, CommandResult, ExecutionRecord, Group, Rule, Scene, Schedule, Timer


# =============================================================================
# Clock and Solar Calendar
# =============================================================================


class Clock(ABC):
    """Source of the current time."""

    @abstractmethod
    def now(self) -> datetime:
        """
        Get current time.

        Returns:
            Current datetime (timezone-aware)
        """
        pass


class SystemClock(Clock):
    """Wall clock in a fixed timezone (UTC by default)."""

    def __init__(self, tz: Optional[tzinfo] = None) -> None:
        self._tz = tz or UTC

    def now(self) -> datetime:
        return datetime.now(self._tz)


class FixedClock(Clock):
    """Manually driven clock for testing."""

    def __init__(self, now: datetime) -> None:
        self._now = now

    def set(self, now: datetime) -> None:
        """Set current time for testing."""
        self._now = now

    def advance(self, delta: timedelta) -> datetime:
        """Move the clock forward and return the new time."""
        self._now = self._now + delta
        return self._now

    def now(self) -> datetime:
        return self._now


class SolarCalendar(ABC):
    """Sunrise and sunset times for a location."""

    @abstractmethod
    def sunrise(self, location: Optional[str], day: date) -> datetime:
        """
        Get sunrise for a location on a given day.

        Args:
            location: Location name (None = the host's default)
            day: Calendar date

        Returns:
            Sunrise as a timezone-aware datetime
        """
        pass

    @abstractmethod
    def sunset(self, location: Optional[str], day: date) -> datetime:
        """Get sunset for a location on a given day."""
        pass


class FixedSolarCalendar(SolarCalendar):
    """
    Solar calendar with the same sunrise and sunset every day.

    Per-location overrides can be given as {location: (sunrise, sunset)}.
    """

    def __init__(
        self,
        sunrise: time = time(6, 30),
        sunset: time = time(19, 0),
        tz: Optional[tzinfo] = None,
        locations: Optional[Dict[str, Tuple[time, time]]] = None,
    ) -> None:
        self._sunrise = sunrise
        self._sunset = sunset
        self._tz = tz or UTC
        self._locations = dict(locations or {})

    def _times(self, location: Optional[str]) -> Tuple[time, time]:
        if location and location in self._locations:
            return self._locations[location]
        return self._sunrise, self._sunset

    def sunrise(self, location: Optional[str], day: date) -> datetime:
        return datetime.combine(day, self._times(location)[0], tzinfo=self._tz)

    def sunset(self, location: Optional[str], day: date) -> datetime:
        return datetime.combine(day, self._times(location)[1], tzinfo=self._tz)


# =============================================================================
# Device Commands
# =============================================================================


class DeviceCommandSink(ABC):
    """
    Sends commands to physical devices.

    Implementations must be safe to call concurrently for distinct device ids.
    """

    @abstractmethod
    async def send(
        self,
        device_id: str,
        command: ActionType,
        settings: Dict[str, Any],
    ) -> CommandResult:
        """
        Send one command to one device.

        Args:
            device_id: Target device
            command: Command to send (turn_on, set_brightness, ...)
            settings: Command payload (may be empty)

        Returns:
            CommandResult with success flag, duration and error text

        Raises:
            DeviceDispatchError: Device unreachable or protocol failure
        """
        pass


class MockCommandSink(DeviceCommandSink):
    """
    Mock command sink for testing.

    Records every call with a monotonic timestamp and tracks how many
    commands were in flight at once. Individual devices can be set to
    reject, raise, or respond slowly.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self._latency = latency
        self._calls: List[Tuple[str, ActionType, Dict[str, Any], float]] = []
        self._rejections: Dict[str, str] = {}
        self._exceptions: Dict[str, Exception] = {}
        self._delays: Dict[str, float] = {}
        self._active = 0
        self.peak_concurrency = 0

    def reject(self, device_id: str, error: str = "rejected") -> None:
        """Answer commands for a device with success=False."""
        self._rejections[device_id] = error

    def raise_for(self, device_id: str, exc: Optional[Exception] = None) -> None:
        """Raise an exception for commands to a device."""
        self._exceptions[device_id] = exc or DeviceDispatchError(device_id, "unreachable")

    def delay_for(self, device_id: str, seconds: float) -> None:
        """Make a device respond slowly."""
        self._delays[device_id] = seconds

    def get_calls(self) -> List[Tuple[str, ActionType, Dict[str, Any], float]]:
        """Get recorded calls as (device_id, command, settings, monotonic_time)."""
        return self._calls.copy()

    def called_devices(self) -> List[str]:
        """Device ids in dispatch order."""
        return [c[0] for c in self._calls]

    def clear_calls(self) -> None:
        """Clear recorded calls."""
        self._calls.clear()
        self.peak_concurrency = 0

    async def send(
        self,
        device_id: str,
        command: ActionType,
        settings: Dict[str, Any],
    ) -> CommandResult:
        started = _time.monotonic()
        self._calls.append((device_id, command, dict(settings), started))
        self._active += 1
        self.peak_concurrency = max(self.peak_concurrency, self._active)
        try:
            await asyncio.sleep(self._delays.get(device_id, self._latency))
            if device_id in self._exceptions:
                raise self._exceptions[device_id]
        finally:
            self._active -= 1

        duration_ms = int((_time.monotonic() - started) * 1000)
        if device_id in self._rejections:
            return CommandResult(
                success=False, duration_ms=duration_ms, error=self._rejections[device_id]
            )
        return CommandResult(success=True, duration_ms=duration_ms)


# =============================================================================
# World State
# =============================================================================


class WorldState(ABC):
    """Last-known state of every device."""

    @abstractmethod
    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """
        Get a point-in-time copy of all device states.

        Returns:
            {device_id: {"power_state": "on", "settings": {...}, ...}}
        """
        pass

    @abstractmethod
    def update(self, device_id: str, changes: Dict[str, Any]) -> None:
        """
        Merge changes into a device's state.

        A "settings" dict is merged key by key rather than replaced.
        """
        pass

    def get(self, device_id: str) -> Optional[Dict[str, Any]]:
        """Get one device's state, or None if unknown."""
        return self.snapshot().get(device_id)


class InMemoryWorldState(WorldState):
    """Dictionary-backed world state."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._states: Dict[str, Dict[str, Any]] = copy.deepcopy(initial or {})

    def set_state(self, device_id: str, state: Dict[str, Any]) -> None:
        """Replace a device's state for testing."""
        self._states[device_id] = copy.deepcopy(state)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._states)

    def get(self, device_id: str) -> Optional[Dict[str, Any]]:
        state = self._states.get(device_id)
        return copy.deepcopy(state) if state is not None else None

    def update(self, device_id: str, changes: Dict[str, Any]) -> None:
        state = self._states.setdefault(device_id, {})
        for key, value in changes.items():
            if key == "settings" and isinstance(value, dict):
                state.setdefault("settings", {}).update(value)
            else:
                state[key] = value


# =============================================================================
# Persistence
# =============================================================================


class Persistence(ABC):
    """Load/save contract for the host's storage."""

    @abstractmethod
    def load_rules(self) -> List[Rule]:
        """All standalone rules, active or not."""
        pass

    def load_active_rules(self) -> List[Rule]:
        return [r for r in self.load_rules() if r.is_active]

    @abstractmethod
    def load_groups(self) -> List[Group]:
        pass

    @abstractmethod
    def load_schedules(self) -> List[Schedule]:
        pass

    @abstractmethod
    def load_timers(self) -> List[Timer]:
        pass

    @abstractmethod
    def load_scenes(self) -> List[Scene]:
        pass

    @abstractmethod
    def save(self, entity: Rule | Group | Schedule | Timer | Scene) -> None:
        """Insert or replace an entity."""
        pass

    @abstractmethod
    def delete(self, entity: Rule | Group | Schedule | Timer | Scene) -> None:
        pass

    @abstractmethod
    def append_execution_record(self, record: ExecutionRecord) -> None:
        """
        Append one audit record.

        Raises:
            AuditWriteError: The record could not be stored
        """
        pass


class InMemoryPersistence(Persistence):
    """
    Dictionary-backed persistence for testing.

    Set fail_appends=True to make audit writes raise AuditWriteError.
    """

    _KINDS = (Rule, Group, Schedule, Timer, Scene)

    def __init__(self, fail_appends: bool = False) -> None:
        self._store: Dict[type, Dict[str, Any]] = {kind: {} for kind in self._KINDS}
        self.records: List[ExecutionRecord] = []
        self.fail_appends = fail_appends

    def _bucket(self, entity: Any) -> Dict[str, Any]:
        for kind in self._KINDS:
            if isinstance(entity, kind):
                return self._store[kind]
        raise TypeError(f"Cannot persist {type(entity).__name__}")

    def load_rules(self) -> List[Rule]:
        return list(self._store[Rule].values())

    def load_groups(self) -> List[Group]:
        return list(self._store[Group].values())

    def load_schedules(self) -> List[Schedule]:
        return list(self._store[Schedule].values())

    def load_timers(self) -> List[Timer]:
        return list(self._store[Timer].values())

    def load_scenes(self) -> List[Scene]:
        return list(self._store[Scene].values())

    def save(self, entity: Rule | Group | Schedule | Timer | Scene) -> None:
        self._bucket(entity)[entity.id] = entity

    def delete(self, entity: Rule | Group | Schedule | Timer | Scene) -> None:
        self._bucket(entity).pop(entity.id, None)

    def append_execution_record(self, record: ExecutionRecord) -> None:
        if self.fail_appends:
            raise AuditWriteError(f"audit store unavailable for {record.subject_id}")
        self.records.append(record)
