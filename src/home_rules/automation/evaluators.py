"""
Trigger and condition evaluators for the automation engine.

Both evaluators are pure: they read a world-state snapshot, an event or a
clock tick, and return a decision. Nothing here dispatches commands.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, Mapping, Optional

from .adapter import Clock, SolarCalendar
from .errors import ConditionEvaluationError
from .models import (
    ConditionConfig,
    DayOfWeekCondition,
    DeviceStateCondition,
    DeviceStateTrigger,
    ManualTrigger,
    MotionTrigger,
    Operator,
    SensorThresholdTrigger,
    SensorValueCondition,
    SolarTrigger,
    TemperatureTrigger,
    TimeCondition,
    TimeTrigger,
    TriggerConfig,
    TriggerType,
    day_name,
    is_number,
)

from home_rules.core.bus import Event

logger = logging.getLogger(__name__)

# Inbound event types
DEVICE_STATE_CHANGED = "device.state_changed"
MANUAL_EVENT = "automation.manual"

# Marker for a property path that does not resolve
MISSING = object()


# =============================================================================
# Operator Semantics
# =============================================================================


def get_property(state: Optional[Mapping[str, Any]], path: str) -> Any:
    """
    Resolve a dotted property path ("settings.brightness") in a state dict.

    Returns MISSING when any segment is absent.
    """
    current: Any = state
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return MISSING
        current = current[part]
    return current


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    if is_number(actual) and is_number(expected):
        return float(actual) == float(expected)
    return actual == expected


def compare(operator: Operator, actual: Any, expected: Any) -> bool:
    """
    Apply a comparison operator.

    Args:
        operator: The operator to apply
        actual: Value read from the world state or event
        expected: Value configured on the condition/trigger

    Returns:
        True if the comparison holds

    Raises:
        ConditionEvaluationError: Ordering operator on a non-numeric value
    """
    if operator == Operator.EQUALS:
        return _equals(actual, expected)
    elif operator == Operator.NOT_EQUALS:
        return not _equals(actual, expected)
    elif operator in (Operator.GREATER_THAN, Operator.LESS_THAN):
        if not (is_number(actual) and is_number(expected)):
            raise ConditionEvaluationError(
                f"'{operator.value}' needs numbers, got {actual!r} and {expected!r}"
            )
        if operator == Operator.GREATER_THAN:
            return actual > expected
        return actual < expected
    elif operator == Operator.BETWEEN:
        low, high = expected
        if not is_number(actual):
            raise ConditionEvaluationError(f"'between' needs a number, got {actual!r}")
        return low <= actual <= high
    elif operator == Operator.CONTAINS:
        if isinstance(actual, str):
            return str(expected) in actual
        if isinstance(actual, (list, tuple, set, frozenset)):
            return expected in actual
        return False
    raise ConditionEvaluationError(f"Unknown operator: {operator}")


# =============================================================================
# Conditions
# =============================================================================


class ConditionEvaluator:
    """
    Evaluates conditions for automation rules.

    Reads device values from a world-state snapshot and the current time
    from the clock (or an explicit `now`).
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock

    def evaluate(
        self,
        condition: ConditionConfig,
        world_state: Mapping[str, Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Evaluate a condition.

        Args:
            condition: The condition to evaluate
            world_state: {device_id: state} snapshot
            now: Evaluation time (defaults to the clock)

        Returns:
            True if condition is met, False otherwise

        Raises:
            ConditionEvaluationError: Ordering operator on a non-numeric value
        """
        if isinstance(condition, (DeviceStateCondition, SensorValueCondition)):
            return self._check_device_value(condition, world_state)
        elif isinstance(condition, TimeCondition):
            return self._check_time(condition, now or self._clock.now())
        elif isinstance(condition, DayOfWeekCondition):
            return self._check_day_of_week(condition, now or self._clock.now())
        else:
            logger.warning(f"Unknown condition type: {type(condition)}")
            return False

    def evaluate_all(
        self,
        conditions: Iterable[ConditionConfig],
        world_state: Mapping[str, Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Evaluate all conditions (AND logic).

        Args:
            conditions: List of conditions to evaluate

        Returns:
            True if ALL conditions are met (an empty list is met)
        """
        now = now or self._clock.now()
        for condition in conditions:
            if not self.evaluate(condition, world_state, now):
                logger.debug(f"Condition not met: {condition}")
                return False
        return True

    # =========================================================================
    # Condition Implementations
    # =========================================================================

    def _check_device_value(
        self,
        condition: DeviceStateCondition | SensorValueCondition,
        world_state: Mapping[str, Dict[str, Any]],
    ) -> bool:
        state = world_state.get(condition.device_id)
        if state is None:
            logger.warning(f"Device not found: {condition.device_id}")
            return False

        actual = get_property(state, condition.attribute)
        if actual is MISSING:
            logger.warning(f"Property {condition.attribute} missing on {condition.device_id}")
            return False

        return compare(condition.operator, actual, condition.value)

    def _check_time(self, condition: TimeCondition, now: datetime) -> bool:
        """Compare current time of day at minute precision."""
        current = now.time().replace(second=0, microsecond=0, tzinfo=None)

        if condition.operator == Operator.BETWEEN:
            start, end = condition.value
            if start <= end:
                return start <= current <= end
            # Spans midnight (e.g., 22:00 to 06:00)
            return current >= start or current <= end
        elif condition.operator == Operator.GREATER_THAN:
            return current > condition.value
        elif condition.operator == Operator.LESS_THAN:
            return current < condition.value
        elif condition.operator == Operator.NOT_EQUALS:
            return current != condition.value
        return current == condition.value

    def _check_day_of_week(self, condition: DayOfWeekCondition, now: datetime) -> bool:
        """Check if current day is in the configured set."""
        current_day = day_name(now)
        if condition.operator == Operator.NOT_EQUALS:
            return current_day not in condition.value
        return current_day in condition.value


# =============================================================================
# Triggers
# =============================================================================


class TriggerEvaluator:
    """
    Decides whether a trigger matches an occurrence.

    An occurrence is either a bus Event (device changes, manual invocations)
    or a datetime clock tick (time and solar triggers).
    """

    def __init__(
        self,
        solar: SolarCalendar,
        poll_interval: timedelta = timedelta(seconds=60),
        default_location: Optional[str] = None,
    ) -> None:
        self._solar = solar
        self._poll_interval = poll_interval
        self._default_location = default_location

    @property
    def poll_interval(self) -> timedelta:
        return self._poll_interval

    def solar_instant(
        self, trigger: SolarTrigger, location: Optional[str], day: date
    ) -> datetime:
        """Sunrise/sunset on a day at a location, shifted by the trigger offset."""
        location = location or self._default_location
        if trigger.event == TriggerType.SUNRISE:
            base = self._solar.sunrise(location, day)
        else:
            base = self._solar.sunset(location, day)
        return base + timedelta(minutes=trigger.offset_minutes)

    def matches(
        self,
        trigger: TriggerConfig,
        occurrence: Event | datetime,
        location: Optional[str] = None,
    ) -> bool:
        """
        Check whether a trigger fires for an occurrence.

        Args:
            trigger: Trigger to test
            occurrence: Bus event or clock tick
            location: Location for solar lookups

        Returns:
            True if the trigger fires
        """
        if isinstance(occurrence, datetime):
            if isinstance(trigger, TimeTrigger):
                return self._match_time(trigger, occurrence)
            if isinstance(trigger, SolarTrigger):
                return self._match_solar(trigger, occurrence, location)
            return False

        if isinstance(trigger, ManualTrigger):
            return occurrence.type == MANUAL_EVENT

        if occurrence.type != DEVICE_STATE_CHANGED:
            return False

        if isinstance(trigger, DeviceStateTrigger):
            return self._match_device_state(trigger, occurrence)
        elif isinstance(trigger, (SensorThresholdTrigger, TemperatureTrigger)):
            return self._match_threshold(trigger, occurrence)
        elif isinstance(trigger, MotionTrigger):
            return self._match_motion(trigger, occurrence)
        return False

    # =========================================================================
    # Trigger Implementations
    # =========================================================================

    def _match_time(self, trigger: TimeTrigger, tick: datetime) -> bool:
        if trigger.days and day_name(tick) not in trigger.days:
            return False
        return tick.hour == trigger.at.hour and tick.minute == trigger.at.minute

    def _match_solar(
        self, trigger: SolarTrigger, tick: datetime, location: Optional[str]
    ) -> bool:
        if trigger.days and day_name(tick) not in trigger.days:
            return False
        instant = self.solar_instant(trigger, location, tick.date())
        return instant <= tick < instant + self._poll_interval

    @staticmethod
    def _states(event: Event) -> tuple[Dict[str, Any], Dict[str, Any]]:
        old = event.payload.get("old_state") or {}
        new = event.payload.get("new_state") or {}
        return old, new

    def _match_device_state(self, trigger: DeviceStateTrigger, event: Event) -> bool:
        if event.device_id != trigger.device_id:
            return False
        old, new = self._states(event)

        if not trigger.attribute:
            return old != new

        before = get_property(old, trigger.attribute)
        after = get_property(new, trigger.attribute)
        if after is MISSING:
            return False
        if before is not MISSING and _equals(before, after):
            return False
        if trigger.to_value is not None and not _equals(after, trigger.to_value):
            return False
        if trigger.from_value is not None:
            if before is MISSING or not _equals(before, trigger.from_value):
                return False
        return True

    def _match_threshold(
        self, trigger: SensorThresholdTrigger | TemperatureTrigger, event: Event
    ) -> bool:
        """Fire when the new value satisfies the threshold and the old one did not."""
        if event.device_id != trigger.device_id:
            return False
        old, new = self._states(event)

        after = get_property(new, trigger.attribute)
        if after is MISSING:
            return False
        try:
            now_met = compare(trigger.operator, after, trigger.value)
        except ConditionEvaluationError as e:
            logger.debug(f"Threshold on {trigger.device_id} not comparable: {e}")
            return False
        if not now_met:
            return False

        before = get_property(old, trigger.attribute)
        if before is MISSING:
            return True
        try:
            return not compare(trigger.operator, before, trigger.value)
        except ConditionEvaluationError:
            return True

    def _match_motion(self, trigger: MotionTrigger, event: Event) -> bool:
        if event.device_id != trigger.device_id:
            return False
        old, new = self._states(event)
        before = get_property(old, trigger.attribute)
        after = get_property(new, trigger.attribute)
        if after is MISSING or not after:
            return False
        return before is MISSING or not before
