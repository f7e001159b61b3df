"""
Data models for the automation engine.

Defines rules, triggers, conditions, actions, groups, schedules, scenes,
timers and execution records. Every trigger, condition and target kind is its
own frozen dataclass carrying only the payload valid for that kind; shape
errors raise ConfigurationError at construction time.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .errors import ConfigurationError


# =============================================================================
# Enums
# =============================================================================


class TriggerType(Enum):
    """Types of triggers that can activate a rule or schedule."""

    DEVICE_STATE_CHANGE = "device_state_change"
    TIME = "time"  # Also accepted as "time_based"
    SUNRISE = "sunrise"
    SUNSET = "sunset"
    SENSOR_THRESHOLD = "sensor_threshold"
    MOTION = "motion"
    TEMPERATURE = "temperature"
    MANUAL = "manual"


class ConditionType(Enum):
    """Types of conditions that must be met for actions to execute."""

    DEVICE_STATE = "device_state"
    TIME = "time"
    DAY_OF_WEEK = "day_of_week"
    SENSOR_VALUE = "sensor_value"


class Operator(Enum):
    """Comparison operators shared by conditions and threshold triggers."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"
    CONTAINS = "contains"


class ActionType(Enum):
    """Device commands an action can send."""

    TURN_ON = "turn_on"
    TURN_OFF = "turn_off"
    TOGGLE = "toggle"
    SET_BRIGHTNESS = "set_brightness"
    SET_TEMPERATURE = "set_temperature"
    SET_COLOR = "set_color"
    NOTIFICATION = "notification"


class TargetType(Enum):
    """How an action selects devices from its scope."""

    ALL = "all"
    RANDOM = "random"
    SPECIFIC = "specific"


class TriggeredBy(Enum):
    """What started an execution."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EVENT = "event"


class SubjectType(Enum):
    """Kind of automation an execution record belongs to."""

    RULE = "rule"
    GROUP = "group"
    SCENE = "scene"
    SCHEDULE = "schedule"
    TIMER = "timer"


class ResolutionType(Enum):
    """Conflict resolution directives."""

    DISABLE_OTHER = "disable_other"
    DISABLE_SELF = "disable_self"
    PRIORITY = "priority"
    MERGE = "merge"  # Recognised but rejected


# =============================================================================
# Helpers
# =============================================================================

DAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

_DAY_ALIASES = {
    "monday": "mon",
    "tuesday": "tue",
    "wednesday": "wed",
    "thursday": "thu",
    "friday": "fri",
    "saturday": "sat",
    "sunday": "sun",
}

# set_* commands and the settings field each one writes
SETTING_FIELDS = {
    ActionType.SET_BRIGHTNESS: "brightness",
    ActionType.SET_TEMPERATURE: "temperature",
    ActionType.SET_COLOR: "color",
}

MAX_ACTION_DELAY_SECONDS = 3600
MAX_SEQUENCE_INTERVAL_MS = 60000
MAX_SOLAR_OFFSET_MINUTES = 120


def normalize_days(days: Iterable[str]) -> FrozenSet[str]:
    """Normalize weekday names to three-letter lowercase form."""
    if isinstance(days, str):
        days = [days]
    result = set()
    for day in days:
        key = str(day).strip().lower()
        key = _DAY_ALIASES.get(key, key)
        if key not in DAY_NAMES:
            raise ConfigurationError(f"Unknown weekday: {day}")
        result.add(key)
    return frozenset(result)


def day_name(moment: datetime) -> str:
    """Three-letter weekday name for a datetime."""
    return DAY_NAMES[moment.weekday()]


def parse_time_of_day(value: Any) -> time:
    """Parse "HH:MM" (or "HH:MM:SS") into a time, dropping sub-minute parts."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    try:
        parsed = time.fromisoformat(str(value).strip())
    except ValueError as e:
        raise ConfigurationError(f"Invalid time format (use HH:MM): {value!r}") from e
    return parsed.replace(second=0, microsecond=0)


def is_number(value: Any) -> bool:
    """True for ints and floats, but not bools."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_operand(operator: "Operator", value: Any) -> Any:
    """Check that a comparison value has the shape its operator needs.

    Returns the normalized value (pairs become tuples).
    """
    if operator == Operator.BETWEEN:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ConfigurationError("'between' requires a 2-element [low, high] value")
        low, high = value
        if not (is_number(low) and is_number(high)):
            raise ConfigurationError("'between' bounds must be numeric")
        if low > high:
            raise ConfigurationError(f"'between' bounds must be ascending: {low} > {high}")
        return (low, high)

    if operator in (Operator.GREATER_THAN, Operator.LESS_THAN):
        if not is_number(value):
            raise ConfigurationError(f"'{operator.value}' requires a numeric value, got {value!r}")
        return value

    if isinstance(value, list):
        return tuple(value)
    return value


def _operator(value: Any) -> Operator:
    if isinstance(value, Operator):
        return value
    try:
        return Operator(value)
    except ValueError as e:
        raise ConfigurationError(f"Unknown operator: {value}") from e


def _action_type(value: Any) -> ActionType:
    if isinstance(value, ActionType):
        return value
    try:
        return ActionType(value)
    except ValueError as e:
        raise ConfigurationError(f"Unknown action type: {value}") from e


def _first(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present key (accepts snake_case and original camelCase)."""
    for key in keys:
        if key in data:
            return data[key]
    return default


def _new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# Trigger Configs
# =============================================================================


@dataclass(frozen=True)
class TimeTrigger:
    """Trigger at a specific time of day, optionally on certain weekdays."""

    at: time
    days: FrozenSet[str] = frozenset()  # Empty = every day

    def __post_init__(self) -> None:
        object.__setattr__(self, "at", parse_time_of_day(self.at))
        object.__setattr__(self, "days", normalize_days(self.days))

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.TIME


@dataclass(frozen=True)
class SolarTrigger:
    """Trigger at sunrise or sunset, shifted by a signed offset."""

    event: TriggerType  # SUNRISE or SUNSET
    offset_minutes: int = 0
    days: FrozenSet[str] = frozenset()

    def __post_init__(self) -> None:
        if self.event not in (TriggerType.SUNRISE, TriggerType.SUNSET):
            raise ConfigurationError(f"Solar trigger must be sunrise or sunset, got {self.event}")
        if not isinstance(self.offset_minutes, int) or isinstance(self.offset_minutes, bool):
            raise ConfigurationError("Solar offset must be an integer number of minutes")
        if abs(self.offset_minutes) > MAX_SOLAR_OFFSET_MINUTES:
            raise ConfigurationError(
                f"Solar offset must be within ±{MAX_SOLAR_OFFSET_MINUTES} minutes"
            )
        object.__setattr__(self, "days", normalize_days(self.days))

    @property
    def trigger_type(self) -> TriggerType:
        return self.event


@dataclass(frozen=True)
class DeviceStateTrigger:
    """Trigger when a device's state (or one property of it) changes."""

    device_id: str
    attribute: Optional[str] = None  # Dotted path, e.g. "settings.brightness"
    to_value: Any = None  # Only fire when the new value equals this
    from_value: Any = None  # Only fire when the old value equals this

    def __post_init__(self) -> None:
        if not self.device_id:
            raise ConfigurationError("device_state_change trigger requires a device_id")
        if (self.to_value is not None or self.from_value is not None) and not self.attribute:
            raise ConfigurationError("to_value/from_value require a property")

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.DEVICE_STATE_CHANGE


@dataclass(frozen=True)
class SensorThresholdTrigger:
    """Trigger when a sensor reading crosses a threshold."""

    device_id: str
    attribute: str
    operator: Operator
    value: Any

    def __post_init__(self) -> None:
        if not self.device_id or not self.attribute:
            raise ConfigurationError("sensor_threshold trigger requires device_id and property")
        object.__setattr__(self, "operator", _operator(self.operator))
        object.__setattr__(self, "value", validate_operand(self.operator, self.value))

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.SENSOR_THRESHOLD


@dataclass(frozen=True)
class MotionTrigger:
    """Trigger when a motion sensor starts reporting motion."""

    device_id: str
    attribute: str = "motion"

    def __post_init__(self) -> None:
        if not self.device_id:
            raise ConfigurationError("motion trigger requires a device_id")

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.MOTION


@dataclass(frozen=True)
class TemperatureTrigger:
    """Trigger when a temperature reading crosses a threshold."""

    device_id: str
    operator: Operator
    value: Any

    def __post_init__(self) -> None:
        if not self.device_id:
            raise ConfigurationError("temperature trigger requires a device_id")
        object.__setattr__(self, "operator", _operator(self.operator))
        object.__setattr__(self, "value", validate_operand(self.operator, self.value))

    @property
    def attribute(self) -> str:
        return "temperature"

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.TEMPERATURE


@dataclass(frozen=True)
class ManualTrigger:
    """Rule only runs when invoked explicitly."""

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType.MANUAL


TriggerConfig = (
    TimeTrigger
    | SolarTrigger
    | DeviceStateTrigger
    | SensorThresholdTrigger
    | MotionTrigger
    | TemperatureTrigger
    | ManualTrigger
)

TIMED_TRIGGERS = (TimeTrigger, SolarTrigger)
THRESHOLD_TRIGGERS = (SensorThresholdTrigger, TemperatureTrigger)
DEVICE_TRIGGERS = (DeviceStateTrigger, SensorThresholdTrigger, MotionTrigger, TemperatureTrigger)


def serialize_trigger(trigger: TriggerConfig) -> Dict[str, Any]:
    """Serialize trigger config."""
    if isinstance(trigger, TimeTrigger):
        return {
            "type": "time",
            "time": trigger.at.strftime("%H:%M"),
            "days": sorted(trigger.days, key=DAY_NAMES.index),
        }
    elif isinstance(trigger, SolarTrigger):
        return {
            "type": trigger.event.value,
            "offset": trigger.offset_minutes,
            "days": sorted(trigger.days, key=DAY_NAMES.index),
        }
    elif isinstance(trigger, DeviceStateTrigger):
        return {
            "type": "device_state_change",
            "device_id": trigger.device_id,
            "property": trigger.attribute,
            "to_value": trigger.to_value,
            "from_value": trigger.from_value,
        }
    elif isinstance(trigger, SensorThresholdTrigger):
        return {
            "type": "sensor_threshold",
            "device_id": trigger.device_id,
            "property": trigger.attribute,
            "operator": trigger.operator.value,
            "value": list(trigger.value) if isinstance(trigger.value, tuple) else trigger.value,
        }
    elif isinstance(trigger, MotionTrigger):
        return {"type": "motion", "device_id": trigger.device_id, "property": trigger.attribute}
    elif isinstance(trigger, TemperatureTrigger):
        return {
            "type": "temperature",
            "device_id": trigger.device_id,
            "operator": trigger.operator.value,
            "value": list(trigger.value) if isinstance(trigger.value, tuple) else trigger.value,
        }
    elif isinstance(trigger, ManualTrigger):
        return {"type": "manual"}
    raise ConfigurationError(f"Unknown trigger: {trigger!r}")


def parse_trigger(data: Dict[str, Any] | str) -> TriggerConfig:
    """Parse trigger config from dict (or a bare type name)."""
    if isinstance(data, str):
        data = {"type": data}
    trigger_type = data.get("type")
    days = _first(data, "days", "recurring_days", default=())

    if trigger_type in ("time", "time_based"):
        at = _first(data, "time", "at", "value")
        if at is None:
            raise ConfigurationError("time trigger requires a time (HH:MM)")
        return TimeTrigger(at=parse_time_of_day(at), days=normalize_days(days))
    elif trigger_type in ("sunrise", "sunset"):
        return SolarTrigger(
            event=TriggerType(trigger_type),
            offset_minutes=_first(data, "offset", "offset_minutes", "value", default=0) or 0,
            days=normalize_days(days),
        )
    elif trigger_type == "device_state_change":
        return DeviceStateTrigger(
            device_id=_first(data, "device_id", "deviceId"),
            attribute=data.get("property"),
            to_value=_first(data, "to_value", "to"),
            from_value=_first(data, "from_value", "from"),
        )
    elif trigger_type == "sensor_threshold":
        return SensorThresholdTrigger(
            device_id=_first(data, "device_id", "deviceId"),
            attribute=data.get("property"),
            operator=_operator(data.get("operator", "greater_than")),
            value=data.get("value"),
        )
    elif trigger_type == "motion":
        return MotionTrigger(
            device_id=_first(data, "device_id", "deviceId"),
            attribute=data.get("property") or "motion",
        )
    elif trigger_type == "temperature":
        return TemperatureTrigger(
            device_id=_first(data, "device_id", "deviceId"),
            operator=_operator(data.get("operator", "greater_than")),
            value=data.get("value"),
        )
    elif trigger_type == "manual":
        return ManualTrigger()
    else:
        raise ConfigurationError(f"Unknown trigger type: {trigger_type}")


# =============================================================================
# Condition Configs
# =============================================================================

_TIME_OPERATORS = frozenset(
    {
        Operator.EQUALS,
        Operator.NOT_EQUALS,
        Operator.GREATER_THAN,
        Operator.LESS_THAN,
        Operator.BETWEEN,
    }
)
_DAY_OPERATORS = frozenset({Operator.EQUALS, Operator.NOT_EQUALS, Operator.CONTAINS})


@dataclass(frozen=True)
class DeviceStateCondition:
    """Compare a property of a device's last-known state."""

    device_id: str
    attribute: str
    operator: Operator
    value: Any

    def __post_init__(self) -> None:
        if not self.device_id or not self.attribute:
            raise ConfigurationError("device_state condition requires device_id and property")
        object.__setattr__(self, "operator", _operator(self.operator))
        object.__setattr__(self, "value", validate_operand(self.operator, self.value))

    @property
    def condition_type(self) -> ConditionType:
        return ConditionType.DEVICE_STATE


@dataclass(frozen=True)
class SensorValueCondition:
    """Compare a sensor reading from the world state."""

    device_id: str
    attribute: str
    operator: Operator
    value: Any

    def __post_init__(self) -> None:
        if not self.device_id or not self.attribute:
            raise ConfigurationError("sensor_value condition requires device_id and property")
        object.__setattr__(self, "operator", _operator(self.operator))
        object.__setattr__(self, "value", validate_operand(self.operator, self.value))

    @property
    def condition_type(self) -> ConditionType:
        return ConditionType.SENSOR_VALUE


@dataclass(frozen=True)
class TimeCondition:
    """Compare the current time of day.

    greater_than means "after", less_than means "before". A between window
    may span midnight, e.g. ("22:00", "06:00").
    """

    operator: Operator
    value: Any  # time, or (start, end) for between

    def __post_init__(self) -> None:
        operator = _operator(self.operator)
        if operator not in _TIME_OPERATORS:
            raise ConfigurationError(f"'{operator.value}' is not valid for time conditions")
        if operator == Operator.BETWEEN:
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ConfigurationError("time 'between' requires [start, end]")
            value: Any = tuple(parse_time_of_day(v) for v in self.value)
        else:
            value = parse_time_of_day(self.value)
        object.__setattr__(self, "operator", operator)
        object.__setattr__(self, "value", value)

    @property
    def condition_type(self) -> ConditionType:
        return ConditionType.TIME


@dataclass(frozen=True)
class DayOfWeekCondition:
    """Check the current weekday against a set of days."""

    operator: Operator
    value: FrozenSet[str]

    def __post_init__(self) -> None:
        operator = _operator(self.operator)
        if operator not in _DAY_OPERATORS:
            raise ConfigurationError(f"'{operator.value}' is not valid for day_of_week conditions")
        days = normalize_days(self.value)
        if not days:
            raise ConfigurationError("day_of_week condition requires at least one day")
        object.__setattr__(self, "operator", operator)
        object.__setattr__(self, "value", days)

    @property
    def condition_type(self) -> ConditionType:
        return ConditionType.DAY_OF_WEEK


ConditionConfig = DeviceStateCondition | SensorValueCondition | TimeCondition | DayOfWeekCondition


def serialize_condition(condition: ConditionConfig) -> Dict[str, Any]:
    """Serialize condition config."""
    if isinstance(condition, (DeviceStateCondition, SensorValueCondition)):
        value = condition.value
        return {
            "type": condition.condition_type.value,
            "device_id": condition.device_id,
            "property": condition.attribute,
            "operator": condition.operator.value,
            "value": list(value) if isinstance(value, tuple) else value,
        }
    elif isinstance(condition, TimeCondition):
        if condition.operator == Operator.BETWEEN:
            value = [t.strftime("%H:%M") for t in condition.value]
        else:
            value = condition.value.strftime("%H:%M")
        return {"type": "time", "operator": condition.operator.value, "value": value}
    elif isinstance(condition, DayOfWeekCondition):
        return {
            "type": "day_of_week",
            "operator": condition.operator.value,
            "value": sorted(condition.value, key=DAY_NAMES.index),
        }
    raise ConfigurationError(f"Unknown condition: {condition!r}")


def parse_condition(data: Dict[str, Any]) -> ConditionConfig:
    """Parse condition config from dict."""
    condition_type = data.get("type")
    operator = _operator(data.get("operator", "equals"))

    if condition_type == "device_state":
        return DeviceStateCondition(
            device_id=_first(data, "device_id", "deviceId"),
            attribute=data.get("property"),
            operator=operator,
            value=data.get("value"),
        )
    elif condition_type == "sensor_value":
        return SensorValueCondition(
            device_id=_first(data, "device_id", "deviceId"),
            attribute=data.get("property"),
            operator=operator,
            value=data.get("value"),
        )
    elif condition_type == "time":
        return TimeCondition(operator=operator, value=data.get("value"))
    elif condition_type == "day_of_week":
        return DayOfWeekCondition(operator=operator, value=data.get("value", ()))
    else:
        raise ConfigurationError(f"Unknown condition type: {condition_type}")


# =============================================================================
# Targets, Dispatch Policy, Actions
# =============================================================================


@dataclass(frozen=True)
class AllDevices:
    """Every device in the action's scope."""

    @property
    def target_type(self) -> TargetType:
        return TargetType.ALL


@dataclass(frozen=True)
class RandomDevices:
    """A uniform random sample of distinct devices from the scope."""

    count: int

    def __post_init__(self) -> None:
        if not isinstance(self.count, int) or isinstance(self.count, bool) or self.count < 1:
            raise ConfigurationError("Random count must be an integer >= 1")

    @property
    def target_type(self) -> TargetType:
        return TargetType.RANDOM


@dataclass(frozen=True)
class SpecificDevices:
    """An explicit list of device ids."""

    device_ids: Tuple[str, ...]

    def __post_init__(self) -> None:
        if isinstance(self.device_ids, str):
            raise ConfigurationError("device_ids must be a list of ids")
        ids = tuple(dict.fromkeys(self.device_ids or ()))
        if not ids:
            raise ConfigurationError("Device IDs required for specific target")
        object.__setattr__(self, "device_ids", ids)

    @property
    def target_type(self) -> TargetType:
        return TargetType.SPECIFIC


TargetSelector = AllDevices | RandomDevices | SpecificDevices


@dataclass(frozen=True)
class DispatchPolicy:
    """How one batch of device commands is dispatched.

    sequential=False dispatches concurrently (bounded by parallelism).
    sequential=True dispatches one device at a time, waiting interval_ms
    between dispatches; random_order shuffles the batch once up front.
    """

    sequential: bool = False
    interval_ms: int = 0
    random_order: bool = False
    parallelism: Optional[int] = None  # None = executor default

    def __post_init__(self) -> None:
        if not is_number(self.interval_ms) or not 0 <= self.interval_ms <= MAX_SEQUENCE_INTERVAL_MS:
            raise ConfigurationError(
                f"Sequence interval must be between 0 and {MAX_SEQUENCE_INTERVAL_MS} ms"
            )
        if self.parallelism is not None and self.parallelism < 1:
            raise ConfigurationError("parallelism must be >= 1")

    @classmethod
    def parallel(cls, parallelism: Optional[int] = None) -> "DispatchPolicy":
        return cls(sequential=False, parallelism=parallelism)

    @classmethod
    def sequence(cls, interval_ms: int, random_order: bool = False) -> "DispatchPolicy":
        return cls(sequential=True, interval_ms=interval_ms, random_order=random_order)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.sequential,
            "interval": self.interval_ms,
            "randomOrder": self.random_order,
            "parallelism": self.parallelism,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DispatchPolicy":
        return cls(
            sequential=bool(_first(data, "enabled", "sequential", default=False)),
            interval_ms=_first(data, "interval", "interval_ms", default=0) or 0,
            random_order=bool(_first(data, "randomOrder", "random_order", default=False)),
            parallelism=data.get("parallelism"),
        )


@dataclass(frozen=True)
class Action:
    """A device command plus target selection and timing."""

    command: ActionType
    target: TargetSelector = field(default_factory=AllDevices)
    settings: Dict[str, Any] = field(default_factory=dict)
    delay: float = 0  # Seconds before the batch's first dispatch
    group_id: Optional[str] = None  # Scope; defaults to the owning group
    policy: Optional[DispatchPolicy] = None
    continue_on_error: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "command", _action_type(self.command))
        if not is_number(self.delay) or not 0 <= self.delay <= MAX_ACTION_DELAY_SECONDS:
            raise ConfigurationError(
                f"Action delay must be between 0 and {MAX_ACTION_DELAY_SECONDS} seconds"
            )
        field_name = SETTING_FIELDS.get(self.command)
        if field_name and field_name not in (self.settings or {}):
            raise ConfigurationError(f"{self.command.value} requires settings.{field_name}")
        brightness = (self.settings or {}).get("brightness")
        if brightness is not None and (not is_number(brightness) or not 0 <= brightness <= 100):
            raise ConfigurationError("brightness must be between 0 and 100")

    @property
    def action_type(self) -> ActionType:
        return self.command

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": self.command.value,
            "target": self.target.target_type.value,
            "delay": self.delay,
        }
        if isinstance(self.target, SpecificDevices):
            result["device_ids"] = list(self.target.device_ids)
        elif isinstance(self.target, RandomDevices):
            result["random_count"] = self.target.count
        if self.settings:
            result["settings"] = dict(self.settings)
        if self.group_id:
            result["group_id"] = self.group_id
        if self.policy:
            result["sequence"] = self.policy.to_dict()
        if not self.continue_on_error:
            result["continue_on_error"] = False
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Action":
        target_name = data.get("target", "all")
        if target_name == "all":
            target: TargetSelector = AllDevices()
        elif target_name == "random":
            target = RandomDevices(count=_first(data, "random_count", "randomCount", "count"))
        elif target_name == "specific":
            target = SpecificDevices(
                device_ids=tuple(_first(data, "device_ids", "deviceIds", default=()))
            )
        else:
            raise ConfigurationError(f"Invalid target type: {target_name}")

        sequence = _first(data, "sequence", "policy")
        return cls(
            command=_action_type(_first(data, "type", "command", "action")),
            target=target,
            settings=dict(data.get("settings") or {}),
            delay=data.get("delay", 0) or 0,
            group_id=_first(data, "group_id", "groupId"),
            policy=DispatchPolicy.from_dict(sequence) if sequence else None,
            continue_on_error=_first(data, "continue_on_error", "continueOnError", default=True),
        )


# =============================================================================
# Rules
# =============================================================================


@dataclass
class Rule:
    """A complete automation rule.

    Triggers are OR-combined (any match fires the rule), conditions are
    AND-combined, actions run in order.
    """

    id: str
    name: str
    triggers: List[TriggerConfig]
    conditions: List[ConditionConfig]
    actions: List[Action]
    type: str = "simple"
    category: str = "general"
    is_active: bool = True
    owner_id: Optional[str] = None
    priority: int = 0
    cooldown_seconds: int = 0
    max_executions: Optional[int] = None
    group_id: Optional[str] = None
    location: Optional[str] = None
    # Bookkeeping maintained by the engine
    last_run: Optional[datetime] = None
    execution_count: int = 0

    def validate(self) -> None:
        """Raise ConfigurationError if the rule cannot be saved."""
        if not self.id:
            raise ConfigurationError("Rule id is required")
        if not self.triggers:
            raise ConfigurationError(f"Rule {self.id} needs at least one trigger")
        if not self.actions:
            raise ConfigurationError(f"Rule {self.id} needs at least one action")
        if self.cooldown_seconds < 0:
            raise ConfigurationError("cooldown_seconds cannot be negative")
        if self.max_executions is not None and self.max_executions < 1:
            raise ConfigurationError("max_executions must be >= 1")
        for action in self.actions:
            if not isinstance(action.target, SpecificDevices) and not (
                action.group_id or self.group_id
            ):
                raise ConfigurationError(
                    f"Rule {self.id}: '{action.target.target_type.value}' target needs a group scope"
                )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for storage/transport."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "category": self.category,
            "is_active": self.is_active,
            "owner_id": self.owner_id,
            "priority": self.priority,
            "cooldown_seconds": self.cooldown_seconds,
            "max_executions": self.max_executions,
            "group_id": self.group_id,
            "location": self.location,
            "triggers": [serialize_trigger(t) for t in self.triggers],
            "conditions": [serialize_condition(c) for c in self.conditions],
            "actions": [a.to_dict() for a in self.actions],
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "execution_count": self.execution_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rule":
        """Deserialize from dict."""
        if "triggers" in data:
            triggers = [parse_trigger(t) for t in data["triggers"]]
        elif "trigger" in data:
            triggers = [parse_trigger(data["trigger"])]
        else:
            triggers = []
        last_run = data.get("last_run")
        return cls(
            id=_first(data, "id", "_id") or _new_id(),
            name=data.get("name", ""),
            triggers=triggers,
            conditions=[parse_condition(c) for c in data.get("conditions", [])],
            actions=[Action.from_dict(a) for a in data.get("actions", [])],
            type=data.get("type", "simple"),
            category=data.get("category", "general"),
            is_active=_first(data, "is_active", "isActive", default=True),
            owner_id=_first(data, "owner_id", "owner"),
            priority=data.get("priority", 0),
            cooldown_seconds=_first(data, "cooldown_seconds", "cooldownPeriod", default=0),
            max_executions=data.get("max_executions"),
            group_id=_first(data, "group_id", "groupId"),
            location=data.get("location"),
            last_run=datetime.fromisoformat(last_run) if last_run else None,
            execution_count=data.get("execution_count", 0),
        )


# =============================================================================
# Schedules and Groups
# =============================================================================


@dataclass
class Schedule:
    """A weekly recurring time or solar trigger bound to one action."""

    id: str
    name: str
    trigger: TimeTrigger | SolarTrigger
    days: FrozenSet[str]
    action: Action
    is_active: bool = True
    group_id: Optional[str] = None
    location: Optional[str] = None
    priority: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.trigger, TIMED_TRIGGERS):
            raise ConfigurationError("Schedule trigger must be time, sunrise or sunset")
        self.days = normalize_days(self.days)
        if not self.days:
            raise ConfigurationError(f"Schedule {self.id} needs at least one day")

    @property
    def effective_trigger(self) -> TimeTrigger | SolarTrigger:
        """Trigger restricted to the schedule's days."""
        return replace(self.trigger, days=self.days)

    def to_dict(self) -> Dict[str, Any]:
        trigger = serialize_trigger(self.trigger)
        trigger.pop("days", None)
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "trigger": trigger,
            "days": sorted(self.days, key=DAY_NAMES.index),
            "action": self.action.to_dict(),
            "group_id": self.group_id,
            "location": self.location,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Schedule":
        action_data = data.get("action")
        if isinstance(action_data, str):
            # Original shape: action name with sibling settings/target fields
            action_data = {**data, "type": action_data}
            action_data.pop("action", None)
            action_data.pop("trigger", None)
        if action_data is None:
            raise ConfigurationError("Schedule requires an action")
        return cls(
            id=_first(data, "id", "_id") or _new_id(),
            name=data.get("name", ""),
            trigger=parse_trigger(data["trigger"]),
            days=_first(data, "days", default=()),
            action=Action.from_dict(action_data),
            is_active=_first(data, "is_active", "isActive", default=True),
            group_id=_first(data, "group_id", "groupId"),
            location=data.get("location"),
            priority=data.get("priority", 0),
        )


@dataclass
class GroupAutomation:
    """Rule-shaped automation entries embedded in a group."""

    enabled: bool = False
    rules: List[Rule] = field(default_factory=list)


@dataclass
class GroupSchedule:
    """Schedules embedded in a group."""

    enabled: bool = False
    schedules: List[Schedule] = field(default_factory=list)


@dataclass
class Group:
    """A set of devices controlled together."""

    id: str
    name: str
    device_ids: Tuple[str, ...] = ()
    automation: GroupAutomation = field(default_factory=GroupAutomation)
    schedule: GroupSchedule = field(default_factory=GroupSchedule)
    location: Optional[str] = None

    def __post_init__(self) -> None:
        ids = tuple(self.device_ids)
        if len(set(ids)) != len(ids):
            raise ConfigurationError(f"Group {self.id} has duplicate device ids")
        self.device_ids = ids

    def has_member(self, device_id: str) -> bool:
        return device_id in self.device_ids

    def validate(self) -> None:
        """Raise ConfigurationError if the group cannot be saved."""
        if self.automation.enabled and not self.automation.rules:
            raise ConfigurationError(f"Group {self.id}: enabled automation needs at least one rule")
        if self.schedule.enabled and not self.schedule.schedules:
            raise ConfigurationError(f"Group {self.id}: enabled schedule needs at least one entry")
        for rule in self.automation.rules:
            rule.validate()
        actions = [a for r in self.automation.rules for a in r.actions]
        actions += [s.action for s in self.schedule.schedules]
        for action in actions:
            if isinstance(action.target, RandomDevices) and action.group_id in (None, self.id):
                if action.target.count > len(self.device_ids):
                    raise ConfigurationError(
                        f"Group {self.id}: random count {action.target.count} exceeds "
                        f"{len(self.device_ids)} members"
                    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "device_ids": list(self.device_ids),
            "location": self.location,
            "automation": {
                "enabled": self.automation.enabled,
                "rules": [r.to_dict() for r in self.automation.rules],
            },
            "schedule": {
                "enabled": self.schedule.enabled,
                "schedules": [s.to_dict() for s in self.schedule.schedules],
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Group":
        automation = data.get("automation") or {}
        schedule = data.get("schedule") or {}
        return cls(
            id=_first(data, "id", "_id") or _new_id(),
            name=data.get("name", ""),
            device_ids=tuple(_first(data, "device_ids", "devices", default=())),
            automation=GroupAutomation(
                enabled=automation.get("enabled", False),
                rules=[Rule.from_dict(r) for r in automation.get("rules", [])],
            ),
            schedule=GroupSchedule(
                enabled=schedule.get("enabled", False),
                schedules=[Schedule.from_dict(s) for s in schedule.get("schedules", [])],
            ),
            location=data.get("location"),
        )


# =============================================================================
# Scenes and Timers
# =============================================================================


@dataclass(frozen=True)
class DeviceState:
    """Desired state of one device within a scene."""

    device_id: str
    power_state: str = "on"
    settings: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.power_state not in ("on", "off"):
            raise ConfigurationError(f"power_state must be 'on' or 'off', got {self.power_state!r}")


@dataclass
class Scene:
    """A named snapshot of several devices' states."""

    id: str
    name: str
    device_states: List[DeviceState]
    is_default: bool = False
    group_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.device_states:
            raise ConfigurationError(f"Scene {self.id} needs at least one device state")
        ids = [s.device_id for s in self.device_states]
        if len(set(ids)) != len(ids):
            raise ConfigurationError(f"Scene {self.id} lists a device more than once")

    @property
    def device_ids(self) -> Tuple[str, ...]:
        return tuple(s.device_id for s in self.device_states)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "is_default": self.is_default,
            "group_id": self.group_id,
            "device_states": [
                {
                    "device_id": s.device_id,
                    "power_state": s.power_state,
                    "settings": dict(s.settings),
                }
                for s in self.device_states
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Scene":
        return cls(
            id=_first(data, "id", "_id") or _new_id(),
            name=data.get("name", ""),
            device_states=[
                DeviceState(
                    device_id=_first(s, "device_id", "deviceId"),
                    power_state=_first(s, "power_state", "powerState", default="on"),
                    settings=dict(s.get("settings") or {}),
                )
                for s in _first(data, "device_states", "deviceStates", default=[])
            ],
            is_default=_first(data, "is_default", "isDefault", default=False),
            group_id=_first(data, "group_id", "groupId"),
        )


@dataclass
class Timer:
    """A one-shot or weekly recurring command for a single device."""

    id: str
    device_id: str
    command: ActionType
    scheduled_time: datetime
    settings: Dict[str, Any] = field(default_factory=dict)
    is_recurring: bool = False
    recurring_days: FrozenSet[str] = frozenset()
    is_active: bool = True
    name: str = ""

    def __post_init__(self) -> None:
        self.command = _action_type(self.command)
        if self.command == ActionType.NOTIFICATION:
            raise ConfigurationError("Timers cannot send notifications")
        self.recurring_days = normalize_days(self.recurring_days)
        if self.is_recurring and not self.recurring_days:
            raise ConfigurationError("Recurring timer needs at least one recurring day")
        if not self.is_recurring and self.recurring_days:
            raise ConfigurationError("recurring_days given for a non-recurring timer")

    def to_action(self) -> Action:
        return Action(
            command=self.command,
            target=SpecificDevices(device_ids=(self.device_id,)),
            settings=dict(self.settings),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "device_id": self.device_id,
            "action": self.command.value,
            "settings": dict(self.settings),
            "scheduled_time": self.scheduled_time.isoformat(),
            "is_recurring": self.is_recurring,
            "recurring_days": sorted(self.recurring_days, key=DAY_NAMES.index),
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Timer":
        scheduled = _first(data, "scheduled_time", "scheduledTime")
        if isinstance(scheduled, str):
            scheduled = datetime.fromisoformat(scheduled)
        return cls(
            id=_first(data, "id", "_id") or _new_id(),
            device_id=_first(data, "device_id", "deviceId"),
            command=_action_type(_first(data, "action", "command", "type")),
            scheduled_time=scheduled,
            settings=dict(data.get("settings") or {}),
            is_recurring=_first(data, "is_recurring", "isRecurring", default=False),
            recurring_days=_first(data, "recurring_days", "recurringDays", default=()),
            is_active=_first(data, "is_active", "isActive", default=True),
            name=data.get("name", ""),
        )


# =============================================================================
# Dispatch Results
# =============================================================================


@dataclass(frozen=True)
class CommandResult:
    """What a device command sink reports for one command."""

    success: bool
    duration_ms: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class DeviceOutcome:
    """Per-device result inside a dispatch batch."""

    device_id: str
    success: bool
    duration_ms: int = 0
    error: Optional[str] = None


@dataclass
class DispatchResult:
    """Aggregated result of dispatching one or more actions."""

    successful: List[DeviceOutcome] = field(default_factory=list)
    failed: List[DeviceOutcome] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        """A batch succeeds if at least one device succeeded."""
        return len(self.successful) > 0

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed)

    @property
    def affected_devices(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(o.device_id for o in self.successful))

    def merge(self, other: "DispatchResult") -> "DispatchResult":
        return DispatchResult(
            successful=self.successful + other.successful,
            failed=self.failed + other.failed,
            duration_ms=self.duration_ms + other.duration_ms,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successful": [{"device_id": o.device_id} for o in self.successful],
            "failed": [{"device_id": o.device_id, "error": o.error} for o in self.failed],
            "total_devices": self.total,
            "duration_ms": self.duration_ms,
        }


# =============================================================================
# Execution Records
# =============================================================================


@dataclass(frozen=True)
class ExecutionRecord:
    """Immutable audit entry for one automation run."""

    subject_id: str
    subject_type: SubjectType
    triggered_by: TriggeredBy
    success: bool
    duration_ms: int
    affected_devices: Tuple[str, ...]
    error: Optional[str]
    timestamp: datetime  # When the run started
    finished_at: Optional[datetime] = None
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "subject_type": self.subject_type.value,
            "triggered_by": self.triggered_by.value,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "affected_devices": list(self.affected_devices),
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionRecord":
        finished = data.get("finished_at")
        return cls(
            id=data.get("id") or _new_id(),
            subject_id=data["subject_id"],
            subject_type=SubjectType(data.get("subject_type", "rule")),
            triggered_by=TriggeredBy(data.get("triggered_by", "manual")),
            success=data["success"],
            duration_ms=data.get("duration_ms", 0),
            affected_devices=tuple(data.get("affected_devices", ())),
            error=data.get("error"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            finished_at=datetime.fromisoformat(finished) if finished else None,
        )


# =============================================================================
# Conflicts
# =============================================================================


@dataclass(frozen=True)
class Conflict:
    """Two active automations with overlapping windows and opposing actions."""

    subject_id: str
    other_id: str
    shared_devices: FrozenSet[str]
    actions: Tuple[ActionType, ActionType]  # (subject's, other's)
    subject_priority: int = 0
    other_priority: int = 0

    @property
    def is_blocking(self) -> bool:
        """Equal priorities mean nothing decides which side wins."""
        return self.subject_priority == self.other_priority

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "other_id": self.other_id,
            "shared_devices": sorted(self.shared_devices),
            "actions": [a.value for a in self.actions],
            "subject_priority": self.subject_priority,
            "other_priority": self.other_priority,
            "blocking": self.is_blocking,
        }


@dataclass(frozen=True)
class ConflictResolution:
    """Caller-supplied directive for resolving conflicts."""

    type: ResolutionType
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConflictResolution":
        try:
            resolution_type = ResolutionType(data.get("type"))
        except ValueError as e:
            raise ConfigurationError(f"Unknown resolution type: {data.get('type')}") from e
        return cls(type=resolution_type, parameters=dict(data.get("parameters") or {}))
