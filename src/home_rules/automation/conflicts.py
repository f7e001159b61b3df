"""
Conflict detection and resolution.

Two active automations conflict when some pair of their triggers can fire in
the same window and some pair of their actions drive a shared device in
opposite directions. Detection is a synchronous pre-flight check over
in-memory state; resolution applies a caller-supplied directive and never
decides on its own.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from itertools import product
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .evaluators import TriggerEvaluator
from .models import (
    DEVICE_TRIGGERS,
    Action,
    ActionType,
    Conflict,
    ConflictResolution,
    Group,
    ManualTrigger,
    ResolutionType,
    Rule,
    SETTING_FIELDS,
    Schedule,
    SolarTrigger,
    SpecificDevices,
    TimeTrigger,
    TriggerConfig,
)

logger = logging.getLogger(__name__)

_POWER_COMMANDS = frozenset({ActionType.TURN_ON, ActionType.TURN_OFF, ActionType.TOGGLE})


# =============================================================================
# Normalised View
# =============================================================================


@dataclass(frozen=True)
class ActionFootprint:
    """What one action does, and to which devices it may do it."""

    command: ActionType
    settings: Dict[str, Any]
    devices: FrozenSet[str]


@dataclass(frozen=True)
class Automation:
    """Rule or schedule reduced to what conflict detection needs."""

    id: str
    triggers: Tuple[TriggerConfig, ...]
    actions: Tuple[ActionFootprint, ...]
    priority: int = 0
    location: Optional[str] = None
    is_active: bool = True


def action_devices(
    action: Action, scope_id: Optional[str], groups: Mapping[str, Group]
) -> FrozenSet[str]:
    """
    Devices an action may touch.

    Specific targets touch their ids. All and random targets may touch any
    member of their scope group.
    """
    if isinstance(action.target, SpecificDevices):
        return frozenset(action.target.device_ids)
    group = groups.get(action.group_id or scope_id or "")
    if group is None:
        return frozenset()
    return frozenset(group.device_ids)


def rule_automation(rule: Rule, groups: Mapping[str, Group]) -> Automation:
    """Build the conflict view of a rule."""
    return Automation(
        id=rule.id,
        triggers=tuple(rule.triggers),
        actions=tuple(
            ActionFootprint(a.command, dict(a.settings), action_devices(a, rule.group_id, groups))
            for a in rule.actions
        ),
        priority=rule.priority,
        location=rule.location,
        is_active=rule.is_active,
    )


def schedule_automation(schedule: Schedule, groups: Mapping[str, Group]) -> Automation:
    """Build the conflict view of a schedule."""
    action = schedule.action
    return Automation(
        id=schedule.id,
        triggers=(schedule.effective_trigger,),
        actions=(
            ActionFootprint(
                action.command,
                dict(action.settings),
                action_devices(action, schedule.group_id, groups),
            ),
        ),
        priority=schedule.priority,
        location=schedule.location,
        is_active=schedule.is_active,
    )


# =============================================================================
# Overlap and Opposition
# =============================================================================


def _days_intersect(a: FrozenSet[str], b: FrozenSet[str]) -> bool:
    # Empty = every day
    if not a or not b:
        return True
    return bool(a & b)


def windows_overlap(
    a: TriggerConfig,
    b: TriggerConfig,
    evaluator: TriggerEvaluator,
    day: date,
    location: Optional[str] = None,
) -> bool:
    """
    Check whether two triggers can fire in the same window.

    Args:
        a: First trigger
        b: Second trigger
        evaluator: Supplies the solar calendar and polling interval
        day: Day used to place solar triggers
        location: Location used for solar lookups

    Returns:
        True if both may fire together
    """
    if isinstance(a, ManualTrigger) or isinstance(b, ManualTrigger):
        return False

    if isinstance(a, TimeTrigger) and isinstance(b, TimeTrigger):
        return a.at == b.at and _days_intersect(a.days, b.days)

    if isinstance(a, SolarTrigger) and isinstance(b, SolarTrigger):
        if a.event != b.event or not _days_intersect(a.days, b.days):
            return False
        gap = timedelta(minutes=abs(a.offset_minutes - b.offset_minutes))
        return gap < evaluator.poll_interval

    if isinstance(a, SolarTrigger) and isinstance(b, TimeTrigger):
        a, b = b, a
    if isinstance(a, TimeTrigger) and isinstance(b, SolarTrigger):
        if not _days_intersect(a.days, b.days):
            return False
        instant = evaluator.solar_instant(b, location, day)
        return (instant.hour, instant.minute) == (a.at.hour, a.at.minute)

    if isinstance(a, DEVICE_TRIGGERS) and isinstance(b, DEVICE_TRIGGERS):
        return a.device_id == b.device_id

    return False


def actions_oppose(
    a: ActionType,
    a_settings: Mapping[str, Any],
    b: ActionType,
    b_settings: Mapping[str, Any],
) -> bool:
    """
    Check whether two commands drive a device in opposite directions.

    turn_on opposes turn_off, toggle opposes every power command, and the
    same set_* command opposes itself when the values differ.
    """
    if {a, b} == {ActionType.TURN_ON, ActionType.TURN_OFF}:
        return True
    if ActionType.TOGGLE in (a, b) and a in _POWER_COMMANDS and b in _POWER_COMMANDS:
        return True
    if a == b and a in SETTING_FIELDS:
        key = SETTING_FIELDS[a]
        return a_settings.get(key) != b_settings.get(key)
    return False


# =============================================================================
# Detection
# =============================================================================


class ConflictDetector:
    """Finds conflicts between one automation and a set of others."""

    def __init__(self, trigger_evaluator: TriggerEvaluator) -> None:
        self._triggers = trigger_evaluator

    def detect(
        self,
        subject: Automation,
        others: Iterable[Automation],
        day: date,
    ) -> List[Conflict]:
        """
        Detect conflicts between subject and every other active automation.

        Args:
            subject: Automation being checked
            others: Candidates (inactive ones and the subject itself are skipped)
            day: Day used to place solar triggers

        Returns:
            One Conflict per conflicting other automation
        """
        conflicts: List[Conflict] = []

        for other in others:
            if other.id == subject.id or not other.is_active:
                continue

            location = subject.location or other.location
            overlap = any(
                windows_overlap(ta, tb, self._triggers, day, location)
                for ta, tb in product(subject.triggers, other.triggers)
            )
            if not overlap:
                continue

            shared: set[str] = set()
            pair: Optional[Tuple[ActionType, ActionType]] = None
            for fa, fb in product(subject.actions, other.actions):
                devices = fa.devices & fb.devices
                if devices and actions_oppose(fa.command, fa.settings, fb.command, fb.settings):
                    shared |= devices
                    pair = pair or (fa.command, fb.command)

            if pair is not None:
                conflict = Conflict(
                    subject_id=subject.id,
                    other_id=other.id,
                    shared_devices=frozenset(shared),
                    actions=pair,
                    subject_priority=subject.priority,
                    other_priority=other.priority,
                )
                logger.debug(
                    f"Conflict: {subject.id} vs {other.id} on {sorted(shared)} "
                    f"({pair[0].value}/{pair[1].value})"
                )
                conflicts.append(conflict)

        return conflicts


# =============================================================================
# Resolution
# =============================================================================


@dataclass
class ResolutionResult:
    """Changes a resolution directive asks the engine to apply."""

    subject_id: str
    resolution: ResolutionType
    disabled: List[str] = field(default_factory=list)
    priority_changes: Dict[str, int] = field(default_factory=dict)
    remaining: List[Conflict] = field(default_factory=list)  # Filled in after re-check

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "resolution": self.resolution.value,
            "disabled": list(self.disabled),
            "priority_changes": dict(self.priority_changes),
            "remaining": [c.to_dict() for c in self.remaining],
        }


def apply_resolution(
    subject_id: str,
    conflicts: List[Conflict],
    resolution: ConflictResolution,
) -> ResolutionResult:
    """
    Work out what a resolution directive changes.

    Args:
        subject_id: Automation whose conflicts are being resolved
        conflicts: Its current conflicts
        resolution: Caller-supplied directive

    Returns:
        ResolutionResult listing automations to disable and priorities to set

    Raises:
        ConfigurationError: Unsupported directive or invalid parameters
    """
    result = ResolutionResult(subject_id=subject_id, resolution=resolution.type)

    if resolution.type == ResolutionType.MERGE:
        raise ConfigurationError("merge resolution is not supported")

    if not conflicts:
        return result

    if resolution.type == ResolutionType.DISABLE_OTHER:
        conflicting = [c.other_id for c in conflicts]
        ids = list(resolution.parameters.get("ids") or conflicting)
        unknown = [i for i in ids if i not in conflicting]
        if unknown:
            raise ConfigurationError(f"Not in conflict with {subject_id}: {', '.join(unknown)}")
        result.disabled = list(dict.fromkeys(ids))

    elif resolution.type == ResolutionType.DISABLE_SELF:
        result.disabled = [subject_id]

    elif resolution.type == ResolutionType.PRIORITY:
        required = max(c.other_priority for c in conflicts) + 1
        requested = resolution.parameters.get("priority", required)
        if requested < required:
            raise ConfigurationError(
                f"priority {requested} does not exceed conflicting priority {required - 1}"
            )
        result.priority_changes = {subject_id: requested}

    return result
