"""Tests for conflict detection and resolution."""

import pytest
from datetime import date, time

from home_rules.automation import (
    Action,
    ActionType,
    AllDevices,
    ConfigurationError,
    ConflictDetector,
    ConflictResolution,
    DeviceStateTrigger,
    FixedSolarCalendar,
    Group,
    ManualTrigger,
    MotionTrigger,
    ResolutionType,
    Rule,
    Schedule,
    SolarTrigger,
    SpecificDevices,
    TimeTrigger,
    TriggerEvaluator,
    TriggerType,
)
from home_rules.automation.conflicts import (
    actions_oppose,
    apply_resolution,
    rule_automation,
    schedule_automation,
    windows_overlap,
)


DAY = date(2025, 1, 15)


@pytest.fixture
def evaluator():
    return TriggerEvaluator(FixedSolarCalendar(sunrise=time(7, 0), sunset=time(19, 0)))


@pytest.fixture
def detector(evaluator):
    return ConflictDetector(evaluator)


@pytest.fixture
def groups():
    return {"living": Group(id="living", name="Living", device_ids=("lamp", "spot", "strip"))}


def rule_at(rule_id, at, command, device_ids, priority=0, settings=None, is_active=True):
    """Helper to build a time-triggered rule on specific devices."""
    return Rule(
        id=rule_id,
        name=rule_id,
        triggers=[TimeTrigger(at=at)],
        conditions=[],
        actions=[
            Action(
                command=command,
                target=SpecificDevices(tuple(device_ids)),
                settings=settings or {},
            )
        ],
        priority=priority,
        is_active=is_active,
    )


class TestWindows:
    """Tests for trigger window overlap."""

    def test_same_time(self, evaluator):
        assert windows_overlap(TimeTrigger(at=time(7, 0)), TimeTrigger(at=time(7, 0)),
                               evaluator, DAY)
        assert not windows_overlap(TimeTrigger(at=time(7, 0)), TimeTrigger(at=time(7, 1)),
                                   evaluator, DAY)

    def test_disjoint_days(self, evaluator):
        a = TimeTrigger(at=time(7, 0), days=frozenset({"mon"}))
        b = TimeTrigger(at=time(7, 0), days=frozenset({"tue"}))
        assert not windows_overlap(a, b, evaluator, DAY)

    def test_solar_offsets(self, evaluator):
        a = SolarTrigger(event=TriggerType.SUNSET, offset_minutes=0)
        b = SolarTrigger(event=TriggerType.SUNSET, offset_minutes=10)
        assert windows_overlap(a, a, evaluator, DAY)
        assert not windows_overlap(a, b, evaluator, DAY)

    def test_time_against_sunrise(self, evaluator):
        sunrise = SolarTrigger(event=TriggerType.SUNRISE)
        assert windows_overlap(TimeTrigger(at=time(7, 0)), sunrise, evaluator, DAY)
        assert windows_overlap(sunrise, TimeTrigger(at=time(7, 0)), evaluator, DAY)

    def test_manual_never_overlaps(self, evaluator):
        assert not windows_overlap(ManualTrigger(), ManualTrigger(), evaluator, DAY)

    def test_same_device_event(self, evaluator):
        assert windows_overlap(DeviceStateTrigger(device_id="pir"), MotionTrigger(device_id="pir"),
                               evaluator, DAY)
        assert not windows_overlap(DeviceStateTrigger(device_id="pir"),
                                   MotionTrigger(device_id="door"), evaluator, DAY)


class TestOpposition:
    """Tests for opposing actions."""

    def test_on_off(self):
        assert actions_oppose(ActionType.TURN_ON, {}, ActionType.TURN_OFF, {})

    def test_toggle_opposes_power(self):
        assert actions_oppose(ActionType.TOGGLE, {}, ActionType.TURN_ON, {})

    def test_same_brightness_agrees(self):
        assert not actions_oppose(
            ActionType.SET_BRIGHTNESS, {"brightness": 50}, ActionType.SET_BRIGHTNESS,
            {"brightness": 50},
        )
        assert actions_oppose(
            ActionType.SET_BRIGHTNESS, {"brightness": 50}, ActionType.SET_BRIGHTNESS,
            {"brightness": 20},
        )

    def test_different_settings_commands_do_not_oppose(self):
        assert not actions_oppose(
            ActionType.SET_BRIGHTNESS, {"brightness": 50}, ActionType.SET_COLOR, {"color": "red"}
        )


class TestDetector:
    """Tests for ConflictDetector."""

    def test_on_off_at_same_time_on_shared_device(self, detector, groups):
        on = rule_automation(rule_at("on", time(7, 0), ActionType.TURN_ON, ["lamp"]), groups)
        off = rule_automation(rule_at("off", time(7, 0), ActionType.TURN_OFF, ["lamp", "fan"]),
                              groups)
        conflicts = detector.detect(on, [on, off], DAY)
        assert len(conflicts) == 1
        assert conflicts[0].other_id == "off"
        assert conflicts[0].shared_devices == frozenset({"lamp"})
        assert conflicts[0].actions == (ActionType.TURN_ON, ActionType.TURN_OFF)

    def test_disjoint_targets_do_not_conflict(self, detector, groups):
        on = rule_automation(rule_at("on", time(7, 0), ActionType.TURN_ON, ["lamp"]), groups)
        off = rule_automation(rule_at("off", time(7, 0), ActionType.TURN_OFF, ["fan"]), groups)
        assert detector.detect(on, [off], DAY) == []

    def test_inactive_other_skipped(self, detector, groups):
        on = rule_automation(rule_at("on", time(7, 0), ActionType.TURN_ON, ["lamp"]), groups)
        off = rule_automation(
            rule_at("off", time(7, 0), ActionType.TURN_OFF, ["lamp"], is_active=False), groups
        )
        assert detector.detect(on, [off], DAY) == []

    def test_group_scope_devices(self, detector, groups):
        schedule = Schedule(
            id="night",
            name="Night",
            trigger=TimeTrigger(at=time(7, 0)),
            days=frozenset({"wed"}),
            action=Action(command=ActionType.TURN_OFF, target=AllDevices()),
            group_id="living",
        )
        on = rule_automation(rule_at("on", time(7, 0), ActionType.TURN_ON, ["spot"]), groups)
        conflicts = detector.detect(on, [schedule_automation(schedule, groups)], DAY)
        assert [c.other_id for c in conflicts] == ["night"]

    def test_priority_difference_is_not_blocking(self, detector, groups):
        on = rule_automation(rule_at("on", time(7, 0), ActionType.TURN_ON, ["lamp"], priority=5),
                             groups)
        off = rule_automation(rule_at("off", time(7, 0), ActionType.TURN_OFF, ["lamp"]), groups)
        (conflict,) = detector.detect(on, [off], DAY)
        assert not conflict.is_blocking


class TestResolution:
    """Tests for apply_resolution."""

    @pytest.fixture
    def conflicts(self, detector, groups):
        on = rule_automation(rule_at("on", time(7, 0), ActionType.TURN_ON, ["lamp"]), groups)
        off = rule_automation(rule_at("off", time(7, 0), ActionType.TURN_OFF, ["lamp"],
                                      priority=3), groups)
        return detector.detect(on, [off], DAY)

    def test_disable_other(self, conflicts):
        result = apply_resolution("on", conflicts, ConflictResolution(ResolutionType.DISABLE_OTHER))
        assert result.disabled == ["off"]

    def test_disable_other_unknown_id(self, conflicts):
        with pytest.raises(ConfigurationError):
            apply_resolution(
                "on",
                conflicts,
                ConflictResolution(ResolutionType.DISABLE_OTHER, {"ids": ["stranger"]}),
            )

    def test_disable_self(self, conflicts):
        result = apply_resolution("on", conflicts, ConflictResolution(ResolutionType.DISABLE_SELF))
        assert result.disabled == ["on"]

    def test_priority_defaults_above_others(self, conflicts):
        result = apply_resolution("on", conflicts, ConflictResolution(ResolutionType.PRIORITY))
        assert result.priority_changes == {"on": 4}

    def test_priority_too_low(self, conflicts):
        with pytest.raises(ConfigurationError):
            apply_resolution(
                "on", conflicts, ConflictResolution(ResolutionType.PRIORITY, {"priority": 3})
            )

    def test_merge_rejected(self, conflicts):
        with pytest.raises(ConfigurationError):
            apply_resolution("on", conflicts, ConflictResolution.from_dict({"type": "merge"}))

    def test_no_conflicts_changes_nothing(self):
        result = apply_resolution("on", [], ConflictResolution(ResolutionType.DISABLE_SELF))
        assert result.disabled == []
