"""
Rule presets - ready-made templates for common group automations.

Each preset returns a plain Rule; save it with RuleEngine.save_rule() like
any hand-built rule.
"""

from typing import Optional

from .models import (
    Action,
    ActionType,
    AllDevices,
    DeviceStateTrigger,
    DispatchPolicy,
    Rule,
    SolarTrigger,
    TimeTrigger,
    TriggerType,
    normalize_days,
    parse_time_of_day,
)


def lights_on_at_sunset(
    rule_id: str,
    group_id: str,
    *,
    offset_minutes: int = 0,
    brightness: Optional[int] = None,
    stagger_ms: int = 0,
    is_active: bool = True,
) -> Rule:
    """
    Create a rule to turn a group's lights on at sunset.

    Args:
        rule_id: Unique rule ID
        group_id: Group whose devices to turn on
        offset_minutes: Minutes relative to sunset (negative = before)
        brightness: Optional brightness (0-100) to apply after turning on
        stagger_ms: Interval between devices (0 = all at once)
        is_active: Whether rule is active

    Returns:
        Configured Rule

    Example:
        rule = lights_on_at_sunset(
            "porch_lights",
            "porch",
            offset_minutes=-15,
            stagger_ms=500,
        )
    """
    policy = DispatchPolicy.sequence(stagger_ms) if stagger_ms else None
    actions = [Action(command=ActionType.TURN_ON, target=AllDevices(), policy=policy)]
    if brightness is not None:
        actions.append(
            Action(
                command=ActionType.SET_BRIGHTNESS,
                target=AllDevices(),
                settings={"brightness": brightness},
            )
        )

    return Rule(
        id=rule_id,
        name="Lights on at sunset",
        triggers=[SolarTrigger(event=TriggerType.SUNSET, offset_minutes=offset_minutes)],
        conditions=[],
        actions=actions,
        category="lighting",
        is_active=is_active,
        group_id=group_id,
    )


def all_off_at(
    rule_id: str,
    group_id: str,
    at: str,
    *,
    days: Optional[list[str]] = None,
    is_active: bool = True,
) -> Rule:
    """
    Create a rule to turn every device in a group off at a fixed time.

    Args:
        rule_id: Unique rule ID
        group_id: Group to switch off
        at: Time of day, "HH:MM"
        days: Weekdays to run on (None = every day)
        is_active: Whether rule is active

    Returns:
        Configured Rule
    """
    return Rule(
        id=rule_id,
        name=f"All off at {at}",
        triggers=[TimeTrigger(at=parse_time_of_day(at), days=normalize_days(days or []))],
        conditions=[],
        actions=[Action(command=ActionType.TURN_OFF, target=AllDevices())],
        type="scheduled",
        is_active=is_active,
        group_id=group_id,
    )


def auto_off_when_idle_sensor(
    rule_id: str,
    sensor_id: str,
    group_id: str,
    *,
    delay_seconds: int = 300,
    attribute: str = "motion",
    is_active: bool = True,
) -> Rule:
    """
    Create a rule to turn a group off when a sensor stops reporting activity.

    Good for: bathroom fans, hallway lights, garage lights.

    Args:
        rule_id: Unique rule ID
        sensor_id: Motion/occupancy sensor device ID
        group_id: Group to switch off
        delay_seconds: Delay before turning off (0-3600)
        attribute: Sensor property that goes False when idle
        is_active: Whether rule is active

    Returns:
        Configured Rule
    """
    return Rule(
        id=rule_id,
        name="Auto off when idle",
        triggers=[
            DeviceStateTrigger(
                device_id=sensor_id,
                attribute=attribute,
                to_value=False,
            )
        ],
        conditions=[],
        actions=[
            Action(command=ActionType.TURN_OFF, target=AllDevices(), delay=delay_seconds)
        ],
        type="advanced",
        category="energy",
        is_active=is_active,
        group_id=group_id,
        cooldown_seconds=delay_seconds,
    )
