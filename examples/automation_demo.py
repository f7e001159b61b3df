#!/usr/bin/env python3
"""
Demo of the RuleEngine with a living-room group.

This example demonstrates:
1. Setting up the engine with mock collaborators
2. A group with an embedded motion rule
3. Group control with random targets and sequencing
4. Scenes, timers and a weekly schedule
5. Conflict detection and resolution
6. Execution history and statistics

Run with: python -m examples.automation_demo
"""

import asyncio
import logging
from datetime import datetime, time, timedelta, UTC

from home_rules.core.bus import Event, EventBus, EventFilter
from home_rules.automation import (
    Action,
    ActionType,
    AllDevices,
    ConflictError,
    DeviceStateTrigger,
    DispatchPolicy,
    FixedClock,
    FixedSolarCalendar,
    Group,
    GroupAutomation,
    InMemoryWorldState,
    MockCommandSink,
    Rule,
    RuleEngine,
    Schedule,
    TimeTrigger,
    Timer,
    all_off_at,
    lights_on_at_sunset,
)


async def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 60)
    print("RuleEngine Demo")
    print("=" * 60)

    # 1. Collaborators
    clock = FixedClock(datetime(2025, 1, 15, 18, 55, tzinfo=UTC))
    world = InMemoryWorldState(
        {
            "lamp": {"power_state": "off", "settings": {"brightness": 30}},
            "spot": {"power_state": "off", "settings": {}},
            "strip": {"power_state": "off", "settings": {"color": "warm"}},
            "hall_pir": {"motion": False},
        }
    )
    sink = MockCommandSink(latency=0.01)
    bus = EventBus()
    bus.subscribe(
        lambda e: print(f"   [bus] {e.type} {e.subject_id}"),
        EventFilter(event_type="automation.executed"),
    )

    engine = RuleEngine(sink, clock, FixedSolarCalendar(sunset=time(19, 0)), world_state=world, bus=bus)

    # 2. Group with an embedded motion rule
    print("\n1. Saving living room group...")
    motion = Rule(
        id="living_motion",
        name="Lights on with motion",
        triggers=[DeviceStateTrigger(device_id="hall_pir", attribute="motion", to_value=True)],
        conditions=[],
        actions=[Action(command=ActionType.TURN_ON, target=AllDevices())],
    )
    living = Group(
        id="living",
        name="Living Room",
        device_ids=("lamp", "spot", "strip"),
        automation=GroupAutomation(enabled=True, rules=[motion]),
    )
    engine.save_group(living)
    print(f"   ✓ {living.name}: {len(living.device_ids)} devices, 1 rule")

    # 3. Motion event
    print("\n2. Motion detected in the hall...")
    result = await engine.handle_event(
        Event(
            type="device.state_changed",
            source="devices",
            device_id="hall_pir",
            payload={"old_state": {"motion": False}, "new_state": {"motion": True}},
        )
    )
    print(f"   ✓ Rules triggered: {result.rules_triggered}")

    # 4. Group control
    print("\n3. Turning off two random devices one by one...")
    dispatch = await engine.control_group(
        "living",
        ActionType.TURN_OFF,
        {"target": "random", "random_count": 2},
        sequencing=DispatchPolicy.sequence(200),
    )
    print(f"   ✓ Turned off: {list(dispatch.affected_devices)}")

    # 5. Scenes
    print("\n4. Capturing and replaying a scene...")
    engine.capture_scene("living", "Evening", scene_id="evening")
    await engine.control_group("living", "turn_on")
    await engine.activate_scene("evening")
    print(f"   ✓ Lamp after replay: {world.get('lamp')['power_state']}")

    # 6. Conflicts
    print("\n5. Checking conflicts...")
    engine.save_rule(lights_on_at_sunset("sunset_on", "living"))
    engine.save_rule(all_off_at("late_off", "living", "23:00"))
    try:
        engine.save_rule(all_off_at("sunset_off", "living", "19:00"))
    except ConflictError as e:
        print(f"   ✓ Refused: {e}")
    engine.save_rule(all_off_at("sunset_off", "living", "19:00"), override=True)
    outcome = engine.resolve_conflicts("sunset_on", {"type": "disable_other"})
    print(f"   ✓ Disabled: {outcome.disabled}")

    # 7. Timers and schedules
    print("\n6. Timer and schedule...")
    engine.set_timer(
        Timer(
            id="strip_color",
            device_id="strip",
            command=ActionType.SET_COLOR,
            settings={"color": "red"},
            scheduled_time=datetime(2025, 1, 15, 19, 0, tzinfo=UTC),
        )
    )
    engine.add_schedule(
        Schedule(
            id="weekday_morning",
            name="Weekday morning",
            trigger=TimeTrigger(at=time(7, 0)),
            days=frozenset({"mon", "tue", "wed", "thu", "fri"}),
            action=Action(command=ActionType.TURN_ON, target=AllDevices()),
            group_id="living",
        )
    )
    tick = await engine.tick(clock.advance(timedelta(minutes=5)))
    print(f"   ✓ Timers fired: {tick.scheduler.fired_timers}")
    print(f"   ✓ Timed rules run: {[r.subject_id for r in tick.rules.records]}")

    # 8. History
    print("\n7. History and statistics...")
    for record in engine.get_history(limit=5):
        print(f"   - {record.subject_type.value} {record.subject_id}: success={record.success}")
    stats = engine.rule_statistics()
    print(f"   ✓ {stats.total_rules} rules, {stats.active_rules} active")

    print("\n" + "=" * 60)
    print("Demo complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
