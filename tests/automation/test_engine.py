"""Tests for the automation engine."""

import asyncio
import random

import pytest
from datetime import datetime, time, timedelta, UTC

from home_rules.core.bus import Event, EventBus, EventFilter
from home_rules.automation import (
    Action,
    ActionType,
    AllDevices,
    AutomationError,
    ConflictError,
    DeviceStateCondition,
    DeviceStateTrigger,
    EngineConfig,
    ExecutionInProgressError,
    ExecutionLimitError,
    FixedClock,
    FixedSolarCalendar,
    Group,
    GroupAutomation,
    GroupSchedule,
    InMemoryPersistence,
    InMemoryWorldState,
    ManualTrigger,
    MockCommandSink,
    Operator,
    Rule,
    RuleEngine,
    Schedule,
    SensorValueCondition,
    SpecificDevices,
    SubjectType,
    SystemClock,
    TimeTrigger,
    Timer,
    TriggeredBy,
    UnknownEntityError,
)
from home_rules.automation.engine import (
    BLOCKED,
    EXECUTED,
    MISSED_WINDOW,
    RULE_TOGGLED,
    SKIPPED,
)


# 2025-01-15 is a Wednesday
WEDNESDAY_0600 = datetime(2025, 1, 15, 6, 0, tzinfo=UTC)
WEDNESDAY_0700 = datetime(2025, 1, 15, 7, 0, tzinfo=UTC)


@pytest.fixture
def clock():
    return FixedClock(WEDNESDAY_0600)


@pytest.fixture
def sink():
    return MockCommandSink()


@pytest.fixture
def world():
    return InMemoryWorldState(
        {
            "lamp": {"power_state": "off", "settings": {"brightness": 40}},
            "spot": {"power_state": "off", "settings": {}},
            "strip": {"power_state": "off", "settings": {}},
            "pir": {"motion": False, "label": "hall"},
        }
    )


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def engine(sink, clock, world, persistence, bus):
    return RuleEngine(
        sink,
        clock,
        FixedSolarCalendar(sunrise=time(6, 30), sunset=time(19, 0)),
        persistence=persistence,
        world_state=world,
        bus=bus,
        rng=random.Random(3),
    )


@pytest.fixture
def living():
    return Group(id="living", name="Living Room", device_ids=("lamp", "spot", "strip"))


def motion_event(old=False, new=True) -> Event:
    """Helper to create a motion sensor change."""
    return Event(
        type="device.state_changed",
        source="devices",
        device_id="pir",
        payload={"old_state": {"motion": old}, "new_state": {"motion": new}},
    )


def motion_rule(rule_id="hall", devices=("lamp",), **kwargs) -> Rule:
    """Helper to create a rule turning devices on when motion starts."""
    return Rule(
        id=rule_id,
        name=rule_id,
        triggers=[DeviceStateTrigger(device_id="pir", attribute="motion", to_value=True)],
        conditions=kwargs.pop("conditions", []),
        actions=[Action(command=ActionType.TURN_ON, target=SpecificDevices(tuple(devices)))],
        **kwargs,
    )


def timed_rule(rule_id, command, devices=("lamp",), at=time(7, 0), **kwargs) -> Rule:
    """Helper to create a time-triggered rule."""
    return Rule(
        id=rule_id,
        name=rule_id,
        triggers=[TimeTrigger(at=at)],
        conditions=[],
        actions=[Action(command=command, target=SpecificDevices(tuple(devices)))],
        **kwargs,
    )


class TestRuleStorage:
    """Tests for saving, toggling and listing rules."""

    def test_save_and_get(self, engine, persistence):
        engine.save_rule(motion_rule())
        assert engine.get_rule("hall").name == "hall"
        assert [r.id for r in persistence.load_active_rules()] == ["hall"]

    def test_unknown_rule(self, engine):
        with pytest.raises(UnknownEntityError):
            engine.get_rule("nope")

    def test_unknown_group_scope(self, engine):
        rule = Rule(
            id="r",
            name="r",
            triggers=[ManualTrigger()],
            conditions=[],
            actions=[Action(command=ActionType.TURN_ON, target=AllDevices())],
            group_id="attic",
        )
        with pytest.raises(UnknownEntityError):
            engine.save_rule(rule)

    def test_equal_priority_conflict_blocks_activation(self, engine):
        engine.save_rule(timed_rule("on", ActionType.TURN_ON))
        with pytest.raises(ConflictError) as exc_info:
            engine.save_rule(timed_rule("off", ActionType.TURN_OFF))
        assert [c.other_id for c in exc_info.value.conflicts] == ["on"]

    def test_override_allows_activation(self, engine):
        engine.save_rule(timed_rule("on", ActionType.TURN_ON))
        engine.save_rule(timed_rule("off", ActionType.TURN_OFF), override=True)
        assert engine.get_rule("off").is_active

    def test_different_priority_is_not_blocking(self, engine):
        engine.save_rule(timed_rule("on", ActionType.TURN_ON, priority=1))
        engine.save_rule(timed_rule("off", ActionType.TURN_OFF))
        assert len(engine.check_conflicts("off")) == 1

    def test_disjoint_targets_do_not_conflict(self, engine):
        engine.save_rule(timed_rule("on", ActionType.TURN_ON, devices=("lamp",)))
        engine.save_rule(timed_rule("off", ActionType.TURN_OFF, devices=("spot",)))
        assert engine.check_conflicts("on") == []

    def test_toggle_flips_and_publishes(self, engine, events):
        engine.save_rule(motion_rule())
        engine.toggle_rule("hall")
        assert not engine.get_rule("hall").is_active
        assert [e.type for e in events if e.type == RULE_TOGGLED] == [RULE_TOGGLED]
        assert engine.list_rules(active=False)[0].id == "hall"

    def test_toggle_activation_is_gated(self, engine):
        engine.save_rule(timed_rule("on", ActionType.TURN_ON))
        engine.save_rule(timed_rule("off", ActionType.TURN_OFF, is_active=False))
        with pytest.raises(ConflictError):
            engine.toggle_rule("off", active=True)

    def test_delete(self, engine, persistence):
        engine.save_rule(motion_rule())
        assert engine.delete_rule("hall")
        assert not engine.delete_rule("hall")
        assert persistence.load_active_rules() == []


class TestEventProcessing:
    """Tests for event-driven rules."""

    @pytest.mark.asyncio
    async def test_motion_turns_lamp_on(self, engine, world, events):
        engine.save_rule(motion_rule())
        result = await engine.handle_event(motion_event())

        assert result.rules_triggered == 1
        assert result.records[0].success
        assert result.records[0].triggered_by == TriggeredBy.EVENT
        assert result.records[0].affected_devices == ("lamp",)
        assert world.get("lamp")["power_state"] == "on"
        executed = [e for e in events if e.type == EXECUTED]
        assert executed[0].subject_id == "hall"

    @pytest.mark.asyncio
    async def test_motion_ending_does_not_fire(self, engine, sink):
        engine.save_rule(motion_rule())
        result = await engine.handle_event(motion_event(old=True, new=False))
        assert result.rules_triggered == 0
        assert sink.get_calls() == []

    @pytest.mark.asyncio
    async def test_unrelated_event_type_ignored(self, engine):
        engine.save_rule(motion_rule())
        result = await engine.handle_event(Event(type="weather.update", source="web"))
        assert result.rules_evaluated == 0

    @pytest.mark.asyncio
    async def test_inactive_rule_ignored(self, engine):
        engine.save_rule(motion_rule(is_active=False))
        result = await engine.handle_event(motion_event())
        assert result.rules_triggered == 0

    @pytest.mark.asyncio
    async def test_unmet_conditions(self, engine, sink):
        condition = DeviceStateCondition(
            device_id="lamp", attribute="power_state", operator=Operator.EQUALS, value="on"
        )
        engine.save_rule(motion_rule(conditions=[condition]))
        result = await engine.handle_event(motion_event())
        assert result.rules_triggered == 0
        assert sink.get_calls() == []

    @pytest.mark.asyncio
    async def test_condition_error_records_failure(self, engine):
        condition = SensorValueCondition(
            device_id="pir", attribute="label", operator=Operator.GREATER_THAN, value=3
        )
        engine.save_rule(motion_rule(conditions=[condition]))
        result = await engine.handle_event(motion_event())
        assert result.rules_triggered == 0
        assert len(result.errors) == 1
        assert not result.records[0].success
        assert engine.get_history(subject_id="hall")[0].error == result.errors[0]

    @pytest.mark.asyncio
    async def test_cooldown_skips_until_elapsed(self, engine, clock):
        engine.save_rule(motion_rule(cooldown_seconds=300))
        first = await engine.handle_event(motion_event())
        second = await engine.handle_event(motion_event())
        clock.advance(timedelta(seconds=301))
        third = await engine.handle_event(motion_event())

        assert first.rules_triggered == 1
        assert second.skipped == ["hall"]
        assert third.rules_triggered == 1
        assert engine.get_rule("hall").execution_count == 2

    @pytest.mark.asyncio
    async def test_execution_limit(self, engine):
        engine.save_rule(motion_rule(max_executions=1))
        await engine.handle_event(motion_event())
        result = await engine.handle_event(motion_event())
        assert result.skipped == ["hall"]

    @pytest.mark.asyncio
    async def test_stop_on_error(self, engine, sink):
        rule = Rule(
            id="chain",
            name="chain",
            triggers=[ManualTrigger()],
            conditions=[],
            actions=[
                Action(
                    command=ActionType.TURN_ON,
                    target=SpecificDevices(("lamp",)),
                    continue_on_error=False,
                ),
                Action(command=ActionType.TURN_ON, target=SpecificDevices(("spot",))),
            ],
        )
        engine.save_rule(rule)
        sink.reject("lamp")
        record = await engine.manual_trigger("chain")
        assert not record.success
        assert sink.called_devices() == ["lamp"]

    @pytest.mark.asyncio
    async def test_disabled_engine(self, sink, clock, world):
        engine = RuleEngine(
            sink, clock, FixedSolarCalendar(), world_state=world,
            config=EngineConfig(enabled=False),
        )
        engine.save_rule(motion_rule())
        result = await engine.handle_event(motion_event())
        assert result.rules_evaluated == 0

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_execution(self, sink, clock, world):
        engine = RuleEngine(
            sink, clock, FixedSolarCalendar(), world_state=world,
            persistence=InMemoryPersistence(fail_appends=True),
        )
        engine.save_rule(motion_rule())
        result = await engine.handle_event(motion_event())
        assert result.records[0].success
        assert len(engine.get_history()) == 1


class TestManualTrigger:
    """Tests for manual_trigger."""

    @pytest.mark.asyncio
    async def test_runs_inactive_rule(self, engine, world):
        engine.save_rule(motion_rule(is_active=False))
        record = await engine.manual_trigger("hall")
        assert record.success
        assert record.triggered_by == TriggeredBy.MANUAL
        assert world.get("lamp")["power_state"] == "on"

    @pytest.mark.asyncio
    async def test_cooldown_raises_unless_forced(self, engine):
        engine.save_rule(motion_rule(cooldown_seconds=60))
        await engine.manual_trigger("hall")
        with pytest.raises(ExecutionLimitError, match="cooldown"):
            await engine.manual_trigger("hall")
        record = await engine.manual_trigger("hall", {"force": True})
        assert record.success

    @pytest.mark.asyncio
    async def test_limit_raises(self, engine):
        engine.save_rule(motion_rule(max_executions=1))
        await engine.manual_trigger("hall")
        with pytest.raises(ExecutionLimitError, match="limit"):
            await engine.manual_trigger("hall")

    @pytest.mark.asyncio
    async def test_unmet_conditions_recorded(self, engine, sink):
        condition = DeviceStateCondition(
            device_id="lamp", attribute="power_state", operator=Operator.EQUALS, value="on"
        )
        engine.save_rule(motion_rule(conditions=[condition]))
        record = await engine.manual_trigger("hall")
        assert not record.success
        assert record.error == "conditions not met"
        assert sink.get_calls() == []
        assert engine.get_history(subject_id="hall") == [record]

    @pytest.mark.asyncio
    async def test_skip_conditions(self, engine):
        condition = DeviceStateCondition(
            device_id="lamp", attribute="power_state", operator=Operator.EQUALS, value="on"
        )
        engine.save_rule(motion_rule(conditions=[condition]))
        record = await engine.manual_trigger("hall", {"skip_conditions": True})
        assert record.success

    @pytest.mark.asyncio
    async def test_no_overlapping_execution(self, engine, sink, events):
        engine.save_rule(motion_rule())
        sink.delay_for("lamp", 0.2)

        running = asyncio.create_task(engine.manual_trigger("hall"))
        await asyncio.sleep(0.05)

        with pytest.raises(ExecutionInProgressError):
            await engine.manual_trigger("hall")
        automatic = await engine.handle_event(motion_event())

        record = await running
        assert record.success
        assert automatic.skipped == ["hall"]
        assert any(e.type == SKIPPED and e.subject_id == "hall" for e in events)
        assert sink.called_devices() == ["lamp"]


class TestTimedRules:
    """Tests for time-triggered rules on engine ticks."""

    @pytest.mark.asyncio
    async def test_fires_once_per_minute(self, engine, clock):
        engine.save_rule(timed_rule("wake", ActionType.TURN_ON))
        clock.set(WEDNESDAY_0700)
        first = await engine.tick(WEDNESDAY_0700)
        second = await engine.tick(WEDNESDAY_0700 + timedelta(seconds=30))

        assert [r.subject_id for r in first.rules.records] == ["wake"]
        assert first.rules.records[0].triggered_by == TriggeredBy.SCHEDULED
        assert second.rules.records == []

    @pytest.mark.asyncio
    async def test_higher_priority_wins_shared_occurrence(self, engine, clock, world, events):
        engine.save_rule(timed_rule("on", ActionType.TURN_ON, priority=5))
        engine.save_rule(timed_rule("off", ActionType.TURN_OFF))
        clock.set(WEDNESDAY_0700)

        result = await engine.tick(WEDNESDAY_0700)

        assert [r.subject_id for r in result.rules.records] == ["on"]
        assert result.rules.blocked == ["off"]
        assert world.get("lamp")["power_state"] == "on"
        assert any(e.type == BLOCKED and e.subject_id == "off" for e in events)


class TestGroups:
    """Tests for groups, group control and embedded automation."""

    @pytest.mark.asyncio
    async def test_control_all(self, engine, living, world):
        engine.save_group(living)
        result = await engine.control_group("living", "turn_on")

        assert sorted(result.affected_devices) == ["lamp", "spot", "strip"]
        (record,) = engine.get_history(subject_id="living")
        assert record.subject_type == SubjectType.GROUP
        assert record.triggered_by == TriggeredBy.MANUAL

    @pytest.mark.asyncio
    async def test_control_random(self, engine, living, sink):
        engine.save_group(living)
        result = await engine.control_group(
            "living", ActionType.TURN_ON, {"target": "random", "random_count": 2}
        )
        assert result.total == 2
        assert len(set(sink.called_devices())) == 2

    @pytest.mark.asyncio
    async def test_control_specific_outside_group(self, engine, living):
        engine.save_group(living)
        result = await engine.control_group(
            "living", "turn_off", {"target": "specific", "device_ids": ["lamp", "garage"]}
        )
        assert [o.device_id for o in result.failed] == ["garage"]
        assert result.success

    @pytest.mark.asyncio
    async def test_control_sequenced(self, sink, clock, world, living):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        engine = RuleEngine(sink, clock, FixedSolarCalendar(), world_state=world, sleep=fake_sleep)
        engine.save_group(living)
        await engine.control_group("living", "turn_on", sequencing={"enabled": True, "interval": 250})
        assert sleeps == [0.25, 0.25]
        assert sink.called_devices() == ["lamp", "spot", "strip"]

    @pytest.mark.asyncio
    async def test_control_in_progress(self, engine, living, sink):
        engine.save_group(living)
        sink.delay_for("lamp", 0.2)
        running = asyncio.create_task(engine.control_group("living", "turn_on"))
        await asyncio.sleep(0.05)
        with pytest.raises(ExecutionInProgressError):
            await engine.control_group("living", "turn_off")
        await running

    @pytest.mark.asyncio
    async def test_embedded_rules_follow_automation_flag(self, engine, living, world):
        rule = Rule(
            id="living_motion",
            name="Living motion",
            triggers=[DeviceStateTrigger(device_id="pir", attribute="motion", to_value=True)],
            conditions=[],
            actions=[Action(command=ActionType.TURN_ON, target=AllDevices())],
        )
        living.automation = GroupAutomation(enabled=False, rules=[rule])
        engine.save_group(living)

        assert engine.get_rule("living_motion").group_id == "living"
        idle = await engine.handle_event(motion_event())
        assert idle.rules_triggered == 0

        living.automation.enabled = True
        engine.save_group(living)
        result = await engine.handle_event(motion_event())
        assert result.rules_triggered == 1
        assert all(world.get(d)["power_state"] == "on" for d in living.device_ids)

    def test_delete_group_removes_scenes(self, engine, living):
        engine.save_group(living)
        engine.capture_scene("living", "Evening", scene_id="evening")
        assert engine.delete_group("living")
        assert engine.scenes.list() == []
        with pytest.raises(UnknownEntityError):
            engine.get_group("living")


class TestSchedulesAndTimers:
    """Tests for schedules and timers driven by engine ticks."""

    @pytest.mark.asyncio
    async def test_group_schedule_runs(self, engine, living, clock, world):
        schedule = Schedule(
            id="morning",
            name="Morning",
            trigger=TimeTrigger(at=time(7, 0)),
            days=frozenset({"mon", "wed", "fri"}),
            action=Action(command=ActionType.TURN_ON, target=AllDevices()),
        )
        living.schedule = GroupSchedule(enabled=True, schedules=[schedule])
        engine.save_group(living)

        clock.set(WEDNESDAY_0700)
        result = await engine.tick(WEDNESDAY_0700)

        assert result.scheduler.fired_schedules == ["morning"]
        (record,) = engine.get_history(subject_id="morning")
        assert record.subject_type == SubjectType.SCHEDULE
        assert world.get("strip")["power_state"] == "on"
        with pytest.raises(AutomationError):
            engine.remove_schedule("morning")

    @pytest.mark.asyncio
    async def test_missed_schedule_is_published(self, engine, living, bus, clock):
        engine.save_group(living)
        engine.add_schedule(
            Schedule(
                id="morning",
                name="Morning",
                trigger=TimeTrigger(at=time(7, 0)),
                days=frozenset({"wed"}),
                action=Action(command=ActionType.TURN_ON, target=AllDevices()),
                group_id="living",
            )
        )
        missed = []
        bus.subscribe(missed.append, EventFilter(event_type=MISSED_WINDOW))

        await engine.tick(WEDNESDAY_0700 - timedelta(minutes=2))
        await engine.tick(WEDNESDAY_0700 + timedelta(minutes=10))

        assert [e.subject_id for e in missed] == ["morning"]
        assert engine.get_history(subject_id="morning") == []

    @pytest.mark.asyncio
    async def test_disabled_schedule_does_not_run(self, engine, living, clock):
        engine.save_group(living)
        engine.add_schedule(
            Schedule(
                id="morning",
                name="Morning",
                trigger=TimeTrigger(at=time(7, 0)),
                days=frozenset({"wed"}),
                action=Action(command=ActionType.TURN_ON, target=AllDevices()),
                group_id="living",
            )
        )
        engine.enable_schedule("morning", enabled=False)
        clock.set(WEDNESDAY_0700)
        result = await engine.tick(WEDNESDAY_0700)
        assert result.scheduler.fired_schedules == []

    @pytest.mark.asyncio
    async def test_timer_fires_and_is_dropped(self, engine, clock, world, persistence):
        engine.set_timer(
            Timer(
                id="t1",
                device_id="lamp",
                command=ActionType.SET_BRIGHTNESS,
                settings={"brightness": 80},
                scheduled_time=WEDNESDAY_0700,
            )
        )
        assert [t.id for t in persistence.load_timers()] == ["t1"]

        clock.set(WEDNESDAY_0700)
        result = await engine.tick(WEDNESDAY_0700)

        assert result.scheduler.fired_timers == ["t1"]
        assert world.get("lamp")["settings"]["brightness"] == 80
        assert engine.get_history(subject_id="t1")[0].subject_type == SubjectType.TIMER
        assert persistence.load_timers() == []

    def test_cancel_timer(self, engine, persistence):
        engine.set_timer(
            Timer(id="t1", device_id="lamp", command=ActionType.TURN_ON,
                  scheduled_time=WEDNESDAY_0700)
        )
        assert engine.cancel_timer("t1")
        assert not engine.cancel_timer("t1")
        assert persistence.load_timers() == []


class TestScenes:
    """Tests for scene activation through the engine."""

    @pytest.mark.asyncio
    async def test_activate_records_execution(self, engine, living, world):
        engine.save_group(living)
        engine.capture_scene("living", "Reading", scene_id="reading")
        world.update("lamp", {"power_state": "on", "settings": {"brightness": 100}})

        result = await engine.activate_scene("reading")

        assert result.success
        assert world.get("lamp") == {"power_state": "off", "settings": {"brightness": 40}}
        (record,) = engine.get_history(subject_id="reading")
        assert record.subject_type == SubjectType.SCENE


class TestConflictResolution:
    """Tests for resolving conflicts through the engine."""

    @pytest.fixture
    def conflicted(self, engine):
        engine.save_rule(timed_rule("on", ActionType.TURN_ON))
        engine.save_rule(timed_rule("off", ActionType.TURN_OFF), override=True)
        return engine

    def test_check(self, conflicted):
        (conflict,) = conflicted.check_conflicts("on")
        assert conflict.other_id == "off"
        assert conflict.is_blocking

    def test_disable_other(self, conflicted):
        outcome = conflicted.resolve_conflicts("on", {"type": "disable_other"})
        assert outcome.disabled == ["off"]
        assert not conflicted.get_rule("off").is_active
        assert outcome.remaining == []

    def test_priority(self, conflicted):
        outcome = conflicted.resolve_conflicts("on", {"type": "priority"})
        assert conflicted.get_rule("on").priority == 1
        assert [c.is_blocking for c in outcome.remaining] == [False]


class TestDryRunAndStatistics:
    """Tests for dry runs, statistics and state export."""

    def test_dry_run_dispatches_nothing(self, engine, sink):
        engine.save_rule(timed_rule("wake", ActionType.TURN_ON))
        test = engine.dry_run("wake", now=WEDNESDAY_0700)
        assert test.would_execute
        assert test.targets == [["lamp"]]
        assert sink.get_calls() == []

    def test_dry_run_reasons(self, engine):
        engine.save_rule(timed_rule("wake", ActionType.TURN_ON, is_active=False))
        test = engine.dry_run("wake", now=WEDNESDAY_0700 + timedelta(hours=1))
        assert not test.would_execute
        assert "no trigger matched" in test.reasons
        assert "rule is not active" in test.reasons

    @pytest.mark.asyncio
    async def test_rule_statistics(self, engine, sink):
        engine.save_rule(motion_rule())
        engine.save_rule(timed_rule("wake", ActionType.TURN_ON, devices=("spot",), category="lighting"))
        engine.toggle_rule("wake")
        await engine.handle_event(motion_event())
        sink.reject("lamp")
        await engine.manual_trigger("hall")

        stats = engine.rule_statistics()
        assert stats.total_rules == 2
        assert stats.active_rules == 1
        assert stats.by_category == {"general": 1, "lighting": 1}
        assert stats.executions.total == 2
        assert stats.executions.success_rate == 50
        assert engine.get_statistics("hall").failures == 1

    @pytest.mark.asyncio
    async def test_export_and_restore(self, engine, sink, clock, world):
        engine.save_rule(motion_rule())
        await engine.handle_event(motion_event())
        state = engine.export_state()

        restored = RuleEngine(sink, clock, FixedSolarCalendar(), world_state=world)
        restored.save_rule(motion_rule())
        restored.restore_state(state)

        assert restored.get_rule("hall").execution_count == 1
        assert restored.get_rule("hall").last_run == WEDNESDAY_0600
        assert len(restored.get_history()) == 1

    def test_load_from_persistence(self, sink, clock, world, persistence, living):
        persistence.save(living)
        persistence.save(motion_rule())
        persistence.save(motion_rule("old", is_active=False))

        engine = RuleEngine(sink, clock, FixedSolarCalendar(), persistence=persistence,
                            world_state=world)
        engine.load()

        assert engine.get_group("living").name == "Living Room"
        assert [r.id for r in engine.list_rules(active=True)] == ["hall"]
        assert [r.id for r in engine.list_rules(active=False)] == ["old"]

    @pytest.mark.asyncio
    async def test_inactive_rule_reactivated_after_restart(
        self, engine, sink, clock, world, persistence
    ):
        engine.save_rule(motion_rule())
        engine.toggle_rule("hall", active=False)

        restarted = RuleEngine(sink, clock, FixedSolarCalendar(), persistence=persistence,
                               world_state=world)
        restarted.load()
        idle = await restarted.handle_event(motion_event())
        restarted.toggle_rule("hall", active=True)
        result = await restarted.handle_event(motion_event())

        assert idle.rules_triggered == 0
        assert result.rules_triggered == 1
        assert [r.id for r in persistence.load_active_rules()] == ["hall"]


class TestExecutionRecords:
    """Tests for execution record outcomes and time ranges."""

    @pytest.mark.asyncio
    async def test_partial_failure_is_success(self, engine, sink, world):
        rule = Rule(
            id="pair",
            name="pair",
            triggers=[ManualTrigger()],
            conditions=[],
            actions=[
                Action(command=ActionType.TURN_ON, target=SpecificDevices(("lamp",))),
                Action(command=ActionType.TURN_ON, target=SpecificDevices(("spot",))),
            ],
        )
        engine.save_rule(rule)
        sink.reject("spot")

        record = await engine.manual_trigger("pair")

        assert record.success
        assert record.affected_devices == ("lamp",)
        assert record.error == "turn_on: no device succeeded"
        assert world.get("spot")["power_state"] == "off"

    @pytest.mark.asyncio
    async def test_queued_rule_records_real_start(self, sink, world):
        engine = RuleEngine(sink, SystemClock(), FixedSolarCalendar(), world_state=world)
        engine.save_rule(motion_rule("slow", devices=("lamp",), priority=5))
        engine.save_rule(motion_rule("fast", devices=("spot",)))
        sink.delay_for("lamp", 0.3)
        sink.delay_for("spot", 0.1)

        event_run = asyncio.create_task(engine.handle_event(motion_event()))
        await asyncio.sleep(0.05)
        manual = await engine.manual_trigger("fast")
        result = await event_run

        automatic = next(r for r in result.records if r.subject_id == "fast")
        assert result.rules_triggered == 2
        assert automatic.timestamp >= manual.finished_at

        runs = sorted(engine.get_history(subject_id="fast"), key=lambda r: r.timestamp)
        assert len(runs) == 2
        assert runs[0].finished_at <= runs[1].timestamp
