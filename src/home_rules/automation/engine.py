"""
Automation engine - orchestrates rules, groups, schedules, scenes and timers.

Handles trigger matching, condition evaluation, conflict gating, action
dispatch and execution history. All collaborators are passed in; the engine
owns no process-wide state.
"""

import asyncio
import logging
import random
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from home_rules.core.bus import Event, EventBus

from .adapter import (
    Clock,
    DeviceCommandSink,
    InMemoryPersistence,
    InMemoryWorldState,
    Persistence,
    SolarCalendar,
    WorldState,
)
from .config import EngineConfig
from .conflicts import (
    Automation,
    ConflictDetector,
    ResolutionResult,
    apply_resolution,
    rule_automation,
    schedule_automation,
)
from .errors import (
    AutomationError,
    ConditionEvaluationError,
    ConflictError,
    ExecutionInProgressError,
    ExecutionLimitError,
    UnknownEntityError,
)
from .evaluators import (
    DEVICE_STATE_CHANGED,
    MANUAL_EVENT,
    ConditionEvaluator,
    TriggerEvaluator,
)
from .executor import ActionExecutor
from .history import ExecutionHistory, ExecutionStats, summarize
from .models import (
    Action,
    ActionType,
    Conflict,
    ConflictResolution,
    DispatchPolicy,
    DispatchResult,
    ExecutionRecord,
    Group,
    ManualTrigger,
    Rule,
    Scene,
    Schedule,
    SubjectType,
    Timer,
    TriggeredBy,
    serialize_condition,
    serialize_trigger,
)
from .scenes import SceneManager
from .scheduler import Scheduler, TickResult

logger = logging.getLogger(__name__)

# Bus event types published by the engine
EXECUTED = "automation.executed"
SKIPPED = "automation.skipped"
BLOCKED = "automation.blocked"
RULE_TOGGLED = "rule.toggled"
SCHEDULE_TOGGLED = "schedule.toggled"
CONFLICTS_RESOLVED = "conflicts.resolved"
GROUP_CONTROLLED = "group.controlled"
SCENE_ACTIVATED = "scene.activated"
TIMER_FIRED = "timer.fired"
MISSED_WINDOW = "scheduler.missed_window"

CONDITIONS_NOT_MET = "conditions not met"


@dataclass
class EngineResult:
    """Result of processing an event or a tick."""

    rules_evaluated: int = 0
    rules_triggered: int = 0
    actions_executed: int = 0
    records: List[ExecutionRecord] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # Busy, cooling down, or at limit
    blocked: List[str] = field(default_factory=list)  # Yielded to a higher priority
    errors: List[str] = field(default_factory=list)


@dataclass
class EngineTickResult:
    """Result of one engine tick: scheduler entries plus timed rules."""

    scheduler: TickResult
    rules: EngineResult


@dataclass
class RuleTestResult:
    """Outcome of a dry run. Nothing is dispatched."""

    rule_id: str
    triggers: List[Dict[str, Any]] = field(default_factory=list)
    conditions: List[Dict[str, Any]] = field(default_factory=list)
    conditions_met: bool = False
    would_execute: bool = False
    targets: List[List[str]] = field(default_factory=list)  # Per action
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "triggers": self.triggers,
            "conditions": self.conditions,
            "conditions_met": self.conditions_met,
            "would_execute": self.would_execute,
            "targets": self.targets,
            "reasons": self.reasons,
        }


@dataclass
class RuleStatistics:
    """Aggregate view over every rule and its executions."""

    total_rules: int = 0
    active_rules: int = 0
    inactive_rules: int = 0
    executions: ExecutionStats = field(default_factory=ExecutionStats)
    by_type: Dict[str, int] = field(default_factory=dict)
    by_category: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_rules": self.total_rules,
            "active_rules": self.active_rules,
            "inactive_rules": self.inactive_rules,
            "executions": self.executions.to_dict(),
            "by_type": dict(self.by_type),
            "by_category": dict(self.by_category),
        }


class RuleEngine:
    """
    Core engine for automation processing.

    Responsibilities:
    - Match device events and clock ticks to rule triggers
    - Evaluate conditions against the world state
    - Gate activations and fires on conflicts
    - Dispatch actions through the ActionExecutor
    - Record every execution and publish it on the bus

    At most one execution per rule/group/scene/schedule/timer id is in
    flight. Manual requests for a busy id raise; automatic ones are skipped.
    """

    def __init__(
        self,
        sink: DeviceCommandSink,
        clock: Clock,
        solar: SolarCalendar,
        persistence: Optional[Persistence] = None,
        world_state: Optional[WorldState] = None,
        bus: Optional[EventBus] = None,
        config: Optional[EngineConfig] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config or EngineConfig()
        self._clock = clock
        self._persistence = persistence or InMemoryPersistence()
        self._world = world_state or InMemoryWorldState()
        self._bus = bus

        poll_interval = timedelta(seconds=self._config.poll_interval_seconds)
        self._triggers = TriggerEvaluator(solar, poll_interval, self._config.default_location)
        self._conditions = ConditionEvaluator(clock)
        self._detector = ConflictDetector(self._triggers)
        self._executor = ActionExecutor(
            sink,
            self._world,
            command_timeout=self._config.command_timeout_seconds,
            max_parallel=self._config.max_parallel_dispatch,
            rng=rng,
            sleep=sleep,
        )
        self._history = ExecutionHistory(self._persistence, self._config.history_size)

        self._rules: Dict[str, Rule] = {}
        self._groups: Dict[str, Group] = {}
        # Entries embedded in groups, keyed by entry id -> owning group id
        self._group_rules: Dict[str, str] = {}
        self._group_schedules: Dict[str, str] = {}

        self._scenes = SceneManager(self._executor, self._world, self._groups)
        self._scheduler = Scheduler(
            clock,
            self._triggers,
            poll_interval,
            on_timer=self._on_timer,
            on_schedule=self._on_schedule,
        )

        self._in_flight: Set[str] = set()
        # Last timed occurrence fired per rule (minute precision)
        self._rule_fired: Dict[str, datetime] = {}
        # Automations firing on the tick being processed
        self._tick_firing: List[Automation] = []

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def scenes(self) -> SceneManager:
        return self._scenes

    @property
    def history(self) -> ExecutionHistory:
        return self._history

    # =========================================================================
    # Loading
    # =========================================================================

    def load(self) -> None:
        """Load groups, rules, schedules, scenes and timers from persistence."""
        for group in self._persistence.load_groups():
            self._register_group(group)
        for rule in self._persistence.load_rules():
            self._rules[rule.id] = rule
        for schedule in self._persistence.load_schedules():
            self._scheduler.add_schedule(schedule)
        for scene in self._persistence.load_scenes():
            self._scenes.add_scene(scene)
        for timer in self._persistence.load_timers():
            self._scheduler.restore_timer(timer)
        logger.info(
            f"Loaded {len(self._rules)} rules, {len(self._groups)} groups, "
            f"{len(self._scheduler.list_schedules())} schedules, "
            f"{len(self._scheduler.list_timers())} timers"
        )

    # =========================================================================
    # Rules
    # =========================================================================

    def save_rule(self, rule: Rule, override: bool = False) -> Rule:
        """
        Validate and store a rule.

        Raises:
            ConfigurationError: Malformed rule
            UnknownEntityError: Referenced group does not exist
            ConflictError: Active rule has blocking conflicts (unless override)
        """
        rule.validate()
        for action in rule.actions:
            self._scope(action, rule.group_id)

        if rule.is_active:
            self._gate_activation(rule.id, rule_automation(rule, self._groups), override)

        self._rules[rule.id] = rule
        self._persistence.save(rule)
        logger.info(f"Saved rule {rule.id} ({rule.name})")
        return rule

    def delete_rule(self, rule_id: str) -> bool:
        rule = self._rules.pop(rule_id, None)
        if rule is None:
            return False
        self._rule_fired.pop(rule_id, None)
        self._persistence.delete(rule)
        logger.info(f"Deleted rule {rule_id}")
        return True

    def get_rule(self, rule_id: str) -> Rule:
        """Get a standalone or group-embedded rule."""
        if rule_id in self._rules:
            return self._rules[rule_id]
        group_id = self._group_rules.get(rule_id)
        if group_id is not None:
            for rule in self._groups[group_id].automation.rules:
                if rule.id == rule_id:
                    return rule
        raise UnknownEntityError("rule", rule_id)

    def list_rules(
        self, group_id: Optional[str] = None, active: Optional[bool] = None
    ) -> List[Rule]:
        rules = list(self._rules.values())
        for group in self._groups.values():
            rules.extend(group.automation.rules)
        if group_id is not None:
            rules = [r for r in rules if r.group_id == group_id]
        if active is not None:
            rules = [r for r in rules if self._rule_enabled(r) == active]
        return rules

    def toggle_rule(
        self, rule_id: str, active: Optional[bool] = None, override: bool = False
    ) -> Rule:
        """
        Activate or deactivate a rule.

        Args:
            rule_id: Rule to toggle
            active: Target state (None = flip)
            override: Activate despite blocking conflicts

        Raises:
            ConflictError: Activation blocked by equal-priority conflicts
        """
        rule = self.get_rule(rule_id)
        target = (not rule.is_active) if active is None else active

        if target and not rule.is_active:
            self._gate_activation(rule.id, rule_automation(rule, self._groups), override)

        rule.is_active = target
        self._persist_rule(rule)
        logger.info(f"Rule {rule.id} {'activated' if target else 'deactivated'}")
        self._publish(RULE_TOGGLED, subject_id=rule.id, active=target)
        return rule

    # =========================================================================
    # Groups
    # =========================================================================

    def save_group(self, group: Group) -> Group:
        """
        Validate and store a group with its embedded rules and schedules.

        Embedded entries without a group_id are scoped to the group.
        """
        for rule in group.automation.rules:
            if rule.group_id is None:
                rule.group_id = group.id
        for schedule in group.schedule.schedules:
            if schedule.group_id is None:
                schedule.group_id = group.id
        group.validate()

        self._unregister_group(group.id)
        self._register_group(group)
        self._persistence.save(group)
        logger.info(f"Saved group {group.id} ({len(group.device_ids)} devices)")
        return group

    def delete_group(self, group_id: str) -> bool:
        group = self._groups.get(group_id)
        if group is None:
            return False
        self._unregister_group(group_id)
        for scene in self._scenes.list(group_id):
            self._scenes.remove(scene.id)
            self._persistence.delete(scene)
        self._persistence.delete(group)
        logger.info(f"Deleted group {group_id}")
        return True

    def get_group(self, group_id: str) -> Group:
        group = self._groups.get(group_id)
        if group is None:
            raise UnknownEntityError("group", group_id)
        return group

    def _register_group(self, group: Group) -> None:
        self._groups[group.id] = group
        for rule in group.automation.rules:
            if rule.group_id is None:
                rule.group_id = group.id
            self._group_rules[rule.id] = group.id
        if group.schedule.enabled:
            for schedule in group.schedule.schedules:
                if schedule.group_id is None:
                    schedule.group_id = group.id
                self._group_schedules[schedule.id] = group.id
                self._scheduler.add_schedule(schedule)

    def _unregister_group(self, group_id: str) -> None:
        self._groups.pop(group_id, None)
        for rule_id in [r for r, g in self._group_rules.items() if g == group_id]:
            del self._group_rules[rule_id]
        for schedule_id in [s for s, g in self._group_schedules.items() if g == group_id]:
            del self._group_schedules[schedule_id]
            self._scheduler.remove_schedule(schedule_id)

    async def control_group(
        self,
        group_id: str,
        action: Action | ActionType | str,
        parameters: Optional[Dict[str, Any]] = None,
        sequencing: Optional[DispatchPolicy | Dict[str, Any]] = None,
    ) -> DispatchResult:
        """
        Send one command to a group's devices.

        Args:
            group_id: Group to control
            action: Action, or a command name completed from parameters
                (target, device_ids, random_count, settings, delay)
            parameters: Action fields when action is a command name
            sequencing: DispatchPolicy (or its wire dict)

        Returns:
            DispatchResult with per-device outcomes

        Raises:
            ExecutionInProgressError: Group already being controlled
        """
        group = self.get_group(group_id)
        if not isinstance(action, Action):
            command = action.value if isinstance(action, ActionType) else action
            action = Action.from_dict({**(parameters or {}), "type": command})
        if isinstance(sequencing, dict):
            sequencing = DispatchPolicy.from_dict(sequencing)

        if group_id in self._in_flight:
            raise ExecutionInProgressError(group_id)

        started_at = self._clock.now()
        t0 = time.monotonic()
        self._in_flight.add(group_id)
        try:
            result = await self._executor.execute(action, group.device_ids, sequencing)
        finally:
            self._in_flight.discard(group_id)

        record = self._record(
            group_id, SubjectType.GROUP, TriggeredBy.MANUAL, started_at, t0, result,
            None if result.success else "no device succeeded",
        )
        logger.info(
            f"Group {group.name}: {action.command.value} on "
            f"{len(result.successful)}/{result.total} devices"
        )
        self._publish(
            GROUP_CONTROLLED,
            subject_id=group_id,
            command=action.command.value,
            result=result.to_dict(),
            record_id=record.id,
        )
        return result

    # =========================================================================
    # Schedules
    # =========================================================================

    def add_schedule(self, schedule: Schedule, override: bool = False) -> Schedule:
        """
        Store a standalone schedule.

        Raises:
            UnknownEntityError: Referenced group does not exist
            ConflictError: Active schedule has blocking conflicts (unless override)
        """
        self._scope(schedule.action, schedule.group_id)
        if schedule.is_active:
            self._gate_activation(
                schedule.id, schedule_automation(schedule, self._groups), override
            )
        self._scheduler.add_schedule(schedule)
        self._persistence.save(schedule)
        logger.info(f"Added schedule {schedule.id} ({schedule.name})")
        return schedule

    def remove_schedule(self, schedule_id: str) -> bool:
        if schedule_id in self._group_schedules:
            raise AutomationError(f"Schedule {schedule_id} belongs to a group; edit the group")
        try:
            schedule = self._scheduler.get_schedule(schedule_id)
        except UnknownEntityError:
            return False
        self._scheduler.remove_schedule(schedule_id)
        self._persistence.delete(schedule)
        return True

    def enable_schedule(
        self, schedule_id: str, enabled: bool = True, override: bool = False
    ) -> Schedule:
        """
        Activate or deactivate a schedule.

        Raises:
            ConflictError: Activation blocked by equal-priority conflicts
        """
        schedule = self._scheduler.get_schedule(schedule_id)
        if enabled and not schedule.is_active:
            self._gate_activation(
                schedule.id, schedule_automation(schedule, self._groups), override
            )
        schedule.is_active = enabled
        self._persist_schedule(schedule)
        logger.info(f"Schedule {schedule.id} {'enabled' if enabled else 'disabled'}")
        self._publish(SCHEDULE_TOGGLED, subject_id=schedule.id, active=enabled)
        return schedule

    # =========================================================================
    # Scenes
    # =========================================================================

    def add_scene(self, scene: Scene) -> Scene:
        scene = self._scenes.add_scene(scene)
        self._persistence.save(scene)
        return scene

    def capture_scene(
        self,
        group_id: str,
        name: str,
        scene_id: Optional[str] = None,
        is_default: bool = False,
    ) -> Scene:
        """Snapshot a group's current device states as a scene."""
        scene = self._scenes.capture(group_id, name, scene_id=scene_id, is_default=is_default)
        self._persistence.save(scene)
        return scene

    async def activate_scene(
        self, scene_id: str, policy: Optional[DispatchPolicy] = None
    ) -> DispatchResult:
        """
        Apply a scene.

        Raises:
            ExecutionInProgressError: Scene already being activated
        """
        scene = self._scenes.get(scene_id)
        if scene_id in self._in_flight:
            raise ExecutionInProgressError(scene_id)

        started_at = self._clock.now()
        t0 = time.monotonic()
        self._in_flight.add(scene_id)
        try:
            result = await self._scenes.activate(scene_id, policy)
        finally:
            self._in_flight.discard(scene_id)

        record = self._record(
            scene_id, SubjectType.SCENE, TriggeredBy.MANUAL, started_at, t0, result,
            None if result.success else "no device succeeded",
        )
        self._publish(
            SCENE_ACTIVATED,
            subject_id=scene_id,
            name=scene.name,
            result=result.to_dict(),
            record_id=record.id,
        )
        return result

    # =========================================================================
    # Timers
    # =========================================================================

    def set_timer(self, timer: Timer) -> Timer:
        """
        Arm a device timer.

        Raises:
            ConfigurationError: scheduled_time is not in the future
        """
        self._scheduler.set_timer(timer, self._clock.now())
        self._persistence.save(timer)
        return timer

    def cancel_timer(self, timer_id: str) -> bool:
        try:
            timer = self._scheduler.get_timer(timer_id)
        except UnknownEntityError:
            return False
        self._scheduler.cancel_timer(timer_id)
        self._persistence.delete(timer)
        return True

    # =========================================================================
    # Conflicts
    # =========================================================================

    def check_conflicts(self, subject_id: str) -> List[Conflict]:
        """
        Find conflicts between a rule or schedule and every other active one.

        Returns:
            Conflicts (blocking ones have equal priorities)
        """
        subject = self._automation_view(subject_id)
        return self._detector.detect(subject, self._active_views(), self._clock.now().date())

    def resolve_conflicts(
        self,
        subject_id: str,
        resolution: ConflictResolution | Dict[str, Any],
    ) -> ResolutionResult:
        """
        Apply a caller-supplied resolution to a subject's conflicts.

        Raises:
            ConfigurationError: merge, or invalid parameters
        """
        if isinstance(resolution, dict):
            resolution = ConflictResolution.from_dict(resolution)

        conflicts = self.check_conflicts(subject_id)
        outcome = apply_resolution(subject_id, conflicts, resolution)

        for entity_id in outcome.disabled:
            self._deactivate(entity_id)
        for entity_id, priority in outcome.priority_changes.items():
            self._set_priority(entity_id, priority)

        outcome.remaining = self.check_conflicts(subject_id)
        logger.info(
            f"Resolved conflicts for {subject_id} with {resolution.type.value}: "
            f"disabled={outcome.disabled} priorities={outcome.priority_changes}"
        )
        self._publish(CONFLICTS_RESOLVED, subject_id=subject_id, resolution=outcome.to_dict())
        return outcome

    def _gate_activation(self, subject_id: str, view: Automation, override: bool) -> None:
        conflicts = self._detector.detect(view, self._active_views(), self._clock.now().date())
        blocking = [c for c in conflicts if c.is_blocking]
        if not blocking:
            return
        if not override:
            raise ConflictError(subject_id, blocking)
        logger.warning(
            f"Activating {subject_id} despite conflicts with "
            f"{', '.join(c.other_id for c in blocking)}"
        )

    def _automation_view(self, subject_id: str) -> Automation:
        try:
            return rule_automation(self.get_rule(subject_id), self._groups)
        except UnknownEntityError:
            pass
        return schedule_automation(self._scheduler.get_schedule(subject_id), self._groups)

    def _active_views(self) -> List[Automation]:
        views = [rule_automation(r, self._groups) for r in self._active_rules()]
        views += [
            schedule_automation(s, self._groups)
            for s in self._scheduler.list_schedules()
            if s.is_active
        ]
        return views

    def _yield_to(self, view: Automation, firing: List[Automation]) -> Optional[Conflict]:
        """Higher-priority conflicting automation firing on the same occurrence."""
        conflicts = self._detector.detect(view, firing, self._clock.now().date())
        for conflict in conflicts:
            if conflict.other_priority > conflict.subject_priority:
                return conflict
            if conflict.is_blocking:
                logger.warning(
                    f"{view.id} and {conflict.other_id} fire together with equal priority"
                )
        return None

    def _deactivate(self, entity_id: str) -> None:
        try:
            self.toggle_rule(entity_id, active=False)
        except UnknownEntityError:
            self.enable_schedule(entity_id, enabled=False)

    def _set_priority(self, entity_id: str, priority: int) -> None:
        try:
            rule = self.get_rule(entity_id)
        except UnknownEntityError:
            schedule = self._scheduler.get_schedule(entity_id)
            schedule.priority = priority
            self._persist_schedule(schedule)
            return
        rule.priority = priority
        self._persist_rule(rule)

    # =========================================================================
    # Triggering
    # =========================================================================

    async def manual_trigger(
        self, rule_id: str, parameters: Optional[Dict[str, Any]] = None
    ) -> ExecutionRecord:
        """
        Run a rule now.

        Args:
            rule_id: Rule to run (active or not)
            parameters: skip_conditions (bool), force (bool, bypasses cooldown
                and execution limit)

        Returns:
            The execution record

        Raises:
            ExecutionInProgressError: Rule already running
            ExecutionLimitError: Cooling down or at limit, without force
        """
        rule = self.get_rule(rule_id)
        params = parameters or {}
        if rule.id in self._in_flight:
            raise ExecutionInProgressError(rule.id)

        now = self._clock.now()
        if not params.get("force"):
            if not self._cooldown_elapsed(rule, now):
                raise ExecutionLimitError(rule.id, "Rule is in cooldown period")
            if not self._below_limit(rule):
                raise ExecutionLimitError(rule.id, "Rule execution limit reached")

        if not params.get("skip_conditions"):
            met, error = self._conditions_met(rule, now)
            if not met:
                record = ExecutionRecord(
                    subject_id=rule.id,
                    subject_type=SubjectType.RULE,
                    triggered_by=TriggeredBy.MANUAL,
                    success=False,
                    duration_ms=0,
                    affected_devices=(),
                    error=error or CONDITIONS_NOT_MET,
                    timestamp=now,
                    finished_at=now,
                )
                self._history.record(record)
                return record

        return await self._run_rule(rule, TriggeredBy.MANUAL)

    async def handle_event(self, event: Event) -> EngineResult:
        """
        Process an inbound device or manual event against active rules.

        Args:
            event: The event to process

        Returns:
            Result with counts and records of rules triggered
        """
        result = EngineResult()
        if not self._config.enabled:
            return result
        if event.type not in (DEVICE_STATE_CHANGED, MANUAL_EVENT):
            return result

        rules = self._active_rules()
        result.rules_evaluated = len(rules)
        candidates = []
        for rule in rules:
            if event.type == MANUAL_EVENT and event.subject_id not in (None, rule.id):
                continue
            location = rule.location or event.location
            if any(self._triggers.matches(t, event, location) for t in rule.triggers):
                candidates.append(rule)
            else:
                logger.debug(f"Rule {rule.id} not triggered by {event.type}")

        firing = [rule_automation(r, self._groups) for r in candidates]
        await self._fire_rules(candidates, firing, TriggeredBy.EVENT, self._clock.now(), result)
        return result

    async def tick(self, now: Optional[datetime] = None) -> EngineTickResult:
        """
        Run one polling step: timers, schedules and time/solar rule triggers.

        Args:
            now: Tick time (defaults to the clock)
        """
        now = now or self._clock.now()
        rule_result = EngineResult()
        if not self._config.enabled:
            return EngineTickResult(TickResult(now=now), rule_result)

        rules = self._active_rules()
        rule_result.rules_evaluated = len(rules)
        minute = now.replace(second=0, microsecond=0)
        candidates = [
            r
            for r in rules
            if self._rule_fired.get(r.id) != minute
            and any(self._triggers.matches(t, now, r.location) for t in r.triggers)
        ]
        for rule in candidates:
            self._rule_fired[rule.id] = minute

        timers_before = {t.id: t for t in self._scheduler.list_timers()}
        self._tick_firing = [rule_automation(r, self._groups) for r in candidates]
        self._tick_firing += [
            schedule_automation(s, self._groups)
            for s in self._scheduler.list_schedules()
            if s.is_active and self._triggers.matches(s.effective_trigger, now, s.location)
        ]
        try:
            scheduler_result = await self._scheduler.tick(now)
            await self._fire_rules(
                candidates, self._tick_firing, TriggeredBy.SCHEDULED, now, rule_result
            )
        finally:
            self._tick_firing = []

        for missed in scheduler_result.missed:
            self._publish(MISSED_WINDOW, subject_id=missed.subject_id, missed=missed.to_dict())
        self._sync_timers(timers_before)
        return EngineTickResult(scheduler_result, rule_result)

    def start(self) -> asyncio.Task:
        """Start ticking on the running event loop."""
        return self._scheduler.start(self.tick)

    async def stop(self) -> None:
        await self._scheduler.stop()

    async def _fire_rules(
        self,
        candidates: List[Rule],
        firing: List[Automation],
        triggered_by: TriggeredBy,
        now: datetime,
        result: EngineResult,
    ) -> None:
        for rule in sorted(candidates, key=lambda r: -r.priority):
            conflict = self._yield_to(rule_automation(rule, self._groups), firing)
            if conflict is not None:
                logger.warning(
                    f"Rule {rule.id} yields to {conflict.other_id} "
                    f"(priority {conflict.other_priority} > {conflict.subject_priority})"
                )
                result.blocked.append(rule.id)
                self._publish(BLOCKED, subject_id=rule.id, conflict=conflict.to_dict())
                continue

            if rule.id in self._in_flight:
                logger.warning(f"Rule {rule.id} already running, skipping")
                result.skipped.append(rule.id)
                self._publish(SKIPPED, subject_id=rule.id, reason="in progress")
                continue

            if not self._cooldown_elapsed(rule, now) or not self._below_limit(rule):
                logger.debug(f"Rule {rule.id} cooling down or at execution limit, skipping")
                result.skipped.append(rule.id)
                continue

            met, error = self._conditions_met(rule, now)
            if error is not None:
                record = self._record(
                    rule.id, SubjectType.RULE, triggered_by, self._clock.now(), time.monotonic(),
                    DispatchResult(), error,
                )
                result.records.append(record)
                result.errors.append(error)
                continue
            if not met:
                logger.debug(f"Rule {rule.id} conditions not met")
                continue

            record = await self._run_rule(rule, triggered_by)
            result.rules_triggered += 1
            result.actions_executed += len(rule.actions)
            result.records.append(record)
            if record.error:
                result.errors.append(f"{rule.id}: {record.error}")

    # =========================================================================
    # Execution
    # =========================================================================

    async def _run_rule(self, rule: Rule, triggered_by: TriggeredBy) -> ExecutionRecord:
        """Dispatch a rule's actions in order and record the outcome."""
        self._in_flight.add(rule.id)
        started_at = self._clock.now()
        t0 = time.monotonic()
        result = DispatchResult()
        error: Optional[str] = None
        try:
            for action in rule.actions:
                try:
                    scope = self._scope(action, rule.group_id)
                    batch = await self._executor.execute(action, scope)
                except AutomationError as e:
                    logger.error(f"Rule {rule.id} action {action.command.value} failed: {e}")
                    batch = DispatchResult()
                    error = str(e)
                result = result.merge(batch)
                if not batch.success:
                    error = error or f"{action.command.value}: no device succeeded"
                    if not action.continue_on_error:
                        logger.warning(f"Rule {rule.id} stopped after failed {action.command.value}")
                        break
        finally:
            self._in_flight.discard(rule.id)

        rule.last_run = started_at
        rule.execution_count += 1
        self._persist_rule(rule)

        record = self._record(rule.id, SubjectType.RULE, triggered_by, started_at, t0, result, error)
        logger.info(
            f"Rule {rule.id} executed ({triggered_by.value}): "
            f"{len(record.affected_devices)} devices, success={record.success}"
        )
        return record

    async def _on_timer(self, timer: Timer) -> None:
        if timer.id in self._in_flight:
            logger.warning(f"Timer {timer.id} already running, skipping")
            self._publish(SKIPPED, subject_id=timer.id, reason="in progress")
            return

        started_at = self._clock.now()
        t0 = time.monotonic()
        self._in_flight.add(timer.id)
        try:
            result = await self._executor.execute(timer.to_action(), None)
        finally:
            self._in_flight.discard(timer.id)

        record = self._record(
            timer.id, SubjectType.TIMER, TriggeredBy.SCHEDULED, started_at, t0, result,
            None if result.success else "device command failed",
        )
        self._publish(
            TIMER_FIRED,
            subject_id=timer.id,
            device_id=timer.device_id,
            command=timer.command.value,
            success=record.success,
        )

    async def _on_schedule(self, schedule: Schedule, now: datetime) -> bool:
        conflict = self._yield_to(schedule_automation(schedule, self._groups), self._tick_firing)
        if conflict is not None:
            logger.warning(f"Schedule {schedule.id} yields to {conflict.other_id}")
            self._publish(BLOCKED, subject_id=schedule.id, conflict=conflict.to_dict())
            return False

        if schedule.id in self._in_flight:
            logger.warning(f"Schedule {schedule.id} already running, skipping")
            self._publish(SKIPPED, subject_id=schedule.id, reason="in progress")
            return False

        self._in_flight.add(schedule.id)
        started_at = self._clock.now()
        t0 = time.monotonic()
        error: Optional[str] = None
        try:
            scope = self._scope(schedule.action, schedule.group_id)
            result = await self._executor.execute(schedule.action, scope)
        except AutomationError as e:
            logger.error(f"Schedule {schedule.id} failed: {e}")
            result = DispatchResult()
            error = str(e)
        finally:
            self._in_flight.discard(schedule.id)

        if error is None and not result.success:
            error = "no device succeeded"
        self._record(
            schedule.id, SubjectType.SCHEDULE, TriggeredBy.SCHEDULED, started_at, t0, result, error
        )
        return True

    def _record(
        self,
        subject_id: str,
        subject_type: SubjectType,
        triggered_by: TriggeredBy,
        started_at: datetime,
        t0: float,
        result: DispatchResult,
        error: Optional[str],
    ) -> ExecutionRecord:
        duration_ms = int((time.monotonic() - t0) * 1000)
        record = ExecutionRecord(
            subject_id=subject_id,
            subject_type=subject_type,
            triggered_by=triggered_by,
            success=result.success,
            duration_ms=duration_ms,
            affected_devices=result.affected_devices,
            error=error,
            timestamp=started_at,
            finished_at=started_at + timedelta(milliseconds=duration_ms),
        )
        self._history.record(record)
        self._publish(EXECUTED, subject_id=subject_id, record=record.to_dict())
        return record

    # =========================================================================
    # Helpers
    # =========================================================================

    def _scope(self, action: Action, default_group: Optional[str]) -> Optional[Tuple[str, ...]]:
        """Device ids an action may touch (None = unrestricted)."""
        group_id = action.group_id or default_group
        if group_id is None:
            return None
        return self.get_group(group_id).device_ids

    def _rule_enabled(self, rule: Rule) -> bool:
        group_id = self._group_rules.get(rule.id)
        if group_id is not None and not self._groups[group_id].automation.enabled:
            return False
        return rule.is_active

    def _active_rules(self) -> List[Rule]:
        return [r for r in self.list_rules() if self._rule_enabled(r)]

    def _cooldown_elapsed(self, rule: Rule, now: datetime) -> bool:
        if not rule.cooldown_seconds or rule.last_run is None:
            return True
        return now - rule.last_run >= timedelta(seconds=rule.cooldown_seconds)

    def _below_limit(self, rule: Rule) -> bool:
        return rule.max_executions is None or rule.execution_count < rule.max_executions

    def _conditions_met(self, rule: Rule, now: datetime) -> Tuple[bool, Optional[str]]:
        """Evaluate conditions; an evaluation error is returned, not raised."""
        try:
            return self._conditions.evaluate_all(rule.conditions, self._world.snapshot(), now), None
        except ConditionEvaluationError as e:
            logger.warning(f"Rule {rule.id} condition error: {e}")
            return False, str(e)

    def _persist_rule(self, rule: Rule) -> None:
        group_id = self._group_rules.get(rule.id)
        if group_id is not None:
            self._persistence.save(self._groups[group_id])
        else:
            self._persistence.save(rule)

    def _persist_schedule(self, schedule: Schedule) -> None:
        group_id = self._group_schedules.get(schedule.id)
        if group_id is not None:
            self._persistence.save(self._groups[group_id])
        else:
            self._persistence.save(schedule)

    def _sync_timers(self, before: Dict[str, Timer]) -> None:
        """Persist re-armed timers and drop finished one-shot timers."""
        remaining = {t.id for t in self._scheduler.list_timers()}
        for timer_id, timer in before.items():
            if timer_id in remaining:
                self._persistence.save(timer)
            else:
                self._persistence.delete(timer)

    def _publish(self, event_type: str, subject_id: Optional[str] = None, **payload: Any) -> None:
        if self._bus is None:
            return
        device_id = payload.pop("device_id", None)
        self._bus.publish(
            Event(
                type=event_type,
                source="automation",
                device_id=device_id,
                subject_id=subject_id,
                payload=payload,
                timestamp=self._clock.now(),
            )
        )

    # =========================================================================
    # Testing and Statistics
    # =========================================================================

    def dry_run(
        self,
        rule_id: str,
        event: Optional[Event] = None,
        now: Optional[datetime] = None,
    ) -> RuleTestResult:
        """
        Evaluate a rule without dispatching anything.

        Args:
            rule_id: Rule to test
            event: Occurrence to test triggers against (None = the clock tick)
            now: Evaluation time (defaults to the clock)

        Returns:
            Trigger matches, condition outcomes, resolved targets
        """
        rule = self.get_rule(rule_id)
        now = now or self._clock.now()
        occurrence: Event | datetime = event if event is not None else now
        test = RuleTestResult(rule_id=rule.id)

        location = rule.location or (event.location if event else None)
        for trigger in rule.triggers:
            test.triggers.append(
                {
                    "trigger": serialize_trigger(trigger),
                    "matched": self._triggers.matches(trigger, occurrence, location),
                }
            )
        triggered = any(t["matched"] for t in test.triggers) or (
            event is None and any(isinstance(t, ManualTrigger) for t in rule.triggers)
        )
        if not triggered:
            test.reasons.append("no trigger matched")

        snapshot = self._world.snapshot()
        test.conditions_met = True
        for condition in rule.conditions:
            entry: Dict[str, Any] = {"condition": serialize_condition(condition)}
            try:
                entry["met"] = self._conditions.evaluate(condition, snapshot, now)
            except ConditionEvaluationError as e:
                entry["met"] = False
                entry["error"] = str(e)
            test.conditions_met = test.conditions_met and entry["met"]
            test.conditions.append(entry)
        if not test.conditions_met:
            test.reasons.append(CONDITIONS_NOT_MET)

        if not self._rule_enabled(rule):
            test.reasons.append("rule is not active")
        if not self._cooldown_elapsed(rule, now):
            test.reasons.append("cooldown period")
        if not self._below_limit(rule):
            test.reasons.append("execution limit reached")

        for action in rule.actions:
            try:
                targets, _ = self._executor.resolve_targets(action, self._scope(action, rule.group_id))
            except AutomationError as e:
                test.reasons.append(str(e))
                targets = []
            test.targets.append(targets)

        test.would_execute = not test.reasons
        return test

    def get_history(self, **filters: Any) -> List[ExecutionRecord]:
        """Execution records, newest first (see ExecutionHistory.query)."""
        return self._history.query(**filters)

    def get_statistics(self, subject_id: str) -> ExecutionStats:
        return self._history.statistics(subject_id)

    def rule_statistics(self) -> RuleStatistics:
        """Aggregate statistics over all rules."""
        rules = self.list_rules()
        active = sum(1 for r in rules if self._rule_enabled(r))
        records = [
            r for r in self._history.records() if r.subject_type == SubjectType.RULE
        ]
        return RuleStatistics(
            total_rules=len(rules),
            active_rules=active,
            inactive_rules=len(rules) - active,
            executions=summarize(records),
            by_type=dict(Counter(r.type for r in rules)),
            by_category=dict(Counter(r.category for r in rules)),
        )

    # =========================================================================
    # State Export/Import
    # =========================================================================

    def export_state(self) -> Dict[str, Any]:
        """Export engine state for persistence."""
        return {
            "version": 1,
            "rules": {
                rule.id: {
                    "last_run": rule.last_run.isoformat() if rule.last_run else None,
                    "execution_count": rule.execution_count,
                }
                for rule in self.list_rules()
            },
            "history": self._history.export_state()["history"],
        }

    def restore_state(self, state: Dict[str, Any]) -> None:
        """Restore engine state from persistence."""
        if state.get("version") != 1:
            logger.warning("Unknown state version, skipping restore")
            return

        # Don't continue interrupted executions
        self._in_flight.clear()

        for rule_id, entry in state.get("rules", {}).items():
            try:
                rule = self.get_rule(rule_id)
            except UnknownEntityError:
                logger.debug(f"Skipping state for unknown rule {rule_id}")
                continue
            last_run = entry.get("last_run")
            rule.last_run = datetime.fromisoformat(last_run) if last_run else None
            rule.execution_count = entry.get("execution_count", 0)

        self._history.restore_state({"version": 1, "history": state.get("history", [])})
