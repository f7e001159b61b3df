"""
Automation engine for home-rules.

Provides rule-based automation with triggers, conditions, and actions over
groups of devices.

Features:
- Rule-based automation (trigger → condition → action)
- Time, sunrise/sunset, device-state, sensor-threshold and manual triggers
- Device-state, sensor-value, time and day-of-week conditions
- Group control with all/random/specific targets, delays and sequencing
- Conflict detection between rules and schedules, with explicit resolution
- Scenes, device timers and weekly schedules
- Execution history and statistics

Architecture:

    ┌────────────────────────────────────────────────────┐
    │                    RuleEngine                      │
    │   events / ticks                                   │
    │        │                                           │
    │        ▼                                           │
    │  TriggerEvaluator → ConditionEvaluator             │
    │        │                                           │
    │        ▼                                           │
    │  ConflictDetector → ActionExecutor → History       │
    │                         ▲                          │
    │           SceneManager ─┘   Scheduler (timers,     │
    │                                       schedules)   │
    └────────────────────────────────────────────────────┘
"""

from .models import (
    # Enums
    TriggerType,
    ConditionType,
    Operator,
    ActionType,
    TargetType,
    TriggeredBy,
    SubjectType,
    ResolutionType,
    # Triggers
    TimeTrigger,
    SolarTrigger,
    DeviceStateTrigger,
    SensorThresholdTrigger,
    MotionTrigger,
    TemperatureTrigger,
    ManualTrigger,
    TriggerConfig,
    # Conditions
    DeviceStateCondition,
    SensorValueCondition,
    TimeCondition,
    DayOfWeekCondition,
    ConditionConfig,
    # Actions
    AllDevices,
    RandomDevices,
    SpecificDevices,
    TargetSelector,
    DispatchPolicy,
    Action,
    # Aggregates
    Rule,
    Schedule,
    Group,
    GroupAutomation,
    GroupSchedule,
    DeviceState,
    Scene,
    Timer,
    # Results
    CommandResult,
    DeviceOutcome,
    DispatchResult,
    ExecutionRecord,
    Conflict,
    ConflictResolution,
)
from .errors import (
    AutomationError,
    ConfigurationError,
    ConditionEvaluationError,
    ConflictError,
    DeviceDispatchError,
    ExecutionInProgressError,
    ExecutionLimitError,
    UnknownEntityError,
    AuditWriteError,
)
from .adapter import (
    Clock,
    SystemClock,
    FixedClock,
    SolarCalendar,
    FixedSolarCalendar,
    DeviceCommandSink,
    MockCommandSink,
    WorldState,
    InMemoryWorldState,
    Persistence,
    InMemoryPersistence,
)
from .config import EngineConfig, default_config, migrate_config, config_schema
from .evaluators import ConditionEvaluator, TriggerEvaluator, compare
from .conflicts import ConflictDetector, ResolutionResult
from .executor import ActionExecutor
from .scenes import SceneManager
from .scheduler import Scheduler, TickResult, MissedWindow
from .history import ExecutionHistory, ExecutionStats
from .engine import RuleEngine, EngineResult, EngineTickResult, RuleTestResult, RuleStatistics

from .presets import (
    lights_on_at_sunset,
    all_off_at,
    auto_off_when_idle_sensor,
)

__all__ = [
    # Engine
    "RuleEngine",
    "EngineResult",
    "EngineTickResult",
    "RuleTestResult",
    "RuleStatistics",
    # Components
    "ConditionEvaluator",
    "TriggerEvaluator",
    "compare",
    "ConflictDetector",
    "ResolutionResult",
    "ActionExecutor",
    "SceneManager",
    "Scheduler",
    "TickResult",
    "MissedWindow",
    "ExecutionHistory",
    "ExecutionStats",
    # Config
    "EngineConfig",
    "default_config",
    "migrate_config",
    "config_schema",
    # Adapters
    "Clock",
    "SystemClock",
    "FixedClock",
    "SolarCalendar",
    "FixedSolarCalendar",
    "DeviceCommandSink",
    "MockCommandSink",
    "WorldState",
    "InMemoryWorldState",
    "Persistence",
    "InMemoryPersistence",
    # Errors
    "AutomationError",
    "ConfigurationError",
    "ConditionEvaluationError",
    "ConflictError",
    "DeviceDispatchError",
    "ExecutionInProgressError",
    "ExecutionLimitError",
    "UnknownEntityError",
    "AuditWriteError",
    # Enums
    "TriggerType",
    "ConditionType",
    "Operator",
    "ActionType",
    "TargetType",
    "TriggeredBy",
    "SubjectType",
    "ResolutionType",
    # Triggers
    "TimeTrigger",
    "SolarTrigger",
    "DeviceStateTrigger",
    "SensorThresholdTrigger",
    "MotionTrigger",
    "TemperatureTrigger",
    "ManualTrigger",
    "TriggerConfig",
    # Conditions
    "DeviceStateCondition",
    "SensorValueCondition",
    "TimeCondition",
    "DayOfWeekCondition",
    "ConditionConfig",
    # Actions
    "AllDevices",
    "RandomDevices",
    "SpecificDevices",
    "TargetSelector",
    "DispatchPolicy",
    "Action",
    # Aggregates
    "Rule",
    "Schedule",
    "Group",
    "GroupAutomation",
    "GroupSchedule",
    "DeviceState",
    "Scene",
    "Timer",
    # Results
    "CommandResult",
    "DeviceOutcome",
    "DispatchResult",
    "ExecutionRecord",
    "Conflict",
    "ConflictResolution",
    # Presets
    "lights_on_at_sunset",
    "all_off_at",
    "auto_off_when_idle_sensor",
]
