"""
home-rules: automation rules and group control for smart homes.

This library decides when automations fire and carries them out:
- Trigger and condition evaluation
- Conflict detection between rules and schedules
- Group control with target selection, delays and sequencing
- Scenes, timers and weekly schedules
- Execution history and an observer Event Bus
"""

from home_rules.core.bus import Event, EventBus, EventFilter
from home_rules.automation import EngineConfig, RuleEngine

__version__ = "0.1.0"

__all__ = [
    "Event",
    "EventBus",
    "EventFilter",
    "EngineConfig",
    "RuleEngine",
]
