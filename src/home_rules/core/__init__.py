"""
Core components of the home-rules engine.

This package contains:
- bus: Event Bus implementation
"""

from home_rules.core.bus import Event, EventBus, EventFilter

__all__ = [
    "Event",
    "EventBus",
    "EventFilter",
]
