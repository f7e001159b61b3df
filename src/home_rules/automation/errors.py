"""
Exception types for the automation engine.

Configuration problems are rejected when a rule, group, schedule or timer is
built or saved. Device-level failures never escape a dispatch batch; they are
reported per device instead.
"""

from typing import TYPE_CHECKING, List

if TYPE_CHECKING:
    from .models import Conflict


class AutomationError(Exception):
    """Base class for all automation engine errors."""


class ConfigurationError(AutomationError, ValueError):
    """Malformed trigger, condition, action or aggregate shape."""


class ConditionEvaluationError(AutomationError):
    """A condition could not be evaluated against the current world state."""


class ConflictError(AutomationError):
    """Activation refused because of unresolved conflicts."""

    def __init__(self, subject_id: str, conflicts: List["Conflict"]) -> None:
        self.subject_id = subject_id
        self.conflicts = conflicts
        others = ", ".join(sorted({c.other_id for c in conflicts}))
        super().__init__(f"{subject_id} conflicts with: {others}")


class DeviceDispatchError(AutomationError):
    """A single device command failed (unreachable, rejected, timed out)."""

    def __init__(self, device_id: str, reason: str) -> None:
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"{device_id}: {reason}")


class ExecutionInProgressError(AutomationError):
    """The rule, group or scene already has an execution in flight."""

    def __init__(self, subject_id: str) -> None:
        self.subject_id = subject_id
        super().__init__(f"Execution already in progress: {subject_id}")


class ExecutionLimitError(AutomationError):
    """Manual run refused: rule is cooling down or hit its execution limit."""

    def __init__(self, rule_id: str, reason: str) -> None:
        self.rule_id = rule_id
        self.reason = reason
        super().__init__(f"{rule_id}: {reason}")


class UnknownEntityError(AutomationError, LookupError):
    """Referenced rule, group, schedule, scene or timer does not exist."""

    def __init__(self, kind: str, entity_id: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class AuditWriteError(AutomationError):
    """Execution record could not be written to the audit store."""
