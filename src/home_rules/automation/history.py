"""
Execution history: append-only audit of automation runs.

Records are kept in an in-memory ring buffer and forwarded to persistence.
A failed audit write is logged and never fails the execution it describes.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from .adapter import Persistence
from .models import ExecutionRecord, TriggeredBy

logger = logging.getLogger(__name__)


@dataclass
class ExecutionStats:
    """Aggregate outcome of a subject's executions."""

    total: int = 0
    successes: int = 0
    failures: int = 0
    success_rate: int = 0  # Percent, rounded
    average_duration_ms: int = 0
    last_run: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": self.success_rate,
            "average_duration_ms": self.average_duration_ms,
            "last_run": self.last_run.isoformat() if self.last_run else None,
        }


def summarize(records: List[ExecutionRecord]) -> ExecutionStats:
    """Compute statistics over a list of records."""
    if not records:
        return ExecutionStats()
    successes = sum(1 for r in records if r.success)
    return ExecutionStats(
        total=len(records),
        successes=successes,
        failures=len(records) - successes,
        success_rate=round(successes / len(records) * 100),
        average_duration_ms=round(sum(r.duration_ms for r in records) / len(records)),
        last_run=max(r.timestamp for r in records),
    )


class ExecutionHistory:
    """Append-only store of ExecutionRecords."""

    def __init__(self, persistence: Optional[Persistence] = None, history_size: int = 1000) -> None:
        self._persistence = persistence
        self._records: Deque[ExecutionRecord] = deque(maxlen=history_size)

    def __len__(self) -> int:
        return len(self._records)

    def record(self, entry: ExecutionRecord) -> bool:
        """
        Append a record.

        Args:
            entry: The record to append

        Returns:
            True if persistence accepted it (the in-memory copy is always kept)
        """
        self._records.append(entry)
        if self._persistence is None:
            return True
        try:
            self._persistence.append_execution_record(entry)
        except Exception as e:
            logger.error(f"Failed to write execution record for {entry.subject_id}: {e}", exc_info=True)
            return False
        return True

    def query(
        self,
        subject_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        success: Optional[bool] = None,
        triggered_by: Optional[TriggeredBy] = None,
        limit: int = 20,
    ) -> List[ExecutionRecord]:
        """
        Get execution history.

        Args:
            subject_id: Filter by rule/group/scene/schedule/timer (optional)
            since: Only records started at or after this time
            until: Only records started before this time
            success: Filter by outcome
            triggered_by: Filter by what started the run
            limit: Maximum entries to return

        Returns:
            List of ExecutionRecords (newest first)
        """
        result = []
        for record in reversed(self._records):
            if subject_id and record.subject_id != subject_id:
                continue
            if since and record.timestamp < since:
                continue
            if until and record.timestamp >= until:
                continue
            if success is not None and record.success != success:
                continue
            if triggered_by and record.triggered_by != triggered_by:
                continue
            result.append(record)
            if len(result) >= limit:
                break
        return result

    def records(self, subject_id: Optional[str] = None) -> List[ExecutionRecord]:
        """All kept records, oldest first."""
        return [r for r in self._records if subject_id is None or r.subject_id == subject_id]

    def statistics(self, subject_id: Optional[str] = None) -> ExecutionStats:
        """Statistics for one subject, or for everything."""
        return summarize(self.records(subject_id))

    # =========================================================================
    # State Export/Import
    # =========================================================================

    def export_state(self) -> Dict[str, Any]:
        """Export history for persistence."""
        return {
            "version": 1,
            "history": [r.to_dict() for r in self._records],
        }

    def restore_state(self, state: Dict[str, Any]) -> None:
        """Restore history from persistence."""
        if state.get("version") != 1:
            logger.warning("Unknown history state version, skipping restore")
            return

        self._records.clear()
        for entry in state.get("history", []):
            self._records.append(ExecutionRecord.from_dict(entry))
