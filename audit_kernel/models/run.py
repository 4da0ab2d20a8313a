"""Batch run log and upstream page models."""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel


class RunMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL_BACKFILL = "full_backfill"


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecordPage(BaseModel):
    """One page from the upstream source. Pagination ends when
    continuation is None."""

    records: List[Any] = []
    continuation: Optional[str] = None


class RunLog(BaseModel):
    """One row of the run log, written when a run ends."""

    id: str
    mode: RunMode
    since: Optional[datetime] = None        # Incremental cursor, if any
    started_at: datetime
    ended_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    pages_fetched: int = 0
    records_processed: int = 0
    new_snapshots: int = 0
    status_changes: int = 0
    other_changes: int = 0
    unchanged: int = 0
    failed_records: int = 0
    accounts_linked: int = 0
    error: Optional[str] = None

    @property
    def changes_detected(self) -> int:
        return self.status_changes + self.other_changes

    def summary(self) -> dict:
        data = self.model_dump(mode="json")
        data["changes_detected"] = self.changes_detected
        return data
