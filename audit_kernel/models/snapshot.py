"""Snapshot ledger models."""

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from audit_kernel.models.record import Record


class ChangeType(str, Enum):
    INITIAL = "initial"
    STATUS_CHANGE = "status_change"
    OTHER_CHANGE = "other_change"
    UNCHANGED = "unchanged"


class ExtensionMark(BaseModel):
    """Derived supersede annotation on an (identity, product_code) pair."""

    identity: str
    product_code: str
    is_extended: bool = False
    extending_identity: Optional[str] = None
    extending_end_date: Optional[date] = None


class Snapshot(BaseModel):
    """One immutable observation of a record. Only the extension marks and
    the last verified time of the latest snapshot are ever updated."""

    id: Optional[int] = None                # Ledger row id, set on append
    identity: str
    source_id: Optional[str] = None
    account: Optional[str] = None
    captured_at: datetime
    change_type: ChangeType
    previous_status: Optional[str] = None
    payload: Record
    last_verified_at: Optional[datetime] = None
    extension_marks: List[ExtensionMark] = []

    @property
    def status(self) -> Optional[str]:
        return self.payload.status

    def mark_for(self, product_code: str) -> Optional[ExtensionMark]:
        return next(
            (m for m in self.extension_marks if m.product_code == product_code),
            None,
        )


class ChangeDescriptor(BaseModel):
    """Outcome of comparing a freshly normalized record to its latest snapshot."""

    identity: str
    change_type: ChangeType
    previous_status: Optional[str] = None
    current_status: Optional[str] = None
    changed_fields: List[str] = []

    @property
    def creates_snapshot(self) -> bool:
        return self.change_type != ChangeType.UNCHANGED


class StatusChange(BaseModel):
    from_status: Optional[str] = None       # None for the initial observation
    to_status: Optional[str] = None
    at: datetime


class LedgerStats(BaseModel):
    total_identities: int = 0
    total_snapshots: int = 0
    total_status_changes: int = 0
    earliest_snapshot: Optional[datetime] = None
    latest_snapshot: Optional[datetime] = None
