"""
Diff Classifier — decides what changed since a record was last observed.

Behavioral Contract:
- classify() is pure: no previous snapshot -> initial; differing status ->
  status_change; any other differing field -> other_change; else unchanged.
- Entitlement lists compare as sets of
  (product_code, package_name, start_date, end_date, quantity), so a
  re-serialized payload in a different order is not a change.
- observe() applies the outcome to the ledger: one appended snapshot for
  initial/status_change/other_change, a last-verified touch for unchanged.
  Observations of one identity are serialized.
"""

import threading
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, NamedTuple, Optional

from audit_kernel.ledger.store import SnapshotStore
from audit_kernel.models.record import Record
from audit_kernel.models.snapshot import ChangeDescriptor, ChangeType, Snapshot
from audit_kernel.normalization.dates import utcnow
from audit_kernel.observability.logging import get_logger

logger = get_logger("audit_kernel.diff.classifier")

# Scalar fields compared besides status and entitlements
_COMPARED_FIELDS = (
    "account",
    "source_id",
    "request_action",
    "created_at",
    "last_modified",
    "payload_parse_failed",
)


class Observation(NamedTuple):
    descriptor: ChangeDescriptor
    snapshot: Optional[Snapshot]            # Appended snapshot, None if unchanged
    previous_account: Optional[str] = None


def changed_fields(new: Record, previous: Record) -> List[str]:
    """Names of the non-status fields that differ between two records."""
    changed = [f for f in _COMPARED_FIELDS if getattr(new, f) != getattr(previous, f)]
    if new.entitlement_keys() != previous.entitlement_keys():
        changed.append("entitlements")
    return changed


class DiffClassifier:
    """Classifies records against the ledger and appends what changed."""

    def __init__(
        self,
        store: SnapshotStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self._clock = clock or utcnow
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def classify(self, new: Record, previous: Optional[Snapshot]) -> ChangeDescriptor:
        if previous is None:
            return ChangeDescriptor(
                identity=new.identity,
                change_type=ChangeType.INITIAL,
                current_status=new.status,
            )

        old = previous.payload
        if new.status != old.status:
            return ChangeDescriptor(
                identity=new.identity,
                change_type=ChangeType.STATUS_CHANGE,
                previous_status=old.status,
                current_status=new.status,
                changed_fields=["status"] + changed_fields(new, old),
            )

        fields = changed_fields(new, old)
        return ChangeDescriptor(
            identity=new.identity,
            change_type=ChangeType.OTHER_CHANGE if fields else ChangeType.UNCHANGED,
            previous_status=old.status,
            current_status=new.status,
            changed_fields=fields,
        )

    def _identity_lock(self, identity: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[identity]

    def observe(self, record: Record, captured_at: Optional[datetime] = None) -> Observation:
        """Classify a record against its latest snapshot and persist the result.
        Raises PersistenceError if the ledger write fails; nothing is written
        for the record in that case."""
        with self._identity_lock(record.identity):
            previous = self.store.latest(record.identity, exact=True)
            descriptor = self.classify(record, previous)
            now = captured_at or self._clock()

            if not descriptor.creates_snapshot:
                self.store.touch_verified(record.identity, now)
                return Observation(descriptor, None, previous.account if previous else None)

            if descriptor.change_type == ChangeType.STATUS_CHANGE:
                logger.info(
                    "Status change detected",
                    identity=record.identity,
                    previous_status=descriptor.previous_status,
                    current_status=descriptor.current_status,
                )

            snapshot = self.store.append_snapshot(
                Snapshot(
                    identity=record.identity,
                    source_id=record.source_id,
                    account=record.account,
                    captured_at=now,
                    change_type=descriptor.change_type,
                    previous_status=(
                        descriptor.previous_status
                        if descriptor.change_type == ChangeType.STATUS_CHANGE
                        else None
                    ),
                    payload=record,
                )
            )
            return Observation(descriptor, snapshot, previous.account if previous else None)
