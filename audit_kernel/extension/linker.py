"""
Extension Linker — marks entitlements that a newer record has renewed.

Behavioral Contract:
- Works on the latest snapshot of every identity, grouped by account.
- Within a record, a product's end date is the latest end date among its
  entitlements for that product; an open end date is later than any date.
- A product is extended when another record of the same account carries
  the same product with a strictly later end date. Among several, the
  latest end date wins, then the most recently created record, then the
  identity (so the outcome never depends on scan order).
- Idempotent: marks are only written when they differ from the stored ones.
- Only writer of ExtensionMark. Runs as a phase after ingestion.
"""

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple

from audit_kernel.ledger.store import SnapshotStore
from audit_kernel.models.snapshot import ExtensionMark, Snapshot
from audit_kernel.observability.logging import get_logger

logger = get_logger("audit_kernel.extension.linker")


def _end_key(end: Optional[date]) -> date:
    return end if end is not None else date.max


def product_end_dates(snapshot: Snapshot) -> Dict[str, Optional[date]]:
    """Latest end date per product code within one record (None = open)."""
    ends: Dict[str, Optional[date]] = {}
    for ent in snapshot.payload.entitlements:
        if ent.product_code not in ends:
            ends[ent.product_code] = ent.end_date
        elif _end_key(ent.end_date) > _end_key(ends[ent.product_code]):
            ends[ent.product_code] = ent.end_date
    return ends


class ExtensionLinker:
    """Computes and persists extension marks per account."""

    def __init__(self, store: SnapshotStore, max_workers: int = 4):
        self.store = store
        self.max_workers = max(1, max_workers)

    def compute_marks(self, snapshots: List[Snapshot]) -> Dict[str, List[ExtensionMark]]:
        """Pure grouping pass over the latest snapshots of ONE account."""
        ends_by_identity = {s.identity: product_end_dates(s) for s in snapshots}
        created = {s.identity: s.payload.created_at or datetime.min for s in snapshots}

        # account arena: product_code -> [(end, identity)]
        by_product: Dict[str, List[Tuple[Optional[date], str]]] = defaultdict(list)
        for identity, ends in ends_by_identity.items():
            for code, end in ends.items():
                by_product[code].append((end, identity))

        marks: Dict[str, List[ExtensionMark]] = {}
        for identity, ends in ends_by_identity.items():
            record_marks = []
            for code in sorted(ends):
                candidate_end = _end_key(ends[code])
                later = [
                    (end, other)
                    for end, other in by_product[code]
                    if other != identity and _end_key(end) > candidate_end
                ]
                if later:
                    end, other = max(
                        later,
                        key=lambda item: (_end_key(item[0]), created[item[1]], item[1]),
                    )
                    record_marks.append(ExtensionMark(
                        identity=identity,
                        product_code=code,
                        is_extended=True,
                        extending_identity=other,
                        extending_end_date=end,
                    ))
                else:
                    record_marks.append(ExtensionMark(identity=identity, product_code=code))
            marks[identity] = record_marks
        return marks

    def _link_group(self, snapshots: List[Snapshot]) -> int:
        """Write changed marks for one account; returns snapshots updated."""
        marks = self.compute_marks(snapshots)
        updated = 0
        for snapshot in snapshots:
            new_marks = marks[snapshot.identity]
            if new_marks == snapshot.extension_marks:
                continue
            if self.store.update_extension_marks(snapshot.id, new_marks):
                updated += 1
        return updated

    def link_accounts(self, accounts: Optional[Iterable[str]] = None) -> int:
        """Re-link the given accounts (all accounts when None).
        Returns the number of account groups processed."""
        snapshots = self.store.latest_for_accounts(accounts)

        groups: Dict[str, List[Snapshot]] = defaultdict(list)
        singles: List[List[Snapshot]] = []
        for snapshot in snapshots:
            if snapshot.account is None:
                # No account, nothing can extend it
                singles.append([snapshot])
            else:
                groups[snapshot.account].append(snapshot)

        work = list(groups.values()) + singles
        if not work:
            return 0

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            updated = sum(pool.map(self._link_group, work))

        logger.info(
            "Extension linking complete",
            accounts=len(groups),
            snapshots=len(snapshots),
            marks_updated=updated,
        )
        return len(groups)
