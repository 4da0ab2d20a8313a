"""
Expiration Monitor — lists products whose latest end date is close.

Reads only the latest snapshots and the marks the linker left on them.
A product counts once per record, at its latest end date in that record.
Products that a later-created record of the same account no longer carries
were removed and are not reported.
"""

from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional

from audit_kernel.extension.linker import product_end_dates
from audit_kernel.ledger.store import SnapshotStore
from audit_kernel.models.config import ExpirationConfig
from audit_kernel.models.expiration import ExpiringEntitlement, ExpiryBucket
from audit_kernel.models.snapshot import Snapshot
from audit_kernel.normalization.dates import utcnow
from audit_kernel.observability.logging import get_logger

logger = get_logger("audit_kernel.extension.expiration")


class ExpirationMonitor:
    def __init__(self, store: SnapshotStore, config: Optional[ExpirationConfig] = None):
        self.store = store
        self.config = config or ExpirationConfig()

    def bucket_for(self, days_until_expiry: int) -> ExpiryBucket:
        if days_until_expiry <= self.config.at_risk_days:
            return ExpiryBucket.AT_RISK
        if days_until_expiry <= self.config.upcoming_days:
            return ExpiryBucket.UPCOMING
        return ExpiryBucket.CURRENT

    @staticmethod
    def _removed_later(snapshot: Snapshot, product_code: str, account_peers: List[Snapshot]) -> bool:
        created = snapshot.payload.created_at
        if created is None:
            return False
        for peer in account_peers:
            peer_created = peer.payload.created_at
            if peer.identity == snapshot.identity or peer_created is None:
                continue
            if peer_created > created and all(
                e.product_code != product_code for e in peer.payload.entitlements
            ):
                return True
        return False

    def find_expiring(
        self,
        window_days: Optional[int] = None,
        as_of: Optional[date] = None,
        include_extended: bool = False,
    ) -> List[ExpiringEntitlement]:
        """Products ending within window_days of as_of, soonest first."""
        window = self.config.window_days if window_days is None else window_days
        today = as_of or utcnow().date()

        snapshots = self.store.latest_for_accounts()
        peers: Dict[Optional[str], List[Snapshot]] = defaultdict(list)
        for snapshot in snapshots:
            peers[snapshot.account].append(snapshot)

        found: List[ExpiringEntitlement] = []
        removed = 0
        for snapshot in snapshots:
            for code, end in product_end_dates(snapshot).items():
                if end is None:
                    continue
                days = (end - today).days
                if days < 0 or days > window:
                    continue

                mark = snapshot.mark_for(code)
                is_extended = bool(mark and mark.is_extended)
                if is_extended and not include_extended:
                    continue
                if snapshot.account is not None and self._removed_later(
                    snapshot, code, peers[snapshot.account]
                ):
                    removed += 1
                    continue

                ent = next(
                    e for e in snapshot.payload.entitlements
                    if e.product_code == code and e.end_date == end
                )
                found.append(ExpiringEntitlement(
                    account=snapshot.account,
                    identity=snapshot.identity,
                    product_code=code,
                    product_name=ent.product_name,
                    category=ent.category,
                    end_date=end,
                    days_until_expiry=days,
                    bucket=self.bucket_for(days),
                    is_extended=is_extended,
                    extending_identity=mark.extending_identity if mark else None,
                    extending_end_date=mark.extending_end_date if mark else None,
                ))

        found.sort(key=lambda item: (item.end_date, item.account or "", item.identity, item.product_code))
        logger.info(
            "Expiration scan complete",
            window_days=window,
            expiring=len(found),
            removed_in_later_record=removed,
        )
        return found
