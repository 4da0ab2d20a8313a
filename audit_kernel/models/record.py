"""Record and Entitlement — the canonical shape of an upstream request."""

from datetime import date, datetime
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

from pydantic import BaseModel


class EntitlementCategory(str, Enum):
    MODEL = "model"
    DATA = "data"
    APP = "app"


class Entitlement(BaseModel):
    """One product grant inside a record's payload."""

    product_code: str
    category: EntitlementCategory
    product_name: Optional[str] = None
    package_name: Optional[str] = None
    quantity: Optional[int] = None          # Apps only
    start_date: Optional[date] = None
    end_date: Optional[date] = None         # None = open-ended
    index: int = 0                          # Position within its category group

    def comparison_key(self) -> Tuple:
        return (
            self.product_code,
            self.package_name,
            self.start_date,
            self.end_date,
            self.quantity,
        )

    @property
    def label(self) -> str:
        """Human-readable reference, e.g. 'app-2 (IC-DATABRIDGE)'."""
        return f"{self.category.value}-{self.index + 1} ({self.product_code})"


class Record(BaseModel):
    """One business entitlement-request document, normalized."""

    identity: str                           # e.g. "PS-4215"
    source_id: Optional[str] = None         # Upstream primary key
    account: Optional[str] = None
    status: Optional[str] = None
    request_action: Optional[str] = None    # "new", "update", "deprovision", ...
    entitlements: List[Entitlement] = []
    last_modified: Optional[datetime] = None
    created_at: Optional[datetime] = None
    payload_parse_failed: bool = False

    def entitlement_keys(self) -> FrozenSet[Tuple]:
        return frozenset(e.comparison_key() for e in self.entitlements)

    def entitlements_of(self, category: EntitlementCategory) -> List[Entitlement]:
        return [e for e in self.entitlements if e.category == category]
