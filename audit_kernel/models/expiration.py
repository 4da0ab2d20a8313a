"""Expiration monitor output."""

from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from audit_kernel.models.record import EntitlementCategory


class ExpiryBucket(str, Enum):
    AT_RISK = "at-risk"
    UPCOMING = "upcoming"
    CURRENT = "current"


class ExpiringEntitlement(BaseModel):
    """A product whose latest end date in a record falls inside the window."""

    account: Optional[str] = None
    identity: str
    product_code: str
    product_name: Optional[str] = None
    category: EntitlementCategory
    end_date: date
    days_until_expiry: int
    bucket: ExpiryBucket
    is_extended: bool = False
    extending_identity: Optional[str] = None
    extending_end_date: Optional[date] = None
