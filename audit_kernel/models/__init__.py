"""Audit kernel data models."""

from audit_kernel.models.config import (
    ExpirationConfig,
    NormalizerConfig,
    OrchestratorConfig,
    ValidationConfig,
)
from audit_kernel.models.expiration import ExpiringEntitlement, ExpiryBucket
from audit_kernel.models.record import Entitlement, EntitlementCategory, Record
from audit_kernel.models.run import RecordPage, RunLog, RunMode, RunStatus
from audit_kernel.models.snapshot import (
    ChangeDescriptor,
    ChangeType,
    ExtensionMark,
    LedgerStats,
    Snapshot,
    StatusChange,
)
from audit_kernel.models.validation import (
    RuleId,
    RuleResult,
    ValidationStatus,
    ValidationVerdict,
)

__all__ = [
    "ChangeDescriptor",
    "ChangeType",
    "Entitlement",
    "EntitlementCategory",
    "ExpirationConfig",
    "ExpiringEntitlement",
    "ExpiryBucket",
    "ExtensionMark",
    "LedgerStats",
    "NormalizerConfig",
    "OrchestratorConfig",
    "Record",
    "RecordPage",
    "RuleId",
    "RuleResult",
    "RunLog",
    "RunMode",
    "RunStatus",
    "Snapshot",
    "StatusChange",
    "ValidationConfig",
    "ValidationStatus",
    "ValidationVerdict",
]
