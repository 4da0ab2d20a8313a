"""
Error taxonomy for the audit kernel.

Only TransientUpstreamError and PersistenceError are expected in normal
operation; the orchestrator retries the former and counts the latter per
record. MalformedPayloadError never leaves the entitlement parser.
"""

from typing import Any, Dict, Optional


class AuditKernelError(Exception):
    """Base exception for the audit kernel."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class TransientUpstreamError(AuditKernelError):
    """Network or timeout failure while pulling a page from the upstream source."""

    def __init__(self, message: str = "Upstream fetch failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("TRANSIENT_UPSTREAM_ERROR", message, details)


class MalformedPayloadError(AuditKernelError):
    """An embedded entitlement payload could not be decoded."""

    def __init__(self, message: str = "Malformed payload", details: Optional[Dict[str, Any]] = None):
        super().__init__("MALFORMED_PAYLOAD", message, details)


class MalformedRecordError(AuditKernelError):
    """A raw record is missing the fields needed to ledger it."""

    def __init__(self, message: str = "Malformed record", details: Optional[Dict[str, Any]] = None):
        super().__init__("MALFORMED_RECORD", message, details)


class ConcurrentRunConflict(AuditKernelError):
    """A run was requested while another run is still active."""

    def __init__(self, active_run_id: str):
        super().__init__(
            "CONCURRENT_RUN_CONFLICT",
            f"Run {active_run_id} is still running",
            {"active_run_id": active_run_id},
        )


class PersistenceError(AuditKernelError):
    """A ledger read or write failed."""

    def __init__(self, message: str = "Ledger operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERSISTENCE_ERROR", message, details)


class UnknownRuleError(AuditKernelError):
    """A validation rule id is not registered with the engine."""

    def __init__(self, rule_id: str):
        super().__init__("UNKNOWN_RULE", f"Unknown validation rule: {rule_id}", {"rule_id": rule_id})


class RetryExhaustedError(AuditKernelError):
    """All retry attempts for an operation failed."""

    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(
            "RETRY_EXHAUSTED",
            message,
            {"attempts": attempts, "last_error": str(last_exception)},
        )
        self.last_exception = last_exception
        self.attempts = attempts
