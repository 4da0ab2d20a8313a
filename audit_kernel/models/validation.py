"""Validation verdicts — ephemeral, never written to the ledger."""

from datetime import datetime
from enum import Enum
from typing import List

from pydantic import BaseModel


class RuleId(str, Enum):
    QUANTITY_BOUND = "quantity-bound"
    DATE_OVERLAP = "date-overlap"
    DATE_GAP = "date-gap"
    PACKAGE_NAME_PATTERN = "package-name-pattern"
    MODEL_COUNT = "model-count"


class ValidationStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class RuleResult(BaseModel):
    rule_id: str
    passed: bool
    detail: str = ""
    offenders: List[dict] = []              # Offending entitlement indices/codes


class ValidationVerdict(BaseModel):
    identity: str
    overall_status: ValidationStatus
    rule_results: List[RuleResult] = []
    validated_at: datetime

    @property
    def passed(self) -> bool:
        return self.overall_status == ValidationStatus.PASS

    def failed_rules(self) -> List[RuleResult]:
        return [r for r in self.rule_results if not r.passed]

    def tooltip(self) -> str:
        """One line per failed rule, for hover text on dashboards."""
        if self.passed:
            return "All validation rules passed"
        lines = [f"{r.rule_id}: {r.detail or 'Failed'}" for r in self.failed_rules()]
        return "\n".join(lines) or "Validation failed"
