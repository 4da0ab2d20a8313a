"""
Validation Rule Engine — pure, on-demand checks over one Record.

Behavioral Contract:
- validate() never mutates anything and never touches the ledger; verdicts
  are recomputed on every call.
- Overall status is FAIL if any enabled rule fails; with no enabled rules
  the verdict is PASS.
- A record whose payload could not be parsed fails every rule that needs
  entitlement data instead of crashing the engine.
- An enabled rule id that is not registered raises UnknownRuleError.
"""

import re
from collections import defaultdict
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional

from audit_kernel.errors import UnknownRuleError
from audit_kernel.ledger.store import SnapshotStore
from audit_kernel.models.config import ValidationConfig
from audit_kernel.models.record import Entitlement, EntitlementCategory, Record
from audit_kernel.models.validation import (
    RuleId,
    RuleResult,
    ValidationStatus,
    ValidationVerdict,
)
from audit_kernel.normalization.dates import utcnow

RuleFunc = Callable[[Record, ValidationConfig], RuleResult]


class RegisteredRule(NamedTuple):
    func: RuleFunc
    requires_entitlements: bool


def _offender(ent: Entitlement, **extra) -> dict:
    return {"index": ent.index, "label": ent.label, "product_code": ent.product_code, **extra}


def _by_product(entitlements: Iterable[Entitlement]) -> Dict[str, List[Entitlement]]:
    grouped: Dict[str, List[Entitlement]] = defaultdict(list)
    for ent in entitlements:
        grouped[ent.product_code].append(ent)
    return grouped


def _end_key(end: Optional[date]) -> date:
    return end if end is not None else date.max


# --- Rules ---

def check_quantity_bound(record: Record, config: ValidationConfig) -> RuleResult:
    """Every app entitlement needs a quantity within [min, max]."""
    offenders = []
    for ent in record.entitlements_of(EntitlementCategory.APP):
        if ent.product_code in config.quantity_exempt_products:
            continue
        qty = ent.quantity
        if qty is None or qty < config.quantity_min or (
            config.quantity_max is not None and qty > config.quantity_max
        ):
            offenders.append(_offender(ent, quantity=qty))

    if not offenders:
        return RuleResult(rule_id=RuleId.QUANTITY_BOUND.value, passed=True)
    detail = "; ".join(
        f"{o['label']} has invalid quantity: {o['quantity']}" for o in offenders
    )
    return RuleResult(
        rule_id=RuleId.QUANTITY_BOUND.value, passed=False, detail=detail, offenders=offenders
    )


def check_date_overlap(record: Record, config: ValidationConfig) -> RuleResult:
    """No entitlement may start after it ends, and no two date ranges of one
    product may overlap (inclusive bounds)."""
    offenders = []
    for code, ents in _by_product(record.entitlements).items():
        dated = []
        for ent in ents:
            if ent.start_date is None:
                continue
            if ent.end_date is not None and ent.start_date > ent.end_date:
                offenders.append({
                    "product_code": code,
                    "labels": [ent.label],
                    "indices": [ent.index],
                    "reason": "starts after it ends",
                })
                continue
            dated.append(ent)
        for i, a in enumerate(dated):
            for b in dated[i + 1:]:
                if a.start_date <= _end_key(b.end_date) and b.start_date <= _end_key(a.end_date):
                    offenders.append({
                        "product_code": code,
                        "labels": [a.label, b.label],
                        "indices": [a.index, b.index],
                        "reason": "overlapping dates",
                    })

    if not offenders:
        return RuleResult(rule_id=RuleId.DATE_OVERLAP.value, passed=True)
    detail = "; ".join(
        f"{o['labels'][0]} starts after it ends"
        if len(o["labels"]) == 1
        else f"{o['product_code']} has overlapping dates ({' / '.join(o['labels'])})"
        for o in offenders
    )
    return RuleResult(
        rule_id=RuleId.DATE_OVERLAP.value, passed=False, detail=detail, offenders=offenders
    )


def check_date_gap(record: Record, config: ValidationConfig) -> RuleResult:
    """Renewals of one product, ordered by start date, may not leave a gap
    longer than the tolerance between coverage end and the next start."""
    offenders = []
    for code, ents in _by_product(record.entitlements).items():
        dated = sorted(
            (e for e in ents if e.start_date is not None),
            key=lambda e: (e.start_date, _end_key(e.end_date)),
        )
        if len(dated) < 2:
            continue
        covered_until: Optional[date] = dated[0].end_date
        for prev, nxt in zip(dated, dated[1:]):
            if covered_until is None:
                break  # open-ended coverage, nothing after it can leave a gap
            gap_days = (nxt.start_date - covered_until).days
            if gap_days > config.gap_tolerance_days:
                offenders.append({
                    "product_code": code,
                    "labels": [prev.label, nxt.label],
                    "indices": [prev.index, nxt.index],
                    "gap_days": gap_days,
                })
            covered_until = (
                None if nxt.end_date is None else max(covered_until, nxt.end_date)
            )

    if not offenders:
        return RuleResult(rule_id=RuleId.DATE_GAP.value, passed=True)
    detail = "; ".join(
        f"{o['product_code']} has a {o['gap_days']}-day gap ({' / '.join(o['labels'])})"
        for o in offenders
    )
    return RuleResult(
        rule_id=RuleId.DATE_GAP.value, passed=False, detail=detail, offenders=offenders
    )


def check_package_name(record: Record, config: ValidationConfig) -> RuleResult:
    """Apps need a package name; any package name present must match the pattern."""
    pattern = re.compile(config.package_name_pattern)
    offenders = []
    for ent in record.entitlements:
        if ent.product_code in config.package_name_exempt_products:
            continue
        name = ent.package_name
        if name is None or not name.strip():
            if ent.category == EntitlementCategory.APP:
                offenders.append(_offender(ent, reason="missing package name"))
            continue
        if not pattern.match(name):
            offenders.append(_offender(ent, reason=f"invalid package name '{name}'"))

    if not offenders:
        return RuleResult(rule_id=RuleId.PACKAGE_NAME_PATTERN.value, passed=True)
    detail = "; ".join(f"{o['label']} {o['reason']}" for o in offenders)
    return RuleResult(
        rule_id=RuleId.PACKAGE_NAME_PATTERN.value, passed=False, detail=detail, offenders=offenders
    )


def check_model_count(record: Record, config: ValidationConfig) -> RuleResult:
    count = len(record.entitlements_of(EntitlementCategory.MODEL))
    if count <= config.max_models:
        return RuleResult(rule_id=RuleId.MODEL_COUNT.value, passed=True)
    return RuleResult(
        rule_id=RuleId.MODEL_COUNT.value,
        passed=False,
        detail=f"{count} model entitlements exceed the limit of {config.max_models}",
        offenders=[{"count": count, "limit": config.max_models}],
    )


# --- Engine ---

class ValidationRuleEngine:
    """Holds the rule registry; safe to call concurrently."""

    def __init__(
        self,
        config: Optional[ValidationConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or ValidationConfig()
        self._clock = clock or utcnow
        self._rules: Dict[str, RegisteredRule] = {}
        self._register_default_rules()

    def _register_default_rules(self) -> None:
        self.register_rule(RuleId.QUANTITY_BOUND.value, check_quantity_bound)
        self.register_rule(RuleId.DATE_OVERLAP.value, check_date_overlap)
        self.register_rule(RuleId.DATE_GAP.value, check_date_gap)
        self.register_rule(RuleId.PACKAGE_NAME_PATTERN.value, check_package_name)
        self.register_rule(RuleId.MODEL_COUNT.value, check_model_count)

    def register_rule(
        self, rule_id: str, rule: RuleFunc, requires_entitlements: bool = True
    ) -> None:
        """Register (or replace) a rule under an id."""
        self._rules[rule_id] = RegisteredRule(rule, requires_entitlements)

    @property
    def rule_ids(self) -> List[str]:
        return list(self._rules)

    def _resolve(self, enabled_rules: Optional[Iterable[str]]) -> List[str]:
        wanted = {
            r.value if isinstance(r, RuleId) else r
            for r in (self.config.enabled_rules if enabled_rules is None else enabled_rules)
        }
        for rule_id in sorted(wanted):
            if rule_id not in self._rules:
                raise UnknownRuleError(rule_id)
        # Registration order keeps verdicts stable
        return [rule_id for rule_id in self._rules if rule_id in wanted]

    def validate(
        self, record: Record, enabled_rules: Optional[Iterable[str]] = None
    ) -> ValidationVerdict:
        results = []
        for rule_id in self._resolve(enabled_rules):
            rule = self._rules[rule_id]
            if rule.requires_entitlements and record.payload_parse_failed:
                results.append(RuleResult(
                    rule_id=rule_id,
                    passed=False,
                    detail="Entitlement payload could not be parsed",
                ))
                continue
            results.append(rule.func(record, self.config))

        failed = any(not r.passed for r in results)
        return ValidationVerdict(
            identity=record.identity,
            overall_status=ValidationStatus.FAIL if failed else ValidationStatus.PASS,
            rule_results=results,
            validated_at=self._clock(),
        )

    def validate_latest(
        self,
        store: SnapshotStore,
        enabled_rules: Optional[Iterable[str]] = None,
        accounts: Optional[Iterable[str]] = None,
    ) -> List[ValidationVerdict]:
        """Validate the latest snapshot of every identity (read-only)."""
        rules = self._resolve(enabled_rules)
        return [
            self.validate(snapshot.payload, rules)
            for snapshot in store.latest_for_accounts(accounts)
        ]
