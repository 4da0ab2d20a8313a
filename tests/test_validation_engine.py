"""Tests for the Validation Rule Engine."""

from datetime import date, datetime

import pytest

from audit_kernel.errors import UnknownRuleError
from audit_kernel.ledger.store import SnapshotStore
from audit_kernel.models.config import ValidationConfig
from audit_kernel.models.record import Entitlement, EntitlementCategory, Record
from audit_kernel.models.snapshot import ChangeType, Snapshot
from audit_kernel.models.validation import RuleResult, ValidationStatus
from audit_kernel.validation.engine import ValidationRuleEngine


def _app(code="APP-1", quantity=1, package="pkg", index=0) -> Entitlement:
    return Entitlement(
        product_code=code,
        category=EntitlementCategory.APP,
        quantity=quantity,
        package_name=package,
        index=index,
    )


def _model(code="PROD-X", start=None, end=None, index=0) -> Entitlement:
    return Entitlement(
        product_code=code,
        category=EntitlementCategory.MODEL,
        start_date=start,
        end_date=end,
        index=index,
    )


def _make_record(entitlements, **kwargs) -> Record:
    return Record(identity="REQ-100", status="New", entitlements=entitlements, **kwargs)


class TestQuantityBound:
    def setup_method(self):
        self.engine = ValidationRuleEngine()

    def _result(self, record):
        return self.engine.validate(record, {"quantity-bound"}).rule_results[0]

    def test_quantity_within_bounds_passes(self):
        assert self._result(_make_record([_app(quantity=3)])).passed

    def test_zero_quantity_fails(self):
        result = self._result(_make_record([_app(quantity=0)]))
        assert not result.passed
        assert result.offenders[0]["label"] == "app-1 (APP-1)"

    def test_missing_or_negative_quantity_fails(self):
        assert not self._result(_make_record([_app(quantity=None)])).passed
        assert not self._result(_make_record([_app(quantity=-2)])).passed

    def test_max_bound(self):
        engine = ValidationRuleEngine(ValidationConfig(quantity_max=5))
        verdict = engine.validate(_make_record([_app(quantity=6)]), {"quantity-bound"})
        assert verdict.overall_status == ValidationStatus.FAIL

    def test_exempt_products_skip(self):
        engine = ValidationRuleEngine(ValidationConfig(quantity_exempt_products={"APP-1"}))
        verdict = engine.validate(_make_record([_app(quantity=0)]), {"quantity-bound"})
        assert verdict.passed

    def test_non_app_entitlements_ignored(self):
        assert self._result(_make_record([_model()])).passed


class TestDateOverlap:
    def setup_method(self):
        self.engine = ValidationRuleEngine()

    def _result(self, record):
        return self.engine.validate(record, {"date-overlap"}).rule_results[0]

    def test_overlapping_ranges_fail(self):
        record = _make_record([
            _model(start=date(2025, 1, 1), end=date(2025, 6, 1), index=0),
            _model(start=date(2025, 5, 1), end=date(2025, 12, 1), index=1),
        ])
        result = self._result(record)
        assert not result.passed
        assert result.offenders[0]["indices"] == [0, 1]
        assert "PROD-X" in result.detail

    def test_disjoint_ranges_pass(self):
        record = _make_record([
            _model(start=date(2025, 1, 1), end=date(2025, 3, 1)),
            _model(start=date(2025, 3, 2), end=date(2025, 12, 1), index=1),
        ])
        assert self._result(record).passed

    def test_open_end_overlaps_everything_after(self):
        record = _make_record([
            _model(start=date(2025, 1, 1), end=None),
            _model(start=date(2030, 1, 1), end=date(2031, 1, 1), index=1),
        ])
        assert not self._result(record).passed

    def test_different_products_never_overlap(self):
        record = _make_record([
            _model("A", start=date(2025, 1, 1), end=date(2025, 12, 1)),
            _model("B", start=date(2025, 1, 1), end=date(2025, 12, 1), index=1),
        ])
        assert self._result(record).passed

    def test_backwards_range_fails(self):
        record = _make_record([_model(start=date(2025, 6, 1), end=date(2025, 1, 1))])
        result = self._result(record)
        assert not result.passed
        assert result.offenders == [{
            "product_code": "PROD-X",
            "labels": [record.entitlements[0].label],
            "indices": [0],
            "reason": "starts after it ends",
        }]
        assert "starts after it ends" in result.detail

    def test_backwards_range_beside_valid_one(self):
        record = _make_record([
            _model("A", start=date(2025, 1, 1), end=date(2025, 12, 1), index=0),
            _model("B", start=date(2025, 6, 1), end=date(2025, 1, 1), index=1),
        ])
        result = self._result(record)
        assert not result.passed
        assert [o["indices"] for o in result.offenders] == [[1]]
        assert result.offenders[0]["product_code"] == "B"

    def test_single_day_range_passes(self):
        record = _make_record([_model(start=date(2025, 6, 1), end=date(2025, 6, 1))])
        assert self._result(record).passed

    def test_backwards_range_fails_default_verdict(self):
        record = _make_record([_model(start=date(2025, 6, 1), end=date(2025, 1, 1))])
        verdict = self.engine.validate(record)
        assert verdict.overall_status == ValidationStatus.FAIL
        assert [r.rule_id for r in verdict.failed_rules()] == ["date-overlap"]


class TestDateGap:
    def setup_method(self):
        self.engine = ValidationRuleEngine()

    def _result(self, record, engine=None):
        return (engine or self.engine).validate(record, {"date-gap"}).rule_results[0]

    def test_zero_day_gap_passes(self):
        record = _make_record([
            _model(start=date(2024, 1, 1), end=date(2025, 1, 1)),
            _model(start=date(2025, 1, 1), end=date(2026, 1, 1), index=1),
        ])
        assert self._result(record).passed

    def test_gap_with_zero_tolerance_fails(self):
        record = _make_record([
            _model(start=date(2024, 1, 1), end=date(2025, 1, 1)),
            _model(start=date(2025, 1, 5), end=date(2026, 1, 1), index=1),
        ])
        result = self._result(record)
        assert not result.passed
        assert result.offenders[0]["gap_days"] == 4

    def test_gap_within_tolerance_passes(self):
        engine = ValidationRuleEngine(ValidationConfig(gap_tolerance_days=7))
        record = _make_record([
            _model(start=date(2024, 1, 1), end=date(2025, 1, 1)),
            _model(start=date(2025, 1, 5), end=date(2026, 1, 1), index=1),
        ])
        assert self._result(record, engine).passed

    def test_unordered_input_is_sorted_by_start(self):
        record = _make_record([
            _model(start=date(2025, 1, 1), end=date(2026, 1, 1)),
            _model(start=date(2024, 1, 1), end=date(2025, 1, 1), index=1),
        ])
        assert self._result(record).passed

    def test_covered_period_is_not_a_gap(self):
        record = _make_record([
            _model(start=date(2024, 1, 1), end=date(2026, 1, 1)),
            _model(start=date(2024, 6, 1), end=date(2024, 7, 1), index=1),
            _model(start=date(2025, 6, 1), end=date(2027, 1, 1), index=2),
        ])
        assert self._result(record).passed


class TestPackageName:
    def setup_method(self):
        self.engine = ValidationRuleEngine()

    def _result(self, record):
        return self.engine.validate(record, {"package-name-pattern"}).rule_results[0]

    def test_valid_name_passes(self):
        assert self._result(_make_record([_app(package="Risk Modeler 2.1")])).passed

    def test_missing_app_package_fails(self):
        result = self._result(_make_record([_app(package="  ")]))
        assert not result.passed
        assert "missing package name" in result.detail

    def test_disallowed_characters_fail(self):
        assert not self._result(_make_record([_app(package="bad/name")])).passed

    def test_exempt_products(self):
        record = _make_record([_app("IC-DATABRIDGE", package=None)])
        assert self._result(record).passed

    def test_models_may_omit_package(self):
        assert self._result(_make_record([_model()])).passed


class TestEngine:
    def setup_method(self):
        self.engine = ValidationRuleEngine()

    def test_all_rules_pass(self):
        record = _make_record([
            _app(quantity=2),
            _model(start=date(2025, 1, 1), end=date(2026, 1, 1)),
        ])
        verdict = self.engine.validate(record)
        assert verdict.overall_status == ValidationStatus.PASS
        assert [r.rule_id for r in verdict.rule_results] == [
            "quantity-bound", "date-overlap", "date-gap", "package-name-pattern", "model-count",
        ]

    def test_any_failure_fails_verdict(self):
        verdict = self.engine.validate(_make_record([_app(quantity=0)]))
        assert verdict.overall_status == ValidationStatus.FAIL
        assert [r.rule_id for r in verdict.failed_rules()] == ["quantity-bound"]
        assert verdict.tooltip().startswith("quantity-bound: ")

    def test_model_count(self):
        engine = ValidationRuleEngine(ValidationConfig(max_models=1))
        record = _make_record([_model("A"), _model("B", index=1)])
        verdict = engine.validate(record, {"model-count"})
        assert not verdict.passed

    def test_parse_failure_fails_entitlement_rules(self):
        record = _make_record([], payload_parse_failed=True)
        verdict = self.engine.validate(record)
        assert verdict.overall_status == ValidationStatus.FAIL
        assert all(not r.passed for r in verdict.rule_results)

    def test_unknown_rule_raises(self):
        with pytest.raises(UnknownRuleError):
            self.engine.validate(_make_record([]), {"no-such-rule"})

    def test_no_enabled_rules_pass(self):
        verdict = self.engine.validate(_make_record([_app(quantity=0)]), set())
        assert verdict.passed
        assert verdict.rule_results == []

    def test_custom_rule_registration(self):
        def always_fail(record, config):
            return RuleResult(rule_id="custom", passed=False, detail="nope")

        self.engine.register_rule("custom", always_fail, requires_entitlements=False)
        verdict = self.engine.validate(_make_record([]), {"custom"})
        assert verdict.tooltip() == "custom: nope"

    def test_validation_does_not_mutate_record(self):
        record = _make_record([_app(quantity=0)])
        before = record.model_dump()
        self.engine.validate(record)
        self.engine.validate(record)
        assert record.model_dump() == before

    def test_validate_latest_reads_ledger(self):
        store = SnapshotStore(db_path=":memory:")
        for identity, qty in (("REQ-1", 1), ("REQ-2", 0)):
            store.append_snapshot(Snapshot(
                identity=identity,
                account="ACME",
                captured_at=datetime(2025, 6, 1),
                change_type=ChangeType.INITIAL,
                payload=Record(identity=identity, account="ACME", entitlements=[_app(quantity=qty)]),
            ))
        verdicts = self.engine.validate_latest(store, {"quantity-bound"})
        assert {v.identity: v.passed for v in verdicts} == {"REQ-1": True, "REQ-2": False}
        assert store.count() == 2
