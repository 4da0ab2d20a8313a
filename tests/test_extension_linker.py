"""Tests for the Extension Linker."""

from datetime import date, datetime, timedelta

from audit_kernel.extension.linker import ExtensionLinker, product_end_dates
from audit_kernel.ledger.store import SnapshotStore
from audit_kernel.models.record import Entitlement, EntitlementCategory, Record
from audit_kernel.models.snapshot import ChangeType, Snapshot

T0 = datetime(2025, 6, 1, 12, 0, 0)


def _ent(code: str, end, start=None) -> Entitlement:
    return Entitlement(
        product_code=code,
        category=EntitlementCategory.MODEL,
        start_date=start,
        end_date=end,
    )


def _make_snapshot(identity: str, entitlements, account: str = "ACME", created_at=None) -> Snapshot:
    return Snapshot(
        identity=identity,
        account=account,
        captured_at=T0,
        change_type=ChangeType.INITIAL,
        payload=Record(
            identity=identity,
            account=account,
            status="Completed",
            entitlements=entitlements,
            created_at=created_at,
        ),
    )


class TestComputeMarks:
    def setup_method(self):
        self.linker = ExtensionLinker(SnapshotStore(db_path=":memory:"))

    def test_later_end_date_extends(self):
        marks = self.linker.compute_marks([
            _make_snapshot("R1", [_ent("PROD-X", date(2025, 11, 13))]),
            _make_snapshot("R2", [_ent("PROD-X", date(2026, 11, 13))]),
        ])
        r1 = marks["R1"][0]
        assert r1.is_extended is True
        assert r1.extending_identity == "R2"
        assert r1.extending_end_date == date(2026, 11, 13)
        assert marks["R2"][0].is_extended is False

    def test_equal_end_dates_do_not_extend(self):
        marks = self.linker.compute_marks([
            _make_snapshot("R1", [_ent("PROD-X", date(2025, 11, 13))]),
            _make_snapshot("R2", [_ent("PROD-X", date(2025, 11, 13))]),
        ])
        assert not marks["R1"][0].is_extended
        assert not marks["R2"][0].is_extended

    def test_other_products_do_not_extend(self):
        marks = self.linker.compute_marks([
            _make_snapshot("R1", [_ent("PROD-X", date(2025, 11, 13))]),
            _make_snapshot("R2", [_ent("PROD-Y", date(2026, 11, 13))]),
        ])
        assert not marks["R1"][0].is_extended

    def test_latest_end_date_wins(self):
        marks = self.linker.compute_marks([
            _make_snapshot("R1", [_ent("PROD-X", date(2025, 1, 1))]),
            _make_snapshot("R2", [_ent("PROD-X", date(2026, 1, 1))]),
            _make_snapshot("R3", [_ent("PROD-X", date(2027, 1, 1))]),
        ])
        assert marks["R1"][0].extending_identity == "R3"
        assert marks["R2"][0].extending_identity == "R3"
        assert not marks["R3"][0].is_extended

    def test_tie_broken_by_most_recent_creation(self):
        marks = self.linker.compute_marks([
            _make_snapshot("R1", [_ent("PROD-X", date(2025, 1, 1))]),
            _make_snapshot("R2", [_ent("PROD-X", date(2027, 1, 1))], created_at=T0),
            _make_snapshot("R3", [_ent("PROD-X", date(2027, 1, 1))], created_at=T0 - timedelta(days=30)),
        ])
        assert marks["R1"][0].extending_identity == "R2"

    def test_max_end_date_per_record_is_used(self):
        marks = self.linker.compute_marks([
            _make_snapshot("R1", [
                _ent("PROD-X", date(2025, 1, 1)),
                _ent("PROD-X", date(2027, 1, 1), start=date(2026, 1, 1)),
            ]),
            _make_snapshot("R2", [_ent("PROD-X", date(2026, 6, 1))]),
        ])
        assert not marks["R1"][0].is_extended
        assert marks["R2"][0].extending_identity == "R1"
        assert len(marks["R1"]) == 1

    def test_open_end_date_extends_and_is_never_extended(self):
        marks = self.linker.compute_marks([
            _make_snapshot("R1", [_ent("PROD-X", date(2025, 1, 1))]),
            _make_snapshot("R2", [_ent("PROD-X", None)]),
        ])
        assert marks["R1"][0].extending_identity == "R2"
        assert marks["R1"][0].extending_end_date is None
        assert not marks["R2"][0].is_extended

    def test_marks_do_not_depend_on_input_order(self):
        snapshots = [
            _make_snapshot("R1", [_ent("PROD-X", date(2025, 1, 1))]),
            _make_snapshot("R2", [_ent("PROD-X", date(2026, 1, 1))]),
            _make_snapshot("R3", [_ent("PROD-X", date(2026, 1, 1))]),
        ]
        forward = self.linker.compute_marks(snapshots)
        backward = self.linker.compute_marks(list(reversed(snapshots)))
        assert forward == backward

    def test_product_end_dates(self):
        snapshot = _make_snapshot("R1", [
            _ent("A", date(2025, 1, 1)),
            _ent("A", date(2024, 1, 1)),
            _ent("B", None),
        ])
        assert product_end_dates(snapshot) == {"A": date(2025, 1, 1), "B": None}


class TestLinkAccounts:
    def setup_method(self):
        self.store = SnapshotStore(db_path=":memory:")
        self.linker = ExtensionLinker(self.store, max_workers=2)

    def _append(self, identity, entitlements, account="ACME"):
        return self.store.append_snapshot(_make_snapshot(identity, entitlements, account))

    def test_link_persists_marks(self):
        self._append("R1", [_ent("PROD-X", date(2025, 11, 13))])
        self._append("R2", [_ent("PROD-X", date(2026, 11, 13))])

        assert self.linker.link_accounts(["ACME"]) == 1
        mark = self.store.latest("R1").mark_for("PROD-X")
        assert mark.is_extended is True
        assert mark.extending_identity == "R2"
        assert self.store.latest("R2").mark_for("PROD-X").is_extended is False

    def test_linking_is_idempotent(self):
        self._append("R1", [_ent("PROD-X", date(2025, 11, 13))])
        self._append("R2", [_ent("PROD-X", date(2026, 11, 13))])
        self.linker.link_accounts()
        first = [s.extension_marks for s in self.store.latest_for_accounts()]
        self.linker.link_accounts()
        second = [s.extension_marks for s in self.store.latest_for_accounts()]
        assert first == second

    def test_accounts_are_isolated(self):
        self._append("R1", [_ent("PROD-X", date(2025, 11, 13))], account="A")
        self._append("R2", [_ent("PROD-X", date(2026, 11, 13))], account="B")
        self.linker.link_accounts()
        assert self.store.latest("R1").mark_for("PROD-X").is_extended is False

    def test_only_requested_accounts_change(self):
        self._append("R1", [_ent("PROD-X", date(2025, 11, 13))], account="A")
        self._append("R2", [_ent("PROD-X", date(2026, 11, 13))], account="A")
        self._append("R3", [_ent("PROD-X", date(2025, 11, 13))], account="B")
        self._append("R4", [_ent("PROD-X", date(2026, 11, 13))], account="B")

        self.linker.link_accounts(["A"])
        assert self.store.latest("R1").mark_for("PROD-X").is_extended is True
        assert self.store.latest("R3").extension_marks == []

    def test_empty_ledger(self):
        assert self.linker.link_accounts() == 0
