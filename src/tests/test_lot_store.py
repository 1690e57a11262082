"""Tests for the SQL lot store primitives.

Tests cover:
- Lot lookup and FIFO listing (expiry excluded)
- Conditional withdraw / restore and their audit entries
- Idempotent replay by operation key
- Storage retries
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from src.models import AuditEntry, MaterialLot
from src.models.enums import LotOperation, ReferenceKind
from src.services.audit_ledger import SqlAuditLedger
from src.services.dto import Reference
from src.services.exceptions import (
    InsufficientQuantity,
    LotNotFound,
    MaterialNotFound,
    RestoreOverflowError,
    StorageError,
    ValidationError,
)
from src.services.lot_store import SqlLotStore
from src.tests.factories import add_lot, add_material, remaining_of


REF = Reference(ReferenceKind.ADJUSTMENT, "ref-1", "tester")


class FlakySessionFactory:
    """Session factory whose first N calls fail like a locked database."""

    def __init__(self, factory, failures):
        self.factory = factory
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise OperationalError("BEGIN", {}, Exception("database is locked"))
        return self.factory()


@pytest.fixture
def store(engine):
    return engine.lot_store


def _entries(session_factory, lot_id):
    session = session_factory()
    try:
        stmt = select(AuditEntry).where(AuditEntry.lot_id == lot_id).order_by(AuditEntry.id)
        return list(session.execute(stmt).scalars())
    finally:
        session.close()


class TestReads:
    def test_get_returns_snapshot(self, store, lots):
        lot = store.get(lots["L1"])
        assert lot.lot_number == "L1"
        assert lot.remaining_quantity == Decimal("20")
        assert lot.unit_cost == Decimal("2.50")

    def test_get_unknown_lot_raises(self, store, lots):
        with pytest.raises(LotNotFound) as exc_info:
            store.get(9999)
        assert exc_info.value.lot_id == 9999

    def test_list_available_is_fifo(self, test_db, store, material_id, lots):
        # Same intake date as L1 but created later: tie broken by id
        late_twin = add_lot(test_db, material_id, "L1b", 3, intake_date=date(2025, 1, 10))
        available = store.list_available(material_id)
        assert [lot.lot_number for lot in available] == ["L1", "L1b", "L2", "L3"]
        assert available[1].id == late_twin

    def test_list_available_skips_exhausted_and_expired(self, test_db, store, material_id, lots):
        add_lot(test_db, material_id, "EMPTY", 5, remaining=0)
        add_lot(
            test_db,
            material_id,
            "OLD",
            5,
            intake_date=date(2024, 1, 1),
            expiry_date=date.today() - timedelta(days=1),
        )
        numbers = [lot.lot_number for lot in store.list_available(material_id)]
        assert "EMPTY" not in numbers
        assert "OLD" not in numbers

    def test_list_available_unknown_material(self, store):
        with pytest.raises(MaterialNotFound):
            store.list_available(424242)


class TestWithdraw:
    def test_withdraw_decrements_and_audits(self, test_db, store, lots):
        mutation = store.withdraw(lots["L1"], Decimal("15"), reference=REF)

        assert mutation.operation == LotOperation.WITHDRAW
        assert mutation.quantity_before == Decimal("20")
        assert mutation.quantity_after == Decimal("5")
        assert mutation.unit_cost == Decimal("2.50")
        assert not mutation.replayed
        assert remaining_of(test_db, lots["L1"]) == Decimal("5")

        entries = _entries(test_db, lots["L1"])
        assert len(entries) == 1
        assert Decimal(str(entries[0].delta)) == Decimal("-15")
        assert entries[0].reference_id == "ref-1"
        assert entries[0].reference_kind == "adjustment"
        assert entries[0].actor == "tester"
        assert entries[0].id == mutation.audit_entry_id

    def test_withdraw_everything_marks_exhausted(self, test_db, store, lots):
        store.withdraw(lots["L2"], Decimal("5"), reference=REF)
        session = test_db()
        try:
            lot = session.get(MaterialLot, lots["L2"])
            assert lot.status == "exhausted"
            assert lot.is_exhausted
        finally:
            session.close()

    def test_insufficient_quantity_changes_nothing(self, test_db, store, lots):
        with pytest.raises(InsufficientQuantity) as exc_info:
            store.withdraw(lots["L2"], Decimal("6"), reference=REF)

        assert exc_info.value.available == Decimal("5")
        assert exc_info.value.requested == Decimal("6")
        assert remaining_of(test_db, lots["L2"]) == Decimal("5")
        assert _entries(test_db, lots["L2"]) == []

    def test_withdraw_unknown_lot(self, store, lots):
        with pytest.raises(LotNotFound):
            store.withdraw(9999, Decimal("1"), reference=REF)

    @pytest.mark.parametrize("quantity", [Decimal("0"), Decimal("-1"), "abc", None, Decimal("0.0001")])
    def test_withdraw_rejects_non_positive_quantity(self, test_db, store, lots, quantity):
        with pytest.raises(ValidationError):
            store.withdraw(lots["L1"], quantity, reference=REF)
        assert remaining_of(test_db, lots["L1"]) == Decimal("20")

    def test_repeated_operation_key_applies_once(self, test_db, store, lots):
        first = store.withdraw(lots["L1"], Decimal("4"), reference=REF, operation_key="k-1")
        second = store.withdraw(lots["L1"], Decimal("4"), reference=REF, operation_key="k-1")

        assert not first.replayed
        assert second.replayed
        assert second.audit_entry_id == first.audit_entry_id
        assert remaining_of(test_db, lots["L1"]) == Decimal("16")
        assert len(_entries(test_db, lots["L1"])) == 1

    def test_replay_after_lot_drained(self, test_db, store, lots):
        store.withdraw(lots["L2"], Decimal("5"), reference=REF, operation_key="k-2")
        # The lot is now empty, yet a retry of the same call replays instead of failing
        replay = store.withdraw(lots["L2"], Decimal("5"), reference=REF, operation_key="k-2")
        assert replay.replayed
        assert remaining_of(test_db, lots["L2"]) == Decimal("0")


class TestRestore:
    def test_restore_increments_and_links_record(self, test_db, store, lots):
        store.withdraw(lots["L1"], Decimal("8"), reference=REF)
        mutation = store.restore(lots["L1"], Decimal("8"), reference=REF, reason="undo")

        assert mutation.operation == LotOperation.RESTORE
        assert mutation.quantity_after == Decimal("20")
        assert remaining_of(test_db, lots["L1"]) == Decimal("20")

        entries = _entries(test_db, lots["L1"])
        assert [e.operation for e in entries] == ["withdraw", "restore"]
        assert sum(Decimal(str(e.delta)) for e in entries) == Decimal("0")
        assert entries[1].reason == "undo"

    def test_restore_reactivates_exhausted_lot(self, test_db, store, lots):
        store.withdraw(lots["L2"], Decimal("5"), reference=REF)
        store.restore(lots["L2"], Decimal("2"), reference=REF)
        assert store.get(lots["L2"]).status == "active"

    def test_restore_overflow_is_an_error(self, test_db, store, lots):
        store.withdraw(lots["L1"], Decimal("3"), reference=REF)
        with pytest.raises(RestoreOverflowError) as exc_info:
            store.restore(lots["L1"], Decimal("4"), reference=REF)

        assert exc_info.value.remaining == Decimal("17")
        assert exc_info.value.total == Decimal("20")
        # Never clamped
        assert remaining_of(test_db, lots["L1"]) == Decimal("17")

    def test_restore_unknown_lot(self, store, lots):
        with pytest.raises(LotNotFound):
            store.restore(9999, Decimal("1"), reference=REF)

    def test_withdraw_restore_pairs_balance(self, test_db, store, lots):
        for _ in range(3):
            store.withdraw(lots["L3"], Decimal("2.5"), reference=REF)
            store.restore(lots["L3"], Decimal("2.5"), reference=REF)

        entries = _entries(test_db, lots["L3"])
        assert len(entries) == 6
        assert sum(Decimal(str(e.delta)) for e in entries) == Decimal("0")
        assert remaining_of(test_db, lots["L3"]) == Decimal("40")


class TestFindMutation:
    def test_find_mutation(self, store, lots):
        applied = store.withdraw(lots["L1"], Decimal("1"), reference=REF, operation_key="find-me")
        found = store.find_mutation("find-me")
        assert found.replayed
        assert found.lot_id == lots["L1"]
        assert found.quantity == Decimal("1")
        assert found.audit_entry_id == applied.audit_entry_id

    def test_find_mutation_missing(self, store, lots):
        assert store.find_mutation("never-ran") is None


class TestStorageRetry:
    def test_transient_failure_is_retried(self, test_db):
        material_id = add_material(test_db)
        lot_id = add_lot(test_db, material_id, "R1", 10)
        flaky = FlakySessionFactory(test_db, failures=2)
        store = SqlLotStore(SqlAuditLedger(test_db), flaky, retry_attempts=3, retry_backoff=0)

        mutation = store.withdraw(lot_id, Decimal("4"), reference=REF)

        assert mutation.quantity_after == Decimal("6")
        assert flaky.calls == 3
        assert len(_entries(test_db, lot_id)) == 1

    def test_exhausted_retries_raise_storage_error(self, test_db):
        material_id = add_material(test_db)
        lot_id = add_lot(test_db, material_id, "R2", 10)
        flaky = FlakySessionFactory(test_db, failures=5)
        store = SqlLotStore(SqlAuditLedger(test_db), flaky, retry_attempts=2, retry_backoff=0)

        with pytest.raises(StorageError) as exc_info:
            store.withdraw(lot_id, Decimal("4"), reference=REF)

        assert exc_info.value.retryable
        assert isinstance(exc_info.value.original_error, OperationalError)
        assert remaining_of(test_db, lot_id) == Decimal("10")
