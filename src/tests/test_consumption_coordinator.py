"""Tests for multi-lot consumption and saga compensation.

Tests cover:
- Successful single- and multi-lot consumption (scenario A)
- Pre-check failures with zero mutation (scenario B)
- Lost races, deadlines, storage failures and unexpected errors, each
  compensated in reverse order
- Compensation failure
"""

import logging
from decimal import Decimal

import pytest

from src.models.enums import ReferenceKind
from src.services.availability_validator import AvailabilityValidator
from src.services.consumption_coordinator import ConsumptionCoordinator
from src.services.dto import ConsumptionRequest, Reference
from src.services.exceptions import (
    CompensationFailure,
    ConsumptionFailure,
    ConsumptionInterrupted,
    ConsumptionTimeout,
    ConsumptionValidationError,
    RaceLost,
    StorageError,
    ValidationError,
)
from src.tests.factories import remaining_of
from src.tests.fakes import FaultyLotStore, InMemoryLotStore
from src.utils.constants import (
    REASON_DEADLINE,
    REASON_RACE_LOST,
    REASON_STORAGE_FAILURE,
    REASON_UNEXPECTED,
)


def _ref(ref_id="batch-1"):
    return Reference(ReferenceKind.PRODUCTION_BATCH, ref_id, "production")


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def memory():
    """In-memory store with three lots, wrapped for fault injection."""
    inner = InMemoryLotStore()
    lot_ids = {
        "L1": inner.add_lot("L1", 10, unit_cost="2.00"),
        "L2": inner.add_lot("L2", 10, unit_cost="3.00"),
        "L3": inner.add_lot("L3", 10, unit_cost="4.00"),
    }
    faulty = FaultyLotStore(inner)
    clock = FakeClock()
    coordinator = ConsumptionCoordinator(
        faulty,
        AvailabilityValidator(faulty, max_alternatives=3),
        inner.ledger,
        clock=clock,
    )
    return {
        "inner": inner,
        "store": faulty,
        "ledger": inner.ledger,
        "lots": lot_ids,
        "clock": clock,
        "coordinator": coordinator,
    }


def _requests(lot_ids, quantity="4"):
    return [ConsumptionRequest(lot_id, Decimal(quantity)) for lot_id in lot_ids]


def _assert_untouched(inner, lot_ids, value=Decimal("10")):
    for lot_id in lot_ids:
        assert inner.remaining(lot_id) == value


class TestConsumeSql:
    def test_scenario_a_single_lot(self, test_db, engine, lots):
        consumed = engine.coordinator.consume(
            [ConsumptionRequest(lots["L1"], Decimal("15"))], _ref()
        )

        assert remaining_of(test_db, lots["L1"]) == Decimal("5")
        entries = engine.audit_ledger.entries_for(lot_id=lots["L1"])
        assert len(entries) == 1
        assert Decimal(str(entries[0].delta)) == Decimal("-15")
        assert consumed.total_cost == Decimal("37.50")

    def test_multi_lot_success_captures_costs(self, test_db, engine, lots):
        consumed = engine.coordinator.consume(
            [
                ConsumptionRequest(lots["L1"], Decimal("10")),
                ConsumptionRequest(lots["L2"], Decimal("5")),
            ],
            _ref(),
        )

        assert consumed.lot_ids == [lots["L1"], lots["L2"]]
        assert [w.unit_cost for w in consumed.withdrawals] == [Decimal("2.50"), Decimal("3.00")]
        assert consumed.total_cost == Decimal("40.00")
        assert remaining_of(test_db, lots["L2"]) == Decimal("0")
        assert engine.audit_ledger.rollbacks_for("batch-1") == []

    def test_scenario_b_validation_failure_mutates_nothing(self, test_db, engine, lots):
        l1 = lots["L1"]
        with pytest.raises(ConsumptionValidationError) as exc_info:
            engine.coordinator.consume(
                [
                    ConsumptionRequest(l1, Decimal("10")),
                    ConsumptionRequest(lots["L2"], Decimal("10")),
                ],
                _ref(),
            )

        error = exc_info.value
        assert not error.retryable
        assert isinstance(error, ConsumptionFailure)
        assert [f.lot_id for f in error.failures] == [lots["L2"]]
        assert error.failures[0].available == Decimal("5")
        assert [alt.lot_number for alt in error.failures[0].alternatives] == ["L3", "L1"]
        assert remaining_of(test_db, l1) == Decimal("20")
        assert remaining_of(test_db, lots["L2"]) == Decimal("5")
        assert engine.audit_ledger.entries_for() == []
        # Nothing was applied, so there is nothing to roll back
        assert engine.audit_ledger.rollbacks_for("batch-1") == []

    def test_empty_request_list(self, engine):
        with pytest.raises(ValidationError):
            engine.coordinator.consume([], _ref())


class TestRaceLost:
    def test_lost_race_compensates_applied_steps(self, memory):
        inner, store, lots = memory["inner"], memory["store"], memory["lots"]
        rival = _ref("rival")

        def rival_takes_l3(call_number, lot_id):
            if lot_id == lots["L3"]:
                inner.withdraw(lots["L3"], Decimal("8"), reference=rival)

        store.before_withdraw = rival_takes_l3

        with pytest.raises(RaceLost) as exc_info:
            memory["coordinator"].consume(_requests([lots["L1"], lots["L2"], lots["L3"]]), _ref())

        error = exc_info.value
        assert error.retryable
        assert error.lot_id == lots["L3"]
        assert error.available == Decimal("2")
        assert inner.remaining(lots["L1"]) == Decimal("10")
        assert inner.remaining(lots["L2"]) == Decimal("10")
        assert inner.remaining(lots["L3"]) == Decimal("2")
        # Exact reverse order of application
        assert store.restore_calls == [lots["L2"], lots["L1"]]

        records = memory["ledger"].rollbacks_for("batch-1")
        assert len(records) == 1
        assert records[0].id == error.rollback_record_id
        assert records[0].reason == REASON_RACE_LOST
        assert [row["lot_id"] for row in records[0].original_inputs] == [lots["L1"], lots["L2"]]
        assert [entry.lot_id for entry in records[0].restores] == [lots["L2"], lots["L1"]]

    def test_lost_race_on_first_lot_needs_no_compensation(self, memory):
        inner, store, lots = memory["inner"], memory["store"], memory["lots"]

        def rival_drains(call_number, lot_id):
            inner.withdraw(lot_id, Decimal("10"), reference=_ref("rival"))

        store.before_withdraw = rival_drains

        with pytest.raises(RaceLost) as exc_info:
            memory["coordinator"].consume(_requests([lots["L1"]], "10"), _ref())

        assert exc_info.value.rollback_record_id is None
        assert store.restore_calls == []
        assert memory["ledger"].rollbacks_for("batch-1") == []


class TestDeadline:
    def test_timeout_compensates(self, memory):
        store, lots, clock = memory["store"], memory["lots"], memory["clock"]

        def slow_storage(call_number, lot_id):
            clock.now += 2.0

        store.before_withdraw = slow_storage

        with pytest.raises(ConsumptionTimeout) as exc_info:
            memory["coordinator"].consume(
                _requests([lots["L1"], lots["L2"], lots["L3"]]), _ref(), timeout=3.0
            )

        assert exc_info.value.retryable
        assert exc_info.value.timeout == 3.0
        # Two withdrawals started before the deadline passed
        assert store.withdraw_calls == 2
        _assert_untouched(memory["inner"], lots.values())
        assert memory["ledger"].rollbacks_for("batch-1")[0].reason == REASON_DEADLINE

    def test_no_timeout_by_default(self, memory):
        store, lots, clock = memory["store"], memory["lots"], memory["clock"]
        store.before_withdraw = lambda call_number, lot_id: setattr(clock, "now", clock.now + 1000)

        consumed = memory["coordinator"].consume(_requests([lots["L1"], lots["L2"]]), _ref())
        assert len(consumed.withdrawals) == 2


class TestStorageFailure:
    def test_failure_before_apply(self, memory):
        store, lots = memory["store"], memory["lots"]
        store.withdraw_faults[2] = StorageError("connection reset")

        with pytest.raises(ConsumptionInterrupted) as exc_info:
            memory["coordinator"].consume(_requests([lots["L1"], lots["L2"], lots["L3"]]), _ref())

        assert exc_info.value.retryable
        assert isinstance(exc_info.value.original_error, StorageError)
        _assert_untouched(memory["inner"], lots.values())
        assert store.restore_calls == [lots["L1"]]
        assert memory["ledger"].rollbacks_for("batch-1")[0].reason == REASON_STORAGE_FAILURE

    def test_ambiguous_step_that_applied_is_compensated(self, memory):
        store, lots = memory["store"], memory["lots"]
        store.withdraw_faults_after_apply[2] = StorageError("timeout waiting for commit ack")

        with pytest.raises(ConsumptionInterrupted):
            memory["coordinator"].consume(_requests([lots["L1"], lots["L2"], lots["L3"]]), _ref())

        _assert_untouched(memory["inner"], lots.values())
        assert store.restore_calls == [lots["L2"], lots["L1"]]

    def test_unresolvable_step_is_reported_for_reconciliation(self, memory):
        store, lots = memory["store"], memory["lots"]
        store.withdraw_faults_after_apply[2] = StorageError("timeout")
        store.find_fault = StorageError("still down")

        with pytest.raises(CompensationFailure) as exc_info:
            memory["coordinator"].consume(_requests([lots["L1"], lots["L2"]]), _ref())

        error = exc_info.value
        assert not error.retryable
        assert [w.lot_id for w, _ in error.failed] == [lots["L2"]]
        assert memory["inner"].remaining(lots["L1"]) == Decimal("10")


class TestUnexpectedError:
    def test_unexpected_error_compensates_and_propagates(self, memory):
        store, lots = memory["store"], memory["lots"]
        store.withdraw_faults[3] = RuntimeError("bug in storage driver")

        with pytest.raises(RuntimeError, match="bug in storage driver"):
            memory["coordinator"].consume(_requests([lots["L1"], lots["L2"], lots["L3"]]), _ref())

        _assert_untouched(memory["inner"], lots.values())
        assert memory["ledger"].rollbacks_for("batch-1")[0].reason == REASON_UNEXPECTED


class TestCompensationFailure:
    def test_failed_restore_still_attempts_the_rest(self, memory, caplog):
        inner, store, lots = memory["inner"], memory["store"], memory["lots"]
        store.restore_faults[lots["L2"]] = StorageError("disk full")
        store.withdraw_faults[3] = StorageError("connection reset")

        with caplog.at_level(logging.CRITICAL):
            with pytest.raises(CompensationFailure) as exc_info:
                memory["coordinator"].consume(
                    _requests([lots["L1"], lots["L2"], lots["L3"]]), _ref()
                )

        error = exc_info.value
        assert not isinstance(error, ConsumptionFailure)
        assert [w.lot_id for w in error.restored] == [lots["L1"]]
        assert [w.lot_id for w, _ in error.failed] == [lots["L2"]]
        assert isinstance(error.cause, StorageError)
        assert store.restore_calls == [lots["L2"], lots["L1"]]
        assert inner.remaining(lots["L1"]) == Decimal("10")
        assert inner.remaining(lots["L2"]) == Decimal("6")
        assert any(
            record.levelno == logging.CRITICAL and "restore_failed" in record.getMessage()
            for record in caplog.records
        )
        assert [r.id for r in memory["ledger"].incomplete_rollbacks()] == [error.rollback_record_id]

    def test_unwritten_rollback_record_is_fatal(self, memory, caplog):
        inner, store, lots = memory["inner"], memory["store"], memory["lots"]
        memory["ledger"].rollback_fault = StorageError("ledger unavailable")

        def rival_takes_l3(call_number, lot_id):
            if lot_id == lots["L3"]:
                inner.withdraw(lots["L3"], Decimal("8"), reference=_ref("rival"))

        store.before_withdraw = rival_takes_l3

        with caplog.at_level(logging.CRITICAL):
            with pytest.raises(CompensationFailure) as exc_info:
                memory["coordinator"].consume(
                    _requests([lots["L1"], lots["L2"], lots["L3"]]), _ref()
                )

        error = exc_info.value
        assert isinstance(error.record_error, StorageError)
        assert error.rollback_record_id is None
        assert error.failed == []
        assert [w.lot_id for w in error.restored] == [lots["L2"], lots["L1"]]
        assert "rollback record not written" in str(error)
        # Restores still ran
        assert inner.remaining(lots["L1"]) == Decimal("10")
        assert inner.remaining(lots["L2"]) == Decimal("10")
        assert memory["ledger"].rollbacks == []
        assert any(
            record.levelno == logging.CRITICAL and "rollback_record_failed" in record.getMessage()
            for record in caplog.records
        )

    def test_unexpected_ledger_error_still_restores(self, memory):
        inner, store, lots = memory["inner"], memory["store"], memory["lots"]
        consumed = memory["coordinator"].consume(_requests([lots["L1"], lots["L2"]]), _ref())
        memory["ledger"].rollback_fault = RuntimeError("snapshot not serializable")

        with pytest.raises(CompensationFailure) as exc_info:
            memory["coordinator"].compensate(consumed.withdrawals, _ref(), "customer cancelled")

        assert isinstance(exc_info.value.record_error, RuntimeError)
        assert store.restore_calls == [lots["L2"], lots["L1"]]
        _assert_untouched(inner, [lots["L1"], lots["L2"]])


class TestCompensate:
    def test_compensate_writes_record_before_restoring(self, memory):
        inner, store, lots = memory["inner"], memory["store"], memory["lots"]
        consumed = memory["coordinator"].consume(_requests([lots["L1"], lots["L2"]]), _ref())
        record_counts = []
        store.after_restore = lambda lot_id, mutation: record_counts.append(
            len(memory["ledger"].rollbacks)
        )

        record_id = memory["coordinator"].compensate(
            consumed.withdrawals, _ref(), "customer cancelled"
        )

        assert record_counts == [1, 1]
        _assert_untouched(inner, [lots["L1"], lots["L2"]])
        restores = [e for e in memory["ledger"].entries if e.operation == "restore"]
        assert all(e.rollback_record_id == record_id for e in restores)

    def test_compensate_nothing(self, memory):
        assert memory["coordinator"].compensate([], _ref(), "noop") is None
        assert memory["ledger"].rollbacks == []


class TestAllOrNothing:
    @pytest.mark.parametrize("failing_call", [1, 2, 3])
    def test_failure_at_any_step_leaves_no_net_change(self, memory, failing_call):
        store, lots = memory["store"], memory["lots"]
        store.withdraw_faults[failing_call] = StorageError("boom")
        before = sum(memory["inner"].remaining(lot_id) for lot_id in lots.values())

        with pytest.raises(ConsumptionFailure):
            memory["coordinator"].consume(_requests([lots["L1"], lots["L2"], lots["L3"]]), _ref())

        after = sum(memory["inner"].remaining(lot_id) for lot_id in lots.values())
        assert after == before
        assert memory["ledger"].reconcile_all() == []
