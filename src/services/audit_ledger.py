"""Audit ledger for lot mutations and compensations.

The ledger is append-only. AuditEntry rows are written by the LotStore in
the same transaction as the quantity change they describe; RollbackRecord
rows are written by the ConsumptionCoordinator before it starts restoring.
Because every mutation is recorded, a lot's remaining quantity can always be
rebuilt as ``total_quantity + sum(delta)`` and compared with the live value.

Usage:
    ledger = SqlAuditLedger()
    entries = ledger.entries_for(reference_id=batch.uuid)
    problems = ledger.reconcile_all()
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from src.models import AuditEntry, MaterialLot, RollbackRecord
from src.models.enums import LotOperation
from src.services.database import SessionFactory, session_scope
from src.services.dto import AppliedWithdrawal, ReconciliationResult, Reference
from src.services.exceptions import LotNotFound
from src.services.logging_utils import get_service_logger, log_operation
from src.services.storage_retry import run_with_storage_retry

logger = get_service_logger(__name__)


class AuditLedger(ABC):
    """Read/append interface over the audit ledger."""

    @abstractmethod
    def entries_for(
        self, *, lot_id: Optional[int] = None, reference_id: Optional[str] = None
    ) -> List[AuditEntry]:
        """Audit entries filtered by lot and/or reference, ordered by (timestamp, id)."""

    @abstractmethod
    def record_rollback(
        self,
        reference: Reference,
        reason: str,
        withdrawals: Sequence[AppliedWithdrawal],
        *,
        batch_id: Optional[int] = None,
        record_key: Optional[str] = None,
    ) -> int:
        """
        Persist a RollbackRecord snapshotting the withdrawals about to be reversed.

        Args:
            reference: Reference whose consumption is being compensated
            reason: Why the compensation happens
            withdrawals: Applied withdrawals, in the order they were applied
            batch_id: ProductionBatch id when the reference is a persisted batch
            record_key: Optional unique key; a repeated key returns the
                existing record instead of writing a second one

        Returns:
            Id of the RollbackRecord
        """

    @abstractmethod
    def rollbacks_for(self, reference_id: str) -> List[RollbackRecord]:
        """Rollback records of a reference (with their restores), oldest first."""

    @abstractmethod
    def reconcile_lot(self, lot_id: int) -> ReconciliationResult:
        """Rebuild one lot's remaining quantity from its audit entries."""

    @abstractmethod
    def reconcile_all(self) -> List[ReconciliationResult]:
        """Reconcile every lot and return only the inconsistent ones."""

    @abstractmethod
    def incomplete_rollbacks(self) -> List[RollbackRecord]:
        """Rollback records with fewer linked restores than snapshot rows."""


def reconcile(lot, entries: Iterable) -> ReconciliationResult:
    """
    Compare a lot's live quantity against its audit entries.

    Checks performed:
    - remaining_quantity within [0, total_quantity]
    - total_quantity + sum(delta) == remaining_quantity
    - each entry's before/after agree with its delta and operation sign

    Args:
        lot: MaterialLot or LotSnapshot
        entries: The lot's AuditEntry rows

    Returns:
        ReconciliationResult (issues empty when consistent)
    """
    total = Decimal(str(lot.total_quantity))
    remaining = Decimal(str(lot.remaining_quantity))
    expected = total
    issues = []
    count = 0

    for entry in entries:
        count += 1
        delta = Decimal(str(entry.delta))
        expected += delta
        before = Decimal(str(entry.quantity_before))
        after = Decimal(str(entry.quantity_after))
        if after - before != delta:
            issues.append(
                f"Entry {entry.operation_key}: before {before} / after {after} "
                f"disagree with delta {delta}"
            )
        if entry.operation == LotOperation.WITHDRAW.value and delta >= 0:
            issues.append(f"Entry {entry.operation_key}: withdraw with non-negative delta")
        if entry.operation == LotOperation.RESTORE.value and delta <= 0:
            issues.append(f"Entry {entry.operation_key}: restore with non-positive delta")

    if remaining < 0:
        issues.append(f"Remaining quantity {remaining} is negative")
    if remaining > total:
        issues.append(f"Remaining quantity {remaining} exceeds total {total}")
    if expected != remaining:
        issues.append(f"Ledger implies {expected} remaining but lot records {remaining}")

    return ReconciliationResult(
        lot_id=lot.id,
        lot_number=lot.lot_number,
        total_quantity=total,
        recorded_remaining=remaining,
        expected_remaining=expected,
        entry_count=count,
        issues=issues,
    )


def is_incomplete(record: RollbackRecord) -> bool:
    """True when a rollback record has fewer restores than withdrawals it snapshotted."""
    return len(record.restores) < record.input_count


class SqlAuditLedger(AuditLedger):
    """
    SQLAlchemy implementation of the audit ledger.

    Args:
        session_factory: Optional session factory (default: global factory)
        retry_attempts: Storage retry attempts for rollback writes
        retry_backoff: Initial storage retry backoff in seconds
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        *,
        retry_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff

    # ------------------------------------------------------------------
    # Session-level helpers used by SqlLotStore
    # ------------------------------------------------------------------

    def append_entry(
        self,
        session: Session,
        *,
        lot_id: int,
        operation: LotOperation,
        delta: Decimal,
        quantity_before: Decimal,
        quantity_after: Decimal,
        reference: Reference,
        operation_key: str,
        reason: Optional[str] = None,
        rollback_record_id: Optional[int] = None,
    ) -> AuditEntry:
        """
        Append an AuditEntry inside the caller's transaction.

        The entry is flushed immediately so a duplicate operation_key fails
        here with IntegrityError, before the caller commits.
        """
        entry = AuditEntry(
            lot_id=lot_id,
            operation=LotOperation(operation).value,
            delta=delta,
            quantity_before=quantity_before,
            quantity_after=quantity_after,
            reference_id=reference.id,
            reference_kind=reference.kind_value,
            actor=reference.actor,
            reason=reason,
            operation_key=operation_key,
            rollback_record_id=rollback_record_id,
        )
        session.add(entry)
        session.flush()
        return entry

    def find_entry(self, session: Session, operation_key: str) -> Optional[AuditEntry]:
        """Entry recorded under operation_key, with its lot loaded."""
        stmt = (
            select(AuditEntry)
            .options(joinedload(AuditEntry.lot))
            .where(AuditEntry.operation_key == operation_key)
        )
        return session.execute(stmt).scalar_one_or_none()

    # ------------------------------------------------------------------
    # AuditLedger interface
    # ------------------------------------------------------------------

    def entries_for(
        self, *, lot_id: Optional[int] = None, reference_id: Optional[str] = None
    ) -> List[AuditEntry]:
        with session_scope(self._session_factory) as session:
            stmt = select(AuditEntry).options(joinedload(AuditEntry.lot))
            if lot_id is not None:
                stmt = stmt.where(AuditEntry.lot_id == lot_id)
            if reference_id is not None:
                stmt = stmt.where(AuditEntry.reference_id == reference_id)
            stmt = stmt.order_by(AuditEntry.timestamp, AuditEntry.id)
            return list(session.execute(stmt).scalars().unique())

    def record_rollback(
        self,
        reference: Reference,
        reason: str,
        withdrawals: Sequence[AppliedWithdrawal],
        *,
        batch_id: Optional[int] = None,
        record_key: Optional[str] = None,
    ) -> int:
        snapshot = [withdrawal.to_snapshot() for withdrawal in withdrawals]

        def _write() -> int:
            try:
                with session_scope(self._session_factory) as session:
                    record = RollbackRecord(
                        reference_id=reference.id,
                        reference_kind=reference.kind_value,
                        batch_id=batch_id,
                        reason=reason,
                        original_inputs=snapshot,
                        performed_by=reference.actor,
                    )
                    if record_key is not None:
                        record.uuid = record_key
                    session.add(record)
                    session.flush()
                    return record.id
            except IntegrityError:
                if record_key is None:
                    raise
                with session_scope(self._session_factory) as session:
                    existing = session.execute(
                        select(RollbackRecord.id).where(RollbackRecord.uuid == record_key)
                    ).scalar_one_or_none()
                if existing is None:
                    raise
                return existing

        record_id = run_with_storage_retry(
            _write,
            description=f"Recording rollback for {reference.id}",
            attempts=self._retry_attempts,
            backoff=self._retry_backoff,
        )
        log_operation(
            logger,
            operation="record_rollback",
            outcome="recorded",
            level=logging.WARNING,
            reference_id=reference.id,
            rollback_record_id=record_id,
            reason=reason,
            input_count=len(snapshot),
        )
        return record_id

    def rollbacks_for(self, reference_id: str) -> List[RollbackRecord]:
        with session_scope(self._session_factory) as session:
            stmt = (
                select(RollbackRecord)
                .options(selectinload(RollbackRecord.restores))
                .where(RollbackRecord.reference_id == reference_id)
                .order_by(RollbackRecord.performed_at, RollbackRecord.id)
            )
            return list(session.execute(stmt).scalars())

    def reconcile_lot(self, lot_id: int) -> ReconciliationResult:
        with session_scope(self._session_factory) as session:
            lot = session.get(MaterialLot, lot_id)
            if lot is None:
                raise LotNotFound(lot_id)
            entries = session.execute(
                select(AuditEntry).where(AuditEntry.lot_id == lot_id).order_by(AuditEntry.id)
            ).scalars()
            return reconcile(lot, entries)

    def reconcile_all(self) -> List[ReconciliationResult]:
        with session_scope(self._session_factory) as session:
            lots = session.execute(
                select(MaterialLot)
                .options(selectinload(MaterialLot.audit_entries))
                .order_by(MaterialLot.id)
            ).scalars()
            results = [reconcile(lot, lot.audit_entries) for lot in lots]

        discrepancies = [result for result in results if not result.consistent]
        for result in discrepancies:
            log_operation(
                logger,
                operation="reconcile",
                outcome="discrepancy",
                level=logging.ERROR,
                lot_id=result.lot_id,
                issues=result.issues,
            )
        return discrepancies

    def incomplete_rollbacks(self) -> List[RollbackRecord]:
        with session_scope(self._session_factory) as session:
            records = session.execute(
                select(RollbackRecord)
                .options(selectinload(RollbackRecord.restores))
                .order_by(RollbackRecord.id)
            ).scalars()
            return [record for record in records if is_incomplete(record)]
