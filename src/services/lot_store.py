"""Lot storage with race-safe quantity primitives.

The LotStore is the only code allowed to change a lot's remaining quantity.
Both primitives are a single conditional UPDATE:

- withdraw: ``remaining := remaining - q  WHERE id = :lot AND remaining >= q``
- restore:  ``remaining := remaining + q  WHERE id = :lot AND remaining + q <= total``

A decrement therefore either applies fully or not at all, and two concurrent
consumers of the same lot can never drive it negative: whichever UPDATE
matches no row loses and gets InsufficientQuantity. No application-level
lock is taken.

Each successful primitive appends exactly one AuditEntry in the same
transaction, keyed by a unique operation key. Re-running a primitive with an
already-recorded key returns the recorded mutation without applying it
again, which is what makes storage-level retries safe.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError

from src.models import Material, MaterialLot
from src.models.enums import LotOperation, LotStatus
from src.services.audit_ledger import SqlAuditLedger
from src.services.database import SessionFactory, session_scope
from src.services.dto import LotMutation, LotSnapshot, Reference
from src.services.exceptions import (
    InsufficientQuantity,
    LotNotFound,
    MaterialNotFound,
    RestoreOverflowError,
    ValidationError,
)
from src.services.logging_utils import get_service_logger, log_operation
from src.services.storage_retry import run_with_storage_retry
from src.utils.validators import parse_quantity, quantize_quantity, validate_positive_quantity

logger = get_service_logger(__name__)


def new_operation_key(reference: Reference, operation: LotOperation) -> str:
    """Generate a fresh idempotency key for a single primitive call."""
    return f"{reference.id}:{uuid.uuid4()}:{LotOperation(operation).value}"


def require_positive_quantity(quantity) -> Decimal:
    """
    Parse and validate a primitive's quantity.

    Raises:
        ValidationError: If quantity is not a positive finite number
    """
    is_valid, error = validate_positive_quantity(quantity)
    if not is_valid:
        raise ValidationError([error])
    parsed = quantize_quantity(parse_quantity(quantity))
    if parsed <= 0:
        raise ValidationError([f"Quantity: {quantity} rounds to zero"])
    return parsed


class LotStore(ABC):
    """Storage interface for material lots."""

    @abstractmethod
    def get(self, lot_id: int) -> LotSnapshot:
        """
        Get a lot by id.

        Raises:
            LotNotFound: If the lot doesn't exist
        """

    @abstractmethod
    def list_available(self, material_id: int, *, as_of: Optional[date] = None) -> List[LotSnapshot]:
        """
        Lots of a material with stock left, oldest intake first.

        Expired lots (expiry_date on or before as_of, default today) are
        excluded. Ties on intake_date are broken by lot id.

        Raises:
            MaterialNotFound: If the material doesn't exist
        """

    @abstractmethod
    def withdraw(
        self,
        lot_id: int,
        quantity,
        *,
        reference: Reference,
        operation_key: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> LotMutation:
        """
        Atomically decrement a lot iff it holds at least ``quantity``.

        Raises:
            ValidationError: If quantity is not positive
            LotNotFound: If the lot doesn't exist
            InsufficientQuantity: If the lot holds less than quantity
                (nothing is decremented)
            StorageError: If storage failed after retries
        """

    @abstractmethod
    def restore(
        self,
        lot_id: int,
        quantity,
        *,
        reference: Reference,
        operation_key: Optional[str] = None,
        reason: Optional[str] = None,
        rollback_record_id: Optional[int] = None,
    ) -> LotMutation:
        """
        Atomically increment a lot iff the result stays within total_quantity.

        Raises:
            ValidationError: If quantity is not positive
            LotNotFound: If the lot doesn't exist
            RestoreOverflowError: If the lot would exceed its total quantity
            StorageError: If storage failed after retries
        """

    @abstractmethod
    def find_mutation(self, operation_key: str) -> Optional[LotMutation]:
        """Mutation recorded under operation_key, or None if it never applied."""


class SqlLotStore(LotStore):
    """
    SQLAlchemy implementation of the LotStore.

    Every primitive runs in its own short transaction. The UPDATE is issued
    before anything is read so SQLite takes its write lock up front instead
    of upgrading a read lock.

    Args:
        audit_ledger: Ledger the audit entries are appended through
        session_factory: Optional session factory (default: global factory)
        retry_attempts: Storage retry attempts per primitive
        retry_backoff: Initial storage retry backoff in seconds
    """

    def __init__(
        self,
        audit_ledger: SqlAuditLedger,
        session_factory: Optional[SessionFactory] = None,
        *,
        retry_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ):
        self._ledger = audit_ledger
        self._session_factory = session_factory
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, lot_id: int) -> LotSnapshot:
        with session_scope(self._session_factory) as session:
            lot = session.get(MaterialLot, lot_id)
            if lot is None:
                raise LotNotFound(lot_id)
            return LotSnapshot.from_model(lot)

    def list_available(self, material_id: int, *, as_of: Optional[date] = None) -> List[LotSnapshot]:
        as_of = as_of or date.today()
        with session_scope(self._session_factory) as session:
            if session.get(Material, material_id) is None:
                raise MaterialNotFound(material_id)

            stmt = (
                select(MaterialLot)
                .where(
                    MaterialLot.material_id == material_id,
                    MaterialLot.remaining_quantity > 0,
                    (MaterialLot.expiry_date.is_(None)) | (MaterialLot.expiry_date > as_of),
                )
                .order_by(MaterialLot.intake_date.asc(), MaterialLot.id.asc())
            )
            return [LotSnapshot.from_model(lot) for lot in session.execute(stmt).scalars()]

    def find_mutation(self, operation_key: str) -> Optional[LotMutation]:
        with session_scope(self._session_factory) as session:
            entry = self._ledger.find_entry(session, operation_key)
            if entry is None:
                return None
            return self._mutation_from_entry(entry, replayed=True)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def withdraw(
        self,
        lot_id: int,
        quantity,
        *,
        reference: Reference,
        operation_key: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> LotMutation:
        quantity = require_positive_quantity(quantity)
        key = operation_key or new_operation_key(reference, LotOperation.WITHDRAW)

        mutation = self._run(
            lambda: self._apply_withdraw(lot_id, quantity, reference, key, reason),
            key,
            f"Withdrawing {quantity} from lot {lot_id}",
        )
        self._log_mutation(mutation, reference)
        return mutation

    def restore(
        self,
        lot_id: int,
        quantity,
        *,
        reference: Reference,
        operation_key: Optional[str] = None,
        reason: Optional[str] = None,
        rollback_record_id: Optional[int] = None,
    ) -> LotMutation:
        quantity = require_positive_quantity(quantity)
        key = operation_key or new_operation_key(reference, LotOperation.RESTORE)

        mutation = self._run(
            lambda: self._apply_restore(
                lot_id, quantity, reference, key, reason, rollback_record_id
            ),
            key,
            f"Restoring {quantity} to lot {lot_id}",
        )
        self._log_mutation(mutation, reference)
        return mutation

    def _run(self, apply: Callable[[], LotMutation], key: str, description: str) -> LotMutation:
        """Run one primitive with storage retries and duplicate-key replay."""

        def _attempt() -> LotMutation:
            try:
                return apply()
            except IntegrityError:
                # Another attempt with the same key already committed
                replay = self.find_mutation(key)
                if replay is None:
                    raise
                return replay

        return run_with_storage_retry(
            _attempt,
            description=description,
            attempts=self._retry_attempts,
            backoff=self._retry_backoff,
        )

    def _apply_withdraw(
        self,
        lot_id: int,
        quantity: Decimal,
        reference: Reference,
        key: str,
        reason: Optional[str],
    ) -> LotMutation:
        new_remaining = func.round(MaterialLot.remaining_quantity - quantity, 3)
        stmt = (
            update(MaterialLot)
            .where(MaterialLot.id == lot_id, MaterialLot.remaining_quantity >= quantity)
            .values(
                remaining_quantity=new_remaining,
                status=case(
                    (new_remaining <= 0, LotStatus.EXHAUSTED.value),
                    else_=LotStatus.ACTIVE.value,
                ),
            )
            .execution_options(synchronize_session=False)
        )

        with session_scope(self._session_factory) as session:
            result = session.execute(stmt)
            if result.rowcount == 0:
                replay = self._ledger.find_entry(session, key)
                if replay is not None:
                    return self._mutation_from_entry(replay, replayed=True)
                lot = session.get(MaterialLot, lot_id)
                if lot is None:
                    raise LotNotFound(lot_id)
                raise InsufficientQuantity(
                    lot_id,
                    quantity,
                    Decimal(str(lot.remaining_quantity)),
                    material_id=lot.material_id,
                )

            lot = self._reload(session, lot_id)
            after = Decimal(str(lot.remaining_quantity))
            entry = self._ledger.append_entry(
                session,
                lot_id=lot_id,
                operation=LotOperation.WITHDRAW,
                delta=-quantity,
                quantity_before=after + quantity,
                quantity_after=after,
                reference=reference,
                operation_key=key,
                reason=reason,
            )
            return self._mutation_from_entry(entry, lot=lot)

    def _apply_restore(
        self,
        lot_id: int,
        quantity: Decimal,
        reference: Reference,
        key: str,
        reason: Optional[str],
        rollback_record_id: Optional[int],
    ) -> LotMutation:
        new_remaining = func.round(MaterialLot.remaining_quantity + quantity, 3)
        stmt = (
            update(MaterialLot)
            .where(MaterialLot.id == lot_id, new_remaining <= MaterialLot.total_quantity)
            .values(remaining_quantity=new_remaining, status=LotStatus.ACTIVE.value)
            .execution_options(synchronize_session=False)
        )

        with session_scope(self._session_factory) as session:
            result = session.execute(stmt)
            if result.rowcount == 0:
                replay = self._ledger.find_entry(session, key)
                if replay is not None:
                    return self._mutation_from_entry(replay, replayed=True)
                lot = session.get(MaterialLot, lot_id)
                if lot is None:
                    raise LotNotFound(lot_id)
                raise RestoreOverflowError(
                    lot_id,
                    quantity,
                    Decimal(str(lot.remaining_quantity)),
                    Decimal(str(lot.total_quantity)),
                )

            lot = self._reload(session, lot_id)
            after = Decimal(str(lot.remaining_quantity))
            entry = self._ledger.append_entry(
                session,
                lot_id=lot_id,
                operation=LotOperation.RESTORE,
                delta=quantity,
                quantity_before=after - quantity,
                quantity_after=after,
                reference=reference,
                operation_key=key,
                reason=reason,
                rollback_record_id=rollback_record_id,
            )
            return self._mutation_from_entry(entry, lot=lot)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _reload(session, lot_id: int) -> MaterialLot:
        """Re-read a lot after a Core UPDATE, bypassing the identity map."""
        stmt = (
            select(MaterialLot)
            .where(MaterialLot.id == lot_id)
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one()

    @staticmethod
    def _mutation_from_entry(entry, lot: Optional[MaterialLot] = None, replayed: bool = False) -> LotMutation:
        lot = lot if lot is not None else entry.lot
        return LotMutation(
            lot_id=entry.lot_id,
            operation=LotOperation(entry.operation),
            quantity=abs(Decimal(str(entry.delta))),
            quantity_before=Decimal(str(entry.quantity_before)),
            quantity_after=Decimal(str(entry.quantity_after)),
            unit_cost=Decimal(str(lot.unit_cost)),
            lot_number=lot.lot_number,
            operation_key=entry.operation_key,
            audit_entry_id=entry.id,
            replayed=replayed,
        )

    @staticmethod
    def _log_mutation(mutation: LotMutation, reference: Reference) -> None:
        log_operation(
            logger,
            operation=mutation.operation.value,
            outcome="replayed" if mutation.replayed else "applied",
            level=logging.DEBUG,
            lot_id=mutation.lot_id,
            quantity=str(mutation.quantity),
            quantity_after=str(mutation.quantity_after),
            reference_id=reference.id,
            operation_key=mutation.operation_key,
        )
