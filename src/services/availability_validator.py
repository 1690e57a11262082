"""Availability pre-checks for consumption requests.

The validator only reads. Its verdict is advisory: between a successful
check and the actual withdrawal another consumer may take the stock, and it
is the LotStore's conditional decrement that finally decides. The value of
checking first is that a consumption which is obviously impossible fails
with per-item detail (available quantity, alternative lots) before anything
has been mutated.
"""

from collections import OrderedDict
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from src.services.dto import AvailabilityReport, AvailabilityResult, ConsumptionRequest, LotSnapshot
from src.services.exceptions import InsufficientQuantity, LotNotFound, ValidationError
from src.services.lot_store import LotStore
from src.services.logging_utils import get_service_logger
from src.utils.config import get_config
from src.utils.validators import parse_quantity, quantize_quantity, validate_positive_quantity

logger = get_service_logger(__name__)


class AvailabilityValidator:
    """
    Checks whether lots can satisfy consumption requests.

    Args:
        lot_store: Store the lots are read from
        max_alternatives: Alternatives proposed per failing request
            (default: config.max_alternative_lots)
        today: Callable returning the date used for expiry checks
    """

    def __init__(
        self,
        lot_store: LotStore,
        *,
        max_alternatives: Optional[int] = None,
        today: Callable[[], date] = date.today,
    ):
        self._lot_store = lot_store
        if max_alternatives is None:
            max_alternatives = get_config().max_alternative_lots
        self._max_alternatives = max_alternatives
        self._today = today

    def check(self, lot_id: int, quantity) -> AvailabilityResult:
        """
        Check a single request against the lot's current quantity.

        Invalid when the quantity is not positive, the lot is unknown or
        expired, or the lot holds less than requested.

        Args:
            lot_id: Lot to check
            quantity: Quantity requested

        Returns:
            AvailabilityResult (alternatives filled in for short/expired lots)
        """
        is_valid, error = validate_positive_quantity(quantity)
        requested = parse_quantity(quantity)
        if not is_valid:
            return AvailabilityResult(
                lot_id=lot_id,
                requested=requested if requested is not None else Decimal("0"),
                valid=False,
                available=Decimal("0"),
                message=f"Lot {lot_id}: {error}",
            )
        requested = quantize_quantity(requested)

        try:
            lot = self._lot_store.get(lot_id)
        except LotNotFound:
            return AvailabilityResult(
                lot_id=lot_id,
                requested=requested,
                valid=False,
                available=Decimal("0"),
                message=f"Lot {lot_id} not found",
            )

        today = self._today()
        if lot.is_expired(today):
            return AvailabilityResult(
                lot_id=lot_id,
                requested=requested,
                valid=False,
                available=lot.remaining_quantity,
                message=f"Lot {lot.lot_number} expired on {lot.expiry_date.isoformat()}",
                alternatives=self.alternatives_for(lot, requested),
            )

        if requested > lot.remaining_quantity:
            return AvailabilityResult(
                lot_id=lot_id,
                requested=requested,
                valid=False,
                available=lot.remaining_quantity,
                message=(
                    f"Lot {lot.lot_number}: requested {requested}, "
                    f"available {lot.remaining_quantity}"
                ),
                alternatives=self.alternatives_for(lot, requested),
            )

        return AvailabilityResult(
            lot_id=lot_id,
            requested=requested,
            valid=True,
            available=lot.remaining_quantity,
            message=f"Lot {lot.lot_number}: {requested} available",
        )

    def check_all(self, requests: Sequence[ConsumptionRequest]) -> AvailabilityReport:
        """
        Check every request of a consumption before anything is mutated.

        A lot named by several requests is checked against the running total
        requested from it, so two requests of 6 against a lot holding 10
        fail on the second one.

        Args:
            requests: Consumption requests in withdrawal order

        Returns:
            AvailabilityReport with one result per request
        """
        cumulative: Dict[int, Decimal] = OrderedDict()
        items = []
        for request in requests:
            quantity = parse_quantity(request.quantity)
            if quantity is not None and quantity > 0:
                running = cumulative.get(request.lot_id, Decimal("0")) + quantity
                cumulative[request.lot_id] = running
                items.append(self.check(request.lot_id, running))
            else:
                items.append(self.check(request.lot_id, request.quantity))

        report = AvailabilityReport(valid=all(item.valid for item in items), items=items)
        if not report.valid:
            logger.debug(
                f"Availability check failed for {len(report.failures)} of {len(items)} request(s)"
            )
        return report

    def alternatives_for(self, lot: LotSnapshot, quantity: Decimal) -> List[LotSnapshot]:
        """
        Other lots of the same material able to cover ``quantity`` on their own.

        Ranked by remaining quantity (largest first), then intake date
        (oldest first), capped at the configured maximum.
        """
        candidates = [
            candidate
            for candidate in self._lot_store.list_available(lot.material_id, as_of=self._today())
            if candidate.id != lot.id and candidate.remaining_quantity >= quantity
        ]
        candidates.sort(key=lambda c: (-c.remaining_quantity, c.intake_date, c.id))
        return candidates[: self._max_alternatives]

    def material_available(self, material_id: int) -> Decimal:
        """Total unexpired quantity of a material across its lots."""
        lots = self._lot_store.list_available(material_id, as_of=self._today())
        return sum((lot.remaining_quantity for lot in lots), Decimal("0"))

    def plan_fifo(self, material_id: int, quantity) -> List[ConsumptionRequest]:
        """
        Allocate a material-level requirement across lots, oldest intake first.

        Args:
            material_id: Material to draw from
            quantity: Total quantity required

        Returns:
            Consumption requests covering quantity exactly, in FIFO order

        Raises:
            ValidationError: If quantity is not positive
            MaterialNotFound: If the material doesn't exist
            InsufficientQuantity: If the material's lots hold less than quantity
                (lot_id is None on this error)
        """
        is_valid, error = validate_positive_quantity(quantity)
        if not is_valid:
            raise ValidationError([error])
        needed = quantize_quantity(parse_quantity(quantity))

        lots = self._lot_store.list_available(material_id, as_of=self._today())
        plan = []
        remaining = needed
        for lot in lots:
            if remaining <= 0:
                break
            take = min(remaining, lot.remaining_quantity)
            plan.append(ConsumptionRequest(lot_id=lot.id, quantity=take))
            remaining -= take

        if remaining > 0:
            available = sum((lot.remaining_quantity for lot in lots), Decimal("0"))
            raise InsufficientQuantity(None, needed, available, material_id=material_id)

        return plan
