"""Discount cycle service - settle unexplained losses of cycle-tracked items.

Per tracked product:

    expected_quantity = previous_count + restocks_in_period
    unaccounted_loss  = expected_quantity - guest_attributed_loss - current_quantity
    discount_value    = max(0, unaccounted_loss) * unit_value

Overages (negative unaccounted loss) are kept in the breakdown but never
offset another item's shortfall. Closing a cycle writes it append-only and
makes each submitted quantity the next cycle's ``previous_count``.
"""

from collections import Counter, defaultdict
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import logging

from hotelstock.core.config import settings
from hotelstock.core.exceptions import ConcurrentCloseConflict, IncompleteSubmission
from hotelstock.services.reconciliation import (
    ZERO,
    CycleBaseline,
    CycleCountEntry,
    CycleStatusLine,
    DiscountCycle,
    DiscountCycleItem,
    ProductSnapshot,
    StockDataSource,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CycleSettlementService:
    """Close, preview and inspect discount cycles of a hotel."""

    def __init__(
        self,
        source: StockDataSource,
        clock: Optional[Callable[[], datetime]] = None,
        decimal_places: Optional[int] = None,
    ):
        self.source = source
        self.clock = clock or _utcnow
        places = settings.money_decimal_places if decimal_places is None else decimal_places
        self.quantum = Decimal(1).scaleb(-places)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _tracked_products(self, hotel_id: int) -> Dict[int, ProductSnapshot]:
        return {
            p.id: p
            for p in self.source.get_active_products(hotel_id)
            if p.cycle_tracked and p.active
        }

    def _restocks_since(
        self, hotel_id: int, baseline: CycleBaseline, now: datetime
    ) -> Dict[int, Decimal]:
        totals: Dict[int, Decimal] = defaultdict(Decimal)
        for restock in self.source.get_restocks(hotel_id, baseline.closed_at, now):
            totals[restock.product_id] += restock.quantity
        return totals

    @staticmethod
    def _previous_count(product: ProductSnapshot, baseline: CycleBaseline) -> Decimal:
        if product.id in baseline.quantities:
            return baseline.quantities[product.id]
        return product.baseline_quantity

    def _validate_entries(
        self,
        tracked: Dict[int, ProductSnapshot],
        counts: Sequence[CycleCountEntry],
        require_complete: bool,
    ) -> None:
        if require_complete and not tracked:
            raise IncompleteSubmission("Hotel has no tracked products to settle")

        duplicates = [pid for pid, n in Counter(e.product_id for e in counts).items() if n > 1]
        if duplicates:
            raise IncompleteSubmission("Products submitted more than once", duplicates)

        unknown = [e.product_id for e in counts if e.product_id not in tracked]
        if unknown:
            raise IncompleteSubmission("Products are not tracked by discount cycles", unknown)

        negative = [
            e.product_id
            for e in counts
            if e.current_quantity < 0 or e.guest_attributed_loss < 0
        ]
        if negative:
            raise IncompleteSubmission("Quantities cannot be negative", negative)

        if require_complete:
            missing = set(tracked) - {e.product_id for e in counts}
            if missing:
                raise IncompleteSubmission("Every tracked product must be counted", missing)

    def _settle_item(
        self,
        product: ProductSnapshot,
        entry: CycleCountEntry,
        previous: Decimal,
        restocks: Decimal,
    ) -> DiscountCycleItem:
        expected = previous + restocks
        unaccounted = expected - entry.guest_attributed_loss - entry.current_quantity
        billable = max(ZERO, unaccounted)
        discount = (billable * product.unit_value).quantize(self.quantum, rounding=ROUND_HALF_UP)
        return DiscountCycleItem(
            product_id=product.id,
            product_name=product.name,
            previous_count=previous,
            restocks_in_period=restocks,
            attributed_loss=entry.guest_attributed_loss,
            expected_quantity=expected,
            final_count=entry.current_quantity,
            unaccounted_loss=unaccounted,
            unit_value=product.unit_value,
            discount_value=discount,
        )

    def _compute(
        self,
        hotel_id: int,
        counts: Sequence[CycleCountEntry],
        require_complete: bool,
    ) -> Tuple[CycleBaseline, datetime, Tuple[DiscountCycleItem, ...], Decimal]:
        tracked = self._tracked_products(hotel_id)
        self._validate_entries(tracked, counts, require_complete)

        now = self.clock()
        baseline = self.source.get_prior_cycle_baseline(hotel_id)
        restocks = self._restocks_since(hotel_id, baseline, now)

        items = tuple(
            self._settle_item(
                tracked[entry.product_id],
                entry,
                previous=self._previous_count(tracked[entry.product_id], baseline),
                restocks=restocks.get(entry.product_id, ZERO),
            )
            for entry in sorted(counts, key=lambda e: (tracked[e.product_id].name, e.product_id))
        )
        total = sum((i.discount_value for i in items), ZERO).quantize(self.quantum)
        return baseline, now, items, total

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def cycle_status(self, hotel_id: int) -> List[CycleStatusLine]:
        """Baseline, restocks since and unit value of every tracked product."""
        tracked = self._tracked_products(hotel_id)
        baseline = self.source.get_prior_cycle_baseline(hotel_id)
        restocks = self._restocks_since(hotel_id, baseline, self.clock())

        return [
            CycleStatusLine(
                product_id=p.id,
                product_name=p.name,
                unit_value=p.unit_value,
                previous_count=self._previous_count(p, baseline),
                baseline_set_at=baseline.closed_at if p.id in baseline.quantities else None,
                restocks_since=restocks.get(p.id, ZERO),
            )
            for p in sorted(tracked.values(), key=lambda p: (p.name, p.id))
        ]

    def preview_cycle(self, hotel_id: int, counts: Sequence[CycleCountEntry]) -> DiscountCycle:
        """Compute the submitted items without completeness checks or writes."""
        baseline, now, items, total = self._compute(hotel_id, counts, require_complete=False)
        return DiscountCycle(
            hotel_id=hotel_id,
            closed_at=now,
            closed_by_user_id=None,
            total_discount_value=total,
            items=items,
            previous_cycle_id=baseline.cycle_id,
        )

    def close_cycle(
        self,
        hotel_id: int,
        user_id: Optional[int],
        counts: Sequence[CycleCountEntry],
    ) -> DiscountCycle:
        """
        Settle the current cycle and hand its counts over as the next baseline.

        Raises:
            IncompleteSubmission: a tracked product is missing, duplicated,
                unknown or has a negative quantity
            ConcurrentCloseConflict: another close committed first; nothing
                was written
        """
        baseline, now, items, total = self._compute(hotel_id, counts, require_complete=True)
        cycle = DiscountCycle(
            hotel_id=hotel_id,
            closed_at=now,
            closed_by_user_id=user_id,
            total_discount_value=total,
            items=items,
            previous_cycle_id=baseline.cycle_id,
        )

        try:
            saved = self.source.commit_discount_cycle(cycle, expected_version=baseline.version)
        except ConcurrentCloseConflict:
            logger.warning(
                "Concurrent discount cycle close for hotel %s (baseline version %s), user=%s",
                hotel_id,
                baseline.version,
                user_id,
            )
            raise

        logger.info(
            "Discount cycle closed: ID=%s, hotel=%s, items=%s, total_discount=%s, user=%s",
            saved.id,
            hotel_id,
            len(items),
            total,
            user_id,
        )
        return saved

    def list_cycles(self, hotel_id: int) -> List[DiscountCycle]:
        return self.source.list_discount_cycles(hotel_id)

    def get_cycle(self, cycle_id: int) -> Optional[DiscountCycle]:
        return self.source.get_discount_cycle(cycle_id)
