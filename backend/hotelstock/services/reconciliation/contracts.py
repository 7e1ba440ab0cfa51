"""Data contracts of the reconciliation engine.

These are plain read-only snapshots handed over by a data source. The
engine never sees ORM objects, so any persistence technology satisfying
``StockDataSource`` can feed it.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

ZERO = Decimal("0")

MAIN_WAREHOUSE_NAME = "Main warehouse"


class MovementKind(str, Enum):
    """Kinds of recorded movements a reconciliation can take into account."""

    PURCHASE = "purchase"
    DELIVERY = "delivery"
    TRANSFER = "transfer"
    RESTOCK = "restock"


DEFAULT_MOVEMENT_KINDS = frozenset(
    {MovementKind.PURCHASE, MovementKind.DELIVERY, MovementKind.TRANSFER}
)


# ============== Catalog ==============

@dataclass(frozen=True)
class ProductSnapshot:
    """Product as seen during one engine call."""
    id: int
    name: str
    category: Optional[str] = None
    unit_value: Decimal = ZERO
    is_priority: bool = False
    cycle_tracked: bool = False
    baseline_quantity: Decimal = ZERO
    active: bool = True


@dataclass(frozen=True)
class Location:
    """Main warehouse (``sector_id`` None) or one sector of the hotel."""
    sector_id: Optional[int]
    name: str = MAIN_WAREHOUSE_NAME

    @property
    def is_main(self) -> bool:
        return self.sector_id is None


MAIN_WAREHOUSE = Location(sector_id=None)


# ============== Stock counts ==============

@dataclass(frozen=True)
class CountedItem:
    product_id: int
    counted_quantity: Decimal


@dataclass(frozen=True)
class StockCountSnapshot:
    """A stock count; ``finished_at`` is None while it is still a draft."""
    id: int
    hotel_id: int
    sector_id: Optional[int]
    finished_at: Optional[datetime]
    items: Tuple[CountedItem, ...] = ()

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    def quantities(self) -> Dict[int, Decimal]:
        """Counted quantity per product (summed if a product appears twice)."""
        result: Dict[int, Decimal] = {}
        for item in self.items:
            result[item.product_id] = result.get(item.product_id, ZERO) + item.counted_quantity
        return result


@dataclass(frozen=True)
class CountSelection:
    """Start/end count pair chosen for one location."""
    sector_id: Optional[int]
    start_count_id: int
    end_count_id: int


# ============== Movement ledger ==============

@dataclass(frozen=True)
class Purchase:
    """Inflow to the main warehouse."""
    product_id: int
    quantity: Decimal
    occurred_at: datetime


@dataclass(frozen=True)
class Delivery:
    """Fulfilled requisition: outflow from main, inflow to ``sector_id``.

    ``requested_product_id`` is kept for audit display; stock impact always
    follows the delivered product.
    """
    requested_product_id: int
    quantity: Decimal
    sector_id: Optional[int]
    occurred_at: datetime
    delivered_product_id: Optional[int] = None

    @property
    def product_id(self) -> int:
        if self.delivered_product_id is not None:
            return self.delivered_product_id
        return self.requested_product_id

    @property
    def is_substitution(self) -> bool:
        return (
            self.delivered_product_id is not None
            and self.delivered_product_id != self.requested_product_id
        )


@dataclass(frozen=True)
class Transfer:
    """Inter-hotel transfer between two main warehouses."""
    product_id: int
    quantity: Decimal
    source_hotel_id: int
    destination_hotel_id: int
    occurred_at: datetime
    destination_product_id: Optional[int] = None

    def product_for(self, hotel_id: int) -> int:
        """Product id under which *hotel_id* catalogs the transferred item."""
        if hotel_id == self.destination_hotel_id and self.destination_product_id is not None:
            return self.destination_product_id
        return self.product_id


@dataclass(frozen=True)
class Restock:
    """Replenishment of a cycle-tracked item; inflow to ``sector_id`` or main."""
    product_id: int
    quantity: Decimal
    occurred_at: datetime
    unit_value: Optional[Decimal] = None
    sector_id: Optional[int] = None


# ============== Reconciliation output ==============

@dataclass(frozen=True)
class DataIntegrityWarning:
    """Non-fatal problem found while reconciling; the affected row is dropped."""
    product_id: Optional[int]
    source: str
    message: str
    sector_id: Optional[int] = None


@dataclass(frozen=True)
class ReconciliationRow:
    """Per-product, per-location reconciliation line.

    Engine-computed fields are never rewritten. Sector consumption is not
    recorded as movements, so sector rows carry ``outflow_pending`` and the
    caller may attach a ``manual_outflow`` overlay; the ``effective_*``
    properties fold that overlay in.
    """
    product_id: int
    product_name: str
    category: str
    is_priority: bool
    sector_id: Optional[int]
    initial_stock: Decimal
    inflow: Decimal
    outflow: Decimal
    expected_final: Decimal
    actual_final: Decimal
    discrepancy: Decimal
    outflow_pending: bool = False
    manual_outflow: Optional[Decimal] = None
    movements: Dict[str, Decimal] = field(default_factory=dict, compare=False)

    @property
    def effective_expected_final(self) -> Decimal:
        return self.expected_final - (self.manual_outflow or ZERO)

    @property
    def effective_discrepancy(self) -> Decimal:
        return self.actual_final - self.effective_expected_final

    def with_manual_outflow(self, quantity: Decimal) -> "ReconciliationRow":
        if not self.outflow_pending:
            raise ValueError("Manual outflow only applies to sector rows")
        if quantity < 0:
            raise ValueError("Manual outflow cannot be negative")
        return replace(self, manual_outflow=quantity)


@dataclass
class ReconciliationReport:
    hotel_id: int
    start_count_id: int
    end_count_id: int
    period_start: datetime
    period_end: datetime
    locations: List[Location]
    rows: List[ReconciliationRow]
    warnings: List[DataIntegrityWarning] = field(default_factory=list)


@dataclass(frozen=True)
class StockLevel:
    """Derived current stock: last finished count plus movements since."""
    product_id: int
    sector_id: Optional[int]
    quantity: Decimal
    last_count_id: Optional[int]
    last_counted_at: Optional[datetime]


@dataclass
class CurrentStockReport:
    """Derived levels of one location with the warnings raised building them."""
    hotel_id: int
    sector_id: Optional[int]
    as_of: datetime
    levels: List[StockLevel]
    warnings: List[DataIntegrityWarning] = field(default_factory=list)


# ============== Discount cycles ==============

@dataclass(frozen=True)
class CycleCountEntry:
    """User-entered count for one tracked product when closing a cycle."""
    product_id: int
    current_quantity: Decimal
    guest_attributed_loss: Decimal = ZERO


@dataclass(frozen=True)
class CycleBaseline:
    """Baseline left by the last closed cycle. ``version`` 0 means no cycle yet."""
    hotel_id: int
    version: int = 0
    cycle_id: Optional[int] = None
    closed_at: Optional[datetime] = None
    quantities: Dict[int, Decimal] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class DiscountCycleItem:
    product_id: int
    product_name: str
    previous_count: Decimal
    restocks_in_period: Decimal
    attributed_loss: Decimal
    expected_quantity: Decimal
    final_count: Decimal
    unaccounted_loss: Decimal
    unit_value: Decimal
    discount_value: Decimal


@dataclass(frozen=True)
class DiscountCycle:
    """A settled (or previewed, when ``id`` is None) discount cycle."""
    hotel_id: int
    closed_at: datetime
    closed_by_user_id: Optional[int]
    total_discount_value: Decimal
    items: Tuple[DiscountCycleItem, ...]
    id: Optional[int] = None
    previous_cycle_id: Optional[int] = None


@dataclass(frozen=True)
class CycleStatusLine:
    """What the close-cycle screen shows for one tracked product."""
    product_id: int
    product_name: str
    unit_value: Decimal
    previous_count: Decimal
    baseline_set_at: Optional[datetime]
    restocks_since: Decimal
