"""Reconciliation service: Compare counted stock against recorded movements.

For each location of a hotel (main warehouse plus sectors) and each product:

    expected_final = initial + inflow - outflow
    discrepancy    = actual_final - expected_final

Counts bound the interval ``(start.finished_at, end.finished_at]``. A product
missing from a count was counted as zero.
"""

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from hotelstock.core.config import settings
from hotelstock.core.exceptions import InvalidInterval
from hotelstock.services.reconciliation import (
    DEFAULT_MOVEMENT_KINDS,
    MAIN_WAREHOUSE,
    ZERO,
    CountSelection,
    CurrentStockReport,
    DataIntegrityWarning,
    Location,
    MovementKind,
    ProductSnapshot,
    ReconciliationReport,
    ReconciliationRow,
    StockCountSnapshot,
    StockDataSource,
    StockLevel,
)

logger = logging.getLogger(__name__)

# (start, end) bounds of one location; None start means unbounded
Interval = Tuple[Optional[datetime], Optional[datetime]]


def _in_interval(moment: datetime, interval: Interval) -> bool:
    start, end = interval
    return (start is None or moment > start) and (end is None or moment <= end)


def _warn_unknown_product(
    warnings: Dict[tuple, DataIntegrityWarning],
    product_id: int,
    sector_id: Optional[int],
    counted: bool,
) -> None:
    source = "count" if counted else "movement"
    warnings.setdefault((product_id, sector_id, source), DataIntegrityWarning(
        product_id=product_id,
        source=source,
        message=f"Product {product_id} is not in the active catalog",
        sector_id=sector_id,
    ))


def _log_warnings(hotel_id: int, warnings: Dict[tuple, DataIntegrityWarning]) -> None:
    for warning in warnings.values():
        logger.warning(
            "Data integrity warning for hotel %s: %s (product=%s, sector=%s)",
            hotel_id,
            warning.message,
            warning.product_id,
            warning.sector_id,
        )


class ReconciliationConfig:
    """Configuration for reconciliation runs."""

    def __init__(
        self,
        max_workers: Optional[int] = None,
        default_category: Optional[str] = None,
        movement_kinds: Iterable[MovementKind] = DEFAULT_MOVEMENT_KINDS,
    ):
        self.max_workers = max_workers or settings.reconciliation_max_workers
        self.default_category = default_category or settings.default_category
        self.movement_kinds = frozenset(MovementKind(k) for k in movement_kinds)


class _Flows:
    """Inflow/outflow accumulators of one location."""

    def __init__(self):
        self.inflow: Dict[int, Decimal] = defaultdict(Decimal)
        self.outflow: Dict[int, Decimal] = defaultdict(Decimal)
        self.breakdown: Dict[int, Dict[str, Decimal]] = defaultdict(lambda: defaultdict(Decimal))

    def add_in(self, product_id: int, quantity: Decimal, kind: str) -> None:
        self.inflow[product_id] += quantity
        self.breakdown[product_id][kind] += quantity

    def add_out(self, product_id: int, quantity: Decimal, kind: str) -> None:
        self.outflow[product_id] += quantity
        self.breakdown[product_id][kind] += quantity

    def product_ids(self) -> set:
        return set(self.inflow) | set(self.outflow)


class ReconciliationService:
    """Service joining stock counts and the movement ledger into per-location rows."""

    def __init__(self, source: StockDataSource, config: Optional[ReconciliationConfig] = None):
        self.source = source
        self.config = config or ReconciliationConfig()

    # ------------------------------------------------------------------
    # Data loading
    # ------------------------------------------------------------------
    def _gather(self, calls: Dict[str, Callable[[], Any]]) -> Dict[str, Any]:
        """Run independent reads, on a thread pool when the source allows it."""
        if not self.source.concurrent_reads or self.config.max_workers <= 1 or len(calls) <= 1:
            return {name: call() for name, call in calls.items()}

        workers = max(1, min(self.config.max_workers, len(calls)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {name: pool.submit(call) for name, call in calls.items()}
            return {name: future.result() for name, future in futures.items()}

    def _load_count(self, hotel_id: int, count_id: int) -> StockCountSnapshot:
        count = self.source.get_stock_count(count_id)
        if count is None:
            raise InvalidInterval(f"Stock count {count_id} not found")
        if count.hotel_id != hotel_id:
            raise InvalidInterval(f"Stock count {count_id} does not belong to hotel {hotel_id}")
        if not count.is_finished:
            raise InvalidInterval(f"Stock count {count_id} is not finished")
        return count

    def resolve_pair(
        self, hotel_id: int, start_count_id: int, end_count_id: int
    ) -> Tuple[StockCountSnapshot, StockCountSnapshot]:
        """Load and validate the two counts bounding an interval."""
        start = self._load_count(hotel_id, start_count_id)
        end = start if end_count_id == start_count_id else self._load_count(hotel_id, end_count_id)

        if start.sector_id != end.sector_id:
            raise InvalidInterval(
                f"Stock counts {start_count_id} and {end_count_id} cover different locations"
            )
        if start.finished_at > end.finished_at:
            raise InvalidInterval(
                f"Start count {start_count_id} was finished after end count {end_count_id}"
            )
        return start, end

    def _read_movements(
        self,
        hotel_id: int,
        interval: Interval,
        kinds: frozenset,
        extra: Optional[Dict[str, Callable[[], Any]]] = None,
    ) -> Dict[str, Any]:
        start, end = interval
        calls: Dict[str, Callable[[], Any]] = dict(extra or {})
        if MovementKind.PURCHASE in kinds:
            calls["purchases"] = lambda: self.source.get_purchases(hotel_id, start, end)
        if MovementKind.DELIVERY in kinds:
            calls["deliveries"] = lambda: self.source.get_fulfilled_deliveries(hotel_id, start, end)
        if MovementKind.TRANSFER in kinds:
            calls["transfers"] = lambda: self.source.get_transfers(hotel_id, start, end)
        if MovementKind.RESTOCK in kinds:
            calls["restocks"] = lambda: self.source.get_restocks(hotel_id, start, end)
        return self._gather(calls)

    # ------------------------------------------------------------------
    # Flow aggregation
    # ------------------------------------------------------------------
    def _main_flows(
        self,
        hotel_id: int,
        data: Dict[str, Any],
        interval: Interval,
        known_sectors: set,
        warnings: Dict[tuple, DataIntegrityWarning],
    ) -> _Flows:
        flows = _Flows()
        for purchase in data.get("purchases", ()):
            if _in_interval(purchase.occurred_at, interval):
                flows.add_in(purchase.product_id, purchase.quantity, "purchases")

        for transfer in data.get("transfers", ()):
            if not _in_interval(transfer.occurred_at, interval):
                continue
            if transfer.destination_hotel_id == hotel_id:
                flows.add_in(transfer.product_for(hotel_id), transfer.quantity, "transfers_in")
            if transfer.source_hotel_id == hotel_id:
                flows.add_out(transfer.product_id, transfer.quantity, "transfers_out")

        for delivery in data.get("deliveries", ()):
            if not _in_interval(delivery.occurred_at, interval):
                continue
            flows.add_out(delivery.product_id, delivery.quantity, "deliveries")
            if delivery.sector_id not in known_sectors:
                key = (delivery.product_id, delivery.sector_id, "delivery")
                warnings.setdefault(key, DataIntegrityWarning(
                    product_id=delivery.product_id,
                    source="delivery",
                    message=f"Delivery to unknown sector {delivery.sector_id}",
                    sector_id=delivery.sector_id,
                ))

        for restock in data.get("restocks", ()):
            if restock.sector_id is None and _in_interval(restock.occurred_at, interval):
                flows.add_in(restock.product_id, restock.quantity, "restocks")
        return flows

    @staticmethod
    def _sector_flows(sector_id: int, data: Dict[str, Any], interval: Interval) -> _Flows:
        flows = _Flows()
        for delivery in data.get("deliveries", ()):
            if delivery.sector_id == sector_id and _in_interval(delivery.occurred_at, interval):
                flows.add_in(delivery.product_id, delivery.quantity, "deliveries")
        for restock in data.get("restocks", ()):
            if restock.sector_id == sector_id and _in_interval(restock.occurred_at, interval):
                flows.add_in(restock.product_id, restock.quantity, "restocks")
        return flows

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------
    def reconcile(
        self,
        hotel_id: int,
        start_count_id: int,
        end_count_id: int,
        sector_selections: Sequence[CountSelection] = (),
        movement_kinds: Optional[Iterable[MovementKind]] = None,
    ) -> ReconciliationReport:
        """
        Reconcile a hotel between two finished counts.

        Args:
            hotel_id: Hotel under reconciliation
            start_count_id: Count opening the interval
            end_count_id: Count closing the interval
            sector_selections: Per-sector count pairs overriding the primary pair
                for those sectors
            movement_kinds: Movement kinds to take into account (defaults to the
                configured kinds)

        Returns:
            ReconciliationReport with rows and collected data-integrity warnings

        Raises:
            InvalidInterval: counts missing, unfinished, misordered, foreign to
                the hotel, or covering different locations
        """
        kinds = (
            frozenset(MovementKind(k) for k in movement_kinds)
            if movement_kinds is not None
            else self.config.movement_kinds
        )

        primary = self.resolve_pair(hotel_id, start_count_id, end_count_id)
        pairs: Dict[Optional[int], Tuple[StockCountSnapshot, StockCountSnapshot]] = {
            primary[0].sector_id: primary
        }
        for selection in sector_selections:
            if selection.sector_id is None:
                raise InvalidInterval("Count selections must name a sector")
            if selection.sector_id in pairs:
                raise InvalidInterval(f"Sector {selection.sector_id} selected more than once")
            pair = self.resolve_pair(hotel_id, selection.start_count_id, selection.end_count_id)
            if pair[0].sector_id != selection.sector_id:
                raise InvalidInterval(
                    f"Stock count {selection.start_count_id} is not a count of sector {selection.sector_id}"
                )
            pairs[selection.sector_id] = pair

        intervals: Dict[Optional[int], Interval] = {
            scope: (start.finished_at, end.finished_at) for scope, (start, end) in pairs.items()
        }
        default_interval = intervals[primary[0].sector_id]
        read_window = (
            min(i[0] for i in intervals.values()),
            max(i[1] for i in intervals.values()),
        )

        data = self._read_movements(
            hotel_id,
            read_window,
            kinds,
            extra={
                "products": lambda: self.source.get_active_products(hotel_id),
                "sectors": lambda: self.source.get_sectors(hotel_id),
            },
        )
        catalog: Dict[int, ProductSnapshot] = {p.id: p for p in data["products"]}
        locations: List[Location] = [MAIN_WAREHOUSE] + list(data["sectors"])
        known_sectors = {loc.sector_id for loc in locations if not loc.is_main}

        unknown = [s for s in pairs if s is not None and s not in known_sectors]
        if unknown:
            raise InvalidInterval(f"Sector {unknown[0]} does not belong to hotel {hotel_id}")

        warnings: Dict[tuple, DataIntegrityWarning] = {}
        rows: List[ReconciliationRow] = []

        for location in locations:
            scope = location.sector_id
            interval = intervals.get(scope, default_interval)
            pair = pairs.get(scope)
            initial_counts = pair[0].quantities() if pair else {}
            final_counts = pair[1].quantities() if pair else {}

            if location.is_main:
                flows = self._main_flows(hotel_id, data, interval, known_sectors, warnings)
            else:
                flows = self._sector_flows(scope, data, interval)

            product_ids = set(initial_counts) | set(final_counts) | flows.product_ids()
            location_rows = []
            for product_id in product_ids:
                product = catalog.get(product_id)
                if product is None:
                    counted = product_id in initial_counts or product_id in final_counts
                    _warn_unknown_product(warnings, product_id, scope, counted)
                    continue

                row = self._build_row(
                    product,
                    scope,
                    initial=initial_counts.get(product_id, ZERO),
                    actual=final_counts.get(product_id, ZERO),
                    flows=flows,
                )
                if row is not None:
                    location_rows.append(row)

            location_rows.sort(key=lambda r: (r.category, r.product_name, r.product_id))
            rows.extend(location_rows)

        _log_warnings(hotel_id, warnings)

        report = ReconciliationReport(
            hotel_id=hotel_id,
            start_count_id=primary[0].id,
            end_count_id=primary[1].id,
            period_start=primary[0].finished_at,
            period_end=primary[1].finished_at,
            locations=locations,
            rows=rows,
            warnings=list(warnings.values()),
        )

        logger.info(
            "Reconciliation complete for hotel %s (counts %s->%s): %s rows, %s locations, %s warnings",
            hotel_id,
            start_count_id,
            end_count_id,
            len(rows),
            len(locations),
            len(report.warnings),
        )
        return report

    def _build_row(
        self,
        product: ProductSnapshot,
        sector_id: Optional[int],
        initial: Decimal,
        actual: Decimal,
        flows: _Flows,
    ) -> Optional[ReconciliationRow]:
        inflow = flows.inflow.get(product.id, ZERO)
        outflow = flows.outflow.get(product.id, ZERO)

        # Nothing counted and nothing moved
        if not (initial or actual or inflow or outflow):
            return None

        expected = initial + inflow - outflow
        return ReconciliationRow(
            product_id=product.id,
            product_name=product.name,
            category=product.category or self.config.default_category,
            is_priority=product.is_priority,
            sector_id=sector_id,
            initial_stock=initial,
            inflow=inflow,
            outflow=outflow,
            expected_final=expected,
            actual_final=actual,
            discrepancy=actual - expected,
            outflow_pending=sector_id is not None,
            movements=dict(flows.breakdown.get(product.id, {})),
        )

    # ------------------------------------------------------------------
    # Derived current stock
    # ------------------------------------------------------------------
    def current_stock(
        self,
        hotel_id: int,
        sector_id: Optional[int] = None,
        as_of: Optional[datetime] = None,
        movement_kinds: Optional[Iterable[MovementKind]] = None,
    ) -> CurrentStockReport:
        """
        Derived stock of one location: latest finished count plus movements since.

        Sector levels include deliveries received but no consumption, which is
        not recorded as movements. Counted or moved products missing from the
        active catalog get no level and are reported as warnings.
        """
        as_of = as_of or datetime.now(timezone.utc)
        if as_of.tzinfo is None:
            as_of = as_of.replace(tzinfo=timezone.utc)
        kinds = (
            frozenset(MovementKind(k) for k in movement_kinds)
            if movement_kinds is not None
            else self.config.movement_kinds
        )

        counts = self.source.list_finished_counts(hotel_id, sector_id)
        last = next((c for c in counts if c.finished_at <= as_of), None)
        interval: Interval = (last.finished_at if last else None, as_of)

        data = self._read_movements(
            hotel_id,
            interval,
            kinds,
            extra={
                "products": lambda: self.source.get_active_products(hotel_id),
                "sectors": lambda: self.source.get_sectors(hotel_id),
            },
        )
        known_sectors = {loc.sector_id for loc in data["sectors"]}
        if sector_id is not None and sector_id not in known_sectors:
            raise InvalidInterval(f"Sector {sector_id} does not belong to hotel {hotel_id}")

        warnings: Dict[tuple, DataIntegrityWarning] = {}
        if sector_id is None:
            flows = self._main_flows(hotel_id, data, interval, known_sectors, warnings)
        else:
            flows = self._sector_flows(sector_id, data, interval)

        counted = last.quantities() if last else {}
        catalog = {p.id for p in data["products"]}
        for product_id in sorted(set(counted) | flows.product_ids()):
            if product_id not in catalog:
                _warn_unknown_product(warnings, product_id, sector_id, product_id in counted)
        _log_warnings(hotel_id, warnings)

        levels = [
            StockLevel(
                product_id=product.id,
                sector_id=sector_id,
                quantity=(
                    counted.get(product.id, ZERO)
                    + flows.inflow.get(product.id, ZERO)
                    - flows.outflow.get(product.id, ZERO)
                ),
                last_count_id=last.id if last else None,
                last_counted_at=last.finished_at if last else None,
            )
            for product in data["products"]
        ]
        logger.debug(
            "Current stock for hotel %s sector %s as of %s: %s products, %s warnings",
            hotel_id,
            sector_id,
            as_of.isoformat(),
            len(levels),
            len(warnings),
        )
        return CurrentStockReport(
            hotel_id=hotel_id,
            sector_id=sector_id,
            as_of=as_of,
            levels=levels,
            warnings=list(warnings.values()),
        )
