"""Data source - the collaborator operations the reconciliation engine needs.

The engine depends only on ``StockDataSource``. ``SqlStockDataSource`` is the
default implementation backed by the console's own database; other
persistence technologies plug in by implementing the same interface.

Interval arguments are half-open: ``from_`` is exclusive, ``to`` is
inclusive, and either may be None for an unbounded side.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterator, List, Optional
import logging

from sqlalchemy import Engine, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker
from sqlalchemy.pool import SingletonThreadPool, StaticPool

from hotelstock.core.config import settings
from hotelstock.core.exceptions import ConcurrentCloseConflict
from hotelstock.models.discount_cycle import (
    CycleBaseline as CycleBaselineRecord,
    DiscountCycle as DiscountCycleRecord,
    DiscountCycleItem as DiscountCycleItemRecord,
)
from hotelstock.models.hotel import Sector
from hotelstock.models.movement import (
    HotelTransfer,
    Purchase as PurchaseRecord,
    PurchaseItem,
    Requisition,
    RequisitionStatus,
    Restock as RestockRecord,
    TransferStatus,
)
from hotelstock.models.product import Product
from hotelstock.models.stock_count import CountStatus, StockCount
from hotelstock.services.reconciliation.contracts import (
    ZERO,
    CountedItem,
    CycleBaseline,
    Delivery,
    DiscountCycle,
    DiscountCycleItem,
    Location,
    ProductSnapshot,
    Purchase,
    Restock,
    StockCountSnapshot,
    Transfer,
)

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _within(column, from_: Optional[datetime], to: Optional[datetime]) -> list:
    clauses = []
    if from_ is not None:
        clauses.append(column > from_)
    if to is not None:
        clauses.append(column <= to)
    return clauses


# ============== Abstract Data Source Interface ==============

class StockDataSource(ABC):
    """Abstract base class for reconciliation data sources."""

    # Whether independent reads may be issued from several threads at once
    concurrent_reads: bool = False

    @abstractmethod
    def get_active_products(self, hotel_id: int) -> List[ProductSnapshot]:
        """Active product catalog of the hotel."""

    @abstractmethod
    def get_sectors(self, hotel_id: int) -> List[Location]:
        """Sectors of the hotel as locations (main warehouse excluded)."""

    @abstractmethod
    def get_stock_count(self, count_id: int) -> Optional[StockCountSnapshot]:
        """Single count with its items, finished or not."""

    @abstractmethod
    def list_finished_counts(
        self, hotel_id: int, sector_id: Optional[int] = None
    ) -> List[StockCountSnapshot]:
        """Finished counts of one location, newest first. None = main warehouse."""

    @abstractmethod
    def get_purchases(
        self, hotel_id: int, from_: Optional[datetime], to: Optional[datetime]
    ) -> List[Purchase]:
        """Purchase lines received by the hotel in the interval."""

    @abstractmethod
    def get_fulfilled_deliveries(
        self, hotel_id: int, from_: Optional[datetime], to: Optional[datetime]
    ) -> List[Delivery]:
        """Delivered requisitions of the hotel in the interval."""

    @abstractmethod
    def get_transfers(
        self, hotel_id: int, from_: Optional[datetime], to: Optional[datetime]
    ) -> List[Transfer]:
        """Completed transfers with the hotel as source or destination."""

    @abstractmethod
    def get_restocks(
        self, hotel_id: int, from_: Optional[datetime], to: Optional[datetime]
    ) -> List[Restock]:
        """Restocks of cycle-tracked items in the interval."""

    @abstractmethod
    def get_prior_cycle_baseline(self, hotel_id: int) -> CycleBaseline:
        """Baseline left by the last closed cycle (version 0 if none)."""

    @abstractmethod
    def commit_discount_cycle(self, cycle: DiscountCycle, expected_version: int) -> DiscountCycle:
        """Atomically persist *cycle* and advance the baseline.

        Raises ConcurrentCloseConflict when the baseline version is no longer
        *expected_version*. Nothing is persisted on failure.
        """

    @abstractmethod
    def list_discount_cycles(self, hotel_id: int) -> List[DiscountCycle]:
        """Closed cycles of the hotel, newest first."""

    @abstractmethod
    def get_discount_cycle(self, cycle_id: int) -> Optional[DiscountCycle]:
        """A single closed cycle with its items."""


# ============== Local Database Data Source ==============

class SqlStockDataSource(StockDataSource):
    """Data source reading and writing the console's own database.

    Counts and discount cycles always go through the request session *db*.
    With a *session_factory*, the bulk catalog and movement reads each run on
    a short-lived session of their own and may be issued from worker threads;
    they then see committed data only.
    """

    def __init__(self, db: Session, session_factory: Optional[sessionmaker] = None):
        self.db = db
        self.session_factory = session_factory
        self.concurrent_reads = session_factory is not None

    @contextmanager
    def _reader(self) -> Iterator[Session]:
        if self.session_factory is None:
            yield self.db
            return
        with self.session_factory() as session:
            yield session

    def get_active_products(self, hotel_id: int) -> List[ProductSnapshot]:
        with self._reader() as db:
            rows = db.scalars(
                select(Product)
                .where(Product.hotel_id == hotel_id, Product.active.is_(True))
                .order_by(Product.category, Product.name)
            ).all()
            return [
                ProductSnapshot(
                    id=p.id,
                    name=p.name,
                    category=p.category,
                    unit_value=p.unit_value if p.unit_value is not None else ZERO,
                    is_priority=bool(p.is_priority),
                    cycle_tracked=bool(p.cycle_tracked),
                    baseline_quantity=p.baseline_quantity if p.baseline_quantity is not None else ZERO,
                    active=p.active,
                )
                for p in rows
            ]

    def get_sectors(self, hotel_id: int) -> List[Location]:
        with self._reader() as db:
            rows = db.scalars(
                select(Sector).where(Sector.hotel_id == hotel_id).order_by(Sector.name)
            ).all()
            return [Location(sector_id=s.id, name=s.name) for s in rows]

    @staticmethod
    def _to_count(count: StockCount) -> StockCountSnapshot:
        return StockCountSnapshot(
            id=count.id,
            hotel_id=count.hotel_id,
            sector_id=count.sector_id,
            finished_at=_as_utc(count.finished_at) if count.status == CountStatus.FINISHED else None,
            items=tuple(
                CountedItem(product_id=i.product_id, counted_quantity=i.counted_quantity)
                for i in count.items
            ),
        )

    def get_stock_count(self, count_id: int) -> Optional[StockCountSnapshot]:
        count = self.db.scalars(
            select(StockCount)
            .options(selectinload(StockCount.items))
            .where(StockCount.id == count_id)
        ).first()
        return self._to_count(count) if count else None

    def list_finished_counts(
        self, hotel_id: int, sector_id: Optional[int] = None
    ) -> List[StockCountSnapshot]:
        query = (
            select(StockCount)
            .options(selectinload(StockCount.items))
            .where(StockCount.hotel_id == hotel_id, StockCount.status == CountStatus.FINISHED)
        )
        if sector_id is not None:
            query = query.where(StockCount.sector_id == sector_id)
        else:
            query = query.where(StockCount.sector_id.is_(None))
        counts = self.db.scalars(
            query.order_by(StockCount.finished_at.desc(), StockCount.id.desc())
        ).all()
        return [self._to_count(c) for c in counts]

    def get_purchases(self, hotel_id, from_, to) -> List[Purchase]:
        with self._reader() as db:
            rows = db.execute(
                select(PurchaseItem.product_id, PurchaseItem.quantity, PurchaseRecord.purchase_date)
                .join(PurchaseRecord, PurchaseItem.purchase_id == PurchaseRecord.id)
                .where(PurchaseRecord.hotel_id == hotel_id, *_within(PurchaseRecord.purchase_date, from_, to))
            ).all()
        return [
            Purchase(product_id=r.product_id, quantity=r.quantity, occurred_at=_as_utc(r.purchase_date))
            for r in rows
        ]

    def get_fulfilled_deliveries(self, hotel_id, from_, to) -> List[Delivery]:
        with self._reader() as db:
            rows = db.scalars(
                select(Requisition).where(
                    Requisition.hotel_id == hotel_id,
                    Requisition.status == RequisitionStatus.DELIVERED,
                    *_within(Requisition.delivered_at, from_, to),
                )
            ).all()
            return [
                Delivery(
                    requested_product_id=r.product_id,
                    delivered_product_id=r.substituted_product_id,
                    quantity=r.delivered_quantity or ZERO,
                    sector_id=r.sector_id,
                    occurred_at=_as_utc(r.delivered_at),
                )
                for r in rows
            ]

    def get_transfers(self, hotel_id, from_, to) -> List[Transfer]:
        with self._reader() as db:
            rows = db.scalars(
                select(HotelTransfer).where(
                    HotelTransfer.status == TransferStatus.COMPLETED,
                    or_(
                        HotelTransfer.source_hotel_id == hotel_id,
                        HotelTransfer.destination_hotel_id == hotel_id,
                    ),
                    *_within(HotelTransfer.completed_at, from_, to),
                )
            ).all()
            return [
                Transfer(
                    product_id=t.product_id,
                    destination_product_id=t.destination_product_id,
                    quantity=t.quantity,
                    source_hotel_id=t.source_hotel_id,
                    destination_hotel_id=t.destination_hotel_id,
                    occurred_at=_as_utc(t.completed_at),
                )
                for t in rows
            ]

    def get_restocks(self, hotel_id, from_, to) -> List[Restock]:
        with self._reader() as db:
            rows = db.scalars(
                select(RestockRecord).where(
                    RestockRecord.hotel_id == hotel_id,
                    *_within(RestockRecord.restocked_at, from_, to),
                )
            ).all()
            return [
                Restock(
                    product_id=r.product_id,
                    quantity=r.quantity,
                    unit_value=r.unit_value_at_time,
                    sector_id=r.sector_id,
                    occurred_at=_as_utc(r.restocked_at),
                )
                for r in rows
            ]

    # ------------------------------------------------------------------
    # Discount cycles
    # ------------------------------------------------------------------
    def get_prior_cycle_baseline(self, hotel_id: int) -> CycleBaseline:
        baseline = self.db.get(CycleBaselineRecord, hotel_id)
        if baseline is None:
            return CycleBaseline(hotel_id=hotel_id)

        items = self.db.scalars(
            select(DiscountCycleItemRecord).where(
                DiscountCycleItemRecord.cycle_id == baseline.last_cycle_id
            )
        ).all()
        return CycleBaseline(
            hotel_id=hotel_id,
            version=baseline.version,
            cycle_id=baseline.last_cycle_id,
            closed_at=_as_utc(baseline.last_closed_at),
            quantities={i.product_id: i.final_count for i in items},
        )

    def commit_discount_cycle(self, cycle: DiscountCycle, expected_version: int) -> DiscountCycle:
        db = self.db
        try:
            record = DiscountCycleRecord(
                hotel_id=cycle.hotel_id,
                closed_at=cycle.closed_at,
                closed_by=cycle.closed_by_user_id,
                total_discount_value=cycle.total_discount_value,
                previous_cycle_id=cycle.previous_cycle_id,
                items=[
                    DiscountCycleItemRecord(
                        product_id=i.product_id,
                        product_name=i.product_name,
                        previous_count=i.previous_count,
                        restocks_in_period=i.restocks_in_period,
                        attributed_loss=i.attributed_loss,
                        final_count=i.final_count,
                        unaccounted_loss=i.unaccounted_loss,
                        unit_value=i.unit_value,
                        discount_value=i.discount_value,
                    )
                    for i in cycle.items
                ],
            )
            db.add(record)
            db.flush()
            cycle_id = record.id

            if expected_version == 0:
                if db.get(CycleBaselineRecord, cycle.hotel_id) is not None:
                    raise ConcurrentCloseConflict(cycle.hotel_id, expected_version)
                db.add(CycleBaselineRecord(
                    hotel_id=cycle.hotel_id,
                    version=1,
                    last_cycle_id=cycle_id,
                    last_closed_at=cycle.closed_at,
                ))
                try:
                    db.flush()
                except IntegrityError as exc:
                    raise ConcurrentCloseConflict(cycle.hotel_id, expected_version) from exc
            else:
                result = db.execute(
                    update(CycleBaselineRecord)
                    .where(
                        CycleBaselineRecord.hotel_id == cycle.hotel_id,
                        CycleBaselineRecord.version == expected_version,
                    )
                    .values(
                        version=expected_version + 1,
                        last_cycle_id=cycle_id,
                        last_closed_at=cycle.closed_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrentCloseConflict(cycle.hotel_id, expected_version)

            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(
            "Discount cycle persisted: ID=%s, hotel=%s, baseline_version=%s",
            cycle_id,
            cycle.hotel_id,
            expected_version + 1,
        )
        return replace(cycle, id=cycle_id)

    @staticmethod
    def _to_cycle(record: DiscountCycleRecord) -> DiscountCycle:
        return DiscountCycle(
            id=record.id,
            hotel_id=record.hotel_id,
            closed_at=_as_utc(record.closed_at),
            closed_by_user_id=record.closed_by,
            total_discount_value=record.total_discount_value,
            previous_cycle_id=record.previous_cycle_id,
            items=tuple(
                DiscountCycleItem(
                    product_id=i.product_id,
                    product_name=i.product_name,
                    previous_count=i.previous_count,
                    restocks_in_period=i.restocks_in_period,
                    attributed_loss=i.attributed_loss,
                    expected_quantity=i.previous_count + i.restocks_in_period,
                    final_count=i.final_count,
                    unaccounted_loss=i.unaccounted_loss,
                    unit_value=i.unit_value,
                    discount_value=i.discount_value,
                )
                for i in record.items
            ),
        )

    def list_discount_cycles(self, hotel_id: int) -> List[DiscountCycle]:
        records = self.db.scalars(
            select(DiscountCycleRecord)
            .options(selectinload(DiscountCycleRecord.items))
            .where(DiscountCycleRecord.hotel_id == hotel_id)
            .order_by(DiscountCycleRecord.closed_at.desc(), DiscountCycleRecord.id.desc())
        ).all()
        return [self._to_cycle(r) for r in records]

    def get_discount_cycle(self, cycle_id: int) -> Optional[DiscountCycle]:
        record = self.db.scalars(
            select(DiscountCycleRecord)
            .options(selectinload(DiscountCycleRecord.items))
            .where(DiscountCycleRecord.id == cycle_id)
        ).first()
        return self._to_cycle(record) if record else None


def _read_session_factory(db: Session) -> Optional[sessionmaker]:
    """Factory for per-read sessions, or None when workers cannot get their own connection."""
    bind = db.get_bind()
    if not isinstance(bind, Engine) or settings.reconciliation_max_workers <= 1:
        return None
    # One shared connection, or one private in-memory database per thread
    if isinstance(bind.pool, (StaticPool, SingletonThreadPool)):
        return None
    return sessionmaker(bind=bind, autoflush=False)


def get_data_source(db: Session) -> StockDataSource:
    """Data source for the configured backend (currently the local database)."""
    session_factory = _read_session_factory(db)
    logger.debug(
        "Using local database data source (%s, concurrent reads: %s)",
        settings.database_url.split(":", 1)[0],
        session_factory is not None,
    )
    return SqlStockDataSource(db, session_factory)
