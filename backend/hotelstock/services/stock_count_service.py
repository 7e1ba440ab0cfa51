"""Stock count service - drafting, finishing and inspecting physical counts.

A count is drafted for the main warehouse or for one sector, filled in (its
items replaced as often as needed) and finished. A finished count is
immutable; corrections are recorded as a new count. Finishing never touches
any product quantity: current stock is always derived from counts and
movements.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from hotelstock.core.exceptions import CountAlreadyFinished, CountNotFound
from hotelstock.models.hotel import Hotel, Sector
from hotelstock.models.product import Product
from hotelstock.models.stock_count import CountStatus, StockCount, StockCountItem

logger = logging.getLogger(__name__)


def _scope_filter(sector_id: Optional[int]):
    if sector_id is None:
        return StockCount.sector_id.is_(None)
    return StockCount.sector_id == sector_id


class StockCountService:
    """Service for stock count operations."""

    @staticmethod
    def get_count(db: Session, count_id: int) -> StockCount:
        count = db.scalars(
            select(StockCount)
            .options(selectinload(StockCount.items))
            .where(StockCount.id == count_id)
        ).first()
        if not count:
            raise CountNotFound(f"Stock count {count_id} not found")
        return count

    @staticmethod
    def _get_draft(db: Session, count_id: int) -> StockCount:
        count = StockCountService.get_count(db, count_id)
        if count.status == CountStatus.FINISHED:
            raise CountAlreadyFinished(f"Stock count {count_id} is finished and cannot be changed")
        return count

    # ------------------------------------------------------------------
    # create_count
    # ------------------------------------------------------------------
    @staticmethod
    def create_count(
        db: Session,
        hotel_id: int,
        sector_id: Optional[int] = None,
        created_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> StockCount:
        """Open a draft count for a location, or resume the draft already open there.

        Args:
            db: SQLAlchemy database session.
            hotel_id: Hotel being counted.
            sector_id: Sector being counted; None for the main warehouse.
            created_by: Optional user ID who started the count.
            notes: Freeform notes.

        Returns:
            The draft ``StockCount``.

        Raises:
            ValueError: If the hotel does not exist or the sector is not one
                        of its sectors.
        """
        if db.get(Hotel, hotel_id) is None:
            raise ValueError("Hotel not found")
        if sector_id is not None:
            sector = db.get(Sector, sector_id)
            if sector is None or sector.hotel_id != hotel_id:
                raise ValueError("Sector not found for this hotel")

        draft = db.scalars(
            select(StockCount)
            .where(
                StockCount.hotel_id == hotel_id,
                _scope_filter(sector_id),
                StockCount.status == CountStatus.DRAFT,
            )
            .order_by(StockCount.id.desc())
        ).first()
        if draft is not None:
            logger.info(
                "Resuming draft stock count: ID=%s, hotel=%s, sector=%s",
                draft.id,
                hotel_id,
                sector_id,
            )
            return draft

        count = StockCount(
            hotel_id=hotel_id,
            sector_id=sector_id,
            created_by=created_by,
            notes=notes,
        )
        db.add(count)
        db.commit()
        db.refresh(count)

        logger.info(
            "Stock count created: ID=%s, hotel=%s, sector=%s, user=%s",
            count.id,
            hotel_id,
            sector_id,
            created_by,
        )
        return count

    # ------------------------------------------------------------------
    # save_items
    # ------------------------------------------------------------------
    @staticmethod
    def save_items(
        db: Session,
        count_id: int,
        quantities: Mapping[int, Decimal],
    ) -> StockCount:
        """Replace the items of a draft count with *quantities*.

        Raises:
            CountNotFound: If the count does not exist.
            CountAlreadyFinished: If the count is finished.
            ValueError: On negative quantities or products of another hotel.
        """
        count = StockCountService._get_draft(db, count_id)

        negative = sorted(pid for pid, qty in quantities.items() if qty < 0)
        if negative:
            raise ValueError(f"Counted quantities cannot be negative (products {negative})")

        if quantities:
            known = set(
                db.scalars(
                    select(Product.id).where(
                        Product.hotel_id == count.hotel_id,
                        Product.id.in_(list(quantities)),
                    )
                ).all()
            )
            foreign = sorted(set(quantities) - known)
            if foreign:
                raise ValueError(f"Products {foreign} do not belong to this hotel")

        try:
            existing = {item.product_id: item for item in count.items}
            for product_id, item in existing.items():
                if product_id not in quantities:
                    count.items.remove(item)
            for product_id, qty in quantities.items():
                if product_id in existing:
                    existing[product_id].counted_quantity = qty
                else:
                    count.items.append(StockCountItem(product_id=product_id, counted_quantity=qty))
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(count)
        logger.info("Stock count %s items saved: %s products", count.id, len(quantities))
        return count

    # ------------------------------------------------------------------
    # finish_count
    # ------------------------------------------------------------------
    @staticmethod
    def finish_count(
        db: Session,
        count_id: int,
        finished_by: Optional[int] = None,
    ) -> StockCount:
        """Finish a draft count; from here on it is immutable.

        Raises:
            CountNotFound: If the count does not exist.
            CountAlreadyFinished: If the count is already finished.
            ValueError: If the count has no items.
        """
        count = StockCountService._get_draft(db, count_id)
        if not count.items:
            raise ValueError("Stock count has no items to finish")

        try:
            count.status = CountStatus.FINISHED
            count.finished_at = datetime.now(timezone.utc)
            count.finished_by = finished_by
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(count)
        logger.info(
            "Stock count finished: ID=%s, hotel=%s, sector=%s, items=%s, user=%s",
            count.id,
            count.hotel_id,
            count.sector_id,
            len(count.items),
            finished_by,
        )
        return count

    # ------------------------------------------------------------------
    # get_count_detail
    # ------------------------------------------------------------------
    @staticmethod
    def previous_finished_count(db: Session, count: StockCount) -> Optional[StockCount]:
        """Latest finished count of the same location before *count*."""
        query = (
            select(StockCount)
            .options(selectinload(StockCount.items))
            .where(
                StockCount.hotel_id == count.hotel_id,
                _scope_filter(count.sector_id),
                StockCount.status == CountStatus.FINISHED,
                StockCount.id != count.id,
            )
        )
        if count.status == CountStatus.FINISHED and count.finished_at is not None:
            query = query.where(StockCount.finished_at <= count.finished_at, StockCount.id < count.id)
        return db.scalars(
            query.order_by(StockCount.finished_at.desc(), StockCount.id.desc())
        ).first()

    @staticmethod
    def get_count_detail(db: Session, count_id: int) -> Dict[str, Any]:
        """Return a count with each item compared to the previous count of its location.

        Products missing from the previous count were counted as zero there.

        Raises:
            CountNotFound: If the count does not exist.
        """
        count = StockCountService.get_count(db, count_id)
        previous = StockCountService.previous_finished_count(db, count)
        previous_qty = (
            {item.product_id: item.counted_quantity for item in previous.items}
            if previous
            else {}
        )

        product_ids = [item.product_id for item in count.items]
        products = {
            p.id: p
            for p in db.scalars(select(Product).where(Product.id.in_(product_ids))).all()
        } if product_ids else {}

        items: List[Dict[str, Any]] = []
        for item in sorted(count.items, key=lambda i: i.product_id):
            product = products.get(item.product_id)
            before = previous_qty.get(item.product_id, Decimal("0"))
            items.append(
                {
                    "product_id": item.product_id,
                    "product_name": product.name if product else f"Product {item.product_id}",
                    "category": product.category if product else None,
                    "counted_quantity": item.counted_quantity,
                    "previous_quantity": before,
                    "difference": item.counted_quantity - before,
                }
            )

        return {
            "id": count.id,
            "hotel_id": count.hotel_id,
            "sector_id": count.sector_id,
            "status": count.status.value,
            "started_at": count.started_at,
            "finished_at": count.finished_at,
            "notes": count.notes,
            "previous_count_id": previous.id if previous else None,
            "items": items,
        }

    # ------------------------------------------------------------------
    # list_counts
    # ------------------------------------------------------------------
    @staticmethod
    def list_counts(
        db: Session,
        hotel_id: int,
        sector_id: Optional[int] = None,
        status: Optional[CountStatus] = CountStatus.FINISHED,
    ) -> List[StockCount]:
        """Counts of one location (main warehouse when *sector_id* is None), newest first."""
        query = select(StockCount).where(
            StockCount.hotel_id == hotel_id,
            _scope_filter(sector_id),
        )
        if status is not None:
            query = query.where(StockCount.status == status)
        return list(
            db.scalars(
                query.order_by(StockCount.finished_at.desc(), StockCount.id.desc())
            ).all()
        )
