"""Stock count (physical count snapshot) models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, UniqueConstraint, event, func,
    inspect,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from hotelstock.core.exceptions import CountAlreadyFinished
from hotelstock.db.base import Base


class CountStatus(str, Enum):
    """Status of a stock count."""

    DRAFT = "draft"
    FINISHED = "finished"


class StockCount(Base):
    """A point-in-time count of a hotel's main warehouse or of one sector.

    ``sector_id`` NULL means the main warehouse. Once finished, neither the
    count nor its items may change; corrections are recorded as a new count.
    """

    __tablename__ = "stock_counts"

    id: Mapped[int] = mapped_column(primary_key=True)
    hotel_id: Mapped[int] = mapped_column(
        ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sector_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sectors.id", ondelete="CASCADE"), nullable=True, index=True
    )
    status: Mapped[CountStatus] = mapped_column(
        SQLEnum(CountStatus), default=CountStatus.DRAFT, nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    # Identity-service user ids; not constrained to the local users table
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    finished_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Relationships
    items: Mapped[list["StockCountItem"]] = relationship(
        "StockCountItem", back_populates="stock_count", cascade="all, delete-orphan"
    )


class StockCountItem(Base):
    """Counted quantity of one product within a stock count."""

    __tablename__ = "stock_count_items"
    __table_args__ = (
        UniqueConstraint("stock_count_id", "product_id", name="uq_count_item_product"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    stock_count_id: Mapped[int] = mapped_column(
        ForeignKey("stock_counts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    counted_quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    # Relationships
    stock_count: Mapped["StockCount"] = relationship("StockCount", back_populates="items")


def _was_finished(count: StockCount) -> bool:
    """True when the persisted (pre-flush) status of *count* is FINISHED."""
    history = inspect(count).attrs.status.history
    if history.deleted:
        return history.deleted[0] == CountStatus.FINISHED
    if history.unchanged:
        return history.unchanged[0] == CountStatus.FINISHED
    return False


@event.listens_for(Session, "before_flush")
def _reject_finished_count_changes(session, flush_context, instances):
    """Refuse to flush any change touching an already finished count."""
    for obj in session.dirty:
        if isinstance(obj, StockCount) and session.is_modified(obj) and _was_finished(obj):
            raise CountAlreadyFinished(f"Stock count {obj.id} is finished and cannot be changed")
    for obj in session.deleted:
        if isinstance(obj, StockCount) and _was_finished(obj):
            raise CountAlreadyFinished(f"Stock count {obj.id} is finished and cannot be deleted")

    touched_items = [
        obj
        for obj in list(session.new) + list(session.dirty) + list(session.deleted)
        if isinstance(obj, StockCountItem)
    ]
    if not touched_items:
        return

    with session.no_autoflush:
        for item in touched_items:
            count_id = item.stock_count_id
            if count_id is None and item.stock_count is not None:
                count_id = item.stock_count.id
            if count_id is None:
                continue  # parent is new in this flush
            count = session.get(StockCount, count_id)
            if count is not None and _was_finished(count):
                raise CountAlreadyFinished(f"Stock count {count_id} is finished and cannot be changed")
