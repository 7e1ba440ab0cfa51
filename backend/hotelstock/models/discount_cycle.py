"""Discount cycle models: settled loss cycles and the per-hotel baseline guard."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hotelstock.db.base import Base, VersionMixin


class DiscountCycle(Base):
    """A closed discount cycle. Append-only: never updated or deleted."""

    __tablename__ = "discount_cycles"

    id: Mapped[int] = mapped_column(primary_key=True)
    hotel_id: Mapped[int] = mapped_column(
        ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    closed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    # Identity-service user id; not constrained to the local users table
    closed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    previous_cycle_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("discount_cycles.id", ondelete="SET NULL"), nullable=True
    )

    # Relationships
    items: Mapped[list["DiscountCycleItem"]] = relationship(
        "DiscountCycleItem", back_populates="cycle", cascade="all, delete-orphan",
        order_by="DiscountCycleItem.id",
    )


class DiscountCycleItem(Base):
    """Per-product breakdown of a closed cycle."""

    __tablename__ = "discount_cycle_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    cycle_id: Mapped[int] = mapped_column(
        ForeignKey("discount_cycles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    previous_count: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    restocks_in_period: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    attributed_loss: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)  # guests
    final_count: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    unaccounted_loss: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)  # may be < 0
    unit_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Relationships
    cycle: Mapped["DiscountCycle"] = relationship("DiscountCycle", back_populates="items")


class CycleBaseline(Base, VersionMixin):
    """Pointer to the cycle whose final counts are the hotel's current baseline.

    ``version`` is bumped by every close; a close whose read version no longer
    matches loses the race.
    """

    __tablename__ = "cycle_baselines"

    hotel_id: Mapped[int] = mapped_column(
        ForeignKey("hotels.id", ondelete="CASCADE"), primary_key=True
    )
    last_cycle_id: Mapped[int] = mapped_column(
        ForeignKey("discount_cycles.id", ondelete="RESTRICT"), nullable=False
    )
    last_closed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
