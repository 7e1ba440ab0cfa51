"""Product model."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hotelstock.db.base import Base, TimestampMixin


class Product(Base, TimestampMixin):
    """Product in a hotel's catalog.

    There is deliberately no stock quantity column: current stock is derived
    from the latest finished count plus the movements recorded since.
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    hotel_id: Mapped[int] = mapped_column(
        ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    unit: Mapped[str] = mapped_column(String(20), default="un", nullable=False)
    unit_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)
    is_priority: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)  # "starred"
    cycle_tracked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)  # discount cycles
    baseline_quantity: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=0, nullable=False
    )  # first-cycle baseline
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    hotel: Mapped["Hotel"] = relationship("Hotel", back_populates="products")


# Forward references
from hotelstock.models.hotel import Hotel
