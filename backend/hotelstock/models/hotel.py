"""Hotel and sector models."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hotelstock.db.base import Base, TimestampMixin


class Hotel(Base, TimestampMixin):
    """A hotel of the group. Owns products, sectors and stock counts."""

    __tablename__ = "hotels"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, unique=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    sectors: Mapped[list["Sector"]] = relationship(
        "Sector", back_populates="hotel", cascade="all, delete-orphan"
    )
    products: Mapped[list["Product"]] = relationship("Product", back_populates="hotel")


class Sector(Base, TimestampMixin):
    """Department-level sub-stock of a hotel (kitchen, housekeeping, bar...)."""

    __tablename__ = "sectors"
    __table_args__ = (
        UniqueConstraint("hotel_id", "name", name="uq_sector_hotel_name"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    hotel_id: Mapped[int] = mapped_column(
        ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Relationships
    hotel: Mapped["Hotel"] = relationship("Hotel", back_populates="sectors")


# Forward references
from hotelstock.models.product import Product
