"""Movement ledger models: purchases, requisition deliveries, hotel transfers, restocks.

The reconciliation engine only reads these tables; they are written by the
purchasing, requisition and transfer screens of the console.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hotelstock.db.base import Base


class RequisitionStatus(str, Enum):
    """Lifecycle of a sector requisition."""

    PENDING = "pending"
    DELIVERED = "delivered"
    REJECTED = "rejected"


class TransferStatus(str, Enum):
    """Lifecycle of an inter-hotel transfer."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Purchase(Base):
    """A purchase received into a hotel's main warehouse."""

    __tablename__ = "purchases"

    id: Mapped[int] = mapped_column(primary_key=True)
    hotel_id: Mapped[int] = mapped_column(
        ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    supplier_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Relationships
    items: Mapped[list["PurchaseItem"]] = relationship(
        "PurchaseItem", back_populates="purchase", cascade="all, delete-orphan"
    )


class PurchaseItem(Base):
    """One product line of a purchase."""

    __tablename__ = "purchase_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    purchase_id: Mapped[int] = mapped_column(
        ForeignKey("purchases.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    # Relationships
    purchase: Mapped["Purchase"] = relationship("Purchase", back_populates="items")


class Requisition(Base):
    """A sector's request for stock from the main warehouse.

    When fulfilled with a different product, ``substituted_product_id`` holds
    the product actually delivered; ``product_id`` keeps the original request.
    """

    __tablename__ = "requisitions"

    id: Mapped[int] = mapped_column(primary_key=True)
    hotel_id: Mapped[int] = mapped_column(
        ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sector_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sectors.id", ondelete="SET NULL"), nullable=True, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    substituted_product_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    requested_quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    delivered_quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    status: Mapped[RequisitionStatus] = mapped_column(
        SQLEnum(RequisitionStatus), default=RequisitionStatus.PENDING, nullable=False, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )


class HotelTransfer(Base):
    """Stock sent from one hotel's main warehouse to another's."""

    __tablename__ = "hotel_transfers"

    id: Mapped[int] = mapped_column(primary_key=True)
    source_hotel_id: Mapped[int] = mapped_column(
        ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    destination_hotel_id: Mapped[int] = mapped_column(
        ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    # Same item in the destination hotel's catalog, when it differs
    destination_product_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[TransferStatus] = mapped_column(
        SQLEnum(TransferStatus), default=TransferStatus.PENDING, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )


class Restock(Base):
    """Replenishment of a cycle-tracked item (e.g. kitchen utensils)."""

    __tablename__ = "restocks"

    id: Mapped[int] = mapped_column(primary_key=True)
    hotel_id: Mapped[int] = mapped_column(
        ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sector_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sectors.id", ondelete="SET NULL"), nullable=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    unit_value_at_time: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    restocked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
