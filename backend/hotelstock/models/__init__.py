"""SQLAlchemy models."""

from hotelstock.models.hotel import Hotel, Sector
from hotelstock.models.user import User
from hotelstock.models.product import Product
from hotelstock.models.stock_count import CountStatus, StockCount, StockCountItem
from hotelstock.models.movement import (
    HotelTransfer,
    Purchase,
    PurchaseItem,
    Requisition,
    RequisitionStatus,
    Restock,
    TransferStatus,
)
from hotelstock.models.discount_cycle import CycleBaseline, DiscountCycle, DiscountCycleItem

__all__ = [
    "Hotel",
    "Sector",
    "User",
    "Product",
    "CountStatus",
    "StockCount",
    "StockCountItem",
    "HotelTransfer",
    "Purchase",
    "PurchaseItem",
    "Requisition",
    "RequisitionStatus",
    "Restock",
    "TransferStatus",
    "CycleBaseline",
    "DiscountCycle",
    "DiscountCycleItem",
]
