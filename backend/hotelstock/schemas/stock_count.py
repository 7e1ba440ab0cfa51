"""Schemas for stock counts."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hotelstock.models.stock_count import CountStatus


class StockCountCreate(BaseModel):
    """Open (or resume) a draft count. No sector means the main warehouse."""
    hotel_id: int
    sector_id: Optional[int] = None
    notes: Optional[str] = Field(None, max_length=500)


class StockCountItemIn(BaseModel):
    product_id: int
    counted_quantity: Decimal = Field(..., ge=0)


class StockCountItemsUpdate(BaseModel):
    """Full replacement of a draft count's items."""
    items: List[StockCountItemIn]

    @field_validator("items")
    @classmethod
    def unique_products(cls, v: List[StockCountItemIn]) -> List[StockCountItemIn]:
        seen = set()
        for item in v:
            if item.product_id in seen:
                raise ValueError(f"Product {item.product_id} listed more than once")
            seen.add(item.product_id)
        return v


class StockCountItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    counted_quantity: Decimal


class StockCountSummary(BaseModel):
    """Stock count without its items."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    hotel_id: int
    sector_id: Optional[int] = None
    status: CountStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_by: Optional[int] = None
    finished_by: Optional[int] = None
    notes: Optional[str] = None


class StockCountResponse(StockCountSummary):
    items: List[StockCountItemResponse] = []


class StockCountDetailItem(BaseModel):
    product_id: int
    product_name: str
    category: Optional[str] = None
    counted_quantity: Decimal
    previous_quantity: Decimal
    difference: Decimal


class StockCountDetail(BaseModel):
    """Count items compared with the previous finished count of the same location."""
    id: int
    hotel_id: int
    sector_id: Optional[int] = None
    status: CountStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    notes: Optional[str] = None
    previous_count_id: Optional[int] = None
    items: List[StockCountDetailItem]
