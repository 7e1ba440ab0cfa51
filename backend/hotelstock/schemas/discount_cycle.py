"""Schemas for discount cycles."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CycleCountEntryIn(BaseModel):
    """Counted quantity of one tracked product at cycle close."""
    product_id: int
    current_quantity: Decimal = Field(..., ge=0)
    guest_attributed_loss: Decimal = Field(Decimal("0"), ge=0)


class CycleCountsRequest(BaseModel):
    hotel_id: int
    counts: List[CycleCountEntryIn]


class CycleStatusLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    product_name: str
    unit_value: Decimal
    previous_count: Decimal
    baseline_set_at: Optional[datetime] = None
    restocks_since: Decimal


class DiscountCycleItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    product_name: str
    previous_count: Decimal
    restocks_in_period: Decimal
    attributed_loss: Decimal
    expected_quantity: Decimal
    final_count: Decimal
    unaccounted_loss: Decimal
    unit_value: Decimal
    discount_value: Decimal


class DiscountCycleResponse(BaseModel):
    """A closed cycle, or a preview when ``id`` is null."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    hotel_id: int
    closed_at: datetime
    closed_by_user_id: Optional[int] = None
    total_discount_value: Decimal
    previous_cycle_id: Optional[int] = None
    items: List[DiscountCycleItemResponse]
