"""Schemas for reconciliation reports."""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hotelstock.services.reconciliation import MovementKind
from hotelstock.services.reconciliation_report_service import GroupBy


# ============== Requests ==============

class CountSelectionIn(BaseModel):
    """Count pair used for one sector instead of the primary pair."""
    sector_id: int
    start_count_id: int
    end_count_id: int


class SectorOutflowIn(BaseModel):
    """Manually entered consumption of a product in a sector."""
    product_id: int
    sector_id: int
    quantity: Decimal = Field(..., ge=0)


class ReconcileRequest(BaseModel):
    """Request to reconcile a hotel between two finished counts."""
    hotel_id: int
    start_count_id: int
    end_count_id: int
    sector_selections: List[CountSelectionIn] = []
    movement_kinds: Optional[List[MovementKind]] = None
    sector_outflows: List[SectorOutflowIn] = []
    priority_only: bool = False
    group_by: Optional[GroupBy] = None

    @model_validator(mode="after")
    def unique_outflows(self) -> "ReconcileRequest":
        keys = [(o.product_id, o.sector_id) for o in self.sector_outflows]
        if len(keys) != len(set(keys)):
            raise ValueError("Each (product, sector) outflow may be given only once")
        return self


# ============== Responses ==============

class LocationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sector_id: Optional[int] = None
    name: str
    is_main: bool


class ReconciliationRowResponse(BaseModel):
    """One product at one location."""
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    product_name: str
    category: str
    is_priority: bool
    sector_id: Optional[int] = None
    initial_stock: Decimal
    inflow: Decimal
    outflow: Decimal
    expected_final: Decimal
    actual_final: Decimal
    discrepancy: Decimal
    outflow_pending: bool
    manual_outflow: Optional[Decimal] = None
    effective_expected_final: Decimal
    effective_discrepancy: Decimal
    movements: Dict[str, Decimal] = {}


class DataIntegrityWarningResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: Optional[int] = None
    sector_id: Optional[int] = None
    source: str
    message: str


class RowGroupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: Union[bool, int, str, None] = None
    label: str
    net_delta: Decimal
    rows: List[ReconciliationRowResponse]


class ReportSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rows: int
    gains: int
    losses: int
    net_delta: Decimal


class ReconciliationReportResponse(BaseModel):
    """Reconciliation result with warnings and optional grouping."""
    model_config = ConfigDict(from_attributes=True)

    hotel_id: int
    start_count_id: int
    end_count_id: int
    period_start: datetime
    period_end: datetime
    locations: List[LocationResponse]
    rows: List[ReconciliationRowResponse]
    warnings: List[DataIntegrityWarningResponse] = []
    groups: Optional[List[RowGroupResponse]] = None
    summary: ReportSummaryResponse


class WeeklyReportResponse(BaseModel):
    week_start: datetime
    week_end: datetime
    report: ReconciliationReportResponse


class StockLevelResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    sector_id: Optional[int] = None
    quantity: Decimal
    last_count_id: Optional[int] = None
    last_counted_at: Optional[datetime] = None


class CurrentStockResponse(BaseModel):
    """Derived levels in the list envelope, with data-integrity warnings."""
    model_config = ConfigDict(from_attributes=True)

    hotel_id: int
    sector_id: Optional[int] = None
    as_of: datetime
    items: List[StockLevelResponse]
    total: int
    warnings: List[DataIntegrityWarningResponse] = []
