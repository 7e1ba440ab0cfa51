"""Reconciliation report routes."""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status

from hotelstock.core.rate_limit import limiter
from hotelstock.core.rbac import CurrentUser, ensure_hotel_access
from hotelstock.db.session import DbSession
from hotelstock.schemas.reconciliation import (
    CurrentStockResponse,
    ReconcileRequest,
    ReconciliationReportResponse,
    WeeklyReportResponse,
)
from hotelstock.services.reconciliation import (
    CountSelection,
    ReconciliationReport,
    ReconciliationRow,
    get_data_source,
)
from hotelstock.services.reconciliation_report_service import (
    GroupBy,
    ReconciliationReportService,
    RowGroup,
    apply_sector_outflows,
    filter_priority,
    group_rows,
    summarize,
)
from hotelstock.services.reconciliation_service import ReconciliationService

router = APIRouter()


def _report_response(
    report: ReconciliationReport,
    rows: List[ReconciliationRow],
    groups: Optional[List[RowGroup]] = None,
) -> ReconciliationReportResponse:
    return ReconciliationReportResponse.model_validate(
        {
            "hotel_id": report.hotel_id,
            "start_count_id": report.start_count_id,
            "end_count_id": report.end_count_id,
            "period_start": report.period_start,
            "period_end": report.period_end,
            "locations": report.locations,
            "rows": rows,
            "warnings": report.warnings,
            "groups": groups,
            "summary": summarize(rows),
        },
        from_attributes=True,
    )


@router.post("/reconcile", response_model=ReconciliationReportResponse)
@limiter.limit("30/minute")
def run_reconciliation(
    request: Request,
    body: ReconcileRequest,
    db: DbSession,
    current_user: CurrentUser,
):
    """
    Reconcile a hotel between two finished counts.
    Sector consumption entered by the user is applied as an overlay and never
    replaces the computed figures.
    """
    ensure_hotel_access(current_user, body.hotel_id)

    service = ReconciliationService(get_data_source(db))
    report = service.reconcile(
        body.hotel_id,
        body.start_count_id,
        body.end_count_id,
        sector_selections=[
            CountSelection(s.sector_id, s.start_count_id, s.end_count_id)
            for s in body.sector_selections
        ],
        movement_kinds=body.movement_kinds,
    )

    try:
        rows = apply_sector_outflows(
            report.rows,
            {(o.product_id, o.sector_id): o.quantity for o in body.sector_outflows},
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if body.priority_only:
        rows = filter_priority(rows)
    groups = group_rows(rows, body.group_by, report.locations) if body.group_by else None
    return _report_response(report, rows, groups)


@router.get("/weekly", response_model=WeeklyReportResponse)
@limiter.limit("30/minute")
def get_weekly_report(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    hotel_id: int = Query(...),
    day: date = Query(..., description="Any day of the requested week"),
    priority_only: bool = Query(True, description="Starred products only"),
    group_by: GroupBy = Query(GroupBy.CATEGORY),
):
    """Weekly stock report between the counts bounding the week."""
    ensure_hotel_access(current_user, hotel_id)

    service = ReconciliationReportService(ReconciliationService(get_data_source(db)))
    weekly = service.weekly_report(hotel_id, day, priority_only=priority_only, group_by=group_by)
    return {
        "week_start": weekly.week_start,
        "week_end": weekly.week_end,
        "report": _report_response(weekly.report, weekly.report.rows, weekly.groups),
    }


@router.get("/current-stock", response_model=CurrentStockResponse)
@limiter.limit("60/minute")
def get_current_stock(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    hotel_id: int = Query(...),
    sector_id: Optional[int] = Query(None, description="Omit for the main warehouse"),
    as_of: Optional[datetime] = Query(None),
):
    """Derived stock: latest finished count plus the movements recorded since."""
    ensure_hotel_access(current_user, hotel_id)

    service = ReconciliationService(get_data_source(db))
    report = service.current_stock(hotel_id, sector_id=sector_id, as_of=as_of)
    return CurrentStockResponse.model_validate(
        {
            "hotel_id": report.hotel_id,
            "sector_id": report.sector_id,
            "as_of": report.as_of,
            "items": report.levels,
            "total": len(report.levels),
            "warnings": report.warnings,
        },
        from_attributes=True,
    )
