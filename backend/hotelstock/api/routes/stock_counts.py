"""Stock count routes."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, status

from hotelstock.core.exceptions import ReconciliationError
from hotelstock.core.rate_limit import limiter
from hotelstock.core.rbac import CurrentUser, ensure_hotel_access
from hotelstock.core.responses import list_response
from hotelstock.db.session import DbSession
from hotelstock.models.stock_count import CountStatus
from hotelstock.schemas.stock_count import (
    StockCountCreate,
    StockCountDetail,
    StockCountItemsUpdate,
    StockCountResponse,
    StockCountSummary,
)
from hotelstock.services.stock_count_service import StockCountService

router = APIRouter()


def _check_access(db, count_id: int, current_user) -> None:
    count = StockCountService.get_count(db, count_id)
    ensure_hotel_access(current_user, count.hotel_id)


@router.post("/", response_model=StockCountResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_stock_count(
    request: Request,
    body: StockCountCreate,
    db: DbSession,
    current_user: CurrentUser,
):
    """Open a draft count for a location, or resume the one already open."""
    ensure_hotel_access(current_user, body.hotel_id)
    try:
        return StockCountService.create_count(
            db,
            hotel_id=body.hotel_id,
            sector_id=body.sector_id,
            created_by=current_user.user_id,
            notes=body.notes,
        )
    except ReconciliationError:
        raise
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.put("/{count_id}/items", response_model=StockCountResponse)
@limiter.limit("60/minute")
def save_stock_count_items(
    request: Request,
    count_id: int,
    body: StockCountItemsUpdate,
    db: DbSession,
    current_user: CurrentUser,
):
    """Replace the items of a draft count."""
    _check_access(db, count_id, current_user)
    try:
        return StockCountService.save_items(
            db, count_id, {item.product_id: item.counted_quantity for item in body.items}
        )
    except ReconciliationError:
        raise
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/{count_id}/finish", response_model=StockCountResponse)
@limiter.limit("30/minute")
def finish_stock_count(
    request: Request,
    count_id: int,
    db: DbSession,
    current_user: CurrentUser,
):
    """Finish a draft count. Finished counts can no longer be changed."""
    _check_access(db, count_id, current_user)
    try:
        return StockCountService.finish_count(db, count_id, finished_by=current_user.user_id)
    except ReconciliationError:
        raise
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/{count_id}", response_model=StockCountDetail)
@limiter.limit("60/minute")
def get_stock_count(
    request: Request,
    count_id: int,
    db: DbSession,
    current_user: CurrentUser,
):
    """Count items with the difference to the previous count of the same location."""
    _check_access(db, count_id, current_user)
    return StockCountService.get_count_detail(db, count_id)


@router.get("/")
@limiter.limit("60/minute")
def list_stock_counts(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    hotel_id: int = Query(...),
    sector_id: Optional[int] = Query(None, description="Omit for the main warehouse"),
    include_drafts: bool = Query(False),
):
    """Counts of one location, newest first."""
    ensure_hotel_access(current_user, hotel_id)
    counts = StockCountService.list_counts(
        db,
        hotel_id,
        sector_id,
        status=None if include_drafts else CountStatus.FINISHED,
    )
    return list_response(counts, StockCountSummary)
