"""Discount cycle routes (cycle-tracked items such as kitchen utensils)."""

from fastapi import APIRouter, HTTPException, Query, Request, status

from hotelstock.core.rate_limit import limiter
from hotelstock.core.rbac import CurrentUser, RequireManager, ensure_hotel_access
from hotelstock.core.responses import list_response
from hotelstock.db.session import DbSession
from hotelstock.schemas.discount_cycle import (
    CycleCountsRequest,
    CycleStatusLineResponse,
    DiscountCycleResponse,
)
from hotelstock.services.discount_cycle_service import CycleSettlementService
from hotelstock.services.reconciliation import CycleCountEntry, get_data_source

router = APIRouter()


def _entries(body: CycleCountsRequest):
    return [
        CycleCountEntry(
            product_id=c.product_id,
            current_quantity=c.current_quantity,
            guest_attributed_loss=c.guest_attributed_loss,
        )
        for c in body.counts
    ]


@router.get("/status")
@limiter.limit("60/minute")
def get_cycle_status(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    hotel_id: int = Query(...),
):
    """Baseline and restocks of every tracked product since the last close."""
    ensure_hotel_access(current_user, hotel_id)
    lines = CycleSettlementService(get_data_source(db)).cycle_status(hotel_id)
    return list_response(lines, CycleStatusLineResponse)


@router.post("/preview", response_model=DiscountCycleResponse)
@limiter.limit("30/minute")
def preview_cycle(
    request: Request,
    body: CycleCountsRequest,
    db: DbSession,
    current_user: CurrentUser,
):
    """Compute losses and discounts for the submitted counts without closing."""
    ensure_hotel_access(current_user, body.hotel_id)
    return CycleSettlementService(get_data_source(db)).preview_cycle(body.hotel_id, _entries(body))


@router.post("/close", response_model=DiscountCycleResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def close_cycle(
    request: Request,
    body: CycleCountsRequest,
    db: DbSession,
    current_user: RequireManager,
):
    """
    Close the current discount cycle.
    Every tracked product must be counted; the counts become the next baseline.
    """
    ensure_hotel_access(current_user, body.hotel_id)
    return CycleSettlementService(get_data_source(db)).close_cycle(
        body.hotel_id, current_user.user_id, _entries(body)
    )


@router.get("/")
@limiter.limit("60/minute")
def list_cycles(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    hotel_id: int = Query(...),
):
    """Closed cycles of a hotel, newest first."""
    ensure_hotel_access(current_user, hotel_id)
    cycles = CycleSettlementService(get_data_source(db)).list_cycles(hotel_id)
    return list_response(cycles, DiscountCycleResponse)


@router.get("/{cycle_id}", response_model=DiscountCycleResponse)
@limiter.limit("60/minute")
def get_cycle(
    request: Request,
    cycle_id: int,
    db: DbSession,
    current_user: CurrentUser,
):
    """A closed cycle with its per-item breakdown."""
    cycle = CycleSettlementService(get_data_source(db)).get_cycle(cycle_id)
    if cycle is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Discount cycle not found")
    ensure_hotel_access(current_user, cycle.hotel_id)
    return cycle
