"""API routes."""

from fastapi import APIRouter

from hotelstock.api.routes import discount_cycles, reconciliation, stock_counts

api_router = APIRouter()

api_router.include_router(stock_counts.router, prefix="/stock-counts", tags=["stock-counts"])
api_router.include_router(reconciliation.router, prefix="/reconciliation", tags=["reconciliation"])
api_router.include_router(discount_cycles.router, prefix="/discount-cycles", tags=["discount-cycles"])
