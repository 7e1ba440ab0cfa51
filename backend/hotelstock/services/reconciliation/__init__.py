# Reconciliation engine: data contracts and data sources

from hotelstock.services.reconciliation.contracts import (
    DEFAULT_MOVEMENT_KINDS,
    MAIN_WAREHOUSE,
    MAIN_WAREHOUSE_NAME,
    ZERO,
    CountedItem,
    CountSelection,
    CurrentStockReport,
    CycleBaseline,
    CycleCountEntry,
    CycleStatusLine,
    DataIntegrityWarning,
    Delivery,
    DiscountCycle,
    DiscountCycleItem,
    Location,
    MovementKind,
    ProductSnapshot,
    Purchase,
    ReconciliationReport,
    ReconciliationRow,
    Restock,
    StockCountSnapshot,
    StockLevel,
    Transfer,
)
from hotelstock.services.reconciliation.data_source import (
    SqlStockDataSource,
    StockDataSource,
    get_data_source,
)

__all__ = [
    "DEFAULT_MOVEMENT_KINDS",
    "MAIN_WAREHOUSE",
    "MAIN_WAREHOUSE_NAME",
    "ZERO",
    "CountedItem",
    "CountSelection",
    "CurrentStockReport",
    "CycleBaseline",
    "CycleCountEntry",
    "CycleStatusLine",
    "DataIntegrityWarning",
    "Delivery",
    "DiscountCycle",
    "DiscountCycleItem",
    "Location",
    "MovementKind",
    "ProductSnapshot",
    "Purchase",
    "ReconciliationReport",
    "ReconciliationRow",
    "Restock",
    "StockCountSnapshot",
    "StockLevel",
    "Transfer",
    "SqlStockDataSource",
    "StockDataSource",
    "get_data_source",
]
