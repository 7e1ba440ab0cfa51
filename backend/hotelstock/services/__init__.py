# Services module

from hotelstock.services.reconciliation_service import (
    ReconciliationService,
    ReconciliationConfig,
)
from hotelstock.services.discount_cycle_service import CycleSettlementService
from hotelstock.services.stock_count_service import StockCountService
from hotelstock.services.reconciliation_report_service import (
    GroupBy,
    ReconciliationReportService,
    RowGroup,
    ReportSummary,
    WeeklyReport,
    apply_sector_outflows,
    filter_priority,
    group_rows,
    summarize,
    week_bounds,
)
