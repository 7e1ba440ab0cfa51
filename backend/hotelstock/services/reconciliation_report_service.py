"""Reporting views over reconciliation rows.

Grouping, filtering and summaries are display-only: they never change the
engine-computed row fields. Manually entered sector consumption is attached
as an overlay (``manual_outflow``) and only the derived ``effective_*``
values reflect it.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union
import logging

from hotelstock.core.config import settings
from hotelstock.core.exceptions import InvalidInterval
from hotelstock.services.reconciliation import (
    ZERO,
    CountSelection,
    Location,
    ReconciliationReport,
    ReconciliationRow,
    StockCountSnapshot,
)
from hotelstock.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


class GroupBy(str, Enum):
    CATEGORY = "category"
    PRIORITY = "priority"
    LOCATION = "location"


@dataclass
class RowGroup:
    key: Union[str, bool, int, None]
    label: str
    rows: List[ReconciliationRow] = field(default_factory=list)

    @property
    def net_delta(self) -> Decimal:
        return sum((r.effective_discrepancy for r in self.rows), ZERO)


@dataclass
class ReportSummary:
    rows: int
    gains: int
    losses: int
    net_delta: Decimal


@dataclass
class WeeklyReport:
    week_start: datetime
    week_end: datetime
    report: ReconciliationReport
    groups: List[RowGroup]


# ============== Row views ==============

def filter_priority(rows: Sequence[ReconciliationRow]) -> List[ReconciliationRow]:
    """Only starred products."""
    return [r for r in rows if r.is_priority]


def _location_label(sector_id: Optional[int], locations: Sequence[Location]) -> str:
    for location in locations:
        if location.sector_id == sector_id:
            return location.name
    return f"Sector {sector_id}"


def group_rows(
    rows: Sequence[ReconciliationRow],
    group_by: GroupBy,
    locations: Sequence[Location] = (),
) -> List[RowGroup]:
    """Group rows for display; each group carries its net delta."""
    group_by = GroupBy(group_by)
    groups: Dict[object, RowGroup] = {}

    for row in rows:
        if group_by == GroupBy.CATEGORY:
            key, label = row.category, row.category
        elif group_by == GroupBy.PRIORITY:
            key, label = row.is_priority, "Priority" if row.is_priority else "Other"
        else:
            key, label = row.sector_id, _location_label(row.sector_id, locations)
        groups.setdefault(key, RowGroup(key=key, label=label)).rows.append(row)

    if group_by == GroupBy.CATEGORY:
        return sorted(groups.values(), key=lambda g: g.label)
    if group_by == GroupBy.PRIORITY:
        return sorted(groups.values(), key=lambda g: not g.key)

    order = {loc.sector_id: index for index, loc in enumerate(locations)}
    return sorted(groups.values(), key=lambda g: order.get(g.key, len(order)))


def apply_sector_outflows(
    rows: Sequence[ReconciliationRow],
    outflows: Mapping[Tuple[int, int], Decimal],
) -> List[ReconciliationRow]:
    """Attach caller-entered sector consumption, keyed by (product_id, sector_id).

    Returns new rows; the engine rows are left untouched. Entries for rows
    that were not emitted are ignored.

    Raises:
        ValueError: for main-warehouse keys or negative quantities
    """
    for (product_id, sector_id), quantity in outflows.items():
        if sector_id is None:
            raise ValueError(f"Manual outflow for product {product_id} must name a sector")
        if quantity < 0:
            raise ValueError(f"Manual outflow for product {product_id} cannot be negative")

    result = []
    for row in rows:
        quantity = outflows.get((row.product_id, row.sector_id))
        result.append(row.with_manual_outflow(quantity) if quantity is not None else row)
    return result


def summarize(rows: Sequence[ReconciliationRow]) -> ReportSummary:
    return ReportSummary(
        rows=len(rows),
        gains=sum(1 for r in rows if r.effective_discrepancy > 0),
        losses=sum(1 for r in rows if r.effective_discrepancy < 0),
        net_delta=sum((r.effective_discrepancy for r in rows), ZERO),
    )


def week_bounds(day: Union[date, datetime], week_start_day: Optional[int] = None) -> Tuple[datetime, datetime]:
    """UTC start of the week containing *day* and the start of the next week."""
    if week_start_day is None:
        week_start_day = settings.week_start_day
    if isinstance(day, datetime):
        day = day.astimezone(timezone.utc).date() if day.tzinfo else day.date()
    start_day = day - timedelta(days=(day.weekday() - week_start_day) % 7)
    start = datetime.combine(start_day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=7)


# ============== Period reports ==============

class ReconciliationReportService:
    """Builds period reports on top of the reconciliation service."""

    def __init__(self, reconciliation: ReconciliationService):
        self.reconciliation = reconciliation
        self.source = reconciliation.source

    def resolve_period_counts(
        self,
        hotel_id: int,
        start: datetime,
        end: datetime,
        sector_id: Optional[int] = None,
    ) -> Tuple[StockCountSnapshot, StockCountSnapshot]:
        """Counts of a location opening and closing the period [*start*, *end*).

        The opening count is the latest finished at or before *start*; the
        closing one the latest finished before *end*, so a count taken exactly
        at *end* opens the next period instead.

        Raises:
            InvalidInterval: when no count bounds the start of the period
        """
        counts = self.source.list_finished_counts(hotel_id, sector_id)
        opening = next((c for c in counts if c.finished_at <= start), None)
        closing = next((c for c in counts if c.finished_at < end), None)
        if opening is None or closing is None:
            raise InvalidInterval(
                f"No finished count of hotel {hotel_id} (sector {sector_id}) "
                f"at or before {start.isoformat()}"
            )
        return opening, closing

    def weekly_report(
        self,
        hotel_id: int,
        day: Union[date, datetime],
        priority_only: bool = False,
        group_by: GroupBy = GroupBy.CATEGORY,
    ) -> WeeklyReport:
        """Reconcile the week containing *day*.

        The main warehouse counts bound the report; every sector with counts
        on both sides of the week uses its own pair.
        """
        week_start, week_end = week_bounds(day)
        opening, closing = self.resolve_period_counts(hotel_id, week_start, week_end)

        selections = []
        for sector in self.source.get_sectors(hotel_id):
            try:
                s_open, s_close = self.resolve_period_counts(
                    hotel_id, week_start, week_end, sector.sector_id
                )
            except InvalidInterval:
                logger.debug("Sector %s has no counts for week %s", sector.sector_id, week_start.date())
                continue
            selections.append(CountSelection(sector.sector_id, s_open.id, s_close.id))

        report = self.reconciliation.reconcile(
            hotel_id, opening.id, closing.id, sector_selections=selections
        )
        rows = filter_priority(report.rows) if priority_only else report.rows
        report.rows = rows

        logger.info(
            "Weekly report for hotel %s, week of %s: %s rows (%s sectors with own counts)",
            hotel_id,
            week_start.date(),
            len(rows),
            len(selections),
        )
        return WeeklyReport(
            week_start=week_start,
            week_end=week_end,
            report=report,
            groups=group_rows(rows, group_by, report.locations),
        )
