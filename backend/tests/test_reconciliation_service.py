"""Reconciliation service tests."""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from hotelstock.core.exceptions import InvalidInterval
from hotelstock.services.reconciliation import CountSelection, MovementKind, Transfer
from hotelstock.services.reconciliation_service import ReconciliationConfig, ReconciliationService

HOTEL = 1
KITCHEN = 10
BAR = 11
RICE = 100
BEANS = 101
OIL = 102

START = datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc)
END = START + timedelta(days=7)


def _row(report, product_id, sector_id=None):
    return next(
        r for r in report.rows if r.product_id == product_id and r.sector_id == sector_id
    )


@pytest.fixture
def source(memory_source):
    memory_source.add_product(HOTEL, RICE, "Rice", category="Groceries", is_priority=True)
    memory_source.add_product(HOTEL, BEANS, "Beans", category="Groceries")
    memory_source.add_product(HOTEL, OIL, "Olive oil")
    memory_source.add_sector(HOTEL, KITCHEN, "Kitchen")
    memory_source.add_sector(HOTEL, BAR, "Bar")
    return memory_source


@pytest.fixture
def service(source):
    return ReconciliationService(source)


class TestReconcile:
    """Main warehouse and sector rows between two counts."""

    def test_main_warehouse_scenario(self, source, service):
        """Purchase in, delivery out: 10 + 5 - 7 = 8 expected, 6 counted."""
        source.add_count(1, HOTEL, START, {RICE: 10})
        source.add_count(2, HOTEL, END, {RICE: 6})
        source.add_purchase(HOTEL, RICE, 5, START + timedelta(days=1))
        source.add_delivery(HOTEL, RICE, 7, KITCHEN, START + timedelta(days=2))

        report = service.reconcile(HOTEL, 1, 2)

        row = _row(report, RICE)
        assert row.initial_stock == Decimal("10")
        assert row.inflow == Decimal("5")
        assert row.outflow == Decimal("7")
        assert row.expected_final == Decimal("8")
        assert row.actual_final == Decimal("6")
        assert row.discrepancy == Decimal("-2")
        assert row.outflow_pending is False
        assert row.movements == {"purchases": Decimal("5"), "deliveries": Decimal("7")}
        assert report.warnings == []

    def test_sector_row_receives_delivery_with_pending_outflow(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10})
        source.add_count(2, HOTEL, END, {RICE: 6})
        source.add_delivery(HOTEL, RICE, 7, KITCHEN, START + timedelta(days=2))

        report = service.reconcile(HOTEL, 1, 2)

        row = _row(report, RICE, KITCHEN)
        assert row.initial_stock == 0
        assert row.inflow == Decimal("7")
        assert row.outflow == 0
        assert row.expected_final == Decimal("7")
        assert row.outflow_pending is True

    def test_report_metadata(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 1})
        source.add_count(2, HOTEL, END, {RICE: 1})

        report = service.reconcile(HOTEL, 1, 2)

        assert report.period_start == START
        assert report.period_end == END
        assert [loc.name for loc in report.locations] == ["Main warehouse", "Kitchen", "Bar"]
        assert report.locations[0].is_main

    def test_zero_interval_is_idempotent(self, source, service):
        """Same count as start and end: no movements, no discrepancy."""
        source.add_count(1, HOTEL, START, {RICE: 10, BEANS: 4})
        source.add_purchase(HOTEL, RICE, 5, START)
        source.add_purchase(HOTEL, RICE, 5, START - timedelta(hours=1))

        report = service.reconcile(HOTEL, 1, 1)

        assert len(report.rows) == 2
        for row in report.rows:
            assert row.inflow == 0
            assert row.outflow == 0
            assert row.expected_final == row.initial_stock == row.actual_final
            assert row.discrepancy == 0

    def test_counts_with_same_timestamp_proceed(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10})
        source.add_count(2, HOTEL, START, {RICE: 7})

        row = _row(service.reconcile(HOTEL, 1, 2), RICE)

        assert row.inflow == row.outflow == 0
        assert row.discrepancy == Decimal("-3")

    def test_conservation_across_sectors(self, source, service):
        """Outflow from main equals the inflow of the receiving sectors."""
        source.add_count(1, HOTEL, START, {RICE: 50})
        source.add_count(2, HOTEL, END, {RICE: 30})
        source.add_delivery(HOTEL, RICE, 7, KITCHEN, START + timedelta(hours=1))
        source.add_delivery(HOTEL, RICE, 3, BAR, START + timedelta(hours=2))
        source.add_delivery(HOTEL, RICE, 2, KITCHEN, START + timedelta(hours=3))

        report = service.reconcile(HOTEL, 1, 2)

        sector_inflow = sum(
            r.inflow for r in report.rows if r.product_id == RICE and r.sector_id is not None
        )
        assert _row(report, RICE).outflow == sector_inflow == Decimal("12")

    def test_substitution_keys_by_delivered_product(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10, BEANS: 10})
        source.add_count(2, HOTEL, END, {RICE: 10, BEANS: 6})
        source.add_delivery(
            HOTEL, RICE, 4, KITCHEN, START + timedelta(hours=1), delivered_product_id=BEANS
        )

        report = service.reconcile(HOTEL, 1, 2)

        assert _row(report, RICE).outflow == 0
        assert _row(report, BEANS).outflow == Decimal("4")
        assert _row(report, BEANS, KITCHEN).inflow == Decimal("4")
        assert not any(r.product_id == RICE and r.sector_id == KITCHEN for r in report.rows)

    def test_absence_is_zero(self, source, service):
        """A product missing from the end count was counted as zero."""
        source.add_count(1, HOTEL, START, {RICE: 10, BEANS: 3})
        source.add_count(2, HOTEL, END, {RICE: 10})

        row = _row(service.reconcile(HOTEL, 1, 2), BEANS)

        assert row.initial_stock == Decimal("3")
        assert row.actual_final == 0
        assert row.discrepancy == Decimal("-3")

    def test_rows_without_activity_are_omitted(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10})
        source.add_count(2, HOTEL, END, {RICE: 10})

        report = service.reconcile(HOTEL, 1, 2)

        assert [(r.product_id, r.sector_id) for r in report.rows] == [(RICE, None)]

    def test_interval_excludes_start_and_includes_end(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10})
        source.add_count(2, HOTEL, END, {RICE: 12})
        source.add_purchase(HOTEL, RICE, 100, START)
        source.add_purchase(HOTEL, RICE, 2, END)
        source.add_purchase(HOTEL, RICE, 100, END + timedelta(seconds=1))

        row = _row(service.reconcile(HOTEL, 1, 2), RICE)

        assert row.inflow == Decimal("2")
        assert row.discrepancy == 0

    def test_transfers_in_and_out(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10, OIL: 0})
        source.add_count(2, HOTEL, END, {RICE: 6, OIL: 5})
        source.transfers.append(Transfer(
            product_id=RICE, quantity=Decimal("4"), source_hotel_id=HOTEL,
            destination_hotel_id=2, occurred_at=START + timedelta(hours=1),
        ))
        source.transfers.append(Transfer(
            product_id=900, destination_product_id=OIL, quantity=Decimal("5"),
            source_hotel_id=2, destination_hotel_id=HOTEL, occurred_at=START + timedelta(hours=2),
        ))
        source.transfers.append(Transfer(
            product_id=RICE, quantity=Decimal("99"), source_hotel_id=2,
            destination_hotel_id=3, occurred_at=START + timedelta(hours=3),
        ))

        report = service.reconcile(HOTEL, 1, 2)

        rice = _row(report, RICE)
        assert rice.outflow == Decimal("4")
        assert rice.discrepancy == 0
        oil = _row(report, OIL)
        assert oil.inflow == Decimal("5")
        assert oil.movements == {"transfers_in": Decimal("5")}

    def test_rows_sorted_by_location_then_category(self, source, service):
        source.add_count(1, HOTEL, START, {OIL: 1, BEANS: 1, RICE: 1})
        source.add_count(2, HOTEL, END, {OIL: 1, BEANS: 1, RICE: 1})
        source.add_delivery(HOTEL, RICE, 1, BAR, START + timedelta(hours=1))
        source.add_delivery(HOTEL, BEANS, 1, KITCHEN, START + timedelta(hours=1))

        report = service.reconcile(HOTEL, 1, 2)

        assert [(r.sector_id, r.product_id) for r in report.rows] == [
            (None, BEANS), (None, RICE), (None, OIL), (KITCHEN, BEANS), (BAR, RICE),
        ]
        assert _row(report, OIL).category == "Uncategorized"


class TestDataIntegrityWarnings:
    """Non-fatal problems are returned alongside the result."""

    def test_counted_product_missing_from_catalog(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10, 999: 4})
        source.add_count(2, HOTEL, END, {RICE: 10})

        report = service.reconcile(HOTEL, 1, 2)

        assert not any(r.product_id == 999 for r in report.rows)
        assert len(report.warnings) == 1
        warning = report.warnings[0]
        assert warning.product_id == 999
        assert warning.source == "count"

    def test_inactive_product_in_movement(self, source, service):
        source.add_product(HOTEL, 555, "Retired item", active=False)
        source.add_count(1, HOTEL, START, {RICE: 1})
        source.add_count(2, HOTEL, END, {RICE: 1})
        source.add_purchase(HOTEL, 555, 3, START + timedelta(hours=1))

        report = service.reconcile(HOTEL, 1, 2)

        assert [(w.product_id, w.source) for w in report.warnings] == [(555, "movement")]

    def test_delivery_to_unknown_sector(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10})
        source.add_count(2, HOTEL, END, {RICE: 7})
        source.add_delivery(HOTEL, RICE, 3, 77, START + timedelta(hours=1))

        report = service.reconcile(HOTEL, 1, 2)

        assert _row(report, RICE).outflow == Decimal("3")
        assert [(w.source, w.sector_id) for w in report.warnings] == [("delivery", 77)]


class TestInvalidInterval:
    """Fatal interval problems."""

    def test_missing_count(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 1})
        with pytest.raises(InvalidInterval, match="not found"):
            service.reconcile(HOTEL, 1, 42)

    def test_count_of_another_hotel(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 1})
        source.add_count(2, 2, END, {RICE: 1})
        with pytest.raises(InvalidInterval, match="does not belong"):
            service.reconcile(HOTEL, 1, 2)

    def test_misordered_counts(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 1})
        source.add_count(2, HOTEL, END, {RICE: 1})
        with pytest.raises(InvalidInterval, match="finished after"):
            service.reconcile(HOTEL, 2, 1)

    def test_unfinished_count(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 1})
        source.add_count(2, HOTEL, None, {RICE: 1})
        with pytest.raises(InvalidInterval, match="not finished"):
            service.reconcile(HOTEL, 1, 2)

    def test_counts_of_different_locations(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 1})
        source.add_count(2, HOTEL, END, {RICE: 1}, sector_id=KITCHEN)
        with pytest.raises(InvalidInterval, match="different locations"):
            service.reconcile(HOTEL, 1, 2)


class TestSectorSelections:
    """Per-sector count pairs."""

    def test_sector_uses_its_own_counts_and_interval(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10})
        source.add_count(2, HOTEL, END, {RICE: 3})
        sector_start = START + timedelta(days=2)
        source.add_count(3, HOTEL, sector_start, {RICE: 1}, sector_id=KITCHEN)
        source.add_count(4, HOTEL, END, {RICE: 2}, sector_id=KITCHEN)
        source.add_delivery(HOTEL, RICE, 4, KITCHEN, START + timedelta(days=1))
        source.add_delivery(HOTEL, RICE, 3, KITCHEN, START + timedelta(days=3))

        report = service.reconcile(
            HOTEL, 1, 2, sector_selections=[CountSelection(KITCHEN, 3, 4)]
        )

        main = _row(report, RICE)
        assert main.outflow == Decimal("7")
        assert main.discrepancy == 0
        kitchen = _row(report, RICE, KITCHEN)
        assert kitchen.initial_stock == Decimal("1")
        assert kitchen.inflow == Decimal("3")
        assert kitchen.actual_final == Decimal("2")
        assert kitchen.expected_final == Decimal("4")

    def test_selection_must_match_count_scope(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 1})
        source.add_count(2, HOTEL, END, {RICE: 1})
        source.add_count(3, HOTEL, START, {RICE: 1}, sector_id=BAR)
        source.add_count(4, HOTEL, END, {RICE: 1}, sector_id=BAR)
        with pytest.raises(InvalidInterval):
            service.reconcile(HOTEL, 1, 2, sector_selections=[CountSelection(KITCHEN, 3, 4)])

    def test_duplicate_selection(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 1})
        source.add_count(2, HOTEL, END, {RICE: 1})
        source.add_count(3, HOTEL, START, {RICE: 1}, sector_id=BAR)
        source.add_count(4, HOTEL, END, {RICE: 1}, sector_id=BAR)
        with pytest.raises(InvalidInterval, match="more than once"):
            service.reconcile(
                HOTEL, 1, 2,
                sector_selections=[CountSelection(BAR, 3, 4), CountSelection(BAR, 3, 4)],
            )


class TestMovementKinds:
    """Choosing which movement kinds apply."""

    def test_restocks_only(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10})
        source.add_count(2, HOTEL, END, {RICE: 12})
        source.add_purchase(HOTEL, RICE, 5, START + timedelta(hours=1))
        source.add_restock(HOTEL, RICE, 2, START + timedelta(hours=1))
        source.add_restock(HOTEL, RICE, 6, START + timedelta(hours=1), sector_id=KITCHEN)

        report = service.reconcile(HOTEL, 1, 2, movement_kinds=[MovementKind.RESTOCK])

        main = _row(report, RICE)
        assert main.inflow == Decimal("2")
        assert main.discrepancy == 0
        assert _row(report, RICE, KITCHEN).inflow == Decimal("6")

    def test_configured_kinds_are_the_default(self, source):
        source.add_count(1, HOTEL, START, {RICE: 10})
        source.add_count(2, HOTEL, END, {RICE: 10})
        source.add_purchase(HOTEL, RICE, 5, START + timedelta(hours=1))
        service = ReconciliationService(
            source, ReconciliationConfig(movement_kinds=[MovementKind.DELIVERY])
        )

        assert _row(service.reconcile(HOTEL, 1, 2), RICE).inflow == 0


class TestConcurrentReads:
    """Bulk reads fan out only when the source allows it."""

    def test_reads_run_on_worker_threads(self, source):
        seen = []
        original = source.get_purchases

        def get_purchases(*args):
            seen.append(threading.current_thread())
            return original(*args)

        source.get_purchases = get_purchases
        source.add_count(1, HOTEL, START, {RICE: 1})
        source.add_count(2, HOTEL, END, {RICE: 1})

        ReconciliationService(source, ReconciliationConfig(max_workers=4)).reconcile(HOTEL, 1, 2)

        assert seen and seen[0] is not threading.main_thread()

    def test_serial_sources_read_on_caller_thread(self, source):
        seen = []
        original = source.get_purchases

        def get_purchases(*args):
            seen.append(threading.current_thread())
            return original(*args)

        source.get_purchases = get_purchases
        source.concurrent_reads = False
        source.add_count(1, HOTEL, START, {RICE: 1})
        source.add_count(2, HOTEL, END, {RICE: 1})

        ReconciliationService(source, ReconciliationConfig(max_workers=4)).reconcile(HOTEL, 1, 2)

        assert seen == [threading.current_thread()]


class TestCurrentStock:
    """Derived stock: latest count plus movements since."""

    def test_main_warehouse_level(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10, BEANS: 2})
        source.add_count(2, HOTEL, END, {RICE: 6})
        source.add_purchase(HOTEL, RICE, 100, START + timedelta(days=1))
        source.add_purchase(HOTEL, RICE, 5, END + timedelta(days=1))
        source.add_delivery(HOTEL, RICE, 3, KITCHEN, END + timedelta(days=2))

        levels = {
            level.product_id: level
            for level in service.current_stock(HOTEL, as_of=END + timedelta(days=3)).levels
        }

        assert levels[RICE].quantity == Decimal("8")
        assert levels[RICE].last_count_id == 2
        assert levels[BEANS].quantity == 0
        assert levels[OIL].quantity == 0

    def test_as_of_before_latest_count(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 10})
        source.add_count(2, HOTEL, END, {RICE: 6})
        source.add_purchase(HOTEL, RICE, 5, START + timedelta(days=1))

        levels = service.current_stock(HOTEL, as_of=START + timedelta(days=2)).levels

        rice = next(level for level in levels if level.product_id == RICE)
        assert rice.quantity == Decimal("15")
        assert rice.last_count_id == 1

    def test_sector_level_includes_deliveries(self, source, service):
        source.add_count(5, HOTEL, START, {RICE: 2}, sector_id=KITCHEN)
        source.add_delivery(HOTEL, RICE, 4, KITCHEN, START + timedelta(hours=1))
        source.add_delivery(HOTEL, RICE, 9, BAR, START + timedelta(hours=1))

        levels = service.current_stock(HOTEL, sector_id=KITCHEN, as_of=END).levels

        rice = next(level for level in levels if level.product_id == RICE)
        assert rice.quantity == Decimal("6")
        assert rice.sector_id == KITCHEN

    def test_products_outside_catalog_are_reported(self, source, service):
        source.add_count(1, HOTEL, START, {RICE: 4, 900: 2})
        source.add_purchase(HOTEL, 901, 3, START + timedelta(days=1))
        source.add_delivery(HOTEL, RICE, 1, 77, START + timedelta(days=2))

        report = service.current_stock(HOTEL, as_of=END)

        assert report.sector_id is None
        assert report.as_of == END
        assert {level.product_id for level in report.levels} == {RICE, BEANS, OIL}
        rice = next(level for level in report.levels if level.product_id == RICE)
        assert rice.quantity == Decimal("3")
        assert {(w.product_id, w.source) for w in report.warnings} == {
            (900, "count"), (901, "movement"), (RICE, "delivery"),
        }

    def test_unknown_sector(self, source, service):
        with pytest.raises(InvalidInterval):
            service.current_stock(HOTEL, sector_id=999)
