"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from hotelstock.core.exceptions import ConcurrentCloseConflict
from hotelstock.core.rbac import UserRole
from hotelstock.core.security import create_access_token
from hotelstock.db.base import Base
from hotelstock.db.session import get_db
from hotelstock.main import app
# Import all models to ensure they're registered with Base.metadata
from hotelstock.models import *
from hotelstock.services.reconciliation import (
    CountedItem,
    CycleBaseline,
    Delivery,
    DiscountCycle,
    Location,
    ProductSnapshot,
    Purchase as PurchaseMovement,
    Restock as RestockMovement,
    StockCountSnapshot,
    StockDataSource,
    Transfer,
)

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

T0 = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)  # a Monday


def _within(moment: datetime, from_: Optional[datetime], to: Optional[datetime]) -> bool:
    return (from_ is None or moment > from_) and (to is None or moment <= to)


class InMemoryStockDataSource(StockDataSource):
    """Data source kept in plain Python structures, safe for concurrent reads."""

    concurrent_reads = True

    def __init__(self):
        self.products: Dict[int, List[ProductSnapshot]] = {}
        self.sectors: Dict[int, List[Location]] = {}
        self.counts: Dict[int, StockCountSnapshot] = {}
        self.purchases: Dict[int, List[PurchaseMovement]] = {}
        self.deliveries: Dict[int, List[Delivery]] = {}
        self.transfers: List[Transfer] = []
        self.restocks: Dict[int, List[RestockMovement]] = {}
        self.cycles: List[DiscountCycle] = []
        self.baselines: Dict[int, CycleBaseline] = {}
        self.fail_next_commit = False
        self._lock = threading.Lock()

    # ---- seeding helpers ----
    def add_product(self, hotel_id: int, product_id: int, name: str, **kwargs) -> ProductSnapshot:
        product = ProductSnapshot(id=product_id, name=name, **kwargs)
        self.products.setdefault(hotel_id, []).append(product)
        return product

    def add_sector(self, hotel_id: int, sector_id: int, name: str) -> Location:
        location = Location(sector_id=sector_id, name=name)
        self.sectors.setdefault(hotel_id, []).append(location)
        return location

    def add_count(
        self,
        count_id: int,
        hotel_id: int,
        finished_at: Optional[datetime],
        quantities: Dict[int, object],
        sector_id: Optional[int] = None,
    ) -> StockCountSnapshot:
        count = StockCountSnapshot(
            id=count_id,
            hotel_id=hotel_id,
            sector_id=sector_id,
            finished_at=finished_at,
            items=tuple(CountedItem(pid, Decimal(str(q))) for pid, q in quantities.items()),
        )
        self.counts[count_id] = count
        return count

    def add_purchase(self, hotel_id: int, product_id: int, quantity, occurred_at: datetime) -> None:
        self.purchases.setdefault(hotel_id, []).append(
            PurchaseMovement(product_id, Decimal(str(quantity)), occurred_at)
        )

    def add_delivery(
        self, hotel_id: int, product_id: int, quantity, sector_id: Optional[int],
        occurred_at: datetime, delivered_product_id: Optional[int] = None,
    ) -> None:
        self.deliveries.setdefault(hotel_id, []).append(
            Delivery(
                requested_product_id=product_id,
                quantity=Decimal(str(quantity)),
                sector_id=sector_id,
                occurred_at=occurred_at,
                delivered_product_id=delivered_product_id,
            )
        )

    def add_restock(
        self, hotel_id: int, product_id: int, quantity, occurred_at: datetime,
        sector_id: Optional[int] = None,
    ) -> None:
        self.restocks.setdefault(hotel_id, []).append(
            RestockMovement(product_id, Decimal(str(quantity)), occurred_at, sector_id=sector_id)
        )

    # ---- data source contract ----
    def get_active_products(self, hotel_id):
        return [p for p in self.products.get(hotel_id, []) if p.active]

    def get_sectors(self, hotel_id):
        return list(self.sectors.get(hotel_id, []))

    def get_stock_count(self, count_id):
        return self.counts.get(count_id)

    def list_finished_counts(self, hotel_id, sector_id=None):
        counts = [
            c for c in self.counts.values()
            if c.hotel_id == hotel_id and c.sector_id == sector_id and c.is_finished
        ]
        return sorted(counts, key=lambda c: (c.finished_at, c.id), reverse=True)

    def get_purchases(self, hotel_id, from_, to):
        return [p for p in self.purchases.get(hotel_id, []) if _within(p.occurred_at, from_, to)]

    def get_fulfilled_deliveries(self, hotel_id, from_, to):
        return [d for d in self.deliveries.get(hotel_id, []) if _within(d.occurred_at, from_, to)]

    def get_transfers(self, hotel_id, from_, to):
        return [
            t for t in self.transfers
            if hotel_id in (t.source_hotel_id, t.destination_hotel_id)
            and _within(t.occurred_at, from_, to)
        ]

    def get_restocks(self, hotel_id, from_, to):
        return [r for r in self.restocks.get(hotel_id, []) if _within(r.occurred_at, from_, to)]

    def get_prior_cycle_baseline(self, hotel_id):
        return self.baselines.get(hotel_id, CycleBaseline(hotel_id=hotel_id))

    def commit_discount_cycle(self, cycle, expected_version):
        with self._lock:
            current = self.baselines.get(cycle.hotel_id)
            version = current.version if current else 0
            if version != expected_version:
                raise ConcurrentCloseConflict(cycle.hotel_id, expected_version)
            if self.fail_next_commit:
                self.fail_next_commit = False
                raise RuntimeError("storage unavailable")

            saved = replace(cycle, id=len(self.cycles) + 1)
            self.cycles.append(saved)
            self.baselines[cycle.hotel_id] = CycleBaseline(
                hotel_id=cycle.hotel_id,
                version=version + 1,
                cycle_id=saved.id,
                closed_at=saved.closed_at,
                quantities={i.product_id: i.final_count for i in saved.items},
            )
            return saved

    def list_discount_cycles(self, hotel_id):
        return sorted(
            (c for c in self.cycles if c.hotel_id == hotel_id),
            key=lambda c: (c.closed_at, c.id),
            reverse=True,
        )

    def get_discount_cycle(self, cycle_id):
        return next((c for c in self.cycles if c.id == cycle_id), None)


class FixedClock:
    """Injectable clock; ``advance`` moves it forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def memory_source() -> InMemoryStockDataSource:
    """Empty in-memory data source."""
    return InMemoryStockDataSource()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiting during tests to avoid flaky failures
    from hotelstock.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    global_limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture
def test_hotel(db_session: Session) -> Hotel:
    """Create a hotel with a kitchen and a housekeeping sector."""
    hotel = Hotel(name="Seaside Hotel", code="SEA")
    hotel.sectors = [Sector(name="Kitchen"), Sector(name="Housekeeping")]
    db_session.add(hotel)
    db_session.commit()
    db_session.refresh(hotel)
    return hotel


@pytest.fixture
def other_hotel(db_session: Session) -> Hotel:
    hotel = Hotel(name="Mountain Lodge", code="MTN")
    db_session.add(hotel)
    db_session.commit()
    db_session.refresh(hotel)
    return hotel


@pytest.fixture
def kitchen(test_hotel: Hotel) -> Sector:
    return next(s for s in test_hotel.sectors if s.name == "Kitchen")


@pytest.fixture
def test_products(db_session: Session, test_hotel: Hotel) -> Dict[str, Product]:
    """Rice (starred), towels and a cycle-tracked knife."""
    products = {
        "rice": Product(
            hotel_id=test_hotel.id, name="Rice 5kg", category="Groceries",
            unit_value=Decimal("12.50"), is_priority=True,
        ),
        "towel": Product(
            hotel_id=test_hotel.id, name="Bath towel", category="Linen",
            unit_value=Decimal("8.00"),
        ),
        "knife": Product(
            hotel_id=test_hotel.id, name="Chef knife", category="Utensils",
            unit_value=Decimal("2.00"), cycle_tracked=True, baseline_quantity=Decimal("20"),
        ),
    }
    db_session.add_all(products.values())
    db_session.commit()
    for product in products.values():
        db_session.refresh(product)
    return products


def _user(db_session: Session, email: str, role: UserRole, hotel_id: Optional[int]) -> User:
    user = User(email=email, name=email.split("@")[0], role=role, hotel_id=hotel_id)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


def _headers(user: User) -> dict:
    token = create_access_token(
        data={
            "sub": str(user.id),
            "email": user.email,
            "role": user.role.value,
            "hotel_id": user.hotel_id,
        }
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def staff_user(db_session: Session, test_hotel: Hotel) -> User:
    return _user(db_session, "staff@example.com", UserRole.STAFF, test_hotel.id)


@pytest.fixture
def manager_user(db_session: Session, test_hotel: Hotel) -> User:
    return _user(db_session, "manager@example.com", UserRole.MANAGER, test_hotel.id)


@pytest.fixture
def staff_headers(staff_user: User) -> dict:
    """Get authentication headers for a staff member of the test hotel."""
    return _headers(staff_user)


@pytest.fixture
def manager_headers(manager_user: User) -> dict:
    """Get authentication headers for a manager of the test hotel."""
    return _headers(manager_user)
