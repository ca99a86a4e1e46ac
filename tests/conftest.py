"""
Test Configuration and Fixtures
Shared testing infrastructure for the inventory core
"""

import pytest
from datetime import timedelta
from decimal import Decimal
from typing import Generator, Optional
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from pms_inventory.main import app
from pms_inventory.api import deps
from pms_inventory.core.database import Base
from pms_inventory.core.precision import utcnow
from pms_inventory.models import (
    Property, Supplier, Warehouse, StockCategory, StockItem, StockLevel, StockBatch
)
from pms_inventory.schemas.stock import MovementType
from pms_inventory.services.stock import LotTrackingService, StockLedgerService
from pms_inventory.services.stock.movement_log import record_movement

# In-memory SQLite shared across connections
TEST_DATABASE_URL = "sqlite://"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh database session for each test"""
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database dependency override"""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[deps.get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def hotel(db_session: Session) -> Property:
    prop = Property(name="Grand Hotel")
    db_session.add(prop)
    db_session.commit()
    return prop


@pytest.fixture
def other_hotel(db_session: Session) -> Property:
    prop = Property(name="Seaside Resort")
    db_session.add(prop)
    db_session.commit()
    return prop


@pytest.fixture
def main_store(db_session: Session, hotel: Property) -> Warehouse:
    warehouse = Warehouse(property_id=hotel.id, name="Main Stockroom", type="MAIN_STOCKROOM")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture
def kitchen(db_session: Session, hotel: Property) -> Warehouse:
    warehouse = Warehouse(property_id=hotel.id, name="Kitchen", type="KITCHEN")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture
def resort_store(db_session: Session, other_hotel: Property) -> Warehouse:
    warehouse = Warehouse(property_id=other_hotel.id, name="Resort Stockroom", type="MAIN_STOCKROOM")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture
def food_category(db_session: Session, hotel: Property) -> StockCategory:
    category = StockCategory(property_id=hotel.id, name="Food")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture
def supplier(db_session: Session, hotel: Property) -> Supplier:
    supplier = Supplier(property_id=hotel.id, name="Fresh Farms", email="orders@freshfarms.test")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture
def milk(db_session: Session, hotel: Property, food_category: StockCategory) -> StockItem:
    item = StockItem(
        property_id=hotel.id, item_code="ITM-0001", name="Whole Milk",
        category_id=food_category.id, primary_unit="L"
    )
    db_session.add(item)
    db_session.commit()
    return item


@pytest.fixture
def flour(db_session: Session, hotel: Property, food_category: StockCategory) -> StockItem:
    item = StockItem(
        property_id=hotel.id, item_code="ITM-0002", name="Flour",
        category_id=food_category.id, primary_unit="KG"
    )
    db_session.add(item)
    db_session.commit()
    return item


class InventoryTestHelper:
    """Booking and inspection helpers for inventory tests"""

    def __init__(self, db: Session):
        self.db = db

    def receive_batch(self, item: StockItem, warehouse: Warehouse, batch_number: str,
                      quantity, unit_cost, expires_in_days: Optional[float] = None,
                      received_days_ago: Optional[float] = None) -> StockBatch:
        """Receive a batch and return it"""
        now = utcnow()
        data = {
            'stock_item_id': item.id,
            'warehouse_id': warehouse.id,
            'batch_number': batch_number,
            'quantity': Decimal(str(quantity)),
            'unit_cost': Decimal(str(unit_cost)),
        }
        if expires_in_days is not None:
            data['expiration_date'] = now + timedelta(days=expires_in_days)
        if received_days_ago is not None:
            data['received_at'] = now - timedelta(days=received_days_ago)

        success, result = LotTrackingService(self.db, "tester").create_batch(data)
        assert success, result
        return self.db.get(StockBatch, result['id'])

    def receive_ledger_only(self, item: StockItem, warehouse: Warehouse, quantity, unit_cost) -> StockLevel:
        """Book an inflow straight to the ledger, as a line without batch data would"""
        ledger = StockLedgerService(self.db, "tester")
        level = ledger.increase_on_receipt(
            item.id, warehouse.id, Decimal(str(quantity)), Decimal(str(unit_cost))
        )
        record_movement(
            self.db, item.id, MovementType.RECEIPT, Decimal(str(quantity)), Decimal(str(unit_cost)),
            "tester", destination_warehouse_id=warehouse.id
        )
        self.db.commit()
        return level

    def level(self, item: StockItem, warehouse: Warehouse) -> Optional[StockLevel]:
        self.db.expire_all()
        return self.db.query(StockLevel).filter(
            StockLevel.stock_item_id == item.id,
            StockLevel.warehouse_id == warehouse.id
        ).first()

    def batch_total(self, item: StockItem, warehouse: Warehouse) -> Decimal:
        """Sum of unexpired batch quantities for the pair"""
        self.db.expire_all()
        now = utcnow()
        batches = self.db.query(StockBatch).filter(
            StockBatch.stock_item_id == item.id,
            StockBatch.warehouse_id == warehouse.id,
        ).all()
        return sum(
            (Decimal(b.quantity) for b in batches
             if not b.is_expired and (b.expiration_date is None or b.expiration_date >= now)),
            Decimal("0")
        )

    def assert_partition(self, item: StockItem, warehouse: Warehouse):
        """Unexpired batch quantities add up to the ledger quantity"""
        level = self.level(item, warehouse)
        ledger_qty = Decimal(level.quantity) if level else Decimal("0")
        assert self.batch_total(item, warehouse) == ledger_qty


@pytest.fixture
def stock(db_session: Session) -> InventoryTestHelper:
    return InventoryTestHelper(db_session)
