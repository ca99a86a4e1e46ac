"""
Stock Models
SQLAlchemy models for the stock ledger, batches and movement log
"""
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Text, Boolean,
    ForeignKey, CheckConstraint, Index, UniqueConstraint, event
)
from sqlalchemy.orm import relationship

from pms_inventory.core.database import Base
from pms_inventory.core.exceptions import InvalidStateError
from pms_inventory.core.precision import utcnow
from pms_inventory.schemas.stock import MovementType, WasteType, WarehouseType, enum_values


def _in_check(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class StockCategory(Base):
    """Grouping for stock items (Food, Beverage, Linen...)"""
    __tablename__ = "stock_categories"

    id = Column(Integer, primary_key=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    is_system = Column(Boolean, nullable=False, default=False, doc="Seeded category, cannot be removed")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("StockItem", back_populates="category")

    __table_args__ = (
        UniqueConstraint("property_id", "name", name="uq_stock_categories_property_name"),
    )

    def __repr__(self):
        return f"<StockCategory(id={self.id}, name='{self.name}')>"


class StockItem(Base):
    """
    Stock Item - Item Master

    A purchasable / trackable good owned by a property. Items with history
    are deactivated rather than deleted.
    """
    __tablename__ = "stock_items"

    id = Column(Integer, primary_key=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    item_code = Column(String(20), nullable=False, unique=True, doc="Generated code, ITM-0001")
    name = Column(String(150), nullable=False)
    sku = Column(String(50), doc="Optional supplier / internal SKU")
    category_id = Column(Integer, ForeignKey("stock_categories.id"), nullable=False, index=True)
    primary_unit = Column(String(20), nullable=False, default="EA", doc="Primary unit of measure")
    is_consignment = Column(Boolean, nullable=False, default=False, doc="Supplier-owned stock")
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), doc="Owner of consignment stock")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    property = relationship("Property", back_populates="stock_items")
    category = relationship("StockCategory", back_populates="items")
    supplier = relationship("Supplier")
    stock_levels = relationship("StockLevel", back_populates="stock_item")
    batches = relationship("StockBatch", back_populates="stock_item")
    par_levels = relationship("StockParLevel", back_populates="stock_item",
                              cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("property_id", "sku", name="uq_stock_items_property_sku"),
    )

    def __repr__(self):
        return f"<StockItem(id={self.id}, code='{self.item_code}', name='{self.name}')>"


class Warehouse(Base):
    """Physical or logical storage location within a property"""
    __tablename__ = "warehouses"

    id = Column(Integer, primary_key=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False, default=WarehouseType.MAIN_STOCKROOM.value)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    property = relationship("Property", back_populates="warehouses")
    stock_levels = relationship("StockLevel", back_populates="warehouse")

    __table_args__ = (
        UniqueConstraint("property_id", "name", name="uq_warehouses_property_name"),
        CheckConstraint(_in_check("type", enum_values(WarehouseType)), name="valid_type"),
    )

    def __repr__(self):
        return f"<Warehouse(id={self.id}, name='{self.name}', type='{self.type}')>"


class StockLevel(Base):
    """
    Stock Ledger row

    Running quantity and weighted-average unit cost for one
    (item, warehouse) pair. Written only by the stock services.
    """
    __tablename__ = "stock_levels"

    id = Column(Integer, primary_key=True)
    stock_item_id = Column(Integer, ForeignKey("stock_items.id"), nullable=False)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False, index=True)
    quantity = Column(Numeric(15, 3), nullable=False, default=0, doc="Quantity on hand")
    average_cost = Column(Numeric(15, 4), nullable=False, default=0, doc="Weighted-average unit cost")
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    stock_item = relationship("StockItem", back_populates="stock_levels")
    warehouse = relationship("Warehouse", back_populates="stock_levels")

    __table_args__ = (
        UniqueConstraint("stock_item_id", "warehouse_id", name="uq_stock_levels_item_warehouse"),
        CheckConstraint("quantity >= 0", name="non_negative_quantity"),
        CheckConstraint("average_cost >= 0", name="non_negative_cost"),
    )

    def __repr__(self):
        return (f"<StockLevel(item={self.stock_item_id}, warehouse={self.warehouse_id}, "
                f"qty={self.quantity}, avg={self.average_cost})>")


class StockParLevel(Base):
    """Minimum quantity to hold per (item, warehouse); drives low-stock alerts"""
    __tablename__ = "stock_par_levels"

    id = Column(Integer, primary_key=True)
    stock_item_id = Column(Integer, ForeignKey("stock_items.id"), nullable=False)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False, index=True)
    par_level = Column(Numeric(15, 3), nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    stock_item = relationship("StockItem", back_populates="par_levels")
    warehouse = relationship("Warehouse")

    __table_args__ = (
        UniqueConstraint("stock_item_id", "warehouse_id", name="uq_stock_par_levels_item_warehouse"),
        CheckConstraint("par_level >= 0", name="non_negative_par"),
    )


class StockBatch(Base):
    """
    Lot / batch record

    Unit cost is fixed at receipt. Unexpired batch quantities for a pair
    partition the ledger quantity. Batches are never deleted.
    """
    __tablename__ = "stock_batches"

    id = Column(Integer, primary_key=True)
    stock_item_id = Column(Integer, ForeignKey("stock_items.id"), nullable=False)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False, index=True)
    batch_number = Column(String(60), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False, default=0)
    unit_cost = Column(Numeric(15, 4), nullable=False, default=0)
    expiration_date = Column(DateTime, nullable=True, index=True)
    is_expired = Column(Boolean, nullable=False, default=False)
    received_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    stock_item = relationship("StockItem", back_populates="batches")
    warehouse = relationship("Warehouse")

    __table_args__ = (
        UniqueConstraint("stock_item_id", "warehouse_id", "batch_number",
                         name="uq_stock_batches_item_warehouse_batch"),
        CheckConstraint("quantity >= 0", name="non_negative_quantity"),
        CheckConstraint("unit_cost >= 0", name="non_negative_cost"),
        Index("ix_stock_batches_fefo", "stock_item_id", "warehouse_id", "is_expired", "expiration_date"),
    )

    def __repr__(self):
        return f"<StockBatch(id={self.id}, batch='{self.batch_number}', qty={self.quantity})>"


class StockMovement(Base):
    """
    Movement Log row

    Append-only: one row per quantity change per warehouse/batch touched.
    Quantity is always a positive magnitude; direction comes from the type.
    """
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True)
    stock_item_id = Column(Integer, ForeignKey("stock_items.id"), nullable=False, index=True)
    source_warehouse_id = Column(Integer, ForeignKey("warehouses.id"), index=True)
    destination_warehouse_id = Column(Integer, ForeignKey("warehouses.id"), index=True)
    batch_id = Column(Integer, ForeignKey("stock_batches.id"))
    type = Column(String(20), nullable=False, index=True)
    quantity = Column(Numeric(15, 3), nullable=False)
    unit_cost = Column(Numeric(15, 4), nullable=False)
    total_cost = Column(Numeric(15, 2), nullable=False)
    reference_type = Column(String(30))
    reference_id = Column(String(60))
    reason = Column(Text)
    created_by = Column(String(60))
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    stock_item = relationship("StockItem")
    source_warehouse = relationship("Warehouse", foreign_keys=[source_warehouse_id])
    destination_warehouse = relationship("Warehouse", foreign_keys=[destination_warehouse_id])
    batch = relationship("StockBatch")

    __table_args__ = (
        CheckConstraint(_in_check("type", enum_values(MovementType)), name="valid_type"),
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint(
            "source_warehouse_id IS NOT NULL OR destination_warehouse_id IS NOT NULL",
            name="has_warehouse"
        ),
    )

    def __repr__(self):
        return f"<StockMovement(id={self.id}, type='{self.type}', qty={self.quantity})>"


@event.listens_for(StockMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise InvalidStateError("Stock movements are immutable and cannot be updated")


@event.listens_for(StockMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise InvalidStateError("Stock movements are immutable and cannot be deleted")


class WasteRecord(Base):
    """Shrinkage fact, always paired with one WASTE movement"""
    __tablename__ = "waste_records"

    id = Column(Integer, primary_key=True)
    stock_item_id = Column(Integer, ForeignKey("stock_items.id"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False, index=True)
    batch_id = Column(Integer, ForeignKey("stock_batches.id"))
    waste_type = Column(String(20), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False)
    unit_cost = Column(Numeric(15, 4), nullable=False)
    total_cost = Column(Numeric(15, 2), nullable=False)
    reason = Column(Text)
    recorded_by = Column(String(60), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    stock_item = relationship("StockItem")
    warehouse = relationship("Warehouse")
    batch = relationship("StockBatch")

    __table_args__ = (
        CheckConstraint(_in_check("waste_type", enum_values(WasteType)), name="valid_waste_type"),
        CheckConstraint("quantity > 0", name="positive_quantity"),
    )

    def __repr__(self):
        return f"<WasteRecord(id={self.id}, type='{self.waste_type}', qty={self.quantity})>"
