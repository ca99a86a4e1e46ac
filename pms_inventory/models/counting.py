"""
Cycle Count Models
Physical count sessions and their count sheet lines
"""
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Text, Boolean,
    ForeignKey, CheckConstraint
)
from sqlalchemy.orm import relationship

from pms_inventory.core.database import Base
from pms_inventory.core.precision import utcnow
from pms_inventory.schemas.stock import CycleCountStatus, CycleCountType, enum_values


def _in_check(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class CycleCount(Base):
    """Count session for one warehouse; summary columns are refreshed on variance runs"""
    __tablename__ = "cycle_counts"

    id = Column(Integer, primary_key=True)
    count_number = Column(String(20), nullable=False, unique=True, doc="CC-YYYY-NNNN")
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=CycleCountStatus.DRAFT.value, index=True)
    blind_count = Column(Boolean, nullable=False, default=False, doc="Hide system quantities while counting")
    sample_percent = Column(Integer, doc="Share of items sampled by a RANDOM count")
    scheduled_at = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime, index=True)
    notes = Column(Text)
    created_by = Column(String(60))
    approved_by = Column(String(60))

    total_items = Column(Integer, nullable=False, default=0)
    items_counted = Column(Integer, nullable=False, default=0)
    items_with_variance = Column(Integer, nullable=False, default=0)
    total_variance_cost = Column(Numeric(15, 2), nullable=False, default=0, doc="Sum of absolute line costs")
    accuracy_percent = Column(Numeric(5, 2))

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    warehouse = relationship("Warehouse")
    items = relationship("CycleCountItem", back_populates="cycle_count",
                         cascade="all, delete-orphan", order_by="CycleCountItem.id")

    __table_args__ = (
        CheckConstraint(_in_check("type", enum_values(CycleCountType)), name="valid_type"),
        CheckConstraint(_in_check("status", enum_values(CycleCountStatus)), name="valid_status"),
        CheckConstraint("sample_percent IS NULL OR (sample_percent > 0 AND sample_percent <= 100)",
                        name="valid_sample_percent"),
    )

    def __repr__(self):
        return f"<CycleCount(id={self.id}, number='{self.count_number}', status='{self.status}')>"


class CycleCountItem(Base):
    """
    Count sheet line

    One line per batch holding stock, plus one batch-less line for the
    item's unbatched remainder. Variance is counted minus system quantity.
    """
    __tablename__ = "cycle_count_items"

    id = Column(Integer, primary_key=True)
    cycle_count_id = Column(Integer, ForeignKey("cycle_counts.id"), nullable=False, index=True)
    stock_item_id = Column(Integer, ForeignKey("stock_items.id"), nullable=False)
    batch_id = Column(Integer, ForeignKey("stock_batches.id"))
    system_quantity = Column(Numeric(15, 3), nullable=False, default=0)
    unit_cost = Column(Numeric(15, 4), nullable=False, default=0)
    counted_quantity = Column(Numeric(15, 3))
    variance = Column(Numeric(15, 3))
    variance_percent = Column(Numeric(9, 2))
    variance_cost = Column(Numeric(15, 2))
    counted_by = Column(String(60))
    counted_at = Column(DateTime)
    notes = Column(Text)
    adjustment_made = Column(Boolean, nullable=False, default=False)
    adjustment_movement_id = Column(Integer, ForeignKey("stock_movements.id"))

    cycle_count = relationship("CycleCount", back_populates="items")
    stock_item = relationship("StockItem")
    batch = relationship("StockBatch")

    __table_args__ = (
        CheckConstraint("system_quantity >= 0", name="non_negative_system_quantity"),
        CheckConstraint("counted_quantity IS NULL OR counted_quantity >= 0", name="non_negative_count"),
    )
