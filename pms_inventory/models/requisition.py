"""
Requisition Models
Internal stock requests from one warehouse to another of the same property
"""
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Text,
    ForeignKey, CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import relationship

from pms_inventory.core.database import Base
from pms_inventory.core.precision import utcnow
from pms_inventory.schemas.stock import RequisitionStatus, enum_values


class Requisition(Base):
    """Request header; fulfilment moves stock from source to requesting warehouse"""
    __tablename__ = "requisitions"

    id = Column(Integer, primary_key=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    requesting_warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False, index=True)
    source_warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=RequisitionStatus.PENDING.value, index=True)
    notes = Column(Text)
    rejection_reason = Column(Text)
    requested_by = Column(String(60))
    approved_by = Column(String(60))
    approved_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    requesting_warehouse = relationship("Warehouse", foreign_keys=[requesting_warehouse_id])
    source_warehouse = relationship("Warehouse", foreign_keys=[source_warehouse_id])
    items = relationship("RequisitionItem", back_populates="requisition",
                         cascade="all, delete-orphan", order_by="RequisitionItem.id")

    __table_args__ = (
        CheckConstraint(
            "status IN (" + ", ".join(f"'{v}'" for v in enum_values(RequisitionStatus)) + ")",
            name="valid_status"
        ),
        CheckConstraint("requesting_warehouse_id <> source_warehouse_id", name="distinct_warehouses"),
    )

    def __repr__(self):
        return f"<Requisition(id={self.id}, status='{self.status}')>"


class RequisitionItem(Base):
    __tablename__ = "requisition_items"

    id = Column(Integer, primary_key=True)
    requisition_id = Column(Integer, ForeignKey("requisitions.id"), nullable=False, index=True)
    stock_item_id = Column(Integer, ForeignKey("stock_items.id"), nullable=False)
    requested_quantity = Column(Numeric(15, 3), nullable=False)
    fulfilled_quantity = Column(Numeric(15, 3), nullable=False, default=0)

    requisition = relationship("Requisition", back_populates="items")
    stock_item = relationship("StockItem")

    __table_args__ = (
        UniqueConstraint("requisition_id", "stock_item_id", name="uq_requisition_items_requisition_item"),
        CheckConstraint("requested_quantity > 0", name="positive_quantity"),
        CheckConstraint("fulfilled_quantity >= 0 AND fulfilled_quantity <= requested_quantity",
                        name="fulfilled_within_requested"),
    )
