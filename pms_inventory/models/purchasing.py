"""
Purchasing Models
Purchase orders, their lines and goods-received documents
"""
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Text,
    ForeignKey, CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import relationship

from pms_inventory.core.database import Base
from pms_inventory.core.precision import utcnow
from pms_inventory.schemas.stock import POStatus, enum_values


class PurchaseOrder(Base):
    """Purchase order header; status follows the PO workflow graph"""
    __tablename__ = "purchase_orders"

    id = Column(Integer, primary_key=True)
    po_number = Column(String(20), nullable=False, unique=True, doc="PO-YYYYMMDD-NNNN")
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False, doc="Receiving warehouse")
    status = Column(String(20), nullable=False, default=POStatus.DRAFT.value, index=True)
    expected_date = Column(DateTime)
    notes = Column(Text)
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    total = Column(Numeric(15, 2), nullable=False, default=0)
    created_by = Column(String(60))
    approved_by = Column(String(60))
    approved_at = Column(DateTime)
    sent_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    supplier = relationship("Supplier", back_populates="purchase_orders")
    warehouse = relationship("Warehouse")
    items = relationship("PurchaseOrderItem", back_populates="purchase_order",
                         cascade="all, delete-orphan", order_by="PurchaseOrderItem.id")
    receipts = relationship("POReceipt", back_populates="purchase_order",
                            order_by="POReceipt.id")

    __table_args__ = (
        CheckConstraint(
            "status IN (" + ", ".join(f"'{v}'" for v in enum_values(POStatus)) + ")",
            name="valid_status"
        ),
    )

    def __repr__(self):
        return f"<PurchaseOrder(id={self.id}, number='{self.po_number}', status='{self.status}')>"


class PurchaseOrderItem(Base):
    """Purchase order line"""
    __tablename__ = "purchase_order_items"

    id = Column(Integer, primary_key=True)
    purchase_order_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=False, index=True)
    stock_item_id = Column(Integer, ForeignKey("stock_items.id"), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False, doc="Ordered quantity")
    unit_cost = Column(Numeric(15, 4), nullable=False)
    received_qty = Column(Numeric(15, 3), nullable=False, default=0)

    purchase_order = relationship("PurchaseOrder", back_populates="items")
    stock_item = relationship("StockItem")

    __table_args__ = (
        UniqueConstraint("purchase_order_id", "stock_item_id", name="uq_purchase_order_items_po_item"),
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("received_qty >= 0 AND received_qty <= quantity", name="received_within_ordered"),
    )


class POReceipt(Base):
    """Goods-received document, one per receiving call"""
    __tablename__ = "po_receipts"

    id = Column(Integer, primary_key=True)
    purchase_order_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=False, index=True)
    received_by = Column(String(60), nullable=False)
    notes = Column(Text)
    received_at = Column(DateTime, default=utcnow, nullable=False)

    purchase_order = relationship("PurchaseOrder", back_populates="receipts")
    items = relationship("POReceiptItem", back_populates="receipt", order_by="POReceiptItem.id")


class POReceiptItem(Base):
    """Quantity received against one PO line on one receipt"""
    __tablename__ = "po_receipt_items"

    id = Column(Integer, primary_key=True)
    receipt_id = Column(Integer, ForeignKey("po_receipts.id"), nullable=False, index=True)
    po_item_id = Column(Integer, ForeignKey("purchase_order_items.id"), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False)
    batch_number = Column(String(60))
    expiration_date = Column(DateTime)

    receipt = relationship("POReceipt", back_populates="items")
    po_item = relationship("PurchaseOrderItem")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
    )
