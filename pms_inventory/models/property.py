"""
Property and Supplier Models
Owners of inventory records
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from pms_inventory.core.database import Base
from pms_inventory.core.precision import utcnow


class Property(Base):
    """A hotel / site; every warehouse, item and order belongs to one"""
    __tablename__ = "properties"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    warehouses = relationship("Warehouse", back_populates="property")
    stock_items = relationship("StockItem", back_populates="property")
    suppliers = relationship("Supplier", back_populates="property")

    def __repr__(self):
        return f"<Property(id={self.id}, name='{self.name}')>"


class Supplier(Base):
    """Vendor supplying stock; also the owner of consignment items"""
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(100))
    phone = Column(String(30))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    property = relationship("Property", back_populates="suppliers")
    purchase_orders = relationship("PurchaseOrder", back_populates="supplier")

    __table_args__ = (
        UniqueConstraint("property_id", "name", name="uq_suppliers_property_name"),
    )

    def __repr__(self):
        return f"<Supplier(id={self.id}, name='{self.name}')>"
