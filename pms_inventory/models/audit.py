"""
Audit Trail Model
"""
from sqlalchemy import Column, String, Integer, DateTime, JSON

from pms_inventory.core.database import Base
from pms_inventory.core.precision import utcnow


class AuditLog(Base):
    """Audit trail for inventory changes"""
    __tablename__ = "audit_log"

    audit_id = Column(Integer, primary_key=True)
    audit_timestamp = Column(DateTime, default=utcnow, index=True)
    audit_user = Column(String(60), nullable=False, index=True)
    audit_action = Column(String(40), nullable=False, index=True)  # RECEIVE_PO, RECORD_WASTE, etc
    audit_table = Column(String(50), index=True)
    audit_key = Column(String(100))
    audit_old_values = Column(JSON)
    audit_new_values = Column(JSON)
    audit_module = Column(String(20))
