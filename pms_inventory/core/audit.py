"""
Audit trail helper
"""
from typing import Dict, Optional
from sqlalchemy.orm import Session

from .precision import utcnow


def _jsonable(values: Optional[Dict]) -> Optional[Dict]:
    if not values:
        return None
    return {k: (v if isinstance(v, (int, float, bool, str)) or v is None else str(v))
            for k, v in values.items()}


def log_inventory_action(
    db: Session,
    actor_id: Optional[str],
    action: str,
    table: Optional[str] = None,
    key: Optional[str] = None,
    old_values: Optional[Dict] = None,
    new_values: Optional[Dict] = None,
    module: str = "INVENTORY"
) -> None:
    """
    Add an audit row to the current transaction.

    Does not commit: the row is written with the change it describes.
    """
    from pms_inventory.models.audit import AuditLog

    audit_entry = AuditLog(
        audit_timestamp=utcnow(),
        audit_user=actor_id or 'SYSTEM',
        audit_action=action,
        audit_table=table,
        audit_key=key,
        audit_old_values=_jsonable(old_values),
        audit_new_values=_jsonable(new_values),
        audit_module=module
    )

    db.add(audit_entry)
