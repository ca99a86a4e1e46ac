"""
API Dependencies
Common dependencies for API endpoints
"""

from typing import Any, Generator, Optional, Tuple
from fastapi import Header, HTTPException, Query, status
from fastapi.encoders import jsonable_encoder

from pms_inventory.core.database import SessionLocal
from pms_inventory.core.exceptions import InventoryError
from pms_inventory.core.scope import ScopeFilter

# HTTP status per error code; anything unlisted is a server error
ERROR_STATUS_CODES = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "INSUFFICIENT_STOCK": status.HTTP_400_BAD_REQUEST,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INVALID_STATE": status.HTTP_409_CONFLICT,
    "SEQUENCE_OVERFLOW": status.HTTP_409_CONFLICT,
    "CONSTRAINT_VIOLATION": status.HTTP_409_CONFLICT,
}


def get_db() -> Generator:
    """
    Database dependency - creates a new database session for each request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor_id(
    x_actor_id: Optional[str] = Header(None, description="User performing the operation")
) -> Optional[str]:
    """
    Acting user for movement and audit records.

    Authentication is handled upstream; the caller's identity arrives
    as a plain header.
    """
    return x_actor_id


def get_scope(
    property_id: Optional[int] = Query(None, description="Restrict to one property")
) -> ScopeFilter:
    return ScopeFilter(property_id=property_id)


def get_pagination_params(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000)
) -> dict:
    """
    Common pagination parameters.
    """
    return {"skip": skip, "limit": limit}


def error_status(error: InventoryError) -> int:
    return ERROR_STATUS_CODES.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def unwrap(result: Tuple[bool, Any]) -> Any:
    """Return the payload of a successful service call or raise the mapped HTTP error"""
    success, payload = result
    if not success:
        raise HTTPException(status_code=error_status(payload), detail=jsonable_encoder(payload.to_dict()))
    return payload
