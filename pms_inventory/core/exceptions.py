"""
Inventory Exceptions
Error taxonomy shared by the stock services and the API layer
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class InventoryError(Exception):
    """Base exception for inventory operations"""

    code = "INVENTORY_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code,
            'message': self.message,
            'details': self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class ValidationError(InventoryError):
    """Raised when input data fails validation"""

    code = "VALIDATION_ERROR"


class NotFoundError(InventoryError):
    """Raised when a referenced record does not exist"""

    code = "NOT_FOUND"


class InsufficientStockError(InventoryError):
    """Raised when an outflow exceeds the quantity available"""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, message: str, available: Decimal, requested: Decimal,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault('available', str(available))
        details.setdefault('requested', str(requested))
        super().__init__(message, details)
        self.available = available
        self.requested = requested


class InvalidStateError(InventoryError):
    """Raised when an operation is not allowed in the record's current state"""

    code = "INVALID_STATE"


class ConstraintViolationError(InventoryError):
    """Raised when uniqueness or referential rules would be broken"""

    code = "CONSTRAINT_VIOLATION"


class SequenceOverflowError(InvalidStateError):
    """Raised when a document number sequence is exhausted"""

    code = "SEQUENCE_OVERFLOW"
