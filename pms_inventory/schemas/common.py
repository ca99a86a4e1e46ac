"""
Common Schemas
Shared Pydantic models for API responses
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional


class ErrorDetail(BaseModel):
    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class ErrorResponse(BaseModel):
    """
    Standard error response model

    Used for all service errors surfaced by the API
    """
    model_config = ConfigDict(json_schema_extra={
        "example": {
            "detail": {
                "code": "INSUFFICIENT_STOCK",
                "message": "Insufficient stock. Available: 5.000, Requested: 8",
                "details": {"available": "5.000", "requested": "8"}
            }
        }
    })

    detail: ErrorDetail


# OpenAPI documentation for the error statuses every stock route can return
ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error or insufficient stock"},
    404: {"model": ErrorResponse, "description": "Referenced record not found"},
    409: {"model": ErrorResponse, "description": "Invalid state or constraint violation"},
}
