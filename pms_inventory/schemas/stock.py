"""Stock Control Schemas"""

from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
from enum import Enum


# Enums
class MovementType(str, Enum):
    RECEIPT = "RECEIPT"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    CONSUMPTION = "CONSUMPTION"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN = "RETURN"
    WASTE = "WASTE"


class WasteType(str, Enum):
    SPOILAGE = "SPOILAGE"
    EXPIRED = "EXPIRED"
    DAMAGED = "DAMAGED"
    OVERPRODUCTION = "OVERPRODUCTION"
    PREPARATION_WASTE = "PREPARATION_WASTE"


class WarehouseType(str, Enum):
    MAIN_STOCKROOM = "MAIN_STOCKROOM"
    KITCHEN = "KITCHEN"
    HOUSEKEEPING = "HOUSEKEEPING"
    BAR = "BAR"
    MINIBAR = "MINIBAR"


class POStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    SENT = "SENT"
    PARTIALLY_RECEIVED = "PARTIALLY_RECEIVED"
    RECEIVED = "RECEIVED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class ReferenceType(str, Enum):
    PURCHASE_ORDER = "PURCHASE_ORDER"
    WASTE_RECORD = "WASTE_RECORD"
    CONSIGNMENT_RETURN = "CONSIGNMENT_RETURN"
    STOCK_BATCH = "STOCK_BATCH"
    TRANSFER = "TRANSFER"
    CYCLE_COUNT = "CYCLE_COUNT"
    REQUISITION = "REQUISITION"


class CycleCountType(str, Enum):
    FULL = "FULL"
    ABC_CLASS_A = "ABC_CLASS_A"
    ABC_CLASS_B = "ABC_CLASS_B"
    ABC_CLASS_C = "ABC_CLASS_C"
    RANDOM = "RANDOM"
    SPOT = "SPOT"


class CycleCountStatus(str, Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_REVIEW = "PENDING_REVIEW"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class RequisitionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PARTIALLY_FULFILLED = "PARTIALLY_FULFILLED"
    FULFILLED = "FULFILLED"
    REJECTED = "REJECTED"


def enum_values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


# Master data
class StockItemCreate(BaseModel):
    property_id: int
    name: str = Field(..., min_length=1, max_length=150)
    category_id: int
    sku: Optional[str] = Field(None, max_length=50)
    primary_unit: str = Field("EA", max_length=20)
    is_consignment: bool = False
    supplier_id: Optional[int] = None


class StockItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    category_id: Optional[int] = None
    sku: Optional[str] = Field(None, max_length=50)
    primary_unit: Optional[str] = Field(None, max_length=20)
    is_consignment: Optional[bool] = None
    supplier_id: Optional[int] = None


class StockItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    property_id: int
    item_code: str
    name: str
    sku: Optional[str] = None
    category_id: int
    primary_unit: str
    is_consignment: bool
    supplier_id: Optional[int] = None
    is_active: bool


class CategoryCreate(BaseModel):
    property_id: int
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    is_system: bool = False


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None


class WarehouseCreate(BaseModel):
    property_id: int
    name: str = Field(..., min_length=1, max_length=100)
    type: WarehouseType = WarehouseType.MAIN_STOCKROOM


class WarehouseUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    type: Optional[WarehouseType] = None


class WarehouseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    property_id: int
    name: str
    type: WarehouseType
    is_active: bool


class ParLevelSet(BaseModel):
    stock_item_id: int
    warehouse_id: int
    par_level: Decimal = Field(..., ge=0)


# Batches
class BatchCreate(BaseModel):
    stock_item_id: int
    warehouse_id: int
    batch_number: str = Field(..., min_length=1, max_length=60)
    quantity: Decimal = Field(..., gt=0)
    unit_cost: Decimal = Field(..., ge=0)
    expiration_date: Optional[datetime] = None
    received_at: Optional[datetime] = None
    reason: Optional[str] = None


class BatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    stock_item_id: int
    warehouse_id: int
    batch_number: str
    quantity: Decimal
    unit_cost: Decimal
    expiration_date: Optional[datetime] = None
    is_expired: bool
    received_at: datetime


class BatchQuantityUpdate(BaseModel):
    new_quantity: Decimal = Field(..., ge=0)
    reason: str = Field(..., min_length=1)


class BatchExpirationUpdate(BaseModel):
    expiration_date: Optional[datetime] = None


# Movements
class ConsumeRequest(BaseModel):
    stock_item_id: int
    warehouse_id: int
    quantity: Decimal = Field(..., gt=0)
    batch_id: Optional[int] = None
    reference_type: Optional[str] = Field(None, max_length=30)
    reference_id: Optional[str] = Field(None, max_length=60)
    reason: Optional[str] = None


class BatchConsumeRequest(BaseModel):
    quantity: Decimal = Field(..., gt=0)
    reference_type: Optional[str] = Field(None, max_length=30)
    reference_id: Optional[str] = Field(None, max_length=60)
    reason: Optional[str] = None


class AdjustRequest(BaseModel):
    stock_item_id: int
    warehouse_id: int
    new_quantity: Decimal = Field(..., ge=0)
    reason: str = Field(..., min_length=1)

    @field_validator('reason')
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Reason is required for stock adjustments')
        return v.strip()


class ReturnRequest(BaseModel):
    stock_item_id: int
    warehouse_id: int
    quantity: Decimal = Field(..., gt=0)
    supplier_id: Optional[int] = None
    batch_id: Optional[int] = None
    reason: Optional[str] = None


class TransferRequest(BaseModel):
    stock_item_id: int
    source_warehouse_id: int
    destination_warehouse_id: int
    quantity: Decimal = Field(..., gt=0)
    batch_id: Optional[int] = None
    reason: Optional[str] = None


class MovementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    stock_item_id: int
    source_warehouse_id: Optional[int] = None
    destination_warehouse_id: Optional[int] = None
    batch_id: Optional[int] = None
    type: MovementType
    quantity: Decimal
    unit_cost: Decimal
    total_cost: Decimal
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime


# Waste
class WasteCreate(BaseModel):
    stock_item_id: int
    warehouse_id: int
    waste_type: WasteType
    quantity: Decimal = Field(..., gt=0)
    batch_id: Optional[int] = None
    reason: Optional[str] = None


class WriteOffRequest(BaseModel):
    reason: Optional[str] = None


# Purchase orders
class POItemCreate(BaseModel):
    stock_item_id: int
    quantity: Decimal = Field(..., gt=0)
    unit_cost: Decimal = Field(..., ge=0)


class POItemUpdate(BaseModel):
    quantity: Optional[Decimal] = Field(None, gt=0)
    unit_cost: Optional[Decimal] = Field(None, ge=0)


class POCreate(BaseModel):
    supplier_id: int
    warehouse_id: int
    expected_date: Optional[datetime] = None
    notes: Optional[str] = None
    items: List[POItemCreate] = Field(default_factory=list)


class POUpdate(BaseModel):
    supplier_id: Optional[int] = None
    warehouse_id: Optional[int] = None
    expected_date: Optional[datetime] = None
    notes: Optional[str] = None


class POReceiveLine(BaseModel):
    po_item_id: int
    quantity: Decimal = Field(..., gt=0)
    batch_number: Optional[str] = Field(None, max_length=60)
    expiration_date: Optional[datetime] = None


class POReceiveRequest(BaseModel):
    items: List[POReceiveLine] = Field(..., min_length=1)
    notes: Optional[str] = None


class POReasonRequest(BaseModel):
    reason: Optional[str] = None


# Cycle counts
class CycleCountCreate(BaseModel):
    warehouse_id: int
    type: CycleCountType
    blind_count: bool = False
    sample_percent: Optional[int] = Field(None, gt=0, le=100)
    scheduled_at: Optional[datetime] = None
    notes: Optional[str] = None


class CountPopulateRequest(BaseModel):
    item_ids: Optional[List[int]] = None
    sample_percent: Optional[int] = Field(None, gt=0, le=100)
    include_batches: bool = True


class CountRecord(BaseModel):
    counted_quantity: Decimal = Field(..., ge=0)
    notes: Optional[str] = None


class BulkCountLine(CountRecord):
    cycle_count_item_id: int


class BulkCountRequest(BaseModel):
    counts: List[BulkCountLine] = Field(..., min_length=1)


class CountRejectRequest(BaseModel):
    reason: Optional[str] = None
    clear_counts: bool = False


# Requisitions
class RequisitionItemCreate(BaseModel):
    stock_item_id: int
    quantity: Decimal = Field(..., gt=0)


class RequisitionCreate(BaseModel):
    requesting_warehouse_id: int
    source_warehouse_id: int
    notes: Optional[str] = None
    items: List[RequisitionItemCreate] = Field(..., min_length=1)


class FulfillmentLine(BaseModel):
    stock_item_id: int
    quantity: Decimal = Field(..., ge=0)


class FulfillmentRequest(BaseModel):
    items: List[FulfillmentLine] = Field(..., min_length=1)


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


# Menu availability
class IngredientRequirement(BaseModel):
    stock_item_id: int
    quantity: Decimal = Field(..., gt=0)


class ServingsRequest(BaseModel):
    warehouse_id: int
    ingredients: List[IngredientRequirement] = Field(default_factory=list)
    recipe_yield: Decimal = Field(Decimal('1'), gt=0)
    threshold: int = Field(0, ge=0)


def to_service_dict(model: BaseModel) -> Dict[str, Any]:
    """Request model to the plain dict the services take, without unset fields"""
    return model.model_dump(exclude_unset=True, mode='python')
