from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from . import models
from .holders import HolderType


class AdjustDirectionEnum(str, enum.Enum):
    INCREASE = "INCREASE"
    DECREASE = "DECREASE"


# ---------------------------------------------------------------------------
# Movement requests
# ---------------------------------------------------------------------------


class LotDetails(BaseModel):
    lot_number: str = Field(..., min_length=1, max_length=120)
    received_date: Optional[date] = None
    expiry_date: Optional[date] = None
    supplier_id: Optional[str] = None
    sds_url: Optional[str] = None
    coa_url: Optional[str] = None
    invoice_url: Optional[str] = None


class ContainerSpec(BaseModel):
    container_code: str = Field(..., min_length=1, max_length=64)
    initial_qty: Decimal = Field(..., gt=0)
    uom: Optional[str] = None
    opened_date: Optional[date] = None


class MovementBase(BaseModel):
    item_id: int
    qty: Decimal = Field(..., gt=0)
    uom: str
    lot_id: Optional[int] = None
    container_id: Optional[int] = None
    reference: Optional[str] = Field(None, max_length=128)
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OverridableMovement(MovementBase):
    allow_negative: bool = False
    override_note: Optional[str] = None


class ReceiptRequest(MovementBase):
    to_holder_type: HolderType = HolderType.STORE
    to_holder_id: Optional[str] = None
    lot: Optional[LotDetails] = None
    containers: Optional[List[ContainerSpec]] = None


class TransferRequest(OverridableMovement):
    from_holder_type: HolderType
    from_holder_id: str
    to_holder_type: HolderType
    to_holder_id: str


class ConsumeRequest(OverridableMovement):
    holder_type: HolderType
    holder_id: str


class AdjustRequest(OverridableMovement):
    holder_type: HolderType
    holder_id: str
    direction: AdjustDirectionEnum
    reason_code_id: Optional[int] = None


class DisposeRequest(OverridableMovement):
    holder_type: HolderType
    holder_id: str
    reason_code_id: Optional[int] = None


class ReturnRequest(OverridableMovement):
    from_holder_type: HolderType
    from_holder_id: str
    to_holder_type: HolderType = HolderType.STORE
    to_holder_id: Optional[str] = None


class OpeningBalanceLine(BaseModel):
    holder_type: HolderType
    holder_id: str
    item_id: int
    lot_id: Optional[int] = None
    qty: Decimal = Field(..., gt=0)
    uom: str
    reference: Optional[str] = Field(None, max_length=128)
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OpeningBalanceRequest(BaseModel):
    entries: List[OpeningBalanceLine] = Field(..., min_length=1)
    reference: Optional[str] = Field(None, max_length=128)
    notes: Optional[str] = None


class ContainerLostRequest(BaseModel):
    reason_code_id: Optional[int] = None
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class LedgerEntryRead(BaseModel):
    id: str
    tx_type: models.TxTypeEnum
    tx_time: datetime
    created_by: Optional[str] = None
    from_holder_type: Optional[HolderType] = None
    from_holder_id: Optional[str] = None
    to_holder_type: Optional[HolderType] = None
    to_holder_id: Optional[str] = None
    item_id: int
    lot_id: Optional[int] = None
    container_id: Optional[int] = None
    qty_base: Decimal
    entered_qty: Decimal
    entered_uom: str
    reason_code_id: Optional[int] = None
    reference: Optional[str] = None
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_json")

    class Config:
        from_attributes = True
        populate_by_name = True


class BalanceRead(BaseModel):
    id: int
    holder_type: HolderType
    holder_id: str
    item_id: int
    lot_id: Optional[int] = None
    qty_on_hand_base: Decimal
    qty_reserved_base: Decimal
    is_frozen: bool
    frozen_reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LotRead(BaseModel):
    id: int
    item_id: int
    supplier_id: Optional[str] = None
    lot_number: str
    received_date: date
    expiry_date: Optional[date] = None
    sds_url: Optional[str] = None
    coa_url: Optional[str] = None
    invoice_url: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ContainerRead(BaseModel):
    id: int
    lot_id: int
    container_code: str
    initial_qty_base: Decimal
    current_qty_base: Decimal
    location_type: HolderType
    location_id: str
    status: models.ContainerStatusEnum
    opened_date: Optional[date] = None

    class Config:
        from_attributes = True


class HolderQty(BaseModel):
    holder_type: HolderType
    holder_id: str
    qty_on_hand_base: Decimal


class OfficeQty(BaseModel):
    office_id: str
    qty_on_hand_base: Decimal


class RollupRow(BaseModel):
    item_id: int
    total_qty_base: Decimal
    by_holder: List[HolderQty] = Field(default_factory=list)
    by_office: List[OfficeQty] = Field(default_factory=list)


class ExpiringLotRead(BaseModel):
    lot: LotRead
    balance: BalanceRead
    days_to_expiry: int


class ReconcileResult(BaseModel):
    holder_type: HolderType
    holder_id: str
    item_id: int
    lot_id: Optional[int] = None
    live_qty_base: Decimal
    replayed_qty_base: Decimal
    matches: bool
    is_frozen: bool


class CompatibleUnitsRead(BaseModel):
    base_uom: str
    units: List[str]


class BalanceSnapshot(BaseModel):
    holder_type: HolderType
    holder_id: str
    item_id: int
    lot_id: Optional[int] = None
    qty_on_hand_base: Decimal
    qty_reserved_base: Decimal
    is_frozen: bool


class BalanceKeyRequest(BaseModel):
    holder_type: HolderType
    holder_id: str
    item_id: int
    lot_id: Optional[int] = None
