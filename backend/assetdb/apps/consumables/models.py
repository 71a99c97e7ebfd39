from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from assetdb.database import Base
from assetdb.utils.identifiers import generate_uuid7

from .holders import Holder, HolderType

QTY_PRECISION = 18
QTY_SCALE = 6
NO_LOT_KEY = "-"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def Quantity() -> Numeric:
    return Numeric(QTY_PRECISION, QTY_SCALE, asdecimal=True)


class UnitGroupEnum(str, enum.Enum):
    MASS = "mass"
    VOLUME = "volume"
    COUNT = "count"


class TxTypeEnum(str, enum.Enum):
    RECEIPT = "RECEIPT"
    TRANSFER = "TRANSFER"
    CONSUME = "CONSUME"
    ADJUST = "ADJUST"
    DISPOSE = "DISPOSE"
    RETURN = "RETURN"
    OPENING_BALANCE = "OPENING_BALANCE"


class ContainerStatusEnum(str, enum.Enum):
    IN_STOCK = "IN_STOCK"
    EMPTY = "EMPTY"
    DISPOSED = "DISPOSED"
    LOST = "LOST"


class ReasonCategoryEnum(str, enum.Enum):
    ADJUST = "ADJUST"
    DISPOSE = "DISPOSE"


_holder_type_enum = dict(native_enum=False, length=16)


class ConsumableItem(Base):
    """Catalog definition; read-only reference data for the engine."""

    __tablename__ = "consumable_items"
    __table_args__ = (Index("ix_consumable_items_name", "name"),)

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    cas_number = Column(String(64), nullable=True)
    base_uom = Column(String(32), nullable=False)
    is_hazardous = Column(Boolean, nullable=False, default=False)
    is_controlled = Column(Boolean, nullable=False, default=False)
    is_chemical = Column(Boolean, nullable=False, default=False)
    requires_lot_tracking = Column(Boolean, nullable=False, default=True)
    requires_container_tracking = Column(Boolean, nullable=False, default=False)
    default_min_stock = Column(Quantity(), nullable=True)
    default_reorder_point = Column(Quantity(), nullable=True)
    storage_condition = Column(String(200), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    lots = relationship("ConsumableLot", back_populates="item")

    @property
    def requires_container(self) -> bool:
        return bool(self.requires_container_tracking or self.is_controlled)

    @property
    def tracks_lots(self) -> bool:
        # Containers hang off lots, so container tracking implies lot tracking.
        return bool(self.requires_lot_tracking or self.requires_container)


class ConsumableUnit(Base):
    __tablename__ = "consumable_units"
    __table_args__ = (
        UniqueConstraint("code", name="uq_consumable_unit_code"),
        Index("ix_consumable_units_group", "is_active", "group"),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(32), nullable=False)
    name = Column(String(120), nullable=False)
    group = Column(
        SAEnum(UnitGroupEnum, name="consumable_unit_group_enum", native_enum=False,
               values_callable=lambda enum_cls: [member.value for member in enum_cls]),
        nullable=False,
    )
    to_base = Column(Numeric(24, 12, asdecimal=True), nullable=False)
    aliases = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)


class ConsumableReasonCode(Base):
    __tablename__ = "consumable_reason_codes"
    __table_args__ = (UniqueConstraint("category", "code", name="uq_consumable_reason_code"),)

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), nullable=False)
    category = Column(
        SAEnum(ReasonCategoryEnum, name="consumable_reason_category_enum", native_enum=False),
        nullable=False,
        index=True,
    )
    description = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class ConsumableLot(Base):
    __tablename__ = "consumable_lots"
    __table_args__ = (
        UniqueConstraint("item_id", "lot_number", name="uq_consumable_lot_number"),
        Index("ix_consumable_lots_item_expiry", "item_id", "expiry_date", "received_date"),
        Index("ix_consumable_lots_expiry", "expiry_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("consumable_items.id", ondelete="RESTRICT"), nullable=False, index=True)
    supplier_id = Column(String(64), nullable=True, index=True)
    lot_number = Column(String(120), nullable=False)
    received_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=True)
    sds_url = Column(String(512), nullable=True)
    coa_url = Column(String(512), nullable=True)
    invoice_url = Column(String(512), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    item = relationship("ConsumableItem", back_populates="lots")
    containers = relationship("ConsumableContainer", back_populates="lot")


class ConsumableContainer(Base):
    __tablename__ = "consumable_containers"
    __table_args__ = (
        UniqueConstraint("lot_id", "container_code", name="uq_consumable_container_code"),
        Index("ix_consumable_containers_location", "location_type", "location_id", "status"),
        CheckConstraint(
            "current_qty_base >= 0 AND current_qty_base <= initial_qty_base",
            name="ck_consumable_container_qty_bounds",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    lot_id = Column(Integer, ForeignKey("consumable_lots.id", ondelete="RESTRICT"), nullable=False, index=True)
    container_code = Column(String(64), nullable=False)
    initial_qty_base = Column(Quantity(), nullable=False)
    current_qty_base = Column(Quantity(), nullable=False)
    location_type = Column(SAEnum(HolderType, name="consumable_holder_type_enum", **_holder_type_enum), nullable=False)
    location_id = Column(String(64), nullable=False)
    status = Column(
        SAEnum(ContainerStatusEnum, name="consumable_container_status_enum", native_enum=False),
        nullable=False,
        default=ContainerStatusEnum.IN_STOCK,
        index=True,
    )
    opened_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    lot = relationship("ConsumableLot", back_populates="containers")

    @property
    def location(self) -> Holder:
        return Holder(HolderType(self.location_type), self.location_id)


class ConsumableBalance(Base):
    """
    Materialized on-hand quantity per (holder, item, lot).

    Written only through `balances.apply_delta`; must always equal the signed
    sum of ledger entries for the same key.
    """

    __tablename__ = "consumable_balances"
    __table_args__ = (
        UniqueConstraint("holder_type", "holder_id", "item_id", "lot_key", name="uq_consumable_balance_key"),
        Index("ix_consumable_balances_item", "item_id", "lot_id"),
        Index("ix_consumable_balances_holder", "holder_type", "holder_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    holder_type = Column(SAEnum(HolderType, name="consumable_balance_holder_type_enum", **_holder_type_enum), nullable=False)
    holder_id = Column(String(64), nullable=False)
    item_id = Column(Integer, ForeignKey("consumable_items.id", ondelete="RESTRICT"), nullable=False)
    lot_id = Column(Integer, ForeignKey("consumable_lots.id", ondelete="RESTRICT"), nullable=True)
    lot_key = Column(String(32), nullable=False, default=NO_LOT_KEY)
    qty_on_hand_base = Column(Quantity(), nullable=False, default=0)
    qty_reserved_base = Column(Quantity(), nullable=False, default=0)
    is_frozen = Column(Boolean, nullable=False, default=False)
    frozen_reason = Column(Text, nullable=True)
    frozen_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    item = relationship("ConsumableItem")
    lot = relationship("ConsumableLot")

    @property
    def holder(self) -> Holder:
        return Holder(HolderType(self.holder_type), self.holder_id)


class ConsumableLedgerEntry(Base):
    """
    Append-only movement record. Never updated or deleted; corrections are
    new compensating entries.
    """

    __tablename__ = "consumable_ledger_entries"
    __table_args__ = (
        Index("ix_consumable_ledger_time", "tx_time", "id"),
        Index("ix_consumable_ledger_item_lot", "item_id", "lot_id", "tx_time"),
        Index("ix_consumable_ledger_from", "from_holder_type", "from_holder_id", "item_id"),
        Index("ix_consumable_ledger_to", "to_holder_type", "to_holder_id", "item_id"),
        CheckConstraint("qty_base > 0", name="ck_consumable_ledger_qty_positive"),
        CheckConstraint(
            "from_holder_id IS NOT NULL OR to_holder_id IS NOT NULL",
            name="ck_consumable_ledger_has_holder",
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7, index=True)
    tx_type = Column(
        SAEnum(TxTypeEnum, name="consumable_tx_type_enum", native_enum=False),
        nullable=False,
        index=True,
    )
    tx_time = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_by = Column(String(64), nullable=True)

    from_holder_type = Column(SAEnum(HolderType, name="consumable_from_holder_type_enum", **_holder_type_enum), nullable=True)
    from_holder_id = Column(String(64), nullable=True)
    to_holder_type = Column(SAEnum(HolderType, name="consumable_to_holder_type_enum", **_holder_type_enum), nullable=True)
    to_holder_id = Column(String(64), nullable=True)

    item_id = Column(Integer, ForeignKey("consumable_items.id", ondelete="RESTRICT"), nullable=False)
    lot_id = Column(Integer, ForeignKey("consumable_lots.id", ondelete="RESTRICT"), nullable=True)
    container_id = Column(Integer, ForeignKey("consumable_containers.id", ondelete="RESTRICT"), nullable=True)

    qty_base = Column(Quantity(), nullable=False)
    entered_qty = Column(Quantity(), nullable=False)
    entered_uom = Column(String(32), nullable=False)
    reason_code_id = Column(Integer, ForeignKey("consumable_reason_codes.id", ondelete="RESTRICT"), nullable=True)
    reference = Column(String(128), nullable=True)
    notes = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def from_holder(self):
        if self.from_holder_type is None or self.from_holder_id is None:
            return None
        return Holder(HolderType(self.from_holder_type), self.from_holder_id)

    @property
    def to_holder(self):
        if self.to_holder_type is None or self.to_holder_id is None:
            return None
        return Holder(HolderType(self.to_holder_type), self.to_holder_id)

    def __repr__(self) -> str:
        return f"<ConsumableLedgerEntry id={self.id} type={self.tx_type} item={self.item_id} qty={self.qty_base}>"
