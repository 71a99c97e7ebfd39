"""
Lot and container registry.

Lots are never deleted. Containers carry their own current quantity, which
the engine keeps in step with the balance of the holder they sit with;
`update_container_qty` is the only place that moves it.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from . import models
from .errors import ContainerQuantityOutOfRange, InvalidContainer, InvalidLot
from .holders import Holder
from .units import quantize


def _normalize_lot_number(lot_number: Optional[str]) -> str:
    return (lot_number or "").strip()


def get_lot(db: Session, lot_id: int) -> Optional[models.ConsumableLot]:
    return db.query(models.ConsumableLot).filter(models.ConsumableLot.id == lot_id).first()


def get_lot_by_number(db: Session, *, item_id: int, lot_number: str) -> Optional[models.ConsumableLot]:
    return (
        db.query(models.ConsumableLot)
        .filter(
            models.ConsumableLot.item_id == item_id,
            models.ConsumableLot.lot_number == _normalize_lot_number(lot_number),
        )
        .first()
    )


def create_lot(
    db: Session,
    *,
    item: models.ConsumableItem,
    lot_number: str,
    received_date: Optional[date] = None,
    expiry_date: Optional[date] = None,
    supplier_id: Optional[str] = None,
    sds_url: Optional[str] = None,
    coa_url: Optional[str] = None,
    invoice_url: Optional[str] = None,
) -> models.ConsumableLot:
    lot_number = _normalize_lot_number(lot_number)
    if not lot_number:
        raise InvalidLot("lot_number is required to register a lot.")
    received = received_date or date.today()
    if expiry_date is not None and expiry_date < received:
        raise InvalidLot(
            "expiry_date cannot be before received_date.",
            context={"lot_number": lot_number},
        )
    if get_lot_by_number(db, item_id=item.id, lot_number=lot_number) is not None:
        raise InvalidLot(
            f"Lot {lot_number} already exists for item {item.id}.",
            context={"item_id": item.id, "lot_number": lot_number},
        )
    lot = models.ConsumableLot(
        item_id=item.id,
        lot_number=lot_number,
        received_date=received,
        expiry_date=expiry_date,
        supplier_id=supplier_id,
        sds_url=sds_url,
        coa_url=coa_url,
        invoice_url=invoice_url,
    )
    db.add(lot)
    db.flush()
    return lot


def find_or_create_lot(
    db: Session,
    *,
    item: models.ConsumableItem,
    lot_number: str,
    received_date: Optional[date] = None,
    expiry_date: Optional[date] = None,
    supplier_id: Optional[str] = None,
    sds_url: Optional[str] = None,
    coa_url: Optional[str] = None,
    invoice_url: Optional[str] = None,
) -> models.ConsumableLot:
    """Reuse the item's lot with this number, registering it on first receipt.

    Document links missing on an existing lot are filled in; dates recorded on
    first receipt are kept.
    """
    existing = get_lot_by_number(db, item_id=item.id, lot_number=lot_number)
    if existing is None:
        return create_lot(
            db,
            item=item,
            lot_number=lot_number,
            received_date=received_date,
            expiry_date=expiry_date,
            supplier_id=supplier_id,
            sds_url=sds_url,
            coa_url=coa_url,
            invoice_url=invoice_url,
        )
    for field_name, value in (("sds_url", sds_url), ("coa_url", coa_url), ("invoice_url", invoice_url)):
        if value and not getattr(existing, field_name):
            setattr(existing, field_name, value)
    if supplier_id and not existing.supplier_id:
        existing.supplier_id = supplier_id
    db.flush()
    return existing


def list_lots(
    db: Session,
    *,
    item_id: Optional[int] = None,
    expiring_on_or_before: Optional[date] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.ConsumableLot]:
    query = db.query(models.ConsumableLot)
    if item_id is not None:
        query = query.filter(models.ConsumableLot.item_id == item_id)
    if expiring_on_or_before is not None:
        query = query.filter(
            models.ConsumableLot.expiry_date.isnot(None),
            models.ConsumableLot.expiry_date <= expiring_on_or_before,
        )
    return (
        query.order_by(
            models.ConsumableLot.expiry_date.is_(None),
            models.ConsumableLot.expiry_date.asc(),
            models.ConsumableLot.received_date.asc(),
            models.ConsumableLot.id.asc(),
        )
        .offset(skip)
        .limit(limit)
        .all()
    )


def get_container(db: Session, container_id: int, *, for_update: bool = False) -> Optional[models.ConsumableContainer]:
    query = db.query(models.ConsumableContainer).filter(models.ConsumableContainer.id == container_id)
    if for_update:
        query = query.with_for_update()
    return query.first()


def create_container(
    db: Session,
    *,
    lot: models.ConsumableLot,
    container_code: str,
    initial_qty_base: Decimal,
    location: Holder,
    opened_date: Optional[date] = None,
) -> models.ConsumableContainer:
    code = (container_code or "").strip()
    if not code:
        raise InvalidContainer("container_code is required.")
    initial = quantize(initial_qty_base)
    if initial <= 0:
        raise ContainerQuantityOutOfRange(
            "Container initial quantity must be greater than zero.",
            context={"container_code": code},
        )
    duplicate = (
        db.query(models.ConsumableContainer.id)
        .filter(
            models.ConsumableContainer.lot_id == lot.id,
            models.ConsumableContainer.container_code == code,
        )
        .first()
    )
    if duplicate is not None:
        raise InvalidContainer(
            f"Container {code} already exists in lot {lot.lot_number}.",
            context={"lot_id": lot.id, "container_code": code},
        )
    container = models.ConsumableContainer(
        lot_id=lot.id,
        container_code=code,
        initial_qty_base=initial,
        current_qty_base=initial,
        location_type=location.holder_type,
        location_id=location.holder_id,
        status=models.ContainerStatusEnum.IN_STOCK,
        opened_date=opened_date,
    )
    db.add(container)
    db.flush()
    return container


def update_container_qty(
    db: Session,
    container: models.ConsumableContainer,
    delta: Decimal,
    *,
    opened_on: Optional[date] = None,
    mark_opened: bool = True,
) -> models.ConsumableContainer:
    current = Decimal(container.current_qty_base)
    initial = Decimal(container.initial_qty_base)
    new_qty = quantize(current + Decimal(delta))
    if new_qty < 0 or new_qty > initial:
        raise ContainerQuantityOutOfRange(
            f"Container {container.container_code} would hold {new_qty}, outside 0..{initial}.",
            context={
                "container_id": container.id,
                "current_qty_base": str(current),
                "initial_qty_base": str(initial),
                "delta": str(delta),
            },
        )
    container.current_qty_base = new_qty
    if mark_opened and delta < 0 and container.opened_date is None:
        container.opened_date = opened_on or date.today()
    if new_qty == 0:
        container.status = models.ContainerStatusEnum.EMPTY
    elif container.status == models.ContainerStatusEnum.EMPTY:
        container.status = models.ContainerStatusEnum.IN_STOCK
    db.flush()
    return container


def move_container(db: Session, container: models.ConsumableContainer, holder: Holder) -> models.ConsumableContainer:
    container.location_type = holder.holder_type
    container.location_id = holder.holder_id
    db.flush()
    return container


def mark_container_status(
    db: Session,
    container: models.ConsumableContainer,
    status: models.ContainerStatusEnum,
) -> models.ConsumableContainer:
    if status not in (models.ContainerStatusEnum.DISPOSED, models.ContainerStatusEnum.LOST):
        raise InvalidContainer(
            "Only DISPOSED or LOST can be set explicitly; EMPTY and IN_STOCK follow the quantity.",
            context={"container_id": container.id, "status": getattr(status, "value", status)},
        )
    if container.status in (models.ContainerStatusEnum.DISPOSED, models.ContainerStatusEnum.LOST):
        raise InvalidContainer(
            f"Container {container.container_code} is already {container.status.value}.",
            context={"container_id": container.id},
        )
    container.status = status
    db.flush()
    return container


def list_containers(
    db: Session,
    *,
    lot_id: Optional[int] = None,
    item_id: Optional[int] = None,
    holder: Optional[Holder] = None,
    status: Optional[models.ContainerStatusEnum] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.ConsumableContainer]:
    query = db.query(models.ConsumableContainer)
    if lot_id is not None:
        query = query.filter(models.ConsumableContainer.lot_id == lot_id)
    if item_id is not None:
        query = query.join(models.ConsumableLot, models.ConsumableLot.id == models.ConsumableContainer.lot_id).filter(
            models.ConsumableLot.item_id == item_id
        )
    if holder is not None:
        query = query.filter(
            models.ConsumableContainer.location_type == holder.holder_type,
            models.ConsumableContainer.location_id == holder.holder_id,
        )
    if status is not None:
        query = query.filter(models.ConsumableContainer.status == status)
    return query.order_by(models.ConsumableContainer.id.asc()).offset(skip).limit(limit).all()
