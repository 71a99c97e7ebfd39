"""
Inventory operations engine.

Each mutating operation validates its request, then applies balance deltas,
container changes, ledger entries and its audit event inside one savepoint.
Any failure rolls the savepoint back and leaves the caller's session exactly
as it was; the caller commits.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from assetdb.apps.audit import services as audit_services

from . import balances, ledger, models, registry, schemas, units
from .balances import BalanceKey
from .errors import (
    ContainerRequired,
    DuplicateOpeningBalance,
    InsufficientStock,
    InvalidContainer,
    InvalidHolder,
    InvalidLot,
    InvalidQuantity,
    InvalidReasonCode,
    ItemNotFound,
    LedgerIntegrityError,
    LotRequired,
    OverrideNoteRequired,
    ReasonCodeRequired,
)
from .holders import Holder, HolderDirectory, HolderType, ShapeOnlyDirectory, ensure_valid

logger = logging.getLogger(__name__)

DEFAULT_CENTRAL_STORE_ID = "HEAD_OFFICE_STORE"
DEFAULT_EXPIRY_WINDOW_DAYS = 30

DEFAULT_REASON_CODES = (
    ("ADJUST", "COUNT_CORRECTION", "Physical count differs from book quantity"),
    ("ADJUST", "DAMAGED", "Damaged in storage"),
    ("ADJUST", "FOUND", "Stock found during count"),
    ("ADJUST", "CONTAINER_LOST", "Container reported lost"),
    ("DISPOSE", "EXPIRED", "Past expiry date"),
    ("DISPOSE", "CONTAMINATED", "Contaminated or spoiled"),
    ("DISPOSE", "SPILL", "Spill or leak"),
)


def central_store() -> Holder:
    return Holder(HolderType.STORE, os.getenv("CONSUMABLES_CENTRAL_STORE_ID", DEFAULT_CENTRAL_STORE_ID))


@contextmanager
def _atomic(db: Session) -> Iterator[None]:
    with db.begin_nested():
        yield


@dataclass
class _Quantity:
    base: Decimal
    entered: Decimal
    uom: str


# ---------------------------------------------------------------------------
# Lookups and validation
# ---------------------------------------------------------------------------


def _get_item(db: Session, item_id: int) -> models.ConsumableItem:
    item = db.query(models.ConsumableItem).filter(models.ConsumableItem.id == item_id).first()
    if not item:
        raise ItemNotFound(f"Consumable item {item_id} not found.", context={"item_id": item_id})
    return item


def _holder(directory: HolderDirectory, holder_type, holder_id, *, label: str) -> Holder:
    return ensure_valid(directory, Holder.of(holder_type, holder_id), label=label)


def _quantity(db: Session, item: models.ConsumableItem, qty, uom: str) -> _Quantity:
    table = units.load_unit_table(db, active_only=True)
    base = units.to_base_quantity(table, qty, uom, item.base_uom)
    return _Quantity(base=base, entered=units.quantize(qty), uom=table.resolve(uom).code)


def _override_note(allow_negative: bool, override_note: Optional[str], *, item_id: int) -> Optional[str]:
    if not allow_negative:
        return None
    note = (override_note or "").strip()
    if not note:
        logger.warning("Negative-stock override rejected without a note", extra={"item_id": item_id})
        raise OverrideNoteRequired("override_note is required when allow_negative is set.")
    return note


def _reason_code(
    db: Session,
    reason_code_id: Optional[int],
    category: models.ReasonCategoryEnum,
) -> models.ConsumableReasonCode:
    if reason_code_id is None:
        raise ReasonCodeRequired(f"A {category.value} reason code is required.")
    reason = (
        db.query(models.ConsumableReasonCode)
        .filter(models.ConsumableReasonCode.id == reason_code_id)
        .first()
    )
    if reason is None or not reason.is_active:
        raise InvalidReasonCode(
            f"Reason code {reason_code_id} not found or inactive.",
            context={"reason_code_id": reason_code_id},
        )
    if reason.category != category:
        raise InvalidReasonCode(
            f"Reason code category must be {category.value}.",
            context={"reason_code_id": reason_code_id, "category": reason.category.value},
        )
    return reason


def _explicit_lot(db: Session, item: models.ConsumableItem, lot_id: Optional[int]) -> Optional[models.ConsumableLot]:
    if lot_id is None:
        return None
    if not item.tracks_lots:
        raise InvalidLot(
            f"Item {item.id} is not lot-tracked; lot_id must be omitted.",
            context={"item_id": item.id, "lot_id": lot_id},
        )
    lot = registry.get_lot(db, lot_id)
    if lot is None or lot.item_id != item.id:
        raise InvalidLot(
            f"Lot {lot_id} does not belong to item {item.id}.",
            context={"item_id": item.id, "lot_id": lot_id},
        )
    return lot


def _container(
    db: Session,
    item: models.ConsumableItem,
    container_id: Optional[int],
    *,
    lot: Optional[models.ConsumableLot],
    holder: Holder,
    allowed_statuses: Sequence[models.ContainerStatusEnum] = (models.ContainerStatusEnum.IN_STOCK,),
) -> Optional[models.ConsumableContainer]:
    if container_id is None:
        if item.requires_container:
            raise ContainerRequired(
                f"Item {item.id} is container-tracked; container_id is required.",
                context={"item_id": item.id},
            )
        return None

    container = registry.get_container(db, container_id, for_update=True)
    if container is None:
        raise InvalidContainer(f"Container {container_id} not found.", context={"container_id": container_id})
    if container.lot.item_id != item.id:
        raise InvalidContainer(
            f"Container {container.container_code} does not belong to item {item.id}.",
            context={"container_id": container.id, "item_id": item.id},
        )
    if lot is not None and container.lot_id != lot.id:
        raise InvalidContainer(
            f"Container {container.container_code} is not from lot {lot.id}.",
            context={"container_id": container.id, "lot_id": lot.id},
        )
    if container.status not in allowed_statuses:
        raise InvalidContainer(
            f"Container {container.container_code} is {container.status.value}.",
            context={"container_id": container.id, "status": container.status.value},
        )
    if container.location != holder:
        raise InvalidContainer(
            f"Container {container.container_code} is not held by {holder}.",
            context={"container_id": container.id, **holder.as_dict()},
        )
    return container


def _fefo_lot(
    db: Session,
    *,
    holder: Holder,
    item: models.ConsumableItem,
    qty_base: Decimal,
    override: bool,
) -> models.ConsumableLot:
    """Earliest-expiring lot at the holder that covers the whole quantity."""
    candidates = balances.lock_fefo_candidates(db, holder=holder, item_id=item.id)
    for candidate in candidates:
        if Decimal(candidate.qty_on_hand_base) >= qty_base:
            return candidate.lot
    if override and candidates:
        return candidates[0].lot
    if override:
        raise LotRequired(
            f"No lot of item {item.id} is in stock at {holder}; specify lot_id to override.",
            context={"item_id": item.id, **holder.as_dict()},
        )
    raise InsufficientStock(
        f"No single lot of item {item.id} at {holder} covers {qty_base} {item.base_uom}.",
        context={"item_id": item.id, "requested_base": str(qty_base), **holder.as_dict()},
    )


def _source_lot_and_container(
    db: Session,
    item: models.ConsumableItem,
    payload: schemas.OverridableMovement,
    *,
    holder: Holder,
    qty_base: Decimal,
    override: bool,
    allow_fefo: bool = True,
) -> Tuple[Optional[models.ConsumableLot], Optional[models.ConsumableContainer]]:
    lot = _explicit_lot(db, item, payload.lot_id)
    container = _container(db, item, payload.container_id, lot=lot, holder=holder)
    if container is not None:
        return container.lot, container
    if lot is None and item.tracks_lots:
        if not allow_fefo:
            raise LotRequired(f"lot_id is required for lot-tracked item {item.id}.", context={"item_id": item.id})
        lot = _fefo_lot(db, holder=holder, item=item, qty_base=qty_base, override=override)
    return lot, None


def _ensure_container_covers(container: models.ConsumableContainer, qty_base: Decimal) -> None:
    current = Decimal(container.current_qty_base)
    if qty_base > current:
        raise InsufficientStock(
            f"Container {container.container_code} holds {current}; {qty_base} requested.",
            context={"container_id": container.id, "current_qty_base": str(current), "requested_base": str(qty_base)},
        )


# ---------------------------------------------------------------------------
# Posting helpers
# ---------------------------------------------------------------------------


def _require_store_default(holder_type: HolderType) -> None:
    """Only a STORE destination may fall back to the central store."""
    if holder_type != HolderType.STORE:
        raise InvalidHolder(
            f"to_holder_id is required for a {holder_type.value} destination.",
            context={"holder_type": holder_type.value},
        )


def _key(holder: Holder, item: models.ConsumableItem, lot: Optional[models.ConsumableLot]) -> BalanceKey:
    return BalanceKey(holder, item.id, lot.id if lot is not None else None)


def _lock_in_order(db: Session, *keys: BalanceKey) -> None:
    for key in sorted(set(keys), key=lambda k: k.sort_key):
        balances.lock_balance(db, key)


def _post(
    db: Session,
    *,
    tx_type: models.TxTypeEnum,
    item: models.ConsumableItem,
    lot: Optional[models.ConsumableLot],
    quantity: _Quantity,
    actor_user_id: Optional[str],
    from_holder: Optional[Holder] = None,
    to_holder: Optional[Holder] = None,
    container: Optional[models.ConsumableContainer] = None,
    reason: Optional[models.ConsumableReasonCode] = None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    metadata: Optional[dict] = None,
    caller_metadata: Optional[dict] = None,
) -> models.ConsumableLedgerEntry:
    # Engine keys (override, direction, containers) always win over caller keys.
    merged = {**(caller_metadata or {}), **(metadata or {})}
    entry = models.ConsumableLedgerEntry(
        tx_type=tx_type,
        tx_time=datetime.now(timezone.utc),
        created_by=actor_user_id,
        from_holder_type=from_holder.holder_type if from_holder else None,
        from_holder_id=from_holder.holder_id if from_holder else None,
        to_holder_type=to_holder.holder_type if to_holder else None,
        to_holder_id=to_holder.holder_id if to_holder else None,
        item_id=item.id,
        lot_id=lot.id if lot is not None else None,
        container_id=container.id if container is not None else None,
        qty_base=quantity.base,
        entered_qty=quantity.entered,
        entered_uom=quantity.uom,
        reason_code_id=reason.id if reason is not None else None,
        reference=reference,
        notes=notes,
        metadata_json=merged,
    )
    ledger.append(db, entry)
    logger.info(
        "Posted consumable movement",
        extra={
            "entry_id": entry.id,
            "tx_type": tx_type.value,
            "item_id": item.id,
            "lot_id": entry.lot_id,
            "qty_base": str(quantity.base),
            "from_holder": str(from_holder) if from_holder else None,
            "to_holder": str(to_holder) if to_holder else None,
        },
    )
    return entry


def _override_metadata(note: Optional[str]) -> dict:
    if note is None:
        return {}
    return {"override_negative": True, "override_note": note}


def _audit(
    db: Session,
    *,
    action: str,
    entries: Sequence[models.ConsumableLedgerEntry],
    actor_user_id: Optional[str],
    description: str,
    after: Optional[dict] = None,
) -> None:
    first = entries[0] if entries else None
    audit_services.log_event(
        db,
        actor_user_id=actor_user_id,
        entity_type="ConsumableLedgerEntry",
        entity_id=first.id if first is not None else "-",
        action=action,
        description=description,
        after={"entry_ids": [entry.id for entry in entries], **(after or {})},
        critical=True,
    )


def _debit(db: Session, key: BalanceKey, qty_base: Decimal, *, override_note: Optional[str]) -> models.ConsumableBalance:
    row = balances.apply_delta(db, key, delta_on_hand=-qty_base, allow_negative=override_note is not None)
    if Decimal(row.qty_on_hand_base) < 0:
        logger.warning(
            "Balance driven negative under override",
            extra={"balance_key": key.as_dict(), "qty_on_hand_base": str(row.qty_on_hand_base)},
        )
    return row


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def receive_stock(
    db: Session,
    *,
    payload: schemas.ReceiptRequest,
    actor_user_id: Optional[str],
    directory: Optional[HolderDirectory] = None,
) -> List[models.ConsumableLedgerEntry]:
    directory = directory or ShapeOnlyDirectory()
    with _atomic(db):
        item = _get_item(db, payload.item_id)
        if payload.to_holder_id:
            to_holder = _holder(directory, payload.to_holder_type, payload.to_holder_id, label="Receiving holder")
        else:
            _require_store_default(payload.to_holder_type)
            to_holder = ensure_valid(directory, central_store(), label="Central store")
        quantity = _quantity(db, item, payload.qty, payload.uom)

        if payload.container_id is not None:
            raise InvalidContainer("Receipts create containers; container_id must be omitted.")
        lot = _explicit_lot(db, item, payload.lot_id)
        if lot is not None and payload.lot is not None and payload.lot.lot_number.strip() != lot.lot_number:
            raise InvalidLot(
                f"Lot details name {payload.lot.lot_number!r} but lot {lot.id} is {lot.lot_number!r}.",
                context={"lot_id": lot.id, "lot_number": payload.lot.lot_number},
            )
        if lot is None and payload.lot is not None:
            if not item.tracks_lots:
                raise InvalidLot(f"Item {item.id} is not lot-tracked; lot details must be omitted.")
            lot = registry.find_or_create_lot(
                db,
                item=item,
                lot_number=payload.lot.lot_number,
                received_date=payload.lot.received_date,
                expiry_date=payload.lot.expiry_date,
                supplier_id=payload.lot.supplier_id,
                sds_url=payload.lot.sds_url,
                coa_url=payload.lot.coa_url,
                invoice_url=payload.lot.invoice_url,
            )
        if lot is None and item.tracks_lots:
            raise LotRequired(f"Lot details are required for item {item.id}.", context={"item_id": item.id})

        specs = payload.containers or []
        if item.requires_container and not specs:
            raise ContainerRequired(f"Item {item.id} is container-tracked; containers are required.")
        if specs and lot is None:
            raise InvalidContainer("Containers can only be received against a lot.")
        container_qtys = [
            _quantity(db, item, spec.initial_qty, spec.uom or payload.uom).base for spec in specs
        ]
        if specs and sum(container_qtys, Decimal("0")) != quantity.base:
            raise InvalidQuantity(
                "Container quantities must sum to the received quantity.",
                context={"received_base": str(quantity.base), "containers_base": str(sum(container_qtys))},
            )

        balances.apply_delta(db, _key(to_holder, item, lot), delta_on_hand=quantity.base)
        containers = [
            registry.create_container(
                db,
                lot=lot,
                container_code=spec.container_code,
                initial_qty_base=qty_base,
                location=to_holder,
                opened_date=spec.opened_date,
            )
            for spec, qty_base in zip(specs, container_qtys)
        ]
        entry = _post(
            db,
            tx_type=models.TxTypeEnum.RECEIPT,
            item=item,
            lot=lot,
            quantity=quantity,
            actor_user_id=actor_user_id,
            to_holder=to_holder,
            container=containers[0] if len(containers) == 1 else None,
            reference=payload.reference,
            notes=payload.notes,
            caller_metadata=payload.metadata,
            metadata={"container_ids": [c.id for c in containers]} if containers else None,
        )
        _audit(
            db,
            action="consumables.receive",
            entries=[entry],
            actor_user_id=actor_user_id,
            description=f"Received {quantity.entered} {quantity.uom} of item {item.id} into {to_holder}",
            after={"lot_id": entry.lot_id, "qty_base": str(quantity.base)},
        )
    return [entry]


def _move(
    db: Session,
    *,
    tx_type: models.TxTypeEnum,
    action: str,
    payload: schemas.OverridableMovement,
    from_holder: Holder,
    to_holder: Holder,
    actor_user_id: Optional[str],
) -> List[models.ConsumableLedgerEntry]:
    if from_holder == to_holder:
        raise InvalidHolder("Source and destination holders must differ.", context=from_holder.as_dict())
    item = _get_item(db, payload.item_id)
    note = _override_note(payload.allow_negative, payload.override_note, item_id=item.id)
    quantity = _quantity(db, item, payload.qty, payload.uom)
    lot, container = _source_lot_and_container(
        db, item, payload, holder=from_holder, qty_base=quantity.base, override=note is not None
    )
    if container is not None and quantity.base != Decimal(container.current_qty_base):
        raise InvalidQuantity(
            "Container movements must move the full container quantity.",
            context={"container_id": container.id, "current_qty_base": str(container.current_qty_base)},
        )

    source_key = _key(from_holder, item, lot)
    dest_key = _key(to_holder, item, lot)
    _lock_in_order(db, source_key, dest_key)
    _debit(db, source_key, quantity.base, override_note=note)
    balances.apply_delta(db, dest_key, delta_on_hand=quantity.base)
    if container is not None:
        registry.move_container(db, container, to_holder)

    entry = _post(
        db,
        tx_type=tx_type,
        item=item,
        lot=lot,
        quantity=quantity,
        actor_user_id=actor_user_id,
        from_holder=from_holder,
        to_holder=to_holder,
        container=container,
        reference=payload.reference,
        notes=payload.notes,
        caller_metadata=payload.metadata,
        metadata=_override_metadata(note),
    )
    _audit(
        db,
        action=action,
        entries=[entry],
        actor_user_id=actor_user_id,
        description=f"Moved {quantity.entered} {quantity.uom} of item {item.id} from {from_holder} to {to_holder}",
        after={"lot_id": entry.lot_id, "qty_base": str(quantity.base), **_override_metadata(note)},
    )
    return [entry]


def transfer_stock(
    db: Session,
    *,
    payload: schemas.TransferRequest,
    actor_user_id: Optional[str],
    directory: Optional[HolderDirectory] = None,
) -> List[models.ConsumableLedgerEntry]:
    directory = directory or ShapeOnlyDirectory()
    with _atomic(db):
        from_holder = _holder(directory, payload.from_holder_type, payload.from_holder_id, label="Source holder")
        to_holder = _holder(directory, payload.to_holder_type, payload.to_holder_id, label="Destination holder")
        return _move(
            db,
            tx_type=models.TxTypeEnum.TRANSFER,
            action="consumables.transfer",
            payload=payload,
            from_holder=from_holder,
            to_holder=to_holder,
            actor_user_id=actor_user_id,
        )


def return_stock(
    db: Session,
    *,
    payload: schemas.ReturnRequest,
    actor_user_id: Optional[str],
    directory: Optional[HolderDirectory] = None,
) -> List[models.ConsumableLedgerEntry]:
    directory = directory or ShapeOnlyDirectory()
    with _atomic(db):
        from_holder = _holder(directory, payload.from_holder_type, payload.from_holder_id, label="Returning holder")
        if payload.to_holder_id:
            to_holder = _holder(directory, payload.to_holder_type, payload.to_holder_id, label="Return store")
        else:
            _require_store_default(payload.to_holder_type)
            to_holder = ensure_valid(directory, central_store(), label="Central store")
        if not to_holder.is_store:
            raise InvalidHolder("Returns must be sent to a store.", context=to_holder.as_dict())
        return _move(
            db,
            tx_type=models.TxTypeEnum.RETURN,
            action="consumables.return",
            payload=payload,
            from_holder=from_holder,
            to_holder=to_holder,
            actor_user_id=actor_user_id,
        )


def consume_stock(
    db: Session,
    *,
    payload: schemas.ConsumeRequest,
    actor_user_id: Optional[str],
    directory: Optional[HolderDirectory] = None,
) -> List[models.ConsumableLedgerEntry]:
    directory = directory or ShapeOnlyDirectory()
    with _atomic(db):
        holder = _holder(directory, payload.holder_type, payload.holder_id, label="Consuming holder")
        item = _get_item(db, payload.item_id)
        note = _override_note(payload.allow_negative, payload.override_note, item_id=item.id)
        quantity = _quantity(db, item, payload.qty, payload.uom)
        lot, container = _source_lot_and_container(
            db, item, payload, holder=holder, qty_base=quantity.base, override=note is not None
        )
        if container is not None:
            _ensure_container_covers(container, quantity.base)

        _debit(db, _key(holder, item, lot), quantity.base, override_note=note)
        if container is not None:
            registry.update_container_qty(db, container, -quantity.base)

        entry = _post(
            db,
            tx_type=models.TxTypeEnum.CONSUME,
            item=item,
            lot=lot,
            quantity=quantity,
            actor_user_id=actor_user_id,
            from_holder=holder,
            container=container,
            reference=payload.reference,
            notes=payload.notes,
            caller_metadata=payload.metadata,
            metadata=_override_metadata(note),
        )
        _audit(
            db,
            action="consumables.consume",
            entries=[entry],
            actor_user_id=actor_user_id,
            description=f"Consumed {quantity.entered} {quantity.uom} of item {item.id} at {holder}",
            after={"lot_id": entry.lot_id, "qty_base": str(quantity.base), **_override_metadata(note)},
        )
    return [entry]


def adjust_stock(
    db: Session,
    *,
    payload: schemas.AdjustRequest,
    actor_user_id: Optional[str],
    directory: Optional[HolderDirectory] = None,
) -> List[models.ConsumableLedgerEntry]:
    directory = directory or ShapeOnlyDirectory()
    with _atomic(db):
        item = _get_item(db, payload.item_id)
        reason = _reason_code(db, payload.reason_code_id, models.ReasonCategoryEnum.ADJUST)
        holder = _holder(directory, payload.holder_type, payload.holder_id, label="Adjusted holder")
        increase = payload.direction == schemas.AdjustDirectionEnum.INCREASE
        note = None if increase else _override_note(payload.allow_negative, payload.override_note, item_id=item.id)
        quantity = _quantity(db, item, payload.qty, payload.uom)

        lot = _explicit_lot(db, item, payload.lot_id)
        statuses = (
            (models.ContainerStatusEnum.IN_STOCK, models.ContainerStatusEnum.EMPTY)
            if increase
            else (models.ContainerStatusEnum.IN_STOCK,)
        )
        container = _container(db, item, payload.container_id, lot=lot, holder=holder, allowed_statuses=statuses)
        if container is not None:
            lot = container.lot
        if lot is None and item.tracks_lots:
            raise LotRequired(f"lot_id is required to adjust item {item.id}.", context={"item_id": item.id})

        key = _key(holder, item, lot)
        if increase:
            balances.apply_delta(db, key, delta_on_hand=quantity.base)
            if container is not None:
                registry.update_container_qty(db, container, quantity.base)
        else:
            if container is not None:
                _ensure_container_covers(container, quantity.base)
            _debit(db, key, quantity.base, override_note=note)
            if container is not None:
                registry.update_container_qty(db, container, -quantity.base)

        entry = _post(
            db,
            tx_type=models.TxTypeEnum.ADJUST,
            item=item,
            lot=lot,
            quantity=quantity,
            actor_user_id=actor_user_id,
            from_holder=None if increase else holder,
            to_holder=holder if increase else None,
            container=container,
            reason=reason,
            reference=payload.reference,
            notes=payload.notes,
            caller_metadata=payload.metadata,
            metadata={"direction": payload.direction.value, **_override_metadata(note)},
        )
        _audit(
            db,
            action="consumables.adjust",
            entries=[entry],
            actor_user_id=actor_user_id,
            description=(
                f"Adjusted item {item.id} at {holder} {payload.direction.value.lower()} by "
                f"{quantity.entered} {quantity.uom} ({reason.code})"
            ),
            after={"lot_id": entry.lot_id, "qty_base": str(quantity.base), "reason_code": reason.code},
        )
    return [entry]


def dispose_stock(
    db: Session,
    *,
    payload: schemas.DisposeRequest,
    actor_user_id: Optional[str],
    directory: Optional[HolderDirectory] = None,
) -> List[models.ConsumableLedgerEntry]:
    directory = directory or ShapeOnlyDirectory()
    with _atomic(db):
        item = _get_item(db, payload.item_id)
        reason = _reason_code(db, payload.reason_code_id, models.ReasonCategoryEnum.DISPOSE)
        holder = _holder(directory, payload.holder_type, payload.holder_id, label="Disposing holder")
        note = _override_note(payload.allow_negative, payload.override_note, item_id=item.id)
        quantity = _quantity(db, item, payload.qty, payload.uom)
        lot, container = _source_lot_and_container(
            db, item, payload, holder=holder, qty_base=quantity.base, override=note is not None
        )

        whole_container = False
        if container is not None:
            _ensure_container_covers(container, quantity.base)
            whole_container = quantity.base == Decimal(container.current_qty_base)

        _debit(db, _key(holder, item, lot), quantity.base, override_note=note)
        if container is not None:
            registry.update_container_qty(db, container, -quantity.base)
            if whole_container:
                registry.mark_container_status(db, container, models.ContainerStatusEnum.DISPOSED)

        entry = _post(
            db,
            tx_type=models.TxTypeEnum.DISPOSE,
            item=item,
            lot=lot,
            quantity=quantity,
            actor_user_id=actor_user_id,
            from_holder=holder,
            container=container,
            reason=reason,
            reference=payload.reference,
            notes=payload.notes,
            caller_metadata=payload.metadata,
            metadata=_override_metadata(note),
        )
        _audit(
            db,
            action="consumables.dispose",
            entries=[entry],
            actor_user_id=actor_user_id,
            description=f"Disposed {quantity.entered} {quantity.uom} of item {item.id} at {holder} ({reason.code})",
            after={"lot_id": entry.lot_id, "qty_base": str(quantity.base), "reason_code": reason.code},
        )
    return [entry]


def post_opening_balance(
    db: Session,
    *,
    payload: schemas.OpeningBalanceRequest,
    actor_user_id: Optional[str],
    directory: Optional[HolderDirectory] = None,
) -> List[models.ConsumableLedgerEntry]:
    directory = directory or ShapeOnlyDirectory()
    entries: List[models.ConsumableLedgerEntry] = []
    with _atomic(db):
        seen = set()
        for line in payload.entries:
            item = _get_item(db, line.item_id)
            holder = _holder(directory, line.holder_type, line.holder_id, label="Opening balance holder")
            quantity = _quantity(db, item, line.qty, line.uom)
            lot = _explicit_lot(db, item, line.lot_id)
            if lot is None and item.tracks_lots:
                raise LotRequired(f"lot_id is required for item {item.id}.", context={"item_id": item.id})

            key = _key(holder, item, lot)
            if key in seen or ledger.has_history(db, key):
                raise DuplicateOpeningBalance(
                    f"{holder} already has history for item {item.id}.",
                    context=key.as_dict(),
                )
            seen.add(key)

            balances.apply_delta(db, key, delta_on_hand=quantity.base)
            entries.append(
                _post(
                    db,
                    tx_type=models.TxTypeEnum.OPENING_BALANCE,
                    item=item,
                    lot=lot,
                    quantity=quantity,
                    actor_user_id=actor_user_id,
                    to_holder=holder,
                    reference=line.reference or payload.reference,
                    notes=line.notes or payload.notes,
                    caller_metadata=line.metadata,
                )
            )
        _audit(
            db,
            action="consumables.opening_balance",
            entries=entries,
            actor_user_id=actor_user_id,
            description=f"Posted {len(entries)} opening balance entries",
            after={"count": len(entries)},
        )
    return entries


def report_container_lost(
    db: Session,
    *,
    container_id: int,
    payload: schemas.ContainerLostRequest,
    actor_user_id: Optional[str],
) -> List[models.ConsumableLedgerEntry]:
    """Mark a container LOST and write off whatever it still held."""
    entries: List[models.ConsumableLedgerEntry] = []
    with _atomic(db):
        container = registry.get_container(db, container_id, for_update=True)
        if container is None:
            raise InvalidContainer(f"Container {container_id} not found.", context={"container_id": container_id})
        reason = _reason_code(db, payload.reason_code_id, models.ReasonCategoryEnum.ADJUST)
        lot = container.lot
        item = _get_item(db, lot.item_id)
        holder = container.location
        remaining = Decimal(container.current_qty_base)

        if remaining > 0:
            balances.apply_delta(db, _key(holder, item, lot), delta_on_hand=-remaining)
            registry.update_container_qty(db, container, -remaining, mark_opened=False)
            entries.append(
                _post(
                    db,
                    tx_type=models.TxTypeEnum.ADJUST,
                    item=item,
                    lot=lot,
                    quantity=_Quantity(base=remaining, entered=remaining, uom=item.base_uom),
                    actor_user_id=actor_user_id,
                    from_holder=holder,
                    container=container,
                    reason=reason,
                    notes=payload.notes,
                    caller_metadata=payload.metadata,
                    metadata={"direction": schemas.AdjustDirectionEnum.DECREASE.value, "container_lost": True},
                )
            )
        registry.mark_container_status(db, container, models.ContainerStatusEnum.LOST)
        audit_services.log_event(
            db,
            actor_user_id=actor_user_id,
            entity_type="ConsumableContainer",
            entity_id=str(container.id),
            action="consumables.container_lost",
            description=f"Container {container.container_code} reported lost at {holder}",
            after={"written_off_base": str(remaining), "entry_ids": [entry.id for entry in entries]},
            critical=True,
        )
    return entries


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_balance(db: Session, *, holder: Holder, item_id: int, lot_id: Optional[int] = None) -> dict:
    _get_item(db, item_id)
    row = balances.get_balance(db, BalanceKey(holder, item_id, lot_id))
    return {
        **holder.as_dict(),
        "item_id": item_id,
        "lot_id": lot_id,
        "qty_on_hand_base": Decimal(row.qty_on_hand_base) if row is not None else Decimal("0"),
        "qty_reserved_base": Decimal(row.qty_reserved_base) if row is not None else Decimal("0"),
        "is_frozen": bool(row.is_frozen) if row is not None else False,
    }


def list_balances(
    db: Session,
    *,
    holder: Optional[Holder] = None,
    holder_type: Optional[HolderType] = None,
    item_id: Optional[int] = None,
    lot_id: Optional[int] = None,
    positive_only: bool = False,
    skip: int = 0,
    limit: int = 100,
) -> List[models.ConsumableBalance]:
    return balances.list_balances(
        db,
        holder=holder,
        holder_type=holder_type,
        item_id=item_id,
        lot_id=lot_id,
        positive_only=positive_only,
        skip=skip,
        limit=limit,
    )


def get_rollup(db: Session, *, item_id: Optional[int] = None, holder: Optional[Holder] = None) -> List[dict]:
    return balances.rollup(db, item_id=item_id, holder=holder)


def list_ledger(
    db: Session,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    holder: Optional[Holder] = None,
    item_id: Optional[int] = None,
    lot_id: Optional[int] = None,
    tx_type: Optional[models.TxTypeEnum] = None,
    ascending: bool = True,
    skip: int = 0,
    limit: int = 100,
) -> List[models.ConsumableLedgerEntry]:
    return ledger.query(
        db,
        start=start,
        end=end,
        holder=holder,
        item_id=item_id,
        lot_id=lot_id,
        tx_type=tx_type,
        ascending=ascending,
        skip=skip,
        limit=limit,
    )


def list_expiring(
    db: Session,
    *,
    days: int = DEFAULT_EXPIRY_WINDOW_DAYS,
    holder: Optional[Holder] = None,
    today: Optional[date] = None,
    limit: int = 1000,
) -> List[dict]:
    """Positive lot balances expiring within `days`, nearest expiry first."""
    if days < 0:
        raise InvalidQuantity("days must be zero or more.", context={"days": days})
    today = today or date.today()
    cutoff = today + timedelta(days=days)
    query = (
        db.query(models.ConsumableBalance, models.ConsumableLot)
        .join(models.ConsumableLot, models.ConsumableLot.id == models.ConsumableBalance.lot_id)
        .filter(
            models.ConsumableBalance.qty_on_hand_base > 0,
            models.ConsumableLot.expiry_date.isnot(None),
            models.ConsumableLot.expiry_date >= today,
            models.ConsumableLot.expiry_date <= cutoff,
        )
    )
    if holder is not None:
        query = query.filter(
            models.ConsumableBalance.holder_type == holder.holder_type,
            models.ConsumableBalance.holder_id == holder.holder_id,
        )
    rows = (
        query.order_by(
            models.ConsumableLot.expiry_date.asc(),
            models.ConsumableLot.id.asc(),
            models.ConsumableBalance.holder_type.asc(),
            models.ConsumableBalance.holder_id.asc(),
        )
        .limit(limit)
        .all()
    )
    return [
        {"lot": lot, "balance": balance, "days_to_expiry": (lot.expiry_date - today).days}
        for balance, lot in rows
    ]


def list_lots(
    db: Session,
    *,
    item_id: Optional[int] = None,
    expiring_on_or_before: Optional[date] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.ConsumableLot]:
    return registry.list_lots(
        db, item_id=item_id, expiring_on_or_before=expiring_on_or_before, skip=skip, limit=limit
    )


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
    return registry.list_containers(
        db, lot_id=lot_id, item_id=item_id, holder=holder, status=status, skip=skip, limit=limit
    )


def compatible_units(db: Session, *, item_id: Optional[int] = None, base_uom: Optional[str] = None) -> dict:
    if item_id is not None:
        base_uom = _get_item(db, item_id).base_uom
    if not base_uom:
        raise InvalidQuantity("item_id or base_uom is required.")
    table = units.load_unit_table(db, active_only=True)
    table.resolve(base_uom)
    return {"base_uom": base_uom, "units": table.compatible_units(base_uom)}


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def reconcile_balance(db: Session, key: BalanceKey) -> dict:
    """Compare one balance with its ledger replay; divergent rows are frozen."""
    replayed = ledger.replay_balance(db, key)
    try:
        live = ledger.verify_balance(db, key)
        matches = True
    except LedgerIntegrityError:
        row = balances.get_balance(db, key)
        live = units.quantize(row.qty_on_hand_base) if row is not None else Decimal("0")
        matches = False
    row = balances.get_balance(db, key)
    return {
        **key.as_dict(),
        "live_qty_base": live,
        "replayed_qty_base": replayed,
        "matches": matches,
        "is_frozen": bool(row.is_frozen) if row is not None else False,
    }


def reconcile_all(db: Session, *, item_id: Optional[int] = None) -> List[dict]:
    query = db.query(models.ConsumableBalance)
    if item_id is not None:
        query = query.filter(models.ConsumableBalance.item_id == item_id)
    keys: Dict[Tuple, BalanceKey] = {}
    for row in query.order_by(models.ConsumableBalance.id.asc()).all():
        key = BalanceKey.for_row(row)
        keys[key.sort_key] = key
    results = [reconcile_balance(db, key) for key in keys.values()]
    mismatched = [result for result in results if not result["matches"]]
    if mismatched:
        logger.error(
            "Reconciliation found divergent balances",
            extra={"checked": len(results), "mismatched": len(mismatched)},
        )
    return results


def release_balance_freeze(db: Session, *, key: BalanceKey, actor_user_id: Optional[str]) -> models.ConsumableBalance:
    row = ledger.release_balance_freeze(db, key)
    audit_services.log_event(
        db,
        actor_user_id=actor_user_id,
        entity_type="ConsumableBalance",
        entity_id=str(row.id),
        action="consumables.balance_freeze_released",
        description=f"Released integrity freeze on {key.holder} item {key.item_id}",
        after=key.as_dict(),
        critical=True,
    )
    return row


def seed_default_reason_codes(db: Session) -> int:
    existing = {
        (category.value if hasattr(category, "value") else category, code)
        for category, code in db.query(models.ConsumableReasonCode.category, models.ConsumableReasonCode.code).all()
    }
    created = 0
    for category, code, description in DEFAULT_REASON_CODES:
        if (category, code) in existing:
            continue
        db.add(
            models.ConsumableReasonCode(
                code=code,
                category=models.ReasonCategoryEnum(category),
                description=description,
                is_active=True,
            )
        )
        created += 1
    db.flush()
    return created
