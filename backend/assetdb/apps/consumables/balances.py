"""
Balance store.

A balance row is a materialized view of the ledger for one
(holder, item, lot) key. `apply_delta` is the only code path that writes
quantities; it runs under the caller's transaction and holds the row lock
until that transaction ends.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import BalanceFrozen, InsufficientStock, InvalidQuantity
from .holders import Holder, HolderType
from .units import quantize

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class BalanceKey:
    holder: Holder
    item_id: int
    lot_id: Optional[int] = None

    @property
    def lot_key(self) -> str:
        return models.NO_LOT_KEY if self.lot_id is None else str(self.lot_id)

    @property
    def sort_key(self) -> Tuple[str, str, int, int]:
        return (self.holder.holder_type.value, self.holder.holder_id, self.item_id, self.lot_id or 0)

    def as_dict(self) -> dict:
        return {**self.holder.as_dict(), "item_id": self.item_id, "lot_id": self.lot_id}

    @classmethod
    def for_row(cls, row: models.ConsumableBalance) -> "BalanceKey":
        return cls(row.holder, row.item_id, row.lot_id)


def _key_filter(query, key: BalanceKey):
    return query.filter(
        models.ConsumableBalance.holder_type == key.holder.holder_type,
        models.ConsumableBalance.holder_id == key.holder.holder_id,
        models.ConsumableBalance.item_id == key.item_id,
        models.ConsumableBalance.lot_key == key.lot_key,
    )


def get_balance(db: Session, key: BalanceKey, *, for_update: bool = False) -> Optional[models.ConsumableBalance]:
    query = _key_filter(db.query(models.ConsumableBalance), key)
    if for_update:
        query = query.with_for_update()
    return query.first()


def on_hand(db: Session, key: BalanceKey) -> Decimal:
    row = get_balance(db, key)
    return Decimal(row.qty_on_hand_base) if row is not None else ZERO


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
    query = db.query(models.ConsumableBalance)
    if holder is not None:
        query = query.filter(
            models.ConsumableBalance.holder_type == holder.holder_type,
            models.ConsumableBalance.holder_id == holder.holder_id,
        )
    elif holder_type is not None:
        query = query.filter(models.ConsumableBalance.holder_type == holder_type)
    if item_id is not None:
        query = query.filter(models.ConsumableBalance.item_id == item_id)
    if lot_id is not None:
        query = query.filter(models.ConsumableBalance.lot_id == lot_id)
    if positive_only:
        query = query.filter(models.ConsumableBalance.qty_on_hand_base > 0)
    return (
        query.order_by(
            models.ConsumableBalance.item_id.asc(),
            models.ConsumableBalance.holder_type.asc(),
            models.ConsumableBalance.holder_id.asc(),
            models.ConsumableBalance.lot_key.asc(),
        )
        .offset(skip)
        .limit(limit)
        .all()
    )


def lock_fefo_candidates(db: Session, *, holder: Holder, item_id: int) -> List[models.ConsumableBalance]:
    """
    Lock every positive lot balance of an item at a holder, ordered
    earliest-expiry first (no expiry last), then received date, then lot id.
    """
    return (
        db.query(models.ConsumableBalance)
        .join(models.ConsumableLot, models.ConsumableLot.id == models.ConsumableBalance.lot_id)
        .filter(
            models.ConsumableBalance.holder_type == holder.holder_type,
            models.ConsumableBalance.holder_id == holder.holder_id,
            models.ConsumableBalance.item_id == item_id,
            models.ConsumableBalance.lot_id.isnot(None),
            models.ConsumableBalance.qty_on_hand_base > 0,
        )
        .order_by(
            models.ConsumableLot.expiry_date.is_(None),
            models.ConsumableLot.expiry_date.asc(),
            models.ConsumableLot.received_date.asc(),
            models.ConsumableLot.id.asc(),
        )
        .with_for_update(of=models.ConsumableBalance)
        .all()
    )


def _create_row(db: Session, key: BalanceKey) -> models.ConsumableBalance:
    try:
        with db.begin_nested():
            row = models.ConsumableBalance(
                holder_type=key.holder.holder_type,
                holder_id=key.holder.holder_id,
                item_id=key.item_id,
                lot_id=key.lot_id,
                lot_key=key.lot_key,
                qty_on_hand_base=ZERO,
                qty_reserved_base=ZERO,
                is_frozen=False,
            )
            db.add(row)
            db.flush()
    except IntegrityError:
        # Another writer created the key first; take its row under lock.
        row = get_balance(db, key, for_update=True)
        if row is None:
            raise
    return row


def lock_balance(db: Session, key: BalanceKey) -> models.ConsumableBalance:
    """Return the locked row for a key, creating an empty one if needed."""
    row = get_balance(db, key, for_update=True)
    if row is None:
        row = _create_row(db, key)
    return row


def apply_delta(
    db: Session,
    key: BalanceKey,
    *,
    delta_on_hand=ZERO,
    delta_reserved=ZERO,
    allow_negative: bool = False,
) -> models.ConsumableBalance:
    row = lock_balance(db, key)
    if row.is_frozen:
        logger.warning(
            "Write refused on frozen balance",
            extra={"balance_key": key.as_dict(), "frozen_reason": row.frozen_reason},
        )
        raise BalanceFrozen(
            "Balance is frozen pending ledger reconciliation.",
            context={**key.as_dict(), "reason": row.frozen_reason},
        )

    current_on_hand = Decimal(row.qty_on_hand_base or 0)
    current_reserved = Decimal(row.qty_reserved_base or 0)
    new_on_hand = quantize(current_on_hand + Decimal(delta_on_hand))
    new_reserved = quantize(current_reserved + Decimal(delta_reserved))

    if new_on_hand < 0 and not allow_negative:
        raise InsufficientStock(
            f"Insufficient stock: {current_on_hand} on hand, {-Decimal(delta_on_hand)} requested.",
            context={
                **key.as_dict(),
                "qty_on_hand_base": str(current_on_hand),
                "requested_base": str(-Decimal(delta_on_hand)),
            },
        )
    if new_reserved < 0:
        raise InvalidQuantity(
            "Reserved quantity cannot go below zero.",
            context={**key.as_dict(), "qty_reserved_base": str(current_reserved)},
        )
    if new_reserved > new_on_hand and not allow_negative:
        raise InsufficientStock(
            "Reserved quantity cannot exceed on-hand quantity.",
            context={
                **key.as_dict(),
                "qty_on_hand_base": str(new_on_hand),
                "qty_reserved_base": str(new_reserved),
            },
        )

    row.qty_on_hand_base = new_on_hand
    row.qty_reserved_base = new_reserved
    db.flush()
    return row


def rollup(
    db: Session,
    *,
    item_id: Optional[int] = None,
    holder: Optional[Holder] = None,
) -> List[dict]:
    """Total on hand per item, broken down by holder and by office."""
    query = db.query(
        models.ConsumableBalance.item_id,
        models.ConsumableBalance.holder_type,
        models.ConsumableBalance.holder_id,
        func.sum(models.ConsumableBalance.qty_on_hand_base),
    )
    if item_id is not None:
        query = query.filter(models.ConsumableBalance.item_id == item_id)
    if holder is not None:
        query = query.filter(
            models.ConsumableBalance.holder_type == holder.holder_type,
            models.ConsumableBalance.holder_id == holder.holder_id,
        )
    grouped = (
        query.group_by(
            models.ConsumableBalance.item_id,
            models.ConsumableBalance.holder_type,
            models.ConsumableBalance.holder_id,
        )
        .order_by(
            models.ConsumableBalance.item_id.asc(),
            models.ConsumableBalance.holder_type.asc(),
            models.ConsumableBalance.holder_id.asc(),
        )
        .all()
    )

    rows: Dict[int, dict] = OrderedDict()
    for row_item_id, holder_type, holder_id, total in grouped:
        qty = quantize(total or ZERO)
        holder_type = HolderType(holder_type)
        entry = rows.setdefault(
            row_item_id,
            {"item_id": row_item_id, "total_qty_base": ZERO, "by_holder": [], "by_office": []},
        )
        entry["total_qty_base"] = quantize(entry["total_qty_base"] + qty)
        entry["by_holder"].append(
            {"holder_type": holder_type.value, "holder_id": holder_id, "qty_on_hand_base": qty}
        )
        if holder_type == HolderType.OFFICE:
            entry["by_office"].append({"office_id": holder_id, "qty_on_hand_base": qty})
    return list(rows.values())
