"""
Append-only movement ledger.

Every quantity change is one row here. Balances are derived state and can
always be rebuilt with `replay_balance`. Rows are never updated or deleted;
the mapper listeners at the bottom of this module enforce it at flush time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, event, or_
from sqlalchemy.orm import Session

from . import models
from .balances import BalanceKey, ZERO, get_balance
from .errors import LedgerImmutableError, LedgerIntegrityError
from .holders import Holder
from .units import quantize

logger = logging.getLogger(__name__)


def append(db: Session, entry: models.ConsumableLedgerEntry) -> str:
    """Persist a new entry. Must run inside the caller's atomic unit."""
    if entry.qty_base is None or Decimal(entry.qty_base) <= 0:
        raise LedgerIntegrityError("Ledger quantity must be positive.", context={"tx_type": str(entry.tx_type)})
    if entry.from_holder_id is None and entry.to_holder_id is None:
        raise LedgerIntegrityError("Ledger entry needs at least one holder side.")
    db.add(entry)
    db.flush()
    return entry.id


def _holder_side(holder: Holder, *, side: str):
    type_column = getattr(models.ConsumableLedgerEntry, f"{side}_holder_type")
    id_column = getattr(models.ConsumableLedgerEntry, f"{side}_holder_id")
    return and_(type_column == holder.holder_type, id_column == holder.holder_id)


def _key_query(db: Session, key: BalanceKey):
    query = db.query(models.ConsumableLedgerEntry).filter(
        models.ConsumableLedgerEntry.item_id == key.item_id,
        or_(_holder_side(key.holder, side="from"), _holder_side(key.holder, side="to")),
    )
    if key.lot_id is None:
        return query.filter(models.ConsumableLedgerEntry.lot_id.is_(None))
    return query.filter(models.ConsumableLedgerEntry.lot_id == key.lot_id)


def query(
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
    q = db.query(models.ConsumableLedgerEntry)
    if start is not None:
        q = q.filter(models.ConsumableLedgerEntry.tx_time >= start)
    if end is not None:
        q = q.filter(models.ConsumableLedgerEntry.tx_time <= end)
    if holder is not None:
        q = q.filter(or_(_holder_side(holder, side="from"), _holder_side(holder, side="to")))
    if item_id is not None:
        q = q.filter(models.ConsumableLedgerEntry.item_id == item_id)
    if lot_id is not None:
        q = q.filter(models.ConsumableLedgerEntry.lot_id == lot_id)
    if tx_type is not None:
        q = q.filter(models.ConsumableLedgerEntry.tx_type == tx_type)
    if ascending:
        order = (models.ConsumableLedgerEntry.tx_time.asc(), models.ConsumableLedgerEntry.id.asc())
    else:
        order = (models.ConsumableLedgerEntry.tx_time.desc(), models.ConsumableLedgerEntry.id.desc())
    return q.order_by(*order).offset(skip).limit(limit).all()


def signed_quantity(entry: models.ConsumableLedgerEntry, key: BalanceKey) -> Decimal:
    """Effect of one entry on one balance key: credit to, debit from, else zero."""
    if entry.item_id != key.item_id or entry.lot_id != key.lot_id:
        return ZERO
    qty = Decimal(entry.qty_base)
    signed = ZERO
    if entry.to_holder == key.holder:
        signed += qty
    if entry.from_holder == key.holder:
        signed -= qty
    return signed


def replay_balance(db: Session, key: BalanceKey) -> Decimal:
    total = ZERO
    for entry in _key_query(db, key).order_by(
        models.ConsumableLedgerEntry.tx_time.asc(),
        models.ConsumableLedgerEntry.id.asc(),
    ):
        total += signed_quantity(entry, key)
    return quantize(total)


def has_history(db: Session, key: BalanceKey) -> bool:
    return db.query(_key_query(db, key).exists()).scalar()


def verify_balance(db: Session, key: BalanceKey) -> Decimal:
    """
    Compare the live balance with a ledger replay.

    On divergence the balance row is frozen (flushed, not committed) and
    `LedgerIntegrityError` is raised; the frozen row refuses further deltas.
    """
    replayed = replay_balance(db, key)
    row = get_balance(db, key, for_update=True)
    live = quantize(row.qty_on_hand_base) if row is not None else ZERO
    if live == replayed:
        return live

    reason = f"Live balance {live} does not match ledger replay {replayed}."
    logger.error(
        "Ledger/balance divergence detected",
        extra={"balance_key": key.as_dict(), "live": str(live), "replayed": str(replayed)},
    )
    if row is not None and not row.is_frozen:
        row.is_frozen = True
        row.frozen_reason = reason
        row.frozen_at = datetime.now(timezone.utc)
        db.flush()
    raise LedgerIntegrityError(
        reason,
        context={**key.as_dict(), "live": str(live), "replayed": str(replayed)},
    )


def release_balance_freeze(db: Session, key: BalanceKey) -> models.ConsumableBalance:
    """Unfreeze a balance once a manual repair has brought it back in line with the ledger."""
    row = get_balance(db, key, for_update=True)
    if row is None:
        raise LedgerIntegrityError("No balance row exists for this key.", context=key.as_dict())
    replayed = replay_balance(db, key)
    live = quantize(row.qty_on_hand_base)
    if live != replayed:
        raise LedgerIntegrityError(
            f"Balance still diverges from ledger replay ({live} vs {replayed}).",
            context={**key.as_dict(), "live": str(live), "replayed": str(replayed)},
        )
    row.is_frozen = False
    row.frozen_reason = None
    row.frozen_at = None
    db.flush()
    logger.info("Balance freeze released", extra={"balance_key": key.as_dict()})
    return row


@event.listens_for(models.ConsumableLedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    logger.error(
        "Ledger update blocked",
        extra={"entry_id": target.id, "operation": "UPDATE"},
    )
    raise LedgerImmutableError(
        "Ledger entries are append-only; post a compensating entry instead.",
        context={"entry_id": target.id},
    )


@event.listens_for(models.ConsumableLedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    logger.error(
        "Ledger delete blocked",
        extra={"entry_id": target.id, "operation": "DELETE"},
    )
    raise LedgerImmutableError(
        "Ledger entries cannot be deleted.",
        context={"entry_id": target.id},
    )
