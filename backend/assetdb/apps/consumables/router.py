from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from assetdb.database import get_db, get_read_db
from assetdb.security import get_current_actor_id

from . import models, schemas, services
from .balances import BalanceKey
from .errors import InventoryError, InvalidHolder
from .holders import Holder, HolderDirectory, HolderType, ShapeOnlyDirectory, holder_or_none

router = APIRouter(
    prefix="/consumables",
    tags=["consumables"],
)


def get_holder_directory() -> HolderDirectory:
    """Overridden by deployments that have a directory service wired in."""
    return ShapeOnlyDirectory()


async def inventory_error_handler(request: Request, exc: InventoryError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _holder_param(holder_type: Optional[HolderType], holder_id: Optional[str]) -> Optional[Holder]:
    if holder_id and not holder_type:
        raise InvalidHolder("holder_type is required with holder_id.")
    return holder_or_none(holder_type.value if holder_type else None, holder_id)


def _committed(db: Session, entries: List[models.ConsumableLedgerEntry]) -> List[models.ConsumableLedgerEntry]:
    db.commit()
    for entry in entries:
        db.refresh(entry)
    return entries


# ---------------------------------------------------------------------------
# Movements
# ---------------------------------------------------------------------------


@router.post(
    "/inventory/receive",
    response_model=List[schemas.LedgerEntryRead],
    status_code=status.HTTP_201_CREATED,
)
def receive_stock(
    payload: schemas.ReceiptRequest,
    db: Session = Depends(get_db),
    actor_user_id: str = Depends(get_current_actor_id),
    directory: HolderDirectory = Depends(get_holder_directory),
):
    entries = services.receive_stock(db, payload=payload, actor_user_id=actor_user_id, directory=directory)
    return _committed(db, entries)


@router.post(
    "/inventory/transfer",
    response_model=List[schemas.LedgerEntryRead],
    status_code=status.HTTP_201_CREATED,
)
def transfer_stock(
    payload: schemas.TransferRequest,
    db: Session = Depends(get_db),
    actor_user_id: str = Depends(get_current_actor_id),
    directory: HolderDirectory = Depends(get_holder_directory),
):
    entries = services.transfer_stock(db, payload=payload, actor_user_id=actor_user_id, directory=directory)
    return _committed(db, entries)


@router.post(
    "/inventory/consume",
    response_model=List[schemas.LedgerEntryRead],
    status_code=status.HTTP_201_CREATED,
)
def consume_stock(
    payload: schemas.ConsumeRequest,
    db: Session = Depends(get_db),
    actor_user_id: str = Depends(get_current_actor_id),
    directory: HolderDirectory = Depends(get_holder_directory),
):
    entries = services.consume_stock(db, payload=payload, actor_user_id=actor_user_id, directory=directory)
    return _committed(db, entries)


@router.post(
    "/inventory/adjust",
    response_model=List[schemas.LedgerEntryRead],
    status_code=status.HTTP_201_CREATED,
)
def adjust_stock(
    payload: schemas.AdjustRequest,
    db: Session = Depends(get_db),
    actor_user_id: str = Depends(get_current_actor_id),
    directory: HolderDirectory = Depends(get_holder_directory),
):
    entries = services.adjust_stock(db, payload=payload, actor_user_id=actor_user_id, directory=directory)
    return _committed(db, entries)


@router.post(
    "/inventory/dispose",
    response_model=List[schemas.LedgerEntryRead],
    status_code=status.HTTP_201_CREATED,
)
def dispose_stock(
    payload: schemas.DisposeRequest,
    db: Session = Depends(get_db),
    actor_user_id: str = Depends(get_current_actor_id),
    directory: HolderDirectory = Depends(get_holder_directory),
):
    entries = services.dispose_stock(db, payload=payload, actor_user_id=actor_user_id, directory=directory)
    return _committed(db, entries)


@router.post(
    "/inventory/return",
    response_model=List[schemas.LedgerEntryRead],
    status_code=status.HTTP_201_CREATED,
)
def return_stock(
    payload: schemas.ReturnRequest,
    db: Session = Depends(get_db),
    actor_user_id: str = Depends(get_current_actor_id),
    directory: HolderDirectory = Depends(get_holder_directory),
):
    entries = services.return_stock(db, payload=payload, actor_user_id=actor_user_id, directory=directory)
    return _committed(db, entries)


@router.post(
    "/inventory/opening-balance",
    response_model=List[schemas.LedgerEntryRead],
    status_code=status.HTTP_201_CREATED,
)
def post_opening_balance(
    payload: schemas.OpeningBalanceRequest,
    db: Session = Depends(get_db),
    actor_user_id: str = Depends(get_current_actor_id),
    directory: HolderDirectory = Depends(get_holder_directory),
):
    entries = services.post_opening_balance(db, payload=payload, actor_user_id=actor_user_id, directory=directory)
    return _committed(db, entries)


@router.post(
    "/containers/{container_id}/lost",
    response_model=List[schemas.LedgerEntryRead],
    status_code=status.HTTP_201_CREATED,
)
def report_container_lost(
    container_id: int,
    payload: schemas.ContainerLostRequest,
    db: Session = Depends(get_db),
    actor_user_id: str = Depends(get_current_actor_id),
):
    entries = services.report_container_lost(
        db, container_id=container_id, payload=payload, actor_user_id=actor_user_id
    )
    return _committed(db, entries)


# ---------------------------------------------------------------------------
# Balances and reports
# ---------------------------------------------------------------------------


@router.get("/inventory/balance", response_model=schemas.BalanceSnapshot)
def get_balance(
    holder_type: HolderType,
    holder_id: str,
    item_id: int,
    lot_id: Optional[int] = None,
    db: Session = Depends(get_read_db),
    actor_user_id: str = Depends(get_current_actor_id),
):
    holder = Holder.of(holder_type, holder_id)
    return services.get_balance(db, holder=holder, item_id=item_id, lot_id=lot_id)


@router.get("/inventory/balances", response_model=List[schemas.BalanceRead])
def list_balances(
    holder_type: Optional[HolderType] = None,
    holder_id: Optional[str] = None,
    item_id: Optional[int] = None,
    lot_id: Optional[int] = None,
    positive_only: bool = False,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_read_db),
    actor_user_id: str = Depends(get_current_actor_id),
):
    holder = _holder_param(holder_type, holder_id)
    return services.list_balances(
        db,
        holder=holder,
        holder_type=holder_type if holder is None else None,
        item_id=item_id,
        lot_id=lot_id,
        positive_only=positive_only,
        skip=skip,
        limit=limit,
    )


@router.get("/inventory/ledger", response_model=List[schemas.LedgerEntryRead])
def list_ledger(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    holder_type: Optional[HolderType] = None,
    holder_id: Optional[str] = None,
    item_id: Optional[int] = None,
    lot_id: Optional[int] = None,
    tx_type: Optional[models.TxTypeEnum] = None,
    order: str = Query("asc", pattern="^(asc|desc)$"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_read_db),
    actor_user_id: str = Depends(get_current_actor_id),
):
    return services.list_ledger(
        db,
        start=start,
        end=end,
        holder=_holder_param(holder_type, holder_id),
        item_id=item_id,
        lot_id=lot_id,
        tx_type=tx_type,
        ascending=order == "asc",
        skip=skip,
        limit=limit,
    )


@router.get("/inventory/rollup", response_model=List[schemas.RollupRow])
def get_rollup(
    item_id: Optional[int] = None,
    holder_type: Optional[HolderType] = None,
    holder_id: Optional[str] = None,
    db: Session = Depends(get_read_db),
    actor_user_id: str = Depends(get_current_actor_id),
):
    return services.get_rollup(db, item_id=item_id, holder=_holder_param(holder_type, holder_id))


@router.get("/inventory/expiry", response_model=List[schemas.ExpiringLotRead])
def list_expiring(
    days: int = Query(services.DEFAULT_EXPIRY_WINDOW_DAYS, ge=0, le=3650),
    holder_type: Optional[HolderType] = None,
    holder_id: Optional[str] = None,
    limit: int = Query(1000, ge=1, le=5000),
    db: Session = Depends(get_read_db),
    actor_user_id: str = Depends(get_current_actor_id),
):
    return services.list_expiring(db, days=days, holder=_holder_param(holder_type, holder_id), limit=limit)


@router.post("/inventory/reconcile", response_model=List[schemas.ReconcileResult])
def reconcile_balances(
    item_id: Optional[int] = None,
    db: Session = Depends(get_db),
    actor_user_id: str = Depends(get_current_actor_id),
):
    results = services.reconcile_all(db, item_id=item_id)
    # Keep any freezes applied to divergent rows.
    db.commit()
    return results


@router.post("/inventory/balance/release-freeze", response_model=schemas.BalanceRead)
def release_balance_freeze(
    payload: schemas.BalanceKeyRequest,
    db: Session = Depends(get_db),
    actor_user_id: str = Depends(get_current_actor_id),
):
    key = BalanceKey(Holder.of(payload.holder_type, payload.holder_id), payload.item_id, payload.lot_id)
    row = services.release_balance_freeze(db, key=key, actor_user_id=actor_user_id)
    db.commit()
    db.refresh(row)
    return row


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@router.get("/lots", response_model=List[schemas.LotRead])
def list_lots(
    item_id: Optional[int] = None,
    expiring_on_or_before: Optional[date] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_read_db),
    actor_user_id: str = Depends(get_current_actor_id),
):
    return services.list_lots(
        db, item_id=item_id, expiring_on_or_before=expiring_on_or_before, skip=skip, limit=limit
    )


@router.get("/containers", response_model=List[schemas.ContainerRead])
def list_containers(
    lot_id: Optional[int] = None,
    item_id: Optional[int] = None,
    holder_type: Optional[HolderType] = None,
    holder_id: Optional[str] = None,
    container_status: Optional[models.ContainerStatusEnum] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_read_db),
    actor_user_id: str = Depends(get_current_actor_id),
):
    return services.list_containers(
        db,
        lot_id=lot_id,
        item_id=item_id,
        holder=_holder_param(holder_type, holder_id),
        status=container_status,
        skip=skip,
        limit=limit,
    )


@router.get("/units/compatible", response_model=schemas.CompatibleUnitsRead)
def compatible_units(
    item_id: Optional[int] = None,
    base_uom: Optional[str] = None,
    db: Session = Depends(get_read_db),
    actor_user_id: str = Depends(get_current_actor_id),
):
    return services.compatible_units(db, item_id=item_id, base_uom=base_uom)
