from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from assetdb.apps.consumables import balances, schemas, services
from assetdb.apps.consumables.balances import BalanceKey
from assetdb.apps.consumables.errors import InsufficientStock, LotRequired
from assetdb.apps.consumables.holders import Holder

OFFICE = Holder.of("OFFICE", "O1")


def _receive_lot(db, item, lot_number, qty, *, expiry_in_days=None, received_days_ago=0):
    today = date.today()
    payload = schemas.ReceiptRequest(
        item_id=item.id,
        qty=Decimal(qty),
        uom="kg",
        to_holder_type="OFFICE",
        to_holder_id=OFFICE.holder_id,
        lot=schemas.LotDetails(
            lot_number=lot_number,
            received_date=today - timedelta(days=received_days_ago),
            expiry_date=today + timedelta(days=expiry_in_days) if expiry_in_days is not None else None,
        ),
    )
    [entry] = services.receive_stock(db, payload=payload, actor_user_id="user-1")
    db.commit()
    return entry.lot_id


def _consume(db, item, qty, **extra):
    [entry] = services.consume_stock(
        db,
        payload=schemas.ConsumeRequest(
            item_id=item.id,
            qty=Decimal(qty),
            uom="kg",
            holder_type="OFFICE",
            holder_id=OFFICE.holder_id,
            **extra,
        ),
        actor_user_id="user-1",
    )
    return entry


def test_consume_draws_from_earliest_expiry(db_session, make_item):
    item = make_item()
    late = _receive_lot(db_session, item, "LATE", "10", expiry_in_days=60)
    early = _receive_lot(db_session, item, "EARLY", "10", expiry_in_days=20)

    entry = _consume(db_session, item, "4")

    assert entry.lot_id == early
    assert balances.on_hand(db_session, BalanceKey(OFFICE, item.id, early)) == Decimal("6")
    assert balances.on_hand(db_session, BalanceKey(OFFICE, item.id, late)) == Decimal("10")


def test_lots_without_expiry_are_used_last(db_session, make_item):
    item = make_item()
    undated = _receive_lot(db_session, item, "UNDATED", "10")
    dated = _receive_lot(db_session, item, "DATED", "10", expiry_in_days=300)

    assert _consume(db_session, item, "1").lot_id == dated
    assert undated != dated


def test_same_expiry_falls_back_to_received_date(db_session, make_item):
    item = make_item()
    newer = _receive_lot(db_session, item, "NEWER", "10", expiry_in_days=30, received_days_ago=1)
    older = _receive_lot(db_session, item, "OLDER", "10", expiry_in_days=30, received_days_ago=5)

    assert _consume(db_session, item, "1").lot_id == older
    assert newer != older


def test_first_lot_that_covers_the_whole_quantity_is_used(db_session, make_item):
    item = make_item()
    small = _receive_lot(db_session, item, "SMALL", "3", expiry_in_days=10)
    large = _receive_lot(db_session, item, "LARGE", "20", expiry_in_days=40)

    entry = _consume(db_session, item, "5")

    assert entry.lot_id == large
    assert balances.on_hand(db_session, BalanceKey(OFFICE, item.id, small)) == Decimal("3")


def test_no_single_lot_covering_quantity_is_insufficient(db_session, make_item):
    item = make_item()
    _receive_lot(db_session, item, "A", "3", expiry_in_days=10)
    _receive_lot(db_session, item, "B", "3", expiry_in_days=20)

    with pytest.raises(InsufficientStock):
        _consume(db_session, item, "5")


def test_override_draws_earliest_lot_negative(db_session, make_item):
    item = make_item()
    first = _receive_lot(db_session, item, "A", "3", expiry_in_days=10)
    _receive_lot(db_session, item, "B", "3", expiry_in_days=20)

    entry = _consume(db_session, item, "5", allow_negative=True, override_note="Emergency use")

    assert entry.lot_id == first
    assert balances.on_hand(db_session, BalanceKey(OFFICE, item.id, first)) == Decimal("-2")


def test_override_without_any_stock_needs_explicit_lot(db_session, make_item):
    item = make_item()

    with pytest.raises(LotRequired):
        _consume(db_session, item, "1", allow_negative=True, override_note="Emergency use")


def test_empty_holder_without_override_is_insufficient(db_session, make_item):
    item = make_item()

    with pytest.raises(InsufficientStock):
        _consume(db_session, item, "1")


def test_transfer_uses_fefo_at_source(db_session, make_item):
    item = make_item()
    _receive_lot(db_session, item, "LATE", "10", expiry_in_days=90)
    early = _receive_lot(db_session, item, "EARLY", "10", expiry_in_days=5)

    [entry] = services.transfer_stock(
        db_session,
        payload=schemas.TransferRequest(
            item_id=item.id,
            qty=Decimal("2"),
            uom="kg",
            from_holder_type="OFFICE",
            from_holder_id=OFFICE.holder_id,
            to_holder_type="EMPLOYEE",
            to_holder_id="E-1",
        ),
        actor_user_id="user-1",
    )

    assert entry.lot_id == early
    assert balances.on_hand(db_session, BalanceKey(Holder.of("EMPLOYEE", "E-1"), item.id, early)) == Decimal("2")
