from __future__ import annotations

import threading
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from assetdb.apps.audit import services as audit_services
from assetdb.apps.consumables import balances, ledger, models, registry, schemas, services
from assetdb.apps.consumables.balances import BalanceKey
from assetdb.apps.consumables.errors import (
    ContainerRequired,
    DuplicateOpeningBalance,
    IncompatibleUnit,
    InsufficientStock,
    InvalidContainer,
    InvalidHolder,
    InvalidLot,
    InvalidQuantity,
    InvalidReasonCode,
    ItemNotFound,
    LotRequired,
    OverrideNoteRequired,
    ReasonCodeRequired,
)
from assetdb.apps.consumables.holders import Holder, StaticHolderDirectory

STORE = Holder.of("STORE", "HEAD_OFFICE_STORE")
OFFICE = Holder.of("OFFICE", "O1")
EMPLOYEE = Holder.of("EMPLOYEE", "E-42")


def _receive(db, item, qty, *, uom="kg", lot_number="L1", to_holder=STORE, containers=None, **lot_fields):
    payload = schemas.ReceiptRequest(
        item_id=item.id,
        qty=Decimal(qty),
        uom=uom,
        to_holder_type=to_holder.holder_type,
        to_holder_id=to_holder.holder_id,
        lot=schemas.LotDetails(lot_number=lot_number, **lot_fields) if lot_number else None,
        containers=containers,
    )
    entries = services.receive_stock(db, payload=payload, actor_user_id="user-1")
    db.commit()
    return entries


def _on_hand(db, holder, item, lot_id=None) -> Decimal:
    return balances.on_hand(db, BalanceKey(holder, item.id, lot_id))


def _ledger_count(db) -> int:
    return db.query(models.ConsumableLedgerEntry).count()


def _assert_replay_matches(db, *keys):
    for key in keys:
        assert ledger.replay_balance(db, key) == balances.on_hand(db, key)


def test_receipt_transfer_consume_keeps_balances_and_ledger_in_step(db_session, make_item):
    item = make_item()
    [receipt] = _receive(db_session, item, "100")
    lot_id = receipt.lot_id

    services.transfer_stock(
        db_session,
        payload=schemas.TransferRequest(
            item_id=item.id,
            qty=Decimal("40"),
            uom="kg",
            lot_id=lot_id,
            from_holder_type="STORE",
            from_holder_id=STORE.holder_id,
            to_holder_type="OFFICE",
            to_holder_id=OFFICE.holder_id,
        ),
        actor_user_id="user-1",
    )
    services.consume_stock(
        db_session,
        payload=schemas.ConsumeRequest(
            item_id=item.id,
            qty=Decimal("10"),
            uom="kg",
            lot_id=lot_id,
            holder_type="OFFICE",
            holder_id=OFFICE.holder_id,
        ),
        actor_user_id="user-1",
    )
    db_session.commit()

    assert _on_hand(db_session, STORE, item, lot_id) == Decimal("60")
    assert _on_hand(db_session, OFFICE, item, lot_id) == Decimal("30")
    [rollup] = services.get_rollup(db_session, item_id=item.id)
    assert rollup["total_qty_base"] == Decimal("90")
    assert _ledger_count(db_session) == 3
    _assert_replay_matches(
        db_session,
        BalanceKey(STORE, item.id, lot_id),
        BalanceKey(OFFICE, item.id, lot_id),
    )


def test_receipt_entry_has_only_destination_holder(db_session, make_item):
    item = make_item()
    [entry] = _receive(db_session, item, "500", uom="g", supplier_id="SUP-1")

    assert entry.tx_type == models.TxTypeEnum.RECEIPT
    assert entry.from_holder is None
    assert entry.to_holder == STORE
    assert entry.qty_base == Decimal("0.5")
    assert entry.entered_qty == Decimal("500")
    assert entry.entered_uom == "g"
    assert entry.created_by == "user-1"

    lot = registry.get_lot(db_session, entry.lot_id)
    assert lot.lot_number == "L1"
    assert lot.supplier_id == "SUP-1"


def test_receipt_defaults_to_central_store(db_session, make_item):
    item = make_item()
    payload = schemas.ReceiptRequest(
        item_id=item.id,
        qty=Decimal("5"),
        uom="kg",
        lot=schemas.LotDetails(lot_number="L1"),
    )
    [entry] = services.receive_stock(db_session, payload=payload, actor_user_id="user-1")

    assert entry.to_holder == services.central_store()
    assert services.central_store() == STORE


def test_receipt_without_holder_id_needs_store_type(db_session, make_item):
    item = make_item()
    payload = schemas.ReceiptRequest(
        item_id=item.id,
        qty=Decimal("5"),
        uom="kg",
        to_holder_type="EMPLOYEE",
        lot=schemas.LotDetails(lot_number="L1"),
    )

    with pytest.raises(InvalidHolder) as excinfo:
        services.receive_stock(db_session, payload=payload, actor_user_id="user-1")
    assert excinfo.value.context == {"holder_type": "EMPLOYEE"}
    assert _ledger_count(db_session) == 0
    assert _on_hand(db_session, STORE, item) == Decimal("0")


def test_receipt_lot_details_must_match_lot_id(db_session, make_item):
    item = make_item()
    [receipt] = _receive(db_session, item, "10", lot_number="L1")
    payload = dict(item_id=item.id, qty=Decimal("2"), uom="kg", lot_id=receipt.lot_id)

    with pytest.raises(InvalidLot):
        services.receive_stock(
            db_session,
            payload=schemas.ReceiptRequest(lot=schemas.LotDetails(lot_number="L2"), **payload),
            actor_user_id="user-1",
        )
    assert db_session.query(models.ConsumableLot).count() == 1
    assert _on_hand(db_session, STORE, item, receipt.lot_id) == Decimal("10")

    [entry] = services.receive_stock(
        db_session,
        payload=schemas.ReceiptRequest(lot=schemas.LotDetails(lot_number=" L1 "), **payload),
        actor_user_id="user-1",
    )
    assert entry.lot_id == receipt.lot_id
    assert _on_hand(db_session, STORE, item, receipt.lot_id) == Decimal("12")


def test_second_receipt_reuses_lot(db_session, make_item):
    item = make_item()
    [first] = _receive(db_session, item, "10")
    [second] = _receive(db_session, item, "15", coa_url="https://docs.example/coa.pdf")

    assert first.lot_id == second.lot_id
    assert _on_hand(db_session, STORE, item, first.lot_id) == Decimal("25")
    assert registry.get_lot(db_session, first.lot_id).coa_url == "https://docs.example/coa.pdf"


def test_receipt_of_lot_tracked_item_needs_lot(db_session, make_item):
    item = make_item()
    with pytest.raises(LotRequired):
        _receive(db_session, item, "10", lot_number=None)
    assert _ledger_count(db_session) == 0


def test_receipt_rejects_incompatible_unit(db_session, make_item):
    item = make_item()
    with pytest.raises(IncompatibleUnit):
        _receive(db_session, item, "10", uom="L")
    assert db_session.query(models.ConsumableLot).count() == 0


def test_unknown_item_is_rejected(db_session, make_item):
    with pytest.raises(ItemNotFound):
        services.consume_stock(
            db_session,
            payload=schemas.ConsumeRequest(
                item_id=9999, qty=Decimal("1"), uom="kg", holder_type="STORE", holder_id=STORE.holder_id
            ),
            actor_user_id="user-1",
        )


def test_consume_more_than_on_hand_changes_nothing(db_session, make_item):
    item = make_item()
    [receipt] = _receive(db_session, item, "20", to_holder=OFFICE)

    with pytest.raises(InsufficientStock):
        services.consume_stock(
            db_session,
            payload=schemas.ConsumeRequest(
                item_id=item.id, qty=Decimal("50"), uom="kg", holder_type="OFFICE", holder_id=OFFICE.holder_id
            ),
            actor_user_id="user-1",
        )

    assert _ledger_count(db_session) == 1
    assert _on_hand(db_session, OFFICE, item, receipt.lot_id) == Decimal("20")


def test_consume_more_than_lot_balance_with_explicit_lot_changes_nothing(db_session, make_item):
    item = make_item()
    [receipt] = _receive(db_session, item, "20", to_holder=OFFICE)

    with pytest.raises(InsufficientStock):
        services.consume_stock(
            db_session,
            payload=schemas.ConsumeRequest(
                item_id=item.id,
                qty=Decimal("50"),
                uom="kg",
                lot_id=receipt.lot_id,
                holder_type="OFFICE",
                holder_id=OFFICE.holder_id,
            ),
            actor_user_id="user-1",
        )

    assert _ledger_count(db_session) == 1
    assert _on_hand(db_session, OFFICE, item, receipt.lot_id) == Decimal("20")


def test_adjust_decrease_without_reason_is_rejected(db_session, make_item, reason_codes):
    item = make_item()
    [receipt] = _receive(db_session, item, "20")

    with pytest.raises(ReasonCodeRequired):
        services.adjust_stock(
            db_session,
            payload=schemas.AdjustRequest(
                item_id=item.id,
                qty=Decimal("5"),
                uom="kg",
                lot_id=receipt.lot_id,
                holder_type="STORE",
                holder_id=STORE.holder_id,
                direction="DECREASE",
            ),
            actor_user_id="user-1",
        )

    assert _ledger_count(db_session) == 1
    assert _on_hand(db_session, STORE, item, receipt.lot_id) == Decimal("20")


def test_adjust_rejects_reason_from_other_category(db_session, make_item, reason_codes):
    item = make_item()
    [receipt] = _receive(db_session, item, "20")

    with pytest.raises(InvalidReasonCode):
        services.adjust_stock(
            db_session,
            payload=schemas.AdjustRequest(
                item_id=item.id,
                qty=Decimal("5"),
                uom="kg",
                lot_id=receipt.lot_id,
                holder_type="STORE",
                holder_id=STORE.holder_id,
                direction="DECREASE",
                reason_code_id=reason_codes["DISPOSE"].id,
            ),
            actor_user_id="user-1",
        )


def test_adjust_increase_and_decrease_post_one_sided_entries(db_session, make_item, reason_codes):
    item = make_item()
    [receipt] = _receive(db_session, item, "20")
    base = dict(
        item_id=item.id,
        uom="kg",
        lot_id=receipt.lot_id,
        holder_type="STORE",
        holder_id=STORE.holder_id,
        reason_code_id=reason_codes["ADJUST"].id,
    )

    [up] = services.adjust_stock(
        db_session,
        payload=schemas.AdjustRequest(qty=Decimal("3"), direction="INCREASE", **base),
        actor_user_id="user-1",
    )
    [down] = services.adjust_stock(
        db_session,
        payload=schemas.AdjustRequest(qty=Decimal("8"), direction="DECREASE", **base),
        actor_user_id="user-1",
    )
    db_session.commit()

    assert up.to_holder == STORE and up.from_holder is None
    assert down.from_holder == STORE and down.to_holder is None
    assert up.reason_code_id == reason_codes["ADJUST"].id
    assert down.metadata_json["direction"] == "DECREASE"
    assert _on_hand(db_session, STORE, item, receipt.lot_id) == Decimal("15")
    _assert_replay_matches(db_session, BalanceKey(STORE, item.id, receipt.lot_id))


def test_dispose_requires_dispose_reason(db_session, make_item, reason_codes):
    item = make_item()
    [receipt] = _receive(db_session, item, "20")
    payload = dict(
        item_id=item.id,
        qty=Decimal("4"),
        uom="kg",
        lot_id=receipt.lot_id,
        holder_type="STORE",
        holder_id=STORE.holder_id,
    )

    with pytest.raises(ReasonCodeRequired):
        services.dispose_stock(db_session, payload=schemas.DisposeRequest(**payload), actor_user_id="user-1")

    [entry] = services.dispose_stock(
        db_session,
        payload=schemas.DisposeRequest(reason_code_id=reason_codes["DISPOSE"].id, **payload),
        actor_user_id="user-1",
    )
    assert entry.tx_type == models.TxTypeEnum.DISPOSE
    assert entry.to_holder is None
    assert _on_hand(db_session, STORE, item, receipt.lot_id) == Decimal("16")


def test_override_allows_negative_balance_with_note(db_session, make_item):
    item = make_item()
    [receipt] = _receive(db_session, item, "20", to_holder=OFFICE)
    payload = dict(
        item_id=item.id,
        qty=Decimal("30"),
        uom="kg",
        holder_type="OFFICE",
        holder_id=OFFICE.holder_id,
        allow_negative=True,
    )

    with pytest.raises(OverrideNoteRequired):
        services.consume_stock(db_session, payload=schemas.ConsumeRequest(**payload), actor_user_id="user-1")

    [entry] = services.consume_stock(
        db_session,
        payload=schemas.ConsumeRequest(override_note="Counted short after audit", **payload),
        actor_user_id="user-1",
    )
    db_session.commit()

    assert entry.lot_id == receipt.lot_id
    assert entry.metadata_json == {"override_negative": True, "override_note": "Counted short after audit"}
    assert _on_hand(db_session, OFFICE, item, receipt.lot_id) == Decimal("-10")
    _assert_replay_matches(db_session, BalanceKey(OFFICE, item.id, receipt.lot_id))


def test_caller_metadata_is_kept_beside_override_keys(db_session, make_item):
    item = make_item()
    _receive(db_session, item, "5", to_holder=OFFICE)

    [entry] = services.consume_stock(
        db_session,
        payload=schemas.ConsumeRequest(
            item_id=item.id,
            qty=Decimal("8"),
            uom="kg",
            holder_type="OFFICE",
            holder_id=OFFICE.holder_id,
            allow_negative=True,
            override_note="Bench count pending",
            metadata={"work_order": "W1", "override_note": "from the client"},
        ),
        actor_user_id="user-1",
    )
    db_session.commit()

    assert entry.metadata_json == {
        "work_order": "W1",
        "override_negative": True,
        "override_note": "Bench count pending",
    }


def test_receipt_keeps_caller_metadata(db_session, make_item):
    item = make_item()
    payload = schemas.ReceiptRequest(
        item_id=item.id,
        qty=Decimal("5"),
        uom="kg",
        lot=schemas.LotDetails(lot_number="L1"),
        metadata={"po_number": "PO-7"},
    )
    [entry] = services.receive_stock(db_session, payload=payload, actor_user_id="user-1")

    assert entry.metadata_json == {"po_number": "PO-7"}


def test_transfer_between_same_holder_is_rejected(db_session, make_item):
    item = make_item()
    _receive(db_session, item, "20")

    with pytest.raises(InvalidHolder):
        services.transfer_stock(
            db_session,
            payload=schemas.TransferRequest(
                item_id=item.id,
                qty=Decimal("1"),
                uom="kg",
                from_holder_type="STORE",
                from_holder_id=STORE.holder_id,
                to_holder_type="STORE",
                to_holder_id=STORE.holder_id,
            ),
            actor_user_id="user-1",
        )


def test_transfer_to_unknown_holder_is_rejected(db_session, make_item):
    item = make_item()
    [receipt] = _receive(db_session, item, "20")
    directory = StaticHolderDirectory([STORE, OFFICE])

    with pytest.raises(InvalidHolder):
        services.transfer_stock(
            db_session,
            payload=schemas.TransferRequest(
                item_id=item.id,
                qty=Decimal("1"),
                uom="kg",
                from_holder_type="STORE",
                from_holder_id=STORE.holder_id,
                to_holder_type="EMPLOYEE",
                to_holder_id="GHOST",
            ),
            actor_user_id="user-1",
            directory=directory,
        )
    assert _on_hand(db_session, STORE, item, receipt.lot_id) == Decimal("20")


def test_return_goes_back_to_central_store(db_session, make_item):
    item = make_item()
    [receipt] = _receive(db_session, item, "10", to_holder=EMPLOYEE)

    [entry] = services.return_stock(
        db_session,
        payload=schemas.ReturnRequest(
            item_id=item.id,
            qty=Decimal("4"),
            uom="kg",
            from_holder_type="EMPLOYEE",
            from_holder_id=EMPLOYEE.holder_id,
        ),
        actor_user_id="user-1",
    )

    assert entry.tx_type == models.TxTypeEnum.RETURN
    assert entry.from_holder == EMPLOYEE
    assert entry.to_holder == STORE
    assert _on_hand(db_session, EMPLOYEE, item, receipt.lot_id) == Decimal("6")
    assert _on_hand(db_session, STORE, item, receipt.lot_id) == Decimal("4")


def test_return_to_non_store_is_rejected(db_session, make_item):
    item = make_item()
    _receive(db_session, item, "10", to_holder=EMPLOYEE)

    with pytest.raises(InvalidHolder):
        services.return_stock(
            db_session,
            payload=schemas.ReturnRequest(
                item_id=item.id,
                qty=Decimal("4"),
                uom="kg",
                from_holder_type="EMPLOYEE",
                from_holder_id=EMPLOYEE.holder_id,
                to_holder_type="OFFICE",
                to_holder_id=OFFICE.holder_id,
            ),
            actor_user_id="user-1",
        )


def test_return_without_holder_id_needs_store_type(db_session, make_item):
    item = make_item()
    [receipt] = _receive(db_session, item, "10", to_holder=EMPLOYEE)

    with pytest.raises(InvalidHolder):
        services.return_stock(
            db_session,
            payload=schemas.ReturnRequest(
                item_id=item.id,
                qty=Decimal("4"),
                uom="kg",
                from_holder_type="EMPLOYEE",
                from_holder_id=EMPLOYEE.holder_id,
                to_holder_type="OFFICE",
            ),
            actor_user_id="user-1",
        )
    assert _on_hand(db_session, EMPLOYEE, item, receipt.lot_id) == Decimal("10")
    assert _on_hand(db_session, STORE, item, receipt.lot_id) == Decimal("0")


def test_untracked_item_rejects_lot_reference(db_session, make_item):
    item = make_item("Paper towels", base_uom="ea", requires_lot_tracking=False)
    tracked = make_item()
    [other] = _receive(db_session, tracked, "1")
    _receive(db_session, item, "24", uom="ea", lot_number=None)

    with pytest.raises(InvalidLot):
        services.consume_stock(
            db_session,
            payload=schemas.ConsumeRequest(
                item_id=item.id,
                qty=Decimal("1"),
                uom="ea",
                lot_id=other.lot_id,
                holder_type="STORE",
                holder_id=STORE.holder_id,
            ),
            actor_user_id="user-1",
        )

    [entry] = services.consume_stock(
        db_session,
        payload=schemas.ConsumeRequest(
            item_id=item.id, qty=Decimal("2"), uom="dozen", holder_type="STORE", holder_id=STORE.holder_id
        ),
        actor_user_id="user-1",
    )
    assert entry.lot_id is None
    assert entry.qty_base == Decimal("24")
    assert _on_hand(db_session, STORE, item) == Decimal("0")


def test_opening_balance_posts_once_per_key(db_session, make_item):
    item = make_item("Gloves", base_uom="ea", requires_lot_tracking=False)
    line = dict(holder_type="OFFICE", holder_id=OFFICE.holder_id, item_id=item.id, qty=Decimal("50"), uom="ea")

    entries = services.post_opening_balance(
        db_session,
        payload=schemas.OpeningBalanceRequest(
            entries=[line, dict(line, holder_id="O2", qty=Decimal("5"))],
            reference="GO-LIVE",
        ),
        actor_user_id="user-1",
    )
    db_session.commit()

    assert [entry.tx_type for entry in entries] == [models.TxTypeEnum.OPENING_BALANCE] * 2
    assert all(entry.reference == "GO-LIVE" for entry in entries)
    assert _on_hand(db_session, OFFICE, item) == Decimal("50")

    with pytest.raises(DuplicateOpeningBalance):
        services.post_opening_balance(
            db_session,
            payload=schemas.OpeningBalanceRequest(entries=[line]),
            actor_user_id="user-1",
        )
    assert _on_hand(db_session, OFFICE, item) == Decimal("50")
    assert _ledger_count(db_session) == 2


def test_opening_balance_line_reference_and_metadata(db_session, make_item):
    item = make_item("Gloves", base_uom="ea", requires_lot_tracking=False)
    line = dict(holder_type="OFFICE", item_id=item.id, qty=Decimal("10"), uom="ea")

    first, second = services.post_opening_balance(
        db_session,
        payload=schemas.OpeningBalanceRequest(
            entries=[
                dict(line, holder_id="O1", reference="COUNT-O1", metadata={"sheet": 3}),
                dict(line, holder_id="O2"),
            ],
            reference="GO-LIVE",
        ),
        actor_user_id="user-1",
    )

    assert first.reference == "COUNT-O1"
    assert first.metadata_json == {"sheet": 3}
    assert second.reference == "GO-LIVE"
    assert second.metadata_json == {}


def test_opening_balance_rejects_repeated_key_in_one_request(db_session, make_item):
    item = make_item("Gloves", base_uom="ea", requires_lot_tracking=False)
    line = dict(holder_type="STORE", holder_id=STORE.holder_id, item_id=item.id, qty=Decimal("5"), uom="ea")

    with pytest.raises(DuplicateOpeningBalance):
        services.post_opening_balance(
            db_session,
            payload=schemas.OpeningBalanceRequest(entries=[line, line]),
            actor_user_id="user-1",
        )
    assert _ledger_count(db_session) == 0
    assert balances.get_balance(db_session, BalanceKey(STORE, item.id)) is None


def test_opening_balance_after_receipt_is_rejected(db_session, make_item):
    item = make_item()
    [receipt] = _receive(db_session, item, "5")

    with pytest.raises(DuplicateOpeningBalance):
        services.post_opening_balance(
            db_session,
            payload=schemas.OpeningBalanceRequest(
                entries=[
                    dict(
                        holder_type="STORE",
                        holder_id=STORE.holder_id,
                        item_id=item.id,
                        lot_id=receipt.lot_id,
                        qty=Decimal("5"),
                        uom="kg",
                    )
                ]
            ),
            actor_user_id="user-1",
        )


def test_every_movement_writes_an_audit_event(db_session, make_item):
    item = make_item()
    [receipt] = _receive(db_session, item, "10")

    events = audit_services.list_audit_events(db_session, action="consumables.receive")
    assert len(events) == 1
    assert events[0].entity_id == receipt.id
    assert events[0].actor_user_id == "user-1"
    assert events[0].after["entry_ids"] == [receipt.id]


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


@pytest.fixture()
def solvent(make_item):
    return make_item("Acetone", base_uom="mL", requires_container_tracking=True, is_hazardous=True)


def _receive_bottles(db, item):
    [receipt] = _receive(
        db,
        item,
        "2",
        uom="L",
        lot_number="AC-1",
        containers=[
            schemas.ContainerSpec(container_code="B1", initial_qty=Decimal("1"), uom="L"),
            schemas.ContainerSpec(container_code="B2", initial_qty=Decimal("1000"), uom="mL"),
        ],
    )
    containers = {c.container_code: c for c in registry.list_containers(db, lot_id=receipt.lot_id)}
    return receipt, containers


def test_container_receipt_creates_containers(db_session, solvent):
    receipt, containers = _receive_bottles(db_session, solvent)

    assert sorted(containers) == ["B1", "B2"]
    assert all(c.current_qty_base == Decimal("1000") for c in containers.values())
    assert all(c.location == STORE for c in containers.values())
    assert receipt.metadata_json["container_ids"] == sorted(c.id for c in containers.values())
    assert _on_hand(db_session, STORE, solvent, receipt.lot_id) == Decimal("2000")


def test_container_quantities_must_sum_to_receipt(db_session, solvent):
    with pytest.raises(InvalidQuantity):
        _receive(
            db_session,
            solvent,
            "2",
            uom="L",
            lot_number="AC-1",
            containers=[schemas.ContainerSpec(container_code="B1", initial_qty=Decimal("1"), uom="L")],
        )
    assert db_session.query(models.ConsumableLot).count() == 0
    assert db_session.query(models.ConsumableContainer).count() == 0


def test_container_tracked_receipt_needs_containers(db_session, solvent):
    with pytest.raises(ContainerRequired):
        _receive(db_session, solvent, "1", uom="L", lot_number="AC-1")


def test_container_tracked_consume_needs_container(db_session, solvent):
    receipt, _ = _receive_bottles(db_session, solvent)

    with pytest.raises(ContainerRequired):
        services.consume_stock(
            db_session,
            payload=schemas.ConsumeRequest(
                item_id=solvent.id,
                qty=Decimal("10"),
                uom="mL",
                lot_id=receipt.lot_id,
                holder_type="STORE",
                holder_id=STORE.holder_id,
            ),
            actor_user_id="user-1",
        )


def test_consume_and_dispose_from_container(db_session, solvent, reason_codes):
    receipt, containers = _receive_bottles(db_session, solvent)
    bottle = containers["B1"]
    movement = dict(item_id=solvent.id, uom="mL", container_id=bottle.id, holder_type="STORE", holder_id=STORE.holder_id)

    [entry] = services.consume_stock(
        db_session, payload=schemas.ConsumeRequest(qty=Decimal("250"), **movement), actor_user_id="user-1"
    )
    assert entry.container_id == bottle.id
    assert entry.lot_id == receipt.lot_id
    assert bottle.current_qty_base == Decimal("750")
    assert bottle.opened_date is not None

    with pytest.raises(InsufficientStock):
        services.consume_stock(
            db_session, payload=schemas.ConsumeRequest(qty=Decimal("800"), **movement), actor_user_id="user-1"
        )

    services.dispose_stock(
        db_session,
        payload=schemas.DisposeRequest(qty=Decimal("750"), reason_code_id=reason_codes["DISPOSE"].id, **movement),
        actor_user_id="user-1",
    )
    db_session.commit()

    db_session.refresh(bottle)
    assert bottle.current_qty_base == Decimal("0")
    assert bottle.status == models.ContainerStatusEnum.DISPOSED
    assert _on_hand(db_session, STORE, solvent, receipt.lot_id) == Decimal("1000")

    with pytest.raises(InvalidContainer):
        services.consume_stock(
            db_session, payload=schemas.ConsumeRequest(qty=Decimal("1"), **movement), actor_user_id="user-1"
        )


def test_container_transfer_moves_whole_container(db_session, solvent):
    receipt, containers = _receive_bottles(db_session, solvent)
    bottle = containers["B2"]
    movement = dict(
        item_id=solvent.id,
        uom="mL",
        container_id=bottle.id,
        from_holder_type="STORE",
        from_holder_id=STORE.holder_id,
        to_holder_type="OFFICE",
        to_holder_id=OFFICE.holder_id,
    )

    with pytest.raises(InvalidQuantity):
        services.transfer_stock(
            db_session, payload=schemas.TransferRequest(qty=Decimal("500"), **movement), actor_user_id="user-1"
        )

    services.transfer_stock(
        db_session, payload=schemas.TransferRequest(qty=Decimal("1"), **dict(movement, uom="L")), actor_user_id="user-1"
    )
    db_session.commit()

    db_session.refresh(bottle)
    assert bottle.location == OFFICE
    assert bottle.current_qty_base == Decimal("1000")
    assert _on_hand(db_session, OFFICE, solvent, receipt.lot_id) == Decimal("1000")
    assert _on_hand(db_session, STORE, solvent, receipt.lot_id) == Decimal("1000")


def test_container_held_elsewhere_is_rejected(db_session, solvent):
    _, containers = _receive_bottles(db_session, solvent)

    with pytest.raises(InvalidContainer):
        services.consume_stock(
            db_session,
            payload=schemas.ConsumeRequest(
                item_id=solvent.id,
                qty=Decimal("10"),
                uom="mL",
                container_id=containers["B1"].id,
                holder_type="OFFICE",
                holder_id=OFFICE.holder_id,
            ),
            actor_user_id="user-1",
        )


def test_adjust_increase_refills_empty_container(db_session, solvent, reason_codes):
    receipt, containers = _receive_bottles(db_session, solvent)
    bottle = containers["B1"]
    movement = dict(
        item_id=solvent.id,
        uom="mL",
        container_id=bottle.id,
        holder_type="STORE",
        holder_id=STORE.holder_id,
        reason_code_id=reason_codes["ADJUST"].id,
    )

    services.adjust_stock(
        db_session,
        payload=schemas.AdjustRequest(qty=Decimal("1000"), direction="DECREASE", **movement),
        actor_user_id="user-1",
    )
    assert bottle.status == models.ContainerStatusEnum.EMPTY

    services.adjust_stock(
        db_session,
        payload=schemas.AdjustRequest(qty=Decimal("100"), direction="INCREASE", **movement),
        actor_user_id="user-1",
    )
    assert bottle.status == models.ContainerStatusEnum.IN_STOCK
    assert bottle.current_qty_base == Decimal("100")
    assert _on_hand(db_session, STORE, solvent, receipt.lot_id) == Decimal("1100")


def test_report_container_lost_writes_off_remaining(db_session, solvent, reason_codes):
    receipt, containers = _receive_bottles(db_session, solvent)
    bottle = containers["B2"]

    entries = services.report_container_lost(
        db_session,
        container_id=bottle.id,
        payload=schemas.ContainerLostRequest(reason_code_id=reason_codes["ADJUST"].id, notes="Not found at count"),
        actor_user_id="user-1",
    )
    db_session.commit()

    [entry] = entries
    assert entry.tx_type == models.TxTypeEnum.ADJUST
    assert entry.qty_base == Decimal("1000")
    assert entry.metadata_json["container_lost"] is True
    db_session.refresh(bottle)
    assert bottle.status == models.ContainerStatusEnum.LOST
    assert bottle.current_qty_base == Decimal("0")
    assert _on_hand(db_session, STORE, solvent, receipt.lot_id) == Decimal("1000")
    assert len(audit_services.list_audit_events(db_session, action="consumables.container_lost")) == 1

    with pytest.raises(InvalidContainer):
        services.report_container_lost(
            db_session,
            container_id=bottle.id,
            payload=schemas.ContainerLostRequest(reason_code_id=reason_codes["ADJUST"].id),
            actor_user_id="user-1",
        )


def test_concurrent_consumes_cannot_both_drain_balance(file_engine):
    Session = sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)
    with Session() as setup:
        item = models.ConsumableItem(name="Gloves", base_uom="ea", requires_lot_tracking=False)
        setup.add(item)
        setup.commit()
        _receive(setup, item, "20", lot_number=None, uom="ea", to_holder=OFFICE)

    barrier = threading.Barrier(2)
    results = []

    def consume():
        with Session() as db:
            barrier.wait(timeout=10)
            try:
                services.consume_stock(
                    db,
                    payload=schemas.ConsumeRequest(
                        item_id=item.id,
                        qty=Decimal("15"),
                        uom="ea",
                        holder_type="OFFICE",
                        holder_id=OFFICE.holder_id,
                    ),
                    actor_user_id="user-1",
                )
                db.commit()
                results.append("ok")
            except InsufficientStock:
                db.rollback()
                results.append("insufficient")

    workers = [threading.Thread(target=consume) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=60)

    assert sorted(results) == ["insufficient", "ok"]
    key = BalanceKey(OFFICE, item.id, None)
    with Session() as check:
        assert balances.on_hand(check, key) == Decimal("5")
        assert ledger.replay_balance(check, key) == Decimal("5")
        assert check.query(models.ConsumableLedgerEntry).count() == 2
