from __future__ import annotations

from typing import Any, Dict, Optional


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class InventoryError(Exception):
    """Base class for consumables engine failures.

    `status_code` is the HTTP status the router answers with; `code` is the
    stable machine-readable name clients switch on.
    """

    status_code = 400
    code = "inventory_error"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "detail": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


# Validation errors: caller-correctable, never retried.


class ItemNotFound(InventoryError):
    status_code = 404
    code = "item_not_found"


class InvalidHolder(InventoryError):
    code = "invalid_holder"


class LotRequired(InventoryError):
    code = "lot_required"


class InvalidLot(InventoryError):
    code = "invalid_lot"


class InvalidContainer(InventoryError):
    code = "invalid_container"


class IncompatibleUnit(InventoryError):
    code = "incompatible_unit"


class InvalidQuantity(InventoryError):
    code = "invalid_quantity"


class ReasonCodeRequired(InventoryError):
    code = "reason_code_required"


class InvalidReasonCode(InventoryError):
    code = "invalid_reason_code"


class OverrideNoteRequired(InventoryError):
    code = "override_note_required"


# State errors: business-rule rejections.


class InsufficientStock(InventoryError):
    status_code = 409
    code = "insufficient_stock"


class ContainerRequired(InventoryError):
    status_code = 409
    code = "container_required"


class ContainerQuantityOutOfRange(InventoryError):
    status_code = 409
    code = "container_quantity_out_of_range"


class DuplicateOpeningBalance(InventoryError):
    status_code = 409
    code = "duplicate_opening_balance"


# Integrity errors: the affected balance key stops accepting writes.


class LedgerIntegrityError(InventoryError):
    status_code = 500
    code = "ledger_integrity_error"


class BalanceFrozen(InventoryError):
    status_code = 423
    code = "balance_frozen"


class LedgerImmutableError(InventoryError):
    status_code = 500
    code = "ledger_immutable"
