"""
Unit conversion for consumable quantities.

Units are grouped (mass, volume, count). Each unit carries a multiplier to
the base of its group (g, mL, ea). Conversion is only defined inside a group;
everything else is an `IncompatibleUnit`.

All arithmetic is Decimal; floats are taken through their string form.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from . import models
from .errors import IncompatibleUnit, InvalidQuantity

QUANTITY_EXPONENT = Decimal(1).scaleb(-models.QTY_SCALE)


def quantize(value) -> Decimal:
    """Round to ledger precision (6 dp, half-up)."""
    try:
        return as_decimal(value).quantize(QUANTITY_EXPONENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidQuantity(f"Quantity {value!r} is out of range.")


def as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # str() keeps the literal the caller typed rather than the binary expansion.
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidQuantity(f"Quantity {value!r} is not a number.")


@dataclass(frozen=True)
class UnitDefinition:
    code: str
    name: str
    group: str
    to_base: Decimal
    aliases: Tuple[str, ...] = field(default_factory=tuple)


DEFAULT_UNITS: Sequence[UnitDefinition] = (
    UnitDefinition("mg", "Milligram", "mass", Decimal("0.001"), ("milligram", "milligrams")),
    UnitDefinition("g", "Gram", "mass", Decimal("1"), ("gram", "grams", "gm")),
    UnitDefinition("kg", "Kilogram", "mass", Decimal("1000"), ("kilogram", "kilograms", "kgs")),
    UnitDefinition("mL", "Millilitre", "volume", Decimal("1"), ("ml", "millilitre", "milliliter")),
    UnitDefinition("L", "Litre", "volume", Decimal("1000"), ("l", "litre", "liter", "ltr")),
    UnitDefinition("ea", "Each", "count", Decimal("1"), ("each", "pcs", "piece", "unit", "nos")),
    UnitDefinition("dozen", "Dozen", "count", Decimal("12"), ("dz", "doz")),
)


class UnitTable:
    """Immutable lookup over a set of unit definitions."""

    def __init__(self, definitions: Iterable[UnitDefinition]) -> None:
        self._units: Dict[str, UnitDefinition] = {}
        self._lookup: Dict[str, UnitDefinition] = {}
        for definition in definitions:
            self._units[definition.code] = definition
            for token in (definition.code, *definition.aliases):
                self._lookup.setdefault(token.strip().lower(), definition)

    def __contains__(self, code: str) -> bool:
        return self.find(code) is not None

    def __len__(self) -> int:
        return len(self._units)

    def find(self, code: Optional[str]) -> Optional[UnitDefinition]:
        if not code:
            return None
        exact = self._units.get(code.strip())
        if exact is not None:
            return exact
        return self._lookup.get(code.strip().lower())

    def resolve(self, code: Optional[str]) -> UnitDefinition:
        definition = self.find(code)
        if definition is None:
            raise IncompatibleUnit(f"Unknown unit '{code}'.", context={"unit": code})
        return definition

    def convert(self, quantity, from_unit: str, to_unit: str) -> Decimal:
        source = self.resolve(from_unit)
        target = self.resolve(to_unit)
        if source.group != target.group:
            raise IncompatibleUnit(
                f"Cannot convert {source.code} ({source.group}) to {target.code} ({target.group}).",
                context={"from_unit": source.code, "to_unit": target.code},
            )
        amount = as_decimal(quantity)
        if source.code == target.code:
            return amount
        return amount * source.to_base / target.to_base

    def compatible_units(self, base_unit: str) -> List[str]:
        base = self.find(base_unit)
        if base is None:
            return []
        return [
            definition.code
            for definition in sorted(self._units.values(), key=lambda d: (d.to_base, d.code))
            if definition.group == base.group
        ]


def to_base_quantity(table: UnitTable, quantity, entered_uom: str, base_uom: str) -> Decimal:
    """Convert an entered quantity to the item's base unit.

    The converted amount must be exact at ledger precision (6 dp); finer
    amounts raise `InvalidQuantity` rather than being rounded per entry.
    """
    exact = table.convert(quantity, entered_uom, base_uom)
    converted = quantize(exact)
    if converted != exact:
        raise InvalidQuantity(
            f"Quantity is finer than {QUANTITY_EXPONENT} {base_uom}; enter it in a unit that converts exactly.",
            context={"quantity": str(quantity), "uom": entered_uom, "base_uom": base_uom},
        )
    if converted <= 0:
        raise InvalidQuantity(
            "Quantity must be greater than zero after conversion.",
            context={"quantity": str(quantity), "uom": entered_uom},
        )
    return converted


def _definition_from_row(row: models.ConsumableUnit) -> UnitDefinition:
    group = row.group.value if hasattr(row.group, "value") else str(row.group)
    return UnitDefinition(
        code=row.code,
        name=row.name,
        group=group,
        to_base=Decimal(row.to_base),
        aliases=tuple(row.aliases or ()),
    )


def load_unit_table(db: Session, *, active_only: bool = False) -> UnitTable:
    """Build a table from the unit rows; an unseeded database gets the defaults."""
    rows = db.query(models.ConsumableUnit).order_by(models.ConsumableUnit.id.asc()).all()
    if not rows:
        return UnitTable(DEFAULT_UNITS)
    if active_only:
        rows = [row for row in rows if row.is_active]
    return UnitTable(_definition_from_row(row) for row in rows)


def seed_default_units(db: Session) -> int:
    existing = {code for (code,) in db.query(models.ConsumableUnit.code).all()}
    created = 0
    for definition in DEFAULT_UNITS:
        if definition.code in existing:
            continue
        db.add(
            models.ConsumableUnit(
                code=definition.code,
                name=definition.name,
                group=models.UnitGroupEnum(definition.group),
                to_base=definition.to_base,
                aliases=list(definition.aliases),
                is_active=True,
            )
        )
        created += 1
    db.flush()
    return created
