"""
Holder identity for stock balances.

A holder is any party that physically possesses stock. The key shape
(holder_type, holder_id) is shared by balances, ledger entries and container
locations; whether a given holder exists is answered by the office/store/
employee directory, which is injected as a `HolderDirectory`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Set, Tuple

from .errors import InvalidHolder


class HolderType(str, enum.Enum):
    OFFICE = "OFFICE"
    STORE = "STORE"
    EMPLOYEE = "EMPLOYEE"
    SUB_LOCATION = "SUB_LOCATION"


@dataclass(frozen=True, order=True)
class Holder:
    holder_type: HolderType
    holder_id: str

    @classmethod
    def of(cls, holder_type: "HolderType | str", holder_id: object) -> "Holder":
        try:
            if isinstance(holder_type, HolderType):
                normalised_type = holder_type
            else:
                normalised_type = HolderType(str(holder_type or "").strip().upper())
        except ValueError:
            raise InvalidHolder(
                f"holder_type must be one of {', '.join(t.value for t in HolderType)}",
                context={"holder_type": holder_type},
            )
        normalised_id = str(holder_id or "").strip()
        if not normalised_id:
            raise InvalidHolder("holder_id is required")
        return cls(normalised_type, normalised_id)

    @property
    def is_store(self) -> bool:
        return self.holder_type == HolderType.STORE

    def as_dict(self) -> dict:
        return {"holder_type": self.holder_type.value, "holder_id": self.holder_id}

    def __str__(self) -> str:
        return f"{self.holder_type.value}:{self.holder_id}"


def holder_or_none(holder_type: Optional[str], holder_id: Optional[str]) -> Optional[Holder]:
    if not holder_type or not holder_id:
        return None
    return Holder.of(holder_type, holder_id)


class HolderDirectory(Protocol):
    """Answers whether a holder exists and may hold stock."""

    def is_valid(self, holder: Holder) -> bool:
        ...


class ShapeOnlyDirectory:
    """Accepts every well-formed holder.

    Used when no directory service is wired in; deployments override the
    `get_holder_directory` router dependency with a real lookup.
    """

    def is_valid(self, holder: Holder) -> bool:
        return bool(holder.holder_id)


class StaticHolderDirectory:
    """Directory backed by a fixed set of known holders."""

    def __init__(self, holders: Iterable[Holder | Tuple[str, str]]) -> None:
        self._known: Set[Holder] = set()
        for holder in holders:
            if not isinstance(holder, Holder):
                holder = Holder.of(*holder)
            self._known.add(holder)

    def add(self, holder: Holder) -> None:
        self._known.add(holder)

    def is_valid(self, holder: Holder) -> bool:
        return holder in self._known


def ensure_valid(directory: HolderDirectory, holder: Holder, *, label: str = "holder") -> Holder:
    if not directory.is_valid(holder):
        raise InvalidHolder(f"{label} {holder} is not a known holder", context=holder.as_dict())
    return holder
