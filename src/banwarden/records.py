from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterable, List, Optional


class Status(IntEnum):
    WHITELISTED = -1
    TRACKED = 0
    BANNED = 1


@dataclass
class AddressRecord:
    """
    One tracked address.

    - TRACKED: every attempt time still inside the retained window
    - BANNED: a single value, the effective ban-start time
    - WHITELISTED: short-circuits event processing for the address
    """

    address: str
    status: Status
    timestamps: List[int] = field(default_factory=list)

    @property
    def newest(self) -> int:
        return self.timestamps[-1]

    @property
    def ban_start(self) -> int:
        return self.timestamps[0]


def merge_times(existing: Iterable[int], new: Iterable[int]) -> List[int]:
    """Sorted, de-duplicated union of two timestamp sequences."""
    return sorted(set(int(t) for t in existing) | set(int(t) for t in new))


class RecordStore:
    """In-memory address -> record map with a "changed since last save" flag."""

    def __init__(self) -> None:
        self._records: Dict[str, AddressRecord] = {}
        self._dirty = False

    def get(self, address: str) -> Optional[AddressRecord]:
        return self._records.get(address)

    def upsert(self, record: AddressRecord) -> None:
        self._records[record.address] = record
        self._dirty = True

    def remove(self, address: str) -> None:
        if self._records.pop(address, None) is not None:
            self._dirty = True

    def all(self) -> List[AddressRecord]:
        return list(self._records.values())

    def clear(self) -> None:
        self._records.clear()
        self._dirty = True

    def count(self) -> int:
        return len(self._records)

    def is_dirty(self) -> bool:
        return self._dirty

    def mark_clean(self) -> None:
        self._dirty = False

    def __contains__(self, address: object) -> bool:
        return address in self._records

    def __len__(self) -> int:
        return len(self._records)
