"""
Slot occupancy and slot identity helpers.

The roster encodes "nobody holds this slot" as placeholder names rather than a
flag. Those names are classified exactly once, when a row leaves the database
layer; everything downstream reads the resulting ``Occupancy`` tag.
"""
from enum import Enum
from typing import NamedTuple, Optional


VACANT_NAMES = frozenset({
    'ว่าง',
    'ตำแหน่งว่าง',
    '[รอการเลือกบุคลากร]',
    '[Waiting]',
})
RESERVED_NAMES = frozenset({
    'ว่าง (กันตำแหน่ง)',
    'ว่าง(กันตำแหน่ง)',
})
RESERVED_MARKER = 'กันตำแหน่ง'


class Occupancy(str, Enum):
    OCCUPIED = 'occupied'
    VACANT = 'vacant'
    RESERVED = 'reserved'

    @property
    def is_open(self) -> bool:
        """True for slots nobody holds (vacant or reserved)."""
        return self is not Occupancy.OCCUPIED


def classify_occupancy(full_name: Optional[str]) -> Occupancy:
    name = (full_name or '').strip()
    if not name or name in VACANT_NAMES:
        return Occupancy.VACANT
    if name in RESERVED_NAMES:
        return Occupancy.RESERVED
    # Imported rosters also carry free variants like "ว่าง  (กันตำแหน่ง)"
    if name.startswith('ว่าง') and RESERVED_MARKER in name:
        return Occupancy.RESERVED
    return Occupancy.OCCUPIED


class SlotKey(NamedTuple):
    """Durable identity of a roster slot within a fiscal year."""
    unit: str
    position_number: str

    @classmethod
    def of(cls, unit: Optional[str], position_number: Optional[str]) -> Optional['SlotKey']:
        """Build a key, or None when either half is missing."""
        if not unit or not position_number:
            return None
        return cls(str(unit), str(position_number))
