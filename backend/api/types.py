"""Common type aliases for the personnel board API."""
from typing import Any

# Roster slot in wire shape, tagged with its occupancy
SlotRecord = dict[str, Any]
# Frequency table entry {value, label, count}
FilterOption = dict[str, Any]

SlotList = list[SlotRecord]
FilterOptionList = list[FilterOption]
