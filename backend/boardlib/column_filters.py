"""
Value-frequency tables for the reconciled listing's column filters.

Labels mirror what the listing table shows in each column, so a filter value
always matches a visible cell.
"""
from collections import Counter
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .occupancy import Occupancy
from .reconciler import ListingQuery, build_listing

VACANT_LABEL = 'ตำแหน่งว่าง'
RESERVED_LABEL = 'ว่าง (กันตำแหน่ง)'
UNSPECIFIED_LABEL = '(ไม่ระบุ)'

PAGE_SIZE = 1000
MAX_OPTIONS = 200

COLUMNS = ('incomingPerson', 'currentHolder', 'currentPosition', 'newPosition', 'supporter', 'reason')


def format_name(rank: Optional[str], name: Optional[str]) -> str:
    return ' '.join(part for part in (rank, name) if part).strip()


def _open_label(occupancy: Optional[Occupancy]) -> str:
    return RESERVED_LABEL if occupancy is Occupancy.RESERVED else VACANT_LABEL


def _is_person(record: Optional[dict]) -> bool:
    return record is not None and record['occupancy'] is Occupancy.OCCUPIED


def incoming_label(row: dict) -> Optional[str]:
    if not _is_person(row):
        return None
    if row['transaction']:
        return format_name(row.get('rank'), row.get('fullName')) or None
    replaced = row.get('replacedPerson')
    if _is_person(replaced):
        return format_name(replaced.get('rank'), replaced.get('fullName')) or None
    return None


def current_holder_label(row: dict) -> str:
    replaced = row.get('replacedPerson')
    if replaced is not None:
        if _is_person(replaced):
            return format_name(replaced.get('rank'), replaced.get('fullName')) or VACANT_LABEL
        return _open_label(replaced['occupancy'])
    if row['transaction']:
        return VACANT_LABEL
    if _is_person(row):
        return format_name(row.get('rank'), row.get('fullName')) or VACANT_LABEL
    return _open_label(row['occupancy'])


def current_position_label(row: dict) -> Optional[str]:
    replaced = row.get('replacedPerson')
    if _is_person(replaced):
        position = replaced.get('fromPosition')
    elif row['transaction']:
        position = row.get('toPosition') or row.get('fromPosition')
    elif not _is_person(row):
        # An unfilled vacancy shows a chip, not a position
        return None
    else:
        position = row.get('fromPosition') or row.get('toPosition')
    return (position or '').strip() or None


def new_position_label(row: dict) -> Optional[str]:
    replaced = row.get('replacedPerson') or {}
    position = row.get('toPosition') or replaced.get('fromPosition')
    return (position or '').strip() or None


def supporter_label(row: dict) -> str:
    return (row.get('supporterName') or '').strip() or UNSPECIFIED_LABEL


def reason_label(row: dict) -> str:
    return (row.get('supportReason') or '').strip() or UNSPECIFIED_LABEL


_LABELLERS = {
    'incomingPerson': incoming_label,
    'currentHolder': current_holder_label,
    'currentPosition': current_position_label,
    'newPosition': new_position_label,
    'supporter': supporter_label,
    'reason': reason_label,
}


def _options(counter: Counter) -> List[Dict]:
    ranked = sorted(counter.items(), key=lambda item: -item[1])[:MAX_OPTIONS]
    return [{'value': value, 'label': value, 'count': count} for value, count in ranked]


def aggregate(rows: Iterable[dict]) -> Dict[str, List[Dict]]:
    counters = {column: Counter() for column in COLUMNS}
    for row in rows:
        for column, labeller in _LABELLERS.items():
            label = (labeller(row) or '').strip()
            if label:
                counters[column][label] += 1
    return {column: _options(counters[column]) for column in COLUMNS}


def iter_all_rows(db, query: ListingQuery, page_size: int = PAGE_SIZE):
    """Walk every page of the listing for ``query`` (search and paging ignored)."""
    page = 0
    seen = 0
    while True:
        data = build_listing(db, replace(query, search='', page=page, page_size=page_size))
        rows = data['swapDetails']
        yield from rows
        seen += len(rows)
        if not rows or seen >= data['totalCount']:
            break
        page += 1


def compute_column_filters(db, query: ListingQuery) -> Dict[str, List[Dict]]:
    return aggregate(iter_all_rows(db, query))
