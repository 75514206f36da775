"""
Personnel-movement reconciliation.

Merges the roster of one fiscal year with the year's completed movement
records and answers, per slot: who holds it, where the holder is going, who
arrives, and whether the slot is still open. Everything here is pure; the
database is only touched through ``build_listing``.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import MalformedTransactionError
from .occupancy import Occupancy, SlotKey

SWAP_TYPES = ('two-way', 'three-way', 'transfer', 'promotion-chain')
STATUS_FILTERS = ('all', 'vacant', 'reserved', 'occupied')
SWAP_TYPE_FILTERS = ('all', 'none', 'paired') + SWAP_TYPES

Row = Dict[str, Any]

# Personal fields copied verbatim from whichever record supplies the holder
_PERSONAL_KEYS = (
    'age', 'seniority', 'birthDate', 'education', 'lastAppointment',
    'currentRankSince', 'enrollmentDate', 'retirementDate', 'yearsOfService',
    'trainingLocation', 'trainingCourse',
)
_SEARCH_KEYS = (
    'fullName', 'nationalId', 'rank', 'fromUnit', 'fromPosition', 'fromPositionNumber',
    'toUnit', 'toPosition', 'toPositionNumber',
)
_DIGITS = re.compile(r'(\d+)')
_THAI_LEADING_VOWELS = frozenset('เแโใไ')
_THAI_TONE_MARKS = frozenset('่้๊๋์')


@dataclass
class ListingQuery:
    year: int
    unit: str = 'all'
    pos_code_id: Optional[int] = None
    status: str = 'all'
    swap_type: str = 'all'
    search: str = ''
    page: int = 0
    page_size: int = 10

    @property
    def scoped(self) -> bool:
        """True when the roster fetch is narrowed to part of the year."""
        return self.unit != 'all' or self.pos_code_id is not None

    def cache_key(self) -> tuple:
        return (self.unit, self.pos_code_id, self.status, self.swap_type, self.year)


@dataclass
class Reconciliation:
    rows: List[Row] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)


# ── Helpers ─────────────────────────────────────────────────────

def _no_id(record: Optional[dict]) -> Optional[str]:
    if not record or record.get('noId') is None:
        return None
    return str(record['noId'])


def _origin(row: dict) -> Optional[SlotKey]:
    return SlotKey.of(row.get('fromUnit'), row.get('fromPositionNumber'))


def _destination(record: dict) -> Optional[SlotKey]:
    return SlotKey.of(record.get('toUnit'), record.get('toPositionNumber'))


def _as_int(value) -> Optional[int]:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return None


def natural_key(value: str) -> tuple:
    """Split a string into alternating text/number parts for numeric-aware ordering."""
    return tuple(
        int(part) if i % 2 else part.casefold()
        for i, part in enumerate(_DIGITS.split(value))
    )


def thai_name_key(name: str) -> tuple:
    """Collation key for Thai names in dictionary order.

    A leading vowel is compared after the consonant it precedes, and tone
    marks only break ties, so ``เกศ`` sorts before ``ขวัญ``.
    """
    chars = list(name.casefold())
    i = 0
    while i < len(chars) - 1:
        if chars[i] in _THAI_LEADING_VOWELS and 'ก' <= chars[i + 1] <= 'ฮ':
            chars[i], chars[i + 1] = chars[i + 1], chars[i]
            i += 2
        else:
            i += 1
    spelled = ''.join(chars)
    return ''.join(c for c in spelled if c not in _THAI_TONE_MARKS), spelled


# ── Row construction ────────────────────────────────────────────

def _slot_row(slot: dict, movement: Optional[dict], open_slots: Dict[SlotKey, dict]) -> Row:
    """A roster slot decorated with the movement of its holder, if any."""
    m = movement or {}
    tx = m.get('transaction')
    target_no_id = None
    if tx and tx['swapType'] == 'promotion-chain':
        target_no_id = _no_id(open_slots.get(_destination(m)))

    row = {
        'id': slot['id'],
        'personnelId': slot['id'],
        'swapDetailId': m.get('id'),
        'noId': _no_id(slot),
        'fullName': slot.get('fullName'),
        'rank': slot.get('rank'),
        'nationalId': slot.get('nationalId'),
        'avatarUrl': slot.get('avatarUrl'),
    }
    for key in _PERSONAL_KEYS:
        row[key] = slot.get(key)
    row.update({
        'posCodeId': m.get('posCodeId') or slot.get('posCodeId'),
        'posCodeMaster': m.get('posCodeMaster') or slot.get('posCodeMaster'),
        'fromPosition': m.get('fromPosition') or slot.get('position'),
        'fromPositionNumber': m.get('fromPositionNumber') or slot.get('positionNumber'),
        'fromUnit': m.get('fromUnit') or slot.get('unit'),
        'fromActingAs': m.get('fromActingAs') or slot.get('actingAs'),
        'toPosCodeId': m.get('toPosCodeId'),
        'toPosCodeMaster': m.get('toPosCodeMaster'),
        'toPosition': m.get('toPosition'),
        'toPositionNumber': m.get('toPositionNumber'),
        'toUnit': m.get('toUnit'),
        'toActingAs': m.get('toActingAs'),
        'supporterName': m.get('supportName') or slot.get('supporterName'),
        'supportReason': m.get('supportReason') or slot.get('supportReason'),
        'transaction': tx,
        'sequence': m.get('sequence'),
        'hasSwapped': movement is not None,
        'replacedPerson': None,
        'targetNoId': target_no_id,
        'occupancy': slot['occupancy'],
    })
    return row


def _movement_row(movement: dict, open_slots: Dict[SlotKey, dict]) -> Row:
    """A row for a mover with no roster slot of their own in this fetch."""
    target_no_id = _no_id(open_slots.get(_destination(movement)))
    row = {
        'id': movement['id'],
        'personnelId': movement.get('personnelId') or movement['id'],
        'swapDetailId': movement['id'],
        'noId': target_no_id,
        'fullName': movement.get('fullName'),
        'rank': movement.get('rank'),
        'nationalId': movement.get('nationalId'),
        'avatarUrl': None,
    }
    for key in _PERSONAL_KEYS:
        row[key] = movement.get(key)
    for key in ('posCodeId', 'posCodeMaster', 'fromPosition', 'fromPositionNumber', 'fromUnit',
                'fromActingAs', 'toPosCodeId', 'toPosCodeMaster', 'toPosition',
                'toPositionNumber', 'toUnit', 'toActingAs'):
        row[key] = movement.get(key)
    row.update({
        'supporterName': movement.get('supportName'),
        'supportReason': movement.get('supportReason'),
        'transaction': movement.get('transaction'),
        'sequence': movement.get('sequence'),
        'hasSwapped': True,
        'replacedPerson': None,
        'targetNoId': target_no_id,
        'occupancy': movement['occupancy'],
    })
    return row


# ── Filters ─────────────────────────────────────────────────────

def _matches_status(row: Row, status: str, open_slots: Dict[SlotKey, dict]) -> bool:
    if status == 'all':
        return True
    wanted = Occupancy(status)
    if row['occupancy'] is wanted:
        return True
    if wanted.is_open:
        target = open_slots.get(_destination(row))
        return target is not None and target['occupancy'] is wanted
    return False


def _matches_swap_type(row: Row, swap_type: str) -> bool:
    tx = row['transaction']
    if swap_type == 'all':
        return True
    if swap_type == 'none':
        return tx is None
    if tx is None:
        return False
    if swap_type == 'paired':
        return tx['swapType'] in SWAP_TYPES
    return tx['swapType'] == swap_type


def _matches_search(row: Row, needle: str) -> bool:
    values = [row.get(key) for key in _SEARCH_KEYS]
    tx = row['transaction']
    if tx:
        values += [tx.get('groupNumber'), tx.get('groupName')]
    return any(needle in str(v).casefold() for v in values if v)


# ── Ordering ────────────────────────────────────────────────────

def _effective_no_id(row: Row) -> str:
    """Promotion-chain rows sort at the vacancy they fill when that comes first."""
    tx = row['transaction']
    if tx and tx['swapType'] == 'promotion-chain' and row.get('targetNoId'):
        numbers = [n for n in (_as_int(row['noId']), _as_int(row['targetNoId'])) if n]
        return str(min(numbers)) if numbers else ''
    return row['noId'] or ''


def sort_key(row: Row) -> tuple:
    no_id = _effective_no_id(row)
    name = thai_name_key(row.get('fullName') or '')
    if no_id:
        return (0, natural_key(no_id), name)
    return (1, (), name)


def paginate(rows: List[Row], page: int, page_size: int) -> List[Row]:
    return rows[page * page_size:(page + 1) * page_size]


# ── Reconciliation ──────────────────────────────────────────────

def reconcile(slots: Iterable[dict], movements: Iterable[dict], query: ListingQuery) -> Reconciliation:
    """Merge roster slots with completed movements into filtered, sorted rows.

    ``slots`` are the year's active roster rows already narrowed by unit and
    position code; ``movements`` are every completed movement record of the
    year, each carrying its ``transaction`` summary.
    """
    slots = list(slots)
    movements = list(movements)

    by_personnel_id: Dict[str, dict] = {}
    by_national_id: Dict[str, dict] = {}
    claimed = set()
    for m in movements:
        if m.get('personnelId'):
            by_personnel_id[m['personnelId']] = m
        if m.get('nationalId'):
            by_national_id[m['nationalId']] = m
        dest = _destination(m)
        if dest is not None:
            claimed.add(dest)

    open_slots: Dict[SlotKey, dict] = {}
    slot_keys = set()
    for s in slots:
        key = SlotKey.of(s.get('unit'), s.get('positionNumber'))
        if key is None:
            continue
        slot_keys.add(key)
        if s['occupancy'].is_open:
            open_slots[key] = s

    rows = []
    for s in slots:
        movement = by_personnel_id.get(s['id'])
        if movement is None and s.get('nationalId'):
            movement = by_national_id.get(s['nationalId'])
        rows.append(_slot_row(s, movement, open_slots))

    slot_ids = {s['id'] for s in slots}
    slot_national_ids = {s['nationalId'] for s in slots if s.get('nationalId')}
    for m in movements:
        if m.get('personnelId') and m['personnelId'] in slot_ids:
            continue
        if m.get('nationalId') and m['nationalId'] in slot_national_ids:
            continue
        if query.scoped and _origin(m) not in slot_keys and _destination(m) not in slot_keys:
            continue
        rows.append(_movement_row(m, open_slots))

    # An open slot somebody moves into is shown as the arriving row instead
    rows = [r for r in rows if not (r['occupancy'].is_open and _origin(r) in claimed)]

    rows = [r for r in rows if _matches_status(r, query.status, open_slots)]
    rows = [r for r in rows if _matches_swap_type(r, query.swap_type)]
    needle = (query.search or '').strip().casefold()
    if needle:
        rows = [r for r in rows if _matches_search(r, needle)]
    rows.sort(key=sort_key)

    counted_open = [
        s for s in slots
        if s['occupancy'].is_open and (query.status == 'all' or s['occupancy'].value == query.status)
    ]
    summary = summarize(rows, counted_open, claimed)
    return Reconciliation(rows=rows, summary=summary)


def summarize(rows: List[Row], open_slots: List[dict], claimed: set) -> Dict[str, int]:
    """Counts over the full filtered set, before pagination.

    ``promoted`` relies on position codes being ordered by rank: a lower code id
    is a higher rank.
    """
    def _typed(swap_type):
        return sum(1 for r in rows if r['transaction'] and r['transaction']['swapType'] == swap_type)

    return {
        'totalPersonnel': len(rows),
        'promoted': sum(
            1 for r in rows
            if r['posCodeId'] and r['toPosCodeId'] and r['toPosCodeId'] < r['posCodeId']
        ),
        'twoWaySwap': _typed('two-way'),
        'threeWaySwap': _typed('three-way'),
        'transfer': _typed('transfer'),
        'promotionChain': _typed('promotion-chain'),
        'totalVacant': len(open_slots),
        'vacantFilled': sum(
            1 for s in open_slots
            if SlotKey.of(s.get('unit'), s.get('positionNumber')) in claimed
        ),
        'notAssigned': sum(1 for r in rows if not r['toPosCodeMaster'] and not r['toPosition']),
    }


# ── Replacement lookup ──────────────────────────────────────────

def _person_view(record: dict) -> dict:
    """Flatten a movement record or reconciled row for ``replacedPerson``."""
    view = {
        'id': record['id'],
        'personnelId': record.get('personnelId'),
        'noId': _no_id(record),
        'fullName': record.get('fullName'),
        'rank': record.get('rank'),
        'nationalId': record.get('nationalId'),
        'avatarUrl': record.get('avatarUrl'),
    }
    for key in _PERSONAL_KEYS:
        view[key] = record.get(key)
    for key in ('posCodeId', 'posCodeMaster', 'fromPosition', 'fromPositionNumber', 'fromUnit',
                'fromActingAs', 'toPosCodeId', 'toPosCodeMaster', 'toPosition',
                'toPositionNumber', 'toUnit', 'toActingAs'):
        view[key] = record.get(key)
    view.update({
        'transaction': None,
        'sequence': record.get('sequence'),
        'occupancy': record['occupancy'],
    })
    return view


def _slot_view(slot: dict) -> dict:
    """An unmoved roster slot shaped like a ``replacedPerson`` entry."""
    view = {
        'id': slot['id'],
        'personnelId': slot['id'],
        'noId': _no_id(slot),
        'fullName': slot.get('fullName'),
        'rank': slot.get('rank'),
        'nationalId': slot.get('nationalId'),
        'avatarUrl': slot.get('avatarUrl'),
    }
    for key in _PERSONAL_KEYS:
        view[key] = slot.get(key)
    view.update({
        'posCodeId': slot.get('posCodeId'),
        'posCodeMaster': slot.get('posCodeMaster'),
        'fromPosition': slot.get('position', slot.get('fromPosition')),
        'fromPositionNumber': slot.get('positionNumber', slot.get('fromPositionNumber')),
        'fromUnit': slot.get('unit', slot.get('fromUnit')),
        'fromActingAs': slot.get('actingAs', slot.get('fromActingAs')),
        'toPosCodeId': None,
        'toPosCodeMaster': None,
        'toPosition': None,
        'toPositionNumber': None,
        'toUnit': None,
        'toActingAs': None,
        'transaction': None,
        'sequence': None,
        'occupancy': slot['occupancy'],
    })
    return view


def _three_way_fallback(row: Row, people: List[dict]) -> Optional[dict]:
    """Pick the replaced person in a three-way cycle when positions do not line up.

    Of the two other records, the one moving into this row's own seat is the
    successor, not the person being replaced, so the other one is chosen.
    Without that signal the next record by sequence is used (A -> B -> C -> A).
    """
    tx = row['transaction']
    if len(people) != 3:
        raise MalformedTransactionError(tx['id'], tx['swapType'], len(people))
    ordered = sorted(people, key=lambda d: (d.get('sequence') is None, d.get('sequence') or 0))
    own = next((i for i, d in enumerate(ordered) if d['id'] == row.get('swapDetailId')), None)
    if own is None:
        return None
    remaining = [d for i, d in enumerate(ordered) if i != own]
    origin = row.get('fromPositionNumber')
    candidates = [d for d in remaining if not (origin and d.get('toPositionNumber') == origin)]
    if len(candidates) == 1:
        return candidates[0]
    return ordered[(own + 1) % 3]


def find_replacement(
    row: Row,
    people: List[dict],
    find_open_slot: Callable[[Optional[str], Optional[str], Optional[str]], Optional[dict]],
) -> Optional[dict]:
    """Who currently sits in the seat this row is moving into."""
    tx = row['transaction']
    if not row.get('toPosition') and not row.get('toPositionNumber'):
        if tx is None and row['occupancy'].is_open:
            return _slot_view(row)
        return None

    own_id = row.get('swapDetailId')
    others = [d for d in people if d['id'] != own_id and not d['occupancy'].is_open]

    replaced = None
    if row.get('toPositionNumber'):
        replaced = next((d for d in others if d.get('fromPositionNumber') == row['toPositionNumber']), None)
    if replaced is None and row.get('toPosition'):
        replaced = next((d for d in others if d.get('fromPosition') == row['toPosition']), None)
    if replaced is None and tx and tx['swapType'] == 'two-way' and len(people) == 2:
        replaced = next(iter(others), None)
    if replaced is None and tx and tx['swapType'] == 'three-way':
        replaced = _three_way_fallback(row, people)
        if replaced is not None and replaced['occupancy'].is_open:
            replaced = None
    if replaced is not None:
        return _person_view(replaced)

    if row['occupancy'].is_open:
        slot = find_open_slot(row.get('toUnit'), row.get('toPositionNumber'), row.get('toPosition'))
        if slot is not None:
            return _slot_view(slot)
    return None


def resolve_replacements(rows: List[Row], details_by_transaction: Dict[str, List[dict]], find_open_slot) -> None:
    for row in rows:
        tx = row['transaction']
        people = details_by_transaction.get(tx['id'], []) if tx else []
        row['replacedPerson'] = find_replacement(row, people, find_open_slot)


# ── Service entry point ─────────────────────────────────────────

def build_listing(db, query: ListingQuery) -> dict:
    """Reconcile, paginate and resolve replacements for one listing request."""
    slots = db.get_slots(query.year, unit=query.unit, pos_code_id=query.pos_code_id)
    movements = db.get_completed_movements(query.year)
    result = reconcile(slots, movements, query)

    page_rows = paginate(result.rows, query.page, query.page_size)
    tx_ids = {r['transaction']['id'] for r in page_rows if r['transaction']}
    details = db.get_transaction_details(tx_ids) if tx_ids else {}
    resolve_replacements(
        page_rows,
        details,
        lambda unit, number, position: db.find_open_slot(query.year, unit, number, position),
    )
    return {
        'swapDetails': page_rows,
        'totalCount': len(result.rows),
        'page': query.page,
        'pageSize': query.page_size,
        'summary': result.summary,
    }
