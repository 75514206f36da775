"""
Board-layout persistence.

A year's board is a list of lanes stored as JSON in the ``notes`` of a
``board-layout`` sentinel transaction. Lanes reference real transactions; the
sentinel is deleted and recreated on every save. All functions take an open
session and never commit; the caller owns the transaction boundary.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .models import PERSON_FIELDS, PersonnelSlot, SwapTransaction, SwapTransactionDetail

_log = logging.getLogger(__name__)

BOARD_LAYOUT_TYPE = 'board-layout'

CHAIN_TO_SWAP_TYPE = {'swap': 'two-way', 'three-way': 'three-way'}
SWAP_TO_CHAIN_TYPE = {'two-way': 'swap', 'three-way': 'three-way', 'promotion-chain': 'promotion'}


def safe_int(value) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def safe_relation_id(value) -> Optional[int]:
    """Foreign-key ids must be positive integers; anything else becomes NULL."""
    parsed = safe_int(value)
    return parsed if parsed is not None and parsed > 0 else None


def _sentinels(s: Session, year: int):
    return s.query(SwapTransaction).filter(
        SwapTransaction.year == year, SwapTransaction.swap_type == BOARD_LAYOUT_TYPE,
    )


def _parse_lanes(notes: Optional[str]) -> Optional[List[dict]]:
    """Lanes of a stored layout, or None when the document is unreadable."""
    if not notes:
        return None
    try:
        doc = json.loads(notes)
    except ValueError:
        return None
    if not isinstance(doc, dict) or not isinstance(doc.get('lanes', []), list):
        return None
    return doc.get('lanes') or []


def _lane_order(lane: dict):
    index = lane.get('index')
    return index if isinstance(index, (int, float)) else 999


# ── Load ────────────────────────────────────────────────────────

def _board_personnel(detail: SwapTransactionDetail, tx: SwapTransaction,
                     original: Optional[PersonnelSlot]) -> Dict[str, Any]:
    """One personnelMap entry; live roster values take precedence over the snapshot."""
    def pick(slot_attr, detail_attr):
        live = getattr(original, slot_attr) if original is not None else None
        return live or getattr(detail, detail_attr)

    entry = {
        'id': detail.id,
        'isPlaceholder': not detail.personnel_id,
        'originalId': detail.personnel_id,
        'swapDetailId': detail.id,
    }
    for attr, key in PERSON_FIELDS:
        entry[key] = pick(attr, attr)
    entry['noId'] = safe_int(original.no_id if original is not None else None) or safe_int(detail.no_id)
    pos_code = (original.pos_code if original is not None else None) or detail.pos_code
    entry.update({
        'position': pick('position', 'from_position'),
        'unit': pick('unit', 'from_unit'),
        'positionNumber': pick('position_number', 'from_position_number'),
        'supporterName': pick('supporter_name', 'support_name'),
        'supportReason': pick('support_reason', 'support_reason'),
        'requestedPosition': pick('requested_position', 'requested_position'),
        'notes': detail.notes or (original.notes if original is not None else None),
        'actingAs': detail.from_acting_as or (original.acting_as if original is not None else None),
        'posCodeId': pos_code.id if pos_code else None,
        'posCodeMaster': pos_code.to_dict() if pos_code else None,
        'toPosCodeId': detail.to_pos_code_id,
        'toPosCodeMaster': detail.to_pos_code.to_dict() if detail.to_pos_code else None,
        'toPosition': detail.to_position,
        'toUnit': detail.to_unit,
        'toPositionNumber': detail.to_position_number,
        'toActingAs': detail.to_acting_as,
        'transactionId': tx.id,
        'transactionType': tx.swap_type,
    })
    return entry


def load_board(s: Session, year: int) -> Dict[str, Any]:
    empty = {'year': year, 'columns': [], 'personnelMap': {}}
    sentinel = _sentinels(s, year).first()
    if sentinel is None:
        return empty
    lanes = _parse_lanes(sentinel.notes)
    if lanes is None:
        if sentinel.notes:
            _log.warning("Board layout for year %s is unreadable; serving empty board", year)
        return empty
    lanes = sorted(lanes, key=_lane_order)

    tx_ids = [lane['transactionId'] for lane in lanes if lane.get('transactionId')]
    transactions = {
        tx.id: tx for tx in
        s.query(SwapTransaction).filter(SwapTransaction.id.in_(tx_ids))
    } if tx_ids else {}

    personnel_ids = {
        d.personnel_id for tx in transactions.values() for d in tx.details if d.personnel_id
    }
    originals = {
        p.id: p for p in
        s.query(PersonnelSlot).filter(PersonnelSlot.id.in_(personnel_ids))
    } if personnel_ids else {}

    columns: List[dict] = []
    personnel_map: Dict[str, dict] = {}
    for lane in lanes:
        tx = transactions.get(lane.get('transactionId'))
        if tx is not None:
            columns.append({
                'id': tx.id,
                'title': tx.group_name or lane.get('title') or 'Untitled Lane',
                'groupNumber': tx.group_number,
                'itemIds': [d.id for d in tx.details],
                'vacantPosition': lane.get('vacantPosition'),
                'linkedTransactionId': tx.id,
                'linkedTransactionType': tx.swap_type,
                'chainType': SWAP_TO_CHAIN_TYPE.get(tx.swap_type, 'custom'),
                'isCompleted': bool(lane.get('isCompleted')),
            })
            for d in tx.details:
                personnel_map[d.id] = _board_personnel(d, tx, originals.get(d.personnel_id))
        elif lane.get('isCustomLane'):
            columns.append({
                'id': lane.get('id') or lane.get('transactionId') or f"custom-{len(columns)}",
                'title': lane.get('title') or 'Custom Lane',
                'groupNumber': lane.get('groupNumber'),
                'itemIds': list(lane.get('itemIds') or []),
                'vacantPosition': lane.get('vacantPosition'),
                'chainType': 'custom',
                'isCompleted': bool(lane.get('isCompleted')),
            })
            for p in lane.get('personnel') or []:
                if isinstance(p, dict) and p.get('id'):
                    personnel_map[p['id']] = p
        else:
            _log.warning("Board lane %r references missing transaction %s",
                         lane.get('title'), lane.get('transactionId'))
            columns.append({
                'id': lane.get('transactionId') or f"missing-{len(columns)}",
                'title': lane.get('title') or 'Untitled Lane',
                'groupNumber': lane.get('groupNumber'),
                'itemIds': [],
                'vacantPosition': lane.get('vacantPosition'),
                'linkedTransactionId': lane.get('transactionId'),
                'chainType': 'custom',
                'isCompleted': bool(lane.get('isCompleted')),
            })
    return {'year': year, 'columns': columns, 'personnelMap': personnel_map}


# ── Save ────────────────────────────────────────────────────────

def _seat_of(person: Optional[dict]) -> Dict[str, Any]:
    if not person:
        return {'to_position': None, 'to_position_number': None, 'to_unit': None, 'to_pos_code_id': None}
    return {
        'to_position': person.get('position') or None,
        'to_position_number': person.get('positionNumber') or None,
        'to_unit': person.get('unit') or None,
        'to_pos_code_id': safe_relation_id(person.get('posCodeId')),
    }


def _vacancy_seat(vacancy: Optional[dict]) -> Dict[str, Any]:
    if not vacancy:
        return _seat_of(None)
    pos_code = (vacancy.get('posCodeMaster') or {}).get('id') or vacancy.get('posCodeId')
    seat = _seat_of(vacancy)
    seat['to_pos_code_id'] = safe_relation_id(pos_code)
    return seat


def compute_destination(swap_type: str, index: int, item_ids: List[str],
                        personnel_map: Dict[str, dict], vacancy: Optional[dict]) -> Dict[str, Any]:
    """Where the person at ``index`` of a lane moves to.

    two-way: the other person's seat. three-way: the next person's seat,
    wrapping around. Chains and transfers: the head fills the lane's vacancy,
    everyone after takes the seat of the person before them.
    """
    count = len(item_ids)
    if swap_type == 'two-way':
        if count != 2:
            return _seat_of(None)
        return _seat_of(personnel_map.get(item_ids[1 - index]))
    if swap_type == 'three-way':
        if count != 3:
            return _seat_of(None)
        return _seat_of(personnel_map.get(item_ids[(index + 1) % 3]))
    if index == 0:
        return _vacancy_seat(vacancy)
    return _seat_of(personnel_map.get(item_ids[index - 1]))


def _detail_values(person: dict, sequence: int, seat: Dict[str, Any]) -> Dict[str, Any]:
    original_id = person.get('originalId')
    is_placeholder = (
        bool(person.get('isPlaceholder')) or not original_id
        or str(original_id).startswith('placeholder-')
    )
    values = {attr: person.get(key) or None for attr, key in PERSON_FIELDS}
    values.update({
        'sequence': sequence,
        'personnel_id': None if is_placeholder else str(original_id),
        'is_placeholder': is_placeholder,
        'no_id': safe_int(person.get('noId')),
        'full_name': person.get('fullName') or 'Unknown',
        'pos_code_id': safe_relation_id(person.get('posCodeId')),
        'support_name': person.get('supporterName') or None,
        'support_reason': person.get('supportReason') or None,
        'requested_position': person.get('requestedPosition') or None,
        'from_position': person.get('position') or None,
        'from_position_number': person.get('positionNumber') or None,
        'from_unit': person.get('unit') or None,
        'from_acting_as': person.get('actingAs') or None,
        'to_acting_as': person.get('toActingAs') or None,
        'notes': person.get('notes') or None,
    })
    values.update(seat)
    return values


def _lane_doc(index: int, transaction_id: str, column: dict) -> Dict[str, Any]:
    return {
        'index': index,
        'transactionId': transaction_id,
        'title': column.get('title'),
        'groupNumber': column.get('groupNumber'),
        'vacantPosition': column.get('vacantPosition'),
        'isCompleted': bool(column.get('isCompleted')),
    }


def _update_linked(s: Session, tx: SwapTransaction, column: dict,
                   personnel_map: Dict[str, dict], username: str) -> None:
    item_ids = list(column.get('itemIds') or [])
    existing = list(tx.details)
    for i, item_id in enumerate(item_ids):
        person = personnel_map.get(item_id)
        if person is None:
            continue
        seat = compute_destination(tx.swap_type, i, item_ids, personnel_map, column.get('vacantPosition'))
        values = _detail_values(person, i, seat)
        if i < len(existing):
            for attr, value in values.items():
                setattr(existing[i], attr, value)
        else:
            tx.details.append(SwapTransactionDetail(**values))
    for extra in existing[len(item_ids):]:
        tx.details.remove(extra)
    tx.group_name = column.get('title')
    tx.updated_by = username


def _create_for_lane(s: Session, year: int, column: dict,
                     personnel_map: Dict[str, dict], username: str) -> SwapTransaction:
    item_ids = list(column.get('itemIds') or [])
    swap_type = CHAIN_TO_SWAP_TYPE.get(column.get('chainType'), 'promotion-chain')
    tx = SwapTransaction(
        year=year,
        swap_date=datetime.now(timezone.utc),
        swap_type=swap_type,
        group_name=column.get('title'),
        group_number=column.get('groupNumber') or None,
        status='active',
        is_completed=len(item_ids) > 0,
        created_by=username,
    )
    for i, item_id in enumerate(item_ids):
        person = personnel_map.get(item_id)
        if person is None:
            continue
        seat = compute_destination(swap_type, i, item_ids, personnel_map, column.get('vacantPosition'))
        tx.details.append(SwapTransactionDetail(**_detail_values(person, i, seat)))
    s.add(tx)
    s.flush()
    return tx


def _write_sentinel(s: Session, year: int, lanes: List[dict], username: str) -> None:
    _sentinels(s, year).delete(synchronize_session=False)
    s.add(SwapTransaction(
        year=year,
        swap_date=datetime.now(timezone.utc),
        swap_type=BOARD_LAYOUT_TYPE,
        group_name=f"Board Layout {year}",
        status='active',
        is_completed=True,
        notes=json.dumps({'lanes': lanes}, ensure_ascii=False),
        created_by=username,
    ))
    s.flush()


def save_board(s: Session, year: int, columns: List[dict], personnel_map: Dict[str, dict],
               username: str = 'system') -> Dict[str, Any]:
    """Persist a whole board inside the caller's transaction."""
    old = _sentinels(s, year).first()
    old_ids = [
        lane['transactionId'] for lane in (_parse_lanes(old.notes) or [] if old else [])
        if isinstance(lane, dict) and lane.get('transactionId')
    ]

    lanes: List[dict] = []
    updated: List[str] = []
    created: List[str] = []
    for column in columns:
        linked_id = column.get('linkedTransactionId')
        if linked_id and column.get('linkedTransactionType'):
            tx = s.get(SwapTransaction, linked_id)
            if tx is None:
                _log.warning("Transaction %s not found; keeping lane %r without update",
                             linked_id, column.get('title'))
                lanes.append(_lane_doc(len(lanes), linked_id, column))
                continue
            _update_linked(s, tx, column, personnel_map, username)
            updated.append(tx.id)
            lanes.append(_lane_doc(len(lanes), tx.id, column))
            continue

        tx = _create_for_lane(s, year, column, personnel_map, username)
        created.append(tx.id)
        lane = _lane_doc(len(lanes), tx.id, column)
        if column.get('chainType') == 'custom':
            item_ids = list(column.get('itemIds') or [])
            lane.update({
                'id': column.get('id'),
                'isCustomLane': True,
                'itemIds': item_ids,
                'personnel': [personnel_map[i] for i in item_ids if i in personnel_map],
            })
        lanes.append(lane)

    current = {lane['transactionId'] for lane in lanes}
    orphans = [tid for tid in old_ids if tid not in current]
    for tid in orphans:
        tx = s.get(SwapTransaction, tid)
        if tx is not None and tx.swap_type != BOARD_LAYOUT_TYPE:
            s.delete(tx)
    if orphans:
        _log.info("Board %s: removed %d orphan transaction(s)", year, len(orphans))

    _write_sentinel(s, year, lanes, username)
    return {
        'updatedTransactionsCount': len(updated),
        'createdTransactionsCount': len(created),
        'lanesCount': len(lanes),
        'lanes': lanes,
    }


def delete_board(s: Session, year: int) -> int:
    return _sentinels(s, year).delete(synchronize_session=False)


def prepend_lane(s: Session, tx: SwapTransaction, username: str = 'system') -> None:
    """Put a newly created transaction at the head of its year's board."""
    lane = {
        'index': 0,
        'transactionId': tx.id,
        'title': tx.group_name,
        'vacantPosition': None,
        'isCompleted': False,
    }
    sentinel = _sentinels(s, tx.year).first()
    if sentinel is None:
        s.add(SwapTransaction(
            year=tx.year,
            swap_date=datetime.now(timezone.utc),
            swap_type=BOARD_LAYOUT_TYPE,
            group_name=f"Board Layout {tx.year}",
            status='active',
            is_completed=True,
            notes=json.dumps({'lanes': [lane]}, ensure_ascii=False),
            created_by=username,
        ))
        return
    lanes = _parse_lanes(sentinel.notes)
    if lanes is None:
        _log.warning("Board layout for year %s is unreadable; transaction %s not pinned", tx.year, tx.id)
        return
    for existing in lanes:
        if isinstance(existing.get('index'), (int, float)):
            existing['index'] += 1
    sentinel.notes = json.dumps({'lanes': [lane] + lanes}, ensure_ascii=False)
