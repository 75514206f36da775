"""
High-level database access for the personnel board.

Every method opens its own short session; ``session()`` is the single place
where commit and rollback happen.
"""
import hashlib
import secrets
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import create_engine, event, func, or_
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from . import board
from .board import safe_int, safe_relation_id
from .errors import NotFoundError, SlotConflictError
from .models import (
    PERSON_FIELDS, Base, PersonnelSlot, PosCode, SwapTransaction, SwapTransactionDetail, User,
)
from .occupancy import Occupancy, SlotKey, classify_occupancy

BOARD_LAYOUT_TYPE = board.BOARD_LAYOUT_TYPE

# Seeded position codes; a lower id is a higher rank
DEFAULT_POS_CODES = (
    (1, 'รอง ผบ.ตร.'),
    (2, 'ผู้ช่วย ผบ.ตร.'),
    (3, 'ผบช.'),
    (4, 'รอง ผบช.'),
    (5, 'ผบก.'),
    (6, 'รอง ผบก.'),
    (7, 'ผกก.'),
    (8, 'รอง ผกก.'),
    (9, 'สว.'),
    (10, 'รอง สว.'),
    (11, 'ผบ.หมู่'),
    (12, 'รอง สว. (ฝึกหัด)'),
)

# ── Engine cache ────────────────────────────────────────────────
# One engine per URL for the life of the process.
_ENGINES: Dict[str, Engine] = {}


def _enable_sqlite_fk(dbapi_connection, _record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(url: str) -> Engine:
    engine = _ENGINES.get(url)
    if engine is not None:
        return engine
    if url.startswith('sqlite'):
        kwargs: Dict[str, Any] = {'connect_args': {'check_same_thread': False}}
        if ':memory:' in url or url in ('sqlite://', 'sqlite:///'):
            kwargs['poolclass'] = StaticPool
        engine = create_engine(url, **kwargs)
        event.listen(engine, 'connect', _enable_sqlite_fk)
    else:
        engine = create_engine(url, pool_pre_ping=True)
    _ENGINES[url] = engine
    return engine


def dispose_engine(url: str) -> None:
    engine = _ENGINES.pop(url, None)
    if engine is not None:
        engine.dispose()


def _detail_values(data: dict) -> Dict[str, Any]:
    """Map a camelCase movement payload onto SwapTransactionDetail columns."""
    values = {attr: data.get(key) for attr, key in PERSON_FIELDS}
    values['no_id'] = safe_int(data.get('noId'))
    values.update({
        'personnel_id': data.get('personnelId') or None,
        'is_placeholder': bool(data.get('isPlaceholder')) or not data.get('personnelId'),
        'full_name': data.get('fullName') or 'ตำแหน่งว่าง',
        'support_name': data.get('supportName'),
        'support_reason': data.get('supportReason'),
        'requested_position': data.get('requestedPosition'),
        'notes': data.get('notes'),
        'pos_code_id': safe_relation_id(data.get('posCodeId')),
        'from_position': data.get('fromPosition'),
        'from_position_number': data.get('fromPositionNumber'),
        'from_unit': data.get('fromUnit'),
        'from_acting_as': data.get('fromActingAs'),
        'to_pos_code_id': safe_relation_id(data.get('toPosCodeId')),
        'to_position': data.get('toPosition'),
        'to_position_number': data.get('toPositionNumber'),
        'to_unit': data.get('toUnit'),
        'to_acting_as': data.get('toActingAs'),
    })
    return values


class RosterDatabase:
    def __init__(self, url: str):
        self.url = url
        self.engine = get_engine(url)
        self._Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def session(self):
        """Yield a session; commit on success, roll back on any error."""
        s: Session = self._Session()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    # ── Schema ─────────────────────────────────────────────────
    def init_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        with self.session() as s:
            if s.query(PosCode).count() == 0:
                s.add_all(PosCode(id=i, name=n) for i, n in DEFAULT_POS_CODES)

    # ── Master data ────────────────────────────────────────────
    def get_pos_codes(self) -> List[Dict]:
        with self.session() as s:
            return [p.to_dict() for p in s.query(PosCode).order_by(PosCode.id)]

    def get_units(self, year: int) -> List[str]:
        with self.session() as s:
            rows = (
                s.query(PersonnelSlot.unit)
                .filter(PersonnelSlot.year == year, PersonnelSlot.is_active.is_(True))
                .filter(PersonnelSlot.unit.isnot(None), PersonnelSlot.unit != '')
                .distinct()
                .order_by(PersonnelSlot.unit)
            )
            return [r[0] for r in rows]

    # ── Roster ─────────────────────────────────────────────────
    def _active_slots(self, s: Session, year: int):
        return s.query(PersonnelSlot).filter(
            PersonnelSlot.year == year, PersonnelSlot.is_active.is_(True),
        )

    def get_slots(self, year: int, unit: str = 'all', pos_code_id: Optional[int] = None) -> List[Dict]:
        with self.session() as s:
            q = self._active_slots(s, year)
            if unit and unit != 'all':
                q = q.filter(PersonnelSlot.unit == unit)
            if pos_code_id is not None:
                q = q.filter(PersonnelSlot.pos_code_id == pos_code_id)
            return [p.to_dict() for p in q.order_by(PersonnelSlot.no_id)]

    def get_slot(self, slot_id: str) -> Optional[Dict]:
        with self.session() as s:
            slot = s.get(PersonnelSlot, slot_id)
            return slot.to_dict() if slot else None

    def add_slots(self, year: int, rows: Iterable[dict]) -> List[str]:
        """Insert roster rows given in wire (camelCase) shape. Returns new ids."""
        ids = []
        with self.session() as s:
            for r in rows:
                slot = PersonnelSlot(
                    year=year,
                    is_active=r.get('isActive', True),
                    unit=r.get('unit'),
                    position_number=r.get('positionNumber'),
                    position=r.get('position'),
                    pos_code_id=safe_relation_id(r.get('posCodeId')),
                    acting_as=r.get('actingAs'),
                    supporter_name=r.get('supporterName'),
                    support_reason=r.get('supportReason'),
                    requested_position=r.get('requestedPosition'),
                    notes=r.get('notes'),
                    avatar_url=r.get('avatarUrl'),
                )
                for attr, key in PERSON_FIELDS:
                    if key in r:
                        setattr(slot, attr, r[key])
                slot.no_id = safe_int(r.get('noId'))
                if r.get('id'):
                    slot.id = r['id']
                s.add(slot)
                s.flush()
                ids.append(slot.id)
        return ids

    def find_open_slot(
        self, year: int, unit: Optional[str], position_number: Optional[str], position: Optional[str],
    ) -> Optional[Dict]:
        """The vacant or reserved roster slot at a destination, if there is one."""
        if not position_number and not position:
            return None
        with self.session() as s:
            q = self._active_slots(s, year)
            if unit:
                q = q.filter(PersonnelSlot.unit == unit)
            if position_number:
                q = q.filter(PersonnelSlot.position_number == position_number)
            else:
                q = q.filter(PersonnelSlot.position == position)
            for slot in q:
                d = slot.to_dict()
                if d['occupancy'].is_open:
                    return d
        return None

    def search_slots(self, year: int, term: str, limit: int = 15) -> List[Dict]:
        with self.session() as s:
            q = (
                self._active_slots(s, year)
                .filter(or_(
                    PersonnelSlot.full_name.contains(term, autoescape=True),
                    PersonnelSlot.rank.contains(term, autoescape=True),
                    PersonnelSlot.position.contains(term, autoescape=True),
                    PersonnelSlot.position_number.contains(term, autoescape=True),
                    PersonnelSlot.national_id.contains(term, autoescape=True),
                    PersonnelSlot.unit.contains(term, autoescape=True),
                ))
                .order_by(PersonnelSlot.pos_code_id, PersonnelSlot.full_name)
                .limit(limit)
            )
            return [p.to_dict() for p in q]

    # ── Movements ──────────────────────────────────────────────
    def get_completed_movements(self, year: int) -> List[Dict]:
        """Every movement record of the year's completed transactions."""
        with self.session() as s:
            q = (
                s.query(SwapTransactionDetail, SwapTransaction)
                .join(SwapTransaction, SwapTransactionDetail.transaction_id == SwapTransaction.id)
                .filter(
                    SwapTransaction.year == year,
                    SwapTransaction.status == 'completed',
                    SwapTransaction.swap_type != BOARD_LAYOUT_TYPE,
                )
                .order_by(SwapTransaction.created_at, SwapTransactionDetail.sequence)
            )
            result = []
            for detail, tx in q:
                d = detail.to_dict()
                d['transaction'] = tx.summary_dict()
                result.append(d)
            return result

    def get_transaction_details(self, transaction_ids: Iterable[str]) -> Dict[str, List[Dict]]:
        ids = list(transaction_ids)
        grouped: Dict[str, List[Dict]] = {tid: [] for tid in ids}
        if not ids:
            return grouped
        with self.session() as s:
            q = (
                s.query(SwapTransactionDetail)
                .filter(SwapTransactionDetail.transaction_id.in_(ids))
                .order_by(SwapTransactionDetail.sequence)
            )
            for detail in q:
                grouped[detail.transaction_id].append(detail.to_dict())
        return grouped

    def _claimed_keys(self, s: Session, year: int) -> set:
        q = (
            s.query(SwapTransactionDetail.to_unit, SwapTransactionDetail.to_position_number)
            .join(SwapTransaction, SwapTransactionDetail.transaction_id == SwapTransaction.id)
            .filter(
                SwapTransaction.year == year,
                SwapTransaction.status == 'completed',
                SwapTransaction.swap_type != BOARD_LAYOUT_TYPE,
            )
        )
        return {key for key in (SlotKey.of(unit, number) for unit, number in q) if key is not None}

    def claimed_slot_keys(self, year: int) -> set:
        """Destination keys of the year's completed movements."""
        with self.session() as s:
            return self._claimed_keys(s, year)

    # ── Transactions ───────────────────────────────────────────
    def list_transactions(
        self, year: Optional[int] = None, status: Optional[str] = None, swap_type: Optional[str] = None,
    ) -> List[Dict]:
        with self.session() as s:
            q = s.query(SwapTransaction).filter(SwapTransaction.swap_type != BOARD_LAYOUT_TYPE)
            if year is not None:
                q = q.filter(SwapTransaction.year == year)
            if status:
                q = q.filter(SwapTransaction.status == status)
            if swap_type:
                q = q.filter(SwapTransaction.swap_type == swap_type)
            q = q.order_by(SwapTransaction.updated_at.desc(), SwapTransaction.created_at.desc())
            return [tx.to_dict() for tx in q]

    def get_transaction(self, transaction_id: str) -> Optional[Dict]:
        with self.session() as s:
            tx = s.get(SwapTransaction, transaction_id)
            if tx is None or tx.swap_type == BOARD_LAYOUT_TYPE:
                return None
            return tx.to_dict()

    def create_transaction(self, data: dict, username: str = 'system') -> Dict:
        """Create a transaction with its movement records and pin it to the board.

        ``data`` is the validated wire payload: year, swapType, swapDate,
        groupName, groupNumber, status, isCompleted, notes, swapDetails[] and
        optionally startingPersonnel (the slot heading a promotion chain).
        """
        swap_type = data.get('swapType') or 'two-way'
        sequenced = swap_type in ('three-way', 'promotion-chain')
        with self.session() as s:
            tx = SwapTransaction(
                year=data['year'],
                swap_date=data.get('swapDate') or datetime.now(timezone.utc),
                swap_type=swap_type,
                group_name=data.get('groupName'),
                group_number=data.get('groupNumber'),
                status=data.get('status') or 'completed',
                is_completed=bool(data.get('isCompleted')),
                notes=data.get('notes'),
                created_by=username,
            )
            starting = data.get('startingPersonnel')
            if swap_type == 'promotion-chain' and starting:
                head = _detail_values({
                    'personnelId': starting.get('id'),
                    'noId': starting.get('noId'),
                    'nationalId': starting.get('nationalId'),
                    'fullName': starting.get('fullName'),
                    'rank': starting.get('rank'),
                    'seniority': starting.get('seniority'),
                    'posCodeId': starting.get('posCodeId'),
                    'fromPosition': starting.get('position'),
                    'fromPositionNumber': starting.get('positionNumber'),
                    'fromUnit': starting.get('unit'),
                    'fromActingAs': starting.get('actingAs'),
                })
                tx.details.append(SwapTransactionDetail(sequence=0, **head))
            for index, item in enumerate(data.get('swapDetails') or []):
                sequence = item.get('sequence')
                if sequence is None:
                    sequence = index + 1 if sequenced else index
                tx.details.append(SwapTransactionDetail(sequence=sequence, **_detail_values(item)))
            s.add(tx)
            s.flush()
            board.prepend_lane(s, tx, username)
            return tx.to_dict()

    def delete_transaction(self, transaction_id: str) -> int:
        with self.session() as s:
            tx = s.get(SwapTransaction, transaction_id)
            if tx is None or tx.swap_type == BOARD_LAYOUT_TYPE:
                return 0
            s.delete(tx)
            return 1

    def set_completed(self, transaction_id: str, completed: bool, username: str = 'system') -> Dict:
        """Toggle ``isCompleted``. Completing requires every record to name a real person."""
        with self.session() as s:
            tx = s.get(SwapTransaction, transaction_id)
            if tx is None or tx.swap_type == BOARD_LAYOUT_TYPE:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if completed:
                missing = [d for d in tx.details if not d.personnel_id and not d.national_id]
                if missing:
                    raise ValueError(
                        f"INCOMPLETE:{len(missing)} record(s) still hold a placeholder"
                    )
            tx.is_completed = completed
            tx.updated_by = username
            s.flush()
            return tx.to_dict()

    def assign_vacancy(
        self, personnel_id: str, slot_id: str, notes: Optional[str] = None, username: str = 'system',
    ) -> Dict:
        """Record a transfer of one roster person into a vacant slot of the same year."""
        with self.session() as s:
            person = s.get(PersonnelSlot, personnel_id)
            if person is None:
                raise NotFoundError(f"Personnel {personnel_id} not found")
            target = s.get(PersonnelSlot, slot_id)
            if target is None:
                raise NotFoundError(f"Slot {slot_id} not found")
            if classify_occupancy(person.full_name) is not Occupancy.OCCUPIED:
                raise SlotConflictError(f"Slot {person.unit}#{person.position_number} has no holder to move")
            if person.year != target.year:
                raise SlotConflictError(
                    f"Personnel {personnel_id} is on the {person.year} roster, slot {slot_id} on {target.year}"
                )
            if classify_occupancy(target.full_name) is Occupancy.OCCUPIED:
                raise SlotConflictError(f"Slot {target.unit}#{target.position_number} is occupied")
            if SlotKey.of(target.unit, target.position_number) in self._claimed_keys(s, target.year):
                raise SlotConflictError(f"Slot {target.unit}#{target.position_number} is already claimed")

            values = {attr: getattr(person, attr) for attr, _ in PERSON_FIELDS}
            values.update({
                'personnel_id': person.id,
                'is_placeholder': False,
                'support_name': person.supporter_name,
                'support_reason': person.support_reason,
                'requested_position': person.requested_position,
                'notes': notes,
                'pos_code_id': person.pos_code_id,
                'from_position': person.position,
                'from_position_number': person.position_number,
                'from_unit': person.unit,
                'from_acting_as': person.acting_as,
                'to_pos_code_id': target.pos_code_id,
                'to_position': target.position,
                'to_position_number': target.position_number,
                'to_unit': target.unit,
                'to_acting_as': target.acting_as,
            })
            tx = SwapTransaction(
                year=target.year,
                swap_date=datetime.now(timezone.utc),
                swap_type='transfer',
                group_name=f"{target.unit} #{target.position_number}",
                status='completed',
                is_completed=True,
                notes=notes,
                created_by=username,
            )
            tx.details.append(SwapTransactionDetail(sequence=0, **values))
            s.add(tx)
            s.flush()
            return tx.to_dict()

    # ── Board layout ───────────────────────────────────────────
    def load_board(self, year: int) -> Dict:
        with self.session() as s:
            return board.load_board(s, year)

    def save_board(self, year: int, columns: List[dict], personnel_map: Dict[str, dict],
                   username: str = 'system') -> Dict:
        with self.session() as s:
            return board.save_board(s, year, columns, personnel_map, username)

    def delete_board(self, year: int) -> int:
        with self.session() as s:
            return board.delete_board(s, year)

    # ── Users ──────────────────────────────────────────────────
    def _hash_password(self, password: str, salt: Optional[str] = None, iterations: int = 200_000) -> str:
        salt = salt or secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'), salt.encode('ascii'), iterations)
        return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"

    def _check_password(self, password: str, stored: str) -> bool:
        try:
            _scheme, iterations, salt, _digest = stored.split('$', 3)
            expected = self._hash_password(password, salt, int(iterations))
        except ValueError:
            return False
        return secrets.compare_digest(expected, stored)

    @staticmethod
    def _username_is(username: str):
        # Exact match ignoring case; `_` and `%` are literal characters
        return func.lower(User.username) == (username or '').strip().lower()

    def get_users(self) -> List[Dict]:
        with self.session() as s:
            return [u.to_dict() for u in s.query(User).order_by(User.id)]

    def create_user(self, data: dict) -> Dict:
        username = (data.get('username') or '').strip()
        with self.session() as s:
            exists = s.query(User).filter(self._username_is(username)).first()
            if exists is not None:
                raise ValueError(f"DUPLICATE:USERNAME:{username}")
            user = User(
                username=username,
                password_hash=self._hash_password(data['password']),
                full_name=data.get('fullName'),
                role=data.get('role') or 'user',
                is_active=True,
            )
            s.add(user)
            s.flush()
            return user.to_dict()

    def verify_user_password(self, username: str, password: str) -> Optional[Dict]:
        """Verify username+password, return the user dict (without hash) or None."""
        with self.session() as s:
            user = (
                s.query(User)
                .filter(self._username_is(username), User.is_active.is_(True))
                .first()
            )
            if user is None or not self._check_password(password, user.password_hash):
                return None
            user.last_login = datetime.now(timezone.utc)
            s.flush()
            return user.to_dict()

    def ensure_admin(self, username: str, password: str) -> bool:
        """Create the bootstrap admin account if no user of that name exists."""
        with self.session() as s:
            if s.query(User).filter(self._username_is(username)).first() is not None:
                return False
        self.create_user({'username': username, 'password': password, 'role': 'admin',
                          'fullName': 'Administrator'})
        return True
