"""
Shared test fixtures for the personnel board backend tests.
"""
import os
import sys
import secrets
import pytest

# ── Python path setup ──────────────────────────────────────────────────────────
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

YEAR = 2568

UNIT_A = 'สภ.เมืองสมุทรปราการ'
UNIT_B = 'สภ.บางพลี'

# Seed roster: two units, one vacant and one reserved slot, one slot without noId
ROSTER = [
    {'id': 'slot-a1', 'noId': 1, 'unit': UNIT_A, 'positionNumber': '1001', 'position': 'ผกก.',
     'posCodeId': 7, 'fullName': 'สมชาย ใจดี', 'rank': 'พ.ต.อ.', 'nationalId': '1100000000001'},
    {'id': 'slot-a2', 'noId': 2, 'unit': UNIT_A, 'positionNumber': '1002', 'position': 'รอง ผกก.',
     'posCodeId': 8, 'fullName': 'สมหญิง รักดี', 'rank': 'พ.ต.ท.', 'nationalId': '1100000000002'},
    {'id': 'slot-a3', 'noId': 3, 'unit': UNIT_A, 'positionNumber': '1003', 'position': 'สว.',
     'posCodeId': 9, 'fullName': 'ว่าง'},
    {'id': 'slot-a4', 'noId': None, 'unit': UNIT_A, 'positionNumber': '1004', 'position': 'รอง สว.',
     'posCodeId': 10, 'fullName': 'มานะ อดทน', 'rank': 'ร.ต.อ.', 'nationalId': '1100000000005'},
    {'id': 'slot-b1', 'noId': 10, 'unit': UNIT_B, 'positionNumber': '2001', 'position': 'ผกก.',
     'posCodeId': 7, 'fullName': 'ประยุทธ มั่นคง', 'rank': 'พ.ต.อ.', 'nationalId': '1100000000003'},
    {'id': 'slot-b2', 'noId': 11, 'unit': UNIT_B, 'positionNumber': '2002', 'position': 'รอง ผกก.',
     'posCodeId': 8, 'fullName': 'ว่าง (กันตำแหน่ง)'},
    {'id': 'slot-b3', 'noId': 12, 'unit': UNIT_B, 'positionNumber': '2003', 'position': 'สว.',
     'posCodeId': 9, 'fullName': 'วิชัย กล้าหาญ', 'rank': 'พ.ต.ต.', 'nationalId': '1100000000004',
     'supporterName': 'ผบก.สมุทรปราการ', 'supportReason': 'ใกล้ภูมิลำเนา'},
]


def _mock_admin():
    return {'id': 1, 'username': 'admin', 'role': 'admin', 'isActive': True}

def _mock_user():
    return {'id': 2, 'username': 'officer', 'role': 'user', 'isActive': True}


def _inject_token(user: dict) -> str:
    """Put a session for ``user`` into the in-process store and return its token."""
    from api.main import _sessions
    tok = secrets.token_hex(16)
    _sessions[tok] = {**user, 'expires_at': None}
    return tok


def _remove_token(tok: str) -> None:
    from api.main import _sessions
    _sessions.pop(tok, None)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    from api.main import limiter
    from api.dependencies import _failed_logins
    limiter.reset()
    _failed_logins.clear()
    yield


@pytest.fixture
def db_url(tmp_path):
    """Function-scoped: fresh SQLite file per test, wired into api.main."""
    import api.main as main_module
    from boardlib.database import dispose_engine
    url = f"sqlite:///{tmp_path / 'board.db'}"
    original = main_module.DATABASE_URL
    main_module.DATABASE_URL = url
    yield url
    main_module.DATABASE_URL = original
    dispose_engine(url)


@pytest.fixture
def db(db_url):
    """A RosterDatabase with schema, position codes and the seed roster."""
    from boardlib.database import RosterDatabase
    database = RosterDatabase(db_url)
    database.init_schema()
    database.add_slots(YEAR, ROSTER)
    return database


@pytest.fixture
def app():
    from api.main import app as _app
    return _app


@pytest.fixture
def fresh_cache(app):
    """Override the shared filter cache with a private one."""
    from boardlib.cache import TTLCache
    from api.main import get_filter_cache
    cache = TTLCache(ttl=60, max_entries=100)
    app.dependency_overrides[get_filter_cache] = lambda: cache
    yield cache
    app.dependency_overrides.pop(get_filter_cache, None)


@pytest.fixture
def client(db, app, fresh_cache):
    """Function-scoped TestClient authenticated as a regular user, fresh DB."""
    from starlette.testclient import TestClient
    tok = _inject_token(_mock_user())
    with TestClient(app, raise_server_exceptions=True) as c:
        c.headers['X-Auth-Token'] = tok
        yield c
    _remove_token(tok)


@pytest.fixture
def admin_client(db, app, fresh_cache):
    from starlette.testclient import TestClient
    tok = _inject_token(_mock_admin())
    with TestClient(app, raise_server_exceptions=True) as c:
        c.headers['X-Auth-Token'] = tok
        yield c
    _remove_token(tok)


@pytest.fixture
def raw_client(db, app):
    """Unauthenticated client that reports server errors as responses."""
    from starlette.testclient import TestClient
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
