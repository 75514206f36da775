"""
Shared dependencies for the Police Personnel Board API.
Logging, rate limiting, sessions, auth dependencies and database access.
"""
import os
import json
import logging
import logging.handlers
import secrets
import time as _time
from datetime import date, datetime, timezone

from fastapi import HTTPException, Header, Depends
from typing import Optional
from boardlib.cache import TTLCache
from boardlib.database import RosterDatabase
from slowapi import Limiter
from slowapi.util import get_remote_address


# ── Structured JSON logging ──────────────────────────────────────
class _JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message[, exc]."""
    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": stamp.isoformat(timespec='milliseconds').replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


PPB_LOG_FILE = os.environ.get('PPB_LOG_FILE', '/tmp/ppb-api.log')


def _configure_logging() -> logging.Logger:
    level = getattr(logging, os.environ.get('PPB_LOG_LEVEL', 'INFO').upper(), logging.INFO)
    formatter = _JsonFormatter()
    file_handler = logging.handlers.RotatingFileHandler(
        PPB_LOG_FILE, maxBytes=10 * 1024 * 1024, backupCount=3,
    )
    stream_handler = logging.StreamHandler()
    for handler in (file_handler, stream_handler):
        handler.setFormatter(formatter)
    # boardlib logs through the same handlers
    for name in ('ppbapi', 'boardlib'):
        lg = logging.getLogger(name)
        lg.setLevel(level)
        lg.addHandler(file_handler)
        lg.addHandler(stream_handler)
    return logging.getLogger('ppbapi')


_logger = _configure_logging()

# ── Rate limiter ─────────────────────────────────────────────────
limiter = Limiter(key_func=get_remote_address, default_limits=["200/minute"])

# ── Sessions ─────────────────────────────────────────────────────
# In-process only; every worker has its own store.
_sessions: dict[str, dict] = {}
_TOKEN_EXPIRE_HOURS = float(os.environ.get('TOKEN_EXPIRE_HOURS', '8'))

_DEV_TOKEN = "__dev_mode__"
_DEV_USER = {"id": 0, "username": "developer", "fullName": "Developer", "role": "admin", "isActive": True}

# Failed logins per username, as epoch seconds
_failed_logins: dict[str, list] = {}
_LOCKOUT_WINDOW = 15 * 60
_LOCKOUT_MAX = 5

# ── Column-filter cache ──────────────────────────────────────────
_filter_cache = TTLCache(
    ttl=float(os.environ.get('PPB_FILTER_CACHE_TTL', '60')),
    max_entries=int(os.environ.get('PPB_FILTER_CACHE_MAX', '100')),
)


def current_fiscal_year() -> int:
    """Current year in Buddhist-era numbering."""
    return date.today().year + 543


def open_session(user: dict) -> tuple:
    """Register a new session for ``user``; returns (token, expires_at)."""
    token = secrets.token_hex(32)
    expires_at = _time.time() + _TOKEN_EXPIRE_HOURS * 3600
    _sessions[token] = {**user, 'expires_at': expires_at}
    return token, expires_at


def close_session(token: Optional[str]) -> bool:
    return bool(token) and _sessions.pop(token, None) is not None


def _is_token_valid(token: str) -> bool:
    """True for a known token that has not expired; expired ones are dropped."""
    session = _sessions.get(token)
    if session is None:
        return False
    expires_at = session.get('expires_at')
    if expires_at is None or _time.time() <= expires_at:
        return True
    _sessions.pop(token, None)
    return False


def recent_failures(username: str, now: float) -> int:
    """Prune and count failed logins for ``username`` inside the lockout window."""
    window = [t for t in _failed_logins.get(username, []) if now - t < _LOCKOUT_WINDOW]
    _failed_logins[username] = window
    return len(window)


def record_failure(username: str, now: float) -> None:
    _failed_logins.setdefault(username, []).append(now)


def get_current_user(x_auth_token: Optional[str] = Header(None)) -> Optional[dict]:
    """Session user for the X-Auth-Token header, or None."""
    if x_auth_token and _is_token_valid(x_auth_token):
        return _sessions[x_auth_token]
    return None


def require_auth(user: Optional[dict] = Depends(get_current_user)) -> dict:
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_admin(user: dict = Depends(require_auth)) -> dict:
    if user.get('role') != 'admin':
        raise HTTPException(status_code=403, detail="Admin role required")
    return user


def get_db() -> RosterDatabase:
    """Database handle for the current DATABASE_URL of the main module."""
    import api.main as _main
    return RosterDatabase(_main.DATABASE_URL)


def get_filter_cache() -> TTLCache:
    return _filter_cache


def purge_expired_sessions() -> int:
    """Drop expired sessions; returns how many were removed."""
    now = _time.time()
    expired = [
        token for token, session in list(_sessions.items())
        if session.get('expires_at') is not None and session['expires_at'] < now
    ]
    for token in expired:
        _sessions.pop(token, None)
    return len(expired)


def purge_stale_failed_logins() -> int:
    """Forget usernames with no failure inside the lockout window; returns the count."""
    now = _time.time()
    stale = [name for name in list(_failed_logins) if recent_failures(name, now) == 0]
    for name in stale:
        _failed_logins.pop(name, None)
    return len(stale)


def _sanitize_500(e: Exception, context: str = '') -> HTTPException:
    """Log the full exception and return a 500 carrying its message."""
    _logger.error(
        "500 error context=%s type=%s msg=%s", context, type(e).__name__, str(e),
        exc_info=e,
    )
    return HTTPException(
        status_code=500,
        detail={"error": "Internal server error", "message": str(e)},
    )
