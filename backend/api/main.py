"""FastAPI application for the Police Personnel Board."""
import os
import sys
import time
from contextlib import asynccontextmanager
from dotenv import load_dotenv

_STARTED_AT = time.time()

# Optional backend/.env
load_dotenv(os.path.join(os.path.dirname(__file__), '..', '.env'))

# boardlib lives next to api/
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from slowapi import _rate_limit_exceeded_handler  # noqa: E402
from slowapi.errors import RateLimitExceeded  # noqa: E402
from starlette.exceptions import HTTPException as StarletteHTTPException  # noqa: E402

# Re-exported so tests can do `from api.main import _sessions`
from .dependencies import (  # noqa: E402
    _sessions,
    _DEV_TOKEN,
    _DEV_USER,
    _is_token_valid,
    get_db,
    get_current_user,
    get_filter_cache,
    require_admin,
    require_auth,
    _logger,
    limiter,
    purge_expired_sessions,
    purge_stale_failed_logins,
)

_TRUTHY = ('1', 'true', 'yes')

# ── Dev-mode session ────────────────────────────────────────────
# PPB_DEV_MODE=true registers a fixed admin token. Never enable in production.
if os.environ.get('PPB_DEV_MODE', '').lower() in _TRUTHY:
    _sessions[_DEV_TOKEN] = {**_DEV_USER, 'expires_at': None}
    _logger.warning("DEV MODE ACTIVE: token %s grants admin access (PPB_DEV_MODE)", _DEV_TOKEN)

# ── Config ──────────────────────────────────────────────────────
_DEFAULT_DB_FILE = os.path.normpath(
    os.path.join(os.path.dirname(__file__), '..', '..', 'data', 'personnel_board.db')
)
DATABASE_URL = os.environ.get('PPB_DATABASE_URL', f"sqlite:///{_DEFAULT_DB_FILE}")

ALLOWED_ORIGINS = [
    origin.strip() for origin in os.environ.get('ALLOWED_ORIGINS', '').split(',') if origin.strip()
] or ['http://localhost:3000', 'http://localhost:8000']

_CLEANUP_INTERVAL = 300

_OPENAPI_TAGS = [
    {"name": "Health", "description": "Liveness, version and service info"},
    {"name": "Auth", "description": "Session login, logout and current user"},
    {"name": "Users", "description": "API user management (admin only)"},
    {"name": "Positions", "description": "Reconciled position listing, column filters and autocomplete"},
    {"name": "Board", "description": "Personnel board layout persistence"},
    {"name": "Transactions", "description": "Swap, transfer and promotion-chain transactions"},
    {"name": "Master Data", "description": "Position codes and units"},
]


def _ensure_sqlite_dir(url: str) -> None:
    if url.startswith('sqlite:///') and ':memory:' not in url:
        directory = os.path.dirname(url[len('sqlite:///'):])
        if directory:
            os.makedirs(directory, exist_ok=True)


async def _session_janitor():
    """Drop expired sessions and stale lockout counters on a fixed interval."""
    import asyncio
    while True:
        await asyncio.sleep(_CLEANUP_INTERVAL)
        try:
            expired = purge_expired_sessions()
            stale = purge_stale_failed_logins()
        except Exception as exc:  # pragma: no cover
            _logger.warning("Session cleanup failed: %s", exc)
            continue
        if expired or stale:
            _logger.debug("Session cleanup: %d expired sessions, %d lockout entries", expired, stale)


@asynccontextmanager
async def lifespan(app: FastAPI):
    import asyncio
    _ensure_sqlite_dir(DATABASE_URL)
    db = get_db()
    db.init_schema()
    admin_user = os.environ.get('PPB_ADMIN_USER')
    admin_password = os.environ.get('PPB_ADMIN_PASSWORD')
    if admin_user and admin_password and db.ensure_admin(admin_user, admin_password):
        _logger.warning("AUDIT BOOTSTRAP_ADMIN | username=%s", admin_user)
    janitor = asyncio.create_task(_session_janitor())
    _logger.info("Personnel board API started (database=%s)", DATABASE_URL.split('://', 1)[0])
    yield
    janitor.cancel()
    _logger.info("Personnel board API shutting down")


_API_VERSION = "1.4.0"

app = FastAPI(
    lifespan=lifespan,
    title="Police Personnel Board API",
    description=(
        "REST API for police position assignments: swaps, transfers, promotion chains "
        "and vacancy fills.\n\n"
        "## Authentication\n"
        "Send the token from `POST /api/auth/login` in the `x-auth-token` header.\n\n"
        "## Roles\n"
        "- **user** – read listings, edit the board and transactions\n"
        "- **admin** – additionally manages API users\n"
    ),
    version=_API_VERSION,
    openapi_tags=_OPENAPI_TAGS,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "x-auth-token"],
)

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none';",
    "Cross-Origin-Resource-Policy": "same-origin",
}


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers.update(_SECURITY_HEADERS)
    # HSTS only behind TLS
    if os.environ.get('PPB_HSTS', '').lower() in _TRUTHY:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# ── Error envelope ──────────────────────────────────────────────

def _error_body(detail, fallback: str) -> dict:
    if isinstance(detail, dict):
        error = detail.get("error") or fallback
        message = detail.get("message") or error
    else:
        error = str(detail) if detail else fallback
        message = error
    return {"success": False, "error": error, "message": message}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render every HTTP error as {success: false, error, message}."""
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.detail, "Request failed"),
        headers=getattr(exc, "headers", None),
    )


_VALIDATION_MESSAGES = {
    "missing": "required field missing",
    "int_parsing": "must be an integer",
    "float_parsing": "must be a number",
    "bool_parsing": "must be true or false",
    "datetime_parsing": "must be an ISO date-time",
    "datetime_from_date_parsing": "must be an ISO date-time",
    "greater_than_equal": "out of range",
    "less_than_equal": "out of range",
    "dict_type": "must be an object",
    "list_type": "must be a list",
    "string_type": "must be a string",
}


def _describe_validation_errors(errors) -> str:
    parts = []
    for err in errors:
        location = [str(loc) for loc in err.get("loc", ()) if loc not in ("body", "query", "path")]
        reason = _VALIDATION_MESSAGES.get(err.get("type", ""), err.get("msg", "invalid value"))
        parts.append(f"{'.'.join(location)}: {reason}" if location else reason)
    return "; ".join(parts) or "Invalid input"


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed query parameters or bodies are a 400, never a 422."""
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Validation error",
            "message": _describe_validation_errors(exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    _logger.error(
        "Unhandled exception: %s %s | %s", request.method, request.url.path, type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "message": str(exc)},
    )


# ── Request logging and authentication ─────────────────────────
_PUBLIC_PATHS = {'/api/auth/login', '/api/auth/logout', '/api', '/api/health', '/api/version'}


def _session_user(request: Request) -> str:
    token = request.headers.get('x-auth-token')
    return _sessions.get(token, {}).get('username', '-') if token else '-'


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """One JSON access-log line per request; the short id is echoed as X-Request-ID."""
    import json
    import uuid
    req_id = uuid.uuid4().hex[:8]
    started = time.perf_counter()
    response = await call_next(request)
    _logger.info(json.dumps({
        "req_id": req_id,
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
        "duration_ms": round((time.perf_counter() - started) * 1000),
        "user": _session_user(request),
    }, ensure_ascii=False))
    response.headers["X-Request-ID"] = req_id
    return response


def _needs_token(request: Request) -> bool:
    path = request.url.path
    return (
        path.startswith('/api/')
        and path not in _PUBLIC_PATHS
        and request.method != 'OPTIONS'
    )


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    """Reject /api/* requests without a live session token (public paths excepted)."""
    if not _needs_token(request):
        return await call_next(request)
    ip = request.client.host if request.client else 'unknown'
    token = request.headers.get('x-auth-token')
    if not token or not _is_token_valid(token):
        _logger.warning("AUTH 401 | ip=%s %s %s", ip, request.method, request.url.path)
        return JSONResponse(
            status_code=401,
            content={"success": False, "error": "Unauthorized", "message": "Authentication required"},
        )
    response = await call_next(request)
    username = _sessions.get(token, {}).get('username', '?')
    if response.status_code == 403:
        _logger.warning("AUTH 403 | ip=%s %s %s user=%s", ip, request.method, request.url.path, username)
    elif request.method in ('POST', 'DELETE') and response.status_code < 400:
        _logger.info("WRITE %s %s | ip=%s user=%s", request.method, request.url.path, ip, username)
    return response


# ── Routers ─────────────────────────────────────────────────────
from .routers import auth, positions, board, transactions, master_data  # noqa: E402

for _module in (auth, positions, board, transactions, master_data):
    app.include_router(_module.router)


# ── Service routes ──────────────────────────────────────────────

@app.get(
    "/api/health",
    tags=["Health"],
    summary="Health check",
    description="Service status, version, uptime and database reachability. Public.",
)
def health():
    db_status = "connected"
    try:
        get_db().get_pos_codes()
    except Exception as exc:
        _logger.warning("Health check: database unavailable: %s", exc)
        db_status = "error"
    return {
        "status": "ok",
        "version": _API_VERSION,
        "uptime_seconds": round(time.time() - _STARTED_AT, 1),
        "db": {"status": db_status},
    }


@app.get("/api/version", tags=["Health"], summary="API version")
def version():
    return {"version": _API_VERSION, "service": "Police Personnel Board API"}


@app.get("/api", tags=["Health"], summary="API root", description="Basic service info. Public.")
def root():
    return {"service": "Police Personnel Board API", "version": _API_VERSION, "backend": "sqlalchemy"}
