"""Session login/logout and API user administration."""
import time as _time
from fastapi import APIRouter, HTTPException, Header, Depends, Request
from pydantic import BaseModel
from typing import Optional
from ..dependencies import (
    get_db, require_admin, require_auth, _sanitize_500, _logger, _failed_logins,
    _LOCKOUT_MAX, _TOKEN_EXPIRE_HOURS, limiter,
    open_session, close_session, recent_failures, record_failure,
)

router = APIRouter()

_ROLES = ('admin', 'user')


class UserCreate(BaseModel):
    username: str
    password: str
    fullName: Optional[str] = None
    role: str = 'user'


class LoginBody(BaseModel):
    username: str
    password: str


def _check_new_user(body: UserCreate) -> None:
    for field in ('username', 'password'):
        if not (getattr(body, field) or '').strip():
            raise HTTPException(status_code=400, detail=f"{field}: must not be empty")
    if body.role not in _ROLES:
        raise HTTPException(status_code=400, detail="role: must be 'admin' or 'user'")


@router.get("/api/users", tags=["Users"], summary="List users", description="All API accounts without password hashes. Admin only.")
def get_users(_admin: dict = Depends(require_admin)):
    return {"success": True, "data": get_db().get_users()}


@router.post("/api/users", tags=["Users"], summary="Create user", description="Add an API account. Admin only.")
def create_user(body: UserCreate, _admin: dict = Depends(require_admin)):
    _check_new_user(body)
    try:
        created = get_db().create_user(body.model_dump())
    except ValueError as e:
        if str(e).startswith('DUPLICATE:USERNAME:'):
            raise HTTPException(status_code=409, detail=f"Username '{body.username}' already exists")
        raise _sanitize_500(e, 'create_user')
    except Exception as e:
        raise _sanitize_500(e, 'create_user')
    _logger.warning(
        "AUDIT USER_CREATE | by=%s username=%s role=%s",
        _admin.get('username'), body.username, body.role,
    )
    return {"success": True, "data": created}


@router.post(
    "/api/auth/login",
    tags=["Auth"],
    summary="Login",
    description=f"Exchange credentials for a session token. Tokens live {_TOKEN_EXPIRE_HOURS:g} hours (TOKEN_EXPIRE_HOURS).",
)
@limiter.limit("5/minute")
def login(request: Request, body: LoginBody):
    ip = request.client.host if request.client else 'unknown'
    now = _time.time()

    key = body.username.strip().lower()
    failures = recent_failures(key, now)
    if failures >= _LOCKOUT_MAX:
        _logger.warning("AUTH LOCKED | ip=%s username=%s failures=%d", ip, body.username, failures)
        raise HTTPException(status_code=429, detail="Too many failed attempts. Try again in 15 minutes.")

    user = get_db().verify_user_password(body.username, body.password)
    if user is None:
        record_failure(key, now)
        _logger.warning("AUTH REJECTED | ip=%s username=%s", ip, body.username)
        raise HTTPException(status_code=401, detail="Invalid username or password")

    _failed_logins.pop(key, None)
    token, expires_at = open_session(user)
    _logger.info("AUTH ACCEPTED | ip=%s username=%s", ip, user.get('username'))
    return {"success": True, "token": token, "user": user, "expires_at": expires_at}


@router.post("/api/auth/logout", tags=["Auth"], summary="Logout", description="Forget the session behind the x-auth-token header.")
def logout(x_auth_token: Optional[str] = Header(None)):
    close_session(x_auth_token)
    return {"success": True}


@router.get("/api/auth/me", tags=["Auth"], summary="Current user")
def me(user: dict = Depends(require_auth)):
    profile = dict(user)
    profile.pop('expires_at', None)
    return {"success": True, "user": profile}
