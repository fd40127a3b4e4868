"""
api/routes/v1/auth.py -- Login, logout, current user and customer sign-up.

Routes:
  POST /api/v1/auth/login      -- username or email + password; returns a token and sets the cookie
  POST /api/v1/auth/logout     -- clears the cookie
  GET  /api/v1/auth/me         -- the signed-in user
  POST /api/v1/auth/register   -- creates a CUSTOMER account and signs it in

Login and register share the per-IP LOGIN_RATE_LIMIT. Responses that carry a
token are marked no-store. Password checks always go through
authenticate_user(). A locked account hears account_locked only once its
password has matched.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import LoginRequest, LoginResponse, MeResponse, RegisterRequest
from auth.constants import RoleCodes
from auth.dependencies import get_current_user
from auth.models import User
from auth.store import UserStore
from auth.tokens import authenticate_user, create_access_token, hash_password, set_auth_cookie
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:     public
# - POST /api/v1/auth/logout:    public -- clearing a cookie needs no prior auth
# - POST /api/v1/auth/register:  public, disabled by SELF_REGISTRATION_ENABLED=false
# - GET  /api/v1/auth/me:        requires auth (get_current_user)
router = APIRouter()

_settings = get_settings()


def _token_response(user: User, status_code: int = 200) -> JSONResponse:
    token = create_access_token(user.id, user.username, user.roles)
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.token_expire_seconds,
            user=MeResponse.from_user(user),
        ).model_dump(by_alias=True),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # stays above @router
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Sign in with username (or email) and password.

    Unknown user and wrong password both answer bad_credentials.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.username, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp
    if not user.is_active:
        raise HTTPException(
            status_code=403,
            detail={"code": "account_locked", "message": "This account is locked."},
        )

    user_store.update_last_login(user.id)
    return _token_response(user)


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/register", response_model=LoginResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a CUSTOMER account and sign it in."""
    if not _settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    user_store: UserStore = request.app.state.user_store
    if user_store.get_by_email(body.email) is not None:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        )
    new_user = User(
        username=body.username,
        email=body.email,
        full_name=body.full_name,
        phone=body.phone,
        hashed_password=hash_password(body.password),
    )
    try:
        user_id = user_store.create_user(new_user, role_codes=[RoleCodes.CUSTOMER])
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username already exists."},
        ) from exc
    return _token_response(user_store.get_by_id(user_id), status_code=201)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse.from_user(current_user)
