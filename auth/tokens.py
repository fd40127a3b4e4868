"""
auth/tokens.py -- Access tokens and password hashes.

Tokens are HS256 JWTs (python-jose) signed with SECRET_KEY. The claims are
sub (username), user_id, roles (upper-cased active role codes) and exp.
decode_access_token() answers None for anything it cannot verify; turning
that into a 401 is the dependency layer's job.

Only role policies look at the "roles" claim. Permission policies load the
user's roles from the database on each request, so an old token cannot grant
a module permission that has since been revoked.

Passwords are hashed with bcrypt. A login for an unknown user still runs one
bcrypt check against _DUMMY_HASH, so both failure paths take about as long.

Imports stay within core/ and auth/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("ktk.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps passwords at 72 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Checked against when the username is unknown.
_DUMMY_HASH: str = hash_password("ktk_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, username: str, roles: Iterable[str], expire_seconds: int = 0) -> str:
    """Encode a signed JWT with user identity, role codes and expiry.

    Args:
        user_id:        Numeric user ID stored in the DB.
        username:       Stored as the JWT subject claim.
        roles:          Active role codes; stored upper-cased in "roles".
        expire_seconds: Session duration. 0 means Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "user_id": user_id,
        "roles": [r.upper() for r in roles],
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in payload:
        return None
    return payload


def user_id_from_claims(claims: dict) -> int | None:
    """Return the numeric user id carried by the claims, or None if unparseable."""
    raw = claims.get("user_id", claims.get("uid"))
    if isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Check a login given as username or email plus password.

    Returns the User on a correct password (active or not -- the caller
    decides how to answer for locked accounts), None otherwise.
    """
    user = store.get_by_username(username)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT access token as an httpOnly cookie on the response.

    samesite="lax" keeps the cookie off cross-site POSTs; secure follows
    SECURE_COOKIES. max_age matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
