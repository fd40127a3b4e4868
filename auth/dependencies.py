"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by the storefront login flow.
  2. Authorization: Bearer <token> header -- SPA and API clients.
  3. ?access_token=<token> query parameter -- WebSocket hubs only, because
     browsers cannot set headers on a WebSocket handshake.

Authentication:
  try_get_current_user()  soft variant, returns None on any failure.
  get_current_user()      401 when unauthenticated, 403 when the account is locked.
  get_current_claims()    the verified JWT payload (401 when missing).

Authorization (two policy families, see auth/policies.py):
  require_permission(module, permission)
      DB-backed check on every request. Requires an authenticated user whose
      id parses from the token, then UserStore.has_permission().
  require_role(*roles)
      Claims-only check with the ADMIN bypass. Never touches the DB.
  require_policy(name)
      Parses a "RequirePermission:..." / "RequireRole:..." name and dispatches.
      Unrecognised names fall back to "any authenticated user".

All 401/403 raised here use the codes "unauthorized" / "forbidden" /
"account_locked"; api/main.py rewrites those into localized messages.

Layer rule: may import fastapi/starlette; no imports from api/ or other domain
packages.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request
from starlette.requests import HTTPConnection

from auth.models import User
from auth.policies import (
    PermissionRequirement,
    RoleRequirement,
    parse_policy,
    permission_policy,
    role_policy,
    role_requirement_satisfied,
)
from auth.tokens import decode_access_token, user_id_from_claims


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
    )


def _forbidden(message: str = "You do not have permission to access this resource.") -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "forbidden", "message": message})


# ---------------------------------------------------------------------------
# Token and claims
# ---------------------------------------------------------------------------


def extract_token(conn: HTTPConnection, allow_query: bool = False) -> str | None:
    """Return the raw JWT from cookie, Bearer header, or (hubs only) query string."""
    token: str | None = conn.cookies.get("access_token")
    if not token:
        auth_header = conn.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    if not token and allow_query:
        token = conn.query_params.get("access_token")
    return token or None


def try_get_claims(conn: HTTPConnection, allow_query: bool = False) -> dict | None:
    token = extract_token(conn, allow_query=allow_query)
    if not token:
        return None
    return decode_access_token(token)


def get_current_claims(request: Request) -> dict:
    """Require a valid JWT and return its payload. No DB access."""
    claims = try_get_claims(request)
    if claims is None:
        raise _unauthorized()
    return claims


def resolve_user(conn: HTTPConnection, allow_query: bool = False) -> User | None:
    """Return the token's user (active or locked) or None. Shared with the hubs."""
    claims = try_get_claims(conn, allow_query=allow_query)
    if claims is None:
        return None
    user_id = user_id_from_claims(claims)
    if user_id is None:
        return None
    return conn.app.state.user_store.get_by_id(user_id)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def try_get_current_user(request: Request) -> User | None:
    """Return the authenticated, active User or None. Never raises."""
    user = resolve_user(request)
    if user is None or not user.is_active:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. 401 when unauthenticated, 403 when the account is locked.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = resolve_user(request)
    if user is None:
        raise _unauthorized()
    if not user.is_active:
        raise HTTPException(
            status_code=403,
            detail={"code": "account_locked", "message": "This account is locked."},
        )
    return user


# ---------------------------------------------------------------------------
# Authorization -- dependency factories
# ---------------------------------------------------------------------------


def require_permission(module_code: str, permission_code: str) -> Callable[[Request], User]:
    """Build a dependency enforcing RequirePermission:{module}:{permission}.

    Use as a FastAPI dependency:
        @router.get("/variants")
        def route(user: User = Depends(require_permission("PRODUCT_MANAGER", "VIEW_LIST"))): ...
    """
    requirement = parse_policy(permission_policy(module_code, permission_code))
    if not isinstance(requirement, PermissionRequirement):
        raise ValueError(f"Invalid permission policy: {module_code!r}:{permission_code!r}")

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        store = request.app.state.user_store
        if not store.has_permission(user.id, requirement.module_code, requirement.permission_code):
            raise _forbidden()
        return user

    dependency.__name__ = f"require_permission_{requirement.module_code}_{requirement.permission_code}".lower()
    return dependency


def require_role(*roles: str) -> Callable[[Request], dict]:
    """Build a dependency enforcing RequireRole:{roles} against JWT claims.

    Returns the verified claims. ADMIN always passes.
    """
    requirement = parse_policy(role_policy(*roles))
    if not isinstance(requirement, RoleRequirement):
        raise ValueError(f"Invalid role policy: {roles!r}")

    def dependency(request: Request) -> dict:
        claims = get_current_claims(request)
        if not role_requirement_satisfied(requirement, claims):
            raise _forbidden()
        return claims

    dependency.__name__ = "require_role_" + "_".join(requirement.roles).lower()
    return dependency


def require_policy(name: str) -> Callable[[Request], object]:
    """Build a dependency from a policy name.

    RequirePermission:{MODULE}:{PERMISSION} -> require_permission
    RequireRole:{R1,R2}                   -> require_role
    anything else                          -> get_current_user
    """
    requirement = parse_policy(name)
    if isinstance(requirement, PermissionRequirement):
        return require_permission(requirement.module_code, requirement.permission_code)
    if isinstance(requirement, RoleRequirement):
        return require_role(*requirement.roles)
    return get_current_user
