"""
auth/policies.py -- Policy-name parsing and claim-based role checks.

Two policy families are supported, both addressed by a string name so route
declarations read the same way everywhere:

  RequirePermission:{MODULE}:{PERMISSION}
      Resolved against the live database on every request by
      UserStore.has_permission(). JWT claims are never trusted for this check,
      so revoking a grant takes effect on the caller's next request.

  RequireRole:R1,R2,...
      Resolved from JWT claims only -- no DB round-trip. ADMIN always passes.

parse_policy() returns None for anything it does not recognise; callers fall
back to "any authenticated user" for those names.

Layer rule: pure functions, no imports from api/ or any store.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from auth.constants import RoleCodes

PERMISSION_POLICY_PREFIX = "RequirePermission:"
ROLE_POLICY_PREFIX = "RequireRole:"


@dataclass(frozen=True)
class PermissionRequirement:
    module_code: str
    permission_code: str


@dataclass(frozen=True)
class RoleRequirement:
    roles: tuple[str, ...]


# ---------------------------------------------------------------------------
# Policy names
# ---------------------------------------------------------------------------


def permission_policy(module_code: str, permission_code: str) -> str:
    return f"{PERMISSION_POLICY_PREFIX}{module_code}:{permission_code}"


def role_policy(*roles: str) -> str:
    return f"{ROLE_POLICY_PREFIX}{','.join(roles)}"


def _strip_prefix(name: str, prefix: str) -> str | None:
    if len(name) >= len(prefix) and name[: len(prefix)].lower() == prefix.lower():
        return name[len(prefix) :]
    return None


def parse_policy(name: str | None) -> PermissionRequirement | RoleRequirement | None:
    """Turn a policy name into a requirement object.

    Permission names must carry exactly two non-blank segments after the
    prefix; extra or missing segments make the name unrecognised rather than
    partially applied.
    """
    if not name:
        return None

    rest = _strip_prefix(name, PERMISSION_POLICY_PREFIX)
    if rest is not None:
        parts = rest.split(":")
        if len(parts) != 2:
            return None
        module_code = parts[0].strip().upper()
        permission_code = parts[1].strip().upper()
        if not module_code or not permission_code:
            return None
        return PermissionRequirement(module_code, permission_code)

    rest = _strip_prefix(name, ROLE_POLICY_PREFIX)
    if rest is not None:
        roles = normalize_role_codes(rest.split(","))
        if not roles:
            return None
        return RoleRequirement(tuple(roles))

    return None


# ---------------------------------------------------------------------------
# Role claims
# ---------------------------------------------------------------------------


def normalize_role_codes(values: Iterable[str]) -> list[str]:
    """Trim, upper-case and de-duplicate role codes, dropping blanks. Order is kept."""
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        code = (value or "").strip().upper()
        if code and code not in seen:
            seen.add(code)
            result.append(code)
    return result


def roles_from_claims(claims: Mapping[str, Any]) -> list[str]:
    """Collect role codes from the "role" and "roles" claims.

    Each claim may be a single string, a comma-separated string, or a list of
    either. The result is normalised by normalize_role_codes().
    """
    raw: list[str] = []
    for key in ("role", "roles"):
        value = claims.get(key)
        if value is None:
            continue
        items = value if isinstance(value, (list, tuple)) else [value]
        for item in items:
            raw.extend(str(item).split(","))
    return normalize_role_codes(raw)


def role_requirement_satisfied(requirement: RoleRequirement, claims: Mapping[str, Any]) -> bool:
    """ADMIN bypasses every role requirement; otherwise any overlap passes."""
    user_roles = set(roles_from_claims(claims))
    if RoleCodes.ADMIN in user_roles:
        return True
    return any(role in user_roles for role in requirement.roles)
