"""
auth/store.py -- SQLAlchemy Core persistence layer for identity and RBAC.

Pattern: Repository + Data Mapper. UserStore is the repository; the _row_to_*
functions are the mappers. Route and dependency code never touches SQL.

Tables:
  users             -- accounts (customers and staff)
  roles             -- role catalogue (code unique, active flag)
  user_roles        -- many-to-many users x roles
  modules           -- back-office modules (PRODUCT_MANAGER, ...)
  permissions       -- actions (VIEW_LIST, CREATE, ...)
  role_permissions  -- grant matrix role x module x permission -> is_active

Permission checks (has_permission) re-read the user's roles and grants on
every call. Nothing is cached, so a revoked grant or a deactivated role
applies to the very next request.

Security:
  All queries use bound parameters. No f-strings in SQL.

DB path: auth/ktk_auth.db.

Layer rule: no imports from api/, shop/, support/, content/, or realtime/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.constants import (
    MODULE_NAMES,
    PERMISSION_NAMES,
    ROLE_NAMES,
    ModuleCodes,
    PermissionCodes,
    RoleCodes,
    is_care_role,
    is_staff_role,
)
from auth.models import Module, Permission, Role, RolePermission, User
from auth.policies import normalize_role_codes

logger = logging.getLogger("ktk.auth")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'ktk_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("full_name", String(255)),
    Column("phone", String(32)),
    Column("hashed_password", Text),
    Column("support_priority_level", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

_modules = Table(
    "modules",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("created_at", String(32), nullable=False),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("created_at", String(32), nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("module_id", Integer, ForeignKey("modules.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    UniqueConstraint("role_id", "module_id", "permission_id", name="uq_role_module_permission"),
)


# ---------------------------------------------------------------------------
# Connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and FK enforcement on every new connection.

    SQLite PRAGMAs are per-connection, so they must be set in the connect hook
    rather than once at startup. foreign_keys makes ON DELETE CASCADE on
    user_roles / role_permissions effective.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, roles, modules, permissions and grants.

    Usage:
        store = UserStore()
        store.seed_defaults()
        uid = store.create_user(User(username="admin", email="a@x.vn"), role_codes=["ADMIN"])
        store.has_permission(uid, "PRODUCT_MANAGER", "VIEW_LIST")  # True
        store.close()
    """

    _USER_FIELDS: set = {"email", "full_name", "phone", "hashed_password", "support_priority_level", "is_active"}

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def seed_defaults(self) -> None:
        """Create the built-in roles, modules and permissions if missing.

        ADMIN additionally receives an active grant for every module x
        permission pair. Idempotent -- existing rows and grants are left as
        they are, so an operator who revoked something keeps it revoked.
        """
        with self.engine.connect() as conn:
            for code in RoleCodes.ALL:
                if conn.execute(select(_roles.c.id).where(_roles.c.code == code)).first() is None:
                    conn.execute(
                        _roles.insert().values(
                            code=code,
                            name=ROLE_NAMES[code],
                            is_active=1,
                            is_system=1 if code == RoleCodes.ADMIN else 0,
                            created_at=_now_iso(),
                        )
                    )
            for code in ModuleCodes.ALL:
                if conn.execute(select(_modules.c.id).where(_modules.c.code == code)).first() is None:
                    conn.execute(_modules.insert().values(code=code, name=MODULE_NAMES[code], created_at=_now_iso()))
            for code in PermissionCodes.ALL:
                if conn.execute(select(_permissions.c.id).where(_permissions.c.code == code)).first() is None:
                    conn.execute(
                        _permissions.insert().values(code=code, name=PERMISSION_NAMES[code], created_at=_now_iso())
                    )

            admin_id = conn.execute(select(_roles.c.id).where(_roles.c.code == RoleCodes.ADMIN)).scalar_one()
            module_ids = conn.execute(select(_modules.c.id)).scalars().all()
            permission_ids = conn.execute(select(_permissions.c.id)).scalars().all()
            existing = {
                (r.module_id, r.permission_id)
                for r in conn.execute(
                    select(_role_permissions.c.module_id, _role_permissions.c.permission_id).where(
                        _role_permissions.c.role_id == admin_id
                    )
                )
            }
            for module_id in module_ids:
                for permission_id in permission_ids:
                    if (module_id, permission_id) not in existing:
                        conn.execute(
                            _role_permissions.insert().values(
                                role_id=admin_id, module_id=module_id, permission_id=permission_id, is_active=1
                            )
                        )
            conn.commit()
        logger.info("RBAC defaults ensured")

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users")).scalar()
        return (result or 0) > 0

    def create_user(self, user: User, role_codes: Iterable[str] = ()) -> int:
        """Insert a new user with the given role codes and return its ID.

        Raises sqlalchemy.exc.IntegrityError if username or email is taken.
        Unknown role codes are ignored.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email.lower(),
                    full_name=user.full_name,
                    phone=user.phone,
                    hashed_password=user.hashed_password,
                    support_priority_level=user.support_priority_level,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            user_id = result.inserted_primary_key[0]
            self._replace_user_roles(conn, user_id, role_codes)
            conn.commit()
            return user_id

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._active_role_codes(conn, user_id))

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by username or, failing that, by email (case-insensitive)."""
        login = username.strip()
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == login)).fetchone()
            if row is None:
                row = conn.execute(_users.select().where(_users.c.email == login.lower())).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._active_role_codes(conn, row.id))

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._active_role_codes(conn, row.id))

    def list_users(
        self,
        search: str | None = None,
        role_code: str | None = None,
        is_active: bool | None = None,
    ) -> list[User]:
        """Return users ordered by username, optionally filtered."""
        query = _users.select().order_by(_users.c.username)
        if search:
            pattern = f"%{search.strip().lower()}%"
            query = query.where(
                or_(
                    func.lower(_users.c.username).like(pattern),
                    func.lower(_users.c.email).like(pattern),
                    func.lower(_users.c.full_name).like(pattern),
                )
            )
        if is_active is not None:
            query = query.where(_users.c.is_active == (1 if is_active else 0))
        if role_code:
            query = query.where(
                _users.c.id.in_(
                    select(_user_roles.c.user_id)
                    .join(_roles, _roles.c.id == _user_roles.c.role_id)
                    .where(_roles.c.code == role_code.strip().upper())
                )
            )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            return [_row_to_user(r, self._active_role_codes(conn, r.id)) for r in rows]

    def list_active_staff(self, care_only: bool = False) -> list[User]:
        """Return active users holding an active staff-like role.

        care_only restricts to roles whose code contains CARE (ticket assignees);
        otherwise ADMIN also qualifies (support-chat staff).
        """
        match = is_care_role if care_only else is_staff_role
        return [u for u in self.list_users(is_active=True) if any(match(code) for code in u.roles)]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: email, full_name, phone, hashed_password,
        support_priority_level, is_active. Unknown fields raise ValueError.
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - self._USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if not fields:
            return self.get_by_id(user_id) is not None
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "email" in fields and fields["email"]:
            fields["email"] = fields["email"].strip().lower()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_user_roles(self, user_id: int, role_codes: Iterable[str]) -> None:
        with self.engine.connect() as conn:
            self._replace_user_roles(conn, user_id, role_codes)
            conn.commit()

    def raise_support_priority(self, user_id: int, level: int) -> None:
        """Raise (never lower) a user's support priority level."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.support_priority_level < level))
                .values(support_priority_level=level)
            )
            conn.commit()

    def delete_user(self, user_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Permission check
    # ------------------------------------------------------------------

    def get_active_role_codes(self, user_id: int) -> list[str]:
        with self.engine.connect() as conn:
            return self._active_role_codes(conn, user_id)

    def has_permission(self, user_id: int, module_code: str, permission_code: str) -> bool:
        """Return True if any of the user's active roles grants module+permission.

        Denies when the user does not exist, is inactive, has no roles, or has
        no active role with a non-blank code. Grants are OR-ed across roles.
        """
        module_code = module_code.strip().upper()
        permission_code = permission_code.strip().upper()
        with self.engine.connect() as conn:
            user_row = conn.execute(select(_users.c.id, _users.c.is_active).where(_users.c.id == user_id)).first()
            if user_row is None or not user_row.is_active:
                return False
            codes = self._active_role_codes(conn, user_id)
            if not codes:
                return False
            hit = conn.execute(
                select(_role_permissions.c.id)
                .join(_roles, _roles.c.id == _role_permissions.c.role_id)
                .join(_modules, _modules.c.id == _role_permissions.c.module_id)
                .join(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
                .where(
                    (_role_permissions.c.is_active == 1)
                    & (_roles.c.is_active == 1)
                    & (func.upper(_roles.c.code).in_(codes))
                    & (func.upper(_modules.c.code) == module_code)
                    & (func.upper(_permissions.c.code) == permission_code)
                )
                .limit(1)
            ).first()
        return hit is not None

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.code)).fetchall()
        return [_row_to_role(r) for r in rows]

    def get_role(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_code(self, code: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.code == code.strip().upper())).fetchone()
        return _row_to_role(row) if row is not None else None

    def create_role(self, role: Role) -> int:
        """Insert a role. Raises IntegrityError when the code already exists."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(
                    code=role.code.strip().upper(),
                    name=role.name,
                    is_active=1 if role.is_active else 0,
                    is_system=0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_role(self, role_id: int, name: str | None = None, is_active: bool | None = None) -> bool:
        values: dict = {}
        if name is not None:
            values["name"] = name
        if is_active is not None:
            values["is_active"] = 1 if is_active else 0
        if not values:
            return self.get_role(role_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_role(self, role_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Modules and permissions
    # ------------------------------------------------------------------

    def list_modules(self) -> list[Module]:
        with self.engine.connect() as conn:
            rows = conn.execute(_modules.select().order_by(_modules.c.code)).fetchall()
        return [_row_to_module(r) for r in rows]

    def get_module(self, module_id: int) -> Module | None:
        with self.engine.connect() as conn:
            row = conn.execute(_modules.select().where(_modules.c.id == module_id)).fetchone()
        return _row_to_module(row) if row is not None else None

    def create_module(self, module: Module) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _modules.insert().values(
                    code=module.code.strip().upper(),
                    name=module.name,
                    description=module.description,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_module(self, module_id: int, **fields) -> bool:
        values = {k: v for k, v in fields.items() if k in ("name", "description") and v is not None}
        if not values:
            return self.get_module(module_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_modules.update().where(_modules.c.id == module_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_module(self, module_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_modules.delete().where(_modules.c.id == module_id))
            conn.commit()
        return result.rowcount > 0

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.code)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def get_permission(self, permission_id: int) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.id == permission_id)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def create_permission(self, permission: Permission) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _permissions.insert().values(
                    code=permission.code.strip().upper(),
                    name=permission.name,
                    description=permission.description,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_permission(self, permission_id: int, **fields) -> bool:
        values = {k: v for k, v in fields.items() if k in ("name", "description") and v is not None}
        if not values:
            return self.get_permission(permission_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_permissions.update().where(_permissions.c.id == permission_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_permission(self, permission_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_permissions.delete().where(_permissions.c.id == permission_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Grant matrix
    # ------------------------------------------------------------------

    def get_role_permissions(self, role_id: int) -> list[RolePermission]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(
                    _role_permissions.c.role_id,
                    _role_permissions.c.module_id,
                    _role_permissions.c.permission_id,
                    _role_permissions.c.is_active,
                    _modules.c.code.label("module_code"),
                    _permissions.c.code.label("permission_code"),
                )
                .join(_modules, _modules.c.id == _role_permissions.c.module_id)
                .join(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
                .where(_role_permissions.c.role_id == role_id)
                .order_by(_modules.c.code, _permissions.c.code)
            ).fetchall()
        return [
            RolePermission(
                role_id=r.role_id,
                module_id=r.module_id,
                permission_id=r.permission_id,
                is_active=bool(r.is_active),
                module_code=r.module_code,
                permission_code=r.permission_code,
            )
            for r in rows
        ]

    def set_role_permissions(self, role_id: int, grants: Iterable[tuple[int, int, bool]]) -> int:
        """Upsert (module_id, permission_id, is_active) cells for a role.

        Cells not mentioned are left untouched. Returns the number of cells written.
        """
        written = 0
        with self.engine.connect() as conn:
            for module_id, permission_id, is_active in grants:
                flag = 1 if is_active else 0
                result = conn.execute(
                    _role_permissions.update()
                    .where(
                        (_role_permissions.c.role_id == role_id)
                        & (_role_permissions.c.module_id == module_id)
                        & (_role_permissions.c.permission_id == permission_id)
                    )
                    .values(is_active=flag)
                )
                if result.rowcount == 0:
                    conn.execute(
                        _role_permissions.insert().values(
                            role_id=role_id, module_id=module_id, permission_id=permission_id, is_active=flag
                        )
                    )
                written += 1
            conn.commit()
        return written

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal helpers (connection-scoped)
    # ------------------------------------------------------------------

    def _active_role_codes(self, conn, user_id: int) -> list[str]:
        rows = conn.execute(
            select(_roles.c.code)
            .join(_user_roles, _user_roles.c.role_id == _roles.c.id)
            .where((_user_roles.c.user_id == user_id) & (_roles.c.is_active == 1))
            .order_by(_roles.c.code)
        ).scalars()
        return normalize_role_codes(rows)

    def _replace_user_roles(self, conn, user_id: int, role_codes: Iterable[str]) -> None:
        codes = normalize_role_codes(role_codes)
        conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
        if not codes:
            return
        role_ids = conn.execute(select(_roles.c.id).where(_roles.c.code.in_(codes))).scalars().all()
        for role_id in role_ids:
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, roles: list[str]) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        full_name=row.full_name,
        phone=row.phone,
        hashed_password=row.hashed_password,
        support_priority_level=row.support_priority_level or 0,
        roles=roles,
        created_at=row.created_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        code=row.code,
        name=row.name,
        is_active=bool(row.is_active),
        is_system=bool(row.is_system),
        created_at=row.created_at,
    )


def _row_to_module(row) -> Module:
    return Module(id=row.id, code=row.code, name=row.name, description=row.description, created_at=row.created_at)


def _row_to_permission(row) -> Permission:
    return Permission(id=row.id, code=row.code, name=row.name, description=row.description, created_at=row.created_at)
