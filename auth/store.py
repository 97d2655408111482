"""
auth/store.py -- SQLAlchemy Core persistence layer for principals, roles and permissions.

Pattern: Repository + Data Mapper.
PrincipalStore is the repository; _row_to_principal / _row_to_role /
_row_to_permission are the mappers. Service and route code never touches SQL
directly.

Store contract:
  - Lookups return None (or an empty list) when nothing matches. They never
    raise for "not found" -- deciding whether absence is an error belongs to
    the caller.
  - Uniqueness violations raise core.errors.DuplicateKey, never
    sqlalchemy.exc.IntegrityError. Callers match on the typed error instead of
    inspecting backend error codes.
  - Writes to a single principal/role are not coordinated across calls; last
    write wins.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Nullable UNIQUE columns (phone_number, google_id, microsoft_id, facebook_id)
  rely on SQL semantics where NULLs never collide, so any number of principals
  may leave a provider unlinked while a linked provider id stays unique.

Association rows (principal_roles, role_permissions) are cleaned up by the
store on delete. SQLite does not enforce foreign keys unless asked to, so the
cascade is done in code inside the same transaction.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Permission, Principal, PrincipalKind, Provider, Role
from core.errors import DuplicateKey

logger = logging.getLogger("authcore.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authcore.db'}"

# Bootstrap data provisioned by seed_defaults().
DEFAULT_PERMISSIONS = ("users:manage", "roles:manage", "permissions:manage")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_principals = Table(
    "principals",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("kind", String(10), nullable=False, server_default="user"),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(64), nullable=False, unique=True),
    Column("phone_number", String(20), unique=True),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("hashed_password", Text),  # NULL for federated-only principals
    Column("google_id", String(255), unique=True),
    Column("microsoft_id", String(255), unique=True),
    Column("facebook_id", String(255), unique=True),
    Column("is_verified", Boolean, nullable=False, server_default="0"),
    Column("is_banned", Boolean, nullable=False, server_default="0"),
    Column("password_changed_at", String(32)),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32)),
    Column("refresh_token", Text),  # the single live refresh token
    Column("created_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("category", String(100)),
    Column("description", Text),
)

_principal_roles = Table(
    "principal_roles",
    _metadata,
    Column("principal_id", String(32), primary_key=True),
    Column("role_id", String(32), primary_key=True),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", String(32), primary_key=True),
    Column("permission_id", String(32), primary_key=True),
)

# Principal columns that update_by_id() accepts. Everything else is either
# immutable (id, created_at) or managed through a dedicated method (roles).
_MUTABLE_PRINCIPAL_FIELDS = {
    "email",
    "username",
    "phone_number",
    "first_name",
    "last_name",
    "hashed_password",
    "google_id",
    "microsoft_id",
    "facebook_id",
    "is_verified",
    "is_banned",
    "password_changed_at",
    "failed_login_attempts",
    "lock_until",
    "refresh_token",
}

_DATETIME_FIELDS = {"password_changed_at", "lock_until"}

# "UNIQUE constraint failed: principals.email" (SQLite) or
# 'duplicate key value violates unique constraint "principals_email_key"' (PostgreSQL)
_UNIQUE_COLUMN_RE = re.compile(r"UNIQUE constraint failed: \w+\.(\w+)|\"\w+?_(\w+)_key\"")


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    # Everything is written as aware UTC; older naive rows are read as UTC.
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _duplicate_key(exc: IntegrityError) -> DuplicateKey:
    match = _UNIQUE_COLUMN_RE.search(str(exc.orig))
    column = (match.group(1) or match.group(2)) if match else None
    return DuplicateKey(column)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for Principal, Role and Permission entities.

    Usage:
        store = PrincipalStore()
        ids = store.seed_defaults()
        store.create(Principal(email="a@x.com", username="a", role_ids=[ids["user_role_id"]]))
        principal = store.find_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True

    # ------------------------------------------------------------------
    # Principal queries
    # ------------------------------------------------------------------

    def create(self, principal: Principal) -> Principal:
        """Insert a principal and its role links; return it with id and created_at set.

        Raises DuplicateKey if email, username, phone number or a provider id
        is already taken -- including when a concurrent request inserted the
        same value between the caller's pre-check and this insert.
        """
        principal_id = principal.id or _new_id()
        created_at = _now_iso()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _principals.insert().values(
                        id=principal_id,
                        kind=principal.kind.value,
                        email=normalize_email(principal.email),
                        username=principal.username,
                        phone_number=principal.phone_number,
                        first_name=principal.first_name,
                        last_name=principal.last_name,
                        hashed_password=principal.hashed_password,
                        google_id=principal.google_id,
                        microsoft_id=principal.microsoft_id,
                        facebook_id=principal.facebook_id,
                        is_verified=principal.is_verified,
                        is_banned=principal.is_banned,
                        password_changed_at=_to_iso(principal.password_changed_at),
                        failed_login_attempts=principal.failed_login_attempts,
                        lock_until=_to_iso(principal.lock_until),
                        refresh_token=principal.refresh_token,
                        created_at=created_at,
                    )
                )
                self._write_role_links(conn, principal_id, principal.role_ids)
        except IntegrityError as exc:
            raise _duplicate_key(exc) from exc
        created = self.find_by_id(principal_id)
        assert created is not None  # just inserted in a committed transaction
        return created

    def find_by_id(self, principal_id: str) -> Principal | None:
        return self._find_one(_principals.c.id == principal_id)

    def find_by_email(self, email: str) -> Principal | None:
        """Look up a principal by email (case-insensitive via normalization)."""
        return self._find_one(_principals.c.email == normalize_email(email))

    def find_by_username(self, username: str) -> Principal | None:
        return self._find_one(_principals.c.username == username)

    def find_by_phone(self, phone_number: str) -> Principal | None:
        return self._find_one(_principals.c.phone_number == phone_number)

    def find_by_provider_id(self, provider: Provider, provider_id: str) -> Principal | None:
        """Look up a principal by a linked external identity (e.g. google_id)."""
        return self._find_one(_principals.c[provider.id_field] == provider_id)

    def list_principals(self, email: str | None = None, username: str | None = None) -> list[Principal]:
        """Return principals ordered by email, optionally filtered by exact email/username."""
        query = _principals.select().order_by(_principals.c.email)
        if email:
            query = query.where(_principals.c.email == normalize_email(email))
        if username:
            query = query.where(_principals.c.username == username)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            return [_row_to_principal(r, self._load_role_ids(conn, r.id)) for r in rows]

    def update_by_id(self, principal_id: str, **fields) -> bool:
        """Update mutable fields on an existing principal.

        Accepted fields: see _MUTABLE_PRINCIPAL_FIELDS. datetime values are
        stored as ISO 8601 strings. Unknown fields raise ValueError rather than
        being silently dropped.

        Returns True if a row was updated, False if principal_id was not found.
        Raises DuplicateKey when the update collides with a unique column.
        """
        unknown = set(fields) - _MUTABLE_PRINCIPAL_FIELDS
        if unknown:
            raise ValueError(f"Unknown principal fields: {unknown!r}")
        if not fields:
            return self.find_by_id(principal_id) is not None
        values = dict(fields)
        for name in _DATETIME_FIELDS & values.keys():
            values[name] = _to_iso(values[name])
        if "email" in values:
            values["email"] = normalize_email(values["email"])
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_principals.update().where(_principals.c.id == principal_id).values(**values))
        except IntegrityError as exc:
            raise _duplicate_key(exc) from exc
        return result.rowcount > 0

    def set_roles(self, principal_id: str, role_ids: list[str]) -> bool:
        """Replace a principal's role set. Returns False if the principal does not exist."""
        with self.engine.begin() as conn:
            exists = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
            if exists is None:
                return False
            conn.execute(_principal_roles.delete().where(_principal_roles.c.principal_id == principal_id))
            self._write_role_links(conn, principal_id, role_ids)
        return True

    def delete_by_id(self, principal_id: str) -> bool:
        """Permanently delete a principal and its role links. Returns False if not found."""
        with self.engine.begin() as conn:
            conn.execute(_principal_roles.delete().where(_principal_roles.c.principal_id == principal_id))
            result = conn.execute(_principals.delete().where(_principals.c.id == principal_id))
        return result.rowcount > 0

    def find_with_roles_and_permissions(
        self, principal_id: str
    ) -> tuple[Principal, list[Role], list[Permission]] | None:
        """Load a principal together with its role documents and every permission they reference.

        Permissions are returned once each even when several roles share them.
        Returns None if the principal does not exist.
        """
        principal = self.find_by_id(principal_id)
        if principal is None:
            return None
        roles = self.find_roles_by_ids(principal.role_ids)
        permission_ids = list(dict.fromkeys(pid for role in roles for pid in role.permission_ids))
        return principal, roles, self.find_permissions_by_ids(permission_ids)

    # ------------------------------------------------------------------
    # Role queries
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> Role:
        """Insert a role with its permission links. Raises DuplicateKey on a taken name."""
        role_id = role.id or _new_id()
        try:
            with self.engine.begin() as conn:
                conn.execute(_roles.insert().values(id=role_id, name=role.name, description=role.description))
                self._write_permission_links(conn, role_id, role.permission_ids)
        except IntegrityError as exc:
            raise _duplicate_key(exc) from exc
        return Role(
            id=role_id,
            name=role.name,
            description=role.description,
            permission_ids=list(dict.fromkeys(role.permission_ids)),
        )

    def find_role_by_id(self, role_id: str) -> Role | None:
        roles = self.find_roles_by_ids([role_id])
        return roles[0] if roles else None

    def find_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
            return _row_to_role(row, self._load_permission_ids(conn, row.id)) if row is not None else None

    def find_roles_by_ids(self, role_ids: list[str]) -> list[Role]:
        """Return the roles whose ids are in role_ids. Unknown ids are skipped."""
        if not role_ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().where(_roles.c.id.in_(set(role_ids))).order_by(_roles.c.name)).fetchall()
            return [_row_to_role(r, self._load_permission_ids(conn, r.id)) for r in rows]

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
            return [_row_to_role(r, self._load_permission_ids(conn, r.id)) for r in rows]

    def update_role(self, role_id: str, **fields) -> bool:
        """Update name/description and optionally replace permission_ids.

        Returns False if role_id was not found. Raises DuplicateKey on a taken name.
        """
        unknown = set(fields) - {"name", "description", "permission_ids"}
        if unknown:
            raise ValueError(f"Unknown role fields: {unknown!r}")
        permission_ids = fields.pop("permission_ids", None)
        try:
            with self.engine.begin() as conn:
                if conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone() is None:
                    return False
                if fields:
                    conn.execute(_roles.update().where(_roles.c.id == role_id).values(**fields))
                if permission_ids is not None:
                    conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
                    self._write_permission_links(conn, role_id, permission_ids)
        except IntegrityError as exc:
            raise _duplicate_key(exc) from exc
        return True

    def set_role_permissions(self, role_id: str, permission_ids: list[str]) -> bool:
        return self.update_role(role_id, permission_ids=permission_ids)

    def delete_role(self, role_id: str) -> bool:
        """Delete a role, its permission links and every principal's reference to it."""
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            conn.execute(_principal_roles.delete().where(_principal_roles.c.role_id == role_id))
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Permission queries
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> Permission:
        """Insert a permission. Raises DuplicateKey on a taken name."""
        permission_id = permission.id or _new_id()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _permissions.insert().values(
                        id=permission_id,
                        name=permission.name,
                        category=permission.category,
                        description=permission.description,
                    )
                )
        except IntegrityError as exc:
            raise _duplicate_key(exc) from exc
        return Permission(
            id=permission_id,
            name=permission.name,
            category=permission.category,
            description=permission.description,
        )

    def find_permission_by_name(self, name: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.name == name)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def find_permissions_by_ids(self, permission_ids: list[str]) -> list[Permission]:
        if not permission_ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(
                _permissions.select().where(_permissions.c.id.in_(set(permission_ids))).order_by(_permissions.c.name)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.name)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def update_permission(self, permission_id: str, **fields) -> bool:
        unknown = set(fields) - {"name", "category", "description"}
        if unknown:
            raise ValueError(f"Unknown permission fields: {unknown!r}")
        if not fields:
            return bool(self.find_permissions_by_ids([permission_id]))
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_permissions.update().where(_permissions.c.id == permission_id).values(**fields))
        except IntegrityError as exc:
            raise _duplicate_key(exc) from exc
        return result.rowcount > 0

    def delete_permission(self, permission_id: str) -> bool:
        """Delete a permission and remove it from every role that grants it."""
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.permission_id == permission_id))
            result = conn.execute(_permissions.delete().where(_permissions.c.id == permission_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def seed_defaults(self, default_role: str = "user", admin_role: str = "admin") -> dict[str, str]:
        """Provision the default permissions and the admin/user roles if absent.

        Idempotent -- safe to call on every startup. Existing roles are left as
        they are (an operator may have edited them).
        """
        permission_ids: list[str] = []
        for name in DEFAULT_PERMISSIONS:
            perm = self.find_permission_by_name(name)
            if perm is None:
                perm = self.create_permission(Permission(name=name, category=name.split(":")[0]))
            permission_ids.append(perm.id)

        admin = self.find_role_by_name(admin_role)
        if admin is None:
            admin = self.create_role(Role(name=admin_role, description="Administrator", permission_ids=permission_ids))
        user = self.find_role_by_name(default_role)
        if user is None:
            user = self.create_role(Role(name=default_role, description="Default role"))
        logger.info("Default roles present (admin=%s, user=%s)", admin.id, user.id)
        return {"admin_role_id": admin.id, "user_role_id": user.id}

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find_one(self, condition) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(condition)).fetchone()
            if row is None:
                return None
            return _row_to_principal(row, self._load_role_ids(conn, row.id))

    @staticmethod
    def _load_role_ids(conn: Connection, principal_id: str) -> list[str]:
        rows = conn.execute(
            _principal_roles.select().where(_principal_roles.c.principal_id == principal_id)
        ).fetchall()
        return [r.role_id for r in rows]

    @staticmethod
    def _load_permission_ids(conn: Connection, role_id: str) -> list[str]:
        rows = conn.execute(_role_permissions.select().where(_role_permissions.c.role_id == role_id)).fetchall()
        return [r.permission_id for r in rows]

    @staticmethod
    def _write_role_links(conn: Connection, principal_id: str, role_ids: list[str]) -> None:
        for role_id in dict.fromkeys(role_ids):
            conn.execute(_principal_roles.insert().values(principal_id=principal_id, role_id=role_id))

    @staticmethod
    def _write_permission_links(conn: Connection, role_id: str, permission_ids: list[str]) -> None:
        for permission_id in dict.fromkeys(permission_ids):
            conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=permission_id))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row, role_ids: list[str]) -> Principal:
    return Principal(
        id=row.id,
        kind=PrincipalKind(row.kind),
        email=row.email,
        username=row.username,
        phone_number=row.phone_number,
        first_name=row.first_name,
        last_name=row.last_name,
        hashed_password=row.hashed_password,
        google_id=row.google_id,
        microsoft_id=row.microsoft_id,
        facebook_id=row.facebook_id,
        role_ids=role_ids,
        is_verified=bool(row.is_verified),
        is_banned=bool(row.is_banned),
        password_changed_at=_from_iso(row.password_changed_at),
        failed_login_attempts=row.failed_login_attempts or 0,
        lock_until=_from_iso(row.lock_until),
        refresh_token=row.refresh_token,
        created_at=row.created_at,
    )


def _row_to_role(row, permission_ids: list[str]) -> Role:
    return Role(id=row.id, name=row.name, description=row.description, permission_ids=permission_ids)


def _row_to_permission(row) -> Permission:
    return Permission(id=row.id, name=row.name, category=row.category, description=row.description)
