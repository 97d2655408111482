"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, minimal logic). Dataclasses own the
domain shape; the store, services and routes do the work.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class PrincipalKind(str, Enum):
    """Users and clients are structurally identical for the auth core."""

    USER = "user"
    CLIENT = "client"


class Provider(str, Enum):
    """Supported external identity providers.

    The value doubles as the prefix of the principal's linkage column
    (google -> google_id).
    """

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    FACEBOOK = "facebook"

    @property
    def id_field(self) -> str:
        return f"{self.value}_id"


@dataclass
class Principal:
    """An authenticated identity (user or client).

    hashed_password is None for federated-only principals. Each provider id is
    independently nullable and unique when present. refresh_token holds the
    single live refresh token -- rotation overwrites it, so any earlier token
    no longer matches and is rejected on use.

    role_ids is an unordered set of role references; order carries no meaning.
    """

    email: str
    username: str
    id: str | None = None
    kind: PrincipalKind = PrincipalKind.USER
    first_name: str = ""
    last_name: str = ""
    phone_number: str | None = None
    hashed_password: str | None = None  # None = federated-only principal
    google_id: str | None = None
    microsoft_id: str | None = None
    facebook_id: str | None = None
    role_ids: list[str] = field(default_factory=list)
    is_verified: bool = False
    is_banned: bool = False
    password_changed_at: datetime | None = None
    failed_login_attempts: int = 0
    lock_until: datetime | None = None
    refresh_token: str | None = None
    created_at: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def linked_providers(self) -> list[str]:
        return [p.value for p in Provider if getattr(self, p.id_field)]


@dataclass
class Permission:
    """A capability string such as "users:manage"."""

    name: str
    id: str | None = None
    category: str | None = None
    description: str | None = None


@dataclass
class Role:
    """A named bundle of permission references."""

    name: str
    id: str | None = None
    description: str | None = None
    permission_ids: list[str] = field(default_factory=list)


@dataclass
class ResolvedAccess:
    """A principal's roles flattened to the data embedded in an access token.

    permissions is deduplicated: a permission granted by two roles appears once.
    """

    role_ids: list[str] = field(default_factory=list)
    role_names: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)


@dataclass
class Profile:
    """Identity extracted from an external provider credential."""

    email: str
    name: str | None = None
    provider_id: str | None = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
