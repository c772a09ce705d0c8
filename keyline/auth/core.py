"""
Keyline Auth - Core Types

Identity & permission model shared by every component: principals, key
records and their lineage, owners, groups, keychains, access grants,
refresh records and posts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ============================================================================
# Principal Model
# ============================================================================

class PrincipalType(str, Enum):
    """Type tag carried by tokens, audit events and refresh records."""
    OWNER = "owner"
    KEY = "key"


class KeyVariant(str, Enum):
    """Key variants. Primary and Secondary are Author keys."""
    PRIMARY = "primary"
    SECONDARY = "secondary"
    USE = "use"

    @property
    def is_author(self) -> bool:
        return self in (KeyVariant.PRIMARY, KeyVariant.SECONDARY)

    @property
    def role(self) -> str:
        return "use" if self is KeyVariant.USE else "author"


@dataclass(frozen=True)
class OwnerPrincipal:
    """
    Authenticated human principal.

    Permissions are the fixed owner set frozen at token issuance.
    """
    owner_id: str
    permissions: frozenset[str] = frozenset()

    @property
    def id(self) -> str:
        return self.owner_id

    @property
    def type(self) -> PrincipalType:
        return PrincipalType.OWNER

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass(frozen=True)
class KeyPrincipal:
    """
    Authenticated machine principal.

    Permissions are the key's permission set frozen at token issuance.
    """
    key_id: str
    variant: KeyVariant
    permissions: frozenset[str] = frozenset()
    public_id: str | None = None

    @property
    def id(self) -> str:
        return self.key_id

    @property
    def type(self) -> PrincipalType:
        return PrincipalType.KEY

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


Principal = Union[OwnerPrincipal, KeyPrincipal]


def principal_ref(principal: Principal) -> tuple[str, str]:
    """Return ``(type, id)`` for a principal, rejecting anything else."""
    if isinstance(principal, OwnerPrincipal):
        return PrincipalType.OWNER.value, principal.owner_id
    if isinstance(principal, KeyPrincipal):
        return PrincipalType.KEY.value, principal.key_id
    raise TypeError(f"Unsupported principal: {type(principal).__name__}")


# ============================================================================
# Owners & Keys
# ============================================================================

@dataclass
class OwnerRecord:
    """Stored owner account. The password hash never leaves the store layer."""
    owner_id: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "email": self.email,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Lineage:
    """
    Immutable trust position of a key.

    ``issued_by`` and ``parent`` are None for Primary keys, whose
    ``initial_author`` is their own id.
    """
    issued_by: str | None
    parent: str | None
    initial_author: str

    @classmethod
    def root(cls, key_id: str) -> Lineage:
        return cls(issued_by=None, parent=None, initial_author=key_id)

    @classmethod
    def delegated(cls, issuer: KeyRecord) -> Lineage:
        return cls(
            issued_by=issuer.key_id,
            parent=issuer.key_id,
            initial_author=issuer.lineage.initial_author,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "issued_by": self.issued_by,
            "parent": self.parent,
            "initial_author": self.initial_author,
        }


@dataclass
class KeyRecord:
    """
    Stored key.

    ``permissions`` and ``lineage`` are fixed at mint time. The mutable
    fields (active flag, counters, rotation links) only change through the
    store's conditional operations.
    """
    key_id: str
    public_id: str
    variant: KeyVariant
    secret_hash: str
    permissions: frozenset[str]
    lineage: Lineage
    owner_id: str | None = None
    label: str | None = None
    active: bool = True
    use_count_limit: int | None = None
    use_count_current: int = 0
    device_limit: int | None = None
    rotated_from: str | None = None
    rotated_to: str | None = None
    retired_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def parent_id(self) -> str | None:
        return self.lineage.parent

    @property
    def is_retired(self) -> bool:
        return self.rotated_to is not None

    def to_principal(self) -> KeyPrincipal:
        return KeyPrincipal(
            key_id=self.key_id,
            variant=self.variant,
            permissions=frozenset(self.permissions),
            public_id=self.public_id,
        )

    def to_dict(self) -> dict[str, Any]:
        """Public view (no secret hash)."""
        return {
            "key_id": self.key_id,
            "public_id": self.public_id,
            "type": self.variant.value,
            "permissions": sorted(self.permissions),
            "label": self.label,
            "active": self.active,
            "use_count_limit": self.use_count_limit,
            "use_count_current": self.use_count_current,
            "device_limit": self.device_limit,
            "rotated_from": self.rotated_from,
            "rotated_to": self.rotated_to,
            "retired_at": _iso(self.retired_at),
            "created_at": _iso(self.created_at),
            **self.lineage.to_dict(),
        }


@dataclass
class MintResult:
    """
    Outcome of minting or rotating a key.

    ``secret`` is the only copy of the plaintext secret; it is not stored.
    """
    key: KeyRecord
    secret: str

    def to_dict(self) -> dict[str, Any]:
        return {**self.key.to_dict(), "secret": self.secret}


# ============================================================================
# Groups, Keychains & Grants
# ============================================================================

class GrantTarget(str, Enum):
    KEY = "key"
    GROUP = "group"


@dataclass
class Group:
    group_id: str
    owner_id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "owner_id": self.owner_id,
            "name": self.name,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Keychain:
    """
    Named set of keys.

    Owner keychains have ``owner_id``; external keychains are managed by
    the key in ``created_by_key_id``.
    """
    keychain_id: str
    name: str
    owner_id: str | None = None
    created_by_key_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_external(self) -> bool:
        return self.owner_id is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "keychain_id": self.keychain_id,
            "name": self.name,
            "owner_id": self.owner_id,
            "created_by_key_id": self.created_by_key_id,
            "created_at": _iso(self.created_at),
        }


@dataclass
class AccessGrant:
    """Bitmask grant of a resource to a key or group."""
    grant_id: str
    resource_id: str
    target_type: GrantTarget
    target_id: str
    mask: int
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def target(self) -> tuple[str, GrantTarget, str]:
        return (self.resource_id, self.target_type, self.target_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "grant_id": self.grant_id,
            "resource_id": self.resource_id,
            "target_type": self.target_type.value,
            "target_id": self.target_id,
            "permission_mask": self.mask,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ============================================================================
# Sessions
# ============================================================================

@dataclass
class RefreshRecord:
    """
    Stored refresh token.

    ``token_hash`` verifies the presented token; ``lookup_hash`` is the
    indexed lookup key. ``rotated_at`` is set exactly once.
    """
    token_id: str
    subject_type: PrincipalType
    subject_id: str
    token_hash: str
    lookup_hash: str
    expires_at: datetime
    issued_at: datetime = field(default_factory=utcnow)
    rotated_at: datetime | None = None
    replaced_by_id: str | None = None
    revoked_at: datetime | None = None
    ip: str | None = None
    user_agent: str | None = None

    @property
    def is_rotated(self) -> bool:
        return self.rotated_at is not None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def to_dict(self) -> dict[str, Any]:
        """Serialize (hashes included; for persistence only)."""
        return {
            "token_id": self.token_id,
            "subject_type": self.subject_type.value,
            "subject_id": self.subject_id,
            "token_hash": self.token_hash,
            "lookup_hash": self.lookup_hash,
            "expires_at": _iso(self.expires_at),
            "issued_at": _iso(self.issued_at),
            "rotated_at": _iso(self.rotated_at),
            "replaced_by_id": self.replaced_by_id,
            "revoked_at": _iso(self.revoked_at),
            "ip": self.ip,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RefreshRecord:
        return cls(
            token_id=data["token_id"],
            subject_type=PrincipalType(data["subject_type"]),
            subject_id=data["subject_id"],
            token_hash=data["token_hash"],
            lookup_hash=data["lookup_hash"],
            expires_at=_from_iso(data["expires_at"]),
            issued_at=_from_iso(data["issued_at"]),
            rotated_at=_from_iso(data.get("rotated_at")),
            replaced_by_id=data.get("replaced_by_id"),
            revoked_at=_from_iso(data.get("revoked_at")),
            ip=data.get("ip"),
            user_agent=data.get("user_agent"),
        )


@dataclass
class AuthResult:
    """
    Result of a successful credential redemption or refresh.

    Contains the authenticated principal and the new token pair.
    """
    principal: Principal
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dict (token response)."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


# ============================================================================
# Content
# ============================================================================

@dataclass
class Post:
    post_id: str
    author_key_id: str
    initial_author_key_id: str
    content: str
    title: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "post_id": self.post_id,
            "author_key_id": self.author_key_id,
            "initial_author_key_id": self.initial_author_key_id,
            "title": self.title,
            "content": self.content,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Comment:
    comment_id: str
    post_id: str
    created_by_key_id: str
    body: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "comment_id": self.comment_id,
            "post_id": self.post_id,
            "created_by_key_id": self.created_by_key_id,
            "body": self.body,
            "created_at": _iso(self.created_at),
        }


# ============================================================================
# Store Protocols
# ============================================================================

class RedemptionOutcome(str, Enum):
    """Result of an atomic Use-key redemption."""
    OK = "ok"
    INACTIVE = "inactive"
    USE_LIMIT = "use_limit"
    DEVICE_LIMIT = "device_limit"


class RotationOutcome(str, Enum):
    """Result of an atomic key rotation."""
    ROTATED = "rotated"
    NOT_FOUND = "not_found"
    ALREADY_ROTATED = "already_rotated"


class OwnerStore(Protocol):
    """Protocol for owner account storage."""

    async def create(self, owner: OwnerRecord) -> OwnerRecord:
        """Insert owner; raises DUPLICATE_RECORD if the email is taken."""
        ...

    async def get(self, owner_id: str) -> OwnerRecord | None:
        ...

    async def get_by_email(self, email: str) -> OwnerRecord | None:
        ...


class KeyStore(Protocol):
    """
    Protocol for key storage.

    Every mutating method is a single atomic unit. ``insert`` is conditional
    on the parent being active, ``rotate`` on the predecessor not being
    rotated, ``redeem`` on the limits not being exhausted, and
    ``deactivate_subtree`` reads the tree at one logical instant.
    """

    async def insert(self, key: KeyRecord) -> bool:
        """Insert key iff its parent (if any) exists and is active."""
        ...

    async def get(self, key_id: str) -> KeyRecord | None:
        ...

    async def get_by_public_id(self, public_id: str) -> KeyRecord | None:
        ...

    async def list_primary_ids(self, owner_id: str) -> list[str]:
        ...

    async def list_by_initial_authors(self, initial_author_ids: list[str]) -> list[KeyRecord]:
        ...

    async def get_current(self, key_id: str) -> KeyRecord | None:
        """The key now holding ``key_id``'s position (follows ``rotated_to``)."""
        ...

    async def rotate(self, key_id: str, successor: KeyRecord) -> RotationOutcome:
        """
        Retire ``key_id`` in favour of ``successor``.

        The successor takes over the predecessor's children and devices and
        is stored inactive unless both the predecessor and its parent are
        active.
        """
        ...

    async def set_active(self, key_id: str, active: bool) -> bool:
        """Flip a single key; False if absent, or activating under an inactive parent."""
        ...

    async def deactivate_subtree(self, key_id: str) -> list[str]:
        """Deactivate key and every descendant; returns ids changed."""
        ...

    async def lineage(self, key_id: str) -> list[KeyRecord]:
        """Parent chain, root first, ending with the key itself."""
        ...

    async def descendants(self, key_id: str) -> list[KeyRecord]:
        ...

    async def redeem(
        self,
        key_id: str,
        fingerprint: str | None,
        count_use: bool = True,
    ) -> RedemptionOutcome:
        ...

    async def devices(self, key_id: str) -> set[str]:
        ...


class AccessStore(Protocol):
    """Protocol for groups, keychains and resource grants."""

    async def create_group(self, group: Group) -> Group:
        ...

    async def get_group(self, group_id: str) -> Group | None:
        ...

    async def list_groups(self, owner_id: str) -> list[Group]:
        ...

    async def rename_group(self, group_id: str, name: str) -> Group | None:
        ...

    async def delete_group(self, group_id: str) -> bool:
        ...

    async def add_member(self, group_id: str, key_id: str) -> bool:
        ...

    async def remove_member(self, group_id: str, key_id: str) -> bool:
        ...

    async def members(self, group_id: str) -> list[str]:
        ...

    async def groups_for_key(self, key_id: str) -> list[str]:
        ...

    async def create_keychain(self, keychain: Keychain) -> Keychain:
        ...

    async def get_keychain(self, keychain_id: str) -> Keychain | None:
        ...

    async def list_keychains(
        self,
        owner_id: str | None = None,
        created_by_key_id: str | None = None,
    ) -> list[Keychain]:
        ...

    async def add_keychain_member(self, keychain_id: str, key_id: str) -> bool:
        ...

    async def remove_keychain_member(self, keychain_id: str, key_id: str) -> bool:
        ...

    async def keychain_members(self, keychain_id: str) -> list[str]:
        ...

    async def upsert_grant(
        self,
        resource_id: str,
        target_type: GrantTarget,
        target_id: str,
        mask: int,
    ) -> AccessGrant:
        ...

    async def delete_grant(
        self,
        resource_id: str,
        target_type: GrantTarget,
        target_id: str,
    ) -> bool:
        ...

    async def grants_for_resource(self, resource_id: str) -> list[AccessGrant]:
        ...

    async def resolve_mask(self, resource_id: str, key_id: str) -> int:
        """OR of the direct grant and every grant to a group holding the key."""
        ...

    async def visible_resources(self, key_id: str, required: int) -> list[str]:
        ...


class PostStore(Protocol):
    """Protocol for posts and comments."""

    async def create_post(self, post: Post) -> Post:
        ...

    async def get_post(self, post_id: str) -> Post | None:
        ...

    async def posts_by_ids(self, post_ids: list[str]) -> list[Post]:
        ...

    async def posts_by_initial_authors(self, initial_author_ids: list[str]) -> list[Post]:
        ...

    async def create_comment(self, comment: Comment) -> Comment:
        ...

    async def comments_for_post(self, post_id: str) -> list[Comment]:
        ...
