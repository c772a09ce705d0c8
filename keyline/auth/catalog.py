"""
Keyline Auth - Permission Catalog

The catalog is immutable, process-wide configuration: a static map from
permission string to description and domain. It is built once and injected
into the components that validate permissions.

Resource-scoped capabilities are expressed separately as an ``Access``
bitmask stored on each grant.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import IntFlag
from types import MappingProxyType
from typing import Iterable, Mapping

from .faults import GRANT_MASK_INVALID, PERMISSION_FORMAT_INVALID, PERMISSION_UNKNOWN


PERMISSION_PATTERN = re.compile(r"^[a-z]+(:[a-z]+)+$")


# ============================================================================
# Permission Strings
# ============================================================================

OWNERS_MANAGE = "owners:manage"
KEYS_ISSUE = "keys:issue"
KEYS_READ = "keys:read"
KEYS_ROTATE = "keys:rotate"
KEYS_STATE_UPDATE = "keys:state:update"
POSTS_CREATE = "posts:create"
POSTS_READ = "posts:read"
POSTS_ADMIN_READ = "posts:admin:read"
POSTS_ACCESS_MANAGE = "posts:access:manage"
COMMENTS_WRITE = "comments:write"
GROUPS_READ = "groups:read"
GROUPS_MANAGE = "groups:manage"
KEYCHAINS_MANAGE = "keychains:manage"


@dataclass(frozen=True)
class PermissionSpec:
    """Catalog entry."""
    name: str
    description: str
    domain: str


class PermissionCatalog:
    """
    Immutable permission catalog.

    Responsibilities:
    - Know every permission string the system recognises
    - Validate the permission grammar (``segment:segment[:segment...]``)
    - Expose the fixed Owner permission set and the Use-key reserved set
    """

    def __init__(
        self,
        entries: Iterable[PermissionSpec],
        owner_permissions: Iterable[str],
        use_key_reserved: Iterable[str],
    ):
        self._entries: Mapping[str, PermissionSpec] = MappingProxyType(
            {entry.name: entry for entry in entries}
        )
        self.owner_permissions: frozenset[str] = frozenset(owner_permissions)
        self.use_key_reserved: frozenset[str] = frozenset(use_key_reserved)

    def __contains__(self, permission: object) -> bool:
        return permission in self._entries

    def __iter__(self):
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, permission: str) -> PermissionSpec | None:
        return self._entries.get(permission)

    def describe(self, permission: str) -> str:
        entry = self._entries.get(permission)
        return entry.description if entry else ""

    def by_domain(self, domain: str) -> list[str]:
        return sorted(p for p, e in self._entries.items() if e.domain == domain)

    @staticmethod
    def is_valid_format(permission: object) -> bool:
        return isinstance(permission, str) and PERMISSION_PATTERN.match(permission) is not None

    def validate(self, permissions: Iterable[str]) -> frozenset[str]:
        """
        Validate a requested permission set.

        Raises:
            PERMISSION_FORMAT_INVALID: a string does not match the grammar
            PERMISSION_UNKNOWN: a well-formed string is not in the catalog
        """
        requested = list(permissions)
        malformed = [p for p in requested if not self.is_valid_format(p)]
        if malformed:
            raise PERMISSION_FORMAT_INVALID(
                field="permissions",
                offending=[str(p) for p in malformed],
            )

        unknown = [p for p in requested if p not in self._entries]
        if unknown:
            raise PERMISSION_UNKNOWN(field="permissions", offending=unknown)

        return frozenset(requested)


def default_catalog() -> PermissionCatalog:
    """Build the standard catalog."""
    entries = [
        PermissionSpec(OWNERS_MANAGE, "Manage owner account settings", "owners"),
        PermissionSpec(KEYS_ISSUE, "Mint delegated keys", "keys"),
        PermissionSpec(KEYS_READ, "List and inspect keys", "keys"),
        PermissionSpec(KEYS_ROTATE, "Rotate keys", "keys"),
        PermissionSpec(KEYS_STATE_UPDATE, "Activate and deactivate keys", "keys"),
        PermissionSpec(POSTS_CREATE, "Create posts", "posts"),
        PermissionSpec(POSTS_READ, "Read posts shared with the key", "posts"),
        PermissionSpec(POSTS_ADMIN_READ, "Read every post under the owner's keys", "posts"),
        PermissionSpec(POSTS_ACCESS_MANAGE, "Grant and revoke post access", "posts"),
        PermissionSpec(COMMENTS_WRITE, "Comment on posts", "comments"),
        PermissionSpec(GROUPS_READ, "List groups the key belongs to", "groups"),
        PermissionSpec(GROUPS_MANAGE, "Create and manage groups", "groups"),
        PermissionSpec(KEYCHAINS_MANAGE, "Create and manage keychains", "keychains"),
    ]
    return PermissionCatalog(
        entries,
        owner_permissions=[
            OWNERS_MANAGE,
            KEYS_ISSUE,
            KEYS_READ,
            KEYS_ROTATE,
            KEYS_STATE_UPDATE,
            GROUPS_MANAGE,
            KEYCHAINS_MANAGE,
            POSTS_ADMIN_READ,
            POSTS_ACCESS_MANAGE,
        ],
        use_key_reserved=[POSTS_CREATE, KEYS_ISSUE],
    )


# ============================================================================
# Access Bitmask
# ============================================================================

class Access(IntFlag):
    """Per-resource capability bits carried by a grant."""
    VIEW = 0x01
    COMMENT = 0x02
    MANAGE_ACCESS = 0x08

    # Presets
    READ_ONLY = VIEW
    INTERACT = VIEW | COMMENT
    ADMIN = VIEW | COMMENT | MANAGE_ACCESS


ALL_ACCESS_BITS = int(Access.VIEW | Access.COMMENT | Access.MANAGE_ACCESS)
_BIT_NAMES = (
    (Access.VIEW, "VIEW"),
    (Access.COMMENT, "COMMENT"),
    (Access.MANAGE_ACCESS, "MANAGE_ACCESS"),
)


def is_valid_mask(mask: object) -> bool:
    """A grant mask is a non-zero int using only defined bits."""
    if isinstance(mask, bool) or not isinstance(mask, int):
        return False
    return mask > 0 and (mask & ~ALL_ACCESS_BITS) == 0


def require_mask(mask: object) -> Access:
    if not is_valid_mask(mask):
        raise GRANT_MASK_INVALID(field="permission_mask")
    return Access(mask)


def has_bits(mask: int, required: Access) -> bool:
    return (int(mask) & int(required)) == int(required)


def describe_bits(mask: int) -> list[str]:
    """Names of the bits set in ``mask``."""
    return [name for bit, name in _BIT_NAMES if int(mask) & int(bit)]
