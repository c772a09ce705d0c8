"""
Keyline Auth - Access Control Evaluator

Combines a principal's global permission set with the resource-scoped
grant bitmask to authorize an action. A caller without VIEW on a resource
is told the resource does not exist; a caller with VIEW but missing
anything else is told what was missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .catalog import (
    COMMENTS_WRITE,
    POSTS_ACCESS_MANAGE,
    POSTS_READ,
    Access,
    describe_bits,
    has_bits,
)
from .core import AccessStore, KeyPrincipal, KeyRecord, KeyStore, OwnerPrincipal, Principal
from .faults import (
    AUTH_TOKEN_INVALID,
    AUTHZ_ACCESS_DENIED,
    AUTHZ_PERMISSION_DENIED,
    RESOURCE_NOT_FOUND,
)
from .ids import require_hex32


logger = logging.getLogger("keyline.auth.authz")


# ============================================================================
# Authorization Types
# ============================================================================

class Decision(str, Enum):
    """Authorization decision."""
    ALLOW = "allow"
    DENY = "deny"                      # visible, action refused
    HIDDEN = "hidden"                  # no VIEW: report as not found
    UNAUTHENTICATED = "unauthenticated"  # key missing or inactive


@dataclass(frozen=True)
class Action:
    """A resource-scoped action: one global permission plus access bits."""
    name: str
    permission: str
    bits: Access


VIEW_POST = Action("view_post", POSTS_READ, Access.VIEW)
LIST_COMMENTS = Action("list_comments", POSTS_READ, Access.VIEW)
COMMENT_POST = Action("comment_post", COMMENTS_WRITE, Access.COMMENT)
MANAGE_POST_ACCESS = Action("manage_post_access", POSTS_ACCESS_MANAGE, Access.MANAGE_ACCESS)

ACTIONS = (VIEW_POST, LIST_COMMENTS, COMMENT_POST, MANAGE_POST_ACCESS)


@dataclass
class AuthzResult:
    """Authorization result."""
    decision: Decision
    action: str
    mask: int = 0
    required: list[str] = field(default_factory=list)
    required_bits: list[str] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.ALLOW


# ============================================================================
# Evaluator
# ============================================================================

class AccessEvaluator:
    """
    Access control evaluator.

    Every call reads the key record, its group memberships and the grants
    fresh from the stores. Nothing is cached between calls, so a revoked
    grant or removed membership takes effect on the next evaluation.
    """

    def __init__(self, key_store: KeyStore, access_store: AccessStore):
        self.key_store = key_store
        self.access_store = access_store

    async def check(self, principal: Principal, resource_id: str, action: Action) -> AuthzResult:
        """Evaluate without raising."""
        if isinstance(principal, OwnerPrincipal):
            # Owners hold no grants; they reach resources via the admin path.
            return AuthzResult(Decision.HIDDEN, action.name)

        if isinstance(principal, KeyPrincipal):
            key = await self._active_key(principal)
            if key is None:
                return AuthzResult(Decision.UNAUTHENTICATED, action.name)
            return await self._check_key(key, resource_id, action)

        raise TypeError(f"Unsupported principal: {type(principal).__name__}")

    async def authorize(self, principal: Principal, resource_id: str, action: Action) -> AuthzResult:
        """
        Authorize a resource-scoped action.

        Raises:
            IDENTIFIER_INVALID: resource id is not a hex identifier
            AUTH_TOKEN_INVALID: key principal no longer active
            RESOURCE_NOT_FOUND: no VIEW on the resource (or it does not exist)
            AUTHZ_PERMISSION_DENIED: global permission missing
            AUTHZ_ACCESS_DENIED: access bits missing
        """
        require_hex32(resource_id, "resource_id")
        result = await self.check(principal, resource_id, action)

        if result.decision is Decision.ALLOW:
            return result
        if result.decision is Decision.HIDDEN:
            raise RESOURCE_NOT_FOUND()
        if result.decision is Decision.UNAUTHENTICATED:
            raise AUTH_TOKEN_INVALID()

        logger.debug(
            "Denied %s on %s: required=%s bits=%s",
            action.name,
            resource_id,
            result.required,
            result.required_bits,
        )
        if result.required:
            raise AUTHZ_PERMISSION_DENIED(
                required=result.required,
                required_bits=result.required_bits,
            )
        raise AUTHZ_ACCESS_DENIED(required_bits=result.required_bits)

    async def require_permission(self, principal: Principal, permission: str) -> None:
        """
        Check a global permission that is not tied to a resource.

        Key permissions are read from the stored record.
        """
        if isinstance(principal, OwnerPrincipal):
            permissions = principal.permissions
        elif isinstance(principal, KeyPrincipal):
            key = await self._active_key(principal)
            if key is None:
                raise AUTH_TOKEN_INVALID()
            permissions = key.permissions
        else:
            raise TypeError(f"Unsupported principal: {type(principal).__name__}")

        if permission not in permissions:
            raise AUTHZ_PERMISSION_DENIED(required=[permission])

    async def visible_resources(self, principal: Principal, action: Action = VIEW_POST) -> list[str]:
        """Ids of resources the principal may perform ``action`` on."""
        if isinstance(principal, OwnerPrincipal):
            return []
        if isinstance(principal, KeyPrincipal):
            key = await self._active_key(principal)
            if key is None or action.permission not in key.permissions:
                return []
            return await self.access_store.visible_resources(
                key.key_id, int(action.bits | Access.VIEW)
            )
        raise TypeError(f"Unsupported principal: {type(principal).__name__}")

    async def permitted_actions(self, principal: Principal, resource_id: str) -> list[str]:
        """Names of every known action the principal may perform on a resource."""
        permitted = []
        for action in ACTIONS:
            result = await self.check(principal, resource_id, action)
            if result.allowed:
                permitted.append(action.name)
        return permitted

    async def _check_key(self, key: KeyRecord, resource_id: str, action: Action) -> AuthzResult:
        mask = await self.access_store.resolve_mask(resource_id, key.key_id)

        if not has_bits(mask, Access.VIEW):
            return AuthzResult(Decision.HIDDEN, action.name, mask=mask)

        missing_permission = [] if action.permission in key.permissions else [action.permission]
        missing_bits = describe_bits(int(action.bits) & ~mask)

        if missing_permission or missing_bits:
            return AuthzResult(
                Decision.DENY,
                action.name,
                mask=mask,
                required=missing_permission,
                required_bits=missing_bits,
            )
        return AuthzResult(Decision.ALLOW, action.name, mask=mask)

    async def _active_key(self, principal: KeyPrincipal) -> KeyRecord | None:
        key = await self.key_store.get(principal.key_id)
        if key is None or not key.active:
            return None
        return key
