"""
Keyline Auth - Groups & Keychains

Owner-managed groups (grant targets whose members inherit the grant mask)
and keychains (named key sets that never confer resource access).
Groups and keychains that belong to someone else are reported as not found.
"""

from __future__ import annotations

import logging

from .audit import AuditEmitter
from .authz import AccessEvaluator
from .catalog import GROUPS_MANAGE, GROUPS_READ, KEYCHAINS_MANAGE
from .core import (
    AccessStore,
    Group,
    KeyPrincipal,
    KeyRecord,
    Keychain,
    KeyStore,
    OwnerPrincipal,
    Principal,
)
from .faults import (
    AUTHZ_PERMISSION_DENIED,
    GROUP_NOT_FOUND,
    INPUT_INVALID,
    KEY_NOT_FOUND,
    KEYCHAIN_NOT_FOUND,
)
from .ids import new_id, require_hex32
from .keys import KeyManager


logger = logging.getLogger("keyline.auth.groups")

MAX_NAME_LENGTH = 255


def _check_name(name: object) -> str:
    if not isinstance(name, str) or not name.strip() or len(name) > MAX_NAME_LENGTH:
        raise INPUT_INVALID(field="name", reason=f"Name must be 1..{MAX_NAME_LENGTH} characters")
    return name.strip()


def _require(principal: Principal, permission: str) -> None:
    if not principal.has_permission(permission):
        raise AUTHZ_PERMISSION_DENIED(required=[permission])


# ============================================================================
# Groups
# ============================================================================

class GroupService:
    """Group lifecycle and membership, driven by the owning owner."""

    def __init__(
        self,
        access_store: AccessStore,
        keys: KeyManager,
        evaluator: AccessEvaluator,
        audit: AuditEmitter | None = None,
    ):
        self.access_store = access_store
        self.keys = keys
        self.evaluator = evaluator
        self.audit = audit or AuditEmitter()

    async def create_group(self, owner: OwnerPrincipal, name: str) -> Group:
        _require(owner, GROUPS_MANAGE)
        group = Group(group_id=new_id(), owner_id=owner.owner_id, name=_check_name(name))
        group = await self.access_store.create_group(group)

        logger.info("Created group %s for owner %s", group.group_id, owner.owner_id)
        await self.audit.emit_for(
            owner,
            "groups:create",
            subject_type="group",
            subject_id=group.group_id,
            metadata={"name": group.name},
        )
        return group

    async def list_groups(self, owner: OwnerPrincipal) -> list[Group]:
        _require(owner, GROUPS_MANAGE)
        return await self.access_store.list_groups(owner.owner_id)

    async def get_group(self, owner: OwnerPrincipal, group_id: str) -> Group:
        _require(owner, GROUPS_MANAGE)
        return await self._owned_group(owner, group_id)

    async def rename_group(self, owner: OwnerPrincipal, group_id: str, name: str) -> Group:
        _require(owner, GROUPS_MANAGE)
        group = await self._owned_group(owner, group_id)
        name = _check_name(name)

        renamed = await self.access_store.rename_group(group.group_id, name)
        if renamed is None:
            raise GROUP_NOT_FOUND()

        await self.audit.emit_for(
            owner,
            "groups:rename",
            subject_type="group",
            subject_id=group.group_id,
            metadata={"old_name": group.name, "new_name": name},
        )
        return renamed

    async def delete_group(self, owner: OwnerPrincipal, group_id: str) -> None:
        """Delete a group together with its memberships and grants."""
        _require(owner, GROUPS_MANAGE)
        group = await self._owned_group(owner, group_id)

        if not await self.access_store.delete_group(group.group_id):
            raise GROUP_NOT_FOUND()

        logger.info("Deleted group %s", group.group_id)
        await self.audit.emit_for(
            owner,
            "groups:delete",
            subject_type="group",
            subject_id=group.group_id,
            metadata={"name": group.name},
        )

    async def add_member(self, owner: OwnerPrincipal, group_id: str, key_id: str) -> bool:
        """
        Add a key to a group. Idempotent.

        Returns:
            True if the key was added, False if it was already a member
        """
        _require(owner, GROUPS_MANAGE)
        group = await self._owned_group(owner, group_id)
        key = await self._owned_key(owner, key_id)

        added = await self.access_store.add_member(group.group_id, key.key_id)
        if added:
            await self.audit.emit_for(
                owner,
                "groups:member:add",
                subject_type="group",
                subject_id=group.group_id,
                metadata={"key_id": key.key_id},
            )
        return added

    async def remove_member(self, owner: OwnerPrincipal, group_id: str, key_id: str) -> bool:
        """Remove a key from a group; effective for the next evaluation."""
        _require(owner, GROUPS_MANAGE)
        group = await self._owned_group(owner, group_id)
        key_id = require_hex32(key_id, "key_id")

        removed = await self.access_store.remove_member(group.group_id, key_id)
        if removed:
            await self.audit.emit_for(
                owner,
                "groups:member:remove",
                subject_type="group",
                subject_id=group.group_id,
                metadata={"key_id": key_id},
            )
        return removed

    async def members(self, owner: OwnerPrincipal, group_id: str) -> list[str]:
        _require(owner, GROUPS_MANAGE)
        group = await self._owned_group(owner, group_id)
        return await self.access_store.members(group.group_id)

    async def groups_for_key(self, requester: Principal, key_id: str | None = None) -> list[Group]:
        """
        Groups holding a key.

        A key lists its own groups (needs groups:read); an owner lists the
        groups of any key under its Primary keys.
        """
        if isinstance(requester, KeyPrincipal):
            await self.evaluator.require_permission(requester, GROUPS_READ)
            target_id = requester.key_id
        elif isinstance(requester, OwnerPrincipal):
            _require(requester, GROUPS_MANAGE)
            target_id = (await self._owned_key(requester, key_id)).key_id
        else:
            raise TypeError(f"Unsupported principal: {type(requester).__name__}")

        groups = []
        for group_id in await self.access_store.groups_for_key(target_id):
            group = await self.access_store.get_group(group_id)
            if group is not None:
                groups.append(group)
        return groups

    async def owned_group(self, owner: OwnerPrincipal, group_id: str) -> Group:
        """Group owned by ``owner``; GROUP_NOT_FOUND otherwise."""
        return await self._owned_group(owner, group_id)

    async def _owned_group(self, owner: OwnerPrincipal, group_id: str) -> Group:
        group = await self.access_store.get_group(require_hex32(group_id, "group_id"))
        if group is None or group.owner_id != owner.owner_id:
            raise GROUP_NOT_FOUND()
        return group

    async def _owned_key(self, owner: OwnerPrincipal, key_id: str | None) -> KeyRecord:
        key = await self.keys.key_store.get(require_hex32(key_id, "key_id"))
        if key is None or not await self.keys.owns_key(owner.owner_id, key):
            raise KEY_NOT_FOUND()
        return key


# ============================================================================
# Keychains
# ============================================================================

class KeychainService:
    """
    Keychain management.

    Owners manage keychains they own. A key holding keychains:manage
    manages the external keychains it created.
    """

    def __init__(
        self,
        access_store: AccessStore,
        key_store: KeyStore,
        keys: KeyManager,
        evaluator: AccessEvaluator,
        audit: AuditEmitter | None = None,
    ):
        self.access_store = access_store
        self.key_store = key_store
        self.keys = keys
        self.evaluator = evaluator
        self.audit = audit or AuditEmitter()

    async def create_keychain(self, requester: Principal, name: str) -> Keychain:
        name = _check_name(name)

        if isinstance(requester, OwnerPrincipal):
            _require(requester, KEYCHAINS_MANAGE)
            keychain = Keychain(keychain_id=new_id(), name=name, owner_id=requester.owner_id)
        elif isinstance(requester, KeyPrincipal):
            await self.evaluator.require_permission(requester, KEYCHAINS_MANAGE)
            keychain = Keychain(keychain_id=new_id(), name=name, created_by_key_id=requester.key_id)
        else:
            raise TypeError(f"Unsupported principal: {type(requester).__name__}")

        keychain = await self.access_store.create_keychain(keychain)
        await self.audit.emit_for(
            requester,
            "keychains:create",
            subject_type="keychain",
            subject_id=keychain.keychain_id,
            metadata={"name": keychain.name, "external": keychain.is_external},
        )
        return keychain

    async def list_keychains(self, requester: Principal) -> list[Keychain]:
        if isinstance(requester, OwnerPrincipal):
            _require(requester, KEYCHAINS_MANAGE)
            return await self.access_store.list_keychains(owner_id=requester.owner_id)
        if isinstance(requester, KeyPrincipal):
            await self.evaluator.require_permission(requester, KEYCHAINS_MANAGE)
            return await self.access_store.list_keychains(created_by_key_id=requester.key_id)
        raise TypeError(f"Unsupported principal: {type(requester).__name__}")

    async def get_keychain(self, requester: Principal, keychain_id: str) -> Keychain:
        return await self._managed(requester, keychain_id)

    async def add_member(self, requester: Principal, keychain_id: str, key_id: str) -> bool:
        keychain = await self._managed(requester, keychain_id)
        key = await self._member_key(requester, key_id)

        added = await self.access_store.add_keychain_member(keychain.keychain_id, key.key_id)
        if added:
            await self.audit.emit_for(
                requester,
                "keychains:member:add",
                subject_type="keychain",
                subject_id=keychain.keychain_id,
                metadata={"key_id": key.key_id},
            )
        return added

    async def remove_member(self, requester: Principal, keychain_id: str, key_id: str) -> bool:
        keychain = await self._managed(requester, keychain_id)
        key_id = require_hex32(key_id, "key_id")

        removed = await self.access_store.remove_keychain_member(keychain.keychain_id, key_id)
        if removed:
            await self.audit.emit_for(
                requester,
                "keychains:member:remove",
                subject_type="keychain",
                subject_id=keychain.keychain_id,
                metadata={"key_id": key_id},
            )
        return removed

    async def members(self, requester: Principal, keychain_id: str) -> list[str]:
        keychain = await self._managed(requester, keychain_id)
        return await self.access_store.keychain_members(keychain.keychain_id)

    async def _managed(self, requester: Principal, keychain_id: str) -> Keychain:
        keychain = await self.access_store.get_keychain(require_hex32(keychain_id, "keychain_id"))

        if isinstance(requester, OwnerPrincipal):
            if keychain is None or keychain.owner_id != requester.owner_id:
                raise KEYCHAIN_NOT_FOUND()
            _require(requester, KEYCHAINS_MANAGE)
        elif isinstance(requester, KeyPrincipal):
            if keychain is None or keychain.created_by_key_id != requester.key_id:
                raise KEYCHAIN_NOT_FOUND()
            await self.evaluator.require_permission(requester, KEYCHAINS_MANAGE)
        else:
            raise TypeError(f"Unsupported principal: {type(requester).__name__}")

        return keychain

    async def _member_key(self, requester: Principal, key_id: str) -> KeyRecord:
        key = await self.key_store.get(require_hex32(key_id, "key_id"))
        if key is None:
            raise KEY_NOT_FOUND()
        if isinstance(requester, OwnerPrincipal) and not await self.keys.owns_key(requester.owner_id, key):
            raise KEY_NOT_FOUND()
        return key
