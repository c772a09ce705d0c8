"""
Groups and keychains.
"""

import pytest
import pytest_asyncio

from keyline.auth import KeyVariant
from keyline.auth.catalog import GROUPS_MANAGE, GROUPS_READ, KEYCHAINS_MANAGE, POSTS_READ
from keyline.auth.core import OwnerPrincipal
from keyline.auth.faults import (
    AUTHZ_PERMISSION_DENIED,
    GROUP_NOT_FOUND,
    INPUT_INVALID,
    KEY_NOT_FOUND,
    KEYCHAIN_NOT_FOUND,
)
from keyline.auth.ids import new_id


@pytest_asyncio.fixture
async def member(primary, mint):
    result = await mint(primary.key, KeyVariant.USE, [POSTS_READ])
    return result.key


# ============================================================================
# Groups
# ============================================================================

class TestGroups:

    @pytest.mark.asyncio
    async def test_create_and_list(self, engine, owner, other_owner, recorder):
        group = await engine.groups.create_group(owner, "  readers ")
        await engine.groups.create_group(other_owner, "theirs")

        assert group.name == "readers"
        assert [g.group_id for g in await engine.groups.list_groups(owner)] == [group.group_id]
        assert recorder.query(action="groups:create")[0].metadata == {"name": "readers"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "   ", "x" * 256, None])
    async def test_invalid_name(self, engine, owner, name):
        with pytest.raises(INPUT_INVALID):
            await engine.groups.create_group(owner, name)

    @pytest.mark.asyncio
    async def test_requires_groups_manage(self, engine, owner):
        restricted = OwnerPrincipal(owner.owner_id, frozenset())
        with pytest.raises(AUTHZ_PERMISSION_DENIED) as exc:
            await engine.groups.create_group(restricted, "readers")
        assert exc.value.required == [GROUPS_MANAGE]

    @pytest.mark.asyncio
    async def test_foreign_group_is_not_found(self, engine, owner, other_owner):
        group = await engine.groups.create_group(owner, "readers")
        with pytest.raises(GROUP_NOT_FOUND):
            await engine.groups.get_group(other_owner, group.group_id)
        with pytest.raises(GROUP_NOT_FOUND):
            await engine.groups.delete_group(other_owner, group.group_id)

    @pytest.mark.asyncio
    async def test_rename(self, engine, owner, recorder):
        group = await engine.groups.create_group(owner, "readers")
        renamed = await engine.groups.rename_group(owner, group.group_id, "viewers")

        assert renamed.name == "viewers"
        assert recorder.query(action="groups:rename")[0].metadata == {
            "old_name": "readers",
            "new_name": "viewers",
        }

    @pytest.mark.asyncio
    async def test_delete(self, engine, owner, member):
        group = await engine.groups.create_group(owner, "readers")
        await engine.groups.add_member(owner, group.group_id, member.key_id)
        await engine.groups.delete_group(owner, group.group_id)

        assert await engine.groups.list_groups(owner) == []
        assert await engine.access_store.groups_for_key(member.key_id) == []
        with pytest.raises(GROUP_NOT_FOUND):
            await engine.groups.get_group(owner, group.group_id)

    @pytest.mark.asyncio
    async def test_membership_is_idempotent(self, engine, owner, member, recorder):
        group = await engine.groups.create_group(owner, "readers")

        assert await engine.groups.add_member(owner, group.group_id, member.key_id)
        assert not await engine.groups.add_member(owner, group.group_id, member.key_id)
        assert await engine.groups.members(owner, group.group_id) == [member.key_id]
        assert len(recorder.query(action="groups:member:add")) == 1

        assert await engine.groups.remove_member(owner, group.group_id, member.key_id)
        assert not await engine.groups.remove_member(owner, group.group_id, member.key_id)
        assert await engine.groups.members(owner, group.group_id) == []

    @pytest.mark.asyncio
    async def test_foreign_key_cannot_join(self, engine, owner, other_owner):
        foreign = await engine.keys.mint_primary(other_owner, [POSTS_READ])
        group = await engine.groups.create_group(owner, "readers")

        with pytest.raises(KEY_NOT_FOUND):
            await engine.groups.add_member(owner, group.group_id, foreign.key.key_id)

    @pytest.mark.asyncio
    async def test_groups_for_key_as_owner(self, engine, owner, member):
        group = await engine.groups.create_group(owner, "readers")
        await engine.groups.add_member(owner, group.group_id, member.key_id)

        groups = await engine.groups.groups_for_key(owner, member.key_id)
        assert [g.name for g in groups] == ["readers"]

    @pytest.mark.asyncio
    async def test_groups_for_key_as_key(self, engine, owner, primary, mint):
        listed = (await mint(primary.key, KeyVariant.USE, [POSTS_READ, GROUPS_READ])).key
        group = await engine.groups.create_group(owner, "readers")
        await engine.groups.add_member(owner, group.group_id, listed.key_id)

        groups = await engine.groups.groups_for_key(listed.to_principal())
        assert [g.group_id for g in groups] == [group.group_id]

    @pytest.mark.asyncio
    async def test_groups_for_key_needs_groups_read(self, engine, member):
        with pytest.raises(AUTHZ_PERMISSION_DENIED) as exc:
            await engine.groups.groups_for_key(member.to_principal())
        assert exc.value.required == [GROUPS_READ]


# ============================================================================
# Keychains
# ============================================================================

class TestKeychains:

    @pytest.mark.asyncio
    async def test_owner_keychain(self, engine, owner, member, recorder):
        keychain = await engine.keychains.create_keychain(owner, "deploy")
        assert keychain.owner_id == owner.owner_id
        assert not keychain.is_external

        assert await engine.keychains.add_member(owner, keychain.keychain_id, member.key_id)
        assert await engine.keychains.members(owner, keychain.keychain_id) == [member.key_id]
        assert recorder.query(action="keychains:create")[0].metadata == {
            "name": "deploy",
            "external": False,
        }

    @pytest.mark.asyncio
    async def test_external_keychain(self, engine, primary, member):
        manager = primary.key.to_principal()
        keychain = await engine.keychains.create_keychain(manager, "partners")

        assert keychain.is_external
        assert keychain.created_by_key_id == primary.key.key_id
        assert [k.keychain_id for k in await engine.keychains.list_keychains(manager)] == [
            keychain.keychain_id
        ]

        await engine.keychains.add_member(manager, keychain.keychain_id, member.key_id)
        assert await engine.keychains.remove_member(manager, keychain.keychain_id, member.key_id)
        assert await engine.keychains.members(manager, keychain.keychain_id) == []

    @pytest.mark.asyncio
    async def test_key_without_permission(self, engine, member):
        with pytest.raises(AUTHZ_PERMISSION_DENIED) as exc:
            await engine.keychains.create_keychain(member.to_principal(), "nope")
        assert exc.value.required == [KEYCHAINS_MANAGE]

    @pytest.mark.asyncio
    async def test_other_managers_keychain_is_not_found(self, engine, owner, primary, mint):
        keychain = await engine.keychains.create_keychain(primary.key.to_principal(), "partners")
        other = (await mint(primary.key, KeyVariant.SECONDARY, [KEYCHAINS_MANAGE])).key

        with pytest.raises(KEYCHAIN_NOT_FOUND):
            await engine.keychains.get_keychain(other.to_principal(), keychain.keychain_id)
        with pytest.raises(KEYCHAIN_NOT_FOUND):
            await engine.keychains.get_keychain(owner, keychain.keychain_id)

    @pytest.mark.asyncio
    async def test_unknown_keychain(self, engine, owner):
        with pytest.raises(KEYCHAIN_NOT_FOUND):
            await engine.keychains.members(owner, new_id())
