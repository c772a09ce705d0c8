"""
Key minting, envelope checks, lineage, rotation, state changes and limits.
"""

import asyncio

import pytest

from keyline.auth import KeyVariant
from keyline.auth.catalog import (
    COMMENTS_WRITE,
    GROUPS_MANAGE,
    KEYS_ISSUE,
    KEYS_READ,
    KEYS_ROTATE,
    KEYS_STATE_UPDATE,
    POSTS_CREATE,
    POSTS_READ,
)
from keyline.auth.core import OwnerPrincipal, RedemptionOutcome
from keyline.auth.faults import (
    AUTH_INVALID_CREDENTIALS,
    AUTHZ_PERMISSION_DENIED,
    IDENTIFIER_INVALID,
    INPUT_INVALID,
    KEY_ALREADY_ROTATED,
    KEY_DEVICE_LIMIT_EXCEEDED,
    KEY_ENVELOPE_VIOLATION,
    KEY_ISSUER_CANNOT_MINT,
    KEY_ISSUER_INACTIVE,
    KEY_LIMITS_INVALID,
    KEY_NOT_FOUND,
    KEY_PARENT_INACTIVE,
    KEY_RESERVED_PERMISSION,
    KEY_USE_LIMIT_EXCEEDED,
    OWNER_NOT_FOUND,
    PERMISSION_UNKNOWN,
)
from keyline.auth.ids import is_hex32, is_public_id, new_id


# ============================================================================
# Minting
# ============================================================================

class TestMintPrimary:

    @pytest.mark.asyncio
    async def test_primary_is_root(self, engine, owner, primary, recorder):
        key = primary.key
        assert key.variant is KeyVariant.PRIMARY
        assert key.owner_id == owner.owner_id
        assert key.lineage.parent is None
        assert key.lineage.issued_by is None
        assert key.lineage.initial_author == key.key_id
        assert is_hex32(key.key_id)
        assert is_public_id(key.public_id)
        assert primary.secret.startswith("sec_")

        event = recorder.query(action="keys:mint")[0]
        assert event.actor_type == "owner"
        assert event.metadata["type"] == "primary"

    @pytest.mark.asyncio
    async def test_secret_is_only_stored_hashed(self, engine, primary):
        stored = await engine.key_store.get(primary.key.key_id)
        assert stored.secret_hash != primary.secret
        assert engine.verifier.verify(primary.secret, stored.secret_hash)
        assert "secret_hash" not in stored.to_dict()

    @pytest.mark.asyncio
    async def test_owner_cannot_mint_secondary(self, engine, owner):
        with pytest.raises(KEY_ISSUER_CANNOT_MINT):
            await engine.keys.mint(owner, KeyVariant.SECONDARY, [POSTS_READ])

    @pytest.mark.asyncio
    async def test_owner_cannot_set_limits(self, engine, owner):
        with pytest.raises(KEY_LIMITS_INVALID):
            await engine.keys.mint(owner, KeyVariant.PRIMARY, [POSTS_READ], use_count_limit=3)

    @pytest.mark.asyncio
    async def test_unknown_permission(self, engine, owner):
        with pytest.raises(PERMISSION_UNKNOWN):
            await engine.keys.mint_primary(owner, ["posts:delete"])

    @pytest.mark.asyncio
    async def test_owner_without_issue_permission(self, engine, owner):
        restricted = OwnerPrincipal(owner.owner_id, frozenset({KEYS_READ}))
        with pytest.raises(AUTHZ_PERMISSION_DENIED):
            await engine.keys.mint_primary(restricted, [POSTS_READ])

    @pytest.mark.asyncio
    async def test_deleted_owner(self, engine):
        ghost = OwnerPrincipal(new_id(), engine.catalog.owner_permissions)
        with pytest.raises(OWNER_NOT_FOUND):
            await engine.keys.mint_primary(ghost, [POSTS_READ])

    @pytest.mark.asyncio
    async def test_label_bounds(self, engine, owner):
        with pytest.raises(INPUT_INVALID):
            await engine.keys.mint_primary(owner, [POSTS_READ], label="x" * 256)


class TestMintDelegated:

    @pytest.mark.asyncio
    async def test_envelope_scenario(self, engine, owner, mint):
        parent = await engine.keys.mint_primary(owner, [POSTS_CREATE, KEYS_ISSUE, POSTS_READ])

        secondary = await mint(parent.key, KeyVariant.SECONDARY, [POSTS_CREATE, POSTS_READ])
        assert secondary.key.lineage.parent == parent.key.key_id
        assert secondary.key.lineage.issued_by == parent.key.key_id
        assert secondary.key.lineage.initial_author == parent.key.key_id

        with pytest.raises(KEY_ENVELOPE_VIOLATION) as exc:
            await mint(parent.key, KeyVariant.SECONDARY, [POSTS_READ, GROUPS_MANAGE])
        assert exc.value.offending == [GROUPS_MANAGE]

    @pytest.mark.asyncio
    async def test_use_key_scenario(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ, COMMENTS_WRITE])
        assert use.key.permissions == frozenset({POSTS_READ, COMMENTS_WRITE})

        with pytest.raises(KEY_RESERVED_PERMISSION) as exc:
            await mint(primary.key, KeyVariant.USE, [POSTS_READ, POSTS_CREATE])
        assert exc.value.offending == [POSTS_CREATE]

    @pytest.mark.asyncio
    async def test_use_key_cannot_issue(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ])
        with pytest.raises(KEY_ISSUER_CANNOT_MINT):
            await mint(use.key, KeyVariant.USE, [POSTS_READ])

    @pytest.mark.asyncio
    async def test_key_cannot_mint_primary(self, engine, primary, mint):
        with pytest.raises(KEY_ISSUER_CANNOT_MINT):
            await mint(primary.key, KeyVariant.PRIMARY, [POSTS_READ])

    @pytest.mark.asyncio
    async def test_issuer_without_keys_issue(self, engine, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [POSTS_READ])
        with pytest.raises(AUTHZ_PERMISSION_DENIED) as exc:
            await mint(secondary.key, KeyVariant.USE, [POSTS_READ])
        assert exc.value.required == [KEYS_ISSUE]

    @pytest.mark.asyncio
    async def test_inactive_issuer(self, engine, owner, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [KEYS_ISSUE, POSTS_READ])
        await engine.keys.deactivate(owner, secondary.key.key_id)

        with pytest.raises(KEY_ISSUER_INACTIVE):
            await mint(secondary.key, KeyVariant.USE, [POSTS_READ])

    @pytest.mark.asyncio
    async def test_grandchild_lineage(self, engine, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [KEYS_ISSUE, POSTS_READ])
        use = await mint(secondary.key, KeyVariant.USE, [POSTS_READ])

        assert use.key.lineage.parent == secondary.key.key_id
        assert use.key.lineage.initial_author == primary.key.key_id

    @pytest.mark.asyncio
    async def test_issuer_permissions_read_from_store(self, engine, primary, mint):
        stale = primary.key.to_principal()
        await engine.key_store.set_active(primary.key.key_id, False)
        with pytest.raises(KEY_ISSUER_INACTIVE):
            await engine.keys.mint(stale, KeyVariant.USE, [POSTS_READ])

    @pytest.mark.asyncio
    async def test_limits_only_on_use_keys(self, engine, primary, mint):
        with pytest.raises(KEY_LIMITS_INVALID):
            await mint(primary.key, KeyVariant.SECONDARY, [POSTS_READ], use_count_limit=2)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, -1, True, "3"])
    async def test_invalid_limit(self, engine, primary, mint, limit):
        with pytest.raises(KEY_LIMITS_INVALID):
            await mint(primary.key, KeyVariant.USE, [POSTS_READ], use_count_limit=limit)

    @pytest.mark.asyncio
    async def test_malformed_issuer_id(self, engine):
        with pytest.raises(IDENTIFIER_INVALID):
            await engine.keys.mint_delegated("apub_0123456789abcdef", KeyVariant.USE, [POSTS_READ])

    @pytest.mark.asyncio
    async def test_mint_audit(self, engine, primary, mint, recorder):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], use_count_limit=5, device_limit=2)
        event = recorder.query(action="keys:mint", subject_id=use.key.key_id)[0]
        assert event.actor_type == "key"
        assert event.actor_id == primary.key.key_id
        assert event.metadata["use_count_limit"] == 5
        assert event.metadata["device_limit"] == 2
        assert "secret" not in event.metadata


# ============================================================================
# Queries
# ============================================================================

class TestKeyQueries:

    @pytest.mark.asyncio
    async def test_list_keys_scoped_to_owner(self, engine, owner, other_owner, primary, mint):
        child = await mint(primary.key, KeyVariant.SECONDARY, [POSTS_READ])
        await engine.keys.mint_primary(other_owner, [POSTS_READ])

        listed = {k.key_id for k in await engine.keys.list_keys(owner)}
        assert listed == {primary.key.key_id, child.key.key_id}

    @pytest.mark.asyncio
    async def test_foreign_key_is_not_found(self, engine, other_owner, primary):
        with pytest.raises(KEY_NOT_FOUND):
            await engine.keys.get_key(other_owner, primary.key.key_id)

    @pytest.mark.asyncio
    async def test_lineage_chain(self, engine, owner, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [KEYS_ISSUE, POSTS_READ])
        use = await mint(secondary.key, KeyVariant.USE, [POSTS_READ])

        chain = await engine.keys.get_lineage(owner, use.key.key_id)
        assert [k.key_id for k in chain] == [
            primary.key.key_id, secondary.key.key_id, use.key.key_id,
        ]

    @pytest.mark.asyncio
    async def test_key_sees_its_descendants_only(self, engine, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [KEYS_ISSUE, KEYS_READ, POSTS_READ])
        sibling = await mint(primary.key, KeyVariant.SECONDARY, [POSTS_READ])
        use = await mint(secondary.key, KeyVariant.USE, [POSTS_READ])

        requester = secondary.key.to_principal()
        assert (await engine.keys.get_key(requester, use.key.key_id)).key_id == use.key.key_id
        with pytest.raises(KEY_NOT_FOUND):
            await engine.keys.get_key(requester, sibling.key.key_id)
        with pytest.raises(KEY_NOT_FOUND):
            await engine.keys.get_key(requester, primary.key.key_id)

    @pytest.mark.asyncio
    async def test_descendants(self, engine, owner, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [KEYS_ISSUE, POSTS_READ])
        use = await mint(secondary.key, KeyVariant.USE, [POSTS_READ])

        found = {k.key_id for k in await engine.keys.descendants(owner, primary.key.key_id)}
        assert found == {secondary.key.key_id, use.key.key_id}


# ============================================================================
# Rotation
# ============================================================================

class TestRotation:

    @pytest.mark.asyncio
    async def test_rotation_preserves_trust_position(self, engine, owner, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [POSTS_READ], label="ci")
        rotated = await engine.keys.rotate(owner, secondary.key.key_id)

        successor = rotated.key
        assert successor.key_id != secondary.key.key_id
        assert successor.public_id != secondary.key.public_id
        assert successor.permissions == secondary.key.permissions
        assert successor.lineage == secondary.key.lineage
        assert successor.label == "ci"
        assert successor.rotated_from == secondary.key.key_id
        assert rotated.secret != secondary.secret

        old = await engine.key_store.get(secondary.key.key_id)
        assert old.rotated_to == successor.key_id
        assert old.retired_at is not None
        assert not old.active

    @pytest.mark.asyncio
    async def test_rotate_twice(self, engine, owner, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [POSTS_READ])
        await engine.keys.rotate(owner, secondary.key.key_id)
        with pytest.raises(KEY_ALREADY_ROTATED):
            await engine.keys.rotate(owner, secondary.key.key_id)

    @pytest.mark.asyncio
    async def test_concurrent_rotation_single_winner(self, engine, owner, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [POSTS_READ])
        results = await asyncio.gather(
            engine.keys.rotate(owner, secondary.key.key_id),
            engine.keys.rotate(owner, secondary.key.key_id),
            return_exceptions=True,
        )
        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert any(isinstance(r, KEY_ALREADY_ROTATED) for r in results)

    @pytest.mark.asyncio
    async def test_rotate_under_inactive_parent_stays_inactive(self, engine, owner, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [POSTS_READ])
        await engine.keys.deactivate(owner, primary.key.key_id, cascade=True)

        rotated = await engine.keys.rotate(owner, secondary.key.key_id)
        assert not rotated.key.active
        assert (await engine.key_store.get(secondary.key.key_id)).is_retired

    @pytest.mark.asyncio
    async def test_rotate_child_of_rotated_key(self, engine, owner, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [POSTS_READ])
        await engine.keys.rotate(owner, primary.key.key_id)

        rotated = await engine.keys.rotate(owner, secondary.key.key_id)
        assert rotated.key.active
        assert rotated.key.lineage == secondary.key.lineage

    @pytest.mark.asyncio
    async def test_successor_keeps_use_count_and_devices(self, engine, owner, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], use_count_limit=2, device_limit=1)
        await engine.keys.charge(use.key, "dev-a")

        rotated = await engine.keys.rotate(owner, use.key.key_id)
        assert rotated.key.use_count_current == 1
        assert await engine.key_store.devices(rotated.key.key_id) == {"dev-a"}

        await engine.keys.charge(rotated.key, "dev-a")
        with pytest.raises(KEY_USE_LIMIT_EXCEEDED):
            await engine.keys.charge(rotated.key, "dev-a")

    @pytest.mark.asyncio
    async def test_successor_administers_predecessor_subtree(self, engine, primary, mint):
        secondary = await mint(
            primary.key, KeyVariant.SECONDARY, [KEYS_ISSUE, KEYS_READ, KEYS_ROTATE, KEYS_STATE_UPDATE, POSTS_READ]
        )
        use = await mint(secondary.key, KeyVariant.USE, [POSTS_READ])

        rotated = await engine.keys.rotate(secondary.key.to_principal(), secondary.key.key_id)
        acting = rotated.key.to_principal()

        assert (await engine.keys.get_key(acting, use.key.key_id)).key_id == use.key.key_id
        assert await engine.keys.deactivate(acting, use.key.key_id) == [use.key.key_id]
        with pytest.raises(KEY_NOT_FOUND):
            await engine.keys.get_key(secondary.key.to_principal(), use.key.key_id)

    @pytest.mark.asyncio
    async def test_rotated_secret_no_longer_exchanges(self, engine, owner, primary):
        rotated = await engine.keys.rotate(owner, primary.key.key_id)
        with pytest.raises(AUTH_INVALID_CREDENTIALS):
            await engine.auth.exchange_key(primary.key.public_id, primary.secret)
        result = await engine.auth.exchange_key(rotated.key.public_id, rotated.secret)
        assert result.principal.key_id == rotated.key.key_id

    @pytest.mark.asyncio
    async def test_requires_permission(self, engine, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [POSTS_READ])
        with pytest.raises(AUTHZ_PERMISSION_DENIED) as exc:
            await engine.keys.rotate(secondary.key.to_principal(), secondary.key.key_id)
        assert exc.value.required == [KEYS_ROTATE]

    @pytest.mark.asyncio
    async def test_audited(self, engine, owner, primary, recorder):
        rotated = await engine.keys.rotate(owner, primary.key.key_id)
        event = recorder.query(action="keys:rotate")[0]
        assert event.subject_id == primary.key.key_id
        assert event.metadata == {"rotated_to": rotated.key.key_id}


# ============================================================================
# Activation & Cascade
# ============================================================================

class TestKeyState:

    @pytest.mark.asyncio
    async def test_cascade_deactivates_closure(self, engine, owner, primary, mint):
        a = await mint(primary.key, KeyVariant.SECONDARY, [KEYS_ISSUE, POSTS_READ])
        b = await mint(a.key, KeyVariant.SECONDARY, [KEYS_ISSUE, POSTS_READ])
        c = await mint(b.key, KeyVariant.USE, [POSTS_READ])
        sibling = await mint(primary.key, KeyVariant.USE, [POSTS_READ])

        changed = await engine.keys.deactivate(owner, a.key.key_id, cascade=True)

        assert set(changed) == {a.key.key_id, b.key.key_id, c.key.key_id}
        for key_id in changed:
            assert not (await engine.key_store.get(key_id)).active
        assert (await engine.key_store.get(sibling.key.key_id)).active
        assert (await engine.key_store.get(primary.key.key_id)).active

    @pytest.mark.asyncio
    async def test_non_cascade_leaves_children(self, engine, owner, primary, mint):
        child = await mint(primary.key, KeyVariant.USE, [POSTS_READ])
        changed = await engine.keys.deactivate(owner, primary.key.key_id)

        assert changed == [primary.key.key_id]
        assert (await engine.key_store.get(child.key.key_id)).active

    @pytest.mark.asyncio
    async def test_deactivate_is_idempotent(self, engine, owner, primary):
        await engine.keys.deactivate(owner, primary.key.key_id)
        assert await engine.keys.deactivate(owner, primary.key.key_id) == []

    @pytest.mark.asyncio
    async def test_deactivate_audit(self, engine, owner, primary, mint, recorder):
        await mint(primary.key, KeyVariant.USE, [POSTS_READ])
        await engine.keys.deactivate(owner, primary.key.key_id, cascade=True)
        event = recorder.query(action="keys:deactivate")[0]
        assert event.metadata == {"cascade": True, "keys_deactivated": 2}

    @pytest.mark.asyncio
    async def test_activation_never_cascades(self, engine, owner, primary, mint):
        child = await mint(primary.key, KeyVariant.USE, [POSTS_READ])
        await engine.keys.deactivate(owner, primary.key.key_id, cascade=True)

        key = await engine.keys.activate(owner, primary.key.key_id)
        assert key.active
        assert not (await engine.key_store.get(child.key.key_id)).active

    @pytest.mark.asyncio
    async def test_activation_refused_under_inactive_parent(self, engine, owner, primary, mint):
        child = await mint(primary.key, KeyVariant.USE, [POSTS_READ])
        await engine.keys.deactivate(owner, primary.key.key_id, cascade=True)

        with pytest.raises(KEY_PARENT_INACTIVE):
            await engine.keys.activate(owner, child.key.key_id)

    @pytest.mark.asyncio
    async def test_retired_key_stays_retired(self, engine, owner, primary):
        await engine.keys.rotate(owner, primary.key.key_id)
        with pytest.raises(KEY_ALREADY_ROTATED):
            await engine.keys.activate(owner, primary.key.key_id)

    @pytest.mark.asyncio
    async def test_reactivate_child_of_rotated_key(self, engine, owner, primary, mint):
        child = await mint(primary.key, KeyVariant.USE, [POSTS_READ])
        await engine.keys.rotate(owner, primary.key.key_id)
        await engine.keys.deactivate(owner, child.key.key_id)

        key = await engine.keys.activate(owner, child.key.key_id)
        assert key.active

    @pytest.mark.asyncio
    async def test_reactivation_follows_successor_state(self, engine, owner, primary, mint):
        child = await mint(primary.key, KeyVariant.USE, [POSTS_READ])
        rotated = await engine.keys.rotate(owner, primary.key.key_id)
        await engine.keys.deactivate(owner, rotated.key.key_id, cascade=True)

        with pytest.raises(KEY_PARENT_INACTIVE):
            await engine.keys.activate(owner, child.key.key_id)

    @pytest.mark.asyncio
    async def test_cascade_from_successor_reaches_predecessor_children(self, engine, owner, primary, mint):
        child = await mint(primary.key, KeyVariant.SECONDARY, [KEYS_ISSUE, POSTS_READ])
        rotated = await engine.keys.rotate(owner, primary.key.key_id)
        later = await mint(rotated.key, KeyVariant.USE, [POSTS_READ])

        changed = await engine.keys.deactivate(owner, rotated.key.key_id, cascade=True)
        assert set(changed) == {rotated.key.key_id, child.key.key_id, later.key.key_id}

    @pytest.mark.asyncio
    async def test_key_deactivates_own_descendant(self, engine, primary, mint):
        secondary = await mint(
            primary.key, KeyVariant.SECONDARY, [KEYS_ISSUE, KEYS_STATE_UPDATE, POSTS_READ]
        )
        use = await mint(secondary.key, KeyVariant.USE, [POSTS_READ])

        changed = await engine.keys.deactivate(secondary.key.to_principal(), use.key.key_id)
        assert changed == [use.key.key_id]

    @pytest.mark.asyncio
    async def test_inactive_key_cannot_administer(self, engine, owner, primary, mint):
        secondary = await mint(
            primary.key, KeyVariant.SECONDARY, [KEYS_ISSUE, KEYS_STATE_UPDATE, POSTS_READ]
        )
        use = await mint(secondary.key, KeyVariant.USE, [POSTS_READ])
        await engine.keys.deactivate(owner, secondary.key.key_id)

        with pytest.raises(AUTH_INVALID_CREDENTIALS):
            await engine.keys.deactivate(secondary.key.to_principal(), use.key.key_id)

    @pytest.mark.asyncio
    async def test_mint_after_cascade_is_refused(self, engine, owner, primary, mint):
        secondary = await mint(primary.key, KeyVariant.SECONDARY, [KEYS_ISSUE, POSTS_READ])
        minting = asyncio.ensure_future(mint(secondary.key, KeyVariant.USE, [POSTS_READ]))
        changed = await engine.keys.deactivate(owner, primary.key.key_id, cascade=True)

        try:
            minted = await minting
        except KEY_ISSUER_INACTIVE:
            minted = None

        if minted is not None:
            assert minted.key.key_id in changed
            assert not (await engine.key_store.get(minted.key.key_id)).active
        for key in await engine.keys.descendants(owner, primary.key.key_id):
            assert not key.active


# ============================================================================
# Limits
# ============================================================================

class TestLimits:

    @pytest.mark.asyncio
    async def test_use_count_limit(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], use_count_limit=2)

        await engine.keys.charge(use.key, "dev-a")
        await engine.keys.charge(use.key, "dev-a")
        with pytest.raises(KEY_USE_LIMIT_EXCEEDED):
            await engine.keys.charge(use.key, "dev-a")
        assert (await engine.key_store.get(use.key.key_id)).use_count_current == 2

    @pytest.mark.asyncio
    async def test_concurrent_redemptions_respect_limit(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], use_count_limit=3)

        results = await asyncio.gather(
            *[engine.keys.charge(use.key, "dev") for _ in range(10)],
            return_exceptions=True,
        )

        assert sum(r is None for r in results) == 3
        assert all(isinstance(r, KEY_USE_LIMIT_EXCEEDED) for r in results if r is not None)
        assert (await engine.key_store.get(use.key.key_id)).use_count_current == 3

    @pytest.mark.asyncio
    async def test_device_limit(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], device_limit=2)

        await engine.keys.charge(use.key, "dev-a")
        await engine.keys.charge(use.key, "dev-b")
        await engine.keys.charge(use.key, "dev-a")
        with pytest.raises(KEY_DEVICE_LIMIT_EXCEEDED):
            await engine.keys.charge(use.key, "dev-c")
        assert await engine.key_store.devices(use.key.key_id) == {"dev-a", "dev-b"}

    @pytest.mark.asyncio
    async def test_refused_redemption_changes_nothing(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], use_count_limit=5, device_limit=1)
        await engine.keys.charge(use.key, "dev-a")

        with pytest.raises(KEY_DEVICE_LIMIT_EXCEEDED):
            await engine.keys.charge(use.key, "dev-b")
        assert (await engine.key_store.get(use.key.key_id)).use_count_current == 1

    @pytest.mark.asyncio
    async def test_without_counting_use(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], use_count_limit=1)
        await engine.keys.charge(use.key, "dev", count_use=False)
        await engine.keys.charge(use.key, "dev")
        assert (await engine.key_store.get(use.key.key_id)).use_count_current == 1

    @pytest.mark.asyncio
    async def test_author_keys_are_not_charged(self, engine, primary):
        for _ in range(3):
            await engine.keys.charge(primary.key, None)
        assert (await engine.key_store.get(primary.key.key_id)).use_count_current == 0

    @pytest.mark.asyncio
    async def test_inactive_use_key(self, engine, owner, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ])
        await engine.keys.deactivate(owner, use.key.key_id)
        assert await engine.key_store.redeem(use.key.key_id, None) is RedemptionOutcome.INACTIVE
        with pytest.raises(AUTH_INVALID_CREDENTIALS):
            await engine.keys.charge(use.key, None)
