"""
Owner registration and login, key exchange, refresh, per-request
authentication and logout.
"""

import logging

import pytest

from keyline.auth import KeyVariant, PrincipalType
from keyline.auth.catalog import POSTS_READ
from keyline.auth.faults import (
    AUTH_INVALID_CREDENTIALS,
    AUTH_REFRESH_INVALID,
    AUTH_REGISTRATION_FAILED,
    AUTH_TOKEN_INVALID,
    KEY_DEVICE_LIMIT_EXCEEDED,
    KEY_USE_LIMIT_EXCEEDED,
)
from keyline.auth.manager import default_fingerprint


OWNER_PASSWORD = "correct horse battery"


# ============================================================================
# Owners
# ============================================================================

class TestOwnerAccounts:

    @pytest.mark.asyncio
    async def test_register_normalizes_email(self, engine, recorder):
        record = await engine.auth.register_owner("  Alice@Example.COM ", OWNER_PASSWORD)
        assert record.email == "alice@example.com"
        assert record.password_hash != OWNER_PASSWORD
        assert recorder.query(action="owners:register")[0].actor_id == record.owner_id

    @pytest.mark.asyncio
    async def test_duplicate_email_is_generic(self, engine, owner):
        with pytest.raises(AUTH_REGISTRATION_FAILED) as exc:
            await engine.auth.register_owner("OWNER@example.com", OWNER_PASSWORD)
        assert "field" not in exc.value.metadata

    @pytest.mark.asyncio
    async def test_invalid_email(self, engine):
        with pytest.raises(AUTH_REGISTRATION_FAILED) as exc:
            await engine.auth.register_owner("not-an-email", OWNER_PASSWORD)
        assert exc.value.metadata["field"] == "email"

    @pytest.mark.asyncio
    async def test_weak_password(self, engine):
        with pytest.raises(AUTH_REGISTRATION_FAILED) as exc:
            await engine.auth.register_owner("weak@example.com", "short")
        assert exc.value.metadata["field"] == "password"

    @pytest.mark.asyncio
    async def test_login(self, engine, owner, recorder):
        result = await engine.auth.login_owner("owner@example.com", OWNER_PASSWORD, ip="10.0.0.1")

        principal = await engine.auth.authenticate_request(result.access_token, PrincipalType.OWNER)
        assert principal.owner_id == owner.owner_id
        assert principal.permissions == engine.catalog.owner_permissions
        assert recorder.query(action="owners:login")[0].ip == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_login_failures_are_identical(self, engine, owner):
        with pytest.raises(AUTH_INVALID_CREDENTIALS) as wrong_password:
            await engine.auth.login_owner("owner@example.com", "wrong password")
        with pytest.raises(AUTH_INVALID_CREDENTIALS) as unknown_email:
            await engine.auth.login_owner("nobody@example.com", OWNER_PASSWORD)
        assert wrong_password.value.to_public_dict() == unknown_email.value.to_public_dict()

    @pytest.mark.asyncio
    async def test_login_failure_is_reported(self, engine, owner, caplog):
        with caplog.at_level(logging.WARNING, logger="keyline.auth.faults"):
            with pytest.raises(AUTH_INVALID_CREDENTIALS):
                await engine.auth.login_owner("owner@example.com", "wrong password", ip="10.9.9.9")
        assert "AUTH_001" in caplog.text


# ============================================================================
# Key Exchange
# ============================================================================

class TestKeyExchange:

    @pytest.mark.asyncio
    async def test_exchange(self, engine, primary, recorder):
        result = await engine.auth.exchange_key(primary.key.public_id, primary.secret)

        principal = await engine.auth.authenticate_request(result.access_token, PrincipalType.KEY)
        assert principal.key_id == primary.key.key_id
        assert principal.variant is KeyVariant.PRIMARY
        assert recorder.query(action="keys:exchange")[0].metadata == {"type": "primary"}

    @pytest.mark.asyncio
    async def test_key_token_is_not_an_owner_token(self, engine, primary):
        result = await engine.auth.exchange_key(primary.key.public_id, primary.secret)
        with pytest.raises(AUTH_TOKEN_INVALID):
            await engine.auth.authenticate_request(result.access_token, PrincipalType.OWNER)

    @pytest.mark.asyncio
    async def test_failures_are_generic(self, engine, owner, primary):
        failures = []
        for public_id, secret in [
            (primary.key.public_id, "sec_wrong"),
            ("apub_0000000000000000", primary.secret),
            ("garbage", primary.secret),
        ]:
            with pytest.raises(AUTH_INVALID_CREDENTIALS) as exc:
                await engine.auth.exchange_key(public_id, secret)
            failures.append(exc.value.to_public_dict())

        await engine.keys.deactivate(owner, primary.key.key_id)
        with pytest.raises(AUTH_INVALID_CREDENTIALS) as exc:
            await engine.auth.exchange_key(primary.key.public_id, primary.secret)
        failures.append(exc.value.to_public_dict())

        assert all(f == failures[0] for f in failures)

    @pytest.mark.asyncio
    async def test_failed_exchange_is_audited(self, engine, owner, primary, recorder):
        with pytest.raises(AUTH_INVALID_CREDENTIALS):
            await engine.auth.exchange_key(primary.key.public_id, "sec_wrong")
        await engine.keys.deactivate(owner, primary.key.key_id)
        with pytest.raises(AUTH_INVALID_CREDENTIALS):
            await engine.auth.exchange_key(primary.key.public_id, primary.secret)

        reasons = [e.metadata["reason"] for e in recorder.query(action="keys:exchange:failed")]
        assert reasons == ["invalid_secret", "inactive"]

    @pytest.mark.asyncio
    async def test_use_limit_per_exchange(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], use_count_limit=2)

        await engine.auth.exchange_key(use.key.public_id, use.secret)
        await engine.auth.exchange_key(use.key.public_id, use.secret)
        with pytest.raises(KEY_USE_LIMIT_EXCEEDED) as exc:
            await engine.auth.exchange_key(use.key.public_id, use.secret)
        assert exc.value.status == 403

    @pytest.mark.asyncio
    async def test_device_limit(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], device_limit=1)

        await engine.auth.exchange_key(use.key.public_id, use.secret, ip="10.0.0.1", user_agent="cli")
        await engine.auth.exchange_key(use.key.public_id, use.secret, ip="10.0.0.1", user_agent="cli")
        with pytest.raises(KEY_DEVICE_LIMIT_EXCEEDED):
            await engine.auth.exchange_key(use.key.public_id, use.secret, ip="10.0.0.2", user_agent="cli")

        assert await engine.key_store.devices(use.key.key_id) == {default_fingerprint("10.0.0.1", "cli")}

    @pytest.mark.asyncio
    async def test_explicit_fingerprint(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], device_limit=1)
        await engine.auth.exchange_key(use.key.public_id, use.secret, fingerprint="device-1")
        assert await engine.key_store.devices(use.key.key_id) == {"device-1"}


# ============================================================================
# Refresh & Requests
# ============================================================================

class TestSessions:

    @pytest.mark.asyncio
    async def test_refresh_never_charges(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], use_count_limit=1)
        result = await engine.auth.exchange_key(use.key.public_id, use.secret)

        for _ in range(3):
            result = await engine.auth.refresh(result.refresh_token)
        assert (await engine.key_store.get(use.key.key_id)).use_count_current == 1

    @pytest.mark.asyncio
    async def test_refresh_for_inactive_key(self, engine, owner, primary):
        result = await engine.auth.exchange_key(primary.key.public_id, primary.secret)
        await engine.keys.deactivate(owner, primary.key.key_id)

        with pytest.raises(AUTH_REFRESH_INVALID):
            await engine.auth.refresh(result.refresh_token)

    @pytest.mark.asyncio
    async def test_refresh_reflects_current_permissions(self, engine, owner, primary):
        result = await engine.auth.exchange_key(primary.key.public_id, primary.secret)
        renewed = await engine.auth.refresh(result.refresh_token)
        assert renewed.principal.permissions == primary.key.permissions

    @pytest.mark.asyncio
    async def test_inactive_key_token_rejected(self, engine, owner, primary):
        result = await engine.auth.exchange_key(primary.key.public_id, primary.secret)
        await engine.keys.deactivate(owner, primary.key.key_id)

        with pytest.raises(AUTH_TOKEN_INVALID):
            await engine.auth.authenticate_request(result.access_token)

    @pytest.mark.asyncio
    async def test_exchange_policy_does_not_charge_requests(self, engine, primary, mint):
        use = await mint(primary.key, KeyVariant.USE, [POSTS_READ], use_count_limit=1)
        result = await engine.auth.exchange_key(use.key.public_id, use.secret)

        for _ in range(3):
            await engine.auth.authenticate_request(result.access_token)
        assert (await engine.key_store.get(use.key.key_id)).use_count_current == 1

    @pytest.mark.asyncio
    async def test_request_policy_charges_every_request(self, request_engine):
        engine = request_engine
        owner = engine.auth.owner_principal(
            await engine.auth.register_owner("req@example.com", OWNER_PASSWORD)
        )
        primary = await engine.keys.mint_primary(owner, ["keys:issue", POSTS_READ])
        use = await engine.keys.mint(
            primary.key.to_principal(), KeyVariant.USE, [POSTS_READ], use_count_limit=3
        )

        result = await engine.auth.exchange_key(use.key.public_id, use.secret)
        await engine.auth.authenticate_request(result.access_token)
        await engine.auth.authenticate_request(result.access_token)
        with pytest.raises(KEY_USE_LIMIT_EXCEEDED):
            await engine.auth.authenticate_request(result.access_token)

    @pytest.mark.asyncio
    async def test_logout(self, engine, owner):
        result = await engine.auth.login_owner("owner@example.com", OWNER_PASSWORD)
        assert await engine.auth.logout(result.refresh_token)
        assert not await engine.auth.logout(result.refresh_token)

        with pytest.raises(AUTH_REFRESH_INVALID):
            await engine.auth.refresh(result.refresh_token)

    @pytest.mark.asyncio
    async def test_logout_all(self, engine, owner):
        first = await engine.auth.login_owner("owner@example.com", OWNER_PASSWORD)
        await engine.auth.login_owner("owner@example.com", OWNER_PASSWORD)

        assert await engine.auth.logout_all(owner) == 2
        with pytest.raises(AUTH_REFRESH_INVALID):
            await engine.auth.refresh(first.refresh_token)
