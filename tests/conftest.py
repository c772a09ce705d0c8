"""
Shared fixtures for the Keyline test suite.

Every test gets a fresh in-memory engine with fast Argon2 parameters, an
Ed25519 signing key and a memory audit recorder.
"""

import pytest
import pytest_asyncio

from keyline.auth import (
    CredentialHasher,
    KeyAlgorithm,
    KeyRing,
    KeyVariant,
    MemoryAuditRecorder,
    create_engine,
)
from keyline.auth.catalog import (
    COMMENTS_WRITE,
    KEYCHAINS_MANAGE,
    KEYS_ISSUE,
    KEYS_READ,
    KEYS_ROTATE,
    KEYS_STATE_UPDATE,
    POSTS_ACCESS_MANAGE,
    POSTS_CREATE,
    POSTS_READ,
    GROUPS_READ,
)
from keyline.config import KeylineConfig, LimitsConfig


PRIMARY_PERMISSIONS = [
    KEYS_ISSUE,
    KEYS_READ,
    KEYS_ROTATE,
    KEYS_STATE_UPDATE,
    POSTS_CREATE,
    POSTS_READ,
    COMMENTS_WRITE,
    POSTS_ACCESS_MANAGE,
    GROUPS_READ,
    KEYCHAINS_MANAGE,
]

OWNER_PASSWORD = "correct horse battery"


@pytest.fixture(scope="session")
def key_ring():
    return KeyRing.generate(KeyAlgorithm.EdDSA)


@pytest.fixture
def hasher():
    return CredentialHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def recorder():
    return MemoryAuditRecorder()


@pytest.fixture
def engine(key_ring, recorder, hasher):
    return create_engine(key_ring=key_ring, recorder=recorder, hasher=hasher)


@pytest.fixture
def request_engine(key_ring, recorder, hasher):
    """Engine charging Use-key limits on every authenticated request."""
    config = KeylineConfig(limits=LimitsConfig(use_count_policy="request"))
    return create_engine(config=config, key_ring=key_ring, recorder=recorder, hasher=hasher)


async def _register(engine, email):
    record = await engine.auth.register_owner(email, OWNER_PASSWORD)
    return engine.auth.owner_principal(record)


@pytest_asyncio.fixture
async def owner(engine):
    return await _register(engine, "owner@example.com")


@pytest_asyncio.fixture
async def other_owner(engine):
    return await _register(engine, "other@example.com")


@pytest_asyncio.fixture
async def primary(engine, owner):
    """Primary key of ``owner`` holding PRIMARY_PERMISSIONS."""
    return await engine.keys.mint_primary(owner, PRIMARY_PERMISSIONS, label="primary")


@pytest.fixture
def mint(engine):
    """Mint a delegated key under an issuer record."""

    async def _mint(issuer, variant=KeyVariant.SECONDARY, permissions=(POSTS_READ,), **kwargs):
        return await engine.keys.mint(issuer.to_principal(), variant, permissions, **kwargs)

    return _mint
