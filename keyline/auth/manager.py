"""
Keyline Auth - Authentication Manager

Central coordinator for credential redemption: owner registration and
login, key secret exchange, refresh, per-request token verification and
logout. Also assembles a complete in-memory engine from configuration.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Callable

from keyline.config import KeylineConfig, LimitsConfig
from keyline.faults import Fault, FaultReporter

from .audit import AuditEmitter, AuditRecorder
from .authz import AccessEvaluator
from .catalog import PermissionCatalog, default_catalog
from .core import (
    AuthResult,
    KeyPrincipal,
    KeyStore,
    OwnerPrincipal,
    OwnerRecord,
    OwnerStore,
    Principal,
    PrincipalType,
    RefreshRecord,
)
from .faults import (
    AUTH_INVALID_CREDENTIALS,
    AUTH_REGISTRATION_FAILED,
    AUTH_TOKEN_INVALID,
    DUPLICATE_RECORD,
)
from .groups import GroupService, KeychainService
from .hashing import CredentialHasher, CredentialVerifier, PasswordPolicy
from .ids import is_public_id, new_id
from .keys import KeyManager
from .resources import PostService
from .stores import (
    MemoryAccessStore,
    MemoryKeyStore,
    MemoryOwnerStore,
    MemoryPostStore,
    MemoryRefreshTokenStore,
)
from .tokens import KeyRing, TokenConfig, TokenManager


logger = logging.getLogger("keyline.auth.manager")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_EMAIL_LENGTH = 254

Fingerprinter = Callable[["str | None", "str | None"], "str | None"]


def default_fingerprint(ip: str | None, user_agent: str | None) -> str:
    """SHA-256 of ip + user agent."""
    return hashlib.sha256(f"{ip or ''}{user_agent or ''}".encode()).hexdigest()


# ============================================================================
# Auth Manager
# ============================================================================

class AuthManager:
    """
    Central authentication manager.

    Coordinates all authentication operations:
    - Owner registration and password login
    - Key secret exchange (with Use-key limit charging)
    - Token refresh and logout
    - Access token verification per request

    Every credential failure surfaces as the same generic fault; the
    distinguishing detail only reaches logs and the audit stream.
    """

    def __init__(
        self,
        owner_store: OwnerStore,
        key_store: KeyStore,
        token_manager: TokenManager,
        keys: KeyManager,
        verifier: CredentialVerifier,
        catalog: PermissionCatalog,
        audit: AuditEmitter | None = None,
        limits: LimitsConfig | None = None,
        password_policy: PasswordPolicy | None = None,
        fingerprint: Fingerprinter = default_fingerprint,
        reporter: FaultReporter | None = None,
    ):
        self.owner_store = owner_store
        self.key_store = key_store
        self.token_manager = token_manager
        self.keys = keys
        self.verifier = verifier
        self.catalog = catalog
        self.audit = audit or AuditEmitter()
        self.limits = limits or LimitsConfig()
        self.password_policy = password_policy or PasswordPolicy(
            min_length=self.limits.password_min_length
        )
        self.fingerprint = fingerprint
        self.reporter = reporter or FaultReporter(logging.getLogger("keyline.auth.faults"))

    # ----------------------------------------------------------------- owners

    async def register_owner(
        self,
        email: str,
        password: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> OwnerRecord:
        """
        Register an owner account.

        Raises:
            AUTH_REGISTRATION_FAILED: bad email, weak password, or email taken
                (the taken case carries no field so it cannot be probed)
        """
        if not isinstance(email, str) or len(email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(email.strip()):
            raise AUTH_REGISTRATION_FAILED(field="email", reason="Invalid email address")

        valid, errors = self.password_policy.validate(password if isinstance(password, str) else "")
        if not valid:
            raise AUTH_REGISTRATION_FAILED(field="password", reason="; ".join(errors))

        email = email.strip().lower()
        if await self.owner_store.get_by_email(email) is not None:
            logger.info("Registration refused: email already registered")
            raise AUTH_REGISTRATION_FAILED()

        try:
            owner = await self.owner_store.create(
                OwnerRecord(
                    owner_id=new_id(),
                    email=email,
                    password_hash=self.verifier.hash(password),
                )
            )
        except DUPLICATE_RECORD:
            raise AUTH_REGISTRATION_FAILED() from None

        logger.info("Registered owner %s", owner.owner_id)
        await self.audit.emit(
            PrincipalType.OWNER.value,
            owner.owner_id,
            "owners:register",
            subject_type="owner",
            subject_id=owner.owner_id,
            ip=ip,
            user_agent=user_agent,
        )
        return owner

    async def login_owner(
        self,
        email: str,
        password: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """
        Authenticate an owner by email and password.

        Raises:
            AUTH_INVALID_CREDENTIALS: unknown email or wrong password
        """
        try:
            owner = None
            if isinstance(email, str):
                owner = await self.owner_store.get_by_email(email.strip().lower())

            if not self.verifier.verify(password, owner.password_hash if owner else None):
                raise AUTH_INVALID_CREDENTIALS()
        except Fault as fault:
            self.reporter.report(fault, ip=ip)
            raise

        principal = self.owner_principal(owner)
        result = await self.token_manager.issue_pair(principal, ip, user_agent)

        await self.audit.emit_for(
            principal,
            "owners:login",
            subject_type="owner",
            subject_id=owner.owner_id,
            ip=ip,
            user_agent=user_agent,
        )
        return result

    def owner_principal(self, owner: OwnerRecord) -> OwnerPrincipal:
        return OwnerPrincipal(owner_id=owner.owner_id, permissions=self.catalog.owner_permissions)

    # ------------------------------------------------------------------- keys

    async def exchange_key(
        self,
        public_id: str,
        secret: str,
        ip: str | None = None,
        user_agent: str | None = None,
        fingerprint: str | None = None,
    ) -> AuthResult:
        """
        Exchange a key's public id and secret for a token pair.

        Use keys are charged one use and the device fingerprint is
        registered before tokens are issued.

        Raises:
            AUTH_INVALID_CREDENTIALS: unknown public id, wrong secret, or inactive key
            KEY_USE_LIMIT_EXCEEDED: use-count limit exhausted
            KEY_DEVICE_LIMIT_EXCEEDED: device limit exhausted
        """
        try:
            key = None
            if is_public_id(public_id):
                key = await self.key_store.get_by_public_id(public_id)

            if not self.verifier.verify(secret, key.secret_hash if key else None):
                if key is not None:
                    await self._exchange_failed(key.key_id, "invalid_secret", ip, user_agent)
                raise AUTH_INVALID_CREDENTIALS()

            if not key.active:
                await self._exchange_failed(key.key_id, "inactive", ip, user_agent)
                raise AUTH_INVALID_CREDENTIALS()

            await self.keys.charge(
                key,
                fingerprint if fingerprint is not None else self.fingerprint(ip, user_agent),
                count_use=True,
            )
        except Fault as fault:
            self.reporter.report(fault, ip=ip)
            raise

        principal = key.to_principal()
        result = await self.token_manager.issue_pair(principal, ip, user_agent)

        logger.info("Key %s exchanged credentials", key.key_id)
        await self.audit.emit_for(
            principal,
            "keys:exchange",
            subject_type="key",
            subject_id=key.key_id,
            metadata={"type": key.variant.value},
            ip=ip,
            user_agent=user_agent,
        )
        return result

    async def _exchange_failed(
        self,
        key_id: str,
        reason: str,
        ip: str | None,
        user_agent: str | None,
    ) -> None:
        logger.warning("Key exchange failed for %s (%s)", key_id, reason)
        await self.audit.emit(
            PrincipalType.KEY.value,
            key_id,
            "keys:exchange:failed",
            subject_type="key",
            subject_id=key_id,
            metadata={"reason": reason},
            ip=ip,
            user_agent=user_agent,
        )

    # ---------------------------------------------------------------- session

    async def refresh(
        self,
        refresh_token: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """
        Redeem a refresh token. Never charges Use-key limits.

        Raises:
            AUTH_REFRESH_INVALID: unknown, expired, revoked, replayed, or the
                subject is gone or inactive
        """
        try:
            return await self.token_manager.refresh(
                refresh_token, self._resolve_subject, ip=ip, user_agent=user_agent
            )
        except Fault as fault:
            self.reporter.report(fault, ip=ip)
            raise

    async def _resolve_subject(self, record: RefreshRecord) -> Principal | None:
        if record.subject_type is PrincipalType.OWNER:
            owner = await self.owner_store.get(record.subject_id)
            return self.owner_principal(owner) if owner else None

        if record.subject_type is PrincipalType.KEY:
            key = await self.key_store.get(record.subject_id)
            if key is None or not key.active:
                return None
            return key.to_principal()

        raise TypeError(f"Unsupported subject type: {record.subject_type}")

    async def authenticate_request(
        self,
        access_token: str,
        expected_type: PrincipalType | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        fingerprint: str | None = None,
    ) -> Principal:
        """
        Verify an access token for one request.

        Key tokens are only honoured while the key is active. Under the
        ``"request"`` use-count policy every call also charges the Use key.

        Raises:
            AUTH_TOKEN_INVALID: token invalid, or key missing or inactive
            KEY_USE_LIMIT_EXCEEDED / KEY_DEVICE_LIMIT_EXCEEDED: "request" policy only
        """
        principal = self.token_manager.authenticate(access_token, expected_type)

        if isinstance(principal, OwnerPrincipal):
            if await self.owner_store.get(principal.owner_id) is None:
                raise AUTH_TOKEN_INVALID()
            return principal

        if isinstance(principal, KeyPrincipal):
            key = await self.key_store.get(principal.key_id)
            if key is None or not key.active:
                raise AUTH_TOKEN_INVALID()

            if self.limits.use_count_policy == "request":
                await self.keys.charge(
                    key,
                    fingerprint if fingerprint is not None else self.fingerprint(ip, user_agent),
                    count_use=True,
                )
            return principal

        raise TypeError(f"Unsupported principal: {type(principal).__name__}")

    async def logout(self, refresh_token: str) -> bool:
        """Revoke a single refresh token."""
        return await self.token_manager.revoke_refresh_token(refresh_token)

    async def logout_all(self, principal: Principal) -> int:
        """Revoke every refresh token held by a principal."""
        revoked = await self.token_manager.revoke_all_for(principal)
        logger.info("Revoked %d refresh token(s)", revoked)
        return revoked


# ============================================================================
# Engine Assembly
# ============================================================================

@dataclass
class AuthEngine:
    """Every component of an assembled engine."""
    config: KeylineConfig
    catalog: PermissionCatalog
    verifier: CredentialVerifier
    audit: AuditEmitter
    owner_store: MemoryOwnerStore
    key_store: MemoryKeyStore
    access_store: MemoryAccessStore
    refresh_store: MemoryRefreshTokenStore
    post_store: MemoryPostStore
    tokens: TokenManager
    keys: KeyManager
    evaluator: AccessEvaluator
    groups: GroupService
    keychains: KeychainService
    posts: PostService
    auth: AuthManager


def create_engine(
    config: KeylineConfig | None = None,
    key_ring: KeyRing | None = None,
    recorder: AuditRecorder | None = None,
    hasher: CredentialHasher | None = None,
    catalog: PermissionCatalog | None = None,
) -> AuthEngine:
    """Assemble an in-memory engine from configuration."""
    config = config or KeylineConfig()
    catalog = catalog or default_catalog()

    if hasher is None:
        hasher = CredentialHasher(
            algorithm=config.hashing.algorithm,
            time_cost=config.hashing.time_cost,
            memory_cost=config.hashing.memory_cost,
            parallelism=config.hashing.parallelism,
            iterations=config.hashing.iterations,
        )
    verifier = CredentialVerifier(hasher)
    audit = AuditEmitter(recorder)

    owner_store = MemoryOwnerStore()
    key_store = MemoryKeyStore()
    access_store = MemoryAccessStore()
    refresh_store = MemoryRefreshTokenStore()
    post_store = MemoryPostStore()

    settings = config.tokens
    tokens = TokenManager(
        key_ring=key_ring or KeyRing.generate(settings.algorithm),
        token_store=refresh_store,
        verifier=verifier,
        config=TokenConfig(
            issuer=settings.issuer,
            owner_audience=settings.owner_audience,
            key_audience=settings.key_audience,
            access_token_ttl=settings.access_token_ttl,
            refresh_token_ttl=settings.refresh_token_ttl,
            leeway=settings.leeway,
            algorithm=settings.algorithm,
        ),
        audit=audit,
    )

    keys = KeyManager(key_store, owner_store, verifier, catalog, audit)
    evaluator = AccessEvaluator(key_store, access_store)
    groups = GroupService(access_store, keys, evaluator, audit)
    keychains = KeychainService(access_store, key_store, keys, evaluator, audit)
    posts = PostService(post_store, key_store, access_store, evaluator, groups, audit)
    auth = AuthManager(
        owner_store,
        key_store,
        tokens,
        keys,
        verifier,
        catalog,
        audit=audit,
        limits=config.limits,
    )

    return AuthEngine(
        config=config,
        catalog=catalog,
        verifier=verifier,
        audit=audit,
        owner_store=owner_store,
        key_store=key_store,
        access_store=access_store,
        refresh_store=refresh_store,
        post_store=post_store,
        tokens=tokens,
        keys=keys,
        evaluator=evaluator,
        groups=groups,
        keychains=keychains,
        posts=posts,
        auth=auth,
    )
