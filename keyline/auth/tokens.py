"""
Keyline Auth - Token Management

Signed access tokens (JWT compact form), opaque refresh tokens with
single-use rotation, and the signing key ring.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from .audit import AuditEmitter
from .core import (
    AuthResult,
    KeyPrincipal,
    KeyVariant,
    OwnerPrincipal,
    Principal,
    PrincipalType,
    RefreshRecord,
    principal_ref,
)
from .faults import AUTH_REFRESH_INVALID, AUTH_TOKEN_INVALID
from .hashing import CredentialVerifier
from .ids import is_hex32, lookup_hash, new_id, new_refresh_token


logger = logging.getLogger("keyline.auth.tokens")


# ============================================================================
# Key Management
# ============================================================================

class KeyAlgorithm(str):
    """Supported signing algorithms."""
    RS256 = "RS256"  # RSA with SHA-256
    ES256 = "ES256"  # ECDSA P-256 with SHA-256
    EdDSA = "EdDSA"  # Ed25519


class KeyStatus(str):
    """Signing key status in lifecycle."""
    ACTIVE = "active"        # Current signing key
    RETIRED = "retired"      # No longer signs, but verifies
    REVOKED = "revoked"      # Invalid for all operations


@dataclass
class KeyDescriptor:
    """
    Signing key metadata.

    Keys are identified by ``kid`` in token headers.
    """
    kid: str
    algorithm: str
    public_key_pem: str
    private_key_pem: str | None = None
    status: str = KeyStatus.ACTIVE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    retired_at: datetime | None = None
    revoked_at: datetime | None = None

    def is_active(self) -> bool:
        return self.status == KeyStatus.ACTIVE

    def can_verify(self) -> bool:
        return self.status in (KeyStatus.ACTIVE, KeyStatus.RETIRED)

    def to_dict(self) -> dict[str, Any]:
        res = {
            "kid": self.kid,
            "algorithm": self.algorithm,
            "public_key": self.public_key_pem,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "retired_at": self.retired_at.isoformat() if self.retired_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }
        if self.private_key_pem:
            res["private_key"] = self.private_key_pem
        return res

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeyDescriptor:
        return cls(
            kid=data["kid"],
            algorithm=data["algorithm"],
            public_key_pem=data["public_key"],
            private_key_pem=data.get("private_key"),
            status=data.get("status", KeyStatus.ACTIVE),
            created_at=datetime.fromisoformat(data["created_at"]),
            retired_at=datetime.fromisoformat(data["retired_at"]) if data.get("retired_at") else None,
            revoked_at=datetime.fromisoformat(data["revoked_at"]) if data.get("revoked_at") else None,
        )

    @classmethod
    def generate(cls, kid: str, algorithm: str = KeyAlgorithm.RS256) -> KeyDescriptor:
        """Generate a new key pair."""
        if algorithm == KeyAlgorithm.RS256:
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        elif algorithm == KeyAlgorithm.ES256:
            private_key = ec.generate_private_key(ec.SECP256R1())
        elif algorithm == KeyAlgorithm.EdDSA:
            private_key = ed25519.Ed25519PrivateKey.generate()
        else:
            raise ValueError(f"Unsupported algorithm: {algorithm}")

        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()

        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()

        return cls(
            kid=kid,
            algorithm=algorithm,
            public_key_pem=public_pem,
            private_key_pem=private_pem,
        )

    def to_jwk(self) -> dict[str, Any]:
        """Public JWK for this key."""
        public_key = serialization.load_pem_public_key(self.public_key_pem.encode())
        jwk: dict[str, Any] = {"kid": self.kid, "alg": self.algorithm, "use": "sig"}

        if self.algorithm == KeyAlgorithm.RS256:
            numbers = public_key.public_numbers()
            jwk.update(kty="RSA", n=_b64_uint(numbers.n), e=_b64_uint(numbers.e))
        elif self.algorithm == KeyAlgorithm.ES256:
            numbers = public_key.public_numbers()
            jwk.update(
                kty="EC",
                crv="P-256",
                x=_b64encode(numbers.x.to_bytes(32, "big")),
                y=_b64encode(numbers.y.to_bytes(32, "big")),
            )
        elif self.algorithm == KeyAlgorithm.EdDSA:
            raw = public_key.public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )
            jwk.update(kty="OKP", crv="Ed25519", x=_b64encode(raw))
        else:
            raise ValueError(f"Unsupported algorithm: {self.algorithm}")

        return jwk


class KeyRing:
    """
    Key ring for token signing and verification.

    Manages multiple keys with lifecycle:
    - Current signing key (kid)
    - Retired keys kept for verification
    - Rotation support
    """

    def __init__(self, keys: list[KeyDescriptor]):
        self.keys: dict[str, KeyDescriptor] = {k.kid: k for k in keys}

        active_keys = [k for k in keys if k.is_active()]
        if not active_keys:
            raise ValueError("No active signing key in key ring")

        self.current_kid = active_keys[0].kid

    @classmethod
    def generate(cls, algorithm: str = KeyAlgorithm.RS256, kid: str | None = None) -> KeyRing:
        """Key ring with one freshly generated signing key."""
        return cls([KeyDescriptor.generate(kid or f"key_{new_id()[:8]}", algorithm)])

    def get_signing_key(self) -> KeyDescriptor:
        key = self.keys.get(self.current_kid)

        if not key or not key.is_active():
            raise ValueError(f"No active signing key: {self.current_kid}")

        return key

    def get_verification_key(self, kid: str) -> KeyDescriptor | None:
        key = self.keys.get(kid)

        if key and key.can_verify():
            return key

        return None

    def add_key(self, key: KeyDescriptor) -> None:
        self.keys[key.kid] = key

    def promote_key(self, kid: str) -> None:
        """Promote key to active (retire current)."""
        new_key = self.keys.get(kid)

        if not new_key:
            raise ValueError(f"Key not found: {kid}")

        if self.current_kid in self.keys and self.current_kid != kid:
            old_key = self.keys[self.current_kid]
            old_key.status = KeyStatus.RETIRED
            old_key.retired_at = datetime.now(timezone.utc)

        new_key.status = KeyStatus.ACTIVE
        self.current_kid = kid

    def revoke_key(self, kid: str) -> None:
        """Revoke key (invalid for all operations)."""
        key = self.keys.get(kid)

        if key:
            key.status = KeyStatus.REVOKED
            key.revoked_at = datetime.now(timezone.utc)

    def jwks(self) -> dict[str, Any]:
        """JWK set of every key that can still verify."""
        return {"keys": [k.to_jwk() for k in self.keys.values() if k.can_verify()]}

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_kid": self.current_kid,
            "keys": [k.to_dict() for k in self.keys.values()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeyRing:
        keys = [KeyDescriptor.from_dict(k) for k in data["keys"]]
        ring = cls(keys)
        ring.current_kid = data["current_kid"]
        return ring

    @classmethod
    def from_file(cls, path: Path) -> KeyRing:
        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_file(self, path: Path) -> None:
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


# ============================================================================
# Claims
# ============================================================================

@dataclass(frozen=True)
class AccessClaims:
    """Decoded, verified access-token claims."""
    issuer: str
    subject: str
    audience: str
    issued_at: int
    not_before: int
    expires_at: int
    token_id: str
    principal: Principal
    roles: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return build_payload(self.principal, self)


def roles_for(principal: Principal) -> list[str]:
    if isinstance(principal, OwnerPrincipal):
        return ["owner"]
    if isinstance(principal, KeyPrincipal):
        return [principal.variant.role]
    raise TypeError(f"Unsupported principal: {type(principal).__name__}")


def build_payload(principal: Principal, claims: AccessClaims) -> dict[str, Any]:
    """Wire payload for a principal; owner and key claims never mix."""
    principal_type, principal_id = principal_ref(principal)
    payload: dict[str, Any] = {
        "iss": claims.issuer,
        "sub": f"{principal_type}:{principal_id}",
        "aud": claims.audience,
        "iat": claims.issued_at,
        "nbf": claims.not_before,
        "exp": claims.expires_at,
        "jti": claims.token_id,
        "typ": principal_type,
        "roles": list(claims.roles),
        "permissions": sorted(principal.permissions),
    }

    if isinstance(principal, OwnerPrincipal):
        payload["owner_id"] = principal.owner_id
    else:
        payload["key_id"] = principal.key_id
        payload["key_type"] = principal.variant.value
        if principal.public_id:
            payload["key_public_id"] = principal.public_id

    return payload


def principal_from_payload(payload: dict[str, Any]) -> Principal:
    """
    Rebuild the principal from a verified payload.

    Raises:
        ValueError: claims are inconsistent (mixed tags, bad ids, ...)
    """
    typ = payload.get("typ")
    permissions = payload.get("permissions")
    if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
        raise ValueError("Invalid permissions claim")

    if typ == PrincipalType.OWNER.value:
        owner_id = payload.get("owner_id")
        if "key_id" in payload or not is_hex32(owner_id):
            raise ValueError("Invalid owner claims")
        if payload.get("sub") != f"owner:{owner_id}":
            raise ValueError("Subject mismatch")
        return OwnerPrincipal(owner_id=owner_id, permissions=frozenset(permissions))

    if typ == PrincipalType.KEY.value:
        key_id = payload.get("key_id")
        if "owner_id" in payload or not is_hex32(key_id):
            raise ValueError("Invalid key claims")
        if payload.get("sub") != f"key:{key_id}":
            raise ValueError("Subject mismatch")
        return KeyPrincipal(
            key_id=key_id,
            variant=KeyVariant(payload.get("key_type")),
            permissions=frozenset(permissions),
            public_id=payload.get("key_public_id"),
        )

    raise ValueError("Unknown principal type")


# ============================================================================
# Token Manager
# ============================================================================

@dataclass
class TokenConfig:
    """Token manager configuration."""
    issuer: str = "keyline"
    owner_audience: str = "console"
    key_audience: str = "api"
    access_token_ttl: int = 900          # 15 minutes
    refresh_token_ttl: int = 2592000     # 30 days
    leeway: int = 10                     # clock skew, seconds
    algorithm: str = KeyAlgorithm.RS256

    def audience_for(self, principal_type: PrincipalType) -> str:
        if principal_type is PrincipalType.OWNER:
            return self.owner_audience
        return self.key_audience


class RefreshTokenStore(Protocol):
    """Protocol for refresh token storage."""

    async def save(self, record: RefreshRecord) -> None:
        ...

    async def get(self, token_id: str) -> RefreshRecord | None:
        ...

    async def get_by_lookup(self, lookup_hash: str) -> RefreshRecord | None:
        ...

    async def rotate(self, token_id: str, successor: RefreshRecord) -> bool:
        """Atomically mark rotated iff not yet rotated or revoked."""
        ...

    async def revoke(self, token_id: str) -> bool:
        ...

    async def revoke_for_subject(self, subject_type: PrincipalType, subject_id: str) -> int:
        ...


PrincipalResolver = Callable[[RefreshRecord], Awaitable["Principal | None"]]


class TokenManager:
    """
    Token lifecycle manager.

    Responsibilities:
    - Issue signed access tokens carrying the principal tag and frozen permissions
    - Verify signature, expiry, not-before, issuer, audience and principal tag
    - Issue opaque refresh tokens and rotate them exactly once
    - Report refresh replays as distinct security events
    """

    def __init__(
        self,
        key_ring: KeyRing,
        token_store: RefreshTokenStore,
        verifier: CredentialVerifier,
        config: TokenConfig | None = None,
        audit: AuditEmitter | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.key_ring = key_ring
        self.token_store = token_store
        self.verifier = verifier
        self.config = config or TokenConfig()
        self.audit = audit or AuditEmitter()
        self.clock = clock

    # ------------------------------------------------------------------ access

    def issue_access_token(self, principal: Principal, ttl: int | None = None) -> str:
        """
        Issue signed access token.

        Format: header.payload.signature
        - header: {"alg": "RS256", "kid": "key_...", "typ": "JWT"}
        - payload: {"iss": ..., "sub": "key:<id>", "typ": "key", ...}
        """
        principal_type, principal_id = principal_ref(principal)
        now = int(self.clock())
        claims = AccessClaims(
            issuer=self.config.issuer,
            subject=f"{principal_type}:{principal_id}",
            audience=self.config.audience_for(PrincipalType(principal_type)),
            issued_at=now,
            not_before=now,
            expires_at=now + (ttl or self.config.access_token_ttl),
            token_id=f"at_{new_id()}",
            principal=principal,
            roles=tuple(roles_for(principal)),
        )
        return self._sign_token(build_payload(principal, claims))

    def verify_access_token(
        self,
        token: str,
        expected_type: PrincipalType | None = None,
    ) -> AccessClaims:
        """
        Validate and decode an access token.

        Every failure raises the same AUTH_TOKEN_INVALID; the reason is only
        logged at debug level.
        """
        try:
            return self._verify(token, expected_type)
        except (ValueError, TypeError, KeyError) as exc:
            logger.debug("Access token rejected: %s", exc)
            raise AUTH_TOKEN_INVALID() from None

    def authenticate(self, token: str, expected_type: PrincipalType | None = None) -> Principal:
        return self.verify_access_token(token, expected_type).principal

    def _verify(self, token: str, expected_type: PrincipalType | None) -> AccessClaims:
        if not isinstance(token, str):
            raise ValueError("Token must be a string")

        try:
            header_b64, payload_b64, signature_b64 = token.split(".")
        except ValueError:
            raise ValueError("Malformed token: expected 3 parts")

        header = _b64decode_json(header_b64)
        kid = header.get("kid")
        if not kid:
            raise ValueError("Missing kid in header")

        key = self.key_ring.get_verification_key(kid)
        if not key:
            raise ValueError(f"Unknown kid: {kid}")

        if header.get("alg") != key.algorithm:
            raise ValueError("Algorithm mismatch")

        message = f"{header_b64}.{payload_b64}".encode()
        if not self._verify_signature(message, _b64decode(signature_b64), key):
            raise ValueError("Invalid signature")

        payload = _b64decode_json(payload_b64)
        now = int(self.clock())
        leeway = self.config.leeway

        exp = payload.get("exp")
        if not isinstance(exp, int) or exp + leeway < now:
            raise ValueError("Token expired")

        nbf = payload.get("nbf", 0)
        if not isinstance(nbf, int) or nbf - leeway > now:
            raise ValueError("Token not yet valid")

        if payload.get("iss") != self.config.issuer:
            raise ValueError("Issuer mismatch")

        principal = principal_from_payload(payload)
        principal_type = PrincipalType(payload["typ"])

        if expected_type is not None and principal_type is not expected_type:
            raise ValueError("Principal type mismatch")

        audience = payload.get("aud")
        expected_audience = self.config.audience_for(principal_type)
        audiences = audience if isinstance(audience, list) else [audience]
        if expected_audience not in audiences:
            raise ValueError("Audience mismatch")

        return AccessClaims(
            issuer=payload["iss"],
            subject=payload["sub"],
            audience=expected_audience,
            issued_at=payload.get("iat", nbf),
            not_before=nbf,
            expires_at=exp,
            token_id=payload.get("jti", ""),
            principal=principal,
            roles=tuple(payload.get("roles", ())),
        )

    # ----------------------------------------------------------------- refresh

    def _new_refresh_record(
        self,
        principal_type: PrincipalType,
        subject_id: str,
        ip: str | None,
        user_agent: str | None,
    ) -> tuple[str, RefreshRecord]:
        token = new_refresh_token()
        issued_at = datetime.fromtimestamp(self.clock(), timezone.utc)
        record = RefreshRecord(
            token_id=new_id(),
            subject_type=principal_type,
            subject_id=subject_id,
            token_hash=self.verifier.hash(token),
            lookup_hash=lookup_hash(token),
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=self.config.refresh_token_ttl),
            ip=ip,
            user_agent=user_agent,
        )
        return token, record

    async def issue_refresh_token(
        self,
        principal: Principal,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        """
        Issue opaque refresh token.

        Only the hash and the lookup key are stored.
        Format: rt_<96 hex chars>
        """
        principal_type, subject_id = principal_ref(principal)
        token, record = self._new_refresh_record(
            PrincipalType(principal_type), subject_id, ip, user_agent
        )
        await self.token_store.save(record)
        return token

    async def issue_pair(
        self,
        principal: Principal,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Issue access + refresh tokens for a freshly authenticated principal."""
        return AuthResult(
            principal=principal,
            access_token=self.issue_access_token(principal),
            refresh_token=await self.issue_refresh_token(principal, ip, user_agent),
            expires_in=self.config.access_token_ttl,
        )

    async def refresh(
        self,
        refresh_token: str,
        resolve_principal: PrincipalResolver,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """
        Redeem a refresh token for a new token pair.

        State machine: issued -> rotated. Redeeming a rotated token is a
        replay: it is audited as ``refresh:replay_attempt`` and fails with
        the same AUTH_REFRESH_INVALID as every other refresh failure.
        """
        record = await self._lookup(refresh_token)

        if record.is_rotated:
            await self._report_replay(record, ip, user_agent)
            raise AUTH_REFRESH_INVALID()

        now = datetime.fromtimestamp(self.clock(), timezone.utc)
        if record.is_revoked or record.is_expired(now):
            raise AUTH_REFRESH_INVALID()

        principal = await resolve_principal(record)
        if principal is None:
            logger.debug("Refresh subject unavailable: %s", record.subject_type.value)
            raise AUTH_REFRESH_INVALID()

        new_token, successor = self._new_refresh_record(
            record.subject_type, record.subject_id, ip, user_agent
        )
        if not await self.token_store.rotate(record.token_id, successor):
            # Lost a concurrent redemption race, or revoked meanwhile.
            current = await self.token_store.get(record.token_id)
            if current is not None and current.is_rotated:
                await self._report_replay(current, ip, user_agent)
            raise AUTH_REFRESH_INVALID()

        await self.audit.emit(
            record.subject_type.value,
            record.subject_id,
            "refresh_token:rotate",
            subject_type="refresh_token",
            subject_id=successor.token_id,
            metadata={"replaced_token_id": record.token_id},
            ip=ip,
            user_agent=user_agent,
        )

        return AuthResult(
            principal=principal,
            access_token=self.issue_access_token(principal),
            refresh_token=new_token,
            expires_in=self.config.access_token_ttl,
        )

    async def revoke_refresh_token(self, refresh_token: str) -> bool:
        """Revoke a refresh token (logout). Unknown tokens return False."""
        record = await self.token_store.get_by_lookup(lookup_hash(refresh_token))
        if record is None or not self.verifier.verify(refresh_token, record.token_hash):
            return False
        return await self.token_store.revoke(record.token_id)

    async def revoke_all_for(self, principal: Principal) -> int:
        principal_type, subject_id = principal_ref(principal)
        return await self.token_store.revoke_for_subject(PrincipalType(principal_type), subject_id)

    async def _lookup(self, refresh_token: str) -> RefreshRecord:
        if not isinstance(refresh_token, str) or not refresh_token.startswith("rt_"):
            raise AUTH_REFRESH_INVALID()

        record = await self.token_store.get_by_lookup(lookup_hash(refresh_token))
        if not self.verifier.verify(refresh_token, record.token_hash if record else None):
            raise AUTH_REFRESH_INVALID()

        return record

    async def _report_replay(
        self,
        record: RefreshRecord,
        ip: str | None,
        user_agent: str | None,
    ) -> None:
        logger.warning(
            "Refresh token replay detected for %s %s",
            record.subject_type.value,
            record.subject_id,
        )
        await self.audit.emit(
            record.subject_type.value,
            record.subject_id,
            "refresh:replay_attempt",
            subject_type="refresh_token",
            subject_id=record.token_id,
            metadata={"replaced_by_id": record.replaced_by_id},
            ip=ip,
            user_agent=user_agent,
        )

    # ----------------------------------------------------------------- signing

    def _sign_token(self, payload: dict[str, Any]) -> str:
        key = self.key_ring.get_signing_key()

        header = {
            "alg": key.algorithm,
            "kid": key.kid,
            "typ": "JWT",
        }

        header_b64 = _b64encode_json(header)
        payload_b64 = _b64encode_json(payload)

        message = f"{header_b64}.{payload_b64}".encode()
        signature_b64 = _b64encode(self._create_signature(message, key))

        return f"{header_b64}.{payload_b64}.{signature_b64}"

    def _create_signature(self, message: bytes, key: KeyDescriptor) -> bytes:
        private_key = serialization.load_pem_private_key(
            key.private_key_pem.encode(),
            password=None,
        )

        if key.algorithm == KeyAlgorithm.RS256:
            return private_key.sign(message, padding.PKCS1v15(), hashes.SHA256())
        if key.algorithm == KeyAlgorithm.ES256:
            # JWS wants raw r||s, cryptography returns DER
            r, s = decode_dss_signature(private_key.sign(message, ec.ECDSA(hashes.SHA256())))
            return r.to_bytes(32, "big") + s.to_bytes(32, "big")
        if key.algorithm == KeyAlgorithm.EdDSA:
            return private_key.sign(message)

        raise ValueError(f"Unsupported algorithm: {key.algorithm}")

    def _verify_signature(self, message: bytes, signature: bytes, key: KeyDescriptor) -> bool:
        public_key = serialization.load_pem_public_key(key.public_key_pem.encode())

        try:
            if key.algorithm == KeyAlgorithm.RS256:
                public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
            elif key.algorithm == KeyAlgorithm.ES256:
                if len(signature) != 64:
                    return False
                der = encode_dss_signature(
                    int.from_bytes(signature[:32], "big"),
                    int.from_bytes(signature[32:], "big"),
                )
                public_key.verify(der, message, ec.ECDSA(hashes.SHA256()))
            elif key.algorithm == KeyAlgorithm.EdDSA:
                public_key.verify(signature, message)
            else:
                return False

            return True

        except InvalidSignature:
            return False


# ============================================================================
# Encoding helpers
# ============================================================================

def _b64encode(data: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64decode(data: str) -> bytes:
    padding_len = -len(data) % 4
    return base64.urlsafe_b64decode(data + "=" * padding_len)


def _b64encode_json(data: dict) -> str:
    return _b64encode(json.dumps(data, separators=(",", ":")).encode())


def _b64decode_json(data: str) -> dict:
    decoded = json.loads(_b64decode(data))
    if not isinstance(decoded, dict):
        raise ValueError("Expected JSON object")
    return decoded


def _b64_uint(value: int) -> str:
    return _b64encode(value.to_bytes((value.bit_length() + 7) // 8, "big"))
