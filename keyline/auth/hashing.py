"""
Keyline Auth - Credential Hashing

Argon2id (default) or PBKDF2-HMAC-SHA256 hashing for owner passwords, key
secrets and refresh tokens, plus the verifier the auth engine consults.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Literal, Protocol

from argon2 import PasswordHasher as Argon2PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError


class SecretHasher(Protocol):
    """Opaque hash/verify capability."""

    def hash(self, secret: str) -> str:
        ...

    def verify(self, secret: str, digest: str) -> bool:
        ...


class CredentialHasher:
    """
    Secret hasher using Argon2id (recommended) or PBKDF2.

    Argon2id is memory-hard and GPU-resistant. PBKDF2-HMAC-SHA256 is kept
    for deployments that must stay FIPS-friendly.

    Security parameters:
    - Argon2id: time_cost=2, memory_cost=65536 (64MB), parallelism=4
    - PBKDF2: iterations=600000, hash=SHA256
    """

    def __init__(
        self,
        algorithm: Literal["argon2id", "pbkdf2_sha256"] = "argon2id",
        # Argon2 parameters
        time_cost: int = 2,
        memory_cost: int = 65536,  # 64 MB
        parallelism: int = 4,
        hash_len: int = 32,
        salt_len: int = 16,
        # PBKDF2 parameters
        iterations: int = 600000,
    ):
        if algorithm not in ("argon2id", "pbkdf2_sha256"):
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")

        self.algorithm = algorithm
        self.hash_len = hash_len
        self.salt_len = salt_len
        self.iterations = iterations
        self.hasher = Argon2PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            salt_len=salt_len,
        )

    def hash(self, secret: str) -> str:
        """
        Hash a secret.

        Example Argon2 output:
            $argon2id$v=19$m=65536,t=2,p=4$saltbase64$hashbase64

        Example PBKDF2 output:
            $pbkdf2_sha256$600000$saltbase64$hashbase64
        """
        if self.algorithm == "argon2id":
            return self.hasher.hash(secret)
        return self._hash_pbkdf2(secret)

    def verify(self, secret: str, digest: str) -> bool:
        """
        Verify a secret against a digest.

        Returns False for mismatches and for malformed digests.
        """
        if digest.startswith("$argon2id"):
            return self._verify_argon2(secret, digest)
        if digest.startswith("$pbkdf2_sha256"):
            return self._verify_pbkdf2(secret, digest)
        return False

    def needs_rehash(self, digest: str) -> bool:
        """Check if the digest was produced with other algorithm/parameters."""
        if self.algorithm == "argon2id":
            if not digest.startswith("$argon2id"):
                return True
            try:
                return self.hasher.check_needs_rehash(digest)
            except InvalidHashError:
                return True

        try:
            parts = digest.split("$")
            return parts[1] != "pbkdf2_sha256" or int(parts[2]) != self.iterations
        except (IndexError, ValueError):
            return True

    def _hash_pbkdf2(self, secret: str) -> str:
        salt = secrets.token_bytes(self.salt_len)
        derived = hashlib.pbkdf2_hmac(
            "sha256",
            secret.encode(),
            salt,
            self.iterations,
            dklen=self.hash_len,
        )

        # $pbkdf2_sha256$iterations$salt$hash
        salt_b64 = base64.b64encode(salt).decode()
        hash_b64 = base64.b64encode(derived).decode()
        return f"$pbkdf2_sha256${self.iterations}${salt_b64}${hash_b64}"

    def _verify_argon2(self, secret: str, digest: str) -> bool:
        try:
            return self.hasher.verify(digest, secret)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def _verify_pbkdf2(self, secret: str, digest: str) -> bool:
        try:
            parts = digest.split("$")
            if len(parts) != 5 or parts[1] != "pbkdf2_sha256":
                return False

            iterations = int(parts[2])
            salt = base64.b64decode(parts[3])
            stored = base64.b64decode(parts[4])
        except (IndexError, ValueError):
            return False

        computed = hashlib.pbkdf2_hmac(
            "sha256",
            secret.encode(),
            salt,
            iterations,
            dklen=len(stored),
        )
        return secrets.compare_digest(computed, stored)


# ============================================================================
# Credential Verifier
# ============================================================================

class CredentialVerifier:
    """
    Verifies presented secrets for the auth engine.

    When the identifier is unknown a dummy digest is still verified, so the
    unknown-identifier and wrong-secret paths cost the same.
    """

    def __init__(self, hasher: SecretHasher | None = None):
        self.hasher = hasher or CredentialHasher()
        self._dummy_digest = self.hasher.hash(secrets.token_hex(16))

    def hash(self, secret: str) -> str:
        return self.hasher.hash(secret)

    def verify(self, secret: str, digest: str | None) -> bool:
        if digest is None:
            self.hasher.verify(secret, self._dummy_digest)
            return False
        return self.hasher.verify(secret, digest)

    def needs_rehash(self, digest: str) -> bool:
        check = getattr(self.hasher, "needs_rehash", None)
        return bool(check and check(digest))


# ============================================================================
# Password Policy
# ============================================================================

class PasswordPolicy:
    """
    Owner password policy.

    Enforces:
    - Minimum and maximum length
    - Optional character requirements
    """

    def __init__(
        self,
        min_length: int = 8,
        max_length: int = 1024,
        require_uppercase: bool = False,
        require_lowercase: bool = False,
        require_digit: bool = False,
    ):
        self.min_length = min_length
        self.max_length = max_length
        self.require_uppercase = require_uppercase
        self.require_lowercase = require_lowercase
        self.require_digit = require_digit

    def validate(self, password: str) -> tuple[bool, list[str]]:
        """
        Validate password against policy.

        Returns:
            (is_valid, error_messages)
        """
        errors = []

        if len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters")

        if len(password) > self.max_length:
            errors.append(f"Password must be at most {self.max_length} characters")

        if self.require_uppercase and not any(c.isupper() for c in password):
            errors.append("Password must contain at least one uppercase letter")

        if self.require_lowercase and not any(c.islower() for c in password):
            errors.append("Password must contain at least one lowercase letter")

        if self.require_digit and not any(c.isdigit() for c in password):
            errors.append("Password must contain at least one digit")

        return (len(errors) == 0, errors)
