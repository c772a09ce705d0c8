"""
Keyline Auth - Identifier Encoding

Every external-facing identifier (owners, keys, groups, keychains, posts,
comments, grants, refresh records) is 32 lowercase hex characters. Key
public identifiers use a separate ``apub_`` form that is only accepted by
credential exchange and never in place of a normal identifier.
"""

from __future__ import annotations

import hashlib
import re
import secrets

from .faults import IDENTIFIER_INVALID


HEX32_PATTERN = re.compile(r"^[0-9a-f]{32}$")
PUBLIC_ID_PATTERN = re.compile(r"^apub_[a-zA-Z0-9_-]+$")

PUBLIC_ID_PREFIX = "apub_"
SECRET_PREFIX = "sec_"
REFRESH_TOKEN_PREFIX = "rt_"


def new_id() -> str:
    """Generate a new 32-char hex identifier (16 random bytes)."""
    return secrets.token_hex(16)


def is_hex32(value: object) -> bool:
    return isinstance(value, str) and HEX32_PATTERN.match(value) is not None


def is_public_id(value: object) -> bool:
    return isinstance(value, str) and PUBLIC_ID_PATTERN.match(value) is not None


def require_hex32(value: object, field: str = "id") -> str:
    """
    Validate an external identifier.

    Public identifiers (``apub_...``) are rejected here on purpose: they
    only identify a key during credential exchange.

    Raises:
        IDENTIFIER_INVALID: value is not a 32-char lowercase hex string
    """
    if not is_hex32(value):
        raise IDENTIFIER_INVALID(field=field)
    return value


def new_public_id() -> str:
    return f"{PUBLIC_ID_PREFIX}{secrets.token_hex(8)}"


def new_key_secret() -> str:
    return f"{SECRET_PREFIX}{secrets.token_hex(24)}"


def new_refresh_token() -> str:
    return f"{REFRESH_TOKEN_PREFIX}{secrets.token_hex(48)}"


def lookup_hash(token: str) -> str:
    """Derived lookup key for opaque tokens (indexed, never the verifier)."""
    return hashlib.sha256(token.encode()).hexdigest()
