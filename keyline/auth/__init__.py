"""
Keyline Auth - Hierarchical-key authorization engine

- Owners (password) and Keys (secret) as the two principal variants
- Primary / Secondary / Use keys minted under the permission envelope
- Lineage tracking, atomic rotation, cascade deactivation
- Use-count and device limits on Use keys
- Per-resource bitmask grants to keys and groups, with 404-vs-403 hiding
- Signed access tokens and single-use refresh tokens with replay detection
- Audit events for every state change
"""

# Core types
from .core import (
    AccessGrant,
    AuthResult,
    Comment,
    GrantTarget,
    Group,
    KeyPrincipal,
    KeyRecord,
    KeyVariant,
    Keychain,
    Lineage,
    MintResult,
    OwnerPrincipal,
    OwnerRecord,
    Post,
    Principal,
    PrincipalType,
    RedemptionOutcome,
    RefreshRecord,
    RotationOutcome,
    principal_ref,
)

# Permission catalog
from .catalog import (
    Access,
    PermissionCatalog,
    PermissionSpec,
    default_catalog,
)

# Hashing
from .hashing import (
    CredentialHasher,
    CredentialVerifier,
    PasswordPolicy,
)

# Token management
from .tokens import (
    AccessClaims,
    KeyAlgorithm,
    KeyDescriptor,
    KeyRing,
    KeyStatus,
    TokenConfig,
    TokenManager,
)

# Stores
from .stores import (
    MemoryAccessStore,
    MemoryKeyStore,
    MemoryOwnerStore,
    MemoryPostStore,
    MemoryRefreshTokenStore,
)

# Audit
from .audit import (
    AuditEmitter,
    AuditEvent,
    CompositeAuditRecorder,
    LoggingAuditRecorder,
    MemoryAuditRecorder,
)

# Services
from .keys import KeyManager
from .authz import AccessEvaluator, Action, AuthzResult, Decision
from .groups import GroupService, KeychainService
from .resources import PostService
from .manager import AuthEngine, AuthManager, create_engine, default_fingerprint

# Faults
from .faults import (
    ConflictFault,
    ForbiddenFault,
    LimitExceededFault,
    NotFoundFault,
    UnauthorizedFault,
    ValidationFault,
    is_auth_fault,
)

__all__ = [
    # Core
    "AccessGrant",
    "AuthResult",
    "Comment",
    "GrantTarget",
    "Group",
    "KeyPrincipal",
    "KeyRecord",
    "KeyVariant",
    "Keychain",
    "Lineage",
    "MintResult",
    "OwnerPrincipal",
    "OwnerRecord",
    "Post",
    "Principal",
    "PrincipalType",
    "RedemptionOutcome",
    "RefreshRecord",
    "RotationOutcome",
    "principal_ref",
    # Catalog
    "Access",
    "PermissionCatalog",
    "PermissionSpec",
    "default_catalog",
    # Hashing
    "CredentialHasher",
    "CredentialVerifier",
    "PasswordPolicy",
    # Tokens
    "AccessClaims",
    "KeyAlgorithm",
    "KeyDescriptor",
    "KeyRing",
    "KeyStatus",
    "TokenConfig",
    "TokenManager",
    # Stores
    "MemoryAccessStore",
    "MemoryKeyStore",
    "MemoryOwnerStore",
    "MemoryPostStore",
    "MemoryRefreshTokenStore",
    # Audit
    "AuditEmitter",
    "AuditEvent",
    "CompositeAuditRecorder",
    "LoggingAuditRecorder",
    "MemoryAuditRecorder",
    # Services
    "KeyManager",
    "AccessEvaluator",
    "Action",
    "AuthzResult",
    "Decision",
    "GroupService",
    "KeychainService",
    "PostService",
    "AuthEngine",
    "AuthManager",
    "create_engine",
    "default_fingerprint",
    # Faults
    "ConflictFault",
    "ForbiddenFault",
    "LimitExceededFault",
    "NotFoundFault",
    "UnauthorizedFault",
    "ValidationFault",
    "is_auth_fault",
]
