"""
Keyline Auth - Authentication/Authorization Faults

Structured failure types for the auth engine. Every concrete fault derives
from one of six kinds so the caller layer can map it to a transport status:

    NotFoundFault       404  absent, or hidden by the visibility policy
    ForbiddenFault      403  visible, but the action is denied
    LimitExceededFault  403  use-count / device limit (a ForbiddenFault)
    UnauthorizedFault   401  credential or session invalid (generic)
    ValidationFault     422  malformed or out-of-policy input
    ConflictFault       409  uniqueness or state violation

Faults never carry secrets, hashes or identifiers of other principals.
"""

from __future__ import annotations

from typing import Iterable

from keyline.faults import Fault, FaultDomain, Severity


# ============================================================================
# Fault Kinds
# ============================================================================

class NotFoundFault(Fault):
    """Resource absent or not visible to the caller."""
    domain = FaultDomain.SECURITY
    code = "NOT_FOUND"
    severity = Severity.INFO
    message = "Not found"
    public_message = "Not found"
    status = 404
    retryable = False


class ForbiddenFault(Fault):
    """
    Resource visible but the action is denied.

    Always names what was missing: global permissions, access bits, or both.
    """
    domain = FaultDomain.SECURITY
    code = "FORBIDDEN"
    severity = Severity.WARN
    message = "Forbidden"
    public_message = "Forbidden"
    status = 403
    retryable = False

    def __init__(
        self,
        required: Iterable[str] | None = None,
        required_bits: Iterable[str] | None = None,
        **kwargs,
    ):
        metadata = kwargs.pop("metadata", None) or {}
        if required:
            metadata["required"] = sorted(required)
        if required_bits:
            metadata["required_bits"] = list(required_bits)
        super().__init__(metadata=metadata, **kwargs)

    @property
    def required(self) -> list[str]:
        return self.metadata.get("required", [])

    @property
    def required_bits(self) -> list[str]:
        return self.metadata.get("required_bits", [])


class LimitExceededFault(ForbiddenFault):
    """Use-count or device limit exhausted."""
    code = "LIMIT_EXCEEDED"
    message = "Limit exceeded"
    public_message = "Limit exceeded"
    limit_name = "limit"

    def __init__(self, **kwargs):
        metadata = kwargs.pop("metadata", None) or {}
        metadata["limit"] = self.limit_name
        super().__init__(metadata=metadata, **kwargs)


class UnauthorizedFault(Fault):
    """Credential or session invalid. The message is always generic."""
    domain = FaultDomain.SECURITY
    code = "UNAUTHORIZED"
    severity = Severity.WARN
    message = "Unauthorized"
    public_message = "Unauthorized"
    status = 401
    retryable = False


class ValidationFault(Fault):
    """
    Malformed or out-of-policy input.

    Carries the field and/or the offending values (permission strings,
    never secrets).
    """
    domain = FaultDomain.VALIDATION
    code = "VALIDATION"
    severity = Severity.INFO
    message = "Validation failed"
    public_message = "Validation failed"
    status = 422
    retryable = False

    def __init__(
        self,
        field: str | None = None,
        offending: Iterable[str] | None = None,
        reason: str | None = None,
        **kwargs,
    ):
        metadata = kwargs.pop("metadata", None) or {}
        if field:
            metadata["field"] = field
        if offending:
            metadata["offending"] = sorted(offending)
        if reason:
            metadata["reason"] = reason
        super().__init__(metadata=metadata, **kwargs)

    @property
    def offending(self) -> list[str]:
        return self.metadata.get("offending", [])


class ConflictFault(Fault):
    """Uniqueness or state-transition violation."""
    domain = FaultDomain.SECURITY
    code = "CONFLICT"
    severity = Severity.WARN
    message = "Conflict"
    public_message = "Conflict"
    status = 409
    retryable = False


# ============================================================================
# Authentication Faults
# ============================================================================

class AUTH_INVALID_CREDENTIALS(UnauthorizedFault):
    """Unknown identifier, wrong secret, or inactive principal."""
    code = "AUTH_001"
    message = "Invalid credentials"
    public_message = "Invalid credentials"


class AUTH_TOKEN_INVALID(UnauthorizedFault):
    """Access token failed signature, time, issuer, audience or type checks."""
    code = "AUTH_002"
    message = "Invalid token"
    public_message = "Invalid authentication token"


class AUTH_REFRESH_INVALID(UnauthorizedFault):
    """Refresh token unknown, expired, revoked or replayed."""
    code = "AUTH_003"
    message = "Invalid refresh token"
    public_message = "Invalid refresh token"


class AUTH_REGISTRATION_FAILED(ValidationFault):
    """Owner registration rejected (includes duplicate email, generically)."""
    code = "AUTH_004"
    message = "Registration failed"
    public_message = "Registration failed"


# ============================================================================
# Authorization Faults
# ============================================================================

class AUTHZ_PERMISSION_DENIED(ForbiddenFault):
    """Caller lacks a global permission."""
    code = "AUTHZ_001"
    message = "Missing required permission"
    public_message = "Missing required permission"


class AUTHZ_ACCESS_DENIED(ForbiddenFault):
    """Caller can see the resource but lacks an access bit for the action."""
    code = "AUTHZ_002"
    message = "Insufficient resource access"
    public_message = "Insufficient resource access"


class RESOURCE_NOT_FOUND(NotFoundFault):
    code = "RES_001"
    message = "Resource not found"
    public_message = "Resource not found"


class OWNER_NOT_FOUND(NotFoundFault):
    code = "RES_002"
    message = "Owner not found"
    public_message = "Owner not found"


class GROUP_NOT_FOUND(NotFoundFault):
    code = "RES_003"
    message = "Group not found"
    public_message = "Group not found"


class KEYCHAIN_NOT_FOUND(NotFoundFault):
    code = "RES_004"
    message = "Keychain not found"
    public_message = "Keychain not found"


# ============================================================================
# Key Lifecycle Faults
# ============================================================================

class KEY_NOT_FOUND(NotFoundFault):
    code = "KEY_001"
    message = "Key not found"
    public_message = "Key not found"


class KEY_ISSUER_INACTIVE(ForbiddenFault):
    """Issuer exists but is deactivated or retired."""
    code = "KEY_002"
    message = "Issuer key is inactive"
    public_message = "Issuer key is inactive"


class KEY_ISSUER_CANNOT_MINT(ForbiddenFault):
    """Issuer variant may not delegate (Use keys)."""
    code = "KEY_003"
    message = "Issuer key cannot mint keys"
    public_message = "Issuer key cannot mint keys"


class KEY_ENVELOPE_VIOLATION(ValidationFault):
    """Requested permissions exceed the issuer's permission set."""
    code = "KEY_004"
    message = "Requested permissions exceed issuer permissions"
    public_message = "Requested permissions exceed issuer permissions"


class KEY_RESERVED_PERMISSION(ValidationFault):
    """Use key requested a reserved permission."""
    code = "KEY_005"
    message = "Use keys cannot hold reserved permissions"
    public_message = "Use keys cannot hold reserved permissions"


class KEY_ALREADY_ROTATED(ConflictFault):
    code = "KEY_006"
    message = "Key already retired"
    public_message = "Key already retired"


class KEY_USE_LIMIT_EXCEEDED(LimitExceededFault):
    code = "KEY_007"
    message = "Use limit exceeded"
    public_message = "Use limit exceeded"
    limit_name = "use_count"


class KEY_DEVICE_LIMIT_EXCEEDED(LimitExceededFault):
    code = "KEY_008"
    message = "Device limit exceeded"
    public_message = "Device limit exceeded"
    limit_name = "device"


class KEY_LIMITS_INVALID(ValidationFault):
    """Use/device limits supplied for a non-Use key, or not positive."""
    code = "KEY_009"
    message = "Invalid key limits"
    public_message = "Invalid key limits"


class KEY_PARENT_INACTIVE(ConflictFault):
    """Key cannot be activated or rotated while its parent is inactive."""
    code = "KEY_010"
    message = "Parent key is inactive"
    public_message = "Parent key is inactive"


# ============================================================================
# Input Faults
# ============================================================================

class PERMISSION_FORMAT_INVALID(ValidationFault):
    code = "VAL_001"
    message = "Invalid permission format"
    public_message = "Invalid permission format"


class PERMISSION_UNKNOWN(ValidationFault):
    code = "VAL_002"
    message = "Unknown permission"
    public_message = "Unknown permission"


class GRANT_MASK_INVALID(ValidationFault):
    code = "VAL_003"
    message = "Invalid permission mask"
    public_message = "Invalid permission mask"


class IDENTIFIER_INVALID(ValidationFault):
    code = "VAL_004"
    message = "Invalid identifier"
    public_message = "Invalid identifier"


class INPUT_INVALID(ValidationFault):
    code = "VAL_005"
    message = "Invalid input"
    public_message = "Invalid input"


class DUPLICATE_RECORD(ConflictFault):
    code = "STORE_001"
    message = "Record already exists"
    public_message = "Record already exists"


# ============================================================================
# Utility Functions
# ============================================================================

def is_auth_fault(exception: Exception) -> bool:
    """Check if exception is a security-domain fault."""
    return isinstance(exception, Fault) and exception.domain == FaultDomain.SECURITY
