"""
Keyline Auth - Key Lifecycle Manager

Mints Primary/Secondary/Use keys under the permission-envelope rule, tracks
lineage, rotates keys, (de)activates them with optional cascade, and
charges Use-key redemptions against their use-count and device limits.
"""

from __future__ import annotations

import logging
from typing import Iterable

from .audit import AuditEmitter
from .catalog import KEYS_ISSUE, KEYS_READ, KEYS_ROTATE, KEYS_STATE_UPDATE, PermissionCatalog
from .core import (
    KeyPrincipal,
    KeyRecord,
    KeyStore,
    KeyVariant,
    Lineage,
    MintResult,
    OwnerPrincipal,
    OwnerStore,
    Principal,
    RedemptionOutcome,
    RotationOutcome,
)
from .faults import (
    AUTH_INVALID_CREDENTIALS,
    AUTHZ_PERMISSION_DENIED,
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
)
from .hashing import CredentialVerifier
from .ids import new_id, new_key_secret, new_public_id, require_hex32


logger = logging.getLogger("keyline.auth.keys")

MAX_LABEL_LENGTH = 255


def _check_label(label: str | None) -> str | None:
    if label is None:
        return None
    if not isinstance(label, str) or not 1 <= len(label) <= MAX_LABEL_LENGTH:
        raise INPUT_INVALID(field="label", reason=f"Label must be 1..{MAX_LABEL_LENGTH} characters")
    return label


def _check_limit(name: str, value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise KEY_LIMITS_INVALID(field=name, reason="Limit must be a positive integer")
    return value


# ============================================================================
# Key Manager
# ============================================================================

class KeyManager:
    """
    Key lifecycle manager.

    Responsibilities:
    - Mint Primary keys for owners and delegated keys for Author keys
    - Enforce the permission envelope and the Use-key reserved set
    - Rotate keys without changing their trust position
    - Activate, deactivate and cascade-deactivate keys
    - Charge Use-key redemptions against their limits
    - Answer owner-scoped key queries
    """

    def __init__(
        self,
        key_store: KeyStore,
        owner_store: OwnerStore,
        verifier: CredentialVerifier,
        catalog: PermissionCatalog,
        audit: AuditEmitter | None = None,
    ):
        self.key_store = key_store
        self.owner_store = owner_store
        self.verifier = verifier
        self.catalog = catalog
        self.audit = audit or AuditEmitter()

    # -------------------------------------------------------------------- mint

    async def mint(
        self,
        issuer: Principal,
        variant: KeyVariant,
        permissions: Iterable[str],
        label: str | None = None,
        use_count_limit: int | None = None,
        device_limit: int | None = None,
    ) -> MintResult:
        """
        Mint a key on behalf of an issuer.

        Owners mint Primary keys; Author keys mint Secondary and Use keys.
        Any other pairing is refused.

        Raises:
            KEY_ISSUER_CANNOT_MINT: issuer may not mint this variant
            see ``mint_primary`` and ``mint_delegated``
        """
        variant = KeyVariant(variant)

        if isinstance(issuer, OwnerPrincipal):
            if variant is not KeyVariant.PRIMARY:
                raise KEY_ISSUER_CANNOT_MINT(required=[KEYS_ISSUE])
            if use_count_limit is not None or device_limit is not None:
                raise KEY_LIMITS_INVALID(field="limits", reason="Limits apply to Use keys only")
            return await self.mint_primary(issuer, permissions, label)

        if isinstance(issuer, KeyPrincipal):
            if variant is KeyVariant.PRIMARY:
                raise KEY_ISSUER_CANNOT_MINT(required=[KEYS_ISSUE])
            return await self.mint_delegated(
                issuer.key_id,
                variant,
                permissions,
                label=label,
                use_count_limit=use_count_limit,
                device_limit=device_limit,
            )

        raise TypeError(f"Unsupported principal: {type(issuer).__name__}")

    async def mint_primary(
        self,
        owner: OwnerPrincipal,
        permissions: Iterable[str],
        label: str | None = None,
    ) -> MintResult:
        """
        Mint a root key for an owner.

        Raises:
            AUTHZ_PERMISSION_DENIED: owner principal lacks keys:issue
            OWNER_NOT_FOUND: owner account no longer exists
            PERMISSION_FORMAT_INVALID / PERMISSION_UNKNOWN: bad permission strings
        """
        if not owner.has_permission(KEYS_ISSUE):
            raise AUTHZ_PERMISSION_DENIED(required=[KEYS_ISSUE])

        if await self.owner_store.get(owner.owner_id) is None:
            raise OWNER_NOT_FOUND()

        granted = self.catalog.validate(permissions)
        label = _check_label(label)

        key_id = new_id()
        secret = new_key_secret()
        record = KeyRecord(
            key_id=key_id,
            public_id=new_public_id(),
            variant=KeyVariant.PRIMARY,
            secret_hash=self.verifier.hash(secret),
            permissions=granted,
            lineage=Lineage.root(key_id),
            owner_id=owner.owner_id,
            label=label,
        )
        await self.key_store.insert(record)

        logger.info("Minted primary key %s for owner %s", key_id, owner.owner_id)
        await self.audit.emit_for(
            owner,
            "keys:mint",
            subject_type="key",
            subject_id=key_id,
            metadata={
                "type": KeyVariant.PRIMARY.value,
                "permissions": sorted(granted),
                "label": label,
            },
        )
        return MintResult(key=record, secret=secret)

    async def mint_delegated(
        self,
        issuer_key_id: str,
        variant: KeyVariant,
        permissions: Iterable[str],
        label: str | None = None,
        use_count_limit: int | None = None,
        device_limit: int | None = None,
    ) -> MintResult:
        """
        Mint a Secondary or Use key under an Author key.

        The issuer is re-read from the store; the permission set and active
        flag in force at mint time are the stored ones, not the ones frozen
        in the caller's token.

        Raises:
            KEY_NOT_FOUND: issuer does not exist
            KEY_ISSUER_INACTIVE: issuer is inactive (or became so mid-mint)
            KEY_ISSUER_CANNOT_MINT: issuer is a Use key
            AUTHZ_PERMISSION_DENIED: issuer lacks keys:issue
            KEY_ENVELOPE_VIOLATION: requested permissions exceed the issuer's
            KEY_RESERVED_PERMISSION: Use key requested a reserved permission
            KEY_LIMITS_INVALID: limits on a non-Use key, or not positive
        """
        variant = KeyVariant(variant)
        if variant is KeyVariant.PRIMARY:
            raise KEY_ISSUER_CANNOT_MINT(required=[KEYS_ISSUE])

        issuer = await self.key_store.get(require_hex32(issuer_key_id, "issuer_key_id"))
        if issuer is None:
            raise KEY_NOT_FOUND()
        if not issuer.active:
            raise KEY_ISSUER_INACTIVE(required=[KEYS_ISSUE])
        if not issuer.variant.is_author:
            raise KEY_ISSUER_CANNOT_MINT(required=[KEYS_ISSUE])
        if KEYS_ISSUE not in issuer.permissions:
            raise AUTHZ_PERMISSION_DENIED(required=[KEYS_ISSUE])

        requested = self.catalog.validate(permissions)

        outside = requested - issuer.permissions
        if outside:
            raise KEY_ENVELOPE_VIOLATION(field="permissions", offending=outside)

        if variant is KeyVariant.USE:
            reserved = requested & self.catalog.use_key_reserved
            if reserved:
                raise KEY_RESERVED_PERMISSION(field="permissions", offending=reserved)
            use_count_limit = _check_limit("use_count_limit", use_count_limit)
            device_limit = _check_limit("device_limit", device_limit)
        elif use_count_limit is not None or device_limit is not None:
            raise KEY_LIMITS_INVALID(field="limits", reason="Limits apply to Use keys only")

        label = _check_label(label)

        key_id = new_id()
        secret = new_key_secret()
        record = KeyRecord(
            key_id=key_id,
            public_id=new_public_id(),
            variant=variant,
            secret_hash=self.verifier.hash(secret),
            permissions=requested,
            lineage=Lineage.delegated(issuer),
            label=label,
            use_count_limit=use_count_limit,
            device_limit=device_limit,
        )

        # Conditional on the issuer still being active at commit time.
        if not await self.key_store.insert(record):
            raise KEY_ISSUER_INACTIVE(required=[KEYS_ISSUE])

        logger.info("Minted %s key %s under %s", variant.value, key_id, issuer.key_id)
        await self.audit.emit(
            "key",
            issuer.key_id,
            "keys:mint",
            subject_type="key",
            subject_id=key_id,
            metadata={
                "type": variant.value,
                "permissions": sorted(requested),
                "label": label,
                "use_count_limit": use_count_limit,
                "device_limit": device_limit,
            },
        )
        return MintResult(key=record, secret=secret)

    # ------------------------------------------------------------------ rotate

    async def rotate(self, requester: Principal, key_id: str) -> MintResult:
        """
        Replace a key with a successor holding the same permissions and lineage.

        The predecessor is retired and the successor inserted as one atomic
        store operation; a failed rotation leaves the predecessor untouched.
        The successor takes over the predecessor's children, use count and
        devices. It starts inactive if the predecessor or its parent is.

        Raises:
            KEY_NOT_FOUND: key absent or not visible to the requester
            AUTHZ_PERMISSION_DENIED: requester lacks keys:rotate
            KEY_ALREADY_ROTATED: key was already retired
        """
        key = await self._load_for(requester, key_id, KEYS_ROTATE)
        if key.is_retired:
            raise KEY_ALREADY_ROTATED()

        secret = new_key_secret()
        successor = KeyRecord(
            key_id=new_id(),
            public_id=new_public_id(),
            variant=key.variant,
            secret_hash=self.verifier.hash(secret),
            permissions=key.permissions,
            lineage=key.lineage,
            owner_id=key.owner_id,
            label=key.label,
            use_count_limit=key.use_count_limit,
            use_count_current=key.use_count_current,
            device_limit=key.device_limit,
            rotated_from=key.key_id,
        )

        outcome = await self.key_store.rotate(key.key_id, successor)
        if outcome is RotationOutcome.NOT_FOUND:
            raise KEY_NOT_FOUND()
        if outcome is RotationOutcome.ALREADY_ROTATED:
            raise KEY_ALREADY_ROTATED()
        successor = await self.key_store.get(successor.key_id)

        logger.info("Rotated key %s -> %s", key.key_id, successor.key_id)
        await self.audit.emit_for(
            requester,
            "keys:rotate",
            subject_type="key",
            subject_id=key.key_id,
            metadata={"rotated_to": successor.key_id},
        )
        return MintResult(key=successor, secret=secret)

    # ------------------------------------------------------------------- state

    async def activate(self, requester: Principal, key_id: str) -> KeyRecord:
        """
        Re-activate a single key. Never cascades.

        A parent that was rotated away is judged by its successor.

        Raises:
            KEY_ALREADY_ROTATED: retired keys stay retired
            KEY_PARENT_INACTIVE: the parent is inactive
        """
        key = await self._load_for(requester, key_id, KEYS_STATE_UPDATE)
        if key.is_retired:
            raise KEY_ALREADY_ROTATED()

        if not key.active:
            if not await self.key_store.set_active(key.key_id, True):
                raise KEY_PARENT_INACTIVE()
            await self.audit.emit_for(requester, "keys:activate", subject_type="key", subject_id=key.key_id)
            logger.info("Activated key %s", key.key_id)

        return await self.key_store.get(key.key_id)

    async def deactivate(
        self,
        requester: Principal,
        key_id: str,
        cascade: bool = False,
    ) -> list[str]:
        """
        Deactivate a key, and with ``cascade`` every key descending from it.

        The subtree is read and updated in one atomic store call. A key
        minted concurrently either lands before the cascade (and is
        deactivated) or finds its parent inactive and is refused.

        Returns:
            Ids of keys whose state changed
        """
        key = await self._load_for(requester, key_id, KEYS_STATE_UPDATE)

        if cascade:
            changed = await self.key_store.deactivate_subtree(key.key_id)
        elif key.active and await self.key_store.set_active(key.key_id, False):
            changed = [key.key_id]
        else:
            changed = []

        logger.info("Deactivated %d key(s) from %s (cascade=%s)", len(changed), key.key_id, cascade)
        await self.audit.emit_for(
            requester,
            "keys:deactivate",
            subject_type="key",
            subject_id=key.key_id,
            metadata={"cascade": cascade, "keys_deactivated": len(changed)},
        )
        return changed

    # ----------------------------------------------------------------- limits

    async def charge(
        self,
        key: KeyRecord,
        fingerprint: str | None,
        count_use: bool = True,
    ) -> None:
        """
        Charge one redemption against a Use key's limits.

        Author keys carry no limits and are not charged.

        Raises:
            AUTH_INVALID_CREDENTIALS: key became inactive
            KEY_USE_LIMIT_EXCEEDED: use-count limit reached
            KEY_DEVICE_LIMIT_EXCEEDED: new device beyond the device limit
        """
        if key.variant is not KeyVariant.USE:
            return

        outcome = await self.key_store.redeem(key.key_id, fingerprint, count_use=count_use)
        if outcome is RedemptionOutcome.OK:
            return
        if outcome is RedemptionOutcome.INACTIVE:
            raise AUTH_INVALID_CREDENTIALS()
        if outcome is RedemptionOutcome.USE_LIMIT:
            logger.info("Use limit reached for key %s", key.key_id)
            raise KEY_USE_LIMIT_EXCEEDED()
        if outcome is RedemptionOutcome.DEVICE_LIMIT:
            logger.info("Device limit reached for key %s", key.key_id)
            raise KEY_DEVICE_LIMIT_EXCEEDED()
        raise ValueError(f"Unexpected redemption outcome: {outcome}")

    # ---------------------------------------------------------------- queries

    async def list_keys(self, owner: OwnerPrincipal) -> list[KeyRecord]:
        """Every key descending from the owner's Primary keys."""
        self._require(owner, KEYS_READ)
        primaries = await self.key_store.list_primary_ids(owner.owner_id)
        if not primaries:
            return []
        return await self.key_store.list_by_initial_authors(primaries)

    async def get_key(self, requester: Principal, key_id: str) -> KeyRecord:
        return await self._load_for(requester, key_id, KEYS_READ)

    async def get_lineage(self, requester: Principal, key_id: str) -> list[KeyRecord]:
        """Parent chain from the root Primary key down to ``key_id``."""
        key = await self._load_for(requester, key_id, KEYS_READ)
        return await self.key_store.lineage(key.key_id)

    async def descendants(self, requester: Principal, key_id: str) -> list[KeyRecord]:
        key = await self._load_for(requester, key_id, KEYS_READ)
        return await self.key_store.descendants(key.key_id)

    async def owns_key(self, owner_id: str, key: KeyRecord) -> bool:
        """True if ``key`` descends from one of the owner's Primary keys."""
        primaries = await self.key_store.list_primary_ids(owner_id)
        return key.lineage.initial_author in primaries

    # ---------------------------------------------------------------- helpers

    @staticmethod
    def _require(principal: Principal, permission: str) -> None:
        if not principal.has_permission(permission):
            raise AUTHZ_PERMISSION_DENIED(required=[permission])

    async def _load_for(self, requester: Principal, key_id: str, permission: str) -> KeyRecord:
        """
        Load a key the requester may administer.

        Owners administer every key under their Primary keys. A key
        administers itself and its descendants, and must still be active.
        Rotation keeps the trust position, so a successor administers
        everything its predecessor minted. Invisible keys are reported as
        not found before any permission check.
        """
        key = await self.key_store.get(require_hex32(key_id, "key_id"))
        if key is None:
            raise KEY_NOT_FOUND()

        if isinstance(requester, OwnerPrincipal):
            if not await self.owns_key(requester.owner_id, key):
                raise KEY_NOT_FOUND()
            self._require(requester, permission)
            return key

        if isinstance(requester, KeyPrincipal):
            acting = None
            for ancestor in await self.key_store.lineage(key.key_id):
                holder = await self.key_store.get_current(ancestor.key_id)
                if holder is not None and holder.key_id == requester.key_id:
                    acting = holder
                    break
            if acting is None:
                raise KEY_NOT_FOUND()
            if not acting.active:
                raise AUTH_INVALID_CREDENTIALS()
            if permission not in acting.permissions:
                raise AUTHZ_PERMISSION_DENIED(required=[permission])
            return key

        raise TypeError(f"Unsupported principal: {type(requester).__name__}")
