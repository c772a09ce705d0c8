"""
Keyline Auth - Stores

In-memory storage implementations for owners, keys, groups/keychains/grants,
refresh tokens and posts.

Stores:
- MemoryOwnerStore: owner accounts, unique email index
- MemoryKeyStore: keys, parent->children index, device fingerprints
- MemoryAccessStore: groups, keychains, memberships, resource grants
- MemoryRefreshTokenStore: refresh records, lookup-hash index
- MemoryPostStore: posts and comments

Each store serialises its mutations with one ``asyncio.Lock``, so every
method below is a single atomic unit. Records are copied on the way in and
out; callers never hold references into store state.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import defaultdict
from datetime import datetime
from typing import TypeVar

from .core import (
    AccessGrant,
    Comment,
    GrantTarget,
    Group,
    KeyRecord,
    Keychain,
    KeyVariant,
    OwnerRecord,
    Post,
    PrincipalType,
    RedemptionOutcome,
    RefreshRecord,
    RotationOutcome,
    utcnow,
)
from .faults import DUPLICATE_RECORD
from .ids import new_id


logger = logging.getLogger("keyline.auth.stores")

T = TypeVar("T")


def _copy(record: T | None) -> T | None:
    return dataclasses.replace(record) if record is not None else None


# ============================================================================
# Owners
# ============================================================================


class MemoryOwnerStore:
    """In-memory owner storage."""

    def __init__(self):
        self._owners: dict[str, OwnerRecord] = {}
        self._by_email: dict[str, str] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _email_key(email: str) -> str:
        return email.strip().lower()

    async def create(self, owner: OwnerRecord) -> OwnerRecord:
        """Create owner (unique id and email)."""
        async with self._lock:
            email_key = self._email_key(owner.email)
            if owner.owner_id in self._owners or email_key in self._by_email:
                raise DUPLICATE_RECORD(metadata={"entity": "owner"})

            self._owners[owner.owner_id] = _copy(owner)
            self._by_email[email_key] = owner.owner_id
            return _copy(owner)

    async def get(self, owner_id: str) -> OwnerRecord | None:
        return _copy(self._owners.get(owner_id))

    async def get_by_email(self, email: str) -> OwnerRecord | None:
        owner_id = self._by_email.get(self._email_key(email))
        return _copy(self._owners.get(owner_id)) if owner_id else None


# ============================================================================
# Keys
# ============================================================================


class MemoryKeyStore:
    """
    In-memory key storage.

    Keeps a parent->children index so subtree operations walk an explicit
    worklist instead of scanning every key.
    """

    def __init__(self):
        self._keys: dict[str, KeyRecord] = {}
        self._by_public_id: dict[str, str] = {}
        self._children: dict[str, set[str]] = defaultdict(set)
        self._devices: dict[str, set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def insert(self, key: KeyRecord) -> bool:
        """Insert key iff its parent (if any) exists and is active."""
        async with self._lock:
            if key.key_id in self._keys or key.public_id in self._by_public_id:
                raise DUPLICATE_RECORD(metadata={"entity": "key"})

            if not self._parent_active(key):
                return False

            self._put(key)
            return True

    async def get(self, key_id: str) -> KeyRecord | None:
        return _copy(self._keys.get(key_id))

    async def get_by_public_id(self, public_id: str) -> KeyRecord | None:
        key_id = self._by_public_id.get(public_id)
        return _copy(self._keys.get(key_id)) if key_id else None

    async def get_current(self, key_id: str) -> KeyRecord | None:
        return _copy(self._resolve(key_id))

    async def list_primary_ids(self, owner_id: str) -> list[str]:
        return [
            k.key_id
            for k in self._keys.values()
            if k.variant is KeyVariant.PRIMARY and k.owner_id == owner_id
        ]

    async def list_by_initial_authors(self, initial_author_ids: list[str]) -> list[KeyRecord]:
        wanted = set(initial_author_ids)
        keys = [_copy(k) for k in self._keys.values() if k.lineage.initial_author in wanted]
        keys.sort(key=lambda k: k.created_at)
        return keys

    async def rotate(self, key_id: str, successor: KeyRecord) -> RotationOutcome:
        """
        Retire ``key_id`` in favour of ``successor`` as one unit.

        Nothing changes unless every condition holds. The successor inherits
        the predecessor's children and registered devices, and is only
        active if the predecessor was and its parent still is.
        """
        async with self._lock:
            current = self._keys.get(key_id)
            if current is None:
                return RotationOutcome.NOT_FOUND
            if current.rotated_to is not None:
                return RotationOutcome.ALREADY_ROTATED
            if successor.key_id in self._keys or successor.public_id in self._by_public_id:
                raise DUPLICATE_RECORD(metadata={"entity": "key"})

            self._put(successor)
            stored = self._keys[successor.key_id]
            stored.active = current.active and self._parent_active(stored)
            self._children[stored.key_id].update(self._children.get(key_id, ()))
            self._devices[stored.key_id].update(self._devices.get(key_id, ()))

            current.active = False
            current.rotated_to = successor.key_id
            current.retired_at = utcnow()
            return RotationOutcome.ROTATED

    async def set_active(self, key_id: str, active: bool) -> bool:
        """
        Flip one key. Activation is refused while the parent is inactive.
        """
        async with self._lock:
            key = self._keys.get(key_id)
            if key is None:
                return False
            if active and not self._parent_active(key):
                return False
            key.active = active
            return True

    async def deactivate_subtree(self, key_id: str) -> list[str]:
        """
        Deactivate the key and its full descendant closure.

        Runs under the store lock, so the closure is read at one instant
        and no concurrent insert can land half-way through.
        """
        async with self._lock:
            if key_id not in self._keys:
                return []

            changed = []
            for node_id in self._closure(key_id):
                node = self._keys[node_id]
                if node.active:
                    node.active = False
                    changed.append(node_id)
            return changed

    async def lineage(self, key_id: str) -> list[KeyRecord]:
        async with self._lock:
            chain: list[KeyRecord] = []
            seen: set[str] = set()
            current = self._keys.get(key_id)
            while current is not None and current.key_id not in seen:
                seen.add(current.key_id)
                chain.append(_copy(current))
                parent_id = current.lineage.parent
                current = self._keys.get(parent_id) if parent_id else None
            chain.reverse()
            return chain

    async def descendants(self, key_id: str) -> list[KeyRecord]:
        async with self._lock:
            return [_copy(self._keys[k]) for k in self._closure(key_id) if k != key_id]

    async def redeem(
        self,
        key_id: str,
        fingerprint: str | None,
        count_use: bool = True,
    ) -> RedemptionOutcome:
        """
        Charge one redemption against a key's limits.

        Both limits are checked before either is applied, so a refused
        redemption leaves counters and device registrations untouched.
        """
        async with self._lock:
            key = self._keys.get(key_id)
            if key is None or not key.active:
                return RedemptionOutcome.INACTIVE

            if count_use and key.use_count_limit is not None:
                if key.use_count_current >= key.use_count_limit:
                    return RedemptionOutcome.USE_LIMIT

            known = self._devices[key_id]
            new_device = fingerprint is not None and fingerprint not in known
            if key.device_limit is not None:
                if fingerprint is None:
                    return RedemptionOutcome.DEVICE_LIMIT
                if new_device and len(known) >= key.device_limit:
                    return RedemptionOutcome.DEVICE_LIMIT

            if count_use:
                key.use_count_current += 1
            if new_device:
                known.add(fingerprint)
            return RedemptionOutcome.OK

    async def devices(self, key_id: str) -> set[str]:
        return set(self._devices.get(key_id, ()))

    def _put(self, key: KeyRecord) -> None:
        self._keys[key.key_id] = _copy(key)
        self._by_public_id[key.public_id] = key.key_id
        if key.lineage.parent:
            self._children[key.lineage.parent].add(key.key_id)
            holder = self._resolve(key.lineage.parent)
            if holder is not None:
                self._children[holder.key_id].add(key.key_id)

    def _resolve(self, key_id: str | None) -> KeyRecord | None:
        """Follow rotation links to the live holder of a key's position."""
        key = self._keys.get(key_id) if key_id else None
        seen: set[str] = set()
        while key is not None and key.rotated_to is not None and key.key_id not in seen:
            seen.add(key.key_id)
            key = self._keys.get(key.rotated_to)
        return key

    def _parent_active(self, key: KeyRecord) -> bool:
        """A retired parent stands for its successor."""
        parent_id = key.lineage.parent
        if parent_id is None:
            return True
        parent = self._resolve(parent_id)
        return parent is not None and parent.active

    def _closure(self, key_id: str) -> list[str]:
        """Key plus every descendant. Caller holds the lock."""
        order = [key_id]
        seen = {key_id}
        worklist = [key_id]
        while worklist:
            node = worklist.pop()
            for child in self._children.get(node, ()):
                if child not in seen:
                    seen.add(child)
                    order.append(child)
                    worklist.append(child)
        return order


# ============================================================================
# Groups, Keychains & Grants
# ============================================================================


class MemoryAccessStore:
    """
    In-memory groups, keychains and resource grants.

    Grants and memberships share one lock so mask resolution sees a single
    consistent view of both.
    """

    def __init__(self):
        self._groups: dict[str, Group] = {}
        self._members: dict[str, set[str]] = defaultdict(set)
        self._key_groups: dict[str, set[str]] = defaultdict(set)
        self._keychains: dict[str, Keychain] = {}
        self._keychain_members: dict[str, set[str]] = defaultdict(set)
        self._grants: dict[tuple[str, GrantTarget, str], AccessGrant] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------ groups

    async def create_group(self, group: Group) -> Group:
        async with self._lock:
            if group.group_id in self._groups:
                raise DUPLICATE_RECORD(metadata={"entity": "group"})
            self._groups[group.group_id] = _copy(group)
            return _copy(group)

    async def get_group(self, group_id: str) -> Group | None:
        return _copy(self._groups.get(group_id))

    async def list_groups(self, owner_id: str) -> list[Group]:
        groups = [_copy(g) for g in self._groups.values() if g.owner_id == owner_id]
        groups.sort(key=lambda g: g.created_at)
        return groups

    async def rename_group(self, group_id: str, name: str) -> Group | None:
        async with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                return None
            group.name = name
            return _copy(group)

    async def delete_group(self, group_id: str) -> bool:
        """Delete group with its memberships and the grants targeting it."""
        async with self._lock:
            if self._groups.pop(group_id, None) is None:
                return False

            for key_id in self._members.pop(group_id, set()):
                self._key_groups[key_id].discard(group_id)

            for ref in [r for r in self._grants if r[1] is GrantTarget.GROUP and r[2] == group_id]:
                del self._grants[ref]
            return True

    async def add_member(self, group_id: str, key_id: str) -> bool:
        """Add member; returns False if already present."""
        async with self._lock:
            if key_id in self._members[group_id]:
                return False
            self._members[group_id].add(key_id)
            self._key_groups[key_id].add(group_id)
            return True

    async def remove_member(self, group_id: str, key_id: str) -> bool:
        async with self._lock:
            if key_id not in self._members.get(group_id, ()):
                return False
            self._members[group_id].discard(key_id)
            self._key_groups[key_id].discard(group_id)
            return True

    async def members(self, group_id: str) -> list[str]:
        return sorted(self._members.get(group_id, ()))

    async def groups_for_key(self, key_id: str) -> list[str]:
        return sorted(self._key_groups.get(key_id, ()))

    # --------------------------------------------------------------- keychains

    async def create_keychain(self, keychain: Keychain) -> Keychain:
        async with self._lock:
            if keychain.keychain_id in self._keychains:
                raise DUPLICATE_RECORD(metadata={"entity": "keychain"})
            self._keychains[keychain.keychain_id] = _copy(keychain)
            return _copy(keychain)

    async def get_keychain(self, keychain_id: str) -> Keychain | None:
        return _copy(self._keychains.get(keychain_id))

    async def list_keychains(
        self,
        owner_id: str | None = None,
        created_by_key_id: str | None = None,
    ) -> list[Keychain]:
        chains = [
            _copy(c)
            for c in self._keychains.values()
            if (owner_id is None or c.owner_id == owner_id)
            and (created_by_key_id is None or c.created_by_key_id == created_by_key_id)
        ]
        chains.sort(key=lambda c: c.created_at)
        return chains

    async def add_keychain_member(self, keychain_id: str, key_id: str) -> bool:
        async with self._lock:
            if key_id in self._keychain_members[keychain_id]:
                return False
            self._keychain_members[keychain_id].add(key_id)
            return True

    async def remove_keychain_member(self, keychain_id: str, key_id: str) -> bool:
        async with self._lock:
            if key_id not in self._keychain_members.get(keychain_id, ()):
                return False
            self._keychain_members[keychain_id].discard(key_id)
            return True

    async def keychain_members(self, keychain_id: str) -> list[str]:
        return sorted(self._keychain_members.get(keychain_id, ()))

    # ------------------------------------------------------------------ grants

    async def upsert_grant(
        self,
        resource_id: str,
        target_type: GrantTarget,
        target_id: str,
        mask: int,
    ) -> AccessGrant:
        async with self._lock:
            ref = (resource_id, target_type, target_id)
            grant = self._grants.get(ref)
            if grant is None:
                grant = AccessGrant(
                    grant_id=new_id(),
                    resource_id=resource_id,
                    target_type=target_type,
                    target_id=target_id,
                    mask=int(mask),
                )
                self._grants[ref] = grant
            else:
                grant.mask = int(mask)
                grant.updated_at = utcnow()
            return _copy(grant)

    async def delete_grant(
        self,
        resource_id: str,
        target_type: GrantTarget,
        target_id: str,
    ) -> bool:
        async with self._lock:
            return self._grants.pop((resource_id, target_type, target_id), None) is not None

    async def grants_for_resource(self, resource_id: str) -> list[AccessGrant]:
        return [_copy(g) for ref, g in self._grants.items() if ref[0] == resource_id]

    async def resolve_mask(self, resource_id: str, key_id: str) -> int:
        async with self._lock:
            return self._resolve(resource_id, key_id)

    async def visible_resources(self, key_id: str, required: int) -> list[str]:
        async with self._lock:
            resources = {ref[0] for ref in self._grants}
            return [
                r for r in resources
                if (self._resolve(r, key_id) & required) == required
            ]

    def _resolve(self, resource_id: str, key_id: str) -> int:
        mask = 0
        direct = self._grants.get((resource_id, GrantTarget.KEY, key_id))
        if direct is not None:
            mask |= direct.mask
        for group_id in self._key_groups.get(key_id, ()):
            grant = self._grants.get((resource_id, GrantTarget.GROUP, group_id))
            if grant is not None:
                mask |= grant.mask
        return mask


# ============================================================================
# Refresh Tokens
# ============================================================================


class MemoryRefreshTokenStore:
    """In-memory refresh token storage with lookup-hash index."""

    def __init__(self):
        self._records: dict[str, RefreshRecord] = {}
        self._by_lookup: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def save(self, record: RefreshRecord) -> None:
        async with self._lock:
            if record.token_id in self._records or record.lookup_hash in self._by_lookup:
                raise DUPLICATE_RECORD(metadata={"entity": "refresh_token"})
            self._records[record.token_id] = _copy(record)
            self._by_lookup[record.lookup_hash] = record.token_id

    async def get(self, token_id: str) -> RefreshRecord | None:
        return _copy(self._records.get(token_id))

    async def get_by_lookup(self, lookup_hash: str) -> RefreshRecord | None:
        token_id = self._by_lookup.get(lookup_hash)
        return _copy(self._records.get(token_id)) if token_id else None

    async def rotate(self, token_id: str, successor: RefreshRecord) -> bool:
        """
        Mark ``token_id`` rotated and store ``successor``.

        Succeeds only while the record is neither rotated nor revoked; the
        losing side of a concurrent redemption gets False.
        """
        async with self._lock:
            record = self._records.get(token_id)
            if record is None or record.rotated_at is not None or record.revoked_at is not None:
                return False
            if successor.token_id in self._records or successor.lookup_hash in self._by_lookup:
                raise DUPLICATE_RECORD(metadata={"entity": "refresh_token"})

            record.rotated_at = utcnow()
            record.replaced_by_id = successor.token_id
            self._records[successor.token_id] = _copy(successor)
            self._by_lookup[successor.lookup_hash] = successor.token_id
            return True

    async def revoke(self, token_id: str) -> bool:
        async with self._lock:
            record = self._records.get(token_id)
            if record is None or record.revoked_at is not None:
                return False
            record.revoked_at = utcnow()
            return True

    async def revoke_for_subject(self, subject_type: PrincipalType, subject_id: str) -> int:
        async with self._lock:
            now = utcnow()
            count = 0
            for record in self._records.values():
                if (
                    record.subject_type is subject_type
                    and record.subject_id == subject_id
                    and record.revoked_at is None
                    and record.rotated_at is None
                ):
                    record.revoked_at = now
                    count += 1
            return count

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        """Drop expired records; returns number removed."""
        async with self._lock:
            now = now or utcnow()
            expired = [t for t, r in self._records.items() if r.expires_at <= now]
            for token_id in expired:
                record = self._records.pop(token_id)
                self._by_lookup.pop(record.lookup_hash, None)
            if expired:
                logger.debug("Removed %d expired refresh tokens", len(expired))
            return len(expired)


# ============================================================================
# Posts & Comments
# ============================================================================


class MemoryPostStore:
    """In-memory posts and comments."""

    def __init__(self):
        self._posts: dict[str, Post] = {}
        self._comments: dict[str, Comment] = {}
        self._lock = asyncio.Lock()

    async def create_post(self, post: Post) -> Post:
        async with self._lock:
            if post.post_id in self._posts:
                raise DUPLICATE_RECORD(metadata={"entity": "post"})
            self._posts[post.post_id] = _copy(post)
            return _copy(post)

    async def get_post(self, post_id: str) -> Post | None:
        return _copy(self._posts.get(post_id))

    async def posts_by_ids(self, post_ids: list[str]) -> list[Post]:
        return self._newest_first(self._posts[p] for p in post_ids if p in self._posts)

    async def posts_by_initial_authors(self, initial_author_ids: list[str]) -> list[Post]:
        wanted = set(initial_author_ids)
        return self._newest_first(
            p for p in self._posts.values() if p.initial_author_key_id in wanted
        )

    async def create_comment(self, comment: Comment) -> Comment:
        async with self._lock:
            if comment.comment_id in self._comments:
                raise DUPLICATE_RECORD(metadata={"entity": "comment"})
            self._comments[comment.comment_id] = _copy(comment)
            return _copy(comment)

    async def comments_for_post(self, post_id: str) -> list[Comment]:
        comments = [_copy(c) for c in self._comments.values() if c.post_id == post_id]
        comments.sort(key=lambda c: c.created_at)
        return comments

    @staticmethod
    def _newest_first(posts) -> list[Post]:
        result = [_copy(p) for p in posts]
        result.sort(key=lambda p: p.created_at, reverse=True)
        return result
