"""
Keyline Auth - Guarded Resources

Posts and comments, every access routed through the AccessEvaluator.

Key path:   create_post, get_post, list_visible_posts, author_feed,
            create_comment, list_comments, grant_access, revoke_access
Owner path: list_owner_posts, get_post_for_owner, grant_group_access,
            revoke_group_access

A newly created post carries no grant: it is invisible on the key path
until someone grants access to it.
"""

from __future__ import annotations

import logging

from .audit import AuditEmitter
from .authz import COMMENT_POST, LIST_COMMENTS, MANAGE_POST_ACCESS, VIEW_POST, AccessEvaluator
from .catalog import POSTS_ACCESS_MANAGE, POSTS_ADMIN_READ, POSTS_CREATE, POSTS_READ, require_mask
from .core import (
    AccessGrant,
    AccessStore,
    Comment,
    GrantTarget,
    KeyPrincipal,
    KeyRecord,
    KeyStore,
    OwnerPrincipal,
    Post,
    PostStore,
    Principal,
)
from .faults import (
    AUTH_TOKEN_INVALID,
    AUTHZ_PERMISSION_DENIED,
    GROUP_NOT_FOUND,
    INPUT_INVALID,
    KEY_NOT_FOUND,
    RESOURCE_NOT_FOUND,
)
from .groups import GroupService
from .ids import new_id, require_hex32


logger = logging.getLogger("keyline.auth.resources")

MAX_CONTENT_LENGTH = 10000
MAX_TITLE_LENGTH = 255
MAX_COMMENT_LENGTH = 5000


def _check_text(value: object, field: str, max_length: int) -> str:
    if not isinstance(value, str) or not value.strip() or len(value) > max_length:
        raise INPUT_INVALID(field=field, reason=f"Must be 1..{max_length} characters")
    return value


class PostService:
    """Posts, comments and their access grants."""

    def __init__(
        self,
        post_store: PostStore,
        key_store: KeyStore,
        access_store: AccessStore,
        evaluator: AccessEvaluator,
        groups: GroupService,
        audit: AuditEmitter | None = None,
    ):
        self.post_store = post_store
        self.key_store = key_store
        self.access_store = access_store
        self.evaluator = evaluator
        self.groups = groups
        self.audit = audit or AuditEmitter()

    # ------------------------------------------------------------------ posts

    async def create_post(self, author: Principal, content: str, title: str | None = None) -> Post:
        """
        Create a post as an active Author key holding posts:create.

        Raises:
            AUTHZ_PERMISSION_DENIED: not an Author key, or missing posts:create
            INPUT_INVALID: content or title out of bounds
        """
        if isinstance(author, OwnerPrincipal):
            raise AUTHZ_PERMISSION_DENIED(required=[POSTS_CREATE])
        if not isinstance(author, KeyPrincipal):
            raise TypeError(f"Unsupported principal: {type(author).__name__}")

        key = await self._active_key(author)
        if not key.variant.is_author or POSTS_CREATE not in key.permissions:
            raise AUTHZ_PERMISSION_DENIED(required=[POSTS_CREATE])

        content = _check_text(content, "content", MAX_CONTENT_LENGTH)
        if title is not None:
            title = _check_text(title, "title", MAX_TITLE_LENGTH)

        post = await self.post_store.create_post(
            Post(
                post_id=new_id(),
                author_key_id=key.key_id,
                initial_author_key_id=key.lineage.initial_author,
                content=content,
                title=title,
            )
        )

        logger.info("Key %s created post %s", key.key_id, post.post_id)
        await self.audit.emit_for(
            author,
            "posts:create",
            subject_type="post",
            subject_id=post.post_id,
            metadata={"title": title},
        )
        return post

    async def get_post(self, principal: Principal, post_id: str) -> Post:
        await self.evaluator.authorize(principal, post_id, VIEW_POST)
        return await self._post(post_id)

    async def list_visible_posts(self, principal: Principal) -> list[Post]:
        """Posts the caller can see through direct or group grants, newest first."""
        await self.evaluator.require_permission(principal, POSTS_READ)
        post_ids = await self.evaluator.visible_resources(principal, VIEW_POST)
        return await self.post_store.posts_by_ids(post_ids)

    async def author_feed(self, principal: Principal) -> list[Post]:
        """
        Posts under the caller's initial author, plus every post visible
        to it through grants. Newest first, no duplicates.

        Author keys only. Use keys see nothing beyond their grants, so the
        feed does not exist for them.
        """
        if not isinstance(principal, KeyPrincipal):
            raise AUTHZ_PERMISSION_DENIED(required=[POSTS_READ])

        key = await self._active_key(principal)
        if not key.variant.is_author:
            raise RESOURCE_NOT_FOUND(metadata={"resource": "author_feed"})
        if POSTS_READ not in key.permissions:
            raise AUTHZ_PERMISSION_DENIED(required=[POSTS_READ])

        own = await self.post_store.posts_by_initial_authors([key.lineage.initial_author])
        granted = await self.post_store.posts_by_ids(
            await self.evaluator.visible_resources(principal, VIEW_POST)
        )

        seen: set[str] = set()
        feed = []
        for post in own + granted:
            if post.post_id not in seen:
                seen.add(post.post_id)
                feed.append(post)
        feed.sort(key=lambda p: p.created_at, reverse=True)
        return feed

    # --------------------------------------------------------------- comments

    async def create_comment(self, principal: Principal, post_id: str, body: str) -> Comment:
        await self.evaluator.authorize(principal, post_id, COMMENT_POST)
        post = await self._post(post_id)
        body = _check_text(body, "body", MAX_COMMENT_LENGTH)

        comment = await self.post_store.create_comment(
            Comment(
                comment_id=new_id(),
                post_id=post.post_id,
                created_by_key_id=principal.key_id,
                body=body,
            )
        )
        await self.audit.emit_for(
            principal,
            "comments:create",
            subject_type="comment",
            subject_id=comment.comment_id,
            metadata={"post_id": post.post_id},
        )
        return comment

    async def list_comments(self, principal: Principal, post_id: str) -> list[Comment]:
        await self.evaluator.authorize(principal, post_id, LIST_COMMENTS)
        post = await self._post(post_id)
        return await self.post_store.comments_for_post(post.post_id)

    # ----------------------------------------------------------------- grants

    async def grant_access(
        self,
        principal: Principal,
        post_id: str,
        target_type: GrantTarget,
        target_id: str,
        mask: int,
    ) -> AccessGrant:
        """
        Create or replace a grant, as a key holding MANAGE_ACCESS on the post.

        Raises:
            RESOURCE_NOT_FOUND / AUTHZ_*: see AccessEvaluator.authorize
            GRANT_MASK_INVALID: zero mask or undefined bits
            KEY_NOT_FOUND / GROUP_NOT_FOUND: grant target does not exist
        """
        await self.evaluator.authorize(principal, post_id, MANAGE_POST_ACCESS)
        post = await self._post(post_id)
        return await self._grant(principal, post, target_type, target_id, mask)

    async def revoke_access(
        self,
        principal: Principal,
        post_id: str,
        target_type: GrantTarget,
        target_id: str,
    ) -> bool:
        await self.evaluator.authorize(principal, post_id, MANAGE_POST_ACCESS)
        post = await self._post(post_id)
        return await self._revoke(principal, post, GrantTarget(target_type), target_id)

    async def list_grants(self, principal: Principal, post_id: str) -> list[AccessGrant]:
        await self.evaluator.authorize(principal, post_id, MANAGE_POST_ACCESS)
        return await self.access_store.grants_for_resource(post_id)

    # ------------------------------------------------------------ owner admin

    async def list_owner_posts(self, owner: OwnerPrincipal) -> list[Post]:
        """Every post created under the owner's Primary keys."""
        if not owner.has_permission(POSTS_ADMIN_READ):
            raise AUTHZ_PERMISSION_DENIED(required=[POSTS_ADMIN_READ])
        primaries = await self.key_store.list_primary_ids(owner.owner_id)
        if not primaries:
            return []
        return await self.post_store.posts_by_initial_authors(primaries)

    async def get_post_for_owner(self, owner: OwnerPrincipal, post_id: str) -> Post:
        post = await self._owned_post(owner, post_id)
        if not owner.has_permission(POSTS_ADMIN_READ):
            raise AUTHZ_PERMISSION_DENIED(required=[POSTS_ADMIN_READ])
        return post

    async def grant_group_access(
        self,
        owner: OwnerPrincipal,
        post_id: str,
        group_id: str,
        mask: int,
    ) -> AccessGrant:
        """Grant one of the owner's groups access to one of the owner's posts."""
        post = await self._owned_post(owner, post_id)
        if not owner.has_permission(POSTS_ACCESS_MANAGE):
            raise AUTHZ_PERMISSION_DENIED(required=[POSTS_ACCESS_MANAGE])
        group = await self.groups.owned_group(owner, group_id)
        return await self._grant(owner, post, GrantTarget.GROUP, group.group_id, mask)

    async def revoke_group_access(self, owner: OwnerPrincipal, post_id: str, group_id: str) -> bool:
        post = await self._owned_post(owner, post_id)
        if not owner.has_permission(POSTS_ACCESS_MANAGE):
            raise AUTHZ_PERMISSION_DENIED(required=[POSTS_ACCESS_MANAGE])
        group = await self.groups.owned_group(owner, group_id)
        return await self._revoke(owner, post, GrantTarget.GROUP, group.group_id)

    # ---------------------------------------------------------------- helpers

    async def _grant(
        self,
        actor: Principal,
        post: Post,
        target_type: GrantTarget,
        target_id: str,
        mask: int,
    ) -> AccessGrant:
        target_type = GrantTarget(target_type)
        access = require_mask(mask)
        target_id = await self._existing_target(target_type, target_id)

        grant = await self.access_store.upsert_grant(post.post_id, target_type, target_id, int(access))

        logger.info("Granted %s:%s mask=%d on post %s", target_type.value, target_id, grant.mask, post.post_id)
        await self.audit.emit_for(
            actor,
            "posts:access:grant",
            subject_type="post",
            subject_id=post.post_id,
            metadata={
                "target_type": target_type.value,
                "target_id": target_id,
                "permission_mask": grant.mask,
            },
        )
        return grant

    async def _revoke(
        self,
        actor: Principal,
        post: Post,
        target_type: GrantTarget,
        target_id: str,
    ) -> bool:
        target_id = require_hex32(target_id, "target_id")
        removed = await self.access_store.delete_grant(post.post_id, target_type, target_id)
        if removed:
            logger.info("Revoked %s:%s on post %s", target_type.value, target_id, post.post_id)
            await self.audit.emit_for(
                actor,
                "posts:access:revoke",
                subject_type="post",
                subject_id=post.post_id,
                metadata={"target_type": target_type.value, "target_id": target_id},
            )
        return removed

    async def _existing_target(self, target_type: GrantTarget, target_id: str) -> str:
        target_id = require_hex32(target_id, "target_id")
        if target_type is GrantTarget.KEY:
            if await self.key_store.get(target_id) is None:
                raise KEY_NOT_FOUND()
        elif target_type is GrantTarget.GROUP:
            if await self.access_store.get_group(target_id) is None:
                raise GROUP_NOT_FOUND()
        else:
            raise TypeError(f"Unsupported grant target: {target_type}")
        return target_id

    async def _post(self, post_id: str) -> Post:
        post = await self.post_store.get_post(post_id)
        if post is None:
            raise RESOURCE_NOT_FOUND()
        return post

    async def _owned_post(self, owner: OwnerPrincipal, post_id: str) -> Post:
        post = await self.post_store.get_post(require_hex32(post_id, "post_id"))
        if post is None:
            raise RESOURCE_NOT_FOUND()
        primaries = await self.key_store.list_primary_ids(owner.owner_id)
        if post.initial_author_key_id not in primaries:
            raise RESOURCE_NOT_FOUND()
        return post

    async def _active_key(self, principal: KeyPrincipal) -> KeyRecord:
        key = await self.key_store.get(principal.key_id)
        if key is None or not key.active:
            raise AUTH_TOKEN_INVALID()
        return key
