"""
Keyline Auth - Audit

Every state-changing decision in the auth engine is recorded through an
``AuditRecorder`` before the operation returns. Recorders are write-only
sinks; the engine never reads from them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from .core import Principal, principal_ref, utcnow
from .ids import new_id


# ============================================================================
# Events
# ============================================================================

@dataclass(frozen=True)
class AuditEvent:
    """Single audit record."""
    event_id: str
    actor_type: str
    actor_id: str | None
    action: str
    subject_type: str | None = None
    subject_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    ip: str | None = None
    user_agent: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "action": self.action,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "metadata": self.metadata,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
        }


class AuditRecorder(Protocol):
    """Protocol for audit sinks."""

    async def record(self, event: AuditEvent) -> None:
        ...


# ============================================================================
# Sanitizer
# ============================================================================

class SensitiveDataSanitizer:
    """Removes secret-bearing keys from audit metadata (recursively)."""

    SENSITIVE_KEYS = frozenset({
        "password",
        "password_hash",
        "secret",
        "secret_hash",
        "key_secret",
        "apikey_secret",
        "api_key_secret",
        "refresh_token",
        "access_token",
        "token_hash",
        "private_key",
    })

    def __init__(self, extra_keys: set[str] | None = None):
        self.keys = self.SENSITIVE_KEYS | frozenset(extra_keys or ())

    def sanitize(self, data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: self.sanitize(v)
                for k, v in data.items()
                if str(k).lower() not in self.keys
            }
        if isinstance(data, (list, tuple, set, frozenset)):
            return [self.sanitize(v) for v in data]
        return data


# ============================================================================
# Recorders
# ============================================================================

class MemoryAuditRecorder:
    """Keeps events in memory (tests, local development)."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def query(
        self,
        action: str | None = None,
        actor_id: str | None = None,
        subject_id: str | None = None,
    ) -> list[AuditEvent]:
        return [
            e for e in self.events
            if (action is None or e.action == action)
            and (actor_id is None or e.actor_id == actor_id)
            and (subject_id is None or e.subject_id == subject_id)
        ]

    def actions(self) -> list[str]:
        return [e.action for e in self.events]

    def clear(self) -> None:
        self.events.clear()


class LoggingAuditRecorder:
    """Writes events to the ``keyline.auth.audit`` logger."""

    def __init__(self, logger: logging.Logger | None = None, level: int = logging.INFO):
        self.logger = logger or logging.getLogger("keyline.auth.audit")
        self.level = level

    async def record(self, event: AuditEvent) -> None:
        self.logger.log(
            self.level,
            f"audit {event.action} actor={event.actor_type}:{event.actor_id} "
            f"subject={event.subject_type}:{event.subject_id}",
            extra={"audit": event.to_dict()},
        )


class CompositeAuditRecorder:
    """Fans one event out to several recorders, in order."""

    def __init__(self, *recorders: AuditRecorder):
        self.recorders = list(recorders)

    async def record(self, event: AuditEvent) -> None:
        for recorder in self.recorders:
            await recorder.record(event)


# ============================================================================
# Emitter
# ============================================================================

class AuditEmitter:
    """
    Builds sanitized audit events and hands them to a recorder.

    ``emit`` is awaited by the calling operation, so a recorder failure
    propagates instead of being silently dropped.
    """

    def __init__(
        self,
        recorder: AuditRecorder | None = None,
        sanitizer: SensitiveDataSanitizer | None = None,
    ):
        self.recorder = recorder or LoggingAuditRecorder()
        self.sanitizer = sanitizer or SensitiveDataSanitizer()

    async def emit(
        self,
        actor_type: str,
        actor_id: str | None,
        action: str,
        subject_type: str | None = None,
        subject_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_id=new_id(),
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            subject_type=subject_type,
            subject_id=subject_id,
            metadata=self.sanitizer.sanitize(metadata or {}),
            ip=ip,
            user_agent=user_agent,
        )
        await self.recorder.record(event)
        return event

    async def emit_for(
        self,
        actor: Principal,
        action: str,
        subject_type: str | None = None,
        subject_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        **context,
    ) -> AuditEvent:
        """Emit with the actor taken from an authenticated principal."""
        actor_type, actor_id = principal_ref(actor)
        return await self.emit(
            actor_type,
            actor_id,
            action,
            subject_type=subject_type,
            subject_id=subject_id,
            metadata=metadata,
            **context,
        )
