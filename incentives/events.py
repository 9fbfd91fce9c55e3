"""
Notification and audit side channels.

Both are best effort: a failure to write a notification or an audit row is
logged and discarded so that it never blocks the transition that caused it.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID, uuid4
from pydantic import BaseModel

from . import store as collections
from .errors import ValidationFailedError
from .models import AuditLog, AuditQuery, Notification, NotificationType, utcnow
from .settings import Settings, get_settings
from .store import DocumentStore

logger = logging.getLogger(__name__)


class NotificationEvent(BaseModel):
    user_id: UUID
    title: str
    message: str
    type: NotificationType = NotificationType.INFO
    action_url: Optional[str] = None


class AuditEvent(BaseModel):
    actor_id: UUID
    action: str
    entity_type: str
    entity_id: Optional[Any] = None
    details: Optional[dict[str, Any]] = None
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None


class Notifier:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock

    def emit(self, event: NotificationEvent) -> Optional[Notification]:
        try:
            notification = Notification(
                id=uuid4(),
                user_id=event.user_id,
                title=event.title,
                message=event.message,
                type=event.type,
                action_url=event.action_url,
                created_at=self._clock(),
            )
            self.store.insert(collections.NOTIFICATIONS, notification.model_dump())
            return notification
        except Exception:
            logger.exception("Failed to emit notification %r to user %s", event.title, event.user_id)
            return None

    def emit_many(self, events: list[NotificationEvent]) -> int:
        return sum(1 for event in events if self.emit(event) is not None)


class AuditTrail:
    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self._clock = clock

    def record(self, event: AuditEvent) -> Optional[AuditLog]:
        try:
            entry = AuditLog(
                id=uuid4(),
                user_id=event.actor_id,
                action=event.action,
                entity_type=event.entity_type,
                entity_id=str(event.entity_id) if event.entity_id is not None else None,
                details=event.details,
                before_value=event.before,
                after_value=event.after,
                created_at=self._clock(),
            )
            self.store.insert(collections.AUDIT_LOGS, entry.model_dump())
            return entry
        except Exception:
            logger.exception("Failed to record audit action %s on %s", event.action, event.entity_type)
            return None

    def query(self, query: Optional[AuditQuery] = None) -> list[AuditLog]:
        query = query or AuditQuery()
        filters = {}
        if query.user_id:
            filters["user_id"] = query.user_id
        if query.action:
            filters["action"] = query.action
        if query.entity_type:
            filters["entity_type"] = query.entity_type

        limit = min(query.limit or self.settings.audit_log_limit, self.settings.audit_log_limit)
        entries = []
        for doc in self.store.find(collections.AUDIT_LOGS, filters):
            if query.start_date and doc["created_at"] < query.start_date:
                continue
            if query.end_date and doc["created_at"] > query.end_date:
                continue
            entries.append(AuditLog(**doc))
            if len(entries) >= limit:
                break
        return entries


class NotificationInbox:
    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self._clock = clock

    def list_for_user(self, user_id: UUID, limit: Optional[int] = None) -> list[Notification]:
        if limit is None:
            limit = self.settings.notification_default_limit
        if limit < 1 or limit > self.settings.notification_max_limit:
            raise ValidationFailedError(
                f"Limit must be between 1 and {self.settings.notification_max_limit}."
            )
        docs = self.store.find(collections.NOTIFICATIONS, {"user_id": user_id}, limit=limit)
        return [Notification(**doc) for doc in docs]

    def unread_count(self, user_id: UUID) -> int:
        return self.store.count(collections.NOTIFICATIONS, {"user_id": user_id, "read_at": None})

    def mark_read(self, user_id: UUID, notification_id: UUID) -> bool:
        # read_at is written once; a second call finds no unread match
        updated = self.store.update_one(
            collections.NOTIFICATIONS,
            {"id": notification_id, "user_id": user_id, "read_at": None},
            {"read_at": self._clock()},
        )
        return updated is not None

    def mark_all_read(self, user_id: UUID) -> int:
        return self.store.update_many(
            collections.NOTIFICATIONS,
            {"user_id": user_id, "read_at": None},
            {"read_at": self._clock()},
        )
