import logging
from datetime import datetime
from typing import Callable
from uuid import UUID, uuid4

from . import store as collections
from .access import ADMIN_OR_HOD, require_role
from .directory import require_user
from .errors import NotFoundError, ValidationFailedError
from .events import AuditEvent, AuditTrail
from .models import AccessGrant, GrantAccessRequest, User, utcnow
from .store import DocumentStore

logger = logging.getLogger(__name__)


class AccessControlService:
    """Feature grants, one per (user, feature). Expired grants stay stored but never match."""

    def __init__(self, store: DocumentStore, audit: AuditTrail, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.audit = audit
        self._clock = clock

    def grant(self, actor: User, payload: GrantAccessRequest) -> AccessGrant:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        feature = payload.feature.strip()
        if not feature:
            raise ValidationFailedError("Feature is required.")
        require_user(self.store, payload.user_id)

        now = self._clock()
        doc = self.store.upsert(
            collections.ACCESS_GRANTS,
            {"user_id": payload.user_id, "feature": feature},
            {
                "reason": payload.reason,
                "granted_by": actor.id,
                "expires_at": payload.expires_at,
                "updated_at": now,
            },
            defaults={"id": uuid4(), "created_at": now},
        )
        grant = AccessGrant(**doc)
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="access_granted",
            entity_type="access_control",
            entity_id=grant.id,
            details={"user_id": str(grant.user_id), "feature": feature},
        ))
        logger.info("Granted %s to user %s (expires %s)", feature, grant.user_id, grant.expires_at)
        return grant

    def revoke(self, actor: User, grant_id: UUID) -> None:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        doc = self.store.get(collections.ACCESS_GRANTS, grant_id)
        if not doc:
            raise NotFoundError("Access grant not found")
        self.store.delete_one(collections.ACCESS_GRANTS, {"id": grant_id})
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="access_revoked",
            entity_type="access_control",
            entity_id=grant_id,
            details={"user_id": str(doc["user_id"]), "feature": doc["feature"]},
        ))
        logger.info("Revoked %s from user %s", doc["feature"], doc["user_id"])

    def has_access(self, user_id: UUID, feature: str) -> bool:
        doc = self.store.find_one(collections.ACCESS_GRANTS, {"user_id": user_id, "feature": feature})
        return bool(doc) and AccessGrant(**doc).is_active(self._clock())

    def active_grants(self, user_id: UUID) -> list[AccessGrant]:
        now = self._clock()
        grants = [AccessGrant(**doc) for doc in self.store.find(collections.ACCESS_GRANTS, {"user_id": user_id})]
        return [grant for grant in grants if grant.is_active(now)]

    def all_grants(self, actor: User) -> list[AccessGrant]:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        return [AccessGrant(**doc) for doc in self.store.find(collections.ACCESS_GRANTS)]
