import logging
from datetime import datetime
from typing import Callable, Optional, Type, Union
from uuid import UUID, uuid4

from . import store as collections
from .access import (
    ADMIN_OR_HOD,
    can_manage_user,
    expand_role_filter,
    require_role,
    require_team_scope,
)
from .errors import ForbiddenError, NotFoundError, ValidationFailedError
from .events import AuditEvent, AuditTrail
from .models import (
    AssignmentDetail,
    AssignPolicy,
    EmployeeInitiator,
    EmployeePolicyAssignment,
    EmployeeType,
    InitiatorScope,
    NewPolicy,
    NewUser,
    Policy,
    PolicyInitiator,
    PolicyStatus,
    PolicyUpdate,
    Role,
    ScopedAssignment,
    User,
    UserUpdate,
    utcnow,
)
from .store import DocumentStore

logger = logging.getLogger(__name__)


def require_user(store: DocumentStore, user_id: UUID, message: str = "User not found") -> User:
    doc = store.get(collections.USERS, user_id)
    if not doc:
        raise NotFoundError(message)
    return User(**doc)


def require_policy(store: DocumentStore, policy_id: UUID) -> Policy:
    doc = store.get(collections.POLICIES, policy_id)
    if not doc:
        raise NotFoundError("Policy not found")
    return Policy(**doc)


def _is_freelancer_type(employee_type: Optional[EmployeeType]) -> bool:
    return bool(employee_type) and employee_type.value.startswith("freelancer")


class DirectoryService:
    def __init__(self, store: DocumentStore, audit: AuditTrail, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.audit = audit
        self._clock = clock

    # ==================== USERS ====================

    def create_user(self, actor: User, payload: NewUser) -> User:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")

        hod_id = payload.hod_id
        if actor.role == Role.HOD:
            if payload.role != Role.EMPLOYEE:
                raise ForbiddenError("HOD can only create employee users.")
            hod_id = actor.id

        email = payload.email.strip().lower()
        if self.find_user_by_email(email):
            raise ValidationFailedError("Email already in use.")

        user_id = uuid4()
        if payload.role == Role.ADMIN:
            # admins head themselves
            hod_id = user_id
        else:
            self._validate_hod(payload.role, hod_id)

        initiator_ids = list(dict.fromkeys(payload.freelancer_initiator_ids))
        if _is_freelancer_type(payload.employee_type):
            if not initiator_ids:
                raise ValidationFailedError("Freelancers must have at least one initiator assigned.")
            self._require_users(initiator_ids)

        now = self._clock()
        user = User(
            id=user_id,
            name=payload.name,
            email=email,
            phone=payload.phone,
            role=payload.role,
            employee_type=payload.employee_type,
            hod_id=hod_id,
            created_at=now,
            updated_at=now,
        )
        self.store.insert(collections.USERS, user.model_dump())

        if _is_freelancer_type(payload.employee_type):
            self._replace_links(
                collections.EMPLOYEE_INITIATORS, EmployeeInitiator, "employee_id",
                user.id, initiator_ids, actor.id,
            )

        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="user_created",
            entity_type="user",
            entity_id=user.id,
            details={"email": email, "role": payload.role.value},
        ))
        logger.info("User %s created with role %s by %s", user.id, user.role.value, actor.id)
        return user

    def update_user(self, actor: User, user_id: UUID, payload: UserUpdate) -> User:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        current = require_user(self.store, user_id)
        if not can_manage_user(actor, current):
            raise ForbiddenError("You can only manage your team members.")

        changes = payload.model_dump(exclude_unset=True, exclude={"freelancer_initiator_ids"})
        if actor.role == Role.HOD and changes.get("role") not in (None, Role.EMPLOYEE):
            raise ForbiddenError("HOD can only manage employee users.")

        if changes.get("email"):
            changes["email"] = changes["email"].strip().lower()
            other = self.find_user_by_email(changes["email"])
            if other and other.id != user_id:
                raise ValidationFailedError("Email already in use.")

        target_role = changes.get("role") or current.role
        target_type = changes.get("employee_type") or current.employee_type
        if target_role != current.role:
            self._require_reports_fit_role(user_id, target_role)
        if target_role == Role.ADMIN:
            changes["hod_id"] = user_id
        else:
            hod_id = changes.get("hod_id") or current.hod_id
            if hod_id == user_id:
                raise ValidationFailedError("A user cannot be their own HOD.")
            self._validate_hod(target_role, hod_id)
            changes["hod_id"] = hod_id

        initiator_ids = None
        if payload.freelancer_initiator_ids is not None:
            initiator_ids = list(dict.fromkeys(payload.freelancer_initiator_ids))
        if _is_freelancer_type(target_type):
            if initiator_ids is not None:
                if not initiator_ids:
                    raise ValidationFailedError("Freelancers must have at least one initiator assigned.")
                self._require_users(initiator_ids)
            elif not self.store.count(collections.EMPLOYEE_INITIATORS, {"employee_id": user_id}):
                raise ValidationFailedError("Freelancers must have at least one initiator assigned.")

        changes["updated_at"] = self._clock()
        updated = self.store.update_one(collections.USERS, {"id": user_id}, changes)
        if updated is None:
            raise NotFoundError("User not found")
        user = User(**updated)

        if _is_freelancer_type(target_type) and initiator_ids is not None:
            self._replace_links(
                collections.EMPLOYEE_INITIATORS, EmployeeInitiator, "employee_id",
                user_id, initiator_ids, actor.id,
            )

        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="user_updated",
            entity_type="user",
            entity_id=user_id,
            before=current.model_dump(mode="json"),
            after=user.model_dump(mode="json"),
        ))
        return user

    def delete_user(self, actor: User, user_id: UUID) -> None:
        require_role(actor, (Role.ADMIN,), "Admin access required")
        require_user(self.store, user_id)
        reports = self._direct_reports(user_id)
        if reports:
            raise ValidationFailedError(
                f"User still heads {len(reports)} team member(s); reassign them before deleting."
            )
        self.store.delete_one(collections.USERS, {"id": user_id})
        self.store.delete_many(collections.EMPLOYEE_INITIATORS, {"employee_id": user_id})
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="user_deleted",
            entity_type="user",
            entity_id=user_id,
        ))
        logger.info("User %s deleted by %s", user_id, actor.id)

    def get_user(self, user_id: UUID) -> User:
        return require_user(self.store, user_id)

    def find_user_by_email(self, email: str) -> Optional[User]:
        doc = self.store.find_one(collections.USERS, {"email": email.strip().lower()})
        return User(**doc) if doc else None

    def users_by_ids(self, user_ids) -> list[User]:
        ids = list(dict.fromkeys(i for i in user_ids if i is not None))
        if not ids:
            return []
        return [User(**doc) for doc in self.store.find(collections.USERS, {"id": ids})]

    def list_users(self, actor: User) -> list[User]:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        if actor.role == Role.ADMIN:
            return [User(**doc) for doc in self.store.find(collections.USERS)]
        team = [u for u in self._team_of(actor.id) if u.id != actor.id]
        me = self.store.get(collections.USERS, actor.id)
        return ([User(**me)] if me else []) + team

    def users_by_role(self, actor: User, role: Union[str, Role]) -> list[User]:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        docs = self.store.find(collections.USERS, {"role": expand_role_filter(role)})
        return [User(**doc) for doc in docs]

    def team(self, actor: User) -> list[User]:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        if actor.role == Role.ADMIN:
            return [User(**doc) for doc in self.store.find(collections.USERS)]
        return self._team_of(actor.id)

    def has_admin(self) -> bool:
        return self.store.count(collections.USERS, {"role": expand_role_filter(Role.ADMIN)}) > 0

    # ==================== INITIATORS ====================

    def set_employee_initiators(self, actor: User, employee_id: UUID, initiator_ids: list[UUID]) -> list[EmployeeInitiator]:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        employee = require_user(self.store, employee_id)
        require_team_scope(actor, employee, "You can only manage your team members.")
        ids = list(dict.fromkeys(initiator_ids))
        self._require_users(ids)
        return self._replace_links(
            collections.EMPLOYEE_INITIATORS, EmployeeInitiator, "employee_id",
            employee_id, ids, actor.id,
        )

    def employee_initiators(self, employee_id: UUID) -> list[User]:
        links = self.store.find(collections.EMPLOYEE_INITIATORS, {"employee_id": employee_id})
        return self.users_by_ids(link["initiator_id"] for link in links)

    def set_policy_initiators(self, actor: User, assignment_id: UUID, initiator_ids: list[UUID]) -> list[PolicyInitiator]:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        assignment = self._require_assignment(assignment_id)
        require_team_scope(
            actor, require_user(self.store, assignment.user_id),
            "You can only assign policies to your team members.",
        )
        ids = list(dict.fromkeys(initiator_ids))
        self._require_users(ids)
        return self._replace_links(
            collections.POLICY_INITIATORS, PolicyInitiator, "assignment_id",
            assignment_id, ids, actor.id,
        )

    # ==================== POLICIES ====================

    def create_policy(self, actor: User, payload: NewPolicy) -> Policy:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        if not payload.name.strip():
            raise ValidationFailedError("Policy name is required.")
        now = self._clock()
        policy = Policy(
            id=uuid4(),
            created_by=actor.id,
            created_at=now,
            updated_at=now,
            **payload.model_dump(),
        )
        self.store.insert(collections.POLICIES, policy.model_dump())
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="policy_created",
            entity_type="policy",
            entity_id=policy.id,
            details={"name": policy.name},
        ))
        return policy

    def update_policy(self, actor: User, policy_id: UUID, payload: PolicyUpdate) -> Policy:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        require_policy(self.store, policy_id)
        changes = payload.model_dump(exclude_unset=True)
        changes["updated_at"] = self._clock()
        updated = self.store.update_one(collections.POLICIES, {"id": policy_id}, changes)
        if updated is None:
            raise NotFoundError("Policy not found")
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="policy_updated",
            entity_type="policy",
            entity_id=policy_id,
            details=payload.model_dump(mode="json", exclude_unset=True),
        ))
        return Policy(**updated)

    def delete_policy(self, actor: User, policy_id: UUID) -> None:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        require_policy(self.store, policy_id)
        for assignment in self.store.find(collections.POLICY_ASSIGNMENTS, {"policy_id": policy_id}):
            self.store.delete_many(collections.POLICY_INITIATORS, {"assignment_id": assignment["id"]})
        self.store.delete_many(collections.POLICY_ASSIGNMENTS, {"policy_id": policy_id})
        self.store.delete_one(collections.POLICIES, {"id": policy_id})
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="policy_deleted",
            entity_type="policy",
            entity_id=policy_id,
        ))

    def get_policy(self, policy_id: UUID) -> Policy:
        return require_policy(self.store, policy_id)

    def list_policies(self, actor: User) -> list[Policy]:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        filters = None if actor.role == Role.ADMIN else {"created_by": actor.id}
        return [Policy(**doc) for doc in self.store.find(collections.POLICIES, filters)]

    def policies_by_ids(self, policy_ids) -> list[Policy]:
        ids = list(dict.fromkeys(i for i in policy_ids if i is not None))
        if not ids:
            return []
        return [Policy(**doc) for doc in self.store.find(collections.POLICIES, {"id": ids})]

    # ==================== ASSIGNMENTS ====================

    def assign_policy(self, actor: User, payload: AssignPolicy) -> EmployeePolicyAssignment:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        initiator_ids = list(dict.fromkeys(payload.initiator_ids))
        if not initiator_ids:
            raise ValidationFailedError("At least one initiator is required.")

        user = require_user(self.store, payload.user_id)
        require_team_scope(actor, user, "You can only assign policies to your team members.")
        policy = require_policy(self.store, payload.policy_id)
        if policy.status != PolicyStatus.ACTIVE:
            raise ValidationFailedError("Only active policies can be assigned.")
        self._require_users(initiator_ids)

        effective_date = payload.effective_date or self._clock()
        existing = self.store.update_one(
            collections.POLICY_ASSIGNMENTS,
            {"user_id": payload.user_id, "policy_id": payload.policy_id},
            {"effective_date": effective_date, "assigned_by": actor.id},
        )
        if existing:
            assignment = EmployeePolicyAssignment(**existing)
        else:
            assignment = EmployeePolicyAssignment(
                id=uuid4(),
                user_id=payload.user_id,
                policy_id=payload.policy_id,
                effective_date=effective_date,
                assigned_by=actor.id,
                created_at=self._clock(),
            )
            self.store.insert(collections.POLICY_ASSIGNMENTS, assignment.model_dump())

        self._replace_links(
            collections.POLICY_INITIATORS, PolicyInitiator, "assignment_id",
            assignment.id, initiator_ids, actor.id,
        )
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="policy_assigned",
            entity_type="policy_assignment",
            entity_id=assignment.id,
            details={
                "user_id": str(payload.user_id),
                "policy_id": str(payload.policy_id),
                "initiator_ids": [str(i) for i in initiator_ids],
                "effective_date": effective_date.isoformat(),
            },
        ))
        logger.info("Policy %s assigned to %s by %s", policy.id, user.id, actor.id)
        return assignment

    def remove_policy_assignment(self, actor: User, assignment_id: UUID) -> None:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        assignment = self._require_assignment(assignment_id)
        if actor.role == Role.HOD:
            user = self.store.get(collections.USERS, assignment.user_id)
            if not user or user.get("hod_id") != actor.id:
                raise ForbiddenError("You can only remove policies from your team members.")
        self.store.delete_many(collections.POLICY_INITIATORS, {"assignment_id": assignment_id})
        self.store.delete_one(collections.POLICY_ASSIGNMENTS, {"id": assignment_id})
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="policy_removed",
            entity_type="policy_assignment",
            entity_id=assignment_id,
        ))

    def assignments_for_user(self, user_id: UUID) -> list[AssignmentDetail]:
        require_user(self.store, user_id)
        assignments = [
            EmployeePolicyAssignment(**doc)
            for doc in self.store.find(collections.POLICY_ASSIGNMENTS, {"user_id": user_id})
        ]
        if not assignments:
            return []
        policies = {p.id: p for p in self.policies_by_ids(a.policy_id for a in assignments)}
        links = self.store.find(
            collections.POLICY_INITIATORS,
            {"assignment_id": [a.id for a in assignments]},
        )
        initiators = {u.id: u for u in self.users_by_ids(link["initiator_id"] for link in links)}

        details = []
        for assignment in assignments:
            assigned = [
                initiators[link["initiator_id"]] for link in links
                if link["assignment_id"] == assignment.id and link["initiator_id"] in initiators
            ]
            details.append(AssignmentDetail(
                assignment=assignment,
                policy=policies.get(assignment.policy_id),
                initiators=assigned,
            ))
        return details

    def initiator_scope(self, actor: User) -> InitiatorScope:
        """Policy assignments and freelancers ``actor`` may raise credit requests for."""
        if actor.role in ADMIN_OR_HOD:
            users = self.team(actor)
            user_ids = [u.id for u in users]
            assignment_docs = self.store.find(collections.POLICY_ASSIGNMENTS, {"user_id": user_ids}) if user_ids else []
            freelancers = [u for u in users if u.is_freelancer]
        else:
            links = self.store.find(collections.POLICY_INITIATORS, {"initiator_id": actor.id})
            assignment_ids = list(dict.fromkeys(link["assignment_id"] for link in links))
            assignment_docs = self.store.find(collections.POLICY_ASSIGNMENTS, {"id": assignment_ids}) if assignment_ids else []
            freelancer_links = self.store.find(collections.EMPLOYEE_INITIATORS, {"initiator_id": actor.id})
            freelancers = self.users_by_ids(link["employee_id"] for link in freelancer_links)
            users = self.users_by_ids(doc["user_id"] for doc in assignment_docs)

        assignments = [EmployeePolicyAssignment(**doc) for doc in assignment_docs]
        user_map = {u.id: u for u in users}
        policy_map = {p.id: p for p in self.policies_by_ids(a.policy_id for a in assignments)}
        scoped = [
            ScopedAssignment(
                assignment_id=a.id,
                user=user_map[a.user_id],
                policy=policy_map[a.policy_id],
                effective_date=a.effective_date,
            )
            for a in assignments
            if a.user_id in user_map and a.policy_id in policy_map
        ]
        return InitiatorScope(policy_assignments=scoped, freelancers=freelancers)

    # ==================== HELPERS ====================

    def _team_of(self, hod_id: UUID) -> list[User]:
        return [User(**doc) for doc in self.store.find(collections.USERS, {"hod_id": hod_id})]

    def _direct_reports(self, user_id: UUID) -> list[User]:
        # admins head themselves
        return [u for u in self._team_of(user_id) if u.id != user_id]

    def _require_reports_fit_role(self, user_id: UUID, role: Role) -> None:
        reports = self._direct_reports(user_id)
        if not reports:
            return
        if role not in ADMIN_OR_HOD:
            raise ValidationFailedError(
                f"User still heads {len(reports)} team member(s); reassign them before changing role."
            )
        if role == Role.HOD and any(r.role == Role.HOD for r in reports):
            raise ValidationFailedError("HODs must report to an Admin; reassign them before changing role.")

    def _validate_hod(self, role: Role, hod_id: Optional[UUID]) -> None:
        if role == Role.HOD:
            if not hod_id:
                raise ValidationFailedError("HOD must have an Admin assigned as HOD.")
            hod = self.store.get(collections.USERS, hod_id)
            if not hod or User(**hod).role != Role.ADMIN:
                raise ValidationFailedError("HOD must be assigned to an Admin user.")
            return
        if not hod_id:
            raise ValidationFailedError("HOD is required for this role.")
        hod = self.store.get(collections.USERS, hod_id)
        if not hod or User(**hod).role not in ADMIN_OR_HOD:
            raise ValidationFailedError("Assigned HOD must be an Admin or HOD.")

    def _require_users(self, user_ids: list[UUID]) -> None:
        missing = [str(i) for i in user_ids if self.store.get(collections.USERS, i) is None]
        if missing:
            raise ValidationFailedError(f"Unknown initiator(s): {', '.join(missing)}")

    def _require_assignment(self, assignment_id: UUID) -> EmployeePolicyAssignment:
        doc = self.store.get(collections.POLICY_ASSIGNMENTS, assignment_id)
        if not doc:
            raise NotFoundError("Assignment not found")
        return EmployeePolicyAssignment(**doc)

    def _replace_links(
        self,
        collection: str,
        model: Type[Union[EmployeeInitiator, PolicyInitiator]],
        parent_field: str,
        parent_id: UUID,
        initiator_ids: list[UUID],
        assigned_by: UUID,
    ) -> list:
        # links are replaced wholesale, never patched
        with self.store.locked(f"{collection}:{parent_id}"):
            self.store.delete_many(collection, {parent_field: parent_id})
            now = self._clock()
            links = [
                model(**{
                    "id": uuid4(),
                    parent_field: parent_id,
                    "initiator_id": initiator_id,
                    "assigned_by": assigned_by,
                    "assigned_at": now,
                })
                for initiator_id in initiator_ids
            ]
            self.store.insert_many(collection, [link.model_dump() for link in links])
        return links
