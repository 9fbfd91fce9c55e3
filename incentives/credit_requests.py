"""
Credit request lifecycle.

    freelancer:  pending_approval -> approved | rejected_by_hod
    policy:      provisional -> pending_signature | signature_failed
                 pending_signature -> pending_approval | rejected_by_user | rejected_by_hod
                 pending_approval -> approved | rejected_by_hod

Every transition re-reads the request and writes it back with a conditional
update on ``(id, status, version)``. Losing that race raises
``InvalidStateTransitionError``, so two concurrent approvals can never both
post a wallet credit.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

from . import store as collections
from .access import ADMIN_OR_HOD, is_admin_or_hod, require_beneficiary_access, require_role
from .currency import format_amount
from .directory import require_user
from .errors import (
    ForbiddenError,
    InvalidStateTransitionError,
    NotFoundError,
    UpstreamFailureError,
    ValidationFailedError,
)
from .events import AuditEvent, AuditTrail, NotificationEvent, Notifier
from .models import (
    CreateCreditRequest,
    CreditRequest,
    CreditRequestDetail,
    CreditRequestResponse,
    CreditRequestStatus,
    CreditRequestType,
    EmployeeInitiator,
    EmployeePolicyAssignment,
    NotificationType,
    Policy,
    PolicyInitiator,
    PolicyStatus,
    Role,
    SignatureWebhookPayload,
    TERMINAL_CREDIT_STATUSES,
    TransactionType,
    User,
    WebhookResult,
    utcnow,
)
from .signature import SignatureRequester
from .store import DocumentStore
from .wallet import WalletService

logger = logging.getLogger(__name__)

NON_TERMINAL_STATUSES = tuple(s for s in CreditRequestStatus if s not in TERMINAL_CREDIT_STATUSES)


class CreditRequestService:
    def __init__(
        self,
        store: DocumentStore,
        wallet: WalletService,
        notifier: Notifier,
        audit: AuditTrail,
        signature: SignatureRequester,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.wallet = wallet
        self.notifier = notifier
        self.audit = audit
        self.signature = signature
        self._clock = clock

    # ==================== CREATE ====================

    def create(self, actor: User, payload: CreateCreditRequest) -> CreditRequestResponse:
        beneficiary = require_user(self.store, payload.user_id)
        if payload.amount <= 0:
            raise ValidationFailedError("Amount must be greater than zero.")
        if not beneficiary.hod_id:
            raise ValidationFailedError("User has no HOD assigned.")
        hod = self.store.get(collections.USERS, beneficiary.hod_id)
        if not hod or not is_admin_or_hod(User(**hod)):
            raise ValidationFailedError("User's assigned HOD is no longer an Admin or HOD.")

        if payload.type == CreditRequestType.POLICY:
            self._validate_policy_request(actor, beneficiary, payload)
            initial_status = CreditRequestStatus.PROVISIONAL
        else:
            self._validate_freelancer_request(actor, beneficiary)
            initial_status = CreditRequestStatus.PENDING_APPROVAL

        now = self._clock()
        request = CreditRequest(
            id=uuid4(),
            user_id=beneficiary.id,
            initiator_id=actor.id,
            hod_id=beneficiary.hod_id,
            type=payload.type,
            policy_id=payload.policy_id if payload.type == CreditRequestType.POLICY else None,
            base_amount=payload.base_amount,
            bonus=payload.bonus,
            deductions=payload.deductions,
            amount=payload.amount,
            currency=beneficiary.currency,
            calculation_breakdown=payload.calculation_breakdown,
            notes=payload.notes,
            documents=payload.documents,
            status=initial_status,
            created_at=now,
            updated_at=now,
        )
        self.store.insert(collections.CREDIT_REQUESTS, request.model_dump())

        if request.type == CreditRequestType.POLICY:
            request = self._dispatch_signature(actor, beneficiary, request)
            message = "Credit request created. Signature request sent to employee."
        else:
            message = "Credit request created and sent to HOD for approval."

        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="credit_request_created",
            entity_type="credit_request",
            entity_id=request.id,
            details={"user_id": str(beneficiary.id), "amount": str(request.amount), "type": request.type.value},
        ))
        self.notifier.emit(NotificationEvent(
            user_id=beneficiary.id,
            title="Credit request created",
            message=(
                "A policy-based credit request is awaiting your signature."
                if request.type == CreditRequestType.POLICY
                else "A freelancer credit request has been submitted and is pending HOD approval."
            ),
            type=NotificationType.INFO,
            action_url="/transactions",
        ))
        self.notifier.emit(NotificationEvent(
            user_id=request.hod_id,
            title="Credit request pending approval",
            message=f"{beneficiary.display_name} has a credit request awaiting your approval.",
            type=NotificationType.ACTION,
            action_url="/approvals",
        ))
        logger.info(
            "Credit request %s (%s, %s) created for %s by %s",
            request.id, request.type.value, request.status.value, beneficiary.id, actor.id,
        )
        return CreditRequestResponse(request=request, message=message)

    # ==================== TRANSITIONS ====================

    def sign(self, actor: User, request_id: UUID, signature: str) -> CreditRequest:
        request = self._require_own_policy_request(actor, request_id, "Signature is only required for policy-based requests.")
        if not request.can_sign():
            raise InvalidStateTransitionError("Request is not awaiting signature.")
        signed = self._transition(
            request,
            CreditRequestStatus.PENDING_APPROVAL,
            allowed_from=(CreditRequestStatus.PENDING_SIGNATURE,),
            user_signature=signature,
            user_signed_at=self._clock(),
        )
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="credit_request_signed",
            entity_type="credit_request",
            entity_id=request_id,
        ))
        self._notify_ready_for_approval(signed, actor)
        return signed

    def reject_by_user(self, actor: User, request_id: UUID, reason: str) -> CreditRequest:
        request = self._require_own_policy_request(actor, request_id, "Only policy-based requests can be rejected by the employee.")
        rejected = self._transition(
            request,
            CreditRequestStatus.REJECTED_BY_USER,
            allowed_from=(CreditRequestStatus.PENDING_SIGNATURE,),
            user_rejection_reason=reason,
        )
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="credit_request_rejected_by_user",
            entity_type="credit_request",
            entity_id=request_id,
            details={"reason": reason},
        ))
        self.notifier.emit(NotificationEvent(
            user_id=rejected.hod_id,
            title="Credit request declined",
            message=f"{actor.display_name} declined a credit request. Reason: {reason}",
            type=NotificationType.WARNING,
            action_url="/approvals",
        ))
        return rejected

    def approve(self, actor: User, request_id: UUID) -> CreditRequestResponse:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        request = self.get(request_id)
        self._require_approver(actor, request)
        if not request.can_approve():
            raise InvalidStateTransitionError("Only pending approvals can be approved.")

        now = self._clock()
        approved = self._transition(
            request,
            CreditRequestStatus.APPROVED,
            allowed_from=(CreditRequestStatus.PENDING_APPROVAL,),
            hod_approved_by=actor.id,
            hod_approved_at=now,
        )
        try:
            transaction = self.wallet.post_transaction(
                approved.user_id,
                TransactionType.CREDIT,
                approved.amount,
                description="Freelancer Amount" if approved.type == CreditRequestType.FREELANCER else "Policy Credit",
                currency=approved.currency,
                credit_request_id=approved.id,
            )
        except Exception:
            self._revert_approval(approved, request)
            raise
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="credit_request_approved",
            entity_type="credit_request",
            entity_id=request_id,
            details={"transaction_id": str(transaction.id), "amount": str(approved.amount)},
        ))
        self.notifier.emit(NotificationEvent(
            user_id=approved.user_id,
            title="Credit request approved",
            message=f"Your credit request for {format_amount(approved.amount, approved.currency)} was approved.",
            type=NotificationType.SUCCESS,
            action_url="/transactions",
        ))
        return CreditRequestResponse(
            request=approved,
            transaction=transaction,
            message="Credit request approved and credited to wallet.",
        )

    def reject_by_hod(self, actor: User, request_id: UUID, reason: str) -> CreditRequest:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        request = self.get(request_id)
        self._require_approver(actor, request)
        rejected = self._transition(
            request,
            CreditRequestStatus.REJECTED_BY_HOD,
            allowed_from=NON_TERMINAL_STATUSES,
            hod_rejected_by=actor.id,
            hod_rejection_reason=reason,
        )
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="credit_request_rejected_by_hod",
            entity_type="credit_request",
            entity_id=request_id,
            details={"reason": reason},
        ))
        self.notifier.emit(NotificationEvent(
            user_id=rejected.user_id,
            title="Credit request rejected",
            message=f"Your credit request was rejected. Reason: {reason}",
            type=NotificationType.WARNING,
            action_url="/transactions",
        ))
        return rejected

    def handle_signature_webhook(self, payload: SignatureWebhookPayload) -> WebhookResult:
        """Completion callback from the e-sign provider: the oldest request awaiting signature moves on."""
        email = payload.resolved_email()
        if not email:
            raise ValidationFailedError("Email missing in webhook payload")
        logger.info("Signature webhook received for %s", email)

        doc = self.store.find_one(collections.USERS, {"email": email})
        if not doc:
            logger.warning("Signature webhook for unknown user %s", email)
            raise NotFoundError("User not found")
        user = User(**doc)

        waiting = self.store.find(
            collections.CREDIT_REQUESTS,
            {"user_id": user.id, "status": CreditRequestStatus.PENDING_SIGNATURE},
        )
        if not waiting:
            logger.warning("No request awaiting signature for %s", email)
            return WebhookResult(updated=False, message="No pending request found")

        oldest = CreditRequest(**waiting[-1])
        signed = self._transition(
            oldest,
            CreditRequestStatus.PENDING_APPROVAL,
            allowed_from=(CreditRequestStatus.PENDING_SIGNATURE,),
            user_signed_at=self._clock(),
        )
        self.audit.record(AuditEvent(
            actor_id=user.id,
            action="credit_request_signed",
            entity_type="credit_request",
            entity_id=signed.id,
            details={"source": "signature_webhook", "status": payload.status},
        ))
        self._notify_ready_for_approval(signed, user)
        return WebhookResult(updated=True, request_id=signed.id, message="Status updated successfully")

    # ==================== QUERIES ====================

    def get(self, request_id: UUID) -> CreditRequest:
        doc = self.store.get(collections.CREDIT_REQUESTS, request_id)
        if not doc:
            raise NotFoundError(f"Credit request {request_id} not found")
        return CreditRequest(**doc)

    def list_for_actor(self, actor: User) -> list[CreditRequest]:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        filters = None if actor.role == Role.ADMIN else {"hod_id": actor.id}
        return self._find(filters)

    def pending_approvals(self, actor: User) -> list[CreditRequest]:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        filters = {"status": CreditRequestStatus.PENDING_APPROVAL}
        if actor.role == Role.HOD:
            filters["hod_id"] = actor.id
        return self._find(filters)

    def my_requests(self, actor: User) -> list[CreditRequest]:
        return self._find({"user_id": actor.id})

    def submissions(self, actor: User) -> list[CreditRequest]:
        return self._find({"initiator_id": actor.id})

    def hydrate(self, requests: Iterable[CreditRequest]) -> list[CreditRequestDetail]:
        requests = list(requests)
        if not requests:
            return []
        user_ids = list({uid for r in requests for uid in (r.user_id, r.initiator_id, r.hod_id)})
        policy_ids = list({r.policy_id for r in requests if r.policy_id})
        users = {doc["id"]: User(**doc) for doc in self.store.find(collections.USERS, {"id": user_ids})}
        policies = (
            {doc["id"]: Policy(**doc) for doc in self.store.find(collections.POLICIES, {"id": policy_ids})}
            if policy_ids else {}
        )
        return [
            CreditRequestDetail(
                request=r,
                user=users.get(r.user_id),
                initiator=users.get(r.initiator_id),
                hod=users.get(r.hod_id),
                policy=policies.get(r.policy_id) if r.policy_id else None,
            )
            for r in requests
        ]

    # ==================== HELPERS ====================

    def _validate_policy_request(self, actor: User, beneficiary: User, payload: CreateCreditRequest) -> None:
        if not payload.policy_id:
            raise ValidationFailedError("Policy is required for policy-based requests.")
        doc = self.store.find_one(
            collections.POLICY_ASSIGNMENTS,
            {"user_id": beneficiary.id, "policy_id": payload.policy_id},
        )
        if not doc:
            raise ValidationFailedError("Policy is not assigned to this employee.")
        assignment = EmployeePolicyAssignment(**doc)

        policy = self.store.get(collections.POLICIES, payload.policy_id)
        if not policy or Policy(**policy).status != PolicyStatus.ACTIVE:
            raise ValidationFailedError("Policy is not active.")
        if assignment.effective_date > self._clock():
            raise ValidationFailedError("Policy assignment is not yet effective.")

        links = [
            PolicyInitiator(**link)
            for link in self.store.find(collections.POLICY_INITIATORS, {"assignment_id": assignment.id})
        ]
        require_beneficiary_access(actor, beneficiary, CreditRequestType.POLICY, links)

    def _validate_freelancer_request(self, actor: User, beneficiary: User) -> None:
        if not beneficiary.is_freelancer:
            raise ValidationFailedError("Selected user is not a freelancer.")
        links = [
            EmployeeInitiator(**link)
            for link in self.store.find(collections.EMPLOYEE_INITIATORS, {"employee_id": beneficiary.id})
        ]
        require_beneficiary_access(actor, beneficiary, CreditRequestType.FREELANCER, links)

    def _dispatch_signature(self, actor: User, beneficiary: User, request: CreditRequest) -> CreditRequest:
        details = (
            f"Policy: {request.policy_id} | Notes: {request.notes or 'N/A'} | "
            f"Breakdown: {request.calculation_breakdown or 'N/A'}"
        )
        try:
            handle = self.signature.request_signature(
                beneficiary.email, beneficiary.name, request.amount, details,
            )
        except Exception as e:
            logger.error("Signature request for credit request %s failed: %s", request.id, e)
            self._transition(
                request,
                CreditRequestStatus.SIGNATURE_FAILED,
                allowed_from=(CreditRequestStatus.PROVISIONAL,),
            )
            self.audit.record(AuditEvent(
                actor_id=actor.id,
                action="credit_request_signature_failed",
                entity_type="credit_request",
                entity_id=request.id,
                details={"error": str(e)},
            ))
            raise UpstreamFailureError("Failed to create signature document") from e

        return self._transition(
            request,
            CreditRequestStatus.PENDING_SIGNATURE,
            allowed_from=(CreditRequestStatus.PROVISIONAL,),
            signature_handle=handle,
        )

    def _transition(
        self,
        request: CreditRequest,
        target: CreditRequestStatus,
        allowed_from: tuple,
        **changes,
    ) -> CreditRequest:
        if request.status not in allowed_from:
            raise InvalidStateTransitionError(
                f"Cannot move credit request from {request.status.value} to {target.value}"
            )
        changes.update(status=target, version=request.version + 1, updated_at=self._clock())
        updated = self.store.update_one(
            collections.CREDIT_REQUESTS,
            {"id": request.id, "status": request.status, "version": request.version},
            changes,
        )
        if updated is None:
            logger.warning("Credit request %s changed while moving to %s", request.id, target.value)
            raise InvalidStateTransitionError(f"Credit request {request.id} was modified concurrently")
        logger.info("Credit request %s: %s -> %s", request.id, request.status.value, target.value)
        return CreditRequest(**updated)

    def _revert_approval(self, approved: CreditRequest, original: CreditRequest) -> None:
        restored = self.store.update_one(
            collections.CREDIT_REQUESTS,
            {"id": approved.id, "status": CreditRequestStatus.APPROVED, "version": approved.version},
            {
                "status": original.status,
                "hod_approved_by": original.hod_approved_by,
                "hod_approved_at": original.hod_approved_at,
                "version": approved.version + 1,
                "updated_at": self._clock(),
            },
        )
        if restored is None:
            logger.error("Could not restore credit request %s after a failed wallet credit", approved.id)
        else:
            logger.warning(
                "Credit request %s restored to %s after a failed wallet credit",
                approved.id, original.status.value,
            )

    def _require_own_policy_request(self, actor: User, request_id: UUID, type_message: str) -> CreditRequest:
        doc = self.store.get(collections.CREDIT_REQUESTS, request_id)
        if not doc or doc["user_id"] != actor.id:
            raise ForbiddenError("Forbidden")
        request = CreditRequest(**doc)
        if request.type != CreditRequestType.POLICY:
            raise ValidationFailedError(type_message)
        return request

    def _require_approver(self, actor: User, request: CreditRequest) -> None:
        if actor.role == Role.HOD and request.hod_id != actor.id:
            raise ForbiddenError("You can only act on requests from your team.")

    def _notify_ready_for_approval(self, request: CreditRequest, signer: User) -> None:
        self.notifier.emit(NotificationEvent(
            user_id=request.hod_id,
            title="Credit request ready for approval",
            message=f"{signer.display_name} signed a credit request and it is ready for approval.",
            type=NotificationType.ACTION,
            action_url="/approvals",
        ))

    def _find(self, filters: Optional[dict]) -> list[CreditRequest]:
        return [CreditRequest(**doc) for doc in self.store.find(collections.CREDIT_REQUESTS, filters)]
