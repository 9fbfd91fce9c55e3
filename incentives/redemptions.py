import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID, uuid4

from . import store as collections
from .access import FINANCE_ROLES, expand_role_filter, require_role
from .currency import format_amount
from .errors import (
    InsufficientFundsError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from .events import AuditEvent, AuditTrail, NotificationEvent, Notifier
from .models import (
    CreateRedemptionRequest,
    NotificationType,
    ProcessRedemptionRequest,
    RedemptionRequest,
    RedemptionResponse,
    RedemptionStatus,
    Role,
    TransactionType,
    User,
    utcnow,
)
from .store import DocumentStore
from .wallet import WalletService

logger = logging.getLogger(__name__)


class RedemptionService:
    def __init__(
        self,
        store: DocumentStore,
        wallet: WalletService,
        notifier: Notifier,
        audit: AuditTrail,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.wallet = wallet
        self.notifier = notifier
        self.audit = audit
        self._clock = clock

    def create(self, actor: User, payload: CreateRedemptionRequest) -> RedemptionResponse:
        if payload.amount <= 0:
            raise ValidationFailedError("Amount must be greater than zero.")
        if not payload.method or not payload.method.strip():
            raise ValidationFailedError("Payment method is required.")
        if not payload.bank_details or not payload.bank_details.strip():
            raise ValidationFailedError("Bank/payment details are required.")

        balance = self.wallet.current_balance(actor.id)
        if payload.amount > balance:
            logger.warning(
                "Redemption of %s refused for %s: balance is %s", payload.amount, actor.id, balance,
            )
            raise InsufficientFundsError("Insufficient balance")

        now = self._clock()
        redemption = RedemptionRequest(
            id=uuid4(),
            user_id=actor.id,
            amount=payload.amount,
            currency=actor.currency,
            method=payload.method.strip(),
            bank_details=payload.bank_details.strip(),
            notes=payload.notes,
            status=RedemptionStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.store.insert(collections.REDEMPTION_REQUESTS, redemption.model_dump())

        display_amount = format_amount(redemption.amount, redemption.currency)
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="redemption_requested",
            entity_type="redemption_request",
            entity_id=redemption.id,
            details={"amount": str(redemption.amount)},
        ))
        self.notifier.emit(NotificationEvent(
            user_id=actor.id,
            title="Redemption request submitted",
            message=f"Your redemption request for {display_amount} was submitted.",
            type=NotificationType.INFO,
            action_url="/my-account",
        ))
        account_users = self.store.find(collections.USERS, {"role": expand_role_filter(Role.ACCOUNT)})
        self.notifier.emit_many([
            NotificationEvent(
                user_id=user["id"],
                title="New redemption request",
                message=f"A redemption request for {display_amount} is waiting to be processed.",
                type=NotificationType.ACTION,
                action_url="/accounts",
            )
            for user in account_users
        ])
        logger.info("Redemption %s of %s requested by %s", redemption.id, redemption.amount, actor.id)
        return RedemptionResponse(redemption=redemption, message="Redemption request submitted.")

    def start_processing(self, actor: User, redemption_id: UUID) -> RedemptionRequest:
        require_role(actor, FINANCE_ROLES, "Accounts access required")
        redemption = self.get(redemption_id)
        updated = self._transition(
            redemption,
            RedemptionStatus.PROCESSING,
            allowed_from=(RedemptionStatus.PENDING,),
            processed_by=actor.id,
        )
        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="redemption_processing_started",
            entity_type="redemption_request",
            entity_id=redemption_id,
        ))
        return updated

    def process(self, actor: User, redemption_id: UUID, payload: ProcessRedemptionRequest) -> RedemptionResponse:
        require_role(actor, FINANCE_ROLES, "Accounts access required")
        if not payload.transaction_reference or not payload.transaction_reference.strip():
            raise ValidationFailedError("Transaction reference is required.")

        redemption = self.get(redemption_id)
        if not redemption.can_process():
            raise InvalidStateTransitionError("Redemption request has already been processed.")
        # the balance may have moved since the request was raised
        balance = self.wallet.current_balance(redemption.user_id)
        if redemption.amount > balance:
            raise InsufficientFundsError("Insufficient balance")

        completed = self._transition(
            redemption,
            RedemptionStatus.COMPLETED,
            allowed_from=(RedemptionStatus.PENDING, RedemptionStatus.PROCESSING),
            processed_by=actor.id,
            processed_at=self._clock(),
            transaction_reference=payload.transaction_reference.strip(),
            payment_notes=payload.payment_notes,
        )
        try:
            transaction = self.wallet.post_transaction(
                completed.user_id,
                TransactionType.DEBIT,
                completed.amount,
                description=f"Redemption via {completed.method}",
                currency=completed.currency,
                redemption_request_id=completed.id,
            )
        except InsufficientFundsError:
            self._revert(completed, redemption)
            raise

        self.audit.record(AuditEvent(
            actor_id=actor.id,
            action="redemption_processed",
            entity_type="redemption_request",
            entity_id=redemption_id,
            details={"transaction_reference": completed.transaction_reference},
        ))
        self.notifier.emit(NotificationEvent(
            user_id=completed.user_id,
            title="Redemption processed",
            message=(
                f"Your redemption request for {format_amount(completed.amount, completed.currency)} "
                "has been processed."
            ),
            type=NotificationType.SUCCESS,
            action_url="/my-account",
        ))
        return RedemptionResponse(redemption=completed, transaction=transaction, message="Redemption processed.")

    def get(self, redemption_id: UUID) -> RedemptionRequest:
        doc = self.store.get(collections.REDEMPTION_REQUESTS, redemption_id)
        if not doc:
            raise NotFoundError(f"Redemption request {redemption_id} not found")
        return RedemptionRequest(**doc)

    def my_requests(self, actor: User) -> list[RedemptionRequest]:
        return self._find({"user_id": actor.id})

    def queue(self, actor: User, status: Optional[RedemptionStatus] = None) -> list[RedemptionRequest]:
        require_role(actor, FINANCE_ROLES, "Accounts access required")
        return self._find({"status": status} if status else None)

    def _transition(
        self,
        redemption: RedemptionRequest,
        target: RedemptionStatus,
        allowed_from: tuple,
        **changes,
    ) -> RedemptionRequest:
        if redemption.status not in allowed_from:
            raise InvalidStateTransitionError(
                f"Cannot move redemption request from {redemption.status.value} to {target.value}"
            )
        changes.update(status=target, version=redemption.version + 1, updated_at=self._clock())
        updated = self.store.update_one(
            collections.REDEMPTION_REQUESTS,
            {"id": redemption.id, "status": redemption.status, "version": redemption.version},
            changes,
        )
        if updated is None:
            raise InvalidStateTransitionError(f"Redemption request {redemption.id} was modified concurrently")
        logger.info("Redemption %s: %s -> %s", redemption.id, redemption.status.value, target.value)
        return RedemptionRequest(**updated)

    def _revert(self, completed: RedemptionRequest, original: RedemptionRequest) -> None:
        restored = self.store.update_one(
            collections.REDEMPTION_REQUESTS,
            {"id": completed.id, "status": RedemptionStatus.COMPLETED, "version": completed.version},
            {
                "status": original.status,
                "processed_by": original.processed_by,
                "processed_at": None,
                "transaction_reference": None,
                "payment_notes": None,
                "version": completed.version + 1,
                "updated_at": self._clock(),
            },
        )
        if restored is None:
            logger.error("Could not restore redemption %s after a failed debit", completed.id)
        else:
            logger.warning("Redemption %s restored to %s after a failed debit", completed.id, original.status.value)

    def _find(self, filters: Optional[dict]) -> list[RedemptionRequest]:
        return [RedemptionRequest(**doc) for doc in self.store.find(collections.REDEMPTION_REQUESTS, filters)]
