import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from . import store as collections
from .currency import Currency
from .errors import InsufficientFundsError, ValidationFailedError
from .models import (
    OPEN_CREDIT_STATUSES,
    TransactionType,
    User,
    Wallet,
    WalletSummary,
    WalletTransaction,
    utcnow,
)
from .store import DocumentStore

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class WalletService:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock

    def current_balance(self, user_id: UUID) -> Decimal:
        wallet = self.store.get(collections.WALLETS, user_id)
        if not wallet:
            return ZERO
        return Decimal(wallet["balance"])

    def computed_balance(self, user_id: UUID) -> Decimal:
        entries = self.store.find(collections.WALLET_TRANSACTIONS, {"user_id": user_id})
        return sum((WalletTransaction(**e).signed_amount for e in entries), ZERO)

    def get_wallet(self, user_id: UUID) -> Optional[Wallet]:
        wallet = self.store.get(collections.WALLETS, user_id)
        return Wallet(**wallet) if wallet else None

    def post_transaction(
        self,
        user_id: UUID,
        entry_type: TransactionType,
        amount: Decimal,
        description: str,
        currency: Currency = Currency.INR,
        credit_request_id: Optional[UUID] = None,
        redemption_request_id: Optional[UUID] = None,
    ) -> WalletTransaction:
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationFailedError("Transaction amount must be greater than zero.")

        with self.store.locked(f"wallet:{user_id}"):
            existing = self._find_by_provenance(entry_type, credit_request_id, redemption_request_id)
            if existing:
                logger.info(
                    "Skipping duplicate %s posting for user %s (transaction %s)",
                    entry_type.value, user_id, existing.id,
                )
                return existing

            current = self.current_balance(user_id)
            if entry_type == TransactionType.DEBIT and amount > current:
                raise InsufficientFundsError("Insufficient balance")
            new_balance = current + amount if entry_type == TransactionType.CREDIT else current - amount

            now = self._clock()
            entry_data = {
                "id": uuid4(),
                "user_id": user_id,
                "type": entry_type,
                "amount": amount,
                "balance": new_balance,
                "currency": currency,
                "description": description,
                "credit_request_id": credit_request_id,
                "redemption_request_id": redemption_request_id,
                "created_at": now,
            }
            with self.store.transaction():
                self.store.insert(collections.WALLET_TRANSACTIONS, entry_data)
                self.store.upsert(
                    collections.WALLETS,
                    {"user_id": user_id},
                    {"balance": new_balance, "updated_at": now},
                    defaults={"id": user_id},
                )

        logger.info(
            "Posted %s of %s for user %s, balance now %s",
            entry_type.value, amount, user_id, new_balance,
        )
        return WalletTransaction(**entry_data)

    def transactions(self, user_id: UUID) -> list[WalletTransaction]:
        return [
            WalletTransaction(**e)
            for e in self.store.find(collections.WALLET_TRANSACTIONS, {"user_id": user_id})
        ]

    def transactions_for_users(self, user_ids: list[UUID]) -> list[WalletTransaction]:
        if not user_ids:
            return []
        return [
            WalletTransaction(**e)
            for e in self.store.find(collections.WALLET_TRANSACTIONS, {"user_id": list(user_ids)})
        ]

    def all_transactions(self) -> list[WalletTransaction]:
        return [WalletTransaction(**e) for e in self.store.find(collections.WALLET_TRANSACTIONS)]

    def summary(self, user: User) -> WalletSummary:
        entries = self.transactions(user.id)
        earned = sum((e.amount for e in entries if e.type == TransactionType.CREDIT), ZERO)
        redeemed = sum((e.amount for e in entries if e.type == TransactionType.DEBIT), ZERO)
        open_requests = self.store.find(
            collections.CREDIT_REQUESTS,
            {"user_id": user.id, "status": list(OPEN_CREDIT_STATUSES)},
        )
        pending = sum((Decimal(r["amount"]) for r in open_requests), ZERO)

        return WalletSummary(
            user_id=user.id,
            currency=user.currency,
            balance=self.current_balance(user.id),
            earned=earned,
            pending=pending,
            redeemed=redeemed,
            available=earned - redeemed,
        )

    def _find_by_provenance(
        self,
        entry_type: TransactionType,
        credit_request_id: Optional[UUID],
        redemption_request_id: Optional[UUID],
    ) -> Optional[WalletTransaction]:
        if credit_request_id is not None:
            filters = {"type": entry_type, "credit_request_id": credit_request_id}
        elif redemption_request_id is not None:
            filters = {"type": entry_type, "redemption_request_id": redemption_request_id}
        else:
            return None
        existing = self.store.find_one(collections.WALLET_TRANSACTIONS, filters)
        return WalletTransaction(**existing) if existing else None
