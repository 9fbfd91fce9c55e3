"""
Unit Tests for Redemptions

Tests cover:
1. Submission checks against the wallet balance
2. Processing posts exactly one debit
3. Role checks for the accounts queue
"""

from decimal import Decimal

import pytest

from incentives import store as collections
from incentives.errors import (
    ForbiddenError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    ValidationFailedError,
)
from incentives.models import (
    CreateRedemptionRequest,
    ProcessRedemptionRequest,
    RedemptionStatus,
    TransactionType,
)

from conftest import fund


def redemption(amount: str, bank_details: str = "HDFC 0001 IFSC HDFC0000001") -> CreateRedemptionRequest:
    return CreateRedemptionRequest(amount=Decimal(amount), method="bank_transfer", bank_details=bank_details)


@pytest.fixture
def funded(system, hod, freelancer):
    fund(system, hod, freelancer, "500.00")
    return freelancer


class TestCreateRedemption:
    """Submitting a redemption request."""

    def test_over_balance_is_refused_without_a_row(self, system, funded):
        with pytest.raises(InsufficientFundsError):
            system.redemptions.create(funded, redemption("600.00"))

        assert system.store.count(collections.REDEMPTION_REQUESTS) == 0

    def test_within_balance_is_pending(self, system, funded):
        response = system.redemptions.create(funded, redemption("300.00"))

        assert response.redemption.status == RedemptionStatus.PENDING
        assert response.redemption.amount == Decimal("300.00")
        assert response.redemption.bank_details == "HDFC 0001 IFSC HDFC0000001"
        assert system.wallet.current_balance(funded.id) == Decimal("500.00")

    def test_empty_bank_details_rejected(self, system, funded):
        with pytest.raises(ValidationFailedError):
            system.redemptions.create(funded, redemption("100", bank_details="   "))

    def test_non_positive_amount_rejected(self, system, funded):
        with pytest.raises(ValidationFailedError):
            system.redemptions.create(funded, redemption("0"))

    def test_accounts_users_are_notified(self, system, funded, accountant):
        system.redemptions.create(funded, redemption("100"))

        titles = [n.title for n in system.inbox.list_for_user(accountant.id)]
        assert titles == ["New redemption request"]

    def test_legacy_account_role_is_notified(self, system, funded, accountant):
        system.store.update_one(collections.USERS, {"id": accountant.id}, {"role": "accounts_manager"})

        system.redemptions.create(funded, redemption("100"))

        assert system.inbox.unread_count(accountant.id) == 1


class TestProcessRedemption:
    """Accounts staff paying out a redemption."""

    def test_process_posts_debit(self, system, funded, accountant):
        created = system.redemptions.create(funded, redemption("300.00"))

        response = system.redemptions.process(
            accountant, created.redemption.id, ProcessRedemptionRequest(transaction_reference="UTR123"),
        )

        assert response.redemption.status == RedemptionStatus.COMPLETED
        assert response.redemption.processed_by == accountant.id
        assert response.redemption.transaction_reference == "UTR123"
        assert response.transaction.type == TransactionType.DEBIT
        assert response.transaction.amount == Decimal("300.00")
        assert response.transaction.description == "Redemption via bank_transfer"
        assert system.wallet.current_balance(funded.id) == Decimal("200.00")

    def test_completed_is_never_debited_twice(self, system, funded, accountant):
        created = system.redemptions.create(funded, redemption("100"))
        system.redemptions.process(accountant, created.redemption.id, ProcessRedemptionRequest(transaction_reference="A"))

        with pytest.raises(InvalidStateTransitionError):
            system.redemptions.process(accountant, created.redemption.id, ProcessRedemptionRequest(transaction_reference="B"))

        debits = [e for e in system.wallet.transactions(funded.id) if e.type == TransactionType.DEBIT]
        assert len(debits) == 1
        assert system.wallet.current_balance(funded.id) == Decimal("400.00")

    def test_start_processing_then_complete(self, system, funded, accountant):
        created = system.redemptions.create(funded, redemption("50"))

        started = system.redemptions.start_processing(accountant, created.redemption.id)
        assert started.status == RedemptionStatus.PROCESSING

        response = system.redemptions.process(
            accountant, created.redemption.id, ProcessRedemptionRequest(transaction_reference="UTR9"),
        )
        assert response.redemption.status == RedemptionStatus.COMPLETED

    def test_balance_rechecked_at_processing(self, system, funded, accountant):
        first = system.redemptions.create(funded, redemption("400"))
        second = system.redemptions.create(funded, redemption("400"))
        system.redemptions.process(accountant, first.redemption.id, ProcessRedemptionRequest(transaction_reference="1"))

        with pytest.raises(InsufficientFundsError):
            system.redemptions.process(accountant, second.redemption.id, ProcessRedemptionRequest(transaction_reference="2"))

        assert system.redemptions.get(second.redemption.id).status == RedemptionStatus.PENDING
        assert system.wallet.current_balance(funded.id) == Decimal("100")

    def test_reference_required(self, system, funded, accountant):
        created = system.redemptions.create(funded, redemption("50"))

        with pytest.raises(ValidationFailedError):
            system.redemptions.process(accountant, created.redemption.id, ProcessRedemptionRequest(transaction_reference=" "))

    def test_employee_cannot_process(self, system, funded, employee):
        created = system.redemptions.create(funded, redemption("50"))

        with pytest.raises(ForbiddenError):
            system.redemptions.process(employee, created.redemption.id, ProcessRedemptionRequest(transaction_reference="X"))

    def test_hod_cannot_see_queue(self, system, hod):
        with pytest.raises(ForbiddenError):
            system.redemptions.queue(hod)


class TestListings:
    """Queue and personal listings."""

    def test_queue_filters_by_status(self, system, funded, accountant, admin):
        first = system.redemptions.create(funded, redemption("10"))
        system.redemptions.create(funded, redemption("20"))
        system.redemptions.process(accountant, first.redemption.id, ProcessRedemptionRequest(transaction_reference="R"))

        pending = system.redemptions.queue(admin, RedemptionStatus.PENDING)
        assert [r.amount for r in pending] == [Decimal("20")]
        assert len(system.redemptions.queue(accountant)) == 2

    def test_my_requests_are_newest_first(self, system, funded):
        system.redemptions.create(funded, redemption("10"))
        system.redemptions.create(funded, redemption("20"))

        assert [r.amount for r in system.redemptions.my_requests(funded)] == [Decimal("20"), Decimal("10")]
