"""
Unit Tests for the Wallet ledger

Tests cover:
1. Credit and debit postings
2. Running balance snapshots
3. Projection matches the summed ledger
4. Provenance dedupe
5. Concurrent postings
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from uuid import uuid4

import pytest

from incentives.currency import Currency
from incentives.errors import InsufficientFundsError, ValidationFailedError
from incentives.models import TransactionType

from conftest import freelancer_request


class TestPostings:
    """Basic credit and debit postings."""

    def test_credit_creates_wallet_lazily(self, system, employee):
        assert system.wallet.get_wallet(employee.id) is None

        entry = system.wallet.post_transaction(
            employee.id, TransactionType.CREDIT, Decimal("250.00"), "Policy Credit",
        )

        assert entry.balance == Decimal("250.00")
        assert system.wallet.get_wallet(employee.id).balance == Decimal("250.00")

    def test_debit_reduces_balance(self, system, employee):
        system.wallet.post_transaction(employee.id, TransactionType.CREDIT, Decimal("500"), "Policy Credit")

        entry = system.wallet.post_transaction(employee.id, TransactionType.DEBIT, Decimal("300"), "Redemption")

        assert entry.balance == Decimal("200")
        assert system.wallet.current_balance(employee.id) == Decimal("200")

    def test_overdraw_rejected(self, system, employee):
        system.wallet.post_transaction(employee.id, TransactionType.CREDIT, Decimal("100"), "Policy Credit")

        with pytest.raises(InsufficientFundsError):
            system.wallet.post_transaction(employee.id, TransactionType.DEBIT, Decimal("100.01"), "Redemption")

        assert len(system.wallet.transactions(employee.id)) == 1

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount_rejected(self, system, employee, amount):
        with pytest.raises(ValidationFailedError):
            system.wallet.post_transaction(employee.id, TransactionType.CREDIT, Decimal(amount), "Policy Credit")

    def test_currency_is_recorded(self, system, freelancer):
        entry = system.wallet.post_transaction(
            freelancer.id, TransactionType.CREDIT, Decimal("10"), "Freelancer Amount", currency=Currency.USD,
        )

        assert entry.currency == Currency.USD


class TestLedgerInvariants:
    """The ledger and its projection stay consistent."""

    def test_balance_snapshots_are_monotonic(self, system, employee):
        amounts = [
            (TransactionType.CREDIT, "100"),
            (TransactionType.CREDIT, "40.50"),
            (TransactionType.DEBIT, "20"),
            (TransactionType.CREDIT, "5"),
            (TransactionType.DEBIT, "125.50"),
        ]
        for entry_type, amount in amounts:
            system.wallet.post_transaction(employee.id, entry_type, Decimal(amount), "test")

        entries = list(reversed(system.wallet.transactions(employee.id)))
        previous = Decimal("0")
        for entry in entries:
            assert entry.balance == previous + entry.signed_amount
            previous = entry.balance
        assert previous == Decimal("0")

    def test_projection_matches_ledger(self, system, employee):
        for amount in ["10", "20", "30"]:
            system.wallet.post_transaction(employee.id, TransactionType.CREDIT, Decimal(amount), "test")
        system.wallet.post_transaction(employee.id, TransactionType.DEBIT, Decimal("15"), "test")

        assert system.wallet.computed_balance(employee.id) == system.wallet.current_balance(employee.id)
        assert system.wallet.current_balance(employee.id) == Decimal("45")

    def test_same_provenance_posts_once(self, system, employee):
        request_id = uuid4()

        first = system.wallet.post_transaction(
            employee.id, TransactionType.CREDIT, Decimal("75"), "Policy Credit", credit_request_id=request_id,
        )
        second = system.wallet.post_transaction(
            employee.id, TransactionType.CREDIT, Decimal("75"), "Policy Credit", credit_request_id=request_id,
        )

        assert first.id == second.id
        assert system.wallet.current_balance(employee.id) == Decimal("75")


class TestConcurrentPostings:
    """Postings for one user serialize."""

    def test_parallel_credits_sum_exactly(self, system, employee):
        def credit(_):
            return system.wallet.post_transaction(employee.id, TransactionType.CREDIT, Decimal("1.25"), "test")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(credit, range(40)))

        assert system.wallet.current_balance(employee.id) == Decimal("50.00")
        assert system.wallet.computed_balance(employee.id) == Decimal("50.00")
        balances = sorted(e.balance for e in system.wallet.transactions(employee.id))
        assert balances == [Decimal("1.25") * n for n in range(1, 41)]

    def test_parallel_debits_never_overdraw(self, system, employee):
        system.wallet.post_transaction(employee.id, TransactionType.CREDIT, Decimal("100"), "test")

        def debit(_):
            try:
                system.wallet.post_transaction(employee.id, TransactionType.DEBIT, Decimal("30"), "test")
                return True
            except InsufficientFundsError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(debit, range(10)))

        assert results.count(True) == 3
        assert system.wallet.current_balance(employee.id) == Decimal("10")

    def test_readers_never_see_ledger_and_balance_disagree(self, system, employee):
        stop = threading.Event()

        def credit(_):
            system.wallet.post_transaction(employee.id, TransactionType.CREDIT, Decimal("2"), "test")

        def watch():
            mismatches = 0
            while not stop.is_set():
                with system.store.transaction():
                    if system.wallet.current_balance(employee.id) != system.wallet.computed_balance(employee.id):
                        mismatches += 1
            return mismatches

        with ThreadPoolExecutor(max_workers=6) as pool:
            watcher = pool.submit(watch)
            list(pool.map(credit, range(50)))
            stop.set()
            assert watcher.result() == 0

        assert system.wallet.current_balance(employee.id) == Decimal("100")
        assert system.store.held_key_locks == 0


class TestSummary:
    """Wallet summary figures."""

    def test_summary_counts_pending_requests(self, system, hod, freelancer):
        approved = system.credit_requests.create(hod, freelancer_request(freelancer, "500"))
        system.credit_requests.approve(hod, approved.request.id)
        system.credit_requests.create(hod, freelancer_request(freelancer, "120"))
        system.wallet.post_transaction(freelancer.id, TransactionType.DEBIT, Decimal("200"), "Redemption")

        summary = system.wallet.summary(freelancer)

        assert summary.currency == Currency.USD
        assert summary.earned == Decimal("500")
        assert summary.redeemed == Decimal("200")
        assert summary.pending == Decimal("120")
        assert summary.available == Decimal("300")
        assert summary.balance == Decimal("300")
