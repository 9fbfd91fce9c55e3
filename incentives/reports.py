"""
Dashboard counters and the management overview report.

Money is never summed across currencies: every amount in a report is a
mapping of currency to total.
"""

import logging
from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from . import store as collections
from .access import ADMIN_OR_HOD, expand_role_filter, require_role
from .currency import Currency, sum_by_currency
from .errors import ValidationFailedError
from .models import (
    CreditRequest,
    CreditRequestStatus,
    CreditRequestType,
    PolicyStatus,
    RedemptionRequest,
    RedemptionStatus,
    Role,
    TransactionType,
    User,
    WalletSummary,
    WalletTransaction,
    utcnow,
)
from .settings import Settings, get_settings
from .store import DocumentStore
from .wallet import WalletService

logger = logging.getLogger(__name__)


# ==================== RESULTS ====================

class AdminDashboard(BaseModel):
    total_users: int
    total_hods: int
    total_policies: int
    pending_approvals: int
    pending_redemptions: int
    credits_issued: dict[Currency, Decimal] = Field(default_factory=dict)


class HodDashboard(BaseModel):
    team_size: int
    active_policies: int
    pending_approvals: int
    credits_issued: dict[Currency, Decimal] = Field(default_factory=dict)


class AccountDashboard(BaseModel):
    pending_redemptions: int
    processing_redemptions: int
    completed_this_month: int


class EmployeeDashboard(BaseModel):
    wallet: WalletSummary
    pending_signatures: int
    pending_requests: int
    active_policy_assignments: int
    earnings: Decimal


Dashboard = Union[AdminDashboard, HodDashboard, AccountDashboard, EmployeeDashboard]


class MonthlyPoint(BaseModel):
    month: str
    label: str
    totals: dict[Currency, Decimal] = Field(default_factory=dict)


class PolicyUsage(BaseModel):
    policy_id: UUID
    name: str
    requests: int


class EmployeeTypeCount(BaseModel):
    type: str
    count: int


class ReportTotals(BaseModel):
    total_credits: dict[Currency, Decimal] = Field(default_factory=dict)
    total_redemptions: dict[Currency, Decimal] = Field(default_factory=dict)
    pending_approvals: int = 0
    pending_signatures: int = 0
    pending_redemptions: int = 0


class ReportOverview(BaseModel):
    months: int
    totals: ReportTotals
    credits_by_month: list[MonthlyPoint]
    redemptions_by_month: list[MonthlyPoint]
    top_policies: list[PolicyUsage]
    employee_types: list[EmployeeTypeCount]


def month_key(moment: datetime) -> str:
    return f"{moment.year}-{moment.month:02d}"


def trailing_months(now: datetime, months: int) -> list[tuple[str, str]]:
    """(key, label) pairs for the last ``months`` calendar months, oldest first."""
    index = now.year * 12 + now.month - 1
    result = []
    for offset in range(months - 1, -1, -1):
        year, month = divmod(index - offset, 12)
        first = datetime(year, month + 1, 1)
        result.append((month_key(first), first.strftime("%b %Y")))
    return result


def monthly_series(
    transactions: list[WalletTransaction],
    months: list[tuple[str, str]],
) -> list[MonthlyPoint]:
    buckets: dict[str, list[WalletTransaction]] = {key: [] for key, _ in months}
    for entry in transactions:
        key = month_key(entry.created_at)
        if key in buckets:
            buckets[key].append(entry)
    return [
        MonthlyPoint(
            month=key,
            label=label,
            totals=sum_by_currency(buckets[key], lambda e: e.amount, lambda e: e.currency),
        )
        for key, label in months
    ]


class ReportService:
    def __init__(
        self,
        store: DocumentStore,
        wallet: WalletService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.wallet = wallet
        self.settings = settings or get_settings()
        self._clock = clock

    # ==================== DASHBOARD ====================

    def dashboard(self, actor: User) -> Dashboard:
        if actor.role == Role.ADMIN:
            return self._admin_dashboard()
        if actor.role == Role.HOD:
            return self._hod_dashboard(actor)
        if actor.role == Role.ACCOUNT:
            return self._account_dashboard()
        return self._employee_dashboard(actor)

    def _admin_dashboard(self) -> AdminDashboard:
        credits = [e for e in self.wallet.all_transactions() if e.type == TransactionType.CREDIT]
        return AdminDashboard(
            total_users=self.store.count(collections.USERS),
            total_hods=self.store.count(collections.USERS, {"role": expand_role_filter(Role.HOD)}),
            total_policies=self.store.count(collections.POLICIES),
            pending_approvals=self.store.count(
                collections.CREDIT_REQUESTS, {"status": CreditRequestStatus.PENDING_APPROVAL},
            ),
            pending_redemptions=self.store.count(
                collections.REDEMPTION_REQUESTS, {"status": RedemptionStatus.PENDING},
            ),
            credits_issued=sum_by_currency(credits, lambda e: e.amount, lambda e: e.currency),
        )

    def _hod_dashboard(self, actor: User) -> HodDashboard:
        team_ids = [u.id for u in self._scope_users(actor)]
        credits = [
            e for e in self.wallet.transactions_for_users(team_ids)
            if e.type == TransactionType.CREDIT
        ]
        return HodDashboard(
            team_size=len(team_ids),
            active_policies=self.store.count(collections.POLICIES, {"status": PolicyStatus.ACTIVE}),
            pending_approvals=self.store.count(
                collections.CREDIT_REQUESTS,
                {"hod_id": actor.id, "status": CreditRequestStatus.PENDING_APPROVAL},
            ),
            credits_issued=sum_by_currency(credits, lambda e: e.amount, lambda e: e.currency),
        )

    def _account_dashboard(self) -> AccountDashboard:
        now = self._clock()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        completed = [
            RedemptionRequest(**doc)
            for doc in self.store.find(collections.REDEMPTION_REQUESTS, {"status": RedemptionStatus.COMPLETED})
        ]
        return AccountDashboard(
            pending_redemptions=self.store.count(
                collections.REDEMPTION_REQUESTS, {"status": RedemptionStatus.PENDING},
            ),
            processing_redemptions=self.store.count(
                collections.REDEMPTION_REQUESTS, {"status": RedemptionStatus.PROCESSING},
            ),
            completed_this_month=sum(
                1 for r in completed if r.processed_at is not None and r.processed_at >= month_start
            ),
        )

    def _employee_dashboard(self, actor: User) -> EmployeeDashboard:
        summary = self.wallet.summary(actor)
        return EmployeeDashboard(
            wallet=summary,
            pending_signatures=self.store.count(
                collections.CREDIT_REQUESTS,
                {"user_id": actor.id, "status": CreditRequestStatus.PENDING_SIGNATURE},
            ),
            pending_requests=self.store.count(
                collections.CREDIT_REQUESTS,
                {
                    "user_id": actor.id,
                    "status": [CreditRequestStatus.PENDING_SIGNATURE, CreditRequestStatus.PENDING_APPROVAL],
                },
            ),
            active_policy_assignments=self.store.count(collections.POLICY_ASSIGNMENTS, {"user_id": actor.id}),
            earnings=summary.earned,
        )

    # ==================== OVERVIEW ====================

    def overview(self, actor: User, months: Optional[int] = None) -> ReportOverview:
        require_role(actor, ADMIN_OR_HOD, "HOD access required")
        if months is None:
            months = self.settings.report_default_months
        low, high = self.settings.report_min_months, self.settings.report_max_months
        if months < low or months > high:
            raise ValidationFailedError(f"Months must be between {low} and {high}.")

        users = self._scope_users(actor)
        user_ids = [u.id for u in users]
        if actor.role == Role.ADMIN:
            requests = [CreditRequest(**doc) for doc in self.store.find(collections.CREDIT_REQUESTS)]
            transactions = self.wallet.all_transactions()
            redemptions = [RedemptionRequest(**doc) for doc in self.store.find(collections.REDEMPTION_REQUESTS)]
        else:
            requests = [
                CreditRequest(**doc)
                for doc in self.store.find(collections.CREDIT_REQUESTS, {"hod_id": actor.id})
            ]
            transactions = self.wallet.transactions_for_users(user_ids)
            redemptions = [
                RedemptionRequest(**doc)
                for doc in self.store.find(collections.REDEMPTION_REQUESTS, {"user_id": user_ids})
            ] if user_ids else []

        credits = [e for e in transactions if e.type == TransactionType.CREDIT]
        debits = [e for e in transactions if e.type == TransactionType.DEBIT]
        window = trailing_months(self._clock(), months)

        totals = ReportTotals(
            total_credits=sum_by_currency(credits, lambda e: e.amount, lambda e: e.currency),
            total_redemptions=sum_by_currency(debits, lambda e: e.amount, lambda e: e.currency),
            pending_approvals=sum(1 for r in requests if r.status == CreditRequestStatus.PENDING_APPROVAL),
            pending_signatures=sum(1 for r in requests if r.status == CreditRequestStatus.PENDING_SIGNATURE),
            pending_redemptions=sum(1 for r in redemptions if r.status == RedemptionStatus.PENDING),
        )
        logger.debug("Overview for %s over %d months: %d requests", actor.id, months, len(requests))
        return ReportOverview(
            months=months,
            totals=totals,
            credits_by_month=monthly_series(credits, window),
            redemptions_by_month=monthly_series(debits, window),
            top_policies=self._top_policies(requests),
            employee_types=[
                EmployeeTypeCount(type=kind, count=count)
                for kind, count in Counter(
                    u.employee_type.value if u.employee_type else "unknown" for u in users
                ).items()
            ],
        )

    def _top_policies(self, requests: list[CreditRequest]) -> list[PolicyUsage]:
        counts = Counter(
            r.policy_id for r in requests
            if r.type == CreditRequestType.POLICY and r.policy_id is not None
        )
        ranked = counts.most_common(self.settings.report_top_policies)
        names = {
            doc["id"]: doc["name"]
            for doc in self.store.find(collections.POLICIES, {"id": [policy_id for policy_id, _ in ranked]})
        } if ranked else {}
        return [
            PolicyUsage(policy_id=policy_id, name=names.get(policy_id, "Unknown Policy"), requests=count)
            for policy_id, count in ranked
        ]

    def _scope_users(self, actor: User) -> list[User]:
        if actor.role == Role.ADMIN:
            docs = self.store.find(collections.USERS)
        else:
            docs = self.store.find(collections.USERS, {"hod_id": actor.id})
        return [User(**doc) for doc in docs]
