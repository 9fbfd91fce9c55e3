"""
Incentive Credits

This package provides:
- Users, HODs, policies and policy assignments with initiator links
- Credit request lifecycle: provisional → pending_signature → pending_approval → approved / rejected
- Append-only wallet ledger with a per-user balance projection
- Redemption requests paid out by accounts users
- Notifications, audit trail, feature grants and reports
"""

from .errors import (
    ErrorKind,
    IncentiveError,
    NotFoundError,
    ForbiddenError,
    InvalidStateTransitionError,
    ValidationFailedError,
    InsufficientFundsError,
    UpstreamFailureError,
)
from .models import (
    Role,
    EmployeeType,
    CreditRequestType,
    CreditRequestStatus,
    RedemptionStatus,
    TransactionType,
    User,
    CreditRequest,
    RedemptionRequest,
    WalletTransaction,
)
from .settings import Settings, get_settings
from .store import DocumentStore, StoreClosedError
from .system import IncentiveSystem

__all__ = [
    "ErrorKind",
    "IncentiveError",
    "NotFoundError",
    "ForbiddenError",
    "InvalidStateTransitionError",
    "ValidationFailedError",
    "InsufficientFundsError",
    "UpstreamFailureError",
    "Role",
    "EmployeeType",
    "CreditRequestType",
    "CreditRequestStatus",
    "RedemptionStatus",
    "TransactionType",
    "User",
    "CreditRequest",
    "RedemptionRequest",
    "WalletTransaction",
    "Settings",
    "get_settings",
    "DocumentStore",
    "StoreClosedError",
    "IncentiveSystem",
]
