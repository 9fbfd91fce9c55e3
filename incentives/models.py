from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator

from .currency import Currency, currency_for_employee_type


class Role(str, Enum):
    ADMIN = "admin"
    HOD = "hod"
    EMPLOYEE = "employee"
    ACCOUNT = "account"


class EmployeeType(str, Enum):
    PERMANENT_INDIA = "permanent_india"
    PERMANENT_USA = "permanent_usa"
    FREELANCER_INDIA = "freelancer_india"
    FREELANCER_USA = "freelancer_usa"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PolicyStatus(str, Enum):
    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


class CreditRequestType(str, Enum):
    FREELANCER = "freelancer"
    POLICY = "policy"


class CreditRequestStatus(str, Enum):
    PROVISIONAL = "provisional"
    PENDING_SIGNATURE = "pending_signature"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED_BY_USER = "rejected_by_user"
    REJECTED_BY_HOD = "rejected_by_hod"
    SIGNATURE_FAILED = "signature_failed"


TERMINAL_CREDIT_STATUSES = frozenset({
    CreditRequestStatus.APPROVED,
    CreditRequestStatus.REJECTED_BY_USER,
    CreditRequestStatus.REJECTED_BY_HOD,
    CreditRequestStatus.SIGNATURE_FAILED,
})

OPEN_CREDIT_STATUSES = (
    CreditRequestStatus.PENDING_SIGNATURE,
    CreditRequestStatus.PENDING_APPROVAL,
)


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class NotificationType(str, Enum):
    INFO = "info"
    ACTION = "action"
    SUCCESS = "success"
    WARNING = "warning"


# Values stored by older releases, mapped onto the canonical enums whenever a
# record crosses into a model.
LEGACY_ROLE_ALIASES = {
    "user": Role.EMPLOYEE,
    "initiator": Role.EMPLOYEE,
    "accounts_manager": Role.ACCOUNT,
}

LEGACY_EMPLOYEE_TYPE_ALIASES = {
    "permanent": EmployeeType.PERMANENT_INDIA,
}


def normalize_role(value: Union[str, Role]) -> Role:
    if isinstance(value, Role):
        return value
    key = str(value).strip().lower()
    return LEGACY_ROLE_ALIASES.get(key) or Role(key)


def normalize_employee_type(value: Union[str, EmployeeType, None]) -> Optional[EmployeeType]:
    if value is None or isinstance(value, EmployeeType):
        return value
    key = str(value).strip().lower()
    if not key:
        return None
    return LEGACY_EMPLOYEE_TYPE_ALIASES.get(key) or EmployeeType(key)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CanonicalUserFields(BaseModel):
    @field_validator("role", mode="before", check_fields=False)
    @classmethod
    def _canonical_role(cls, value):
        if value is None:
            return value
        return normalize_role(value)

    @field_validator("employee_type", mode="before", check_fields=False)
    @classmethod
    def _canonical_employee_type(cls, value):
        return normalize_employee_type(value)


# ==================== ENTITIES ====================

class User(_CanonicalUserFields):
    id: UUID
    name: str = ""
    email: str
    phone: Optional[str] = None
    role: Role
    employee_type: Optional[EmployeeType] = None
    hod_id: Optional[UUID] = None
    status: UserStatus = UserStatus.ACTIVE
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_freelancer(self) -> bool:
        return bool(self.employee_type) and self.employee_type.value.startswith("freelancer")

    @property
    def currency(self) -> Currency:
        return currency_for_employee_type(self.employee_type)

    @property
    def display_name(self) -> str:
        return self.name or self.email


class Policy(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    eligibility_criteria: Optional[str] = None
    calculation_logic: Optional[str] = None
    status: PolicyStatus = PolicyStatus.ACTIVE
    created_by: UUID
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class EmployeePolicyAssignment(BaseModel):
    id: UUID
    user_id: UUID
    policy_id: UUID
    effective_date: datetime
    assigned_by: UUID
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PolicyInitiator(BaseModel):
    id: UUID
    assignment_id: UUID
    initiator_id: UUID
    assigned_by: UUID
    assigned_at: datetime


class EmployeeInitiator(BaseModel):
    id: UUID
    employee_id: UUID
    initiator_id: UUID
    assigned_by: UUID
    assigned_at: datetime


class CreditRequest(BaseModel):
    id: UUID
    user_id: UUID
    initiator_id: UUID
    hod_id: UUID
    type: CreditRequestType
    policy_id: Optional[UUID] = None
    base_amount: Decimal
    bonus: Decimal = Decimal("0")
    deductions: Decimal = Decimal("0")
    amount: Decimal
    currency: Currency = Currency.INR
    calculation_breakdown: Optional[str] = None
    notes: Optional[str] = None
    documents: Optional[str] = None
    status: CreditRequestStatus
    signature_handle: Optional[str] = None
    user_signature: Optional[str] = None
    user_signed_at: Optional[datetime] = None
    user_rejection_reason: Optional[str] = None
    hod_approved_by: Optional[UUID] = None
    hod_approved_at: Optional[datetime] = None
    hod_rejected_by: Optional[UUID] = None
    hod_rejection_reason: Optional[str] = None
    version: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CREDIT_STATUSES

    def can_sign(self) -> bool:
        return self.status == CreditRequestStatus.PENDING_SIGNATURE

    def can_approve(self) -> bool:
        return self.status == CreditRequestStatus.PENDING_APPROVAL


class Wallet(BaseModel):
    user_id: UUID
    balance: Decimal
    updated_at: datetime


class WalletTransaction(BaseModel):
    id: UUID
    user_id: UUID
    type: TransactionType
    amount: Decimal
    balance: Decimal
    currency: Currency = Currency.INR
    description: str
    credit_request_id: Optional[UUID] = None
    redemption_request_id: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.type == TransactionType.CREDIT else -self.amount


class RedemptionRequest(BaseModel):
    id: UUID
    user_id: UUID
    amount: Decimal
    currency: Currency = Currency.INR
    method: str
    bank_details: str
    notes: Optional[str] = None
    status: RedemptionStatus = RedemptionStatus.PENDING
    processed_by: Optional[UUID] = None
    processed_at: Optional[datetime] = None
    transaction_reference: Optional[str] = None
    payment_notes: Optional[str] = None
    version: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_process(self) -> bool:
        return self.status in (RedemptionStatus.PENDING, RedemptionStatus.PROCESSING)


class Notification(BaseModel):
    id: UUID
    user_id: UUID
    title: str
    message: str
    type: NotificationType = NotificationType.INFO
    action_url: Optional[str] = None
    read_at: Optional[datetime] = None
    created_at: datetime


class AuditLog(BaseModel):
    id: UUID
    user_id: UUID
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    before_value: Optional[dict[str, Any]] = None
    after_value: Optional[dict[str, Any]] = None
    created_at: datetime


class AccessGrant(BaseModel):
    id: UUID
    user_id: UUID
    feature: str
    reason: str
    granted_by: UUID
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


# ==================== COMMANDS ====================

class NewUser(_CanonicalUserFields):
    name: str
    email: str
    phone: Optional[str] = None
    role: Role
    employee_type: EmployeeType
    hod_id: Optional[UUID] = None
    freelancer_initiator_ids: list[UUID] = Field(default_factory=list)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Asha Rao",
            "email": "asha@example.com",
            "role": "employee",
            "employee_type": "freelancer_india",
            "hod_id": "550e8400-e29b-41d4-a716-446655440000",
            "freelancer_initiator_ids": ["660e8400-e29b-41d4-a716-446655440001"],
        }
    })


class UserUpdate(_CanonicalUserFields):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[Role] = None
    employee_type: Optional[EmployeeType] = None
    hod_id: Optional[UUID] = None
    status: Optional[UserStatus] = None
    freelancer_initiator_ids: Optional[list[UUID]] = None


class NewPolicy(BaseModel):
    name: str
    description: Optional[str] = None
    eligibility_criteria: Optional[str] = None
    calculation_logic: Optional[str] = None
    status: PolicyStatus = PolicyStatus.ACTIVE


class PolicyUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    eligibility_criteria: Optional[str] = None
    calculation_logic: Optional[str] = None
    status: Optional[PolicyStatus] = None


class AssignPolicy(BaseModel):
    user_id: UUID
    policy_id: UUID
    initiator_ids: list[UUID]
    effective_date: Optional[datetime] = None

    @field_validator("effective_date")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)


class CreateCreditRequest(BaseModel):
    user_id: UUID
    type: CreditRequestType
    policy_id: Optional[UUID] = None
    base_amount: Decimal
    bonus: Decimal = Decimal("0")
    deductions: Decimal = Decimal("0")
    amount: Decimal = Field(..., description="Amount credited on approval, taken as supplied")
    calculation_breakdown: Optional[str] = None
    notes: Optional[str] = None
    documents: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "type": "freelancer",
            "base_amount": 450.00,
            "bonus": 50.00,
            "deductions": 0,
            "amount": 500.00,
        }
    })


class WebhookContact(BaseModel):
    email: Optional[str] = None


class SignatureWebhookPayload(BaseModel):
    email: Optional[str] = None
    contact: Optional[WebhookContact] = None
    contact_email: Optional[str] = Field(default=None, alias="contactEmail")
    status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    def resolved_email(self) -> str:
        raw = self.email or (self.contact.email if self.contact else None) or self.contact_email or ""
        return raw.strip().lower()


class CreateRedemptionRequest(BaseModel):
    amount: Decimal
    method: str
    bank_details: Optional[str] = None
    notes: Optional[str] = None


class ProcessRedemptionRequest(BaseModel):
    transaction_reference: str
    payment_notes: Optional[str] = None


class GrantAccessRequest(BaseModel):
    user_id: UUID
    feature: str
    reason: str
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)


class AuditQuery(BaseModel):
    user_id: Optional[UUID] = None
    action: Optional[str] = None
    entity_type: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)


# ==================== RESULTS ====================

class CreditRequestResponse(BaseModel):
    request: CreditRequest
    transaction: Optional[WalletTransaction] = None
    message: str


class CreditRequestDetail(BaseModel):
    request: CreditRequest
    user: Optional[User] = None
    initiator: Optional[User] = None
    hod: Optional[User] = None
    policy: Optional[Policy] = None


class WebhookResult(BaseModel):
    updated: bool
    request_id: Optional[UUID] = None
    message: str


class RedemptionResponse(BaseModel):
    redemption: RedemptionRequest
    transaction: Optional[WalletTransaction] = None
    message: str


class WalletSummary(BaseModel):
    user_id: UUID
    currency: Currency
    balance: Decimal
    earned: Decimal
    pending: Decimal
    redeemed: Decimal
    available: Decimal


class AssignmentDetail(BaseModel):
    assignment: EmployeePolicyAssignment
    policy: Optional[Policy] = None
    initiators: list[User] = Field(default_factory=list)


class ScopedAssignment(BaseModel):
    assignment_id: UUID
    user: User
    policy: Policy
    effective_date: datetime


class InitiatorScope(BaseModel):
    policy_assignments: list[ScopedAssignment]
    freelancers: list[User]
