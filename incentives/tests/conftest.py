"""Shared fixtures: a fresh system per test with a seeded admin, a HOD and a small team."""

from decimal import Decimal
from uuid import uuid4

import pytest

from incentives import store as collections
from incentives.models import (
    AssignPolicy,
    CreateCreditRequest,
    CreditRequestType,
    EmployeeType,
    NewPolicy,
    NewUser,
    Role,
    User,
    utcnow,
)
from incentives.settings import Settings
from incentives.system import IncentiveSystem


class FakeSignatureRequester:
    """Records every request; raises when ``fail`` is set."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def request_signature(self, email, name, amount, details):
        self.calls.append({"email": email, "name": name, "amount": amount, "details": details})
        if self.fail:
            raise RuntimeError("e-sign provider unavailable")
        return f"doc-{len(self.calls)}"


@pytest.fixture
def signer():
    return FakeSignatureRequester()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def system(settings, signer):
    with IncentiveSystem(settings=settings, signature=signer) as system:
        yield system


def seed_admin(system: IncentiveSystem, email: str = "admin@example.com") -> User:
    """Bootstrap an admin straight into the store; every other user is created through the directory."""
    user_id = uuid4()
    admin = User(
        id=user_id,
        name="Admin",
        email=email,
        role=Role.ADMIN,
        employee_type=EmployeeType.PERMANENT_INDIA,
        hod_id=user_id,
        created_at=utcnow(),
    )
    system.store.insert(collections.USERS, admin.model_dump())
    return admin


@pytest.fixture
def admin(system):
    return seed_admin(system)


@pytest.fixture
def hod(system, admin):
    return system.directory.create_user(admin, NewUser(
        name="Hannah HOD",
        email="hod@example.com",
        role=Role.HOD,
        employee_type=EmployeeType.PERMANENT_INDIA,
        hod_id=admin.id,
    ))


@pytest.fixture
def other_hod(system, admin):
    return system.directory.create_user(admin, NewUser(
        name="Oscar HOD",
        email="other.hod@example.com",
        role=Role.HOD,
        employee_type=EmployeeType.PERMANENT_INDIA,
        hod_id=admin.id,
    ))


@pytest.fixture
def employee(system, hod):
    return system.directory.create_user(hod, NewUser(
        name="Priya",
        email="priya@example.com",
        role=Role.EMPLOYEE,
        employee_type=EmployeeType.PERMANENT_INDIA,
    ))


@pytest.fixture
def initiator(system, hod):
    return system.directory.create_user(hod, NewUser(
        name="Ivan Initiator",
        email="ivan@example.com",
        role=Role.EMPLOYEE,
        employee_type=EmployeeType.PERMANENT_INDIA,
    ))


@pytest.fixture
def freelancer(system, hod, initiator):
    return system.directory.create_user(hod, NewUser(
        name="Frank",
        email="frank@example.com",
        role=Role.EMPLOYEE,
        employee_type=EmployeeType.FREELANCER_USA,
        freelancer_initiator_ids=[initiator.id],
    ))


@pytest.fixture
def accountant(system, admin):
    return system.directory.create_user(admin, NewUser(
        name="Asha Accounts",
        email="accounts@example.com",
        role=Role.ACCOUNT,
        employee_type=EmployeeType.PERMANENT_INDIA,
        hod_id=admin.id,
    ))


@pytest.fixture
def policy(system, hod):
    return system.directory.create_policy(hod, NewPolicy(name="Referral Bonus"))


@pytest.fixture
def assignment(system, hod, employee, initiator, policy):
    return system.directory.assign_policy(hod, AssignPolicy(
        user_id=employee.id,
        policy_id=policy.id,
        initiator_ids=[initiator.id],
    ))


def policy_request(employee: User, policy, amount: str = "1000") -> CreateCreditRequest:
    return CreateCreditRequest(
        user_id=employee.id,
        type=CreditRequestType.POLICY,
        policy_id=policy.id,
        base_amount=Decimal(amount),
        amount=Decimal(amount),
    )


def freelancer_request(freelancer: User, amount: str = "500") -> CreateCreditRequest:
    return CreateCreditRequest(
        user_id=freelancer.id,
        type=CreditRequestType.FREELANCER,
        base_amount=Decimal(amount),
        amount=Decimal(amount),
    )


def fund(system: IncentiveSystem, hod: User, freelancer: User, amount: str) -> None:
    """Put ``amount`` into a freelancer's wallet through a real approval."""
    created = system.credit_requests.create(hod, freelancer_request(freelancer, amount))
    system.credit_requests.approve(hod, created.request.id)
