"""
Unit Tests for the role and relationship checks
"""

from uuid import uuid4

import pytest

from incentives.access import (
    can_act_on_beneficiary,
    can_manage_user,
    expand_role_filter,
    require_role,
    require_team_scope,
)
from incentives.errors import ErrorKind, ForbiddenError
from incentives.models import (
    CreditRequestType,
    EmployeeInitiator,
    EmployeeType,
    PolicyInitiator,
    Role,
    User,
    utcnow,
)


def make_user(role: Role, hod_id=None, employee_type=EmployeeType.PERMANENT_INDIA) -> User:
    return User(
        id=uuid4(),
        name=role.value,
        email=f"{uuid4().hex[:8]}@example.com",
        role=role,
        employee_type=employee_type,
        hod_id=hod_id,
        created_at=utcnow(),
    )


def employee_link(employee: User, initiator: User) -> EmployeeInitiator:
    return EmployeeInitiator(
        id=uuid4(), employee_id=employee.id, initiator_id=initiator.id,
        assigned_by=initiator.id, assigned_at=utcnow(),
    )


def policy_link(initiator: User) -> PolicyInitiator:
    return PolicyInitiator(
        id=uuid4(), assignment_id=uuid4(), initiator_id=initiator.id,
        assigned_by=initiator.id, assigned_at=utcnow(),
    )


class TestExpandRoleFilter:
    """Role filters include legacy stored values."""

    def test_employee_includes_legacy(self):
        assert expand_role_filter(Role.EMPLOYEE) == ["employee", "user", "initiator"]

    def test_account_includes_legacy(self):
        assert expand_role_filter("account") == ["account", "accounts_manager"]

    def test_legacy_input_is_canonicalized(self):
        assert expand_role_filter("accounts_manager")[0] == "account"

    def test_admin_has_no_aliases(self):
        assert expand_role_filter(Role.ADMIN) == ["admin"]


class TestBeneficiaryAccess:
    """Who may raise a request for whom."""

    def test_admin_and_hod_always(self):
        beneficiary = make_user(Role.EMPLOYEE)
        for role in (Role.ADMIN, Role.HOD):
            assert can_act_on_beneficiary(make_user(role), beneficiary, CreditRequestType.POLICY, [])

    def test_freelancer_initiator(self):
        initiator = make_user(Role.EMPLOYEE)
        freelancer = make_user(Role.EMPLOYEE, employee_type=EmployeeType.FREELANCER_INDIA)
        links = [employee_link(freelancer, initiator)]

        assert can_act_on_beneficiary(initiator, freelancer, CreditRequestType.FREELANCER, links)
        assert not can_act_on_beneficiary(make_user(Role.EMPLOYEE), freelancer, CreditRequestType.FREELANCER, links)

    def test_freelancer_link_for_other_employee_ignored(self):
        initiator = make_user(Role.EMPLOYEE)
        freelancer = make_user(Role.EMPLOYEE, employee_type=EmployeeType.FREELANCER_INDIA)
        links = [employee_link(make_user(Role.EMPLOYEE), initiator)]

        assert not can_act_on_beneficiary(initiator, freelancer, CreditRequestType.FREELANCER, links)

    def test_policy_initiator(self):
        initiator = make_user(Role.EMPLOYEE)
        beneficiary = make_user(Role.EMPLOYEE)

        assert can_act_on_beneficiary(initiator, beneficiary, CreditRequestType.POLICY, [policy_link(initiator)])
        assert not can_act_on_beneficiary(initiator, beneficiary, CreditRequestType.POLICY, [])

    def test_account_role_is_not_an_initiator(self):
        accountant = make_user(Role.ACCOUNT)

        assert not can_act_on_beneficiary(accountant, make_user(Role.EMPLOYEE), CreditRequestType.POLICY, [])


class TestManagement:
    """Team scoping."""

    def test_hod_manages_team_and_self(self):
        hod = make_user(Role.HOD)
        member = make_user(Role.EMPLOYEE, hod_id=hod.id)

        assert can_manage_user(hod, member)
        assert can_manage_user(hod, hod)
        assert not can_manage_user(hod, make_user(Role.EMPLOYEE))

    def test_admin_manages_everyone(self):
        assert can_manage_user(make_user(Role.ADMIN), make_user(Role.HOD))

    def test_employee_manages_nobody(self):
        employee = make_user(Role.EMPLOYEE)

        assert not can_manage_user(employee, employee)

    def test_require_team_scope(self):
        hod = make_user(Role.HOD)
        with pytest.raises(ForbiddenError):
            require_team_scope(hod, make_user(Role.EMPLOYEE), "team only")
        require_team_scope(make_user(Role.ADMIN), make_user(Role.EMPLOYEE), "team only")

    def test_require_role_message_and_kind(self):
        with pytest.raises(ForbiddenError) as exc:
            require_role(make_user(Role.EMPLOYEE), (Role.ADMIN,), "Admin access required")

        assert exc.value.message == "Admin access required"
        assert exc.value.to_dict() == {"kind": ErrorKind.FORBIDDEN.value, "message": "Admin access required"}
