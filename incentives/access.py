"""
Role and relationship checks.

Every function here is pure: callers load the users and initiator links and
pass them in. A failed ``require_*`` check raises ``ForbiddenError``.
"""

from typing import Iterable, Union

from .errors import ForbiddenError
from .models import (
    CreditRequestType,
    EmployeeInitiator,
    LEGACY_ROLE_ALIASES,
    PolicyInitiator,
    Role,
    User,
    normalize_role,
)

ADMIN_OR_HOD = (Role.ADMIN, Role.HOD)
FINANCE_ROLES = (Role.ADMIN, Role.ACCOUNT)


def expand_role_filter(role: Union[str, Role]) -> list[str]:
    """All stored role strings that mean ``role``, canonical value first."""
    canonical = normalize_role(role)
    legacy = [alias for alias, target in LEGACY_ROLE_ALIASES.items() if target == canonical]
    return [canonical.value, *legacy]


def has_role(user: User, roles: Iterable[Role]) -> bool:
    return user.role in tuple(roles)


def is_admin_or_hod(user: User) -> bool:
    return has_role(user, ADMIN_OR_HOD)


def is_team_member(hod: User, candidate: User) -> bool:
    return candidate.hod_id is not None and candidate.hod_id == hod.id


def can_manage_user(actor: User, target: User) -> bool:
    if actor.role == Role.ADMIN:
        return True
    if actor.role == Role.HOD:
        return actor.id == target.id or is_team_member(actor, target)
    return False


def can_act_on_beneficiary(
    actor: User,
    beneficiary: User,
    request_type: CreditRequestType,
    initiator_links: Iterable[Union[PolicyInitiator, EmployeeInitiator]],
) -> bool:
    if is_admin_or_hod(actor):
        return True
    if request_type == CreditRequestType.FREELANCER:
        links = [
            link for link in initiator_links
            if isinstance(link, EmployeeInitiator) and link.employee_id == beneficiary.id
        ]
    else:
        # policy links are already scoped to the beneficiary's assignment
        links = [link for link in initiator_links if isinstance(link, PolicyInitiator)]
    return any(link.initiator_id == actor.id for link in links)


def require_role(actor: User, roles: Iterable[Role], message: str) -> User:
    if not has_role(actor, roles):
        raise ForbiddenError(message)
    return actor


def require_beneficiary_access(
    actor: User,
    beneficiary: User,
    request_type: CreditRequestType,
    initiator_links: Iterable[Union[PolicyInitiator, EmployeeInitiator]],
) -> None:
    if can_act_on_beneficiary(actor, beneficiary, request_type, initiator_links):
        return
    if request_type == CreditRequestType.FREELANCER:
        raise ForbiddenError("You are not an initiator for this freelancer.")
    raise ForbiddenError("You are not an initiator for this policy assignment.")


def require_team_scope(actor: User, target: User, message: str) -> None:
    if actor.role == Role.HOD and not is_team_member(actor, target):
        raise ForbiddenError(message)
