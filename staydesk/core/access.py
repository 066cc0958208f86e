"""Role-based access guard.

A closed role enumeration and one capability table; every operation asks
``authorize`` instead of comparing role strings at the call site.
"""
from enum import Enum

from staydesk.core.errors import AccountInactive, Forbidden


class Role(str, Enum):
    GUEST = "GUEST"
    STAFF = "STAFF"
    ADMIN = "ADMIN"


class Operation(str, Enum):
    CREATE_BOOKING = "create_booking"
    VIEW_BOOKING = "view_booking"
    CANCEL_BOOKING = "cancel_booking"
    INITIATE_PAYMENT = "initiate_payment"
    CONFIRM_MOBILE_PAYMENT = "confirm_mobile_payment"
    ISSUE_REFUND = "issue_refund"
    MANAGE_ROOMS = "manage_rooms"
    VIEW_FINANCIAL_REPORTS = "view_financial_reports"
    MANAGE_USERS = "manage_users"


class Scope(str, Enum):
    OWN = "own"          # only records the actor owns
    ANY = "any"          # any record
    PARTIAL = "partial"  # restricted view (financial reports for staff)


_STAFF = {
    Operation.CREATE_BOOKING: Scope.ANY,
    Operation.VIEW_BOOKING: Scope.ANY,
    Operation.CANCEL_BOOKING: Scope.ANY,
    Operation.INITIATE_PAYMENT: Scope.ANY,
    Operation.CONFIRM_MOBILE_PAYMENT: Scope.ANY,
    Operation.ISSUE_REFUND: Scope.ANY,
    Operation.VIEW_FINANCIAL_REPORTS: Scope.PARTIAL,
}

CAPABILITIES: dict[Role, dict[Operation, Scope]] = {
    Role.GUEST: {
        Operation.CREATE_BOOKING: Scope.OWN,
        Operation.VIEW_BOOKING: Scope.OWN,
        Operation.CANCEL_BOOKING: Scope.OWN,
        Operation.INITIATE_PAYMENT: Scope.OWN,
    },
    Role.STAFF: _STAFF,
    Role.ADMIN: {
        **_STAFF,
        Operation.VIEW_FINANCIAL_REPORTS: Scope.ANY,
        Operation.MANAGE_ROOMS: Scope.ANY,
        Operation.MANAGE_USERS: Scope.ANY,
    },
}


def role_of(user) -> Role:
    try:
        return Role(user.role)
    except ValueError:
        raise Forbidden(f"unknown role {user.role!r}")


def authorize(user, operation: Operation, owner_id: str | None = None) -> Scope:
    """Return the scope ``user`` holds for ``operation``.

    Raises AccountInactive for a disabled account whatever its role, and
    Forbidden when the role lacks the capability or, under OWN scope, when
    ``owner_id`` is someone else.
    """
    if not user.is_active:
        raise AccountInactive("account is inactive", user_id=user.id)
    role = role_of(user)
    scope = CAPABILITIES[role].get(operation)
    if scope is None:
        raise Forbidden(f"{role.value} may not {operation.value}", role=role.value, operation=operation.value)
    if scope is Scope.OWN and owner_id is not None and owner_id != user.id:
        raise Forbidden(f"{operation.value} is limited to your own bookings", operation=operation.value)
    return scope


def is_staff(user) -> bool:
    return role_of(user) in (Role.STAFF, Role.ADMIN)
