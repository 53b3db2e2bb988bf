"""
Authorization Module

A single predicate table keyed by (role, action) whose value is the ownership
scope the actor needs over the loan. Every component consults it through
``authorize()`` instead of re-deriving role checks per entry point.

Identity itself is supplied by an external collaborator; the core only ever
sees an ``Actor`` (user id + role).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from .exceptions import AuthorizationError


class Role(Enum):
    """Roles supplied by the identity collaborator"""
    BORROWER = "borrower"
    LENDER = "lender"
    LOAN_OFFICER = "loan_officer"
    ADMIN = "admin"


class Action(Enum):
    """Actions the core exposes"""
    APPLY = "apply"
    VIEW_LOAN = "view_loan"
    APPROVE = "approve"
    REJECT = "reject"
    ACTIVATE = "activate"
    MARK_DEFAULT = "mark_default"
    RECORD_PAYMENT = "record_payment"
    SUBMIT_PAYMENT = "submit_payment"
    VERIFY_PAYMENT = "verify_payment"
    VIEW_PAYMENTS = "view_payments"


class Scope(Enum):
    """How much of the loan population a grant covers"""
    ANY = "any"            # every loan
    OWN = "own"            # loans where the actor is the borrower
    ASSIGNED = "assigned"  # loans where the actor is the loan officer


@dataclass(frozen=True)
class Actor:
    """Authenticated caller"""
    user_id: str
    role: Role

    @classmethod
    def of(cls, user_id: str, role: str) -> 'Actor':
        try:
            return cls(user_id=user_id, role=Role(role))
        except ValueError:
            raise AuthorizationError(user_id, role, "act with an unknown role")

    @property
    def is_staff(self) -> bool:
        return self.role != Role.BORROWER


POLICY: Dict[Tuple[Role, Action], Scope] = {
    # Borrowers
    (Role.BORROWER, Action.APPLY): Scope.ANY,
    (Role.BORROWER, Action.VIEW_LOAN): Scope.OWN,
    (Role.BORROWER, Action.VIEW_PAYMENTS): Scope.OWN,
    (Role.BORROWER, Action.SUBMIT_PAYMENT): Scope.OWN,

    # Lenders
    (Role.LENDER, Action.VIEW_LOAN): Scope.ANY,
    (Role.LENDER, Action.VIEW_PAYMENTS): Scope.ANY,
    (Role.LENDER, Action.APPROVE): Scope.ANY,
    (Role.LENDER, Action.REJECT): Scope.ANY,
    (Role.LENDER, Action.ACTIVATE): Scope.ANY,
    (Role.LENDER, Action.RECORD_PAYMENT): Scope.ANY,
    (Role.LENDER, Action.VERIFY_PAYMENT): Scope.ANY,

    # Loan officers work the loans assigned to them
    (Role.LOAN_OFFICER, Action.VIEW_LOAN): Scope.ASSIGNED,
    (Role.LOAN_OFFICER, Action.VIEW_PAYMENTS): Scope.ASSIGNED,
    (Role.LOAN_OFFICER, Action.RECORD_PAYMENT): Scope.ASSIGNED,
    (Role.LOAN_OFFICER, Action.VERIFY_PAYMENT): Scope.ASSIGNED,

    # Admins
    (Role.ADMIN, Action.VIEW_LOAN): Scope.ANY,
    (Role.ADMIN, Action.VIEW_PAYMENTS): Scope.ANY,
    (Role.ADMIN, Action.APPROVE): Scope.ANY,
    (Role.ADMIN, Action.REJECT): Scope.ANY,
    (Role.ADMIN, Action.ACTIVATE): Scope.ANY,
    (Role.ADMIN, Action.MARK_DEFAULT): Scope.ANY,
    (Role.ADMIN, Action.RECORD_PAYMENT): Scope.ANY,
    (Role.ADMIN, Action.VERIFY_PAYMENT): Scope.ANY,
}


def _in_scope(actor: Actor, scope: Scope, loan: Optional[Any]) -> bool:
    if scope == Scope.ANY:
        return True
    if loan is None:
        return False
    if scope == Scope.OWN:
        return loan.borrower_id == actor.user_id
    if scope == Scope.ASSIGNED:
        return loan.loan_officer_id == actor.user_id
    return False


def is_permitted(actor: Actor, action: Action, loan: Optional[Any] = None) -> bool:
    """Check the policy table for (actor.role, action) against the loan"""
    scope = POLICY.get((actor.role, action))
    if scope is None:
        return False
    return _in_scope(actor, scope, loan)


def authorize(actor: Actor, action: Action, loan: Optional[Any] = None) -> None:
    """
    Raise unless the actor may perform the action on the loan.

    Raises:
        AuthorizationError: If the role lacks the grant or the loan is out of scope
    """
    if not is_permitted(actor, action, loan):
        raise AuthorizationError(
            actor.user_id,
            actor.role.value,
            action.value,
            getattr(loan, 'id', None)
        )


def permitted_actions(role: Role) -> Set[Action]:
    """All actions a role holds some grant for"""
    return {action for (r, action) in POLICY if r == role}
