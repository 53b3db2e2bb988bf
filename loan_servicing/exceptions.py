"""
Error Taxonomy Module

Structured exceptions raised by the loan servicing core. Each error carries a
``context`` dict (loan id, attempted action, current status, ...) so callers
can render a precise message without parsing strings.
"""

from typing import Any, Dict, Optional


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "detail": self.message,
            "context": {k: str(v) if v is not None else None for k, v in self.context.items()},
        }


class ValidationError(LoanServicingError):
    """Raised when caller input is malformed or missing."""


class InvalidTermError(ValidationError):
    """Raised when principal, rate or term cannot produce a schedule."""


class InvalidTransitionError(LoanServicingError):
    """Raised when a state machine precondition is violated."""

    def __init__(
        self,
        message: str,
        entity_id: str,
        current_status: str,
        attempted: str,
        entity_type: str = "loan",
    ):
        super().__init__(message, {
            f"{entity_type}_id": entity_id,
            "current_status": current_status,
            "attempted": attempted,
        })
        self.entity_id = entity_id
        self.current_status = current_status
        self.attempted = attempted


class NotAwaitingVerificationError(InvalidTransitionError):
    """Raised when verifying a payment that is not awaiting verification."""

    def __init__(self, payment_id: str, current_status: str, attempted: str):
        super().__init__(
            f"Payment {payment_id} is not awaiting verification (status: {current_status})",
            payment_id,
            current_status,
            attempted,
            entity_type="payment",
        )


class AuthorizationError(LoanServicingError):
    """Raised when an actor lacks the role or ownership for an action."""

    def __init__(self, user_id: str, role: str, action: str, resource_id: Optional[str] = None):
        super().__init__(
            f"User {user_id} with role {role} may not {action}",
            {"user_id": user_id, "role": role, "action": action, "resource_id": resource_id},
        )
        self.action = action


class NotFoundError(LoanServicingError):
    """Raised when a referenced loan or payment does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type.capitalize()} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConcurrencyConflict(LoanServicingError):
    """Raised when a record changed underneath an update. Safe to retry."""

    def __init__(self, entity_type: str, entity_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"{entity_type.capitalize()} {entity_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )


class DocumentStorageError(LoanServicingError):
    """Raised when the document store cannot persist or return a file."""
