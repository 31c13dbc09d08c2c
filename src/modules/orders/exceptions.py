"""Order domain exceptions.

Raised by the transition validator, the assignment coordinator and the
return/dispute handler.  ``OrderService`` catches every
``OrderDomainError`` and folds it into an ``OrderResult`` so that no bare
exception reaches the API layer; the views translate the error ``code``
into an HTTP status.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class OrderDomainError(Exception):
    """Base class for recoverable, caller-facing order errors."""

    code = "order_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def context(self) -> Dict[str, Any]:
        """Extra machine-readable fields for the error body."""
        return {}


class OrderNotFound(OrderDomainError):
    """The requested order does not exist."""

    code = "order_not_found"


class InvalidTransition(OrderDomainError):
    """The requested status is not reachable for this role from the current status.

    ``required_status`` is the first step on the shortest legal path towards
    the requested status, when one exists, and ``required_role`` is a role
    allowed to take that step.
    """

    code = "invalid_transition"

    def __init__(
        self,
        detail: str,
        *,
        current_status: str,
        requested_status: str,
        required_status: Optional[str] = None,
        required_role: Optional[str] = None,
        allowed: Iterable[str] = (),
    ) -> None:
        super().__init__(detail)
        self.current_status = current_status
        self.requested_status = requested_status
        self.required_status = required_status
        self.required_role = required_role
        self.allowed = sorted(allowed)

    def context(self) -> Dict[str, Any]:
        return {
            "current_status": self.current_status,
            "requested_status": self.requested_status,
            "required_status": self.required_status,
            "required_role": self.required_role,
            "allowed_transitions": self.allowed,
        }


class MissingRequiredField(OrderDomainError):
    """A transition needs a reason (or similar) that the request did not carry."""

    code = "missing_required_field"

    def __init__(self, field: str, detail: Optional[str] = None) -> None:
        super().__init__(detail or f"Field '{field}' is required for this transition.")
        self.field = field

    def context(self) -> Dict[str, Any]:
        return {"field": self.field}


class NotParticipant(OrderDomainError):
    """The actor is not a party to this order in the role they claim."""

    code = "not_participant"


class AssignmentConflict(OrderDomainError):
    """The assignment was already taken by someone else, or has expired."""

    code = "assignment_conflict"


class StoreConflict(OrderDomainError):
    """The order changed underneath the request twice in a row."""

    code = "store_conflict"


class AuditViolation(Exception):
    """An attempt to rewrite or remove an audit trail entry.

    This is a programming error, not a caller error, and is never folded
    into an ``OrderResult``.
    """
