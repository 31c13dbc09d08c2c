"""Status transition validator.

Pure lookup over a per-family, per-role transition table.  Given an
order, an acting role, a requested status and the request payload it
either returns the matching ``TransitionRule`` or raises.  It never
touches the database.

The admin role may take every edge a non-transporter role may take,
except opening a dispute or a return: those belong to the buying party,
who is also the refund beneficiary.  Transporter edges stay with
transporters because they depend on the assignment.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from modules.orders.constants import (
    FAMILY_STATUSES,
    TERMINAL_STATES,
    ActorRole,
    OrderFamily,
    OrderStatus,
)
from modules.orders.exceptions import InvalidTransition, MissingRequiredField

if TYPE_CHECKING:
    from modules.orders.models import Order


class Effect:
    """Side record a transition must produce besides the status change."""

    NONE = "none"
    CANCELLATION = "cancellation"
    ASSIGNMENT = "assignment"
    ACCEPTANCE = "acceptance"
    REJECTION = "rejection"
    TRANSPORTER_CANCELLATION = "transporter_cancellation"
    DISPUTE = "dispute"
    DISPUTE_RESOLUTION = "dispute_resolution"
    RETURN_REQUEST = "return_request"
    RETURN_ACCEPTANCE = "return_acceptance"
    RETURN_REJECTION = "return_rejection"
    RETURN_COMPLETION = "return_completion"


@dataclass(frozen=True)
class TransitionRule:
    source: str
    target: str
    role: str
    effect: str = Effect.NONE
    required_fields: Tuple[str, ...] = ()


# family -> source -> role -> target -> rule
TransitionTable = Dict[str, Dict[str, Dict[str, Dict[str, TransitionRule]]]]

_TABLE: TransitionTable = {family: {} for family in OrderFamily.values}


def _edge(
    family: str,
    sources: Iterable[str],
    roles: Iterable[str],
    target: str,
    effect: str = Effect.NONE,
    required: Tuple[str, ...] = (),
) -> None:
    if isinstance(sources, str):
        sources = (sources,)
    if isinstance(roles, str):
        roles = (roles,)
    for source in sources:
        for role in roles:
            _TABLE[family].setdefault(source, {}).setdefault(role, {})[target] = (
                TransitionRule(source, target, role, effect, required)
            )


S = OrderStatus
R = ActorRole

# ---------------------------------------------------------------------------
# Retailer → Wholesaler
# ---------------------------------------------------------------------------
RW = OrderFamily.RETAILER_WHOLESALER

_edge(RW, S.PENDING, R.WHOLESALER, S.ACCEPTED)
_edge(RW, S.PENDING, R.WHOLESALER, S.REJECTED, Effect.CANCELLATION, ("reason",))
_edge(
    RW,
    (S.PENDING, S.ACCEPTED, S.PROCESSING),
    R.RETAILER,
    S.CANCELLED_BY_RETAILER,
    Effect.CANCELLATION,
    ("reason",),
)
_edge(RW, S.ACCEPTED, R.WHOLESALER, S.PROCESSING)
_edge(
    RW,
    (S.PENDING, S.ACCEPTED, S.PROCESSING),
    R.WHOLESALER,
    S.CANCELLED_BY_WHOLESALER,
    Effect.CANCELLATION,
    ("reason",),
)
_edge(
    RW,
    (
        S.PROCESSING,
        S.ASSIGNED_TO_TRANSPORTER,
        S.REJECTED_BY_TRANSPORTER,
        S.CANCELLED_BY_TRANSPORTER,
        S.DISPUTED,
        S.RETURN_REJECTED,
    ),
    R.WHOLESALER,
    S.ASSIGNED_TO_TRANSPORTER,
    Effect.ASSIGNMENT,
)
_edge(RW, S.ASSIGNED_TO_TRANSPORTER, R.TRANSPORTER, S.ACCEPTED_BY_TRANSPORTER, Effect.ACCEPTANCE)
_edge(RW, S.ASSIGNED_TO_TRANSPORTER, R.TRANSPORTER, S.RETURN_TO_WHOLESALER, Effect.ACCEPTANCE)
_edge(
    RW,
    S.ASSIGNED_TO_TRANSPORTER,
    R.TRANSPORTER,
    S.REJECTED_BY_TRANSPORTER,
    Effect.REJECTION,
    ("reason",),
)
_edge(RW, S.ACCEPTED_BY_TRANSPORTER, R.TRANSPORTER, S.IN_TRANSIT)
_edge(
    RW,
    (S.ACCEPTED_BY_TRANSPORTER, S.IN_TRANSIT),
    R.TRANSPORTER,
    S.CANCELLED_BY_TRANSPORTER,
    Effect.TRANSPORTER_CANCELLATION,
    ("reason",),
)
_edge(RW, S.IN_TRANSIT, R.TRANSPORTER, S.DELIVERED)
_edge(RW, S.DELIVERED, R.RETAILER, S.CERTIFIED)
_edge(RW, S.DELIVERED, R.RETAILER, S.DISPUTED, Effect.DISPUTE, ("reason",))
_edge(RW, S.DISPUTED, R.WHOLESALER, S.CERTIFIED, Effect.DISPUTE_RESOLUTION, ("notes",))
_edge(RW, S.RETURN_TO_WHOLESALER, R.WHOLESALER, S.RETURN_ACCEPTED, Effect.RETURN_ACCEPTANCE)
_edge(
    RW,
    S.RETURN_TO_WHOLESALER,
    R.WHOLESALER,
    S.RETURN_REJECTED,
    Effect.RETURN_REJECTION,
    ("rejection_reason",),
)

# ---------------------------------------------------------------------------
# Wholesaler → Supplier
# ---------------------------------------------------------------------------
WS = OrderFamily.WHOLESALER_SUPPLIER

_edge(WS, S.PENDING, R.SUPPLIER, S.CONFIRMED)
_edge(
    WS,
    (S.PENDING, S.CONFIRMED),
    (R.WHOLESALER, R.SUPPLIER),
    S.CANCELLED,
    Effect.CANCELLATION,
    ("reason",),
)
_edge(WS, S.CONFIRMED, R.SUPPLIER, S.IN_PRODUCTION)
_edge(WS, S.IN_PRODUCTION, R.SUPPLIER, S.READY_FOR_DELIVERY)
_edge(
    WS,
    (S.READY_FOR_DELIVERY, S.ASSIGNED_TO_TRANSPORTER),
    R.SUPPLIER,
    S.ASSIGNED_TO_TRANSPORTER,
    Effect.ASSIGNMENT,
)
_edge(WS, S.ASSIGNED_TO_TRANSPORTER, R.TRANSPORTER, S.ACCEPTED_BY_TRANSPORTER, Effect.ACCEPTANCE)
_edge(
    WS,
    S.ASSIGNED_TO_TRANSPORTER,
    R.TRANSPORTER,
    S.READY_FOR_DELIVERY,
    Effect.REJECTION,
    ("reason",),
)
_edge(WS, S.ACCEPTED_BY_TRANSPORTER, R.TRANSPORTER, S.IN_TRANSIT)
_edge(WS, S.IN_TRANSIT, R.TRANSPORTER, S.DELIVERED)
_edge(WS, S.DELIVERED, R.WHOLESALER, S.CERTIFIED)
_edge(WS, S.DELIVERED, R.WHOLESALER, S.RETURN_REQUESTED, Effect.RETURN_REQUEST, ("reason",))
_edge(WS, S.RETURN_REQUESTED, R.WHOLESALER, S.RETURN_REQUESTED, Effect.ASSIGNMENT)
_edge(WS, S.RETURN_REQUESTED, R.TRANSPORTER, S.RETURN_ACCEPTED, Effect.ACCEPTANCE)
_edge(WS, S.RETURN_ACCEPTED, R.TRANSPORTER, S.RETURN_IN_TRANSIT)
_edge(WS, S.RETURN_IN_TRANSIT, R.TRANSPORTER, S.RETURNED_TO_SUPPLIER, Effect.RETURN_COMPLETION)

del S, R, RW, WS

ACCEPTANCE_STATUSES: Dict[str, FrozenSet[str]] = {
    OrderFamily.RETAILER_WHOLESALER: frozenset(
        {OrderStatus.ACCEPTED_BY_TRANSPORTER, OrderStatus.RETURN_TO_WHOLESALER}
    ),
    OrderFamily.WHOLESALER_SUPPLIER: frozenset(
        {OrderStatus.ACCEPTED_BY_TRANSPORTER, OrderStatus.RETURN_ACCEPTED}
    ),
}

REJECTION_STATUS: Dict[str, str] = {
    OrderFamily.RETAILER_WHOLESALER: OrderStatus.REJECTED_BY_TRANSPORTER,
    OrderFamily.WHOLESALER_SUPPLIER: OrderStatus.READY_FOR_DELIVERY,
}


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def is_terminal(family: str, status: str) -> bool:
    return status in TERMINAL_STATES[family]


# Edges only the buying party itself may take.
_BUYER_EFFECTS = frozenset({Effect.DISPUTE, Effect.RETURN_REQUEST})


def _role_edges(family: str, status: str, role: str) -> Dict[str, TransitionRule]:
    by_role = _TABLE[family].get(status, {})
    if role != ActorRole.ADMIN:
        return dict(by_role.get(role, {}))
    edges: Dict[str, TransitionRule] = {}
    for owner, rules in by_role.items():
        if owner == ActorRole.TRANSPORTER:
            continue
        for target, rule in rules.items():
            if rule.effect not in _BUYER_EFFECTS:
                edges.setdefault(target, rule)
    return edges


def allowed_transitions(family: str, status: str, role: str) -> FrozenSet[str]:
    """Statuses ``role`` may request from ``status``."""
    if is_terminal(family, status):
        return frozenset()
    return frozenset(_role_edges(family, status, role))


def next_step_towards(
    family: str, current: str, requested: str
) -> Optional[TransitionRule]:
    """First edge of the shortest path from ``current`` to ``requested``.

    Explores edges of every role.  Returns ``None`` when ``requested`` is
    unreachable (or equal to ``current`` with no self edge).
    """
    edges = _TABLE[family]
    queue = deque([current])
    first_step: Dict[str, TransitionRule] = {}
    while queue:
        status = queue.popleft()
        for role, rules in edges.get(status, {}).items():
            for target, rule in rules.items():
                if target in first_step or target == current:
                    continue
                first_step[target] = first_step.get(status, rule)
                if target == requested:
                    return first_step[target]
                queue.append(target)
    return None


def validate(
    order: Order,
    role: str,
    requested_status: str,
    payload: Optional[Mapping[str, Any]] = None,
) -> TransitionRule:
    """Return the rule for ``role`` moving ``order`` to ``requested_status``.

    Raises:
        InvalidTransition: terminal order, unknown status for the family,
            or no edge for this role.
        MissingRequiredField: the edge needs a field the payload lacks.
    """
    family = order.family
    current = order.status
    payload = payload or {}

    def deny(detail: str, **hint: Any) -> InvalidTransition:
        return InvalidTransition(
            detail,
            current_status=current,
            requested_status=requested_status,
            allowed=allowed_transitions(family, current, role),
            **hint,
        )

    if requested_status not in FAMILY_STATUSES[family]:
        raise deny(f"Status '{requested_status}' does not exist for {family} orders.")

    if is_terminal(family, current):
        raise deny(f"Order is in terminal status '{current}' and cannot change.")

    rule = _role_edges(family, current, role).get(requested_status)
    if rule is None:
        if requested_status == current:
            raise deny(f"Order is already in status '{current}'.")
        step = next_step_towards(family, current, requested_status)
        if step is None:
            raise deny(
                f"Status '{requested_status}' cannot be reached from '{current}'."
            )
        if step.target == requested_status and step.role != role:
            detail = (
                f"Only a {step.role} may move the order from '{current}' "
                f"to '{requested_status}'."
            )
        else:
            detail = (
                f"Order must first reach '{step.target}' before "
                f"'{requested_status}'."
            )
        raise deny(detail, required_status=step.target, required_role=step.role)

    for field in rule.required_fields:
        value = payload.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MissingRequiredField(field)

    return rule
