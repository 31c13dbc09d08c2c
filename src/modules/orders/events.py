"""Domain events for the Orders bounded context."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from shared.domain.events import DomainEvent


@dataclass(frozen=True, kw_only=True)
class OrderPlaced(DomainEvent):
    """Raised when an order is placed."""

    family: str
    order_number: str
    recipients: Tuple[str, ...] = ()


@dataclass(frozen=True, kw_only=True)
class OrderStatusChanged(DomainEvent):
    """Raised on every committed status transition.

    ``recipients`` are the other participants of the order, the ones a
    notification should reach.
    """

    family: str
    order_number: str
    old_status: Optional[str]
    new_status: str
    actor_id: str
    actor_role: str
    recipients: Tuple[str, ...] = ()


@dataclass(frozen=True, kw_only=True)
class TransporterAssigned(DomainEvent):
    mode: str
    purpose: str
    transporter_id: Optional[str]
    expires_at: datetime
    recipients: Tuple[str, ...] = ()


@dataclass(frozen=True, kw_only=True)
class AssignmentResolved(DomainEvent):
    """An assignment was accepted, rejected, cancelled or expired."""

    outcome: str
    mode: str
    purpose: str
    transporter_id: Optional[str]


@dataclass(frozen=True, kw_only=True)
class RefundRequested(DomainEvent):
    """A return or dispute settled in the buyer's favour; the settlement gateway pays out."""

    order_number: str
    amount: Decimal
    reason: str
    beneficiary_id: str
    metadata: dict = field(default_factory=dict)
