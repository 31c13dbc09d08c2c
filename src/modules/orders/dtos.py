"""Order DTOs and value objects.

Framework-agnostic contracts using Pydantic v2, all immutable
(``frozen=True``).

- ``Actor``: who is calling, in which role.
- ``PlaceOrderItemDTO`` / ``PlaceOrderDTO``: order placement input.
- ``StatusChangeDTO`` / ``HandleReturnDTO``: command inputs.
- ``Assignment``: the single active transporter assignment of an order.
- ``CancellationDetails`` / ``DisputeDetails`` / ``ReturnDetails``: the
  set-once audit documents stored on the order as JSON.
- ``OrderErrorDTO`` / ``OrderResult``: what every service command returns.
- ``TimelineEntryDTO``: one line of the merged order timeline.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from modules.orders.constants import (
    ActorRole,
    AssignmentMode,
    AssignmentPurpose,
    OrderFamily,
    OrderStatus,
    ReturnAction,
)
from modules.orders.exceptions import AuditViolation

if TYPE_CHECKING:
    from modules.orders.exceptions import OrderDomainError


# ---------------------------------------------------------------------------
# Callers
# ---------------------------------------------------------------------------


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    role: str

    @field_validator("role")
    @classmethod
    def role_must_be_known(cls, v: str) -> str:
        if v not in ActorRole.values:
            raise ValueError(f"Unknown role '{v}'.")
        return v

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


# ---------------------------------------------------------------------------
# Input DTOs
# ---------------------------------------------------------------------------


class PlaceOrderItemDTO(BaseModel):
    """A single line item; ``total_price`` defaults to quantity × unit price."""

    model_config = ConfigDict(frozen=True)

    product_ref: str
    quantity: int
    unit_price: Decimal
    total_price: Optional[Decimal] = None

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Quantity must be at least 1.")
        return v

    @field_validator("unit_price")
    @classmethod
    def unit_price_must_not_be_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Unit price cannot be negative.")
        return v

    @property
    def line_total(self) -> Decimal:
        if self.total_price is not None:
            return self.total_price
        return self.unit_price * self.quantity


class PlaceOrderDTO(BaseModel):
    """Order placement request.

    Validates:
    - ``items`` must contain at least one item.
    - the counterpart ids required by the family are present.
    """

    model_config = ConfigDict(frozen=True)

    family: str
    wholesaler_id: str
    retailer_id: str = ""
    supplier_id: str = ""
    items: List[PlaceOrderItemDTO]
    total_amount: Optional[Decimal] = None
    final_amount: Optional[Decimal] = None
    notes: str = ""
    idempotency_key: Optional[str] = None

    @field_validator("family")
    @classmethod
    def family_must_be_known(cls, v: str) -> str:
        if v not in OrderFamily.values:
            raise ValueError(f"Unknown order family '{v}'.")
        return v

    @field_validator("items")
    @classmethod
    def items_must_not_be_empty(
        cls, v: List[PlaceOrderItemDTO]
    ) -> List[PlaceOrderItemDTO]:
        if not v:
            raise ValueError("Order must have at least one item.")
        return v

    @model_validator(mode="after")
    def counterparts_must_be_present(self):
        if self.family == OrderFamily.RETAILER_WHOLESALER and not self.retailer_id:
            raise ValueError("retailer_id is required for retailer orders.")
        if self.family == OrderFamily.WHOLESALER_SUPPLIER and not self.supplier_id:
            raise ValueError("supplier_id is required for supplier orders.")
        return self

    @property
    def computed_total(self) -> Decimal:
        if self.total_amount is not None:
            return self.total_amount
        return sum((item.line_total for item in self.items), Decimal("0.00"))


class StatusChangeDTO(BaseModel):
    """Body of a status change request, shared by all roles."""

    model_config = ConfigDict(frozen=True)

    status: str
    reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    notes: str = ""
    assignment_type: Optional[str] = None
    transporter_id: Optional[str] = None
    resolution_type: Optional[str] = None
    compensation_amount: Optional[Decimal] = None

    @field_validator("status")
    @classmethod
    def status_must_be_known(cls, v: str) -> str:
        if v not in OrderStatus.values:
            raise ValueError(f"Unknown status '{v}'.")
        return v

    @field_validator("assignment_type")
    @classmethod
    def assignment_type_must_be_known(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in AssignmentMode.values:
            raise ValueError(f"Unknown assignment type '{v}'.")
        return v

    def payload(self) -> Dict[str, Any]:
        return self.model_dump()


class HandleReturnDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    rejection_reason: Optional[str] = None
    return_notes: str = ""

    @field_validator("action")
    @classmethod
    def action_must_be_known(cls, v: str) -> str:
        if v not in ReturnAction.values:
            raise ValueError("Action must be 'accept' or 'reject'.")
        return v


# ---------------------------------------------------------------------------
# Value objects stored on the order
# ---------------------------------------------------------------------------


class Assignment(BaseModel):
    """The order's current transporter assignment.

    ``transporter_id`` is the named transporter for specific assignments
    and stays empty for free-pool offers until one transporter wins.
    ``resolved_at`` is set once the assignment is accepted.
    """

    model_config = ConfigDict(frozen=True)

    mode: str
    purpose: str = AssignmentPurpose.DELIVERY
    transporter_id: Optional[str] = None
    assigned_at: datetime
    expires_at: datetime
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def is_expired(self, now: datetime) -> bool:
        return not self.is_resolved and now >= self.expires_at

    def is_open(self, now: datetime) -> bool:
        return not self.is_resolved and now < self.expires_at


class AuditDocument(BaseModel):
    """Set-once document: a field may go from empty to a value, never back."""

    model_config = ConfigDict(frozen=True)

    def filled(self, **values: Any) -> AuditDocument:
        for name in values:
            current = getattr(self, name)
            if current not in (None, False, ""):
                raise AuditViolation(
                    f"{type(self).__name__}.{name} is already recorded."
                )
        return self.model_copy(update=values)

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class CancellationDetails(AuditDocument):
    cancelled_by: str
    cancelled_by_role: str
    cancelled_at: datetime
    reason: str
    previous_status: str


class DisputeDetails(AuditDocument):
    disputed_by: str
    disputed_at: datetime
    reason: str
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolution_type: Optional[str] = None
    compensation_amount: Optional[Decimal] = None

    @property
    def is_open(self) -> bool:
        return not self.resolved


class ReturnDetails(AuditDocument):
    returned_by: str
    return_requested_at: datetime
    return_reason: str
    return_accepted_at: Optional[datetime] = None
    return_rejected_at: Optional[datetime] = None
    return_rejection_reason: Optional[str] = None
    return_completed_at: Optional[datetime] = None
    return_notes: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.return_rejected_at is None and self.return_completed_at is None


# ---------------------------------------------------------------------------
# Output DTOs
# ---------------------------------------------------------------------------


class OrderErrorDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    detail: str
    context: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: OrderDomainError) -> OrderErrorDTO:
        return cls(code=exc.code, detail=exc.detail, context=exc.context())


class TimelineEntryDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    at: datetime
    summary: str
    actor_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class OrderResult(BaseModel):
    """Outcome of a service call: either ``order`` or ``error`` is set."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    ok: bool
    order: Any = None
    error: Optional[OrderErrorDTO] = None
    timeline: List[TimelineEntryDTO] = Field(default_factory=list)

    @classmethod
    def success(cls, order: Any, **extra: Any) -> OrderResult:
        return cls(ok=True, order=order, **extra)

    @classmethod
    def failure(cls, exc: OrderDomainError) -> OrderResult:
        return cls(ok=False, error=OrderErrorDTO.from_exception(exc))


class OrderStatisticsDTO(BaseModel):
    """Order counts and amounts over the orders an actor takes part in."""

    model_config = ConfigDict(frozen=True)

    timeframe: str
    since: Optional[datetime] = None
    total_orders: int = 0
    total_amount: Decimal = Decimal("0.00")
    average_order_value: Decimal = Decimal("0.00")
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_family: Dict[str, int] = Field(default_factory=dict)
