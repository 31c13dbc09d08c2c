"""Order, OrderItem, OrderStatusHistory and AssignmentRecord models.

- Order number auto-generated as human-readable identifier.
- Participants are opaque actor ids; identity lives outside this service.
- The active transporter assignment is flattened into ``assignment_*``
  columns so a single conditional UPDATE can claim it.
- ``version`` increments on every committed mutation and backs the
  compare-and-swap in the repository.
- Items, status history and assignment records are append-only.
"""

from __future__ import annotations

import secrets
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from modules.core.models import BaseModel
from modules.orders.constants import (
    FAMILY_PARTICIPANTS,
    ORDER_NUMBER_MAX_RETRIES,
    ORDER_NUMBER_PREFIXES,
    ActorRole,
    AssignmentMode,
    AssignmentOutcome,
    AssignmentPurpose,
    OrderFamily,
    OrderStatus,
)
from modules.orders.dtos import (
    Assignment,
    CancellationDetails,
    DisputeDetails,
    ReturnDetails,
)
from modules.orders.exceptions import AuditViolation
from modules.orders.transitions import is_terminal
from shared.domain.events import DomainEventMixin

logger = structlog.get_logger(__name__)


class AppendOnlyModel(BaseModel):
    """Rows are inserted once and never updated or deleted."""

    class Meta:
        abstract = True

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise AuditViolation(f"{type(self).__name__} entries are immutable.")
        super().save(*args, **kwargs)

    def delete(self, *args: Any, **kwargs: Any) -> Any:
        raise AuditViolation(f"{type(self).__name__} entries cannot be removed.")


class Order(DomainEventMixin, BaseModel):
    """Order aggregate root for both order families.

    ``order_number`` is generated on first save.
    ``retailer_id`` is empty for wholesaler → supplier orders and
    ``supplier_id`` is empty for retailer → wholesaler orders.
    """

    order_number: models.CharField = models.CharField(
        max_length=20, unique=True, editable=False
    )
    family: models.CharField = models.CharField(
        max_length=32, choices=OrderFamily.choices
    )
    status: models.CharField = models.CharField(
        max_length=32,
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING,
    )
    retailer_id: models.CharField = models.CharField(
        max_length=64, blank=True, default="", db_index=True
    )
    wholesaler_id: models.CharField = models.CharField(max_length=64, db_index=True)
    supplier_id: models.CharField = models.CharField(
        max_length=64, blank=True, default="", db_index=True
    )
    transporter_id: models.CharField = models.CharField(  # noqa: DJ01
        max_length=64, null=True, blank=True, db_index=True
    )
    total_amount: models.DecimalField = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00")
    )
    final_amount: models.DecimalField = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00")
    )
    notes: models.TextField = models.TextField(blank=True, default="")
    idempotency_key: models.CharField = models.CharField(  # noqa: DJ01
        max_length=255, unique=True, null=True, blank=True
    )

    # Active assignment
    assignment_mode: models.CharField = models.CharField(  # noqa: DJ01
        max_length=16, choices=AssignmentMode.choices, null=True, blank=True
    )
    assignment_purpose: models.CharField = models.CharField(  # noqa: DJ01
        max_length=16, choices=AssignmentPurpose.choices, null=True, blank=True
    )
    assignment_transporter_id: models.CharField = models.CharField(  # noqa: DJ01
        max_length=64, null=True, blank=True, db_index=True
    )
    assignment_assigned_at = models.DateTimeField(null=True, blank=True)
    assignment_expires_at = models.DateTimeField(null=True, blank=True)
    assignment_resolved_at = models.DateTimeField(null=True, blank=True)

    # Set-once audit documents
    cancellation_details = models.JSONField(null=True, blank=True, default=None)
    disputes = models.JSONField(default=list, blank=True)
    returns = models.JSONField(default=list, blank=True)

    version: models.PositiveIntegerField = models.PositiveIntegerField(default=1)

    # Fields a command may change; everything else is fixed at placement.
    MUTABLE_FIELDS = (
        "status",
        "transporter_id",
        "assignment_mode",
        "assignment_purpose",
        "assignment_transporter_id",
        "assignment_assigned_at",
        "assignment_expires_at",
        "assignment_resolved_at",
        "cancellation_details",
        "disputes",
        "returns",
    )

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["family", "status"], name="orders_family_status_idx"),
            models.Index(fields=["-created_at"], name="orders_created_idx"),
            models.Index(
                fields=["assignment_expires_at"],
                name="orders_assign_expiry_idx",
            ),
        ]

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.family, self.status)

    def participant_id(self, role: str) -> Optional[str]:
        """Id of the party holding ``role`` on this order, if the family has one."""
        field = FAMILY_PARTICIPANTS[self.family].get(role)
        if field is None:
            return None
        return getattr(self, field) or None

    def participants(self) -> List[str]:
        return [
            actor_id
            for role in FAMILY_PARTICIPANTS[self.family]
            if (actor_id := self.participant_id(role))
        ]

    def is_participant(self, actor_id: str, role: str) -> bool:
        if role == ActorRole.ADMIN:
            return True
        return bool(actor_id) and self.participant_id(role) == actor_id

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    @property
    def assignment(self) -> Optional[Assignment]:
        if not self.assignment_mode:
            return None
        return Assignment(
            mode=self.assignment_mode,
            purpose=self.assignment_purpose or AssignmentPurpose.DELIVERY,
            transporter_id=self.assignment_transporter_id,
            assigned_at=self.assignment_assigned_at,
            expires_at=self.assignment_expires_at,
            resolved_at=self.assignment_resolved_at,
        )

    def set_assignment(self, assignment: Assignment) -> None:
        self.assignment_mode = assignment.mode
        self.assignment_purpose = assignment.purpose
        self.assignment_transporter_id = assignment.transporter_id
        self.assignment_assigned_at = assignment.assigned_at
        self.assignment_expires_at = assignment.expires_at
        self.assignment_resolved_at = assignment.resolved_at

    def clear_assignment(self) -> None:
        self.assignment_mode = None
        self.assignment_purpose = None
        self.assignment_transporter_id = None
        self.assignment_assigned_at = None
        self.assignment_expires_at = None
        self.assignment_resolved_at = None

    @property
    def has_pending_assignment(self) -> bool:
        """An assignment exists and nobody has accepted it yet."""
        assignment = self.assignment
        return assignment is not None and not assignment.is_resolved

    def is_open_offer(self, now: datetime) -> bool:
        """A free-pool assignment any transporter may still claim."""
        assignment = self.assignment
        return (
            assignment is not None
            and assignment.mode == AssignmentMode.FREE
            and assignment.transporter_id is None
            and assignment.is_open(now)
        )

    # ------------------------------------------------------------------
    # Audit documents
    # ------------------------------------------------------------------

    @property
    def cancellation(self) -> Optional[CancellationDetails]:
        if not self.cancellation_details:
            return None
        return CancellationDetails.model_validate(self.cancellation_details)

    @property
    def dispute_details(self) -> Optional[DisputeDetails]:
        if not self.disputes:
            return None
        return DisputeDetails.model_validate(self.disputes[-1])

    @property
    def return_details(self) -> Optional[ReturnDetails]:
        if not self.returns:
            return None
        return ReturnDetails.model_validate(self.returns[-1])

    @property
    def has_open_dispute(self) -> bool:
        dispute = self.dispute_details
        return dispute is not None and dispute.is_open

    @property
    def has_open_return(self) -> bool:
        details = self.return_details
        return details is not None and details.is_open

    # ------------------------------------------------------------------
    # Pending audit entries (persisted by the repository on commit)
    # ------------------------------------------------------------------

    def stage_audit_entry(self, entry: models.Model) -> None:
        if not hasattr(self, "_pending_audit"):
            self._pending_audit: List[models.Model] = []
        self._pending_audit.append(entry)

    @property
    def pending_audit_entries(self) -> List[models.Model]:
        return list(getattr(self, "_pending_audit", []))

    def clear_pending_audit(self) -> None:
        if hasattr(self, "_pending_audit"):
            self._pending_audit.clear()

    # ------------------------------------------------------------------
    # Order number generation
    # ------------------------------------------------------------------

    @staticmethod
    def generate_order_number(family: str) -> str:
        """``RW-YYYYMMDD-XXXXXX`` or ``WS-YYYYMMDD-XXXXXX`` depending on family."""
        prefix = ORDER_NUMBER_PREFIXES[family]
        now = timezone.now()
        suffix = secrets.token_hex(3).upper()
        return f"{prefix}-{now:%Y%m%d}-{suffix}"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self.order_number:
            for _ in range(ORDER_NUMBER_MAX_RETRIES):
                candidate = self.generate_order_number(self.family)
                if not Order.objects.filter(order_number=candidate).exists():
                    self.order_number = candidate
                    break
            else:
                raise RuntimeError(
                    f"Failed to generate unique order_number after "
                    f"{ORDER_NUMBER_MAX_RETRIES} attempts"
                )
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.order_number} ({self.status})"


class OrderItem(AppendOnlyModel):
    """Line item fixed at placement time."""

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="items",
    )
    product_ref: models.CharField = models.CharField(max_length=64)
    quantity: models.PositiveIntegerField = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1)],
    )
    unit_price: models.DecimalField = models.DecimalField(
        max_digits=12,
        decimal_places=2,
    )
    total_price: models.DecimalField = models.DecimalField(
        max_digits=12,
        decimal_places=2,
    )

    class Meta:
        db_table = "order_items"
        ordering = ["created_at"]
        constraints = [
            models.CheckConstraint(
                check=models.Q(quantity__gte=1),
                name="order_items_quantity_positive",
            ),
        ]

    def save(self, *args: Any, **kwargs: Any) -> None:
        if self.total_price is None:
            self.total_price = self.quantity * self.unit_price
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.product_ref} x{self.quantity} (${self.total_price})"


class OrderStatusHistory(AppendOnlyModel):
    """One row per successful status transition.

    ``changed_at`` is the domain clock at the time of the change; it is the
    ordering key for the timeline.  ``actor_id`` is empty for system actions.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="status_history",
    )
    old_status: models.CharField = models.CharField(  # noqa: DJ01
        max_length=32,
        choices=OrderStatus.choices,
        null=True,
        blank=True,
    )
    new_status: models.CharField = models.CharField(
        max_length=32,
        choices=OrderStatus.choices,
    )
    actor_id: models.CharField = models.CharField(max_length=64, blank=True, default="")
    actor_role: models.CharField = models.CharField(
        max_length=16, blank=True, default=""
    )
    notes: models.TextField = models.TextField(blank=True, default="")
    changed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "order_status_history"
        ordering = ["changed_at", "created_at"]
        indexes = [
            models.Index(
                fields=["order", "changed_at"],
                name="osh_order_changed_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.order_id} : {self.old_status} -> {self.new_status}"


class AssignmentRecord(AppendOnlyModel):
    """Closed assignment: who was offered the order and how it ended."""

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="assignment_history",
    )
    transporter_id: models.CharField = models.CharField(  # noqa: DJ01
        max_length=64, null=True, blank=True
    )
    mode: models.CharField = models.CharField(
        max_length=16, choices=AssignmentMode.choices
    )
    purpose: models.CharField = models.CharField(
        max_length=16,
        choices=AssignmentPurpose.choices,
        default=AssignmentPurpose.DELIVERY,
    )
    outcome: models.CharField = models.CharField(
        max_length=16, choices=AssignmentOutcome.choices
    )
    reason: models.TextField = models.TextField(blank=True, default="")
    assigned_at = models.DateTimeField()
    resolved_at = models.DateTimeField()

    class Meta:
        db_table = "order_assignment_records"
        ordering = ["resolved_at", "created_at"]
        indexes = [
            models.Index(
                fields=["order", "resolved_at"],
                name="oar_order_resolved_idx",
            ),
        ]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "transporter_id": self.transporter_id,
            "mode": self.mode,
            "purpose": self.purpose,
            "outcome": self.outcome,
            "reason": self.reason,
            "assigned_at": self.assigned_at,
            "resolved_at": self.resolved_at,
        }

    def __str__(self) -> str:
        return f"{self.order_id} : {self.mode}/{self.outcome} ({self.transporter_id})"
