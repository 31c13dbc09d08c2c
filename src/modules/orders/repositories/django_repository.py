"""Django ORM implementation of the Order repository.

Concurrency control is optimistic: every command reads the order,
mutates it in memory and commits through ``compare_and_swap``, a single
conditional ``UPDATE`` keyed on ``version`` (plus assignment predicates
for transporter claims).  Exactly one of two racing writers matches the
row; the other gets ``False`` back and nothing of its work is written.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import F, Q, QuerySet
from django.utils import timezone

from modules.core.models import OutboxEvent
from modules.orders.constants import AssignmentMode, OrderFamily, OrderStatus
from modules.orders.models import Order, OrderItem
from modules.orders.repositories.interfaces import CommitGuard, IOrderRepository

logger = structlog.get_logger(__name__)

OUTBOX_TOPIC = "orders"

_PREFETCH = ("items", "status_history", "assignment_history")


class OrderDjangoRepository(IOrderRepository):
    """Concrete Order repository backed by Django ORM."""

    # ------------------------------------------------------------------
    # Create (aggregate root + children)
    # ------------------------------------------------------------------

    @transaction.atomic
    def create(self, data: Dict[str, Any]) -> Order:
        order = Order(
            family=data["family"],
            retailer_id=data.get("retailer_id", ""),
            wholesaler_id=data["wholesaler_id"],
            supplier_id=data.get("supplier_id", ""),
            total_amount=data["total_amount"],
            final_amount=data.get("final_amount") or data["total_amount"],
            notes=data.get("notes", ""),
            idempotency_key=data.get("idempotency_key"),
        )
        order.save()

        for item_data in data.get("items", []):
            OrderItem(
                order=order,
                product_ref=item_data["product_ref"],
                quantity=item_data["quantity"],
                unit_price=item_data["unit_price"],
                total_price=item_data.get("total_price"),
            ).save()

        logger.info(
            "order.persisted",
            order_id=str(order.id),
            item_count=len(data.get("items", [])),
        )
        return order

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_by_id(self, id: str) -> Optional[Order]:
        """Returns ``None`` for non-existent or malformed IDs."""
        try:
            return Order.objects.prefetch_related(*_PREFETCH).filter(id=id).first()
        except (ValueError, ValidationError):
            return None

    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[Order]:
        queryset = Order.objects.prefetch_related(*_PREFETCH)
        if filters:
            queryset = queryset.filter(**filters)
        return list(queryset)

    def for_participant(
        self,
        actor_id: Optional[str] = None,
        open_offers_as_of: Optional[datetime] = None,
    ) -> QuerySet[Order]:
        """Lazy queryset of the orders ``actor_id`` takes part in (all if ``None``).

        A transporter also sees orders currently offered to them and, when
        ``open_offers_as_of`` is given, every free-pool offer still open at
        that time.
        """
        queryset = Order.objects.prefetch_related(*_PREFETCH)
        if actor_id is None:
            return queryset
        scope = (
            Q(retailer_id=actor_id)
            | Q(wholesaler_id=actor_id)
            | Q(supplier_id=actor_id)
            | Q(transporter_id=actor_id)
            | Q(assignment_transporter_id=actor_id)
        )
        if open_offers_as_of is not None:
            scope |= Q(
                assignment_mode=AssignmentMode.FREE,
                assignment_transporter_id__isnull=True,
                assignment_resolved_at__isnull=True,
                assignment_expires_at__gt=open_offers_as_of,
            )
        return queryset.filter(scope)

    def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        return (
            Order.objects.prefetch_related(*_PREFETCH)
            .filter(idempotency_key=key)
            .first()
        )

    # ------------------------------------------------------------------
    # Save (IRepository contract)
    # ------------------------------------------------------------------

    @transaction.atomic
    def save(self, entity: Order) -> Order:
        """Persist the order as-is and flush its staged audit rows and events.

        Used right after placement; later changes go through
        ``compare_and_swap``.
        """
        entity.save()
        entries = self._flush_audit(entity)
        events = entity.domain_events
        self._write_outbox(entity, events)
        logger.info(
            "order.saved",
            order_id=str(entity.id),
            audit_count=len(entries),
            event_count=len(events),
        )
        return entity

    # ------------------------------------------------------------------
    # Versioned commit
    # ------------------------------------------------------------------

    @transaction.atomic
    def compare_and_swap(
        self,
        order: Order,
        expected_version: int,
        guard: Optional[CommitGuard] = None,
        as_of: Optional[datetime] = None,
    ) -> bool:
        as_of = as_of or timezone.now()
        queryset = Order.objects.filter(id=order.id, version=expected_version)
        if guard is not None:
            queryset = queryset.filter(**_guard_lookups(guard, as_of))

        values = {field: getattr(order, field) for field in Order.MUTABLE_FIELDS}
        updated_at = timezone.now()
        rows = queryset.update(
            **values, version=F("version") + 1, updated_at=updated_at
        )
        if rows == 0:
            logger.warning(
                "order.commit_conflict",
                order_id=str(order.id),
                expected_version=expected_version,
            )
            return False

        order.version = expected_version + 1
        order.updated_at = updated_at

        entries = self._flush_audit(order)

        events = order.domain_events
        self._write_outbox(order, events)

        logger.info(
            "order.committed",
            order_id=str(order.id),
            version=order.version,
            audit_count=len(entries),
            event_count=len(events),
        )
        return True

    def _flush_audit(self, order: Order) -> List[Any]:
        entries = order.pending_audit_entries
        for entry in entries:
            entry.save()
        order.clear_pending_audit()
        if entries:
            # Prefetched history is stale once new rows exist.
            getattr(order, "_prefetched_objects_cache", {}).clear()
        return entries

    def _write_outbox(self, order: Order, events: List[Any]) -> None:
        for event in events:
            OutboxEvent.objects.create(
                event_type=event.event_name,
                aggregate_id=str(event.aggregate_id),
                payload=event.to_payload(),
                topic=OUTBOX_TOPIC,
            )
        order.clear_domain_events()

    # ------------------------------------------------------------------
    # Assignment queries
    # ------------------------------------------------------------------

    def find_expired_assignments(self, now: datetime) -> List[Order]:
        return list(
            Order.objects.filter(
                assignment_mode__isnull=False,
                assignment_resolved_at__isnull=True,
                assignment_expires_at__lte=now,
            ).order_by("assignment_expires_at")
        )

    def list_available_returns(self, now: datetime) -> List[Order]:
        return list(
            Order.objects.prefetch_related("items")
            .filter(
                family=OrderFamily.WHOLESALER_SUPPLIER,
                status=OrderStatus.RETURN_REQUESTED,
                assignment_mode=AssignmentMode.FREE,
                assignment_transporter_id__isnull=True,
                assignment_resolved_at__isnull=True,
                assignment_expires_at__gt=now,
            )
            .order_by("assignment_assigned_at")
        )


def _guard_lookups(guard: CommitGuard, as_of: datetime) -> Dict[str, Any]:
    lookups: Dict[str, Any] = {}
    if guard.free_slot:
        lookups["assignment_mode"] = AssignmentMode.FREE
        lookups["assignment_transporter_id__isnull"] = True
    if guard.live_assignment:
        lookups["assignment_expires_at__gt"] = as_of
    if guard.unresolved_assignment:
        lookups["assignment_resolved_at__isnull"] = True
    return lookups
