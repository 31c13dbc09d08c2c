"""Return and dispute handler.

Retailer → wholesaler orders go back through a dispute: the retailer
disputes a delivery, the wholesaler sends a transporter to pick the goods
up, and once they arrive the wholesaler accepts or rejects the return.
The wholesaler may instead settle the dispute outright, optionally with a
compensation, which certifies the order.

Wholesaler → supplier orders go back through a return request that is
posted to the free transporter pool; the first transporter to accept
carries the goods back to the supplier.

Accepted returns announce a refund with ``RefundRequested``; settling it
is the settlement gateway's job.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

import structlog

from modules.orders.constants import (
    ActorRole,
    AssignmentMode,
    AssignmentPurpose,
    OrderFamily,
)
from modules.orders.dtos import Actor, DisputeDetails, ReturnDetails
from modules.orders.events import RefundRequested
from modules.orders.exceptions import InvalidTransition, NotParticipant

if TYPE_CHECKING:
    from modules.orders.assignments import AssignmentCoordinator
    from modules.orders.audit import AuditTrailRecorder
    from modules.orders.models import Order

logger = structlog.get_logger(__name__)


class ReturnDisputeHandler:
    def __init__(
        self, recorder: AuditTrailRecorder, coordinator: AssignmentCoordinator
    ) -> None:
        self._recorder = recorder
        self._coordinator = coordinator

    # ------------------------------------------------------------------
    # Opening a case
    # ------------------------------------------------------------------

    def raise_dispute(
        self, order: Order, actor: Actor, reason: str, now: datetime
    ) -> DisputeDetails:
        """Retailer disputes a delivered order."""
        self._ensure_party(order, actor, ActorRole.RETAILER, "dispute")
        self._ensure_no_open_case(order, requested_status="disputed")
        details = self._recorder.open_dispute(
            order, DisputeDetails(disputed_by=actor.id, disputed_at=now, reason=reason)
        )
        logger.info("order.dispute_raised", order_id=str(order.id), actor_id=actor.id)
        return details

    def request_return(
        self, order: Order, actor: Actor, reason: str, now: datetime
    ) -> ReturnDetails:
        """Wholesaler sends a delivered supplier order back via the return pool."""
        self._ensure_party(order, actor, ActorRole.WHOLESALER, "return")
        self._ensure_no_open_case(order, requested_status="return_requested")
        details = self._recorder.open_return(
            order,
            ReturnDetails(returned_by=actor.id, return_requested_at=now, return_reason=reason),
        )
        self._coordinator.assign(
            order, AssignmentMode.FREE, None, now, purpose=AssignmentPurpose.RETURN
        )
        logger.info("order.return_requested", order_id=str(order.id), actor_id=actor.id)
        return details

    def settle_dispute(
        self,
        order: Order,
        actor: Actor,
        notes: str,
        now: datetime,
        resolution_type: Optional[str] = None,
        compensation_amount: Optional[Decimal] = None,
    ) -> DisputeDetails:
        """Wholesaler closes a dispute without taking the goods back.

        The order is certified; a compensation, when granted, is paid to
        the retailer who raised the dispute.
        """
        if not order.has_open_dispute:
            raise InvalidTransition(
                "There is no open dispute to resolve.",
                current_status=order.status,
                requested_status="certified",
            )
        details = self._recorder.resolve_dispute(
            order,
            now,
            notes,
            resolved_by=actor.id,
            resolution_type=resolution_type or "standard",
            compensation_amount=compensation_amount,
        )
        if compensation_amount:
            order.add_domain_event(
                RefundRequested(
                    aggregate_id=order.id,
                    order_number=order.order_number,
                    amount=compensation_amount,
                    reason="dispute_compensation",
                    beneficiary_id=details.disputed_by,
                )
            )
        logger.info(
            "order.dispute_resolved",
            order_id=str(order.id),
            actor_id=actor.id,
            resolution_type=details.resolution_type,
        )
        return details

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def on_return_pickup_accepted(self, order: Order, now: datetime) -> ReturnDetails:
        """A transporter accepted a return-purpose assignment."""
        if order.family == OrderFamily.RETAILER_WHOLESALER:
            dispute = order.dispute_details
            if dispute is None or not dispute.is_open:
                raise InvalidTransition(
                    "Return pickup needs an open dispute.",
                    current_status=order.status,
                    requested_status="return_to_wholesaler",
                )
            return self._recorder.open_return(
                order,
                ReturnDetails(
                    returned_by=dispute.disputed_by,
                    return_requested_at=now,
                    return_reason=dispute.reason,
                ),
            )
        return self._recorder.update_return(order, return_accepted_at=now)

    def accept_return(
        self, order: Order, actor: Actor, notes: str, now: datetime
    ) -> ReturnDetails:
        """Wholesaler takes the disputed goods back and refunds the retailer."""
        details = self._recorder.update_return(
            order,
            return_accepted_at=now,
            return_completed_at=now,
            return_notes=notes or None,
        )
        self._recorder.resolve_dispute(order, now, notes or "Return accepted")
        self._request_refund(order, details, "return_accepted")
        logger.info("order.return_accepted", order_id=str(order.id), actor_id=actor.id)
        return details

    def reject_return(
        self,
        order: Order,
        actor: Actor,
        rejection_reason: str,
        notes: str,
        now: datetime,
    ) -> ReturnDetails:
        details = self._recorder.update_return(
            order,
            return_rejected_at=now,
            return_rejection_reason=rejection_reason,
            return_notes=notes or None,
        )
        self._recorder.resolve_dispute(order, now, f"Return rejected: {rejection_reason}")
        logger.info(
            "order.return_rejected",
            order_id=str(order.id),
            actor_id=actor.id,
            reason=rejection_reason,
        )
        return details

    def complete_return(self, order: Order, now: datetime) -> ReturnDetails:
        """Goods are back at the supplier."""
        details = self._recorder.update_return(order, return_completed_at=now)
        self._request_refund(order, details, "returned_to_supplier")
        logger.info("order.return_completed", order_id=str(order.id))
        return details

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_party(self, order: Order, actor: Actor, role: str, case: str) -> None:
        if actor.role != role or not order.is_participant(actor.id, role):
            raise NotParticipant(f"Only the order's {role} may open a {case}.")

    def _ensure_no_open_case(self, order: Order, requested_status: str) -> None:
        if order.has_open_dispute or order.has_open_return:
            raise InvalidTransition(
                "A dispute or return is already open for this order.",
                current_status=order.status,
                requested_status=requested_status,
            )

    def _request_refund(self, order: Order, details: ReturnDetails, reason: str) -> None:
        order.add_domain_event(
            RefundRequested(
                aggregate_id=order.id,
                order_number=order.order_number,
                amount=order.final_amount or order.total_amount,
                reason=reason,
                beneficiary_id=details.returned_by,
            )
        )
