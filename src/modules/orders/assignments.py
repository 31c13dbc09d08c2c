"""Assignment coordinator.

Owns the single active transporter assignment of an order: creating it
(specific transporter or free pool), resolving it (accept, reject),
expiring it, and closing it when an engaged transporter cancels.  Every
closed assignment leaves an ``AssignmentRecord`` through the audit
recorder.

All methods except ``sweep_expired`` mutate the order in memory only;
the caller commits through the repository's compare-and-swap with the
``CommitGuard`` returned by ``claim_guard``.  That conditional update is
what makes the first free-pool acceptor win.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, List, Optional

import structlog

from modules.orders.constants import (
    DEFAULT_ASSIGNMENT_TTL_MINUTES,
    DEFAULT_RETURN_POOL_TTL_MINUTES,
    AssignmentMode,
    AssignmentOutcome,
    AssignmentPurpose,
    OrderFamily,
    OrderStatus,
)
from modules.orders.dtos import Assignment
from modules.orders.events import AssignmentResolved, TransporterAssigned
from modules.orders.exceptions import (
    AssignmentConflict,
    InvalidTransition,
    MissingRequiredField,
    NotParticipant,
)
from modules.orders.repositories.interfaces import CommitGuard

if TYPE_CHECKING:
    from modules.orders.audit import AuditTrailRecorder
    from modules.orders.models import Order
    from modules.orders.repositories.interfaces import IOrderRepository
    from shared.domain.events import DomainEvent

logger = structlog.get_logger(__name__)

ACCEPT = "accept"
REJECT = "reject"


class AssignmentCoordinator:
    def __init__(
        self,
        recorder: AuditTrailRecorder,
        order_repository: Optional[IOrderRepository] = None,
        assignment_ttl: timedelta = timedelta(minutes=DEFAULT_ASSIGNMENT_TTL_MINUTES),
        return_pool_ttl: timedelta = timedelta(
            minutes=DEFAULT_RETURN_POOL_TTL_MINUTES
        ),
        publish: Optional[Callable[[List[DomainEvent]], None]] = None,
    ) -> None:
        self._recorder = recorder
        self._order_repo = order_repository
        self._assignment_ttl = assignment_ttl
        self._return_pool_ttl = return_pool_ttl
        self._publish = publish

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def purpose_for(self, order: Order) -> str:
        """A transporter sought while a dispute or return is open picks goods up."""
        if order.has_open_dispute or order.status == OrderStatus.RETURN_REQUESTED:
            return AssignmentPurpose.RETURN
        return AssignmentPurpose.DELIVERY

    def assign(
        self,
        order: Order,
        mode: str,
        transporter_id: Optional[str],
        now: datetime,
        purpose: Optional[str] = None,
    ) -> Assignment:
        """Open a new assignment on ``order``.

        Raises:
            InvalidTransition: an assignment is still pending.
            MissingRequiredField: specific mode without a transporter.
        """
        log = logger.bind(order_id=str(order.id), mode=mode)
        current = order.assignment
        if current is not None and not current.is_resolved:
            raise InvalidTransition(
                f"Order already has a pending assignment until "
                f"{current.expires_at.isoformat()}.",
                current_status=order.status,
                requested_status=order.status,
            )
        if mode == AssignmentMode.SPECIFIC:
            if not transporter_id:
                raise MissingRequiredField("transporter_id")
        else:
            if transporter_id:
                log.info("order.assignment_transporter_ignored")
            transporter_id = None

        purpose = purpose or self.purpose_for(order)
        ttl = self._return_pool_ttl
        if purpose == AssignmentPurpose.DELIVERY or (
            order.family == OrderFamily.RETAILER_WHOLESALER
        ):
            ttl = self._assignment_ttl

        assignment = Assignment(
            mode=mode,
            purpose=purpose,
            transporter_id=transporter_id,
            assigned_at=now,
            expires_at=now + ttl,
        )
        order.set_assignment(assignment)
        order.transporter_id = None
        order.add_domain_event(
            TransporterAssigned(
                aggregate_id=order.id,
                mode=mode,
                purpose=purpose,
                transporter_id=transporter_id,
                expires_at=assignment.expires_at,
                recipients=(transporter_id,) if transporter_id else (),
            )
        )
        log.info(
            "order.transporter_assigned",
            purpose=purpose,
            transporter_id=transporter_id,
            expires_at=assignment.expires_at.isoformat(),
        )
        return assignment

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def ensure_claimable(self, order: Order, transporter_id: str) -> Assignment:
        """Return the pending assignment ``transporter_id`` may act on.

        Raises:
            AssignmentConflict: no pending assignment, or someone already won it.
            NotParticipant: the assignment names a different transporter.
        """
        assignment = order.assignment
        if assignment is None:
            raise AssignmentConflict(
                "No open assignment for this order; it expired or was withdrawn."
            )
        if assignment.is_resolved:
            if assignment.transporter_id == transporter_id:
                raise AssignmentConflict("You already accepted this assignment.")
            raise AssignmentConflict("Order already assigned to another transporter.")
        if (
            assignment.mode == AssignmentMode.SPECIFIC
            and assignment.transporter_id != transporter_id
        ):
            raise NotParticipant("This assignment was offered to another transporter.")
        return assignment

    def acceptance_status(self, order: Order) -> str:
        """Status an accepted assignment moves the order to."""
        assignment = order.assignment
        if assignment is None or assignment.purpose == AssignmentPurpose.DELIVERY:
            return OrderStatus.ACCEPTED_BY_TRANSPORTER
        if order.family == OrderFamily.RETAILER_WHOLESALER:
            return OrderStatus.RETURN_TO_WHOLESALER
        return OrderStatus.RETURN_ACCEPTED

    def claim_guard(self, order: Order) -> CommitGuard:
        assignment = order.assignment
        return CommitGuard(
            free_slot=assignment is not None and assignment.mode == AssignmentMode.FREE,
            live_assignment=True,
        )

    def resolve(
        self,
        order: Order,
        transporter_id: str,
        decision: str,
        now: datetime,
        reason: str = "",
    ) -> Order:
        assignment = self.ensure_claimable(order, transporter_id)
        log = logger.bind(
            order_id=str(order.id),
            transporter_id=transporter_id,
            mode=assignment.mode,
            decision=decision,
        )

        if decision == ACCEPT:
            accepted = assignment.model_copy(
                update={"transporter_id": transporter_id, "resolved_at": now}
            )
            order.set_assignment(accepted)
            order.transporter_id = transporter_id
            self._close(order, accepted, AssignmentOutcome.ACCEPTED, now)
            log.info("order.assignment_accepted")
            return order

        if assignment.mode == AssignmentMode.FREE:
            raise InvalidTransition(
                "Free-pool offers cannot be rejected; leave them for other transporters.",
                current_status=order.status,
                requested_status=order.status,
            )
        order.clear_assignment()
        order.transporter_id = None
        self._close(
            order, assignment, AssignmentOutcome.REJECTED, now, transporter_id, reason
        )
        log.info("order.assignment_rejected", reason=reason)
        return order

    def cancel_engagement(
        self, order: Order, transporter_id: str, reason: str, now: datetime
    ) -> Order:
        """The engaged transporter drops an order it had accepted."""
        if order.transporter_id != transporter_id:
            raise NotParticipant("Only the engaged transporter may cancel the transport.")
        assignment = order.assignment or Assignment(
            mode=AssignmentMode.SPECIFIC,
            transporter_id=transporter_id,
            assigned_at=now,
            expires_at=now,
        )
        order.clear_assignment()
        order.transporter_id = None
        self._close(
            order, assignment, AssignmentOutcome.CANCELLED, now, transporter_id, reason
        )
        logger.info(
            "order.transport_cancelled",
            order_id=str(order.id),
            transporter_id=transporter_id,
            reason=reason,
        )
        return order

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def expire_if_stale(self, order: Order, now: datetime) -> bool:
        """Clear a pending assignment whose deadline has passed.

        The order status is left untouched so the owner can reassign.
        """
        assignment = order.assignment
        if assignment is None or not assignment.is_expired(now):
            return False
        order.clear_assignment()
        self._close(order, assignment, AssignmentOutcome.EXPIRED, now)
        logger.info(
            "order.assignment_expired",
            order_id=str(order.id),
            mode=assignment.mode,
            expires_at=assignment.expires_at.isoformat(),
        )
        return True

    def sweep_expired(self, now: datetime) -> List[str]:
        """Expire every stale assignment in the store.

        Each order commits on its own; if an acceptance lands first the
        conditional update fails and the order is skipped.
        """
        if self._order_repo is None:
            raise RuntimeError("sweep_expired needs an order repository.")

        expired: List[str] = []
        for order in self._order_repo.find_expired_assignments(now):
            expected_version = order.version
            if not self.expire_if_stale(order, now):
                continue
            events = order.domain_events
            committed = self._order_repo.compare_and_swap(
                order,
                expected_version,
                guard=CommitGuard(unresolved_assignment=True),
                as_of=now,
            )
            if not committed:
                logger.info("order.sweep_skipped", order_id=str(order.id))
                continue
            if self._publish is not None:
                self._publish(events)
            expired.append(str(order.id))

        logger.info("order.sweep_completed", expired_count=len(expired))
        return expired

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _close(
        self,
        order: Order,
        assignment: Assignment,
        outcome: str,
        now: datetime,
        transporter_id: Optional[str] = None,
        reason: str = "",
    ) -> None:
        record = self._recorder.record_assignment_outcome(
            order,
            assignment,
            outcome,
            now,
            transporter_id=transporter_id,
            reason=reason,
        )
        order.add_domain_event(
            AssignmentResolved(
                aggregate_id=order.id,
                outcome=outcome,
                mode=assignment.mode,
                purpose=assignment.purpose,
                transporter_id=record.transporter_id,
            )
        )
