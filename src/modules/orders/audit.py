"""Audit trail recorder.

Every state change leaves a trace here: a status history row per
transition, an assignment record per closed assignment, and the set-once
cancellation, dispute and return documents.  Rows are staged on the order
and written by the repository in the same commit as the order itself, so
a conflicting write never leaves orphaned history.

Existing entries are never rewritten.  The only in-place change allowed
is filling an empty field of the latest dispute or return document.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, List, Optional

import structlog

from modules.orders.dtos import (
    Actor,
    Assignment,
    CancellationDetails,
    DisputeDetails,
    ReturnDetails,
    TimelineEntryDTO,
)
from modules.orders.exceptions import AuditViolation
from modules.orders.models import AssignmentRecord, OrderStatusHistory

if TYPE_CHECKING:
    from modules.orders.models import Order

logger = structlog.get_logger(__name__)


class AuditTrailRecorder:
    # ------------------------------------------------------------------
    # Append-only rows
    # ------------------------------------------------------------------

    def record_transition(
        self,
        order: Order,
        old_status: Optional[str],
        new_status: str,
        actor: Optional[Actor],
        at: datetime,
        notes: str = "",
    ) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order=order,
            old_status=old_status,
            new_status=new_status,
            actor_id=actor.id if actor else "",
            actor_role=actor.role if actor else "",
            notes=notes or "",
            changed_at=at,
        )
        order.stage_audit_entry(entry)
        return entry

    def record_assignment_outcome(
        self,
        order: Order,
        assignment: Assignment,
        outcome: str,
        at: datetime,
        transporter_id: Optional[str] = None,
        reason: str = "",
    ) -> AssignmentRecord:
        record = AssignmentRecord(
            order=order,
            transporter_id=transporter_id or assignment.transporter_id,
            mode=assignment.mode,
            purpose=assignment.purpose,
            outcome=outcome,
            reason=reason or "",
            assigned_at=assignment.assigned_at,
            resolved_at=at,
        )
        order.stage_audit_entry(record)
        logger.info(
            "order.assignment_recorded",
            order_id=str(order.id),
            outcome=outcome,
            mode=assignment.mode,
            transporter_id=record.transporter_id,
        )
        return record

    # ------------------------------------------------------------------
    # Set-once documents
    # ------------------------------------------------------------------

    def record_cancellation(
        self,
        order: Order,
        actor: Actor,
        reason: str,
        previous_status: str,
        at: datetime,
    ) -> CancellationDetails:
        if order.cancellation_details:
            raise AuditViolation(f"Order {order.id} already has cancellation details.")
        details = CancellationDetails(
            cancelled_by=actor.id,
            cancelled_by_role=actor.role,
            cancelled_at=at,
            reason=reason,
            previous_status=previous_status,
        )
        order.cancellation_details = details.to_storage()
        return details

    def open_dispute(self, order: Order, details: DisputeDetails) -> DisputeDetails:
        if order.has_open_dispute:
            raise AuditViolation(f"Order {order.id} already has an open dispute.")
        order.disputes = [*order.disputes, details.to_storage()]
        return details

    def resolve_dispute(
        self, order: Order, at: datetime, notes: str = "", **extra: Any
    ) -> DisputeDetails:
        """Close the latest dispute; ``extra`` fills optional resolution fields."""
        current = order.dispute_details
        if current is None:
            raise AuditViolation(f"Order {order.id} has no dispute to resolve.")
        resolved = current.filled(
            resolved=True, resolved_at=at, resolution_notes=notes, **extra
        )
        order.disputes = [*order.disputes[:-1], resolved.to_storage()]
        return resolved

    def open_return(self, order: Order, details: ReturnDetails) -> ReturnDetails:
        if order.has_open_return:
            raise AuditViolation(f"Order {order.id} already has an open return.")
        order.returns = [*order.returns, details.to_storage()]
        return details

    def update_return(self, order: Order, **values) -> ReturnDetails:
        current = order.return_details
        if current is None:
            raise AuditViolation(f"Order {order.id} has no return to update.")
        updated = current.filled(**values)
        order.returns = [*order.returns[:-1], updated.to_storage()]
        return updated

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    def timeline(self, order: Order) -> List[TimelineEntryDTO]:
        """Merge every audit source of ``order`` into one time-ordered list."""
        entries: List[TimelineEntryDTO] = []

        for history in order.status_history.all():
            if history.old_status is None:
                entries.append(
                    TimelineEntryDTO(
                        kind="order_placed",
                        at=history.changed_at,
                        summary=f"Order {order.order_number} placed",
                        actor_id=history.actor_id or None,
                    )
                )
                continue
            entries.append(
                TimelineEntryDTO(
                    kind="status_changed",
                    at=history.changed_at,
                    summary=f"{history.old_status} → {history.new_status}",
                    actor_id=history.actor_id or None,
                    data={
                        "old_status": history.old_status,
                        "new_status": history.new_status,
                        "actor_role": history.actor_role,
                        "notes": history.notes,
                    },
                )
            )

        for record in order.assignment_history.all():
            entries.append(
                TimelineEntryDTO(
                    kind=f"assignment_{record.outcome}",
                    at=record.resolved_at,
                    summary=f"{record.mode} {record.purpose} assignment {record.outcome}",
                    actor_id=record.transporter_id,
                    data=record.as_dict(),
                )
            )

        cancellation = order.cancellation
        if cancellation is not None:
            entries.append(
                TimelineEntryDTO(
                    kind="cancelled",
                    at=cancellation.cancelled_at,
                    summary=f"Cancelled by {cancellation.cancelled_by_role}",
                    actor_id=cancellation.cancelled_by,
                    data=cancellation.to_storage(),
                )
            )

        for raw in order.disputes:
            dispute = DisputeDetails.model_validate(raw)
            entries.append(
                TimelineEntryDTO(
                    kind="dispute_raised",
                    at=dispute.disputed_at,
                    summary="Delivery disputed",
                    actor_id=dispute.disputed_by,
                    data={"reason": dispute.reason},
                )
            )
            if dispute.resolved_at is not None:
                entries.append(
                    TimelineEntryDTO(
                        kind="dispute_resolved",
                        at=dispute.resolved_at,
                        summary="Dispute resolved",
                        data={"resolution_notes": dispute.resolution_notes},
                    )
                )

        for raw in order.returns:
            details = ReturnDetails.model_validate(raw)
            entries.append(
                TimelineEntryDTO(
                    kind="return_requested",
                    at=details.return_requested_at,
                    summary="Return requested",
                    actor_id=details.returned_by,
                    data={"reason": details.return_reason},
                )
            )
            for kind, at in (
                ("return_accepted", details.return_accepted_at),
                ("return_rejected", details.return_rejected_at),
                ("return_completed", details.return_completed_at),
            ):
                if at is not None:
                    entries.append(
                        TimelineEntryDTO(
                            kind=kind,
                            at=at,
                            summary=kind.replace("_", " ").capitalize(),
                            data=details.to_storage(),
                        )
                    )

        return sorted(entries, key=lambda entry: entry.at)
