"""End-to-end order flows through OrderService and the Django repository.

Covers:
- Specific assignment accepted by the named transporter.
- Free pool: first acceptor wins, the next gets ``assignment_conflict``.
- Expiry: late accept denied, sweep clears the offer, reassignment works.
- Retailer dispute → return pickup → wholesaler accepts / rejects.
- Wholesaler return to supplier through the free return pool.
- Cancellation details, terminal finality and the merged timeline.
"""

from __future__ import annotations

import logging

import pytest

from modules.core.models import OutboxEvent
from modules.orders.constants import (
    AssignmentMode,
    AssignmentOutcome,
    AssignmentPurpose,
    OrderFamily,
    OrderStatus,
)
from modules.orders.dtos import HandleReturnDTO, StatusChangeDTO
from modules.orders.models import AssignmentRecord, OrderStatusHistory

pytestmark = pytest.mark.integration


def _reload(service, order):
    result = service.get_order(order.id)
    assert result.ok
    return result.order


def _outcomes(order):
    return [
        (record.outcome, record.transporter_id) for record in order.assignment_history.all()
    ]


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------


class TestPlacement:
    def test_order_starts_pending_with_history(self, place):
        order = place()

        assert order.status == OrderStatus.PENDING
        assert order.order_number.startswith("RW-")
        assert order.items.count() == 2
        [entry] = order.status_history.all()
        assert entry.old_status is None
        assert entry.new_status == OrderStatus.PENDING

    def test_supplier_order_number_prefix(self, place):
        assert place(OrderFamily.WHOLESALER_SUPPLIER).order_number.startswith("WS-")

    def test_idempotent_placement(self, place):
        first = place(idempotency_key="basket-42")
        second = place(idempotency_key="basket-42")
        assert first.id == second.id

    def test_placement_writes_outbox_row(self, place):
        order = place()
        assert OutboxEvent.objects.filter(
            aggregate_id=str(order.id), event_type="OrderPlaced"
        ).exists()


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


class TestSpecificAssignment:
    def test_named_transporter_accepts(self, service, processing_order, move, actors):
        order = move(
            processing_order,
            actors.wholesaler,
            OrderStatus.ASSIGNED_TO_TRANSPORTER,
            assignment_type=AssignmentMode.SPECIFIC,
            transporter_id=actors.t1.id,
        )
        assert order.status == OrderStatus.ASSIGNED_TO_TRANSPORTER
        assert order.assignment.transporter_id == actors.t1.id

        result = service.accept_assignment(order.id, actors.t1)

        assert result.ok
        assert result.order.status == OrderStatus.ACCEPTED_BY_TRANSPORTER
        assert result.order.transporter_id == actors.t1.id

    def test_other_transporter_is_not_participant(self, service, processing_order, actors):
        service.assign_transporter(
            processing_order.id, actors.wholesaler, AssignmentMode.SPECIFIC, actors.t1.id
        )
        result = service.accept_assignment(processing_order.id, actors.t2)
        assert result.error.code == "not_participant"

    def test_rejection_allows_reassignment(self, service, processing_order, actors):
        service.assign_transporter(
            processing_order.id, actors.wholesaler, AssignmentMode.SPECIFIC, actors.t1.id
        )
        rejected = service.reject_assignment(processing_order.id, actors.t1, "truck full")
        assert rejected.order.status == OrderStatus.REJECTED_BY_TRANSPORTER

        again = service.assign_transporter(
            processing_order.id, actors.wholesaler, AssignmentMode.SPECIFIC, actors.t2.id
        )

        assert again.ok
        assert again.order.status == OrderStatus.ASSIGNED_TO_TRANSPORTER
        assert _outcomes(_reload(service, processing_order)) == [
            (AssignmentOutcome.REJECTED, actors.t1.id)
        ]

    def test_transporter_cancellation_after_acceptance(
        self, service, processing_order, move, actors
    ):
        service.assign_transporter(
            processing_order.id, actors.wholesaler, AssignmentMode.SPECIFIC, actors.t1.id
        )
        service.accept_assignment(processing_order.id, actors.t1)

        order = move(
            processing_order,
            actors.t1,
            OrderStatus.CANCELLED_BY_TRANSPORTER,
            reason="breakdown",
        )

        assert order.transporter_id is None
        assert order.assignment is None
        assert [o for o, _ in _outcomes(_reload(service, order))] == [
            AssignmentOutcome.ACCEPTED,
            AssignmentOutcome.CANCELLED,
        ]


class TestFreePool:
    def test_first_acceptor_wins(self, service, processing_order, actors):
        service.assign_transporter(processing_order.id, actors.wholesaler, AssignmentMode.FREE)

        first = service.accept_assignment(processing_order.id, actors.t1)
        second = service.accept_assignment(processing_order.id, actors.t2)

        assert first.ok
        assert not second.ok
        assert second.error.code == "assignment_conflict"
        order = _reload(service, processing_order)
        assert order.assignment.transporter_id == actors.t1.id
        assert _outcomes(order) == [(AssignmentOutcome.ACCEPTED, actors.t1.id)]

    def test_free_offer_cannot_be_rejected(self, service, processing_order, actors):
        service.assign_transporter(processing_order.id, actors.wholesaler, AssignmentMode.FREE)
        result = service.reject_assignment(processing_order.id, actors.t1, "no")
        assert result.error.code == "invalid_transition"

    def test_pending_offer_blocks_new_assignment(self, service, processing_order, actors):
        service.assign_transporter(processing_order.id, actors.wholesaler, AssignmentMode.FREE)
        result = service.assign_transporter(
            processing_order.id, actors.wholesaler, AssignmentMode.SPECIFIC, actors.t1.id
        )
        assert result.error.code == "invalid_transition"


class TestExpiry:
    def test_late_accept_is_a_conflict(self, service, processing_order, actors, clock, ttl):
        service.assign_transporter(processing_order.id, actors.wholesaler, AssignmentMode.FREE)
        clock.advance(minutes=ttl.assignment)

        result = service.accept_assignment(processing_order.id, actors.t1)

        assert result.error.code == "assignment_conflict"
        order = _reload(service, processing_order)
        assert order.assignment is None
        assert order.status == OrderStatus.ASSIGNED_TO_TRANSPORTER
        assert _outcomes(order) == [(AssignmentOutcome.EXPIRED, None)]

    def test_sweep_then_reassign(self, service, processing_order, actors, clock, ttl):
        first = service.assign_transporter(
            processing_order.id, actors.wholesaler, AssignmentMode.FREE
        ).order.assignment
        clock.advance(minutes=ttl.assignment + 60)

        assert service.sweep_expired() == [str(processing_order.id)]
        swept = _reload(service, processing_order)
        assert swept.assignment is None
        assert swept.status == OrderStatus.ASSIGNED_TO_TRANSPORTER

        result = service.assign_transporter(
            processing_order.id, actors.wholesaler, AssignmentMode.FREE
        )

        assert result.ok
        second = result.order.assignment
        assert second != first
        assert second.assigned_at > first.assigned_at
        assert result.order.status == OrderStatus.ASSIGNED_TO_TRANSPORTER
        assert service.accept_assignment(processing_order.id, actors.t2).ok

    def test_sweep_ignores_live_and_accepted_offers(self, service, processing_order, actors):
        service.assign_transporter(processing_order.id, actors.wholesaler, AssignmentMode.FREE)
        service.accept_assignment(processing_order.id, actors.t1)
        assert service.sweep_expired() == []


# ---------------------------------------------------------------------------
# Disputes and returns
# ---------------------------------------------------------------------------


class TestRetailerDispute:
    @pytest.fixture()
    def returning_order(self, service, delivered_rw_order, actors):
        disputed = service.raise_dispute(delivered_rw_order.id, actors.retailer, "damaged")
        assert disputed.order.status == OrderStatus.DISPUTED
        assigned = service.assign_transporter(
            delivered_rw_order.id, actors.wholesaler, AssignmentMode.SPECIFIC, actors.t2.id
        )
        assert assigned.order.assignment.purpose == AssignmentPurpose.RETURN
        accepted = service.accept_assignment(delivered_rw_order.id, actors.t2)
        assert accepted.order.status == OrderStatus.RETURN_TO_WHOLESALER
        return accepted.order

    def test_return_accepted(self, service, returning_order, actors):
        result = service.handle_return(
            returning_order.id, actors.wholesaler, HandleReturnDTO(action="accept")
        )

        assert result.ok
        order = result.order
        assert order.status == OrderStatus.RETURN_ACCEPTED
        assert order.return_details.return_accepted_at is not None
        assert order.return_details.return_rejected_at is None
        assert order.return_details.returned_by == actors.retailer.id
        assert order.dispute_details.resolved
        assert OutboxEvent.objects.filter(
            aggregate_id=str(order.id), event_type="RefundRequested"
        ).exists()

    def test_return_rejected_then_redelivered(self, service, returning_order, actors):
        rejected = service.handle_return(
            returning_order.id,
            actors.wholesaler,
            HandleReturnDTO(action="reject", rejection_reason="used goods"),
        )
        assert rejected.order.status == OrderStatus.RETURN_REJECTED
        assert rejected.order.return_details.return_rejection_reason == "used goods"

        redelivery = service.assign_transporter(
            returning_order.id, actors.wholesaler, AssignmentMode.FREE
        )

        assert redelivery.ok
        assert redelivery.order.assignment.purpose == AssignmentPurpose.DELIVERY

    def test_reject_needs_reason(self, service, returning_order, actors):
        result = service.handle_return(
            returning_order.id, actors.wholesaler, HandleReturnDTO(action="reject")
        )
        assert result.error.code == "missing_required_field"

    def test_outsider_cannot_dispute(self, service, delivered_rw_order, actors):
        result = service.raise_dispute(delivered_rw_order.id, actors.other_retailer, "x")
        assert result.error.code == "not_participant"

    def test_dispute_needs_reason(self, service, delivered_rw_order, actors):
        result = service.raise_dispute(delivered_rw_order.id, actors.retailer, "")
        assert result.error.code == "missing_required_field"

    def test_refund_published_after_commit(
        self, service, returning_order, actors, caplog, django_capture_on_commit_callbacks
    ):
        with caplog.at_level(logging.INFO):
            with django_capture_on_commit_callbacks(execute=True):
                service.handle_return(
                    returning_order.id, actors.wholesaler, HandleReturnDTO(action="accept")
                )

        assert any("order.refund_submitted" in r.getMessage() for r in caplog.records)


class TestSupplierReturn:
    @pytest.fixture()
    def return_requested(self, service, delivered_ws_order, actors):
        result = service.request_return(delivered_ws_order.id, actors.wholesaler, "defective")
        assert result.ok
        return result.order

    def test_request_posts_to_pool(self, service, return_requested):
        assert return_requested.status == OrderStatus.RETURN_REQUESTED
        assert return_requested.assignment.mode == AssignmentMode.FREE
        assert [o.id for o in service.available_returns()] == [return_requested.id]

    def test_pool_to_supplier(self, service, return_requested, move, actors):
        accepted = service.accept_assignment(return_requested.id, actors.t2)
        assert accepted.order.status == OrderStatus.RETURN_ACCEPTED
        assert accepted.order.return_details.return_accepted_at is not None
        assert service.available_returns() == []

        order = move(accepted.order, actors.t2, OrderStatus.RETURN_IN_TRANSIT)
        order = move(order, actors.t2, OrderStatus.RETURNED_TO_SUPPLIER)

        assert order.return_details.return_completed_at is not None
        result = service.update_status(
            order.id, actors.wholesaler, StatusChangeDTO(status=OrderStatus.CERTIFIED)
        )
        assert result.error.code == "invalid_transition"

    def test_pool_expiry_and_repost(self, service, return_requested, actors, clock, ttl):
        clock.advance(minutes=ttl.return_pool)
        assert service.sweep_expired() == [str(return_requested.id)]
        assert service.available_returns() == []

        reposted = service.assign_transporter(
            return_requested.id, actors.wholesaler, AssignmentMode.FREE
        )

        assert reposted.ok
        assert reposted.order.status == OrderStatus.RETURN_REQUESTED
        assert [o.id for o in service.available_returns()] == [return_requested.id]

    def test_second_return_denied(self, service, return_requested, actors):
        result = service.request_return(return_requested.id, actors.wholesaler, "again")
        assert result.error.code == "invalid_transition"


# ---------------------------------------------------------------------------
# Cancellation, finality, timeline
# ---------------------------------------------------------------------------


class TestCancellationAndFinality:
    def test_cancellation_details_are_recorded(self, service, place, move, actors):
        order = move(place(), actors.retailer, OrderStatus.CANCELLED_BY_RETAILER, reason="dup")

        details = order.cancellation
        assert details.cancelled_by == actors.retailer.id
        assert details.cancelled_by_role == "retailer"
        assert details.reason == "dup"
        assert details.previous_status == OrderStatus.PENDING

    @pytest.mark.parametrize(
        "requested",
        [OrderStatus.ACCEPTED, OrderStatus.CANCELLED_BY_WHOLESALER, OrderStatus.DISPUTED],
    )
    def test_cancelled_order_is_final(self, service, place, move, actors, requested):
        order = move(place(), actors.retailer, OrderStatus.CANCELLED_BY_RETAILER, reason="dup")
        result = service.update_status(
            order.id, actors.wholesaler, StatusChangeDTO(status=requested, reason="x")
        )
        assert result.error.code == "invalid_transition"
        assert _reload(service, order).status == OrderStatus.CANCELLED_BY_RETAILER

    def test_certified_order_is_final(self, service, delivered_rw_order, move, actors):
        move(delivered_rw_order, actors.retailer, OrderStatus.CERTIFIED)
        result = service.raise_dispute(delivered_rw_order.id, actors.retailer, "late")
        assert result.error.code == "invalid_transition"

    def test_skipped_step_names_required_status(self, service, place, actors):
        order = place()
        result = service.update_status(
            order.id,
            actors.wholesaler,
            StatusChangeDTO(status=OrderStatus.ASSIGNED_TO_TRANSPORTER),
        )
        assert result.error.code == "invalid_transition"
        assert result.error.context["required_status"] == OrderStatus.ACCEPTED


class TestTimeline:
    def test_timeline_merges_history(self, service, delivered_rw_order, actors):
        service.raise_dispute(delivered_rw_order.id, actors.retailer, "damaged")

        result = service.timeline(delivered_rw_order.id)

        kinds = [entry.kind for entry in result.timeline]
        assert kinds[0] == "order_placed"
        assert "assignment_accepted" in kinds
        assert "dispute_raised" in kinds
        assert [e.at for e in result.timeline] == sorted(e.at for e in result.timeline)

    def test_history_rows_only_grow(self, service, delivered_rw_order, actors):
        before = OrderStatusHistory.objects.filter(order_id=delivered_rw_order.id).count()
        records_before = AssignmentRecord.objects.filter(order_id=delivered_rw_order.id).count()

        service.raise_dispute(delivered_rw_order.id, actors.retailer, "damaged")
        service.update_status(
            delivered_rw_order.id, actors.retailer, StatusChangeDTO(status="certified")
        )

        assert (
            OrderStatusHistory.objects.filter(order_id=delivered_rw_order.id).count()
            == before + 1
        )
        assert (
            AssignmentRecord.objects.filter(order_id=delivered_rw_order.id).count()
            == records_before
        )
