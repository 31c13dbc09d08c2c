"""Unit tests for the audit trail recorder and the append-only models."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from modules.orders.audit import AuditTrailRecorder
from modules.orders.constants import AssignmentOutcome, OrderFamily, OrderStatus
from modules.orders.dtos import Actor, Assignment, DisputeDetails, ReturnDetails
from modules.orders.exceptions import AuditViolation
from modules.orders.models import AssignmentRecord, Order, OrderStatusHistory

pytestmark = pytest.mark.unit

WHOLESALER = Actor(id="wholesaler-1", role="wholesaler")


def _order(**overrides):
    values = {
        "family": OrderFamily.RETAILER_WHOLESALER,
        "status": OrderStatus.PENDING,
        "retailer_id": "retailer-1",
        "wholesaler_id": WHOLESALER.id,
        "total_amount": Decimal("10.00"),
        "final_amount": Decimal("10.00"),
    }
    values.update(overrides)
    return Order(**values)


@pytest.fixture()
def recorder():
    return AuditTrailRecorder()


class TestStagedRows:
    def test_transition_is_staged_not_saved(self, recorder):
        order = _order()
        now = timezone.now()
        entry = recorder.record_transition(
            order, OrderStatus.PENDING, OrderStatus.ACCEPTED, WHOLESALER, now, "ok"
        )

        assert order.pending_audit_entries == [entry]
        assert entry.actor_id == WHOLESALER.id
        assert entry.actor_role == "wholesaler"
        assert entry.changed_at == now
        assert entry._state.adding

    def test_system_transition_has_blank_actor(self, recorder):
        entry = recorder.record_transition(
            _order(), OrderStatus.PENDING, OrderStatus.ACCEPTED, None, timezone.now()
        )
        assert entry.actor_id == ""
        assert entry.actor_role == ""

    def test_assignment_outcome_prefers_explicit_transporter(self, recorder):
        now = timezone.now()
        assignment = Assignment(
            mode="specific",
            transporter_id="transporter-1",
            assigned_at=now - timedelta(minutes=5),
            expires_at=now + timedelta(minutes=25),
        )
        record = recorder.record_assignment_outcome(
            _order(), assignment, AssignmentOutcome.REJECTED, now, reason="full"
        )
        assert record.transporter_id == "transporter-1"
        assert record.assigned_at == assignment.assigned_at
        assert record.resolved_at == now


class TestSetOnceDocuments:
    def test_cancellation_written_once(self, recorder):
        order = _order()
        now = timezone.now()
        recorder.record_cancellation(order, WHOLESALER, "no stock", "pending", now)

        assert order.cancellation.reason == "no stock"
        assert order.cancellation.previous_status == "pending"
        with pytest.raises(AuditViolation):
            recorder.record_cancellation(order, WHOLESALER, "again", "pending", now)

    def test_resolve_without_dispute(self, recorder):
        with pytest.raises(AuditViolation):
            recorder.resolve_dispute(_order(), timezone.now())

    def test_update_without_return(self, recorder):
        with pytest.raises(AuditViolation):
            recorder.update_return(_order(), return_completed_at=timezone.now())

    def test_open_return_twice(self, recorder):
        order = _order()
        details = ReturnDetails(
            returned_by="retailer-1", return_requested_at=timezone.now(), return_reason="x"
        )
        recorder.open_return(order, details)
        with pytest.raises(AuditViolation):
            recorder.open_return(order, details)

    def test_resolving_keeps_earlier_disputes(self, recorder):
        order = _order()
        now = timezone.now()
        recorder.open_dispute(
            order, DisputeDetails(disputed_by="retailer-1", disputed_at=now, reason="a")
        )
        recorder.resolve_dispute(order, now, "settled")
        recorder.open_dispute(
            order, DisputeDetails(disputed_by="retailer-1", disputed_at=now, reason="b")
        )

        assert [d["reason"] for d in order.disputes] == ["a", "b"]
        assert order.disputes[0]["resolution_notes"] == "settled"


class TestAppendOnlyRows:
    @pytest.fixture()
    def saved_order(self):
        order = _order()
        order.save()
        return order

    def test_history_row_cannot_be_updated(self, saved_order):
        entry = OrderStatusHistory.objects.create(
            order=saved_order, old_status=None, new_status=OrderStatus.PENDING
        )
        entry.notes = "rewritten"
        with pytest.raises(AuditViolation, match="immutable"):
            entry.save()

    def test_history_row_cannot_be_deleted(self, saved_order):
        entry = OrderStatusHistory.objects.create(
            order=saved_order, old_status=None, new_status=OrderStatus.PENDING
        )
        with pytest.raises(AuditViolation, match="cannot be removed"):
            entry.delete()
        assert OrderStatusHistory.objects.filter(id=entry.id).exists()

    def test_assignment_record_cannot_be_updated(self, saved_order):
        now = timezone.now()
        record = AssignmentRecord.objects.create(
            order=saved_order,
            transporter_id="transporter-1",
            mode="specific",
            outcome=AssignmentOutcome.EXPIRED,
            assigned_at=now,
            resolved_at=now,
        )
        record.outcome = AssignmentOutcome.ACCEPTED
        with pytest.raises(AuditViolation):
            record.save()


class TestTimeline:
    def test_merges_sources_in_time_order(self, recorder):
        order = _order()
        order.save()
        start = timezone.now()
        recorder.record_transition(order, None, OrderStatus.PENDING, None, start)
        recorder.record_transition(
            order,
            OrderStatus.PENDING,
            OrderStatus.CANCELLED_BY_WHOLESALER,
            WHOLESALER,
            start + timedelta(minutes=10),
        )
        recorder.record_cancellation(
            order,
            WHOLESALER,
            "no stock",
            OrderStatus.PENDING,
            start + timedelta(minutes=10),
        )
        for entry in order.pending_audit_entries:
            entry.save()
        order.clear_pending_audit()

        kinds = [entry.kind for entry in recorder.timeline(order)]

        assert kinds[0] == "order_placed"
        assert set(kinds[1:]) == {"status_changed", "cancelled"}
