"""Unit tests for Orders event handlers and the in-memory bus."""

from __future__ import annotations

import logging
from decimal import Decimal
from uuid import uuid4

import pytest

from modules.orders.events import AssignmentResolved, OrderStatusChanged, RefundRequested
from modules.orders.handlers import (
    AssignmentResolvedHandler,
    OrderStatusChangedHandler,
    RefundRequestedHandler,
)
from modules.orders.settlement import (
    LoggingSettlementGateway,
    RefundResult,
    SettlementGateway,
    build_settlement_gateway,
)
from shared.infrastructure.bus import InMemoryEventBus

pytestmark = pytest.mark.unit


class RecordingGateway(SettlementGateway):
    name = "recording"

    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.calls = []

    def request_refund(self, **kwargs) -> RefundResult:
        self.calls.append(kwargs)
        return RefundResult(ok=self.ok, reference="ref-1", message="" if self.ok else "declined")


def _refund_event(**overrides):
    values = {
        "aggregate_id": uuid4(),
        "order_number": "RW-20260101-ABCDEF",
        "amount": Decimal("25.50"),
        "reason": "return_accepted",
        "beneficiary_id": "retailer-1",
    }
    values.update(overrides)
    return RefundRequested(**values)


def test_status_changed_handler_logs(caplog):
    event = OrderStatusChanged(
        aggregate_id=uuid4(),
        family="retailer_wholesaler",
        order_number="RW-20260101-ABCDEF",
        old_status="pending",
        new_status="accepted",
        actor_id="wholesaler-1",
        actor_role="wholesaler",
    )

    with caplog.at_level(logging.INFO, logger="modules.orders.handlers"):
        OrderStatusChangedHandler().handle(event)

    assert any("order.status_changed" in r.getMessage() for r in caplog.records)


def test_assignment_resolved_handler_logs(caplog):
    event = AssignmentResolved(
        aggregate_id=uuid4(),
        outcome="expired",
        mode="free",
        purpose="delivery",
        transporter_id=None,
    )

    with caplog.at_level(logging.INFO, logger="modules.orders.handlers"):
        AssignmentResolvedHandler().handle(event)

    assert any("order.assignment_resolved" in r.getMessage() for r in caplog.records)


class TestRefundRequestedHandler:
    def test_submits_refund_to_gateway(self, caplog):
        gateway = RecordingGateway()
        event = _refund_event()

        with caplog.at_level(logging.INFO, logger="modules.orders.handlers"):
            RefundRequestedHandler(gateway_factory=lambda: gateway).handle(event)

        assert gateway.calls == [
            {
                "order_id": str(event.aggregate_id),
                "order_number": "RW-20260101-ABCDEF",
                "amount": Decimal("25.50"),
                "beneficiary_id": "retailer-1",
                "reason": "return_accepted",
            }
        ]
        assert any("order.refund_submitted" in r.getMessage() for r in caplog.records)

    def test_declined_refund_is_logged_as_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="modules.orders.handlers"):
            RefundRequestedHandler(gateway_factory=lambda: RecordingGateway(ok=False)).handle(
                _refund_event()
            )

        failures = [r for r in caplog.records if "order.refund_failed" in r.getMessage()]
        assert failures and failures[0].levelno == logging.ERROR

    def test_gateway_built_once(self):
        built = []

        def factory():
            built.append(RecordingGateway())
            return built[-1]

        handler = RefundRequestedHandler(gateway_factory=factory)
        handler.handle(_refund_event())
        handler.handle(_refund_event())

        assert len(built) == 1
        assert len(built[0].calls) == 2


def test_settlement_gateway_comes_from_settings(settings):
    settings.ORDER_SETTLEMENT_GATEWAY = "modules.orders.settlement.LoggingSettlementGateway"
    gateway = build_settlement_gateway()
    assert isinstance(gateway, LoggingSettlementGateway)
    result = gateway.request_refund(
        order_id="x",
        order_number="RW-1",
        amount=Decimal("1.00"),
        beneficiary_id="retailer-1",
        reason="return_accepted",
    )
    assert result.ok
    assert result.reference == "manual:RW-1"


class TestInMemoryEventBus:
    def test_routes_events_by_type(self):
        bus = InMemoryEventBus()
        handled = []

        class CapturingHandler:
            def handle(self, event) -> None:
                handled.append(event)

        bus.subscribe(RefundRequested, CapturingHandler())
        event = _refund_event()
        bus.publish(event)
        bus.publish(
            AssignmentResolved(
                aggregate_id=uuid4(),
                outcome="expired",
                mode="free",
                purpose="delivery",
                transporter_id=None,
            )
        )

        assert handled == [event]

    def test_failing_handler_does_not_stop_others(self, caplog):
        bus = InMemoryEventBus()
        handled = []

        class BrokenHandler:
            def handle(self, event) -> None:
                raise RuntimeError("boom")

        class CapturingHandler:
            def handle(self, event) -> None:
                handled.append(event)

        bus.subscribe(RefundRequested, BrokenHandler())
        bus.subscribe(RefundRequested, CapturingHandler())

        with caplog.at_level(logging.ERROR, logger="shared.infrastructure.bus"):
            bus.publish_all([_refund_event(), _refund_event()])

        assert len(handled) == 2
        assert any("event_bus.handler_failed" in r.getMessage() for r in caplog.records)

    def test_subscribe_is_idempotent(self):
        bus = InMemoryEventBus()
        handled = []

        class CapturingHandler:
            def handle(self, event) -> None:
                handled.append(event)

        handler = CapturingHandler()
        bus.subscribe(RefundRequested, handler)
        bus.subscribe(RefundRequested, handler)
        bus.publish(_refund_event())

        assert len(handled) == 1
