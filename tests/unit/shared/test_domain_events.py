"""Unit tests for domain event primitives and their registration on orders."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from modules.orders.constants import OrderFamily, OrderStatus
from modules.orders.events import RefundRequested, TransporterAssigned
from modules.orders.models import Order

pytestmark = pytest.mark.unit


def test_order_registers_and_clears_domain_events():
    order = Order(
        family=OrderFamily.RETAILER_WHOLESALER,
        order_number="RW-20260101-000001",
        status=OrderStatus.PENDING,
        retailer_id="retailer-1",
        wholesaler_id="wholesaler-1",
        total_amount=Decimal("0.00"),
    )

    assert order.domain_events == []

    event = RefundRequested(
        aggregate_id=order.id,
        order_number=order.order_number,
        amount=Decimal("1.00"),
        reason="return_accepted",
        beneficiary_id="retailer-1",
    )
    order.add_domain_event(event)

    assert order.domain_events == [event]
    assert event.event_name == "RefundRequested"

    order.clear_domain_events()
    assert order.domain_events == []


def test_domain_events_property_returns_a_copy():
    order = Order(family=OrderFamily.WHOLESALER_SUPPLIER, wholesaler_id="w")
    order.domain_events.append("not-an-event")
    assert order.domain_events == []


def test_payload_is_json_safe():
    aggregate_id = uuid4()
    expires_at = datetime(2026, 1, 1, 12, 30, tzinfo=timezone.utc)
    event = TransporterAssigned(
        aggregate_id=aggregate_id,
        mode="specific",
        purpose="delivery",
        transporter_id="transporter-1",
        expires_at=expires_at,
        recipients=("transporter-1",),
    )

    payload = event.to_payload()

    assert payload["aggregate_id"] == str(aggregate_id)
    assert payload["expires_at"] == expires_at.isoformat()
    assert payload["recipients"] == ["transporter-1"]
    assert payload["event_name"] == "TransporterAssigned"
    assert UUID(payload["event_id"])


def test_decimal_and_nested_values_are_stringified():
    event = RefundRequested(
        aggregate_id=uuid4(),
        order_number="WS-20260101-000002",
        amount=Decimal("99.90"),
        reason="returned_to_supplier",
        beneficiary_id="wholesaler-1",
        metadata={"lines": [Decimal("1.10")]},
    )

    payload = event.to_payload()

    assert payload["amount"] == "99.90"
    assert payload["metadata"] == {"lines": ["1.10"]}


def test_events_are_immutable():
    event = RefundRequested(
        aggregate_id=uuid4(),
        order_number="RW-1",
        amount=Decimal("1.00"),
        reason="x",
        beneficiary_id="r",
    )
    with pytest.raises(AttributeError):
        event.amount = Decimal("2.00")
