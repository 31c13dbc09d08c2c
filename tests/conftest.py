from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.utils import timezone
from rest_framework.test import APIClient

from modules.orders.constants import AssignmentMode, OrderFamily, OrderStatus
from modules.orders.dtos import (
    Actor,
    PlaceOrderDTO,
    PlaceOrderItemDTO,
    StatusChangeDTO,
)
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.services import OrderService

ASSIGNMENT_TTL_MINUTES = 30
RETURN_POOL_TTL_MINUTES = 60


@pytest.fixture(autouse=True)
def _use_db(db):
    """Automatically use the test database for all tests."""


@pytest.fixture()
def api_client():
    """DRF APIClient for testing API endpoints."""
    return APIClient()


@pytest.fixture()
def api_client_with_correlation(api_client):
    """APIClient pre-configured with a known correlation ID header."""
    cid = "test-correlation-id-fixture"
    api_client.defaults["HTTP_X_REQUEST_ID"] = cid
    return api_client, cid


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic, manually advanced replacement for ``timezone.now``."""

    def __init__(self) -> None:
        self.now = timezone.now().replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def actors():
    return SimpleNamespace(
        retailer=Actor(id="retailer-1", role="retailer"),
        other_retailer=Actor(id="retailer-2", role="retailer"),
        wholesaler=Actor(id="wholesaler-1", role="wholesaler"),
        supplier=Actor(id="supplier-1", role="supplier"),
        t1=Actor(id="transporter-1", role="transporter"),
        t2=Actor(id="transporter-2", role="transporter"),
        t3=Actor(id="transporter-3", role="transporter"),
        admin=Actor(id="admin-1", role="admin"),
    )


@pytest.fixture()
def ttl():
    """Assignment TTLs (minutes) the ``service`` fixture runs with."""
    return SimpleNamespace(
        assignment=ASSIGNMENT_TTL_MINUTES, return_pool=RETURN_POOL_TTL_MINUTES
    )


@pytest.fixture()
def service(settings, clock):
    settings.ORDER_ASSIGNMENT_TTL_MINUTES = ASSIGNMENT_TTL_MINUTES
    settings.ORDER_RETURN_POOL_TTL_MINUTES = RETURN_POOL_TTL_MINUTES
    return OrderService(order_repository=OrderDjangoRepository(), clock=clock)


@pytest.fixture()
def place(service, actors):
    """Place an order of ``family`` and return it (``pending``)."""

    def _place(family: str = OrderFamily.RETAILER_WHOLESALER, **overrides):
        if family == OrderFamily.RETAILER_WHOLESALER:
            buyer = actors.retailer
            parties = {
                "retailer_id": actors.retailer.id,
                "wholesaler_id": actors.wholesaler.id,
            }
        else:
            buyer = actors.wholesaler
            parties = {
                "wholesaler_id": actors.wholesaler.id,
                "supplier_id": actors.supplier.id,
            }
        dto = PlaceOrderDTO(
            family=family,
            items=[
                PlaceOrderItemDTO(
                    product_ref="SKU-1", quantity=2, unit_price=Decimal("10.00")
                ),
                PlaceOrderItemDTO(
                    product_ref="SKU-2", quantity=1, unit_price=Decimal("5.50")
                ),
            ],
            **{**parties, **overrides},
        )
        result = service.place_order(buyer, dto)
        assert result.ok, result.error
        return result.order

    return _place


@pytest.fixture()
def move(service):
    """Apply a status change that must succeed; returns the updated order."""

    def _move(order, actor: Actor, status: str, **fields):
        result = service.update_status(order.id, actor, StatusChangeDTO(status=status, **fields))
        assert result.ok, result.error
        return result.order

    return _move


@pytest.fixture()
def processing_order(place, move, actors):
    """Retailer → wholesaler order ready for a transporter."""
    order = place(OrderFamily.RETAILER_WHOLESALER)
    order = move(order, actors.wholesaler, OrderStatus.ACCEPTED)
    return move(order, actors.wholesaler, OrderStatus.PROCESSING)


@pytest.fixture()
def delivered_rw_order(processing_order, move, actors):
    order = move(
        processing_order,
        actors.wholesaler,
        OrderStatus.ASSIGNED_TO_TRANSPORTER,
        assignment_type=AssignmentMode.SPECIFIC,
        transporter_id=actors.t1.id,
    )
    order = move(order, actors.t1, OrderStatus.ACCEPTED_BY_TRANSPORTER)
    order = move(order, actors.t1, OrderStatus.IN_TRANSIT)
    return move(order, actors.t1, OrderStatus.DELIVERED)


@pytest.fixture()
def ready_ws_order(place, move, actors):
    """Wholesaler → supplier order ready for delivery."""
    order = place(OrderFamily.WHOLESALER_SUPPLIER)
    order = move(order, actors.supplier, OrderStatus.CONFIRMED)
    order = move(order, actors.supplier, OrderStatus.IN_PRODUCTION)
    return move(order, actors.supplier, OrderStatus.READY_FOR_DELIVERY)


@pytest.fixture()
def delivered_ws_order(ready_ws_order, move, actors):
    order = move(
        ready_ws_order,
        actors.supplier,
        OrderStatus.ASSIGNED_TO_TRANSPORTER,
        assignment_type=AssignmentMode.SPECIFIC,
        transporter_id=actors.t1.id,
    )
    order = move(order, actors.t1, OrderStatus.ACCEPTED_BY_TRANSPORTER)
    order = move(order, actors.t1, OrderStatus.IN_TRANSIT)
    return move(order, actors.t1, OrderStatus.DELIVERED)


# ---------------------------------------------------------------------------
# API users
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_user():
    """Create a user in the Django group named after ``role``."""
    User = get_user_model()

    def _make_user(username: str, role: str | None = None, superuser: bool = False):
        if superuser:
            return User.objects.create_superuser(
                username=username, password="testpass123", email=f"{username}@example.com"
            )
        user = User.objects.create_user(username=username, password="testpass123")
        if role:
            group, _ = Group.objects.get_or_create(name=role)
            user.groups.add(group)
        return user

    return _make_user


@pytest.fixture()
def client_for():
    """APIClient authenticated as ``user``."""

    def _client_for(user):
        client = APIClient()
        client.force_authenticate(user=user)
        return client

    return _client_for
