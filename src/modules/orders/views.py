"""Order API views.

Exposes the ``OrderService`` via HTTP using DRF ViewSets.
The service never raises domain errors; it returns an ``OrderResult``
whose error ``code`` is translated here into an HTTP status and a
camelCase error body.
"""

from __future__ import annotations

from typing import Any, Dict

import structlog
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import status
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied
from rest_framework.filters import OrderingFilter, SearchFilter
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.throttling import BaseThrottle
from rest_framework.viewsets import GenericViewSet

from modules.core.pagination import StandardResultsSetPagination
from modules.orders.constants import ActorRole
from modules.orders.dtos import (
    Actor,
    HandleReturnDTO,
    OrderErrorDTO,
    OrderResult,
    PlaceOrderDTO,
    PlaceOrderItemDTO,
    StatusChangeDTO,
)
from modules.orders.filters import OrderFilter
from modules.orders.models import Order
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.serializers import (
    HandleReturnSerializer,
    OrderListSerializer,
    OrderSerializer,
    PlaceOrderSerializer,
    OrderStatisticsSerializer,
    RejectAssignmentSerializer,
    ResolveDisputeSerializer,
    ReturnOrderSerializer,
    StatisticsQuerySerializer,
    StatusChangeSerializer,
    TimelineEntrySerializer,
    camelize,
)
from modules.orders.services import OrderService

logger = structlog.get_logger(__name__)

ERROR_STATUS: Dict[str, int] = {
    "order_not_found": status.HTTP_404_NOT_FOUND,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "assignment_conflict": status.HTTP_409_CONFLICT,
    "store_conflict": status.HTTP_409_CONFLICT,
    "missing_required_field": status.HTTP_400_BAD_REQUEST,
    "not_participant": status.HTTP_403_FORBIDDEN,
}

# Checked in this order when a user belongs to several role groups.
_GROUP_ROLES = (
    ActorRole.ADMIN,
    ActorRole.WHOLESALER,
    ActorRole.SUPPLIER,
    ActorRole.RETAILER,
    ActorRole.TRANSPORTER,
)


def actor_from_request(request: Request) -> Actor:
    """Resolve the calling actor from the authenticated user.

    Superusers act as admin; everyone else needs a Django group named
    after their role.
    """
    user = request.user
    if user.is_superuser:
        return Actor(id=str(user.pk), role=ActorRole.ADMIN)
    groups = set(user.groups.values_list("name", flat=True))
    for role in _GROUP_ROLES:
        if role in groups:
            return Actor(id=str(user.pk), role=role)
    raise PermissionDenied("User has no order role.")


def error_body(error: OrderErrorDTO) -> Dict[str, Any]:
    body: Dict[str, Any] = {"code": error.code, "detail": error.detail}
    for key, value in error.context.items():
        if value is None:
            continue
        if key == "allowed_transitions":
            key = "allowed"
        body.update(camelize({key: value}))
    return {"error": body}


def error_response(result: OrderResult) -> Response:
    return Response(
        error_body(result.error),
        status=ERROR_STATUS.get(result.error.code, status.HTTP_400_BAD_REQUEST),
    )


def build_order_service() -> OrderService:
    return OrderService(order_repository=OrderDjangoRepository())


class OrderViewSet(GenericViewSet):
    """ViewSet for Order operations.

    Uses ``OrderService`` with an injected repository.
    Does **not** extend ``ModelViewSet``; all ORM access goes through
    the service/repository layer.
    """

    queryset = Order.objects.none()
    filterset_class = OrderFilter
    search_fields = ["order_number"]
    ordering_fields = ["created_at", "updated_at", "total_amount", "status"]
    ordering = ["-created_at", "-id"]
    filter_backends = [DjangoFilterBackend, SearchFilter, OrderingFilter]

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._service = build_order_service()

    def get_throttles(self) -> list[BaseThrottle]:
        throttle_scope: str | None
        if self.action == "create":
            throttle_scope = "order_placement"
        elif self.action in {
            "status_change",
            "handle_return",
            "resolve_dispute",
            "accept_assignment",
            "reject_assignment",
        }:
            throttle_scope = "order_status"
        else:
            throttle_scope = None
        self.throttle_scope = throttle_scope
        return super().get_throttles()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, request: Request) -> Response:
        """POST /api/v1/orders/

        Supports idempotency via the ``Idempotency-Key`` header.
        """
        actor = actor_from_request(request)
        serializer = PlaceOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = serializer.validated_data
        dto = PlaceOrderDTO(
            family=data["family"],
            wholesaler_id=data["wholesaler_id"],
            retailer_id=data.get("retailer_id", ""),
            supplier_id=data.get("supplier_id", ""),
            items=[
                PlaceOrderItemDTO(
                    product_ref=item["product_ref"],
                    quantity=item["quantity"],
                    unit_price=item["unit_price"],
                    total_price=item.get("total_price"),
                )
                for item in data["items"]
            ],
            total_amount=data.get("total_amount"),
            final_amount=data.get("final_amount"),
            notes=data.get("notes", ""),
            idempotency_key=request.headers.get("Idempotency-Key"),
        )

        result = self._service.place_order(actor, dto)
        if not result.ok:
            return error_response(result)
        return Response(OrderSerializer(result.order).data, status=status.HTTP_201_CREATED)

    # ------------------------------------------------------------------
    # List / Retrieve
    # ------------------------------------------------------------------

    def get_queryset(self):
        return self._service.list_orders(actor_from_request(self.request))

    def list(self, request: Request) -> Response:
        """GET /api/v1/orders/

        Admins see every order; other actors only the orders they take
        part in, and transporters also see open free-pool offers.
        Filtering and ordering come from ``filter_backends``.
        """
        queryset = self.filter_queryset(self.get_queryset())

        paginator = StandardResultsSetPagination()
        page = paginator.paginate_queryset(queryset, request)
        serializer = OrderListSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)

    def retrieve(self, request: Request, pk: str | None = None) -> Response:
        """GET /api/v1/orders/{pk}/"""
        actor = actor_from_request(request)
        result = self._service.get_order(pk)
        if not result.ok:
            return error_response(result)
        if not self._service.can_view(result.order, actor):
            return Response(
                {"error": {"code": "not_participant", "detail": "Not your order."}},
                status=status.HTTP_403_FORBIDDEN,
            )
        return Response(OrderSerializer(result.order).data)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @action(detail=True, methods=["put"], url_path="status")
    def status_change(self, request: Request, pk: str | None = None) -> Response:
        """PUT /api/v1/orders/{pk}/status/"""
        actor = actor_from_request(request)
        serializer = StatusChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        dto = StatusChangeDTO(**serializer.validated_data)
        return self._respond(self._service.update_status(pk, actor, dto))

    @action(detail=True, methods=["put"], url_path="handle-return")
    def handle_return(self, request: Request, pk: str | None = None) -> Response:
        """PUT /api/v1/orders/{pk}/handle-return/"""
        actor = actor_from_request(request)
        serializer = HandleReturnSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        dto = HandleReturnDTO(**serializer.validated_data)
        return self._respond(self._service.handle_return(pk, actor, dto))

    @action(detail=True, methods=["put"], url_path="resolve-dispute")
    def resolve_dispute(self, request: Request, pk: str | None = None) -> Response:
        """PUT /api/v1/orders/{pk}/resolve-dispute/

        Settles an open dispute and certifies the order; a compensation
        amount is refunded to the retailer.
        """
        actor = actor_from_request(request)
        serializer = ResolveDisputeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = serializer.validated_data
        result = self._service.resolve_dispute(
            pk,
            actor,
            data["notes"],
            resolution_type=data.get("resolution_type"),
            compensation_amount=data.get("compensation_amount"),
        )
        return self._respond(result)

    @action(detail=True, methods=["put"], url_path="accept-assignment")
    def accept_assignment(self, request: Request, pk: str | None = None) -> Response:
        actor = actor_from_request(request)
        return self._respond(self._service.accept_assignment(pk, actor))

    @action(detail=True, methods=["put"], url_path="reject-assignment")
    def reject_assignment(self, request: Request, pk: str | None = None) -> Response:
        actor = actor_from_request(request)
        serializer = RejectAssignmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        reason = serializer.validated_data["reason"]
        return self._respond(self._service.reject_assignment(pk, actor, reason))

    @action(detail=False, methods=["get"])
    def stats(self, request: Request) -> Response:
        """GET /api/v1/orders/stats/?timeframe=all|week|month|quarter|year"""
        actor = actor_from_request(request)
        query = StatisticsQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        stats = self._service.statistics(actor, query.validated_data["timeframe"])
        return Response(OrderStatisticsSerializer(stats).data)

    @action(detail=True, methods=["get"])
    def timeline(self, request: Request, pk: str | None = None) -> Response:
        """GET /api/v1/orders/{pk}/timeline/"""
        actor = actor_from_request(request)
        result = self._service.timeline(pk)
        if not result.ok:
            return error_response(result)
        if not self._service.can_view(result.order, actor):
            return Response(
                {"error": {"code": "not_participant", "detail": "Not your order."}},
                status=status.HTTP_403_FORBIDDEN,
            )
        return Response(
            {
                "orderId": str(result.order.id),
                "orderNumber": result.order.order_number,
                "entries": TimelineEntrySerializer(result.timeline, many=True).data,
            }
        )

    def _respond(self, result: OrderResult) -> Response:
        if not result.ok:
            return error_response(result)
        return Response(OrderSerializer(result.order).data)


class TransporterReturnOrderViewSet(GenericViewSet):
    """The free pool of supplier-bound returns, seen from the transporter side."""

    queryset = Order.objects.none()

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._service = build_order_service()

    def _transporter(self, request: Request) -> Actor:
        actor = actor_from_request(request)
        if actor.role != ActorRole.TRANSPORTER:
            raise PermissionDenied("Only transporters can browse return orders.")
        return actor

    def list(self, request: Request) -> Response:
        """GET /api/v1/transporters/return-orders/"""
        self._transporter(request)
        orders = self._service.available_returns()
        return Response(ReturnOrderSerializer(orders, many=True).data)

    @action(detail=True, methods=["put"])
    def accept(self, request: Request, pk: str | None = None) -> Response:
        """PUT /api/v1/transporters/return-orders/{pk}/accept/"""
        actor = self._transporter(request)
        result = self._service.accept_assignment(pk, actor)
        if not result.ok:
            return error_response(result)
        return Response(OrderSerializer(result.order).data)
