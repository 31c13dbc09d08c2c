"""Order DRF serializers for API input/output.

The serializer operates at the Interface layer (API Views).
Business logic lives in the Service Layer, which receives
Pydantic DTOs from ``dtos.py``.

Wire names are camelCase; each field maps to its snake_case attribute
through ``source``.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from rest_framework import serializers

from modules.orders.constants import (
    STATISTICS_TIMEFRAMES,
    AssignmentMode,
    OrderFamily,
    OrderStatus,
    ReturnAction,
)
from modules.orders.models import (
    AssignmentRecord,
    Order,
    OrderItem,
    OrderStatusHistory,
)


def camelize(value: Any) -> Any:
    """Recursively convert snake_case dict keys to camelCase."""
    if isinstance(value, dict):
        return {_camel(key): camelize(val) for key, val in value.items()}
    if isinstance(value, list):
        return [camelize(item) for item in value]
    return value


def _camel(key: str) -> str:
    head, *tail = key.split("_")
    return head + "".join(part.title() for part in tail)


# ---------------------------------------------------------------------------
# Input Serializers
# ---------------------------------------------------------------------------


class PlaceOrderItemSerializer(serializers.Serializer):
    productRef = serializers.CharField(source="product_ref", max_length=64)
    quantity = serializers.IntegerField(min_value=1)
    unitPrice = serializers.DecimalField(
        source="unit_price", max_digits=12, decimal_places=2, min_value=0
    )
    totalPrice = serializers.DecimalField(
        source="total_price",
        max_digits=12,
        decimal_places=2,
        required=False,
        allow_null=True,
    )


class PlaceOrderSerializer(serializers.Serializer):
    """Validates the order placement payload."""

    family = serializers.ChoiceField(choices=OrderFamily.choices)
    wholesalerId = serializers.CharField(source="wholesaler_id", max_length=64)
    retailerId = serializers.CharField(
        source="retailer_id", max_length=64, required=False, default="", allow_blank=True
    )
    supplierId = serializers.CharField(
        source="supplier_id", max_length=64, required=False, default="", allow_blank=True
    )
    items = PlaceOrderItemSerializer(many=True, allow_empty=False)
    totalAmount = serializers.DecimalField(
        source="total_amount",
        max_digits=12,
        decimal_places=2,
        required=False,
        allow_null=True,
    )
    finalAmount = serializers.DecimalField(
        source="final_amount",
        max_digits=12,
        decimal_places=2,
        required=False,
        allow_null=True,
    )
    notes = serializers.CharField(required=False, default="", allow_blank=True)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        family = attrs["family"]
        if family == OrderFamily.RETAILER_WHOLESALER and not attrs.get("retailer_id"):
            raise serializers.ValidationError(
                {"retailerId": "Required for retailer_wholesaler orders."}
            )
        if family == OrderFamily.WHOLESALER_SUPPLIER and not attrs.get("supplier_id"):
            raise serializers.ValidationError(
                {"supplierId": "Required for wholesaler_supplier orders."}
            )
        return attrs


class StatusChangeSerializer(serializers.Serializer):
    """Body of ``PUT /orders/{id}/status/``.

    Required fields per transition are checked by the service, which
    answers with ``missing_required_field``.
    """

    status = serializers.ChoiceField(choices=OrderStatus.choices)
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    rejectionReason = serializers.CharField(
        source="rejection_reason", required=False, allow_blank=True, allow_null=True
    )
    notes = serializers.CharField(required=False, default="", allow_blank=True)
    assignmentType = serializers.ChoiceField(
        source="assignment_type",
        choices=AssignmentMode.choices,
        required=False,
        allow_null=True,
    )
    transporterId = serializers.CharField(
        source="transporter_id", required=False, allow_blank=True, allow_null=True
    )
    resolutionType = serializers.CharField(
        source="resolution_type", required=False, allow_null=True, max_length=32
    )
    compensationAmount = serializers.DecimalField(
        source="compensation_amount",
        max_digits=12,
        decimal_places=2,
        min_value=Decimal("0.01"),
        required=False,
        allow_null=True,
    )


class HandleReturnSerializer(serializers.Serializer):
    action = serializers.ChoiceField(choices=ReturnAction.choices)
    rejectionReason = serializers.CharField(
        source="rejection_reason", required=False, allow_blank=True, allow_null=True
    )
    returnNotes = serializers.CharField(
        source="return_notes", required=False, default="", allow_blank=True
    )


class RejectAssignmentSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, default="", allow_blank=True)


class ResolveDisputeSerializer(serializers.Serializer):
    """Body of ``PUT /orders/{id}/resolve-dispute/``."""

    resolutionNotes = serializers.CharField(source="notes")
    resolutionType = serializers.CharField(
        source="resolution_type", required=False, default="standard", max_length=32
    )
    compensationAmount = serializers.DecimalField(
        source="compensation_amount",
        max_digits=12,
        decimal_places=2,
        min_value=Decimal("0.01"),
        required=False,
        allow_null=True,
    )


class StatisticsQuerySerializer(serializers.Serializer):
    timeframe = serializers.ChoiceField(
        choices=list(STATISTICS_TIMEFRAMES), required=False, default="all"
    )


# ---------------------------------------------------------------------------
# Output Serializers (Read)
# ---------------------------------------------------------------------------


class OrderItemSerializer(serializers.ModelSerializer):
    productRef = serializers.CharField(source="product_ref", read_only=True)
    unitPrice = serializers.DecimalField(
        source="unit_price", max_digits=12, decimal_places=2, read_only=True
    )
    totalPrice = serializers.DecimalField(
        source="total_price", max_digits=12, decimal_places=2, read_only=True
    )

    class Meta:
        model = OrderItem
        fields = ["id", "productRef", "quantity", "unitPrice", "totalPrice"]
        read_only_fields = fields


class StatusHistorySerializer(serializers.ModelSerializer):
    oldStatus = serializers.CharField(source="old_status", read_only=True)
    newStatus = serializers.CharField(source="new_status", read_only=True)
    actorId = serializers.CharField(source="actor_id", read_only=True)
    actorRole = serializers.CharField(source="actor_role", read_only=True)
    changedAt = serializers.DateTimeField(source="changed_at", read_only=True)

    class Meta:
        model = OrderStatusHistory
        fields = ["id", "oldStatus", "newStatus", "actorId", "actorRole", "notes", "changedAt"]
        read_only_fields = fields


class AssignmentRecordSerializer(serializers.ModelSerializer):
    transporterId = serializers.CharField(source="transporter_id", read_only=True)
    assignedAt = serializers.DateTimeField(source="assigned_at", read_only=True)
    resolvedAt = serializers.DateTimeField(source="resolved_at", read_only=True)

    class Meta:
        model = AssignmentRecord
        fields = [
            "transporterId",
            "mode",
            "purpose",
            "outcome",
            "reason",
            "assignedAt",
            "resolvedAt",
        ]
        read_only_fields = fields


class OrderListSerializer(serializers.ModelSerializer):
    """Lightweight serializer for order list (no nested relations)."""

    orderNumber = serializers.CharField(source="order_number", read_only=True)
    retailerId = serializers.CharField(source="retailer_id", read_only=True)
    wholesalerId = serializers.CharField(source="wholesaler_id", read_only=True)
    supplierId = serializers.CharField(source="supplier_id", read_only=True)
    transporterId = serializers.CharField(source="transporter_id", read_only=True)
    totalAmount = serializers.DecimalField(
        source="total_amount", max_digits=12, decimal_places=2, read_only=True
    )
    finalAmount = serializers.DecimalField(
        source="final_amount", max_digits=12, decimal_places=2, read_only=True
    )
    assignment = serializers.SerializerMethodField()
    createdAt = serializers.DateTimeField(source="created_at", read_only=True)
    updatedAt = serializers.DateTimeField(source="updated_at", read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "orderNumber",
            "family",
            "status",
            "retailerId",
            "wholesalerId",
            "supplierId",
            "transporterId",
            "totalAmount",
            "finalAmount",
            "assignment",
            "version",
            "createdAt",
            "updatedAt",
        ]
        read_only_fields = fields

    def get_assignment(self, obj: Order) -> Optional[Dict[str, Any]]:
        assignment = obj.assignment
        if assignment is None:
            return None
        return camelize(assignment.model_dump(mode="json"))


class OrderSerializer(OrderListSerializer):
    """Read serializer for orders with nested items and the audit trail."""

    items = OrderItemSerializer(many=True, read_only=True)
    statusHistory = StatusHistorySerializer(
        source="status_history", many=True, read_only=True
    )
    assignmentHistory = AssignmentRecordSerializer(
        source="assignment_history", many=True, read_only=True
    )
    cancellationDetails = serializers.SerializerMethodField()
    disputeDetails = serializers.SerializerMethodField()
    disputeHistory = serializers.SerializerMethodField()
    returnDetails = serializers.SerializerMethodField()
    returnHistory = serializers.SerializerMethodField()

    class Meta(OrderListSerializer.Meta):
        fields = OrderListSerializer.Meta.fields + [
            "notes",
            "items",
            "cancellationDetails",
            "disputeDetails",
            "disputeHistory",
            "returnDetails",
            "returnHistory",
            "statusHistory",
            "assignmentHistory",
        ]
        read_only_fields = fields

    def get_cancellationDetails(self, obj: Order) -> Optional[Dict[str, Any]]:
        return camelize(obj.cancellation_details)

    def get_disputeDetails(self, obj: Order) -> Optional[Dict[str, Any]]:
        return camelize(obj.disputes[-1]) if obj.disputes else None

    def get_disputeHistory(self, obj: Order) -> List[Dict[str, Any]]:
        return camelize(obj.disputes[:-1])

    def get_returnDetails(self, obj: Order) -> Optional[Dict[str, Any]]:
        return camelize(obj.returns[-1]) if obj.returns else None

    def get_returnHistory(self, obj: Order) -> List[Dict[str, Any]]:
        return camelize(obj.returns[:-1])


class ReturnOrderSerializer(serializers.ModelSerializer):
    """A supplier-bound return waiting in the transporter pool."""

    orderNumber = serializers.CharField(source="order_number", read_only=True)
    wholesalerId = serializers.CharField(source="wholesaler_id", read_only=True)
    supplierId = serializers.CharField(source="supplier_id", read_only=True)
    items = OrderItemSerializer(many=True, read_only=True)
    returnReason = serializers.SerializerMethodField()
    expiresAt = serializers.DateTimeField(source="assignment_expires_at", read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "orderNumber",
            "status",
            "wholesalerId",
            "supplierId",
            "items",
            "returnReason",
            "expiresAt",
        ]
        read_only_fields = fields

    def get_returnReason(self, obj: Order) -> Optional[str]:
        details = obj.return_details
        return details.return_reason if details else None


class TimelineEntrySerializer(serializers.Serializer):
    kind = serializers.CharField()
    at = serializers.DateTimeField()
    summary = serializers.CharField()
    actorId = serializers.CharField(source="actor_id", allow_null=True)
    data = serializers.SerializerMethodField()

    def get_data(self, obj: Any) -> Dict[str, Any]:
        return camelize(obj.data)


class OrderStatisticsSerializer(serializers.Serializer):
    timeframe = serializers.CharField()
    since = serializers.DateTimeField(allow_null=True)
    totalOrders = serializers.IntegerField(source="total_orders")
    totalAmount = serializers.DecimalField(
        source="total_amount", max_digits=14, decimal_places=2
    )
    averageOrderValue = serializers.DecimalField(
        source="average_order_value", max_digits=14, decimal_places=2
    )
    # Keys are status and family wire tokens and stay snake_case.
    byStatus = serializers.DictField(source="by_status", child=serializers.IntegerField())
    byFamily = serializers.DictField(source="by_family", child=serializers.IntegerField())
