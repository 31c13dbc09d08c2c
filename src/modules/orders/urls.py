"""Order URL configuration."""

from __future__ import annotations

from rest_framework.routers import DefaultRouter

from modules.orders.views import OrderViewSet, TransporterReturnOrderViewSet

router = DefaultRouter(trailing_slash=True)
router.register("orders", OrderViewSet, basename="order")
router.register(
    "transporters/return-orders",
    TransporterReturnOrderViewSet,
    basename="transporter-return-order",
)

urlpatterns = router.urls
