from django.apps import AppConfig


class OrdersConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "modules.orders"
    label = "orders"

    def ready(self) -> None:
        from modules.orders.events import (
            AssignmentResolved,
            OrderStatusChanged,
            RefundRequested,
        )
        from modules.orders.handlers import (
            assignment_resolved_handler,
            order_status_changed_handler,
            refund_requested_handler,
        )
        from shared.infrastructure.bus import event_bus

        event_bus.subscribe(OrderStatusChanged, order_status_changed_handler)
        event_bus.subscribe(AssignmentResolved, assignment_resolved_handler)
        event_bus.subscribe(RefundRequested, refund_requested_handler)
