"""Turns relayed order events into WhatsApp messages.

Only status changes and transporter offers notify anyone.  Recipients
come from the event payload; those without an enabled
``NotificationContact`` are skipped.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from django.conf import settings

from modules.notifications.models import NotificationContact
from modules.notifications.whatsapp import WhatsAppGateway, WhatsAppResult
from modules.orders.constants import OrderStatus

logger = structlog.get_logger(__name__)

STATUS_MESSAGES: Dict[str, str] = {
    OrderStatus.ACCEPTED: "Order {order_number} was accepted by the wholesaler.",
    OrderStatus.REJECTED: "Order {order_number} was rejected by the wholesaler.",
    OrderStatus.CONFIRMED: "Order {order_number} was confirmed by the supplier.",
    OrderStatus.ASSIGNED_TO_TRANSPORTER: "Order {order_number} is waiting for a transporter.",
    OrderStatus.ACCEPTED_BY_TRANSPORTER: "A transporter accepted order {order_number}.",
    OrderStatus.REJECTED_BY_TRANSPORTER: "The transporter declined order {order_number}.",
    OrderStatus.CANCELLED_BY_TRANSPORTER: "The transporter dropped order {order_number}.",
    OrderStatus.IN_TRANSIT: "Order {order_number} is on its way.",
    OrderStatus.DELIVERED: "Order {order_number} was delivered.",
    OrderStatus.CERTIFIED: "Order {order_number} was certified as received.",
    OrderStatus.DISPUTED: "Order {order_number} was disputed.",
    OrderStatus.RETURN_REQUESTED: "A return was requested for order {order_number}.",
    OrderStatus.RETURN_ACCEPTED: "The return of order {order_number} was accepted.",
    OrderStatus.RETURN_REJECTED: "The return of order {order_number} was rejected.",
    OrderStatus.RETURNED_TO_SUPPLIER: "Order {order_number} is back with the supplier.",
}

DEFAULT_MESSAGE = "Order {order_number} is now {status}."


def render_status_message(payload: Dict[str, Any]) -> str:
    status = payload.get("new_status", "")
    template = STATUS_MESSAGES.get(status, DEFAULT_MESSAGE)
    return template.format(
        order_number=payload.get("order_number", ""),
        status=status.replace("_", " "),
    )


class NotificationDispatcher:
    def __init__(
        self,
        gateway: Optional[WhatsAppGateway] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        self._gateway = gateway
        self._enabled = settings.WHATSAPP_ENABLED if enabled is None else enabled

    @property
    def gateway(self) -> WhatsAppGateway:
        if self._gateway is None:
            self._gateway = WhatsAppGateway.from_settings()
        return self._gateway

    def dispatch(self, event_type: str, payload: Dict[str, Any]) -> List[WhatsAppResult]:
        if event_type == "OrderStatusChanged":
            message = render_status_message(payload)
        elif event_type == "TransporterAssigned" and payload.get("transporter_id"):
            message = "You have a new transport offer. Open the app to accept it."
        else:
            return []
        return self.notify(payload.get("recipients") or [], message)

    def notify(self, actor_ids: List[str], message: str) -> List[WhatsAppResult]:
        if not self._enabled:
            logger.debug("notifications.whatsapp_disabled", recipients=len(actor_ids))
            return []

        contacts = NotificationContact.objects.filter(
            actor_id__in=actor_ids, whatsapp_enabled=True
        )
        results: List[WhatsAppResult] = []
        for contact in contacts:
            result = self.gateway.send(
                phone_number=contact.phone_number,
                message=message,
                api_key=contact.whatsapp_api_key,
            )
            logger.info(
                "notifications.whatsapp_attempted",
                actor_id=contact.actor_id,
                success=result.success,
                message_id=result.message_id,
                error=result.error,
            )
            results.append(result)
        return results
