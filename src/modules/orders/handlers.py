"""Event handlers for Orders domain events.

Subscribed to the in-process bus in ``OrdersConfig.ready()``; they run
after the originating transaction has committed.
"""

from __future__ import annotations

from typing import Callable, Optional

import structlog

from modules.orders.events import (
    AssignmentResolved,
    OrderStatusChanged,
    RefundRequested,
)
from modules.orders.settlement import SettlementGateway, build_settlement_gateway
from shared.domain.bus import IEventHandler

logger = structlog.get_logger(__name__)


class OrderStatusChangedHandler(IEventHandler[OrderStatusChanged]):
    def handle(self, event: OrderStatusChanged) -> None:
        logger.info(
            "order.status_changed",
            order_id=str(event.aggregate_id),
            order_number=event.order_number,
            old_status=event.old_status,
            new_status=event.new_status,
            actor_role=event.actor_role,
        )


class AssignmentResolvedHandler(IEventHandler[AssignmentResolved]):
    def handle(self, event: AssignmentResolved) -> None:
        logger.info(
            "order.assignment_resolved",
            order_id=str(event.aggregate_id),
            outcome=event.outcome,
            mode=event.mode,
            purpose=event.purpose,
            transporter_id=event.transporter_id,
        )


class RefundRequestedHandler(IEventHandler[RefundRequested]):
    """Hands an accepted return to the configured settlement gateway.

    The gateway is built lazily so settings overrides in tests apply.
    """

    def __init__(
        self, gateway_factory: Callable[[], SettlementGateway] = build_settlement_gateway
    ) -> None:
        self._gateway_factory = gateway_factory
        self._gateway: Optional[SettlementGateway] = None

    def handle(self, event: RefundRequested) -> None:
        if self._gateway is None:
            self._gateway = self._gateway_factory()
        result = self._gateway.request_refund(
            order_id=str(event.aggregate_id),
            order_number=event.order_number,
            amount=event.amount,
            beneficiary_id=event.beneficiary_id,
            reason=event.reason,
        )
        log = logger.bind(
            order_id=str(event.aggregate_id),
            gateway=self._gateway.name,
            reference=result.reference,
        )
        if result.ok:
            log.info("order.refund_submitted")
        else:
            log.error("order.refund_failed", message=result.message)


order_status_changed_handler = OrderStatusChangedHandler()
assignment_resolved_handler = AssignmentResolvedHandler()
refund_requested_handler = RefundRequestedHandler()
