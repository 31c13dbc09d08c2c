"""Settlement gateway seam.

Refunds are settled by an external payment service.  The order module
only announces them (``RefundRequested``); the gateway configured in
``ORDER_SETTLEMENT_GATEWAY`` carries them out.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from django.conf import settings
from django.utils.module_loading import import_string

logger = structlog.get_logger(__name__)


@dataclass
class RefundResult:
    ok: bool
    reference: Optional[str] = None
    message: str = ""
    raw: Optional[Dict[str, Any]] = None


class SettlementGateway:
    name = "base"

    def request_refund(
        self,
        *,
        order_id: str,
        order_number: str,
        amount: Decimal,
        beneficiary_id: str,
        reason: str,
    ) -> RefundResult:
        raise NotImplementedError


class LoggingSettlementGateway(SettlementGateway):
    """Records the refund request and leaves settlement to back office."""

    name = "logging"

    def request_refund(
        self,
        *,
        order_id: str,
        order_number: str,
        amount: Decimal,
        beneficiary_id: str,
        reason: str,
    ) -> RefundResult:
        logger.info(
            "settlement.refund_requested",
            order_id=order_id,
            order_number=order_number,
            amount=str(amount),
            beneficiary_id=beneficiary_id,
            reason=reason,
        )
        return RefundResult(ok=True, reference=f"manual:{order_number}")


def build_settlement_gateway() -> SettlementGateway:
    gateway_class = import_string(settings.ORDER_SETTLEMENT_GATEWAY)
    return gateway_class()
