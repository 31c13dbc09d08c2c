"""WhatsApp gateway client (CallMeBot-style HTTP GET API).

Sending is best effort: every failure, including timeouts and transport
errors, comes back as ``WhatsAppResult(success=False, error=...)``
instead of an exception, so a notification can never break the order
flow that triggered it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

import requests
import structlog
import uuid6
from django.conf import settings

logger = structlog.get_logger(__name__)

_SUCCESS_MARKERS = ("message sent", "message queued", "success")


@dataclass
class WhatsAppResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    response: Optional[str] = None


def clean_phone_number(phone_number: str) -> str:
    return re.sub(r"\D", "", phone_number or "")


class WhatsAppGateway:
    name = "callmebot"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        timeout: int = 10,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> WhatsAppGateway:
        return cls(
            base_url=settings.WHATSAPP_GATEWAY_URL,
            api_key=settings.WHATSAPP_API_KEY,
            timeout=settings.WHATSAPP_TIMEOUT_SECONDS,
        )

    def send(
        self, *, phone_number: str, message: str, api_key: str = ""
    ) -> WhatsAppResult:
        phone = clean_phone_number(phone_number)
        if not phone:
            return WhatsAppResult(success=False, error="invalid_phone_number")

        params = {"phone": phone, "text": message}
        key = api_key or self.api_key
        if key:
            params["apikey"] = key

        log = logger.bind(gateway=self.name, phone=phone)
        try:
            response = self._session.get(
                self.base_url,
                params=params,
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        except requests.Timeout:
            log.warning("whatsapp.send_timeout")
            return WhatsAppResult(success=False, error="timeout")
        except requests.RequestException as exc:
            log.warning("whatsapp.send_failed", error=str(exc)[:200])
            return WhatsAppResult(success=False, error=str(exc)[:200])

        body = response.text or ""
        if not 200 <= response.status_code < 300:
            log.warning("whatsapp.send_rejected", status_code=response.status_code)
            return WhatsAppResult(
                success=False,
                error=f"http_{response.status_code}",
                response=body[:500],
            )
        if not any(marker in body.lower() for marker in _SUCCESS_MARKERS):
            log.warning("whatsapp.send_unconfirmed", response=body[:200])
            return WhatsAppResult(
                success=False, error=f"API returned: {body[:200]}", response=body[:500]
            )

        message_id = f"wa_{uuid6.uuid7().hex}"
        log.info("whatsapp.sent", message_id=message_id)
        return WhatsAppResult(success=True, message_id=message_id, response=body[:500])
