"""Where order notifications go.

Actors are identified by opaque ids owned by the identity service; this
table only maps an actor id to a WhatsApp number and its gateway key.
"""

from __future__ import annotations

from django.db import models

from modules.core.models import BaseModel


class NotificationContact(BaseModel):
    actor_id = models.CharField(max_length=64, unique=True)
    phone_number = models.CharField(max_length=32)
    # Per-recipient CallMeBot key; falls back to WHATSAPP_API_KEY when empty.
    whatsapp_api_key = models.CharField(max_length=128, blank=True, default="")
    whatsapp_enabled = models.BooleanField(default=True)

    class Meta:
        db_table = "notification_contacts"
        ordering = ["actor_id"]

    def __str__(self) -> str:
        return f"{self.actor_id} ({'on' if self.whatsapp_enabled else 'off'})"
