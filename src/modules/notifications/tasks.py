"""Outbox relay: delivers committed order events to notification channels."""

import structlog
from celery import shared_task
from django.conf import settings

from modules.core.models import OutboxEvent
from modules.notifications.dispatcher import NotificationDispatcher
from modules.orders.repositories.django_repository import OUTBOX_TOPIC

logger = structlog.get_logger(__name__)


@shared_task(name="notifications.relay_outbox_events")
def relay_outbox_events(batch_size=None):
    """Dispatch pending (and retryable failed) outbox rows, oldest first.

    A row whose dispatch raises is marked failed and retried on a later
    run until ``OUTBOX_MAX_RETRIES`` is reached.  Gateway failures do not
    raise; they are logged by the dispatcher and the row counts as sent.
    """
    batch_size = batch_size or settings.OUTBOX_RELAY_BATCH_SIZE
    dispatcher = NotificationDispatcher()
    rows = OutboxEvent.objects.deliverable(
        topic=OUTBOX_TOPIC, max_retries=settings.OUTBOX_MAX_RETRIES
    ).order_by("created_at")[:batch_size]

    published = failed = 0
    for row in rows:
        try:
            dispatcher.dispatch(row.event_type, row.payload)
        except Exception as exc:
            logger.exception(
                "notifications.relay_failed",
                outbox_id=str(row.id),
                event_type=row.event_type,
            )
            row.mark_as_failed(str(exc)[:500])
            failed += 1
            continue
        row.mark_as_published()
        published += 1

    logger.info("notifications.relay_finished", published=published, failed=failed)
    return {"published": published, "failed": failed}
