"""Periodic tasks of the orders module."""

import structlog
from celery import shared_task

from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.services import OrderService

logger = structlog.get_logger(__name__)


@shared_task(name="orders.sweep_expired_assignments")
def sweep_expired_assignments():
    """Expire every transporter assignment whose deadline has passed.

    Commands expire stale assignments lazily as well; the sweep keeps
    orders nobody touches from sitting on a dead offer.
    """
    service = OrderService(order_repository=OrderDjangoRepository())
    expired = service.sweep_expired()
    logger.info("orders.sweep_task_finished", expired_count=len(expired))
    return {"expired": expired}
