import logging

from celery import shared_task

from .services import mark_overdue_invoices

logger = logging.getLogger(__name__)


@shared_task
def mark_overdue_invoices_daily() -> int:
    updated = mark_overdue_invoices()
    logger.info("Overdue sweep marked %s invoice(s)", updated)
    return updated
