from __future__ import annotations

import logging
from datetime import timedelta

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from accounts.email_utils import deliver_outbox_email
from accounts.models import EmailOutbox

from .registry import WorkerResult

logger = logging.getLogger(__name__)


def retryable_emails():
    cutoff = timezone.now() - timedelta(minutes=settings.EMAIL_RETRY_BACKOFF_MINUTES)
    return (
        EmailOutbox.objects.filter(
            status=EmailOutbox.Status.FAILED,
            retry_count__lt=settings.EMAIL_MAX_RETRIES,
        )
        .filter(Q(last_retry_at__isnull=True) | Q(last_retry_at__lte=cutoff))
        .order_by("created_at", "id")
    )


def run() -> WorkerResult:
    result = WorkerResult()
    for outbox in retryable_emails()[: settings.EMAIL_RETRY_BATCH_SIZE]:
        result.record(deliver_outbox_email(outbox, is_retry=True))
    result.metadata = {
        "exhausted": EmailOutbox.objects.filter(
            status=EmailOutbox.Status.FAILED, retry_count__gte=settings.EMAIL_MAX_RETRIES
        ).count(),
    }
    if result.failed:
        logger.warning("%s outbox emails failed again", result.failed)
    return result
