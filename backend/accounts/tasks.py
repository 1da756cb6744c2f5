from celery import shared_task

from .email_utils import deliver_outbox_email
from .models import EmailOutbox


@shared_task
def send_outbox_email(outbox_id: int) -> bool:
    outbox = EmailOutbox.objects.filter(id=outbox_id, status=EmailOutbox.Status.PENDING).first()
    if outbox is None:
        return False
    return deliver_outbox_email(outbox)
