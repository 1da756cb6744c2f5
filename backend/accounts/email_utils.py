import logging

import resend
from django.conf import settings
from django.db import transaction
from django.utils.html import escape, linebreaks

from .models import EmailOutbox

logger = logging.getLogger(__name__)


def send_resend_email(to_email, subject, html, text, attachments=None):
    if not settings.RESEND_API_KEY:
        return False, "missing_resend_api_key"
    resend.api_key = settings.RESEND_API_KEY
    payload = {
        "from": settings.RESEND_FROM_EMAIL,
        "to": [to_email],
        "subject": subject,
    }
    if attachments:
        payload["attachments"] = attachments
    try:
        resend.Emails.send(
            {
                **payload,
                "html": html,
                "text": text,
            }
        )
    except Exception as error:
        return False, str(error)
    return True, ""


def deliver_outbox_email(outbox: EmailOutbox, *, is_retry: bool = False) -> bool:
    success, error = send_resend_email(outbox.to_email, outbox.subject, outbox.html, outbox.text)
    if success:
        outbox.mark_sent()
        return True
    logger.warning(
        "Email %s to %s failed (retry=%s): %s", outbox.id, outbox.to_email, is_retry, error
    )
    outbox.mark_failed(error, is_retry=is_retry)
    return False


def queue_email(*, to_email, subject, text, html="", template_key="", recipient=None, metadata=None):
    """Store an email in the outbox and send it once the surrounding transaction commits.

    Failed sends stay in the outbox for the notification retry worker.
    """
    if not to_email:
        return None
    outbox = EmailOutbox.objects.create(
        to_email=to_email,
        subject=subject,
        text=text,
        html=html or linebreaks(escape(text)),
        template_key=template_key,
        recipient=recipient,
        metadata=metadata or {},
    )
    from .tasks import send_outbox_email

    transaction.on_commit(lambda: send_outbox_email.delay(outbox.id))
    return outbox


def notify_user(user, *, subject, text, template_key, metadata=None):
    if user is None or not user.email:
        return None
    return queue_email(
        to_email=user.email,
        subject=subject,
        text=f"Hello {user.display_name},\n\n{text}",
        template_key=template_key,
        recipient=user,
        metadata=metadata,
    )
