from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Mapping

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.dateparse import parse_date

from billing.db import apply_statement_timeout
from billing.errors import NotFound

from .audit import AuditContext
from .models import PaymentMandate, PaymentWebhook, Provider, ProviderPayment, Subscription
from .payments import (
    charge_back_provider_payment,
    fail_provider_payment,
    mirror_payment_status,
    register_subscription_payment,
    settle_provider_payment,
)
from .services import apply_mandate_status, update_provider_status
from .webhooks import (
    MANDATE_ACTION_STATUS,
    InvalidSignature,
    MalformedPayload,
    ProviderEvent,
    parse_events,
    verify_signature,
)

logger = logging.getLogger(__name__)

PAYMENT_MIRROR_ACTIONS = {
    "created": ProviderPayment.Status.PENDING_SUBMISSION,
    "submitted": ProviderPayment.Status.SUBMITTED,
    "confirmed": ProviderPayment.Status.CONFIRMED,
}
PAYMENT_FAILURE_ACTIONS = {
    "failed": ProviderPayment.Status.FAILED,
    "customer_approval_denied": ProviderPayment.Status.FAILED,
    "cancelled": ProviderPayment.Status.CANCELLED,
}

SUBSCRIPTION_ACTION_STATUS = {
    "created": "active",
    "customer_approval_granted": "active",
    "amended": "active",
    "resumed": "active",
    "paused": "paused",
    "cancelled": "cancelled",
    "finished": "finished",
    "customer_approval_denied": "customer_approval_denied",
}
SUBSCRIPTION_INFORMATIONAL_ACTIONS = {"payment_created", "scheduled_pause"}


@dataclass
class WebhookResult:
    success: bool
    received: int = 0
    events_processed: int = 0
    duplicates: int = 0
    error: str = ""

    def to_dict(self) -> dict:
        payload = {
            "success": self.success,
            "received": self.received,
            "eventsProcessed": self.events_processed,
        }
        if self.error:
            payload["error"] = self.error
        return payload


def _event_reason(event: ProviderEvent) -> str:
    return str(event.details.get("description") or event.details.get("cause") or "")[:255]


def handle_mandate_event(provider: str, event: ProviderEvent) -> None:
    new_status = MANDATE_ACTION_STATUS.get(event.action)
    if new_status is None:
        logger.info("Ignoring mandate action %s for %s", event.action, event.resource_id)
        return
    mandate_id = (
        PaymentMandate.objects.filter(provider=provider, provider_mandate_id=event.resource_id)
        .values_list("id", flat=True)
        .first()
    )
    if mandate_id is None:
        logger.info("Mandate %s:%s is not known locally", provider, event.resource_id)
        return
    apply_mandate_status(
        mandate_id,
        new_status,
        audit=AuditContext.webhook(provider),
        reason=_event_reason(event),
    )


def handle_payment_event(provider: str, event: ProviderEvent) -> None:
    payment = (
        ProviderPayment.objects.select_for_update()
        .filter(provider=provider, provider_payment_id=event.resource_id)
        .first()
    )
    if payment is None:
        provider_subscription_id = event.links.get("subscription")
        if not provider_subscription_id:
            logger.info("Payment %s:%s is not linked to a subscription", provider, event.resource_id)
            return
        payment = register_subscription_payment(
            provider,
            event.resource_id,
            provider_subscription_id=provider_subscription_id,
            status=PAYMENT_MIRROR_ACTIONS.get(event.action, ProviderPayment.Status.PENDING_SUBMISSION),
            charge_date=parse_date(str(event.details.get("charge_date") or "")),
        )
        if payment is None:
            logger.info(
                "Provider subscription %s:%s is not known locally", provider, provider_subscription_id
            )
            return

    audit = AuditContext.webhook(provider)
    if event.action in PAYMENT_MIRROR_ACTIONS:
        mirror_payment_status(payment, PAYMENT_MIRROR_ACTIONS[event.action])
    elif event.action == "paid_out":
        settle_provider_payment(payment, audit=audit)
    elif event.action in PAYMENT_FAILURE_ACTIONS:
        fail_provider_payment(
            payment,
            audit=audit,
            status=PAYMENT_FAILURE_ACTIONS[event.action],
            reason=_event_reason(event),
        )
    elif event.action == "charged_back":
        charge_back_provider_payment(payment, audit=audit, reason=_event_reason(event))
    else:
        logger.info("Ignoring payment action %s for %s", event.action, event.resource_id)


def handle_subscription_event(provider: str, event: ProviderEvent) -> None:
    if event.action in SUBSCRIPTION_INFORMATIONAL_ACTIONS:
        return
    subscription = (
        Subscription.objects.filter(provider=provider, provider_subscription_id=event.resource_id)
        .only("id")
        .first()
    )
    if subscription is None:
        logger.info("Provider subscription %s:%s is not known locally", provider, event.resource_id)
        return
    update_provider_status(
        subscription.id,
        provider_status=SUBSCRIPTION_ACTION_STATUS.get(event.action, event.action),
        audit=AuditContext.webhook(provider),
        metadata={"event_id": event.event_id},
    )


def handle_refund_event(provider: str, event: ProviderEvent) -> None:
    logger.info(
        "Refund %s for %s:%s recorded without changes", event.action, provider, event.resource_id
    )


EVENT_HANDLERS: dict[str, Callable[[str, ProviderEvent], None]] = {
    "mandates": handle_mandate_event,
    "payments": handle_payment_event,
    "subscriptions": handle_subscription_event,
    "refunds": handle_refund_event,
}


def _already_processed(provider: str, event_id: str) -> bool:
    return PaymentWebhook.objects.filter(provider=provider, event_id=event_id, processed=True).exists()


def _record_failure(provider: str, event: ProviderEvent, error: Exception) -> None:
    PaymentWebhook.objects.update_or_create(
        provider=provider,
        event_id=event.event_id,
        defaults={
            "resource_type": event.resource_type,
            "action": event.action,
            "resource_id": event.resource_id,
            "payload": event.raw,
            "processed": False,
            "error_message": str(error)[:2000],
        },
    )


def process_event(provider: str, event: ProviderEvent) -> bool:
    """Apply one provider event exactly once.

    The (provider, event_id) marker is written in the same transaction as the
    changes it guards. Returns False for an event that was already applied.
    """
    if _already_processed(provider, event.event_id):
        return False
    try:
        with transaction.atomic():
            apply_statement_timeout(settings.WEBHOOK_STATEMENT_TIMEOUT_MS)
            marker = (
                PaymentWebhook.objects.select_for_update()
                .filter(provider=provider, event_id=event.event_id)
                .first()
            )
            if marker is not None and marker.processed:
                return False
            if marker is None:
                marker = PaymentWebhook.objects.create(
                    provider=provider,
                    event_id=event.event_id,
                    resource_type=event.resource_type,
                    action=event.action,
                    resource_id=event.resource_id,
                    payload=event.raw,
                )
            handler = EVENT_HANDLERS.get(event.resource_type)
            if handler is None:
                logger.info("No handler for %s.%s events", event.resource_type, event.action)
            else:
                handler(provider, event)
            marker.processed = True
            marker.processed_at = timezone.now()
            marker.error_message = ""
            marker.save(update_fields=["processed", "processed_at", "error_message"])
    except IntegrityError as error:
        if _already_processed(provider, event.event_id):
            logger.info("Event %s:%s was applied by a concurrent delivery", provider, event.event_id)
            return False
        _record_failure(provider, event, error)
        raise
    except Exception as error:
        logger.exception("Webhook event %s:%s failed", provider, event.event_id)
        _record_failure(provider, event, error)
        raise
    return True


def process_webhook(provider: str, body: bytes, headers: Mapping[str, str]) -> WebhookResult:
    """Verify, parse and apply a provider webhook delivery.

    Bad signatures and unparseable bodies are acknowledged without changes so
    the provider stops retrying them. Handler failures propagate so it retries.
    """
    if provider not in Provider.values:
        raise NotFound("Unknown payment provider.", provider=provider)
    try:
        verify_signature(provider, body, headers)
    except InvalidSignature as exc:
        logger.warning("Rejected %s webhook: %s", provider, exc)
        return WebhookResult(success=False, error="invalid_signature")
    try:
        events = parse_events(provider, body)
    except MalformedPayload as exc:
        logger.warning("Unparseable %s webhook: %s", provider, exc)
        return WebhookResult(success=False, error="malformed_payload")

    result = WebhookResult(success=True, received=len(events))
    for event in events:
        if process_event(provider, event):
            result.events_processed += 1
        else:
            result.duplicates += 1
    logger.info(
        "%s webhook: %s received, %s applied, %s duplicate",
        provider,
        result.received,
        result.events_processed,
        result.duplicates,
    )
    return result
