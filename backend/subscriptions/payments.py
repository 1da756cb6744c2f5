from __future__ import annotations

import logging
from datetime import date

from django.utils import timezone

from accounts.email_utils import notify_user
from billing.errors import NotFound
from billing.models import Invoice, InvoiceItem, Payment
from billing.services import PAYABLE_STATUSES, create_invoice, mark_invoice_as_paid, record_chargeback

from .audit import AuditContext
from .models import ProviderPayment, Subscription
from .services import record_failed_payment, reset_failed_payment_count

logger = logging.getLogger(__name__)

FAILED_STATUSES = (ProviderPayment.Status.FAILED, ProviderPayment.Status.CANCELLED)
SETTLED_STATUSES = (ProviderPayment.Status.PAID_OUT, ProviderPayment.Status.CHARGED_BACK)

# Forward order of an in-flight collection.
PROGRESS_RANK = {
    ProviderPayment.Status.PENDING_SUBMISSION: 0,
    ProviderPayment.Status.SUBMITTED: 1,
    ProviderPayment.Status.CONFIRMED: 2,
    ProviderPayment.Status.PAID_OUT: 3,
}


def _ignore_late_event(payment: ProviderPayment, status: str) -> None:
    logger.info(
        "Ignoring late %s for provider payment %s already %s",
        status,
        payment.provider_payment_id,
        payment.status,
    )


def create_subscription_invoice(subscription: Subscription, *, due_date: date | None = None) -> Invoice:
    """Pending invoice for one billing period of a subscription."""
    period = ""
    if subscription.current_period_start and subscription.current_period_end:
        period = (
            f" ({subscription.current_period_start:%d %b %Y} - "
            f"{subscription.current_period_end:%d %b %Y})"
        )
    return create_invoice(
        club=subscription.club,
        child_user_id=subscription.child_user_id,
        items=[
            {
                "description": f"{subscription.membership_tier.name} membership{period}",
                "category": InvoiceItem.Category.MEMBERSHIP,
                "quantity": 1,
                "unit_price": subscription.amount,
            }
        ],
        due_date=due_date or timezone.localdate(),
        invoice_type=Invoice.InvoiceType.SUBSCRIPTION,
        status=Invoice.Status.PENDING,
        subscription=subscription,
        currency=subscription.currency,
    )


def register_subscription_payment(
    provider: str,
    provider_payment_id: str,
    *,
    provider_subscription_id: str,
    status: str = ProviderPayment.Status.PENDING_SUBMISSION,
    charge_date: date | None = None,
) -> ProviderPayment | None:
    """Mirror a provider payment raised by a provider-side subscription.

    Returns ``None`` when the provider subscription is not known locally.
    """
    subscription = (
        Subscription.objects.select_related("club", "membership_tier")
        .filter(provider=provider, provider_subscription_id=provider_subscription_id)
        .first()
    )
    if subscription is None:
        return None
    invoice = None
    try:
        invoice = create_subscription_invoice(subscription, due_date=charge_date)
    except NotFound:
        logger.warning(
            "Subscription %s beneficiary is no longer a club member; payment %s has no invoice",
            subscription.id,
            provider_payment_id,
        )
    return ProviderPayment.objects.create(
        provider=provider,
        provider_payment_id=provider_payment_id,
        subscription=subscription,
        invoice=invoice,
        mandate=subscription.payment_mandate,
        amount=subscription.amount,
        currency=subscription.currency,
        status=status,
        charge_date=charge_date,
    )


def _notify_payer(subscription: Subscription, *, subject: str, text: str, template_key: str, **metadata):
    notify_user(
        subscription.parent_user,
        subject=subject,
        text=text,
        template_key=template_key,
        metadata={"subscription_id": subscription.id, **metadata},
    )


def settle_provider_payment(payment: ProviderPayment, *, audit: AuditContext) -> bool:
    """Apply a collected payment. Returns False when it was already applied."""
    if payment.status == ProviderPayment.Status.PAID_OUT:
        return False
    if payment.status == ProviderPayment.Status.CHARGED_BACK:
        _ignore_late_event(payment, ProviderPayment.Status.PAID_OUT)
        return False
    payment.status = ProviderPayment.Status.PAID_OUT
    payment.failure_reason = ""
    payment.save(update_fields=["status", "failure_reason", "updated_at"])

    if payment.invoice_id:
        invoice = Invoice.objects.select_for_update().get(id=payment.invoice_id)
        if invoice.status in PAYABLE_STATUSES:
            mark_invoice_as_paid(
                invoice.id,
                method=Payment.Method.DIRECT_DEBIT,
                provider=payment.provider,
                reference=payment.provider_payment_id,
                notes="Collected by the payment provider.",
            )
        elif invoice.status != Invoice.Status.PAID:
            logger.warning(
                "Provider payment %s collected for invoice %s in status %s",
                payment.provider_payment_id,
                invoice.invoice_number,
                invoice.status,
            )
    if payment.subscription_id:
        reset_failed_payment_count(payment.subscription_id, audit=audit)
    return True


def fail_provider_payment(
    payment: ProviderPayment,
    *,
    audit: AuditContext,
    status: str = ProviderPayment.Status.FAILED,
    reason: str = "",
) -> bool:
    if payment.status in FAILED_STATUSES:
        return False
    if payment.status in SETTLED_STATUSES:
        _ignore_late_event(payment, status)
        return False
    payment.status = status
    payment.failure_reason = reason[:255]
    payment.save(update_fields=["status", "failure_reason", "updated_at"])
    if not payment.subscription_id:
        return True

    subscription = record_failed_payment(payment.subscription_id, audit=audit, reason=reason)
    suspended = subscription.status == Subscription.Status.SUSPENDED
    _notify_payer(
        subscription,
        subject=f"Payment failed for your {subscription.club.name} membership",
        text=(
            f"We could not collect {payment.amount} {payment.currency}."
            + (" Your subscription has been suspended." if suspended else " We will try again.")
        ),
        template_key="subscription_payment_failed",
        provider_payment_id=payment.provider_payment_id,
    )
    return True


def charge_back_provider_payment(payment: ProviderPayment, *, audit: AuditContext, reason: str = "") -> bool:
    if payment.status == ProviderPayment.Status.CHARGED_BACK:
        return False
    payment.status = ProviderPayment.Status.CHARGED_BACK
    payment.failure_reason = reason[:255]
    payment.save(update_fields=["status", "failure_reason", "updated_at"])
    if payment.invoice_id:
        record_chargeback(
            payment.invoice_id,
            provider=payment.provider,
            reference=payment.provider_payment_id,
            reason=reason,
        )
    if payment.subscription_id:
        subscription = record_failed_payment(
            payment.subscription_id, audit=audit, reason=reason or "Payment charged back."
        )
        _notify_payer(
            subscription,
            subject=f"Payment reversed for your {subscription.club.name} membership",
            text=f"Your bank reversed the payment of {payment.amount} {payment.currency}.",
            template_key="subscription_payment_charged_back",
            provider_payment_id=payment.provider_payment_id,
        )
    return True


def mirror_payment_status(payment: ProviderPayment, status: str) -> bool:
    if payment.status == status:
        return False
    current_rank = PROGRESS_RANK.get(payment.status)
    if payment.status in SETTLED_STATUSES or (
        current_rank is not None and PROGRESS_RANK[status] < current_rank
    ):
        _ignore_late_event(payment, status)
        return False
    payment.status = status
    payment.save(update_fields=["status", "updated_at"])
    return True
