from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count, Q
from django.utils import timezone

from billing.errors import Conflict, Forbidden, InvalidStateTransition, NotFound, ValidationFailed
from billing.services import round2
from members.services import find_membership, is_payer_for

from .audit import AuditContext, record_subscription_event
from .mandates import is_usable
from .models import MembershipTier, PaymentMandate, Provider, Subscription

logger = logging.getLogger(__name__)

Status = Subscription.Status

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    Status.PENDING: frozenset({Status.ACTIVE, Status.CANCELLED}),
    Status.ACTIVE: frozenset({Status.PAUSED, Status.SUSPENDED, Status.CANCELLED}),
    Status.PAUSED: frozenset({Status.ACTIVE, Status.CANCELLED}),
    Status.SUSPENDED: frozenset({Status.ACTIVE, Status.CANCELLED}),
    Status.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class Proration:
    amount: Decimal
    charge: Decimal
    credit: Decimal
    days_remaining: int
    period_days: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": self.amount,
            "charge": self.charge,
            "credit": self.credit,
            "days_remaining": self.days_remaining,
            "period_days": self.period_days,
        }


@dataclass(frozen=True)
class TierChange:
    subscription: Subscription
    proration: Proration | None


def add_months(value: date, months: int, *, day: int | None = None) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day or value.day, last_day))


def calculate_next_billing_date(
    billing_day: int,
    billing_frequency: str,
    *,
    from_date: date | None = None,
) -> date:
    from_date = from_date or timezone.localdate()
    months = 12 if billing_frequency == Subscription.BillingFrequency.ANNUAL else 1
    return add_months(from_date, months, day=billing_day)


def calculate_period(billing_frequency: str, *, start: date | None = None) -> tuple[date, date]:
    start = start or timezone.localdate()
    months = 12 if billing_frequency == Subscription.BillingFrequency.ANNUAL else 1
    return start, add_months(start, months) - timedelta(days=1)


def subscription_amount(tier: MembershipTier, billing_frequency: str) -> Decimal:
    if billing_frequency == Subscription.BillingFrequency.ANNUAL:
        if tier.annual_price is not None:
            return round2(tier.annual_price)
        return round2(tier.monthly_price * 12)
    return round2(tier.monthly_price)


def calculate_proration(
    subscription: Subscription,
    new_amount: Decimal,
    *,
    today: date | None = None,
) -> Proration:
    """Price difference for the unused part of the current period.

    The signed ``amount`` is split into a ``charge`` (upgrade) and a ``credit``
    (downgrade); both are non-negative and at most one is non-zero.
    """
    today = today or timezone.localdate()
    start = subscription.current_period_start
    end = subscription.current_period_end
    zero = Decimal("0.00")
    if start is None or end is None or end <= start:
        return Proration(amount=zero, charge=zero, credit=zero, days_remaining=0, period_days=0)

    period_days = (end - start).days
    days_remaining = max(0, min(period_days, (end - today).days))
    old_daily = Decimal(subscription.amount) / period_days
    new_daily = Decimal(new_amount) / period_days
    amount = round2((new_daily - old_daily) * days_remaining)
    return Proration(
        amount=amount,
        charge=max(amount, zero),
        credit=max(-amount, zero),
        days_remaining=days_remaining,
        period_days=period_days,
    )


def _lock_subscription(subscription_id: int) -> Subscription:
    subscription = (
        Subscription.objects.select_for_update().filter(id=subscription_id).first()
    )
    if subscription is None:
        raise NotFound("Subscription not found.", subscription_id=subscription_id)
    return subscription


def ensure_transition(
    subscription: Subscription, target: str, *, sources: Iterable[str] | None = None
) -> None:
    """Raise unless ``target`` is reachable, optionally only from ``sources``."""
    allowed = target in ALLOWED_TRANSITIONS.get(subscription.status, frozenset())
    if not allowed or (sources is not None and subscription.status not in sources):
        raise InvalidStateTransition(
            f"Subscription cannot move from {subscription.status} to {target}.",
            subscription_id=subscription.id,
            status=subscription.status,
            target=str(target),
        )


def _transition(
    subscription_id: int,
    target: str,
    *,
    event_type: str,
    audit: AuditContext,
    sources: Iterable[str] | None = None,
    apply: Callable[[Subscription], Iterable[str]] | None = None,
    description: str = "",
    metadata: dict[str, Any] | None = None,
) -> Subscription:
    with transaction.atomic():
        subscription = _lock_subscription(subscription_id)
        ensure_transition(subscription, target, sources=sources)
        previous_status = subscription.status
        subscription.status = target
        update_fields = ["status", "updated_at"]
        if apply is not None:
            update_fields.extend(apply(subscription))
        subscription.save(update_fields=update_fields)
        record_subscription_event(
            subscription,
            event_type=event_type,
            audit=audit,
            previous_status=previous_status,
            new_status=target,
            description=description,
            metadata=metadata,
        )
    logger.info(
        "Subscription %s %s -> %s (%s)", subscription_id, previous_status, target, event_type
    )
    return subscription


def create_subscription(
    *,
    club,
    parent_user,
    child_user,
    tier: MembershipTier,
    audit: AuditContext,
    mandate: PaymentMandate | None = None,
    billing_day_of_month: int = 1,
    billing_frequency: str = Subscription.BillingFrequency.MONTHLY,
    provider: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Subscription:
    if not is_payer_for(parent_user.id, child_user.id, club_id=club.id):
        raise Forbidden(
            "Only the member or their guardian can subscribe them.",
            parent_user_id=parent_user.id,
            child_user_id=child_user.id,
        )
    if find_membership(child_user.id, club_id=club.id) is None:
        raise NotFound(
            "Beneficiary is not a member of this club.",
            child_user_id=child_user.id,
            club_id=club.id,
        )
    if tier.club_id != club.id or not tier.is_active:
        raise NotFound("Membership tier not found for this club.", tier_id=tier.id, club_id=club.id)
    if not 1 <= int(billing_day_of_month) <= 28:
        raise ValidationFailed(
            "Billing day must be between 1 and 28.", billing_day_of_month=billing_day_of_month
        )
    if billing_frequency not in Subscription.BillingFrequency.values:
        raise ValidationFailed("Unknown billing frequency.", billing_frequency=billing_frequency)
    if mandate is not None:
        customer = mandate.payment_customer
        if customer.user_id != parent_user.id or customer.club_id != club.id:
            raise ValidationFailed(
                "Mandate does not belong to the payer for this club.", mandate_id=mandate.id
            )
        provider = mandate.provider

    today = timezone.localdate()
    period_start, period_end = calculate_period(billing_frequency, start=today)
    initial_status = Status.ACTIVE if is_usable(mandate) else Status.PENDING

    with transaction.atomic():
        existing = (
            Subscription.objects.filter(child_user=child_user, club=club)
            .exclude(status=Status.CANCELLED)
            .first()
        )
        if existing is not None:
            raise Conflict(
                "This member already has an open subscription with the club.",
                subscription_id=existing.id,
            )
        try:
            with transaction.atomic():
                subscription = Subscription.objects.create(
                    club=club,
                    parent_user=parent_user,
                    child_user=child_user,
                    membership_tier=tier,
                    payment_mandate=mandate,
                    status=initial_status,
                    amount=subscription_amount(tier, billing_frequency),
                    currency=settings.BILLING_DEFAULT_CURRENCY,
                    billing_frequency=billing_frequency,
                    billing_day_of_month=billing_day_of_month,
                    current_period_start=period_start,
                    current_period_end=period_end,
                    next_billing_date=calculate_next_billing_date(
                        billing_day_of_month, billing_frequency, from_date=today
                    ),
                    provider=provider or Provider.GOCARDLESS,
                    metadata=metadata or {},
                )
        except IntegrityError as error:
            raise Conflict(
                "This member already has an open subscription with the club.",
                child_user_id=child_user.id,
                club_id=club.id,
            ) from error
        record_subscription_event(
            subscription,
            event_type="created",
            audit=audit,
            new_status=initial_status,
            new_tier=tier,
            description=f"Subscribed to {tier.name}.",
            metadata={"amount": str(subscription.amount), "billing_frequency": billing_frequency},
        )
    logger.info(
        "Subscription %s created for child %s at club %s (%s)",
        subscription.id,
        child_user.id,
        club.id,
        initial_status,
    )
    return subscription


def activate_subscription(
    subscription_id: int,
    *,
    audit: AuditContext,
    mandate: PaymentMandate | None = None,
) -> Subscription:
    def apply(subscription):
        fields = []
        if mandate is not None and subscription.payment_mandate_id != mandate.id:
            subscription.payment_mandate = mandate
            fields.append("payment_mandate")
        if subscription.next_billing_date is None:
            subscription.next_billing_date = calculate_next_billing_date(
                subscription.billing_day_of_month, subscription.billing_frequency
            )
            fields.append("next_billing_date")
        return fields

    return _transition(
        subscription_id,
        Status.ACTIVE,
        event_type="activated",
        audit=audit,
        sources=(Status.PENDING,),
        apply=apply,
        description="Payment mandate is active.",
        metadata={"mandate_id": mandate.id} if mandate is not None else None,
    )


def change_tier(
    subscription_id: int,
    *,
    new_tier: MembershipTier,
    audit: AuditContext,
    prorate: bool = True,
) -> TierChange:
    with transaction.atomic():
        subscription = _lock_subscription(subscription_id)
        if subscription.status != Status.ACTIVE:
            raise InvalidStateTransition(
                "Only active subscriptions can change tier.",
                subscription_id=subscription.id,
                status=subscription.status,
            )
        if new_tier.club_id != subscription.club_id or not new_tier.is_active:
            raise NotFound(
                "Membership tier not found for this club.",
                tier_id=new_tier.id,
                club_id=subscription.club_id,
            )
        if new_tier.id == subscription.membership_tier_id:
            raise ValidationFailed("Subscription is already on this tier.", tier_id=new_tier.id)

        previous_tier = subscription.membership_tier
        previous_amount = subscription.amount
        new_amount = subscription_amount(new_tier, subscription.billing_frequency)
        proration = calculate_proration(subscription, new_amount) if prorate else None

        subscription.membership_tier = new_tier
        subscription.amount = new_amount
        subscription.save(update_fields=["membership_tier", "amount", "updated_at"])
        record_subscription_event(
            subscription,
            event_type="tier_changed",
            audit=audit,
            previous_status=subscription.status,
            previous_tier=previous_tier,
            new_tier=new_tier,
            description=f"Changed tier from {previous_tier.name} to {new_tier.name}.",
            metadata={
                "previous_amount": str(previous_amount),
                "new_amount": str(new_amount),
                "proration_amount": str(proration.amount) if proration else None,
            },
        )
    return TierChange(subscription=subscription, proration=proration)


def pause_subscription(
    subscription_id: int,
    *,
    audit: AuditContext,
    resume_date: date | None = None,
) -> Subscription:
    """Pause billing. ``resume_date`` is stored as a hint; nothing resumes automatically."""
    if resume_date is not None and resume_date <= timezone.localdate():
        raise ValidationFailed("Resume date must be in the future.", resume_date=resume_date.isoformat())

    def apply(subscription):
        subscription.paused_at = timezone.now()
        subscription.resume_date = resume_date
        subscription.next_billing_date = None
        return ["paused_at", "resume_date", "next_billing_date"]

    return _transition(
        subscription_id,
        Status.PAUSED,
        event_type="paused",
        audit=audit,
        apply=apply,
        metadata={"resume_date": resume_date.isoformat() if resume_date else None},
    )


def resume_subscription(subscription_id: int, *, audit: AuditContext) -> Subscription:
    def apply(subscription):
        subscription.paused_at = None
        subscription.resume_date = None
        subscription.next_billing_date = calculate_next_billing_date(
            subscription.billing_day_of_month, subscription.billing_frequency
        )
        return ["paused_at", "resume_date", "next_billing_date"]

    return _transition(
        subscription_id,
        Status.ACTIVE,
        event_type="resumed",
        audit=audit,
        sources=(Status.PAUSED,),
        apply=apply,
    )


def suspend_subscription(
    subscription_id: int,
    *,
    audit: AuditContext,
    reason: str = "",
) -> Subscription:
    return _transition(
        subscription_id,
        Status.SUSPENDED,
        event_type="suspended",
        audit=audit,
        description=reason,
    )


def reactivate_subscription(subscription_id: int, *, audit: AuditContext) -> Subscription:
    def apply(subscription):
        subscription.failed_payment_count = 0
        subscription.last_failed_payment_at = None
        subscription.next_billing_date = calculate_next_billing_date(
            subscription.billing_day_of_month, subscription.billing_frequency
        )
        return ["failed_payment_count", "last_failed_payment_at", "next_billing_date"]

    return _transition(
        subscription_id,
        Status.ACTIVE,
        event_type="reactivated",
        audit=audit,
        sources=(Status.SUSPENDED,),
        apply=apply,
    )


def cancel_subscription(
    subscription_id: int,
    *,
    audit: AuditContext,
    reason: str = "",
    immediate: bool = True,
) -> Subscription:
    """Cancel a subscription locally.

    The local status becomes ``cancelled`` either way. With ``immediate=False``
    the record keeps ``current_period_end`` and flags ``cancel_at_period_end``
    so the sync worker cancels on the provider side when the period ends.
    """
    today = timezone.localdate()

    def apply(subscription):
        subscription.cancelled_at = timezone.now()
        subscription.cancellation_reason = reason[:255]
        subscription.cancel_at_period_end = not immediate
        subscription.next_billing_date = None
        fields = ["cancelled_at", "cancellation_reason", "cancel_at_period_end", "next_billing_date"]
        if immediate and subscription.current_period_end and subscription.current_period_end > today:
            subscription.current_period_end = today
            fields.append("current_period_end")
        return fields

    return _transition(
        subscription_id,
        Status.CANCELLED,
        event_type="cancelled",
        audit=audit,
        apply=apply,
        description=reason,
        metadata={"immediate": immediate},
    )


def record_failed_payment(
    subscription_id: int,
    *,
    audit: AuditContext,
    reason: str = "",
    max_failures: int | None = None,
) -> Subscription:
    """Count a failed collection and suspend once the threshold is reached."""
    max_failures = max_failures or settings.SUBSCRIPTION_MAX_FAILED_PAYMENTS
    with transaction.atomic():
        subscription = _lock_subscription(subscription_id)
        if subscription.status == Status.CANCELLED:
            logger.info("Ignoring failed payment for cancelled subscription %s", subscription_id)
            return subscription
        subscription.failed_payment_count += 1
        subscription.last_failed_payment_at = timezone.now()
        update_fields = ["failed_payment_count", "last_failed_payment_at", "updated_at"]
        previous_status = subscription.status
        suspend = (
            subscription.status == Status.ACTIVE
            and subscription.failed_payment_count >= max_failures
        )
        if suspend:
            subscription.status = Status.SUSPENDED
            update_fields.append("status")
        subscription.save(update_fields=update_fields)
        record_subscription_event(
            subscription,
            event_type="payment_failed",
            audit=audit,
            previous_status=previous_status,
            new_status=previous_status,
            description=reason,
            metadata={"failed_payment_count": subscription.failed_payment_count},
        )
        if suspend:
            record_subscription_event(
                subscription,
                event_type="suspended",
                audit=audit,
                previous_status=previous_status,
                new_status=Status.SUSPENDED,
                description=f"Suspended after {subscription.failed_payment_count} failed payments.",
            )
    if suspend:
        logger.warning(
            "Subscription %s suspended after %s failed payments",
            subscription_id,
            subscription.failed_payment_count,
        )
    return subscription


def reset_failed_payment_count(subscription_id: int, *, audit: AuditContext) -> Subscription:
    with transaction.atomic():
        subscription = _lock_subscription(subscription_id)
        if subscription.failed_payment_count == 0:
            return subscription
        previous_count = subscription.failed_payment_count
        subscription.failed_payment_count = 0
        subscription.save(update_fields=["failed_payment_count", "updated_at"])
        record_subscription_event(
            subscription,
            event_type="failed_payments_reset",
            audit=audit,
            previous_status=subscription.status,
            metadata={"previous_count": previous_count},
        )
    return subscription


def mark_synced_to_provider(
    subscription_id: int,
    *,
    provider_subscription_id: str,
    audit: AuditContext,
    provider_status: str = "active",
    mandate: PaymentMandate | None = None,
) -> Subscription:
    """Record the provider-side id after the subscription was created there.

    A pending subscription billed through a usable mandate becomes active.
    """
    with transaction.atomic():
        subscription = _lock_subscription(subscription_id)
        if subscription.provider_subscription_id:
            if subscription.provider_subscription_id == provider_subscription_id:
                return subscription
            raise Conflict(
                "Subscription is already linked to another provider subscription.",
                subscription_id=subscription.id,
            )
        if subscription.status not in (Status.ACTIVE, Status.PENDING):
            raise InvalidStateTransition(
                "Only active or pending subscriptions can be synced.",
                subscription_id=subscription.id,
                status=subscription.status,
            )
        previous_status = subscription.status
        subscription.provider_subscription_id = provider_subscription_id
        subscription.provider_subscription_status = provider_status
        update_fields = ["provider_subscription_id", "provider_subscription_status", "updated_at"]
        if mandate is not None and subscription.payment_mandate_id != mandate.id:
            subscription.payment_mandate = mandate
            update_fields.append("payment_mandate")
        if subscription.status == Status.PENDING and is_usable(mandate or subscription.payment_mandate):
            subscription.status = Status.ACTIVE
            update_fields.append("status")
        subscription.save(update_fields=update_fields)
        record_subscription_event(
            subscription,
            event_type="synced",
            audit=audit,
            previous_status=previous_status,
            description="Created on the payment provider.",
            metadata={
                "provider": subscription.provider,
                "provider_subscription_id": provider_subscription_id,
                "mandate_id": mandate.id if mandate is not None else subscription.payment_mandate_id,
            },
        )
    return subscription


def update_provider_status(
    subscription_id: int,
    *,
    provider_status: str,
    audit: AuditContext,
    metadata: dict[str, Any] | None = None,
) -> Subscription:
    """Store the provider's view of the subscription without touching the local status."""
    with transaction.atomic():
        subscription = _lock_subscription(subscription_id)
        previous = subscription.provider_subscription_status
        if previous == provider_status:
            return subscription
        subscription.provider_subscription_status = provider_status
        subscription.save(update_fields=["provider_subscription_status", "updated_at"])
        record_subscription_event(
            subscription,
            event_type="provider_status_changed",
            audit=audit,
            previous_status=subscription.status,
            description=f"Provider status {previous or 'unknown'} -> {provider_status}.",
            metadata={"previous": previous, "current": provider_status, **(metadata or {})},
        )
    return subscription


MANDATE_FAILURE_STATUSES = (
    PaymentMandate.Status.FAILED,
    PaymentMandate.Status.CANCELLED,
    PaymentMandate.Status.EXPIRED,
)


def apply_mandate_status(
    mandate_id: int,
    new_status: str,
    *,
    audit: AuditContext,
    reason: str = "",
    next_possible_charge_date: date | None = None,
) -> PaymentMandate:
    """Store a mandate status reported by the provider and cascade it to subscriptions.

    An active mandate activates pending subscriptions billed through it, or
    pending subscriptions of the same payer and club that have no mandate yet.
    A failed, cancelled or expired mandate suspends the active subscriptions
    that use it.
    """
    with transaction.atomic():
        mandate = (
            PaymentMandate.objects.select_for_update()
            .select_related("payment_customer")
            .filter(id=mandate_id)
            .first()
        )
        if mandate is None:
            raise NotFound("Payment mandate not found.", mandate_id=mandate_id)

        update_fields = []
        if mandate.status != new_status:
            mandate.status = new_status
            update_fields.append("status")
            if new_status == PaymentMandate.Status.CANCELLED and mandate.cancelled_at is None:
                mandate.cancelled_at = timezone.now()
                update_fields.append("cancelled_at")
        if next_possible_charge_date and mandate.next_possible_charge_date != next_possible_charge_date:
            mandate.next_possible_charge_date = next_possible_charge_date
            update_fields.append("next_possible_charge_date")
        if update_fields:
            mandate.save(update_fields=[*update_fields, "updated_at"])

        if new_status == PaymentMandate.Status.ACTIVE:
            customer = mandate.payment_customer
            pending = Subscription.objects.filter(status=Status.PENDING).filter(
                Q(payment_mandate=mandate)
                | Q(
                    payment_mandate__isnull=True,
                    parent_user_id=customer.user_id,
                    club_id=customer.club_id,
                    provider=mandate.provider,
                )
            )
            for subscription_id in pending.values_list("id", flat=True):
                activate_subscription(subscription_id, audit=audit, mandate=mandate)
        elif new_status in MANDATE_FAILURE_STATUSES:
            affected = Subscription.objects.filter(
                payment_mandate=mandate, status=Status.ACTIVE
            ).values_list("id", flat=True)
            for subscription_id in affected:
                try:
                    suspend_subscription(
                        subscription_id,
                        audit=audit,
                        reason=f"Payment mandate {new_status}. {reason}".strip(),
                    )
                except InvalidStateTransition:
                    logger.info("Subscription %s changed state before suspension", subscription_id)
    return mandate


def get_subscription_stats(club) -> dict[str, Any]:
    queryset = Subscription.objects.filter(club=club)
    by_status = {value: 0 for value in Status.values}
    for row in queryset.values("status").annotate(count=Count("id")):
        by_status[row["status"]] = row["count"]

    monthly_recurring = Decimal("0.00")
    for amount, frequency in queryset.filter(status=Status.ACTIVE).values_list(
        "amount", "billing_frequency"
    ):
        if frequency == Subscription.BillingFrequency.ANNUAL:
            monthly_recurring += Decimal(amount) / 12
        else:
            monthly_recurring += Decimal(amount)

    open_subscriptions = queryset.exclude(status=Status.CANCELLED)
    return {
        "club_id": club.id,
        "total": sum(by_status.values()),
        "by_status": by_status,
        "monthly_recurring_revenue": round2(monthly_recurring),
        "currency": settings.BILLING_DEFAULT_CURRENCY,
        "unsynced": open_subscriptions.filter(provider_subscription_id__isnull=True).count(),
        "with_failed_payments": open_subscriptions.filter(failed_payment_count__gt=0).count(),
    }
