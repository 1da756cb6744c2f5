"""Keeps local subscriptions and the payment providers in step.

Each run refreshes GoCardless mandates still waiting on the bank, creates
provider subscriptions for billable subscriptions that have none, pushes local
cancellations out, and reports paused subscriptions whose resume date passed.
Local status is never derived from the provider here; webhooks carry that.
"""

from __future__ import annotations

import logging
from collections import Counter

from django.db.models import Q
from django.utils import timezone

from billing.errors import BillingError
from subscriptions.audit import AuditContext
from subscriptions.mandates import diagnose_subscription, resolve_mandate, unsynced_subscriptions
from subscriptions.models import PaymentMandate, Provider, Subscription
from subscriptions.providers import get_provider
from subscriptions.services import apply_mandate_status, mark_synced_to_provider, update_provider_status

from .registry import WorkerResult

logger = logging.getLogger(__name__)

WORKER_NAME = "subscription_sync"

PROVIDER_CANCELLED_STATUSES = ("cancelled", "canceled", "finished", "pending_cancellation")
OVERDUE_RESUME_REPORT_LIMIT = 50


def refresh_mandates(result: WorkerResult, audit: AuditContext) -> int:
    provider = get_provider(Provider.GOCARDLESS)
    mandates = (
        PaymentMandate.objects.filter(
            provider=Provider.GOCARDLESS,
            status__in=(PaymentMandate.Status.PENDING_SUBMISSION, PaymentMandate.Status.SUBMITTED),
        )
        .exclude(Q(provider_mandate_id__isnull=True) | Q(provider_mandate_id=""))
        .order_by("created_at", "id")
    )
    changed = 0
    for mandate in mandates:
        try:
            state = provider.get_mandate(mandate)
            if state.status != mandate.status:
                changed += 1
            apply_mandate_status(
                mandate.id,
                state.status,
                audit=audit,
                next_possible_charge_date=state.next_possible_charge_date,
            )
        except BillingError as exc:
            logger.warning("Mandate %s refresh failed: %s", mandate.id, exc)
            result.record(False)
            continue
        result.record(True)
    return changed


def sync_unsynced_subscriptions(result: WorkerResult, audit: AuditContext) -> tuple[int, Counter]:
    synced = 0
    blocked: Counter = Counter()
    for subscription in unsynced_subscriptions():
        resolution = resolve_mandate(subscription)
        if resolution is None:
            blocked[diagnose_subscription(subscription).blocker_code] += 1
            continue
        try:
            remote = get_provider(subscription.provider).create_subscription(
                subscription, resolution.mandate
            )
            mark_synced_to_provider(
                subscription.id,
                provider_subscription_id=remote.provider_subscription_id,
                provider_status=remote.status,
                mandate=resolution.mandate,
                audit=audit,
            )
        except BillingError as exc:
            logger.warning("Subscription %s sync failed: %s", subscription.id, exc)
            result.record(False)
            continue
        synced += 1
        result.record(True)
    return synced, blocked


def push_cancellations(result: WorkerResult, audit: AuditContext) -> tuple[int, int]:
    today = timezone.localdate()
    pending = (
        Subscription.objects.filter(status=Subscription.Status.CANCELLED)
        .exclude(Q(provider_subscription_id__isnull=True) | Q(provider_subscription_id=""))
        .exclude(provider_subscription_status__in=PROVIDER_CANCELLED_STATUSES)
        .order_by("cancelled_at", "id")
    )
    pushed = deferred = 0
    for subscription in pending:
        try:
            provider = get_provider(subscription.provider)
            at_period_end = subscription.cancel_at_period_end
            if (
                at_period_end
                and not provider.supports_period_end_cancellation
                and subscription.current_period_end
                and subscription.current_period_end >= today
            ):
                deferred += 1
                continue
            use_period_end = at_period_end and provider.supports_period_end_cancellation
            provider_status = provider.cancel_subscription(
                subscription.provider_subscription_id, at_period_end=use_period_end
            )
            if use_period_end and provider_status not in PROVIDER_CANCELLED_STATUSES:
                provider_status = "pending_cancellation"
            update_provider_status(
                subscription.id,
                provider_status=provider_status,
                audit=audit,
                metadata={"cancellation_pushed": True, "at_period_end": use_period_end},
            )
        except BillingError as exc:
            logger.warning("Cancellation push for subscription %s failed: %s", subscription.id, exc)
            result.record(False)
            continue
        pushed += 1
        result.record(True)
    return pushed, deferred


def overdue_resume_ids() -> list[int]:
    return list(
        Subscription.objects.filter(
            status=Subscription.Status.PAUSED, resume_date__lte=timezone.localdate()
        )
        .order_by("resume_date", "id")
        .values_list("id", flat=True)[:OVERDUE_RESUME_REPORT_LIMIT]
    )


def run() -> WorkerResult:
    result = WorkerResult()
    audit = AuditContext.worker(WORKER_NAME)

    mandates_changed = refresh_mandates(result, audit)
    synced, blocked = sync_unsynced_subscriptions(result, audit)
    pushed, deferred = push_cancellations(result, audit)
    overdue = overdue_resume_ids()

    result.metadata = {
        "mandates_changed": mandates_changed,
        "subscriptions_synced": synced,
        "blocked": dict(blocked),
        "cancellations_pushed": pushed,
        "cancellations_deferred": deferred,
        "overdue_resume_ids": overdue,
    }
    if overdue:
        logger.info("%s paused subscriptions are past their resume date", len(overdue))
    return result
