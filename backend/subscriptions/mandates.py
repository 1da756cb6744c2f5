from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from django.db.models import Q

from .models import PaymentMandate, Subscription

DIRECT = "direct"
PAYER = "payer"

BILLABLE_STATUSES = (Subscription.Status.ACTIVE, Subscription.Status.PENDING)

BLOCKER_STATUS = "status_not_billable"
BLOCKER_NO_MANDATE = "no_mandate"
BLOCKER_DIRECT_INACTIVE = "direct_mandate_inactive"
BLOCKER_PAYER_INACTIVE = "payer_mandate_inactive"
BLOCKER_MISSING_PROVIDER_ID = "mandate_missing_provider_id"


@dataclass(frozen=True)
class ResolvedMandate:
    mandate: PaymentMandate
    source: str

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, **_mandate_summary(self.mandate)}


@dataclass(frozen=True)
class SyncDiagnostic:
    subscription: Subscription
    needs_sync: bool
    resolution: ResolvedMandate | None = None
    direct_mandate: PaymentMandate | None = None
    payer_mandate: PaymentMandate | None = None
    blocker_code: str | None = None
    blockers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        subscription = self.subscription
        return {
            "subscription_id": subscription.id,
            "club_id": subscription.club_id,
            "parent_user_id": subscription.parent_user_id,
            "child_user_id": subscription.child_user_id,
            "status": subscription.status,
            "provider": subscription.provider,
            "needs_sync": self.needs_sync,
            "resolved_mandate": self.resolution.to_dict() if self.resolution else None,
            "direct_mandate": _mandate_summary(self.direct_mandate),
            "payer_mandate": _mandate_summary(self.payer_mandate),
            "blocker_code": self.blocker_code,
            "blockers": list(self.blockers),
        }


def _mandate_summary(mandate: PaymentMandate | None) -> dict[str, Any] | None:
    if mandate is None:
        return None
    return {
        "id": mandate.id,
        "provider": mandate.provider,
        "provider_mandate_id": mandate.provider_mandate_id,
        "status": mandate.status,
    }


def is_usable(mandate: PaymentMandate | None) -> bool:
    return (
        mandate is not None
        and mandate.status == PaymentMandate.Status.ACTIVE
        and bool(mandate.provider_mandate_id)
    )


def find_payer_mandate(subscription: Subscription) -> PaymentMandate | None:
    """Best mandate the payer registered for the subscription's club and provider.

    Usable mandates win, then active ones still waiting for a provider id, then
    the most recently created.
    """
    candidates = list(
        PaymentMandate.objects.filter(
            payment_customer__user_id=subscription.parent_user_id,
            payment_customer__club_id=subscription.club_id,
            provider=subscription.provider,
        ).order_by("-created_at", "-id")
    )
    if not candidates:
        return None
    return sorted(
        candidates,
        key=lambda mandate: (is_usable(mandate), mandate.status == PaymentMandate.Status.ACTIVE),
        reverse=True,
    )[0]


def resolve_mandate(subscription: Subscription) -> ResolvedMandate | None:
    direct = subscription.payment_mandate
    if is_usable(direct):
        return ResolvedMandate(mandate=direct, source=DIRECT)
    payer_mandate = find_payer_mandate(subscription)
    if is_usable(payer_mandate):
        return ResolvedMandate(mandate=payer_mandate, source=PAYER)
    return None


def _leading_blocker(
    subscription: Subscription,
    direct: PaymentMandate | None,
    payer_mandate: PaymentMandate | None,
) -> tuple[str, str]:
    if subscription.status not in BILLABLE_STATUSES:
        return BLOCKER_STATUS, f"Subscription is {subscription.status}; only active or pending subscriptions sync."
    if direct is None and payer_mandate is None:
        return BLOCKER_NO_MANDATE, "No payment mandate on the subscription or on the payer's account for this club."
    if direct is not None and direct.status != PaymentMandate.Status.ACTIVE:
        return BLOCKER_DIRECT_INACTIVE, f"Subscription mandate is {direct.status}, not active."
    if payer_mandate is not None and payer_mandate.status != PaymentMandate.Status.ACTIVE:
        return BLOCKER_PAYER_INACTIVE, f"Payer mandate is {payer_mandate.status}, not active."
    return BLOCKER_MISSING_PROVIDER_ID, "Mandate is active but has no provider mandate id yet."


def diagnose_subscription(subscription: Subscription) -> SyncDiagnostic:
    """Explain whether a subscription can be pushed to its provider.

    An unresolved subscription always gets exactly one blocker, picked in a
    fixed priority order, so the same data yields the same diagnosis.
    """
    direct = subscription.payment_mandate
    payer_mandate = find_payer_mandate(subscription)
    resolution = resolve_mandate(subscription) if subscription.status in BILLABLE_STATUSES else None

    if resolution is not None:
        return SyncDiagnostic(
            subscription=subscription,
            needs_sync=not subscription.provider_subscription_id,
            resolution=resolution,
            direct_mandate=direct,
            payer_mandate=payer_mandate,
        )

    blocker_code, message = _leading_blocker(subscription, direct, payer_mandate)
    return SyncDiagnostic(
        subscription=subscription,
        needs_sync=False,
        direct_mandate=direct,
        payer_mandate=payer_mandate,
        blocker_code=blocker_code,
        blockers=[message],
    )


def unsynced_subscriptions(clubs=None):
    queryset = (
        Subscription.objects.select_related("payment_mandate", "club", "membership_tier")
        .filter(status__in=BILLABLE_STATUSES)
        .filter(Q(provider_subscription_id__isnull=True) | Q(provider_subscription_id=""))
    )
    if clubs is not None:
        queryset = queryset.filter(club__in=clubs)
    return queryset.order_by("created_at", "id")


def list_unsynced_diagnostics(clubs=None) -> list[SyncDiagnostic]:
    return [diagnose_subscription(subscription) for subscription in unsynced_subscriptions(clubs)]
