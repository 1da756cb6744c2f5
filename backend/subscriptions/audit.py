from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .models import Subscription, SubscriptionEvent


@dataclass(frozen=True)
class AuditContext:
    """Who or what triggered a subscription change, and from where."""

    actor_type: str = SubscriptionEvent.ActorType.SYSTEM
    actor: Any = None
    ip_address: str | None = None
    user_agent: str = ""

    @classmethod
    def from_request(cls, request) -> AuditContext:
        forwarded_for = request.META.get("HTTP_X_FORWARDED_FOR", "")
        ip_address = forwarded_for.split(",")[0].strip() if forwarded_for else None
        user = getattr(request, "user", None)
        return cls(
            actor_type=SubscriptionEvent.ActorType.USER,
            actor=user if user is not None and user.is_authenticated else None,
            ip_address=ip_address or request.META.get("REMOTE_ADDR") or None,
            user_agent=request.META.get("HTTP_USER_AGENT", "")[:512],
        )

    @classmethod
    def system(cls) -> AuditContext:
        return cls(actor_type=SubscriptionEvent.ActorType.SYSTEM)

    @classmethod
    def webhook(cls, provider: str) -> AuditContext:
        return cls(actor_type=SubscriptionEvent.ActorType.WEBHOOK, user_agent=f"{provider}-webhook")

    @classmethod
    def worker(cls, worker_name: str) -> AuditContext:
        return cls(actor_type=SubscriptionEvent.ActorType.WORKER, user_agent=worker_name)

    @property
    def actor_id(self) -> int | None:
        return getattr(self.actor, "id", None)


def record_subscription_event(
    subscription: Subscription,
    *,
    event_type: str,
    audit: AuditContext,
    previous_status: str = "",
    new_status: str = "",
    previous_tier=None,
    new_tier=None,
    description: str = "",
    metadata: dict[str, Any] | None = None,
) -> SubscriptionEvent:
    return SubscriptionEvent.objects.create(
        subscription=subscription,
        event_type=event_type,
        previous_status=previous_status,
        new_status=new_status or subscription.status,
        previous_tier=previous_tier,
        new_tier=new_tier,
        description=description[:255],
        actor_type=audit.actor_type,
        actor=audit.actor,
        ip_address=audit.ip_address,
        user_agent=audit.user_agent,
        metadata=metadata or {},
    )
