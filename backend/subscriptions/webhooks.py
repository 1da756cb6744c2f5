from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from json import JSONDecodeError
from typing import Any, Mapping

import stripe
from django.conf import settings

from .models import PaymentMandate, Provider


class WebhookError(Exception):
    pass


class WebhookConfigurationError(WebhookError):
    """The webhook secret for a provider is missing; the request cannot be trusted either way."""


class InvalidSignature(WebhookError):
    pass


class MalformedPayload(WebhookError):
    pass


@dataclass(frozen=True)
class ProviderEvent:
    event_id: str
    resource_type: str
    action: str
    resource_id: str = ""
    links: dict[str, Any] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


SIGNATURE_HEADERS = {
    Provider.GOCARDLESS: "Webhook-Signature",
    Provider.STRIPE: "Stripe-Signature",
}


def _secret_for(provider: str) -> str:
    secret = {
        Provider.GOCARDLESS: settings.GOCARDLESS_WEBHOOK_SECRET,
        Provider.STRIPE: settings.STRIPE_WEBHOOK_SECRET,
    }.get(provider)
    if not secret:
        raise WebhookConfigurationError(f"Webhook secret for {provider} is not configured.")
    return secret


def gocardless_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(provider: str, body: bytes, headers: Mapping[str, str]) -> None:
    """Raise ``InvalidSignature`` unless ``body`` was signed with the provider's secret."""
    secret = _secret_for(provider)
    signature = (headers.get(SIGNATURE_HEADERS[provider]) or "").strip()
    if not signature:
        raise InvalidSignature("Missing signature header.")

    if provider == Provider.GOCARDLESS:
        if not hmac.compare_digest(gocardless_signature(body, secret), signature):
            raise InvalidSignature("Signature does not match.")
        return

    try:
        stripe.WebhookSignature.verify_header(
            body.decode("utf-8"),
            signature,
            secret,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
        raise InvalidSignature(str(exc)) from exc


def _load_json(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, JSONDecodeError) as exc:
        raise MalformedPayload("Body is not valid JSON.") from exc


_GOCARDLESS_LINK_KEYS = {
    "mandates": "mandate",
    "payments": "payment",
    "subscriptions": "subscription",
    "refunds": "refund",
}


def _parse_gocardless(payload: Any) -> list[ProviderEvent]:
    if not isinstance(payload, dict) or not isinstance(payload.get("events"), list):
        raise MalformedPayload("Expected an object with an events list.")
    events = []
    for raw in payload["events"]:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise MalformedPayload("Every event needs an id.")
        resource_type = str(raw.get("resource_type") or "")
        links = raw.get("links") if isinstance(raw.get("links"), dict) else {}
        events.append(
            ProviderEvent(
                event_id=str(raw["id"]),
                resource_type=resource_type,
                action=str(raw.get("action") or ""),
                resource_id=str(links.get(_GOCARDLESS_LINK_KEYS.get(resource_type, ""), "") or ""),
                links=links,
                details=raw.get("details") if isinstance(raw.get("details"), dict) else {},
                created_at=str(raw.get("created_at") or ""),
                raw=raw,
            )
        )
    return events


_STRIPE_PAYMENT_ACTIONS = {
    "payment_intent.created": "created",
    "payment_intent.processing": "submitted",
    "payment_intent.succeeded": "paid_out",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "cancelled",
}

_STRIPE_MANDATE_ACTIONS = {
    "active": "active",
    "pending": "submitted",
    "inactive": "cancelled",
}


def _stripe_event_shape(event_type: str, obj: dict[str, Any]) -> tuple[str, str, str]:
    if event_type in _STRIPE_PAYMENT_ACTIONS:
        return "payments", _STRIPE_PAYMENT_ACTIONS[event_type], str(obj.get("id") or "")
    if event_type == "charge.dispute.created":
        return "payments", "charged_back", str(obj.get("payment_intent") or "")
    if event_type == "charge.refunded":
        return "refunds", "created", str(obj.get("payment_intent") or obj.get("id") or "")
    if event_type == "mandate.updated":
        action = _STRIPE_MANDATE_ACTIONS.get(str(obj.get("status") or ""), "submitted")
        return "mandates", action, str(obj.get("id") or "")
    if event_type.startswith("customer.subscription."):
        action = "cancelled" if event_type.endswith(".deleted") else str(obj.get("status") or "")
        return "subscriptions", action, str(obj.get("id") or "")
    resource_type, _, action = event_type.partition(".")
    return resource_type, action, str(obj.get("id") or "")


def _parse_stripe(payload: Any) -> list[ProviderEvent]:
    if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
        raise MalformedPayload("Expected a Stripe event object.")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    obj = data.get("object") if isinstance(data.get("object"), dict) else {}
    resource_type, action, resource_id = _stripe_event_shape(str(payload["type"]), obj)
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    failure = obj.get("last_payment_error") if isinstance(obj.get("last_payment_error"), dict) else {}
    created = payload.get("created")
    return [
        ProviderEvent(
            event_id=str(payload["id"]),
            resource_type=resource_type,
            action=action,
            resource_id=resource_id,
            links={
                key: value
                for key, value in {
                    "mandate": obj.get("mandate"),
                    "subscription": obj.get("subscription"),
                    "customer": obj.get("customer"),
                }.items()
                if isinstance(value, str) and value
            },
            details={
                "cause": failure.get("code") or obj.get("reason") or "",
                "description": failure.get("message") or obj.get("cancellation_reason") or "",
                "amount": obj.get("amount"),
                "currency": obj.get("currency"),
                "local_subscription_id": metadata.get("subscription_id"),
            },
            created_at=(
                datetime.fromtimestamp(created, tz=dt_timezone.utc).isoformat()
                if isinstance(created, int)
                else ""
            ),
            raw=payload,
        )
    ]


def parse_events(provider: str, body: bytes) -> list[ProviderEvent]:
    payload = _load_json(body)
    if provider == Provider.STRIPE:
        return _parse_stripe(payload)
    return _parse_gocardless(payload)


MANDATE_ACTION_STATUS = {
    "created": PaymentMandate.Status.PENDING_SUBMISSION,
    "submitted": PaymentMandate.Status.SUBMITTED,
    "active": PaymentMandate.Status.ACTIVE,
    "reinstated": PaymentMandate.Status.ACTIVE,
    "failed": PaymentMandate.Status.FAILED,
    "cancelled": PaymentMandate.Status.CANCELLED,
    "expired": PaymentMandate.Status.EXPIRED,
}
