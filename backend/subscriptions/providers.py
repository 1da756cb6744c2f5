from __future__ import annotations

import json
import socket
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from json import JSONDecodeError
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urljoin
from urllib.request import Request, urlopen
from uuid import uuid4

import stripe
from django.conf import settings
from django.utils.dateparse import parse_date

from billing.errors import TransientError

from .models import PaymentMandate, Provider, Subscription


class ProviderError(TransientError):
    default_code = "provider_error"


class ProviderConfigurationError(ProviderError):
    default_code = "provider_not_configured"


@dataclass
class ProviderMandateState:
    provider_mandate_id: str
    status: str
    next_possible_charge_date: date | None = None


@dataclass
class ProviderSubscriptionResult:
    provider_subscription_id: str
    status: str


_GOCARDLESS_MANDATE_STATUS_MAP = {
    "pending_customer_approval": PaymentMandate.Status.PENDING_SUBMISSION,
    "pending_submission": PaymentMandate.Status.PENDING_SUBMISSION,
    "submitted": PaymentMandate.Status.SUBMITTED,
    "active": PaymentMandate.Status.ACTIVE,
    "reinstated": PaymentMandate.Status.ACTIVE,
    "failed": PaymentMandate.Status.FAILED,
    "blocked": PaymentMandate.Status.FAILED,
    "cancelled": PaymentMandate.Status.CANCELLED,
    "expired": PaymentMandate.Status.EXPIRED,
    "consumed": PaymentMandate.Status.EXPIRED,
}

_STRIPE_MANDATE_STATUS_MAP = {
    "active": PaymentMandate.Status.ACTIVE,
    "pending": PaymentMandate.Status.SUBMITTED,
    "inactive": PaymentMandate.Status.CANCELLED,
}


def normalize_mandate_status(provider: str, raw_status: Any) -> str:
    value = str(raw_status or "").strip().lower()
    mapping = _STRIPE_MANDATE_STATUS_MAP if provider == Provider.STRIPE else _GOCARDLESS_MANDATE_STATUS_MAP
    return mapping.get(value, PaymentMandate.Status.PENDING_SUBMISSION)


def _minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _extract_error_message(raw_body: str) -> str:
    if not raw_body.strip():
        return "No additional details were returned."
    try:
        payload = json.loads(raw_body)
    except JSONDecodeError:
        return "Provider returned a non-JSON error response."
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return "Provider returned an error."


class GoCardlessProvider:
    name = Provider.GOCARDLESS
    supports_period_end_cancellation = False

    @property
    def mode(self) -> str:
        mode = str(settings.GOCARDLESS_MODE or "mock").strip().lower()
        if mode not in ("mock", "live"):
            raise ProviderConfigurationError("Unsupported GOCARDLESS_MODE. Use 'mock' or 'live'.")
        return mode

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        token = str(settings.GOCARDLESS_ACCESS_TOKEN or "").strip()
        if not token:
            raise ProviderConfigurationError("GoCardless access token is not configured.")
        headers = {
            "Authorization": f"Bearer {token}",
            "GoCardless-Version": str(settings.GOCARDLESS_VERSION),
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _url(self, path: str) -> str:
        base_url = str(settings.GOCARDLESS_BASE_URL or "").strip()
        if not base_url:
            raise ProviderConfigurationError("GoCardless base URL is not configured.")
        return urljoin(f"{base_url.rstrip('/')}/", path.lstrip("/"))

    def _request_json(
        self,
        *,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        request_data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = Request(url=self._url(path), data=request_data, method=method.upper())
        request.add_header("Accept", "application/json")
        if request_data is not None:
            request.add_header("Content-Type", "application/json")
        for header_name, header_value in self._headers(idempotency_key).items():
            request.add_header(header_name, header_value)

        timeout_seconds = max(1, int(settings.GOCARDLESS_TIMEOUT_SECONDS))
        try:
            with urlopen(request, timeout=timeout_seconds) as response:
                raw_body = response.read().decode("utf-8")
        except HTTPError as exc:
            raw_body = exc.read().decode("utf-8", errors="replace")
            raise ProviderError(
                f"GoCardless returned HTTP {exc.code}. {_extract_error_message(raw_body)}",
                provider=self.name,
                status=exc.code,
            ) from exc
        except (URLError, TimeoutError, socket.timeout) as exc:
            raise ProviderError(
                "GoCardless is currently unavailable. Please retry shortly.", provider=self.name
            ) from exc

        try:
            parsed_body = json.loads(raw_body) if raw_body.strip() else {}
        except JSONDecodeError as exc:
            raise ProviderError("GoCardless returned invalid JSON.", provider=self.name) from exc
        if not isinstance(parsed_body, dict):
            raise ProviderError("GoCardless returned an unsupported response.", provider=self.name)
        return parsed_body

    def get_mandate(self, mandate: PaymentMandate) -> ProviderMandateState:
        if self.mode == "mock":
            return ProviderMandateState(
                provider_mandate_id=mandate.provider_mandate_id or f"MD{uuid4().hex[:12].upper()}",
                status=PaymentMandate.Status.ACTIVE,
            )
        body = self._request_json(
            method="GET", path=f"/mandates/{quote(mandate.provider_mandate_id or '', safe='')}"
        )
        data = body.get("mandates") or {}
        return ProviderMandateState(
            provider_mandate_id=data.get("id") or mandate.provider_mandate_id,
            status=normalize_mandate_status(self.name, data.get("status")),
            next_possible_charge_date=parse_date(data.get("next_possible_charge_date") or ""),
        )

    def create_subscription(
        self, subscription: Subscription, mandate: PaymentMandate
    ) -> ProviderSubscriptionResult:
        if self.mode == "mock":
            return ProviderSubscriptionResult(
                provider_subscription_id=f"SB{uuid4().hex[:12].upper()}", status="active"
            )
        annual = subscription.billing_frequency == Subscription.BillingFrequency.ANNUAL
        payload = {
            "subscriptions": {
                "amount": _minor_units(subscription.amount),
                "currency": subscription.currency,
                "name": f"{subscription.club.name} - {subscription.membership_tier.name}"[:255],
                "interval_unit": "yearly" if annual else "monthly",
                "day_of_month": subscription.billing_day_of_month,
                "metadata": {"subscription_id": str(subscription.id)},
                "links": {"mandate": mandate.provider_mandate_id},
            }
        }
        if subscription.next_billing_date:
            payload["subscriptions"]["start_date"] = subscription.next_billing_date.isoformat()
            if annual:
                payload["subscriptions"]["month"] = subscription.next_billing_date.strftime("%B").lower()
        body = self._request_json(
            method="POST",
            path="/subscriptions",
            payload=payload,
            idempotency_key=f"subscription-{subscription.id}",
        )
        data = body.get("subscriptions") or {}
        if not data.get("id"):
            raise ProviderError(
                "GoCardless response is missing a subscription identifier.", provider=self.name
            )
        return ProviderSubscriptionResult(
            provider_subscription_id=data["id"], status=str(data.get("status") or "active")
        )

    def cancel_subscription(self, provider_subscription_id: str, *, at_period_end: bool = False) -> str:
        if self.mode == "mock":
            return "cancelled"
        body = self._request_json(
            method="POST",
            path=f"/subscriptions/{quote(provider_subscription_id, safe='')}/actions/cancel",
            payload={"data": {}},
        )
        return str((body.get("subscriptions") or {}).get("status") or "cancelled")


class StripeProvider:
    name = Provider.STRIPE
    supports_period_end_cancellation = True

    def _configure(self) -> None:
        if not settings.STRIPE_SECRET_KEY:
            raise ProviderConfigurationError("Stripe is not configured.")
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.api_version = settings.STRIPE_API_VERSION

    def get_mandate(self, mandate: PaymentMandate) -> ProviderMandateState:
        self._configure()
        try:
            data = stripe.Mandate.retrieve(mandate.provider_mandate_id)
        except stripe.StripeError as exc:
            raise ProviderError(f"Stripe mandate lookup failed: {exc}", provider=self.name) from exc
        return ProviderMandateState(
            provider_mandate_id=data["id"],
            status=normalize_mandate_status(self.name, data.get("status")),
        )

    def create_subscription(
        self, subscription: Subscription, mandate: PaymentMandate
    ) -> ProviderSubscriptionResult:
        self._configure()
        if not settings.STRIPE_MEMBERSHIP_PRODUCT_ID:
            raise ProviderConfigurationError("STRIPE_MEMBERSHIP_PRODUCT_ID is not configured.")
        customer_id = mandate.payment_customer.provider_customer_id
        if not customer_id:
            raise ProviderError(
                "Payer has no Stripe customer for this club.", provider=self.name, mandate_id=mandate.id
            )
        annual = subscription.billing_frequency == Subscription.BillingFrequency.ANNUAL
        try:
            stripe_mandate = stripe.Mandate.retrieve(mandate.provider_mandate_id)
            created = stripe.Subscription.create(
                customer=customer_id,
                default_payment_method=stripe_mandate["payment_method"],
                items=[
                    {
                        "price_data": {
                            "currency": subscription.currency.lower(),
                            "product": settings.STRIPE_MEMBERSHIP_PRODUCT_ID,
                            "unit_amount": _minor_units(subscription.amount),
                            "recurring": {"interval": "year" if annual else "month"},
                        }
                    }
                ],
                metadata={"subscription_id": str(subscription.id)},
                idempotency_key=f"subscription-{subscription.id}",
            )
        except stripe.StripeError as exc:
            raise ProviderError(f"Stripe subscription create failed: {exc}", provider=self.name) from exc
        return ProviderSubscriptionResult(
            provider_subscription_id=created["id"], status=str(created.get("status") or "active")
        )

    def cancel_subscription(self, provider_subscription_id: str, *, at_period_end: bool = False) -> str:
        self._configure()
        try:
            if at_period_end:
                updated = stripe.Subscription.modify(
                    provider_subscription_id, cancel_at_period_end=True
                )
            else:
                updated = stripe.Subscription.cancel(provider_subscription_id)
        except stripe.StripeError as exc:
            raise ProviderError(f"Stripe subscription cancel failed: {exc}", provider=self.name) from exc
        return str(updated.get("status") or "canceled")


_PROVIDERS = {
    Provider.GOCARDLESS: GoCardlessProvider,
    Provider.STRIPE: StripeProvider,
}


def get_provider(name: str):
    try:
        return _PROVIDERS[name]()
    except KeyError as error:
        raise ProviderConfigurationError("Unknown payment provider.", provider=name) from error
