import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest import mock

from django.test import TestCase, override_settings
from rest_framework import status
from rest_framework.test import APIClient

from accounts.models import EmailOutbox
from billing.models import Invoice, Payment

from .models import PaymentMandate, PaymentWebhook, ProviderPayment, Subscription
from .services import mark_synced_to_provider
from .tests import SYSTEM, SubscriptionFixtureMixin
from .webhook_processor import EVENT_HANDLERS
from .webhooks import gocardless_signature


def gocardless_body(*events):
    return json.dumps({"events": list(events)}).encode("utf-8")


def stripe_header(body: bytes, secret: str = "whsec_test") -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{body.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class GoCardlessWebhookTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        self.club = self.make_club()
        self.parent, self.child = self.make_family(self.club)
        self.tier = self.make_tier(self.club)

    def post(self, body, signature=None):
        return self.client.post(
            "/webhooks/gocardless/",
            data=body,
            content_type="application/json",
            HTTP_WEBHOOK_SIGNATURE=signature
            if signature is not None
            else gocardless_signature(body, "gc_test_secret"),
        )

    def synced_subscription(self):
        mandate = self.make_mandate(self.parent, self.club, provider_mandate_id="MD900")
        subscription = self.make_subscription(self.club, self.parent, self.child, self.tier, mandate=mandate)
        return mark_synced_to_provider(subscription.id, provider_subscription_id="SB900", audit=SYSTEM)

    def test_invalid_signature_is_acknowledged_without_changes(self):
        body = gocardless_body(
            {"id": "EV001", "resource_type": "mandates", "action": "cancelled", "links": {"mandate": "MD1"}}
        )

        response = self.post(body, signature="not-a-signature")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(
            response.json(),
            {"success": False, "received": 0, "eventsProcessed": 0, "error": "invalid_signature"},
        )
        self.assertFalse(PaymentWebhook.objects.exists())

    def test_malformed_body_is_acknowledged(self):
        body = b"{not json"
        response = self.post(body)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["error"], "malformed_payload")

    @override_settings(GOCARDLESS_WEBHOOK_SECRET="")
    def test_missing_secret_is_server_error(self):
        body = gocardless_body({"id": "EV002", "resource_type": "mandates", "action": "active"})
        response = self.post(body, signature="anything")
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.json()["error"], "webhook_not_configured")

    def test_unknown_provider_is_not_found(self):
        response = self.client.post("/webhooks/paypal/", data=b"{}", content_type="application/json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_mandate_activation_activates_pending_subscription(self):
        mandate = self.make_mandate(
            self.parent, self.club, provider_mandate_id="MD901", status=PaymentMandate.Status.SUBMITTED
        )
        subscription = self.make_subscription(self.club, self.parent, self.child, self.tier, mandate=mandate)
        body = gocardless_body(
            {"id": "EV010", "resource_type": "mandates", "action": "active", "links": {"mandate": "MD901"}}
        )

        response = self.post(body)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["eventsProcessed"], 1)
        mandate.refresh_from_db()
        subscription.refresh_from_db()
        self.assertEqual(mandate.status, PaymentMandate.Status.ACTIVE)
        self.assertEqual(subscription.status, Subscription.Status.ACTIVE)
        event = subscription.events.get(event_type="activated")
        self.assertEqual(event.actor_type, "webhook")

    def test_paid_out_applies_once(self):
        subscription = self.synced_subscription()
        paid_out = {
            "id": "EV020",
            "resource_type": "payments",
            "action": "paid_out",
            "links": {"payment": "PM900", "subscription": "SB900"},
        }

        first = self.post(gocardless_body(paid_out))
        replay = self.post(gocardless_body(paid_out))
        second_delivery = self.post(gocardless_body({**paid_out, "id": "EV021"}))

        self.assertEqual(first.json()["eventsProcessed"], 1)
        self.assertEqual(replay.json()["eventsProcessed"], 0)
        self.assertEqual(second_delivery.json()["eventsProcessed"], 1)
        self.assertEqual(ProviderPayment.objects.count(), 1)
        self.assertEqual(Payment.objects.count(), 1)
        payment = ProviderPayment.objects.get()
        self.assertEqual(payment.status, ProviderPayment.Status.PAID_OUT)
        self.assertEqual(payment.subscription, subscription)
        self.assertEqual(payment.invoice.status, Invoice.Status.PAID)
        self.assertEqual(payment.invoice.total_amount, Decimal("20.00"))
        self.assertEqual(PaymentWebhook.objects.filter(processed=True).count(), 2)

    @override_settings(SUBSCRIPTION_MAX_FAILED_PAYMENTS=1)
    def test_late_events_after_paid_out_are_ignored(self):
        subscription = self.synced_subscription()
        links = {"payment": "PM905", "subscription": "SB900"}
        self.post(
            gocardless_body({"id": "EV040", "resource_type": "payments", "action": "paid_out", "links": links})
        )

        late = [
            {"id": f"EV04{index}", "resource_type": "payments", "action": action, "links": links}
            for index, action in enumerate(
                ["submitted", "confirmed", "failed", "cancelled", "customer_approval_denied"], start=1
            )
        ]
        response = self.post(gocardless_body(*late))

        self.assertEqual(response.json()["eventsProcessed"], 5)
        payment = ProviderPayment.objects.get(provider_payment_id="PM905")
        subscription.refresh_from_db()
        self.assertEqual(payment.status, ProviderPayment.Status.PAID_OUT)
        self.assertEqual(payment.invoice.status, Invoice.Status.PAID)
        self.assertEqual(subscription.status, Subscription.Status.ACTIVE)
        self.assertEqual(subscription.failed_payment_count, 0)
        self.assertFalse(subscription.events.filter(event_type="payment_failed").exists())
        self.assertFalse(EmailOutbox.objects.filter(template_key="subscription_payment_failed").exists())

    def test_payment_status_does_not_move_backwards(self):
        self.synced_subscription()
        links = {"payment": "PM906", "subscription": "SB900"}
        self.post(
            gocardless_body(
                {"id": "EV050", "resource_type": "payments", "action": "confirmed", "links": links},
                {"id": "EV051", "resource_type": "payments", "action": "submitted", "links": links},
            )
        )

        payment = ProviderPayment.objects.get(provider_payment_id="PM906")
        self.assertEqual(payment.status, ProviderPayment.Status.CONFIRMED)

    @override_settings(SUBSCRIPTION_MAX_FAILED_PAYMENTS=1)
    def test_failed_payment_suspends_subscription(self):
        subscription = self.synced_subscription()
        body = gocardless_body(
            {
                "id": "EV030",
                "resource_type": "payments",
                "action": "failed",
                "links": {"payment": "PM901", "subscription": "SB900"},
                "details": {"cause": "insufficient_funds", "description": "Insufficient funds"},
            }
        )

        self.post(body)

        subscription.refresh_from_db()
        payment = ProviderPayment.objects.get(provider_payment_id="PM901")
        self.assertEqual(subscription.status, Subscription.Status.SUSPENDED)
        self.assertEqual(subscription.failed_payment_count, 1)
        self.assertEqual(payment.status, ProviderPayment.Status.FAILED)
        self.assertEqual(payment.failure_reason, "Insufficient funds")

    def test_subscription_event_updates_provider_status_only(self):
        subscription = self.synced_subscription()
        body = gocardless_body(
            {
                "id": "EV040",
                "resource_type": "subscriptions",
                "action": "cancelled",
                "links": {"subscription": "SB900"},
            }
        )

        self.post(body)

        subscription.refresh_from_db()
        self.assertEqual(subscription.provider_subscription_status, "cancelled")
        self.assertEqual(subscription.status, Subscription.Status.ACTIVE)

    def test_failed_handler_leaves_event_retryable(self):
        mandate = self.make_mandate(
            self.parent, self.club, provider_mandate_id="MD902", status=PaymentMandate.Status.SUBMITTED
        )
        body = gocardless_body(
            {"id": "EV050", "resource_type": "mandates", "action": "active", "links": {"mandate": "MD902"}}
        )

        broken = mock.Mock(side_effect=RuntimeError("database unavailable"))
        with mock.patch.dict(EVENT_HANDLERS, {"mandates": broken}):
            failed = self.post(body)

        self.assertEqual(failed.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        marker = PaymentWebhook.objects.get(event_id="EV050")
        self.assertFalse(marker.processed)
        self.assertIn("database unavailable", marker.error_message)

        retried = self.post(body)

        self.assertEqual(retried.json()["eventsProcessed"], 1)
        marker.refresh_from_db()
        mandate.refresh_from_db()
        self.assertTrue(marker.processed)
        self.assertEqual(marker.error_message, "")
        self.assertEqual(mandate.status, PaymentMandate.Status.ACTIVE)


class StripeWebhookTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        self.club = self.make_club()
        self.parent, self.child = self.make_family(self.club)
        self.mandate = self.make_mandate(
            self.parent,
            self.club,
            provider_mandate_id="mandate_123",
            status=PaymentMandate.Status.ACTIVE,
            provider="stripe",
        )

    def post(self, payload, signature=None):
        body = json.dumps(payload).encode("utf-8")
        return self.client.post(
            "/webhooks/stripe/",
            data=body,
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE=signature if signature is not None else stripe_header(body),
        )

    def test_mandate_inactive_cancels_mandate(self):
        payload = {
            "id": "evt_1",
            "type": "mandate.updated",
            "created": int(time.time()),
            "data": {"object": {"id": "mandate_123", "status": "inactive"}},
        }

        response = self.post(payload)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["eventsProcessed"], 1)
        self.mandate.refresh_from_db()
        self.assertEqual(self.mandate.status, PaymentMandate.Status.CANCELLED)
        self.assertIsNotNone(self.mandate.cancelled_at)

    def test_bad_stripe_signature_changes_nothing(self):
        payload = {
            "id": "evt_2",
            "type": "mandate.updated",
            "data": {"object": {"id": "mandate_123", "status": "inactive"}},
        }

        response = self.post(payload, signature="t=1,v1=deadbeef")

        self.assertEqual(response.json()["error"], "invalid_signature")
        self.mandate.refresh_from_db()
        self.assertEqual(self.mandate.status, PaymentMandate.Status.ACTIVE)
