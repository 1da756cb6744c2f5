from datetime import date, timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from accounts.models import User
from billing.errors import Conflict, Forbidden, InvalidStateTransition, NotFound, ValidationFailed
from clubs.models import Club
from members.models import Member

from .audit import AuditContext
from .models import (
    MembershipTier,
    PaymentCustomer,
    PaymentMandate,
    Provider,
    Subscription,
    SubscriptionEvent,
)
from .services import (
    activate_subscription,
    add_months,
    apply_mandate_status,
    calculate_next_billing_date,
    calculate_proration,
    cancel_subscription,
    change_tier,
    create_subscription,
    get_subscription_stats,
    mark_synced_to_provider,
    pause_subscription,
    reactivate_subscription,
    record_failed_payment,
    reset_failed_payment_count,
    resume_subscription,
    suspend_subscription,
)

SYSTEM = AuditContext.system()


class SubscriptionFixtureMixin:
    def make_club(self, name="Riverside FC"):
        creator = User.objects.create_user(
            username=f"creator-{name}".replace(" ", "-").lower(),
            password="pass12345",
            role=User.Roles.SUPER_ADMIN,
        )
        return Club.objects.create(name=name, created_by=creator)

    def make_family(self, club, prefix="fam"):
        parent = User.objects.create_user(
            username=f"{prefix}-parent",
            password="pass12345",
            role=User.Roles.PARENT,
            email=f"{prefix}-parent@example.com",
        )
        child = User.objects.create_user(
            username=f"{prefix}-child",
            password="pass12345",
            role=User.Roles.MEMBER,
            first_name="Sam",
            last_name="Striker",
        )
        Member.objects.create(user=child, guardian=parent, club=club, first_name="Sam", last_name="Striker")
        return parent, child

    def make_tier(self, club, name="Junior", monthly="20.00", annual=None, **kwargs):
        return MembershipTier.objects.create(
            club=club,
            name=name,
            monthly_price=Decimal(monthly),
            annual_price=Decimal(annual) if annual is not None else None,
            **kwargs,
        )

    def make_mandate(
        self,
        user,
        club,
        *,
        provider_mandate_id=None,
        status=PaymentMandate.Status.ACTIVE,
        provider=Provider.GOCARDLESS,
    ):
        customer, _ = PaymentCustomer.objects.get_or_create(
            user=user,
            club=club,
            provider=provider,
            defaults={"email": user.email, "provider_customer_id": f"CU-{user.id}"},
        )
        return PaymentMandate.objects.create(
            payment_customer=customer,
            provider=provider,
            provider_mandate_id=provider_mandate_id,
            status=status,
        )

    def make_subscription(self, club, parent, child, tier, **kwargs):
        kwargs.setdefault("audit", SYSTEM)
        return create_subscription(club=club, parent_user=parent, child_user=child, tier=tier, **kwargs)


class BillingDateTests(TestCase):
    def test_add_months_clamps_to_month_end(self):
        self.assertEqual(add_months(date(2026, 1, 31), 1), date(2026, 2, 28))
        self.assertEqual(add_months(date(2026, 11, 15), 3), date(2027, 2, 15))

    def test_next_billing_date_uses_billing_day(self):
        self.assertEqual(
            calculate_next_billing_date(15, "monthly", from_date=date(2026, 1, 20)), date(2026, 2, 15)
        )
        self.assertEqual(
            calculate_next_billing_date(15, "annual", from_date=date(2026, 1, 20)), date(2027, 1, 15)
        )

    def test_proration_charges_upgrade_and_credits_downgrade(self):
        subscription = Subscription(
            amount=Decimal("20.00"),
            current_period_start=date(2026, 1, 1),
            current_period_end=date(2026, 1, 31),
        )

        upgrade = calculate_proration(subscription, Decimal("35.00"), today=date(2026, 1, 16))
        downgrade = calculate_proration(subscription, Decimal("5.00"), today=date(2026, 1, 16))

        self.assertEqual(upgrade.period_days, 30)
        self.assertEqual(upgrade.days_remaining, 15)
        self.assertEqual(upgrade.amount, Decimal("7.50"))
        self.assertEqual((upgrade.charge, upgrade.credit), (Decimal("7.50"), Decimal("0.00")))
        self.assertEqual(downgrade.amount, Decimal("-7.50"))
        self.assertEqual((downgrade.charge, downgrade.credit), (Decimal("0.00"), Decimal("7.50")))

    def test_proration_without_period_is_zero(self):
        subscription = Subscription(amount=Decimal("20.00"))
        proration = calculate_proration(subscription, Decimal("35.00"))
        self.assertEqual(proration.amount, Decimal("0.00"))
        self.assertEqual(proration.period_days, 0)


class CreateSubscriptionTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.club = self.make_club()
        self.parent, self.child = self.make_family(self.club)
        self.tier = self.make_tier(self.club)

    def test_usable_mandate_starts_active(self):
        mandate = self.make_mandate(self.parent, self.club, provider_mandate_id="MD001")

        subscription = self.make_subscription(self.club, self.parent, self.child, self.tier, mandate=mandate)

        self.assertEqual(subscription.status, Subscription.Status.ACTIVE)
        self.assertEqual(subscription.amount, Decimal("20.00"))
        self.assertEqual(subscription.payment_mandate, mandate)
        self.assertIsNotNone(subscription.next_billing_date)
        event = subscription.events.get()
        self.assertEqual(event.event_type, "created")
        self.assertEqual(event.new_status, Subscription.Status.ACTIVE)
        self.assertEqual(event.actor_type, SubscriptionEvent.ActorType.SYSTEM)

    def test_without_usable_mandate_starts_pending(self):
        mandate = self.make_mandate(self.parent, self.club, status=PaymentMandate.Status.SUBMITTED)

        subscription = self.make_subscription(self.club, self.parent, self.child, self.tier, mandate=mandate)

        self.assertEqual(subscription.status, Subscription.Status.PENDING)

    def test_annual_amount(self):
        annual_tier = self.make_tier(self.club, name="Annual", monthly="20.00", annual="200.00")
        fallback_tier = self.make_tier(self.club, name="Fallback", monthly="15.00")
        second_parent, second_child = self.make_family(self.club, prefix="second")

        annual = self.make_subscription(
            self.club, self.parent, self.child, annual_tier, billing_frequency="annual"
        )
        fallback = self.make_subscription(
            self.club, second_parent, second_child, fallback_tier, billing_frequency="annual"
        )

        self.assertEqual(annual.amount, Decimal("200.00"))
        self.assertEqual(fallback.amount, Decimal("180.00"))

    def test_only_payer_can_subscribe(self):
        stranger = User.objects.create_user(username="stranger", password="pass12345")
        with self.assertRaises(Forbidden):
            self.make_subscription(self.club, stranger, self.child, self.tier)

    def test_child_must_be_member(self):
        other_club = self.make_club("Hillside FC")
        tier = self.make_tier(other_club)
        with self.assertRaises(NotFound):
            self.make_subscription(other_club, self.child, self.child, tier)

    def test_inactive_or_foreign_tier_is_rejected(self):
        inactive = self.make_tier(self.club, name="Legacy", is_active=False)
        foreign = self.make_tier(self.make_club("Hillside FC"), name="Senior")
        for tier in (inactive, foreign):
            with self.assertRaises(NotFound):
                self.make_subscription(self.club, self.parent, self.child, tier)

    def test_mandate_of_another_payer_is_rejected(self):
        other_parent, _ = self.make_family(self.club, prefix="other")
        mandate = self.make_mandate(other_parent, self.club, provider_mandate_id="MD002")
        with self.assertRaises(ValidationFailed):
            self.make_subscription(self.club, self.parent, self.child, self.tier, mandate=mandate)

    def test_bad_billing_day_is_rejected(self):
        with self.assertRaises(ValidationFailed):
            self.make_subscription(self.club, self.parent, self.child, self.tier, billing_day_of_month=29)

    def test_one_open_subscription_per_child_and_club(self):
        first = self.make_subscription(self.club, self.parent, self.child, self.tier)
        with self.assertRaises(Conflict):
            self.make_subscription(self.club, self.parent, self.child, self.tier)

        cancel_subscription(first.id, audit=SYSTEM)
        second = self.make_subscription(self.club, self.parent, self.child, self.tier)
        self.assertEqual(second.status, Subscription.Status.PENDING)

    def test_history_is_tracked(self):
        subscription = self.make_subscription(self.club, self.parent, self.child, self.tier)
        cancel_subscription(subscription.id, audit=SYSTEM)
        self.assertGreaterEqual(subscription.history.count(), 2)

    def test_events_are_immutable(self):
        subscription = self.make_subscription(self.club, self.parent, self.child, self.tier)
        event = subscription.events.get()
        event.description = "rewritten"
        with self.assertRaises(ValidationError):
            event.save()
        with self.assertRaises(ValidationError):
            event.delete()


class SubscriptionStateMachineTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.club = self.make_club()
        self.parent, self.child = self.make_family(self.club)
        self.tier = self.make_tier(self.club)
        self.mandate = self.make_mandate(self.parent, self.club, provider_mandate_id="MD100")
        self.subscription = self.make_subscription(
            self.club, self.parent, self.child, self.tier, mandate=self.mandate
        )

    def test_cancelled_subscription_rejects_every_transition(self):
        cancel_subscription(self.subscription.id, audit=SYSTEM, reason="Moving away")

        operations = [
            lambda: pause_subscription(self.subscription.id, audit=SYSTEM),
            lambda: resume_subscription(self.subscription.id, audit=SYSTEM),
            lambda: suspend_subscription(self.subscription.id, audit=SYSTEM),
            lambda: reactivate_subscription(self.subscription.id, audit=SYSTEM),
            lambda: cancel_subscription(self.subscription.id, audit=SYSTEM),
            lambda: activate_subscription(self.subscription.id, audit=SYSTEM),
        ]
        for operation in operations:
            with self.assertRaises(InvalidStateTransition):
                operation()
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, Subscription.Status.CANCELLED)
        self.assertTrue(issubclass(InvalidStateTransition, Conflict))

    def test_immediate_cancel_closes_period(self):
        subscription = cancel_subscription(self.subscription.id, audit=SYSTEM, reason="Moving away")

        self.assertEqual(subscription.current_period_end, timezone.localdate())
        self.assertFalse(subscription.cancel_at_period_end)
        self.assertIsNone(subscription.next_billing_date)
        self.assertEqual(subscription.cancellation_reason, "Moving away")

    def test_cancel_at_period_end_keeps_period(self):
        period_end = self.subscription.current_period_end

        subscription = cancel_subscription(self.subscription.id, audit=SYSTEM, immediate=False)

        self.assertEqual(subscription.status, Subscription.Status.CANCELLED)
        self.assertTrue(subscription.cancel_at_period_end)
        self.assertEqual(subscription.current_period_end, period_end)

    def test_pause_and_resume(self):
        resume_on = timezone.localdate() + timedelta(days=20)
        paused = pause_subscription(self.subscription.id, audit=SYSTEM, resume_date=resume_on)

        self.assertEqual(paused.status, Subscription.Status.PAUSED)
        self.assertEqual(paused.resume_date, resume_on)
        self.assertIsNotNone(paused.paused_at)
        self.assertIsNone(paused.next_billing_date)

        resumed = resume_subscription(self.subscription.id, audit=SYSTEM)
        self.assertEqual(resumed.status, Subscription.Status.ACTIVE)
        self.assertIsNone(resumed.paused_at)
        self.assertIsNotNone(resumed.next_billing_date)

    def test_resume_date_must_be_in_future(self):
        with self.assertRaises(ValidationFailed):
            pause_subscription(self.subscription.id, audit=SYSTEM, resume_date=timezone.localdate())

    def test_resume_does_not_lift_suspension(self):
        suspend_subscription(self.subscription.id, audit=SYSTEM, reason="Chargeback")

        with self.assertRaises(InvalidStateTransition):
            resume_subscription(self.subscription.id, audit=SYSTEM)
        with self.assertRaises(InvalidStateTransition):
            activate_subscription(self.subscription.id, audit=SYSTEM)
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, Subscription.Status.SUSPENDED)

    def test_reactivate_does_not_unpause(self):
        pause_subscription(self.subscription.id, audit=SYSTEM)

        with self.assertRaises(InvalidStateTransition):
            reactivate_subscription(self.subscription.id, audit=SYSTEM)
        with self.assertRaises(InvalidStateTransition):
            activate_subscription(self.subscription.id, audit=SYSTEM)
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, Subscription.Status.PAUSED)

    def test_pending_cannot_pause(self):
        parent, child = self.make_family(self.club, prefix="pending")
        pending = self.make_subscription(self.club, parent, child, self.tier)
        with self.assertRaises(InvalidStateTransition):
            pause_subscription(pending.id, audit=SYSTEM)

    def test_change_tier_prorates_upgrade(self):
        senior = self.make_tier(self.club, name="Senior", monthly="30.00")

        result = change_tier(self.subscription.id, new_tier=senior, audit=SYSTEM)

        self.assertEqual(result.subscription.membership_tier, senior)
        self.assertEqual(result.subscription.amount, Decimal("30.00"))
        self.assertEqual(result.proration.amount, Decimal("10.00"))
        self.assertEqual(result.proration.credit, Decimal("0.00"))
        event = SubscriptionEvent.objects.get(subscription=self.subscription, event_type="tier_changed")
        self.assertEqual(event.previous_tier, self.tier)
        self.assertEqual(event.new_tier, senior)

    def test_change_tier_guards(self):
        with self.assertRaises(ValidationFailed):
            change_tier(self.subscription.id, new_tier=self.tier, audit=SYSTEM)
        foreign = self.make_tier(self.make_club("Hillside FC"), name="Senior")
        with self.assertRaises(NotFound):
            change_tier(self.subscription.id, new_tier=foreign, audit=SYSTEM)
        senior = self.make_tier(self.club, name="Senior", monthly="30.00")
        suspend_subscription(self.subscription.id, audit=SYSTEM)
        with self.assertRaises(InvalidStateTransition):
            change_tier(self.subscription.id, new_tier=senior, audit=SYSTEM)

    @override_settings(SUBSCRIPTION_MAX_FAILED_PAYMENTS=3)
    def test_failed_payments_suspend_at_threshold(self):
        for _ in range(2):
            subscription = record_failed_payment(self.subscription.id, audit=SYSTEM, reason="Insufficient funds")
        self.assertEqual(subscription.status, Subscription.Status.ACTIVE)
        self.assertEqual(subscription.failed_payment_count, 2)

        subscription = record_failed_payment(self.subscription.id, audit=SYSTEM)

        self.assertEqual(subscription.status, Subscription.Status.SUSPENDED)
        self.assertEqual(subscription.failed_payment_count, 3)
        self.assertEqual(
            SubscriptionEvent.objects.filter(subscription=subscription, event_type="payment_failed").count(), 3
        )
        self.assertTrue(
            SubscriptionEvent.objects.filter(subscription=subscription, event_type="suspended").exists()
        )

        reactivated = reactivate_subscription(self.subscription.id, audit=SYSTEM)
        self.assertEqual(reactivated.status, Subscription.Status.ACTIVE)
        self.assertEqual(reactivated.failed_payment_count, 0)

    def test_failed_payment_on_cancelled_is_ignored(self):
        cancel_subscription(self.subscription.id, audit=SYSTEM)
        subscription = record_failed_payment(self.subscription.id, audit=SYSTEM)
        self.assertEqual(subscription.failed_payment_count, 0)

    def test_reset_failed_payment_count(self):
        record_failed_payment(self.subscription.id, audit=SYSTEM)
        subscription = reset_failed_payment_count(self.subscription.id, audit=SYSTEM)
        self.assertEqual(subscription.failed_payment_count, 0)
        events_before = SubscriptionEvent.objects.count()
        reset_failed_payment_count(self.subscription.id, audit=SYSTEM)
        self.assertEqual(SubscriptionEvent.objects.count(), events_before)

    def test_missing_subscription_is_not_found(self):
        with self.assertRaises(NotFound):
            suspend_subscription(999999, audit=SYSTEM)


class ProviderSyncTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.club = self.make_club()
        self.parent, self.child = self.make_family(self.club)
        self.tier = self.make_tier(self.club)

    def test_mark_synced_is_idempotent_and_activates_pending(self):
        subscription = self.make_subscription(self.club, self.parent, self.child, self.tier)
        mandate = self.make_mandate(self.parent, self.club, provider_mandate_id="MD200")

        synced = mark_synced_to_provider(
            subscription.id, provider_subscription_id="SB001", mandate=mandate, audit=SYSTEM
        )
        again = mark_synced_to_provider(subscription.id, provider_subscription_id="SB001", audit=SYSTEM)

        self.assertEqual(synced.status, Subscription.Status.ACTIVE)
        self.assertEqual(synced.payment_mandate, mandate)
        self.assertEqual(again.provider_subscription_id, "SB001")
        self.assertEqual(SubscriptionEvent.objects.filter(event_type="synced").count(), 1)
        with self.assertRaises(Conflict):
            mark_synced_to_provider(subscription.id, provider_subscription_id="SB999", audit=SYSTEM)

    def test_cancelled_subscription_cannot_sync(self):
        subscription = self.make_subscription(self.club, self.parent, self.child, self.tier)
        cancel_subscription(subscription.id, audit=SYSTEM)
        with self.assertRaises(InvalidStateTransition):
            mark_synced_to_provider(subscription.id, provider_subscription_id="SB002", audit=SYSTEM)

    def test_mandate_activation_activates_pending_subscriptions(self):
        mandate = self.make_mandate(
            self.parent, self.club, provider_mandate_id="MD300", status=PaymentMandate.Status.SUBMITTED
        )
        subscription = self.make_subscription(self.club, self.parent, self.child, self.tier)

        apply_mandate_status(mandate.id, PaymentMandate.Status.ACTIVE, audit=SYSTEM)

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, Subscription.Status.ACTIVE)
        self.assertEqual(subscription.payment_mandate, mandate)

    def test_mandate_failure_suspends_active_subscriptions(self):
        mandate = self.make_mandate(self.parent, self.club, provider_mandate_id="MD301")
        subscription = self.make_subscription(self.club, self.parent, self.child, self.tier, mandate=mandate)

        apply_mandate_status(mandate.id, PaymentMandate.Status.CANCELLED, audit=SYSTEM, reason="Bank closed")

        subscription.refresh_from_db()
        mandate.refresh_from_db()
        self.assertEqual(subscription.status, Subscription.Status.SUSPENDED)
        self.assertIsNotNone(mandate.cancelled_at)

    def test_stats(self):
        annual_tier = self.make_tier(self.club, name="Annual", annual="240.00")
        mandate = self.make_mandate(self.parent, self.club, provider_mandate_id="MD400")
        self.make_subscription(self.club, self.parent, self.child, self.tier, mandate=mandate)
        second_parent, second_child = self.make_family(self.club, prefix="second")
        second_mandate = self.make_mandate(second_parent, self.club, provider_mandate_id="MD401")
        self.make_subscription(
            self.club,
            second_parent,
            second_child,
            annual_tier,
            mandate=second_mandate,
            billing_frequency="annual",
        )
        third_parent, third_child = self.make_family(self.club, prefix="third")
        self.make_subscription(self.club, third_parent, third_child, self.tier)

        stats = get_subscription_stats(self.club)

        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["by_status"]["active"], 2)
        self.assertEqual(stats["by_status"]["pending"], 1)
        self.assertEqual(stats["monthly_recurring_revenue"], Decimal("40.00"))
        self.assertEqual(stats["unsynced"], 3)


class SubscriptionApiTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        self.club = self.make_club()
        self.parent, self.child = self.make_family(self.club)
        self.tier = self.make_tier(self.club)
        self.senior = self.make_tier(self.club, name="Senior", monthly="30.00")
        self.mandate = self.make_mandate(self.parent, self.club, provider_mandate_id="MD500")
        self.club_admin = User.objects.create_user(
            username="clubadmin", password="pass12345", role=User.Roles.CLUB_ADMIN
        )
        self.club.admins.add(self.club_admin)
        self.super_admin = User.objects.create_user(
            username="superadmin", password="pass12345", role=User.Roles.SUPER_ADMIN
        )

    def _parent_create(self, **extra):
        payload = {
            "club": self.club.id,
            "child_user": self.child.id,
            "membership_tier": self.tier.id,
            "payment_mandate": self.mandate.id,
            **extra,
        }
        return self.client.post("/api/parent-subscriptions/", payload, format="json")

    def test_parent_creates_and_lists_subscription(self):
        self.client.force_authenticate(user=self.parent)
        response = self._parent_create(billing_day_of_month=10)

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        body = response.json()
        self.assertEqual(body["status"], Subscription.Status.ACTIVE)
        self.assertEqual(body["amount"], 20.0)
        self.assertEqual(body["billing_day_of_month"], 10)
        self.assertFalse(body["is_synced"])

        listing = self.client.get("/api/parent-subscriptions/")
        self.assertEqual([row["id"] for row in listing.json()], [body["id"]])

    def test_duplicate_create_conflicts(self):
        self.client.force_authenticate(user=self.parent)
        self._parent_create()
        response = self._parent_create()
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.json()["code"], "conflict")

    def test_billing_day_out_of_range_is_bad_request(self):
        self.client.force_authenticate(user=self.parent)
        response = self._parent_create(billing_day_of_month=31)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_parent_change_tier_returns_proration(self):
        self.client.force_authenticate(user=self.parent)
        subscription_id = self._parent_create().json()["id"]

        response = self.client.post(
            f"/api/parent-subscriptions/{subscription_id}/change-tier/",
            {"membership_tier": self.senior.id},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body = response.json()
        self.assertEqual(body["subscription"]["tier_name"], "Senior")
        self.assertEqual(body["proration"]["amount"], 10.0)

    def test_parent_pause_resume_cancel(self):
        self.client.force_authenticate(user=self.parent)
        subscription_id = self._parent_create().json()["id"]
        base = f"/api/parent-subscriptions/{subscription_id}"

        paused = self.client.post(f"{base}/pause/", {}, format="json")
        resumed = self.client.post(f"{base}/resume/", {}, format="json")
        cancelled = self.client.post(f"{base}/cancel/", {"reason": "Season over"}, format="json")
        after_cancel = self.client.post(f"{base}/resume/", {}, format="json")

        self.assertEqual(paused.json()["status"], Subscription.Status.PAUSED)
        self.assertEqual(resumed.json()["status"], Subscription.Status.ACTIVE)
        self.assertEqual(cancelled.json()["status"], Subscription.Status.CANCELLED)
        self.assertEqual(after_cancel.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(after_cancel.json()["code"], "invalid_state_transition")

    @override_settings(SUBSCRIPTION_MAX_FAILED_PAYMENTS=2)
    def test_parent_cannot_resume_suspended_subscription(self):
        self.client.force_authenticate(user=self.parent)
        subscription_id = self._parent_create().json()["id"]
        for _ in range(2):
            record_failed_payment(subscription_id, audit=SYSTEM, reason="Insufficient funds")

        response = self.client.post(f"/api/parent-subscriptions/{subscription_id}/resume/", {}, format="json")

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.json()["code"], "invalid_state_transition")
        subscription = Subscription.objects.get(id=subscription_id)
        self.assertEqual(subscription.status, Subscription.Status.SUSPENDED)
        self.assertEqual(subscription.failed_payment_count, 2)

    def test_other_parent_cannot_see_subscription(self):
        self.client.force_authenticate(user=self.parent)
        subscription_id = self._parent_create().json()["id"]
        other_parent, _ = self.make_family(self.club, prefix="other")

        self.client.force_authenticate(user=other_parent)
        response = self.client.post(f"/api/parent-subscriptions/{subscription_id}/cancel/", {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_club_admin_creates_for_member_and_suspends(self):
        self.client.force_authenticate(user=self.club_admin)
        response = self.client.post(
            "/api/club-subscriptions/",
            {"club": self.club.id, "child_user": self.child.id, "membership_tier": self.tier.id},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.json()["parent_user"], self.parent.id)
        self.assertEqual(response.json()["status"], Subscription.Status.PENDING)

        subscription_id = response.json()["id"]
        suspend = self.client.post(
            f"/api/club-subscriptions/{subscription_id}/suspend/", {"reason": "Unpaid"}, format="json"
        )
        self.assertEqual(suspend.status_code, status.HTTP_409_CONFLICT)

        events = self.client.get(f"/api/club-subscriptions/{subscription_id}/events/")
        self.assertEqual([row["event_type"] for row in events.json()], ["created"])
        self.assertEqual(events.json()[0]["actor"], self.club_admin.id)

    def test_club_stats_endpoint(self):
        self.client.force_authenticate(user=self.club_admin)
        self.assertEqual(
            self.client.get("/api/club-subscriptions/stats/").status_code, status.HTTP_400_BAD_REQUEST
        )
        response = self.client.get(f"/api/club-subscriptions/stats/?club_id={self.club.id}")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["total"], 0)

    def test_parent_cannot_use_club_endpoints(self):
        self.client.force_authenticate(user=self.parent)
        response = self.client.get("/api/club-subscriptions/")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_membership_tiers_visible_to_member_family(self):
        self.make_tier(self.club, name="Retired", is_active=False)
        self.client.force_authenticate(user=self.parent)
        response = self.client.get("/api/membership-tiers/")
        self.assertEqual([row["name"] for row in response.json()], ["Junior", "Senior"])

    def test_membership_tiers_paginate_on_request(self):
        self.client.force_authenticate(user=self.club_admin)
        response = self.client.get("/api/membership-tiers/?page_size=1")
        body = response.json()
        self.assertEqual((body["count"], body["page"], body["pages"]), (2, 1, 2))
        self.assertEqual([row["name"] for row in body["results"]], ["Junior"])

    def test_tier_create_requires_managing_the_club(self):
        other_admin = User.objects.create_user(
            username="otheradmin", password="pass12345", role=User.Roles.CLUB_ADMIN
        )
        payload = {"club": self.club.id, "name": "Goalkeeper", "monthly_price": "25.00"}

        self.client.force_authenticate(user=other_admin)
        self.assertEqual(
            self.client.post("/api/membership-tiers/", payload, format="json").status_code,
            status.HTTP_403_FORBIDDEN,
        )
        self.client.force_authenticate(user=self.club_admin)
        self.assertEqual(
            self.client.post("/api/membership-tiers/", payload, format="json").status_code,
            status.HTTP_201_CREATED,
        )

    def test_unsynced_diagnostics_for_super_admin_only(self):
        self.make_subscription(self.club, self.parent, self.child, self.tier, mandate=self.mandate)

        self.client.force_authenticate(user=self.club_admin)
        self.assertEqual(
            self.client.get("/api/admin/subscriptions/unsynced/").status_code, status.HTTP_403_FORBIDDEN
        )

        self.client.force_authenticate(user=self.super_admin)
        response = self.client.get("/api/admin/subscriptions/unsynced/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body = response.json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["needs_sync"], 1)
        self.assertEqual(body["results"][0]["resolved_mandate"]["source"], "direct")
