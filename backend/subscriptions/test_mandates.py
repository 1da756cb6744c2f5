from django.test import TestCase

from .mandates import (
    BLOCKER_DIRECT_INACTIVE,
    BLOCKER_MISSING_PROVIDER_ID,
    BLOCKER_NO_MANDATE,
    BLOCKER_PAYER_INACTIVE,
    BLOCKER_STATUS,
    DIRECT,
    PAYER,
    diagnose_subscription,
    is_usable,
    list_unsynced_diagnostics,
    resolve_mandate,
    unsynced_subscriptions,
)
from .models import PaymentMandate, Subscription
from .services import cancel_subscription, mark_synced_to_provider
from .tests import SYSTEM, SubscriptionFixtureMixin

Status = PaymentMandate.Status


class MandateResolutionTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.club = self.make_club()
        self.parent, self.child = self.make_family(self.club)
        self.tier = self.make_tier(self.club)

    def subscribe(self, mandate=None):
        return self.make_subscription(self.club, self.parent, self.child, self.tier, mandate=mandate)

    def test_usable_requires_active_status_and_provider_id(self):
        active = self.make_mandate(self.parent, self.club, provider_mandate_id="MD1")
        no_id = self.make_mandate(self.parent, self.club)
        submitted = self.make_mandate(self.parent, self.club, provider_mandate_id="MD2", status=Status.SUBMITTED)

        self.assertTrue(is_usable(active))
        self.assertFalse(is_usable(no_id))
        self.assertFalse(is_usable(submitted))
        self.assertFalse(is_usable(None))

    def test_direct_mandate_wins(self):
        direct = self.make_mandate(self.parent, self.club, provider_mandate_id="MD10")
        self.make_mandate(self.parent, self.club, provider_mandate_id="MD11")

        resolution = resolve_mandate(self.subscribe(direct))

        self.assertEqual(resolution.mandate, direct)
        self.assertEqual(resolution.source, DIRECT)

    def test_falls_back_to_payer_mandate(self):
        direct = self.make_mandate(self.parent, self.club, provider_mandate_id="MD20", status=Status.SUBMITTED)
        payer_mandate = self.make_mandate(self.parent, self.club, provider_mandate_id="MD21")
        subscription = self.subscribe(direct)
        self.assertEqual(subscription.status, Subscription.Status.PENDING)

        diagnostic = diagnose_subscription(subscription)

        self.assertTrue(diagnostic.needs_sync)
        self.assertEqual(diagnostic.resolution.mandate, payer_mandate)
        self.assertEqual(diagnostic.resolution.source, PAYER)
        self.assertEqual(diagnostic.direct_mandate, direct)
        self.assertIsNone(diagnostic.blocker_code)
        self.assertEqual(diagnostic.blockers, [])
        self.assertEqual(diagnostic.to_dict()["resolved_mandate"]["provider_mandate_id"], "MD21")

    def test_payer_mandate_for_another_club_is_ignored(self):
        other_club = self.make_club("Hillside FC")
        self.make_mandate(self.parent, other_club, provider_mandate_id="MD30")

        diagnostic = diagnose_subscription(self.subscribe())

        self.assertFalse(diagnostic.needs_sync)
        self.assertEqual(diagnostic.blocker_code, BLOCKER_NO_MANDATE)

    def test_inactive_direct_mandate_blocks(self):
        direct = self.make_mandate(self.parent, self.club, provider_mandate_id="MD40", status=Status.SUBMITTED)

        diagnostic = diagnose_subscription(self.subscribe(direct))

        self.assertEqual(diagnostic.blocker_code, BLOCKER_DIRECT_INACTIVE)
        self.assertEqual(len(diagnostic.blockers), 1)

    def test_inactive_payer_mandate_blocks(self):
        self.make_mandate(self.parent, self.club, provider_mandate_id="MD50", status=Status.FAILED)

        diagnostic = diagnose_subscription(self.subscribe())

        self.assertEqual(diagnostic.blocker_code, BLOCKER_PAYER_INACTIVE)

    def test_active_mandate_without_provider_id_blocks(self):
        self.make_mandate(self.parent, self.club)

        diagnostic = diagnose_subscription(self.subscribe())

        self.assertEqual(diagnostic.blocker_code, BLOCKER_MISSING_PROVIDER_ID)

    def test_cancelled_subscription_is_not_billable(self):
        mandate = self.make_mandate(self.parent, self.club, provider_mandate_id="MD60")
        subscription = cancel_subscription(self.subscribe(mandate).id, audit=SYSTEM)

        diagnostic = diagnose_subscription(subscription)

        self.assertIsNone(diagnostic.resolution)
        self.assertEqual(diagnostic.blocker_code, BLOCKER_STATUS)

    def test_synced_subscriptions_are_not_listed(self):
        mandate = self.make_mandate(self.parent, self.club, provider_mandate_id="MD70")
        synced = self.subscribe(mandate)
        mark_synced_to_provider(synced.id, provider_subscription_id="SB70", audit=SYSTEM)
        other_parent, other_child = self.make_family(self.club, prefix="other")
        waiting = self.make_subscription(self.club, other_parent, other_child, self.tier)

        self.assertEqual(list(unsynced_subscriptions()), [waiting])
        self.assertEqual(list(unsynced_subscriptions(clubs=[self.make_club("Hillside FC")])), [])
        diagnostics = list_unsynced_diagnostics([self.club])
        self.assertEqual([d.subscription.id for d in diagnostics], [waiting.id])
        self.assertEqual(diagnostics[0].blocker_code, BLOCKER_NO_MANDATE)
