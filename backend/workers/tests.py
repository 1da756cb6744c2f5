from datetime import timedelta
from unittest import mock

from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from accounts.models import EmailOutbox, User
from billing.errors import NotFound, WorkerAlreadyRunning
from subscriptions.models import PaymentMandate, Subscription
from subscriptions.services import cancel_subscription, mark_synced_to_provider, pause_subscription
from subscriptions.tests import SYSTEM, SubscriptionFixtureMixin

from . import notification_retry, subscription_sync
from .models import WorkerExecution, WorkerLock
from .registry import WorkerResult
from .services import (
    claim_worker,
    clamp_history_limit,
    complete_execution,
    get_execution_history,
    get_latest_executions,
    is_worker_running,
    run_worker,
)
from .tasks import run_claimed_worker, run_scheduled_worker

SCHEDULED = WorkerExecution.Trigger.SCHEDULED


class WorkerLockTests(TestCase):
    def test_second_claim_is_rejected_until_completion(self):
        execution = claim_worker("notification_retry", trigger=SCHEDULED)

        self.assertTrue(is_worker_running("notification_retry"))
        with self.assertRaises(WorkerAlreadyRunning):
            claim_worker("notification_retry", trigger=SCHEDULED)

        complete_execution(execution, WorkerResult(processed=2, successful=1, failed=1))

        execution.refresh_from_db()
        self.assertEqual(execution.status, WorkerExecution.Status.COMPLETED)
        self.assertEqual((execution.items_processed, execution.items_failed), (2, 1))
        self.assertIsNotNone(execution.duration_ms)
        self.assertFalse(is_worker_running("notification_retry"))
        again = claim_worker("notification_retry", trigger=SCHEDULED)
        self.assertNotEqual(again.id, execution.id)

    def test_workers_lock_independently(self):
        claim_worker("notification_retry", trigger=SCHEDULED)
        execution = claim_worker("subscription_sync", trigger=SCHEDULED)
        self.assertEqual(execution.status, WorkerExecution.Status.RUNNING)

    def test_unknown_worker(self):
        with self.assertRaises(NotFound):
            claim_worker("nightly_report", trigger=SCHEDULED)
        self.assertFalse(WorkerLock.objects.exists())

    @override_settings(WORKER_LOCK_STALE_SECONDS=60)
    def test_stale_claim_is_taken_over(self):
        abandoned = claim_worker("notification_retry", trigger=SCHEDULED)
        WorkerLock.objects.filter(worker_name="notification_retry").update(
            claimed_at=timezone.now() - timedelta(minutes=5)
        )

        self.assertFalse(is_worker_running("notification_retry"))
        execution = claim_worker("notification_retry", trigger=SCHEDULED)

        abandoned.refresh_from_db()
        self.assertEqual(abandoned.status, WorkerExecution.Status.FAILED)
        self.assertIn("lock expired", abandoned.error_message)
        self.assertEqual(WorkerLock.objects.get(worker_name="notification_retry").execution, execution)

        # A late finish of the abandoned run must not release the new claim.
        complete_execution(abandoned, WorkerResult())
        self.assertTrue(is_worker_running("notification_retry"))

    def test_handler_failure_is_recorded(self):
        execution = claim_worker("subscription_sync", trigger=SCHEDULED)

        with mock.patch("workers.subscription_sync.run", side_effect=RuntimeError("provider exploded")):
            execution = run_worker(execution)

        self.assertEqual(execution.status, WorkerExecution.Status.FAILED)
        self.assertEqual(execution.error_message, "provider exploded")
        self.assertFalse(is_worker_running("subscription_sync"))

    def test_scheduled_run_skips_while_locked(self):
        held = claim_worker("notification_retry", trigger=WorkerExecution.Trigger.MANUAL)

        self.assertIsNone(run_scheduled_worker("notification_retry"))
        self.assertEqual(WorkerExecution.objects.count(), 1)

        run_claimed_worker(held.id)
        held.refresh_from_db()
        self.assertEqual(held.status, WorkerExecution.Status.COMPLETED)
        self.assertIsNone(run_claimed_worker(held.id))

    def test_history_limit_is_clamped(self):
        self.assertEqual(clamp_history_limit(None), 50)
        self.assertEqual(clamp_history_limit("abc"), 50)
        self.assertEqual(clamp_history_limit(0), 1)
        self.assertEqual(clamp_history_limit("7"), 7)
        self.assertEqual(clamp_history_limit(5000), 100)

    def test_history_newest_first(self):
        for _ in range(3):
            run_scheduled_worker("notification_retry")
        run_scheduled_worker("subscription_sync")

        history = get_execution_history("notification_retry", limit=2)

        self.assertEqual(len(history), 2)
        self.assertTrue(all(row.worker_name == "notification_retry" for row in history))
        self.assertGreater(history[0].id, history[1].id)
        self.assertEqual(len(get_execution_history()), 4)
        with self.assertRaises(NotFound):
            get_execution_history("nightly_report")

    def test_latest_executions_cover_every_worker(self):
        run_scheduled_worker("notification_retry")

        statuses = {row.definition.name: row for row in get_latest_executions()}

        self.assertEqual(set(statuses), {"subscription_sync", "notification_retry"})
        self.assertIsNone(statuses["subscription_sync"].latest_execution)
        self.assertEqual(
            statuses["notification_retry"].latest_execution.status, WorkerExecution.Status.COMPLETED
        )


@override_settings(GOCARDLESS_MODE="mock")
class SubscriptionSyncWorkerTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.club = self.make_club()
        self.tier = self.make_tier(self.club)

    def family_subscription(self, prefix, *, mandate_status=None, provider_mandate_id=None):
        parent, child = self.make_family(self.club, prefix=prefix)
        mandate = None
        if mandate_status is not None:
            mandate = self.make_mandate(
                parent, self.club, provider_mandate_id=provider_mandate_id, status=mandate_status
            )
        return self.make_subscription(self.club, parent, child, self.tier, mandate=mandate)

    def test_sync_run(self):
        waiting_on_bank = self.family_subscription(
            "bank", mandate_status=PaymentMandate.Status.SUBMITTED, provider_mandate_id="MD1"
        )
        no_mandate = self.family_subscription("none")
        leaving = self.family_subscription(
            "leaving", mandate_status=PaymentMandate.Status.ACTIVE, provider_mandate_id="MD3"
        )
        mark_synced_to_provider(leaving.id, provider_subscription_id="SB3", audit=SYSTEM)
        cancel_subscription(leaving.id, audit=SYSTEM)
        period_end = self.family_subscription(
            "period", mandate_status=PaymentMandate.Status.ACTIVE, provider_mandate_id="MD4"
        )
        mark_synced_to_provider(period_end.id, provider_subscription_id="SB4", audit=SYSTEM)
        cancel_subscription(period_end.id, audit=SYSTEM, immediate=False)

        execution = WorkerExecution.objects.get(id=run_scheduled_worker("subscription_sync"))

        self.assertEqual(execution.status, WorkerExecution.Status.COMPLETED)
        self.assertEqual(
            execution.metadata,
            {
                "mandates_changed": 1,
                "subscriptions_synced": 1,
                "blocked": {"no_mandate": 1},
                "cancellations_pushed": 1,
                "cancellations_deferred": 1,
                "overdue_resume_ids": [],
            },
        )
        self.assertEqual((execution.items_processed, execution.items_successful), (3, 3))

        waiting_on_bank.refresh_from_db()
        self.assertEqual(waiting_on_bank.status, Subscription.Status.ACTIVE)
        self.assertTrue(waiting_on_bank.provider_subscription_id.startswith("SB"))
        no_mandate.refresh_from_db()
        self.assertEqual(no_mandate.status, Subscription.Status.PENDING)
        self.assertIsNone(no_mandate.provider_subscription_id)
        leaving.refresh_from_db()
        self.assertEqual(leaving.provider_subscription_status, "cancelled")
        period_end.refresh_from_db()
        self.assertEqual(period_end.provider_subscription_status, "active")
        self.assertTrue(
            waiting_on_bank.events.filter(event_type="synced", actor_type="worker").exists()
        )

    def test_second_run_has_nothing_to_push(self):
        leaving = self.family_subscription(
            "leaving", mandate_status=PaymentMandate.Status.ACTIVE, provider_mandate_id="MD5"
        )
        mark_synced_to_provider(leaving.id, provider_subscription_id="SB5", audit=SYSTEM)
        cancel_subscription(leaving.id, audit=SYSTEM)

        first = subscription_sync.run()
        second = subscription_sync.run()

        self.assertEqual(first.metadata["cancellations_pushed"], 1)
        self.assertEqual(second.metadata["cancellations_pushed"], 0)
        self.assertEqual(second.processed, 0)

    def test_overdue_resume_dates_are_reported_not_applied(self):
        paused = self.family_subscription(
            "paused", mandate_status=PaymentMandate.Status.ACTIVE, provider_mandate_id="MD6"
        )
        pause_subscription(
            paused.id, audit=SYSTEM, resume_date=timezone.localdate() + timedelta(days=10)
        )
        Subscription.objects.filter(id=paused.id).update(
            resume_date=timezone.localdate() - timedelta(days=1)
        )

        result = subscription_sync.run()

        self.assertEqual(result.metadata["overdue_resume_ids"], [paused.id])
        paused.refresh_from_db()
        self.assertEqual(paused.status, Subscription.Status.PAUSED)


@override_settings(EMAIL_MAX_RETRIES=3, EMAIL_RETRY_BACKOFF_MINUTES=15)
class NotificationRetryWorkerTests(TestCase):
    def make_email(self, **kwargs):
        kwargs.setdefault("status", EmailOutbox.Status.FAILED)
        return EmailOutbox.objects.create(
            to_email="parent@example.com", subject="Invoice", text="Hello", **kwargs
        )

    def test_retries_due_emails(self):
        due = self.make_email()
        backing_off = self.make_email(retry_count=1, last_retry_at=timezone.now())
        exhausted = self.make_email(retry_count=3)
        sent = self.make_email(status=EmailOutbox.Status.SENT)

        with mock.patch("accounts.email_utils.send_resend_email", return_value=(True, "")) as send:
            result = notification_retry.run()

        send.assert_called_once()
        self.assertEqual((result.processed, result.successful, result.failed), (1, 1, 0))
        self.assertEqual(result.metadata, {"exhausted": 1})
        due.refresh_from_db()
        self.assertEqual(due.status, EmailOutbox.Status.SENT)
        for untouched in (backing_off, exhausted, sent):
            previous_status = untouched.status
            untouched.refresh_from_db()
            self.assertEqual(untouched.status, previous_status)

    def test_failed_retry_counts_attempt(self):
        email = self.make_email(retry_count=2)

        with mock.patch("accounts.email_utils.send_resend_email", return_value=(False, "rate limited")):
            result = notification_retry.run()

        email.refresh_from_db()
        self.assertEqual(result.failed, 1)
        self.assertEqual(email.retry_count, 3)
        self.assertEqual(email.last_error, "rate limited")
        self.assertEqual(result.metadata, {"exhausted": 1})


class WorkerApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = User.objects.create_user(
            username="superadmin", password="pass12345", role=User.Roles.SUPER_ADMIN
        )
        self.client.force_authenticate(user=self.admin)

    def test_list_workers(self):
        response = self.client.get("/api/admin/workers/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        names = [row["name"] for row in response.json()]
        self.assertEqual(names, ["subscription_sync", "notification_retry"])
        self.assertFalse(response.json()[0]["is_running"])
        self.assertIsNone(response.json()[0]["latest_execution"])

    def test_trigger_then_conflict(self):
        with mock.patch("workers.views.run_claimed_worker.delay") as delay:
            with self.captureOnCommitCallbacks(execute=True):
                first = self.client.post("/api/admin/workers/notification_retry/trigger/")
            second = self.client.post("/api/admin/workers/notification_retry/trigger/")

        self.assertEqual(first.status_code, status.HTTP_202_ACCEPTED)
        self.assertEqual(first.json()["status"], WorkerExecution.Status.RUNNING)
        self.assertEqual(first.json()["trigger"], WorkerExecution.Trigger.MANUAL)
        self.assertEqual(first.json()["triggered_by"], self.admin.id)
        delay.assert_called_once_with(first.json()["id"])
        self.assertEqual(second.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(second.json()["code"], "worker_already_running")

    def test_trigger_unknown_worker(self):
        response = self.client.post("/api/admin/workers/nightly_report/trigger/")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_history_endpoints(self):
        run_scheduled_worker("notification_retry")
        run_scheduled_worker("notification_retry")
        run_scheduled_worker("subscription_sync")

        all_rows = self.client.get("/api/admin/workers/history/?limit=2")
        per_worker = self.client.get("/api/admin/workers/notification_retry/history/?limit=oops")

        self.assertEqual(len(all_rows.json()), 2)
        self.assertEqual(all_rows.json()[0]["worker_name"], "subscription_sync")
        self.assertEqual(len(per_worker.json()), 2)
        self.assertEqual({row["trigger"] for row in per_worker.json()}, {"scheduled"})

    def test_requires_super_admin(self):
        club_admin = User.objects.create_user(
            username="clubadmin", password="pass12345", role=User.Roles.CLUB_ADMIN
        )
        self.client.force_authenticate(user=club_admin)
        self.assertEqual(self.client.get("/api/admin/workers/").status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(
            self.client.post("/api/admin/workers/subscription_sync/trigger/").status_code,
            status.HTTP_403_FORBIDDEN,
        )
