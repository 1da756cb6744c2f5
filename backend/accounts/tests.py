from unittest import mock

from django.test import TestCase, override_settings

from .email_utils import deliver_outbox_email, notify_user, queue_email, send_resend_email
from .models import EmailOutbox, User
from .tasks import send_outbox_email


class UserModelTests(TestCase):
    def test_default_role_is_member(self):
        user = User.objects.create_user(username="testuser", password="pass12345")
        self.assertEqual(user.role, User.Roles.MEMBER)

    def test_display_name_falls_back_to_username(self):
        named = User.objects.create_user(
            username="coach1", password="pass12345", first_name="Alex", last_name="Keeper"
        )
        unnamed = User.objects.create_user(username="coach2", password="pass12345")
        self.assertEqual(named.display_name, "Alex Keeper")
        self.assertEqual(unnamed.display_name, "coach2")


class EmailOutboxTests(TestCase):
    def setUp(self):
        self.parent = User.objects.create_user(
            username="parent",
            password="pass12345",
            email="parent@example.com",
            first_name="Jo",
            last_name="Bloggs",
            role=User.Roles.PARENT,
        )

    def test_queue_email_stores_pending_row(self):
        outbox = queue_email(to_email="parent@example.com", subject="Invoice", text="Your invoice is ready.")

        self.assertEqual(outbox.status, EmailOutbox.Status.PENDING)
        self.assertEqual(outbox.html, "<p>Your invoice is ready.</p>")
        self.assertIsNone(queue_email(to_email="", subject="Invoice", text="Nobody"))
        self.assertEqual(EmailOutbox.objects.count(), 1)

    def test_queue_email_escapes_text_in_html(self):
        outbox = queue_email(
            to_email="parent@example.com",
            subject="Welcome",
            text="Welcome to Tom & Jerry <FC>\nSee you at training.",
        )

        self.assertEqual(
            outbox.html, "<p>Welcome to Tom &amp; Jerry &lt;FC&gt;<br>See you at training.</p>"
        )
        self.assertEqual(outbox.text, "Welcome to Tom & Jerry <FC>\nSee you at training.")

    def test_queue_email_sends_after_commit(self):
        with mock.patch("accounts.email_utils.send_resend_email", return_value=(True, "")) as send:
            with self.captureOnCommitCallbacks(execute=True):
                outbox = queue_email(to_email="parent@example.com", subject="Invoice", text="Ready.")

        send.assert_called_once_with("parent@example.com", "Invoice", "<p>Ready.</p>", "Ready.")
        outbox.refresh_from_db()
        self.assertEqual(outbox.status, EmailOutbox.Status.SENT)
        self.assertIsNotNone(outbox.sent_at)

    def test_notify_user_greets_recipient(self):
        outbox = notify_user(
            self.parent,
            subject="Payment failed",
            text="We could not collect 20.00 GBP.",
            template_key="subscription_payment_failed",
            metadata={"subscription_id": 4},
        )

        self.assertEqual(outbox.recipient, self.parent)
        self.assertTrue(outbox.text.startswith("Hello Jo Bloggs,"))
        self.assertEqual(outbox.metadata, {"subscription_id": 4})

    def test_notify_user_without_email_is_skipped(self):
        silent = User.objects.create_user(username="silent", password="pass12345")
        self.assertIsNone(notify_user(silent, subject="x", text="y", template_key="z"))
        self.assertIsNone(notify_user(None, subject="x", text="y", template_key="z"))

    @override_settings(RESEND_API_KEY="")
    def test_missing_api_key_marks_first_attempt_failed(self):
        outbox = queue_email(to_email="parent@example.com", subject="Invoice", text="Ready.")

        self.assertEqual(
            send_resend_email("parent@example.com", "s", "h", "t"), (False, "missing_resend_api_key")
        )
        self.assertFalse(deliver_outbox_email(outbox))

        outbox.refresh_from_db()
        self.assertEqual(outbox.status, EmailOutbox.Status.FAILED)
        self.assertEqual(outbox.retry_count, 0)
        self.assertEqual(outbox.last_error, "missing_resend_api_key")
        self.assertIsNotNone(outbox.last_retry_at)

    @override_settings(RESEND_API_KEY="re_test")
    def test_provider_exception_is_reported(self):
        with mock.patch("accounts.email_utils.resend.Emails.send", side_effect=RuntimeError("timeout")):
            self.assertEqual(
                send_resend_email("parent@example.com", "s", "h", "t"), (False, "timeout")
            )

    def test_send_task_only_handles_pending_rows(self):
        outbox = queue_email(to_email="parent@example.com", subject="Invoice", text="Ready.")
        outbox.mark_sent()

        with mock.patch("accounts.email_utils.send_resend_email") as send:
            self.assertFalse(send_outbox_email(outbox.id))
        send.assert_not_called()
