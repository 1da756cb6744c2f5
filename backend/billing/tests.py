import re
import threading
from datetime import date, timedelta
from decimal import Decimal
from unittest import mock, skipIf
from unittest.mock import patch

from django.db import connection, connections
from django.test import TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from accounts.models import User
from clubs.models import Club, Season
from members.models import Member

from .errors import InvalidStateTransition, InvoiceNumberConflict, NotFound, ValidationFailed
from .models import FinanceAuditLog, Invoice, Payment
from .retry import RetryPolicy
from .services import (
    calculate_invoice_totals,
    cancel_invoice,
    create_invoice,
    generate_invoice_number,
    generate_seasonal_invoices,
    get_billing_summary,
    mark_invoice_as_paid,
    mark_overdue_invoices,
    publish_invoice,
    record_chargeback,
    round2,
    update_invoice,
)

ITEMS = [
    {"description": "Season fee", "category": "membership", "quantity": 1, "unit_price": "120.00"},
    {"description": "Training kit", "category": "kit", "quantity": 2, "unit_price": "17.50"},
]


def no_wait_policy(max_attempts=3, sleep=None):
    return RetryPolicy(
        max_attempts=max_attempts,
        min_delay_ms=0,
        max_delay_ms=0,
        sleep=sleep or (lambda seconds: None),
    )


class BillingFixtureMixin:
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
            first_name="Pat",
            last_name="Parent",
        )
        child = User.objects.create_user(
            username=f"{prefix}-child",
            password="pass12345",
            role=User.Roles.MEMBER,
            first_name="Charlie",
            last_name="Child",
        )
        Member.objects.create(
            user=child, guardian=parent, club=club, first_name="Charlie", last_name="Child"
        )
        return parent, child

    def make_invoice(self, club, child, **kwargs):
        kwargs.setdefault("items", ITEMS)
        kwargs.setdefault("due_date", timezone.localdate() + timedelta(days=30))
        kwargs.setdefault("retry_policy", no_wait_policy())
        return create_invoice(club=club, child_user_id=child.id, **kwargs)


class InvoiceTotalsTests(TestCase):
    def test_total_is_rounded_sum_plus_tax_minus_discount(self):
        cases = [
            (ITEMS, Decimal("0"), Decimal("0")),
            (ITEMS, Decimal("12.345"), Decimal("5")),
            ([{"quantity": 3, "unit_price": "0.335"}], Decimal("0"), Decimal("0")),
            ([{"quantity": 3, "unit_price": "0.005"}], Decimal("0"), Decimal("0")),
            ([{"quantity": 2, "unit_price": "4.125"}, {"quantity": 3, "unit_price": "1.004"}], Decimal("0"), Decimal("0")),
            ([{"quantity": 7, "unit_price": "9.99"}, {"quantity": 1, "unit_price": "0"}], Decimal("1.10"), Decimal("0.10")),
        ]
        for items, tax, discount in cases:
            totals = calculate_invoice_totals(items, tax, discount)
            raw = sum(Decimal(str(item["unit_price"])) * item["quantity"] for item in items)
            self.assertEqual(totals.total_amount, round2(raw + tax - discount))

    def test_half_cent_rounds_up(self):
        totals = calculate_invoice_totals([{"quantity": 3, "unit_price": "0.335"}])
        self.assertEqual(totals.subtotal, Decimal("1.01"))
        self.assertEqual(totals.lines[0].total_price, Decimal("1.01"))

    def test_sub_cent_prices_are_summed_before_rounding(self):
        totals = calculate_invoice_totals([{"quantity": 3, "unit_price": "0.005"}])
        self.assertEqual(totals.subtotal, Decimal("0.02"))
        self.assertEqual(totals.total_amount, Decimal("0.02"))
        self.assertEqual(totals.lines[0].unit_price, Decimal("0.01"))

    def test_discount_beyond_total_is_rejected(self):
        with self.assertRaises(ValidationFailed):
            calculate_invoice_totals([{"quantity": 1, "unit_price": "10"}], discount_amount=Decimal("10.01"))

    def test_invalid_quantity_is_rejected(self):
        with self.assertRaises(ValidationFailed):
            calculate_invoice_totals([{"quantity": 0, "unit_price": "10"}])


class CreateInvoiceTests(BillingFixtureMixin, TestCase):
    def setUp(self):
        self.club = self.make_club()
        self.parent, self.child = self.make_family(self.club)

    def test_invoice_number_format(self):
        number = generate_invoice_number(self.club.id, year=2026)
        self.assertRegex(number, r"^2026-0001-[0-9A-Z]{4}$")

    def test_creates_draft_with_items_and_payer(self):
        invoice = self.make_invoice(self.club, self.child)

        self.assertEqual(invoice.status, Invoice.Status.DRAFT)
        self.assertEqual(invoice.parent_user_id, self.parent.id)
        self.assertEqual(invoice.subtotal, Decimal("155.00"))
        self.assertEqual(invoice.total_amount, Decimal("155.00"))
        self.assertEqual(invoice.items.count(), 2)
        self.assertTrue(
            FinanceAuditLog.objects.filter(invoice=invoice, action="invoice.created").exists()
        )

    def test_direct_member_pays_for_themselves(self):
        adult = User.objects.create_user(username="adult", password="pass12345")
        Member.objects.create(user=adult, club=self.club, first_name="Ada", last_name="Adult")

        invoice = self.make_invoice(self.club, adult)

        self.assertEqual(invoice.parent_user_id, adult.id)
        self.assertEqual(invoice.child_user_id, adult.id)

    def test_non_member_is_not_found(self):
        outsider = User.objects.create_user(username="outsider", password="pass12345")
        with self.assertRaises(NotFound):
            self.make_invoice(self.club, outsider)
        self.assertFalse(Invoice.objects.exists())

    def test_due_date_before_issue_date_is_rejected(self):
        with self.assertRaises(ValidationFailed):
            self.make_invoice(
                self.club,
                self.child,
                issue_date=date(2026, 3, 10),
                due_date=date(2026, 3, 1),
            )

    def test_invoice_number_collision_is_retried(self):
        other_club = self.make_club("Hillside FC")
        _, other_child = self.make_family(other_club, prefix="other")
        with patch("billing.services.random_invoice_suffix", return_value="AAAA"):
            existing = self.make_invoice(
                other_club, other_child, issue_date=date(2026, 3, 1), due_date=date(2026, 3, 31)
            )
        self.assertEqual(existing.invoice_number, "2026-0001-AAAA")

        sleep = mock.Mock()
        with patch("billing.services.random_invoice_suffix", side_effect=["AAAA", "BBBB"]):
            invoice = self.make_invoice(
                self.club,
                self.child,
                issue_date=date(2026, 3, 1),
                due_date=date(2026, 3, 31),
                retry_policy=no_wait_policy(sleep=sleep),
            )

        self.assertEqual(invoice.invoice_number, "2026-0001-BBBB")
        self.assertEqual(sleep.call_count, 1)
        self.assertEqual(Invoice.objects.filter(club=self.club).count(), 1)
        self.assertEqual(invoice.items.count(), 2)

    def test_exhausted_retries_raise_conflict_without_partial_invoice(self):
        other_club = self.make_club("Hillside FC")
        _, other_child = self.make_family(other_club, prefix="other")
        with patch("billing.services.random_invoice_suffix", return_value="AAAA"):
            self.make_invoice(
                other_club, other_child, issue_date=date(2026, 3, 1), due_date=date(2026, 3, 31)
            )
            with self.assertRaises(InvoiceNumberConflict):
                self.make_invoice(
                    self.club,
                    self.child,
                    issue_date=date(2026, 3, 1),
                    due_date=date(2026, 3, 31),
                    retry_policy=no_wait_policy(max_attempts=2),
                )

        self.assertFalse(Invoice.objects.filter(club=self.club).exists())
        self.assertEqual(Invoice.objects.count(), 1)


class InvoiceLifecycleTests(BillingFixtureMixin, TestCase):
    def setUp(self):
        self.club = self.make_club()
        self.parent, self.child = self.make_family(self.club)
        self.invoice = self.make_invoice(self.club, self.child)

    def test_publish_moves_draft_to_pending_once(self):
        invoice = publish_invoice(self.invoice.id, club=self.club)
        self.assertEqual(invoice.status, Invoice.Status.PENDING)
        self.assertIsNotNone(invoice.published_at)

        with self.assertRaises(InvalidStateTransition):
            publish_invoice(self.invoice.id, club=self.club)

    def test_publish_queues_email_for_payer(self):
        publish_invoice(self.invoice.id, club=self.club)
        outbox = self.parent.outbox_emails.get()
        self.assertIn(self.invoice.invoice_number, outbox.subject)

    def test_mark_paid_settles_in_full(self):
        publish_invoice(self.invoice.id, club=self.club)
        invoice = mark_invoice_as_paid(self.invoice.id, club=self.club, reference="BANK-1")

        self.assertEqual(invoice.status, Invoice.Status.PAID)
        self.assertEqual(invoice.amount_paid, invoice.total_amount)
        self.assertEqual(invoice.paid_date, timezone.localdate())
        payment = Payment.objects.get(invoice=invoice)
        self.assertEqual(payment.amount, invoice.total_amount)
        self.assertEqual(payment.reference, "BANK-1")

    def test_mark_paid_from_draft_is_allowed(self):
        invoice = mark_invoice_as_paid(self.invoice.id)
        self.assertEqual(invoice.status, Invoice.Status.PAID)

    def test_paid_invoice_rejects_further_changes(self):
        mark_invoice_as_paid(self.invoice.id, club=self.club)

        with self.assertRaises(InvalidStateTransition):
            mark_invoice_as_paid(self.invoice.id, club=self.club)
        with self.assertRaises(InvalidStateTransition):
            cancel_invoice(self.invoice.id, club=self.club)
        with self.assertRaises(InvalidStateTransition):
            update_invoice(self.invoice.id, club=self.club, notes="late edit")
        self.assertEqual(Payment.objects.filter(invoice=self.invoice).count(), 1)

    def test_cancelled_invoice_is_terminal(self):
        cancel_invoice(self.invoice.id, club=self.club, reason="Duplicate")

        with self.assertRaises(InvalidStateTransition):
            mark_invoice_as_paid(self.invoice.id, club=self.club)
        with self.assertRaises(InvalidStateTransition):
            publish_invoice(self.invoice.id, club=self.club)

    def test_update_draft_recalculates_totals(self):
        invoice = update_invoice(
            self.invoice.id,
            club=self.club,
            items=[{"description": "Camp", "quantity": 1, "unit_price": "40.00"}],
            discount_amount=Decimal("5.00"),
        )
        self.assertEqual(invoice.subtotal, Decimal("40.00"))
        self.assertEqual(invoice.total_amount, Decimal("35.00"))
        self.assertEqual(invoice.items.count(), 1)

    def test_invoice_of_other_club_is_not_found(self):
        other_club = self.make_club("Hillside FC")
        with self.assertRaises(NotFound):
            publish_invoice(self.invoice.id, club=other_club)

    def test_chargeback_reopens_paid_invoice(self):
        mark_invoice_as_paid(self.invoice.id, club=self.club)

        invoice = record_chargeback(self.invoice.id, reference="PM123", reason="Disputed")

        self.assertEqual(invoice.status, Invoice.Status.OVERDUE)
        self.assertEqual(invoice.amount_paid, Decimal("0.00"))
        amounts = list(Payment.objects.filter(invoice=invoice).values_list("amount", flat=True))
        self.assertEqual(sum(amounts), Decimal("0.00"))
        self.assertIsNone(record_chargeback(self.invoice.id, reference="PM123"))


class OverdueSweepTests(BillingFixtureMixin, TestCase):
    def test_second_run_is_a_no_op(self):
        club = self.make_club()
        _, child = self.make_family(club)
        today = timezone.localdate()
        self.make_invoice(
            club,
            child,
            status=Invoice.Status.PENDING,
            issue_date=today - timedelta(days=30),
            due_date=today - timedelta(days=1),
        )
        self.make_invoice(club, child, status=Invoice.Status.PENDING)
        self.make_invoice(
            club, child, issue_date=today - timedelta(days=30), due_date=today - timedelta(days=1)
        )

        self.assertEqual(mark_overdue_invoices(club), 1)
        self.assertEqual(mark_overdue_invoices(club), 0)
        self.assertEqual(Invoice.objects.filter(status=Invoice.Status.OVERDUE).count(), 1)


class SeasonalInvoiceTests(BillingFixtureMixin, TestCase):
    def test_skips_already_invoiced_and_non_members(self):
        club = self.make_club()
        season = Season.objects.create(
            club=club, name="2026/27", start_date=date(2026, 8, 1), end_date=date(2027, 5, 31)
        )
        _, first_child = self.make_family(club, prefix="a")
        _, second_child = self.make_family(club, prefix="b")
        outsider = User.objects.create_user(username="outsider", password="pass12345")

        first = generate_seasonal_invoices(
            club=club,
            season=season,
            child_user_ids=[first_child.id, outsider.id],
            items=ITEMS,
            due_date=timezone.localdate() + timedelta(days=14),
            publish=True,
            retry_policy=no_wait_policy(),
        )
        second = generate_seasonal_invoices(
            club=club,
            season=season,
            child_user_ids=[first_child.id, second_child.id],
            items=ITEMS,
            due_date=timezone.localdate() + timedelta(days=14),
            retry_policy=no_wait_policy(),
        )

        self.assertEqual(len(first.created), 1)
        self.assertEqual(first.created[0].status, Invoice.Status.PENDING)
        self.assertEqual(first.skipped, {outsider.id: "not_a_member"})
        self.assertEqual([invoice.child_user_id for invoice in second.created], [second_child.id])
        self.assertEqual(second.skipped, {first_child.id: "already_invoiced"})
        self.assertEqual(
            Invoice.objects.filter(season=season, invoice_type=Invoice.InvoiceType.SEASONAL).count(), 2
        )


class BillingSummaryTests(BillingFixtureMixin, TestCase):
    def test_summary_totals(self):
        club = self.make_club()
        _, child = self.make_family(club)
        today = timezone.localdate()
        paid = self.make_invoice(club, child)
        mark_invoice_as_paid(paid.id, club=club)
        self.make_invoice(club, child, status=Invoice.Status.PENDING)
        self.make_invoice(
            club,
            child,
            status=Invoice.Status.PENDING,
            issue_date=today - timedelta(days=40),
            due_date=today - timedelta(days=10),
        )
        cancelled = self.make_invoice(club, child)
        cancel_invoice(cancelled.id, club=club)
        mark_overdue_invoices(club)

        summary = get_billing_summary(club)

        self.assertEqual(summary["invoice_count"], 3)
        self.assertEqual(summary["total_invoiced"], Decimal("465.00"))
        self.assertEqual(summary["total_paid"], Decimal("155.00"))
        self.assertEqual(summary["outstanding_amount"], Decimal("310.00"))
        self.assertEqual(summary["overdue_amount"], Decimal("155.00"))
        self.assertEqual(summary["by_status"]["cancelled"]["count"], 1)


class ClubInvoiceApiTests(BillingFixtureMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        self.club = self.make_club()
        self.parent, self.child = self.make_family(self.club)
        self.club_admin = User.objects.create_user(
            username="clubadmin", password="pass12345", role=User.Roles.CLUB_ADMIN
        )
        self.club.admins.add(self.club_admin)
        self.other_admin = User.objects.create_user(
            username="otheradmin", password="pass12345", role=User.Roles.CLUB_ADMIN
        )

    def _create(self, **extra):
        payload = {
            "club": self.club.id,
            "child_user": self.child.id,
            "items": ITEMS,
            "due_date": (timezone.localdate() + timedelta(days=30)).isoformat(),
            **extra,
        }
        return self.client.post("/api/club-invoices/", payload, format="json")

    def test_club_admin_creates_invoice_with_numeric_money(self):
        self.client.force_authenticate(user=self.club_admin)
        response = self._create(tax_amount="10.00")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        body = response.json()
        self.assertEqual(body["total_amount"], 165.0)
        self.assertEqual(body["parent_user"], self.parent.id)
        self.assertEqual(len(body["items"]), 2)
        self.assertTrue(re.match(r"^\d{4}-\d{4}-[0-9A-Z]{4}$", body["invoice_number"]))

    def test_admin_of_other_club_is_forbidden(self):
        self.client.force_authenticate(user=self.other_admin)
        response = self._create()
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.json()["code"], "forbidden")

    def test_parent_cannot_use_club_endpoints(self):
        self.client.force_authenticate(user=self.parent)
        response = self._create()
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_non_member_child_returns_not_found(self):
        outsider = User.objects.create_user(username="outsider", password="pass12345")
        self.client.force_authenticate(user=self.club_admin)
        response = self._create(child_user=outsider.id)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_mark_paid_twice_conflicts(self):
        self.client.force_authenticate(user=self.club_admin)
        invoice_id = self._create(publish=True).json()["id"]

        first = self.client.post(f"/api/club-invoices/{invoice_id}/mark-paid/", {}, format="json")
        second = self.client.post(f"/api/club-invoices/{invoice_id}/mark-paid/", {}, format="json")

        self.assertEqual(first.status_code, status.HTTP_200_OK)
        self.assertEqual(first.json()["status"], Invoice.Status.PAID)
        self.assertEqual(second.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(second.json()["code"], "invalid_state_transition")
        self.assertEqual(Payment.objects.filter(invoice_id=invoice_id).count(), 1)

    def test_only_drafts_can_be_deleted(self):
        self.client.force_authenticate(user=self.club_admin)
        draft_id = self._create().json()["id"]
        published_id = self._create(publish=True).json()["id"]

        self.assertEqual(
            self.client.delete(f"/api/club-invoices/{draft_id}/").status_code,
            status.HTTP_204_NO_CONTENT,
        )
        self.assertEqual(
            self.client.delete(f"/api/club-invoices/{published_id}/").status_code,
            status.HTTP_409_CONFLICT,
        )

    def test_patch_draft_items(self):
        self.client.force_authenticate(user=self.club_admin)
        invoice_id = self._create().json()["id"]

        response = self.client.patch(
            f"/api/club-invoices/{invoice_id}/",
            {"items": [{"description": "Camp", "quantity": 2, "unit_price": "30.00"}]},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["total_amount"], 60.0)

    def test_mark_overdue_endpoint_is_idempotent(self):
        today = timezone.localdate()
        self.make_invoice(
            self.club,
            self.child,
            status=Invoice.Status.PENDING,
            issue_date=today - timedelta(days=30),
            due_date=today - timedelta(days=1),
        )
        self.client.force_authenticate(user=self.club_admin)

        first = self.client.post("/api/club-invoices/mark-overdue/", {"club": self.club.id}, format="json")
        second = self.client.post("/api/club-invoices/mark-overdue/", {"club": self.club.id}, format="json")

        self.assertEqual(first.json(), {"updated": 1})
        self.assertEqual(second.json(), {"updated": 0})

    def test_summary_requires_club_id(self):
        self.client.force_authenticate(user=self.club_admin)
        response = self.client.get("/api/club-invoices/summary/")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.get(f"/api/club-invoices/summary/?club_id={self.club.id}")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["invoice_count"], 0)

    def test_list_is_scoped_to_managed_clubs(self):
        self.make_invoice(self.club, self.child)
        self.client.force_authenticate(user=self.other_admin)
        response = self.client.get("/api/club-invoices/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), [])


class ParentInvoiceApiTests(BillingFixtureMixin, TestCase):
    def test_parent_sees_only_published_invoices_they_pay(self):
        club = self.make_club()
        parent, child = self.make_family(club)
        other_parent, other_child = self.make_family(club, prefix="other")
        self.make_invoice(club, child)
        published = self.make_invoice(club, child, status=Invoice.Status.PENDING)
        self.make_invoice(club, other_child, status=Invoice.Status.PENDING)

        client = APIClient()
        client.force_authenticate(user=parent)
        response = client.get("/api/parent-invoices/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([row["id"] for row in response.json()], [published.id])


@skipIf(
    connection.vendor == "sqlite", "Parallel invoice creation needs PostgreSQL (TEST_DATABASE=postgres)."
)
class ConcurrentInvoiceCreationTests(BillingFixtureMixin, TransactionTestCase):
    def test_parallel_creates_get_distinct_numbers(self):
        club = self.make_club()
        _, child = self.make_family(club)
        workers = 12
        barrier = threading.Barrier(workers)
        numbers = []
        errors = []
        lock = threading.Lock()

        def create():
            try:
                barrier.wait()
                invoice = create_invoice(
                    club=club,
                    child_user_id=child.id,
                    items=ITEMS,
                    issue_date=date(2026, 6, 1),
                    due_date=date(2026, 6, 30),
                )
                with lock:
                    numbers.append(invoice.invoice_number)
            except Exception as exc:
                with lock:
                    errors.append(exc)
            finally:
                connections.close_all()

        threads = [threading.Thread(target=create) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(numbers), workers)
        self.assertEqual(len(set(numbers)), workers)
