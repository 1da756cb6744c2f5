from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count, Sum
from django.utils import timezone
from django.utils.crypto import get_random_string

from accounts.email_utils import notify_user
from members.services import find_membership

from .db import apply_statement_timeout
from .errors import InvalidStateTransition, InvoiceNumberConflict, NotFound, ValidationFailed
from .models import FinanceAuditLog, Invoice, InvoiceItem, Payment
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
INVOICE_NUMBER_CONSTRAINT = "billing_invoice_number_unique"
INVOICE_SUFFIX_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

EDITABLE_STATUSES = (Invoice.Status.DRAFT,)
PUBLISHABLE_STATUSES = (Invoice.Status.DRAFT,)
# "sent" is accepted for invoices imported from the legacy numbering scheme.
PAYABLE_STATUSES = (Invoice.Status.DRAFT, Invoice.Status.PENDING, "sent", Invoice.Status.OVERDUE)
CANCELLABLE_STATUSES = (Invoice.Status.DRAFT, Invoice.Status.PENDING, Invoice.Status.OVERDUE)


def round2(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class InvoiceLine:
    description: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    category: str = InvoiceItem.Category.OTHER
    exact_total: Decimal = Decimal("0")


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    lines: tuple[InvoiceLine, ...] = ()


@dataclass
class SeasonalInvoiceResult:
    created: list[Invoice] = field(default_factory=list)
    skipped: dict[int, str] = field(default_factory=dict)


def _to_line(item: Mapping[str, Any]) -> InvoiceLine:
    try:
        quantity = int(item.get("quantity", 1))
        unit_price = Decimal(str(item["unit_price"]))
    except (KeyError, TypeError, ValueError, ArithmeticError) as error:
        raise ValidationFailed("Invoice items need a quantity and a unit price.") from error
    if quantity < 1:
        raise ValidationFailed("Item quantity must be at least 1.", quantity=quantity)
    if unit_price < 0:
        raise ValidationFailed("Item unit price cannot be negative.", unit_price=str(unit_price))
    exact_total = quantity * unit_price
    return InvoiceLine(
        description=str(item.get("description") or "").strip() or "Item",
        category=item.get("category") or InvoiceItem.Category.OTHER,
        quantity=quantity,
        unit_price=round2(unit_price),
        total_price=round2(exact_total),
        exact_total=exact_total,
    )


def calculate_invoice_totals(
    items: Iterable[Mapping[str, Any]],
    tax_amount=Decimal("0"),
    discount_amount=Decimal("0"),
) -> InvoiceTotals:
    lines = tuple(_to_line(item) for item in items)
    tax = Decimal(str(tax_amount or 0))
    discount = Decimal(str(discount_amount or 0))
    if tax < 0 or discount < 0:
        raise ValidationFailed("Tax and discount amounts cannot be negative.")
    raw_subtotal = sum((line.exact_total for line in lines), Decimal("0"))
    total = round2(raw_subtotal + tax - discount)
    if total < 0:
        raise ValidationFailed(
            "Discount cannot exceed the invoice subtotal plus tax.",
            subtotal=str(round2(raw_subtotal)),
            discount_amount=str(round2(discount)),
        )
    return InvoiceTotals(
        subtotal=round2(raw_subtotal),
        tax_amount=round2(tax),
        discount_amount=round2(discount),
        total_amount=total,
        lines=lines,
    )


def random_invoice_suffix() -> str:
    return get_random_string(4, allowed_chars=INVOICE_SUFFIX_ALPHABET)


def generate_invoice_number(club_id: int, *, year: int | None = None) -> str:
    """Return ``{YEAR}-{SEQ:04d}-{RANDOM4}`` for the club.

    The sequence is the club's invoice count for the year plus one and is only
    informational; uniqueness comes from the random suffix and the database
    constraint.
    """
    year = year or timezone.localdate().year
    sequence = (
        Invoice.objects.filter(club_id=club_id, invoice_number__startswith=f"{year}-").count() + 1
    )
    return f"{year}-{sequence:04d}-{random_invoice_suffix()}"


def _is_invoice_number_collision(error: IntegrityError) -> bool:
    diag = getattr(error.__cause__, "diag", None)
    constraint_name = getattr(diag, "constraint_name", None) or ""
    if constraint_name:
        return constraint_name == INVOICE_NUMBER_CONSTRAINT
    message = str(error)
    return INVOICE_NUMBER_CONSTRAINT in message or "invoice.invoice_number" in message


def _actor_or_none(actor):
    return actor if actor is not None and actor.is_authenticated else None


def _audit(action: str, invoice: Invoice | None, *, actor=None, club=None, message="", **metadata):
    return FinanceAuditLog.objects.create(
        action=action,
        message=message,
        metadata=metadata,
        actor=_actor_or_none(actor),
        club=club or (invoice.club if invoice else None),
        invoice=invoice,
    )


def _insert_items(invoice: Invoice, lines: Iterable[InvoiceLine]) -> None:
    InvoiceItem.objects.bulk_create(
        [
            InvoiceItem(
                invoice=invoice,
                description=line.description,
                category=line.category,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.total_price,
            )
            for line in lines
        ]
    )


def _lock_invoice(invoice_id: int, *, club=None) -> Invoice:
    queryset = Invoice.objects.select_for_update().filter(id=invoice_id)
    if club is not None:
        queryset = queryset.filter(club=club)
    invoice = queryset.first()
    if invoice is None:
        raise NotFound("Invoice not found.", invoice_id=invoice_id)
    return invoice


def _ensure_status(invoice: Invoice, allowed: Iterable[str], operation: str) -> None:
    allowed = tuple(allowed)
    if invoice.status not in allowed:
        raise InvalidStateTransition(
            f"Invoice {invoice.invoice_number} cannot be {operation} while {invoice.status}.",
            invoice_id=invoice.id,
            status=invoice.status,
            allowed=[str(value) for value in allowed],
        )


def create_invoice(
    *,
    club,
    child_user_id: int,
    items: Iterable[Mapping[str, Any]],
    due_date: date,
    issue_date: date | None = None,
    season=None,
    tax_amount=Decimal("0"),
    discount_amount=Decimal("0"),
    invoice_type: str = Invoice.InvoiceType.MANUAL,
    status: str = Invoice.Status.DRAFT,
    notes: str = "",
    subscription=None,
    currency: str | None = None,
    actor=None,
    retry_policy: RetryPolicy | None = None,
) -> Invoice:
    """Create an invoice and its items in one transaction.

    A collision on the invoice number rolls the attempt back and retries the
    whole operation, regenerating the number, according to ``retry_policy``.
    Any other integrity error propagates immediately.
    """
    issue_date = issue_date or timezone.localdate()
    if due_date < issue_date:
        raise ValidationFailed("Due date cannot be before the issue date.")
    if status not in (Invoice.Status.DRAFT, Invoice.Status.PENDING):
        raise ValidationFailed("New invoices start as draft or pending.", status=status)
    totals = calculate_invoice_totals(items, tax_amount, discount_amount)
    if not totals.lines:
        raise ValidationFailed("An invoice needs at least one item.")
    policy = retry_policy or RetryPolicy.from_settings()

    last_error: IntegrityError | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            with transaction.atomic():
                apply_statement_timeout(settings.INVOICE_TRANSACTION_TIMEOUT_MS)
                membership = find_membership(child_user_id, club_id=club.id)
                if membership is None:
                    raise NotFound(
                        "Beneficiary is not a member of this club.",
                        child_user_id=child_user_id,
                        club_id=club.id,
                    )
                invoice = Invoice.objects.create(
                    invoice_number=generate_invoice_number(club.id, year=issue_date.year),
                    club=club,
                    season=season,
                    parent_user_id=membership.payer_id,
                    child_user_id=child_user_id,
                    subscription=subscription,
                    invoice_type=invoice_type,
                    status=status,
                    currency=currency or settings.BILLING_DEFAULT_CURRENCY,
                    subtotal=totals.subtotal,
                    tax_amount=totals.tax_amount,
                    discount_amount=totals.discount_amount,
                    total_amount=totals.total_amount,
                    issue_date=issue_date,
                    due_date=due_date,
                    published_at=timezone.now() if status == Invoice.Status.PENDING else None,
                    notes=notes,
                    created_by=_actor_or_none(actor),
                )
                _insert_items(invoice, totals.lines)
                _audit(
                    "invoice.created",
                    invoice,
                    actor=actor,
                    message=f"Invoice {invoice.invoice_number} created.",
                    total_amount=str(invoice.total_amount),
                    attempt=attempt,
                )
            return invoice
        except IntegrityError as error:
            if not _is_invoice_number_collision(error):
                raise
            last_error = error
            logger.info(
                "Invoice number collision for club %s (attempt %s/%s)",
                club.id,
                attempt,
                policy.max_attempts,
            )
            if attempt < policy.max_attempts:
                policy.wait()

    raise InvoiceNumberConflict(
        "Could not allocate a unique invoice number.",
        club_id=club.id,
        attempts=policy.max_attempts,
    ) from last_error


def update_invoice(
    invoice_id: int,
    *,
    club,
    actor=None,
    items: Iterable[Mapping[str, Any]] | None = None,
    **changes: Any,
) -> Invoice:
    allowed_fields = {"due_date", "issue_date", "notes", "tax_amount", "discount_amount", "season"}
    unknown = set(changes) - allowed_fields
    if unknown:
        raise ValidationFailed("Unsupported invoice fields.", fields=sorted(unknown))

    with transaction.atomic():
        invoice = _lock_invoice(invoice_id, club=club)
        _ensure_status(invoice, EDITABLE_STATUSES, "edited")
        for field_name, value in changes.items():
            setattr(invoice, field_name, value)
        if invoice.due_date < invoice.issue_date:
            raise ValidationFailed("Due date cannot be before the issue date.")

        if items is None:
            items = [
                {
                    "description": item.description,
                    "category": item.category,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                }
                for item in invoice.items.all()
            ]
            replace_items = False
        else:
            replace_items = True
        totals = calculate_invoice_totals(items, invoice.tax_amount, invoice.discount_amount)
        if not totals.lines:
            raise ValidationFailed("An invoice needs at least one item.")
        invoice.subtotal = totals.subtotal
        invoice.tax_amount = totals.tax_amount
        invoice.discount_amount = totals.discount_amount
        invoice.total_amount = totals.total_amount
        invoice.save()
        if replace_items:
            invoice.items.all().delete()
            _insert_items(invoice, totals.lines)
        _audit(
            "invoice.updated",
            invoice,
            actor=actor,
            message=f"Invoice {invoice.invoice_number} updated.",
            fields=sorted(changes) + (["items"] if replace_items else []),
        )
    return invoice


def delete_invoice(invoice_id: int, *, club, actor=None) -> None:
    with transaction.atomic():
        invoice = _lock_invoice(invoice_id, club=club)
        _ensure_status(invoice, EDITABLE_STATUSES, "deleted")
        _audit(
            "invoice.deleted",
            None,
            actor=actor,
            club=invoice.club,
            message=f"Draft invoice {invoice.invoice_number} deleted.",
            invoice_number=invoice.invoice_number,
        )
        invoice.delete()


def publish_invoice(invoice_id: int, *, club, actor=None) -> Invoice:
    with transaction.atomic():
        invoice = _lock_invoice(invoice_id, club=club)
        _ensure_status(invoice, PUBLISHABLE_STATUSES, "published")
        invoice.status = Invoice.Status.PENDING
        invoice.published_at = timezone.now()
        invoice.save(update_fields=["status", "published_at", "updated_at"])
        _audit("invoice.published", invoice, actor=actor, message=f"Invoice {invoice} published.")
        notify_user(
            invoice.parent_user,
            subject=f"New invoice {invoice.invoice_number} from {invoice.club.name}",
            text=(
                f"Invoice {invoice.invoice_number} for {invoice.total_amount} {invoice.currency} "
                f"is due on {invoice.due_date:%d %B %Y}."
            ),
            template_key="invoice_published",
            metadata={"invoice_id": invoice.id},
        )
    return invoice


def mark_invoice_as_paid(
    invoice_id: int,
    *,
    club=None,
    actor=None,
    method: str = Payment.Method.OTHER,
    provider: str = Payment.Provider.MANUAL,
    reference: str = "",
    notes: str = "",
    paid_at=None,
) -> Invoice:
    """Settle an invoice in full and append the matching payment row.

    ``club`` is optional so provider-driven callers without a club context can
    settle invoices.
    """
    paid_at = paid_at or timezone.now()
    with transaction.atomic():
        invoice = _lock_invoice(invoice_id, club=club)
        _ensure_status(invoice, PAYABLE_STATUSES, "marked as paid")
        payment = Payment.objects.create(
            invoice=invoice,
            amount=invoice.total_amount,
            currency=invoice.currency,
            method=method,
            provider=provider,
            reference=reference,
            notes=notes,
            paid_at=paid_at,
            created_by=_actor_or_none(actor),
        )
        invoice.status = Invoice.Status.PAID
        invoice.amount_paid = invoice.total_amount
        invoice.paid_date = timezone.localdate(paid_at) if timezone.is_aware(paid_at) else paid_at.date()
        invoice.save(update_fields=["status", "amount_paid", "paid_date", "updated_at"])
        _audit(
            "invoice.paid",
            invoice,
            actor=actor,
            message=f"Invoice {invoice.invoice_number} marked as paid.",
            payment_id=payment.id,
            provider=provider,
            reference=reference,
        )
    return invoice


def cancel_invoice(invoice_id: int, *, club, actor=None, reason: str = "") -> Invoice:
    with transaction.atomic():
        invoice = _lock_invoice(invoice_id, club=club)
        _ensure_status(invoice, CANCELLABLE_STATUSES, "cancelled")
        invoice.status = Invoice.Status.CANCELLED
        invoice.cancelled_at = timezone.now()
        invoice.cancellation_reason = reason[:255]
        invoice.save(update_fields=["status", "cancelled_at", "cancellation_reason", "updated_at"])
        _audit(
            "invoice.cancelled",
            invoice,
            actor=actor,
            message=f"Invoice {invoice.invoice_number} cancelled.",
            reason=reason,
        )
    return invoice


def record_chargeback(
    invoice_id: int,
    *,
    provider: str = Payment.Provider.GOCARDLESS,
    reference: str = "",
    reason: str = "",
) -> Invoice | None:
    """Reverse a settled invoice after the provider reports a chargeback.

    Appends a negative payment row and reopens the invoice as overdue. Returns
    ``None`` when the invoice is not paid (nothing left to reverse).
    """
    with transaction.atomic():
        invoice = _lock_invoice(invoice_id)
        if invoice.status != Invoice.Status.PAID:
            return None
        reversed_amount = invoice.amount_paid
        Payment.objects.create(
            invoice=invoice,
            amount=-reversed_amount,
            currency=invoice.currency,
            method=Payment.Method.DIRECT_DEBIT,
            provider=provider,
            reference=reference,
            notes=f"Chargeback. {reason}".strip(),
            paid_at=timezone.now(),
        )
        invoice.status = Invoice.Status.OVERDUE
        invoice.amount_paid = Decimal("0.00")
        invoice.paid_date = None
        invoice.save(update_fields=["status", "amount_paid", "paid_date", "updated_at"])
        _audit(
            "invoice.charged_back",
            invoice,
            message=f"Payment for invoice {invoice.invoice_number} was charged back.",
            reference=reference,
            reversed_amount=str(reversed_amount),
        )
    return invoice


def mark_overdue_invoices(club=None, *, today: date | None = None) -> int:
    today = today or timezone.localdate()
    queryset = Invoice.objects.filter(status=Invoice.Status.PENDING, due_date__lt=today)
    if club is not None:
        queryset = queryset.filter(club=club)
    with transaction.atomic():
        updated = queryset.update(status=Invoice.Status.OVERDUE, updated_at=timezone.now())
        if updated:
            _audit(
                "invoice.overdue_marked",
                None,
                club=club,
                message=f"{updated} invoice(s) marked overdue.",
                count=updated,
                as_of=today.isoformat(),
            )
    return updated


def generate_seasonal_invoices(
    *,
    club,
    season,
    child_user_ids: Iterable[int],
    items: Iterable[Mapping[str, Any]],
    due_date: date,
    issue_date: date | None = None,
    tax_amount=Decimal("0"),
    discount_amount=Decimal("0"),
    notes: str = "",
    publish: bool = False,
    actor=None,
    retry_policy: RetryPolicy | None = None,
) -> SeasonalInvoiceResult:
    items = list(items)
    result = SeasonalInvoiceResult()
    already_invoiced = set(
        Invoice.objects.filter(
            club=club,
            season=season,
            invoice_type=Invoice.InvoiceType.SEASONAL,
        )
        .exclude(status=Invoice.Status.CANCELLED)
        .values_list("child_user_id", flat=True)
    )
    for child_user_id in dict.fromkeys(child_user_ids):
        if child_user_id in already_invoiced:
            result.skipped[child_user_id] = "already_invoiced"
            continue
        try:
            invoice = create_invoice(
                club=club,
                child_user_id=child_user_id,
                items=items,
                due_date=due_date,
                issue_date=issue_date,
                season=season,
                tax_amount=tax_amount,
                discount_amount=discount_amount,
                invoice_type=Invoice.InvoiceType.SEASONAL,
                status=Invoice.Status.PENDING if publish else Invoice.Status.DRAFT,
                notes=notes,
                actor=actor,
                retry_policy=retry_policy,
            )
        except NotFound:
            result.skipped[child_user_id] = "not_a_member"
            continue
        result.created.append(invoice)
    logger.info(
        "Seasonal invoicing for club %s season %s: %s created, %s skipped",
        club.id,
        season.id,
        len(result.created),
        len(result.skipped),
    )
    return result


def get_billing_summary(club, *, season=None) -> dict[str, Any]:
    queryset = Invoice.objects.filter(club=club)
    if season is not None:
        queryset = queryset.filter(season=season)
    by_status = {
        row["status"]: {
            "count": row["count"],
            "total_amount": row["total"] or Decimal("0.00"),
            "amount_paid": row["paid"] or Decimal("0.00"),
        }
        for row in queryset.values("status").annotate(
            count=Count("id"), total=Sum("total_amount"), paid=Sum("amount_paid")
        )
    }
    for status_value in Invoice.Status.values:
        by_status.setdefault(
            status_value,
            {"count": 0, "total_amount": Decimal("0.00"), "amount_paid": Decimal("0.00")},
        )

    def _balance(*statuses):
        return sum(
            (by_status[value]["total_amount"] - by_status[value]["amount_paid"] for value in statuses),
            Decimal("0.00"),
        )

    billable = [value for value in Invoice.Status.values if value != Invoice.Status.CANCELLED]
    return {
        "club_id": club.id,
        "season_id": season.id if season else None,
        "invoice_count": sum(by_status[value]["count"] for value in billable),
        "total_invoiced": sum(
            (by_status[value]["total_amount"] for value in billable), Decimal("0.00")
        ),
        "total_paid": by_status[Invoice.Status.PAID]["amount_paid"],
        "outstanding_amount": _balance(Invoice.Status.PENDING, Invoice.Status.OVERDUE),
        "overdue_amount": _balance(Invoice.Status.OVERDUE),
        "by_status": by_status,
    }
