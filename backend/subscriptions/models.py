from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q
from simple_history.models import HistoricalRecords  # pyright: ignore[reportMissingImports]

from billing.fields import EncryptedCharField
from billing.models import Invoice
from clubs.models import Club


class Provider(models.TextChoices):
    GOCARDLESS = "gocardless", "GoCardless"
    STRIPE = "stripe", "Stripe"


class MembershipTier(models.Model):
    club = models.ForeignKey(Club, on_delete=models.CASCADE, related_name="membership_tiers")
    name = models.CharField(max_length=120)
    description = models.TextField(blank=True)
    monthly_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal("0.00"))],
    )
    annual_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal("0.00"))],
    )
    is_active = models.BooleanField(default=True)  # pyright: ignore[reportArgumentType]
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["club_id", "monthly_price", "name"]
        constraints = [
            models.UniqueConstraint(fields=["club", "name"], name="unique_tier_name_per_club"),
        ]

    def __str__(self) -> str:
        return f"{self.club} - {self.name}"


class PaymentCustomer(models.Model):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="payment_customers"
    )
    club = models.ForeignKey(Club, on_delete=models.CASCADE, related_name="payment_customers")
    provider = models.CharField(max_length=20, choices=Provider.choices, default=Provider.GOCARDLESS)
    provider_customer_id = EncryptedCharField(max_length=255, blank=True)
    email = models.EmailField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["user", "club", "provider"],
                name="unique_payment_customer_per_club_provider",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.user} @ {self.club} ({self.provider})"


class PaymentMandate(models.Model):
    class Status(models.TextChoices):
        PENDING_SUBMISSION = "pending_submission", "Pending submission"
        SUBMITTED = "submitted", "Submitted"
        ACTIVE = "active", "Active"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"
        EXPIRED = "expired", "Expired"

    payment_customer = models.ForeignKey(
        PaymentCustomer, on_delete=models.CASCADE, related_name="mandates"
    )
    provider = models.CharField(max_length=20, choices=Provider.choices, default=Provider.GOCARDLESS)
    provider_mandate_id = models.CharField(max_length=255, null=True, blank=True)
    status = models.CharField(
        max_length=30, choices=Status.choices, default=Status.PENDING_SUBMISSION
    )
    scheme = models.CharField(max_length=30, blank=True)
    reference = EncryptedCharField(max_length=255, blank=True)
    next_possible_charge_date = models.DateField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "provider_mandate_id"],
                condition=Q(provider_mandate_id__isnull=False),
                name="unique_provider_mandate_id",
            ),
        ]
        indexes = [
            models.Index(fields=["payment_customer", "status"], name="mandate_customer_status_idx"),
            models.Index(fields=["provider", "status"], name="mandate_provider_status_idx"),
        ]

    @property
    def club_id(self):
        return self.payment_customer.club_id

    def __str__(self) -> str:
        return f"{self.provider_mandate_id or 'unassigned'} ({self.status})"


class Subscription(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        ACTIVE = "active", "Active"
        PAUSED = "paused", "Paused"
        SUSPENDED = "suspended", "Suspended"
        CANCELLED = "cancelled", "Cancelled"

    class BillingFrequency(models.TextChoices):
        MONTHLY = "monthly", "Monthly"
        ANNUAL = "annual", "Annual"

    club = models.ForeignKey(Club, on_delete=models.PROTECT, related_name="subscriptions")
    parent_user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="subscriptions_payable"
    )
    child_user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="subscriptions_received"
    )
    membership_tier = models.ForeignKey(
        MembershipTier, on_delete=models.PROTECT, related_name="subscriptions"
    )
    payment_mandate = models.ForeignKey(
        PaymentMandate,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscriptions",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="GBP")
    billing_frequency = models.CharField(
        max_length=20, choices=BillingFrequency.choices, default=BillingFrequency.MONTHLY
    )
    billing_day_of_month = models.PositiveSmallIntegerField(
        default=1,  # pyright: ignore[reportArgumentType]
        validators=[MinValueValidator(1), MaxValueValidator(28)],
    )
    current_period_start = models.DateField(null=True, blank=True)
    current_period_end = models.DateField(null=True, blank=True)
    next_billing_date = models.DateField(null=True, blank=True)
    paused_at = models.DateTimeField(null=True, blank=True)
    resume_date = models.DateField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=255, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)  # pyright: ignore[reportArgumentType]
    failed_payment_count = models.PositiveIntegerField(default=0)  # pyright: ignore[reportArgumentType]
    last_failed_payment_at = models.DateTimeField(null=True, blank=True)
    provider = models.CharField(max_length=20, choices=Provider.choices, default=Provider.GOCARDLESS)
    provider_subscription_id = models.CharField(max_length=255, null=True, blank=True)
    provider_subscription_status = models.CharField(max_length=50, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    history = HistoricalRecords()

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["child_user", "club"],
                condition=~Q(status="cancelled"),
                name="unique_open_subscription_per_child_club",
            ),
            models.CheckConstraint(
                condition=Q(billing_day_of_month__gte=1) & Q(billing_day_of_month__lte=28),
                name="subscription_billing_day_range",
            ),
        ]
        indexes = [
            models.Index(fields=["club", "status"], name="sub_club_status_idx"),
            models.Index(fields=["status", "next_billing_date"], name="sub_status_next_bill_idx"),
            models.Index(fields=["provider", "provider_subscription_id"], name="sub_provider_id_idx"),
        ]

    @property
    def is_synced(self) -> bool:
        return bool(self.provider_subscription_id)

    def __str__(self) -> str:
        return f"{self.child_user} @ {self.club} ({self.status})"


class SubscriptionEvent(models.Model):
    class ActorType(models.TextChoices):
        USER = "user", "User"
        SYSTEM = "system", "System"
        WEBHOOK = "webhook", "Webhook"
        WORKER = "worker", "Worker"

    subscription = models.ForeignKey(
        Subscription, on_delete=models.CASCADE, related_name="events"
    )
    event_type = models.CharField(max_length=50)
    previous_status = models.CharField(max_length=20, blank=True)
    new_status = models.CharField(max_length=20, blank=True)
    previous_tier = models.ForeignKey(
        MembershipTier,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    new_tier = models.ForeignKey(
        MembershipTier,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    description = models.CharField(max_length=255, blank=True)
    actor_type = models.CharField(max_length=20, choices=ActorType.choices, default=ActorType.SYSTEM)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscription_events",
    )
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=512, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["subscription", "-created_at"], name="subevt_sub_created_idx"),
            models.Index(fields=["event_type", "-created_at"], name="subevt_type_created_idx"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Subscription events are immutable.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Subscription events are immutable.")

    def __str__(self) -> str:
        return f"{self.subscription_id} · {self.event_type}"


class ProviderPayment(models.Model):
    class Status(models.TextChoices):
        PENDING_SUBMISSION = "pending_submission", "Pending submission"
        SUBMITTED = "submitted", "Submitted"
        CONFIRMED = "confirmed", "Confirmed"
        PAID_OUT = "paid_out", "Paid out"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"
        CHARGED_BACK = "charged_back", "Charged back"

    provider = models.CharField(max_length=20, choices=Provider.choices)
    provider_payment_id = models.CharField(max_length=255)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="provider_payments",
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="provider_payments",
    )
    mandate = models.ForeignKey(
        PaymentMandate,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
    )
    amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default="GBP")
    status = models.CharField(
        max_length=30, choices=Status.choices, default=Status.PENDING_SUBMISSION
    )
    charge_date = models.DateField(null=True, blank=True)
    failure_reason = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "provider_payment_id"],
                name="unique_provider_payment_id",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.provider}:{self.provider_payment_id} ({self.status})"


class PaymentWebhook(models.Model):
    provider = models.CharField(max_length=20, choices=Provider.choices)
    event_id = models.CharField(max_length=255)
    resource_type = models.CharField(max_length=50, blank=True)
    action = models.CharField(max_length=100, blank=True)
    resource_id = models.CharField(max_length=255, blank=True)
    payload = models.JSONField(default=dict, blank=True)
    processed = models.BooleanField(default=False)  # pyright: ignore[reportArgumentType]
    processed_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "event_id"],
                name="unique_webhook_event_per_provider",
            ),
        ]
        indexes = [
            models.Index(fields=["resource_type", "action"], name="webhook_resource_action_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.provider}:{self.event_id}"
