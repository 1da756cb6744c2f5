from decimal import Decimal

import django.core.validators
import django.db.models.deletion
import simple_history.models
from django.conf import settings
from django.db import migrations, models

import billing.fields

PROVIDER_CHOICES = [("gocardless", "GoCardless"), ("stripe", "Stripe")]
SUBSCRIPTION_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("active", "Active"),
    ("paused", "Paused"),
    ("suspended", "Suspended"),
    ("cancelled", "Cancelled"),
]
BILLING_FREQUENCY_CHOICES = [("monthly", "Monthly"), ("annual", "Annual")]


def subscription_fields(history=False):
    def fk(to, related_name, on_delete, **kwargs):
        if history:
            return models.ForeignKey(
                blank=True,
                db_constraint=False,
                null=True,
                on_delete=django.db.models.deletion.DO_NOTHING,
                related_name="+",
                to=to,
            )
        return models.ForeignKey(on_delete=on_delete, related_name=related_name, to=to, **kwargs)

    if history:
        id_field = models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")
        created_at = models.DateTimeField(blank=True, editable=False)
        updated_at = models.DateTimeField(blank=True, editable=False)
    else:
        id_field = models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")
        created_at = models.DateTimeField(auto_now_add=True)
        updated_at = models.DateTimeField(auto_now=True)

    return [
        ("id", id_field),
        ("status", models.CharField(choices=SUBSCRIPTION_STATUS_CHOICES, default="pending", max_length=20)),
        ("amount", models.DecimalField(decimal_places=2, max_digits=10)),
        ("currency", models.CharField(default="GBP", max_length=3)),
        (
            "billing_frequency",
            models.CharField(choices=BILLING_FREQUENCY_CHOICES, default="monthly", max_length=20),
        ),
        (
            "billing_day_of_month",
            models.PositiveSmallIntegerField(
                default=1,
                validators=[
                    django.core.validators.MinValueValidator(1),
                    django.core.validators.MaxValueValidator(28),
                ],
            ),
        ),
        ("current_period_start", models.DateField(blank=True, null=True)),
        ("current_period_end", models.DateField(blank=True, null=True)),
        ("next_billing_date", models.DateField(blank=True, null=True)),
        ("paused_at", models.DateTimeField(blank=True, null=True)),
        ("resume_date", models.DateField(blank=True, null=True)),
        ("cancelled_at", models.DateTimeField(blank=True, null=True)),
        ("cancellation_reason", models.CharField(blank=True, max_length=255)),
        ("cancel_at_period_end", models.BooleanField(default=False)),
        ("failed_payment_count", models.PositiveIntegerField(default=0)),
        ("last_failed_payment_at", models.DateTimeField(blank=True, null=True)),
        ("provider", models.CharField(choices=PROVIDER_CHOICES, default="gocardless", max_length=20)),
        ("provider_subscription_id", models.CharField(blank=True, max_length=255, null=True)),
        ("provider_subscription_status", models.CharField(blank=True, max_length=50)),
        ("metadata", models.JSONField(blank=True, default=dict)),
        ("created_at", created_at),
        ("updated_at", updated_at),
        ("club", fk("clubs.club", "subscriptions", django.db.models.deletion.PROTECT)),
        (
            "parent_user",
            fk(settings.AUTH_USER_MODEL, "subscriptions_payable", django.db.models.deletion.PROTECT),
        ),
        (
            "child_user",
            fk(settings.AUTH_USER_MODEL, "subscriptions_received", django.db.models.deletion.PROTECT),
        ),
        (
            "membership_tier",
            fk("subscriptions.membershiptier", "subscriptions", django.db.models.deletion.PROTECT),
        ),
        (
            "payment_mandate",
            fk(
                "subscriptions.paymentmandate",
                "subscriptions",
                django.db.models.deletion.SET_NULL,
                blank=True,
                null=True,
            ),
        ),
    ]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("billing", "0001_initial"),
        ("clubs", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="MembershipTier",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=120)),
                ("description", models.TextField(blank=True)),
                (
                    "monthly_price",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=10,
                        validators=[django.core.validators.MinValueValidator(Decimal("0.00"))],
                    ),
                ),
                (
                    "annual_price",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        max_digits=10,
                        null=True,
                        validators=[django.core.validators.MinValueValidator(Decimal("0.00"))],
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "club",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="membership_tiers",
                        to="clubs.club",
                    ),
                ),
            ],
            options={
                "ordering": ["club_id", "monthly_price", "name"],
                "constraints": [
                    models.UniqueConstraint(fields=("club", "name"), name="unique_tier_name_per_club")
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentCustomer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider", models.CharField(choices=PROVIDER_CHOICES, default="gocardless", max_length=20)),
                ("provider_customer_id", billing.fields.EncryptedCharField(blank=True, max_length=255)),
                ("email", models.EmailField(blank=True, max_length=254)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "club",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payment_customers",
                        to="clubs.club",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payment_customers",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(
                        fields=("user", "club", "provider"),
                        name="unique_payment_customer_per_club_provider",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentMandate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider", models.CharField(choices=PROVIDER_CHOICES, default="gocardless", max_length=20)),
                ("provider_mandate_id", models.CharField(blank=True, max_length=255, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending_submission", "Pending submission"),
                            ("submitted", "Submitted"),
                            ("active", "Active"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                            ("expired", "Expired"),
                        ],
                        default="pending_submission",
                        max_length=30,
                    ),
                ),
                ("scheme", models.CharField(blank=True, max_length=30)),
                ("reference", billing.fields.EncryptedCharField(blank=True, max_length=255)),
                ("next_possible_charge_date", models.DateField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "payment_customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="mandates",
                        to="subscriptions.paymentcustomer",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["payment_customer", "status"], name="mandate_customer_status_idx"),
                    models.Index(fields=["provider", "status"], name="mandate_provider_status_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("provider_mandate_id__isnull", False)),
                        fields=("provider", "provider_mandate_id"),
                        name="unique_provider_mandate_id",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=subscription_fields(),
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["club", "status"], name="sub_club_status_idx"),
                    models.Index(fields=["status", "next_billing_date"], name="sub_status_next_bill_idx"),
                    models.Index(fields=["provider", "provider_subscription_id"], name="sub_provider_id_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "cancelled"), _negated=True),
                        fields=("child_user", "club"),
                        name="unique_open_subscription_per_child_club",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("billing_day_of_month__gte", 1), ("billing_day_of_month__lte", 28)),
                        name="subscription_billing_day_range",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="HistoricalSubscription",
            fields=subscription_fields(history=True)
            + [
                ("history_id", models.AutoField(primary_key=True, serialize=False)),
                ("history_date", models.DateTimeField(db_index=True)),
                ("history_change_reason", models.CharField(max_length=100, null=True)),
                (
                    "history_type",
                    models.CharField(
                        choices=[("+", "Created"), ("~", "Changed"), ("-", "Deleted")], max_length=1
                    ),
                ),
                (
                    "history_user",
                    models.ForeignKey(
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "historical subscription",
                "verbose_name_plural": "historical subscriptions",
                "ordering": ("-history_date", "-history_id"),
                "get_latest_by": ("history_date", "history_id"),
            },
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
        migrations.CreateModel(
            name="SubscriptionEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_type", models.CharField(max_length=50)),
                ("previous_status", models.CharField(blank=True, max_length=20)),
                ("new_status", models.CharField(blank=True, max_length=20)),
                ("description", models.CharField(blank=True, max_length=255)),
                (
                    "actor_type",
                    models.CharField(
                        choices=[
                            ("user", "User"),
                            ("system", "System"),
                            ("webhook", "Webhook"),
                            ("worker", "Worker"),
                        ],
                        default="system",
                        max_length=20,
                    ),
                ),
                ("ip_address", models.GenericIPAddressField(blank=True, null=True)),
                ("user_agent", models.CharField(blank=True, max_length=512)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="subscription_events",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "new_tier",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="subscriptions.membershiptier",
                    ),
                ),
                (
                    "previous_tier",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="subscriptions.membershiptier",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="events",
                        to="subscriptions.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["subscription", "-created_at"], name="subevt_sub_created_idx"),
                    models.Index(fields=["event_type", "-created_at"], name="subevt_type_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ProviderPayment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider", models.CharField(choices=PROVIDER_CHOICES, max_length=20)),
                ("provider_payment_id", models.CharField(max_length=255)),
                ("amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("currency", models.CharField(default="GBP", max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending_submission", "Pending submission"),
                            ("submitted", "Submitted"),
                            ("confirmed", "Confirmed"),
                            ("paid_out", "Paid out"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                            ("charged_back", "Charged back"),
                        ],
                        default="pending_submission",
                        max_length=30,
                    ),
                ),
                ("charge_date", models.DateField(blank=True, null=True)),
                ("failure_reason", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="provider_payments",
                        to="billing.invoice",
                    ),
                ),
                (
                    "mandate",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="payments",
                        to="subscriptions.paymentmandate",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="provider_payments",
                        to="subscriptions.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("provider", "provider_payment_id"), name="unique_provider_payment_id"
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentWebhook",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider", models.CharField(choices=PROVIDER_CHOICES, max_length=20)),
                ("event_id", models.CharField(max_length=255)),
                ("resource_type", models.CharField(blank=True, max_length=50)),
                ("action", models.CharField(blank=True, max_length=100)),
                ("resource_id", models.CharField(blank=True, max_length=255)),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("processed", models.BooleanField(default=False)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["resource_type", "action"], name="webhook_resource_action_idx")
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("provider", "event_id"), name="unique_webhook_event_per_provider"
                    )
                ],
            },
        ),
    ]
