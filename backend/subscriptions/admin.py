from django.contrib import admin
from simple_history.admin import SimpleHistoryAdmin  # pyright: ignore[reportMissingImports]

from .models import (
    MembershipTier,
    PaymentCustomer,
    PaymentMandate,
    PaymentWebhook,
    ProviderPayment,
    Subscription,
    SubscriptionEvent,
)


@admin.register(MembershipTier)
class MembershipTierAdmin(admin.ModelAdmin):
    list_display = ("name", "club", "monthly_price", "annual_price", "is_active")
    list_filter = ("is_active", "club")
    search_fields = ("name", "club__name")


@admin.register(PaymentCustomer)
class PaymentCustomerAdmin(admin.ModelAdmin):
    list_display = ("user", "club", "provider", "email", "created_at")
    list_filter = ("provider",)
    search_fields = ("user__username", "email", "club__name")


@admin.register(PaymentMandate)
class PaymentMandateAdmin(admin.ModelAdmin):
    list_display = ("provider_mandate_id", "payment_customer", "provider", "status", "scheme", "created_at")
    list_filter = ("provider", "status")
    search_fields = ("provider_mandate_id", "payment_customer__user__username")


class SubscriptionEventInline(admin.TabularInline):
    model = SubscriptionEvent
    extra = 0
    can_delete = False
    fields = ("event_type", "previous_status", "new_status", "actor_type", "actor", "created_at")
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Subscription)
class SubscriptionAdmin(SimpleHistoryAdmin):
    list_display = (
        "id",
        "club",
        "child_user",
        "parent_user",
        "membership_tier",
        "status",
        "amount",
        "billing_frequency",
        "provider_subscription_id",
        "failed_payment_count",
    )
    list_filter = ("status", "billing_frequency", "provider", "club")
    search_fields = ("child_user__username", "parent_user__username", "provider_subscription_id")
    readonly_fields = ("provider_subscription_id", "provider_subscription_status", "created_at", "updated_at")
    inlines = [SubscriptionEventInline]


@admin.register(SubscriptionEvent)
class SubscriptionEventAdmin(admin.ModelAdmin):
    list_display = ("subscription", "event_type", "previous_status", "new_status", "actor_type", "created_at")
    list_filter = ("event_type", "actor_type")
    search_fields = ("subscription__id", "description")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(ProviderPayment)
class ProviderPaymentAdmin(admin.ModelAdmin):
    list_display = ("provider_payment_id", "provider", "subscription", "invoice", "amount", "status", "charge_date")
    list_filter = ("provider", "status")
    search_fields = ("provider_payment_id", "invoice__invoice_number")


@admin.register(PaymentWebhook)
class PaymentWebhookAdmin(admin.ModelAdmin):
    list_display = ("provider", "event_id", "resource_type", "action", "processed", "created_at")
    list_filter = ("provider", "resource_type", "processed")
    search_fields = ("event_id", "resource_id")
    readonly_fields = (
        "provider",
        "event_id",
        "resource_type",
        "action",
        "resource_id",
        "payload",
        "processed",
        "processed_at",
        "error_message",
        "created_at",
    )
