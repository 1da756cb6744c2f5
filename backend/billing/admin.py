from django.contrib import admin

from .models import FinanceAuditLog, Invoice, InvoiceItem, Payment


class InvoiceItemInline(admin.TabularInline):
    model = InvoiceItem
    extra = 0


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    can_delete = False
    readonly_fields = ("amount", "currency", "method", "provider", "reference", "paid_at", "created_by")

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = (
        "invoice_number",
        "club",
        "parent_user",
        "child_user",
        "status",
        "total_amount",
        "amount_paid",
        "due_date",
    )
    list_filter = ("status", "invoice_type", "club")
    search_fields = ("invoice_number", "parent_user__username", "child_user__username")
    readonly_fields = ("invoice_number", "created_at", "updated_at")
    inlines = [InvoiceItemInline, PaymentInline]


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("invoice", "amount", "currency", "method", "provider", "reference", "paid_at")
    list_filter = ("method", "provider")
    search_fields = ("invoice__invoice_number", "reference")

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(FinanceAuditLog)
class FinanceAuditLogAdmin(admin.ModelAdmin):
    list_display = ("action", "club", "invoice", "actor", "created_at")
    list_filter = ("action",)
    search_fields = ("message", "invoice__invoice_number")
    readonly_fields = ("action", "message", "metadata", "actor", "club", "invoice", "created_at")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
