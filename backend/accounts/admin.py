from django.contrib import admin
from django.contrib.auth.admin import UserAdmin

from .models import EmailOutbox, User


@admin.register(User)
class CustomUserAdmin(UserAdmin):
    fieldsets = UserAdmin.fieldsets + (("Club billing", {"fields": ("role",)}),)
    list_display = (
        "username",
        "email",
        "role",
        "is_staff",
    )
    list_filter = UserAdmin.list_filter + ("role",)


@admin.register(EmailOutbox)
class EmailOutboxAdmin(admin.ModelAdmin):
    list_display = ("to_email", "subject", "status", "retry_count", "last_retry_at", "created_at")
    list_filter = ("status", "template_key")
    search_fields = ("to_email", "subject")
    readonly_fields = ("created_at", "updated_at", "sent_at", "last_retry_at")
