from django.contrib import admin

from .models import Member


@admin.register(Member)
class MemberAdmin(admin.ModelAdmin):
    list_display = ("first_name", "last_name", "club", "user", "guardian", "is_active")
    list_filter = ("is_active", "club")
    search_fields = ("first_name", "last_name", "email", "user__username", "guardian__username")
    raw_id_fields = ("user", "guardian")
