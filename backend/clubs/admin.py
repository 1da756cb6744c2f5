from django.contrib import admin

from .models import Club, Season


@admin.register(Club)
class ClubAdmin(admin.ModelAdmin):
    list_display = ("name", "city", "contact_email", "created_by", "created_at")
    search_fields = ("name", "city", "contact_email")
    filter_horizontal = ("admins",)


@admin.register(Season)
class SeasonAdmin(admin.ModelAdmin):
    list_display = ("name", "club", "start_date", "end_date", "is_current")
    list_filter = ("is_current", "club")
