from django.contrib import admin

from .models import WorkerExecution, WorkerLock


@admin.register(WorkerExecution)
class WorkerExecutionAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "worker_name",
        "trigger",
        "status",
        "started_at",
        "duration_ms",
        "items_processed",
        "items_failed",
    )
    list_filter = ("worker_name", "status", "trigger")
    readonly_fields = ("started_at", "completed_at", "duration_ms", "metadata", "error_message")


@admin.register(WorkerLock)
class WorkerLockAdmin(admin.ModelAdmin):
    list_display = ("worker_name", "is_running", "claimed_at", "execution", "updated_at")
