from django.conf import settings
from django.db import models


class WorkerExecution(models.Model):
    class Trigger(models.TextChoices):
        SCHEDULED = "scheduled", "Scheduled"
        MANUAL = "manual", "Manual"

    class Status(models.TextChoices):
        RUNNING = "running", "Running"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    worker_name = models.CharField(max_length=100)
    trigger = models.CharField(max_length=20, choices=Trigger.choices, default=Trigger.SCHEDULED)
    triggered_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="worker_executions",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.RUNNING)
    started_at = models.DateTimeField()
    completed_at = models.DateTimeField(null=True, blank=True)
    duration_ms = models.PositiveIntegerField(null=True, blank=True)
    items_processed = models.PositiveIntegerField(default=0)  # pyright: ignore[reportArgumentType]
    items_successful = models.PositiveIntegerField(default=0)  # pyright: ignore[reportArgumentType]
    items_failed = models.PositiveIntegerField(default=0)  # pyright: ignore[reportArgumentType]
    error_message = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-started_at", "-id"]
        indexes = [
            models.Index(fields=["worker_name", "-started_at"], name="workerexec_name_started_idx"),
            models.Index(fields=["status"], name="workerexec_status_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.worker_name} #{self.id} ({self.status})"


class WorkerLock(models.Model):
    worker_name = models.CharField(max_length=100, unique=True)
    is_running = models.BooleanField(default=False)  # pyright: ignore[reportArgumentType]
    claimed_at = models.DateTimeField(null=True, blank=True)
    execution = models.ForeignKey(
        WorkerExecution,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"{self.worker_name} ({'running' if self.is_running else 'idle'})"
