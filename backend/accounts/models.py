from django.contrib.auth.models import AbstractUser
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _


class User(AbstractUser):
    class Roles(models.TextChoices):
        SUPER_ADMIN = "super_admin", _("Super Admin")
        CLUB_ADMIN = "club_admin", _("Club Admin")
        COACH = "coach", _("Coach")
        PARENT = "parent", _("Parent")
        MEMBER = "member", _("Member")

    role = models.CharField(
        max_length=20,
        choices=Roles.choices,
        default=Roles.MEMBER,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def display_name(self) -> str:
        full_name = self.get_full_name().strip()
        return full_name or self.username


class EmailOutbox(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        SENT = "sent", "Sent"
        FAILED = "failed", "Failed"

    to_email = models.EmailField()
    subject = models.CharField(max_length=255)
    html = models.TextField(blank=True)
    text = models.TextField(blank=True)
    template_key = models.CharField(max_length=100, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    retry_count = models.PositiveIntegerField(default=0)  # pyright: ignore[reportArgumentType]
    last_error = models.TextField(blank=True)
    last_retry_at = models.DateTimeField(null=True, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    recipient = models.ForeignKey(
        "accounts.User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="outbox_emails",
    )
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["status", "retry_count", "last_retry_at"],
                name="outbox_retry_idx",
            ),
        ]

    def mark_sent(self):
        self.status = self.Status.SENT
        self.sent_at = timezone.now()
        self.last_error = ""
        self.save(update_fields=["status", "sent_at", "last_error", "updated_at"])

    def mark_failed(self, error: str, *, is_retry: bool = False):
        self.status = self.Status.FAILED
        self.last_error = error
        self.last_retry_at = timezone.now()
        update_fields = ["status", "last_error", "last_retry_at", "updated_at"]
        if is_retry:
            self.retry_count += 1
            update_fields.append("retry_count")
        self.save(update_fields=update_fields)

    def __str__(self) -> str:
        return f"{self.to_email} - {self.subject}"
