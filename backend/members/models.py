from django.conf import settings
from django.db import models

from clubs.models import Club


class Member(models.Model):
    """A beneficiary's membership of a club.

    ``guardian`` is the account responsible for paying; when it is empty the
    member pays for themselves.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="memberships",
    )
    guardian = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="dependants",
    )
    club = models.ForeignKey(Club, on_delete=models.PROTECT, related_name="members")
    first_name = models.CharField(max_length=150)
    last_name = models.CharField(max_length=150)
    email = models.EmailField(blank=True)
    date_of_birth = models.DateField(null=True, blank=True)
    is_active = models.BooleanField(default=True)  # type: ignore[call-arg]
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["user", "club"], name="unique_member_user_per_club"),
        ]
        indexes = [
            models.Index(fields=["guardian", "club"], name="member_guardian_club_idx"),
        ]

    @property
    def payer_id(self) -> int:
        return self.guardian_id or self.user_id

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __str__(self):
        return self.full_name
