from __future__ import annotations

from .models import Member


def find_membership(child_user_id: int, *, club_id: int | None = None) -> Member | None:
    queryset = Member.objects.select_related("guardian", "user").filter(user_id=child_user_id)
    if club_id is not None:
        queryset = queryset.filter(club_id=club_id)
    return queryset.order_by("-is_active", "id").first()


def is_payer_for(payer_id: int, child_user_id: int, *, club_id: int) -> bool:
    if payer_id == child_user_id:
        return True
    return Member.objects.filter(
        user_id=child_user_id,
        club_id=club_id,
        guardian_id=payer_id,
    ).exists()
