from __future__ import annotations

from billing.errors import Forbidden, NotFound

from .models import Club


def managed_clubs(user):
    if not user or not user.is_authenticated:
        return Club.objects.none()
    if user.role == "super_admin":
        return Club.objects.all()
    if user.role == "club_admin":
        return Club.objects.filter(admins=user)
    return Club.objects.none()


def get_managed_club(user, club_id) -> Club:
    try:
        club = Club.objects.get(id=int(club_id))
    except (TypeError, ValueError, Club.DoesNotExist) as error:
        raise NotFound("Club not found.", club_id=club_id) from error
    if not club.is_admin(user):
        raise Forbidden("You do not manage this club.", club_id=club.id)
    return club


def ensure_manages_club(user, club: Club) -> Club:
    if not club.is_admin(user):
        raise Forbidden("You do not manage this club.", club_id=club.id)
    return club
