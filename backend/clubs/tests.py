from django.test import TestCase

from accounts.models import User
from billing.errors import Forbidden, NotFound

from .models import Club
from .services import ensure_manages_club, get_managed_club, managed_clubs


class ClubAccessTests(TestCase):
    def setUp(self):
        self.super_admin = User.objects.create_user(
            username="superadmin", password="pass12345", role=User.Roles.SUPER_ADMIN
        )
        self.club_admin = User.objects.create_user(
            username="clubadmin", password="pass12345", role=User.Roles.CLUB_ADMIN
        )
        self.parent = User.objects.create_user(
            username="parent", password="pass12345", role=User.Roles.PARENT
        )
        self.club = Club.objects.create(name="Riverside FC", created_by=self.super_admin)
        self.other_club = Club.objects.create(name="Hillside FC", created_by=self.super_admin)
        self.club.admins.add(self.club_admin)

    def test_managed_clubs_by_role(self):
        self.assertEqual(set(managed_clubs(self.super_admin)), {self.club, self.other_club})
        self.assertEqual(list(managed_clubs(self.club_admin)), [self.club])
        self.assertEqual(list(managed_clubs(self.parent)), [])

    def test_get_managed_club(self):
        self.assertEqual(get_managed_club(self.club_admin, str(self.club.id)), self.club)
        with self.assertRaises(Forbidden):
            get_managed_club(self.club_admin, self.other_club.id)
        with self.assertRaises(NotFound):
            get_managed_club(self.club_admin, "not-a-number")
        with self.assertRaises(NotFound):
            get_managed_club(self.super_admin, 999999)

    def test_ensure_manages_club(self):
        self.assertEqual(ensure_manages_club(self.super_admin, self.other_club), self.other_club)
        with self.assertRaises(Forbidden):
            ensure_manages_club(self.parent, self.club)
