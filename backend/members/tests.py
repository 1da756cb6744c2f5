from django.test import TestCase

from accounts.models import User
from clubs.models import Club

from .models import Member
from .services import find_membership, is_payer_for


class MembershipLookupTests(TestCase):
    def setUp(self):
        creator = User.objects.create_user(username="creator", password="pass12345")
        self.club = Club.objects.create(name="Riverside FC", created_by=creator)
        self.other_club = Club.objects.create(name="Hillside FC", created_by=creator)
        self.parent = User.objects.create_user(username="parent", password="pass12345")
        self.child = User.objects.create_user(username="child", password="pass12345")
        self.adult = User.objects.create_user(username="adult", password="pass12345")
        self.membership = Member.objects.create(
            user=self.child, guardian=self.parent, club=self.club, first_name="Sam", last_name="Striker"
        )
        Member.objects.create(user=self.adult, club=self.club, first_name="Pat", last_name="Winger")

    def test_payer_is_guardian_or_self(self):
        self.assertEqual(self.membership.payer_id, self.parent.id)
        self.assertEqual(find_membership(self.adult.id, club_id=self.club.id).payer_id, self.adult.id)

    def test_find_membership_is_scoped_to_club(self):
        self.assertEqual(find_membership(self.child.id, club_id=self.club.id), self.membership)
        self.assertIsNone(find_membership(self.child.id, club_id=self.other_club.id))

    def test_is_payer_for(self):
        self.assertTrue(is_payer_for(self.parent.id, self.child.id, club_id=self.club.id))
        self.assertTrue(is_payer_for(self.adult.id, self.adult.id, club_id=self.club.id))
        self.assertFalse(is_payer_for(self.parent.id, self.child.id, club_id=self.other_club.id))
        self.assertFalse(is_payer_for(self.adult.id, self.child.id, club_id=self.club.id))
