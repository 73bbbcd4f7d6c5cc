from io import StringIO

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.core.management import call_command
from django.test import TestCase

from apps.accounts.models import UserRole
from apps.common.permissions import has_capability, resolve_role

User = get_user_model()


class RoleTests(TestCase):
    def test_new_users_default_to_staff(self):
        user = User.objects.create_user(username="new_user", password="secret123")
        self.assertEqual(user.role, UserRole.STAFF)
        self.assertTrue(has_capability(user, "schedules.manage"))

    def test_viewer_cannot_manage_schedules(self):
        viewer = User.objects.create_user(username="viewer_acc", password="secret123", role="VIEWER")
        self.assertTrue(has_capability(viewer, "invoices.view"))
        self.assertTrue(has_capability(viewer, "invoices.export"))
        self.assertFalse(has_capability(viewer, "schedules.manage"))
        self.assertFalse(has_capability(viewer, "clients.manage"))

    def test_group_membership_overrides_role_field(self):
        user = User.objects.create_user(username="grouped", password="secret123", role="STAFF")
        group = Group.objects.create(name=UserRole.VIEWER)
        user.groups.add(group)
        self.assertEqual(resolve_role(user), UserRole.VIEWER)
        self.assertFalse(has_capability(user, "invoices.manage"))

    def test_seed_roles_is_idempotent(self):
        out = StringIO()
        call_command("seed_roles", stdout=out)
        call_command("seed_roles", stdout=out)
        self.assertEqual(Group.objects.filter(name__in=UserRole.values).count(), 3)
        self.assertIn("VIEWER: exists", out.getvalue())
