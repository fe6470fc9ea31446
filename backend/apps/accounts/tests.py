from __future__ import annotations

from django.contrib.auth.models import AnonymousUser
from django.test import TestCase

from apps.accounts.models import User
from apps.common.permissions import is_privileged


class UserRoleTests(TestCase):
    """角色决定运行实例策略是否放宽"""

    def test_default_role_is_player(self):
        user = User.objects.create_user(username="player", password="Pass1234")
        self.assertEqual(user.role, User.Role.PLAYER)
        self.assertFalse(is_privileged(user))

    def test_privileged_roles(self):
        judge = User.objects.create_user(username="judge", password="Pass1234", role=User.Role.JUDGE)
        admin = User.objects.create_user(username="admin", password="Pass1234", role=User.Role.ADMIN)
        root = User.objects.create_superuser(username="root", password="Pass1234", email="root@example.com")
        self.assertTrue(is_privileged(judge))
        self.assertTrue(is_privileged(admin))
        self.assertTrue(is_privileged(root))
        self.assertFalse(is_privileged(AnonymousUser()))
        self.assertFalse(is_privileged(None))
