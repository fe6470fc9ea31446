from __future__ import annotations

from unittest import mock

from django.contrib.admin.sites import AdminSite
from django.test import RequestFactory, TestCase

from apps.accounts.models import User
from apps.common.exceptions import NotFoundError
from apps.contests.admin import ContestAdmin
from apps.contests.models import Contest, Team, TeamMember
from apps.contests.repo import ContestRepo, TeamMemberRepo


class ContestRepoTests(TestCase):
    """比赛与队伍成员仓储：运行实例的上下文解析"""

    def setUp(self):
        self.user = User.objects.create_user(username="player", password="Pass1234")
        self.contest = Contest.objects.create(name="Spring CTF", slug="spring-ctf", status=Contest.Status.RUNNING)
        self.team = Team.objects.create(contest=self.contest, name="red", captain=self.user)

    def test_get_by_id(self):
        self.assertEqual(ContestRepo().get_by_id(self.contest.id), self.contest)
        missing = Contest(name="x", slug="x")
        with self.assertRaises(NotFoundError) as ctx:
            ContestRepo().get_by_id(missing.id)
        self.assertEqual(ctx.exception.message, "contest not found")

    def test_contest_flags(self):
        self.assertTrue(self.contest.is_running)
        self.assertFalse(self.contest.is_private)
        self.contest.visibility = Contest.Visibility.PRIVATE
        self.assertTrue(self.contest.is_private)

    def test_membership_requires_active_team_and_member(self):
        repo = TeamMemberRepo()
        self.assertIsNone(repo.get_membership(contest=self.contest, user=self.user))

        member = TeamMember.objects.create(team=self.team, user=self.user)
        self.assertEqual(repo.get_membership(contest=self.contest, user=self.user).team, self.team)

        member.is_active = False
        member.save(update_fields=["is_active"])
        self.assertIsNone(repo.get_membership(contest=self.contest, user=self.user))

        member.is_active = True
        member.save(update_fields=["is_active"])
        self.team.is_active = False
        self.team.save(update_fields=["is_active"])
        self.assertIsNone(repo.get_membership(contest=self.contest, user=self.user))

    def test_membership_is_scoped_to_contest(self):
        TeamMember.objects.create(team=self.team, user=self.user)
        other = Contest.objects.create(name="Other", slug="other")
        self.assertIsNone(TeamMemberRepo().get_membership(contest=other, user=self.user))


class ContestAdminTests(TestCase):
    @mock.patch("apps.instances.tasks.destroy_contest_instances.delay")
    def test_teardown_action_enqueues_task_per_contest(self, delay):
        first = Contest.objects.create(name="A", slug="a")
        second = Contest.objects.create(name="B", slug="b")
        admin = ContestAdmin(Contest, AdminSite())
        request = RequestFactory().post("/admin/contests/contest/")
        with mock.patch.object(admin, "message_user") as message_user:
            admin.teardown_runtime_instances(request, Contest.objects.all())
        self.assertEqual({call.args[0] for call in delay.call_args_list}, {str(first.id), str(second.id)})
        message_user.assert_called_once()
