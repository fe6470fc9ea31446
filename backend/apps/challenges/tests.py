from __future__ import annotations

import datetime
from unittest import mock

from django.contrib.admin.sites import AdminSite
from django.test import RequestFactory, TestCase
from django.utils import timezone

from apps.challenges.admin import ChallengeAdmin
from apps.challenges.models import Challenge
from apps.challenges.repo import ChallengeRepo
from apps.common.exceptions import ValidationError
from apps.contests.models import Contest


class ChallengeModelTests(TestCase):
    def setUp(self):
        self.contest = Contest.objects.create(name="CTF", slug="ctf")

    def _challenge(self, slug, **fields):
        return Challenge.objects.create(contest=self.contest, title=slug.upper(), slug=slug, **fields)

    def test_requires_runtime_by_type(self):
        self.assertFalse(self._challenge("misc").requires_runtime)
        self.assertTrue(self._challenge("web", challenge_type=Challenge.ChallengeType.DYNAMIC).requires_runtime)
        self.assertTrue(self._challenge("lan", challenge_type=Challenge.ChallengeType.INTERNAL).requires_runtime)

    def test_release_time(self):
        now = timezone.now()
        self.assertTrue(self._challenge("a").is_released)
        self.assertTrue(self._challenge("b", release_at=now - datetime.timedelta(minutes=1)).is_released)
        self.assertFalse(self._challenge("c", release_at=now + datetime.timedelta(hours=1)).is_released)

    def test_defaults(self):
        challenge = self._challenge("d")
        self.assertFalse(challenge.is_visible)
        self.assertEqual(challenge.flag_mode, Challenge.FlagMode.STATIC)
        self.assertEqual(challenge.metadata, {})


class ChallengeRepoTests(TestCase):
    def setUp(self):
        self.contest = Contest.objects.create(name="CTF", slug="ctf")
        self.other = Contest.objects.create(name="Other", slug="other")
        self.web = Challenge.objects.create(contest=self.contest, title="Web", slug="web",
                                            challenge_type=Challenge.ChallengeType.DYNAMIC)
        self.misc = Challenge.objects.create(contest=self.contest, title="Misc", slug="misc")

    def test_get_in_contest(self):
        repo = ChallengeRepo()
        self.assertEqual(repo.get_in_contest(contest=self.contest, challenge_id=self.web.id), self.web)
        with self.assertRaises(ValidationError) as ctx:
            repo.get_in_contest(contest=self.other, challenge_id=self.web.id)
        self.assertEqual(ctx.exception.message, "challenge is not available in this contest")

    def test_list_runtime_challenges(self):
        self.assertEqual(list(ChallengeRepo().list_runtime_challenges(self.contest)), [self.web])

    @mock.patch("apps.instances.tasks.destroy_challenge_instances.delay")
    def test_admin_teardown_action(self, delay):
        admin = ChallengeAdmin(Challenge, AdminSite())
        request = RequestFactory().post("/admin/challenges/challenge/")
        with mock.patch.object(admin, "message_user"):
            admin.teardown_runtime_instances(request, Challenge.objects.filter(pk=self.web.pk))
        delay.assert_called_once_with(str(self.web.id))
