from __future__ import annotations

import datetime
import re
import shutil
import tempfile
import uuid
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

import httpx
import yaml
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APITestCase

from apps.accounts.models import User
from apps.challenges.models import Challenge
from apps.common.exceptions import (
    ComposeCommandError,
    ComposeTimeoutError,
    ConflictError,
    InstanceNotFoundError,
    InvalidTransitionError,
    ManifestError,
    PermissionDeniedError,
    SubnetExhaustedError,
    TokenError,
    ValidationError,
)
from apps.common.infra import jwt_provider
from apps.common.tests_utils import AuthenticatedAPIMixin
from apps.common.utils.redis_keys import dynamic_flag_key
from apps.contests.models import Contest, Team, TeamMember

from .access import (
    SSH_GATEWAY_SERVICE,
    WIREGUARD_CONFIG_SERVICE,
    WIREGUARD_SERVICE,
    AccessMode,
    fetch_wireguard_config,
    inject_ssh_gateway,
    inject_wireguard,
    parse_access_mode,
    read_wireguard_config_port,
    ssh_gateway_password,
    wireguard_meta_path,
)
from .config import RuntimeSettings
from .flags import MemoryFlagStore, RedisFlagStore, generate_dynamic_flag, provision_dynamic_flag
from .manifest import (
    HEARTBEAT_TOKEN_USE,
    TEMPLATE_MISSING_MESSAGE,
    ManifestRenderer,
    RenderSource,
    RuntimeMode,
    apply_resource_limits,
    build_render_source,
    collect_placeholder_tokens,
    issue_heartbeat_token,
    parse_entrypoint_host_port,
    parse_compose_variables,
    parse_runtime_options,
    resolve_entrypoint_url,
    substitute,
    validate_template,
)
from .models import TRANSITIONS, Instance, can_transition, ensure_transition, sources_for
from .policy import PolicyGate, check_runtime_policy
from .reapers import InstanceReaper, ReaperSummary
from .repo import InstanceRepo
from .schemas import HeartbeatReportSchema, InstanceActionSchema
from .services import (
    MSG_ALREADY_DESTROYED,
    MSG_ALREADY_RUNNING,
    MSG_CREATING_IN_PROGRESS,
    MSG_HEARTBEAT_REPORTED,
    MSG_RESET,
    MSG_STARTED,
    MSG_STOPPED,
    DestroyInstanceService,
    HeartbeatInstanceService,
    QueryInstanceService,
    ReportHeartbeatService,
    ResetInstanceService,
    StartInstanceService,
    StopInstanceService,
    WireguardConfigService,
    serialize_instance,
)
from .subnets import (
    SUBNET_SPACE,
    SubnetAllocator,
    candidate_at,
    compose_project_name,
    network_name,
    subnet_host_ip,
    subnet_seed,
)
from .tasks import reap_expired_instances

FLAG_RE = re.compile(r"ctf\{[0-9a-f]{8}-[0-9a-f]{12}\}")
SUBNET_RE = re.compile(r"^10\.(\d+)\.(\d+)\.0/24$")

COMPOSE_TEMPLATE = """services:
  web:
    image: "nginx:alpine"
    environment:
      FLAG: "{{DYNAMIC_FLAG}}"
      SUBNET: "{{SUBNET}}"
    networks:
      - "{{NETWORK_NAME}}"
networks:
  "{{NETWORK_NAME}}":
    ipam:
      config:
        - subnet: "{{SUBNET}}"
"""


class RecordingRunner:
    """
    假的编排执行器：记录每次调用，按动作 / 项目名注入失败

    hooks 在命令“执行中”被调用，用于模拟并发的其它写入
    """

    def __init__(self):
        self.calls: list[tuple[str, str, dict]] = []
        self.fail: dict[str, Exception] = {}
        self.fail_projects: set[str] = set()
        self.hooks: dict = {}

    def _record(self, action: str, project_name: str, **kwargs) -> str:
        self.calls.append((action, project_name, kwargs))
        hook = self.hooks.get(action)
        if hook is not None:
            hook(project_name)
        if project_name in self.fail_projects:
            raise ComposeCommandError(message=f"compose {action} failed: boom")
        if action in self.fail:
            raise self.fail[action]
        return ""

    def up(self, compose_file, project_name, *, force_recreate=False, self_heal=True):
        return self._record("up", project_name, force_recreate=force_recreate)

    def stop(self, compose_file, project_name):
        return self._record("stop", project_name)

    def down(self, compose_file, project_name):
        return self._record("down", project_name)

    def actions(self) -> list[str]:
        return [call[0] for call in self.calls]


def make_runtime(root: str, **overrides) -> RuntimeSettings:
    values = dict(
        runtime_root=Path(root),
        ttl_minutes=120,
        compose_timeout_seconds=30,
        cpu_limit="1.00",
        memory_limit_mb=512,
        public_host="127.0.0.1",
        host_port_min=20000,
        host_port_max=40000,
        heartbeat_report_url="http://orchestrator.local/api/instances/heartbeat/report/",
        heartbeat_interval_seconds=30,
        reaper_batch_size=50,
        stale_reaper_batch_size=50,
        heartbeat_stale_seconds=300,
    )
    values.update(overrides)
    return RuntimeSettings(**values)


class InstanceFixtureMixin:
    """准备进行中的公开比赛、一支队伍与一道动态 Flag 的 compose 题目"""

    def setUp(self):
        super().setUp()
        self.runtime_root = tempfile.mkdtemp(prefix="ctf-instances-")
        self.addCleanup(shutil.rmtree, self.runtime_root, True)
        self.runtime = make_runtime(self.runtime_root)
        self.runner = RecordingRunner()
        self.flag_store = MemoryFlagStore()
        self.renderer = ManifestRenderer(self.runtime, self.flag_store)

        self.user = User.objects.create_user(username="player", password="Pass1234")
        self.contest = Contest.objects.create(name="Runtime CTF", slug="runtime-ctf", status=Contest.Status.RUNNING)
        self.team = Team.objects.create(contest=self.contest, name="red", captain=self.user)
        TeamMember.objects.create(team=self.team, user=self.user, role=TeamMember.Role.CAPTAIN)
        self.challenge = Challenge.objects.create(
            contest=self.contest,
            title="Web",
            slug="web",
            challenge_type=Challenge.ChallengeType.DYNAMIC,
            flag_mode=Challenge.FlagMode.DYNAMIC,
            is_visible=True,
            compose_template=COMPOSE_TEMPLATE,
        )

    def service(self, cls):
        return cls(runner=self.runner, renderer=self.renderer, runtime=self.runtime, flag_store=self.flag_store)

    def reaper(self) -> InstanceReaper:
        return InstanceReaper(runner=self.runner, renderer=self.renderer, runtime=self.runtime)

    def action(self, challenge=None) -> InstanceActionSchema:
        return InstanceActionSchema(contest_id=str(self.contest.id), challenge_id=str((challenge or self.challenge).id))

    def start(self, user=None):
        return self.service(StartInstanceService).execute(user or self.user, self.action())

    def make_team(self, name: str) -> Team:
        return Team.objects.create(contest=self.contest, name=name, captain=self.user)

    def make_instance(self, team: Team, *, index: int, status=Instance.Status.RUNNING, expires_at=None,
                      last_heartbeat_at=None) -> Instance:
        subnet = candidate_at(index)
        now = timezone.now()
        return Instance.objects.create(
            contest=self.contest,
            challenge=self.challenge,
            team=team,
            status=status,
            subnet=subnet,
            compose_project_name=compose_project_name(self.contest.id, self.challenge.id, team.id),
            entrypoint_url=f"http://{subnet_host_ip(subnet, 2)}",
            cpu_limit=Decimal("1.00"),
            memory_limit_mb=512,
            started_at=now - datetime.timedelta(hours=1),
            expires_at=expires_at,
            last_heartbeat_at=last_heartbeat_at,
        )

    def compose_text(self, instance: Instance) -> str:
        return self.runtime.compose_file(instance.compose_project_name).read_text(encoding="utf-8")


class InstanceLifecycleTests(InstanceFixtureMixin, TestCase):
    """生命周期服务：启动 / 停止 / 重置 / 销毁"""

    def test_start_renders_manifest_and_runs(self):
        result = self.start()
        instance = result.instance
        self.assertEqual(result.message, MSG_STARTED)
        self.assertEqual(instance.status, Instance.Status.RUNNING)
        self.assertEqual(self.runner.calls, [("up", instance.compose_project_name, {"force_recreate": False})])

        # 无占用时取种子位置的第一个候选
        seed = subnet_seed(self.contest.id, self.challenge.id, self.team.id)
        self.assertEqual(instance.subnet, candidate_at(seed))
        second, _third = (int(part) for part in SUBNET_RE.match(instance.subnet).groups())
        self.assertTrue(16 <= second <= 223)
        self.assertEqual(instance.entrypoint_url, f"http://{subnet_host_ip(instance.subnet, 2)}")
        self.assertEqual(instance.compose_project_name, compose_project_name(
            self.contest.id, self.challenge.id, self.team.id
        ))

        text = self.compose_text(instance)
        flags = FLAG_RE.findall(text)
        self.assertEqual(len(flags), 1)
        self.assertTrue(flags[0].startswith("ctf{%s-" % self.challenge.id.hex[:8]))
        self.assertIn(instance.subnet, text)
        self.assertNotIn("{{", text)
        document = yaml.safe_load(text)
        self.assertEqual(document["services"]["web"]["cpus"], "1.00")
        self.assertEqual(document["services"]["web"]["mem_limit"], "512m")

    def test_start_is_idempotent_while_running(self):
        first = self.start().instance
        calls = len(self.runner.calls)
        second = self.start()
        self.assertEqual(second.message, MSG_ALREADY_RUNNING)
        self.assertEqual(second.instance.id, first.id)
        self.assertEqual(len(self.runner.calls), calls)
        self.assertEqual(Instance.objects.count(), 1)

    def test_start_reprovisions_expired_running_instance(self):
        first = self.start().instance
        Instance.objects.filter(pk=first.pk).update(expires_at=timezone.now() - datetime.timedelta(minutes=1))
        result = self.start()
        self.assertEqual(result.message, MSG_STARTED)
        self.assertEqual(self.runner.actions(), ["up", "up"])
        self.assertGreater(result.instance.expires_at, timezone.now())

    def test_reset_reuses_subnet_and_dynamic_flag(self):
        started = self.start().instance
        flag = FLAG_RE.findall(self.compose_text(started))[0]
        self.assertEqual(
            self.flag_store.get(dynamic_flag_key(self.contest.id, self.challenge.id, self.team.id)),
            flag,
        )

        result = self.service(ResetInstanceService).execute(self.user, self.action())
        self.assertEqual(result.message, MSG_RESET)
        self.assertEqual(result.instance.status, Instance.Status.RUNNING)
        self.assertEqual(result.instance.subnet, started.subnet)
        self.assertEqual(result.instance.compose_project_name, started.compose_project_name)
        self.assertEqual(FLAG_RE.findall(self.compose_text(result.instance)), [flag])
        self.assertEqual(self.runner.calls[1:], [
            ("down", started.compose_project_name, {}),
            ("up", started.compose_project_name, {"force_recreate": True}),
        ])

    def test_reset_tolerates_failed_down(self):
        self.start()
        self.runner.fail["down"] = ComposeCommandError(message="compose down failed: no such project")
        result = self.service(ResetInstanceService).execute(self.user, self.action())
        self.assertEqual(result.instance.status, Instance.Status.RUNNING)
        self.assertEqual(self.runner.actions(), ["up", "down", "up"])

    def test_stop_missing_instance_reports_not_found(self):
        with self.assertRaises(InstanceNotFoundError) as ctx:
            self.service(StopInstanceService).execute(self.user, self.action())
        self.assertIsInstance(ctx.exception, ValidationError)
        self.assertEqual(ctx.exception.message, "instance not found")
        self.assertEqual(self.runner.calls, [])

    def test_stop_then_start_again(self):
        self.start()
        stopped = self.service(StopInstanceService).execute(self.user, self.action())
        self.assertEqual(stopped.message, MSG_STOPPED)
        self.assertEqual(stopped.instance.status, Instance.Status.STOPPED)

        restarted = self.start()
        self.assertEqual(restarted.instance.status, Instance.Status.RUNNING)
        self.assertEqual(self.runner.actions(), ["up", "stop", "up"])

    def test_start_failure_marks_failed_and_propagates(self):
        self.runner.fail["up"] = ComposeCommandError(message="compose up failed: image not found")
        with self.assertRaises(ComposeCommandError):
            self.start()
        instance = Instance.objects.get()
        self.assertEqual(instance.status, Instance.Status.FAILED)

        # 失败的实例可以再次启动
        self.runner.fail.clear()
        result = self.start()
        self.assertEqual(result.instance.status, Instance.Status.RUNNING)
        self.assertEqual(result.instance.pk, instance.pk)

    def test_stop_timeout_marks_failed(self):
        self.start()
        self.runner.fail["stop"] = ComposeTimeoutError(message="compose stop timed out after 30 seconds")
        with self.assertRaises(ComposeTimeoutError):
            self.service(StopInstanceService).execute(self.user, self.action())
        self.assertEqual(Instance.objects.get().status, Instance.Status.FAILED)

    def test_destroy_failure_keeps_row_non_destroyed(self):
        started = self.start().instance
        self.runner.fail["down"] = ComposeCommandError(message="compose down failed: daemon unavailable")
        with self.assertRaises(ComposeCommandError):
            self.service(DestroyInstanceService).execute(self.user, self.action())
        instance = Instance.objects.get()
        self.assertEqual(instance.status, Instance.Status.FAILED)
        self.assertTrue(self.runtime.compose_file(started.compose_project_name).exists())

    def test_destroy_removes_directory_and_is_idempotent(self):
        started = self.start().instance
        project_dir = self.runtime.project_dir(started.compose_project_name)
        self.assertTrue(project_dir.exists())

        destroyed = self.service(DestroyInstanceService).execute(self.user, self.action())
        self.assertEqual(destroyed.instance.status, Instance.Status.DESTROYED)
        self.assertIsNone(destroyed.instance.expires_at)
        self.assertIsNotNone(destroyed.instance.destroyed_at)
        self.assertFalse(project_dir.exists())
        calls = len(self.runner.calls)

        again = self.service(DestroyInstanceService).execute(self.user, self.action())
        self.assertEqual(again.message, MSG_ALREADY_DESTROYED)
        self.assertEqual(again.instance.status, Instance.Status.DESTROYED)
        self.assertEqual(len(self.runner.calls), calls)

    def test_stop_destroyed_instance_is_rejected(self):
        self.start()
        self.service(DestroyInstanceService).execute(self.user, self.action())
        with self.assertRaises(ValidationError) as ctx:
            self.service(StopInstanceService).execute(self.user, self.action())
        self.assertEqual(ctx.exception.message, MSG_ALREADY_DESTROYED)

    def test_destroyed_row_is_reused_on_next_start(self):
        first = self.start().instance
        self.service(DestroyInstanceService).execute(self.user, self.action())
        again = self.start().instance
        self.assertEqual(again.pk, first.pk)
        self.assertEqual(again.subnet, first.subnet)
        self.assertIsNone(again.destroyed_at)
        self.assertEqual(Instance.objects.count(), 1)

    def test_destroyed_row_moves_to_next_subnet_when_taken(self):
        first = self.start().instance
        self.service(DestroyInstanceService).execute(self.user, self.action())
        # 另一支队伍在此期间占用了原子网
        other = self.make_team("blue")
        self.make_instance(other, index=subnet_seed(self.contest.id, self.challenge.id, self.team.id))
        again = self.start().instance
        self.assertEqual(again.pk, first.pk)
        self.assertNotEqual(again.subnet, first.subnet)

    def test_start_while_creating_is_conflict(self):
        instance = self.start().instance
        Instance.objects.filter(pk=instance.pk).update(status=Instance.Status.CREATING, updated_at=timezone.now())
        with self.assertRaises(ConflictError) as ctx:
            self.start()
        self.assertEqual(ctx.exception.message, MSG_CREATING_IN_PROGRESS)
        self.assertEqual(self.runner.actions(), ["up"])

    def test_stale_creating_row_is_taken_over(self):
        instance = self.start().instance
        long_ago = timezone.now() - datetime.timedelta(seconds=self.runtime.creating_stale_seconds + 5)
        Instance.objects.filter(pk=instance.pk).update(status=Instance.Status.CREATING, updated_at=long_ago)
        result = self.start()
        self.assertEqual(result.message, MSG_STARTED)
        self.assertEqual(result.instance.pk, instance.pk)
        self.assertEqual(result.instance.status, Instance.Status.RUNNING)
        self.assertEqual(self.runner.actions(), ["up", "up"])

    def test_stop_after_failed_start(self):
        self.runner.fail["up"] = ComposeCommandError(message="compose up failed: image not found")
        with self.assertRaises(ComposeCommandError):
            self.start()
        self.assertEqual(Instance.objects.get().status, Instance.Status.FAILED)

        result = self.service(StopInstanceService).execute(self.user, self.action())
        self.assertEqual(result.message, MSG_STOPPED)
        self.assertEqual(result.instance.status, Instance.Status.STOPPED)
        self.assertEqual(self.runner.actions(), ["up", "stop"])

    def test_stop_twice(self):
        self.start()
        first = self.service(StopInstanceService).execute(self.user, self.action())
        second = self.service(StopInstanceService).execute(self.user, self.action())
        self.assertEqual(second.message, MSG_STOPPED)
        self.assertEqual(second.instance.status, Instance.Status.STOPPED)
        self.assertEqual(second.instance.pk, first.instance.pk)
        self.assertEqual(self.runner.actions(), ["up", "stop", "stop"])

    def test_stop_while_creating(self):
        instance = self.start().instance
        Instance.objects.filter(pk=instance.pk).update(status=Instance.Status.CREATING)
        result = self.service(StopInstanceService).execute(self.user, self.action())
        self.assertEqual(result.instance.status, Instance.Status.STOPPED)

    def test_restart_clears_previous_heartbeat(self):
        self.start()
        self.service(HeartbeatInstanceService).execute(self.user, self.action())
        self.service(StopInstanceService).execute(self.user, self.action())
        self.assertIsNotNone(Instance.objects.get().last_heartbeat_at)

        restarted = self.start().instance
        self.assertIsNone(restarted.last_heartbeat_at)

    def test_stop_losing_race_to_reaper_reports_not_found(self):
        self.start()

        def reaper_lands_first(project_name):
            Instance.objects.filter(compose_project_name=project_name).update(
                status=Instance.Status.DESTROYED, expires_at=None
            )

        self.runner.hooks["stop"] = reaper_lands_first
        with self.assertRaises(InstanceNotFoundError):
            self.service(StopInstanceService).execute(self.user, self.action())
        self.assertEqual(Instance.objects.get().status, Instance.Status.DESTROYED)

    def test_heartbeat_only_touches_running_instance(self):
        self.start()
        result = self.service(HeartbeatInstanceService).execute(self.user, self.action())
        self.assertIsNotNone(result.instance.last_heartbeat_at)

        self.service(StopInstanceService).execute(self.user, self.action())
        with self.assertRaises(ValidationError) as ctx:
            self.service(HeartbeatInstanceService).execute(self.user, self.action())
        self.assertEqual(ctx.exception.message, "running instance not found")

    def test_query_returns_row_or_not_found(self):
        with self.assertRaises(InstanceNotFoundError):
            self.service(QueryInstanceService).execute(self.user, self.action())
        started = self.start().instance
        result = self.service(QueryInstanceService).execute(self.user, self.action())
        self.assertEqual(result.instance.pk, started.pk)
        self.assertEqual(len(self.runner.calls), 1)

    def test_report_heartbeat_with_issued_token(self):
        instance = self.start().instance
        token = issue_heartbeat_token(instance)
        result = self.service(ReportHeartbeatService).execute(HeartbeatReportSchema(token=token))
        self.assertEqual(result.message, MSG_HEARTBEAT_REPORTED)
        self.assertIsNotNone(result.instance.last_heartbeat_at)

    def test_report_heartbeat_rejects_bad_tokens(self):
        with self.assertRaises(TokenError):
            self.service(ReportHeartbeatService).execute(HeartbeatReportSchema(token="garbage"))
        now = int(timezone.now().timestamp())
        not_uuid = jwt_provider.encode_claims(
            {"sub": "not-a-uuid", "token_use": HEARTBEAT_TOKEN_USE, "iat": now, "exp": now + 600}
        )
        with self.assertRaises(TokenError):
            self.service(ReportHeartbeatService).execute(HeartbeatReportSchema(token=not_uuid))
        with self.assertRaises(ValidationError):
            HeartbeatReportSchema(token="  ")

    def test_serialize_instance(self):
        instance = self.start().instance
        data = serialize_instance(instance, "ok")
        self.assertEqual(data["id"], str(instance.id))
        self.assertEqual(data["status"], "running")
        self.assertEqual(data["cpu_limit"], "1.00")
        self.assertEqual(data["memory_limit_mb"], 512)
        self.assertEqual(data["message"], "ok")
        self.assertIsNone(data["destroyed_at"])
        self.assertIsNone(data["network_access"])


class PolicyGateTests(InstanceFixtureMixin, TestCase):
    def test_missing_team_is_rejected(self):
        outsider = User.objects.create_user(username="outsider", password="Pass1234")
        with self.assertRaises(ValidationError) as ctx:
            self.start(user=outsider)
        self.assertEqual(ctx.exception.message, "join or create a team before entering the contest")
        self.assertEqual(Instance.objects.count(), 0)

    def test_private_contest_denies_players_for_every_action(self):
        self.contest.visibility = Contest.Visibility.PRIVATE
        self.contest.save(update_fields=["visibility"])
        with self.assertRaises(PermissionDeniedError):
            self.start()
        with self.assertRaises(PermissionDeniedError):
            self.service(StopInstanceService).execute(self.user, self.action())

    def test_challenge_from_other_contest_is_rejected(self):
        other = Contest.objects.create(name="Other", slug="other", status=Contest.Status.RUNNING)
        foreign = Challenge.objects.create(contest=other, title="X", slug="x", challenge_type="dynamic",
                                           is_visible=True, compose_template=COMPOSE_TEMPLATE)
        with self.assertRaises(ValidationError) as ctx:
            self.service(StartInstanceService).execute(self.user, self.action(foreign))
        self.assertEqual(ctx.exception.message, "challenge is not available in this contest")

    def test_privileged_user_may_start_hidden_challenge(self):
        judge = User.objects.create_user(username="judge", password="Pass1234", role=User.Role.JUDGE)
        TeamMember.objects.create(team=self.make_team("judges"), user=judge)
        self.challenge.is_visible = False
        self.challenge.save(update_fields=["is_visible"])
        self.contest.status = Contest.Status.ENDED
        self.contest.save(update_fields=["status"])

        with self.assertRaises(ValidationError):
            self.start()
        result = self.start(user=judge)
        self.assertEqual(result.instance.status, Instance.Status.RUNNING)

    def test_invalid_manifest_is_rejected_before_any_write(self):
        self.challenge.compose_template = "services:\n  web:\n    image: {{UNKNOWN}}\n"
        self.challenge.save(update_fields=["compose_template"])
        with self.assertRaises(ManifestError):
            self.start()
        self.assertEqual(Instance.objects.count(), 0)
        self.assertEqual(self.runner.calls, [])

    def test_gate_context_skips_challenge_checks(self):
        self.challenge.is_visible = False
        self.challenge.save(update_fields=["is_visible"])
        ctx = PolicyGate().context(self.user, self.contest.id, self.challenge.id)
        self.assertEqual(ctx.team, self.team)
        self.assertIsNone(ctx.source)


class CheckRuntimePolicyTests(SimpleTestCase):
    """纯策略校验：不访问数据库"""

    def _pair(self, **challenge_fields):
        contest = Contest(name="c", slug="c", status=Contest.Status.RUNNING)
        values = dict(
            contest=contest,
            title="t",
            slug="t",
            challenge_type=Challenge.ChallengeType.DYNAMIC,
            is_visible=True,
            compose_template="services: {}\n",
            metadata={},
        )
        values.update(challenge_fields)
        return contest, Challenge(**values)

    def assertRejected(self, contest, challenge, message, *, privileged=False, require_running=True):
        with self.assertRaises(ValidationError) as ctx:
            check_runtime_policy(contest, challenge, privileged=privileged, require_running=require_running)
        self.assertEqual(ctx.exception.message, message)

    def test_player_rules(self):
        contest, challenge = self._pair(is_visible=False)
        self.assertRejected(contest, challenge, "challenge runtime is not visible")

        contest, challenge = self._pair(release_at=timezone.now() + datetime.timedelta(hours=1))
        self.assertRejected(contest, challenge, "challenge runtime has not been released yet")

        contest, challenge = self._pair()
        contest.status = Contest.Status.SCHEDULED
        self.assertRejected(contest, challenge, "contest is not running")
        check_runtime_policy(contest, challenge, privileged=False, require_running=False)

    def test_private_contest_is_access_denied(self):
        contest, challenge = self._pair()
        contest.visibility = Contest.Visibility.PRIVATE
        with self.assertRaises(PermissionDeniedError):
            check_runtime_policy(contest, challenge, privileged=False, require_running=True)
        check_runtime_policy(contest, challenge, privileged=True, require_running=True)

    def test_rules_applying_to_everyone(self):
        contest, challenge = self._pair(challenge_type=Challenge.ChallengeType.STATIC)
        self.assertRejected(contest, challenge, "challenge type does not require runtime instance", privileged=True)

        contest, challenge = self._pair(compose_template="   ")
        self.assertRejected(contest, challenge, TEMPLATE_MISSING_MESSAGE, privileged=True)

        # 单镜像模式不需要模板
        contest, challenge = self._pair(
            compose_template="",
            challenge_type=Challenge.ChallengeType.INTERNAL,
            metadata={"runtime": {"mode": "single_image", "image": "nginx:alpine", "internal_port": 80}},
        )
        check_runtime_policy(contest, challenge, privileged=False, require_running=True)


class SubnetAllocatorTests(InstanceFixtureMixin, TestCase):
    def _claim(self, allocator, seed, team):
        project = compose_project_name(self.contest.id, self.challenge.id, team.id)
        return allocator.claim(seed, lambda subnet: Instance.objects.create(
            contest=self.contest,
            challenge=self.challenge,
            team=team,
            subnet=subnet,
            compose_project_name=project,
        ))

    def test_sequential_allocations_are_distinct(self):
        allocator = SubnetAllocator(InstanceRepo())
        seed = SUBNET_SPACE - 2
        subnets = [self._claim(allocator, seed, self.make_team(f"team-{i}")).subnet for i in range(5)]
        self.assertEqual(len(set(subnets)), 5)
        # 同一个起点线性扫描并回绕
        self.assertEqual(subnets, [candidate_at(seed + offset) for offset in range(5)])
        self.assertEqual(subnets[2], "10.16.0.0/24")
        for subnet in subnets:
            self.assertRegex(subnet, SUBNET_RE)

    def test_concurrent_conflict_moves_to_next_candidate(self):
        taken = self.make_instance(self.make_team("first"), index=7)
        repo = InstanceRepo()
        # 模拟读取占用集合之后才被并发占用：唯一约束兜底
        with mock.patch.object(repo, "live_subnets", return_value=set()):
            instance = self._claim(SubnetAllocator(repo), 7, self.make_team("second"))
        self.assertEqual(taken.subnet, candidate_at(7))
        self.assertEqual(instance.subnet, candidate_at(8))

    def test_destroyed_rows_release_their_subnet(self):
        self.make_instance(self.make_team("gone"), index=3, status=Instance.Status.DESTROYED)
        instance = self._claim(SubnetAllocator(InstanceRepo()), 3, self.make_team("next"))
        self.assertEqual(instance.subnet, candidate_at(3))

    def test_exhaustion_raises(self):
        fake_repo = SimpleNamespace(live_subnets=lambda: {"10.16.0.0/24", "10.16.1.0/24"})
        attempt = mock.Mock()
        with mock.patch("apps.instances.subnets.SUBNET_SPACE", 2):
            with self.assertRaises(SubnetExhaustedError):
                SubnetAllocator(fake_repo).claim(0, attempt)
        attempt.assert_not_called()


class SubnetHelperTests(SimpleTestCase):
    def test_seed_folds_bytes(self):
        zero = uuid.UUID(int=0)
        self.assertEqual(subnet_seed(zero, zero, zero), 0)
        self.assertEqual(subnet_seed(zero, zero, uuid.UUID(int=1)), 1)
        # 倒数第二个字节为 1：再左旋 5 位
        self.assertEqual(subnet_seed(zero, zero, uuid.UUID(int=256)), 32)
        a, b, c = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        self.assertEqual(subnet_seed(a, b, c), subnet_seed(str(a), str(b), str(c)))
        self.assertLess(subnet_seed(a, b, c), 2 ** 32)

    def test_candidate_space(self):
        self.assertEqual(SUBNET_SPACE, 53248)
        self.assertEqual(candidate_at(0), "10.16.0.0/24")
        self.assertEqual(candidate_at(257), "10.17.1.0/24")
        self.assertEqual(candidate_at(SUBNET_SPACE - 1), "10.223.255.0/24")
        self.assertEqual(candidate_at(SUBNET_SPACE), "10.16.0.0/24")

    def test_names_and_hosts(self):
        contest = uuid.UUID("11111111-2222-3333-4444-555555555555")
        challenge = uuid.UUID("aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee")
        team = uuid.UUID("12345678-0000-0000-0000-000000000000")
        self.assertEqual(compose_project_name(contest, challenge, team), "ctf_11111111_aaaaaaaa_12345678")
        self.assertEqual(subnet_host_ip("10.20.30.0/24", 2), "10.20.30.2")
        self.assertEqual(subnet_host_ip("10.20.30.0/24", 1), "10.20.30.1")
        self.assertEqual(subnet_host_ip("garbage", 2), "")


class TemplateTests(SimpleTestCase):
    """占位符解析、自定义变量与两阶段渲染"""

    def test_collects_tokens_in_order(self):
        tokens = collect_placeholder_tokens("a: {{ SUBNET }}\nb: {{VAR:APP_PORT}}\nc: {{SUBNET}}")
        self.assertEqual(tokens, ["SUBNET", "VAR:APP_PORT", "SUBNET"])

    def test_malformed_templates(self):
        for template in ("a: {{SUBNET", "a: }} b: {{SUBNET}}", "a: {{SUBNET}} }}", "a: {{  }}"):
            with self.subTest(template=template):
                with self.assertRaises(ManifestError):
                    collect_placeholder_tokens(template)

    def test_unknown_placeholder_is_rejected(self):
        with self.assertRaises(ManifestError) as ctx:
            validate_template("image: {{IMAGE}}", {})
        self.assertIn("unsupported compose placeholder '{{IMAGE}}'", ctx.exception.message)

    def test_empty_template_is_validation_error(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_template("  \n", {})
        self.assertEqual(ctx.exception.message, TEMPLATE_MISSING_MESSAGE)

    def test_variables_must_be_declared(self):
        with self.assertRaises(ManifestError) as ctx:
            validate_template("port: {{VAR:APP_PORT}}", {"compose_variables": {}})
        self.assertIn("'APP_PORT' is referenced but not defined", ctx.exception.message)
        with self.assertRaises(ManifestError):
            validate_template("port: {{VAR:app_port}}", {"compose_variables": {"app_port": "1"}})

    def test_required_variable_must_not_be_empty(self):
        metadata = {"compose_variables": [{"name": "SECRET", "required": True, "default": "  "}]}
        with self.assertRaises(ManifestError) as ctx:
            validate_template("s: {{VAR:SECRET}}", metadata)
        self.assertIn("'SECRET' is required", ctx.exception.message)

    def test_variable_declaration_forms(self):
        variables = parse_compose_variables({"compose_variables": {
            "APP_PORT": 8080,
            "DEBUG": True,
            "MODE": {"default": "prod"},
            "NAME": {"value": " web ", "default": "x", "required": True},
            "EMPTY": None,
        }})
        self.assertEqual(variables["APP_PORT"].value, "8080")
        self.assertEqual(variables["DEBUG"].value, "true")
        self.assertEqual(variables["MODE"].value, "prod")
        self.assertEqual(variables["NAME"].value, "web")
        self.assertTrue(variables["NAME"].required)
        self.assertEqual(variables["EMPTY"].value, "")

        listed = parse_compose_variables({"compose_variables": [{"name": "A", "value": 1}]})
        self.assertEqual(listed["A"].value, "1")

    def test_invalid_variable_declarations(self):
        bad = [
            {"compose_variables": [{"name": "A"}, {"name": "A"}]},
            {"compose_variables": [{"value": "x"}]},
            {"compose_variables": {"A": ["not", "scalar"]}},
            {"compose_variables": {"A" * 65: "x"}},
            {"compose_variables": "A=1"},
        ]
        for metadata in bad:
            with self.subTest(metadata=metadata):
                with self.assertRaises(ManifestError):
                    parse_compose_variables(metadata)

    def test_substitution_is_single_pass(self):
        variables = parse_compose_variables({"compose_variables": {"NOTE": "{{SUBNET}}"}})
        text = substitute("a: {{SUBNET}}\nb: {{VAR:NOTE}}", {"SUBNET": "10.16.0.0/24"}, variables)
        self.assertEqual(text, "a: 10.16.0.0/24\nb: {{SUBNET}}")

    def test_resource_limits_are_injected_per_service(self):
        text = "services:\n  web:\n    image: a\n  db:\n    image: b\n    cpus: '4'\n"
        document = yaml.safe_load(apply_resource_limits(text, "0.50", 256))
        for service in document["services"].values():
            self.assertEqual(service["cpus"], "0.50")
            self.assertEqual(service["mem_limit"], "256m")
        self.assertEqual(list(document["services"]), ["web", "db"])

    def test_resource_limits_fail_soft(self):
        broken = "services:\n  web: [\n"
        with self.assertLogs("apps.instances.manifest", level="WARNING"):
            self.assertEqual(apply_resource_limits(broken, "1.00", 512), broken)
        self.assertEqual(apply_resource_limits("services: {}\n", None, None), "services: {}\n")
        self.assertEqual(apply_resource_limits("- a\n- b\n", "1.00", 512), "- a\n- b\n")


class RuntimeModeTests(SimpleTestCase):
    def test_defaults_to_compose(self):
        self.assertIs(parse_runtime_options({}).mode, RuntimeMode.COMPOSE)
        self.assertIs(parse_runtime_options({"runtime": {"mode": "compose_template"}}).mode, RuntimeMode.COMPOSE)

    def test_single_image_options(self):
        options = parse_runtime_options({"runtime": {
            "mode": "image", "image": "nginx:alpine", "internal_port": 80, "protocol": "TCP",
        }})
        self.assertIs(options.mode, RuntimeMode.SINGLE_IMAGE)
        self.assertEqual(options.single_image.internal_port, 80)
        self.assertEqual(options.single_image.protocol.value, "tcp")

    def test_invalid_runtime_options(self):
        bad = [
            {"mode": "k8s"},
            {"mode": "compose", "access_mode": "proxy"},
            {"mode": "single_image", "internal_port": 80},
            {"mode": "single_image", "image": "bad image", "internal_port": 80},
            {"mode": "single_image", "image": "img\"x", "internal_port": 80},
            {"mode": "single_image", "image": "nginx", "internal_port": 70000},
            {"mode": "single_image", "image": "nginx", "internal_port": True},
            {"mode": "single_image", "image": "nginx", "internal_port": 80, "protocol": "udp"},
        ]
        for runtime in bad:
            with self.subTest(runtime=runtime):
                with self.assertRaises(ManifestError):
                    parse_runtime_options({"runtime": runtime})

    def test_single_image_render_source(self):
        challenge = SimpleNamespace(
            metadata={"runtime": {"mode": "single_image", "image": "nginx:alpine", "internal_port": 8080}},
            flag_mode="dynamic",
            compose_template="",
        )
        source = build_render_source(challenge)
        self.assertTrue(source.host_mapped)
        self.assertIn('"{{HOST_PORT}}:8080"', source.template)
        self.assertIn('image: "nginx:alpine"', source.template)

    def test_entrypoint_urls(self):
        runtime = make_runtime("/tmp/unused", public_host="ctf.example.com")
        compose = RenderSource(template="x", flag_mode="static", metadata={})
        self.assertEqual(resolve_entrypoint_url(compose, "10.30.4.0/24", runtime), "http://10.30.4.2")

        single = RenderSource("x", "static", {}, RuntimeMode.SINGLE_IMAGE, None)
        self.assertEqual(
            resolve_entrypoint_url(single, "10.30.4.0/24", runtime, "http://ctf.example.com:23456"),
            "http://ctf.example.com:23456",
        )
        with mock.patch("apps.instances.manifest._port_is_free", return_value=True), \
                mock.patch("apps.instances.manifest.random.randint", return_value=25000):
            self.assertEqual(resolve_entrypoint_url(single, "10.30.4.0/24", runtime), "http://ctf.example.com:25000")


class HeartbeatTokenTests(SimpleTestCase):
    def _instance(self, expires_in=None):
        started = timezone.now().replace(microsecond=0)
        expires = started + expires_in if expires_in is not None else None
        return SimpleNamespace(id=uuid.uuid4(), started_at=started, expires_at=expires)

    def _claims(self, instance):
        return jwt_provider.decode_claims(issue_heartbeat_token(instance), token_use=HEARTBEAT_TOKEN_USE)

    def test_token_tracks_instance_expiry(self):
        instance = self._instance(datetime.timedelta(hours=2))
        claims = self._claims(instance)
        self.assertEqual(claims["sub"], str(instance.id))
        self.assertEqual(claims["exp"], int(instance.expires_at.timestamp()) + 600)
        self.assertEqual(issue_heartbeat_token(instance), issue_heartbeat_token(instance))

    def test_token_lifetime_is_bounded(self):
        long_lived = self._instance(datetime.timedelta(hours=48))
        claims = self._claims(long_lived)
        self.assertEqual(claims["exp"] - claims["iat"], 86400)

        already_expired = self._instance(datetime.timedelta(hours=-1))
        claims = self._claims(already_expired)
        self.assertEqual(claims["exp"] - claims["iat"], 600)

        no_expiry = self._instance()
        claims = self._claims(no_expiry)
        self.assertEqual(claims["exp"] - claims["iat"], 86400)


class DynamicFlagTests(SimpleTestCase):
    def test_flag_format(self):
        challenge_id = uuid.uuid4()
        flag = generate_dynamic_flag(challenge_id)
        self.assertRegex(flag, FLAG_RE)
        self.assertTrue(flag.startswith("ctf{%s-" % challenge_id.hex[:8]))

    def test_provision_is_get_or_create(self):
        store = MemoryFlagStore()
        ids = dict(contest_id=uuid.uuid4(), challenge_id=uuid.uuid4(), team_id=uuid.uuid4())
        first = provision_dynamic_flag(store, **ids)
        self.assertEqual(provision_dynamic_flag(store, **ids), first)
        self.assertNotEqual(provision_dynamic_flag(store, **{**ids, "team_id": uuid.uuid4()}), first)

    @mock.patch("apps.instances.flags.redis_client.get_or_set", return_value="ctf{existing-000000000000}")
    def test_redis_store_uses_get_or_set(self, get_or_set):
        value = RedisFlagStore().get_or_create("flag:dynamic:a:b:c", lambda: "ctf{new}")
        self.assertEqual(value, "ctf{existing-000000000000}")
        get_or_set.assert_called_once_with("flag:dynamic:a:b:c", "ctf{new}")


class RenderTests(InstanceFixtureMixin, TestCase):
    def test_render_is_idempotent(self):
        instance = self.start().instance
        source = build_render_source(self.challenge)
        self.assertEqual(self.renderer.render(instance, source), self.renderer.render(instance, source))

    def test_ensure_rerenders_missing_manifest(self):
        instance = self.start().instance
        path = self.runtime.compose_file(instance.compose_project_name)
        original = path.read_text(encoding="utf-8")
        shutil.rmtree(path.parent)
        instance = Instance.objects.select_related("challenge").get(pk=instance.pk)
        self.assertEqual(self.renderer.ensure(instance), path)
        self.assertEqual(path.read_text(encoding="utf-8"), original)

    def test_custom_variables_and_reserved_values(self):
        self.challenge.compose_template = (
            "services:\n"
            "  web:\n"
            "    image: \"app:{{VAR:TAG}}\"\n"
            "    environment:\n"
            "      GATEWAY: \"{{GATEWAY_IP}}\"\n"
            "      PROJECT: \"{{PROJECT_NAME}}\"\n"
            "      REPORT_URL: \"{{HEARTBEAT_REPORT_URL}}\"\n"
            "      REPORT_TOKEN: \"{{HEARTBEAT_REPORT_TOKEN}}\"\n"
        )
        self.challenge.metadata = {"compose_variables": [{"name": "TAG", "default": "v1"}]}
        self.challenge.flag_mode = Challenge.FlagMode.STATIC
        self.challenge.save()
        instance = self.start().instance
        web = yaml.safe_load(self.compose_text(instance))["services"]["web"]
        self.assertEqual(web["image"], "app:v1")
        self.assertEqual(web["environment"]["GATEWAY"], subnet_host_ip(instance.subnet, 1))
        self.assertEqual(web["environment"]["PROJECT"], instance.compose_project_name)
        self.assertEqual(web["environment"]["REPORT_URL"], self.runtime.heartbeat_report_url)
        self.assertEqual(web["environment"]["REPORT_TOKEN"], issue_heartbeat_token(instance))
        # 静态 Flag 题目不生成动态 Flag
        self.assertIsNone(self.flag_store.get(dynamic_flag_key(self.contest.id, self.challenge.id, self.team.id)))


WIREGUARD_PEER_CONF = "[Interface]\r\nAddress = 10.13.13.2\r\n\r\n[Peer]\r\nEndpoint = ctf.example.com:25000\r\n"


def wireguard_response(text: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, text=text, request=httpx.Request("GET", "http://config.local/peer1/peer1.conf"))


class AccessModeTests(InstanceFixtureMixin, TestCase):
    """ssh_bastion / wireguard 接入：服务注入、入口地址、元数据与配置下载"""

    def setUp(self):
        super().setUp()
        self.runtime = make_runtime(
            self.runtime_root,
            public_host="ctf.example.com",
            wireguard_fetch_retries=3,
            wireguard_fetch_delay_seconds=0,
        )
        self.renderer = ManifestRenderer(self.runtime, self.flag_store)
        patcher = mock.patch("apps.instances.manifest._port_is_free", return_value=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    def use_access_mode(self, mode: str):
        self.challenge.metadata = {"runtime": {"access_mode": mode}}
        self.challenge.save(update_fields=["metadata"])

    def test_access_mode_aliases(self):
        cases = {
            None: AccessMode.DIRECT,
            "direct": AccessMode.DIRECT,
            "ssh-bastion": AccessMode.SSH_BASTION,
            " Bastion ": AccessMode.SSH_BASTION,
            "wg": AccessMode.WIREGUARD,
            "WireGuard": AccessMode.WIREGUARD,
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertIs(parse_access_mode(raw), expected)
        with self.assertRaises(ManifestError) as ctx:
            parse_access_mode("proxy")
        self.assertIn("allowed: direct,ssh_bastion,wireguard", ctx.exception.message)

        # 单镜像模式总是直连
        options = parse_runtime_options({"runtime": {
            "mode": "single_image", "image": "nginx", "internal_port": 80, "access_mode": "wireguard",
        }})
        self.assertIs(options.access_mode, AccessMode.DIRECT)

    def test_entrypoint_urls_per_access_mode(self):
        ssh = RenderSource("x", "static", {}, access_mode=AccessMode.SSH_BASTION)
        wg = RenderSource("x", "static", {}, access_mode=AccessMode.WIREGUARD)
        self.assertTrue(ssh.host_mapped)
        with mock.patch("apps.instances.manifest.random.randint", return_value=25000):
            self.assertEqual(resolve_entrypoint_url(ssh, "10.30.4.0/24", self.runtime), "ssh://ctf.example.com:25000")
            self.assertEqual(resolve_entrypoint_url(wg, "10.30.4.0/24", self.runtime), "wg://ctf.example.com:25000")
        self.assertEqual(
            resolve_entrypoint_url(wg, "10.30.4.0/24", self.runtime, "wg://ctf.example.com:31000"),
            "wg://ctf.example.com:31000",
        )

    def test_ssh_bastion_injects_gateway(self):
        self.use_access_mode("ssh_bastion")
        instance = self.start().instance
        self.assertRegex(instance.entrypoint_url, r"^ssh://ctf\.example\.com:\d+$")
        port = parse_entrypoint_host_port(instance.entrypoint_url)[1]

        document = yaml.safe_load(self.compose_text(instance))
        self.assertEqual(list(document["services"]), ["web", SSH_GATEWAY_SERVICE])
        gateway = document["services"][SSH_GATEWAY_SERVICE]
        self.assertEqual(gateway["image"], "linuxserver/openssh-server:latest")
        self.assertEqual(gateway["ports"], [f"{port}:2222"])
        self.assertEqual(gateway["networks"], [network_name(instance.compose_project_name)])
        self.assertEqual(gateway["environment"]["USER_NAME"], "ctf")
        self.assertEqual(gateway["environment"]["USER_PASSWORD"], ssh_gateway_password(instance))
        self.assertEqual(gateway["environment"]["SUDO_ACCESS"], "true")
        # 接入服务同样受资源限制约束
        self.assertEqual(gateway["cpus"], "1.00")
        self.assertFalse(wireguard_meta_path(self.runtime, instance.compose_project_name).exists())

        access = serialize_instance(instance)["network_access"]
        self.assertEqual(access["mode"], "ssh_bastion")
        self.assertEqual((access["host"], access["port"]), ("ctf.example.com", port))
        self.assertEqual(access["username"], "ctf")
        self.assertRegex(access["password"], r"^ctf[0-9a-f]{12}$")
        self.assertIsNone(access["download_url"])

    def test_ssh_password_is_stable_per_instance(self):
        instance = SimpleNamespace(id=uuid.uuid4(), team_id=uuid.uuid4(), challenge_id=uuid.uuid4())
        self.assertEqual(ssh_gateway_password(instance), ssh_gateway_password(instance))
        other = SimpleNamespace(id=uuid.uuid4(), team_id=instance.team_id, challenge_id=instance.challenge_id)
        self.assertNotEqual(ssh_gateway_password(instance), ssh_gateway_password(other))

    def test_reserved_service_name_is_rejected(self):
        text = "services:\n  ctf_access_gateway:\n    image: evil\n"
        with self.assertRaises(ManifestError) as ctx:
            inject_ssh_gateway(text, host_port=25000, username="ctf", password="pw")
        self.assertEqual(
            ctx.exception.message,
            "compose template reserves service name 'ctf_access_gateway', please rename your service",
        )
        with self.assertRaises(ManifestError):
            inject_wireguard(
                "services:\n  ctf_access_wireguard_config_api: {}\n",
                public_host="h", host_port=1, subnet="10.1.1.0/24", config_host_port=2,
            )
        with self.assertRaises(ManifestError) as ctx:
            inject_ssh_gateway("- a\n- b\n", host_port=25000, username="ctf", password="pw")
        self.assertEqual(ctx.exception.message, "rendered compose yaml root must be a mapping")

    def test_gateway_without_networks_or_services(self):
        document = yaml.safe_load(inject_ssh_gateway("version: '3'\n", host_port=25000, username="u", password="p"))
        self.assertNotIn("networks", document["services"][SSH_GATEWAY_SERVICE])

    def test_wireguard_injects_server_and_config_api(self):
        self.use_access_mode("wireguard")
        with mock.patch("apps.instances.manifest.random.randint", side_effect=[25000, 26000]):
            instance = self.start().instance
        self.assertEqual(instance.entrypoint_url, "wg://ctf.example.com:25000")

        document = yaml.safe_load(self.compose_text(instance))
        server = document["services"][WIREGUARD_SERVICE]
        self.assertEqual(server["ports"], ["25000:51820/udp"])
        self.assertEqual(server["cap_add"], ["NET_ADMIN"])
        self.assertEqual(server["sysctls"], {"net.ipv4.conf.all.src_valid_mark": "1"})
        self.assertEqual(server["environment"]["SERVERURL"], "ctf.example.com")
        self.assertEqual(server["environment"]["SERVERPORT"], "25000")
        self.assertEqual(server["environment"]["ALLOWEDIPS"], instance.subnet)
        self.assertEqual(server["networks"], [network_name(instance.compose_project_name)])

        config_api = document["services"][WIREGUARD_CONFIG_SERVICE]
        self.assertEqual(config_api["ports"], ["26000:8000"])
        self.assertEqual(config_api["depends_on"], [WIREGUARD_SERVICE])
        self.assertEqual(config_api["volumes"], ["ctf_access_wireguard_config:/config:ro"])
        self.assertEqual(config_api["entrypoint"][:2], ["sh", "-lc"])
        self.assertIn("/config/peer1/peer1.conf", config_api["entrypoint"][2])
        self.assertEqual(document["volumes"], {"ctf_access_wireguard_config": {}})

        self.assertEqual(read_wireguard_config_port(self.runtime, instance.compose_project_name), 26000)
        access = serialize_instance(instance)["network_access"]
        self.assertEqual(access["mode"], "wireguard")
        self.assertIsNone(access["password"])
        self.assertEqual(
            access["download_url"],
            f"/api/instances/{self.contest.id}/{self.challenge.id}/wireguard-config/",
        )

    def test_wireguard_rerender_keeps_config_port(self):
        self.use_access_mode("wireguard")
        with mock.patch("apps.instances.manifest.random.randint", side_effect=[25000, 26000]):
            instance = self.start().instance
        with mock.patch("apps.instances.manifest.random.randint", return_value=27000):
            self.service(ResetInstanceService).execute(self.user, self.action())
        self.assertEqual(read_wireguard_config_port(self.runtime, instance.compose_project_name), 26000)
        self.assertEqual(Instance.objects.get().entrypoint_url, "wg://ctf.example.com:25000")

    def test_switching_to_direct_clears_wireguard_meta(self):
        self.use_access_mode("wireguard")
        instance = self.start().instance
        meta = wireguard_meta_path(self.runtime, instance.compose_project_name)
        self.assertTrue(meta.exists())
        self.renderer.write(instance, RenderSource(COMPOSE_TEMPLATE, "dynamic", {}))
        self.assertFalse(meta.exists())

    def test_destroy_removes_wireguard_meta(self):
        self.use_access_mode("wireguard")
        instance = self.start().instance
        meta = wireguard_meta_path(self.runtime, instance.compose_project_name)
        self.assertTrue(meta.exists())
        self.service(DestroyInstanceService).execute(self.user, self.action())
        self.assertFalse(meta.exists())

    @mock.patch("apps.instances.access.httpx.get")
    def test_wireguard_config_is_fetched_with_retries(self, http_get):
        self.use_access_mode("wireguard")
        with mock.patch("apps.instances.manifest.random.randint", side_effect=[25000, 26000]):
            instance = self.start().instance
        http_get.side_effect = [
            httpx.ConnectError("connection refused"),
            wireguard_response("wireguard config not ready\n", status_code=503),
            wireguard_response(WIREGUARD_PEER_CONF),
        ]
        config = self.service(WireguardConfigService).execute(self.user, self.action())
        self.assertEqual(http_get.call_count, 3)
        self.assertEqual(http_get.call_args.args[0], "http://host.docker.internal:26000/peer1/peer1.conf")
        self.assertNotIn("\r", config["content"])
        self.assertIn("[Peer]", config["content"])
        self.assertEqual(config["endpoint"], instance.entrypoint_url)
        self.assertEqual(
            config["filename"],
            f"{self.contest.id.hex}-{self.challenge.id.hex}-{self.team.id.hex}.conf",
        )

    @mock.patch("apps.instances.access.httpx.get")
    def test_wireguard_config_not_ready(self, http_get):
        self.use_access_mode("wireguard")
        self.start()
        http_get.return_value = wireguard_response("[Interface]\nPrivateKey = x\n")
        with self.assertRaises(ValidationError) as ctx:
            self.service(WireguardConfigService).execute(self.user, self.action())
        self.assertEqual(ctx.exception.message, "wireguard config is not ready: wireguard config is not ready yet")
        self.assertEqual(http_get.call_count, 3)

    @mock.patch("apps.instances.access.httpx.get")
    def test_wireguard_config_rejects_other_instances(self, http_get):
        self.start()
        with self.assertRaises(ValidationError) as ctx:
            self.service(WireguardConfigService).execute(self.user, self.action())
        self.assertEqual(ctx.exception.message, "instance access mode is not wireguard")

        self.service(DestroyInstanceService).execute(self.user, self.action())
        with self.assertRaises(ValidationError) as ctx:
            self.service(WireguardConfigService).execute(self.user, self.action())
        self.assertEqual(ctx.exception.message, MSG_ALREADY_DESTROYED)
        http_get.assert_not_called()

    def test_missing_meta_is_reported(self):
        with self.assertRaises(ValidationError) as ctx:
            fetch_wireguard_config(self.runtime, "ctf_missing")
        self.assertEqual(ctx.exception.message, "wireguard access metadata is missing")


class ReaperTests(InstanceFixtureMixin, TestCase):
    def test_expiry_reaper_only_touches_expired_rows(self):
        now = timezone.now()
        expired = [
            self.make_instance(self.make_team(f"old-{i}"), index=i, expires_at=now - datetime.timedelta(minutes=i + 1))
            for i in range(2)
        ]
        fresh = [
            self.make_instance(self.make_team(f"new-{i}"), index=10 + i, expires_at=now + datetime.timedelta(hours=1))
            for i in range(3)
        ]
        summary = self.reaper().reap_expired(now=now)
        self.assertEqual(summary.as_dict(), {"scanned": 2, "reaped": 2, "failed": 0, "skipped": 0})
        # 最早过期的优先
        self.assertEqual(
            [call[1] for call in self.runner.calls],
            [expired[1].compose_project_name, expired[0].compose_project_name],
        )
        for instance in expired:
            instance.refresh_from_db()
            self.assertEqual(instance.status, Instance.Status.DESTROYED)
            self.assertIsNone(instance.expires_at)
            self.assertFalse(self.runtime.project_dir(instance.compose_project_name).exists())
        for instance in fresh:
            instance.refresh_from_db()
            self.assertEqual(instance.status, Instance.Status.RUNNING)

    def test_failed_teardown_is_marked_and_batch_continues(self):
        now = timezone.now()
        broken = self.make_instance(self.make_team("broken"), index=1, expires_at=now - datetime.timedelta(minutes=5))
        healthy = self.make_instance(self.make_team("healthy"), index=2, expires_at=now - datetime.timedelta(minutes=1))
        self.runner.fail_projects.add(broken.compose_project_name)

        summary = self.reaper().reap_expired(now=now)
        self.assertEqual((summary.scanned, summary.reaped, summary.failed), (2, 1, 1))
        broken.refresh_from_db()
        healthy.refresh_from_db()
        self.assertEqual(broken.status, Instance.Status.FAILED)
        self.assertIsNone(broken.expires_at)
        self.assertEqual(healthy.status, Instance.Status.DESTROYED)

    def test_batch_size_is_respected(self):
        now = timezone.now()
        for i in range(3):
            self.make_instance(self.make_team(f"t-{i}"), index=i, expires_at=now - datetime.timedelta(minutes=1))
        summary = self.reaper().reap_expired(batch_size=2, now=now)
        self.assertEqual(summary.scanned, 2)
        self.assertEqual(Instance.objects.exclude(status=Instance.Status.DESTROYED).count(), 1)

    def test_reaper_losing_race_to_user_is_skipped(self):
        now = timezone.now()
        instance = self.make_instance(self.make_team("racer"), index=4, expires_at=now - datetime.timedelta(minutes=1))

        def user_stops_first(project_name):
            Instance.objects.filter(compose_project_name=project_name).update(status=Instance.Status.STOPPED)

        self.runner.hooks["down"] = user_stops_first
        summary = self.reaper().reap_expired(now=now)
        self.assertEqual((summary.reaped, summary.skipped), (0, 1))
        instance.refresh_from_db()
        self.assertEqual(instance.status, Instance.Status.STOPPED)

    def test_stale_reaper_selects_running_unexpired_rows(self):
        now = timezone.now()
        stale = self.make_instance(
            self.make_team("stale"), index=1,
            expires_at=now + datetime.timedelta(hours=1),
            last_heartbeat_at=now - datetime.timedelta(minutes=10),
        )
        alive = self.make_instance(
            self.make_team("alive"), index=2,
            expires_at=now + datetime.timedelta(hours=1),
            last_heartbeat_at=now - datetime.timedelta(seconds=10),
        )
        expired = self.make_instance(
            self.make_team("expired"), index=3,
            expires_at=now - datetime.timedelta(minutes=1),
            last_heartbeat_at=now - datetime.timedelta(minutes=10),
        )
        summary = self.reaper().reap_stale(now=now)
        self.assertEqual((summary.scanned, summary.reaped), (1, 1))
        self.assertEqual(self.runner.calls, [("down", stale.compose_project_name, {})])
        stale.refresh_from_db()
        alive.refresh_from_db()
        expired.refresh_from_db()
        self.assertEqual(stale.status, Instance.Status.DESTROYED)
        self.assertEqual(alive.status, Instance.Status.RUNNING)
        self.assertEqual(expired.status, Instance.Status.RUNNING)

    def test_destroy_for_contest(self):
        self.make_instance(self.make_team("a"), index=1, status=Instance.Status.STOPPED)
        self.make_instance(self.make_team("b"), index=2, status=Instance.Status.DESTROYED)
        summary = self.reaper().destroy_for_contest(self.contest.id)
        self.assertEqual(summary.as_dict(), {"scanned": 2, "reaped": 1, "failed": 0, "skipped": 1})
        self.assertFalse(Instance.objects.exclude(status=Instance.Status.DESTROYED).exists())

    @mock.patch("apps.instances.tasks.InstanceReaper")
    def test_task_returns_summary(self, reaper_cls):
        reaper_cls.return_value.reap_expired.return_value = ReaperSummary(scanned=3, reaped=2, failed=1)
        result = reap_expired_instances()
        self.assertEqual(result, {"scanned": 3, "reaped": 2, "failed": 1, "skipped": 0})


class TransitionTableTests(SimpleTestCase):
    def test_expected_edges(self):
        self.assertTrue(can_transition("creating", "running"))
        self.assertTrue(can_transition("running", "stopped"))
        self.assertTrue(can_transition("destroyed", "creating"))
        self.assertTrue(can_transition("failed", "failed"))
        self.assertFalse(can_transition("destroyed", "running"))
        self.assertFalse(can_transition("stopped", "running"))
        self.assertTrue(can_transition("creating", "creating"))
        self.assertTrue(can_transition("failed", "stopped"))
        self.assertTrue(can_transition("stopped", "stopped"))
        self.assertTrue(can_transition("creating", "stopped"))

    def test_expired_is_unreachable(self):
        self.assertFalse(any(can_transition(source, "expired") for source in TRANSITIONS))
        self.assertEqual(set(TRANSITIONS), set(Instance.Status.values))

    def test_ensure_transition_raises(self):
        with self.assertRaises(InvalidTransitionError) as ctx:
            ensure_transition("destroyed", "stopped")
        self.assertEqual(ctx.exception.message, "instance cannot move from destroyed to stopped")
        self.assertEqual(ctx.exception.http_status, 409)

    def test_sources_for(self):
        self.assertEqual(
            set(sources_for("creating")),
            {"creating", "running", "stopped", "failed", "destroyed", "expired"},
        )

    def test_repo_transition_guards_status(self):
        repo = InstanceRepo()
        with self.assertRaises(InvalidTransitionError):
            repo.transition(uuid.uuid4(), target="running", expected=["stopped"])


class RuntimeSettingsTests(SimpleTestCase):
    @override_settings(
        INSTANCE_RUNTIME_ROOT="relative/instances",
        INSTANCE_DEFAULT_CPU_LIMIT=100,
        INSTANCE_DEFAULT_MEMORY_LIMIT_MB=10,
        INSTANCE_HEARTBEAT_STALE_SECONDS=5,
        INSTANCE_REAPER_BATCH_SIZE=1000,
        INSTANCE_HEARTBEAT_REPORT_INTERVAL_SECONDS=1,
        COMPOSE_COMMAND_TIMEOUT_SECONDS=1,
    )
    def test_values_are_clamped(self):
        runtime = RuntimeSettings.load()
        self.assertTrue(runtime.runtime_root.is_absolute())
        self.assertEqual(runtime.cpu_limit, "64.00")
        self.assertEqual(runtime.memory_limit_mb, 64)
        self.assertEqual(runtime.heartbeat_stale_seconds, 60)
        self.assertEqual(runtime.reaper_batch_size, 500)
        self.assertEqual(runtime.heartbeat_interval_seconds, 5)
        self.assertEqual(runtime.compose_timeout_seconds, 5)
        self.assertEqual(
            runtime.compose_file("ctf_a_b_c"),
            runtime.runtime_root / "ctf_a_b_c" / "docker-compose.generated.yml",
        )

    @override_settings(INSTANCE_DEFAULT_CPU_LIMIT=0, INSTANCE_DEFAULT_MEMORY_LIMIT_MB=-1)
    def test_non_positive_limits_disable(self):
        runtime = RuntimeSettings.load()
        self.assertIsNone(runtime.cpu_limit)
        self.assertIsNone(runtime.memory_limit_mb)


class InstanceAPITests(AuthenticatedAPIMixin, InstanceFixtureMixin, APITestCase):
    """接口层：统一响应结构与错误码"""

    def setUp(self):
        super().setUp()
        patchers = [
            mock.patch("apps.instances.services.ComposeRunner", return_value=self.runner),
            mock.patch("apps.instances.manifest.RedisFlagStore", return_value=self.flag_store),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)
        override = override_settings(INSTANCE_RUNTIME_ROOT=self.runtime_root)
        override.enable()
        self.addCleanup(override.disable)
        self.api = self.auth_client(self.user)
        self.body = {"contest_id": str(self.contest.id), "challenge_id": str(self.challenge.id)}

    def test_start_then_start_again(self):
        resp = self.api.post("/api/instances/start/", self.body, format="json")
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.data["code"], 0)
        self.assertEqual(resp.data["message"], MSG_STARTED)
        instance = resp.data["data"]["instance"]
        self.assertEqual(instance["status"], "running")
        self.assertEqual(instance["message"], MSG_STARTED)
        self.assertRegex(instance["subnet"], SUBNET_RE)

        again = self.api.post("/api/instances/start/", self.body, format="json")
        self.assertEqual(again.status_code, 200)
        self.assertEqual(again.data["message"], MSG_ALREADY_RUNNING)
        self.assertEqual(again.data["data"]["instance"]["id"], instance["id"])
        self.assertEqual(self.runner.actions(), ["up"])

    def test_query_stop_and_destroy(self):
        self.api.post("/api/instances/start/", self.body, format="json")
        query_url = f"/api/instances/{self.contest.id}/{self.challenge.id}/"
        self.assertEqual(self.api.get(query_url).data["data"]["instance"]["status"], "running")

        stopped = self.api.post("/api/instances/stop/", self.body, format="json")
        self.assertEqual(stopped.status_code, 200)
        self.assertEqual(stopped.data["data"]["instance"]["status"], "stopped")

        destroyed = self.api.post("/api/instances/destroy/", self.body, format="json")
        self.assertEqual(destroyed.data["data"]["instance"]["status"], "destroyed")
        again = self.api.post("/api/instances/destroy/", self.body, format="json")
        self.assertEqual(again.status_code, 200)
        self.assertEqual(again.data["message"], MSG_ALREADY_DESTROYED)

    def test_stop_without_instance(self):
        resp = self.api.post("/api/instances/stop/", self.body, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data["code"], 49001)
        self.assertEqual(resp.data["message"], "instance not found")

    def test_invalid_identifiers(self):
        resp = self.api.post("/api/instances/start/", {"contest_id": "nope", "challenge_id": "x"}, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data["message"], "invalid contest_id")
        missing = self.api.post("/api/instances/start/", {"contest_id": str(self.contest.id)}, format="json")
        self.assertEqual(missing.data["message"], "missing required fields")

    def test_authentication_required(self):
        resp = self.anon_client().post("/api/instances/start/", self.body, format="json")
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.data["code"], 40100)

    def test_private_contest_is_forbidden(self):
        self.contest.visibility = Contest.Visibility.PRIVATE
        self.contest.save(update_fields=["visibility"])
        resp = self.api.post("/api/instances/start/", self.body, format="json")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.data["code"], 40300)

    def test_compose_failure_is_reported(self):
        self.runner.fail["up"] = ComposeCommandError(message="compose up failed: pull access denied")
        resp = self.api.post("/api/instances/start/", self.body, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data["code"], 49020)
        self.assertEqual(resp.data["message"], "compose up failed: pull access denied")
        self.assertEqual(Instance.objects.get().status, Instance.Status.FAILED)

    def test_heartbeats(self):
        self.api.post("/api/instances/start/", self.body, format="json")
        resp = self.api.post("/api/instances/heartbeat/", self.body, format="json")
        self.assertEqual(resp.status_code, 200)
        self.assertIsNotNone(resp.data["data"]["instance"]["last_heartbeat_at"])

        token = issue_heartbeat_token(Instance.objects.get())
        anon = self.anon_client()
        reported = anon.post("/api/instances/heartbeat/report/", {"token": token}, format="json")
        self.assertEqual(reported.status_code, 200)
        self.assertEqual(reported.data["message"], MSG_HEARTBEAT_REPORTED)

        rejected = anon.post("/api/instances/heartbeat/report/", {"token": "forged"}, format="json")
        self.assertEqual(rejected.status_code, 401)
        self.assertEqual(rejected.data["code"], 40102)

    @override_settings(
        INSTANCE_PUBLIC_HOST="ctf.example.com",
        INSTANCE_WIREGUARD_CONFIG_FETCH_RETRIES=2,
        INSTANCE_WIREGUARD_CONFIG_FETCH_DELAY_SECONDS=0,
    )
    @mock.patch("apps.instances.access.httpx.get")
    @mock.patch("apps.instances.manifest._port_is_free", return_value=True)
    def test_wireguard_config_download(self, _port_is_free, http_get):
        self.challenge.metadata = {"runtime": {"access_mode": "wg"}}
        self.challenge.save(update_fields=["metadata"])
        started = self.api.post("/api/instances/start/", self.body, format="json")
        access = started.data["data"]["instance"]["network_access"]
        self.assertEqual(access["mode"], "wireguard")
        self.assertEqual(access["host"], "ctf.example.com")

        http_get.return_value = wireguard_response(WIREGUARD_PEER_CONF)
        resp = self.api.get(access["download_url"])
        self.assertEqual(resp.status_code, 200)
        config = resp.data["data"]["config"]
        self.assertEqual(config["endpoint"], started.data["data"]["instance"]["entrypoint_url"])
        self.assertTrue(config["filename"].endswith(f"{self.team.id.hex}.conf"))
        self.assertIn("[Interface]", config["content"])

        http_get.side_effect = httpx.ConnectError("connection refused")
        failed = self.api.get(access["download_url"])
        self.assertEqual(failed.status_code, 400)
        self.assertEqual(failed.data["message"], "wireguard config is not ready: connection refused")
        self.assertEqual(http_get.call_count, 3)

    def test_wireguard_config_for_direct_instance(self):
        self.api.post("/api/instances/start/", self.body, format="json")
        resp = self.api.get(f"/api/instances/{self.contest.id}/{self.challenge.id}/wireguard-config/")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data["message"], "instance access mode is not wireguard")
