# -*- coding: utf-8 -*-
"""
公共模块单测：
- 编排命令执行器（后端回退、超时、自愈、诊断信息）
- 自定义用途 JWT 的签发与校验
- Redis get-or-set 语义
- 全局异常处理器的统一响应结构
"""

from __future__ import annotations

import subprocess
import time
from pathlib import Path
from unittest import mock

import redis
from django.db import IntegrityError
from django.http import Http404
from django.test import SimpleTestCase, override_settings

from apps.common.exception_handler import custom_exception_handler
from apps.common.exceptions import (
    CacheUnavailableError,
    ComposeCommandError,
    ComposeTimeoutError,
    ComposeUnavailableError,
    InvalidTransitionError,
    TokenError,
    ValidationError,
)
from apps.common.infra import jwt_provider, redis_client
from apps.common.infra.compose_runner import (
    DIAGNOSTIC_MAX_CHARS,
    FALLBACK_DIAGNOSTIC,
    ComposeRunner,
    compact_diagnostic,
    looks_like_legacy_only,
    resolve_timeout,
)

COMPOSE_FILE = Path("/tmp/ctf_test/docker-compose.generated.yml")
PROJECT = "ctf_aaaaaaaa_bbbbbbbb_cccccccc"


def _proc(returncode: int = 0, stdout: str = "", stderr: str = "", timeout: bool = False):
    """构造一个假的 Popen 对象"""
    proc = mock.MagicMock()
    proc.pid = 4242
    proc.returncode = returncode
    if timeout:
        proc.communicate.side_effect = [subprocess.TimeoutExpired(cmd="docker", timeout=5), ("", "")]
    else:
        proc.communicate.return_value = (stdout, stderr)
    return proc


@override_settings(COMPOSE_PRIMARY_BINARY="docker", COMPOSE_LEGACY_BINARY="docker-compose")
class ComposeRunnerTests(SimpleTestCase):
    """编排执行器：只模拟子进程，不依赖真实 docker"""

    def _runner(self) -> ComposeRunner:
        return ComposeRunner(timeout_seconds=30)

    @mock.patch("apps.common.infra.compose_runner.subprocess.Popen")
    def test_primary_backend_success(self, popen):
        popen.return_value = _proc(stdout="started")
        output = self._runner().up(COMPOSE_FILE, PROJECT)
        self.assertEqual(output, "started")
        argv = popen.call_args[0][0]
        self.assertEqual(
            argv,
            ["docker", "compose", "-f", str(COMPOSE_FILE), "-p", PROJECT, "up", "-d", "--remove-orphans"],
        )
        self.assertTrue(popen.call_args.kwargs["start_new_session"])

    @mock.patch("apps.common.infra.compose_runner.subprocess.Popen")
    def test_missing_primary_binary_falls_back_to_legacy(self, popen):
        popen.side_effect = [FileNotFoundError(), _proc(stdout="ok")]
        self._runner().stop(COMPOSE_FILE, PROJECT)
        self.assertEqual(popen.call_count, 2)
        self.assertEqual(popen.call_args_list[1][0][0][:1], ["docker-compose"])

    @mock.patch("apps.common.infra.compose_runner.subprocess.Popen")
    def test_unsupported_subcommand_falls_back_to_legacy(self, popen):
        popen.side_effect = [
            _proc(returncode=1, stderr="docker: 'compose' is not a docker command."),
            _proc(stdout="ok"),
        ]
        self._runner().down(COMPOSE_FILE, PROJECT)
        self.assertEqual(popen.call_count, 2)
        self.assertEqual(
            popen.call_args_list[1][0][0],
            ["docker-compose", "-f", str(COMPOSE_FILE), "-p", PROJECT, "down", "--volumes", "--remove-orphans"],
        )

    @mock.patch("apps.common.infra.compose_runner.subprocess.Popen")
    def test_all_backends_missing_raises_unavailable(self, popen):
        popen.side_effect = FileNotFoundError()
        with self.assertRaises(ComposeUnavailableError) as ctx:
            self._runner().stop(COMPOSE_FILE, PROJECT)
        self.assertIn("docker compose", ctx.exception.message)
        self.assertIn("docker-compose", ctx.exception.message)

    @mock.patch("apps.common.infra.compose_runner.subprocess.Popen")
    def test_hard_failure_does_not_try_next_backend(self, popen):
        popen.return_value = _proc(returncode=1, stderr="Error response from daemon:\n  pull access denied")
        with self.assertRaises(ComposeCommandError) as ctx:
            self._runner().stop(COMPOSE_FILE, PROJECT)
        self.assertEqual(popen.call_count, 1)
        self.assertEqual(ctx.exception.message, "compose stop failed: Error response from daemon: pull access denied")

    @mock.patch("apps.common.infra.compose_runner.os.killpg")
    @mock.patch("apps.common.infra.compose_runner.subprocess.Popen")
    def test_timeout_kills_process_group_without_fallback(self, popen, killpg):
        popen.return_value = _proc(timeout=True)
        with self.assertRaises(ComposeTimeoutError) as ctx:
            self._runner().down(COMPOSE_FILE, PROJECT)
        self.assertEqual(popen.call_count, 1)
        killpg.assert_called_once()
        self.assertEqual(killpg.call_args[0][0], 4242)
        self.assertIn("timed out after 30 seconds", ctx.exception.message)

    @mock.patch("apps.common.infra.compose_runner.subprocess.Popen")
    def test_up_self_heals_once_with_force_recreate(self, popen):
        popen.side_effect = [
            _proc(returncode=1, stderr="network conflict"),
            _proc(stdout="removed"),
            _proc(stdout="recreated"),
        ]
        output = self._runner().up(COMPOSE_FILE, PROJECT)
        self.assertEqual(output, "recreated")
        self.assertEqual(popen.call_count, 3)
        self.assertIn("down", popen.call_args_list[1][0][0])
        self.assertIn("--force-recreate", popen.call_args_list[2][0][0])

    @mock.patch("apps.common.infra.compose_runner.subprocess.Popen")
    def test_up_self_heal_failure_keeps_original_diagnostic(self, popen):
        popen.side_effect = [
            _proc(returncode=1, stderr="port is already allocated"),
            _proc(returncode=1, stderr="down failed"),
            _proc(returncode=1, stderr="still broken"),
        ]
        with self.assertRaises(ComposeCommandError) as ctx:
            self._runner().up(COMPOSE_FILE, PROJECT)
        self.assertIn("port is already allocated", ctx.exception.message)
        self.assertIn("self-heal", ctx.exception.message)

    @mock.patch("apps.common.infra.compose_runner.subprocess.Popen")
    def test_up_without_self_heal_raises_first_error(self, popen):
        popen.return_value = _proc(returncode=1, stderr="bad image")
        with self.assertRaises(ComposeCommandError):
            self._runner().up(COMPOSE_FILE, PROJECT, self_heal=False)
        self.assertEqual(popen.call_count, 1)


class ComposeDiagnosticTests(SimpleTestCase):
    def test_prefers_stderr_then_stdout_then_fallback(self):
        self.assertEqual(compact_diagnostic("out", "err"), "err")
        self.assertEqual(compact_diagnostic("out", "  "), "out")
        self.assertEqual(compact_diagnostic("", ""), FALLBACK_DIAGNOSTIC)

    def test_collapses_whitespace_and_truncates(self):
        text = compact_diagnostic("", "line1\n\tline2   " + "x" * 500)
        self.assertTrue(text.startswith("line1 line2 "))
        self.assertEqual(len(text), DIAGNOSTIC_MAX_CHARS + 3)
        self.assertTrue(text.endswith("..."))

    def test_legacy_only_markers(self):
        self.assertTrue(looks_like_legacy_only('unknown command "compose" for "docker"'))
        self.assertTrue(looks_like_legacy_only("unknown shorthand flag: 'f' in -f"))
        self.assertFalse(looks_like_legacy_only("no such image"))

    @override_settings(COMPOSE_COMMAND_TIMEOUT_SECONDS=9999)
    def test_timeout_is_clamped(self):
        self.assertEqual(resolve_timeout(), 600)
        self.assertEqual(resolve_timeout(1), 5)
        self.assertEqual(resolve_timeout("abc"), 120)


class JWTProviderTests(SimpleTestCase):
    def _claims(self, **overrides):
        now = int(time.time())
        claims = {"sub": "abc", "token_use": "instance_heartbeat", "iat": now, "exp": now + 600}
        claims.update(overrides)
        return claims

    def test_encode_is_deterministic_and_round_trips(self):
        claims = self._claims()
        token = jwt_provider.encode_claims(claims)
        self.assertEqual(token, jwt_provider.encode_claims(claims))
        self.assertEqual(jwt_provider.decode_claims(token, token_use="instance_heartbeat")["sub"], "abc")

    def test_token_use_mismatch_is_rejected(self):
        token = jwt_provider.encode_claims(self._claims(token_use="other"))
        with self.assertRaises(TokenError):
            jwt_provider.decode_claims(token, token_use="instance_heartbeat")

    def test_expired_or_tampered_token_is_rejected(self):
        expired = jwt_provider.encode_claims(self._claims(iat=1, exp=2))
        with self.assertRaises(TokenError):
            jwt_provider.decode_claims(expired, token_use="instance_heartbeat")
        with self.assertRaises(TokenError):
            jwt_provider.decode_claims("not-a-token", token_use="instance_heartbeat")
        with self.assertRaises(TokenError):
            jwt_provider.decode_claims("", token_use="instance_heartbeat")


class RedisGetOrSetTests(SimpleTestCase):
    @mock.patch("apps.common.infra.redis_client._get_client")
    def test_first_writer_wins(self, get_client):
        client = get_client.return_value
        client.set.return_value = True
        self.assertEqual(redis_client.get_or_set("k", "v1"), "v1")
        client.set.assert_called_once_with("k", "v1", nx=True, ex=None)

    @mock.patch("apps.common.infra.redis_client._get_client")
    def test_existing_value_is_returned(self, get_client):
        client = get_client.return_value
        client.set.return_value = None
        client.get.return_value = "v0"
        self.assertEqual(redis_client.get_or_set("k", "v1"), "v0")

    @mock.patch("apps.common.infra.redis_client._get_client")
    def test_unavailable_redis_raises(self, get_client):
        get_client.return_value.set.side_effect = redis.ConnectionError("refused")
        with self.assertRaises(CacheUnavailableError):
            redis_client.get_or_set("k", "v1")


class ExceptionHandlerTests(SimpleTestCase):
    def test_biz_error_is_wrapped(self):
        resp = custom_exception_handler(ValidationError(message="contest is not running"), {})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data["code"], 40002)
        self.assertEqual(resp.data["message"], "contest is not running")
        self.assertIsNone(resp.data["data"])

    def test_invalid_transition_is_conflict(self):
        exc = InvalidTransitionError(message="instance cannot move from destroyed to running")
        resp = custom_exception_handler(exc, {})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data["code"], 49012)

    def test_unexpected_error_returns_500(self):
        resp = custom_exception_handler(RuntimeError("boom"), {})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.data["code"], 50000)
        self.assertEqual(resp.data["message"], "internal server error")

    def test_integrity_error_maps_to_conflict(self):
        resp = custom_exception_handler(IntegrityError("UNIQUE constraint failed"), {})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data["code"], 40900)

    def test_django_404_maps_to_not_found(self):
        resp = custom_exception_handler(Http404("missing"), {})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.data["message"], "resource not found")
