"""
编排命令执行器：驱动 docker compose 对单个项目执行 up / stop / down

- 后端按顺序尝试：集成子命令 `docker compose` → 独立命令 `docker-compose`
- 每个后端返回三种结果之一：成功 / 可重试的不匹配（命令缺失或子命令不被支持）/ 硬失败
- 超时直接失败，不再尝试其它后端；子进程运行在独立会话中，超时会整组杀掉
- 失败信息压缩为单行诊断（stderr → stdout → 固定提示），截断到 240 字符
"""

from __future__ import annotations

import enum
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from django.conf import settings

from apps.common.exceptions import (
    ComposeCommandError,
    ComposeError,
    ComposeTimeoutError,
    ComposeUnavailableError,
)
from apps.common.infra.logger import get_logger, logger_extra
from apps.common.utils.time import clamp

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120
MIN_TIMEOUT_SECONDS = 5
MAX_TIMEOUT_SECONDS = 600
DIAGNOSTIC_MAX_CHARS = 240
FALLBACK_DIAGNOSTIC = "compose command failed"

# 集成子命令不可用时 docker CLI 的典型报错
_UNSUPPORTED_SUBCOMMAND_MARKERS = (
    "is not a docker command",
    'unknown command "compose"',
    "docker: 'compose' is not",
)
_LEGACY_FLAG_HINTS = ("in -f", "in -p", "see 'docker --help'")


class Outcome(enum.Enum):
    SUCCESS = "success"
    MISMATCH = "mismatch"
    FAILURE = "failure"


@dataclass(frozen=True)
class CommandResult:
    """单个后端的执行结果"""

    outcome: Outcome
    stdout: str = ""
    stderr: str = ""
    returncode: Optional[int] = None
    #: 可执行文件不存在（与子命令不被支持区分，用于最终的“命令不可用”提示）
    missing_binary: bool = False

    @property
    def diagnostic(self) -> str:
        return compact_diagnostic(self.stdout, self.stderr)


def compact_diagnostic(stdout: str, stderr: str) -> str:
    """stderr 优先，其次 stdout，都为空时使用固定提示；压成单行并截断"""
    raw = (stderr or "").strip() or (stdout or "").strip() or FALLBACK_DIAGNOSTIC
    single_line = " ".join(raw.split())
    if len(single_line) > DIAGNOSTIC_MAX_CHARS:
        return single_line[:DIAGNOSTIC_MAX_CHARS] + "..."
    return single_line


def looks_like_legacy_only(message: str) -> bool:
    """判断失败信息是否说明当前 docker 不支持 `compose` 子命令"""
    lowered = (message or "").lower()
    if any(marker in lowered for marker in _UNSUPPORTED_SUBCOMMAND_MARKERS):
        return True
    return "unknown shorthand flag" in lowered and any(hint in lowered for hint in _LEGACY_FLAG_HINTS)


def _kill_process_group(proc: subprocess.Popen) -> None:
    """杀掉子进程所在的整个进程组，避免 compose 派生的子进程残留"""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, OSError):
        # 进程可能已经退出
        try:
            proc.kill()
        except ProcessLookupError:
            pass


@dataclass(frozen=True)
class ComposeBackend:
    """
    一种 compose 调用方式

    - program：命令前缀，如 ("docker", "compose") 或 ("docker-compose",)
    - detect_mismatch：是否把“子命令不被支持”识别为可重试的不匹配
    """

    name: str
    program: tuple[str, ...]
    detect_mismatch: bool = False

    def command(self, compose_file: Path, project_name: str, args: Sequence[str]) -> list[str]:
        return [*self.program, "-f", str(compose_file), "-p", project_name, *args]

    def run(self, compose_file: Path, project_name: str, args: Sequence[str], *, timeout: int, action: str) -> CommandResult:
        argv = self.command(compose_file, project_name, args)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(compose_file.parent),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except FileNotFoundError:
            return CommandResult(Outcome.MISMATCH, missing_binary=True)

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            _kill_process_group(proc)
            proc.communicate()
            raise ComposeTimeoutError(message=f"{action} timed out after {timeout} seconds") from exc

        if proc.returncode == 0:
            return CommandResult(Outcome.SUCCESS, stdout=stdout, stderr=stderr, returncode=0)
        if self.detect_mismatch and looks_like_legacy_only(f"{stderr}\n{stdout}"):
            return CommandResult(Outcome.MISMATCH, stdout=stdout, stderr=stderr, returncode=proc.returncode)
        return CommandResult(Outcome.FAILURE, stdout=stdout, stderr=stderr, returncode=proc.returncode)


def default_backends() -> list[ComposeBackend]:
    primary = getattr(settings, "COMPOSE_PRIMARY_BINARY", "docker")
    legacy = getattr(settings, "COMPOSE_LEGACY_BINARY", "docker-compose")
    return [
        ComposeBackend(name="docker compose", program=(primary, "compose"), detect_mismatch=True),
        ComposeBackend(name="docker-compose", program=(legacy,)),
    ]


def resolve_timeout(value: Optional[int] = None) -> int:
    """读取并约束超时秒数到 [5, 600]"""
    if value is None:
        value = getattr(settings, "COMPOSE_COMMAND_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        seconds = DEFAULT_TIMEOUT_SECONDS
    return int(clamp(seconds, MIN_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS))


class ComposeRunner:
    """
    对外的编排执行入口，供运行实例服务与回收任务共用

        runner = ComposeRunner()
        runner.up(compose_file, "ctf_1a2b3c4d_...", force_recreate=True)
    """

    def __init__(self, backends: Optional[Sequence[ComposeBackend]] = None, timeout_seconds: Optional[int] = None):
        self.backends = list(backends) if backends is not None else default_backends()
        self.timeout_seconds = resolve_timeout(timeout_seconds)

    def run(self, action: str, compose_file: Path, project_name: str, args: Sequence[str]) -> str:
        """按顺序尝试各后端，返回成功后端的 stdout"""
        last: Optional[CommandResult] = None
        for index, backend in enumerate(self.backends):
            result = backend.run(compose_file, project_name, args, timeout=self.timeout_seconds, action=action)
            if result.outcome is Outcome.SUCCESS:
                return result.stdout
            if result.outcome is Outcome.FAILURE:
                raise ComposeCommandError(message=f"{action} failed: {result.diagnostic}")
            last = result
            if index + 1 < len(self.backends):
                logger.warning(
                    "compose 后端不可用，回退下一种调用方式",
                    extra=logger_extra({
                        "backend": backend.name,
                        "compose_action": action,
                        "project": project_name,
                        "missing_binary": result.missing_binary,
                    }),
                )
        if last is None or last.missing_binary:
            raise ComposeUnavailableError()
        raise ComposeCommandError(message=f"{action} failed: {last.diagnostic}")

    def up(self, compose_file: Path, project_name: str, *, force_recreate: bool = False, self_heal: bool = True) -> str:
        """
        启动项目；失败时自愈一次：尽力 down 后强制重建

        超时与命令不可用不做自愈，直接抛出
        """
        args = ["up", "-d", "--remove-orphans"]
        if force_recreate:
            args.append("--force-recreate")
        try:
            return self.run("compose up", compose_file, project_name, args)
        except ComposeCommandError as first_error:
            if not self_heal:
                raise
            logger.warning(
                "compose up 失败，尝试自愈重建",
                extra=logger_extra({"project": project_name, "reason": first_error.message}),
            )
            try:
                self.down(compose_file, project_name)
            except ComposeError as down_error:
                logger.warning(
                    "自愈前清理失败，继续强制重建",
                    extra=logger_extra({"project": project_name, "reason": down_error.message}),
                )
            retry_args = ["up", "-d", "--remove-orphans", "--force-recreate"]
            try:
                return self.run("compose up", compose_file, project_name, retry_args)
            except ComposeCommandError as retry_error:
                raise ComposeCommandError(
                    message=f"{first_error.message}; self-heal retry also failed"
                ) from retry_error

    def stop(self, compose_file: Path, project_name: str) -> str:
        return self.run("compose stop", compose_file, project_name, ["stop"])

    def down(self, compose_file: Path, project_name: str) -> str:
        return self.run("compose down", compose_file, project_name, ["down", "--volumes", "--remove-orphans"])
