"""
运行实例回收器

- 过期回收：未销毁且 expires_at 已过的实例，最早过期的优先
- 心跳回收：运行中、心跳超过阈值未更新且尚未过期的实例
- 批量销毁：比赛 / 题目下线时清理全部实例

每个候选依次处理（不并发），流程一致：确保 compose 文件存在 → compose down → 带状态守卫地置为 destroyed。
守卫更新影响 0 行说明实例在此期间被用户操作改动，计为 skipped；
任何失败都把实例置为 failed 并计数，不影响同批次其余实例。
"""

from __future__ import annotations

import datetime
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Optional

from django.db import DatabaseError
from django.utils import timezone

from apps.common.exceptions import BizError
from apps.common.infra.compose_runner import ComposeRunner
from apps.common.infra.logger import get_logger, logger_extra
from apps.common.utils.time import clamp

from .config import REAPER_BATCH_MAX, REAPER_BATCH_MIN, STALE_SECONDS_MAX, STALE_SECONDS_MIN, RuntimeSettings
from .flags import DynamicFlagStore
from .manifest import ManifestRenderer
from .models import Instance
from .repo import InstanceRepo

logger = get_logger(__name__)


@dataclass
class ReaperSummary:
    scanned: int = 0
    reaped: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class InstanceReaper:
    def __init__(
            self,
            repo: InstanceRepo | None = None,
            runner: ComposeRunner | None = None,
            renderer: ManifestRenderer | None = None,
            runtime: RuntimeSettings | None = None,
            flag_store: DynamicFlagStore | None = None,
    ):
        self.repo = repo or InstanceRepo()
        self.runtime = runtime or RuntimeSettings.load()
        self.runner = runner or ComposeRunner(timeout_seconds=self.runtime.compose_timeout_seconds)
        self.renderer = renderer or ManifestRenderer(self.runtime, flag_store)

    def reap_expired(self, *, batch_size: Optional[int] = None, now: Optional[datetime.datetime] = None) -> ReaperSummary:
        now = now or timezone.now()
        limit = int(clamp(batch_size or self.runtime.reaper_batch_size, REAPER_BATCH_MIN, REAPER_BATCH_MAX))
        summary = ReaperSummary()
        for instance in self.repo.expired_candidates(now=now, limit=limit):
            self._teardown(
                instance,
                summary,
                expected=[instance.status],
                extra_guard={"expires_at__isnull": False, "expires_at__lte": now},
                clear_expiry_on_failure=True,
                reason="expired",
            )
        self._log_summary("过期实例回收完成", summary, limit=limit)
        return summary

    def reap_stale(
            self,
            *,
            stale_seconds: Optional[int] = None,
            batch_size: Optional[int] = None,
            now: Optional[datetime.datetime] = None,
    ) -> ReaperSummary:
        now = now or timezone.now()
        stale_seconds = int(clamp(stale_seconds or self.runtime.heartbeat_stale_seconds, STALE_SECONDS_MIN, STALE_SECONDS_MAX))
        limit = int(clamp(batch_size or self.runtime.stale_reaper_batch_size, REAPER_BATCH_MIN, REAPER_BATCH_MAX))
        cutoff = now - datetime.timedelta(seconds=stale_seconds)
        summary = ReaperSummary()
        for instance in self.repo.stale_candidates(now=now, stale_seconds=stale_seconds, limit=limit):
            self._teardown(
                instance,
                summary,
                expected=[Instance.Status.RUNNING],
                extra_guard={"last_heartbeat_at__isnull": False, "last_heartbeat_at__lte": cutoff},
                clear_expiry_on_failure=False,
                reason="heartbeat_stale",
            )
        self._log_summary("心跳超时实例回收完成", summary, limit=limit, stale_seconds=stale_seconds)
        return summary

    def destroy_instances(self, instances: Iterable[Instance], *, reason: str = "force_destroy") -> ReaperSummary:
        """强制销毁给定实例；已销毁的只清理残留目录并计为 skipped"""
        summary = ReaperSummary()
        for instance in instances:
            if instance.status == Instance.Status.DESTROYED:
                summary.scanned += 1
                summary.skipped += 1
                self.renderer.cleanup(instance.compose_project_name)
                continue
            self._teardown(
                instance,
                summary,
                expected=[instance.status],
                extra_guard=None,
                clear_expiry_on_failure=False,
                reason=reason,
            )
        self._log_summary("批量销毁实例完成", summary, reason=reason)
        return summary

    def destroy_for_contest(self, contest_id: Any) -> ReaperSummary:
        return self.destroy_instances(self.repo.candidates_for_contest(contest_id), reason="contest_teardown")

    def destroy_for_challenge(self, challenge_id: Any) -> ReaperSummary:
        return self.destroy_instances(self.repo.candidates_for_challenge(challenge_id), reason="challenge_teardown")

    # ------------------------
    # 单个实例
    # ------------------------

    def _teardown(
            self,
            instance: Instance,
            summary: ReaperSummary,
            *,
            expected: list,
            extra_guard: Optional[dict],
            clear_expiry_on_failure: bool,
            reason: str,
    ) -> None:
        summary.scanned += 1
        log_extra = {
            "instance_id": str(instance.id),
            "project": instance.compose_project_name,
            "status": instance.status,
            "reason": reason,
        }
        try:
            compose_file = self.renderer.ensure(instance)
            self.runner.down(compose_file, instance.compose_project_name)
        except BizError as exc:
            summary.failed += 1
            logger.warning("回收实例失败", extra=logger_extra({**log_extra, "error": exc.message}))
            self._mark_failed(instance, clear_expiry=clear_expiry_on_failure)
            return
        except Exception:
            summary.failed += 1
            logger.exception("回收实例出现未预期异常", extra=logger_extra(log_extra))
            self._mark_failed(instance, clear_expiry=clear_expiry_on_failure)
            return

        rows = self.repo.transition(
            instance.pk,
            target=Instance.Status.DESTROYED,
            expected=expected,
            data={"destroyed_at": timezone.now(), "expires_at": None},
            extra_guard=extra_guard,
        )
        if rows == 0:
            summary.skipped += 1
            logger.info("实例状态已变化，跳过回收", extra=logger_extra(log_extra))
            return
        self.renderer.cleanup(instance.compose_project_name)
        summary.reaped += 1
        logger.info("实例已回收", extra=logger_extra(log_extra))

    def _mark_failed(self, instance: Instance, *, clear_expiry: bool) -> None:
        data = {"expires_at": None} if clear_expiry else None
        try:
            self.repo.transition(instance.pk, target=Instance.Status.FAILED, data=data)
        except DatabaseError:
            logger.exception("回收失败后标记 failed 失败", extra=logger_extra({"instance_id": str(instance.id)}))

    @staticmethod
    def _log_summary(message: str, summary: ReaperSummary, **extra: Any) -> None:
        logger.info(message, extra=logger_extra({**summary.as_dict(), **extra}))
