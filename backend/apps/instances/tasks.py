from __future__ import annotations

import time

from celery import shared_task

from apps.common.infra.logger import get_logger, logger_extra
from apps.common.utils.request_context import clear_request_context, set_request_context

from .reapers import InstanceReaper

logger = get_logger(__name__)


def _run(task_name: str, action) -> dict:
    """在任务上下文中执行回收动作，返回 {scanned, reaped, failed, skipped}"""
    set_request_context(task=task_name)
    start = time.time()
    try:
        summary = action(InstanceReaper())
        logger.info(
            "回收任务结束",
            extra=logger_extra({**summary.as_dict(), "duration_ms": int((time.time() - start) * 1000)}),
        )
        return summary.as_dict()
    finally:
        clear_request_context()


@shared_task(name="reap_expired_instances")
def reap_expired_instances() -> dict:
    """
    Celery 定时任务：回收已过期的运行实例

    - 批量大小读取 INSTANCE_REAPER_BATCH_SIZE（约束到 1..500）
    - 单个实例失败只计数与记录日志，不影响同批次其余实例
    """
    return _run("reap_expired_instances", lambda reaper: reaper.reap_expired())


@shared_task(name="reap_stale_instances")
def reap_stale_instances() -> dict:
    """Celery 定时任务：回收心跳超时（INSTANCE_HEARTBEAT_STALE_SECONDS）的运行实例"""
    return _run("reap_stale_instances", lambda reaper: reaper.reap_stale())


@shared_task(name="destroy_contest_instances")
def destroy_contest_instances(contest_id: str) -> dict:
    return _run("destroy_contest_instances", lambda reaper: reaper.destroy_for_contest(contest_id))


@shared_task(name="destroy_challenge_instances")
def destroy_challenge_instances(challenge_id: str) -> dict:
    return _run("destroy_challenge_instances", lambda reaper: reaper.destroy_for_challenge(challenge_id))
