from __future__ import annotations

import datetime
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from django.db import DatabaseError
from django.urls import reverse
from django.utils import timezone

from apps.common.base.base_service import BaseService
from apps.common.exceptions import (
    ComposeError,
    ConflictError,
    InstanceNotFoundError,
    TokenError,
    ValidationError,
)
from apps.common.infra.compose_runner import ComposeRunner
from apps.common.infra.logger import get_logger, logger_extra

from .access import (
    SSH_ACCESS_NOTE,
    SSH_SCHEME,
    WIREGUARD_ACCESS_NOTE,
    WIREGUARD_SCHEME,
    AccessMode,
    fetch_wireguard_config,
    ssh_gateway_password,
    ssh_gateway_username,
)
from .config import RuntimeSettings
from .flags import DynamicFlagStore
from .manifest import ManifestRenderer, decode_heartbeat_token, parse_entrypoint_host_port, resolve_entrypoint_url
from .models import Instance, ensure_transition
from .policy import PolicyGate, RuntimeContext
from .repo import InstanceRepo
from .schemas import HeartbeatReportSchema, InstanceActionSchema
from .subnets import SubnetAllocator, compose_project_name, subnet_seed

# 服务层：运行实例生命周期（启动 / 停止 / 重置 / 销毁 / 心跳 / 查询）

logger = get_logger(__name__)

MSG_STARTED = "instance started"
MSG_ALREADY_RUNNING = "instance is already running"
MSG_STOPPED = "instance stopped"
MSG_RESET = "instance reset to running state"
MSG_DESTROYED = "instance destroyed"
MSG_ALREADY_DESTROYED = "instance has already been destroyed"
MSG_HEARTBEAT = "instance heartbeat updated"
MSG_HEARTBEAT_REPORTED = "instance heartbeat reported"
MSG_QUERY = "instance query result"
MSG_RUNNING_NOT_FOUND = "running instance not found"
MSG_CREATING_IN_PROGRESS = "instance is being created, retry later"
MSG_NOT_WIREGUARD = "instance access mode is not wireguard"
MSG_WIREGUARD_CONFIG = "wireguard config ready"


@dataclass(frozen=True)
class InstanceResult:
    """操作结果：实例最新状态 + 给人看的说明"""

    instance: Instance
    message: str


def _iso(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def network_access_info(instance: Instance) -> Optional[dict]:
    """按入口地址的 scheme 给出接入说明；direct 模式返回 None"""
    url = instance.entrypoint_url or ""
    endpoint = parse_entrypoint_host_port(url)
    if endpoint is None:
        return None
    host, port = endpoint
    if url.startswith(f"{SSH_SCHEME}://"):
        return {
            "mode": AccessMode.SSH_BASTION.value,
            "host": host,
            "port": port,
            "username": ssh_gateway_username(),
            "password": ssh_gateway_password(instance),
            "download_url": None,
            "note": SSH_ACCESS_NOTE,
        }
    if url.startswith(f"{WIREGUARD_SCHEME}://"):
        return {
            "mode": AccessMode.WIREGUARD.value,
            "host": host,
            "port": port,
            "username": None,
            "password": None,
            "download_url": reverse(
                "instances:wireguard-config",
                kwargs={"contest_id": instance.contest_id, "challenge_id": instance.challenge_id},
            ),
            "note": WIREGUARD_ACCESS_NOTE,
        }
    return None


def serialize_instance(instance: Instance, message: str = "") -> dict:
    """实例序列化：状态、资源限制、各时间点与接入说明"""
    cpu_limit = instance.cpu_limit
    if isinstance(cpu_limit, (Decimal, float)):
        cpu_limit = "%.2f" % float(cpu_limit)
    return {
        "id": str(instance.id),
        "contest_id": str(instance.contest_id),
        "challenge_id": str(instance.challenge_id),
        "team_id": str(instance.team_id),
        "status": instance.status,
        "subnet": instance.subnet,
        "compose_project_name": instance.compose_project_name,
        "entrypoint_url": instance.entrypoint_url,
        "cpu_limit": cpu_limit,
        "memory_limit_mb": instance.memory_limit_mb,
        "started_at": _iso(instance.started_at),
        "expires_at": _iso(instance.expires_at),
        "destroyed_at": _iso(instance.destroyed_at),
        "last_heartbeat_at": _iso(instance.last_heartbeat_at),
        "created_at": _iso(instance.created_at),
        "updated_at": _iso(instance.updated_at),
        "network_access": network_access_info(instance),
        "message": message,
    }


def is_expired(instance: Instance, now: datetime.datetime) -> bool:
    return instance.expires_at is not None and now > instance.expires_at


def _instance_log(instance: Instance, **extra: Any) -> dict:
    payload = {
        "instance_id": str(instance.id),
        "contest_id": str(instance.contest_id),
        "challenge_id": str(instance.challenge_id),
        "team_id": str(instance.team_id),
        "project": instance.compose_project_name,
        "status": instance.status,
    }
    payload.update(extra)
    return logger_extra(payload)


class InstanceServiceBase(BaseService[InstanceResult]):
    """
    运行实例服务基类：注入策略闸门、仓储、编排执行器、渲染器与子网分配器

    - 关闭外层事务：外部命令失败时写入的 failed 状态必须落库，异常再向上抛
    - 所有状态写入都是带状态守卫的单行更新，影响 0 行视为实例已被其它操作改动
    """

    atomic_enabled = False

    def __init__(
            self,
            gate: PolicyGate | None = None,
            repo: InstanceRepo | None = None,
            runner: ComposeRunner | None = None,
            renderer: ManifestRenderer | None = None,
            allocator: SubnetAllocator | None = None,
            runtime: RuntimeSettings | None = None,
            flag_store: DynamicFlagStore | None = None,
    ):
        self.gate = gate or PolicyGate()
        self.repo = repo or InstanceRepo()
        self.runtime = runtime or RuntimeSettings.load()
        self.runner = runner or ComposeRunner(timeout_seconds=self.runtime.compose_timeout_seconds)
        self.renderer = renderer or ManifestRenderer(self.runtime, flag_store)
        self.allocator = allocator or SubnetAllocator(self.repo)

    # ------------------------
    # 公共步骤
    # ------------------------

    def find(self, ctx: RuntimeContext) -> Optional[Instance]:
        return self.repo.get_for_triple(contest_id=ctx.contest.id, challenge_id=ctx.challenge_id, team_id=ctx.team.id)

    def require(self, ctx: RuntimeContext) -> Instance:
        instance = self.find(ctx)
        if instance is None:
            raise InstanceNotFoundError()
        return instance

    def _creating_fields(self, now: datetime.datetime) -> dict:
        return {
            "started_at": now,
            "expires_at": now + datetime.timedelta(minutes=self.runtime.ttl_minutes),
            "cpu_limit": Decimal(self.runtime.cpu_limit) if self.runtime.cpu_limit else None,
            "memory_limit_mb": self.runtime.memory_limit_mb,
            "destroyed_at": None,
            # 旧心跳属于上一轮运行，保留会被心跳回收器误判
            "last_heartbeat_at": None,
        }

    def ensure_pending(self, ctx: RuntimeContext, now: datetime.datetime, existing: Optional[Instance]) -> Instance:
        """
        把三元组对应的实例置为 creating：

        - 不存在：分配子网并插入新行（子网冲突换下一个候选）
        - 已存在：按观察到的状态做守卫迁移；已销毁的行原地复用，旧子网被占用时重新分配
        """
        seed = subnet_seed(ctx.contest.id, ctx.challenge_id, ctx.team.id)
        fields = self._creating_fields(now)

        if existing is None:
            project = compose_project_name(ctx.contest.id, ctx.challenge_id, ctx.team.id)

            def insert(subnet: str):
                row = self.repo.create({
                    "contest": ctx.contest,
                    "challenge": ctx.challenge,
                    "team": ctx.team,
                    "status": Instance.Status.CREATING,
                    "subnet": subnet,
                    "compose_project_name": project,
                    "entrypoint_url": resolve_entrypoint_url(ctx.source, subnet, self.runtime),
                    **fields,
                })
                return row, True

            def concurrent():
                row = self.find(ctx)
                return (row, False) if row is not None else None

            instance, created = self.allocator.claim(seed, insert, on_conflict=concurrent)
            if created:
                logger.info("运行实例记录已创建", extra=_instance_log(instance, subnet=instance.subnet))
                return instance
            existing = instance

        observed = existing.status
        ensure_transition(observed, Instance.Status.CREATING)
        guard = None
        if observed == Instance.Status.CREATING:
            # 仍在创建窗口内视为另一请求正在处理；超出窗口说明上次创建中途退出，允许接管
            cutoff = now - datetime.timedelta(seconds=self.runtime.creating_stale_seconds)
            if existing.updated_at and existing.updated_at > cutoff:
                raise ConflictError(message=MSG_CREATING_IN_PROGRESS)
            guard = {"updated_at__lte": cutoff}
            logger.warning("接管超时未完成的创建", extra=_instance_log(existing))

        def recreate(subnet: str) -> int:
            data = dict(fields)
            data["subnet"] = subnet
            data["entrypoint_url"] = resolve_entrypoint_url(ctx.source, subnet, self.runtime, existing.entrypoint_url)
            return self.repo.transition(
                existing.pk,
                target=Instance.Status.CREATING,
                expected=[observed],
                data=data,
                extra_guard=guard,
            )

        if observed == Instance.Status.DESTROYED:
            rows = self.allocator.claim(seed, recreate, preferred=existing.subnet)
        else:
            rows = recreate(existing.subnet)
        if rows == 0:
            if guard is not None:
                raise ConflictError(message=MSG_CREATING_IN_PROGRESS)
            raise InstanceNotFoundError()
        return self.repo.get_by_id(existing.pk)

    def mark_running(self, instance: Instance, now: datetime.datetime) -> Instance:
        rows = self.repo.transition(
            instance.pk,
            target=Instance.Status.RUNNING,
            expected=[Instance.Status.CREATING],
            data={
                "started_at": now,
                "expires_at": now + datetime.timedelta(minutes=self.runtime.ttl_minutes),
                "destroyed_at": None,
            },
        )
        if rows == 0:
            raise InstanceNotFoundError()
        return self.repo.get_by_id(instance.pk)

    def mark_failed(self, instance: Instance, reason: Exception) -> None:
        """外部命令失败后把实例降级为 failed；写库失败只记录，不覆盖原始异常"""
        try:
            self.repo.transition(instance.pk, target=Instance.Status.FAILED)
        except DatabaseError:
            logger.exception("运行实例标记 failed 失败", extra=_instance_log(instance))
        logger.warning("运行实例操作失败，已标记为 failed", extra=_instance_log(instance, reason=str(reason)))

    def provision(self, instance: Instance, ctx: RuntimeContext, *, reset: bool) -> None:
        """渲染 compose 文件并拉起项目；重置时先尽力 down，再强制重建"""
        compose_file = self.renderer.write(instance, ctx.source)
        project = instance.compose_project_name
        if reset:
            try:
                self.runner.down(compose_file, project)
            except ComposeError as exc:
                logger.warning("重置前 compose down 失败，继续执行 up", extra=_instance_log(instance, reason=exc.message))
        self.runner.up(compose_file, project, force_recreate=reset)


class StartInstanceService(InstanceServiceBase):
    """
    启动实例：
    - 已在运行且未过期：原样返回，不触发任何外部命令
    - 否则置为 creating → 渲染 → compose up → running；失败置为 failed 并抛出
    """

    def perform(self, user: Any, schema: InstanceActionSchema) -> InstanceResult:
        ctx = self.gate.authorize(user, schema.contest_id, schema.challenge_id, require_running=True)
        now = timezone.now()
        existing = self.find(ctx)
        if existing is not None and existing.status == Instance.Status.RUNNING and not is_expired(existing, now):
            return InstanceResult(existing, MSG_ALREADY_RUNNING)

        pending = self.ensure_pending(ctx, now, existing)
        try:
            self.provision(pending, ctx, reset=False)
        except Exception as exc:
            self.mark_failed(pending, exc)
            raise
        running = self.mark_running(pending, now)
        logger.info("运行实例已启动", extra=_instance_log(running, entrypoint=running.entrypoint_url))
        return InstanceResult(running, MSG_STARTED)


class ResetInstanceService(InstanceServiceBase):
    """重置实例：沿用子网与动态 Flag，强制重建全部容器"""

    def perform(self, user: Any, schema: InstanceActionSchema) -> InstanceResult:
        ctx = self.gate.authorize(user, schema.contest_id, schema.challenge_id, require_running=True)
        now = timezone.now()
        pending = self.ensure_pending(ctx, now, self.find(ctx))
        try:
            self.provision(pending, ctx, reset=True)
        except Exception as exc:
            self.mark_failed(pending, exc)
            raise
        running = self.mark_running(pending, now)
        logger.info("运行实例已重置", extra=_instance_log(running))
        return InstanceResult(running, MSG_RESET)


class StopInstanceService(InstanceServiceBase):
    def perform(self, user: Any, schema: InstanceActionSchema) -> InstanceResult:
        ctx = self.gate.context(user, schema.contest_id, schema.challenge_id)
        instance = self.require(ctx)
        if instance.status == Instance.Status.DESTROYED:
            raise ValidationError(message=MSG_ALREADY_DESTROYED)
        observed = instance.status
        ensure_transition(observed, Instance.Status.STOPPED)
        try:
            compose_file = self.renderer.ensure(instance)
            self.runner.stop(compose_file, instance.compose_project_name)
        except Exception as exc:
            self.mark_failed(instance, exc)
            raise
        rows = self.repo.transition(instance.pk, target=Instance.Status.STOPPED, expected=[observed])
        if rows == 0:
            raise InstanceNotFoundError()
        stopped = self.repo.get_by_id(instance.pk)
        logger.info("运行实例已停止", extra=_instance_log(stopped))
        return InstanceResult(stopped, MSG_STOPPED)


class DestroyInstanceService(InstanceServiceBase):
    """
    销毁实例：
    - 已销毁：直接返回现有记录，不执行任何外部命令
    - compose down 成功后置为 destroyed、清空过期时间并删除项目目录
    """

    def perform(self, user: Any, schema: InstanceActionSchema) -> InstanceResult:
        ctx = self.gate.context(user, schema.contest_id, schema.challenge_id)
        instance = self.require(ctx)
        if instance.status == Instance.Status.DESTROYED:
            return InstanceResult(instance, MSG_ALREADY_DESTROYED)
        observed = instance.status
        ensure_transition(observed, Instance.Status.DESTROYED)
        try:
            compose_file = self.renderer.ensure(instance)
            self.runner.down(compose_file, instance.compose_project_name)
        except Exception as exc:
            self.mark_failed(instance, exc)
            raise
        rows = self.repo.transition(
            instance.pk,
            target=Instance.Status.DESTROYED,
            expected=[observed],
            data={"destroyed_at": timezone.now(), "expires_at": None},
        )
        if rows == 0:
            raise InstanceNotFoundError()
        self.renderer.cleanup(instance.compose_project_name)
        destroyed = self.repo.get_by_id(instance.pk)
        logger.info("运行实例已销毁", extra=_instance_log(destroyed))
        return InstanceResult(destroyed, MSG_DESTROYED)


class HeartbeatInstanceService(InstanceServiceBase):
    """选手侧心跳：仅运行中的实例刷新 last_heartbeat_at"""

    def perform(self, user: Any, schema: InstanceActionSchema) -> InstanceResult:
        ctx = self.gate.context(user, schema.contest_id, schema.challenge_id)
        rows = self.repo.touch_heartbeat(
            now=timezone.now(),
            contest_id=ctx.contest.id,
            challenge_id=ctx.challenge_id,
            team_id=ctx.team.id,
        )
        if rows == 0:
            raise ValidationError(message=MSG_RUNNING_NOT_FOUND)
        return InstanceResult(self.require(ctx), MSG_HEARTBEAT)


class QueryInstanceService(InstanceServiceBase):
    def perform(self, user: Any, schema: InstanceActionSchema) -> InstanceResult:
        ctx = self.gate.context(user, schema.contest_id, schema.challenge_id)
        return InstanceResult(self.require(ctx), MSG_QUERY)


class WireguardConfigService(InstanceServiceBase):
    """
    下载 WireGuard 客户端配置：
    - 只对未销毁且入口为 wg:// 的实例开放
    - 配置由实例内的分发服务生成，未就绪时按运行时配置重试
    """

    def perform(self, user: Any, schema: InstanceActionSchema) -> dict:
        ctx = self.gate.context(user, schema.contest_id, schema.challenge_id)
        instance = self.require(ctx)
        if instance.status == Instance.Status.DESTROYED:
            raise ValidationError(message=MSG_ALREADY_DESTROYED)
        if not (instance.entrypoint_url or "").startswith(f"{WIREGUARD_SCHEME}://"):
            raise ValidationError(message=MSG_NOT_WIREGUARD)
        content = fetch_wireguard_config(self.runtime, instance.compose_project_name)
        return {
            "contest_id": str(instance.contest_id),
            "challenge_id": str(instance.challenge_id),
            "team_id": str(instance.team_id),
            "endpoint": instance.entrypoint_url,
            "filename": f"{instance.contest_id.hex}-{instance.challenge_id.hex}-{instance.team_id.hex}.conf",
            "content": content,
        }


class ReportHeartbeatService(InstanceServiceBase):
    """运行环境凭签发的令牌自报心跳，不需要登录"""

    def perform(self, schema: HeartbeatReportSchema) -> InstanceResult:
        subject = decode_heartbeat_token(schema.token)
        try:
            instance_id = uuid.UUID(subject)
        except ValueError as exc:
            raise TokenError() from exc
        rows = self.repo.touch_heartbeat(now=timezone.now(), pk=instance_id)
        if rows == 0:
            raise ValidationError(message=MSG_RUNNING_NOT_FOUND)
        return InstanceResult(self.repo.get_by_id(instance_id), MSG_HEARTBEAT_REPORTED)
