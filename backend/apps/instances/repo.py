from __future__ import annotations

import datetime
from typing import Any, Iterable, Optional

from django.db.models import Q, QuerySet

from apps.common.base.base_repo import BaseRepo
from apps.common.exceptions import InstanceNotFoundError

from .models import Instance, ensure_transition, sources_for


# 仓储层：运行实例的查询与按状态守卫的条件更新


class InstanceRepo(BaseRepo[Instance]):
    """
    运行实例仓储：
    - 所有状态变化都走 transition：单条 UPDATE ... WHERE status IN (...)，
      返回受影响行数，0 表示在此期间被其它请求或回收器改动过
    """

    model = Instance

    def get_queryset(self) -> QuerySet[Instance]:
        return super().get_queryset().select_related("contest", "challenge", "team")

    def get_by_id(self, pk: Any, *, queryset: Optional[QuerySet[Instance]] = None) -> Instance:
        instance = self.get_or_none(queryset=queryset, pk=pk)
        if instance is None:
            raise InstanceNotFoundError()
        return instance

    def get_for_triple(self, *, contest_id: Any, challenge_id: Any, team_id: Any) -> Optional[Instance]:
        return self.get_or_none(contest_id=contest_id, challenge_id=challenge_id, team_id=team_id)

    def live_subnets(self) -> set[str]:
        """未销毁实例占用的子网集合，一次查询取回"""
        return set(
            self.model._default_manager.exclude(status=Instance.Status.DESTROYED).values_list("subnet", flat=True)
        )

    def transition(
            self,
            pk: Any,
            *,
            target: str,
            expected: Optional[Iterable[str]] = None,
            data: Optional[dict] = None,
            extra_guard: Optional[dict] = None,
    ) -> int:
        """
        状态守卫更新

        - expected：调用方观察到的状态；为空时取迁移表中所有能到达 target 的状态
        - 观察到的状态不允许迁移到 target 时直接抛 InvalidTransitionError
        """
        if expected is None:
            allowed = sources_for(target)
        else:
            allowed = [str(status) for status in expected]
            for status in allowed:
                ensure_transition(status, target)
        guard = {"pk": pk, "status__in": allowed}
        if extra_guard:
            guard.update(extra_guard)
        payload = {"status": target}
        payload.update(data or {})
        return self.conditional_update(guard=guard, data=payload)

    def touch_heartbeat(self, *, now: datetime.datetime, **lookup) -> int:
        """仅运行中的实例刷新心跳时间"""
        return self.conditional_update(
            guard={**lookup, "status": Instance.Status.RUNNING},
            data={"last_heartbeat_at": now},
        )

    # ------------------------
    # 回收候选
    # ------------------------

    def expired_candidates(self, *, now: datetime.datetime, limit: int) -> list[Instance]:
        """未销毁且已过期，最早过期的优先"""
        qs = (
            self.filter(expires_at__isnull=False, expires_at__lte=now)
            .exclude(status=Instance.Status.DESTROYED)
            .order_by("expires_at", "updated_at")
        )
        return list(qs[:limit])

    def stale_candidates(self, *, now: datetime.datetime, stale_seconds: int, limit: int) -> list[Instance]:
        """运行中、心跳超过阈值未更新，且尚未过期"""
        cutoff = now - datetime.timedelta(seconds=stale_seconds)
        qs = (
            self.filter(
                status=Instance.Status.RUNNING,
                last_heartbeat_at__isnull=False,
                last_heartbeat_at__lte=cutoff,
            )
            .filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))
            .order_by("last_heartbeat_at")
        )
        return list(qs[:limit])

    def candidates_for_contest(self, contest_id: Any) -> list[Instance]:
        return list(self.filter(contest_id=contest_id).order_by("-created_at"))

    def candidates_for_challenge(self, challenge_id: Any) -> list[Instance]:
        return list(self.filter(challenge_id=challenge_id).order_by("-created_at"))
