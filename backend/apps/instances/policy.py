"""
运行实例策略闸门：任何状态写入之前的资格校验

- 私有比赛：非特权用户直接拒绝（403）
- 题目不可见 / 未到发布时间 / 比赛未进行中（仅启动与重置）：非特权用户拒绝
- 题目类型不需要运行实例、缺少编排模板：所有人拒绝
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Optional

from django.utils import timezone

from apps.challenges.models import Challenge
from apps.challenges.repo import ChallengeRepo
from apps.common.exceptions import PermissionDeniedError, ValidationError
from apps.common.permissions import is_privileged
from apps.contests.models import Contest, Team
from apps.contests.repo import ContestRepo, TeamMemberRepo

from .manifest import RenderSource, RuntimeMode, build_render_source, parse_runtime_options, TEMPLATE_MISSING_MESSAGE


@dataclass(frozen=True)
class RuntimeContext:
    """一次实例操作的上下文：比赛、队伍，以及需要时的题目与渲染输入"""

    contest: Contest
    team: Team
    challenge_id: uuid.UUID
    privileged: bool
    challenge: Optional[Challenge] = None
    source: Optional[RenderSource] = None


def check_runtime_policy(contest: Contest, challenge: Challenge, *, privileged: bool, require_running: bool) -> None:
    """纯校验，不访问数据库；失败抛出带具体原因的 BizError"""
    if contest.is_private and not privileged:
        raise PermissionDeniedError()
    if not privileged:
        if not challenge.is_visible:
            raise ValidationError(message="challenge runtime is not visible")
        if challenge.release_at is not None and timezone.now() < challenge.release_at:
            raise ValidationError(message="challenge runtime has not been released yet")
        if require_running and contest.status != Contest.Status.RUNNING:
            raise ValidationError(message="contest is not running")
    if not challenge.requires_runtime:
        raise ValidationError(message="challenge type does not require runtime instance")
    options = parse_runtime_options(challenge.metadata or {})
    if options.mode is RuntimeMode.COMPOSE and not (challenge.compose_template or "").strip():
        raise ValidationError(message=TEMPLATE_MISSING_MESSAGE)


class PolicyGate:
    """
    组合仓储完成上下文解析与策略校验，服务层通过构造参数注入

        gate = PolicyGate()
        ctx = gate.authorize(user, contest_id, challenge_id, require_running=True)
    """

    def __init__(
            self,
            contest_repo: ContestRepo | None = None,
            challenge_repo: ChallengeRepo | None = None,
            member_repo: TeamMemberRepo | None = None,
    ):
        self.contest_repo = contest_repo or ContestRepo()
        self.challenge_repo = challenge_repo or ChallengeRepo()
        self.member_repo = member_repo or TeamMemberRepo()

    def resolve_team(self, user: Any, contest: Contest) -> Team:
        membership = self.member_repo.get_membership(contest=contest, user=user)
        if membership is None:
            raise ValidationError(message="join or create a team before entering the contest")
        return membership.team

    def context(self, user: Any, contest_id: uuid.UUID, challenge_id: uuid.UUID) -> RuntimeContext:
        """停止 / 销毁 / 心跳 / 查询：只需比赛访问权与队伍身份"""
        contest = self.contest_repo.get_by_id(contest_id)
        privileged = is_privileged(user)
        if contest.is_private and not privileged:
            raise PermissionDeniedError()
        team = self.resolve_team(user, contest)
        return RuntimeContext(contest=contest, team=team, challenge_id=challenge_id, privileged=privileged)

    def authorize(
            self,
            user: Any,
            contest_id: uuid.UUID,
            challenge_id: uuid.UUID,
            *,
            require_running: bool = True,
    ) -> RuntimeContext:
        """启动 / 重置：完整策略校验并生成渲染输入"""
        base = self.context(user, contest_id, challenge_id)
        challenge = self.challenge_repo.get_in_contest(contest=base.contest, challenge_id=challenge_id)
        check_runtime_policy(base.contest, challenge, privileged=base.privileged, require_running=require_running)
        source = build_render_source(challenge)
        return RuntimeContext(
            contest=base.contest,
            team=base.team,
            challenge_id=challenge.id,
            privileged=base.privileged,
            challenge=challenge,
            source=source,
        )
