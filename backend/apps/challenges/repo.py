# apps/challenges/repo.py

from __future__ import annotations

from typing import Any

from apps.common.base.base_repo import BaseRepo
from apps.common.exceptions import ValidationError

from .models import Challenge


# 仓储层：题目查询，供运行实例策略校验复用


class ChallengeRepo(BaseRepo[Challenge]):
    """题目仓储"""

    model = Challenge

    def get_in_contest(self, *, contest: Any, challenge_id: Any) -> Challenge:
        """获取比赛内的题目，不属于该比赛视为不可用"""
        challenge = self.filter(contest=contest, pk=challenge_id).select_related("contest").first()
        if challenge is None:
            raise ValidationError(message="challenge is not available in this contest")
        return challenge

    def list_runtime_challenges(self, contest: Any):
        """比赛内需要运行实例的题目"""
        return self.filter(
            contest=contest,
            challenge_type__in=[Challenge.ChallengeType.DYNAMIC, Challenge.ChallengeType.INTERNAL],
        ).order_by("title")
