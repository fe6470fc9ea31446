from __future__ import annotations

from typing import Any, Optional

from apps.common.base.base_repo import BaseRepo
from apps.common.exceptions import NotFoundError

from .models import Contest, TeamMember

# 仓储层：比赛与队伍成员的只读查询


class ContestRepo(BaseRepo[Contest]):
    """比赛仓储"""

    model = Contest

    def get_by_id(self, pk: Any, *, queryset=None) -> Contest:
        """依据主键获取比赛，未找到抛业务级 404"""
        contest = self.get_or_none(queryset=queryset, pk=pk)
        if contest is None:
            raise NotFoundError(message="contest not found")
        return contest


class TeamMemberRepo(BaseRepo[TeamMember]):
    """队伍成员仓储"""

    model = TeamMember

    def get_membership(self, *, contest: Contest, user: Any) -> Optional[TeamMember]:
        """查询用户在指定比赛中的有效队伍成员关系"""
        return (
            self.filter(team__contest=contest, team__is_active=True, user=user, is_active=True)
            .select_related("team", "team__contest")
            .first()
        )
