"""
Redis 键名集中管理，避免各模块随意拼接带来不一致
"""

from __future__ import annotations

from typing import Any


def dynamic_flag_key(contest_id: Any, challenge_id: Any, team_id: Any) -> str:
    """动态 Flag 键：按（比赛, 题目, 队伍）唯一"""
    return f"flag:dynamic:{contest_id}:{challenge_id}:{team_id}"
