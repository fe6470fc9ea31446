"""
运行实例配置：集中读取 settings 中的 INSTANCE_* / COMPOSE_* 配置并做取值约束

服务、回收器与模板渲染都只依赖 RuntimeSettings，测试可直接构造实例替换
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from django.conf import settings

from apps.common.infra.compose_runner import resolve_timeout
from apps.common.utils.time import clamp

CPU_LIMIT_MIN = 0.10
CPU_LIMIT_MAX = 64.0
MEMORY_LIMIT_MIN_MB = 64
MEMORY_LIMIT_MAX_MB = 1_048_576
HEARTBEAT_INTERVAL_MIN = 5
HEARTBEAT_INTERVAL_MAX = 3600
REAPER_BATCH_MIN = 1
REAPER_BATCH_MAX = 500
STALE_SECONDS_MIN = 60
STALE_SECONDS_MAX = 86_400
# 一次 up 最多经历 up、down、强制 up 三条命令
CREATING_WINDOW_COMMANDS = 3
WIREGUARD_FETCH_RETRIES_MAX = 30


def _int(name: str, default: int) -> int:
    try:
        return int(getattr(settings, name, default))
    except (TypeError, ValueError):
        return default


def _float(name: str, default: float) -> float:
    try:
        return float(getattr(settings, name, default))
    except (TypeError, ValueError):
        return default


def normalize_cpu_limit(value: float) -> Optional[str]:
    """<=0 表示不限制；否则约束到 [0.10, 64] 并保留两位小数"""
    if value <= 0:
        return None
    return "%.2f" % clamp(value, CPU_LIMIT_MIN, CPU_LIMIT_MAX)


def normalize_memory_limit(value: int) -> Optional[int]:
    if value <= 0:
        return None
    return int(clamp(value, MEMORY_LIMIT_MIN_MB, MEMORY_LIMIT_MAX_MB))


@dataclass(frozen=True)
class RuntimeSettings:
    runtime_root: Path
    ttl_minutes: int
    compose_timeout_seconds: int
    cpu_limit: Optional[str]
    memory_limit_mb: Optional[int]
    public_host: str
    host_port_min: int
    host_port_max: int
    heartbeat_report_url: str
    heartbeat_interval_seconds: int
    reaper_batch_size: int
    stale_reaper_batch_size: int
    heartbeat_stale_seconds: int
    wireguard_config_host: str = "host.docker.internal"
    wireguard_fetch_retries: int = 6
    wireguard_fetch_delay_seconds: float = 1.0

    @classmethod
    def load(cls) -> "RuntimeSettings":
        root = Path(str(getattr(settings, "INSTANCE_RUNTIME_ROOT", "./runtime/instances")))
        if not root.is_absolute():
            root = Path.cwd() / root
        port_min = max(_int("INSTANCE_HOST_PORT_MIN", 20000), 1024)
        port_max = max(_int("INSTANCE_HOST_PORT_MAX", 40000), port_min)
        return cls(
            runtime_root=root,
            ttl_minutes=max(_int("INSTANCE_TTL_MINUTES", 120), 1),
            compose_timeout_seconds=resolve_timeout(getattr(settings, "COMPOSE_COMMAND_TIMEOUT_SECONDS", None)),
            cpu_limit=normalize_cpu_limit(_float("INSTANCE_DEFAULT_CPU_LIMIT", 1.0)),
            memory_limit_mb=normalize_memory_limit(_int("INSTANCE_DEFAULT_MEMORY_LIMIT_MB", 512)),
            public_host=str(getattr(settings, "INSTANCE_PUBLIC_HOST", "") or "").strip() or "127.0.0.1",
            host_port_min=port_min,
            host_port_max=min(port_max, 65535),
            heartbeat_report_url=str(getattr(settings, "INSTANCE_HEARTBEAT_REPORT_URL", "") or "").strip(),
            heartbeat_interval_seconds=int(clamp(
                _int("INSTANCE_HEARTBEAT_REPORT_INTERVAL_SECONDS", 30), HEARTBEAT_INTERVAL_MIN, HEARTBEAT_INTERVAL_MAX
            )),
            reaper_batch_size=int(clamp(_int("INSTANCE_REAPER_BATCH_SIZE", 50), REAPER_BATCH_MIN, REAPER_BATCH_MAX)),
            stale_reaper_batch_size=int(clamp(
                _int("INSTANCE_STALE_REAPER_BATCH_SIZE", 50), REAPER_BATCH_MIN, REAPER_BATCH_MAX
            )),
            heartbeat_stale_seconds=int(clamp(
                _int("INSTANCE_HEARTBEAT_STALE_SECONDS", 300), STALE_SECONDS_MIN, STALE_SECONDS_MAX
            )),
            wireguard_config_host=str(
                getattr(settings, "INSTANCE_WIREGUARD_CONFIG_HOST", "") or ""
            ).strip() or "host.docker.internal",
            wireguard_fetch_retries=int(clamp(
                _int("INSTANCE_WIREGUARD_CONFIG_FETCH_RETRIES", 6), 1, WIREGUARD_FETCH_RETRIES_MAX
            )),
            wireguard_fetch_delay_seconds=max(_float("INSTANCE_WIREGUARD_CONFIG_FETCH_DELAY_SECONDS", 1.0), 0.0),
        )

    @property
    def creating_stale_seconds(self) -> int:
        """creating 状态超过该时长未更新，视为上次创建已中途退出"""
        return self.compose_timeout_seconds * CREATING_WINDOW_COMMANDS

    def project_dir(self, project_name: str) -> Path:
        return self.runtime_root / project_name

    def compose_file(self, project_name: str) -> Path:
        return self.project_dir(project_name) / "docker-compose.generated.yml"
