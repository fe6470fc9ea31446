"""
实例网络接入方式

- direct：选手直接访问子网内的入口地址，不额外注入服务
- ssh_bastion：注入一台 SSH 跳板机，映射到宿主机的随机 TCP 端口
- wireguard：注入 WireGuard 服务端（随机 UDP 端口）与一个只读的配置分发服务，
  配置分发端口记录在项目目录下的 wireguard-access.json 中，供下载接口读取

注入发生在占位符替换之后、资源限制注入之前，对渲染结果做一次 YAML 解析与回写
"""

from __future__ import annotations

import enum
import json
import time
import uuid
from pathlib import Path
from typing import Any, Optional

import httpx
import yaml
from rest_framework_simplejwt.settings import api_settings

from apps.common.exceptions import ManifestError, ValidationError
from apps.common.infra.logger import get_logger, logger_extra

from .config import RuntimeSettings

logger = get_logger(__name__)


class AccessMode(str, enum.Enum):
    DIRECT = "direct"
    SSH_BASTION = "ssh_bastion"
    WIREGUARD = "wireguard"


_ACCESS_ALIASES = {
    "direct": AccessMode.DIRECT,
    "ssh_bastion": AccessMode.SSH_BASTION,
    "ssh-bastion": AccessMode.SSH_BASTION,
    "bastion": AccessMode.SSH_BASTION,
    "wireguard": AccessMode.WIREGUARD,
    "wg": AccessMode.WIREGUARD,
}

SSH_SCHEME = "ssh"
WIREGUARD_SCHEME = "wg"

SSH_GATEWAY_IMAGE = "linuxserver/openssh-server:latest"
SSH_GATEWAY_SERVICE = "ctf_access_gateway"
SSH_GATEWAY_PORT = 2222
SSH_GATEWAY_USERNAME = "ctf"
SSH_GATEWAY_SUDO = "true"

WIREGUARD_IMAGE = "linuxserver/wireguard:latest"
WIREGUARD_SERVICE = "ctf_access_wireguard"
WIREGUARD_PORT = 51820
WIREGUARD_PEERS = "1"
WIREGUARD_PEER_DNS = "1.1.1.1"
WIREGUARD_CONFIG_SERVICE = "ctf_access_wireguard_config_api"
WIREGUARD_CONFIG_PORT = 8000
WIREGUARD_CONFIG_VOLUME = "ctf_access_wireguard_config"
WIREGUARD_META_FILE = "wireguard-access.json"
WIREGUARD_FETCH_TIMEOUT_SECONDS = 2.0

SSH_ACCESS_NOTE = (
    "Use SSH access box to scan your isolated 10.x.x.0/24 subnet; install extra tools when needed via sudo"
)
WIREGUARD_ACCESS_NOTE = "Download WireGuard config, connect VPN, then scan your isolated 10.x.x.0/24 subnet"

_LINUXSERVER_ENV = {"PUID": "1000", "PGID": "1000", "TZ": "UTC"}

# 配置文件就绪前回 503，就绪后原样返回 peer1.conf
_CONFIG_API_COMMAND = (
    "while true; do if [ -f /config/peer1/peer1.conf ]; then "
    "{{ printf 'HTTP/1.1 200 OK\\r\\nContent-Type: text/plain\\r\\nConnection: close\\r\\n\\r\\n'; "
    "cat /config/peer1/peer1.conf; }} | nc -l -p {port} -q 1; "
    "else printf 'HTTP/1.1 503 Service Unavailable\\r\\nConnection: close\\r\\n\\r\\nwireguard config not ready\\n' "
    "| nc -l -p {port} -q 1; fi; done"
).format(port=WIREGUARD_CONFIG_PORT)


def parse_access_mode(raw: Any) -> AccessMode:
    """metadata.runtime.access_mode → AccessMode；未设置时为 direct"""
    if raw is None:
        return AccessMode.DIRECT
    value = str(raw).strip().lower()
    mode = _ACCESS_ALIASES.get(value)
    if mode is None:
        raise ManifestError(
            message=f"metadata.runtime.access_mode is invalid: '{value}', allowed: direct,ssh_bastion,wireguard"
        )
    return mode


# ======================
# SSH 跳板机凭据
# ======================

def ssh_gateway_username() -> str:
    return SSH_GATEWAY_USERNAME


def ssh_gateway_password(instance: Any) -> str:
    """由签名密钥与实例标识派生，同一实例每次渲染得到同一个密码"""
    seed = f"{api_settings.SIGNING_KEY}:{instance.id}:{instance.team_id}:{instance.challenge_id}"
    return "ctf" + uuid.uuid5(uuid.NAMESPACE_URL, seed).hex[:12]


# ======================
# compose 注入
# ======================

def _load_services(text: str) -> tuple[dict, dict, Optional[str]]:
    """解析渲染结果，返回 (文档, services, 第一个顶层网络名)"""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ManifestError(message=f"failed to parse rendered compose yaml: {exc}") from exc
    if not isinstance(document, dict):
        raise ManifestError(message="rendered compose yaml root must be a mapping")
    services = document.setdefault("services", {})
    if services is None:
        services = document["services"] = {}
    if not isinstance(services, dict):
        raise ManifestError(message="compose.services must be a mapping")
    networks = document.get("networks")
    primary = None
    if isinstance(networks, dict):
        primary = next((str(name) for name in networks if isinstance(name, str)), None)
    return document, services, primary


def _reserve(services: dict, name: str) -> None:
    if name in services:
        raise ManifestError(message=f"compose template reserves service name '{name}', please rename your service")


def _dump(document: dict) -> str:
    return yaml.safe_dump(document, sort_keys=False, allow_unicode=True, default_flow_style=False)


def inject_ssh_gateway(text: str, *, host_port: int, username: str, password: str) -> str:
    document, services, primary = _load_services(text)
    _reserve(services, SSH_GATEWAY_SERVICE)
    gateway: dict[str, Any] = {
        "image": SSH_GATEWAY_IMAGE,
        "environment": {
            **_LINUXSERVER_ENV,
            "PASSWORD_ACCESS": "true",
            "SUDO_ACCESS": SSH_GATEWAY_SUDO,
            "USER_NAME": username,
            "USER_PASSWORD": password,
        },
        "ports": [f"{host_port}:{SSH_GATEWAY_PORT}"],
    }
    if primary:
        gateway["networks"] = [primary]
    services[SSH_GATEWAY_SERVICE] = gateway
    return _dump(document)


def inject_wireguard(text: str, *, public_host: str, host_port: int, subnet: str, config_host_port: int) -> str:
    document, services, primary = _load_services(text)
    _reserve(services, WIREGUARD_SERVICE)
    _reserve(services, WIREGUARD_CONFIG_SERVICE)

    server: dict[str, Any] = {
        "image": WIREGUARD_IMAGE,
        "environment": {
            **_LINUXSERVER_ENV,
            "SERVERURL": public_host,
            "SERVERPORT": str(host_port),
            "PEERS": WIREGUARD_PEERS,
            "PEERDNS": WIREGUARD_PEER_DNS,
            "ALLOWEDIPS": subnet,
            "LOG_CONFS": "true",
        },
        "ports": [f"{host_port}:{WIREGUARD_PORT}/udp"],
        "cap_add": ["NET_ADMIN"],
        "sysctls": {"net.ipv4.conf.all.src_valid_mark": "1"},
        "volumes": [f"{WIREGUARD_CONFIG_VOLUME}:/config"],
    }
    if primary:
        server["networks"] = [primary]
    services[WIREGUARD_SERVICE] = server
    services[WIREGUARD_CONFIG_SERVICE] = {
        "image": WIREGUARD_IMAGE,
        "entrypoint": ["sh", "-lc", _CONFIG_API_COMMAND],
        "depends_on": [WIREGUARD_SERVICE],
        "ports": [f"{config_host_port}:{WIREGUARD_CONFIG_PORT}"],
        "volumes": [f"{WIREGUARD_CONFIG_VOLUME}:/config:ro"],
    }

    volumes = document.setdefault("volumes", {})
    if volumes is None:
        volumes = document["volumes"] = {}
    if not isinstance(volumes, dict):
        raise ManifestError(message="compose.volumes must be a mapping")
    volumes.setdefault(WIREGUARD_CONFIG_VOLUME, {})
    return _dump(document)


# ======================
# WireGuard 元数据与配置下载
# ======================

def wireguard_meta_path(runtime: RuntimeSettings, project_name: str) -> Path:
    return runtime.project_dir(project_name) / WIREGUARD_META_FILE


def read_wireguard_config_port(runtime: RuntimeSettings, project_name: str) -> Optional[int]:
    """读取配置分发端口；文件缺失或损坏时返回 None"""
    path = wireguard_meta_path(runtime, project_name)
    try:
        meta = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning(
            "WireGuard 元数据读取失败",
            extra=logger_extra({"project": project_name, "reason": str(exc)}),
        )
        return None
    port = meta.get("config_host_port") if isinstance(meta, dict) else None
    if isinstance(port, bool) or not isinstance(port, int):
        return None
    return port


def write_wireguard_meta(runtime: RuntimeSettings, project_name: str, config_host_port: int) -> None:
    path = wireguard_meta_path(runtime, project_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"config_host_port": config_host_port}), encoding="utf-8")


def clear_wireguard_meta(runtime: RuntimeSettings, project_name: str) -> None:
    try:
        wireguard_meta_path(runtime, project_name).unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning(
            "WireGuard 元数据清理失败",
            extra=logger_extra({"project": project_name, "reason": str(exc)}),
        )


def _compact(message: str, limit: int = 240) -> str:
    flat = " ".join((message or "").split())
    return flat if len(flat) <= limit else flat[:limit] + "..."


def fetch_wireguard_config(runtime: RuntimeSettings, project_name: str) -> str:
    """
    从实例内的配置分发服务拉取 peer1.conf

    服务端首次启动需要时间生成配置：按配置的次数与间隔重试，
    内容同时包含 [Interface] 与 [Peer] 才视为就绪，换行统一为 LF
    """
    port = read_wireguard_config_port(runtime, project_name)
    if port is None:
        raise ValidationError(message="wireguard access metadata is missing")
    url = f"http://{runtime.wireguard_config_host}:{port}/peer1/peer1.conf"

    last_error = "unknown error"
    for attempt in range(runtime.wireguard_fetch_retries):
        try:
            response = httpx.get(url, timeout=WIREGUARD_FETCH_TIMEOUT_SECONDS)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            last_error = _compact(str(exc)) or "wireguard config fetch failed"
        else:
            content = response.text.replace("\r\n", "\n")
            if "[Interface]" in content and "[Peer]" in content:
                return content
            last_error = "wireguard config is not ready yet"
        if attempt + 1 < runtime.wireguard_fetch_retries:
            time.sleep(runtime.wireguard_fetch_delay_seconds)

    logger.warning(
        "WireGuard 配置拉取失败",
        extra=logger_extra({"project": project_name, "url": url, "reason": last_error}),
    )
    raise ValidationError(message=f"wireguard config is not ready: {last_error}")
