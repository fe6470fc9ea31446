"""
编排模板渲染

三个阶段：
1) 占位符替换：保留占位符（项目名、子网、入口地址、资源限制、心跳、动态 Flag 等）与
   metadata.compose_variables 声明的 {{VAR:NAME}} 自定义变量；非法占位符、未声明变量、
   必填变量为空都在执行任何外部命令之前拒绝
2) 接入方式注入：ssh_bastion / wireguard 在替换结果中追加接入服务（见 access.py）
3) 资源限制注入：按 YAML 解析后为每个 service 写入 cpus / mem_limit；解析失败只记录告警，沿用替换后的文本

渲染结果写入 <INSTANCE_RUNTIME_ROOT>/<项目名>/docker-compose.generated.yml
"""

from __future__ import annotations

import datetime
import enum
import random
import re
import shutil
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit

import yaml
from django.utils import timezone

from apps.common.exceptions import InstanceError, ManifestError, ValidationError
from apps.common.infra import jwt_provider
from apps.common.infra.logger import get_logger, logger_extra
from apps.common.utils.time import to_timestamp

from .access import (
    SSH_SCHEME,
    WIREGUARD_SCHEME,
    AccessMode,
    clear_wireguard_meta,
    inject_ssh_gateway,
    inject_wireguard,
    parse_access_mode,
    read_wireguard_config_port,
    ssh_gateway_password,
    ssh_gateway_username,
    write_wireguard_meta,
)
from .config import RuntimeSettings
from .flags import DynamicFlagStore, RedisFlagStore, provision_dynamic_flag
from .subnets import network_name, subnet_host_ip

logger = get_logger(__name__)

COMPOSE_VARIABLES_KEY = "compose_variables"
RUNTIME_KEY = "runtime"
VARIABLE_PREFIX = "VAR:"
VARIABLE_NAME_MAX_LENGTH = 64
_VARIABLE_NAME_RE = re.compile(r"^[A-Z0-9_]+$")
_PLACEHOLDER_RE = re.compile(r"\{\{(.*?)\}\}", re.S)

HEARTBEAT_TOKEN_USE = "instance_heartbeat"
HEARTBEAT_TOKEN_GRACE_SECONDS = 10 * 60
HEARTBEAT_TOKEN_MAX_TTL_SECONDS = 24 * 60 * 60
HEARTBEAT_TOKEN_MIN_TTL_SECONDS = 10 * 60
HOST_PORT_ALLOCATE_RETRIES = 64
TEMPLATE_MISSING_MESSAGE = "challenge runtime template is missing"

RESERVED_PLACEHOLDERS = frozenset({
    "PROJECT_NAME",
    "COMPOSE_PROJECT_NAME",
    "NETWORK_NAME",
    "SUBNET",
    "SUBNET_CIDR",
    "TEAM_ID",
    "CONTEST_ID",
    "CHALLENGE_ID",
    "ENTRYPOINT_URL",
    "ENTRYPOINT_HOST",
    "GATEWAY_IP",
    "PUBLIC_HOST",
    "HOST_PORT",
    "ACCESS_HOST_PORT",
    "ACCESS_USERNAME",
    "ACCESS_PASSWORD",
    "CPU_LIMIT",
    "MEMORY_LIMIT_MB",
    "MEMORY_LIMIT",
    "HEARTBEAT_REPORT_URL",
    "HEARTBEAT_REPORT_TOKEN",
    "HEARTBEAT_INTERVAL_SECONDS",
    "DYNAMIC_FLAG",
    "FLAG",
})


# ======================
# 占位符解析
# ======================

def collect_placeholder_tokens(template: str) -> list[str]:
    """按出现顺序返回 {{...}} 中的占位符（去掉首尾空白），结构不合法时抛 ManifestError"""
    tokens: list[str] = []
    cursor = 0
    while True:
        start = template.find("{{", cursor)
        if start < 0:
            break
        if "}}" in template[cursor:start]:
            raise ManifestError(message="compose template contains an unmatched '}}' token")
        end = template.find("}}", start + 2)
        if end < 0:
            raise ManifestError(message="compose template contains an unclosed '{{' placeholder")
        token = template[start + 2:end].strip()
        if not token:
            raise ManifestError(message="compose template contains an empty placeholder '{{}}'")
        tokens.append(token)
        cursor = end + 2
    if "}}" in template[cursor:]:
        raise ManifestError(message="compose template contains an unmatched '}}' token")
    return tokens


def validate_variable_name(name: str) -> str:
    trimmed = (name or "").strip()
    if not trimmed:
        raise ManifestError(message="compose variable name must not be empty")
    if len(trimmed) > VARIABLE_NAME_MAX_LENGTH:
        raise ManifestError(message=f"compose variable '{trimmed}' is too long (max 64 chars)")
    if not _VARIABLE_NAME_RE.match(trimmed):
        raise ManifestError(message=f"compose variable '{trimmed}' is invalid, only [A-Z0-9_] is allowed")
    return trimmed


@dataclass(frozen=True)
class ComposeVariable:
    value: str
    required: bool = False


def _stringify_scalar(value: Any, field: str) -> Optional[str]:
    """标量转字符串：None 视为未设置，字符串去空白，布尔小写"""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)):
        return str(value)
    raise ManifestError(message=f"{field} must be string/number/bool/null")


def _variable_from_entry(entry: Mapping[str, Any], field: str) -> ComposeVariable:
    required = entry.get("required") is True
    explicit = _stringify_scalar(entry["value"], f"{field}.value") if "value" in entry else None
    default = _stringify_scalar(entry["default"], f"{field}.default") if "default" in entry else None
    if explicit is not None:
        return ComposeVariable(value=explicit, required=required)
    return ComposeVariable(value=default or "", required=required)


def parse_compose_variables(metadata: Mapping[str, Any]) -> dict[str, ComposeVariable]:
    """
    解析 metadata.compose_variables，支持两种写法：

        [{"name": "APP_PORT", "value": "8080", "required": true}]
        {"APP_PORT": "8080", "MODE": {"default": "prod"}}
    """
    raw = (metadata or {}).get(COMPOSE_VARIABLES_KEY)
    if raw is None:
        return {}
    variables: dict[str, ComposeVariable] = {}
    if isinstance(raw, list):
        for index, item in enumerate(raw):
            if not isinstance(item, dict):
                raise ManifestError(message=f"metadata.{COMPOSE_VARIABLES_KEY}[{index}] must be an object")
            name = item.get("name")
            if not isinstance(name, str) or not name.strip():
                raise ManifestError(
                    message=f"metadata.{COMPOSE_VARIABLES_KEY}[{index}].name must be a non-empty string"
                )
            name = validate_variable_name(name)
            if name in variables:
                raise ManifestError(message=f"metadata.{COMPOSE_VARIABLES_KEY} contains duplicated variable '{name}'")
            variables[name] = _variable_from_entry(item, f"{COMPOSE_VARIABLES_KEY}[{index}]")
        return variables
    if isinstance(raw, dict):
        for raw_name, raw_value in raw.items():
            name = validate_variable_name(str(raw_name))
            if name in variables:
                raise ManifestError(message=f"metadata.{COMPOSE_VARIABLES_KEY} contains duplicated variable '{name}'")
            field = f"{COMPOSE_VARIABLES_KEY}.{name}"
            if isinstance(raw_value, dict):
                variables[name] = _variable_from_entry(raw_value, field)
            else:
                variables[name] = ComposeVariable(value=_stringify_scalar(raw_value, field) or "")
        return variables
    raise ManifestError(message=f"metadata.{COMPOSE_VARIABLES_KEY} must be an object map or array")


def validate_template(template: str, metadata: Mapping[str, Any]) -> dict[str, ComposeVariable]:
    """校验模板结构与占位符引用，返回解析出的自定义变量"""
    normalized = (template or "").strip()
    if not normalized:
        raise ValidationError(message=TEMPLATE_MISSING_MESSAGE)
    tokens = collect_placeholder_tokens(normalized)
    variables = parse_compose_variables(metadata)
    for token in tokens:
        if token in RESERVED_PLACEHOLDERS:
            continue
        if not token.startswith(VARIABLE_PREFIX):
            raise ManifestError(
                message=(
                    f"unsupported compose placeholder '{{{{{token}}}}}', "
                    "only reserved placeholders and '{{VAR:NAME}}' are allowed"
                )
            )
        name = validate_variable_name(token[len(VARIABLE_PREFIX):])
        if name not in variables:
            raise ManifestError(
                message=f"compose variable '{name}' is referenced but not defined in metadata.{COMPOSE_VARIABLES_KEY}"
            )
    for name, variable in variables.items():
        if variable.required and not variable.value.strip():
            raise ManifestError(message=f"compose variable '{name}' is required but resolved value is empty")
    return variables


def substitute(template: str, reserved: Mapping[str, str], variables: Mapping[str, ComposeVariable]) -> str:
    """单次扫描替换，替换结果中的 {{...}} 不会再次展开"""

    def _replace(match: re.Match) -> str:
        token = match.group(1).strip()
        if token in reserved:
            return reserved[token]
        if token.startswith(VARIABLE_PREFIX):
            variable = variables.get(token[len(VARIABLE_PREFIX):].strip())
            if variable is not None:
                return variable.value
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, template)


# ======================
# 运行时模式
# ======================

class RuntimeMode(str, enum.Enum):
    COMPOSE = "compose"
    SINGLE_IMAGE = "single_image"


class EndpointProtocol(str, enum.Enum):
    HTTP = "http"
    HTTPS = "https"
    TCP = "tcp"


_MODE_ALIASES = {
    "compose": RuntimeMode.COMPOSE,
    "compose_template": RuntimeMode.COMPOSE,
    "single_image": RuntimeMode.SINGLE_IMAGE,
    "single-image": RuntimeMode.SINGLE_IMAGE,
    "image": RuntimeMode.SINGLE_IMAGE,
}


@dataclass(frozen=True)
class SingleImageConfig:
    image: str
    internal_port: int
    protocol: EndpointProtocol = EndpointProtocol.HTTP


@dataclass(frozen=True)
class RuntimeOptions:
    mode: RuntimeMode = RuntimeMode.COMPOSE
    single_image: Optional[SingleImageConfig] = None
    access_mode: AccessMode = AccessMode.DIRECT


def parse_runtime_options(metadata: Mapping[str, Any]) -> RuntimeOptions:
    runtime = (metadata or {}).get(RUNTIME_KEY)
    if not isinstance(runtime, dict):
        runtime = {}

    raw_mode = str(runtime.get("mode") or "compose").strip().lower()
    mode = _MODE_ALIASES.get(raw_mode)
    if mode is None:
        raise ManifestError(
            message=f"metadata.runtime.mode is invalid: '{raw_mode}', allowed: compose,single_image"
        )

    access_mode = parse_access_mode(runtime.get("access_mode"))

    if mode is RuntimeMode.COMPOSE:
        return RuntimeOptions(mode=mode, access_mode=access_mode)

    image = runtime.get("image")
    if not isinstance(image, str):
        raise ManifestError(message="metadata.runtime.image is required when mode=single_image")
    image = image.strip()
    if not image:
        raise ManifestError(message="metadata.runtime.image must not be empty")
    if any(ch.isspace() for ch in image):
        raise ManifestError(message="metadata.runtime.image must not contain spaces")
    if '"' in image or "'" in image:
        raise ManifestError(message="metadata.runtime.image contains unsupported quote characters")

    port = runtime.get("internal_port")
    if isinstance(port, bool) or not isinstance(port, int):
        raise ManifestError(message="metadata.runtime.internal_port is required when mode=single_image")
    if port < 1 or port > 65535:
        raise ManifestError(message="metadata.runtime.internal_port must be in 1..65535")

    raw_protocol = str(runtime.get("protocol") or "http").strip().lower()
    try:
        protocol = EndpointProtocol(raw_protocol)
    except ValueError as exc:
        raise ManifestError(
            message=f"metadata.runtime.protocol is invalid: '{raw_protocol}', allowed: http,https,tcp"
        ) from exc

    return RuntimeOptions(mode=mode, single_image=SingleImageConfig(image=image, internal_port=port, protocol=protocol))


def build_single_image_template(image: str, internal_port: int) -> str:
    """单镜像模式合成的 compose 模板：一个 target 服务，宿主机端口映射到 internal_port"""
    return (
        "services:\n"
        "  target:\n"
        f"    image: \"{image}\"\n"
        "    restart: unless-stopped\n"
        "    ports:\n"
        f"      - \"{{{{HOST_PORT}}}}:{internal_port}\"\n"
        "    environment:\n"
        "      DYNAMIC_FLAG: \"{{DYNAMIC_FLAG}}\"\n"
        "      FLAG: \"{{FLAG}}\"\n"
        "      TEAM_ID: \"{{TEAM_ID}}\"\n"
        "      CONTEST_ID: \"{{CONTEST_ID}}\"\n"
        "      CHALLENGE_ID: \"{{CHALLENGE_ID}}\"\n"
        "      HEARTBEAT_REPORT_URL: \"{{HEARTBEAT_REPORT_URL}}\"\n"
        "      HEARTBEAT_REPORT_TOKEN: \"{{HEARTBEAT_REPORT_TOKEN}}\"\n"
        "      HEARTBEAT_INTERVAL_SECONDS: \"{{HEARTBEAT_INTERVAL_SECONDS}}\"\n"
        "    networks:\n"
        "      - \"{{NETWORK_NAME}}\"\n"
        "networks:\n"
        "  \"{{NETWORK_NAME}}\":\n"
        "    driver: bridge\n"
        "    ipam:\n"
        "      config:\n"
        "        - subnet: \"{{SUBNET}}\"\n"
    )


@dataclass(frozen=True)
class RenderSource:
    """一次渲染所需的题目侧输入"""

    template: str
    flag_mode: str
    metadata: Mapping[str, Any]
    mode: RuntimeMode = RuntimeMode.COMPOSE
    protocol: Optional[EndpointProtocol] = None
    access_mode: AccessMode = AccessMode.DIRECT

    @property
    def host_mapped(self) -> bool:
        return self.mode is RuntimeMode.SINGLE_IMAGE or self.access_mode is not AccessMode.DIRECT


def build_render_source(challenge: Any) -> RenderSource:
    """从题目生成渲染输入，并完成模板校验"""
    metadata = getattr(challenge, "metadata", None) or {}
    options = parse_runtime_options(metadata)
    flag_mode = str(getattr(challenge, "flag_mode", "") or "")
    if options.mode is RuntimeMode.SINGLE_IMAGE:
        single = options.single_image
        template = build_single_image_template(single.image, single.internal_port)
        validate_template(template, metadata)
        return RenderSource(template, flag_mode, metadata, RuntimeMode.SINGLE_IMAGE, single.protocol)
    template = (getattr(challenge, "compose_template", "") or "").strip()
    validate_template(template, metadata)
    return RenderSource(template, flag_mode, metadata, access_mode=options.access_mode)


# ======================
# 入口地址
# ======================

def parse_entrypoint_host_port(url: str) -> Optional[tuple[str, int]]:
    """scheme://host:port → (host, port)；没有端口时返回 None"""
    if not url:
        return None
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    if not parts.hostname or port is None:
        return None
    return parts.hostname, port


def _port_is_free(port: int, kind: int = socket.SOCK_STREAM) -> bool:
    with socket.socket(socket.AF_INET, kind) as sock:
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return False
    return True


def allocate_host_port(runtime: RuntimeSettings, *, udp: bool = False) -> int:
    """在配置的端口区间内随机探测一个当前可绑定的 TCP（或 UDP）端口"""
    kind = socket.SOCK_DGRAM if udp else socket.SOCK_STREAM
    for _ in range(HOST_PORT_ALLOCATE_RETRIES):
        port = random.randint(runtime.host_port_min, runtime.host_port_max)
        if _port_is_free(port, kind):
            return port
    raise InstanceError(message="failed to allocate random host port in configured range")


def resolve_entrypoint_url(
        source: RenderSource,
        subnet: str,
        runtime: RuntimeSettings,
        existing_url: Optional[str] = None,
) -> str:
    """
    compose 模式：http://<子网 .2>
    单镜像模式：<protocol>://<public_host>:<host_port>
    ssh_bastion：ssh://<public_host>:<tcp 端口>；wireguard：wg://<public_host>:<udp 端口>

    宿主机端口已分配过时沿用
    """
    if not source.host_mapped:
        host = subnet_host_ip(subnet, 2)
        return f"http://{host}" if host else ""
    udp = source.access_mode is AccessMode.WIREGUARD
    existing = parse_entrypoint_host_port(existing_url or "")
    port = existing[1] if existing else allocate_host_port(runtime, udp=udp)
    if source.access_mode is AccessMode.SSH_BASTION:
        scheme = SSH_SCHEME
    elif udp:
        scheme = WIREGUARD_SCHEME
    else:
        scheme = (source.protocol or EndpointProtocol.HTTP).value
    return f"{scheme}://{runtime.public_host}:{port}"


# ======================
# 心跳令牌
# ======================

def issue_heartbeat_token(instance: Any, *, now: Optional[datetime.datetime] = None) -> str:
    """
    签发实例自报心跳用的令牌

    iat 取实例 started_at，exp 取 expires_at + 10 分钟，并限制在 iat 之后 [10 分钟, 24 小时] 内；
    同一次启动内多次渲染得到同一个令牌
    """
    issued_at = getattr(instance, "started_at", None) or now or timezone.now()
    iat = to_timestamp(issued_at)
    expires_at = getattr(instance, "expires_at", None)
    if expires_at is not None:
        exp = to_timestamp(expires_at) + HEARTBEAT_TOKEN_GRACE_SECONDS
    else:
        exp = iat + HEARTBEAT_TOKEN_MAX_TTL_SECONDS
    exp = min(exp, iat + HEARTBEAT_TOKEN_MAX_TTL_SECONDS)
    exp = max(exp, iat + HEARTBEAT_TOKEN_MIN_TTL_SECONDS)
    return jwt_provider.encode_claims({
        "sub": str(instance.id),
        "token_use": HEARTBEAT_TOKEN_USE,
        "iat": iat,
        "exp": exp,
    })


def decode_heartbeat_token(token: str) -> str:
    """校验令牌并返回实例 ID 字符串"""
    claims = jwt_provider.decode_claims((token or "").strip(), token_use=HEARTBEAT_TOKEN_USE)
    return str(claims.get("sub") or "")


# ======================
# 资源限制注入
# ======================

def apply_resource_limits(text: str, cpu_limit: Optional[str], memory_limit_mb: Optional[int]) -> str:
    if cpu_limit is None and memory_limit_mb is None:
        return text
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.warning("compose 模板解析失败，跳过资源限制注入", extra=logger_extra({"reason": str(exc)[:200]}))
        return text
    if not isinstance(document, dict) or not isinstance(document.get("services"), dict):
        return text
    for service in document["services"].values():
        if not isinstance(service, dict):
            continue
        if cpu_limit is not None:
            service["cpus"] = cpu_limit
        if memory_limit_mb is not None:
            service["mem_limit"] = f"{memory_limit_mb}m"
    try:
        return yaml.safe_dump(document, sort_keys=False, allow_unicode=True, default_flow_style=False)
    except yaml.YAMLError as exc:
        logger.warning("compose 模板序列化失败，跳过资源限制注入", extra=logger_extra({"reason": str(exc)[:200]}))
        return text


def _format_cpu(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return "%.2f" % float(value)


# ======================
# 渲染器
# ======================

class ManifestRenderer:
    """
    渲染并落盘 compose 文件

        renderer = ManifestRenderer()
        compose_file = renderer.write(instance, build_render_source(challenge))
    """

    def __init__(self, runtime: Optional[RuntimeSettings] = None, flag_store: Optional[DynamicFlagStore] = None):
        self.runtime = runtime or RuntimeSettings.load()
        self.flag_store = flag_store or RedisFlagStore()

    def compose_file(self, project_name: str) -> Path:
        return self.runtime.compose_file(project_name)

    def reserved_values(self, instance: Any, source: RenderSource) -> dict[str, str]:
        dynamic_flag = ""
        if source.flag_mode == "dynamic":
            dynamic_flag = provision_dynamic_flag(
                self.flag_store,
                contest_id=instance.contest_id,
                challenge_id=instance.challenge_id,
                team_id=instance.team_id,
            )
        endpoint = parse_entrypoint_host_port(instance.entrypoint_url)
        public_host = endpoint[0] if endpoint else self.runtime.public_host
        host_port = str(endpoint[1]) if endpoint else ""
        cpu_limit = _format_cpu(instance.cpu_limit) or ""
        memory_mb = instance.memory_limit_mb
        project = instance.compose_project_name
        return {
            "PROJECT_NAME": project,
            "COMPOSE_PROJECT_NAME": project,
            "NETWORK_NAME": network_name(project),
            "SUBNET": instance.subnet,
            "SUBNET_CIDR": instance.subnet,
            "TEAM_ID": str(instance.team_id),
            "CONTEST_ID": str(instance.contest_id),
            "CHALLENGE_ID": str(instance.challenge_id),
            "ENTRYPOINT_URL": instance.entrypoint_url or "",
            "ENTRYPOINT_HOST": subnet_host_ip(instance.subnet, 2),
            "GATEWAY_IP": subnet_host_ip(instance.subnet, 1),
            "PUBLIC_HOST": public_host,
            "HOST_PORT": host_port,
            "ACCESS_HOST_PORT": host_port,
            "ACCESS_USERNAME": ssh_gateway_username(),
            "ACCESS_PASSWORD": ssh_gateway_password(instance),
            "CPU_LIMIT": cpu_limit,
            "MEMORY_LIMIT_MB": str(memory_mb) if memory_mb else "",
            "MEMORY_LIMIT": f"{memory_mb}m" if memory_mb else "",
            "HEARTBEAT_REPORT_URL": self.runtime.heartbeat_report_url,
            "HEARTBEAT_REPORT_TOKEN": issue_heartbeat_token(instance),
            "HEARTBEAT_INTERVAL_SECONDS": str(self.runtime.heartbeat_interval_seconds),
            "DYNAMIC_FLAG": dynamic_flag,
            "FLAG": dynamic_flag,
        }

    def inject_access(self, text: str, instance: Any, source: RenderSource, config_host_port: Optional[int]) -> str:
        if source.access_mode is AccessMode.DIRECT:
            return text
        endpoint = parse_entrypoint_host_port(instance.entrypoint_url)
        if endpoint is None:
            raise ManifestError(message="instance entrypoint host port is missing")
        public_host, host_port = endpoint
        if source.access_mode is AccessMode.SSH_BASTION:
            return inject_ssh_gateway(
                text,
                host_port=host_port,
                username=ssh_gateway_username(),
                password=ssh_gateway_password(instance),
            )
        if config_host_port is None:
            raise ManifestError(message="wireguard config port is not allocated")
        return inject_wireguard(
            text,
            public_host=public_host,
            host_port=host_port,
            subnet=instance.subnet,
            config_host_port=config_host_port,
        )

    def render(self, instance: Any, source: RenderSource, *, config_host_port: Optional[int] = None) -> str:
        variables = validate_template(source.template, source.metadata)
        rendered = substitute(source.template, self.reserved_values(instance, source), variables)
        rendered = self.inject_access(rendered, instance, source, config_host_port)
        return apply_resource_limits(rendered, _format_cpu(instance.cpu_limit), instance.memory_limit_mb or None)

    def write(self, instance: Any, source: RenderSource) -> Path:
        """
        渲染并落盘；wireguard 模式同时写入配置分发端口（已有时沿用），其它模式清掉残留的元数据
        """
        project = instance.compose_project_name
        config_host_port = None
        if source.access_mode is AccessMode.WIREGUARD:
            config_host_port = read_wireguard_config_port(self.runtime, project) or allocate_host_port(self.runtime)
        rendered = self.render(instance, source, config_host_port=config_host_port)
        path = self.compose_file(project)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(rendered, encoding="utf-8")
        if config_host_port is not None:
            write_wireguard_meta(self.runtime, project, config_host_port)
        else:
            clear_wireguard_meta(self.runtime, project)
        return path

    def ensure(self, instance: Any) -> Path:
        """已有 compose 文件直接复用，缺失时按题目当前配置重新生成"""
        path = self.compose_file(instance.compose_project_name)
        if path.exists():
            return path
        logger.info(
            "compose 文件缺失，重新渲染",
            extra=logger_extra({"instance_id": str(instance.id), "project": instance.compose_project_name}),
        )
        return self.write(instance, build_render_source(instance.challenge))

    def cleanup(self, project_name: str) -> None:
        """删除项目目录（含 WireGuard 元数据），目录不存在视为已清理"""
        clear_wireguard_meta(self.runtime, project_name)
        project_dir = self.runtime.project_dir(project_name)
        try:
            shutil.rmtree(project_dir)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning(
                "清理运行目录失败",
                extra=logger_extra({"project": project_name, "runtime_dir": str(project_dir), "reason": str(exc)}),
            )
