"""
日志封装：提供统一的日志记录器

- 通过 settings.LOG_PATH 配置输出目录，文件名固定为 system.log
- 支持 JSON 和 PLAIN 两种格式（settings.LOG_FORMAT）
- 按日期自动轮转日志文件，保留 30 天
- 自动注入请求上下文（request_id、user_id、username、ip、path）
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from django.conf import settings as django_settings

_configured = False


def _context() -> dict:
    # 延迟导入，避免 utils 与 infra 之间的循环依赖
    from apps.common.utils.request_context import get_request_context

    return get_request_context()


class FTCJSONFormatter(logging.Formatter):
    """
    JSON 格式化器

    输出示例：
    {"timestamp": "2026-10-18 16:57:25", "level": "INFO", "logger": "apps.instances.services",
     "message": "运行实例启动成功", "instance_id": "...", "request_id": "3f2a..."}
    """

    #: LogRecord 自带属性，不作为结构化字段输出
    _RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        ctx = _context()
        log_dict = {
            "timestamp": datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if ctx.get("username"):
            log_dict["username"] = ctx["username"]
        if ctx.get("user_id") is not None:
            log_dict["user_id"] = ctx["user_id"]
        if ctx.get("ip"):
            log_dict["ip_address"] = ctx["ip"]
        if ctx.get("path"):
            log_dict["request_path"] = ctx["path"]
        if ctx.get("request_id"):
            log_dict["request_id"] = ctx["request_id"]

        # logger_extra 传入的结构化字段
        for key, value in record.__dict__.items():
            if key in self._RESERVED or key in log_dict:
                continue
            log_dict[key] = value if isinstance(value, (str, int, float, bool, type(None))) else str(value)

        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_dict, ensure_ascii=False)


class FTCPlainFormatter(logging.Formatter):
    """
    PLAIN 格式化器

    格式：{timestamp} {level} {logger} {message} [{username}|{user_id}|{ip_address}|{request_path}]
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = _context()
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")

        username = ctx.get("username") or "-"
        user_id = str(ctx.get("user_id")) if ctx.get("user_id") is not None else "-"
        ip_address = ctx.get("ip") or "-"
        request_path = ctx.get("path") or "-"

        log_line = (
            f"{timestamp} {record.levelname} {record.name} {record.getMessage()} "
            f"[{username}|{user_id}|{ip_address}|{request_path}]"
        )
        if record.exc_info:
            log_line += "\n" + self.formatException(record.exc_info)
        return log_line


class SafeTimedRotatingFileHandler(logging.handlers.TimedRotatingFileHandler):
    """轮转失败（文件被其它进程占用）时跳过本次轮转，避免中断日志"""

    def doRollover(self):
        try:
            super().doRollover()
        except PermissionError:
            pass


def get_log_path_from_settings() -> str:
    """基于 settings.LOG_PATH 生成日志文件路径，目录不存在时自动创建"""
    log_dir_path = Path(getattr(django_settings, "LOG_PATH", "logs"))
    log_dir_path.mkdir(parents=True, exist_ok=True)
    return str(log_dir_path / "system.log")


def configure_logging(force: bool = False, *, level: Optional[int] = None, log_file_path: Optional[str] = None) -> None:
    """
    配置日志系统（默认只配置一次）

    - 按日期自动轮转（每天午夜），保留 30 天
    - DEBUG=true 时额外输出到控制台
    """
    global _configured
    if _configured and not force:
        return

    log_level = level if level is not None else getattr(logging, str(getattr(django_settings, "LOG_LEVEL", "INFO")).upper(), logging.INFO)
    log_file_path = log_file_path if log_file_path is not None else get_log_path_from_settings()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # 清除已有 handler，同时关闭旧文件避免资源告警
    for handler in list(root_logger.handlers):
        handler.close()
    root_logger.handlers.clear()

    file_handler = SafeTimedRotatingFileHandler(
        filename=log_file_path,
        when="midnight",
        interval=1,
        backupCount=30,
        encoding="utf-8",
        delay=True,  # 延迟打开文件，避免多进程（web + celery worker）抢占
    )
    file_handler.suffix = "%Y-%m-%d"
    file_handler.setLevel(log_level)

    if str(getattr(django_settings, "LOG_FORMAT", "plain")).lower() == "json":
        formatter: logging.Formatter = FTCJSONFormatter()
    else:
        formatter = FTCPlainFormatter()
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    if os.getenv("DEBUG", "False").lower() == "true":
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    _configured = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取 logger 实例

        logger = get_logger(__name__)
        logger.info("运行实例已销毁", extra=logger_extra({"instance_id": ...}))
    """
    if not _configured:
        configure_logging()
    return logging.getLogger(name)


# Flag、心跳令牌等敏感值不得明文落盘
SENSITIVE_KEYS = {"password", "token", "flag", "dynamic_flag", "heartbeat_token", "secret"}


def sanitize_extra(extra: Optional[dict] = None) -> dict:
    """过滤敏感字段，避免在日志中泄露密码 / Flag / 令牌"""
    if not extra:
        return {}
    return {k: ("***" if k.lower() in SENSITIVE_KEYS else v) for k, v in extra.items()}


def logger_extra(extra: Optional[dict] = None) -> dict:
    """封装 extra，自动过滤敏感字段"""
    return sanitize_extra(extra)
