"""
Django settings for Config project.

所有可变配置均来自环境变量，缺省值面向本地开发（SQLite + 本机 Redis）
"""

import os
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-change-me-in-production")
DEBUG = _env_bool("DEBUG", False)
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "*").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "drf_spectacular",
    "apps.accounts",
    "apps.contests",
    "apps.challenges",
    "apps.instances",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "apps.common.middleware.RequestContextMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "Config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "Config.wsgi.application"
ASGI_APPLICATION = "Config.asgi.application"

# 数据库：默认 SQLite，生产通过 DB_ENGINE=postgresql 等切换
DB_ENGINE = os.getenv("DB_ENGINE", "sqlite3")
if DB_ENGINE == "sqlite3":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": f"django.db.backends.{DB_ENGINE}",
            "NAME": os.getenv("DB_NAME", "ftc"),
            "USER": os.getenv("DB_USER", "ftc"),
            "PASSWORD": os.getenv("DB_PASSWORD", ""),
            "HOST": os.getenv("DB_HOST", "127.0.0.1"),
            "PORT": os.getenv("DB_PORT", ""),
        }
    }

AUTH_USER_MODEL = "accounts.User"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "zh-hans"
TIME_ZONE = os.getenv("TIME_ZONE", "Asia/Shanghai")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# ======================
# DRF / OpenAPI / JWT
# ======================

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "apps.common.authentication.JWTAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "apps.common.permissions.IsAuthenticated",
    ],
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "EXCEPTION_HANDLER": "apps.common.exception_handler.custom_exception_handler",
    "UNAUTHENTICATED_USER": "django.contrib.auth.models.AnonymousUser",
}

SPECTACULAR_SETTINGS = {
    "TITLE": "Runtime Instance Orchestrator API",
    "DESCRIPTION": "比赛题目运行实例的启动、停止、重置、销毁与心跳接口",
    "VERSION": "1.0.0",
    "SERVE_INCLUDE_SCHEMA": False,
}

SIMPLE_JWT = {
    "ACCESS_TOKEN_LIFETIME": timedelta(minutes=_env_int("JWT_ACCESS_MINUTES", 60)),
    "REFRESH_TOKEN_LIFETIME": timedelta(days=_env_int("JWT_REFRESH_DAYS", 7)),
    "AUTH_HEADER_TYPES": ("Bearer",),
    "SIGNING_KEY": os.getenv("JWT_SIGNING_KEY", SECRET_KEY),
    "ALGORITHM": "HS256",
}

# ======================
# 缓存 / Redis / Celery
# ======================

REDIS_HOST = os.getenv("REDIS_HOST", "127.0.0.1")
REDIS_PORT = _env_int("REDIS_PORT", 6379)
REDIS_DB_CACHE = _env_int("REDIS_DB_CACHE", 0)
REDIS_DB_BROKER = _env_int("REDIS_DB_BROKER", 1)
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", "")

_redis_auth = f":{REDIS_PASSWORD}@" if REDIS_PASSWORD else ""

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.redis.RedisCache",
        "LOCATION": f"redis://{_redis_auth}{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB_CACHE}",
    }
}

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", f"redis://{_redis_auth}{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB_BROKER}")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)
CELERY_BEAT_SCHEDULE = {}

# ======================
# 日志
# ======================

LOG_PATH = os.getenv("LOG_PATH", str(BASE_DIR / "logs"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "plain")

# ======================
# 运行实例编排
# ======================

INSTANCE_RUNTIME_ROOT = os.getenv("INSTANCE_RUNTIME_ROOT", "./runtime/instances")
INSTANCE_TTL_MINUTES = _env_int("INSTANCE_TTL_MINUTES", 120)
COMPOSE_COMMAND_TIMEOUT_SECONDS = _env_int("COMPOSE_COMMAND_TIMEOUT_SECONDS", 120)
COMPOSE_PRIMARY_BINARY = os.getenv("COMPOSE_PRIMARY_BINARY", "docker")
COMPOSE_LEGACY_BINARY = os.getenv("COMPOSE_LEGACY_BINARY", "docker-compose")

INSTANCE_DEFAULT_CPU_LIMIT = _env_float("INSTANCE_DEFAULT_CPU_LIMIT", 1.0)
INSTANCE_DEFAULT_MEMORY_LIMIT_MB = _env_int("INSTANCE_DEFAULT_MEMORY_LIMIT_MB", 512)

INSTANCE_PUBLIC_HOST = os.getenv("INSTANCE_PUBLIC_HOST", "127.0.0.1")
INSTANCE_HOST_PORT_MIN = _env_int("INSTANCE_HOST_PORT_MIN", 20000)
INSTANCE_HOST_PORT_MAX = _env_int("INSTANCE_HOST_PORT_MAX", 40000)

INSTANCE_HEARTBEAT_REPORT_URL = os.getenv("INSTANCE_HEARTBEAT_REPORT_URL", "")
INSTANCE_HEARTBEAT_REPORT_INTERVAL_SECONDS = _env_int("INSTANCE_HEARTBEAT_REPORT_INTERVAL_SECONDS", 30)

# WireGuard 接入：编排进程通过该主机名访问实例内的配置分发服务
INSTANCE_WIREGUARD_CONFIG_HOST = os.getenv("INSTANCE_WIREGUARD_CONFIG_HOST", "host.docker.internal")
INSTANCE_WIREGUARD_CONFIG_FETCH_RETRIES = _env_int("INSTANCE_WIREGUARD_CONFIG_FETCH_RETRIES", 6)
INSTANCE_WIREGUARD_CONFIG_FETCH_DELAY_SECONDS = _env_float("INSTANCE_WIREGUARD_CONFIG_FETCH_DELAY_SECONDS", 1.0)

INSTANCE_REAPER_ENABLED = _env_bool("INSTANCE_REAPER_ENABLED", True)
INSTANCE_REAPER_INTERVAL_SECONDS = _env_int("INSTANCE_REAPER_INTERVAL_SECONDS", 60)
INSTANCE_REAPER_BATCH_SIZE = _env_int("INSTANCE_REAPER_BATCH_SIZE", 50)
INSTANCE_STALE_REAPER_ENABLED = _env_bool("INSTANCE_STALE_REAPER_ENABLED", True)
INSTANCE_HEARTBEAT_STALE_SECONDS = _env_int("INSTANCE_HEARTBEAT_STALE_SECONDS", 300)
INSTANCE_STALE_REAPER_BATCH_SIZE = _env_int("INSTANCE_STALE_REAPER_BATCH_SIZE", 50)
