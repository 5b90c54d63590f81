"""
Structlog 日志配置模块

API 进程与 Celery worker 共用同一处理链：contextvars（request_id 等）合并、
ISO 时间戳、渠道密钥脱敏，DEBUG 下控制台渲染，其余环境输出 JSON。
"""
import json
import logging
from typing import Any, List

import structlog
from structlog.contextvars import merge_contextvars
from structlog.dev import ConsoleRenderer
from structlog.processors import JSONRenderer, TimeStamper, add_log_level
from structlog.stdlib import ProcessorFormatter

from core.config import settings


# 日志字段名命中即整体替换
SECRET_KEYS = frozenset({
    "api_key",
    "checksum_key",
    "client_secret",
    "access_token",
    "signature",
    "authorization",
    "x-internal-token",
})
REDACTED = "***"

# 第三方库默认只保留 WARNING 以上
NOISY_LOGGERS = ("httpx", "httpcore", "celery", "kombu", "amqp", "aiosqlite", "asyncio")


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: (REDACTED if str(k).lower() in SECRET_KEYS else _redact(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact(v) for v in value]
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog 处理器：渠道凭证、签名不落日志（含嵌套的 provider_response）"""
    for key in list(event_dict):
        if key.lower() in SECRET_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(event_dict[key], (dict, list)):
            event_dict[key] = _redact(event_dict[key])
    return event_dict


def add_service_context(logger: Any, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", settings.PROJECT_NAME)
    event_dict.setdefault("env", settings.ENVIRONMENT)
    return event_dict


def get_renderer() -> Any:
    """DEBUG 用控制台渲染，其余环境输出单行 JSON"""
    if settings.DEBUG:
        return ConsoleRenderer(colors=True)

    # structlog 会传入 default 等关键字参数
    def _dumps(obj, default=None, **kwargs):
        return json.dumps(obj, ensure_ascii=False, default=default or str, **kwargs)

    return JSONRenderer(serializer=_dumps)


def configure_logging() -> None:
    """配置 structlog 并把标准库 logging（uvicorn、celery、sqlalchemy）桥接到同一处理链。"""
    shared_pre_chain: List[Any] = [
        merge_contextvars,
        add_log_level,
        add_service_context,
        TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_secrets,
    ]

    structlog.configure(
        processors=[
            *shared_pre_chain,
            ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = ProcessorFormatter(
        foreign_pre_chain=shared_pre_chain,
        processors=[
            ProcessorFormatter.remove_processors_meta,
            get_renderer(),
        ],
    )
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if not settings.database.echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """获取 structlog logger 实例。"""
    return structlog.get_logger(name)


# worker 与脚本入口不经过 main.py，导入即配置
configure_logging()
