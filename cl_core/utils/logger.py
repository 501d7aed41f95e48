# mypy: disable-error-code="no-untyped-def, assignment, var-annotated"
"""
Commerce Ledger 日志系统
- JSON 格式输出
- 必需字段：ts, level, trace_id, user_id, action, err
- 网关报文脱敏（付款人邮箱、访问令牌、API 密钥）
"""
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper, add_log_level

# Context variables for request tracking
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
user_id_var: ContextVar[Optional[int]] = ContextVar("user_id", default=None)


class PIIMaskingProcessor:
    """网关报文脱敏：付款人邮箱、访问令牌与 API 密钥"""

    MASK = "***MASKED***"
    SECRET_KEYS = frozenset({"access_token", "client_secret", "api_key", "api-key", "authorization"})
    EMAIL = re.compile(r"([a-zA-Z0-9])[a-zA-Z0-9._-]*@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")
    CREDENTIAL = re.compile(
        r"(access_token|client_secret|api[-_]key)[\"']?\s*[:=]\s*[\"']?[^\"'\s,}]+",
        re.IGNORECASE
    )

    def __call__(self, logger, method_name, event_dict):
        return self._mask(event_dict)

    def _mask(self, value: Any, key: Optional[str] = None) -> Any:
        if key is not None and key.lower() in self.SECRET_KEYS:
            return self.MASK
        if isinstance(value, dict):
            return {k: self._mask(v, str(k)) for k, v in value.items()}
        if isinstance(value, list):
            return [self._mask(item) for item in value]
        if isinstance(value, str):
            value = self.EMAIL.sub(r"\1***@\2", value)
            return self.CREDENTIAL.sub(rf"\1={self.MASK}", value)
        return value


class LedgerProcessor:
    """添加账本日志必需字段"""

    def __call__(self, logger, method_name, event_dict):
        event_dict["ts"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

        if trace_id := trace_id_var.get():
            event_dict["trace_id"] = trace_id

        if user_id := user_id_var.get():
            event_dict.setdefault("user_id", user_id)

        # 重命名标准字段
        if "event" in event_dict:
            event_dict["action"] = event_dict.pop("event")

        if "exception" in event_dict:
            event_dict["err"] = str(event_dict.pop("exception"))

        return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json", enable_pii_masking: bool = True) -> None:
    """配置日志系统

    structlog 与标准 logging 统一输出到 stdout
    """
    level = getattr(logging, log_level.upper())

    processors = [
        TimeStamper(fmt="iso"),
        add_log_level,
        LedgerProcessor(),
    ]

    if enable_pii_masking:
        processors.append(PIIMaskingProcessor())

    if log_format == "json":
        processors.append(JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # 移除已有的 handlers，避免重复
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S"
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    logging.getLogger("cl_core").setLevel(level)

    # 降低第三方库的日志级别
    for logger_name in ("httpx", "httpcore", "asyncio", "sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """获取日志记录器"""
    return structlog.get_logger(name)


class LogContext:
    """日志上下文管理器，用于设置请求级别的上下文"""

    def __init__(self, trace_id: Optional[str] = None, user_id: Optional[int] = None):
        self.trace_id = trace_id
        self.user_id = user_id
        self._tokens = []

    def __enter__(self):
        if self.trace_id:
            self._tokens.append(trace_id_var.set(self.trace_id))
        if self.user_id:
            self._tokens.append(user_id_var.set(self.user_id))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for token in reversed(self._tokens):
            token.var.reset(token)
