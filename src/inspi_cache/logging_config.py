"""
Logging configuration for the cache subsystem.

Structured logging with correlation IDs carried through context variables,
plus JSON and colored console output. Nothing is configured on import;
applications call ``initialize_logging`` once at startup.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


class LogFormat(str, Enum):
    """Supported output formats."""
    JSON = "json"
    COLORED = "colored"
    STANDARD = "standard"


# Context variables for correlation tracking
correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
request_id: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

# Attributes owned by logging.LogRecord; structured fields must not clobber them
_RESERVED_ATTRS = frozenset(
    logging.LogRecord('', 0, '', 0, '', (), None).__dict__.keys()
) | {'message', 'asctime'}


class CorrelationFilter(logging.Filter):
    """Attach correlation context to every record."""

    def filter(self, record):
        record.correlation_id = correlation_id.get() or 'unknown'
        record.request_id = request_id.get() or 'no-request'
        record.component = getattr(record, 'component', 'unknown')
        record.operation = getattr(record, 'operation', 'unknown')
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', 'unknown'),
            'request_id': getattr(record, 'request_id', 'no-request'),
            'component': getattr(record, 'component', 'unknown'),
            'operation': getattr(record, 'operation', 'unknown'),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info),
            }

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key in log_entry or key in _RESERVED_ATTRS or key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    log_entry[key] = value
                except (TypeError, ValueError):
                    log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        formatted = super().format(record)
        correlation_info = f"[{getattr(record, 'correlation_id', 'unknown')[:8]}]"
        component_info = f"[{getattr(record, 'component', 'unknown')}]"
        return f"{color}{formatted}{self.RESET} {correlation_info} {component_info}"


class CacheLogger:
    """Component logger that accepts structured keyword fields."""

    def __init__(self, name: str, component: Optional[str] = None):
        self.logger = logging.getLogger(name)
        self.component = component or name.split('.')[-1]

    def _extra(self, operation: Optional[str], fields: Dict[str, Any]) -> Dict[str, Any]:
        extra = {'component': self.component, 'operation': operation or 'unknown'}
        for key, value in fields.items():
            extra[f'field_{key}' if key in _RESERVED_ATTRS else key] = value
        return extra

    def _log(self, log_level: int, message: str, operation: Optional[str] = None, **kwargs):
        if self.logger.isEnabledFor(log_level):
            self.logger.log(log_level, message, extra=self._extra(operation, kwargs))

    def debug(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.DEBUG, message, operation, **kwargs)

    def info(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.INFO, message, operation, **kwargs)

    def warning(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.WARNING, message, operation, **kwargs)

    def error(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.ERROR, message, operation, **kwargs)

    def exception(self, message: str, operation: Optional[str] = None, **kwargs):
        """Log at ERROR level with the active traceback."""
        self.logger.exception(message, extra=self._extra(operation or 'exception', kwargs))


class LoggingConfig:
    """Centralized logging configuration."""

    DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    COMPONENT_LOGGERS = ('inspi_cache',)

    THIRD_PARTY_LOGGERS = {
        'redis': logging.WARNING,
        'asyncio': logging.WARNING,
    }

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = logging.INFO,
        format_type: Union[str, LogFormat] = LogFormat.JSON,
        log_file: Optional[str] = None,
        console_output: bool = True,
        correlation_tracking: bool = True
    ) -> None:
        """
        Configure root logging.

        Args:
            level: Logging level
            format_type: 'json', 'colored', or 'standard'
            log_file: Optional log file path, always written as JSON
            console_output: Enable console output
            correlation_tracking: Enable correlation ID tracking
        """
        format_type = LogFormat(format_type)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        correlation_filter = CorrelationFilter() if correlation_tracking else None

        if console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            console_handler.setFormatter(cls._formatter(format_type))
            if correlation_filter:
                console_handler.addFilter(correlation_filter)
            root_logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(level)
            file_handler.setFormatter(JSONFormatter())
            if correlation_filter:
                file_handler.addFilter(correlation_filter)
            root_logger.addHandler(file_handler)

        for component in cls.COMPONENT_LOGGERS:
            logging.getLogger(component).setLevel(level)
        for logger_name, third_party_level in cls.THIRD_PARTY_LOGGERS.items():
            logging.getLogger(logger_name).setLevel(third_party_level)

        get_logger(__name__, 'logging_config').info(
            "Logging system initialized",
            operation="setup_logging",
            level=level,
            format_type=format_type.value,
            log_file=log_file,
        )

    @classmethod
    def _formatter(cls, format_type: LogFormat) -> logging.Formatter:
        if format_type == LogFormat.JSON:
            return JSONFormatter()
        if format_type == LogFormat.COLORED:
            return ColoredFormatter(cls.DEFAULT_FORMAT)
        return logging.Formatter(cls.DEFAULT_FORMAT)


class CorrelationContext:
    """Context manager binding a correlation ID for the enclosed block."""

    def __init__(self, correlation_id_value: Optional[str] = None, request_id_value: Optional[str] = None):
        self.correlation_id_value = correlation_id_value or str(uuid4())
        self.request_id_value = request_id_value
        self._correlation_token = None
        self._request_token = None

    def __enter__(self):
        self._correlation_token = correlation_id.set(self.correlation_id_value)
        if self.request_id_value:
            self._request_token = request_id.set(self.request_id_value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._correlation_token:
            correlation_id.reset(self._correlation_token)
        if self._request_token:
            request_id.reset(self._request_token)


def get_logger(name: str, component: Optional[str] = None) -> CacheLogger:
    """Get a component logger."""
    return CacheLogger(name, component)


def set_correlation_id(correlation_id_value: str) -> None:
    correlation_id.set(correlation_id_value)


def get_correlation_id() -> Optional[str]:
    return correlation_id.get()


def initialize_logging(settings=None) -> None:
    """Configure logging from monitoring settings."""
    if settings is None:
        from .config import get_settings
        settings = get_settings()

    monitoring = settings.monitoring
    LoggingConfig.setup_logging(
        level=monitoring.log_level.value,
        format_type=monitoring.log_format,
        log_file=monitoring.log_file,
    )
