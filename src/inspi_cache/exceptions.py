"""
Cache Subsystem Exceptions

Typed exceptions for the caching and resilience layers.
Every exception keeps a machine readable error code and a details
mapping so callers and log aggregators can act on it.
"""

from typing import Any, Dict, Optional


class CacheException(Exception):
    """Base exception for cache subsystem errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or "CACHE_ERROR"
        self.details = details or {}
        super().__init__(self.message)


class RemoteStoreException(CacheException):
    """Raised when a remote store operation fails."""

    def __init__(
        self,
        message: str = "Remote store operation failed",
        operation: Optional[str] = None,
        key: Optional[str] = None,
        original_error: Optional[Exception] = None,
        error_code: str = "REMOTE_STORE_ERROR",
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if key:
            details["key"] = key
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(message=message, error_code=error_code, details=details)
        if original_error:
            self.__cause__ = original_error


class RemoteStoreConnectionException(RemoteStoreException):
    """Raised on transient connection or timeout failures."""

    def __init__(
        self,
        message: str = "Remote store connection failed",
        operation: Optional[str] = None,
        key: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            operation=operation,
            key=key,
            original_error=original_error,
            error_code="REMOTE_STORE_CONNECTION_ERROR",
        )


class RemoteStoreNotReadyException(RemoteStoreException):
    """Raised when the remote store is not connected."""

    def __init__(
        self,
        message: str = "Remote store is not ready",
        operation: Optional[str] = None,
        status: Optional[str] = None,
        error_code: str = "REMOTE_STORE_NOT_READY",
    ):
        super().__init__(message=message, operation=operation, error_code=error_code)
        if status:
            self.details["status"] = status


class RemoteStoreUnavailableException(RemoteStoreNotReadyException):
    """Raised once the reconnect budget has been exhausted."""

    def __init__(
        self,
        message: str = "Remote store unavailable - reconnect attempts exhausted",
        operation: Optional[str] = None,
        attempts: Optional[int] = None,
    ):
        super().__init__(
            message=message,
            operation=operation,
            status="unavailable",
            error_code="REMOTE_STORE_UNAVAILABLE",
        )
        if attempts is not None:
            self.details["reconnect_attempts"] = attempts


class SerializationException(CacheException):
    """Raised when a value cannot be encoded or decoded."""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        direction: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if key:
            details["key"] = key
        if direction:
            details["direction"] = direction
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(
            message=message, error_code="CACHE_SERIALIZATION_ERROR", details=details
        )
        if original_error:
            self.__cause__ = original_error


class CacheConfigurationException(CacheException):
    """Raised when cache configuration is invalid or incomplete."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
    ):
        details: Dict[str, Any] = {}
        if config_key:
            details["config_key"] = config_key
        if config_value is not None:
            details["config_value"] = str(config_value)

        super().__init__(
            message=message, error_code="CACHE_CONFIGURATION_ERROR", details=details
        )


class CircuitOpenException(CacheException):
    """Raised when a circuit breaker rejects a call."""

    def __init__(
        self,
        name: str = "default",
        retry_after_ms: Optional[float] = None,
        message: Optional[str] = None,
    ):
        details: Dict[str, Any] = {"circuit": name, "service_status": "unavailable"}
        if retry_after_ms is not None:
            details["retry_after_ms"] = retry_after_ms

        super().__init__(
            message=message or f"Circuit breaker '{name}' is open - call rejected",
            error_code="CIRCUIT_BREAKER_OPEN",
            details=details,
        )
        self.retry_after_ms = retry_after_ms


class RetryStrategyException(CacheException, ValueError):
    """Raised when a retry strategy is malformed."""

    def __init__(self, message: str, field_name: Optional[str] = None, value: Any = None):
        details: Dict[str, Any] = {}
        if field_name:
            details["field"] = field_name
        if value is not None:
            details["value"] = value

        super().__init__(
            message=message, error_code="RETRY_STRATEGY_INVALID", details=details
        )
