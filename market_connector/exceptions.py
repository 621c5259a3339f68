"""
Market Connector - Exception Hierarchy.

============================================================
PURPOSE
============================================================
Typed errors for every failure the connector can observe.

ERROR TAXONOMY:
1. ConfigError          - Invalid construction parameters
2. TransportError       - Connect / read failures
   - RequestTimeoutError   (retry class: TIMEOUT)
   - ConnectFailureError   (retry class: CONNECT)
   - ConnectionEndedError  (stream connection went away)
3. RateLimitExceeded    - Server signaled throttling (HTTP 429)
4. ApiError             - Non-OK response from the REST API
5. ProtocolError        - Payload could not be decoded
6. ClosedError          - Subscription reached its terminal state

Malformed remote input always becomes one of these values,
never an unhandled exception.

============================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ConnectorError(Exception):
    """Base exception for all connector errors."""

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def is_retryable(self) -> bool:
        """Check if the error is transient."""
        return False

    def is_rate_limit(self) -> bool:
        """Check if the error is related to rate limiting."""
        return False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "original_error": str(self.original_error) if self.original_error else None,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}: {self.message}"]
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


class ConfigError(ConnectorError):
    """Invalid configuration. Raised at construction time only."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, context=context)
        self.config_key = config_key

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["config_key"] = self.config_key
        return data


# ============================================================
# TRANSPORT ERRORS
# ============================================================

class TransportError(ConnectorError):
    """Connect or read failure on the underlying connection."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, original_error, context)
        self.url = url

    def is_retryable(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["url"] = self.url
        return data


class RequestTimeoutError(TransportError):
    """Request did not complete within the configured timeout."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, url, original_error)
        self.timeout_seconds = timeout_seconds

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["timeout_seconds"] = self.timeout_seconds
        return data


class ConnectFailureError(TransportError):
    """Connection could not be established."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        attempts: int = 1,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, url, original_error)
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["attempts"] = self.attempts
        return data


class ConnectionEndedError(TransportError):
    """An established stream connection ended (close frame, read error or idle timeout)."""

    def __init__(
        self,
        message: str = "Connection closed",
        url: Optional[str] = None,
        close_code: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, url, original_error)
        self.close_code = close_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["close_code"] = self.close_code
        return data


# ============================================================
# API ERRORS
# ============================================================

class RateLimitExceeded(ConnectorError):
    """Server signaled throttling. The caller decides whether to retry."""

    DEFAULT_RETRY_AFTER_SECONDS = 60

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after_seconds: int = DEFAULT_RETRY_AFTER_SECONDS,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, context=context)
        self.retry_after_seconds = retry_after_seconds

    def is_retryable(self) -> bool:
        return True

    def is_rate_limit(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["retry_after_seconds"] = self.retry_after_seconds
        return data

    def __str__(self) -> str:
        return f"{super().__str__()} [retry after {self.retry_after_seconds}s]"


class ApiError(ConnectorError):
    """Non-OK response from the REST API."""

    def __init__(
        self,
        code: int,
        msg: str,
        status: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"API error {code}: {msg}", original_error)
        self.code = code
        self.msg = msg
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "code": self.code,
            "msg": self.msg,
            "status": self.status,
        })
        return data


# ============================================================
# STREAM ERRORS
# ============================================================

class ProtocolError(ConnectorError):
    """Inbound payload could not be decoded. Never fatal to a subscription."""

    def __init__(
        self,
        message: str,
        payload: Optional[Any] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, original_error)
        self.payload = payload

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["payload"] = str(self.payload)[:500] if self.payload is not None else None
        return data


class ClosedError(ConnectorError):
    """Subscription is closed; no further events will arrive."""

    def __init__(self, message: str = "Subscription closed") -> None:
        super().__init__(message)
