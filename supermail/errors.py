"""
Error taxonomy for SuperMail.

Every failure raised by a provider is normalized into a SuperMailError
carrying a code from a small closed set, the provider tag and the original
backend exception.
"""

import logging
import socket
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Closed set of error kinds."""
    # Authentication
    AUTH_FAILED = "AUTH_FAILED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"

    # API limits
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"

    # Resources
    NOT_FOUND = "NOT_FOUND"
    INVALID_EMAIL_ID = "INVALID_EMAIL_ID"

    # Operations
    SEND_FAILED = "SEND_FAILED"
    OPERATION_FAILED = "OPERATION_FAILED"

    # Network
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"

    # Validation
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"

    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class SuperMailError(Exception):
    """
    Base error for everything raised across the provider interface.

    Attributes:
        code: Classified error kind
        message: Human readable description
        provider: Tag of the provider the failure came from
        original_error: The untranslated backend failure, if any
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        provider: Optional[str] = None,
        original_error: Optional[BaseException] = None
    ):
        self.code = code
        self.message = message
        self.provider = provider
        self.original_error = original_error
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r}, provider={self.provider!r})"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging or API responses."""
        return {
            'name': type(self).__name__,
            'code': self.code.value,
            'message': self.message,
            'provider': self.provider,
            'original_error': str(self.original_error) if self.original_error is not None else None,
        }


class AuthenticationError(SuperMailError):
    def __init__(self, message: str, provider: Optional[str] = None, original_error: Optional[BaseException] = None):
        super().__init__(ErrorCode.AUTH_FAILED, message, provider, original_error)


class RateLimitError(SuperMailError):
    """Raised when the backend throttles requests. ``retry_after`` is in seconds."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        retry_after: Optional[int] = None,
        original_error: Optional[BaseException] = None
    ):
        super().__init__(ErrorCode.RATE_LIMIT_EXCEEDED, message, provider, original_error)
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['retry_after'] = self.retry_after
        return data


class NotFoundError(SuperMailError):
    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        resource_id: Optional[str] = None,
        original_error: Optional[BaseException] = None
    ):
        super().__init__(ErrorCode.NOT_FOUND, message, provider, original_error)
        self.resource_id = resource_id


class ValidationError(SuperMailError):
    """Raised for invalid caller input, before any backend call is made."""

    def __init__(self, message: str, field: Optional[str] = None, original_error: Optional[BaseException] = None):
        super().__init__(ErrorCode.INVALID_INPUT, message, None, original_error)
        self.field = field


# Provider-specific classifiers: return a classified error or None to fall through
Classifier = Callable[[BaseException, str], Optional[SuperMailError]]

_CLASSIFIERS: Dict[str, Classifier] = {}


def register_classifier(provider: str) -> Callable[[Classifier], Classifier]:
    """Register the status/code table used to classify errors from ``provider``."""
    def decorator(func: Classifier) -> Classifier:
        _CLASSIFIERS[provider] = func
        return func
    return decorator


def parse_retry_after(value: Any) -> Optional[int]:
    """Parse a Retry-After header value given in seconds."""
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def error_from_status(
    status: Optional[int],
    provider: str,
    error: BaseException,
    provider_label: str,
    retry_after: Optional[int] = None
) -> Optional[SuperMailError]:
    """
    Map an HTTP-style status code to a classified error.

    Args:
        status: Status code reported by the backend
        provider: Provider tag
        error: Original exception
        provider_label: Display name used in messages (e.g. "Gmail")
        retry_after: Seconds to wait, when the backend supplied it

    Returns:
        Classified error, or None when the status has no specific mapping
    """
    if status == 401:
        return AuthenticationError(
            f"{provider_label} authentication failed. Token may be expired or invalid.",
            provider,
            error
        )
    if status == 403:
        return SuperMailError(
            ErrorCode.QUOTA_EXCEEDED,
            f"{provider_label} quota exceeded or insufficient permissions.",
            provider,
            error
        )
    if status == 404:
        return NotFoundError(f"Resource not found in {provider_label}.", provider, original_error=error)
    if status == 429:
        return RateLimitError(f"{provider_label} rate limit exceeded.", provider, retry_after, error)
    return None


def _is_network_error(error: BaseException) -> bool:
    # socket.gaierror is an OSError but not a ConnectionError
    return isinstance(error, (ConnectionError, socket.gaierror, TimeoutError))


def normalize_error(error: BaseException, provider: str) -> SuperMailError:
    """
    Classify a raw backend failure.

    Never raises. Errors that are already classified are returned as-is.

    Args:
        error: The raw exception
        provider: Tag of the provider that produced it

    Returns:
        A SuperMailError (or subclass)
    """
    if isinstance(error, SuperMailError):
        return error

    classifier = _CLASSIFIERS.get(provider)
    if classifier is not None:
        try:
            classified = classifier(error, provider)
        except Exception as e:
            logger.warning(f"Error classifier for {provider} failed: {e}")
            classified = None
        if classified is not None:
            return classified

    if _is_network_error(error):
        return SuperMailError(ErrorCode.NETWORK_ERROR, f"Network error: {error}", provider, error)

    message = str(error) or "An unknown error occurred"
    return SuperMailError(ErrorCode.UNKNOWN_ERROR, message, provider, error)


__all__ = [
    'ErrorCode',
    'SuperMailError',
    'AuthenticationError',
    'RateLimitError',
    'NotFoundError',
    'ValidationError',
    'register_classifier',
    'parse_retry_after',
    'error_from_status',
    'normalize_error',
]
