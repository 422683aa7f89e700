"""
Exception hierarchy for the authpipe client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions. Every failure the request pipeline surfaces to a
caller is one of these types.
"""

import asyncio
from datetime import datetime
from typing import Optional, Dict, Any, List, Type
from enum import Enum

from authpipe.shared.models import FailureClass


class ErrorCode(Enum):
    """Standardized error codes for authpipe."""

    # Authentication errors (1000-1099)
    AUTH_SESSION_EXPIRED = "AUTH_1001"
    AUTH_NO_REFRESH_TOKEN = "AUTH_1002"
    AUTH_REFRESH_REJECTED = "AUTH_1003"
    AUTH_REFRESH_NETWORK = "AUTH_1004"

    # Network errors (2000-2099)
    NETWORK_UNREACHABLE = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"

    # HTTP status errors (4000-4099)
    HTTP_CLIENT_ERROR = "HTTP_4001"
    HTTP_SERVER_ERROR = "HTTP_4002"
    HTTP_UNEXPECTED_STATUS = "HTTP_4003"

    # Credential storage errors (5000-5099)
    STORAGE_READ_FAILED = "STORAGE_5001"
    STORAGE_WRITE_FAILED = "STORAGE_5002"

    # Configuration errors (8000-8099)
    CONFIG_INVALID_VALUE = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"

    # Internal errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RECONNECT = "reconnect"
    LOGIN_AGAIN = "login_again"
    USER_INTERVENTION = "user_intervention"
    CONTACT_ADMIN = "contact_admin"
    IGNORE = "ignore"


class AuthPipeError(Exception):
    """
    Base exception class for all authpipe errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


class RequestError(AuthPipeError):
    """
    Failure of one logical call issued through the request pipeline.

    Carries the classified failure kind, the HTTP status when a response
    was received, and the detail extracted from the response body.
    """

    failure_class = FailureClass.OTHER
    default_code = ErrorCode.INTERNAL_UNEXPECTED_ERROR

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        detail: Optional[str] = None,
        method: Optional[str] = None,
        path: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', None) or {}
        context.update({k: v for k, v in (
            ('status', status), ('method', method), ('path', path)
        ) if v is not None})
        kwargs.setdefault('error_code', self.default_code)

        super().__init__(message=message, context=context, **kwargs)

        self.status = status
        self.detail = detail
        self.method = method
        self.path = path

    @property
    def kind(self) -> FailureClass:
        return self.failure_class


class NetworkUnreachableError(RequestError):
    """No connectivity or timeout; never retried by the pipeline."""

    failure_class = FailureClass.NETWORK_UNREACHABLE
    default_code = ErrorCode.NETWORK_UNREACHABLE

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('recovery_actions', [RecoveryAction.RETRY_WITH_BACKOFF, RecoveryAction.RECONNECT])
        super().__init__(message, **kwargs)


class SessionExpiredError(RequestError):
    """The session could not be recovered and a logout was triggered."""

    failure_class = FailureClass.AUTH_INVALID
    default_code = ErrorCode.AUTH_SESSION_EXPIRED

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('recovery_actions', [RecoveryAction.LOGIN_AGAIN])
        super().__init__(message, **kwargs)


class ClientRequestError(RequestError):
    """4xx response other than 401."""

    failure_class = FailureClass.CLIENT_ERROR
    default_code = ErrorCode.HTTP_CLIENT_ERROR

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        kwargs.setdefault('recovery_actions', [RecoveryAction.USER_INTERVENTION])
        super().__init__(message, **kwargs)


class ServerRequestError(RequestError):
    """5xx response."""

    failure_class = FailureClass.SERVER_ERROR
    default_code = ErrorCode.HTTP_SERVER_ERROR

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('recovery_actions', [RecoveryAction.RETRY, RecoveryAction.CONTACT_ADMIN])
        super().__init__(message, **kwargs)


class UnclassifiedRequestError(RequestError):
    """Transport exception or status that fits no other class."""

    failure_class = FailureClass.OTHER
    default_code = ErrorCode.INTERNAL_UNEXPECTED_ERROR


class RefreshReason(Enum):
    """Why a refresh flight failed."""
    NO_TOKEN = "no_token"
    REJECTED = "rejected"
    NETWORK = "network"


class RefreshError(AuthPipeError):
    """Token exchange could not produce new credentials."""

    _codes = {
        RefreshReason.NO_TOKEN: ErrorCode.AUTH_NO_REFRESH_TOKEN,
        RefreshReason.REJECTED: ErrorCode.AUTH_REFRESH_REJECTED,
        RefreshReason.NETWORK: ErrorCode.AUTH_REFRESH_NETWORK,
    }

    def __init__(self, message: str, reason: RefreshReason, status: Optional[int] = None, **kwargs):
        context = kwargs.pop('context', None) or {}
        context['reason'] = reason.value
        if status is not None:
            context['status'] = status

        super().__init__(
            message=message,
            error_code=self._codes[reason],
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.LOGIN_AGAIN],
            context=context,
            **kwargs
        )

        self.reason = reason
        self.status = status


class CredentialStoreError(AuthPipeError):
    """Durable credential storage could not be read or written."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_READ_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.CRITICAL,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class ConfigurationError(AuthPipeError):
    """Configuration related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', None) or {}
        if config_key:
            context['config_key'] = config_key

        kwargs.setdefault('error_code', ErrorCode.CONFIG_INVALID_VALUE)
        super().__init__(
            message=message,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


REQUEST_ERROR_TYPES: Dict[FailureClass, Type[RequestError]] = {
    FailureClass.NETWORK_UNREACHABLE: NetworkUnreachableError,
    FailureClass.AUTH_INVALID: SessionExpiredError,
    FailureClass.CLIENT_ERROR: ClientRequestError,
    FailureClass.SERVER_ERROR: ServerRequestError,
    FailureClass.OTHER: UnclassifiedRequestError,
}


def handle_exception(
    exception: Exception,
    failure_class: FailureClass = FailureClass.OTHER,
    message: Optional[str] = None,
    **kwargs
) -> AuthPipeError:
    """
    Convert an exception raised by a transport call to a structured RequestError.

    Timeouts are always NETWORK_UNREACHABLE and carry ErrorCode.NETWORK_TIMEOUT.

    Args:
        exception: The exception raised by the transport
        failure_class: Classification of the exception
        message: Error message; defaults to the exception text
        **kwargs: Extra RequestError fields (method, path, detail, context)

    Returns:
        Structured AuthPipeError; AuthPipeError instances are returned unchanged
    """
    if isinstance(exception, AuthPipeError):
        return exception

    if isinstance(exception, (asyncio.TimeoutError, TimeoutError)):
        failure_class = FailureClass.NETWORK_UNREACHABLE
        kwargs.setdefault('error_code', ErrorCode.NETWORK_TIMEOUT)
        kwargs.setdefault('detail', str(exception) or "Request timed out")

    kwargs.setdefault('detail', str(exception) or type(exception).__name__)
    error_type = REQUEST_ERROR_TYPES.get(failure_class, UnclassifiedRequestError)
    return error_type(message or kwargs['detail'], cause=exception, **kwargs)
