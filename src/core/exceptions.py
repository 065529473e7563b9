# src/core/exceptions.py
"""
Core exceptions for webgate.

This module defines the custom exceptions raised by the services, the
session layer and the request pipeline, providing consistent error
handling and debugging information.
"""

from typing import Optional, Dict, Any


class AppBaseException(Exception):
    """Base exception for all webgate errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ServiceError(AppBaseException):
    """Errors in external service interactions"""

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize service error.

        Args:
            message: Error description
            service_name: Name of the failing service
            operation: Operation that failed
            details: Additional service context
        """
        super().__init__(message, details)
        self.service_name = service_name
        self.operation = operation

        if service_name:
            self.details['service'] = service_name
        if operation:
            self.details['operation'] = operation


class RedisServiceError(ServiceError):
    """A Redis command failed; ``key`` is the session key involved"""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, service_name="Redis", operation=operation, details=details)
        self.key = key

        if key:
            self.details['key'] = key


class ConfigurationError(AppBaseException):
    """
    The application cannot start as configured, e.g. no connection
    string or an unknown session backend.
    """

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.component = component

        if component:
            self.details['component'] = component


class SessionError(AppBaseException):
    """Errors in session management and state handling"""

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize session error.

        Args:
            message: Error description
            session_id: Session that failed
            details: Additional session context
        """
        super().__init__(message, details)
        self.session_id = session_id

        # Never leak a full session id into logs
        if session_id:
            self.details['session_id'] = f"{session_id[:8]}..."


class SessionStoreError(SessionError):
    """A session store backend failed to read, write or delete a record"""

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        backend: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, session_id=session_id, details=details)
        self.backend = backend

        if backend:
            self.details['backend'] = backend


class SecurityError(AppBaseException):
    """Errors in security validation"""

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize security error.

        Args:
            message: Error description
            error_type: Type of security error (csrf, signature, expiration)
            details: Additional security context
        """
        super().__init__(message, details)
        self.error_type = error_type

        if error_type:
            self.details['error_type'] = error_type


class CsrfError(SecurityError):
    """
    A state-changing request carried a missing or invalid CSRF token.

    Raised by the CSRF stage and translated into a flash message plus
    redirect by the CSRF error stage, never surfaced as a raw 403.
    """

    code = "EBADCSRFTOKEN"

    def __init__(
        self,
        message: str = "invalid csrf token",
        reason: str = "invalid",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, error_type="csrf", details=details)
        self.reason = reason
        self.status_code = 403
        self.details['reason'] = reason
        self.details['code'] = self.code


class StartupError(AppBaseException):
    """Errors in the startup sequence"""
    pass


# Convenience functions for creating common errors

def config_error(message: str, component: str) -> ConfigurationError:
    """Create a configuration error with component context."""
    return ConfigurationError(message, component=component)


def redis_error(message: str, key: str = None, operation: str = None) -> RedisServiceError:
    """Create a Redis service error with key context."""
    return RedisServiceError(message, key=key, operation=operation)


def csrf_error(reason: str) -> CsrfError:
    """Create a CSRF error for a missing or mismatched token."""
    if reason == "missing":
        return CsrfError("missing csrf token", reason=reason)
    return CsrfError("invalid csrf token", reason=reason)
