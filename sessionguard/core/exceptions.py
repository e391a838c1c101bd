"""Custom exception classes for the token-session core"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    code = "internal_error"
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    code = "authentication_failed"

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, status_code=401)


class MissingTokenError(AuthenticationError):
    """No token presented"""
    code = "missing_token"

    def __init__(self, message: str = "Missing token"):
        super().__init__(message)


class InvalidTokenError(AuthenticationError):
    """Bad signature, malformed structure, or issuer/audience mismatch"""
    code = "invalid_token"

    def __init__(self, message: str = "Invalid access token"):
        super().__init__(message)


class TokenExpiredError(AuthenticationError):
    """Access token signature is valid but it has expired"""
    code = "token_expired"

    def __init__(self, message: str = "Access token expired"):
        super().__init__(message)


class TokenVerificationFailedError(AuthenticationError):
    """Verified token is missing required claims"""
    code = "token_verification_failed"

    def __init__(self, message: str = "Access token verification failed"):
        super().__init__(message)


class InvalidOrReusedTokenError(AuthenticationError):
    """Refresh token unknown, expired, revoked, or replayed.

    The message is identical for every cause.
    """
    code = "invalid_or_reused_token"

    def __init__(self):
        super().__init__("Invalid or reused refresh token")


# Caller Errors
class InvalidArgumentError(BaseAPIException):
    """Malformed call into the core"""
    code = "invalid_argument"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=400, details=details)


# System Errors
class ConfigurationError(BaseAPIException):
    """Missing or weak key material, fatal at startup"""
    code = "configuration_error"

    def __init__(self, message: str = "Invalid security configuration"):
        super().__init__(message, status_code=500)


class TokenIssuanceFailedError(BaseAPIException):
    """Retry budget exhausted while issuing a refresh token"""
    code = "token_issuance_failed"
    retryable = True

    def __init__(self, message: str = "Failed to issue refresh token"):
        super().__init__(message, status_code=503)


class InternalError(BaseAPIException):
    """Unrecognised persistence failure"""
    code = "internal_error"

    def __init__(self, message: str = "Internal error", status_code: int = 500):
        super().__init__(message, status_code=status_code)


class TransactionFailedError(InternalError):
    """Rotation aborted cleanly; safe to retry"""
    code = "transaction_failed"
    retryable = True

    def __init__(self, message: str = "Refresh rotation failed"):
        super().__init__(message, status_code=503)
