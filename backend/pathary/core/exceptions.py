"""Custom exception classes for the application"""

from typing import Optional, Dict, Any, List


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=401, details=details)


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are indistinguishable"""
    MESSAGE = "Unknown email/password. Please try again."

    def __init__(self):
        super().__init__(self.MESSAGE)


class MissingTotpCodeError(AuthenticationError):
    """Second factor required but not supplied"""
    def __init__(self):
        super().__init__(
            "Two-factor authentication code required.",
            details={"second_factor_required": True}
        )


class InvalidTotpCodeError(AuthenticationError):
    """Second factor supplied but wrong"""
    def __init__(self):
        super().__init__("Invalid two-factor authentication or recovery code.")


class NotAuthenticatedError(AuthenticationError):
    """No user could be resolved for the current request"""
    def __init__(self):
        super().__init__("Could not find a current user")


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


class ResourceAlreadyExistsError(BaseAPIException):
    """Resource already exists"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} already exists", status_code=409)


# Validation Errors
class ValidationError(BaseAPIException):
    """Validation error"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


class PasswordPolicyViolationError(BaseAPIException):
    """New password does not satisfy the password policy"""
    def __init__(self, message: str, violations: Optional[List[str]] = None):
        super().__init__(message, status_code=400, details={"violations": violations or []})

    @classmethod
    def too_short(cls, min_length: int) -> "PasswordPolicyViolationError":
        return cls(
            f"Password must be at least {min_length} characters long.",
            [f"Minimum {min_length} characters required"]
        )

    @classmethod
    def from_violations(cls, violations: List[str]) -> "PasswordPolicyViolationError":
        return cls("Password policy violation: " + ", ".join(violations) + ".", violations)


# Business Logic Errors
class BusinessLogicError(BaseAPIException):
    """Business logic error"""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)


# System Errors
class DatabaseError(BaseAPIException):
    """Database operation failed"""
    def __init__(self, message: str = "Database operation failed"):
        super().__init__(message, status_code=500)


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        retry_after: int = 0
    ):
        self.retry_after = max(0, int(retry_after))
        super().__init__(
            message,
            status_code=429,
            details={"retry_after": self.retry_after},
            headers={"Retry-After": str(self.retry_after)}
        )
