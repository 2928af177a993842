"""Error taxonomy for the policy query engine.

Validation failures are raised before any SQL runs, authorization failures
before the caller's scope is widened, and storage failures wrap whatever the
database driver raised inside a read snapshot. The HTTP layer maps each class
to a status code; nothing here knows about FastAPI.
"""
from typing import Any, Dict, Optional


class PolicyHubError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PolicyHubError):
    """A request parameter is malformed or out of range."""

    status_code = 400

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message, {"field": field})


class AuthorizationError(PolicyHubError):
    """The caller may not see the requested scope.

    ``status_code`` is 401 when credentials are missing or wrong (portal
    password, anonymous caller on an identity-only route) and 403 when the
    caller is known but lacks the role.
    """

    status_code = 403

    def __init__(self, message: str, status_code: int = 403, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.status_code = status_code


class StorageError(PolicyHubError):
    status_code = 500
