"""
Academy API exceptions

Raised by the data layer and the authorization guard, mapped to HTTP
responses by the handler registered in main.py.
"""
from typing import Any, Dict, Optional


class AcademyError(Exception):
    """Base exception for all academy API errors"""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        data = {"error": self.message, "code": self.code}
        if self.details:
            data["details"] = self.details
        return data


class NotFound(AcademyError):
    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            f"{resource} not found",
            code="NOT_FOUND",
            details={"resource": resource, "id": resource_id},
        )


class Forbidden(AcademyError):
    """Actor is not allowed to perform the action on the resource"""

    status_code = 403

    def __init__(self, action: str, resource: str, reason: str = "Not authorized"):
        super().__init__(
            reason,
            code="FORBIDDEN",
            details={"action": action, "resource": resource},
        )


class ValidationFailed(AcademyError):
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, code="VALIDATION_FAILED", details={"field": field} if field else None)


class InvalidStateTransition(AcademyError):
    status_code = 409

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move export from {current} to {target}",
            code="INVALID_STATE",
            details={"from": current, "to": target},
        )
