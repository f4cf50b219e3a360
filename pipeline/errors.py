from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    CONFIGURATION = "configuration"
    AGENT = "agent"
    INTERNAL = "internal"


class ServiceError(Exception):
    kind = ErrorKind.INTERNAL
    status_code = 500

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationFailed(ServiceError):
    kind = ErrorKind.VALIDATION
    status_code = 400


class Unauthorized(ServiceError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401


class InsufficientCredits(ServiceError):
    kind = ErrorKind.INSUFFICIENT_CREDITS
    status_code = 402


class NotFound(ServiceError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class Conflict(ServiceError):
    kind = ErrorKind.CONFLICT
    status_code = 409


class ConfigurationError(ServiceError):
    kind = ErrorKind.CONFIGURATION
    status_code = 500


class AgentFailure(ServiceError):
    kind = ErrorKind.AGENT
    status_code = 502
