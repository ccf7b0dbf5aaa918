from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from fastapi import status


class CrmError(Exception):
    """Base error carrying a stable code and the HTTP status it maps to."""

    code = "crm_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, details: Any = None, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code


class NotFoundError(CrmError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(CrmError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class ValidationError(CrmError):
    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class ConflictError(CrmError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class AuthError(CrmError):
    code = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class StorageError(CrmError):
    """Transaction or connectivity failure in the persistence layer.

    The message is meant for logs; clients only ever see a generic message.
    """

    code = "storage_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
