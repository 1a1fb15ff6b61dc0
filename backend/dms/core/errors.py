"""
Service-layer error taxonomy.

Services raise DmsError tagged with an ErrorKind. Only the HTTP boundary
translates kinds into status codes, through ERROR_STATUS; the workers never
see HTTP semantics.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from fastapi import status


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND  = "not_found"
    CONFLICT   = "conflict"
    STORAGE    = "storage"      # object store unreachable / rejected the write
    MESSAGING  = "messaging"    # broker unavailable
    REPOSITORY = "repository"   # database error
    INTERNAL   = "internal"


ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND:  status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT:   status.HTTP_409_CONFLICT,
    ErrorKind.STORAGE:    status.HTTP_502_BAD_GATEWAY,
    ErrorKind.MESSAGING:  status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.REPOSITORY: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.INTERNAL:   status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class DmsError(Exception):
    """Domain error carrying a kind, a human message and optional field details."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind    = kind
        self.message = message
        self.field   = field
        self.details = details or {}

    @property
    def error_code(self) -> str:
        return self.kind.value.upper()

    @classmethod
    def validation(cls, message: str, field: str | None = None) -> "DmsError":
        return cls(ErrorKind.VALIDATION, message, field=field)

    @classmethod
    def not_found(cls, what: str, ident: Any) -> "DmsError":
        return cls(ErrorKind.NOT_FOUND, f"{what} {ident} not found", details={"id": str(ident)})

    def __repr__(self) -> str:
        return f"<DmsError kind={self.kind.value} message={self.message!r}>"


def status_for(kind: ErrorKind) -> int:
    return ERROR_STATUS.get(kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
