"""
Error Taxonomy Module

Domain exceptions raised inside the engine and the Result envelope returned by
its public operations. Expected conditions (not found, validation, conflict,
unauthorized) travel as failed Results; storage faults propagate.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Categories of expected failures"""
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    UNEXPECTED = "unexpected"

    @property
    def status_code(self) -> int:
        return {
            ErrorKind.NOT_FOUND: 404,
            ErrorKind.VALIDATION: 400,
            ErrorKind.CONFLICT: 409,
            ErrorKind.UNAUTHORIZED: 403,
            ErrorKind.UNEXPECTED: 500,
        }[self]


class LendingError(Exception):
    """Base exception for the lending engine"""
    kind = ErrorKind.UNEXPECTED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(LendingError):
    """Schedule, loan, payment or borrower record is missing"""
    kind = ErrorKind.NOT_FOUND


class ValidationError(LendingError):
    """Input violates a precondition"""
    kind = ErrorKind.VALIDATION


class ConflictError(LendingError):
    """Operation collides with existing state"""
    kind = ErrorKind.CONFLICT


class UnauthorizedError(LendingError):
    """Requester does not own the resource"""
    kind = ErrorKind.UNAUTHORIZED


@dataclass
class Result:
    """Outcome of a public engine operation"""
    success: bool
    message: str
    status_code: int = 200
    data: Any = None
    error: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "OK", status_code: int = 200) -> 'Result':
        return cls(success=True, message=message, status_code=status_code, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str) -> 'Result':
        return cls(success=False, message=message, status_code=kind.status_code, error=kind)

    @classmethod
    def from_error(cls, error: LendingError) -> 'Result':
        return cls.fail(error.kind, error.message)

    def unwrap(self) -> Any:
        """Return the data of a successful result or raise the matching LendingError"""
        if self.success:
            return self.data
        raise _ERROR_CLASSES.get(self.error, LendingError)(self.message)

    def to_response(self, data: Any = None) -> Dict[str, Any]:
        """Response envelope for the HTTP layer"""
        body = {
            "success": self.success,
            "message": self.message,
            "status_code": self.status_code,
        }
        if self.error:
            body["error"] = self.error.value
        if data is not None:
            body["data"] = data
        return body


_ERROR_CLASSES = {
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.UNAUTHORIZED: UnauthorizedError,
}
