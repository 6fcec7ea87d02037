from typing import Any, Dict, List, Optional


class LibraryError(Exception):
    """Base class for errors reported back to the caller."""

    code = "library_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class NotFoundError(LibraryError):
    """Book, transaction, reservation or user missing"""
    code = "not_found"
    status_code = 404


class ConflictError(LibraryError):
    """Duplicate active checkout, duplicate pending reservation, already returned"""
    code = "conflict"
    status_code = 409


class PreconditionFailedError(LibraryError):
    """Copy availability does not allow the operation"""
    code = "precondition_failed"
    status_code = 400


class ForbiddenError(LibraryError):
    """Role or ownership check failed"""
    code = "forbidden"
    status_code = 403


class UnauthenticatedError(LibraryError):
    code = "unauthenticated"
    status_code = 401


class ValidationFailedError(LibraryError):
    """Malformed input. `details` holds one {"field", "message"} entry per problem."""
    code = "validation_failed"
    status_code = 422

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationFailedError":
        return cls(f"Invalid {field}: {message}", details=[{"field": field, "message": message}])
