"""Error taxonomy for the CRUD engine.

Every failure the engine reports is one of these exceptions. Repository
collaborators raise :class:`ConstraintViolationError` and :class:`ConflictError`;
any other collaborator exception is wrapped into :class:`StorageFailureError`
so that callers never see raw driver errors.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Tag carried by failed batch items and by each exception class."""

    NOT_FOUND = "not_found"
    DUPLICATE_ENTITY = "duplicate_entity"
    VALIDATION = "validation"
    TYPE_MISMATCH = "type_mismatch"
    CONFLICT = "conflict"
    STORAGE_FAILURE = "storage_failure"
    CANCELLED = "cancelled"


class CrudError(Exception):
    """Base exception for all engine errors.

    Attributes:
        entity_name: The name of the entity type involved.
        operation: The operation that failed (e.g. ``"create"``, ``"update"``).
        detail: A sanitised description of what went wrong.
    """

    kind: ErrorKind = ErrorKind.STORAGE_FAILURE
    retryable: bool = False

    def __init__(
        self,
        *,
        entity_name: str,
        operation: str,
        detail: str,
        cause: BaseException | None = None,
    ) -> None:
        self.entity_name = entity_name
        self.operation = operation
        self.detail = detail
        msg = f"[{entity_name}] {operation} failed: {detail}"
        super().__init__(msg)
        if cause is not None:
            self.__cause__ = cause


class NotFoundError(CrudError):
    """Raised when no record exists for an identifier."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, *, entity_name: str, operation: str, id: Any, cause: BaseException | None = None) -> None:
        self.id = id
        super().__init__(
            entity_name=entity_name,
            operation=operation,
            detail=f"no record with id {id!r}",
            cause=cause,
        )


class DuplicateEntityError(CrudError):
    """Raised when a uniqueness rule already matches a stored record."""

    kind = ErrorKind.DUPLICATE_ENTITY

    def __init__(
        self,
        *,
        entity_name: str,
        operation: str,
        detail: str = "a record with the same key already exists",
        constraint: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.constraint = constraint
        super().__init__(entity_name=entity_name, operation=operation, detail=detail, cause=cause)


class ValidationError(CrudError):
    """Raised when input references unknown or forbidden fields or violates constraints.

    ``fields`` maps every offending field name to the reason it was rejected.
    """

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        *,
        entity_name: str,
        operation: str,
        fields: dict[str, str],
        cause: BaseException | None = None,
    ) -> None:
        self.fields = dict(fields)
        detail = "; ".join(f"{name}: {reason}" for name, reason in self.fields.items())
        super().__init__(entity_name=entity_name, operation=operation, detail=detail, cause=cause)


class IdentityError(ValidationError):
    """Raised when an identifier is reassigned after it has been set."""


class TypeMismatchError(CrudError):
    """Raised when a value cannot be coerced to the field's declared type."""

    kind = ErrorKind.TYPE_MISMATCH

    def __init__(
        self,
        *,
        entity_name: str,
        operation: str,
        field: str,
        expected: str,
        got: str,
        value: Any = None,
        cause: BaseException | None = None,
    ) -> None:
        self.field = field
        self.expected = expected
        self.got = got
        self.value = value
        super().__init__(
            entity_name=entity_name,
            operation=operation,
            detail=f"field '{field}' expects {expected}, got {got} ({value!r})",
            cause=cause,
        )


class ConflictError(CrudError):
    """Raised when a concurrent write is detected (e.g. a stale version)."""

    kind = ErrorKind.CONFLICT
    retryable = True


class StorageFailureError(CrudError):
    """Raised for opaque collaborator-level failures."""

    kind = ErrorKind.STORAGE_FAILURE


class OperationCancelledError(CrudError):
    """Raised when the collaborator reports a timeout or cancellation."""

    kind = ErrorKind.CANCELLED
    retryable = True


class ConstraintViolationError(CrudError):
    """Raised by a repository when an insert or save violates a uniqueness constraint."""

    kind = ErrorKind.DUPLICATE_ENTITY
