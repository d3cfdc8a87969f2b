"""Tests for the engine error hierarchy."""

from crudcore.exceptions import (
    ConflictError,
    ConstraintViolationError,
    CrudError,
    DuplicateEntityError,
    ErrorKind,
    IdentityError,
    NotFoundError,
    OperationCancelledError,
    StorageFailureError,
    TypeMismatchError,
    ValidationError,
)


def test_message_format():
    err = StorageFailureError(entity_name="Person", operation="create", detail="disk full")
    assert str(err) == "[Person] create failed: disk full"
    assert err.kind == ErrorKind.STORAGE_FAILURE


def test_cause_chained():
    cause = RuntimeError("boom")
    err = StorageFailureError(entity_name="Person", operation="count", detail="x", cause=cause)
    assert err.__cause__ is cause


def test_kinds():
    assert NotFoundError(entity_name="P", operation="delete", id=1).kind == ErrorKind.NOT_FOUND
    assert DuplicateEntityError(entity_name="P", operation="create").kind == ErrorKind.DUPLICATE_ENTITY
    assert ConstraintViolationError(entity_name="P", operation="insert", detail="x").kind == ErrorKind.DUPLICATE_ENTITY
    assert ConflictError(entity_name="P", operation="save", detail="x").kind == ErrorKind.CONFLICT
    assert OperationCancelledError(entity_name="P", operation="x", detail="x").kind == ErrorKind.CANCELLED


def test_retryable():
    assert ConflictError.retryable
    assert OperationCancelledError.retryable
    assert not NotFoundError.retryable
    assert not ValidationError.retryable


def test_validation_fields_in_detail():
    err = ValidationError(entity_name="P", operation="update", fields={"id": "no", "x": "unknown field"})
    assert err.detail == "id: no; x: unknown field"
    assert isinstance(IdentityError(entity_name="P", operation="set_id", fields={"id": "set"}), ValidationError)


def test_type_mismatch_attributes():
    err = TypeMismatchError(entity_name="Person", operation="update", field="age", expected="integer", got="str")
    assert (err.field, err.expected, err.got) == ("age", "integer", "str")
    assert err.kind == ErrorKind.TYPE_MISMATCH
    assert isinstance(err, CrudError)
