"""Sparse field-level updates merged onto a stored entity.

Pipeline:
1. Reject an empty patch.
2. Structural check: identifier, protected, version, immutable and unknown
   fields. Every offender is collected into one :class:`ValidationError`.
3. Coerce each value to its declared type (:class:`TypeMismatchError` on failure).
4. Nullability and constraint checks on the coerced values.
5. Return ``entity.evolve(...)``: the input entity is never mutated.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from enum import Enum
from typing import Any, Iterable, TypeVar

from crudcore.audit import AuditAction, AuditLog
from crudcore.coercion import CoercionEngine, CoercionError, StrictnessLevel
from crudcore.exceptions import TypeMismatchError, ValidationError
from crudcore.model import EntityModel, FieldDescriptor

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=EntityModel)

DEFAULT_PROTECTED_FIELDS: tuple[str, ...] = ("created_at", "created_by")

_EMPTY_PATCH_KEY = "<patch>"


class UnknownFieldPolicy(str, Enum):
    """What to do with patch keys that are not declared fields."""

    REJECT = "reject"
    IGNORE = "ignore"


def _constraint_errors(value: Any, descriptor: FieldDescriptor) -> list[str]:
    constraints = descriptor.constraints
    if constraints is None or value is None:
        return []
    errors: list[str] = []
    if isinstance(value, str):
        if constraints.min_length is not None and len(value) < constraints.min_length:
            errors.append(f"length {len(value)} is below minimum {constraints.min_length}")
        if constraints.max_length is not None and len(value) > constraints.max_length:
            errors.append(f"length {len(value)} exceeds maximum {constraints.max_length}")
        if constraints.pattern is not None and not re.fullmatch(constraints.pattern, value):
            errors.append(f"value does not match pattern '{constraints.pattern}'")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if constraints.ge is not None and value < constraints.ge:
            errors.append(f"value {value} is below minimum {constraints.ge}")
        if constraints.le is not None and value > constraints.le:
            errors.append(f"value {value} exceeds maximum {constraints.le}")
    if constraints.enum_values is not None and value not in constraints.enum_values:
        errors.append(f"value {value!r} is not one of {constraints.enum_values}")
    return errors


class PatchApplier:
    """Validates a patch against an entity's field table and merges it."""

    def __init__(
        self,
        strictness: StrictnessLevel = StrictnessLevel.MODERATE,
        unknown_fields: UnknownFieldPolicy = UnknownFieldPolicy.REJECT,
        protected_fields: Iterable[str] = DEFAULT_PROTECTED_FIELDS,
    ) -> None:
        self._coercion = CoercionEngine(strictness=strictness)
        self._unknown_fields = UnknownFieldPolicy(unknown_fields)
        self._protected = frozenset(protected_fields)

    def apply(self, entity: E, patch: Mapping[str, Any], audit: AuditLog | None = None) -> E:
        """Return a new entity with ``patch`` applied.

        Raises:
            ValidationError: empty patch, identifier/protected/immutable/unknown
                fields (all offenders listed), null for a non-nullable field,
                or constraint violations.
            TypeMismatchError: a value cannot be coerced to the declared type.
        """
        name = entity.entity_name
        if not isinstance(patch, Mapping):
            raise ValidationError(
                entity_name=name,
                operation="update",
                fields={_EMPTY_PATCH_KEY: f"patch must be a mapping, got {type(patch).__name__}"},
            )

        descriptors = entity.field_descriptors()
        applicable = self._check_structure(name, patch, descriptors, audit)
        coerced = self._coerce(name, "update", applicable, descriptors, audit)
        self._check_values(name, "update", coerced, descriptors, audit)

        if audit is not None:
            for field_name, value in coerced.items():
                before = entity.get(field_name)
                if before != value:
                    audit.record(name, field_name, AuditAction.FIELD_SET, before, value, "patched")
        return entity.evolve(coerced)

    def validate_new(self, entity: E) -> E:
        """Coerce and check every non-identifier field of an entity about to be created.

        Raises the same errors as :meth:`apply`, with operation ``create``.
        Structural rules (protected, immutable) do not apply to new entities.
        """
        descriptors = entity.field_descriptors()
        values = {name: entity.get(name) for name, d in descriptors.items() if not d.primary_key}
        coerced = self._coerce(entity.entity_name, "create", values, descriptors, None)
        self._check_values(entity.entity_name, "create", coerced, descriptors, None)
        changed = {k: v for k, v in coerced.items() if type(v) is not type(values[k]) or v != values[k]}
        return entity.evolve(changed) if changed else entity

    def _check_structure(
        self,
        entity_name: str,
        patch: Mapping[str, Any],
        descriptors: Mapping[str, FieldDescriptor],
        audit: AuditLog | None,
    ) -> dict[str, Any]:
        errors: dict[str, str] = {}
        applicable: dict[str, Any] = {}
        for key, value in patch.items():
            descriptor = descriptors.get(key)
            if descriptor is None:
                if self._unknown_fields == UnknownFieldPolicy.IGNORE:
                    logger.debug("Ignoring unknown patch field %s.%s", entity_name, key)
                    if audit is not None:
                        audit.record(entity_name, key, AuditAction.FIELD_IGNORED, value, None, "unknown field")
                    continue
                errors[key] = "unknown field"
            elif descriptor.primary_key:
                errors[key] = "identifier field cannot be patched"
            elif descriptor.version or key in self._protected:
                errors[key] = "protected field cannot be patched"
            elif descriptor.immutable:
                errors[key] = "field is immutable"
            else:
                applicable[key] = value

        if errors:
            raise ValidationError(entity_name=entity_name, operation="update", fields=errors)
        if not applicable:
            raise ValidationError(
                entity_name=entity_name,
                operation="update",
                fields={_EMPTY_PATCH_KEY: "patch is empty"},
            )
        return applicable

    def _coerce(
        self,
        entity_name: str,
        operation: str,
        applicable: dict[str, Any],
        descriptors: Mapping[str, FieldDescriptor],
        audit: AuditLog | None,
    ) -> dict[str, Any]:
        coerced: dict[str, Any] = {}
        for key, value in applicable.items():
            descriptor = descriptors[key]
            try:
                result = self._coercion.coerce(value, descriptor.field_type)
            except CoercionError as exc:
                raise TypeMismatchError(
                    entity_name=entity_name,
                    operation=operation,
                    field=key,
                    expected=descriptor.expected,
                    got=type(value).__name__,
                    value=value,
                    cause=exc,
                ) from exc
            if audit is not None and (type(result) is not type(value) or result != value):
                audit.record(
                    entity_name,
                    key,
                    AuditAction.TYPE_CAST,
                    value,
                    result,
                    f"coerced {type(value).__name__} to {descriptor.expected}",
                )
            coerced[key] = result
        return coerced

    def _check_values(
        self,
        entity_name: str,
        operation: str,
        coerced: dict[str, Any],
        descriptors: Mapping[str, FieldDescriptor],
        audit: AuditLog | None,
    ) -> None:
        errors: dict[str, str] = {}
        for key, value in coerced.items():
            descriptor = descriptors[key]
            if value is None and not descriptor.nullable:
                errors[key] = "field is not nullable"
                continue
            problems = _constraint_errors(value, descriptor)
            if problems:
                errors[key] = "; ".join(problems)

        if errors:
            if audit is not None:
                for key, reason in errors.items():
                    audit.record(entity_name, key, AuditAction.VALIDATION_ERROR, coerced[key], None, reason)
            raise ValidationError(entity_name=entity_name, operation=operation, fields=errors)
