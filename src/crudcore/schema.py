"""Declarative entity schemas: field types, constraints and uniqueness rules."""

from __future__ import annotations

import keyword
import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Valid identifier: starts with letter, alphanumeric + underscores, max 64 chars.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}$")

CREATED_AT = "created_at"
UPDATED_AT = "updated_at"


class FieldType(str, Enum):
    """Declared value types an entity attribute can hold."""

    STRING = "string"
    TEXT = "text"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    DATE = "date"
    UUID = "uuid"
    JSON = "json"
    ARRAY = "array"
    BINARY = "binary"
    ENUM = "enum"


def _check_identifier(kind: str, v: str) -> str:
    if not _IDENTIFIER_RE.match(v):
        raise ValueError(
            f"{kind} name {v!r} is not a valid identifier. "
            "Must start with a letter, contain only alphanumeric characters "
            "and underscores, and be at most 64 characters."
        )
    if keyword.iskeyword(v):
        raise ValueError(f"{kind} name {v!r} is a Python reserved keyword.")
    return v


class FieldConstraint(BaseModel):
    """Value constraints checked after a patch value has been coerced."""

    min_length: int | None = Field(default=None, ge=0)
    max_length: int | None = Field(default=None, ge=1)
    pattern: str | None = Field(default=None, description="Regex the whole string value must match.")
    ge: float | None = Field(default=None, description="Greater than or equal.")
    le: float | None = Field(default=None, description="Less than or equal.")
    enum_values: list[str] | None = Field(default=None, description="Allowed values for enum-type fields.")

    model_config = {"extra": "forbid"}

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"Invalid regex pattern: {exc}") from exc
        return v

    @model_validator(mode="after")
    def validate_constraint_coherence(self) -> FieldConstraint:
        """Ensure min/max constraints are logically consistent."""
        if self.min_length is not None and self.max_length is not None:
            if self.min_length > self.max_length:
                raise ValueError(f"min_length ({self.min_length}) cannot exceed max_length ({self.max_length})")
        if self.ge is not None and self.le is not None:
            if self.ge > self.le:
                raise ValueError(f"ge ({self.ge}) cannot exceed le ({self.le})")
        return self


class FieldSchema(BaseModel):
    """Schema definition for a single attribute of an entity."""

    name: str = Field(min_length=1, description="Field name.")
    field_type: FieldType = Field(description="Declared type of the field.")
    nullable: bool = Field(default=False, description="Whether the field accepts null values.")
    default: Any = Field(default=None, description="Value used when a new record omits the field.")
    primary_key: bool = Field(default=False, description="Whether this field is the identifier.")
    unique: bool = Field(default=False, description="Whether values must be unique across records.")
    immutable: bool = Field(default=False, description="Whether the field is rejected in patches.")
    constraints: FieldConstraint | None = Field(default=None, description="Validation constraints.")
    description: str | None = Field(default=None, description="Human-readable description.")

    model_config = {"extra": "forbid"}

    @field_validator("name")
    @classmethod
    def validate_field_name(cls, v: str) -> str:
        return _check_identifier("Field", v)

    @model_validator(mode="after")
    def validate_field_coherence(self) -> FieldSchema:
        if self.primary_key and self.nullable:
            raise ValueError(f"Primary key field '{self.name}' must not be nullable")
        if self.field_type == FieldType.ENUM:
            if self.constraints is None or not self.constraints.enum_values:
                raise ValueError(f"Field '{self.name}' with field_type=ENUM requires non-empty constraints.enum_values")
        return self


class UniqueConstraint(BaseModel):
    """A natural key: two records with equal values for all ``fields`` are duplicates."""

    fields: list[str] = Field(min_length=1, description="Fields that together form the natural key.")
    name: str = Field(default="", description="Constraint name, derived from the fields when empty.")
    message: str | None = Field(default=None, description="Custom message reported on violation.")

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def _default_name(self) -> UniqueConstraint:
        if not self.name:
            self.name = "uq_" + "_".join(self.fields)
        return self


class EntitySchema(BaseModel):
    """Schema definition for a persisted entity type."""

    name: str = Field(min_length=1, description="Entity name (PascalCase recommended).")
    fields: list[FieldSchema] = Field(min_length=1, description="Fields belonging to this entity.")
    collection_name: str | None = Field(
        default=None,
        description="Override for the storage table/collection name. Defaults to the lowercased entity name.",
    )
    unique_constraints: list[UniqueConstraint] = Field(default_factory=list)
    timestamps: bool = Field(default=False, description="Maintain created_at/updated_at on create and update.")
    version_field: str | None = Field(default=None, description="Integer field used for optimistic locking.")
    description: str | None = Field(default=None, description="Human-readable description.")

    model_config = {"extra": "forbid"}

    @field_validator("name")
    @classmethod
    def validate_entity_name(cls, v: str) -> str:
        return _check_identifier("Entity", v)

    @model_validator(mode="before")
    @classmethod
    def _add_timestamp_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not data.get("timestamps"):
            return data
        fields = list(data.get("fields") or [])
        names = {f.name if isinstance(f, FieldSchema) else f.get("name") for f in fields}
        for name in (CREATED_AT, UPDATED_AT):
            if name not in names:
                fields.append(FieldSchema(name=name, field_type=FieldType.DATETIME, nullable=True))
        return {**data, "fields": fields}

    @model_validator(mode="after")
    def validate_entity_integrity(self) -> EntitySchema:
        """Validate unique field names, exactly one primary key and constraint references."""
        seen: set[str] = set()
        for f in self.fields:
            if f.name in seen:
                raise ValueError(f"Entity '{self.name}' has duplicate field name '{f.name}'")
            seen.add(f.name)

        pk_fields = [f for f in self.fields if f.primary_key]
        if len(pk_fields) == 0:
            raise ValueError(f"Entity '{self.name}' must have exactly one primary key field")
        if len(pk_fields) > 1:
            pk_names = [f.name for f in pk_fields]
            raise ValueError(f"Entity '{self.name}' has multiple primary key fields: {pk_names}")

        for constraint in self.unique_constraints:
            missing = [name for name in constraint.fields if name not in seen]
            if missing:
                raise ValueError(f"Unique constraint '{constraint.name}' references unknown fields: {missing}")

        if self.version_field is not None:
            version = next((f for f in self.fields if f.name == self.version_field), None)
            if version is None:
                raise ValueError(f"version_field '{self.version_field}' is not a field of '{self.name}'")
            if version.field_type != FieldType.INTEGER or version.primary_key:
                raise ValueError(f"version_field '{self.version_field}' must be a non-key integer field")
        return self

    @property
    def primary_key(self) -> FieldSchema:
        return next(f for f in self.fields if f.primary_key)

    @property
    def table_name(self) -> str:
        return self.collection_name or self.name.lower()
