"""Entity model: identity, field reflection and the concrete ``Record`` type.

An :class:`EntityType` compiles an :class:`~crudcore.schema.EntitySchema` once
into a table of :class:`FieldDescriptor` objects. Patch application and
duplicate detection read that table instead of reflecting on every call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Protocol, TypeVar, runtime_checkable

from crudcore.coercion import PYTHON_TYPES
from crudcore.exceptions import IdentityError, ValidationError
from crudcore.schema import EntitySchema, FieldConstraint, FieldType, UniqueConstraint

E = TypeVar("E", bound="EntityModel")


@dataclass(frozen=True)
class FieldDescriptor:
    """Precomputed reflection data for one entity field."""

    name: str
    field_type: FieldType
    python_types: tuple[type, ...]
    nullable: bool = False
    primary_key: bool = False
    immutable: bool = False
    version: bool = False
    default: Any = None
    constraints: FieldConstraint | None = None

    def set(self, attributes: dict[str, Any], value: Any) -> None:
        attributes[self.name] = value

    @property
    def expected(self) -> str:
        return self.field_type.value


@runtime_checkable
class EntityModel(Protocol):
    """Capabilities every persisted entity provides to the engine."""

    @property
    def entity_name(self) -> str: ...

    def get_id(self) -> Any | None: ...

    def set_id(self, id: Any) -> None: ...

    def field_descriptors(self) -> Mapping[str, FieldDescriptor]: ...

    def get(self, name: str) -> Any: ...

    def evolve(self: E, changes: Mapping[str, Any]) -> E: ...

    def to_dict(self) -> dict[str, Any]: ...


@dataclass(frozen=True, eq=False)
class EntityType:
    """Compiled entity schema; factory for :class:`Record` instances."""

    schema: EntitySchema
    descriptors: Mapping[str, FieldDescriptor]
    id_field: str
    unique_constraints: tuple[UniqueConstraint, ...] = field(default_factory=tuple)
    storage_constraints: tuple[UniqueConstraint, ...] = field(default_factory=tuple)

    @classmethod
    def from_schema(cls, schema: EntitySchema) -> EntityType:
        """Compile ``schema``.

        ``unique_constraints`` holds every uniqueness rule the engine checks:
        the schema's natural keys plus one per ``unique=True`` field.
        ``storage_constraints`` holds only the latter, which repositories
        enforce atomically on insert and save.
        """
        descriptors: dict[str, FieldDescriptor] = {}
        for fs in schema.fields:
            descriptors[fs.name] = FieldDescriptor(
                name=fs.name,
                field_type=fs.field_type,
                python_types=PYTHON_TYPES[fs.field_type],
                nullable=fs.nullable,
                primary_key=fs.primary_key,
                immutable=fs.immutable,
                version=fs.name == schema.version_field,
                default=fs.default,
                constraints=fs.constraints,
            )
        storage = [UniqueConstraint(fields=[fs.name]) for fs in schema.fields if fs.unique and not fs.primary_key]
        declared = {tuple(c.fields) for c in schema.unique_constraints}
        constraints = [*schema.unique_constraints, *(c for c in storage if tuple(c.fields) not in declared)]
        return cls(
            schema=schema,
            descriptors=descriptors,
            id_field=schema.primary_key.name,
            unique_constraints=tuple(constraints),
            storage_constraints=tuple(storage),
        )

    @property
    def name(self) -> str:
        return self.schema.name

    @property
    def version_field(self) -> str | None:
        return self.schema.version_field

    def new(self, **attributes: Any) -> Record:
        return self.from_dict(attributes)

    def from_dict(self, data: Mapping[str, Any]) -> Record:
        """Build a record, filling defaults for omitted fields.

        Raises :class:`ValidationError` listing every unknown attribute name.
        """
        unknown = [key for key in data if key not in self.descriptors]
        if unknown:
            raise ValidationError(
                entity_name=self.name,
                operation="construct",
                fields={key: "unknown field" for key in unknown},
            )
        attributes: dict[str, Any] = {}
        for name, descriptor in self.descriptors.items():
            value = data.get(name, descriptor.default)
            if descriptor.version and value is None:
                value = 0
            descriptor.set(attributes, value)
        return Record(self, attributes)

    def key_of(self, record: EntityModel, constraint: UniqueConstraint) -> tuple[Any, ...] | None:
        """Natural-key tuple for ``constraint``, or None when any part is unset."""
        values = tuple(record.get(name) for name in constraint.fields)
        if any(v is None for v in values):
            return None
        return values


class Record:
    """A concrete entity backed by an attribute dict.

    Records are value-like: two records are equal when they belong to the same
    entity type and hold equal attributes. Use :meth:`evolve` to derive an
    updated copy; the engine never mutates a record it did not just build.
    """

    __slots__ = ("_type", "_attributes")

    def __init__(self, entity_type: EntityType, attributes: dict[str, Any]) -> None:
        self._type = entity_type
        self._attributes = attributes

    @property
    def entity_type(self) -> EntityType:
        return self._type

    @property
    def entity_name(self) -> str:
        return self._type.name

    @property
    def id(self) -> Any | None:
        return self.get_id()

    def get_id(self) -> Any | None:
        return self._attributes.get(self._type.id_field)

    def set_id(self, id: Any) -> None:
        current = self.get_id()
        if current is not None:
            raise IdentityError(
                entity_name=self.entity_name,
                operation="set_id",
                fields={self._type.id_field: f"identifier already set to {current!r}"},
            )
        self._attributes[self._type.id_field] = id

    def field_descriptors(self) -> Mapping[str, FieldDescriptor]:
        return self._type.descriptors

    def get(self, name: str) -> Any:
        return self._attributes.get(name)

    def __getitem__(self, name: str) -> Any:
        if name not in self._type.descriptors:
            raise KeyError(name)
        return self._attributes.get(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self._type.descriptors)

    def evolve(self, changes: Mapping[str, Any]) -> Record:
        attributes = dict(self._attributes)
        for name, value in changes.items():
            self._type.descriptors[name].set(attributes, value)
        return Record(self._type, attributes)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._attributes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Record):
            return NotImplemented
        return self.entity_name == other.entity_name and self._attributes == other._attributes

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"{self.entity_name}({self._attributes!r})"
