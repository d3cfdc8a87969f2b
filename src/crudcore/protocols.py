"""Repository protocol: the storage collaborator consumed by the engine."""

from __future__ import annotations

from typing import Any, Protocol, Sequence, TypeVar, overload, runtime_checkable

from crudcore.model import EntityModel
from crudcore.paging import Page, PageRequest, Sort
from crudcore.schema import UniqueConstraint

T = TypeVar("T", bound=EntityModel)


@runtime_checkable
class Repository(Protocol[T]):
    """Storage-engine interface.

    Implementations own persistence, querying, sorting and paging. They must
    make check-and-insert atomic: an insert (or save) that violates the
    identifier or a unique constraint raises
    :class:`~crudcore.exceptions.ConstraintViolationError`, and a save against
    a stale version raises :class:`~crudcore.exceptions.ConflictError`.
    """

    async def insert(self, entity: T) -> T:
        """Persist a new entity and return it with its identifier populated."""
        ...

    async def find_by_id(self, id: Any) -> T | None:
        """Retrieve a single entity by identifier."""
        ...

    @overload
    async def find_all(self, spec: None = None) -> list[T]: ...

    @overload
    async def find_all(self, spec: Sort) -> list[T]: ...

    @overload
    async def find_all(self, spec: PageRequest) -> Page[T]: ...

    async def find_all(self, spec: Sort | PageRequest | None = None) -> list[T] | Page[T]:
        """Return every entity, sorted, or one page of entities."""
        ...

    async def save(self, entity: T) -> T:
        """Write an existing entity back and return the stored version."""
        ...

    async def delete_by_id(self, id: Any) -> T | None:
        """Remove an entity and return it as it was, or None if absent."""
        ...

    async def count(self) -> int:
        """Number of stored entities."""
        ...

    async def exists_by_id(self, id: Any) -> bool:
        """Whether an entity with this identifier is stored."""
        ...

    async def find_duplicate(
        self,
        entity: T,
        constraints: Sequence[UniqueConstraint],
        exclude_id: Any = None,
    ) -> tuple[T, UniqueConstraint | None] | None:
        """Find a stored entity that collides with ``entity``.

        Checks identifier equality (when ``entity`` has an id and
        ``exclude_id`` is None) and then each natural-key constraint.
        Returns the stored entity and the matched constraint (None for an
        identifier match), or None when there is no collision.
        """
        ...
