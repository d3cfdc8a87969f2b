"""In-process repository backed by a dict, guarded by an ``asyncio.Lock``."""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from typing import Any, Callable, Sequence

from crudcore.adapters import _check_sort_fields
from crudcore.exceptions import ConflictError, ConstraintViolationError, NotFoundError
from crudcore.model import EntityModel, EntityType
from crudcore.paging import Page, PageRequest, Sort
from crudcore.schema import FieldType, UniqueConstraint

logger = logging.getLogger(__name__)


def _sorted(records: list[EntityModel], sort: Sort) -> list[EntityModel]:
    """Stable multi-key sort; None values sort last in either direction."""
    ordered = list(records)
    for order in reversed(sort.orders):
        present = [r for r in ordered if r.get(order.field) is not None]
        missing = [r for r in ordered if r.get(order.field) is None]
        present.sort(key=lambda r: r.get(order.field), reverse=not order.ascending)
        ordered = present + missing
    return ordered


class InMemoryRepository:
    """Repository holding entities in insertion order.

    Identifier and unique-field collisions are checked under the same lock as
    the write, so concurrent inserts of the same key cannot both succeed.
    Stored entities are copies; callers never share state with the store.
    """

    def __init__(self, entity_type: EntityType, id_generator: Callable[[], Any] | None = None) -> None:
        self._type = entity_type
        self._id_generator = id_generator
        self._records: dict[Any, EntityModel] = {}
        self._lock = asyncio.Lock()
        self._sequence = itertools.count(1)

    @property
    def entity_type(self) -> EntityType:
        return self._type

    def _next_id(self) -> Any:
        if self._id_generator is not None:
            return self._id_generator()
        if self._type.descriptors[self._type.id_field].field_type == FieldType.UUID:
            return str(uuid.uuid4())
        candidate = next(self._sequence)
        while candidate in self._records:
            candidate = next(self._sequence)
        return candidate

    def _storage_collision(self, entity: EntityModel, exclude_id: Any = None) -> UniqueConstraint | None:
        for constraint in self._type.storage_constraints:
            key = self._type.key_of(entity, constraint)
            if key is None:
                continue
            for id, stored in self._records.items():
                if id != exclude_id and self._type.key_of(stored, constraint) == key:
                    return constraint
        return None

    async def insert(self, entity: EntityModel) -> EntityModel:
        async with self._lock:
            stored = entity.evolve({})
            if stored.get_id() is None:
                stored.set_id(self._next_id())
            id = stored.get_id()
            if id in self._records:
                raise ConstraintViolationError(
                    entity_name=self._type.name,
                    operation="insert",
                    detail=f"a record with {self._type.id_field}={id!r} already exists",
                )
            constraint = self._storage_collision(stored)
            if constraint is not None:
                raise ConstraintViolationError(
                    entity_name=self._type.name,
                    operation="insert",
                    detail=f"unique field violation on {constraint.fields}",
                )
            self._records[id] = stored
            logger.debug("Inserted %s id=%r", self._type.name, id)
            return stored.evolve({})

    async def find_by_id(self, id: Any) -> EntityModel | None:
        async with self._lock:
            stored = self._records.get(id)
            return stored.evolve({}) if stored is not None else None

    async def find_all(self, spec: Sort | PageRequest | None = None) -> list[EntityModel] | Page[EntityModel]:
        async with self._lock:
            records = list(self._records.values())
        sort = spec.sort if isinstance(spec, PageRequest) else spec
        if sort is not None and sort.is_sorted:
            _check_sort_fields(self._type, sort)
            records = _sorted(records, sort)
        copies = [r.evolve({}) for r in records]
        if isinstance(spec, PageRequest):
            return Page(
                content=copies[spec.offset : spec.offset + spec.size],
                request=spec,
                total_elements=len(copies),
            )
        return copies

    async def save(self, entity: EntityModel) -> EntityModel:
        id = entity.get_id()
        async with self._lock:
            current = self._records.get(id)
            if current is None:
                raise NotFoundError(entity_name=self._type.name, operation="save", id=id)
            stored = entity.evolve({})
            version = self._type.version_field
            if version is not None:
                if current.get(version) != entity.get(version):
                    raise ConflictError(
                        entity_name=self._type.name,
                        operation="save",
                        detail=f"stale version {entity.get(version)!r}, stored version is {current.get(version)!r}",
                    )
                stored = stored.evolve({version: (entity.get(version) or 0) + 1})
            constraint = self._storage_collision(stored, exclude_id=id)
            if constraint is not None:
                raise ConstraintViolationError(
                    entity_name=self._type.name,
                    operation="save",
                    detail=f"unique field violation on {constraint.fields}",
                )
            self._records[id] = stored
            return stored.evolve({})

    async def delete_by_id(self, id: Any) -> EntityModel | None:
        async with self._lock:
            return self._records.pop(id, None)

    async def count(self) -> int:
        async with self._lock:
            return len(self._records)

    async def exists_by_id(self, id: Any) -> bool:
        async with self._lock:
            return id in self._records

    async def find_duplicate(
        self,
        entity: EntityModel,
        constraints: Sequence[UniqueConstraint],
        exclude_id: Any = None,
    ) -> tuple[EntityModel, UniqueConstraint | None] | None:
        async with self._lock:
            id = entity.get_id()
            if id is not None and exclude_id is None and id in self._records:
                return self._records[id].evolve({}), None
            for constraint in constraints:
                key = self._type.key_of(entity, constraint)
                if key is None:
                    continue
                for stored_id, stored in self._records.items():
                    if exclude_id is not None and stored_id == exclude_id:
                        continue
                    if self._type.key_of(stored, constraint) == key:
                        return stored.evolve({}), constraint
            return None
