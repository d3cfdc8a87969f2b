"""CRUD engine: single-item and best-effort batch operations over a Repository.

The engine owns no entity state between calls. Every operation round-trips
through the repository; batch operations process items independently
(optionally concurrently) and report each item in exactly one partition of a
:class:`~crudcore.results.BatchResult`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from crudcore.audit import AuditLog
from crudcore.config import EngineConfig
from crudcore.exceptions import (
    ConflictError,
    ConstraintViolationError,
    CrudError,
    DuplicateEntityError,
    NotFoundError,
    OperationCancelledError,
    StorageFailureError,
    ValidationError,
)
from crudcore.model import EntityModel, EntityType
from crudcore.paging import Page, PageRequest, Sort
from crudcore.patch import PatchApplier
from crudcore.protocols import Repository
from crudcore.results import BatchResult, Failed, Outcome, Skipped, Succeeded
from crudcore.schema import CREATED_AT, UPDATED_AT, UniqueConstraint

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=EntityModel)
R = TypeVar("R")

_INPUT_KEY = "<input>"


def _describe_duplicate(
    entity_type: EntityType,
    entity: EntityModel,
    constraint: UniqueConstraint | None,
) -> str:
    if constraint is None:
        return f"a record with {entity_type.id_field}={entity.get_id()!r} already exists"
    if constraint.message:
        return constraint.message
    values = ", ".join(f"{name}={entity.get(name)!r}" for name in constraint.fields)
    return f"duplicate constraint '{constraint.name}': fields [{values}] already exist"


class CrudEngine(Generic[T]):
    """Create/read/update/delete plus batch variants for one entity type."""

    def __init__(
        self,
        entity_type: EntityType,
        repository: Repository[Any],
        config: EngineConfig | None = None,
    ) -> None:
        self._type = entity_type
        self._repository = repository
        self._config = config or EngineConfig()
        self._patcher = PatchApplier(
            strictness=self._config.strictness,
            unknown_fields=self._config.unknown_fields,
            protected_fields=self._config.protected_fields,
        )

    @property
    def entity_type(self) -> EntityType:
        return self._type

    @property
    def repository(self) -> Repository[Any]:
        return self._repository

    @property
    def config(self) -> EngineConfig:
        return self._config

    # -- Single-item operations -----------------------------------------------

    async def create(self, entity: T, *, allow_duplicates: bool | None = None) -> T:
        """Persist a new entity and return the stored version.

        Raises :class:`DuplicateEntityError` when a uniqueness rule already
        matches a stored record, unless duplicates are allowed. Constraints
        enforced by the storage itself apply either way. Field values are
        coerced and checked first, as for a patch.
        """
        self._check_entity(entity, "create")
        allow = self._config.allow_duplicates if allow_duplicates is None else allow_duplicates
        candidate = self._stamp_created(self._patcher.validate_new(entity))

        if not allow:
            match = await self._call(
                "create",
                self._repository.find_duplicate,
                candidate,
                self._type.unique_constraints,
            )
            if match is not None:
                _, constraint = match
                detail = _describe_duplicate(self._type, candidate, constraint)
                logger.debug("Duplicate %s rejected on create: %s", self._type.name, detail)
                raise DuplicateEntityError(
                    entity_name=self._type.name,
                    operation="create",
                    detail=detail,
                    constraint=constraint.name if constraint else None,
                )

        try:
            stored = await self._call("create", self._repository.insert, candidate)
        except ConstraintViolationError as exc:
            raise DuplicateEntityError(
                entity_name=self._type.name,
                operation="create",
                detail=exc.detail,
                cause=exc,
            ) from exc
        logger.debug("%s created with id %r", self._type.name, stored.get_id())
        return stored

    async def find_by_id(self, id: Any) -> T:
        """Return the entity with this identifier or raise :class:`NotFoundError`."""
        return await self._require(id, "find_by_id")

    async def find_all(self, spec: Sort | PageRequest | None = None) -> list[T] | Page[T]:
        """Pass-through listing: everything, sorted, or one page."""
        if spec is not None and not isinstance(spec, (Sort, PageRequest)):
            raise ValidationError(
                entity_name=self._type.name,
                operation="find_all",
                fields={"spec": f"expected Sort or PageRequest, got {type(spec).__name__}"},
            )
        return await self._call("find_all", self._repository.find_all, spec)

    async def update(self, id: Any, patch: Mapping[str, Any], audit: AuditLog | None = None) -> T:
        """Merge ``patch`` onto the stored entity and persist it.

        A patch that changes nothing returns the stored entity without a write.
        Casts, sets and rejections are recorded into ``audit`` when given.
        """
        current = await self._require(id, "update")
        merged = self._patcher.apply(current, patch, audit)
        if merged == current:
            logger.debug("Patch for %s id=%r changes nothing; skipping write", self._type.name, id)
            return current

        changed = {name for name in merged.field_descriptors() if merged.get(name) != current.get(name)}
        constraints = [c for c in self._type.unique_constraints if changed.intersection(c.fields)]
        if constraints:
            match = await self._call(
                "update",
                self._repository.find_duplicate,
                merged,
                constraints,
                current.get_id(),
            )
            if match is not None:
                _, constraint = match
                raise DuplicateEntityError(
                    entity_name=self._type.name,
                    operation="update",
                    detail=_describe_duplicate(self._type, merged, constraint),
                    constraint=constraint.name if constraint else None,
                )

        merged = self._stamp_updated(merged)
        try:
            return await self._call("update", self._repository.save, merged)
        except ConstraintViolationError as exc:
            raise DuplicateEntityError(
                entity_name=self._type.name,
                operation="update",
                detail=exc.detail,
                cause=exc,
            ) from exc
        except ConflictError:
            logger.warning("Concurrent write detected for %s (id=%r)", self._type.name, id)
            raise

    async def delete(self, id: Any) -> T:
        """Remove the entity and return it as it was immediately before deletion."""
        deleted = await self._call("delete", self._repository.delete_by_id, id)
        if deleted is None:
            logger.warning("%s not found for delete (id=%r)", self._type.name, id)
            raise NotFoundError(entity_name=self._type.name, operation="delete", id=id)
        return deleted

    async def count(self) -> int:
        return await self._call("count", self._repository.count)

    async def exists_by_id(self, id: Any) -> bool:
        return await self._call("exists_by_id", self._repository.exists_by_id, id)

    # -- Batch operations -----------------------------------------------------

    async def create_batch(self, entities: Iterable[T], skip_duplicates: bool = False) -> BatchResult[T]:
        """Create every entity independently.

        Duplicates (against storage, or against an earlier item of the same
        batch that was created) are skipped when ``skip_duplicates`` is true
        and fail with ``DUPLICATE_ENTITY`` otherwise. Items sharing an id or a
        natural key run one after another in input order; unrelated items run
        concurrently.
        """
        items = self._batch_items(entities, "create_batch")

        async def create_one(index: int, entity: T) -> Outcome[T]:
            try:
                stored = await self.create(entity, allow_duplicates=False)
            except DuplicateEntityError as exc:
                return self._duplicate_outcome(index, entity, exc.detail, skip_duplicates)
            except CrudError as exc:
                self._log_item_failure("create_batch", index, exc)
                return Failed.from_error(index, entity, exc)
            return Succeeded(index, stored)

        async def process_group(_: int, indices: list[int]) -> list[Outcome[T]]:
            created: dict[tuple[Any, Any], int] = {}
            outcomes: list[Outcome[T]] = []
            for index in indices:
                entity = items[index]
                keys = self._batch_keys(entity)
                claimed = next(((key, created[key]) for key in keys if key in created), None)
                if claimed is not None:
                    key, earlier = claimed
                    reason = f"duplicate of item {earlier} within batch ({self._describe_batch_key(key)})"
                    outcomes.append(self._duplicate_outcome(index, entity, reason, skip_duplicates))
                    continue
                outcome = await create_one(index, entity)
                if isinstance(outcome, Succeeded):
                    created.update((key, index) for key in keys)
                outcomes.append(outcome)
            return outcomes

        grouped = await self._fan_out(process_group, self._key_groups(items))
        result = BatchResult.from_outcomes((o for group in grouped for o in group), total=len(items))
        logger.info(
            "Batch create for %s complete: %d created, %d skipped, %d failed",
            self._type.name,
            result.success_count,
            result.skip_count,
            result.fail_count,
        )
        return result

    async def delete_batch(self, ids: Iterable[Any]) -> BatchResult[T]:
        """Delete every id independently; missing ids fail with ``NOT_FOUND``."""
        items = self._batch_items(ids, "delete_batch")
        repeats: dict[int, int] = {}
        first_seen: dict[Any, int] = {}
        for index, id in enumerate(items):
            try:
                earlier = first_seen.setdefault(id, index)
            except TypeError:
                continue
            if earlier != index:
                repeats[index] = earlier

        async def process(index: int, id: Any) -> Outcome[T]:
            if index in repeats:
                error = NotFoundError(entity_name=self._type.name, operation="delete_batch", id=id)
                return Failed(index, id, error.kind, f"{error.detail} (already deleted by item {repeats[index]})")
            try:
                hash(id)
            except TypeError:
                error = ValidationError(
                    entity_name=self._type.name,
                    operation="delete_batch",
                    fields={"id": f"identifier must be hashable, got {type(id).__name__}"},
                )
                return Failed.from_error(index, id, error)
            try:
                deleted = await self.delete(id)
            except CrudError as exc:
                self._log_item_failure("delete_batch", index, exc)
                return Failed.from_error(index, id, exc)
            return Succeeded(index, deleted)

        result = BatchResult.from_outcomes(await self._fan_out(process, items), total=len(items))
        logger.info(
            "Batch delete for %s complete: %d deleted, %d failed",
            self._type.name,
            result.success_count,
            result.fail_count,
        )
        return result

    async def update_batch(self, updates: Mapping[Any, Mapping[str, Any]]) -> BatchResult[T]:
        """Apply each ``id -> patch`` pair independently.

        Failed entries carry the ``(id, patch)`` pair and the specific error kind.
        """
        if not isinstance(updates, Mapping):
            raise ValidationError(
                entity_name=self._type.name,
                operation="update_batch",
                fields={_INPUT_KEY: f"expected a mapping of id to patch, got {type(updates).__name__}"},
            )
        items = self._batch_items(list(updates.items()), "update_batch")

        async def process(index: int, pair: tuple[Any, Mapping[str, Any]]) -> Outcome[T]:
            id, patch = pair
            try:
                updated = await self.update(id, patch)
            except CrudError as exc:
                self._log_item_failure("update_batch", index, exc)
                return Failed.from_error(index, pair, exc)
            return Succeeded(index, updated)

        result = BatchResult.from_outcomes(await self._fan_out(process, items), total=len(items))
        logger.info(
            "Batch update for %s complete: %d updated, %d failed",
            self._type.name,
            result.success_count,
            result.fail_count,
        )
        return result

    # -- Internals ------------------------------------------------------------

    async def _call(self, operation: str, fn: Callable[..., Awaitable[R]], *args: Any) -> R:
        """Invoke a repository coroutine, translating foreign errors.

        Engine errors pass through; timeouts and collaborator cancellations
        become :class:`OperationCancelledError`; anything else becomes
        :class:`StorageFailureError`.
        """
        try:
            return await fn(*args)
        except CrudError:
            raise
        except (asyncio.TimeoutError, TimeoutError) as exc:
            logger.warning("Repository %s timed out for %s", operation, self._type.name)
            raise OperationCancelledError(
                entity_name=self._type.name,
                operation=operation,
                detail="repository call timed out or was cancelled",
                cause=exc,
            ) from exc
        except Exception as exc:
            logger.error("Repository %s failed for %s: %s", operation, self._type.name, type(exc).__name__)
            raise StorageFailureError(
                entity_name=self._type.name,
                operation=operation,
                detail=f"storage failure ({type(exc).__name__})",
                cause=exc,
            ) from exc

    async def _require(self, id: Any, operation: str) -> T:
        entity = await self._call(operation, self._repository.find_by_id, id)
        if entity is None:
            logger.warning("%s not found (id=%r)", self._type.name, id)
            raise NotFoundError(entity_name=self._type.name, operation=operation, id=id)
        return entity

    def _check_entity(self, entity: Any, operation: str) -> None:
        if not isinstance(entity, EntityModel):
            raise ValidationError(
                entity_name=self._type.name,
                operation=operation,
                fields={_INPUT_KEY: f"expected an entity, got {type(entity).__name__}"},
            )
        if entity.entity_name != self._type.name:
            raise ValidationError(
                entity_name=self._type.name,
                operation=operation,
                fields={_INPUT_KEY: f"expected a {self._type.name} entity, got {entity.entity_name}"},
            )

    def _batch_items(self, items: Any, operation: str) -> list[Any]:
        if items is None or isinstance(items, (str, bytes, Mapping)) or not isinstance(items, Iterable):
            raise ValidationError(
                entity_name=self._type.name,
                operation=operation,
                fields={_INPUT_KEY: f"expected a sequence of items, got {type(items).__name__}"},
            )
        batch = list(items)
        if len(batch) > self._config.max_batch_size:
            raise ValidationError(
                entity_name=self._type.name,
                operation=operation,
                fields={_INPUT_KEY: f"batch of {len(batch)} exceeds max_batch_size {self._config.max_batch_size}"},
            )
        return batch

    def _batch_keys(self, entity: Any) -> list[tuple[Any, Any]]:
        """Identity keys of a batch item: ``(None, id)`` then ``(constraint name, values)``.

        Items that are not entities of this type, or whose key values are
        unhashable, have no keys; storage alone decides for them.
        """
        if not isinstance(entity, EntityModel) or entity.entity_name != self._type.name:
            return []
        keys: list[tuple[Any, Any]] = []
        if entity.get_id() is not None:
            keys.append((None, entity.get_id()))
        for constraint in self._type.unique_constraints:
            values = self._type.key_of(entity, constraint)
            if values is not None:
                keys.append((constraint.name, values))
        try:
            hash(tuple(keys))
        except TypeError:
            return []
        return keys

    def _describe_batch_key(self, key: tuple[Any, Any]) -> str:
        name, value = key
        return f"{self._type.id_field}={value!r}" if name is None else f"constraint '{name}'"

    def _key_groups(self, items: Sequence[Any]) -> list[list[int]]:
        """Partition indices so items linked by any shared key land in one group, in input order."""
        parent = list(range(len(items)))

        def root(index: int) -> int:
            while parent[index] != index:
                parent[index] = parent[parent[index]]
                index = parent[index]
            return index

        owners: dict[tuple[Any, Any], int] = {}
        for index, item in enumerate(items):
            for key in self._batch_keys(item):
                parent[root(index)] = root(owners.setdefault(key, index))

        groups: dict[int, list[int]] = {}
        for index in range(len(items)):
            groups.setdefault(root(index), []).append(index)
        return list(groups.values())

    def _duplicate_outcome(self, index: int, entity: T, reason: str, skip: bool) -> Outcome[T]:
        if skip:
            logger.debug("Skipping duplicate %s at index %d: %s", self._type.name, index, reason)
            return Skipped(index, entity, reason)
        error = DuplicateEntityError(entity_name=self._type.name, operation="create_batch", detail=reason)
        return Failed.from_error(index, entity, error)

    async def _fan_out(
        self,
        process: Callable[[int, Any], Awaitable[R]],
        items: Sequence[Any],
    ) -> list[R]:
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def guarded(index: int, item: Any) -> R:
            async with semaphore:
                return await process(index, item)

        return list(await asyncio.gather(*(guarded(i, item) for i, item in enumerate(items))))

    def _log_item_failure(self, operation: str, index: int, error: CrudError) -> None:
        if isinstance(error, (StorageFailureError, OperationCancelledError, ConflictError)):
            logger.warning("%s item %d for %s failed: %s", operation, index, self._type.name, error.kind.value)
        else:
            logger.debug("%s item %d for %s failed: %s", operation, index, self._type.name, error.detail)

    def _stamp_created(self, entity: T) -> T:
        if not self._type.schema.timestamps:
            return entity
        now = datetime.now(timezone.utc)
        changes: dict[str, Any] = {UPDATED_AT: now}
        if entity.get(CREATED_AT) is None:
            changes[CREATED_AT] = now
        return entity.evolve(changes)

    def _stamp_updated(self, entity: T) -> T:
        if not self._type.schema.timestamps:
            return entity
        return entity.evolve({UPDATED_AT: datetime.now(timezone.utc)})
