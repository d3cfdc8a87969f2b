"""SQLAlchemy async repository built from an entity schema."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from crudcore.adapters import _check_sort_fields
from crudcore.exceptions import (
    ConflictError,
    ConstraintViolationError,
    NotFoundError,
    StorageFailureError,
    ValidationError,
)
from crudcore.model import EntityModel, EntityType
from crudcore.paging import Page, PageRequest, Sort
from crudcore.schema import EntitySchema, FieldType, UniqueConstraint

logger = logging.getLogger(__name__)

# SQLSTATE for unique_violation (PostgreSQL and most ANSI drivers).
_UNIQUE_VIOLATION = "23505"
_UNIQUE_MESSAGES = ("unique constraint", "duplicate key", "duplicate entry")


class UTCDateTime(sa.types.TypeDecorator):
    """DateTime stored as UTC and always returned timezone-aware.

    Backends without a zone-aware column type (SQLite) hand back naive values;
    those are read as UTC. Naive values written are assumed to be UTC.
    """

    impl = sa.DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def _is_unique_violation(exc: IntegrityError) -> bool:
    code = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if code:
        return code == _UNIQUE_VIOLATION
    message = str(exc.orig).lower()
    return any(marker in message for marker in _UNIQUE_MESSAGES)


_FIELD_TYPE_MAP: dict[FieldType, Any] = {
    FieldType.STRING: sa.String(255),
    FieldType.TEXT: sa.Text(),
    FieldType.INTEGER: sa.Integer(),
    FieldType.FLOAT: sa.Float(),
    FieldType.BOOLEAN: sa.Boolean(),
    FieldType.DATETIME: UTCDateTime(timezone=True),
    FieldType.DATE: sa.Date(),
    FieldType.UUID: sa.String(36),
    FieldType.JSON: sa.JSON(),
    FieldType.ARRAY: sa.JSON(),
    FieldType.BINARY: sa.LargeBinary(),
    FieldType.ENUM: sa.String(255),
}


def build_table(schema: EntitySchema, metadata: sa.MetaData) -> sa.Table:
    """Build a SQLAlchemy Table from an EntitySchema.

    Integer primary keys autoincrement. Only per-field ``unique`` flags become
    database constraints; composite natural keys are checked by the engine.
    """
    columns: list[sa.Column] = []
    for fs in schema.fields:
        columns.append(
            sa.Column(
                fs.name,
                _FIELD_TYPE_MAP[fs.field_type],
                primary_key=fs.primary_key,
                autoincrement=fs.primary_key and fs.field_type == FieldType.INTEGER,
                nullable=fs.nullable,
                unique=fs.unique and not fs.primary_key,
            )
        )
    return sa.Table(schema.table_name, metadata, *columns)


class SQLRepository:
    """Async repository for relational databases.

    Inserts and saves rely on the database for identifier and unique-field
    enforcement. Saves on versioned entities update only the row whose stored
    version still matches, so concurrent writers lose with ``ConflictError``.
    """

    def __init__(self, engine: AsyncEngine, entity_type: EntityType) -> None:
        self._engine = engine
        self._type = entity_type
        self._metadata = sa.MetaData()
        self._table = build_table(entity_type.schema, self._metadata)
        self._pk = self._table.c[entity_type.id_field]

    @property
    def table(self) -> sa.Table:
        return self._table

    @property
    def entity_type(self) -> EntityType:
        return self._type

    async def ensure_table(self) -> None:
        """Create the table if it does not exist."""
        with self._errors("ensure_table"):
            async with self._engine.begin() as conn:
                await conn.run_sync(self._metadata.create_all)

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except IntegrityError as exc:
            if _is_unique_violation(exc):
                logger.error("SQL %s failed for %s: unique constraint violation", operation, self._type.name)
                raise ConstraintViolationError(
                    entity_name=self._type.name,
                    operation=operation,
                    detail="a record with the same key or unique field already exists",
                    cause=exc,
                ) from exc
            logger.error("SQL %s failed for %s: integrity constraint violation", operation, self._type.name)
            raise ValidationError(
                entity_name=self._type.name,
                operation=operation,
                fields={"<record>": "rejected by a database integrity constraint"},
                cause=exc,
            ) from exc
        except OperationalError as exc:
            logger.error("SQL %s failed for %s: %s", operation, self._type.name, type(exc).__name__)
            raise StorageFailureError(
                entity_name=self._type.name,
                operation=operation,
                detail="database connection failed",
                cause=exc,
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("SQL %s failed for %s: %s", operation, self._type.name, type(exc).__name__)
            raise StorageFailureError(
                entity_name=self._type.name,
                operation=operation,
                detail="query execution failed",
                cause=exc,
            ) from exc

    def _record(self, row: Any) -> EntityModel:
        return self._type.from_dict(dict(row))

    async def insert(self, entity: EntityModel) -> EntityModel:
        values = entity.to_dict()
        if values.get(self._type.id_field) is None:
            values.pop(self._type.id_field, None)
            if self._type.descriptors[self._type.id_field].field_type == FieldType.UUID:
                values[self._type.id_field] = str(uuid.uuid4())
        with self._errors("insert"):
            async with self._engine.begin() as conn:
                result = await conn.execute(self._table.insert().values(**values))
                id = values.get(self._type.id_field, result.inserted_primary_key[0])
        stored = entity.evolve({})
        if stored.get_id() is None:
            stored.set_id(id)
        logger.debug("Inserted %s id=%r", self._type.name, id)
        return stored

    async def find_by_id(self, id: Any) -> EntityModel | None:
        with self._errors("find_by_id"):
            async with self._engine.connect() as conn:
                result = await conn.execute(self._table.select().where(self._pk == id))
                row = result.mappings().first()
        return self._record(row) if row is not None else None

    def _order_by(self, sort: Sort) -> list[Any]:
        _check_sort_fields(self._type, sort)
        clauses = []
        for order in sort.orders:
            column = self._table.c[order.field]
            clause = column.asc() if order.ascending else column.desc()
            clauses.append(clause.nulls_last())
        return clauses

    async def find_all(self, spec: Sort | PageRequest | None = None) -> list[EntityModel] | Page[EntityModel]:
        stmt = self._table.select()
        sort = spec.sort if isinstance(spec, PageRequest) else spec
        if sort is not None and sort.is_sorted:
            stmt = stmt.order_by(*self._order_by(sort))
        if isinstance(spec, PageRequest):
            stmt = stmt.limit(spec.size).offset(spec.offset)
        with self._errors("find_all"):
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()
                total = None
                if isinstance(spec, PageRequest):
                    total = (await conn.execute(sa.select(sa.func.count()).select_from(self._table))).scalar_one()
        content = [self._record(row) for row in rows]
        if isinstance(spec, PageRequest):
            return Page(content=content, request=spec, total_elements=total)
        return content

    async def save(self, entity: EntityModel) -> EntityModel:
        id = entity.get_id()
        values = entity.to_dict()
        values.pop(self._type.id_field, None)
        stmt = self._table.update().where(self._pk == id)
        version = self._type.version_field
        if version is not None:
            expected = entity.get(version)
            stmt = stmt.where(self._table.c[version] == expected)
            values[version] = (expected or 0) + 1
        with self._errors("save"):
            async with self._engine.begin() as conn:
                updated = (await conn.execute(stmt.values(**values))).rowcount
                exists = updated > 0 or (
                    (await conn.execute(sa.select(self._pk).where(self._pk == id))).first() is not None
                )
        if updated == 0:
            if not exists:
                raise NotFoundError(entity_name=self._type.name, operation="save", id=id)
            raise ConflictError(
                entity_name=self._type.name,
                operation="save",
                detail=f"stale version {entity.get(version)!r} for id {id!r}",
            )
        return entity.evolve({version: values[version]}) if version is not None else entity.evolve({})

    async def delete_by_id(self, id: Any) -> EntityModel | None:
        with self._errors("delete_by_id"):
            async with self._engine.begin() as conn:
                row = (await conn.execute(self._table.select().where(self._pk == id))).mappings().first()
                if row is None:
                    return None
                await conn.execute(self._table.delete().where(self._pk == id))
        return self._record(row)

    async def count(self) -> int:
        with self._errors("count"):
            async with self._engine.connect() as conn:
                return (await conn.execute(sa.select(sa.func.count()).select_from(self._table))).scalar_one()

    async def exists_by_id(self, id: Any) -> bool:
        with self._errors("exists_by_id"):
            async with self._engine.connect() as conn:
                row = (await conn.execute(sa.select(self._pk).where(self._pk == id).limit(1))).first()
        return row is not None

    async def find_duplicate(
        self,
        entity: EntityModel,
        constraints: Sequence[UniqueConstraint],
        exclude_id: Any = None,
    ) -> tuple[EntityModel, UniqueConstraint | None] | None:
        id = entity.get_id()
        if id is not None and exclude_id is None:
            stored = await self.find_by_id(id)
            if stored is not None:
                return stored, None
        with self._errors("find_duplicate"):
            async with self._engine.connect() as conn:
                for constraint in constraints:
                    key = self._type.key_of(entity, constraint)
                    if key is None:
                        continue
                    stmt = self._table.select().where(
                        *(self._table.c[name] == value for name, value in zip(constraint.fields, key))
                    )
                    if exclude_id is not None:
                        stmt = stmt.where(self._pk != exclude_id)
                    row = (await conn.execute(stmt.limit(1))).mappings().first()
                    if row is not None:
                        return self._record(row), constraint
        return None
