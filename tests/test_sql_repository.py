"""Tests for the SQL repository using async SQLite."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from crudcore.adapters.sql import SQLRepository, build_table
from crudcore.config import EngineConfig
from crudcore.engine import CrudEngine
from crudcore.exceptions import (
    ConflictError,
    ConstraintViolationError,
    DuplicateEntityError,
    ErrorKind,
    NotFoundError,
    StorageFailureError,
    ValidationError,
)
from crudcore.model import EntityType
from crudcore.paging import Direction, PageRequest, Sort
from crudcore.schema import EntitySchema, FieldSchema, FieldType
from sqlalchemy import MetaData
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine


@pytest.fixture
async def sql_repository(person_type: EntityType):
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    repository = SQLRepository(engine, person_type)
    await repository.ensure_table()
    yield repository
    await engine.dispose()


@pytest.fixture
def doc_type() -> EntityType:
    return EntityType.from_schema(
        EntitySchema(
            name="Doc",
            fields=[
                FieldSchema(name="id", field_type=FieldType.INTEGER, primary_key=True),
                FieldSchema(name="title", field_type=FieldType.STRING),
                FieldSchema(name="tags", field_type=FieldType.ARRAY, nullable=True),
                FieldSchema(name="version", field_type=FieldType.INTEGER),
            ],
            version_field="version",
        )
    )


@pytest.fixture
async def doc_repository(doc_type: EntityType):
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    repository = SQLRepository(engine, doc_type)
    await repository.ensure_table()
    yield repository
    await engine.dispose()


def test_build_table(person_type: EntityType):
    table = build_table(person_type.schema, MetaData())
    assert table.name == "person"
    assert table.c.id.primary_key
    assert table.c.email.unique
    assert table.c.age.nullable
    assert not table.c.name.nullable


async def test_insert_autoincrements(sql_repository: SQLRepository, person_type: EntityType):
    a = await sql_repository.insert(person_type.new(name="Alice", age=30))
    b = await sql_repository.insert(person_type.new(name="Bob"))
    assert (a.get_id(), b.get_id()) == (1, 2)
    found = await sql_repository.find_by_id(1)
    assert found == a


async def test_find_by_id_missing(sql_repository: SQLRepository):
    assert await sql_repository.find_by_id(404) is None


async def test_duplicate_primary_key(sql_repository: SQLRepository, person_type: EntityType):
    await sql_repository.insert(person_type.new(id=1, name="Alice"))
    with pytest.raises(ConstraintViolationError) as exc_info:
        await sql_repository.insert(person_type.new(id=1, name="Bob"))
    assert exc_info.value.operation == "insert"
    assert exc_info.value.__cause__ is not None


async def test_duplicate_unique_column(sql_repository: SQLRepository, person_type: EntityType):
    await sql_repository.insert(person_type.new(name="Alice", email="same@test.com"))
    with pytest.raises(ConstraintViolationError):
        await sql_repository.insert(person_type.new(name="Bob", email="same@test.com"))


async def test_find_all_sorted_nulls_last(sql_repository: SQLRepository, person_type: EntityType):
    for name, age in [("Bob", 25), ("Carol", None), ("Alice", 30)]:
        await sql_repository.insert(person_type.new(name=name, age=age))
    result = await sql_repository.find_all(Sort.by("age", direction=Direction.DESC))
    assert [p.get("name") for p in result] == ["Alice", "Bob", "Carol"]


async def test_find_all_paged(sql_repository: SQLRepository, person_type: EntityType):
    for i in range(5):
        await sql_repository.insert(person_type.new(name=f"p{i}"))
    page = await sql_repository.find_all(PageRequest(page=2, size=2, sort=Sort.by("name")))
    assert [p.get("name") for p in page.content] == ["p4"]
    assert page.total_elements == 5
    assert not page.has_next


async def test_unknown_sort_field(sql_repository: SQLRepository):
    with pytest.raises(ValidationError):
        await sql_repository.find_all(Sort.by("shoe_size"))


async def test_delete_returns_row(sql_repository: SQLRepository, person_type: EntityType):
    stored = await sql_repository.insert(person_type.new(name="Alice"))
    assert await sql_repository.delete_by_id(stored.get_id()) == stored
    assert await sql_repository.delete_by_id(stored.get_id()) is None
    assert await sql_repository.count() == 0


async def test_save_increments_version(doc_repository: SQLRepository, doc_type: EntityType):
    doc = await doc_repository.insert(doc_type.new(title="draft", tags=["a"]))
    saved = await doc_repository.save(doc.evolve({"title": "final"}))
    assert saved.get("version") == 1
    found = await doc_repository.find_by_id(doc.get_id())
    assert found.get("title") == "final"
    assert found.get("tags") == ["a"]
    assert found.get("version") == 1


async def test_stale_save_conflicts(doc_repository: SQLRepository, doc_type: EntityType):
    doc = await doc_repository.insert(doc_type.new(title="draft"))
    await doc_repository.save(doc.evolve({"title": "first"}))
    with pytest.raises(ConflictError):
        await doc_repository.save(doc.evolve({"title": "second"}))


async def test_save_missing_row(doc_repository: SQLRepository, doc_type: EntityType):
    with pytest.raises(NotFoundError):
        await doc_repository.save(doc_type.new(id=9, title="ghost"))


async def test_find_duplicate_excludes_own_row(sql_repository: SQLRepository, person_type: EntityType):
    alice = await sql_repository.insert(person_type.new(name="Alice", email="a@test.com"))
    constraints = person_type.unique_constraints
    assert await sql_repository.find_duplicate(alice, constraints, alice.get_id()) is None
    other = person_type.new(name="Other", email="a@test.com")
    stored, constraint = await sql_repository.find_duplicate(other, constraints)
    assert stored.get_id() == alice.get_id()
    assert constraint.fields == ["email"]


async def test_operational_error_becomes_storage_failure(sql_repository: SQLRepository):
    error = OperationalError("SELECT 1", {}, Exception("database is locked"))
    with patch.object(AsyncEngine, "connect", side_effect=error):
        with pytest.raises(StorageFailureError) as exc_info:
            await sql_repository.count()
    assert exc_info.value.kind == ErrorKind.STORAGE_FAILURE


async def test_engine_over_sql(sql_repository: SQLRepository, person_type: EntityType):
    # One in-memory SQLite connection is shared, so items run one at a time.
    engine = CrudEngine(person_type, sql_repository, EngineConfig(max_concurrency=1))
    created = await engine.create_batch(
        [person_type.new(name="a", email="a@test.com"), person_type.new(name="b", email="a@test.com")],
        skip_duplicates=True,
    )
    assert created.success_count == 1
    assert created.skip_count == 1
    updated = await engine.update(created.succeeded[0].get_id(), {"age": "41"})
    assert updated.get("age") == 41
    with pytest.raises(DuplicateEntityError):
        await engine.create(person_type.new(name="c", email="a@test.com"), allow_duplicates=True)
    result = await engine.delete_batch([created.succeeded[0].get_id(), 77])
    assert result.success_count == 1
    assert result.failed[0].kind == ErrorKind.NOT_FOUND


async def test_not_null_violation_is_not_a_duplicate(sql_repository: SQLRepository, person_type: EntityType):
    with pytest.raises(ValidationError) as exc_info:
        await sql_repository.insert(person_type.new(age=3))
    assert exc_info.value.kind == ErrorKind.VALIDATION
    assert not isinstance(exc_info.value, ConstraintViolationError)
    assert await sql_repository.count() == 0


async def test_integrity_error_fails_batch_item_instead_of_skipping(sql_repository: SQLRepository):
    # Engine-side type is looser than the table: name is nullable here only.
    loose = EntityType.from_schema(
        EntitySchema(
            name="Person",
            fields=[
                FieldSchema(name="id", field_type=FieldType.INTEGER, primary_key=True),
                FieldSchema(name="name", field_type=FieldType.STRING, nullable=True),
                FieldSchema(name="active", field_type=FieldType.BOOLEAN, default=True),
            ],
        )
    )
    engine = CrudEngine(loose, sql_repository, EngineConfig(max_concurrency=1))
    result = await engine.create_batch([loose.new(), loose.new(name="ok")], skip_duplicates=True)
    assert result.skip_count == 0
    assert [(f.index, f.kind) for f in result.failed] == [(0, ErrorKind.VALIDATION)]
    assert result.succeeded_indices == [1]


class TestTimestamps:
    @pytest.fixture
    def note_type(self) -> EntityType:
        return EntityType.from_schema(
            EntitySchema(
                name="Note",
                fields=[
                    FieldSchema(name="id", field_type=FieldType.INTEGER, primary_key=True),
                    FieldSchema(name="body", field_type=FieldType.TEXT),
                    FieldSchema(name="version", field_type=FieldType.INTEGER),
                ],
                version_field="version",
                timestamps=True,
            )
        )

    @pytest.fixture
    async def note_engine(self, note_type: EntityType):
        sql_engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        repository = SQLRepository(sql_engine, note_type)
        await repository.ensure_table()
        yield CrudEngine(note_type, repository, EngineConfig(max_concurrency=1))
        await sql_engine.dispose()

    async def test_round_trip_keeps_aware_timestamps(self, note_engine: CrudEngine, note_type: EntityType):
        created = await note_engine.create(note_type.new(body="hello"))
        found = await note_engine.find_by_id(created.get_id())
        assert found == created
        assert found.get("created_at").tzinfo is not None
        assert found.get("updated_at").utcoffset() == timedelta(0)

    async def test_unchanged_patch_skips_write(self, note_engine: CrudEngine, note_type: EntityType):
        created = await note_engine.create(note_type.new(body="hello"))
        same = await note_engine.update(created.get_id(), {"body": "hello"})
        assert same.get("version") == 0
        assert same.get("updated_at") == created.get("updated_at")
        changed = await note_engine.update(created.get_id(), {"body": "bye"})
        assert changed.get("version") == 1
        assert changed.get("created_at") == created.get("created_at")

    async def test_non_utc_value_stored_as_utc(self, note_engine: CrudEngine, note_type: EntityType):
        paris = timezone(timedelta(hours=2))
        stamped = datetime(2024, 6, 1, 14, 0, tzinfo=paris)
        created = await note_engine.create(note_type.new(body="hello", created_at=stamped))
        found = await note_engine.find_by_id(created.get_id())
        assert found.get("created_at") == stamped
        assert found.get("created_at").utcoffset() == timedelta(0)
