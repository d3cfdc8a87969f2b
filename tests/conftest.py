"""Shared fixtures: a Person entity type and an engine over an in-memory repository."""

import pytest
from crudcore.adapters.memory import InMemoryRepository
from crudcore.config import EngineConfig
from crudcore.engine import CrudEngine
from crudcore.model import EntityType
from crudcore.schema import EntitySchema, FieldConstraint, FieldSchema, FieldType


@pytest.fixture
def person_schema() -> EntitySchema:
    return EntitySchema(
        name="Person",
        fields=[
            FieldSchema(name="id", field_type=FieldType.INTEGER, primary_key=True),
            FieldSchema(name="name", field_type=FieldType.STRING, constraints=FieldConstraint(min_length=1)),
            FieldSchema(name="age", field_type=FieldType.INTEGER, nullable=True, constraints=FieldConstraint(ge=0)),
            FieldSchema(name="email", field_type=FieldType.STRING, nullable=True, unique=True),
            FieldSchema(name="active", field_type=FieldType.BOOLEAN, default=True),
            FieldSchema(name="created_by", field_type=FieldType.STRING, nullable=True),
        ],
    )


@pytest.fixture
def person_type(person_schema: EntitySchema) -> EntityType:
    return EntityType.from_schema(person_schema)


@pytest.fixture
def repository(person_type: EntityType) -> InMemoryRepository:
    return InMemoryRepository(person_type)


@pytest.fixture
def engine(person_type: EntityType, repository: InMemoryRepository) -> CrudEngine:
    return CrudEngine(person_type, repository, EngineConfig())
