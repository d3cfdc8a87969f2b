"""Tests for entity schema validation."""

import pytest
from crudcore.schema import EntitySchema, FieldConstraint, FieldSchema, FieldType, UniqueConstraint
from pydantic import ValidationError


def _id() -> FieldSchema:
    return FieldSchema(name="id", field_type=FieldType.INTEGER, primary_key=True)


class TestFieldSchema:
    def test_invalid_name(self):
        with pytest.raises(ValidationError):
            FieldSchema(name="1bad", field_type=FieldType.STRING)

    def test_keyword_name_rejected(self):
        with pytest.raises(ValidationError):
            FieldSchema(name="class", field_type=FieldType.STRING)

    def test_nullable_primary_key_rejected(self):
        with pytest.raises(ValidationError, match="must not be nullable"):
            FieldSchema(name="id", field_type=FieldType.INTEGER, primary_key=True, nullable=True)

    def test_enum_requires_values(self):
        with pytest.raises(ValidationError, match="enum_values"):
            FieldSchema(name="status", field_type=FieldType.ENUM)

    def test_enum_with_values(self):
        fs = FieldSchema(
            name="status",
            field_type=FieldType.ENUM,
            constraints=FieldConstraint(enum_values=["open", "closed"]),
        )
        assert fs.constraints.enum_values == ["open", "closed"]


class TestFieldConstraint:
    def test_bad_pattern(self):
        with pytest.raises(ValidationError, match="Invalid regex"):
            FieldConstraint(pattern="(")

    def test_min_exceeds_max(self):
        with pytest.raises(ValidationError):
            FieldConstraint(min_length=5, max_length=2)

    def test_ge_exceeds_le(self):
        with pytest.raises(ValidationError):
            FieldConstraint(ge=10, le=1)


class TestEntitySchema:
    def test_requires_primary_key(self):
        with pytest.raises(ValidationError, match="exactly one primary key"):
            EntitySchema(name="Thing", fields=[FieldSchema(name="name", field_type=FieldType.STRING)])

    def test_rejects_two_primary_keys(self):
        with pytest.raises(ValidationError, match="multiple primary key"):
            EntitySchema(
                name="Thing",
                fields=[_id(), FieldSchema(name="other", field_type=FieldType.STRING, primary_key=True)],
            )

    def test_rejects_duplicate_field_names(self):
        with pytest.raises(ValidationError, match="duplicate field name"):
            EntitySchema(name="Thing", fields=[_id(), _id()])

    def test_unique_constraint_must_reference_fields(self):
        with pytest.raises(ValidationError, match="unknown fields"):
            EntitySchema(
                name="Thing",
                fields=[_id()],
                unique_constraints=[UniqueConstraint(fields=["missing"])],
            )

    def test_unique_constraint_default_name(self):
        c = UniqueConstraint(fields=["first", "last"])
        assert c.name == "uq_first_last"

    def test_version_field_must_be_integer(self):
        with pytest.raises(ValidationError, match="non-key integer"):
            EntitySchema(
                name="Thing",
                fields=[_id(), FieldSchema(name="version", field_type=FieldType.STRING)],
                version_field="version",
            )

    def test_version_field_must_exist(self):
        with pytest.raises(ValidationError, match="is not a field"):
            EntitySchema(name="Thing", fields=[_id()], version_field="version")

    def test_timestamps_add_fields(self):
        schema = EntitySchema(name="Thing", fields=[_id()], timestamps=True)
        names = [f.name for f in schema.fields]
        assert names == ["id", "created_at", "updated_at"]
        assert all(f.nullable for f in schema.fields[1:])

    def test_primary_key_and_table_name(self):
        schema = EntitySchema(name="Thing", fields=[_id()])
        assert schema.primary_key.name == "id"
        assert schema.table_name == "thing"
        assert EntitySchema(name="Thing", fields=[_id()], collection_name="things").table_name == "things"
