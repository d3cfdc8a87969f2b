"""crudcore: generic CRUD engine with best-effort batch operations and patch merging."""

from crudcore.adapters.memory import InMemoryRepository
from crudcore.adapters.sql import SQLRepository
from crudcore.audit import AuditAction, AuditEntry, AuditLog
from crudcore.coercion import CoercionEngine, CoercionError, StrictnessLevel
from crudcore.config import EngineConfig
from crudcore.engine import CrudEngine
from crudcore.exceptions import (
    ConflictError,
    ConstraintViolationError,
    CrudError,
    DuplicateEntityError,
    ErrorKind,
    IdentityError,
    NotFoundError,
    OperationCancelledError,
    StorageFailureError,
    TypeMismatchError,
    ValidationError,
)
from crudcore.model import EntityModel, EntityType, FieldDescriptor, Record
from crudcore.paging import Direction, Order, Page, PageRequest, Sort
from crudcore.patch import PatchApplier, UnknownFieldPolicy
from crudcore.protocols import Repository
from crudcore.registry import EntityRegistry
from crudcore.results import BatchResult, Failed, Skipped, Succeeded
from crudcore.schema import EntitySchema, FieldConstraint, FieldSchema, FieldType, UniqueConstraint

__all__ = [
    "AuditAction",
    "AuditEntry",
    "AuditLog",
    "BatchResult",
    "CoercionEngine",
    "CoercionError",
    "ConflictError",
    "ConstraintViolationError",
    "CrudEngine",
    "CrudError",
    "Direction",
    "DuplicateEntityError",
    "EngineConfig",
    "EntityModel",
    "EntityRegistry",
    "EntitySchema",
    "EntityType",
    "ErrorKind",
    "Failed",
    "FieldConstraint",
    "FieldDescriptor",
    "FieldSchema",
    "FieldType",
    "IdentityError",
    "InMemoryRepository",
    "NotFoundError",
    "OperationCancelledError",
    "Order",
    "Page",
    "PageRequest",
    "PatchApplier",
    "Record",
    "Repository",
    "SQLRepository",
    "Skipped",
    "StorageFailureError",
    "StrictnessLevel",
    "Succeeded",
    "TypeMismatchError",
    "UniqueConstraint",
    "UnknownFieldPolicy",
    "ValidationError",
]
