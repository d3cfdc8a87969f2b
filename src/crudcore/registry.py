"""Entity registry: schemas, their repositories, and the engines built over them."""

from __future__ import annotations

import logging
from typing import Any, Callable

from crudcore.config import EngineConfig
from crudcore.engine import CrudEngine
from crudcore.model import EntityType
from crudcore.protocols import Repository
from crudcore.schema import EntitySchema

logger = logging.getLogger(__name__)

RepositoryFactory = Callable[[EntityType], Repository[Any]]


class EntityRegistry:
    """Maps entity names to compiled types and bound repositories.

    Engines are created lazily and cached per entity; rebinding a repository
    drops the cached engine.
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        self._config = config or EngineConfig()
        self._types: dict[str, EntityType] = {}
        self._repositories: dict[str, Repository[Any]] = {}
        self._engines: dict[str, CrudEngine[Any]] = {}

    @property
    def config(self) -> EngineConfig:
        return self._config

    def register(self, schema: EntitySchema, repository_factory: RepositoryFactory | None = None) -> EntityType:
        """Compile and register ``schema``; optionally bind a repository built by the factory."""
        if schema.name in self._types:
            raise ValueError(f"Entity '{schema.name}' is already registered")
        entity_type = EntityType.from_schema(schema)
        self._types[schema.name] = entity_type
        logger.debug("Registered entity %s", schema.name)
        if repository_factory is not None:
            self.bind(schema.name, repository_factory(entity_type))
        return entity_type

    def bind(self, name: str, repository: Repository[Any]) -> None:
        """Attach (or replace) the repository for a registered entity."""
        self.entity_type(name)
        if not isinstance(repository, Repository):
            raise TypeError(f"{type(repository).__name__} does not implement the Repository protocol")
        self._repositories[name] = repository
        self._engines.pop(name, None)

    def entity_type(self, name: str) -> EntityType:
        try:
            return self._types[name]
        except KeyError:
            raise LookupError(f"Entity '{name}' is not registered") from None

    def engine(self, name: str) -> CrudEngine[Any]:
        """Return the engine for ``name``, building it on first use."""
        if name in self._engines:
            return self._engines[name]
        entity_type = self.entity_type(name)
        repository = self._repositories.get(name)
        if repository is None:
            raise LookupError(f"No repository bound for entity '{name}'")
        engine: CrudEngine[Any] = CrudEngine(entity_type, repository, self._config)
        self._engines[name] = engine
        return engine

    def names(self) -> list[str]:
        return list(self._types)

    def __contains__(self, name: object) -> bool:
        return name in self._types
