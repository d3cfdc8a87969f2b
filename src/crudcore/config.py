"""Engine configuration loaded from .crudcore/engine.json or CRUDCORE_* variables."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from crudcore.coercion import StrictnessLevel
from crudcore.patch import DEFAULT_PROTECTED_FIELDS, UnknownFieldPolicy

logger = logging.getLogger(__name__)

_ENV_PREFIX = "CRUDCORE_"


class EngineConfig(BaseModel):
    """Behavioural settings shared by every engine built from a registry.

    Attributes:
        strictness: How aggressively patch values are cast to declared types.
        unknown_fields: Reject or silently drop patch keys that are not fields.
        protected_fields: Field names no patch may touch.
        allow_duplicates: Default for ``create(..., allow_duplicates=...)``.
        max_concurrency: Upper bound on concurrently processed batch items.
        max_batch_size: Batches larger than this are rejected before any item runs.
    """

    model_config = {"extra": "forbid"}

    strictness: StrictnessLevel = StrictnessLevel.MODERATE
    unknown_fields: UnknownFieldPolicy = UnknownFieldPolicy.REJECT
    protected_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_PROTECTED_FIELDS))
    allow_duplicates: bool = False
    max_concurrency: int = Field(default=8, ge=1)
    max_batch_size: int = Field(default=10_000, ge=1)

    @classmethod
    def from_file(cls, path: str | Path = ".crudcore/engine.json") -> EngineConfig:
        """Load config from a JSON file, falling back to defaults."""
        p = Path(path)
        if p.exists():
            data: dict[str, Any] = json.loads(p.read_text())
            logger.debug("Loaded engine config from %s", p)
            return cls.model_validate(data)
        return cls()

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> EngineConfig:
        """Build a config from ``CRUDCORE_*`` variables over the defaults.

        ``CRUDCORE_PROTECTED_FIELDS`` is a comma-separated list.
        """
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(f"{_ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if name == "protected_fields":
                data[name] = [part.strip() for part in raw.split(",") if part.strip()]
            else:
                data[name] = raw
        return cls.model_validate(data)
