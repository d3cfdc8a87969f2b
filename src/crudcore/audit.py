"""Field-level trail of what :class:`~crudcore.patch.PatchApplier` did to an entity."""

from __future__ import annotations

import logging
from collections import Counter
from enum import Enum
from typing import Any, NamedTuple

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    TYPE_CAST = "type_cast"
    FIELD_SET = "field_set"
    FIELD_IGNORED = "field_ignored"
    VALIDATION_ERROR = "validation_error"


class AuditEntry(NamedTuple):
    entity_name: str
    field_name: str
    action: AuditAction
    before: Any
    after: Any
    reason: str


class AuditLog:
    """Entries in the order the applier produced them.

    One log may be passed to several ``apply`` calls; entries accumulate.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []

    def record(
        self, entity_name: str, field_name: str, action: AuditAction, before: Any, after: Any, reason: str
    ) -> None:
        self._entries.append(AuditEntry(entity_name, field_name, action, before, after, reason))
        logger.debug("%s.%s %s: %r -> %r (%s)", entity_name, field_name, action.value, before, after, reason)

    @property
    def entries(self) -> tuple[AuditEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def filter_by_action(self, action: AuditAction) -> list[AuditEntry]:
        return [e for e in self._entries if e.action is action]

    def changed_fields(self) -> list[str]:
        return [e.field_name for e in self.filter_by_action(AuditAction.FIELD_SET)]

    def summary(self) -> dict[str, int]:
        return dict(Counter(e.action.value for e in self._entries))
