"""Per-item batch outcomes and their aggregation into a :class:`BatchResult`."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Iterable, TypeVar, Union

from crudcore.exceptions import CrudError, ErrorKind

T = TypeVar("T")


@dataclass(frozen=True)
class Succeeded(Generic[T]):
    """Item ``index`` was persisted (or deleted); ``value`` is the stored entity."""

    index: int
    value: T


@dataclass(frozen=True)
class Skipped(Generic[T]):
    """Item ``index`` was a duplicate and was elided."""

    index: int
    value: T
    reason: str = ""


@dataclass(frozen=True)
class Failed:
    """Item ``index`` could not be processed."""

    index: int
    input: Any
    kind: ErrorKind
    message: str = ""

    @classmethod
    def from_error(cls, index: int, input: Any, error: CrudError) -> Failed:
        return cls(index=index, input=input, kind=error.kind, message=error.detail)


Outcome = Union[Succeeded[T], Skipped[T], Failed]


@dataclass(frozen=True)
class BatchResult(Generic[T]):
    """Outcome of a batch call, partitioned into succeeded, skipped and failed.

    Each partition preserves input order. Counts are derived from the
    partitions, never stored separately.
    """

    succeeded: list[T] = field(default_factory=list)
    skipped: list[T] = field(default_factory=list)
    failed: list[Failed] = field(default_factory=list)
    succeeded_indices: list[int] = field(default_factory=list, repr=False)
    skipped_indices: list[int] = field(default_factory=list, repr=False)
    skip_reasons: list[str] = field(default_factory=list, repr=False)

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[Outcome[T]], total: int | None = None) -> BatchResult[T]:
        """Group outcomes by kind, ordered by input index.

        Outcomes may arrive in any order (e.g. from concurrent tasks). When
        ``total`` is given the indices must be exactly ``0..total-1``.
        """
        ordered = sorted(outcomes, key=lambda o: o.index)
        if total is not None:
            indices = [o.index for o in ordered]
            if indices != list(range(total)):
                raise ValueError(f"batch outcomes do not cover indices 0..{total - 1} exactly once")

        result: BatchResult[T] = cls()
        for outcome in ordered:
            if isinstance(outcome, Succeeded):
                result.succeeded.append(outcome.value)
                result.succeeded_indices.append(outcome.index)
            elif isinstance(outcome, Skipped):
                result.skipped.append(outcome.value)
                result.skipped_indices.append(outcome.index)
                result.skip_reasons.append(outcome.reason)
            elif isinstance(outcome, Failed):
                result.failed.append(outcome)
            else:
                raise TypeError(f"unexpected batch outcome: {outcome!r}")
        return result

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def skip_count(self) -> int:
        return len(self.skipped)

    @property
    def fail_count(self) -> int:
        return len(self.failed)

    @property
    def total(self) -> int:
        return self.success_count + self.skip_count + self.fail_count

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    @property
    def has_skipped(self) -> bool:
        return bool(self.skipped)

    def failed_indices(self) -> list[int]:
        return [f.index for f in self.failed]

    def failures_of(self, kind: ErrorKind) -> list[Failed]:
        return [f for f in self.failed if f.kind == kind]

    def to_dict(self) -> dict[str, Any]:
        """Summary suitable for logging or a transport layer."""
        return {
            "success_count": self.success_count,
            "skip_count": self.skip_count,
            "fail_count": self.fail_count,
            "total": self.total,
            "skipped_indices": list(self.skipped_indices),
            "failures": [
                {"index": f.index, "input": repr(f.input), "kind": f.kind.value, "message": f.message}
                for f in self.failed
            ],
        }
