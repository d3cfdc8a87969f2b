"""Sort and page request shapes passed through to the repository."""

from __future__ import annotations

import math
from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class Direction(str, Enum):
    ASC = "asc"
    DESC = "desc"


class Order(BaseModel):
    """Ordering on a single field."""

    field: str = Field(min_length=1)
    direction: Direction = Direction.ASC

    model_config = {"extra": "forbid", "frozen": True}

    @property
    def ascending(self) -> bool:
        return self.direction == Direction.ASC


class Sort(BaseModel):
    """Ordered list of field orders; the first order is the primary key of the sort."""

    orders: list[Order] = Field(default_factory=list)

    model_config = {"extra": "forbid", "frozen": True}

    @classmethod
    def by(cls, *fields: str, direction: Direction = Direction.ASC) -> Sort:
        return cls(orders=[Order(field=f, direction=direction) for f in fields])

    @property
    def is_sorted(self) -> bool:
        return bool(self.orders)

    def and_(self, other: Sort) -> Sort:
        return Sort(orders=[*self.orders, *other.orders])


class PageRequest(BaseModel):
    """Zero-based page number, page size and optional sort."""

    page: int = Field(default=0, ge=0)
    size: int = Field(default=20, ge=1, le=10_000)
    sort: Sort = Field(default_factory=Sort)

    model_config = {"extra": "forbid", "frozen": True}

    @property
    def offset(self) -> int:
        return self.page * self.size


class Page(BaseModel, Generic[T]):
    """One page of results plus the total number of records."""

    content: list[T]
    request: PageRequest
    total_elements: int = Field(ge=0)

    model_config = {"arbitrary_types_allowed": True}

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_elements / self.request.size) if self.total_elements else 0

    @property
    def number(self) -> int:
        return self.request.page

    @property
    def has_next(self) -> bool:
        return self.request.page + 1 < self.total_pages

    def __len__(self) -> int:
        return len(self.content)
