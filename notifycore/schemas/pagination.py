"""
Generic offset-paginated response schema.
Used by list endpoints to provide consistent pagination metadata.
"""
from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, computed_field

T = TypeVar("T")


class OffsetPage(BaseModel, Generic[T]):
    """
    Generic offset-paginated response wrapper.
    Provides items, total matching count, the applied limit and offset.
    """

    items: list[T]
    total: int
    limit: int
    offset: int

    @computed_field  # type: ignore[misc]
    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total

    model_config = {"from_attributes": True}
