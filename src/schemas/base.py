"""Base schema classes and generic types."""

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class BaseResponse(BaseModel):
    """Base for all response schemas built from ORM rows."""

    model_config = ConfigDict(from_attributes=True)


class ListResponse(BaseModel, Generic[T]):  # noqa: UP046
    """Items plus the total matching the filters.

    ``total`` may exceed ``len(items)`` when limit/offset are applied.
    """

    items: list[T]
    total: int
