"""
Base Schemas
============

Shared schema config, the paginated list envelope and the error body.
"""

from typing import TypeVar, Generic, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class BaseSchema(BaseModel):
    """Reads straight from ORM rows; enums serialise as their values."""

    model_config = ConfigDict(
        from_attributes=True,
        validate_default=True,
        use_enum_values=True,
        str_strip_whitespace=True,
    )


class CamelSchema(BaseSchema):
    """
    Schema exchanged with the form builder front end.

    Serialises with camelCase keys and accepts either camelCase or
    snake_case on input.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


T = TypeVar("T")


class PaginatedResponse(BaseSchema, Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int
    pages: int

    @classmethod
    def create(
        cls,
        items: List[T],
        total: int,
        page: int,
        page_size: int,
    ) -> "PaginatedResponse[T]":
        pages = (total + page_size - 1) // page_size if page_size > 0 else 0
        return cls(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            pages=pages,
        )


class ErrorResponse(BaseSchema):
    """Body rendered for every ``ExportServiceError``.

    ``errors`` carries validator messages when a schema document is rejected.
    """

    detail: str
    code: Optional[str] = None
    errors: Optional[List] = None
