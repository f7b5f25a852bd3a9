"""
Pagination Utilities
====================

Page-based LIMIT/OFFSET pagination shared by the queue listing queries.
"""

import math
from typing import TypeVar, Generic, List, Optional
from pydantic import BaseModel, Field

# Type variable for generic pagination
T = TypeVar('T')

MAX_PAGE_SIZE = 1000


class PaginationParams(BaseModel):
    """Standard pagination parameters."""
    page: int = Field(1, ge=1, description="Page number (1-based)")
    limit: int = Field(50, ge=1, le=MAX_PAGE_SIZE, description="Items per page")

    @property
    def offset(self) -> int:
        """Calculate offset from page and limit."""
        return (self.page - 1) * self.limit


class PaginationMeta(BaseModel):
    """Pagination metadata for responses."""
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool
    next_page: Optional[int] = None
    prev_page: Optional[int] = None

    @classmethod
    def create(cls, page: int, limit: int, total: int) -> 'PaginationMeta':
        """Create pagination metadata from parameters."""
        pages = math.ceil(total / limit) if total > 0 else 0
        has_next = page < pages
        has_prev = page > 1

        return cls(
            page=page,
            limit=limit,
            total=total,
            pages=pages,
            has_next=has_next,
            has_prev=has_prev,
            next_page=page + 1 if has_next else None,
            prev_page=page - 1 if has_prev else None
        )


class PaginatedResponse(BaseModel, Generic[T]):
    """Generic paginated response model."""
    items: List[T]
    pagination: PaginationMeta
