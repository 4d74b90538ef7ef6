# backend/tracking/models/pagination.py
from pydantic import BaseModel, Field


class Pagination(BaseModel):
    """Pagination block returned next to admin listings."""
    page: int = Field(..., description="Current page number (1-based).")
    limit: int = Field(..., description="Page size.")
    total: int = Field(..., description="Total number of matching records.")
    pages: int = Field(..., description="Total number of pages.")

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=(total + limit - 1) // limit if limit else 0)
