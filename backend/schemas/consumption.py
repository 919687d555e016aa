"""Consumption-related schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


class ConsumedItemCreate(BaseModel):
    """Request to log a consumed food item."""

    barcode: str = Field(min_length=1, max_length=64)
    quantity: float = Field(gt=0)
    date: str = Field(pattern=DATE_PATTERN)
    profile_id: str | None = None


class ConsumedItemResponse(BaseModel):
    """A logged consumption."""

    id: str
    barcode: str
    quantity: float
    date: str
    profile_id: str | None = None
    created_at: str
