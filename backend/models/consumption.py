"""Consumed food item model."""

from __future__ import annotations

from sqlalchemy import Float, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.models.base import Base


class ConsumedFoodItem(Base):
    """A logged consumption of a food item on a given day."""

    __tablename__ = "consumed_food_items"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    barcode: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    date: Mapped[str] = mapped_column(Text, nullable=False)  # YYYY-MM-DD
    profile_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("idx_consumed_date", "date"),)
