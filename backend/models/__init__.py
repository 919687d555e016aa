"""SQLAlchemy ORM models for Nutrack."""

from backend.models.base import Base
from backend.models.consumption import ConsumedFoodItem

__all__ = [
    "Base",
    "ConsumedFoodItem",
]
