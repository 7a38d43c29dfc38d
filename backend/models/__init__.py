"""SQLAlchemy ORM models for the study SRS database."""

from backend.models.base import Base
from backend.models.card import Card
from backend.models.review_log import ReviewLog

__all__ = ["Base", "Card", "ReviewLog"]
