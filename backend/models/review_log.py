from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.config import utcnow
from backend.models.base import Base


class ReviewLog(Base):
    __tablename__ = "review_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    card_id: Mapped[int] = mapped_column(ForeignKey("cards.id", ondelete="CASCADE"), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    quality: Mapped[int] = mapped_column(Integer, nullable=False)  # 0=Blackout .. 5=Perfect
    is_success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    time_spent: Mapped[float | None] = mapped_column(Float, nullable=True)  # Seconds
    confidence: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0-10
    previous_interval: Mapped[int] = mapped_column(Integer, nullable=False)
    new_interval: Mapped[int] = mapped_column(Integer, nullable=False)
    new_ease_factor: Mapped[float] = mapped_column(Float, nullable=False)
    graded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)

    card: Mapped["Card"] = relationship(back_populates="review_logs")  # type: ignore[name-defined] # noqa: F821
