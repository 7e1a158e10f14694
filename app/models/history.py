from datetime import datetime, UTC
from typing import Optional

from sqlalchemy import BigInteger, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.base import Base


class DealStageHistory(Base):
    """One stage occupancy of a deal. Re-entering a stage opens a new row."""

    __tablename__ = "deal_stage_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(Integer, ForeignKey("deals.id", ondelete="CASCADE"), index=True)

    stage_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # Captured at write time, so renaming a stage later does not rewrite history
    stage_name: Mapped[str] = mapped_column(String(100), default="", nullable=False)

    entered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    exited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Milliseconds, set together with exited_at
    duration: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_by: Mapped[str] = mapped_column(String(128), default="System")

    # Relationship
    deal = relationship("app.models.deal.Deal", back_populates="stage_history")

    @property
    def is_open(self) -> bool:
        return self.exited_at is None
