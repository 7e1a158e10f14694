"""
Deal model - the unit that moves through a pipeline's stages.
"""
import enum
from typing import TYPE_CHECKING
from datetime import datetime, UTC

from sqlalchemy import String, Float, Integer, DateTime, Enum as SAEnum, ForeignKey, Boolean, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.base import Base

if TYPE_CHECKING:
    from app.models.history import DealStageHistory


class DealStatus(str, enum.Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"
    PENDING = "pending"


class DealPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Deal(Base):
    """Deal with a cached projection of its current stage.

    stage_id / current_stage_entered_at / status are kept consistent with
    stage_history by DealService; version_id makes every update of the row
    conditional on the version that was read.
    """
    __tablename__ = "deals"
    __table_args__ = (
        Index("ix_deals_pipeline_stage", "pipeline_id", "stage_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    value: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    priority: Mapped[DealPriority] = mapped_column(
        SAEnum(DealPriority), nullable=False, default=DealPriority.MEDIUM
    )
    status: Mapped[DealStatus] = mapped_column(
        SAEnum(DealStatus), nullable=False, default=DealStatus.OPEN, index=True
    )
    probability: Mapped[int] = mapped_column(Integer, default=50, nullable=False)

    pipeline_id: Mapped[int] = mapped_column(Integer, ForeignKey("pipelines.id"), nullable=False, index=True)
    # Not a foreign key: the stage is validated at move time only
    stage_id: Mapped[int] = mapped_column(Integer, nullable=False)
    current_stage_entered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    # Snapshot refreshed on every save, not a live value
    days_in_current_stage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    expected_close_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_close_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    won_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    lost_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    assigned_to: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False, default="System")
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    # Soft delete fields
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Optimistic concurrency
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    stage_history: Mapped[list["DealStageHistory"]] = relationship(
        "DealStageHistory",
        back_populates="deal",
        cascade="all, delete-orphan",
        order_by="[DealStageHistory.entered_at, DealStageHistory.id]",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version_id}
