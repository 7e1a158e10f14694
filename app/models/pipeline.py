"""
Pipeline model - an organization's ordered list of deal stages.
"""
from datetime import datetime, UTC

from sqlalchemy import String, Integer, DateTime, Boolean, ForeignKey, Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.base import Base


class Pipeline(Base):
    """A named, ordered collection of stages belonging to one organization.

    Invariants kept by PipelineService:
    - at least PIPELINE_MIN_STAGES stages
    - stage order values are a dense 0..N-1 sequence
    - at most one non-deleted default pipeline per organization
    """
    __tablename__ = "pipelines"
    __table_args__ = (
        Index(
            "uq_pipelines_default_per_org",
            "organization_id",
            unique=True,
            postgresql_where=text("is_default AND NOT is_deleted"),
            sqlite_where=text("is_default = 1 AND is_deleted = 0"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Settings
    require_stage_reason: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stuck_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)

    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
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

    stages: Mapped[list["PipelineStage"]] = relationship(
        "PipelineStage",
        back_populates="pipeline",
        cascade="all, delete-orphan",
        order_by="PipelineStage.order",
        lazy="selectin",
    )


class PipelineStage(Base):
    """A step of a pipeline. Owned by exactly one pipeline."""
    __tablename__ = "pipeline_stages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pipeline_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6B7280")
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_closed_won: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_closed_lost: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    pipeline: Mapped["Pipeline"] = relationship("Pipeline", back_populates="stages")


def ordered_stages(pipeline: Pipeline) -> list[PipelineStage]:
    """Stages sorted by their order index (new, unflushed stages last on ties)."""
    return sorted(
        pipeline.stages,
        key=lambda s: (s.order if s.order is not None else 0, s.id is None, s.id or 0),
    )
