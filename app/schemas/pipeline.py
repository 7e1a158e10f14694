"""
Pydantic schemas for Pipeline API.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

HEX_COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"


# ──────────────────────────────────────────────
# Request Schemas
# ──────────────────────────────────────────────

class StageCreate(BaseModel):
    """Schema for a stage definition."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    probability: int = Field(..., ge=0, le=100)
    color: str = Field(..., pattern=HEX_COLOR_PATTERN)
    is_active: bool = True
    is_closed_won: bool = False
    is_closed_lost: bool = False

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    @model_validator(mode="after")
    def check_terminal_flags(self):
        if self.is_closed_won and self.is_closed_lost:
            raise ValueError("A stage cannot be both closed-won and closed-lost")
        return self


class StageUpdate(BaseModel):
    """Schema for editing a stage. Only supplied fields change."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    probability: Optional[int] = Field(None, ge=0, le=100)
    color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    is_active: Optional[bool] = None
    is_closed_won: Optional[bool] = None
    is_closed_lost: Optional[bool] = None


class StageOrderItem(BaseModel):
    stage_id: int
    order: int = Field(..., ge=0)


class StageReorder(BaseModel):
    """Schema for reordering stages."""
    stage_orders: list[StageOrderItem] = Field(..., min_length=1)


class PipelineCreate(BaseModel):
    """Schema for creating a pipeline. Empty stages means the default stage set."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    is_default: bool = False
    require_stage_reason: bool = False
    stuck_days: int = Field(default=7, ge=1, le=365)
    stages: list[StageCreate] = Field(default_factory=list)


class PipelineUpdate(BaseModel):
    """Schema for updating pipeline details."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None
    require_stage_reason: Optional[bool] = None
    stuck_days: Optional[int] = Field(None, ge=1, le=365)


# ──────────────────────────────────────────────
# Response Schemas
# ──────────────────────────────────────────────

class StageResponse(BaseModel):
    """Schema for stage response."""
    id: int
    name: str
    description: Optional[str] = None
    probability: int
    color: str
    order: int
    is_active: bool
    is_closed_won: bool
    is_closed_lost: bool

    model_config = {"from_attributes": True}


class PipelineResponse(BaseModel):
    """Schema for pipeline response."""
    id: int
    organization_id: str
    name: str
    description: Optional[str] = None
    is_default: bool
    is_active: bool
    require_stage_reason: bool
    stuck_days: int
    stages: list[StageResponse]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class StageAnalytics(BaseModel):
    """Per-stage snapshot metrics."""
    stage_id: int
    stage_name: str
    deal_count: int = 0
    total_value: float = 0.0
    avg_value: float = 0.0
    avg_days_in_stage: float = 0.0
    conversion_rate: float = 0.0


class PipelineAnalyticsResponse(BaseModel):
    pipeline_id: int
    pipeline_name: str
    analytics: list[StageAnalytics]


class StageDwellHistory(BaseModel):
    """Historical dwell time per stage, from closed ledger entries."""
    stage_id: int
    stage_name: str
    completed_visits: int = 0
    avg_duration_days: float = 0.0
