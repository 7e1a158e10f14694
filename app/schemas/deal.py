"""
Pydantic schemas for Deal API.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from app.models.deal import DealPriority, DealStatus
from app.schemas.pipeline import StageResponse
from app.services.ledger import display_stage_name


# ──────────────────────────────────────────────
# Request Schemas
# ──────────────────────────────────────────────

class DealCreate(BaseModel):
    """Schema for creating a deal. Without pipeline_id the organization default is used."""
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    value: float = Field(default=0.0, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    priority: DealPriority = DealPriority.MEDIUM
    probability: Optional[int] = Field(None, ge=0, le=100)
    pipeline_id: Optional[int] = None
    stage_id: Optional[int] = None
    expected_close_date: Optional[datetime] = None
    assigned_to: Optional[str] = Field(None, max_length=128)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


class DealUpdate(BaseModel):
    """Schema for updating deal details, optionally moving it at the same time."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    value: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    priority: Optional[DealPriority] = None
    probability: Optional[int] = Field(None, ge=0, le=100)
    expected_close_date: Optional[datetime] = None
    assigned_to: Optional[str] = Field(None, max_length=128)
    won_reason: Optional[str] = Field(None, max_length=512)
    lost_reason: Optional[str] = Field(None, max_length=512)
    stage_id: Optional[int] = None
    stage_change_reason: Optional[str] = Field(None, max_length=1000)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class DealMove(BaseModel):
    """Schema for moving a deal to another stage."""
    stage_id: int
    actor_id: str = Field(..., min_length=1, max_length=128)
    reason: Optional[str] = Field(None, max_length=1000)


# ──────────────────────────────────────────────
# Response Schemas
# ──────────────────────────────────────────────

class StageHistoryResponse(BaseModel):
    """One stage occupancy. Legacy empty names read as the fallback label."""
    stage_id: int
    stage_name: str
    entered_at: datetime
    exited_at: Optional[datetime] = None
    duration: Optional[int] = None
    reason: Optional[str] = None
    changed_by: str

    model_config = {"from_attributes": True}

    @field_validator("stage_name", mode="before")
    @classmethod
    def fallback_name(cls, v):
        return display_stage_name(v)


class DealResponse(BaseModel):
    """Schema for deal response."""
    id: int
    organization_id: str
    title: str
    description: Optional[str] = None
    value: float
    currency: str
    priority: DealPriority
    status: DealStatus
    probability: int
    pipeline_id: int
    stage_id: int
    current_stage_entered_at: datetime
    days_in_current_stage: int
    expected_close_date: Optional[datetime] = None
    actual_close_date: Optional[datetime] = None
    won_reason: Optional[str] = None
    lost_reason: Optional[str] = None
    assigned_to: Optional[str] = None
    created_by: str
    updated_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    stage_history: list[StageHistoryResponse] = []

    model_config = {"from_attributes": True}


class DealListResponse(BaseModel):
    """Schema for paginated deal list."""
    items: list[DealResponse]
    total: int
    page: int = Field(default=1, description="Current page number")
    page_size: int = Field(default=50, description="Items per page")
    has_next: bool = Field(default=False, description="Whether there are more pages")
    has_prev: bool = Field(default=False, description="Whether there are previous pages")


class BoardColumn(BaseModel):
    """One kanban column: a stage and the deals sitting on it."""
    stage: StageResponse
    deals: list[DealResponse]
    deal_count: int
    total_value: float


class PipelineBoardResponse(BaseModel):
    pipeline_id: int
    pipeline_name: str
    stages: list[BoardColumn]


class StuckDealResponse(BaseModel):
    deal_id: int
    title: str
    stage_id: int
    days_in_stage: int
    value: float
    is_overdue: bool = False


class DealSummaryResponse(BaseModel):
    """Win/loss summary over a creation window."""
    period_days: int
    total_deals: int = 0
    total_value: float = 0.0
    avg_value: float = 0.0
    won_deals: int = 0
    lost_deals: int = 0
    won_value: float = 0.0
    win_rate: float = 0.0
