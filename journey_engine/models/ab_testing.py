"""Pydantic models for A/B tests bound to journey steps."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Literal
from pydantic import BaseModel, Field, field_validator


class ABTestStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class WinningMetric(str, Enum):
    DELIVERY_RATE = "delivery_rate"
    READ_RATE = "read_rate"
    REPLY_RATE = "reply_rate"
    CLICK_RATE = "click_rate"


class MetricEvent(str, Enum):
    """Counters that can be incremented on a variant."""
    IMPRESSION = "impression"
    DELIVERED = "delivered"
    READ = "read"
    REPLIED = "replied"
    CLICKED = "clicked"


class VariantMetrics(BaseModel):
    """Cumulative counters and derived rates (fractions in [0, 1])."""
    impressions: int = 0
    delivered: int = 0
    read: int = 0
    replied: int = 0
    clicked: int = 0
    delivery_rate: float = 0.0
    read_rate: float = 0.0
    reply_rate: float = 0.0
    click_rate: float = 0.0

    def recompute_rates(self) -> "VariantMetrics":
        """Recalculate the derived rates from the counters."""
        if self.impressions > 0:
            self.delivery_rate = self.delivered / self.impressions
        if self.delivered > 0:
            self.read_rate = self.read / self.delivered
            self.reply_rate = self.replied / self.delivered
            self.click_rate = self.clicked / self.delivered
        return self

    def rate_for(self, metric: WinningMetric) -> float:
        return getattr(self, WinningMetric(metric).value)


class ABVariant(BaseModel):
    id: str
    test_id: str
    name: str
    message_content: Optional[str] = None
    template_id: Optional[str] = None
    template_variables: Dict[str, str] = Field(default_factory=dict)
    traffic_allocation: float = Field(..., ge=0, le=100, description="Percentage of traffic")
    branch_id: Optional[str] = Field(None, description="Split handle this variant routes to; defaults to the variant id")
    is_control: bool = False
    is_winner: bool = False
    metrics: VariantMetrics = Field(default_factory=VariantMetrics)
    created_at: Optional[datetime] = None

    @property
    def route(self) -> str:
        """Edge handle a split step follows for this variant."""
        return self.branch_id or self.id


class ABTest(BaseModel):
    id: str
    workflow_id: str
    step_id: str
    name: str
    status: ABTestStatus = ABTestStatus.DRAFT
    winning_metric: WinningMetric = WinningMetric.READ_RATE
    confidence_threshold: float = 0.95
    min_sample_size: int = 100
    winner_id: Optional[str] = None
    variants: List[ABVariant] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_variant(self, variant_id: str) -> Optional[ABVariant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None


class SignificanceResult(BaseModel):
    """Outcome of the two-proportion z-test between control and challenger."""
    is_significant: bool
    confidence: float
    p_value: float
    winner_id: Optional[str] = None
    winner_improvement: Optional[float] = Field(None, description="Relative lift of the winner, in percent")
    recommended_action: Literal["continue", "declare_winner", "no_difference"]


class ABTestCreate(BaseModel):
    """Request body for creating an A/B test."""
    workflow_id: str
    step_id: str
    name: str
    winning_metric: WinningMetric = WinningMetric.READ_RATE
    confidence_threshold: Optional[float] = None
    min_sample_size: Optional[int] = None

    @field_validator('confidence_threshold')
    @classmethod
    def validate_confidence(cls, v):
        """Validate confidence threshold range."""
        if v is not None and not 0 < v < 1:
            raise ValueError("Confidence threshold must be between 0 and 1")
        return v


class ABVariantCreate(BaseModel):
    """Request body for adding a variant to a test."""
    name: str
    traffic_allocation: float = Field(..., ge=0, le=100)
    branch_id: Optional[str] = None
    message_content: Optional[str] = None
    template_id: Optional[str] = None
    template_variables: Dict[str, str] = Field(default_factory=dict)
    is_control: bool = False
