from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone

from equity_valuation.models.valuations import ConcludedEquityValue, DlomResult, WaccResult, WaterfallAllocation


class PipelineStep(BaseModel):
    step_name: str
    status: str = "pending"  # pending, running, completed, failed, skipped
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None


class ValuationReport(BaseModel):
    id: Optional[str] = None
    company_name: str
    request_summary: dict = Field(default_factory=dict)
    wacc: Optional[WaccResult] = Field(None, description="WACC build-up used as the DCF discount rate")
    concluded_value: Optional[ConcludedEquityValue] = None
    allocation: Optional[WaterfallAllocation] = Field(None, description="OPM allocation with DLOM applied")
    dlom: Optional[DlomResult] = None
    error: Optional[str] = Field(None, description="Error message if the valuation could not be completed")
    missing_data: list[str] = Field(default_factory=list, description="List of missing data points preventing valuation")
    warnings: list[str] = Field(default_factory=list)
    pipeline_steps: list[PipelineStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
