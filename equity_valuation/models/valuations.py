from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, Optional

from equity_valuation.models.request import OpmParameters, DlomWeights

BreakpointType = Literal[
    "liquidation_preference",
    "pro_rata_distribution",
    "option_exercise",
    "voluntary_conversion",
    "participation_cap",
]
SecurityType = Literal["common", "preferred", "option"]


class SensitivityCell(BaseModel):
    model_config = ConfigDict(frozen=True)

    wacc: float
    terminal_growth_rate: float
    enterprise_value: Optional[float] = None
    note: Optional[str] = None


class DcfProjection(BaseModel):
    model_config = ConfigDict(frozen=True)

    years: list[str]
    revenue: list[float]
    ebitda: list[float]
    depreciation: list[float]
    ebit: list[float]
    taxes: list[float]
    capex: list[float]
    nwc_changes: list[float]
    fcf: list[float]
    discount_factors: list[float]
    discounted_fcf: list[float]


class TerminalAssumptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    nopat_margin: float
    reinvestment_rate: float
    implied_roic: Optional[float] = None


class StubPeriodResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    fraction: float
    fcf: float
    discounted_fcf: float


class DCFResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: str = "dcf"
    enterprise_value: float
    equity_value: float
    projections: DcfProjection
    terminal_method: Literal["perpetuity_growth", "exit_multiple"]
    terminal_value: float
    discounted_terminal_value: float
    discount_rate: float
    terminal_growth_rate: float
    implied_ev_to_ebitda: Optional[float] = None
    terminal_assumptions: Optional[TerminalAssumptions] = None
    stub_period: Optional[StubPeriodResult] = None
    has_custom_depreciation_schedule: bool = False
    sensitivity_table: list[SensitivityCell] = Field(default_factory=list)
    defaulted_inputs: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def projected_fcfs(self) -> list[float]:
        return self.projections.fcf


class ParticipatingSecurity(BaseModel):
    model_config = ConfigDict(frozen=True)

    security_id: str
    name: str
    percentage: float = Field(..., ge=0.0, le=100.0)
    shares: float = Field(..., ge=0.0)


class Breakpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    order: int
    breakpoint_type: BreakpointType
    from_value: float
    to_value: Optional[float] = Field(None, description="None for the open-ended final segment")
    participating_securities: tuple[ParticipatingSecurity, ...]
    shares_participating: float
    section_rvps: Optional[float] = Field(None, description="Segment width per participating share")
    cumulative_rvps: Optional[float] = Field(None, description="Common value per share reached at the segment end")
    description: str = ""

    @property
    def is_open_ended(self) -> bool:
        return self.to_value is None


class SegmentValuation(BaseModel):
    model_config = ConfigDict(frozen=True)

    order: int
    from_value: float
    to_value: Optional[float] = None
    call_value_at_from: float
    call_value_at_to: float
    segment_value: float


class SecurityAllocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    security_id: str
    name: str
    security_type: SecurityType
    shares: float = Field(..., description="Per-share basis: as-converted shares, common shares or option count")
    dollar_allocation: float
    per_share_value: float
    non_marketable_per_share_value: Optional[float] = None


class WaterfallAllocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_equity_value: float
    parameters: OpmParameters
    breakpoints: tuple[Breakpoint, ...]
    segment_values: tuple[SegmentValuation, ...]
    allocations: tuple[SecurityAllocation, ...]
    dlom_percentage: Optional[float] = None
    warnings: list[str] = Field(default_factory=list)

    def allocation_for(self, security_id: str) -> Optional[SecurityAllocation]:
        return next((a for a in self.allocations if a.security_id == security_id), None)

    @property
    def total_allocated(self) -> float:
        return sum(a.dollar_allocation for a in self.allocations)


class DlomResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    chaffee: float
    finnerty: float
    ghaidarov: float
    longstaff: float
    weights: DlomWeights
    concluded_dlom: float = Field(..., description="Weighted DLOM in percent")
    warnings: list[str] = Field(default_factory=list)


class BacksolveResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: str = "backsolve"
    total_equity_value: float
    share_class_id: str
    target_price_per_share: float
    achieved_price_per_share: float
    iterations: int
    converged: bool
    allocation: Optional[WaterfallAllocation] = None
    warnings: list[str] = Field(default_factory=list)


class WaccResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    unlevered_beta: float = Field(..., description="Median asset beta of the peer set")
    relevered_beta: float
    cost_of_equity: float
    after_tax_cost_of_debt: float
    debt_weight: float
    equity_weight: float
    wacc: float
    beta_adjusted_premium: float = Field(..., description="Relevered beta times the equity risk premium")
    total_equity_premium: float = Field(..., description="Cost of equity over the risk-free rate")
    warnings: list[str] = Field(default_factory=list)


class CapitalStructurePoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    debt_ratio: float
    wacc: float
    cost_of_equity: float
    after_tax_cost_of_debt: float


class OptimalCapitalStructure(BaseModel):
    model_config = ConfigDict(frozen=True)

    points: tuple[CapitalStructurePoint, ...]
    optimal: CapitalStructurePoint


class HybridScenarioResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    probability: float = Field(..., description="Normalized weight (0-1)")
    total_equity_value: float
    solved: bool = Field(False, description="True for the scenario backsolved from the priced round")
    parameters: OpmParameters
    allocation: WaterfallAllocation
    target_class_price: Optional[float] = Field(None, description="Target class value per issued share")


class HybridValuationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: str = "hybrid_opm"
    scenarios: tuple[HybridScenarioResult, ...]
    weighted_equity_value: float
    equity_value_std_dev: float
    allocations: tuple[SecurityAllocation, ...] = Field(..., description="Probability-weighted per security")
    share_class_id: Optional[str] = None
    target_price_per_share: Optional[float] = None
    weighted_price_per_share: Optional[float] = None
    converged: bool = True
    warnings: list[str] = Field(default_factory=list)


class MethodologyWeight(BaseModel):
    method: str
    weight: float
    value: float
    rationale: str


class ConcludedEquityValue(BaseModel):
    equity_value: float
    equity_value_range: list[float] = Field(..., description="[low, high] range estimate")
    methodology_weights: list[MethodologyWeight]
    dcf_result: Optional[DCFResult] = None
    backsolve_result: Optional[BacksolveResult] = None
