from pydantic import BaseModel, Field, model_validator
from typing import Optional

from equity_valuation.models.cap_table import CapTable


class StubPeriodInputs(BaseModel):
    revenue: float = Field(0.0, description="Stub-period revenue (informational)")
    ebit: float = Field(0.0, description="Stub-period EBIT")
    taxes: float = Field(0.0, description="Stub-period cash taxes")
    depreciation: float = Field(0.0, description="Stub-period depreciation & amortization")
    capex: float = Field(0.0, description="Stub-period capital expenditures")
    nwc_change: float = Field(0.0, description="Stub-period change in net working capital")


class StubPeriod(BaseModel):
    fraction: float = Field(..., ge=0.0, lt=1.0, description="Fraction of a year between last FYE and valuation date")
    inputs: StubPeriodInputs = Field(default_factory=StubPeriodInputs)


class DcfAssumptions(BaseModel):
    forecast_period: int = Field(..., gt=0, description="Number of whole forecast years")
    initial_revenue: float = Field(..., description="Last actual annual revenue, seeds the projection")
    revenue_growth_rates: list[float] = Field(default_factory=list, description="Revenue growth per forecast year (0.10 = 10%)")
    ebitda_margins: list[float] = Field(default_factory=list, description="EBITDA margin per forecast year (0.0-1.0)")
    tax_rate: float = Field(0.25, description="Tax rate applied to EBITDA less depreciation")
    depreciation_rates: list[float] = Field(default_factory=list, description="Depreciation as percent of revenue per year")
    capex_percentages: list[float] = Field(default_factory=list, description="CapEx as percent of revenue per year")
    nwc_percentages: list[float] = Field(default_factory=list, description="Change in NWC as percent of revenue per year")
    terminal_growth_rate: float = Field(0.03, description="Long-term growth rate for terminal value")
    wacc: float = Field(0.12, description="Weighted average cost of capital")
    exit_multiple: Optional[float] = Field(None, gt=0, description="EV/EBITDA exit multiple; replaces perpetuity growth when set")
    terminal_nopat_margin: float = Field(0.15, description="Terminal-year NOPAT margin on terminal revenue")
    terminal_reinvestment_rate: float = Field(0.40, description="Share of terminal NOPAT reinvested")
    depreciation_schedule: Optional[list[float]] = Field(None, description="External depreciation schedule in currency units")
    capex_schedule: Optional[list[float]] = Field(None, description="External capex schedule in currency units")
    stub_period: Optional[StubPeriod] = Field(None, description="Partial period before the first full forecast year")
    first_forecast_year: Optional[int] = Field(None, description="Calendar year label of the first forecast year")


class OpmParameters(BaseModel):
    time_to_liquidity: float = Field(3.0, ge=0.0, description="Years until the expected liquidity event (T)")
    risk_free_rate: float = Field(0.045, description="Annualized risk-free rate (r)")
    volatility: float = Field(0.60, ge=0.0, description="Annualized equity volatility (sigma)")


class DlomWeights(BaseModel):
    chaffee: float = Field(25.0, ge=0.0)
    finnerty: float = Field(25.0, ge=0.0)
    ghaidarov: float = Field(25.0, ge=0.0)
    longstaff: float = Field(25.0, ge=0.0)


class DlomInputs(BaseModel):
    time_to_liquidity: float = Field(3.0, ge=0.0, description="Holding period in years")
    volatility: float = Field(0.60, ge=0.0, description="Annualized volatility (0.60 = 60%)")
    risk_free_rate: float = Field(0.045, description="Annualized risk-free rate")
    dividend_yield: float = Field(0.0, ge=0.0, description="Continuous dividend yield")
    weights: DlomWeights = Field(default_factory=DlomWeights)

    @classmethod
    def from_opm(cls, params: OpmParameters, weights: Optional[DlomWeights] = None) -> "DlomInputs":
        return cls(
            time_to_liquidity=params.time_to_liquidity,
            volatility=params.volatility,
            risk_free_rate=params.risk_free_rate,
            weights=weights or DlomWeights(),
        )


class BacksolveTarget(BaseModel):
    share_class_id: str = Field(..., description="Share class whose price is observed (usually the latest round)")
    price_per_share: float = Field(..., gt=0, description="Observed price per issued share")


class PeerCompany(BaseModel):
    name: str
    levered_beta: float = Field(..., description="Observed equity beta")
    debt_to_equity: float = Field(0.0, ge=0.0, description="Market debt / equity")
    tax_rate: float = Field(0.25, ge=0.0, le=1.0)


class WaccInputs(BaseModel):
    peer_companies: list[PeerCompany] = Field(default_factory=list, description="Guideline companies for the beta")
    target_debt_to_equity: Optional[float] = Field(
        None, ge=0.0, description="Relevering D/E; derived from debt_weight when omitted"
    )
    target_tax_rate: float = Field(0.25, ge=0.0, le=1.0, description="Tax rate used to relever the beta")
    risk_free_rate: float = Field(0.025)
    equity_risk_premium: float = Field(0.055)
    size_premium: float = Field(0.0)
    country_risk_premium: float = Field(0.0)
    company_specific_premium: float = Field(0.0)
    pre_tax_cost_of_debt: float = Field(0.05)
    debt_tax_rate: float = Field(0.25, ge=0.0, le=1.0)
    debt_weight: float = Field(0.0, ge=0.0, lt=1.0, description="Debt / total capital; equity takes the rest")


class HybridScenario(BaseModel):
    name: str
    probability: float = Field(..., ge=0.0, le=100.0, description="Scenario probability in percent")
    total_equity_value: Optional[float] = Field(
        None, ge=0.0, description="Fixed equity value; leave empty for the scenario solved from the priced round"
    )
    opm_parameters: Optional[OpmParameters] = Field(None, description="Fields set here override the global parameters")


class HybridValuationInputs(BaseModel):
    cap_table: CapTable
    scenarios: list[HybridScenario] = Field(..., min_length=1)
    opm_parameters: OpmParameters = Field(default_factory=OpmParameters)
    target: Optional[BacksolveTarget] = Field(
        None, description="Priced round the probability-weighted value must reproduce"
    )

    @model_validator(mode="after")
    def _check_backsolve_scenario(self):
        open_scenarios = [s.name for s in self.scenarios if s.total_equity_value is None]
        if len(open_scenarios) > 1:
            raise ValueError(f"At most one scenario may be solved for, got {', '.join(open_scenarios)}")
        if open_scenarios and self.target is None:
            raise ValueError(f"Scenario '{open_scenarios[0]}' has no equity value and no target price to solve for")
        return self


class ValuationRequest(BaseModel):
    company_name: str = Field(..., description="Name of the subject company")
    cap_table: CapTable = Field(..., description="Capital structure snapshot")
    dcf_assumptions: Optional[DcfAssumptions] = Field(None, description="DCF input assumptions")
    wacc_inputs: Optional[WaccInputs] = Field(None, description="WACC build-up; replaces dcf_assumptions.wacc when set")
    backsolve: Optional[BacksolveTarget] = Field(None, description="Priced round to backsolve total equity from")
    equity_value: Optional[float] = Field(None, ge=0, description="Externally concluded equity value")
    method_weights: Optional[dict[str, float]] = Field(None, description="Custom weights for 'dcf', 'backsolve', 'provided'")
    opm_parameters: OpmParameters = Field(default_factory=OpmParameters)
    dlom: Optional[DlomInputs] = Field(None, description="DLOM inputs; derived from OPM parameters when omitted")

    @model_validator(mode="after")
    def _check_value_source(self):
        if self.dcf_assumptions is None and self.backsolve is None and self.equity_value is None:
            raise ValueError("Provide at least one of dcf_assumptions, backsolve or equity_value")
        return self
