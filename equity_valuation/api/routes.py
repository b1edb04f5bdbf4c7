import csv
import io
import json
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from equity_valuation.models.cap_table import CapTable
from equity_valuation.models.request import (
    DcfAssumptions, DlomInputs, HybridValuationInputs, OpmParameters, ValuationRequest, WaccInputs,
)
from equity_valuation.models.report import ValuationReport
from equity_valuation.models.valuations import (
    BacksolveResult, Breakpoint, DCFResult, DlomResult, HybridValuationResult, OptimalCapitalStructure,
    WaccResult, WaterfallAllocation,
)
from equity_valuation.api.dependencies import get_default_parameters, get_pipeline, get_status_registry
from equity_valuation.pipeline.orchestrator import ValuationPipeline
from equity_valuation.services.pipeline_status import StatusRegistry
from equity_valuation.valuation.backsolve import backsolve_equity_value
from equity_valuation.valuation.breakpoints import build_breakpoints
from equity_valuation.valuation.dcf import compute_dcf_valuation
from equity_valuation.valuation.dlom import compute_dlom, implied_volatility_from_put
from equity_valuation.valuation.errors import PreconditionViolation
from equity_valuation.valuation.hybrid import compute_hybrid_valuation
from equity_valuation.valuation.option_pricing import implied_volatility
from equity_valuation.valuation.wacc import DEFAULT_DEBT_RATIOS, compute_wacc, find_optimal_capital_structure
from equity_valuation.valuation.waterfall import allocate_equity_value, apply_dlom

router = APIRouter(prefix="/api/valuations", tags=["valuations"])


class AllocationRequest(BaseModel):
    total_equity_value: float = Field(..., ge=0)
    cap_table: CapTable
    opm_parameters: Optional[OpmParameters] = None
    dlom_percentage: Optional[float] = Field(None, ge=0, le=100, description="Applied to per-share values when set")


class BacksolveRequest(BaseModel):
    cap_table: CapTable
    share_class_id: str
    price_per_share: float = Field(..., gt=0)
    opm_parameters: Optional[OpmParameters] = None


class ImpliedVolatilityRequest(BaseModel):
    price: float = Field(..., ge=0, description="Observed option price")
    spot: float = Field(..., description="Underlying value (S)")
    strike: float = Field(..., description="Strike (K)")
    time_to_expiry: float = Field(..., description="Years to expiry (T)")
    risk_free_rate: float = Field(0.045)
    is_call: bool = True


class ImpliedVolatilityResponse(BaseModel):
    implied_volatility: Optional[float] = None
    converged: bool
    warnings: list[str] = Field(default_factory=list)


class PutImpliedVolatilityRequest(BaseModel):
    dlom_percentage: float = Field(..., description="Observed protective-put DLOM in percent")
    time_to_liquidity: float = Field(..., description="Holding period in years")
    risk_free_rate: float = Field(0.045)


class OptimalStructureRequest(BaseModel):
    wacc_inputs: WaccInputs = Field(default_factory=WaccInputs)
    debt_ratios: list[float] = Field(default_factory=lambda: list(DEFAULT_DEBT_RATIOS), min_length=1)


def _parse_financial_value(s: str) -> float | None:
    """Parse a financial value like '$ 587,363', '(6,963)', '31.7%'."""
    s = s.strip().replace('$', '').replace(',', '').replace('\xa0', '').strip()
    if not s or s in ('-', 'N/A', '#N/A', '#n/a'):
        return None
    neg = s.startswith('(') and s.endswith(')')
    if neg:
        s = s[1:-1].strip()
    try:
        if s.endswith('%'):
            val = float(s[:-1]) / 100.0
        elif s.rstrip().endswith('x'):
            val = float(s.rstrip()[:-1])
        else:
            val = float(s)
    except ValueError:
        return None
    return -val if neg else val


# Per-year CSV columns -> DcfAssumptions array fields
ARRAY_COLUMNS = {
    "growth_rate": "revenue_growth_rates",
    "revenue_growth": "revenue_growth_rates",
    "ebitda_margin": "ebitda_margins",
    "depreciation_rate": "depreciation_rates",
    "capex_percent": "capex_percentages",
    "nwc_percent": "nwc_percentages",
}

SCALAR_COLUMNS = {
    "initial_revenue", "tax_rate", "wacc", "terminal_growth_rate", "exit_multiple",
    "terminal_nopat_margin", "terminal_reinvestment_rate",
}

METRIC_MAP = {
    'initial revenue': 'initial_revenue',
    'base revenue': 'initial_revenue',
    'wacc': 'wacc',
    'terminal growth': 'terminal_growth_rate',
    'terminal growth rate': 'terminal_growth_rate',
    'tax rate': 'tax_rate',
    'exit multiple': 'exit_multiple',
    'terminal nopat margin': 'terminal_nopat_margin',
    'terminal reinvestment rate': 'terminal_reinvestment_rate',
    'first forecast year': 'first_forecast_year',
}


def _normalize(name: str) -> str:
    return name.strip().lower().replace(' ', '_').replace('%', 'percent')


def _try_simple_csv(text: str) -> DcfAssumptions | None:
    """Parse one row per forecast year with 'growth_rate' and 'ebitda_margin' columns.

    Scalar columns (initial_revenue, wacc, ...) are read from the first row.
    """
    try:
        reader = csv.DictReader(io.StringIO(text))
        fieldnames = {_normalize(f): f for f in (reader.fieldnames or [])}
        if 'section' in fieldnames or 'ebitda_margin' not in fieldnames:
            return None
        if not ({'growth_rate', 'revenue_growth'} & fieldnames.keys()):
            return None

        arrays: dict[str, list[float]] = {}
        scalars: dict[str, float] = {}
        first_year: int | None = None
        n_rows = 0
        for i, row in enumerate(reader):
            n_rows += 1
            for column, field_name in ARRAY_COLUMNS.items():
                if column in fieldnames:
                    val = _parse_financial_value(row[fieldnames[column]] or '')
                    if val is not None:
                        arrays.setdefault(field_name, []).append(val)
            if i == 0:
                for key in SCALAR_COLUMNS & fieldnames.keys():
                    val = _parse_financial_value(row[fieldnames[key]] or '')
                    if val is not None:
                        scalars[key] = val
                if 'year' in fieldnames and (row[fieldnames['year']] or '').strip().isdigit():
                    first_year = int(row[fieldnames['year']])
        if n_rows == 0 or 'initial_revenue' not in scalars:
            return None
        return DcfAssumptions(
            forecast_period=n_rows,
            first_forecast_year=first_year,
            **arrays,
            **scalars,
        )
    except (KeyError, ValueError, ValidationError):
        return None


def _try_sectioned_csv(text: str) -> DcfAssumptions | None:
    """Parse a sectioned CSV with 'Section' separating per-year Projections from Assumptions rows."""
    try:
        reader = csv.DictReader(io.StringIO(text))
        fieldnames = [f.strip() for f in (reader.fieldnames or [])]
        if 'Section' not in fieldnames:
            return None

        metric_col = next((f for f in fieldnames if f.lower() == 'metric'), None)
        value_col = next((f for f in fieldnames if f.lower() == 'value'), None)
        year_col = next((f for f in fieldnames if f.lower() == 'year'), None)
        array_cols = {
            f: ARRAY_COLUMNS[_normalize(f)] for f in fieldnames if _normalize(f) in ARRAY_COLUMNS
        }

        arrays: dict[str, list[float]] = {}
        assumptions: dict[str, float] = {}
        years: list[int] = []

        for row in reader:
            section = (row.get('Section') or '').strip().lower()
            if section == 'projections':
                for col, field_name in array_cols.items():
                    val = _parse_financial_value(row.get(col) or '')
                    if val is not None:
                        arrays.setdefault(field_name, []).append(val)
                if year_col and (row.get(year_col) or '').strip().isdigit():
                    years.append(int(row[year_col]))
            elif section == 'assumptions' and metric_col and value_col:
                metric = (row.get(metric_col) or '').strip().lower()
                param = METRIC_MAP.get(metric)
                val = _parse_financial_value(row.get(value_col) or '')
                if param and val is not None:
                    assumptions[param] = val

        n_years = max((len(v) for v in arrays.values()), default=0)
        if n_years == 0 or 'initial_revenue' not in assumptions:
            return None
        if 'first_forecast_year' in assumptions:
            assumptions['first_forecast_year'] = int(assumptions['first_forecast_year'])
        elif years:
            assumptions['first_forecast_year'] = years[0]

        return DcfAssumptions(forecast_period=n_years, **arrays, **assumptions)
    except (KeyError, ValueError, ValidationError):
        return None


def _unprocessable(e: PreconditionViolation) -> HTTPException:
    return HTTPException(status_code=422, detail=str(e))


@router.post("/dcf", response_model=DCFResult)
async def run_dcf(assumptions: DcfAssumptions):
    """Project free cash flows and value the enterprise."""
    try:
        return compute_dcf_valuation(assumptions)
    except PreconditionViolation as e:
        raise _unprocessable(e)


@router.post("/breakpoints", response_model=list[Breakpoint])
async def get_breakpoints(cap_table: CapTable):
    """Build the OPM breakpoints for a cap table."""
    try:
        return build_breakpoints(cap_table)
    except PreconditionViolation as e:
        raise _unprocessable(e)


@router.post("/allocation", response_model=WaterfallAllocation)
async def run_allocation(
    body: AllocationRequest,
    defaults: OpmParameters = Depends(get_default_parameters),
):
    """Allocate a total equity value across the cap table."""
    try:
        allocation = allocate_equity_value(
            body.total_equity_value, body.cap_table, body.opm_parameters or defaults
        )
        if body.dlom_percentage is not None:
            allocation = apply_dlom(allocation, body.dlom_percentage)
        return allocation
    except PreconditionViolation as e:
        raise _unprocessable(e)


@router.post("/dlom", response_model=DlomResult)
async def run_dlom(inputs: DlomInputs):
    """Compute the weighted marketability discount."""
    return compute_dlom(inputs)


@router.post("/implied-volatility", response_model=ImpliedVolatilityResponse)
async def run_implied_volatility(body: ImpliedVolatilityRequest):
    """Solve for the volatility implied by an observed option price."""
    sigma = implied_volatility(
        body.price, body.spot, body.strike, body.time_to_expiry, body.risk_free_rate, is_call=body.is_call
    )
    if sigma is None:
        return ImpliedVolatilityResponse(
            converged=False,
            warnings=["Could not determine implied volatility for these inputs"],
        )
    return ImpliedVolatilityResponse(implied_volatility=sigma, converged=True)


@router.post("/dlom/implied-volatility", response_model=ImpliedVolatilityResponse)
async def run_put_implied_volatility(body: PutImpliedVolatilityRequest):
    """Back out the volatility implied by an at-the-money protective-put DLOM."""
    sigma = implied_volatility_from_put(body.dlom_percentage, body.time_to_liquidity, body.risk_free_rate)
    if sigma is None:
        return ImpliedVolatilityResponse(
            converged=False,
            warnings=[f"No volatility reproduces a {body.dlom_percentage}% DLOM over {body.time_to_liquidity} years"],
        )
    return ImpliedVolatilityResponse(implied_volatility=sigma, converged=True)


@router.post("/backsolve", response_model=BacksolveResult)
async def run_backsolve(
    body: BacksolveRequest,
    defaults: OpmParameters = Depends(get_default_parameters),
):
    """Find the total equity value implied by a priced round."""
    try:
        return backsolve_equity_value(
            body.cap_table, body.share_class_id, body.price_per_share, body.opm_parameters or defaults
        )
    except PreconditionViolation as e:
        raise _unprocessable(e)


@router.post("/wacc", response_model=WaccResult)
async def run_wacc(inputs: WaccInputs):
    """Build up the discount rate from peer betas, CAPM premiums and after-tax debt."""
    try:
        return compute_wacc(inputs)
    except PreconditionViolation as e:
        raise _unprocessable(e)


@router.post("/wacc/optimal-structure", response_model=OptimalCapitalStructure)
async def run_optimal_structure(body: OptimalStructureRequest):
    """Sweep debt ratios and report the WACC-minimizing capital structure."""
    try:
        return find_optimal_capital_structure(body.wacc_inputs, body.debt_ratios)
    except PreconditionViolation as e:
        raise _unprocessable(e)


@router.post("/hybrid", response_model=HybridValuationResult)
async def run_hybrid(inputs: HybridValuationInputs):
    """Probability-weight OPM allocations across exit scenarios."""
    try:
        return compute_hybrid_valuation(inputs)
    except PreconditionViolation as e:
        raise _unprocessable(e)


@router.post("", response_model=ValuationReport)
async def create_valuation(
    request: ValuationRequest,
    pipeline: ValuationPipeline = Depends(get_pipeline),
):
    """Run full valuation pipeline and return complete report."""
    report = await pipeline.run(request)
    return report


@router.post("/async")
async def create_valuation_async(
    request: ValuationRequest,
    pipeline: ValuationPipeline = Depends(get_pipeline),
    registry: StatusRegistry = Depends(get_status_registry),
):
    """Start pipeline asynchronously, return report_id and stream URL."""
    report_id = str(uuid.uuid4())
    status = registry.create(report_id)
    registry.launch(status, pipeline.run(request, report_id=report_id, status=status))

    return {
        "report_id": report_id,
        "stream_url": f"/api/valuations/{report_id}/stream",
    }


@router.get("/{valuation_id}/stream")
async def stream_pipeline(
    valuation_id: str,
    registry: StatusRegistry = Depends(get_status_registry),
):
    """SSE stream of pipeline step events; the final event carries the report."""
    status = registry.get(valuation_id)
    if not status:
        raise HTTPException(status_code=404, detail="No active pipeline for this ID")

    async def event_generator():
        while True:
            # Completion is read before draining; later events arrive on the next pass
            finished = status.complete
            for evt in await status.wait_for_event(timeout=15.0):
                yield f"data: {json.dumps(evt.to_payload())}\n\n"

            if finished:
                report = status.report.model_dump(mode="json") if status.report else None
                yield f"data: {json.dumps({'type': 'complete', 'report_id': valuation_id, 'report': report})}\n\n"
                registry.discard(valuation_id)
                break

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/upload-assumptions", response_model=DcfAssumptions)
async def upload_assumptions(file: UploadFile = File(...)):
    """Parse uploaded JSON or CSV file into DcfAssumptions."""
    content = await file.read()
    filename = (file.filename or "").lower()

    try:
        if filename.endswith(".json"):
            data = json.loads(content)
            return DcfAssumptions(**data)

        elif filename.endswith(".csv"):
            text = content.decode("utf-8")
            result = _try_simple_csv(text)
            if result is None:
                result = _try_sectioned_csv(text)
            if result is None:
                raise HTTPException(
                    status_code=400,
                    detail=(
                        "Unrecognized CSV format. Expected 'growth_rate'/'ebitda_margin' columns with an "
                        "'initial_revenue' column, or a sectioned 'Section,Metric,Value' export."
                    ),
                )
            return result

        else:
            raise HTTPException(
                status_code=400,
                detail="Unsupported file type. Upload .json or .csv",
            )
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Failed to parse file: {e}")
